"""
main.py
-------
Entry point for the DompetBot chat ledger.

Responsibilities:
    - Initialize the database connection pool and schema.
    - Wire the Telegram transport, session manager, dispatcher and services.
    - Set up the scheduled jobs (queue flush, budget renewal, reports,
      alert digests, reconciliation).
"""

import argparse
from datetime import time as dt_time
from zoneinfo import ZoneInfo

from telegram.ext import Application

from config import DEFAULT_TIMEZONE, TELEGRAM_BOT_TOKEN
from ai.gemini_classifier import GeminiIntentClassifier
from db.connection import close_pool, init_pool
from db.init_db import create_tables
from repositories.budget_repo import BudgetRepository
from repositories.session_repo import SessionRepository
from repositories.transaction_repo import TransactionRepository
from repositories.user_repo import UserRepository
from services.alerts import format_alert
from services.budget_service import BudgetService
from services.intent_dispatcher import IntentDispatcher
from services.ledger_engine import LedgerConsistencyEngine
from services.report_service import ReportService
from services.session_manager import SessionManager
from services.transaction_service import TransactionService
from transport.telegram_transport import TelegramTransport
from utils.logger import get_logger

logger = get_logger(__name__)


def _active_sessions(context):
    return context.application.bot_data["session_repo"].list_by_status("active")


async def flush_queues(context) -> None:
    """Scheduled job: deliver due queued messages. Runs every minute."""
    sent = await context.application.bot_data["sessions"].flush_all()
    if sent:
        logger.info(f"Flushed {sent} queued message(s)")


async def renew_budgets(context) -> None:
    """Scheduled job: roll elapsed recurring budgets over. Runs daily at 00:05."""
    renewed = context.application.bot_data["budgets"].renew_expired()
    logger.info(f"Renewed {len(renewed)} recurring budget(s)")


async def _send_reports(context, period: str, setting: str) -> None:
    sessions = context.application.bot_data["sessions"]
    reports = context.application.bot_data["reports"]
    for session in _active_sessions(context):
        if not getattr(session.settings.notifications, setting):
            continue
        try:
            text = reports.period_report(
                session.user_id, period, session.language, session.settings.timezone
            )
            await sessions.enqueue(session.user_id, session.handle, text, kind="report")
            logger.info(f"Queued {period} report for session #{session.id}")
        except Exception as e:
            logger.error(f"Failed to queue {period} report for session #{session.id}: {e}")


async def send_daily_summary(context) -> None:
    """Scheduled job: daily report to sessions that opted in. Runs at 21:00."""
    await _send_reports(context, "daily", "daily_summary")


async def send_weekly_report(context) -> None:
    """
    Scheduled job: send weekly expense report to sessions that opted in.
    Runs every Sunday at 20:00.
    """
    await _send_reports(context, "weekly", "weekly_report")


async def send_budget_alerts(context) -> None:
    """Scheduled job: digest of alerts raised by active budgets. Runs daily at 09:00."""
    sessions = context.application.bot_data["sessions"]
    budgets = context.application.bot_data["budgets"]
    users = {s.user_id: s.language for s in _active_sessions(context)}
    for user_id, language in users.items():
        alerts = budgets.get_alerts(user_id).value or []
        if alerts:
            text = "\n".join(format_alert(a, language) for a in alerts)
            await sessions.notify_user(user_id, text)


async def reconcile_budgets(context) -> None:
    """Scheduled job: report budget spend that drifted from the ledger. Runs daily at 03:00."""
    engine = context.application.bot_data["engine"]
    for user_id in {s.user_id for s in _active_sessions(context)}:
        drifts = engine.reconcile(user_id)
        if drifts:
            logger.warning(f"User {user_id}: {len(drifts)} budget(s) drifted; run with --reconcile to repair")


def build_application(pairings: list[tuple[str, str]]) -> Application:
    """Build the Telegram application and wire every service into bot_data."""
    session_repo = SessionRepository()
    user_repo = UserRepository()
    transaction_repo = TransactionRepository()
    budget_repo = BudgetRepository()

    engine = LedgerConsistencyEngine(budget_repo, transaction_repo)
    transactions = TransactionService(transaction_repo, engine)
    budgets = BudgetService(budget_repo, transaction_repo)
    reports = ReportService(transaction_repo)
    dispatcher = IntentDispatcher(GeminiIntentClassifier(), transactions, budgets, reports)

    async def post_init(application: Application) -> None:
        await sessions.recover()
        for username, handle in pairings:
            user = user_repo.ensure_user(username)
            result = await sessions.initialize(user.id, handle)
            if not result.ok:
                logger.error(f"Pairing {username}/{handle} failed: {result.error}")
                continue
            await sessions.join()
            artifact = sessions.get_pairing_artifact(user.id, handle)
            if artifact.ok:
                logger.info(f"Pair {username}/{handle} by opening: {artifact.value}")

    async def post_shutdown(application: Application) -> None:
        await sessions.shutdown()

    app = (
        Application.builder()
        .token(TELEGRAM_BOT_TOKEN)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )
    transport = TelegramTransport(app)
    sessions = SessionManager(transport, dispatcher, session_repo, user_repo)

    app.bot_data.update({
        "sessions": sessions,
        "session_repo": session_repo,
        "budgets": budgets,
        "reports": reports,
        "engine": engine,
    })
    return app


def _pairing(value: str) -> tuple[str, str]:
    username, sep, handle = value.partition(":")
    if not sep:
        raise argparse.ArgumentTypeError("expected USERNAME:HANDLE")
    return username, handle


def main() -> None:
    """Initialize and run the bot."""
    parser = argparse.ArgumentParser(description="DompetBot chat ledger")
    parser.add_argument(
        "--pair", action="append", type=_pairing, default=[], metavar="USERNAME:HANDLE",
        help="open a chat session for this user and handle at startup",
    )
    parser.add_argument(
        "--reconcile", metavar="USERNAME",
        help="recompute this user's budget spend from the ledger, repair drift and exit",
    )
    args = parser.parse_args()

    # ── 1. Database setup ─────────────────────────────────
    logger.info("Initializing database...")
    init_pool()
    create_tables()

    if args.reconcile:
        user = UserRepository().ensure_user(args.reconcile)
        drifts = LedgerConsistencyEngine().reconcile(user.id, repair=True)
        logger.info(f"Repaired {len(drifts)} budget(s) for {args.reconcile}")
        close_pool()
        return

    # ── 2. Build the Telegram application ─────────────────
    logger.info("Starting Telegram bot...")
    app = build_application(args.pair)

    # ── 3. Schedule jobs ──────────────────────────────────
    job_queue = app.job_queue
    if job_queue:
        tz = ZoneInfo(DEFAULT_TIMEZONE)
        job_queue.run_repeating(flush_queues, interval=60, first=60, name="flush_queues")
        job_queue.run_daily(renew_budgets, time=dt_time(hour=0, minute=5, tzinfo=tz), name="renew_budgets")
        job_queue.run_daily(reconcile_budgets, time=dt_time(hour=3, minute=0, tzinfo=tz), name="reconcile")
        job_queue.run_daily(send_budget_alerts, time=dt_time(hour=9, minute=0, tzinfo=tz), name="budget_alerts")
        job_queue.run_daily(send_daily_summary, time=dt_time(hour=21, minute=0, tzinfo=tz), name="daily_summary")
        # Weekly report every Sunday at 20:00
        job_queue.run_daily(
            send_weekly_report,
            time=dt_time(hour=20, minute=0, tzinfo=tz),
            days=(0,),  # Sunday
            name="weekly_report",
        )
        logger.info("Scheduled queue flush, renewals, reconciliation, alerts and reports")

    # ── 4. Start polling ──────────────────────────────────
    logger.info("🚀 DompetBot is running! Press Ctrl+C to stop.")
    app.run_polling(drop_pending_updates=True, allowed_updates=["message"])

    # ── 5. Cleanup on shutdown ────────────────────────────
    close_pool()
    logger.info("DompetBot stopped.")


if __name__ == "__main__":
    main()
