"""
services/intent_dispatcher.py
-----------------------------
Turns one inbound chat message into a ledger/budget/report action and a reply.

Workflow:
    1. Drop empty messages and command-prefixed ones (commands are handled
       elsewhere).
    2. With NLP off, answer with the auto-reply (if enabled) or stay silent.
    3. Classify; below the session's confidence threshold, ask the user to
       rephrase.
    4. Route the intent to its handler and return the reply text.

`dispatch` never raises: every failure becomes a fallback reply, with the
error attached for the session's error log.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional

from ai.entities import CATEGORY_MISSING, extract_budget_limit, extract_transaction
from ai.intents import (
    BUDGET_REMAINING,
    BUDGET_SET,
    BUDGET_VIEW,
    REPORT_DAILY,
    REPORT_MONTHLY,
    REPORT_WEEKLY,
    TRANSACTION_EXPENSE,
    TRANSACTION_INCOME,
    Classification,
    IntentClassifier,
)
from config import COMMAND_PREFIX
from models.budget import Alert
from models.session import ChatSession
from models.transaction import Transaction
from services.alerts import format_alert
from services.budget_service import BudgetService
from services.report_service import ReportService, local_today
from services.transaction_service import TransactionService
from utils.errors import BotBudgetError, NotFoundError
from utils.logger import get_logger
from utils.messages import format_money, t

logger = get_logger(__name__)


@dataclass
class DispatchResult:
    """
    Outcome of handling one message.

    Attributes:
        reply: Text to send back, or None to stay silent.
        alerts: Budget alerts the message triggered.
        error: Failure to record in the session's error log.
    """
    reply: Optional[str] = None
    alerts: list[Alert] = field(default_factory=list)
    error: Optional[BotBudgetError] = None


class IntentDispatcher:

    def __init__(
        self,
        classifier: IntentClassifier,
        transactions: Optional[TransactionService] = None,
        budgets: Optional[BudgetService] = None,
        reports: Optional[ReportService] = None,
        command_prefix: str = COMMAND_PREFIX,
    ):
        self.classifier = classifier
        self.transactions = transactions or TransactionService()
        self.budgets = budgets or BudgetService()
        self.reports = reports or ReportService()
        self.command_prefix = command_prefix
        self._routes: dict[str, Callable[[ChatSession, Classification, str], DispatchResult]] = {
            TRANSACTION_INCOME: self._record_transaction,
            TRANSACTION_EXPENSE: self._record_transaction,
            BUDGET_SET: self._set_budget,
            BUDGET_VIEW: self._view_budget,
            BUDGET_REMAINING: self._view_budget,
            REPORT_DAILY: self._report,
            REPORT_WEEKLY: self._report,
            REPORT_MONTHLY: self._report,
        }

    def handle(self, session: ChatSession, raw_text: str) -> Optional[str]:
        """Reply text for a message, or None when nothing should be sent."""
        return self.dispatch(session, raw_text).reply

    def dispatch(self, session: ChatSession, raw_text: str) -> DispatchResult:
        text = (raw_text or "").strip()
        if not text or text.startswith(self.command_prefix):
            return DispatchResult()

        language = session.language
        if not session.nlp.enabled:
            auto_reply = session.settings.auto_reply
            return DispatchResult(reply=auto_reply.message if auto_reply.enabled else None)

        try:
            result = self.classifier.classify(language, text, session.nlp.custom_phrases)
        except Exception as e:
            logger.error(f"Classifier failed for session #{session.id}: {e}")
            return DispatchResult(reply=t(language, "not_understood"))

        if result.error:
            logger.warning(f"Classifier error '{result.error}' for session #{session.id}")
        route = self._routes.get(result.intent)
        if route is None or result.confidence < session.nlp.confidence:
            return DispatchResult(reply=t(language, "not_understood"))

        try:
            return route(session, result, text)
        except Exception as e:
            logger.exception(f"Handling {result.intent} failed for session #{session.id}")
            error = e if isinstance(e, BotBudgetError) else BotBudgetError(str(e))
            error.context.update({"intent": result.intent, "text": text})
            return DispatchResult(reply=t(language, "processing_error"), error=error)

    # ── HANDLERS ──────────────────────────────────────────

    def _record_transaction(self, session: ChatSession, result: Classification, text: str) -> DispatchResult:
        language = session.language
        extraction = extract_transaction(result.entities, text, language)
        if not extraction.ok:
            return DispatchResult(reply=t(language, "amount_unparsed"))

        tx_type = "income" if result.intent == TRANSACTION_INCOME else "expense"
        tx = Transaction(
            user_id=session.user_id,
            type=tx_type,
            amount=extraction.entities.amount,
            category=extraction.entities.category,
            date=local_today(session.settings.timezone),
            description=text,
            source="chat",
            chat_handle=session.handle,
            status="completed",
        )
        created = self.transactions.create(tx)
        if not created.ok:
            created.error.context.update({"intent": result.intent, "text": text})
            return DispatchResult(reply=t(language, "transaction_failed"), error=created.error)

        saved = created.value
        alerts = created.warnings or []
        lines = [t(
            language, f"{tx_type}_recorded",
            amount=format_money(saved.signed_amount(), language, saved.currency, signed=True),
            category=saved.category,
        )]
        if session.settings.notifications.budget_alerts:
            lines.extend(format_alert(a, language) for a in alerts)
        return DispatchResult(reply="\n".join(lines), alerts=alerts)

    def _set_budget(self, session: ChatSession, result: Classification, text: str) -> DispatchResult:
        language = session.language
        extraction = extract_budget_limit(result.entities, text, language)
        if not extraction.ok:
            key = "category_missing" if extraction.error == CATEGORY_MISSING else "amount_unparsed"
            return DispatchResult(reply=t(language, key))

        category, limit = extraction.entities.category, extraction.entities.amount
        updated = self.budgets.set_category_limit(session.user_id, category, limit)
        if not updated.ok:
            if isinstance(updated.error, NotFoundError):
                return DispatchResult(reply=t(language, "no_active_budget"))
            return DispatchResult(reply=t(language, "processing_error"), error=updated.error)
        return DispatchResult(reply=t(
            language, "budget_set", category=category, budget=updated.value.name,
            amount=format_money(limit, language),
        ))

    def _view_budget(self, session: ChatSession, result: Classification, text: str) -> DispatchResult:
        return DispatchResult(reply=self.budgets.format_summary(
            session.user_id, session.language, remaining_only=result.intent == BUDGET_REMAINING
        ))

    def _report(self, session: ChatSession, result: Classification, text: str) -> DispatchResult:
        period = result.intent.split(".", 1)[1]
        return DispatchResult(reply=self.reports.period_report(
            session.user_id, period, session.language, session.settings.timezone
        ))
