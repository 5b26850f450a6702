"""
services/report_service.py
--------------------------
Daily, weekly and monthly spending reports rendered for chat.
"""

from datetime import date, datetime, timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from config import DEFAULT_TIMEZONE
from repositories.transaction_repo import TransactionRepository
from utils.logger import get_logger
from utils.messages import format_money, t

logger = get_logger(__name__)

REPORT_PERIODS = ("daily", "weekly", "monthly")


def period_window(period: str, today: date) -> tuple[date, date]:
    """
    Inclusive date window for a report period ending today.

    'weekly' is the last 7 days, 'monthly' the current calendar month so far.
    """
    if period == "daily":
        return today, today
    if period == "weekly":
        return today - timedelta(days=6), today
    if period == "monthly":
        return today.replace(day=1), today
    raise ValueError(f"Unknown report period '{period}'")


def local_today(timezone: str = DEFAULT_TIMEZONE) -> date:
    return datetime.now(ZoneInfo(timezone)).date()


class ReportService:
    """Builds per-period income/expense reports from the transaction ledger."""

    def __init__(self, repo: Optional[TransactionRepository] = None):
        self.repo = repo or TransactionRepository()

    def period_report(
        self,
        user_id: int,
        period: str,
        language: str,
        timezone: str = DEFAULT_TIMEZONE,
        today: Optional[date] = None,
    ) -> str:
        """
        Render one report.

        Args:
            period: 'daily', 'weekly' or 'monthly'.
            timezone: The session's timezone; "today" is computed there.
            today: Override for the reference date.
        """
        today = today or local_today(timezone)
        start, end = period_window(period, today)
        period_label = t(language, f"period_{period}")

        totals = self.repo.get_totals_by_type(user_id, start, end)
        if not totals["income"] and not totals["expense"]:
            return t(language, "report_empty", period=period_label)

        lines = [
            t(language, "report_header", period=period_label,
              start=start.isoformat(), end=end.isoformat()),
            "",
            t(language, "report_income", amount=format_money(totals["income"], language)),
            t(language, "report_expense", amount=format_money(totals["expense"], language)),
            t(language, "report_net", amount=format_money(
                totals["income"] - totals["expense"], language, signed=True
            )),
        ]

        categories = self.repo.get_category_summary(user_id, "expense", start, end)
        if categories:
            lines.append("")
            lines.append(t(language, "report_categories"))
            for cat in categories:
                pct = (cat["total"] / totals["expense"] * 100) if totals["expense"] > 0 else 0
                lines.append(t(
                    language, "report_category_line", category=cat["category"],
                    amount=format_money(cat["total"], language), pct=pct,
                ))

        logger.info(f"Built {period} report for user {user_id} ({start} → {end})")
        return "\n".join(lines)
