"""
services/budget_service.py
---------------------------
Business logic for budgets: definition, category limits, summaries, alerts
and renewal of recurring budgets.

Spend figures are never written here; they move only through the ledger
engine. Writes that touch limits keep `total_budget == Σ category limits`.
"""

from datetime import datetime
from typing import Optional

from dateutil.relativedelta import relativedelta

from models.budget import (
    BUDGET_PERIODS,
    BUDGET_STATUSES,
    NOTIFICATION_FREQUENCIES,
    RENEWAL_FREQUENCIES,
    Alert,
    Budget,
    BudgetCategory,
)
from repositories.budget_repo import BudgetRepository
from repositories.transaction_repo import TransactionRepository
from services.alerts import evaluate_budget, percentage_used
from services.ledger_engine import utcnow
from utils.errors import BotBudgetError, NotFoundError, ValidationError
from utils.logger import get_logger
from utils.messages import format_money, t
from utils.result import Result

logger = get_logger(__name__)

_RENEWAL_STEPS = {
    "weekly": relativedelta(weeks=1),
    "monthly": relativedelta(months=1),
    "yearly": relativedelta(years=1),
}

_EDITABLE = {
    "name", "period", "start_date", "end_date", "categories", "total_budget",
    "status", "notifications", "is_recurring", "recurring", "notes",
}


def validate_budget(budget: Budget) -> None:
    """Raise ValidationError unless the budget definition is consistent."""
    if not budget.name or not budget.name.strip():
        raise ValidationError("Budget name is required")
    if budget.period not in BUDGET_PERIODS:
        raise ValidationError(f"Unknown period '{budget.period}'", {"period": budget.period})
    if budget.status not in BUDGET_STATUSES:
        raise ValidationError(f"Unknown status '{budget.status}'", {"status": budget.status})
    if budget.start_date > budget.end_date:
        raise ValidationError("start_date must not be after end_date")
    if budget.notifications.frequency not in NOTIFICATION_FREQUENCIES:
        raise ValidationError(f"Unknown notification frequency '{budget.notifications.frequency}'")
    if budget.is_recurring and (
        budget.recurring is None or budget.recurring.frequency not in RENEWAL_FREQUENCIES
    ):
        raise ValidationError("Recurring budgets need a weekly, monthly or yearly frequency")

    seen = set()
    for category in budget.categories:
        if category.name in seen:
            raise ValidationError(f"Duplicate category '{category.name}'", {"category": category.name})
        seen.add(category.name)
        if category.limit < 0:
            raise ValidationError(f"Negative limit for '{category.name}'", {"category": category.name})
        if not 0 <= category.notifications.threshold <= 100:
            raise ValidationError(
                f"Threshold for '{category.name}' must be between 0 and 100",
                {"threshold": category.notifications.threshold},
            )

    if budget.total_budget != budget.limits_total():
        raise ValidationError(
            "Total budget must equal the sum of category limits",
            {"total_budget": budget.total_budget, "sum_of_limits": budget.limits_total()},
        )


class BudgetService:
    """Manages budgets, their category limits and the alerts they raise."""

    def __init__(
        self,
        budget_repo: Optional[BudgetRepository] = None,
        transaction_repo: Optional[TransactionRepository] = None,
    ):
        self.budget_repo = budget_repo or BudgetRepository()
        self.transaction_repo = transaction_repo or TransactionRepository()

    # ── CRUD ──────────────────────────────────────────────

    def create(self, budget: Budget) -> Result[Budget]:
        """Create a budget; spend always starts at zero."""
        for category in budget.categories:
            category.spent = 0
        budget.total_spent = 0
        try:
            validate_budget(budget)
            saved = self.budget_repo.add(budget)
        except BotBudgetError as e:
            return Result.failure(e)
        logger.info(f"Created budget #{saved.id} '{saved.name}' for user {saved.user_id}")
        return Result.success(saved)

    def update(self, budget_id: int, user_id: int, **changes) -> Result[Budget]:
        """
        Change a budget's definition.

        Category lines are matched by name, so an existing line keeps its
        spend when only its limit or colour changes.
        """
        unknown = set(changes) - _EDITABLE
        if unknown:
            return Result.failure(ValidationError(f"Fields not editable: {sorted(unknown)}"))
        budget = self.budget_repo.get_by_id(budget_id, user_id)
        if budget is None:
            return Result.failure(NotFoundError(f"Budget #{budget_id} not found", {"id": budget_id}))

        if "categories" in changes:
            current = {c.name: c.spent for c in budget.categories}
            categories = []
            for category in changes.pop("categories"):
                category.spent = current.get(category.name, 0)
                categories.append(category)
            budget.categories = categories
            budget.total_spent = budget.spent_total()
        for name, value in changes.items():
            setattr(budget, name, value)

        try:
            validate_budget(budget)
            self.budget_repo.update(budget)
        except BotBudgetError as e:
            return Result.failure(e)
        logger.info(f"Updated budget #{budget_id}")
        return Result.success(budget)

    def delete(self, budget_id: int, user_id: int) -> Result[bool]:
        if not self.budget_repo.delete(budget_id, user_id):
            return Result.failure(NotFoundError(f"Budget #{budget_id} not found", {"id": budget_id}))
        logger.info(f"Deleted budget #{budget_id} for user {user_id}")
        return Result.success(True)

    def get(self, budget_id: int, user_id: int) -> Result[dict]:
        """A budget together with the transactions dated inside its window."""
        budget = self.budget_repo.get_by_id(budget_id, user_id)
        if budget is None:
            return Result.failure(NotFoundError(f"Budget #{budget_id} not found", {"id": budget_id}))
        transactions = self.transaction_repo.find(
            user_id, start=budget.start_date.date(), end=budget.end_date.date()
        )
        return Result.success({"budget": budget, "transactions": transactions})

    def list_budgets(self, user_id: int, status: Optional[str] = None) -> Result[list[Budget]]:
        if status is not None and status not in BUDGET_STATUSES:
            return Result.failure(ValidationError(f"Unknown status '{status}'"))
        return Result.success(self.budget_repo.find(user_id, status=status))

    def set_category_limit(self, user_id: int, category: str, limit: int) -> Result[Budget]:
        """
        Set one category's limit on the user's current budget.

        The line is created when missing and the budget total is re-derived
        from the limits.
        """
        if limit < 0:
            return Result.failure(ValidationError("Limit must not be negative", {"limit": limit}))
        active = self.budget_repo.find_active(user_id, utcnow())
        if not active:
            return Result.failure(NotFoundError("No active budget", {"user_id": user_id}))
        budget = active[0]
        self.budget_repo.upsert_category_limit(budget.id, category, limit)
        logger.info(f"Budget #{budget.id}: limit for '{category}' set to {limit}")
        return Result.success(self.budget_repo.get_by_id(budget.id, user_id))

    # ── READ PATHS ────────────────────────────────────────

    def summary(self, user_id: int) -> Result[list[dict]]:
        """
        Totals and per-category figures of each active budget.

        Returns:
            Result with one dict per budget:
            {'budget', 'total_budget', 'total_spent', 'remaining', 'percentage', 'categories': [...]}.
        """
        summaries = []
        for budget in self.budget_repo.find_active(user_id, utcnow()):
            summaries.append({
                "budget": budget,
                "total_budget": budget.total_budget,
                "total_spent": budget.total_spent,
                "remaining": budget.remaining,
                "percentage": percentage_used(budget.total_spent, budget.total_budget),
                "categories": [
                    {
                        "name": c.name,
                        "limit": c.limit,
                        "spent": c.spent,
                        "remaining": c.remaining,
                        "percentage": percentage_used(c.spent, c.limit),
                    }
                    for c in budget.categories
                ],
            })
        return Result.success(summaries)

    def get_alerts(self, user_id: int) -> Result[list[Alert]]:
        """Every alert the user's active budgets currently raise."""
        alerts = []
        for budget in self.budget_repo.find_active(user_id, utcnow()):
            alerts.extend(evaluate_budget(budget))
        return Result.success(alerts)

    def format_summary(self, user_id: int, language: str, remaining_only: bool = False) -> str:
        """Chat rendering of the active budgets."""
        budgets = self.budget_repo.find_active(user_id, utcnow())
        if not budgets:
            return t(language, "no_active_budget")

        blocks = []
        for b in budgets:
            lines = [t(
                language, "budget_header", name=b.name,
                start=b.start_date.date().isoformat(), end=b.end_date.date().isoformat(),
            )]
            if remaining_only:
                lines.append(t(language, "budget_remaining", remaining=format_money(b.remaining, language)))
                for c in b.categories:
                    lines.append(f"  • {c.name}: {format_money(c.remaining, language)}")
            else:
                pct = percentage_used(b.total_spent, b.total_budget)
                lines.append(t(
                    language, "budget_total",
                    spent=format_money(b.total_spent, language),
                    limit=format_money(b.total_budget, language),
                    pct=min(pct, 999),
                ))
                lines.append(f"  {self._progress_bar(pct)}")
                for c in b.categories:
                    c_pct = percentage_used(c.spent, c.limit)
                    lines.append(t(
                        language, "budget_line", icon=self._status_icon(c_pct),
                        category=c.name, spent=format_money(c.spent, language),
                        limit=format_money(c.limit, language), pct=min(c_pct, 999),
                    ))
            blocks.append("\n".join(lines))
        return "\n\n".join(blocks)

    # ── RENEWAL ───────────────────────────────────────────

    def renew_expired(self, now: Optional[datetime] = None) -> list[Budget]:
        """
        Roll elapsed recurring budgets over to their next window.

        The elapsed budget is marked 'completed'; with auto-renew on, a copy
        with the same limits and zero spend starts where the old window ended.

        Returns:
            The newly created budgets.
        """
        now = now or utcnow()
        created = []
        for old in self.budget_repo.find_renewable(now):
            self.budget_repo.set_status(old.id, "completed")
            if not (old.recurring and old.recurring.auto_renew):
                logger.info(f"Budget #{old.id} completed without renewal")
                continue
            step = _RENEWAL_STEPS[old.recurring.frequency]
            start, end = old.start_date + step, old.end_date + step
            while end < now:
                start, end = start + step, end + step
            renewed = Budget(
                user_id=old.user_id,
                name=old.name,
                period=old.period,
                start_date=start,
                end_date=end,
                categories=[
                    BudgetCategory(
                        name=c.name, limit=c.limit, color=c.color, notifications=c.notifications
                    )
                    for c in old.categories
                ],
                total_budget=old.limits_total(),
                notifications=old.notifications,
                is_recurring=True,
                recurring=old.recurring,
                notes=old.notes,
            )
            created.append(self.budget_repo.add(renewed))
            logger.info(f"Renewed budget #{old.id} as #{created[-1].id} ({start.date()} → {end.date()})")
        return created

    @staticmethod
    def _status_icon(pct: float) -> str:
        if pct >= 100:
            return "🔴"
        if pct >= 80:
            return "🟡"
        return "🟢"

    @staticmethod
    def _progress_bar(pct: float, length: int = 15) -> str:
        """Generate a text progress bar."""
        filled = int(min(pct, 100) / 100 * length)
        empty = length - filled
        if pct >= 100:
            return "█" * length + " ⚠️"
        elif pct >= 80:
            return "█" * filled + "░" * empty + " ⚡"
        else:
            return "█" * filled + "░" * empty
