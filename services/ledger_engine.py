"""
services/ledger_engine.py
-------------------------
Keeps budget spend aggregates in step with the transaction ledger.

Every change goes through BudgetRepository.atomic_increment, so concurrent
writers on the same budget commute and none of their deltas is lost. The
engine never reads a spend figure, adds to it in Python and writes it back.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

import psycopg2

from models.budget import Alert, Budget
from repositories.budget_repo import BudgetRepository
from repositories.transaction_repo import TransactionRepository
from services.alerts import evaluate_budget
from utils.errors import ConsistencyConflict, TransportError
from utils.logger import get_logger

logger = get_logger(__name__)

_STORE_ERRORS = (psycopg2.OperationalError, psycopg2.InterfaceError)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerConsistencyEngine:
    """
    Applies signed spend deltas to every active budget covering a category.

    A budget is active for a delta when its status is 'active' and its window
    contains the moment the delta is applied (not the transaction's date).
    """

    def __init__(
        self,
        budget_repo: Optional[BudgetRepository] = None,
        transaction_repo: Optional[TransactionRepository] = None,
        clock: Callable[[], datetime] = utcnow,
        retries: int = 1,
    ):
        self.budget_repo = budget_repo or BudgetRepository()
        self.transaction_repo = transaction_repo or TransactionRepository()
        self.clock = clock
        self.retries = retries

    def apply_delta(self, user_id: int, category: str, amount: int) -> list[Alert]:
        """
        Add `amount` (negative to reverse) to `category` in each active budget.

        Budgets without a line for the category are left untouched.

        Returns:
            Alerts raised by the updated budgets, evaluated on the figures the
            atomic update returned.

        Raises:
            ConsistencyConflict: The store rejected the update twice.
            TransportError: The store was unreachable twice.
        """
        if amount == 0:
            return []

        alerts: list[Alert] = []
        for budget in self.budget_repo.find_active(user_id, self.clock()):
            line = budget.find_category(category)
            if line is None:
                continue
            line.spent, budget.total_spent = self._increment(budget, line.name, amount)
            logger.info(
                f"Budget #{budget.id} '{line.name}' {amount:+d} → "
                f"{line.spent}/{line.limit} (total {budget.total_spent}/{budget.total_budget})"
            )
            alerts.extend(evaluate_budget(budget, only_category=line.name))
        return alerts

    def _increment(self, budget: Budget, category: str, amount: int) -> tuple[int, int]:
        attempt = 0
        while True:
            try:
                return self.budget_repo.atomic_increment(budget.id, category, amount, amount)
            except ConsistencyConflict:
                if attempt >= self.retries:
                    raise
            except _STORE_ERRORS as e:
                if attempt >= self.retries:
                    raise TransportError(
                        f"Ledger store unreachable: {e}",
                        {"budget_id": budget.id, "category": category, "amount": amount},
                    ) from e
            attempt += 1
            logger.warning(f"Retrying increment on budget #{budget.id} '{category}'")

    # ── RECONCILIATION ────────────────────────────────────

    def reconcile(
        self, user_id: int, budget_id: Optional[int] = None, repair: bool = False
    ) -> list[dict]:
        """
        Compare stored spend with a recomputation from completed expenses.

        Each category line should equal the sum of the user's completed
        expenses in that category dated within the budget's window, and the
        budget total should equal the sum of its lines.

        Args:
            budget_id: Check only this budget; otherwise every 'active' budget.
            repair: Overwrite drifted figures with the recomputed ones.

        Returns:
            One dict per drifted budget:
            {'budget_id', 'categories': {name: (stored, expected)}, 'total': (stored, expected)}.
        """
        if budget_id is not None:
            budget = self.budget_repo.get_by_id(budget_id, user_id)
            budgets = [budget] if budget else []
        else:
            budgets = self.budget_repo.find(user_id, status="active")

        drifts = []
        for budget in budgets:
            sums = {
                row["category"]: row["total"]
                for row in self.transaction_repo.get_category_summary(
                    user_id, "expense", budget.start_date.date(), budget.end_date.date()
                )
            }
            expected = {c.name: sums.get(c.name, 0) for c in budget.categories}
            drifted = {
                c.name: (c.spent, expected[c.name])
                for c in budget.categories
                if c.spent != expected[c.name]
            }
            expected_total = sum(expected.values())
            if not drifted and budget.total_spent == expected_total:
                continue

            logger.warning(f"Budget #{budget.id} drifted: {drifted} total {budget.total_spent}/{expected_total}")
            drifts.append({
                "budget_id": budget.id,
                "categories": drifted,
                "total": (budget.total_spent, expected_total),
            })
            if repair:
                self.budget_repo.overwrite_spent(budget.id, expected)
        return drifts
