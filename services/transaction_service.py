"""
services/transaction_service.py
-------------------------------
Business logic for recording, editing and deleting ledger transactions.
Orchestrates between the TransactionRepository and the ledger engine so
budget spend follows every write.
"""

from datetime import date
from typing import Optional

from models.session import is_valid_handle
from models.transaction import (
    ATTACHMENT_KINDS,
    RECURRENCE_FREQUENCIES,
    TRANSACTION_SOURCES,
    TRANSACTION_STATUSES,
    TRANSACTION_TYPES,
    Transaction,
    normalize_category,
)
from repositories.transaction_repo import TransactionRepository
from services.ledger_engine import LedgerConsistencyEngine
from utils.errors import BotBudgetError, NotFoundError, TransportError, ValidationError
from utils.logger import get_logger
from utils.result import Result

logger = get_logger(__name__)

_EDITABLE = {
    "type", "amount", "category", "date", "currency", "description",
    "status", "tags", "attachments", "location", "recurrence",
}


def validate_transaction(tx: Transaction) -> None:
    """Raise ValidationError for a malformed transaction."""
    if tx.type not in TRANSACTION_TYPES:
        raise ValidationError(f"Unknown transaction type '{tx.type}'", {"type": tx.type})
    if not isinstance(tx.amount, int) or isinstance(tx.amount, bool) or tx.amount < 0:
        raise ValidationError("Amount must be a non-negative integer", {"amount": tx.amount})
    if tx.source not in TRANSACTION_SOURCES:
        raise ValidationError(f"Unknown source '{tx.source}'", {"source": tx.source})
    if tx.status not in TRANSACTION_STATUSES:
        raise ValidationError(f"Unknown status '{tx.status}'", {"status": tx.status})
    if tx.chat_handle is not None and not is_valid_handle(tx.chat_handle):
        raise ValidationError("Invalid chat handle", {"chat_handle": tx.chat_handle})
    for attachment in tx.attachments:
        if attachment.kind not in ATTACHMENT_KINDS:
            raise ValidationError(f"Unknown attachment kind '{attachment.kind}'")
    if tx.recurrence.is_recurring and tx.recurrence.frequency not in RECURRENCE_FREQUENCIES:
        raise ValidationError(
            "Recurring transactions need a frequency",
            {"frequency": tx.recurrence.frequency},
        )


def _store_error(error: Exception, action: str, tx_id: Optional[int]) -> BotBudgetError:
    """Map a repository failure onto the domain taxonomy."""
    if isinstance(error, BotBudgetError):
        error.context.setdefault("id", tx_id)
        return error
    return TransportError(f"Could not {action} transaction: {error}", {"id": tx_id})


class TransactionService:
    """
    Handles all business logic related to ledger transactions.

    Workflow for every write:
        1. Validate the transaction.
        2. Persist via the repository.
        3. Reflect completed expenses in budget spend via the ledger engine.
        4. Return a Result carrying any budget alerts as warnings.
    """

    def __init__(
        self,
        repo: Optional[TransactionRepository] = None,
        engine: Optional[LedgerConsistencyEngine] = None,
    ):
        self.repo = repo or TransactionRepository()
        self.engine = engine or LedgerConsistencyEngine(transaction_repo=self.repo)

    def create(self, tx: Transaction) -> Result[Transaction]:
        """
        Record a new transaction.

        Returns:
            Result with the saved transaction; warnings hold triggered Alerts.
        """
        tx.category = normalize_category(tx.category)
        try:
            validate_transaction(tx)
        except ValidationError as e:
            return Result.failure(e)
        try:
            saved = self.repo.add(tx)
        except Exception as e:
            logger.error(f"Failed to record transaction for user {tx.user_id}: {e}")
            return Result.failure(_store_error(e, "record", tx.id))

        logger.info(f"Recorded {saved.type} #{saved.id} for user {saved.user_id}: {saved}")
        if not saved.counts_toward_budget():
            return Result.success(saved)
        try:
            alerts = self.engine.apply_delta(saved.user_id, saved.category, saved.amount)
        except BotBudgetError as e:
            e.context.setdefault("transaction_id", saved.id)
            logger.error(f"Budget update failed for transaction #{saved.id}, discarding it: {e}")
            # A failed spend update must not leave the row behind.
            try:
                self.repo.delete(saved.id, saved.user_id)
            except Exception as cleanup_error:
                logger.error(f"Could not discard transaction #{saved.id}: {cleanup_error}")
            return Result.failure(e)
        return Result.success(saved, warnings=alerts)

    def edit(self, tx_id: int, user_id: int, **changes) -> Result[Transaction]:
        """
        Change fields of an existing transaction.

        A completed expense is first reversed from its old category, then the
        new version is applied, so any combination of amount, category, type
        and status changes leaves budget spend consistent.
        """
        unknown = set(changes) - _EDITABLE
        if unknown:
            return Result.failure(ValidationError(f"Fields not editable: {sorted(unknown)}"))

        old = self.repo.get_by_id(tx_id, user_id)
        if old is None:
            return Result.failure(NotFoundError(f"Transaction #{tx_id} not found", {"id": tx_id}))

        if "category" in changes:
            changes["category"] = normalize_category(changes["category"])
        updated = old.copy(**changes)
        try:
            validate_transaction(updated)
            if old.counts_toward_budget():
                self.engine.apply_delta(user_id, old.category, -old.amount)
        except BotBudgetError as e:
            logger.error(f"Failed to edit transaction #{tx_id}: {e}")
            return Result.failure(e)

        try:
            self.repo.update(updated)
        except Exception as e:
            logger.error(f"Failed to store edit of transaction #{tx_id}: {e}")
            self._restore_spend(old)
            return Result.failure(_store_error(e, "update", tx_id))

        alerts = []
        if updated.counts_toward_budget():
            try:
                alerts = self.engine.apply_delta(user_id, updated.category, updated.amount)
            except BotBudgetError as e:
                logger.error(f"Budget update failed for edited transaction #{tx_id}, reverting: {e}")
                try:
                    self.repo.update(old)
                except Exception as revert_error:
                    logger.error(f"Could not revert transaction #{tx_id}: {revert_error}")
                else:
                    self._restore_spend(old)
                return Result.failure(e)

        logger.info(f"Edited transaction #{tx_id}: {old} → {updated}")
        return Result.success(updated, warnings=alerts)

    def delete(self, tx_id: int, user_id: int) -> Result[bool]:
        """Delete a transaction, reversing its spend first when it counted."""
        tx = self.repo.get_by_id(tx_id, user_id)
        if tx is None:
            return Result.failure(NotFoundError(f"Transaction #{tx_id} not found", {"id": tx_id}))
        try:
            if tx.counts_toward_budget():
                self.engine.apply_delta(user_id, tx.category, -tx.amount)
        except BotBudgetError as e:
            return Result.failure(e)
        try:
            self.repo.delete(tx_id, user_id)
        except Exception as e:
            logger.error(f"Failed to delete transaction #{tx_id}: {e}")
            self._restore_spend(tx)
            return Result.failure(_store_error(e, "delete", tx_id))
        logger.info(f"Deleted transaction #{tx_id} for user {user_id}")
        return Result.success(True)

    def _restore_spend(self, tx: Transaction) -> None:
        """Re-apply the spend of a transaction whose reversal was not followed by a write."""
        if not tx.counts_toward_budget():
            return
        try:
            self.engine.apply_delta(tx.user_id, tx.category, tx.amount)
        except BotBudgetError as e:
            logger.error(f"Could not restore spend of transaction #{tx.id}, reconcile needed: {e}")

    def get(self, tx_id: int, user_id: int) -> Result[Transaction]:
        tx = self.repo.get_by_id(tx_id, user_id)
        if tx is None:
            return Result.failure(NotFoundError(f"Transaction #{tx_id} not found", {"id": tx_id}))
        return Result.success(tx)

    def list_transactions(
        self,
        user_id: int,
        start: Optional[date] = None,
        end: Optional[date] = None,
        tx_type: Optional[str] = None,
        category: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Result[list[Transaction]]:
        """One page of a user's transactions, newest first."""
        if page < 1 or limit < 1:
            return Result.failure(ValidationError("page and limit must be positive"))
        items = self.repo.find(
            user_id, start=start, end=end, tx_type=tx_type,
            category=normalize_category(category) if category else None,
            status=status, limit=limit, offset=(page - 1) * limit,
        )
        return Result.success(items)

    def summary(self, user_id: int, start: date, end: date) -> Result[dict]:
        """
        Income, expense and net totals plus per-category breakdowns.

        Returns:
            Result with {'income', 'expense', 'net', 'expense_by_category', 'income_by_category'}.
        """
        if start > end:
            return Result.failure(ValidationError("start must not be after end"))
        totals = self.repo.get_totals_by_type(user_id, start, end)
        return Result.success({
            "income": totals["income"],
            "expense": totals["expense"],
            "net": totals["income"] - totals["expense"],
            "expense_by_category": self.repo.get_category_summary(user_id, "expense", start, end),
            "income_by_category": self.repo.get_category_summary(user_id, "income", start, end),
        })
