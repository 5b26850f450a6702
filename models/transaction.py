"""
models/transaction.py
---------------------
Domain model for ledger transactions (expenses and income).
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Optional

from config import DEFAULT_CURRENCY

TRANSACTION_TYPES = ("income", "expense")
TRANSACTION_SOURCES = ("web", "chat")
TRANSACTION_STATUSES = ("pending", "completed", "cancelled")
ATTACHMENT_KINDS = ("image", "document")
RECURRENCE_FREQUENCIES = ("daily", "weekly", "monthly", "yearly")

UNCATEGORIZED = "uncategorized"


def normalize_category(name: Optional[str]) -> str:
    """Trim and lower-case a category name; empty names become 'uncategorized'."""
    cleaned = (name or "").strip().lower()
    return cleaned or UNCATEGORIZED


@dataclass
class Attachment:
    kind: str  # 'image' | 'document'
    url: str
    name: Optional[str] = None


@dataclass
class TransactionRecurrence:
    is_recurring: bool = False
    frequency: Optional[str] = None  # 'daily' | 'weekly' | 'monthly' | 'yearly'
    end_date: Optional[date] = None


@dataclass
class Transaction:
    """
    Represents a single ledger entry.

    Attributes:
        id: Database primary key (None for new records).
        user_id: Owning user.
        type: Either 'expense' or 'income'.
        amount: Integer amount in minor units of `currency`.
        category: Normalized category name.
        description: Optional human-readable note (the raw message for chat entries).
        date: Date of the transaction.
        source: 'web' or 'chat'.
        chat_handle: Handle the entry arrived from, for chat entries.
        status: 'pending', 'completed' or 'cancelled'.
        location: Optional (latitude, longitude) pair.
    """
    user_id: int
    type: str  # 'expense' | 'income'
    amount: int
    category: str
    date: date = field(default_factory=date.today)
    currency: str = DEFAULT_CURRENCY
    description: Optional[str] = None
    source: str = "web"
    chat_handle: Optional[str] = None
    status: str = "completed"
    tags: list[str] = field(default_factory=list)
    attachments: list[Attachment] = field(default_factory=list)
    location: Optional[tuple[float, float]] = None
    recurrence: TransactionRecurrence = field(default_factory=TransactionRecurrence)
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_expense(self) -> bool:
        return self.type == "expense"

    def counts_toward_budget(self) -> bool:
        """Only completed expenses are reflected in budget spend."""
        return self.is_expense() and self.status == "completed"

    def signed_amount(self) -> int:
        return -self.amount if self.is_expense() else self.amount

    def copy(self, **changes) -> "Transaction":
        return replace(self, **changes)

    def __str__(self) -> str:
        sign = "-" if self.is_expense() else "+"
        return f"{sign}{self.amount} {self.currency} | {self.category} | {self.date}"
