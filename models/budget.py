"""
models/budget.py
----------------
Domain model for budgets, their category lines and the alerts they raise.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from config import DEFAULT_CATEGORY_THRESHOLD
from models.transaction import normalize_category

BUDGET_PERIODS = ("daily", "weekly", "monthly", "yearly", "custom")
BUDGET_STATUSES = ("active", "completed", "cancelled")
NOTIFICATION_FREQUENCIES = ("daily", "weekly", "monthly", "never")
RENEWAL_FREQUENCIES = ("weekly", "monthly", "yearly")


@dataclass
class CategoryNotification:
    enabled: bool = True
    threshold: float = DEFAULT_CATEGORY_THRESHOLD  # percent, 0..100


@dataclass
class BudgetCategory:
    """One category line of a budget. `limit` and `spent` are minor units."""
    name: str
    limit: int
    spent: int = 0
    color: str = "#000000"
    notifications: CategoryNotification = field(default_factory=CategoryNotification)

    def __post_init__(self) -> None:
        self.name = normalize_category(self.name)

    @property
    def remaining(self) -> int:
        return self.limit - self.spent

    def matches(self, category: str) -> bool:
        return self.name == normalize_category(category)


@dataclass
class NotificationChannels:
    chat: bool = True
    email: bool = False


@dataclass
class BudgetNotifications:
    enabled: bool = True
    frequency: str = "weekly"  # 'daily' | 'weekly' | 'monthly' | 'never'
    channels: NotificationChannels = field(default_factory=NotificationChannels)


@dataclass
class RecurringConfig:
    frequency: str = "monthly"  # 'weekly' | 'monthly' | 'yearly'
    auto_renew: bool = True


@dataclass
class Budget:
    """
    A spending plan over a date window.

    `total_budget` must equal the sum of category limits whenever the budget is
    written; `total_spent` and each `category.spent` are moved by atomic
    increments only (see services.ledger_engine).
    """
    user_id: int
    name: str
    period: str  # 'daily' | 'weekly' | 'monthly' | 'yearly' | 'custom'
    start_date: datetime
    end_date: datetime
    categories: list[BudgetCategory] = field(default_factory=list)
    total_budget: int = 0
    total_spent: int = 0
    status: str = "active"
    notifications: BudgetNotifications = field(default_factory=BudgetNotifications)
    is_recurring: bool = False
    recurring: Optional[RecurringConfig] = None
    notes: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.status == "active" and self.start_date <= now <= self.end_date

    def find_category(self, name: str) -> Optional[BudgetCategory]:
        for category in self.categories:
            if category.matches(name):
                return category
        return None

    def limits_total(self) -> int:
        return sum(c.limit for c in self.categories)

    def spent_total(self) -> int:
        return sum(c.spent for c in self.categories)

    @property
    def remaining(self) -> int:
        return self.total_budget - self.total_spent


@dataclass
class Alert:
    """A threshold crossing on a budget ('overall') or one of its categories."""
    type: str  # 'overall' | 'category'
    budget_id: Optional[int]
    budget_name: str
    percentage: float
    severity: str  # 'medium' | 'high'
    category: Optional[str] = None

    @property
    def message(self) -> str:
        if self.type == "overall":
            return f"Overall budget is at {self.percentage:.1f}%"
        return f"Category {self.category} is at {self.percentage:.1f}%"
