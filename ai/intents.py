"""
ai/intents.py
-------------
Intent labels and the classifier contract shared by the dispatcher and the
Gemini adapter.
"""

from dataclasses import dataclass, field
from typing import Optional, Protocol, Sequence

from models.session import CustomPhrase

TRANSACTION_INCOME = "transaction.income"
TRANSACTION_EXPENSE = "transaction.expense"
BUDGET_SET = "budget.set"
BUDGET_VIEW = "budget.view"
BUDGET_REMAINING = "budget.remaining"
REPORT_DAILY = "report.daily"
REPORT_WEEKLY = "report.weekly"
REPORT_MONTHLY = "report.monthly"

KNOWN_INTENTS = (
    TRANSACTION_INCOME,
    TRANSACTION_EXPENSE,
    BUDGET_SET,
    BUDGET_VIEW,
    BUDGET_REMAINING,
    REPORT_DAILY,
    REPORT_WEEKLY,
    REPORT_MONTHLY,
)


@dataclass
class Classification:
    """
    What the classifier made of a message.

    Attributes:
        intent: One of KNOWN_INTENTS, or None when nothing matched.
        confidence: 0..1.
        entities: Raw extracted strings, e.g. {'amount': '50.000', 'category': 'food'}.
        error: Set when the classifier itself failed ('api_error', 'parse_failed').
    """
    intent: Optional[str]
    confidence: float = 0.0
    entities: dict[str, str] = field(default_factory=dict)
    error: Optional[str] = None


class IntentClassifier(Protocol):
    def classify(
        self, locale: str, text: str, custom_phrases: Sequence[CustomPhrase] = ()
    ) -> Classification:
        ...
