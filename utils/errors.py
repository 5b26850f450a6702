"""
utils/errors.py
---------------
Exception taxonomy shared by repositories, services and the session layer.

Services raise these internally; the public service operations convert them into
``Result`` objects so callers never depend on exception-based control flow.
"""

from typing import Any, Optional


class BotBudgetError(Exception):
    """Base class for every domain error."""

    code = "error"

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}


class ValidationError(BotBudgetError):
    """Malformed input: totals that don't add up, bad amounts, bad handles."""

    code = "validation_error"


class NotFoundError(BotBudgetError):
    """A session, budget or transaction does not exist (for this user)."""

    code = "not_found"


class QuotaExceeded(BotBudgetError):
    """The user already registered as many chat handles as allowed."""

    code = "quota_exceeded"


class DuplicateHandle(BotBudgetError):
    """The chat handle is already registered."""

    code = "duplicate_handle"


class TransportError(BotBudgetError):
    """A chat channel or the data store could not be reached or written."""

    code = "transport_error"


class ConsistencyConflict(BotBudgetError):
    """An atomic budget update was rejected by the store."""

    code = "consistency_conflict"
