"""
utils/result.py
---------------
Typed outcome returned by public service operations.
"""

from dataclasses import dataclass
from typing import Any, Generic, Optional, TypeVar

from utils.errors import BotBudgetError

T = TypeVar("T")


@dataclass
class Result(Generic[T]):
    """
    Either a value or a domain error, never both.

    Attributes:
        value: The operation's payload when it succeeded.
        error: The domain error when it failed.
        warnings: Non-fatal notes (e.g. budget alerts raised by a write).
    """
    value: Optional[T] = None
    error: Optional[BotBudgetError] = None
    warnings: Optional[list[Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None, warnings: Optional[list[Any]] = None) -> "Result[T]":
        return cls(value=value, warnings=warnings or [])

    @classmethod
    def failure(cls, error: BotBudgetError) -> "Result[T]":
        return cls(error=error, warnings=[])
