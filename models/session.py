"""
models/session.py
-----------------
Domain model for per-user chat sessions and the users that own them.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from config import (
    DEFAULT_LANGUAGE,
    DEFAULT_TIMEZONE,
    MAX_CHAT_HANDLES,
    NLP_CONFIDENCE_THRESHOLD,
)

SESSION_STATUSES = ("inactive", "pending", "active", "expired")
QUEUE_STATUSES = ("pending", "sent", "failed")
USER_ROLES = ("user", "admin")

# Chat handles are international phone numbers without the leading '+'.
HANDLE_PATTERN = re.compile(r"^\d{10,15}$")


def is_valid_handle(handle: str) -> bool:
    return bool(handle) and bool(HANDLE_PATTERN.match(handle))


@dataclass
class ChatHandle:
    handle: str
    is_active: bool = True
    last_active: Optional[datetime] = None


@dataclass
class User:
    """
    Account that owns transactions, budgets and chat sessions.

    Invariant: len(handles) <= max_handles.
    """
    username: str
    role: str = "user"  # 'user' | 'admin'
    handles: list[ChatHandle] = field(default_factory=list)
    max_handles: int = MAX_CHAT_HANDLES
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def can_add_handle(self) -> bool:
        return len(self.handles) < self.max_handles

    def has_handle(self, handle: str) -> bool:
        return any(h.handle == handle for h in self.handles)


@dataclass
class AutoReply:
    enabled: bool = False
    message: str = (
        "Terima kasih atas pesannya. Saya akan memproses transaksi keuangan Anda segera."
    )


@dataclass
class NotificationSettings:
    budget_alerts: bool = True
    daily_summary: bool = False
    weekly_report: bool = True


@dataclass
class SessionSettings:
    auto_reply: AutoReply = field(default_factory=AutoReply)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    language: str = DEFAULT_LANGUAGE  # 'id' | 'en'
    timezone: str = DEFAULT_TIMEZONE


@dataclass
class CustomPhrase:
    phrase: str
    intent: str
    examples: list[str] = field(default_factory=list)


@dataclass
class NlpSettings:
    enabled: bool = True
    confidence: float = NLP_CONFIDENCE_THRESHOLD
    custom_phrases: list[CustomPhrase] = field(default_factory=list)


@dataclass
class QueuedMessage:
    content: str
    kind: str = "text"
    priority: int = 1
    scheduled_for: Optional[datetime] = None
    status: str = "pending"  # 'pending' | 'sent' | 'failed'
    id: Optional[int] = None


@dataclass
class ErrorLogEntry:
    error: str
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: Optional[datetime] = None
    id: Optional[int] = None


@dataclass
class ChatSession:
    """
    Persistent channel state for one (user, chat handle) pair.

    Attributes:
        status: 'inactive' -> 'pending' -> 'active'; 'active' -> 'inactive';
            any -> 'expired'.
        pairing_artifact: Opaque payload the user scans or taps to pair the
            channel (a deep link rendered as a QR code by the web UI).
        channel_id: Transport channel owned by this session while open.
    """
    user_id: int
    handle: str
    status: str = "inactive"
    last_active: Optional[datetime] = None
    pairing_artifact: Optional[str] = None
    channel_id: Optional[str] = None
    settings: SessionSettings = field(default_factory=SessionSettings)
    nlp: NlpSettings = field(default_factory=NlpSettings)
    id: Optional[int] = None
    created_at: Optional[datetime] = None

    def is_active(self) -> bool:
        return self.status == "active"

    @property
    def language(self) -> str:
        return self.settings.language
