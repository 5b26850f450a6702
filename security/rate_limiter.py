"""
security/rate_limiter.py
-------------------------
Rate limiting middleware to prevent API abuse.
Limits the number of messages a chat can send within a time window, so one
noisy chat cannot flood the classifier.
"""

import time
from collections import defaultdict
from functools import wraps
from typing import Callable, Hashable

from telegram import Update
from telegram.ext import ContextTypes

from config import DEFAULT_LANGUAGE, RATE_LIMIT_MESSAGES, RATE_LIMIT_WINDOW_SECONDS
from utils.logger import get_logger
from utils.messages import t

logger = get_logger(__name__)


class SlidingWindowLimiter:
    """At most `limit` hits per key in any `window`-second span."""

    def __init__(self, limit: int = RATE_LIMIT_MESSAGES, window: float = RATE_LIMIT_WINDOW_SECONDS,
                 clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window = window
        self.clock = clock
        # {key: [timestamp1, timestamp2, ...]}
        self._timestamps: dict[Hashable, list[float]] = defaultdict(list)

    def _cleanup(self, key: Hashable, now: float) -> None:
        """Remove expired timestamps for a key."""
        cutoff = now - self.window
        self._timestamps[key] = [ts for ts in self._timestamps[key] if ts > cutoff]

    def allow(self, key: Hashable) -> bool:
        """Record a hit for `key` unless it is over the limit."""
        now = self.clock()
        self._cleanup(key, now)
        if len(self._timestamps[key]) >= self.limit:
            return False
        self._timestamps[key].append(now)
        return True


_limiter = SlidingWindowLimiter()


def rate_limited(func: Callable):
    """
    Decorator that enforces rate limiting per chat.

    Configuration (via .env):
        RATE_LIMIT_MESSAGES: Max messages per window (default: 30).
        RATE_LIMIT_WINDOW_SECONDS: Window duration in seconds (default: 60).

    Behavior:
        - Tracks message timestamps per chat.
        - If exceeded, replies with a warning and blocks the handler.
    """
    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE, *args, **kwargs):
        chat = update.effective_chat
        if not chat:
            return

        if not _limiter.allow(chat.id):
            logger.warning(f"⚠️ Rate limit hit for chat {chat.id}")
            if update.effective_message:
                await update.effective_message.reply_text(t(DEFAULT_LANGUAGE, "rate_limited"))
            return

        return await func(update, context, *args, **kwargs)

    return wrapper
