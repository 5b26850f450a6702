"""
transport/telegram_transport.py
-------------------------------
Chat transport over a Telegram bot.

Pairing works through deep links: `open()` mints a one-time start token and
emits `https://t.me/<bot>?start=<token>` as the pairing artifact (the web UI
renders it as a QR code). When the user opens it, Telegram sends
`/start <token>` from their chat, which binds that chat to the channel and
emits ChannelReady.
"""

import asyncio
import secrets
import uuid
from dataclasses import dataclass
from typing import Optional

from telegram import Update
from telegram.error import Forbidden, TelegramError
from telegram.ext import Application, CommandHandler, ContextTypes, MessageHandler, filters

from config import DEFAULT_LANGUAGE, TELEGRAM_BOT_USERNAME
from security.rate_limiter import rate_limited
from transport.base import (
    ChannelLost,
    ChannelReady,
    ChatTransport,
    MessageReceived,
    PairingArtifact,
)
from utils.errors import TransportError
from utils.logger import get_logger
from utils.messages import t

logger = get_logger(__name__)


@dataclass
class _Channel:
    handle: str
    token: str
    chat_id: Optional[int] = None


class TelegramTransport(ChatTransport):
    """ChatTransport backed by python-telegram-bot's Application."""

    def __init__(self, application: Application, bot_username: str = TELEGRAM_BOT_USERNAME):
        super().__init__()
        self.app = application
        self.bot_username = bot_username
        self._channels: dict[str, _Channel] = {}
        self._tokens: dict[str, str] = {}  # start token -> channel id
        self._chats: dict[int, str] = {}  # telegram chat id -> channel id
        self._background: set[asyncio.Task] = set()

        application.add_handler(CommandHandler("start", self._on_start))
        application.add_handler(
            MessageHandler(filters.TEXT & ~filters.COMMAND, rate_limited(self._on_message))
        )

    def pairing_link(self, token: str) -> str:
        return f"https://t.me/{self.bot_username}?start={token}"

    async def open(self, handle: str) -> str:
        channel_id = uuid.uuid4().hex
        token = secrets.token_urlsafe(16)
        self._channels[channel_id] = _Channel(handle=handle, token=token)
        self._tokens[token] = channel_id
        logger.info(f"Opened channel {channel_id} for handle {handle}")
        await self.emit(PairingArtifact(channel_id, self.pairing_link(token)))
        return channel_id

    async def send(self, channel_id: str, text: str) -> None:
        channel = self._channels.get(channel_id)
        if channel is None or channel.chat_id is None:
            raise TransportError(f"Channel {channel_id} is not connected", {"channel_id": channel_id})
        try:
            await self.app.bot.send_message(chat_id=channel.chat_id, text=text)
        except Forbidden as e:
            # The user blocked the bot; the channel is gone for good.
            logger.warning(f"Channel {channel_id} lost: {e}")
            self._forget(channel_id)
            self._emit_later(ChannelLost(channel_id, reason=str(e)))
            raise TransportError(f"Chat blocked the bot: {e}", {"channel_id": channel_id}) from e
        except TelegramError as e:
            raise TransportError(f"Telegram send failed: {e}", {"channel_id": channel_id}) from e

    async def close(self, channel_id: str) -> None:
        if self._forget(channel_id):
            logger.info(f"Closed channel {channel_id}")

    # ── TELEGRAM UPDATES ──────────────────────────────────

    async def _on_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Handle /start <token> - bind the chat to the channel that minted the token."""
        chat = update.effective_chat
        token = context.args[0] if context.args else None
        channel_id = self._tokens.pop(token, None) if token else None
        if channel_id is None or channel_id not in self._channels:
            await update.effective_message.reply_text(t(DEFAULT_LANGUAGE, "pairing_invalid"))
            return

        previous = self._chats.get(chat.id)
        if previous and previous != channel_id:
            self._forget(previous)
            await self.emit(ChannelLost(previous, reason="chat re-paired"))

        self._channels[channel_id].chat_id = chat.id
        self._chats[chat.id] = channel_id
        logger.info(f"Chat {chat.id} paired to channel {channel_id}")
        await update.effective_message.reply_text(t(DEFAULT_LANGUAGE, "paired"))
        await self.emit(ChannelReady(channel_id))

    async def _on_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        """Forward a plain text message from a paired chat."""
        message = update.effective_message
        channel_id = self._chats.get(update.effective_chat.id)
        if channel_id is None or not message or not message.text:
            return
        sender = update.effective_user
        await self.emit(MessageReceived(
            channel_id, message.text, str(sender.id) if sender else self._channels[channel_id].handle
        ))

    # ── INTERNALS ─────────────────────────────────────────

    def _forget(self, channel_id: str) -> bool:
        channel = self._channels.pop(channel_id, None)
        if channel is None:
            return False
        self._tokens.pop(channel.token, None)
        if channel.chat_id is not None and self._chats.get(channel.chat_id) == channel_id:
            del self._chats[channel.chat_id]
        return True

    def _emit_later(self, event) -> None:
        """Emit without waiting; used from inside send(), which a session worker awaits."""
        task = asyncio.create_task(self.emit(event))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
