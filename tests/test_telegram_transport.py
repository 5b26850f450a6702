import asyncio
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
from telegram.error import Forbidden, NetworkError

from transport.base import ChannelLost, ChannelReady, MessageReceived, PairingArtifact
from transport.telegram_transport import TelegramTransport
from utils.errors import TransportError
from utils.messages import t


def make_transport():
    app = MagicMock()
    app.bot.send_message = AsyncMock()
    transport = TelegramTransport(app, bot_username="DompetBot")
    events = []

    async def listener(event):
        events.append(event)

    transport.set_listener(listener)
    return transport, app, events


def make_update(chat_id: int, text: str = "", user_id: int = 7):
    return SimpleNamespace(
        effective_chat=SimpleNamespace(id=chat_id),
        effective_user=SimpleNamespace(id=user_id),
        effective_message=SimpleNamespace(text=text, reply_text=AsyncMock()),
    )


async def paired_channel(transport, events, chat_id: int = 42) -> str:
    channel_id = await transport.open("6281234567890")
    token = events[-1].artifact.split("start=", 1)[1]
    await transport._on_start(make_update(chat_id, f"/start {token}"), SimpleNamespace(args=[token]))
    return channel_id


def test_registers_handlers() -> None:
    _, app, _ = make_transport()
    assert app.add_handler.call_count == 2


def test_open_emits_deep_link_and_start_pairs() -> None:
    async def scenario():
        transport, app, events = make_transport()
        channel_id = await transport.open("6281234567890")

        [artifact] = events
        assert isinstance(artifact, PairingArtifact) and artifact.channel_id == channel_id
        assert artifact.artifact.startswith("https://t.me/DompetBot?start=")

        token = artifact.artifact.split("start=", 1)[1]
        update = make_update(42)
        await transport._on_start(update, SimpleNamespace(args=[token]))
        assert events[-1] == ChannelReady(channel_id)
        update.effective_message.reply_text.assert_awaited_once_with(t("id", "paired"))

        reused = make_update(43)
        await transport._on_start(reused, SimpleNamespace(args=[token]))
        reused.effective_message.reply_text.assert_awaited_once_with(t("id", "pairing_invalid"))

        await transport.send(channel_id, "halo")
        app.bot.send_message.assert_awaited_once_with(chat_id=42, text="halo")

    asyncio.run(scenario())


def test_messages_from_paired_chat_are_forwarded() -> None:
    async def scenario():
        transport, _, events = make_transport()
        channel_id = await paired_channel(transport, events)

        await transport._on_message(make_update(42, "beli makan 50000"), None)
        await transport._on_message(make_update(99, "stranger"), None)

        assert events[-1] == MessageReceived(channel_id, "beli makan 50000", "7")
        assert not any(getattr(e, "text", None) == "stranger" for e in events)

    asyncio.run(scenario())


def test_repairing_a_chat_drops_its_old_channel() -> None:
    async def scenario():
        transport, _, events = make_transport()
        first = await paired_channel(transport, events)
        second = await paired_channel(transport, events)

        assert ChannelLost(first, reason="chat re-paired") in events
        assert events[-1] == ChannelReady(second)
        with pytest.raises(TransportError):
            await transport.send(first, "hi")

    asyncio.run(scenario())


def test_blocked_chat_reports_channel_lost() -> None:
    async def scenario():
        transport, app, events = make_transport()
        channel_id = await paired_channel(transport, events)
        app.bot.send_message.side_effect = Forbidden("bot was blocked by the user")

        with pytest.raises(TransportError):
            await transport.send(channel_id, "halo")
        await asyncio.sleep(0)

        assert isinstance(events[-1], ChannelLost) and events[-1].channel_id == channel_id

    asyncio.run(scenario())


def test_send_errors_become_transport_errors() -> None:
    async def scenario():
        transport, app, events = make_transport()
        channel_id = await paired_channel(transport, events)
        app.bot.send_message.side_effect = NetworkError("timeout")

        with pytest.raises(TransportError) as info:
            await transport.send(channel_id, "halo")
        assert info.value.context == {"channel_id": channel_id}
        assert not isinstance(events[-1], ChannelLost)

        with pytest.raises(TransportError):
            await transport.send("unknown", "halo")

    asyncio.run(scenario())
