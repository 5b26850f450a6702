"""
transport/base.py
-----------------
Chat transport contract and the typed lifecycle events it emits.

A transport owns the actual chat channels; the session manager only sees
channel ids and these events, delivered in order through one async listener.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union


@dataclass(frozen=True)
class PairingArtifact:
    """The payload the user must scan or open to pair this channel."""
    channel_id: str
    artifact: str


@dataclass(frozen=True)
class ChannelReady:
    channel_id: str


@dataclass(frozen=True)
class MessageReceived:
    channel_id: str
    text: str
    sender_handle: str


@dataclass(frozen=True)
class ChannelLost:
    channel_id: str
    reason: Optional[str] = None


TransportEvent = Union[PairingArtifact, ChannelReady, MessageReceived, ChannelLost]
EventListener = Callable[[TransportEvent], Awaitable[None]]


class ChatTransport(ABC):
    """Opens, writes to and closes chat channels, one per chat handle."""

    def __init__(self) -> None:
        self._listener: Optional[EventListener] = None

    def set_listener(self, listener: EventListener) -> None:
        self._listener = listener

    async def emit(self, event: TransportEvent) -> None:
        if self._listener is not None:
            await self._listener(event)

    @abstractmethod
    async def open(self, handle: str) -> str:
        """Start pairing a channel for `handle` and return its channel id."""

    @abstractmethod
    async def send(self, channel_id: str, text: str) -> None:
        """Deliver text on an open channel. Raises TransportError on failure."""

    @abstractmethod
    async def close(self, channel_id: str) -> None:
        """Tear a channel down; closing an unknown channel is a no-op."""
