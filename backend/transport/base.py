"""
Transport adapter contract.

A transport registers this process under an identifier, opens channels to
other identifiers, and reports everything that happens as TransportEvent
objects on a single queue. Channels are ordered, reliable and message-based;
``send`` never blocks and instead grows ``buffered_amount``.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

from transfer.models import Packet


class TransportErrorType(str, Enum):
    UNAVAILABLE_ID = "unavailable-id"
    INVALID_ID = "invalid-id"
    NETWORK = "network"
    PEER_UNAVAILABLE = "peer-unavailable"
    SOCKET_ERROR = "socket-error"
    CHANNEL_ERROR = "channel-error"
    UNSUPPORTED = "unsupported"
    UNKNOWN = "unknown"


class TransportError(Exception):
    """An adapter failure tagged with its category."""

    def __init__(self, type: TransportErrorType, message: str = "") -> None:
        super().__init__(message or type.value)
        self.type = type


class ChannelClosed(TransportError):
    def __init__(self, message: str = "Channel is closed") -> None:
        super().__init__(TransportErrorType.CHANNEL_ERROR, message)


class EventKind(str, Enum):
    INCOMING = "incoming"  # a remote peer opened a channel to us
    OPEN = "open"
    CLOSE = "close"
    ERROR = "error"
    MESSAGE = "message"


@dataclass
class TransportEvent:
    kind: EventKind
    channel: "Channel | None" = None
    packet: Packet | None = None
    error: TransportError | None = None


class Channel(ABC):
    """One ordered, reliable connection to a remote peer."""

    def __init__(self, remote_id: str) -> None:
        self.remote_id = remote_id

    @property
    @abstractmethod
    def is_open(self) -> bool: ...

    @property
    @abstractmethod
    def buffered_amount(self) -> int:
        """Bytes queued locally that the remote has not consumed yet."""

    @abstractmethod
    def send(self, packet: Packet) -> None:
        """Queue a packet for delivery. Raises ChannelClosed."""

    @abstractmethod
    def close(self) -> None: ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} remote={self.remote_id} open={self.is_open}>"


class Transport(ABC):
    """Peer registration plus channel factory."""

    def __init__(self) -> None:
        self.events: asyncio.Queue[TransportEvent] = asyncio.Queue()

    def post(self, event: TransportEvent) -> None:
        self.events.put_nowait(event)

    @abstractmethod
    async def register(self, peer_id: str) -> None:
        """Claim ``peer_id`` for inbound connections. Raises TransportError."""

    @abstractmethod
    async def unregister(self) -> None: ...

    @abstractmethod
    async def connect(self, peer_id: str) -> Channel:
        """Open a channel to ``peer_id``. OPEN/CLOSE follow as events."""

    async def close(self) -> None:
        await self.unregister()
