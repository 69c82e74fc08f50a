"""
In-process transport.

Peers sharing one MemoryNetwork can register identifiers and open channels to
each other. Packets pass through the real wire codec and are delivered by a
per-channel pump task, so ``buffered_amount`` behaves like a network buffer.
"""

import asyncio
import logging
from collections import deque

from transfer.codec import decode_packet, encode_packet
from transfer.models import Packet
from transport.base import (
    Channel,
    ChannelClosed,
    EventKind,
    Transport,
    TransportError,
    TransportErrorType,
    TransportEvent,
)

logger = logging.getLogger(__name__)


class MemoryNetwork:
    """Registry of identifiers claimed by MemoryTransport instances."""

    def __init__(self) -> None:
        self._peers: dict[str, "MemoryTransport"] = {}

    def claim(self, peer_id: str, transport: "MemoryTransport") -> None:
        owner = self._peers.get(peer_id)
        if owner is not None and owner is not transport:
            raise TransportError(
                TransportErrorType.UNAVAILABLE_ID, f"ID {peer_id} is taken"
            )
        self._peers[peer_id] = transport

    def release(self, peer_id: str, transport: "MemoryTransport") -> None:
        if self._peers.get(peer_id) is transport:
            del self._peers[peer_id]

    def lookup(self, peer_id: str) -> "MemoryTransport | None":
        return self._peers.get(peer_id)

    @property
    def peer_ids(self) -> list[str]:
        return list(self._peers)


class MemoryChannel(Channel):
    def __init__(self, owner: "MemoryTransport", remote_id: str, delay: float) -> None:
        super().__init__(remote_id)
        self._owner = owner
        self._delay = delay
        self._peer: "MemoryChannel | None" = None
        self._outbox: deque[tuple[int, bytes]] = deque()
        self._buffered = 0
        self._pump_task: asyncio.Task | None = None
        self._closed = False
        self.sent: list[Packet] = []

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def buffered_amount(self) -> int:
        return self._buffered

    def send(self, packet: Packet) -> None:
        if self._closed:
            raise ChannelClosed()
        message = encode_packet(packet)
        self.sent.append(packet)
        self._outbox.append(message)
        self._buffered += len(message[1])
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        while self._outbox and not self._closed:
            await asyncio.sleep(self._delay)
            if self._closed:
                break
            msg_type, payload = self._outbox.popleft()
            self._buffered -= len(payload)
            if self._peer is not None:
                self._peer._deliver(msg_type, payload)

    def _deliver(self, msg_type: int, payload: bytes) -> None:
        if self._closed:
            return
        packet = decode_packet(msg_type, payload)
        self._owner.post(TransportEvent(EventKind.MESSAGE, channel=self, packet=packet))

    def close(self) -> None:
        if self._closed:
            return
        self._shutdown()
        if self._peer is not None:
            self._peer._shutdown()

    def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._outbox.clear()
        self._buffered = 0
        if self._pump_task is not None:
            self._pump_task.cancel()
        self._owner.post(TransportEvent(EventKind.CLOSE, channel=self))

    def fail(self, message: str = "Data channel failure") -> None:
        """Report a channel-level error without closing (test hook)."""
        self._owner.post(TransportEvent(
            EventKind.ERROR,
            channel=self,
            error=TransportError(TransportErrorType.CHANNEL_ERROR, message),
        ))


class MemoryTransport(Transport):
    """Transport whose peers live in the same event loop."""

    def __init__(
        self,
        network: MemoryNetwork,
        *,
        delay: float = 0.0,
        supported: bool = True,
    ) -> None:
        super().__init__()
        self.network = network
        self.delay = delay
        self.supported = supported
        self.peer_id: str | None = None
        self.channels: list[MemoryChannel] = []

    async def register(self, peer_id: str) -> None:
        if not self.supported:
            raise TransportError(
                TransportErrorType.UNSUPPORTED, "Transport not available here"
            )
        self.network.claim(peer_id, self)
        if self.peer_id and self.peer_id != peer_id:
            self.network.release(self.peer_id, self)
        self.peer_id = peer_id
        logger.debug(f"Registered {peer_id}")

    async def unregister(self) -> None:
        if self.peer_id:
            self.network.release(self.peer_id, self)
            self.peer_id = None

    async def connect(self, peer_id: str) -> MemoryChannel:
        if self.peer_id is None:
            raise TransportError(TransportErrorType.NETWORK, "Not registered")
        remote = self.network.lookup(peer_id)
        if remote is None:
            raise TransportError(
                TransportErrorType.PEER_UNAVAILABLE, f"Could not connect to peer {peer_id}"
            )

        local_end = MemoryChannel(self, peer_id, self.delay)
        remote_end = MemoryChannel(remote, self.peer_id, remote.delay)
        local_end._peer = remote_end
        remote_end._peer = local_end
        self.channels.append(local_end)
        remote.channels.append(remote_end)

        remote.post(TransportEvent(EventKind.INCOMING, channel=remote_end))
        remote.post(TransportEvent(EventKind.OPEN, channel=remote_end))
        self.post(TransportEvent(EventKind.OPEN, channel=local_end))
        return local_end

    def inject_error(self, type: TransportErrorType, message: str = "") -> None:
        """Report a peer-level error as if it came from the network."""
        self.post(TransportEvent(EventKind.ERROR, error=TransportError(type, message)))

    async def close(self) -> None:
        for channel in self.channels:
            channel.close()
        await super().close()
