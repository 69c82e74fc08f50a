"""Shared test doubles and polling helpers."""

import asyncio
import time

from discovery.models import RegistryEntry
from session.connection import ConnectionLifecycle
from session.context import SessionContext
from session.identity import IdentityManager
from session.manager import PeerSession
from transport.base import Channel, ChannelClosed, TransportError, TransportErrorType
from transport.memory import MemoryTransport


class ScriptedRandom:
    """Hands out the given codes first, then counts up from 500000."""

    def __init__(self, codes=()):
        self._codes = list(codes)
        self._next = 500000

    def randint(self, a, b):
        if self._codes:
            return self._codes.pop(0)
        self._next += 1
        return self._next


class FakeChannel(Channel):
    def __init__(self, remote_id: str = "sendover-000000") -> None:
        super().__init__(remote_id)
        self.sent = []
        self.closed = False
        self.pending_bytes = 0

    @property
    def is_open(self) -> bool:
        return not self.closed

    @property
    def buffered_amount(self) -> int:
        return self.pending_bytes

    def send(self, packet) -> None:
        if self.closed:
            raise ChannelClosed()
        self.sent.append(packet)

    def close(self) -> None:
        self.closed = True

    def of_type(self, cls) -> list:
        return [p for p in self.sent if isinstance(p, cls)]


class StaticDirectory:
    """Registry for TcpTransport tests; everyone lives on localhost."""

    def __init__(self) -> None:
        self.entries: dict[str, RegistryEntry] = {}

    async def claim(self, peer_id: str, port: int) -> None:
        entry = self.entries.get(peer_id)
        if entry is not None and entry.transfer_port != port:
            raise TransportError(TransportErrorType.UNAVAILABLE_ID, f"ID {peer_id} is taken")
        self.entries[peer_id] = RegistryEntry(
            peer_id=peer_id,
            instance_id=str(port),
            ip_address="127.0.0.1",
            transfer_port=port,
            platform="linux",
            last_seen=time.time(),
        )

    def release(self, peer_id: str) -> None:
        self.entries.pop(peer_id, None)

    def resolve(self, peer_id: str):
        return self.entries.get(peer_id)

    async def stop(self) -> None:
        pass


def connected_context(channel: Channel | None = None):
    """A SessionContext whose connection is already CONNECTED to a fake peer."""
    identity = IdentityManager()
    connection = ConnectionLifecycle()
    ctx = SessionContext(identity, connection)
    channel = channel or FakeChannel()
    connection.begin(channel)
    connection.opened(channel)
    return ctx, channel


async def wait_for(predicate, timeout: float = 3.0, interval: float = 0.005):
    """Poll until ``predicate()`` is truthy; returns its value."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        value = predicate()
        if value:
            return value
        if loop.time() > deadline:
            raise AssertionError("Condition not met in time")
        await asyncio.sleep(interval)


async def start_session(network, codes=(), transport=None, **kwargs) -> PeerSession:
    options = {
        "retry_delay": 0.01,
        "ping_interval": 3600,
        "chunk_size": 1024,
        "rng": ScriptedRandom(codes),
    }
    options.update(kwargs)
    session = PeerSession(transport or MemoryTransport(network), **options)
    await session.start()
    return session


async def connect_pair(initiator: PeerSession, acceptor: PeerSession) -> None:
    from session.models import ConnectionState

    assert await initiator.connect(acceptor.snapshot().identity.code)
    await wait_for(lambda: (
        initiator.connection.state == ConnectionState.CONNECTED
        and acceptor.connection.state == ConnectionState.CONNECTED
    ))
