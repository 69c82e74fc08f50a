import asyncio
import json
import time

import pytest

import discovery.service as discovery_service
from discovery.models import RegistryEntry
from discovery.service import DiscoveryProtocol, DiscoveryService
from helpers import ScriptedRandom, wait_for
from session.manager import PeerSession
from session.models import ConnectionState
from transport.base import TransportError, TransportErrorType
from transport.tcp import TcpTransport


def beacon(**overrides):
    payload = {
        "app_id": "sendover-v1",
        "instance_id": "other-instance",
        "peer_id": "sendover-123456",
        "transfer_port": 50123,
        "platform": "linux",
        "claimed": True,
    }
    payload.update(overrides)
    return json.dumps(payload).encode("utf-8")


def entry(peer_id="sendover-123456", last_seen=None, claimed=True):
    return RegistryEntry(
        peer_id=peer_id,
        instance_id="other-instance",
        ip_address="192.168.1.20",
        transfer_port=50123,
        platform="linux",
        last_seen=time.time() if last_seen is None else last_seen,
        claimed=claimed,
    )


def link(*services):
    """Deliver every beacon a service sends straight to the other services."""
    def sender(source):
        def send():
            announced = source.beacon()
            if announced is None:
                return
            data = announced.model_dump_json().encode("utf-8")
            for other in services:
                if other is not source:
                    DiscoveryProtocol(other).datagram_received(data, ("127.0.0.1", 41235))
        return send

    for service in services:
        service._send_beacon = sender(service)
    return services


def test_beacons_populate_the_registry():
    service = DiscoveryService()
    DiscoveryProtocol(service).datagram_received(beacon(), ("192.168.1.20", 41235))

    resolved = service.resolve("sendover-123456")
    assert resolved.ip_address == "192.168.1.20"
    assert resolved.transfer_port == 50123


@pytest.mark.parametrize("data", [
    beacon(app_id="someone-else"),
    b"garbage",
    b'{"app_id": "sendover-v1"}',
])
def test_foreign_or_broken_beacons_are_ignored(data):
    service = DiscoveryService()
    DiscoveryProtocol(service).datagram_received(data, ("10.0.0.2", 41235))
    assert service.resolve("sendover-123456") is None


def test_own_beacons_are_ignored():
    service = DiscoveryService()
    data = beacon(instance_id=service.instance_id)
    DiscoveryProtocol(service).datagram_received(data, ("10.0.0.2", 41235))
    assert service.resolve("sendover-123456") is None


def test_only_fresh_claims_resolve():
    service = DiscoveryService(timeout=10)
    service.update_entry(entry("sendover-111111", claimed=False))
    service.update_entry(entry("sendover-222222", last_seen=time.time() - 60))
    service.update_entry(entry("sendover-333333"))

    assert service.resolve("sendover-111111") is None
    assert service.resolve("sendover-222222") is None
    assert service.resolve("sendover-333333") is not None


@pytest.mark.asyncio
async def test_claim_fails_when_someone_holds_the_identifier(monkeypatch):
    monkeypatch.setattr(discovery_service, "_broadcast_addresses", lambda: {"127.0.0.1"})
    service = DiscoveryService(port=0, interval=60, probe=0.01)
    service.update_entry(entry("sendover-123456"))
    try:
        with pytest.raises(TransportError) as exc_info:
            await service.claim("sendover-123456", 50000)
        assert exc_info.value.type == TransportErrorType.UNAVAILABLE_ID

        await service.claim("sendover-654321", 50000)
        assert service.running
    finally:
        await service.stop()


@pytest.mark.asyncio
async def test_simultaneous_claims_both_fail():
    first, second = link(
        DiscoveryService(port=0, interval=60, probe=0.1),
        DiscoveryService(port=0, interval=60, probe=0.1),
    )
    try:
        results = await asyncio.gather(
            first.claim("sendover-123456", 50001),
            second.claim("sendover-123456", 50002),
            return_exceptions=True,
        )
        for result in results:
            assert isinstance(result, TransportError)
            assert result.type == TransportErrorType.UNAVAILABLE_ID
        assert first.beacon() is None
        assert second.beacon() is None

        await asyncio.gather(
            first.claim("sendover-111111", 50001),
            second.claim("sendover-222222", 50002),
        )
        assert first.resolve("sendover-222222").transfer_port == 50002
        assert second.resolve("sendover-111111").transfer_port == 50001
    finally:
        await first.stop()
        await second.stop()


@pytest.mark.asyncio
async def test_sessions_picking_the_same_code_both_move_on():
    first, second = link(
        DiscoveryService(port=0, interval=60, probe=0.1),
        DiscoveryService(port=0, interval=60, probe=0.1),
    )
    alice = PeerSession(
        TcpTransport(first, host="127.0.0.1"),
        rng=ScriptedRandom([123456, 111111]),
        retry_delay=0.01,
        ping_interval=3600,
    )
    bob = PeerSession(
        TcpTransport(second, host="127.0.0.1"),
        rng=ScriptedRandom([123456, 222222]),
        retry_delay=0.01,
        ping_interval=3600,
    )
    try:
        await asyncio.gather(alice.start(), bob.start())
        await wait_for(lambda: (
            alice.snapshot().identity.code == "111111"
            and bob.snapshot().identity.code == "222222"
        ))
        await wait_for(lambda: (
            first.resolve("sendover-222222") is not None
            and second.resolve("sendover-111111") is not None
        ))
        assert alice.connection.state == ConnectionState.DISCONNECTED
        assert bob.connection.state == ConnectionState.DISCONNECTED

        assert await alice.connect("222222")
        await wait_for(lambda: bob.connection.state == ConnectionState.CONNECTED)
        assert bob.snapshot().remote_id == "sendover-111111"
    finally:
        await alice.stop()
        await bob.stop()
