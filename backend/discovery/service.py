"""
UDP-based LAN registry of session identifiers.

Each process broadcasts a beacon announcing the identifier it has claimed and
the TCP port it accepts channels on, and listens for everyone else's beacons.
Claiming an identifier first announces it as a probe and listens for a
while; if another instance already owns or is probing the same identifier the
claim fails with an ``unavailable-id`` error.
"""

import asyncio
import json
import logging
import socket
import time
import uuid

from pydantic import ValidationError

from config import (
    APP_ID,
    DISCOVERY_INTERVAL,
    DISCOVERY_PORT,
    DISCOVERY_PROBE,
    PEER_TIMEOUT,
    PLATFORM,
)
from discovery.models import DiscoveryBeacon, RegistryEntry
from transport.base import TransportError, TransportErrorType

logger = logging.getLogger(__name__)


class DiscoveryProtocol(asyncio.DatagramProtocol):
    """asyncio UDP protocol for receiving registry beacons."""

    def __init__(self, service: "DiscoveryService"):
        self.service = service

    def datagram_received(self, data: bytes, addr: tuple[str, int]) -> None:
        try:
            beacon = DiscoveryBeacon(**json.loads(data.decode("utf-8")))
        except (UnicodeDecodeError, json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.debug(f"Ignoring invalid discovery packet from {addr}: {e}")
            return

        if beacon.app_id != APP_ID or beacon.instance_id == self.service.instance_id:
            return

        self.service.update_entry(RegistryEntry(
            peer_id=beacon.peer_id,
            instance_id=beacon.instance_id,
            ip_address=addr[0],
            transfer_port=beacon.transfer_port,
            platform=beacon.platform,
            last_seen=time.time(),
            claimed=beacon.claimed,
        ))

    def error_received(self, exc: Exception) -> None:
        logger.warning(f"Discovery UDP error: {exc}")


class DiscoveryService:
    """Claims and resolves session identifiers via UDP broadcast."""

    def __init__(
        self,
        port: int = DISCOVERY_PORT,
        interval: float = DISCOVERY_INTERVAL,
        probe: float = DISCOVERY_PROBE,
        timeout: float = PEER_TIMEOUT,
    ) -> None:
        self.instance_id = uuid.uuid4().hex
        self._port = port
        self._interval = interval
        self._probe = probe
        self._timeout = timeout
        self._entries: dict[str, RegistryEntry] = {}
        self._transport: asyncio.DatagramTransport | None = None
        self._broadcast_task: asyncio.Task | None = None
        self._cleanup_task: asyncio.Task | None = None
        self._peer_id: str | None = None
        self._claimed = False
        self._transfer_port = 0

    @property
    def running(self) -> bool:
        return self._transport is not None

    async def start(self) -> None:
        """Open the broadcast socket and start the beacon loops."""
        if self.running:
            return
        logger.info(f"Starting discovery on UDP port {self._port}")

        try:
            sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_BROADCAST, 1)
        except (OSError, AttributeError) as e:
            raise TransportError(
                TransportErrorType.UNSUPPORTED, f"Broadcast sockets unavailable: {e}"
            ) from e

        try:
            # SO_REUSEADDR before binding so several instances share the port
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.setblocking(False)
            sock.bind(("0.0.0.0", self._port))
        except OSError as e:
            sock.close()
            raise TransportError(
                TransportErrorType.NETWORK, f"Could not bind discovery port: {e}"
            ) from e

        loop = asyncio.get_running_loop()
        transport, _ = await loop.create_datagram_endpoint(
            lambda: DiscoveryProtocol(self),
            sock=sock,
        )
        self._transport = transport

        self._broadcast_task = asyncio.create_task(self._broadcast_loop())
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        """Stop the discovery service."""
        if self._broadcast_task:
            self._broadcast_task.cancel()
        if self._cleanup_task:
            self._cleanup_task.cancel()
        if self._transport:
            self._transport.close()
            self._transport = None
        logger.info("Discovery service stopped")

    async def claim(self, peer_id: str, transfer_port: int) -> None:
        """Announce ``peer_id`` and keep it unless someone else holds it."""
        await self.start()
        self._peer_id = peer_id
        self._transfer_port = transfer_port
        self._claimed = False
        self._send_beacon()

        await asyncio.sleep(self._probe)

        if self._peer_id != peer_id:
            raise TransportError(TransportErrorType.NETWORK, "Claim superseded")
        rival = self._entries.get(peer_id)
        if rival is not None and time.time() - rival.last_seen <= self._timeout:
            self._peer_id = None
            raise TransportError(
                TransportErrorType.UNAVAILABLE_ID, f"ID {peer_id} is taken"
            )

        self._claimed = True
        self._send_beacon()
        logger.info(f"Claimed {peer_id} (transfer port {transfer_port})")

    def release(self, peer_id: str) -> None:
        if self._peer_id == peer_id:
            self._peer_id = None
            self._claimed = False

    def resolve(self, peer_id: str) -> RegistryEntry | None:
        """Return where ``peer_id`` is reachable, if a fresh claim is known."""
        entry = self._entries.get(peer_id)
        if entry is None or not entry.claimed:
            return None
        if time.time() - entry.last_seen > self._timeout:
            return None
        return entry

    def update_entry(self, entry: RegistryEntry) -> None:
        """Add or refresh a registry entry."""
        is_new = entry.peer_id not in self._entries
        self._entries[entry.peer_id] = entry
        if is_new:
            logger.info(f"Discovered {entry.peer_id} at {entry.ip_address}:{entry.transfer_port}")

    def beacon(self) -> DiscoveryBeacon | None:
        """What this instance currently announces, if anything."""
        if not self._peer_id:
            return None
        return DiscoveryBeacon(
            app_id=APP_ID,
            instance_id=self.instance_id,
            peer_id=self._peer_id,
            transfer_port=self._transfer_port,
            platform=PLATFORM,
            claimed=self._claimed,
        )

    def _send_beacon(self) -> None:
        beacon = self.beacon()
        if not self._transport or beacon is None:
            return

        data = json.dumps(beacon.model_dump()).encode("utf-8")

        for bcast_ip in _broadcast_addresses():
            try:
                self._transport.sendto(data, (bcast_ip, self._port))
            except OSError as e:
                # Some interfaces do not support broadcast
                logger.debug(f"Beacon to {bcast_ip} failed: {e}")

    async def _broadcast_loop(self) -> None:
        """Periodically re-announce the claimed identifier."""
        while True:
            self._send_beacon()
            await asyncio.sleep(self._interval)

    async def _cleanup_loop(self) -> None:
        """Remove entries that haven't been announced recently."""
        while True:
            await asyncio.sleep(self._timeout)
            now = time.time()
            for peer_id, entry in list(self._entries.items()):
                if now - entry.last_seen > self._timeout:
                    del self._entries[peer_id]
                    logger.info(f"Registry entry expired: {peer_id}")


def _broadcast_addresses() -> set[str]:
    """Limited broadcast plus a /24 guess for every local interface address."""
    addresses = {"255.255.255.255", "127.255.255.255"}
    try:
        _, _, ips = socket.gethostbyname_ex(socket.gethostname())
    except OSError as e:
        logger.debug(f"Error resolving local IPs: {e}")
        return addresses

    for ip in ips:
        if ip.startswith("127."):
            continue
        parts = ip.split(".")
        if len(parts) == 4:
            parts[3] = "255"
            addresses.add(".".join(parts))
    return addresses
