"""
TCP transport.

Channels are plain asyncio streams. Each channel starts with an X25519
handshake; afterwards every packet travels as one type-length-payload frame
whose payload is AES-GCM sealed. Identifiers are claimed and resolved through
a directory, by default the LAN DiscoveryService.
"""

import asyncio
import logging
import random

from pydantic import BaseModel, ConfigDict, Field

from config import TRANSFER_PORT_MAX, TRANSFER_PORT_MIN
from discovery.service import DiscoveryService
from security.crypto import (
    DecryptionError,
    FrameCipher,
    derive_shared_key,
    generate_keypair,
)
from transfer.codec import (
    CodecError,
    MessageType,
    decode_packet,
    encode_packet,
    frame_message,
    recv_message,
    send_message,
)
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

HELLO = 0x0D  # first sealed frame each way after the handshake
CONNECT_TIMEOUT = 10.0
HANDSHAKE_TIMEOUT = 10.0


class Hello(BaseModel):
    """Who is calling and which identifier they dialed."""

    model_config = ConfigDict(populate_by_name=True)

    sender: str = Field(alias="from")
    target: str = Field(alias="to")

    def encode(self) -> bytes:
        return self.model_dump_json(by_alias=True).encode("utf-8")


async def recv_hello(reader: asyncio.StreamReader, cipher: FrameCipher) -> Hello:
    msg_type, sealed = await recv_message(reader)
    if msg_type != HELLO:
        raise ConnectionError(f"Expected HELLO, got {msg_type:#x}")
    return Hello.model_validate_json(cipher.open(HELLO, sealed))


async def perform_handshake_initiator(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
) -> bytes:
    """
    Perform ECDH handshake as the connecting side.
    Returns the derived AES session key.
    """
    private_key, pub_bytes = generate_keypair()

    # Send our public key
    await send_message(writer, MessageType.HANDSHAKE_PUBKEY, pub_bytes)

    # Receive peer's public key
    msg_type, peer_pub_bytes = await recv_message(reader)
    if msg_type != MessageType.HANDSHAKE_PUBKEY:
        raise ConnectionError(f"Expected HANDSHAKE_PUBKEY, got {msg_type:#x}")

    return derive_shared_key(private_key, peer_pub_bytes)


async def perform_handshake_responder(
    reader: asyncio.StreamReader,
    writer: asyncio.StreamWriter,
) -> bytes:
    """
    Perform ECDH handshake as the accepting side.
    Returns the derived AES session key.
    """
    private_key, pub_bytes = generate_keypair()

    # Receive peer's public key
    msg_type, peer_pub_bytes = await recv_message(reader)
    if msg_type != MessageType.HANDSHAKE_PUBKEY:
        raise ConnectionError(f"Expected HANDSHAKE_PUBKEY, got {msg_type:#x}")

    # Send our public key
    await send_message(writer, MessageType.HANDSHAKE_PUBKEY, pub_bytes)

    return derive_shared_key(private_key, peer_pub_bytes)


class TcpChannel(Channel):
    def __init__(
        self,
        owner: "TcpTransport",
        remote_id: str,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        cipher: FrameCipher,
    ) -> None:
        super().__init__(remote_id)
        self._owner = owner
        self._reader = reader
        self._writer = writer
        self._cipher = cipher
        self._reader_task: asyncio.Task | None = None
        self._closed = False

    @property
    def is_open(self) -> bool:
        return not self._closed

    @property
    def buffered_amount(self) -> int:
        if self._closed:
            return 0
        return self._writer.transport.get_write_buffer_size()

    def start(self) -> None:
        self._reader_task = asyncio.create_task(self._read_loop())

    def send(self, packet: Packet) -> None:
        if self._closed or self._writer.is_closing():
            raise ChannelClosed()
        msg_type, payload = encode_packet(packet)
        self._writer.write(frame_message(msg_type, self._cipher.seal(msg_type, payload)))

    async def _read_loop(self) -> None:
        try:
            while True:
                msg_type, sealed = await recv_message(self._reader)
                packet = decode_packet(msg_type, self._cipher.open(msg_type, sealed))
                self._owner.post(TransportEvent(EventKind.MESSAGE, channel=self, packet=packet))
        except (asyncio.IncompleteReadError, ConnectionError):
            logger.debug(f"Channel to {self.remote_id} closed by remote")
        except (DecryptionError, CodecError) as e:
            # A reliable stream that delivers garbage cannot be resynchronised
            logger.warning(f"Dropping channel to {self.remote_id}: {e}")
            self._owner.post(TransportEvent(
                EventKind.ERROR,
                channel=self,
                error=TransportError(TransportErrorType.CHANNEL_ERROR, str(e)),
            ))
        finally:
            self._shutdown()

    def close(self) -> None:
        self._shutdown()

    def _shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._reader_task is not None and self._reader_task is not asyncio.current_task():
            self._reader_task.cancel()
        self._writer.close()
        self._owner.post(TransportEvent(EventKind.CLOSE, channel=self))


class TcpTransport(Transport):
    """Transport over TCP with identifiers claimed in a directory."""

    def __init__(self, directory=None, host: str = "0.0.0.0") -> None:
        super().__init__()
        self.directory = directory if directory is not None else DiscoveryService()
        self.host = host
        self.peer_id: str | None = None
        self.port = 0
        self._server: asyncio.Server | None = None
        self._channels: set[TcpChannel] = set()

    async def _ensure_server(self) -> None:
        """Start the channel listener on a random port."""
        if self._server is not None:
            return
        port = random.randint(TRANSFER_PORT_MIN, TRANSFER_PORT_MAX)

        # Try a few ports if the first one is busy
        for attempt in range(10):
            try:
                self._server = await asyncio.start_server(
                    self._handle_incoming_connection, self.host, port
                )
                self.port = port
                logger.info(f"Channel listener on port {port}")
                return
            except OSError:
                port = random.randint(TRANSFER_PORT_MIN, TRANSFER_PORT_MAX)

        raise TransportError(TransportErrorType.NETWORK, "Could not bind to any transfer port")

    async def register(self, peer_id: str) -> None:
        await self._ensure_server()
        previous = self.peer_id
        await self.directory.claim(peer_id, self.port)
        if previous and previous != peer_id:
            self.directory.release(previous)
        self.peer_id = peer_id

    async def unregister(self) -> None:
        if self.peer_id:
            self.directory.release(self.peer_id)
            self.peer_id = None

    async def connect(self, peer_id: str) -> TcpChannel:
        if self.peer_id is None:
            raise TransportError(TransportErrorType.NETWORK, "Not registered")
        entry = self.directory.resolve(peer_id)
        if entry is None:
            raise TransportError(
                TransportErrorType.PEER_UNAVAILABLE, f"Could not connect to peer {peer_id}"
            )

        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(entry.ip_address, entry.transfer_port),
                timeout=CONNECT_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise TransportError(TransportErrorType.NETWORK, f"Connect failed: {e}") from e

        try:
            key = await asyncio.wait_for(
                perform_handshake_initiator(reader, writer), timeout=HANDSHAKE_TIMEOUT
            )
            cipher = FrameCipher(key)
            hello = Hello(sender=self.peer_id, target=peer_id)
            await send_message(writer, HELLO, cipher.seal(HELLO, hello.encode()))
        except (OSError, ValueError, asyncio.IncompleteReadError, asyncio.TimeoutError) as e:
            writer.close()
            raise TransportError(TransportErrorType.SOCKET_ERROR, f"Handshake failed: {e}") from e

        # A listener that no longer holds peer_id hangs up instead of answering
        try:
            reply = await asyncio.wait_for(recv_hello(reader, cipher), timeout=HANDSHAKE_TIMEOUT)
        except (asyncio.IncompleteReadError, ConnectionResetError) as e:
            writer.close()
            raise TransportError(
                TransportErrorType.PEER_UNAVAILABLE, f"Could not connect to peer {peer_id}"
            ) from e
        except (OSError, ValueError, asyncio.TimeoutError) as e:
            writer.close()
            raise TransportError(TransportErrorType.SOCKET_ERROR, f"Handshake failed: {e}") from e

        if reply.sender != peer_id or reply.target != self.peer_id:
            writer.close()
            raise TransportError(
                TransportErrorType.PEER_UNAVAILABLE, f"Could not connect to peer {peer_id}"
            )

        channel = self._adopt(peer_id, reader, writer, cipher)
        self.post(TransportEvent(EventKind.OPEN, channel=channel))
        return channel

    async def _handle_incoming_connection(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            key = await asyncio.wait_for(
                perform_handshake_responder(reader, writer), timeout=HANDSHAKE_TIMEOUT
            )
            cipher = FrameCipher(key)
            hello = await asyncio.wait_for(recv_hello(reader, cipher), timeout=HANDSHAKE_TIMEOUT)
            if self.peer_id is None or hello.target != self.peer_id:
                logger.warning(f"Refusing channel dialed to {hello.target}")
                writer.close()
                return
            reply = Hello(sender=self.peer_id, target=hello.sender)
            await send_message(writer, HELLO, cipher.seal(HELLO, reply.encode()))
        except (OSError, ValueError, asyncio.IncompleteReadError, asyncio.TimeoutError) as e:
            logger.warning(f"Rejected incoming connection: {e}")
            writer.close()
            return

        remote_id = hello.sender
        channel = self._adopt(remote_id, reader, writer, cipher)
        logger.info(f"Incoming channel from {remote_id}")
        self.post(TransportEvent(EventKind.INCOMING, channel=channel))
        self.post(TransportEvent(EventKind.OPEN, channel=channel))

    def _adopt(self, remote_id, reader, writer, cipher) -> TcpChannel:
        channel = TcpChannel(self, remote_id, reader, writer, cipher)
        self._channels.add(channel)
        channel.start()
        return channel

    def post(self, event: TransportEvent) -> None:
        if event.kind == EventKind.CLOSE:
            self._channels.discard(event.channel)
        super().post(event)

    async def close(self) -> None:
        for channel in list(self._channels):
            channel.close()
        await self.unregister()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None
        await self.directory.stop()
