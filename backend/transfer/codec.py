"""
Wire encoding for transfer packets.

Every packet becomes a ``(message_type, payload)`` pair. CHUNK payloads are an
8-byte big-endian index followed by the raw file bytes; all other packets
carry their fields as UTF-8 JSON. Stream transports frame the pair as
type-length-payload.
"""

import asyncio
import json
import logging
import struct

from pydantic import ValidationError

from transfer.models import (
    AckPacket,
    ChunkPacket,
    EndPacket,
    HeaderPacket,
    Packet,
    PacketType,
    PingPacket,
    PongPacket,
    RejectPacket,
)

logger = logging.getLogger(__name__)


class MessageType:
    HANDSHAKE_PUBKEY = 0x01
    HEADER = 0x02
    ACK = 0x03
    REJECT = 0x04
    CHUNK = 0x06
    END = 0x0A
    PING = 0x0B
    PONG = 0x0C


_MESSAGE_TYPES = {
    PacketType.HEADER: MessageType.HEADER,
    PacketType.CHUNK: MessageType.CHUNK,
    PacketType.END: MessageType.END,
    PacketType.ACK: MessageType.ACK,
    PacketType.REJECT: MessageType.REJECT,
    PacketType.PING: MessageType.PING,
    PacketType.PONG: MessageType.PONG,
}

_PACKET_MODELS = {
    MessageType.HEADER: HeaderPacket,
    MessageType.END: EndPacket,
    MessageType.ACK: AckPacket,
    MessageType.REJECT: RejectPacket,
    MessageType.PING: PingPacket,
    MessageType.PONG: PongPacket,
}

HEADER_FORMAT = "!BI"  # 1-byte type + 4-byte length (big-endian)
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)
CHUNK_INDEX_FORMAT = "!Q"
CHUNK_INDEX_SIZE = struct.calcsize(CHUNK_INDEX_FORMAT)


class CodecError(ValueError):
    """Raised when a message cannot be turned back into a packet."""


def encode_packet(packet: Packet) -> tuple[int, bytes]:
    """Encode a packet into (message_type, payload)."""
    msg_type = _MESSAGE_TYPES[packet.type]
    if isinstance(packet, ChunkPacket):
        return msg_type, struct.pack(CHUNK_INDEX_FORMAT, packet.index) + packet.data
    body = packet.model_dump(mode="json", exclude={"type"})
    return msg_type, json.dumps(body).encode("utf-8")


def decode_packet(msg_type: int, payload: bytes) -> Packet:
    """Decode a (message_type, payload) pair. Raises CodecError."""
    if msg_type == MessageType.CHUNK:
        if len(payload) < CHUNK_INDEX_SIZE:
            raise CodecError("Truncated CHUNK message")
        (index,) = struct.unpack_from(CHUNK_INDEX_FORMAT, payload)
        return ChunkPacket(index=index, data=bytes(payload[CHUNK_INDEX_SIZE:]))

    model = _PACKET_MODELS.get(msg_type)
    if model is None:
        raise CodecError(f"Unknown message type {msg_type:#x}")
    try:
        return model.model_validate(json.loads(payload.decode("utf-8")))
    except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
        raise CodecError(f"Malformed {model.__name__}: {e}") from e


def frame_message(msg_type: int, payload: bytes = b"") -> bytes:
    """Prefix a payload with its type-length header."""
    return struct.pack(HEADER_FORMAT, msg_type, len(payload)) + payload


async def send_message(
    writer: asyncio.StreamWriter, msg_type: int, payload: bytes = b""
) -> None:
    """Send a type-length-payload message and wait for the buffer to drain."""
    writer.write(frame_message(msg_type, payload))
    await writer.drain()


async def recv_message(
    reader: asyncio.StreamReader,
) -> tuple[int, bytes]:
    """Receive a type-length-payload message. Returns (type, payload)."""
    header = await reader.readexactly(HEADER_SIZE)
    msg_type, length = struct.unpack(HEADER_FORMAT, header)
    payload = b""
    if length > 0:
        payload = await reader.readexactly(length)
    return msg_type, payload
