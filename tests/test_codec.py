import asyncio
import struct

import pytest

from transfer.codec import (
    CodecError,
    MessageType,
    decode_packet,
    encode_packet,
    frame_message,
    recv_message,
)
from transfer.models import (
    AckPacket,
    ChunkPacket,
    HeaderPacket,
    PacketType,
    PingPacket,
)


def test_header_travels_as_json():
    header = HeaderPacket(id="f1", name="report.pdf", size=200000, mime_type="application/pdf", chunk_count=4)
    msg_type, payload = encode_packet(header)

    assert msg_type == MessageType.HEADER
    assert b'"name": "report.pdf"' in payload
    assert b'"type"' not in payload
    assert decode_packet(msg_type, payload) == header


def test_chunk_payload_is_index_then_raw_bytes():
    msg_type, payload = encode_packet(ChunkPacket(index=3, data=b"\x00\xffabc"))

    assert msg_type == MessageType.CHUNK
    assert payload[:8] == struct.pack("!Q", 3)
    assert payload[8:] == b"\x00\xffabc"

    decoded = decode_packet(msg_type, payload)
    assert decoded.type == PacketType.CHUNK
    assert decoded.index == 3
    assert decoded.data == b"\x00\xffabc"


def test_empty_chunk_is_allowed():
    decoded = decode_packet(MessageType.CHUNK, struct.pack("!Q", 0))
    assert decoded.data == b""


def test_truncated_chunk_is_rejected():
    with pytest.raises(CodecError):
        decode_packet(MessageType.CHUNK, b"\x00\x01")


def test_unknown_message_type_is_rejected():
    with pytest.raises(CodecError, match="Unknown message type"):
        decode_packet(0x7F, b"{}")


@pytest.mark.parametrize("payload", [
    b"not json",
    b"\xff\xfe",
    b'{"id": 5}',
    b'{"timestamp": "soon"}',
])
def test_malformed_json_payloads_are_rejected(payload):
    msg_type = MessageType.PING if b"timestamp" in payload else MessageType.ACK
    with pytest.raises(CodecError):
        decode_packet(msg_type, payload)


def test_negative_header_size_is_rejected():
    payload = b'{"id": "x", "name": "a", "size": -1, "mime_type": "", "chunk_count": 0}'
    with pytest.raises(CodecError):
        decode_packet(MessageType.HEADER, payload)


@pytest.mark.asyncio
async def test_frames_are_read_back_from_a_stream():
    reader = asyncio.StreamReader()
    ack_type, ack_payload = encode_packet(AckPacket(id="abc"))
    ping_type, ping_payload = encode_packet(PingPacket(timestamp=12.5))
    reader.feed_data(frame_message(ack_type, ack_payload) + frame_message(ping_type, ping_payload))
    reader.feed_eof()

    first = decode_packet(*await recv_message(reader))
    second = decode_packet(*await recv_message(reader))

    assert first == AckPacket(id="abc")
    assert second == PingPacket(timestamp=12.5)
    with pytest.raises(asyncio.IncompleteReadError):
        await recv_message(reader)
