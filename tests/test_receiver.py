import pytest

from helpers import connected_context
from session.dispatch import PacketDispatcher
from transfer.models import HeaderPacket, RejectPacket, TransferStatus
from transfer.receiver import AssemblyBuffer, ReceiverEngine


def incoming(size=3):
    ctx, channel = connected_context()
    header = HeaderPacket(id="f1", name="a.bin", size=size, chunk_count=1)
    PacketDispatcher(ctx).on_message(header, channel)
    return ctx, channel, ReceiverEngine(ctx)


@pytest.mark.asyncio
async def test_accept_and_reject_need_an_incoming_offer():
    ctx, channel = connected_context()
    receiver = ReceiverEngine(ctx)

    assert receiver.accept() is False
    assert receiver.reject() is False
    assert channel.sent == []


@pytest.mark.asyncio
async def test_reject_notifies_the_sender_and_goes_idle():
    ctx, channel, receiver = incoming()

    assert receiver.reject() is True

    assert channel.sent == [RejectPacket(id="f1")]
    assert ctx.transfer.status == TransferStatus.IDLE
    assert ctx.assembly is None
    assert ctx.notification.message == "File request rejected"


@pytest.mark.asyncio
async def test_accept_on_a_dead_channel_fails_the_transfer():
    ctx, channel, receiver = incoming()
    channel.close()

    assert receiver.accept() is False
    assert ctx.transfer.status == TransferStatus.ERROR


@pytest.mark.asyncio
async def test_accept_twice_only_acks_once():
    ctx, channel, receiver = incoming()

    assert receiver.accept() is True
    assert receiver.accept() is False
    assert len(channel.sent) == 1


@pytest.mark.asyncio
async def test_download_requires_a_completed_receive():
    ctx, channel, receiver = incoming()
    assert receiver.materialize_download() is None
    receiver.accept()
    assert receiver.materialize_download() is None


def test_assembly_finalizes_once():
    buffer = AssemblyBuffer(HeaderPacket(id="x", name="n.txt", size=4, chunk_count=2))
    buffer.append(b"ab")
    buffer.append(b"cd")

    artifact = buffer.finalize()

    assert artifact.data == b"abcd"
    assert artifact.size == 4
    assert buffer.finalize() is artifact
    with pytest.raises(RuntimeError):
        buffer.append(b"e")
