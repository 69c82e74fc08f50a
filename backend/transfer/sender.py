"""
Sender half of the transfer engine.

Offers a file with HEADER, waits for the peer's ACK/REJECT, then streams the
content as sequential CHUNKs and finishes with END. Outbound sends are
throttled by polling the channel's buffered amount.
"""

import asyncio
import logging
import math
import uuid

from config import (
    BACKPRESSURE_DELAY,
    BUFFER_HIGH_WATERMARK,
    CHUNK_SIZE,
    YIELD_EVERY_CHUNKS,
)
from session.errors import TransferBusy
from session.models import NotificationType
from transfer.files import FileSource
from transfer.handshake import HandshakeAborted
from transfer.models import (
    ChunkPacket,
    EndPacket,
    HeaderPacket,
    TransferRole,
    TransferSession,
    TransferStatus,
)
from transport.base import Channel, ChannelClosed, TransportError

logger = logging.getLogger(__name__)

DECLINED_MESSAGE = "Transfer declined by peer"
INTERRUPTED_MESSAGE = "Connection lost or transfer failed"


class TransferInterrupted(Exception):
    """The channel went away between two chunks."""


class SenderEngine:
    def __init__(
        self,
        ctx,
        *,
        chunk_size: int = CHUNK_SIZE,
        high_watermark: int = BUFFER_HIGH_WATERMARK,
        backpressure_delay: float = BACKPRESSURE_DELAY,
        yield_every: int = YIELD_EVERY_CHUNKS,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self.ctx = ctx
        self.chunk_size = chunk_size
        self.high_watermark = high_watermark
        self.backpressure_delay = backpressure_delay
        self.yield_every = yield_every

    def chunk_count(self, size: int) -> int:
        return math.ceil(size / self.chunk_size)

    async def offer(self, source: FileSource) -> TransferSession:
        """Offer ``source`` to the connected peer and stream it if accepted.

        Returns the final TransferSession (completed or error). Raises
        NotConnected or TransferBusy before anything is sent.
        """
        channel = self.ctx.connection.require_channel()
        if self.ctx.transfer.is_active:
            raise TransferBusy()

        file_id = str(uuid.uuid4())
        header = HeaderPacket(
            id=file_id,
            name=source.name,
            size=source.size,
            mime_type=source.mime_type,
            chunk_count=self.chunk_count(source.size),
        )
        pending = self.ctx.open_pending_ack(file_id)
        self.ctx.set_transfer(TransferSession(
            role=TransferRole.SENDER,
            file_id=file_id,
            file_name=source.name,
            mime_type=source.mime_type,
            total_size=source.size,
            status=TransferStatus.WAITING,
        ))

        try:
            channel.send(header)
            logger.info(f"Offered {source.name} ({source.size} bytes, {header.chunk_count} chunks)")

            accepted = await pending.wait()
            if not accepted:
                logger.info(f"{source.name} was declined")
                self.ctx.fail_transfer(DECLINED_MESSAGE)
                self.ctx.notify("Peer declined the transfer", NotificationType.WARNING)
                return self.ctx.transfer

            await self._stream(channel, source, file_id)

        except (HandshakeAborted, TransferInterrupted, TransportError, OSError) as e:
            logger.error(f"Send error for {source.name}: {e}")
            if self.ctx.transfer.file_id == file_id:
                self.ctx.fail_transfer(INTERRUPTED_MESSAGE)
            self.ctx.notify("Transfer interrupted", NotificationType.ERROR)
        finally:
            self.ctx.release_pending_ack(pending, "Sender finished")

        return self.ctx.transfer

    async def _stream(self, channel: Channel, source: FileSource, file_id: str) -> None:
        transfer = self.ctx.transfer
        transfer.status = TransferStatus.TRANSFERRING
        self.ctx.transfer_changed()

        offset = 0
        index = 0
        while offset < source.size:
            end = min(offset + self.chunk_size, source.size)
            data = await source.read(offset, end)
            self._check_live(channel, file_id)
            if len(data) != end - offset:
                raise OSError(f"Short read at offset {offset} of {source.name}")

            await self._throttle(channel, file_id)
            channel.send(ChunkPacket(index=index, data=data))

            offset = end
            index += 1
            self.ctx.record_progress(offset, len(data))

            if index % self.yield_every == 0:
                await asyncio.sleep(0)
                self._check_live(channel, file_id)

        channel.send(EndPacket(id=file_id))
        logger.info(f"Sent {source.name}: {index} chunks, {offset} bytes")
        self.ctx.complete_transfer()
        self.ctx.notify("File sent successfully", NotificationType.SUCCESS)

    async def _throttle(self, channel: Channel, file_id: str) -> None:
        """Wait while the channel holds more unsent data than the watermark."""
        while channel.buffered_amount > self.high_watermark:
            await asyncio.sleep(self.backpressure_delay)
            self._check_live(channel, file_id)
        self._check_live(channel, file_id)

    def _check_live(self, channel: Channel, file_id: str) -> None:
        if not channel.is_open or not self.ctx.connection.owns(channel):
            raise TransferInterrupted("Channel closed")
        transfer = self.ctx.transfer
        if transfer.file_id != file_id or transfer.status != TransferStatus.TRANSFERRING:
            raise TransferInterrupted("Transfer no longer active")
