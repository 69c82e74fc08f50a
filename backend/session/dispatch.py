"""
Packet dispatch.

Every packet that arrives on the active channel goes through
PacketDispatcher.on_message, one at a time and in arrival order. Handlers
only mutate the session context and send at most one packet (PONG).
"""

import logging
import time
from typing import Callable

from session.models import NotificationType
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
    TransferRole,
    TransferSession,
    TransferStatus,
)
from transfer.receiver import AssemblyBuffer
from transport.base import Channel, ChannelClosed

logger = logging.getLogger(__name__)

OVERFLOW_MESSAGE = "Received more data than announced"


class PacketDispatcher:
    def __init__(self, ctx, clock: Callable[[], float] = time.monotonic) -> None:
        self.ctx = ctx
        self.clock = clock
        self._handlers = {
            PacketType.PING: self._on_ping,
            PacketType.PONG: self._on_pong,
            PacketType.HEADER: self._on_header,
            PacketType.ACK: self._on_ack,
            PacketType.REJECT: self._on_reject,
            PacketType.CHUNK: self._on_chunk,
            PacketType.END: self._on_end,
        }

    def on_message(self, packet: Packet, channel: Channel) -> None:
        self._handlers[packet.type](packet, channel)

    def _on_ping(self, packet: PingPacket, channel: Channel) -> None:
        try:
            channel.send(PongPacket(timestamp=packet.timestamp))
        except ChannelClosed:
            logger.debug("PING arrived on a closed channel")

    def _on_pong(self, packet: PongPacket, channel: Channel) -> None:
        rtt = (self.clock() - packet.timestamp) * 1000
        self.ctx.set_latency(max(rtt, 0.0))

    def _on_header(self, packet: HeaderPacket, channel: Channel) -> None:
        if self.ctx.transfer.is_active:
            logger.warning(
                f"Ignoring offer of {packet.name}: transfer of "
                f"{self.ctx.transfer.file_name} is {self.ctx.transfer.status.value}"
            )
            return

        logger.info(f"Incoming offer: {packet.name} ({packet.size} bytes)")
        self.ctx.assembly = AssemblyBuffer(packet)
        self.ctx.set_transfer(TransferSession(
            role=TransferRole.RECEIVER,
            file_id=packet.id,
            file_name=packet.name,
            mime_type=packet.mime_type,
            total_size=packet.size,
            status=TransferStatus.INCOMING,
        ))

    def _on_ack(self, packet: AckPacket, channel: Channel) -> None:
        if not self.ctx.resolve_pending_ack(packet.id, True):
            logger.warning(f"ACK for {packet.id} with no pending offer, dropped")

    def _on_reject(self, packet: RejectPacket, channel: Channel) -> None:
        if not self.ctx.resolve_pending_ack(packet.id, False):
            logger.warning(f"REJECT for {packet.id} with no pending offer, dropped")

    def _accepted_assembly(self) -> AssemblyBuffer | None:
        transfer = self.ctx.transfer
        if transfer.role != TransferRole.RECEIVER or transfer.status != TransferStatus.TRANSFERRING:
            return None
        return self.ctx.assembly

    def _on_chunk(self, packet: ChunkPacket, channel: Channel) -> None:
        assembly = self._accepted_assembly()
        if assembly is None:
            logger.debug(f"Dropping chunk {packet.index}: transfer not accepted")
            return

        transfer = self.ctx.transfer
        if assembly.received + len(packet.data) > transfer.total_size:
            logger.warning(f"Chunk {packet.index} overflows {transfer.file_name}")
            self.ctx.fail_transfer(OVERFLOW_MESSAGE)
            self.ctx.notify(OVERFLOW_MESSAGE, NotificationType.ERROR)
            return

        received = assembly.append(packet.data)
        self.ctx.record_progress(received, len(packet.data))

    def _on_end(self, packet: EndPacket, channel: Channel) -> None:
        assembly = self._accepted_assembly()
        if assembly is None or assembly.file_id != packet.id:
            logger.debug(f"Ignoring END for {packet.id}")
            return

        transfer = self.ctx.transfer
        if assembly.received != transfer.total_size:
            logger.warning(
                f"END after {assembly.received} of {transfer.total_size} bytes of {transfer.file_name}"
            )
        assembly.finalize()
        self.ctx.complete_transfer()
        logger.info(f"Received {transfer.file_name}")
        self.ctx.notify("File transfer completed!", NotificationType.SUCCESS)
