"""
Receiver half of the transfer engine.

Accepting or rejecting an offer happens here; accumulating CHUNKs and
finalizing on END is done by the packet dispatcher through AssemblyBuffer.
"""

import logging

from session.models import NotificationType
from transfer.models import (
    AckPacket,
    DownloadArtifact,
    HeaderPacket,
    RejectPacket,
    TransferRole,
    TransferStatus,
)
from transport.base import ChannelClosed

logger = logging.getLogger(__name__)


class AssemblyBuffer:
    """Chunks of the incoming file, kept in arrival order."""

    def __init__(self, header: HeaderPacket) -> None:
        self.header = header
        self.chunks: list[bytes] = []
        self.received = 0
        self.artifact: DownloadArtifact | None = None

    @property
    def file_id(self) -> str:
        return self.header.id

    def append(self, data: bytes) -> int:
        if self.artifact is not None:
            raise RuntimeError("Assembly already finalized")
        self.chunks.append(data)
        self.received += len(data)
        return self.received

    def finalize(self) -> DownloadArtifact:
        """Join the chunks into the downloadable artifact (once)."""
        if self.artifact is None:
            self.artifact = DownloadArtifact(
                file_name=self.header.name,
                mime_type=self.header.mime_type,
                data=b"".join(self.chunks),
            )
            self.chunks = []
        return self.artifact


class ReceiverEngine:
    def __init__(self, ctx) -> None:
        self.ctx = ctx

    def _incoming(self):
        """The channel and buffer of an offer awaiting a decision, if any."""
        transfer = self.ctx.transfer
        assembly = self.ctx.assembly
        channel = self.ctx.connection.channel
        if (
            transfer.role != TransferRole.RECEIVER
            or transfer.status != TransferStatus.INCOMING
            or assembly is None
            or channel is None
        ):
            return None
        return channel, assembly

    def accept(self) -> bool:
        """Tell the sender to start streaming. False if nothing is pending."""
        pending = self._incoming()
        if pending is None:
            logger.debug("accept() without an incoming offer")
            return False
        channel, assembly = pending
        try:
            channel.send(AckPacket(id=assembly.file_id))
        except ChannelClosed:
            self.ctx.fail_transfer("Connection lost")
            return False

        logger.info(f"Accepted {assembly.header.name} ({assembly.header.size} bytes)")
        self.ctx.transfer.status = TransferStatus.TRANSFERRING
        self.ctx.transfer_changed()
        return True

    def reject(self) -> bool:
        """Decline the pending offer and go back to idle."""
        pending = self._incoming()
        if pending is None:
            logger.debug("reject() without an incoming offer")
            return False
        channel, assembly = pending
        try:
            channel.send(RejectPacket(id=assembly.file_id))
        except ChannelClosed:
            logger.warning("Channel closed before the rejection could be sent")

        logger.info(f"Rejected {assembly.header.name}")
        self.reset()
        self.ctx.notify("File request rejected", NotificationType.INFO)
        return True

    def materialize_download(self) -> DownloadArtifact | None:
        """The reconstructed file of a completed receive, else None."""
        transfer = self.ctx.transfer
        assembly = self.ctx.assembly
        if (
            transfer.role != TransferRole.RECEIVER
            or transfer.status != TransferStatus.COMPLETED
            or assembly is None
            or assembly.artifact is None
        ):
            return None
        return assembly.artifact

    def reset(self) -> None:
        self.ctx.reset_transfer()
