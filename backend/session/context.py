"""
Session context: the one owned bundle of mutable session state.

PeerSession creates a single SessionContext and hands it to the dispatcher,
the transfer engines and the latency probe. Every mutation goes through here
so that UI events are published consistently.
"""

import asyncio
import logging
import time
import uuid

from config import NOTIFICATION_TTL, PROGRESS_INTERVAL
from session.connection import ConnectionLifecycle
from session.errors import TransferBusy
from session.identity import IdentityManager
from session.models import (
    Notification,
    NotificationType,
    SessionSnapshot,
)
from transfer.handshake import PendingAck
from transfer.models import TransferSession, TransferStatus
from transfer.progress import SpeedTracker
from transfer.receiver import AssemblyBuffer

logger = logging.getLogger(__name__)


class SessionContext:
    def __init__(
        self,
        identity: IdentityManager,
        connection: ConnectionLifecycle,
        *,
        notification_ttl: float = NOTIFICATION_TTL,
        progress_interval: float = PROGRESS_INTERVAL,
    ) -> None:
        self.identity = identity
        self.connection = connection
        self.transfer = TransferSession()
        self.assembly: AssemblyBuffer | None = None
        self.pending_ack: PendingAck | None = None
        self.latency_ms: float | None = None
        self.notification: Notification | None = None
        self.speed = SpeedTracker()
        self._notification_ttl = notification_ttl
        self._progress_interval = progress_interval
        self._last_progress = 0.0
        self._dismiss_handle: asyncio.TimerHandle | None = None
        self._listeners: list = []  # async fn(event_type, data)
        self._events: asyncio.Queue = asyncio.Queue()
        self._event_pump: asyncio.Task | None = None

    # --- Events ---

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self._listeners.append(callback)

    def publish(self, event_type: str, data: dict | None) -> None:
        if not self._listeners:
            return
        self._events.put_nowait((event_type, data))
        if self._event_pump is None or self._event_pump.done():
            self._event_pump = asyncio.create_task(self._pump_events())

    async def _pump_events(self) -> None:
        # A single task delivers everything, in publish order
        while not self._events.empty():
            event_type, data = self._events.get_nowait()
            for cb in list(self._listeners):
                try:
                    await cb(event_type, data)
                except Exception as e:
                    logger.error(f"Event callback error: {e}")

    def close(self) -> None:
        """Drop undelivered events and stop the delivery task."""
        if self._event_pump is not None:
            self._event_pump.cancel()
            self._event_pump = None
        while not self._events.empty():
            self._events.get_nowait()

    def snapshot(self) -> SessionSnapshot:
        channel = self.connection.channel
        return SessionSnapshot(
            connection_state=self.connection.state,
            identity=self.identity.current,
            rotation_deadline=self.identity.rotation_deadline,
            remote_id=channel.remote_id if channel is not None else None,
            transfer=self.transfer.model_copy(),
            latency_ms=self.latency_ms,
            notification=self.notification,
            download_ready=self.assembly is not None and self.assembly.artifact is not None,
        )

    # --- Notifications ---

    def notify(self, message: str, type: NotificationType = NotificationType.INFO) -> Notification:
        """Show a transient notice; it dismisses itself after a few seconds."""
        notification = Notification(id=uuid.uuid4().hex, message=message, type=type)
        self.notification = notification
        if self._dismiss_handle is not None:
            self._dismiss_handle.cancel()
        self._dismiss_handle = asyncio.get_running_loop().call_later(
            self._notification_ttl, self.dismiss_notification, notification.id
        )
        self.publish("notification", notification.model_dump())
        return notification

    def dismiss_notification(self, notification_id: str | None = None) -> None:
        if self.notification is None:
            return
        if notification_id is not None and self.notification.id != notification_id:
            return
        self.notification = None
        if self._dismiss_handle is not None:
            self._dismiss_handle.cancel()
            self._dismiss_handle = None
        self.publish("notification", None)

    # --- Connection / identity ---

    def connection_changed(self) -> None:
        self.publish("connection_state", {
            "state": self.connection.state.value,
            "remote_id": self.connection.channel.remote_id if self.connection.channel else None,
        })

    def identity_changed(self) -> None:
        identity = self.identity.current
        self.publish("identity", {
            "identity": identity.model_dump() if identity else None,
            "rotation_deadline": self.identity.rotation_deadline,
        })

    def set_latency(self, latency_ms: float | None) -> None:
        if latency_ms == self.latency_ms:
            return
        self.latency_ms = latency_ms
        self.publish("latency", {"latency_ms": latency_ms})

    # --- Transfer ---

    def set_transfer(self, transfer: TransferSession) -> None:
        self.transfer = transfer
        self.speed.reset()
        self._last_progress = 0.0
        self.transfer_changed()

    def transfer_changed(self) -> None:
        self.publish("transfer_state", self.transfer.model_dump())

    def record_progress(self, transferred: int, byte_count: int) -> None:
        """Advance the transfer counter; progress events are throttled."""
        self.transfer.advance(transferred)
        self.speed.record(byte_count)
        now = time.monotonic()
        if now - self._last_progress >= self._progress_interval:
            self.transfer.speed_bps = self.speed.get_speed()
            self.publish("transfer_progress", self.transfer.model_dump())
            self._last_progress = now

    def complete_transfer(self) -> None:
        transfer = self.transfer
        transfer.transferred_size = transfer.total_size
        transfer.percentage = 100.0
        transfer.speed_bps = 0.0
        transfer.status = TransferStatus.COMPLETED
        self.transfer_changed()

    def fail_transfer(self, message: str) -> None:
        """Mark the current transfer as failed; the first failure wins."""
        if self.transfer.status == TransferStatus.ERROR:
            return
        self.transfer.status = TransferStatus.ERROR
        self.transfer.error_message = message
        self.transfer.speed_bps = 0.0
        self.transfer_changed()

    def reset_transfer(self) -> None:
        self.assembly = None
        self.set_transfer(TransferSession())

    # --- Handshake slot ---

    def open_pending_ack(self, file_id: str) -> PendingAck:
        if self.pending_ack is not None and not self.pending_ack.done:
            raise TransferBusy("Still waiting for the peer to answer an offer")
        self.pending_ack = PendingAck(file_id)
        return self.pending_ack

    def resolve_pending_ack(self, file_id: str, accepted: bool) -> bool:
        """Deliver the peer's answer. False if nobody was waiting for it."""
        pending = self.pending_ack
        if pending is None or pending.done:
            return False
        if pending.file_id != file_id:
            logger.warning(f"Answer for {file_id} does not match pending offer {pending.file_id}")
            return False
        self.pending_ack = None
        return pending.resolve(accepted)

    def release_pending_ack(self, pending: PendingAck | None = None, reason: str = "") -> None:
        """Force-resolve the outstanding handshake so no waiter is left hanging."""
        current = self.pending_ack
        if pending is not None and current is not pending:
            pending.abort(reason)
            return
        self.pending_ack = None
        if current is not None:
            current.abort(reason)

    def connection_lost(self, message: str = "Connection lost") -> None:
        """The channel is gone: fail whatever was in flight and clear latency."""
        self.release_pending_ack(reason=message)
        if self.transfer.status in (TransferStatus.WAITING, TransferStatus.TRANSFERRING):
            self.fail_transfer(message)
        elif self.transfer.status == TransferStatus.INCOMING:
            # The offer can no longer be answered
            self.fail_transfer(message)
        self.set_latency(None)
