"""
Peer session: orchestrates identity, connection and the single transfer.

One PeerSession drives one transport. All transport activity arrives as
TransportEvent objects on the transport's queue and is handled by
``handle_event`` from a single task, so session state is only ever touched
from the event loop, one event at a time.
"""

import asyncio
import logging
import time

from config import (
    BACKPRESSURE_DELAY,
    BUFFER_HIGH_WATERMARK,
    CHUNK_SIZE,
    CODE_TIMEOUT,
    MAX_ID_RETRIES,
    NOTIFICATION_TTL,
    PING_INTERVAL,
    RETRY_DELAY,
)
from session.connection import ConnectionLifecycle, ErrorClass, classify_error
from session.context import SessionContext
from session.dispatch import PacketDispatcher
from session.errors import NotConnected, SessionError, TransferBusy
from session.identity import IdentityManager, expand_code
from session.latency import LatencyProbe
from session.models import ConnectionState, NotificationType, SessionSnapshot
from transfer.files import FileSource, LocalFile, bundle_files
from transfer.models import (
    DownloadArtifact,
    TransferRole,
    TransferSession,
    TransferStatus,
)
from transfer.receiver import ReceiverEngine
from transfer.sender import SenderEngine
from transport.base import (
    Channel,
    EventKind,
    Transport,
    TransportError,
    TransportErrorType,
    TransportEvent,
)

logger = logging.getLogger(__name__)

PREPARE_FAILED_MESSAGE = "Failed to prepare files for sending"


class PeerSession:
    """The collaborator the presentation layer talks to."""

    def __init__(
        self,
        transport: Transport,
        *,
        code_timeout: float = CODE_TIMEOUT,
        retry_delay: float = RETRY_DELAY,
        max_id_retries: int = MAX_ID_RETRIES,
        ping_interval: float = PING_INTERVAL,
        chunk_size: int = CHUNK_SIZE,
        high_watermark: int = BUFFER_HIGH_WATERMARK,
        backpressure_delay: float = BACKPRESSURE_DELAY,
        notification_ttl: float = NOTIFICATION_TTL,
        rng=None,
        clock=time.monotonic,
    ) -> None:
        self.transport = transport
        self.identity = IdentityManager(self._check_rotation, ttl=code_timeout, rng=rng)
        self.connection = ConnectionLifecycle(max_id_retries)
        self.ctx = SessionContext(
            self.identity, self.connection, notification_ttl=notification_ttl
        )
        self.dispatcher = PacketDispatcher(self.ctx, clock)
        self.sender = SenderEngine(
            self.ctx,
            chunk_size=chunk_size,
            high_watermark=high_watermark,
            backpressure_delay=backpressure_delay,
        )
        self.receiver = ReceiverEngine(self.ctx)
        self.probe = LatencyProbe(self.ctx, ping_interval, clock)
        self._retry_delay = retry_delay
        self._registered = False
        self._retrying = False
        self._retry_handle: asyncio.TimerHandle | None = None
        self._event_task: asyncio.Task | None = None
        self._tasks: set[asyncio.Task] = set()

    # --- Lifecycle ---

    @property
    def registered(self) -> bool:
        return self._registered

    def on_event(self, callback) -> None:
        """Register callback: async fn(event_type: str, data: dict)."""
        self.ctx.on_event(callback)

    def snapshot(self) -> SessionSnapshot:
        return self.ctx.snapshot()

    async def start(self) -> None:
        """Start consuming transport events and register a first code."""
        if self._event_task is None:
            self._event_task = asyncio.create_task(self._event_loop())
        await self._register_new_identity()

    async def stop(self) -> None:
        """Tear down timers, the channel and the transport."""
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        self.identity.disarm()
        self.probe.stop()
        self.connection.disconnect()
        self.ctx.release_pending_ack(reason="Session stopped")
        for task in list(self._tasks):
            task.cancel()
        if self._event_task is not None:
            self._event_task.cancel()
            self._event_task = None
        self._registered = False
        self.ctx.close()
        await self.transport.close()
        logger.info("Peer session stopped")

    async def restart(self) -> None:
        """Manual reset out of the error state with a fresh code."""
        if self.connection.is_busy:
            raise SessionError("Disconnect before requesting a new code")
        self.connection.clear_collisions()
        self.connection.recover()
        self.ctx.connection_changed()
        await self._register_new_identity()

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Session task failed: {task.exception()!r}")

    # --- Identity ---

    async def _register_new_identity(self) -> None:
        identity = self.identity.issue()
        self._registered = False
        self.ctx.identity_changed()
        try:
            await self.transport.register(identity.peer_id)
        except TransportError as e:
            if self.identity.current is identity:
                self.handle_transport_error(e)
            return

        if self.identity.current is not identity:
            return
        logger.info(f"Registered as {identity.peer_id}")
        self._registered = True
        self.connection.clear_collisions()
        if self._retrying:
            self._retrying = False
            self.ctx.notify("Reconnected to network", NotificationType.SUCCESS)
        if self.connection.state == ConnectionState.ERROR:
            self.connection.recover()
            self.ctx.connection_changed()
        self._check_rotation()

    def _check_rotation(self) -> None:
        if self._registered and self.identity.schedule_rotation_check(self.connection.state):
            logger.info("Rotating session code")
            self._spawn(self._register_new_identity())
        self.ctx.identity_changed()

    def _schedule_retry(self) -> None:
        self._retrying = True
        if self._retry_handle is not None:
            self._retry_handle.cancel()
        self._retry_handle = asyncio.get_running_loop().call_later(
            self._retry_delay, self._retry_registration
        )

    def _retry_registration(self) -> None:
        self._retry_handle = None
        if self.connection.is_busy:
            # Never swap the code under a live connection
            self._schedule_retry()
            return
        self._spawn(self._register_new_identity())

    # --- Transport events ---

    async def _event_loop(self) -> None:
        while True:
            event = await self.transport.events.get()
            try:
                self.handle_event(event)
            except SessionError as e:
                logger.warning(f"{event.kind.value} event refused: {e}")

    def handle_event(self, event: TransportEvent) -> None:
        channel = event.channel
        if event.kind == EventKind.MESSAGE:
            if not self.connection.owns(channel) or self.connection.state != ConnectionState.CONNECTED:
                logger.debug(f"Dropping {event.packet.type.value} from stale channel")
                return
            self.dispatcher.on_message(event.packet, channel)
        elif event.kind == EventKind.INCOMING:
            self._on_incoming(channel)
        elif event.kind == EventKind.OPEN:
            self._on_open(channel)
        elif event.kind == EventKind.CLOSE:
            self._on_close(channel)
        elif event.kind == EventKind.ERROR:
            self.handle_transport_error(event.error, channel)

    def _on_incoming(self, channel: Channel) -> None:
        if self.connection.state != ConnectionState.DISCONNECTED:
            logger.warning(
                f"Refusing connection from {channel.remote_id}: {self.connection.state.value}"
            )
            channel.close()
            return
        logger.info(f"Incoming connection from {channel.remote_id}")
        self.connection.begin(channel)
        self.ctx.connection_changed()
        self._check_rotation()

    def _on_open(self, channel: Channel) -> None:
        if not self.connection.opened(channel):
            return
        self.probe.start(channel)
        self.ctx.connection_changed()
        self.ctx.notify("Secure connection established", NotificationType.SUCCESS)

    def _on_close(self, channel: Channel) -> None:
        if not self.connection.closed(channel):
            return
        self.probe.stop()
        self.ctx.connection_lost()
        self.ctx.connection_changed()
        self.ctx.notify("Peer disconnected", NotificationType.WARNING)
        self._check_rotation()

    def handle_transport_error(self, error: TransportError, channel: Channel | None = None) -> None:
        """React to an adapter error according to its class."""
        if channel is not None:
            # Errors on an established channel only interrupt, never reset
            if self.connection.owns(channel):
                logger.warning(f"Channel error: {error}")
                self.ctx.notify("Data connection interrupted", NotificationType.ERROR)
            return

        error_class = classify_error(error.type)
        logger.warning(f"Transport error ({error.type.value}, {error_class.value}): {error}")

        if error_class == ErrorClass.COLLISION:
            if self.connection.record_collision():
                self._enter_error("Unable to register a session code. Please restart.")
            else:
                self._spawn(self._register_new_identity())
        elif error_class == ErrorClass.TRANSIENT:
            self.ctx.notify(f"Network issue: {error.type.value}. Retrying...", NotificationType.WARNING)
            if self.connection.state == ConnectionState.CONNECTING:
                self._abandon_attempt()
            self._registered = False
            self._schedule_retry()
        elif error_class == ErrorClass.FATAL:
            self._enter_error("This environment does not support peer connections.")
        elif error.type == TransportErrorType.INVALID_ID:
            self.ctx.notify("Invalid Peer ID.", NotificationType.ERROR)
        else:
            self.ctx.notify(f"Connection Error: {error.type.value}", NotificationType.ERROR)

    def _abandon_attempt(self) -> None:
        self.connection.abandon()
        self.ctx.connection_changed()
        self._check_rotation()

    def _enter_error(self, message: str) -> None:
        self._registered = False
        self._retrying = False
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
        self.identity.disarm()
        self.probe.stop()
        self.connection.fail()
        self.ctx.connection_lost(message)
        self.ctx.connection_changed()
        self.ctx.identity_changed()
        self.ctx.notify(message, NotificationType.ERROR)

    # --- Operations ---

    async def connect(self, target: str) -> bool:
        """Open a channel to the peer behind ``target`` (a code or full id)."""
        identity = self.identity.current
        if not self._registered or identity is None:
            self.ctx.notify("Peer not initialized yet", NotificationType.ERROR)
            raise NotConnected("Peer not initialized yet")

        target_id = expand_code(target)
        if not target_id:
            raise SessionError("Enter a code to connect")
        if target_id == identity.peer_id:
            self.ctx.notify("You cannot connect to yourself", NotificationType.WARNING)
            raise SessionError("You cannot connect to yourself")
        if self.connection.state != ConnectionState.DISCONNECTED:
            raise SessionError(f"Cannot connect while {self.connection.state.value}")

        self.connection.begin()
        self.ctx.connection_changed()
        self._check_rotation()
        logger.info(f"Connecting to {target_id}")

        try:
            channel = await self.transport.connect(target_id)
        except TransportError as e:
            self._connect_failed(e)
            return False

        if not self.connection.attach(channel):
            # Disconnected or failed while the attempt was in flight
            channel.close()
            return False
        self.ctx.connection_changed()
        return True

    def _connect_failed(self, error: TransportError) -> None:
        """An outbound attempt failed; our own registration is unaffected."""
        logger.warning(f"Connect failed ({error.type.value}): {error}")
        if self.connection.state == ConnectionState.CONNECTING and self.connection.channel is None:
            self._abandon_attempt()
        error_class = classify_error(error.type)
        if error_class == ErrorClass.FATAL:
            self._enter_error("This environment does not support peer connections.")
        elif error_class == ErrorClass.TRANSIENT:
            self.ctx.notify(f"Network issue: {error.type.value}", NotificationType.WARNING)
        else:
            self.ctx.notify("Connection failed", NotificationType.ERROR)

    def disconnect(self) -> bool:
        """Close the connection. No-op (False) if there is none."""
        if not self.connection.disconnect():
            return False
        self.probe.stop()
        self.ctx.connection_lost("Disconnected")
        self.ctx.connection_changed()
        self.ctx.notify("Disconnected manually", NotificationType.INFO)
        self._check_rotation()
        return True

    async def offer(self, files: list) -> TransferSession:
        """Send one file, or several bundled into a single zip archive."""
        sources: list[FileSource] = [
            LocalFile(f) if isinstance(f, str) else f for f in files
        ]
        if not sources or self.connection.state != ConnectionState.CONNECTED:
            self.ctx.notify("Not connected or no files selected", NotificationType.ERROR)
            raise NotConnected("Not connected or no files selected")
        if self.ctx.transfer.is_active:
            raise TransferBusy()

        if len(sources) == 1:
            return await self.sender.offer(sources[0])

        self.ctx.set_transfer(TransferSession(
            role=TransferRole.SENDER,
            file_name=f"Compressing {len(sources)} files...",
            status=TransferStatus.WAITING,
        ))
        try:
            bundle = await bundle_files(sources)
        except OSError as e:
            logger.error(f"Preparation error: {e}")
            self.ctx.fail_transfer(PREPARE_FAILED_MESSAGE)
            self.ctx.notify("Failed to prepare files", NotificationType.ERROR)
            return self.ctx.transfer

        # The placeholder above only covered the preparation step
        self.ctx.transfer = TransferSession()
        try:
            return await self.sender.offer(bundle)
        except NotConnected:
            self.ctx.fail_transfer("Connection lost")
            self.ctx.notify("Transfer interrupted", NotificationType.ERROR)
            return self.ctx.transfer

    def start_offer(self, files: list) -> asyncio.Task:
        """Run ``offer`` in the background (for request handlers)."""
        return self._spawn(self.offer(files))

    def accept(self) -> bool:
        return self.receiver.accept()

    def reject(self) -> bool:
        return self.receiver.reject()

    def materialize_download(self) -> DownloadArtifact | None:
        artifact = self.receiver.materialize_download()
        if artifact is not None:
            self.ctx.notify("Download started", NotificationType.INFO)
        return artifact

    def reset(self) -> None:
        """Dismiss the finished (or declined) transfer."""
        if self.ctx.transfer.status in (TransferStatus.WAITING, TransferStatus.TRANSFERRING):
            raise TransferBusy("Transfer still running")
        self.receiver.reset()
