"""
Connection lifecycle: the state machine around the one channel of a session,
plus the classification of transport errors into what the session does next.
"""

import logging
from enum import Enum

from config import MAX_ID_RETRIES
from session.errors import InvalidTransition, NotConnected
from session.models import ConnectionState
from transport.base import Channel, TransportErrorType

logger = logging.getLogger(__name__)

_TRANSITIONS = {
    ConnectionState.DISCONNECTED: {ConnectionState.CONNECTING, ConnectionState.ERROR},
    ConnectionState.CONNECTING: {
        ConnectionState.CONNECTED,
        ConnectionState.DISCONNECTED,
        ConnectionState.ERROR,
    },
    ConnectionState.CONNECTED: {ConnectionState.DISCONNECTED, ConnectionState.ERROR},
    ConnectionState.ERROR: {ConnectionState.DISCONNECTED},
}


class ErrorClass(str, Enum):
    COLLISION = "collision"  # re-issue identity, retry at once (bounded)
    TRANSIENT = "transient"  # notify, retry after RETRY_DELAY (uncapped)
    FATAL = "fatal"  # terminal error state
    OTHER = "other"  # notify only


_ERROR_CLASSES = {
    TransportErrorType.UNAVAILABLE_ID: ErrorClass.COLLISION,
    TransportErrorType.NETWORK: ErrorClass.TRANSIENT,
    TransportErrorType.PEER_UNAVAILABLE: ErrorClass.TRANSIENT,
    TransportErrorType.SOCKET_ERROR: ErrorClass.TRANSIENT,
    TransportErrorType.CHANNEL_ERROR: ErrorClass.TRANSIENT,
    TransportErrorType.UNSUPPORTED: ErrorClass.FATAL,
}


def classify_error(error_type: TransportErrorType) -> ErrorClass:
    return _ERROR_CLASSES.get(error_type, ErrorClass.OTHER)


class ConnectionLifecycle:
    """Tracks the connection state and owns the active channel."""

    def __init__(self, max_id_retries: int = MAX_ID_RETRIES) -> None:
        self._state = ConnectionState.DISCONNECTED
        self._channel: Channel | None = None
        self._max_id_retries = max_id_retries
        self._collisions = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def channel(self) -> Channel | None:
        return self._channel

    @property
    def is_busy(self) -> bool:
        """True while connecting or connected; identity rotation waits."""
        return self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED)

    def owns(self, channel: Channel | None) -> bool:
        return channel is not None and channel is self._channel

    def require_channel(self) -> Channel:
        """The open channel of a connected session. Raises NotConnected."""
        channel = self._channel
        if self._state != ConnectionState.CONNECTED or channel is None or not channel.is_open:
            raise NotConnected()
        return channel

    def transition(self, new_state: ConnectionState) -> None:
        if new_state == self._state:
            return
        if new_state not in _TRANSITIONS[self._state]:
            raise InvalidTransition(self._state, new_state)
        logger.info(f"Connection {self._state.value} -> {new_state.value}")
        self._state = new_state

    def begin(self, channel: Channel | None = None) -> None:
        """A channel is being established, outbound or inbound.

        Outbound attempts enter CONNECTING before the transport hands out the
        channel; ``attach`` completes them.
        """
        self.transition(ConnectionState.CONNECTING)
        self._channel = channel

    def attach(self, channel: Channel) -> bool:
        """Adopt the channel of an outbound attempt still in CONNECTING."""
        if self._state != ConnectionState.CONNECTING or self._channel is not None:
            return False
        self._channel = channel
        return True

    def opened(self, channel: Channel) -> bool:
        if not self.owns(channel):
            return False
        self.transition(ConnectionState.CONNECTED)
        return True

    def closed(self, channel: Channel) -> bool:
        """The channel went away. Returns False for stale channels."""
        if not self.owns(channel):
            return False
        self._channel = None
        if self._state != ConnectionState.ERROR:
            self.transition(ConnectionState.DISCONNECTED)
        return True

    def abandon(self) -> None:
        """Give up on a connection attempt that never opened."""
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.close()
        if self._state == ConnectionState.CONNECTING:
            self.transition(ConnectionState.DISCONNECTED)

    def disconnect(self) -> bool:
        """Close the channel locally. No-op (False) if there is none."""
        channel, self._channel = self._channel, None
        if channel is None:
            return False
        channel.close()
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            self.transition(ConnectionState.DISCONNECTED)
        return True

    def fail(self) -> None:
        """Enter the terminal error state, dropping any channel."""
        channel, self._channel = self._channel, None
        if channel is not None:
            channel.close()
        self.transition(ConnectionState.ERROR)

    def recover(self) -> None:
        """Leave the error state after a manual reset or a new registration."""
        if self._state == ConnectionState.ERROR:
            self.transition(ConnectionState.DISCONNECTED)

    def record_collision(self) -> bool:
        """Count a code collision. Returns True once the retry budget is spent."""
        self._collisions += 1
        return self._collisions > self._max_id_retries

    def clear_collisions(self) -> None:
        self._collisions = 0

    @property
    def collisions(self) -> int:
        return self._collisions
