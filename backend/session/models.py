"""Pydantic models for the peer session, exposed to the frontend."""

from enum import Enum

from pydantic import BaseModel

from transfer.models import TransferSession


class ConnectionState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class PeerIdentity(BaseModel):
    """An ephemeral session code and the identifier it expands to."""
    code: str
    peer_id: str
    issued_at: float  # Unix timestamp
    expires_at: float


class NotificationType(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class Notification(BaseModel):
    id: str
    message: str
    type: NotificationType = NotificationType.INFO


class SessionSnapshot(BaseModel):
    """Everything the presentation layer renders."""
    connection_state: ConnectionState
    identity: PeerIdentity | None = None
    rotation_deadline: float | None = None
    remote_id: str | None = None
    transfer: TransferSession
    latency_ms: float | None = None
    notification: Notification | None = None
    download_ready: bool = False
