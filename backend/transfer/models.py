"""Pydantic models for file transfer and the wire packets."""

from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field


class TransferStatus(str, Enum):
    """All possible states for the single transfer of a session."""
    IDLE = "idle"
    INCOMING = "incoming"
    WAITING = "waiting"
    TRANSFERRING = "transferring"
    COMPLETED = "completed"
    ERROR = "error"


ACTIVE_STATUSES = (
    TransferStatus.INCOMING,
    TransferStatus.WAITING,
    TransferStatus.TRANSFERRING,
)


class TransferRole(str, Enum):
    SENDER = "sender"
    RECEIVER = "receiver"


class TransferSession(BaseModel):
    """Full state of the current file transfer, exposed to the frontend."""
    role: TransferRole = TransferRole.SENDER
    file_id: str = ""
    file_name: str = ""
    mime_type: str = ""
    total_size: int = 0
    transferred_size: int = 0
    percentage: float = 0.0
    status: TransferStatus = TransferStatus.IDLE
    speed_bps: float = 0.0
    error_message: str | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_STATUSES

    def advance(self, transferred: int) -> None:
        """Move the progress counter forward, never backwards."""
        transferred = min(max(transferred, self.transferred_size), self.total_size)
        self.transferred_size = transferred
        self.percentage = (
            transferred / self.total_size * 100 if self.total_size > 0 else 100.0
        )


class DownloadArtifact(BaseModel):
    """A fully reassembled incoming file, ready to be handed to the user."""
    file_name: str
    mime_type: str
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)


# --- Wire protocol packets ---

class PacketType(str, Enum):
    HEADER = "HEADER"
    CHUNK = "CHUNK"
    END = "END"
    ACK = "ACK"
    REJECT = "REJECT"
    PING = "PING"
    PONG = "PONG"


class HeaderPacket(BaseModel):
    """Offer of a file, sent before any data."""
    type: Literal[PacketType.HEADER] = PacketType.HEADER
    id: str
    name: str
    size: int = Field(ge=0)
    mime_type: str = ""
    chunk_count: int = Field(ge=0)


class ChunkPacket(BaseModel):
    type: Literal[PacketType.CHUNK] = PacketType.CHUNK
    index: int = Field(ge=0)
    data: bytes


class EndPacket(BaseModel):
    type: Literal[PacketType.END] = PacketType.END
    id: str


class AckPacket(BaseModel):
    type: Literal[PacketType.ACK] = PacketType.ACK
    id: str


class RejectPacket(BaseModel):
    type: Literal[PacketType.REJECT] = PacketType.REJECT
    id: str


class PingPacket(BaseModel):
    type: Literal[PacketType.PING] = PacketType.PING
    timestamp: float


class PongPacket(BaseModel):
    type: Literal[PacketType.PONG] = PacketType.PONG
    timestamp: float


Packet = Annotated[
    Union[
        HeaderPacket,
        ChunkPacket,
        EndPacket,
        AckPacket,
        RejectPacket,
        PingPacket,
        PongPacket,
    ],
    Field(discriminator="type"),
]
