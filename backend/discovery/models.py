"""Pydantic models for the LAN identifier registry."""

from pydantic import BaseModel


class RegistryEntry(BaseModel):
    """Where a session identifier can currently be reached."""
    peer_id: str
    instance_id: str
    ip_address: str
    transfer_port: int
    platform: str  # "windows" | "darwin" | "linux"
    last_seen: float  # Unix timestamp
    claimed: bool = True


class DiscoveryBeacon(BaseModel):
    """The JSON payload broadcast over UDP."""
    app_id: str
    instance_id: str  # random per process, distinguishes our own beacons
    peer_id: str
    transfer_port: int
    platform: str
    claimed: bool = True  # False while the identifier is still being probed
