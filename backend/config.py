"""Application-wide configuration constants."""

import os
import platform

# --- Identity ---
APP_ID = "sendover-v1"
PEER_ID_PREFIX = "sendover-"
CODE_TIMEOUT = 120  # seconds a session code stays valid before rotation
MAX_ID_RETRIES = 10  # consecutive code collisions tolerated

PLATFORM = platform.system().lower()  # "windows" | "darwin" | "linux"

# --- Networking ---
API_HOST = os.environ.get("SENDOVER_API_HOST", "127.0.0.1")
API_PORT = int(os.environ.get("SENDOVER_API_PORT", "8765"))
DISCOVERY_PORT = 41235  # UDP
DISCOVERY_INTERVAL = 1  # seconds
DISCOVERY_PROBE = 1.5  # seconds to listen for a conflicting claim
PEER_TIMEOUT = 10  # seconds before a registry entry is considered stale

TRANSFER_PORT_MIN = 50000
TRANSFER_PORT_MAX = 65000

RETRY_DELAY = 2  # seconds
PING_INTERVAL = 2  # seconds
NOTIFICATION_TTL = 4  # seconds before a notice auto-dismisses


# --- Transfer ---
def _optimal_chunk_size() -> int:
    """Pick the chunk size once per process.

    16 KiB is the conservative size some channel stacks require to avoid
    fragmentation; everything else handles 64 KiB chunks.
    """
    override = os.environ.get("SENDOVER_CHUNK_SIZE")
    if override:
        return max(1, int(override))
    if os.environ.get("SENDOVER_COMPAT_MODE", "").lower() in ("1", "true", "yes"):
        return 16 * 1024
    return 64 * 1024


CHUNK_SIZE = _optimal_chunk_size()
BUFFER_HIGH_WATERMARK = 1024 * 1024  # 1 MiB of unsent data on the channel
BACKPRESSURE_DELAY = 0.05  # seconds between buffered-amount checks
YIELD_EVERY_CHUNKS = 50
PROGRESS_INTERVAL = 0.2  # seconds between progress events
