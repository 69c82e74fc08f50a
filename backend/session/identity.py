"""
Identity manager for the rotating, ephemeral session code.

A code is six decimal digits; the identifier registered with the transport is
the code behind a fixed namespace prefix. Codes expire after CODE_TIMEOUT and
are replaced once nothing is connected or connecting.
"""

import asyncio
import logging
import random
import re
import time
from typing import Callable

from config import CODE_TIMEOUT, PEER_ID_PREFIX
from session.models import ConnectionState, PeerIdentity

logger = logging.getLogger(__name__)

CODE_PATTERN = re.compile(r"\d{6}")
ROTATABLE_STATES = (ConnectionState.DISCONNECTED, ConnectionState.ERROR)


def expand_code(text: str, prefix: str = PEER_ID_PREFIX) -> str:
    """Turn a peer-entered 6-digit code into a full identifier."""
    target = text.strip()
    if CODE_PATTERN.fullmatch(target):
        return f"{prefix}{target}"
    return target


class IdentityManager:
    """Owns the current PeerIdentity and its rotation deadline."""

    def __init__(
        self,
        on_due: Callable[[], None] | None = None,
        *,
        prefix: str = PEER_ID_PREFIX,
        ttl: float = CODE_TIMEOUT,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._on_due = on_due
        self._prefix = prefix
        self._ttl = ttl
        self._rng = rng or random.SystemRandom()
        self._clock = clock
        self._current: PeerIdentity | None = None
        self._timer: asyncio.TimerHandle | None = None

    @property
    def current(self) -> PeerIdentity | None:
        return self._current

    @property
    def rotation_deadline(self) -> float | None:
        """When the armed rotation fires, or None while rotation is suspended."""
        if self._timer is None or self._current is None:
            return None
        return self._current.expires_at

    def generate_code(self) -> str:
        return str(self._rng.randint(100000, 999999))

    def issue(self) -> PeerIdentity:
        """Replace the current identity with a freshly generated one."""
        self.disarm()
        code = self.generate_code()
        now = self._clock()
        self._current = PeerIdentity(
            code=code,
            peer_id=f"{self._prefix}{code}",
            issued_at=now,
            expires_at=now + self._ttl,
        )
        logger.info(f"Issued session code {code}")
        return self._current

    def is_expired(self) -> bool:
        return self._current is None or self._clock() >= self._current.expires_at

    def schedule_rotation_check(self, state: ConnectionState) -> bool:
        """Re-evaluate rotation for the given connection state.

        Returns True when the identity is due for rotation right now. When
        rotation is allowed but the code is still valid the timer is armed for
        the remaining lifetime; while connecting or connected it is stopped.
        """
        if self._current is None:
            return False
        if state not in ROTATABLE_STATES:
            self.disarm()
            return False
        if self.is_expired():
            self.disarm()
            return True
        if self._timer is None:
            remaining = self._current.expires_at - self._clock()
            loop = asyncio.get_running_loop()
            self._timer = loop.call_later(remaining, self._fire)
        return False

    def disarm(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        self._timer = None
        logger.debug("Rotation deadline reached")
        if self._on_due is not None:
            self._on_due()
