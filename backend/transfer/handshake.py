"""Single-slot continuation for the HEADER -> ACK/REJECT handshake."""

import asyncio


class HandshakeAborted(Exception):
    """The handshake ended without an answer from the peer."""


class PendingAck:
    """Resolved exactly once: accepted, declined, or aborted.

    Aborting stores no exception on the future, so an abort nobody waits for
    leaves nothing behind.
    """

    def __init__(self, file_id: str) -> None:
        self.file_id = file_id
        self._future: asyncio.Future[bool | None] = (
            asyncio.get_running_loop().create_future()
        )
        self._reason = ""

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, accepted: bool) -> bool:
        if self._future.done():
            return False
        self._future.set_result(bool(accepted))
        return True

    def abort(self, reason: str) -> bool:
        if self._future.done():
            return False
        self._reason = reason
        self._future.set_result(None)
        return True

    async def wait(self) -> bool:
        """True if accepted, False if declined. Raises HandshakeAborted."""
        result = await self._future
        if result is None:
            raise HandshakeAborted(self._reason)
        return result
