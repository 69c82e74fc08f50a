"""Periodic PING over the active channel while connected."""

import asyncio
import logging
import time
from typing import Callable

from config import PING_INTERVAL
from session.models import ConnectionState
from transfer.models import PingPacket
from transport.base import Channel, ChannelClosed

logger = logging.getLogger(__name__)


class LatencyProbe:
    def __init__(
        self,
        ctx,
        interval: float = PING_INTERVAL,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ctx = ctx
        self.interval = interval
        self.clock = clock
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self, channel: Channel) -> None:
        self.stop()
        self._task = asyncio.create_task(self._run(channel))

    def stop(self) -> None:
        """Stop pinging and forget the last measurement."""
        if self._task is not None:
            self._task.cancel()
            self._task = None
        self.ctx.set_latency(None)

    async def _run(self, channel: Channel) -> None:
        while True:
            await asyncio.sleep(self.interval)
            connection = self.ctx.connection
            if connection.state != ConnectionState.CONNECTED or not connection.owns(channel):
                return
            try:
                channel.send(PingPacket(timestamp=self.clock()))
            except ChannelClosed:
                logger.debug("Latency probe stopped: channel closed")
                return
