"""Throughput of the running transfer over a sliding time window."""

import time
from collections import deque
from typing import Callable


class SpeedTracker:
    """Bytes per second over the last ``window`` seconds of samples."""

    def __init__(self, window: float = 2.0, clock: Callable[[], float] = time.monotonic):
        self._window = window
        self._clock = clock
        self._samples: deque[tuple[float, int]] = deque()
        self._bytes_in_window = 0

    def record(self, byte_count: int) -> None:
        now = self._clock()
        self._samples.append((now, byte_count))
        self._bytes_in_window += byte_count
        while self._samples and self._samples[0][0] < now - self._window:
            _, dropped = self._samples.popleft()
            self._bytes_in_window -= dropped

    def get_speed(self) -> float:
        if len(self._samples) < 2:
            return 0.0
        elapsed = self._samples[-1][0] - self._samples[0][0]
        if elapsed <= 0:
            return 0.0
        # The first sample only marks where the window starts
        return (self._bytes_in_window - self._samples[0][1]) / elapsed

    def reset(self) -> None:
        self._samples.clear()
        self._bytes_in_window = 0
