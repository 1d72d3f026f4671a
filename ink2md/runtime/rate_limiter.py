from __future__ import annotations

import asyncio
import math
import time
from typing import Callable


class RateLimiter:
    """FIFO spacing of call starts: no two turns begin closer than ``min_interval_seconds``.

    Waiters queue on an ``asyncio.Lock`` (first come, first served); each one sleeps
    until its predecessor's interval has elapsed.
    """

    def __init__(self, requests_per_second: float, clock: Callable[[], float] = time.monotonic):
        interval_ms = max(1, math.floor(1000 / max(1.0, requests_per_second)))
        self.min_interval_seconds = interval_ms / 1000.0
        self._clock = clock
        self._lock = asyncio.Lock()
        self._last_run: float | None = None

    async def wait_turn(self) -> None:
        async with self._lock:
            if self._last_run is not None:
                wait_seconds = self.min_interval_seconds - (self._clock() - self._last_run)
                if wait_seconds > 0:
                    await asyncio.sleep(wait_seconds)
            self._last_run = self._clock()
