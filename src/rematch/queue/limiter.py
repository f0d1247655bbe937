from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Callable


class RateLimiter:
    """Sliding-window limiter: at most ``max_calls`` acquisitions per ``window_sec``."""

    def __init__(
        self,
        max_calls: int,
        window_sec: float,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_calls < 1:
            raise ValueError("max_calls must be at least 1")
        if window_sec <= 0:
            raise ValueError("window_sec must be positive")
        self.max_calls = max_calls
        self.window_sec = window_sec
        self.clock = clock
        self._calls: deque[float] = deque()
        self._lock = asyncio.Lock()

    def _trim(self, now: float) -> None:
        while self._calls and now - self._calls[0] >= self.window_sec:
            self._calls.popleft()

    def try_acquire(self) -> bool:
        now = self.clock()
        self._trim(now)
        if len(self._calls) >= self.max_calls:
            return False
        self._calls.append(now)
        return True

    def wait_time(self) -> float:
        now = self.clock()
        self._trim(now)
        if len(self._calls) < self.max_calls:
            return 0.0
        return max(0.0, self._calls[0] + self.window_sec - now)

    async def acquire(self) -> None:
        async with self._lock:
            while not self.try_acquire():
                await asyncio.sleep(self.wait_time())
