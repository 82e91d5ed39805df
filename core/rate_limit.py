"""Token-bucket rate limiting for model provider calls."""

from __future__ import annotations

import asyncio
import time


class RateLimiter:
    """Asyncio token bucket: `rate` tokens per second, at most `burst` stored.

    `acquire()` suspends until a token is available; cancelling the waiting
    task abandons the wait without consuming a token.
    """

    def __init__(self, rate: float, burst: int):
        if rate <= 0 or burst <= 0:
            raise ValueError("rate and burst must be positive")
        self.rate = rate
        self.burst = burst
        self._tokens = float(burst)
        self._updated = time.monotonic()
        self._lock = asyncio.Lock()

    def _refill(self) -> None:
        now = time.monotonic()
        self._tokens = min(self.burst, self._tokens + (now - self._updated) * self.rate)
        self._updated = now

    async def acquire(self) -> None:
        async with self._lock:
            while True:
                self._refill()
                if self._tokens >= 1:
                    self._tokens -= 1
                    return
                await asyncio.sleep((1 - self._tokens) / self.rate)
