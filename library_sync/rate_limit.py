from __future__ import annotations

import asyncio
import logging
import time
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)


class RateLimiter:
    """Fixed-window token bucket shared by every worker of one catalog client.

    ``capacity`` requests are allowed per ``period`` seconds; the bucket is
    refilled in full when a new window starts. Waiting happens outside the
    lock so other coroutines can observe the refill.
    """

    def __init__(
        self,
        capacity: int,
        period: float,
        *,
        name: str = "default",
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        if period <= 0:
            raise ValueError("period must be positive")
        self.capacity = capacity
        self.period = period
        self.name = name
        self._clock = clock
        self._sleep = sleep
        self._tokens = capacity
        self._window_start = clock()
        self._lock = asyncio.Lock()

    @classmethod
    def for_discogs(cls) -> "RateLimiter":
        return cls(capacity=60, period=60.0, name="discogs")

    @classmethod
    def for_musicbrainz(cls) -> "RateLimiter":
        return cls(capacity=1, period=1.1, name="musicbrainz")

    def _refill(self, now: float) -> None:
        if now - self._window_start >= self.period:
            self._tokens = self.capacity
            self._window_start = now

    async def acquire(self) -> None:
        while True:
            async with self._lock:
                now = self._clock()
                self._refill(now)
                if self._tokens > 0:
                    self._tokens -= 1
                    return
                wait = self.period - (now - self._window_start)
            logger.debug("RateLimiter[%s]: bucket empty, waiting %.2fs", self.name, wait)
            await self._sleep(max(wait, 0.0))

    @property
    def available(self) -> int:
        self._refill(self._clock())
        return self._tokens

    async def __aenter__(self) -> "RateLimiter":
        await self.acquire()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False
