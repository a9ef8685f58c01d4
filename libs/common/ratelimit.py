from __future__ import annotations
import time
import asyncio
from typing import Callable, Awaitable, Optional

class TokenBucket:
    """
    Async token bucket shared by every upstream call of one app key.
    rate = tokens per second, capacity = burst size. With capacity 1 the bucket
    guarantees a minimum spacing of 1/rate seconds between acquisitions.
    clock/sleep are injectable so the pacing can be checked without real time.
    """
    def __init__(self, rate: float, capacity: float = 1.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        if rate <= 0:
            raise ValueError("rate must be > 0")
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.rate = float(rate)
        self.capacity = float(capacity)
        self._clock = clock
        self._sleep = sleep
        self._tokens = self.capacity
        self._updated = clock()
        self._lock: Optional[asyncio.Lock] = None

    @classmethod
    def from_min_interval(cls, min_interval_s: float, **kw) -> "TokenBucket":
        return cls(rate=1.0 / min_interval_s, capacity=1.0, **kw)

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated)
        self._tokens = min(self.capacity, self._tokens + elapsed * self.rate)
        self._updated = now

    def try_acquire(self) -> bool:
        self._refill()
        if self._tokens >= 1.0:
            self._tokens -= 1.0
            return True
        return False

    def wait_time(self) -> float:
        """Seconds until the next token is available (0 if one is available now)."""
        self._refill()
        if self._tokens >= 1.0:
            return 0.0
        return (1.0 - self._tokens) / self.rate

    async def acquire(self) -> float:
        """Waits for a token, FIFO across callers. Returns the time spent waiting."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        waited = 0.0
        async with self._lock:
            while not self.try_acquire():
                delay = self.wait_time()
                waited += delay
                await self._sleep(delay)
        return waited
