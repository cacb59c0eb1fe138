"""
In-process rate limiting for outbound provider calls.

The ORS client acquires one token per geocode/directions request so concurrent tracking
sessions stay under the account quota (the free tier allows 40 requests/minute).
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field


@dataclass
class TokenBucketRateLimiter:
    """Token bucket for N requests per minute; `burst` defaults to one minute's worth."""

    max_per_minute: float
    burst: float | None = None
    _lock: asyncio.Lock = field(default_factory=asyncio.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if float(self.max_per_minute) <= 0:
            raise ValueError("max_per_minute must be > 0")
        self._rate_per_sec = float(self.max_per_minute) / 60.0
        self._capacity = float(self.burst if self.burst is not None else self.max_per_minute)
        self._tokens = self._capacity
        self._updated_at = time.monotonic()

    def _wait_seconds(self, need: float) -> float:
        """Refill, then either take `need` tokens (0.0) or return how long to wait."""
        now = time.monotonic()
        self._tokens = min(self._capacity, self._tokens + max(0.0, now - self._updated_at) * self._rate_per_sec)
        self._updated_at = now
        if self._tokens >= need:
            self._tokens -= need
            return 0.0
        return (need - self._tokens) / self._rate_per_sec

    async def acquire(self, tokens: float = 1.0) -> None:
        if tokens <= 0:
            return
        # Waiters are served in arrival order.
        async with self._lock:
            while True:
                wait = self._wait_seconds(float(tokens))
                if wait <= 0:
                    return
                await asyncio.sleep(min(1.0, max(0.05, wait)))
