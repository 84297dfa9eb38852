"""Token-bucket rate limiting for outbound calls (oracle, ledger RPC).

Every running agent fetches the full price catalog each tick, so a burst of
simultaneous scans fans out into dozens of requests at once. Waiters queue
on an asyncio lock and are released in arrival order at the bucket's rate.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable


@dataclass(frozen=True)
class BucketConfig:
    tokens_per_second: float
    max_burst: int
    name: str = ""


DEFAULT_LIMITS: dict[str, BucketConfig] = {
    "dia": BucketConfig(tokens_per_second=10.0, max_burst=25, name="DIA price feed"),
    "ledger": BucketConfig(tokens_per_second=20.0, max_burst=40, name="Ledger RPC"),
}
_FALLBACK = BucketConfig(tokens_per_second=5.0, max_burst=10)


class TokenBucket:
    def __init__(self, config: BucketConfig, clock: Callable[[], float] = time.monotonic):
        if config.tokens_per_second <= 0:
            raise ValueError(f"tokens_per_second must be positive, got {config.tokens_per_second}")
        self.config = config
        self._clock = clock
        self._tokens = float(config.max_burst)
        self._stamp = clock()
        self._queue = asyncio.Lock()
        self.total_requests = 0
        self.total_waits = 0

    @property
    def available(self) -> float:
        self._refill()
        return self._tokens

    def _refill(self) -> None:
        now = self._clock()
        self._tokens = min(
            float(self.config.max_burst),
            self._tokens + (now - self._stamp) * self.config.tokens_per_second,
        )
        self._stamp = now

    def try_acquire(self) -> bool:
        """Take a token without waiting."""
        self._refill()
        if self._tokens < 1.0:
            return False
        self._tokens -= 1.0
        self.total_requests += 1
        return True

    async def acquire(self) -> None:
        """Wait for a token. Concurrent callers are served first-come first-served."""
        async with self._queue:
            while not self.try_acquire():
                self.total_waits += 1
                await asyncio.sleep((1.0 - self._tokens) / self.config.tokens_per_second)

    @property
    def stats(self) -> dict[str, int]:
        return {"total_requests": self.total_requests, "total_waits": self.total_waits}


class RateLimiterRegistry:
    """Named buckets, created on first use from DEFAULT_LIMITS."""

    def __init__(self) -> None:
        self._buckets: dict[str, TokenBucket] = {}

    def get(self, endpoint: str) -> TokenBucket:
        bucket = self._buckets.get(endpoint)
        if bucket is None:
            config = DEFAULT_LIMITS.get(endpoint, BucketConfig(
                _FALLBACK.tokens_per_second, _FALLBACK.max_burst, endpoint,
            ))
            bucket = self._buckets[endpoint] = TokenBucket(config)
        return bucket

    def configure(self, endpoint: str, tokens_per_second: float, max_burst: int) -> None:
        self._buckets[endpoint] = TokenBucket(BucketConfig(tokens_per_second, max_burst, endpoint))

    def stats(self) -> dict[str, dict[str, int]]:
        return {name: bucket.stats for name, bucket in self._buckets.items()}


rate_limiter = RateLimiterRegistry()
