"""Per-host token-bucket rate limiting.

``HostRateLimiter.acquire`` never blocks: it either takes a token or reports
how long the caller would have to wait. The waiting policy lives in
``acquire_or_wait`` so the orchestrator, the robots fetcher and the search
client share one budget per host.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from fetchgate.errors import ErrorCode, FetchGateError

log = structlog.get_logger()


@dataclass
class BucketState:
    tokens: float
    last_refill_at: float
    capacity: float
    refill_rate: float  # tokens per second


@dataclass(frozen=True)
class Granted:
    remaining: float


@dataclass(frozen=True)
class WouldBlock:
    retry_after: float  # seconds until one token is available


class HostRateLimiter:
    """Token bucket per host. Safe to call from any thread or task."""

    def __init__(
        self,
        capacity: int,
        refill_per_second: float,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        if refill_per_second <= 0:
            raise ValueError("refill_per_second must be > 0")
        self.capacity = float(capacity)
        self.refill_rate = refill_per_second
        self._clock = clock or time.monotonic
        self._lock = threading.Lock()
        self._buckets: dict[str, BucketState] = {}

    def acquire(self, host: str) -> Granted | WouldBlock:
        """Take one token for *host*, or report the wait until one refills."""
        key = host.lower()
        # Arithmetic only under the lock; no I/O.
        with self._lock:
            now = self._clock()
            bucket = self._buckets.get(key)
            if bucket is None:
                bucket = BucketState(
                    tokens=self.capacity,
                    last_refill_at=now,
                    capacity=self.capacity,
                    refill_rate=self.refill_rate,
                )
                self._buckets[key] = bucket
            else:
                elapsed = max(0.0, now - bucket.last_refill_at)
                bucket.tokens = min(bucket.capacity, bucket.tokens + elapsed * bucket.refill_rate)
                bucket.last_refill_at = now

            if bucket.tokens >= 1.0:
                bucket.tokens -= 1.0
                return Granted(remaining=bucket.tokens)
            return WouldBlock(retry_after=(1.0 - bucket.tokens) / bucket.refill_rate)

    def prune_idle(self) -> int:
        """Forget hosts whose bucket has refilled; a full bucket equals a new one."""
        with self._lock:
            now = self._clock()
            idle = [
                host
                for host, bucket in self._buckets.items()
                if bucket.tokens + (now - bucket.last_refill_at) * bucket.refill_rate
                >= bucket.capacity
            ]
            for host in idle:
                del self._buckets[host]
            return len(idle)

    def snapshot(self, host: str) -> BucketState | None:
        """Return a copy of the bucket for *host*, if one exists."""
        with self._lock:
            bucket = self._buckets.get(host.lower())
            if bucket is None:
                return None
            return BucketState(
                tokens=bucket.tokens,
                last_refill_at=bucket.last_refill_at,
                capacity=bucket.capacity,
                refill_rate=bucket.refill_rate,
            )


async def acquire_or_wait(limiter: HostRateLimiter, host: str, max_wait: float) -> None:
    """Wait for a token on *host* as long as each wait fits within *max_wait*.

    Raises FetchGateError(RATE_LIMITED) carrying ``retry_after`` when the
    bucket would make the caller wait longer than allowed.
    """
    while True:
        decision = limiter.acquire(host)
        if isinstance(decision, Granted):
            return
        if decision.retry_after > max_wait:
            log.info("rate_limited", host=host, retry_after=decision.retry_after)
            raise FetchGateError(
                code=ErrorCode.RATE_LIMITED,
                message=f"Rate limit reached for host {host}",
                suggestion=f"Retry after {decision.retry_after:.1f} seconds.",
                recoverable=True,
                retry_after=decision.retry_after,
            )
        log.debug("rate_limit_wait", host=host, wait_seconds=decision.retry_after)
        await asyncio.sleep(decision.retry_after)
