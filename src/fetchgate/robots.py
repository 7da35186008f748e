"""robots.txt retrieval and evaluation, cached per origin.

Failure policy is fail-open: a missing, broken, oversized or unreachable
robots.txt places no restriction on the origin. Failures are cached for a
short period so a flapping origin is not hammered on every request. Rate
limiting is the exception: RATE_LIMITED propagates and nothing is cached.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING
from urllib import robotparser

import structlog

from fetchgate.errors import FetchGateError
from fetchgate.ratelimit import acquire_or_wait
from fetchgate.urls import host_of, origin_of

if TYPE_CHECKING:
    from fetchgate.fetcher import Fetcher
    from fetchgate.ratelimit import HostRateLimiter

log = structlog.get_logger()

ROBOTS_MAX_BYTES = 1024 * 1024
FAILURE_TTL_SECONDS = 15 * 60


@dataclass
class RobotsRecord:
    origin: str
    rules: robotparser.RobotFileParser | None  # None means no restrictions
    status_code: int | None
    fetched_at: float
    expires_at: float

    def allows(self, user_agent: str, url: str) -> bool:
        return self.rules is None or self.rules.can_fetch(user_agent, url)

    def crawl_delay(self, user_agent: str) -> float | None:
        if self.rules is None:
            return None
        delay = self.rules.crawl_delay(user_agent)
        return float(delay) if delay is not None else None


class RobotsCache:
    """In-memory robots.txt cache keyed by origin (scheme://host[:port])."""

    def __init__(
        self,
        fetcher: Fetcher,
        rate_limiter: HostRateLimiter,
        *,
        user_agent: str,
        ttl_seconds: float,
        timeout_seconds: float,
        max_wait_seconds: float,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._rate_limiter = rate_limiter
        self.user_agent = user_agent
        self._ttl_seconds = ttl_seconds
        self._timeout_seconds = timeout_seconds
        self._max_wait_seconds = max_wait_seconds
        self._clock = clock or time.monotonic
        self._records: dict[str, RobotsRecord] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    async def is_allowed(self, url: str) -> bool:
        record = await self.get(origin_of(url))
        return record.allows(self.user_agent, url)

    async def get(self, origin: str) -> RobotsRecord:
        """Return the cached record for *origin*, fetching it when absent or expired."""
        record = self._records.get(origin)
        if record is not None and record.expires_at > self._clock():
            return record

        # One fetch per origin at a time; waiters reuse the fresh record.
        lock = self._locks.setdefault(origin, asyncio.Lock())
        async with lock:
            record = self._records.get(origin)
            if record is not None and record.expires_at > self._clock():
                return record
            record = await self._fetch(origin)
            self._records[origin] = record
            return record

    def purge_expired(self) -> int:
        """Drop expired records and idle per-origin locks. Returns the records removed."""
        now = self._clock()
        expired = [origin for origin, rec in self._records.items() if rec.expires_at <= now]
        for origin in expired:
            del self._records[origin]
        for origin in [o for o, lock in self._locks.items() if not lock.locked()]:
            if origin not in self._records:
                del self._locks[origin]
        return len(expired)

    def _record(
        self,
        origin: str,
        rules: robotparser.RobotFileParser | None,
        status_code: int | None,
        ttl_seconds: float,
    ) -> RobotsRecord:
        now = self._clock()
        return RobotsRecord(
            origin=origin,
            rules=rules,
            status_code=status_code,
            fetched_at=now,
            expires_at=now + ttl_seconds,
        )

    async def _fetch(self, origin: str) -> RobotsRecord:
        robots_url = f"{origin}/robots.txt"
        await acquire_or_wait(self._rate_limiter, host_of(origin), self._max_wait_seconds)

        try:
            async with asyncio.timeout(self._timeout_seconds):
                response = await self._fetcher.fetch_once(robots_url, max_bytes=ROBOTS_MAX_BYTES)
        except TimeoutError:
            log.info("robots_unavailable", origin=origin, reason="timeout")
            return self._record(origin, None, None, FAILURE_TTL_SECONDS)
        except FetchGateError as exc:
            log.info("robots_unavailable", origin=origin, reason=exc.code)
            return self._record(origin, None, None, FAILURE_TTL_SECONDS)

        status = response.status_code
        if response.is_success:
            if response.truncated:
                log.info("robots_unavailable", origin=origin, reason="oversized")
                return self._record(origin, None, status, FAILURE_TTL_SECONDS)
            rules = robotparser.RobotFileParser(robots_url)
            rules.parse(response.body.decode("utf-8", errors="replace").splitlines())
            log.debug("robots_fetched", origin=origin, status_code=status)
            return self._record(origin, rules, status, self._ttl_seconds)

        if 400 <= status < 500:
            # No robots.txt (or not readable by us): unrestricted.
            log.debug("robots_absent", origin=origin, status_code=status)
            return self._record(origin, None, status, self._ttl_seconds)

        log.info("robots_unavailable", origin=origin, status_code=status)
        return self._record(origin, None, status, FAILURE_TTL_SECONDS)

