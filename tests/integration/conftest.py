"""Integration test fixtures.

Provides a fully wired AppState: in-memory SQLite store, real httpx client
(mocked per test with respx), a fake DNS resolver, robots.txt checks off and
a Brave client holding a dummy key.
"""

from __future__ import annotations

import os
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import httpx
import pytest

from fetchgate.cache import CacheDb, SearchCache, SnapshotCache
from fetchgate.config import Settings
from fetchgate.extractor import TrafilaturaExtractor
from fetchgate.fetcher import Fetcher
from fetchgate.orchestrator import Orchestrator
from fetchgate.ratelimit import HostRateLimiter
from fetchgate.safety import SafetyGate
from fetchgate.search import BraveSearchClient
from fetchgate.state import AppState

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture()
def subprocess_env(tmp_path: Path) -> dict[str, str]:
    """Baseline env for subprocess-based MCP tests.

    Forces stdio transport, isolates the store under tmp_path and removes
    any search key inherited from the developer's environment.
    """
    env = {k: v for k, v in os.environ.items() if not k.startswith("FETCHGATE__")}
    env["FETCHGATE__SERVER__TRANSPORT"] = "stdio"
    env["FETCHGATE__CACHE__DB_PATH"] = str(tmp_path / "cache.db")
    env["FETCHGATE__LOGGING__LEVEL"] = "WARNING"
    return env


@pytest.fixture()
async def app_state(cache_db: CacheDb, resolver: Callable[..., Any]) -> AppState:
    settings = Settings(
        robots={"enabled": False},
        search={"api_key": "test-key"},
        rate_limit={"capacity": 100, "refill_per_second": 100.0},
    )
    async with httpx.AsyncClient(follow_redirects=False) as client:
        rate_limiter = HostRateLimiter(
            capacity=settings.rate_limit.capacity,
            refill_per_second=settings.rate_limit.refill_per_second,
        )
        gate = SafetyGate(
            allowed_schemes=settings.fetcher.allowed_schemes,
            denied_networks=settings.fetcher.denied_networks,
            resolver=resolver({"intranet.example": ["192.168.0.10"]}),
        )
        snapshots = SnapshotCache(cache_db)
        yield AppState(
            settings=settings,
            http_client=client,
            db=cache_db,
            snapshots=snapshots,
            search_cache=SearchCache(cache_db),
            rate_limiter=rate_limiter,
            safety_gate=gate,
            orchestrator=Orchestrator(
                snapshots=snapshots,
                gate=gate,
                rate_limiter=rate_limiter,
                fetcher=Fetcher(client),
                extractor=TrafilaturaExtractor(),
                settings=settings,
            ),
            search_provider=BraveSearchClient(
                client,
                settings.search,
                rate_limiter,
                max_wait_seconds=settings.rate_limit.max_wait_seconds,
            ),
        )
