"""Unit tests for fetchgate.robots."""

from __future__ import annotations

import httpx
import pytest
import respx

from fetchgate.errors import ErrorCode, FetchGateError
from fetchgate.fetcher import Fetcher
from fetchgate.ratelimit import HostRateLimiter
from fetchgate.robots import FAILURE_TTL_SECONDS, ROBOTS_MAX_BYTES, RobotsCache

_ROBOTS_URL = "https://example.com/robots.txt"
_ROBOTS_TXT = """
User-agent: *
Disallow: /private/
Crawl-delay: 2

User-agent: fetchgate
Disallow: /no-fetchgate/
"""


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture()
async def client() -> httpx.AsyncClient:
    async with httpx.AsyncClient() as client:
        yield client


def _robots(
    client: httpx.AsyncClient,
    *,
    clock: FakeClock | None = None,
    limiter: HostRateLimiter | None = None,
    user_agent: str = "mybot/1.0",
) -> RobotsCache:
    return RobotsCache(
        Fetcher(client),
        limiter or HostRateLimiter(capacity=100, refill_per_second=100.0),
        user_agent=user_agent,
        ttl_seconds=3600,
        timeout_seconds=5.0,
        max_wait_seconds=0.0,
        clock=clock,
    )


class TestRobotsEvaluation:
    @respx.mock
    async def test_disallowed_path(self, client: httpx.AsyncClient) -> None:
        respx.get(_ROBOTS_URL).mock(return_value=httpx.Response(200, text=_ROBOTS_TXT))
        robots = _robots(client)

        assert await robots.is_allowed("https://example.com/private/doc") is False
        assert await robots.is_allowed("https://example.com/public/doc") is True

    @respx.mock
    async def test_specific_user_agent_group(self, client: httpx.AsyncClient) -> None:
        respx.get(_ROBOTS_URL).mock(return_value=httpx.Response(200, text=_ROBOTS_TXT))
        robots = _robots(client, user_agent="fetchgate/0.1")

        assert await robots.is_allowed("https://example.com/no-fetchgate/x") is False
        # The specific group replaces the wildcard group for this agent.
        assert await robots.is_allowed("https://example.com/private/doc") is True

    @respx.mock
    async def test_crawl_delay_exposed(self, client: httpx.AsyncClient) -> None:
        respx.get(_ROBOTS_URL).mock(return_value=httpx.Response(200, text=_ROBOTS_TXT))
        robots = _robots(client)

        record = await robots.get("https://example.com")

        assert record.crawl_delay("mybot/1.0") == 2.0
        assert record.status_code == 200


class TestRobotsFailOpen:
    @respx.mock
    async def test_404_allows_everything(self, client: httpx.AsyncClient) -> None:
        respx.get(_ROBOTS_URL).mock(return_value=httpx.Response(404))
        robots = _robots(client)

        assert await robots.is_allowed("https://example.com/private/doc") is True

    @respx.mock
    async def test_5xx_allows_and_caches_briefly(self, client: httpx.AsyncClient) -> None:
        respx.get(_ROBOTS_URL).mock(return_value=httpx.Response(503))
        clock = FakeClock()
        robots = _robots(client, clock=clock)

        record = await robots.get("https://example.com")

        assert record.rules is None
        assert record.expires_at == pytest.approx(FAILURE_TTL_SECONDS)

    @respx.mock
    async def test_network_error_allows(self, client: httpx.AsyncClient) -> None:
        respx.get(_ROBOTS_URL).mock(side_effect=httpx.ConnectError("refused"))
        robots = _robots(client)

        assert await robots.is_allowed("https://example.com/private/doc") is True

    @respx.mock
    async def test_timeout_allows(self, client: httpx.AsyncClient) -> None:
        respx.get(_ROBOTS_URL).mock(side_effect=httpx.ReadTimeout("slow"))
        robots = _robots(client)

        assert await robots.is_allowed("https://example.com/private/doc") is True

    @respx.mock
    async def test_redirect_allows(self, client: httpx.AsyncClient) -> None:
        respx.get(_ROBOTS_URL).mock(
            return_value=httpx.Response(301, headers={"Location": "https://elsewhere.test/r"})
        )
        robots = _robots(client)

        assert await robots.is_allowed("https://example.com/private/doc") is True

    @respx.mock
    async def test_oversized_allows(self, client: httpx.AsyncClient) -> None:
        body = "User-agent: *\nDisallow: /\n" + "#" * ROBOTS_MAX_BYTES
        respx.get(_ROBOTS_URL).mock(return_value=httpx.Response(200, text=body))
        robots = _robots(client)

        assert await robots.is_allowed("https://example.com/anything") is True


class TestRobotsCaching:
    @respx.mock
    async def test_fetched_once_per_origin(self, client: httpx.AsyncClient) -> None:
        route = respx.get(_ROBOTS_URL).mock(return_value=httpx.Response(200, text=_ROBOTS_TXT))
        robots = _robots(client)

        await robots.is_allowed("https://example.com/a")
        await robots.is_allowed("https://example.com/b")

        assert route.call_count == 1

    @respx.mock
    async def test_refetched_after_ttl(self, client: httpx.AsyncClient) -> None:
        route = respx.get(_ROBOTS_URL).mock(return_value=httpx.Response(200, text=_ROBOTS_TXT))
        clock = FakeClock()
        robots = _robots(client, clock=clock)

        await robots.is_allowed("https://example.com/a")
        clock.now = 3601
        await robots.is_allowed("https://example.com/a")

        assert route.call_count == 2

    @respx.mock
    async def test_origins_cached_separately(self, client: httpx.AsyncClient) -> None:
        respx.get(_ROBOTS_URL).mock(return_value=httpx.Response(200, text=_ROBOTS_TXT))
        other = respx.get("https://other.example/robots.txt").mock(
            return_value=httpx.Response(404)
        )
        robots = _robots(client)

        assert await robots.is_allowed("https://other.example/private/doc") is True
        assert await robots.is_allowed("https://example.com/private/doc") is False
        assert other.call_count == 1

    @respx.mock
    async def test_purge_expired(self, client: httpx.AsyncClient) -> None:
        respx.get(_ROBOTS_URL).mock(return_value=httpx.Response(404))
        clock = FakeClock()
        robots = _robots(client, clock=clock)
        await robots.get("https://example.com")

        assert robots.purge_expired() == 0
        clock.now = 7200
        assert robots.purge_expired() == 1
        assert robots._locks == {}

    @respx.mock
    async def test_rate_limited_propagates_and_is_not_cached(
        self, client: httpx.AsyncClient
    ) -> None:
        route = respx.get(_ROBOTS_URL).mock(return_value=httpx.Response(404))
        limiter = HostRateLimiter(capacity=1, refill_per_second=0.01)
        limiter.acquire("example.com")
        robots = _robots(client, limiter=limiter)

        with pytest.raises(FetchGateError) as exc_info:
            await robots.is_allowed("https://example.com/a")

        assert exc_info.value.code == ErrorCode.RATE_LIMITED
        assert route.call_count == 0
        assert robots.purge_expired() == 0
