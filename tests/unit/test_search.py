"""Unit tests for fetchgate.search and the search request model."""

from __future__ import annotations

import httpx
import pytest
import respx
from pydantic import ValidationError

from fetchgate.config import SearchSettings
from fetchgate.errors import ErrorCode, FetchGateError
from fetchgate.models.search import SearchRequest
from fetchgate.ratelimit import HostRateLimiter
from fetchgate.search import BraveSearchClient, normalise_brave_response, search_cache_key

_HOST = "api.search.brave.com"
_PATH = "/res/v1/web/search"

_BRAVE_PAYLOAD = {
    "query": {"original": "python asyncio", "more_results_available": True},
    "web": {
        "results": [
            {
                "title": "asyncio docs",
                "url": "https://docs.python.org/3/library/asyncio.html",
                "description": "Asynchronous I/O",
                "extra_snippets": ["Event loop", "Tasks"],
            },
            {"title": "No URL", "description": "dropped"},
            {"title": "Real Python", "url": "https://realpython.com/async-io-python/"},
        ]
    },
}


def _brave_route() -> respx.Route:
    return respx.get(host=_HOST, path=_PATH)


@pytest.fixture()
async def http_client() -> httpx.AsyncClient:
    async with httpx.AsyncClient() as client:
        yield client


def _client(
    http_client: httpx.AsyncClient,
    *,
    api_key: str | None = "test-key",
    limiter: HostRateLimiter | None = None,
) -> BraveSearchClient:
    return BraveSearchClient(
        http_client,
        SearchSettings(api_key=api_key),
        limiter or HostRateLimiter(capacity=100, refill_per_second=100.0),
        max_wait_seconds=0.0,
    )


# ---------------------------------------------------------------------------
# SearchRequest
# ---------------------------------------------------------------------------


class TestSearchRequest:
    def test_query_whitespace_collapsed(self) -> None:
        assert SearchRequest(q="  python   asyncio \n").q == "python asyncio"

    @pytest.mark.parametrize("query", ["", "   ", "x" * 401, " ".join(["w"] * 51)])
    def test_invalid_queries(self, query: str) -> None:
        with pytest.raises(ValidationError):
            SearchRequest(q=query)

    @pytest.mark.parametrize("freshness", ["pd", "pw", "pm", "py", "2024-01-01to2024-06-30"])
    def test_valid_freshness(self, freshness: str) -> None:
        assert SearchRequest(q="x", freshness=freshness).freshness == freshness

    def test_invalid_freshness(self) -> None:
        with pytest.raises(ValidationError):
            SearchRequest(q="x", freshness="yesterday")

    @pytest.mark.parametrize("count", [0, 21])
    def test_count_bounds(self, count: int) -> None:
        with pytest.raises(ValidationError):
            SearchRequest(q="x", count=count)

    def test_codes_lowercased(self) -> None:
        request = SearchRequest(q="x", country=" US ", search_lang="EN")
        assert request.country == "us"
        assert request.search_lang == "en"


# ---------------------------------------------------------------------------
# search_cache_key
# ---------------------------------------------------------------------------


class TestSearchCacheKey:
    def test_stable_and_case_insensitive(self) -> None:
        a = search_cache_key("brave", SearchRequest(q="Python  AsyncIO"))
        b = search_cache_key("brave", SearchRequest(q="python asyncio"))
        assert a == b
        assert len(a) == 64

    def test_parameters_change_key(self) -> None:
        base = search_cache_key("brave", SearchRequest(q="python"))
        assert base != search_cache_key("brave", SearchRequest(q="python", count=5))
        assert base != search_cache_key("brave", SearchRequest(q="python", freshness="pw"))

    def test_provider_changes_key(self) -> None:
        request = SearchRequest(q="python")
        assert search_cache_key("brave", request) != search_cache_key("other", request)


# ---------------------------------------------------------------------------
# Response normalisation
# ---------------------------------------------------------------------------


class TestNormaliseBraveResponse:
    def test_maps_results_and_skips_missing_urls(self) -> None:
        response = normalise_brave_response(SearchRequest(q="python asyncio"), _BRAVE_PAYLOAD)

        assert response.query == "python asyncio"
        assert response.more_results_available is True
        assert [r.url for r in response.results] == [
            "https://docs.python.org/3/library/asyncio.html",
            "https://realpython.com/async-io-python/",
        ]
        first = response.results[0]
        assert first.rank == 1
        assert first.extra_snippets == ["Event loop", "Tasks"]
        assert first.source == "brave"

    def test_empty_payload(self) -> None:
        response = normalise_brave_response(SearchRequest(q="nothing"), {})
        assert response.query == "nothing"
        assert response.results == []
        assert response.more_results_available is False


# ---------------------------------------------------------------------------
# BraveSearchClient
# ---------------------------------------------------------------------------


class TestBraveSearchClient:
    @respx.mock
    async def test_successful_search(self, http_client: httpx.AsyncClient) -> None:
        route = _brave_route().mock(return_value=httpx.Response(200, json=_BRAVE_PAYLOAD))

        response = await _client(http_client).search(
            SearchRequest(q="python asyncio", count=5, freshness="pw")
        )

        assert len(response.results) == 2
        request = route.calls.last.request
        assert request.headers["x-subscription-token"] == "test-key"
        assert request.url.params["q"] == "python asyncio"
        assert request.url.params["count"] == "5"
        assert request.url.params["freshness"] == "pw"
        assert "country" not in request.url.params

    async def test_missing_api_key(self, http_client: httpx.AsyncClient) -> None:
        client = _client(http_client, api_key=None)
        assert client.configured is False

        with pytest.raises(FetchGateError) as exc_info:
            await client.search(SearchRequest(q="python"))

        assert exc_info.value.code == ErrorCode.SEARCH_NOT_CONFIGURED

    @pytest.mark.parametrize("status", [401, 403])
    @respx.mock
    async def test_auth_failure(self, http_client: httpx.AsyncClient, status: int) -> None:
        _brave_route().mock(return_value=httpx.Response(status))

        with pytest.raises(FetchGateError) as exc_info:
            await _client(http_client).search(SearchRequest(q="python"))

        assert exc_info.value.code == ErrorCode.SEARCH_AUTH_FAILED
        assert exc_info.value.recoverable is False

    @respx.mock
    async def test_provider_rate_limit_carries_retry_after(
        self, http_client: httpx.AsyncClient
    ) -> None:
        _brave_route().mock(
            return_value=httpx.Response(429, headers={"Retry-After": "2"})
        )

        with pytest.raises(FetchGateError) as exc_info:
            await _client(http_client).search(SearchRequest(q="python"))

        assert exc_info.value.code == ErrorCode.RATE_LIMITED
        assert exc_info.value.retry_after == 2.0
        assert exc_info.value.recoverable is True

    @respx.mock
    async def test_server_error(self, http_client: httpx.AsyncClient) -> None:
        _brave_route().mock(return_value=httpx.Response(502))

        with pytest.raises(FetchGateError) as exc_info:
            await _client(http_client).search(SearchRequest(q="python"))

        assert exc_info.value.code == ErrorCode.SEARCH_FAILED
        assert exc_info.value.recoverable is True

    @respx.mock
    async def test_malformed_json(self, http_client: httpx.AsyncClient) -> None:
        _brave_route().mock(return_value=httpx.Response(200, text="<html>oops</html>"))

        with pytest.raises(FetchGateError) as exc_info:
            await _client(http_client).search(SearchRequest(q="python"))

        assert exc_info.value.code == ErrorCode.SEARCH_FAILED

    @respx.mock
    async def test_timeout(self, http_client: httpx.AsyncClient) -> None:
        _brave_route().mock(side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(FetchGateError) as exc_info:
            await _client(http_client).search(SearchRequest(q="python"))

        assert exc_info.value.code == ErrorCode.FETCH_TIMEOUT

    @respx.mock
    async def test_local_rate_limit_blocks_before_request(
        self, http_client: httpx.AsyncClient
    ) -> None:
        route = _brave_route().mock(return_value=httpx.Response(200, json=_BRAVE_PAYLOAD))
        limiter = HostRateLimiter(capacity=1, refill_per_second=0.01)
        limiter.acquire("api.search.brave.com")

        with pytest.raises(FetchGateError) as exc_info:
            await _client(http_client, limiter=limiter).search(SearchRequest(q="python"))

        assert exc_info.value.code == ErrorCode.RATE_LIMITED
        assert route.call_count == 0
