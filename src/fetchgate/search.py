"""Brave Web Search client.

Requests go through the shared httpx client and the per-host rate limiter,
like every other egress. Responses are normalised into provider-neutral
``SearchResponse`` objects before they reach the search cache.
"""

from __future__ import annotations

import hashlib
import json
from typing import TYPE_CHECKING, Any

import httpx
import structlog

from fetchgate.errors import ErrorCode, FetchGateError
from fetchgate.models.search import SearchRequest, SearchResponse, SearchResult
from fetchgate.ratelimit import acquire_or_wait
from fetchgate.urls import host_of

if TYPE_CHECKING:
    from fetchgate.config import SearchSettings
    from fetchgate.ratelimit import HostRateLimiter

log = structlog.get_logger()


def search_cache_key(provider: str, request: SearchRequest) -> str:
    """SHA-256 hex over the canonical JSON of the normalised request."""
    payload = json.dumps(
        {"provider": provider, **request.cache_params()},
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class BraveSearchClient:
    """SearchProvider backed by the Brave Web Search API."""

    name = "brave"

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: SearchSettings,
        rate_limiter: HostRateLimiter,
        *,
        max_wait_seconds: float,
    ) -> None:
        self._client = client
        self._settings = settings
        self._rate_limiter = rate_limiter
        self._max_wait_seconds = max_wait_seconds
        self._endpoint = f"{settings.base_url.rstrip('/')}/web/search"

    @property
    def configured(self) -> bool:
        return bool(self._settings.api_key)

    async def search(self, request: SearchRequest) -> SearchResponse:
        if not self.configured:
            raise FetchGateError(
                code=ErrorCode.SEARCH_NOT_CONFIGURED,
                message="No search API key is configured",
                suggestion="Set FETCHGATE__SEARCH__API_KEY to a Brave Search API key.",
                recoverable=False,
            )

        await acquire_or_wait(self._rate_limiter, host_of(self._endpoint), self._max_wait_seconds)

        params: dict[str, Any] = {"q": request.q, "count": request.count, "offset": request.offset}
        for name in ("freshness", "safesearch", "country", "search_lang"):
            value = getattr(request, name)
            if value is not None:
                params[name] = value

        try:
            response = await self._client.get(
                self._endpoint,
                params=params,
                headers={
                    "Accept": "application/json",
                    "X-Subscription-Token": self._settings.api_key,
                },
                timeout=self._settings.timeout_seconds,
            )
        except httpx.TimeoutException as exc:
            raise FetchGateError(
                code=ErrorCode.FETCH_TIMEOUT,
                message="Timed out waiting for the search provider",
                suggestion="Try the search again in a moment.",
                recoverable=True,
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchGateError(
                code=ErrorCode.FETCH_NETWORK_ERROR,
                message=f"Network error contacting the search provider: {exc}",
                suggestion="Check network connectivity and try again.",
                recoverable=True,
            ) from exc

        self._raise_for_status(response)

        try:
            data = response.json()
        except ValueError as exc:
            raise FetchGateError(
                code=ErrorCode.SEARCH_FAILED,
                message="Search provider returned a malformed response",
                suggestion="Try the search again; the provider may be degraded.",
                recoverable=True,
            ) from exc

        result = normalise_brave_response(request, data)
        log.info("search_complete", provider=self.name, results=len(result.results))
        return result

    def _raise_for_status(self, response: httpx.Response) -> None:
        status = response.status_code
        if status in (401, 403):
            raise FetchGateError(
                code=ErrorCode.SEARCH_AUTH_FAILED,
                message=f"Search provider rejected the API key (HTTP {status})",
                suggestion="Check FETCHGATE__SEARCH__API_KEY.",
                recoverable=False,
            )
        if status == 429:
            retry_after = _retry_after_seconds(response.headers.get("retry-after"))
            raise FetchGateError(
                code=ErrorCode.RATE_LIMITED,
                message="Search provider rate limit reached",
                suggestion="Wait before searching again.",
                recoverable=True,
                retry_after=retry_after,
            )
        if not response.is_success:
            raise FetchGateError(
                code=ErrorCode.SEARCH_FAILED,
                message=f"Search provider returned HTTP {status}",
                suggestion="The search provider may be temporarily unavailable.",
                recoverable=status >= 500,
            )


def _retry_after_seconds(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def normalise_brave_response(request: SearchRequest, data: dict[str, Any]) -> SearchResponse:
    """Map a Brave ``/web/search`` payload onto SearchResponse."""
    query = data.get("query") or {}
    raw_results = (data.get("web") or {}).get("results") or []
    results = [
        SearchResult(
            rank=rank,
            title=str(item.get("title") or ""),
            url=str(item.get("url") or ""),
            description=str(item.get("description") or ""),
            extra_snippets=[str(s) for s in item.get("extra_snippets") or []],
            source="brave",
        )
        for rank, item in enumerate(raw_results, start=1)
        if item.get("url")
    ]
    return SearchResponse(
        query=str(query.get("original") or request.q),
        results=results,
        more_results_available=bool(query.get("more_results_available", False)),
    )
