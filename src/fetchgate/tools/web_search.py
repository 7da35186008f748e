"""Tool handler for web_search.

Consults the search cache first; on a miss or an expired entry, calls the
search provider and stores the unfiltered response. ``domain_allowlist`` is
applied afterwards so filtered and unfiltered calls share one cache row.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from fetchgate.cache import is_fresh
from fetchgate.errors import ErrorCode, FetchGateError
from fetchgate.models.cache import SearchCacheEntry
from fetchgate.models.search import SearchRequest, SearchResponse
from fetchgate.models.tools import WebSearchInput, WebSearchOutput
from fetchgate.search import search_cache_key
from fetchgate.urls import domain_matches, host_of

if TYPE_CHECKING:
    from fetchgate.state import AppState


async def handle(
    query: str,
    state: AppState,
    *,
    count: int = 10,
    offset: int = 0,
    freshness: str | None = None,
    safesearch: str | None = None,
    country: str | None = None,
    search_lang: str | None = None,
    domain_allowlist: list[str] | None = None,
    force_refresh: bool = False,
) -> dict:
    """Handle a web_search tool call."""
    log = structlog.get_logger().bind(tool="web_search", query=query)
    log.info("handler_called")

    try:
        validated = WebSearchInput(
            query=query,
            count=count,
            offset=offset,
            freshness=freshness,
            safesearch=safesearch,
            country=country,
            search_lang=search_lang,
            domain_allowlist=domain_allowlist or [],
            force_refresh=force_refresh,
        )
        request = SearchRequest(
            q=validated.query,
            count=validated.count,
            offset=validated.offset,
            freshness=validated.freshness,
            safesearch=validated.safesearch,
            country=validated.country,
            search_lang=validated.search_lang,
        )
    except ValueError as exc:
        raise FetchGateError(
            code=ErrorCode.INVALID_INPUT,
            message=str(exc),
            suggestion=(
                "Use a non-empty query (max 400 chars, 50 words), count 1-20, offset 0-9, "
                "freshness pd/pw/pm/py or YYYY-MM-DDtoYYYY-MM-DD, "
                "safesearch off/moderate/strict."
            ),
            recoverable=False,
        ) from exc

    provider = state.search_provider
    key = search_cache_key(provider.name, request)
    now = datetime.now(UTC)

    entry = None if validated.force_refresh else await state.search_cache.lookup(key)
    if entry is not None and is_fresh(entry, now):
        log.info("cache_hit", key=key)
        response = SearchResponse.model_validate(entry.response)
        cached = True
    else:
        log.info("cache_miss", key=key, stale=entry is not None)
        response = await provider.search(request)
        entry = SearchCacheEntry(
            key_hash=key,
            query=request.cache_params(),
            response=response.model_dump(mode="json"),
            fetched_at=now,
            expires_at=now + timedelta(seconds=state.settings.cache.search_ttl_seconds),
        )
        await state.search_cache.put(entry)
        cached = False

    results = response.results
    if validated.domain_allowlist:
        results = [
            result
            for result in results
            if any(domain_matches(host_of(result.url), d) for d in validated.domain_allowlist)
        ]

    output = WebSearchOutput(
        query=response.query,
        provider=provider.name,
        results=results,
        more_results_available=response.more_results_available,
        cached=cached,
        fetched_at=entry.fetched_at,
        expires_at=entry.expires_at,
    )
    return output.model_dump(mode="json")
