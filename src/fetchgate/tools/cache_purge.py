"""Tool handler for cache_purge: expired, per-domain and LRU eviction."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import TYPE_CHECKING

import structlog

from fetchgate.errors import ErrorCode, FetchGateError
from fetchgate.models.tools import CachePurgeInput, CachePurgeOutput

if TYPE_CHECKING:
    from fetchgate.state import AppState


async def handle(
    state: AppState,
    *,
    expired: bool = False,
    domain: str | None = None,
    max_entries: int | None = None,
) -> dict:
    """Handle a cache_purge tool call. Criteria are applied in the order given."""
    log = structlog.get_logger().bind(tool="cache_purge")
    log.info("handler_called", expired=expired, domain=domain, max_entries=max_entries)

    try:
        validated = CachePurgeInput(expired=expired, domain=domain, max_entries=max_entries)
    except ValueError as exc:
        raise FetchGateError(
            code=ErrorCode.INVALID_INPUT,
            message=str(exc),
            suggestion="Set expired=true, a domain, and/or max_entries >= 0.",
            recoverable=False,
        ) from exc

    counts: dict[str, int] = {}
    if validated.expired:
        now = datetime.now(UTC)
        counts["expired_deleted"] = await state.snapshots.purge_expired(now)
        counts["search_expired_deleted"] = await state.search_cache.purge_expired(now)
    if validated.domain is not None:
        counts["domain_deleted"] = await state.snapshots.purge_domain(validated.domain)
    if validated.max_entries is not None:
        counts["lru_deleted"] = await state.snapshots.purge_oldest(validated.max_entries)

    output = CachePurgeOutput(remaining=await state.snapshots.count(), **counts)
    log.info("cache_purged", **output.model_dump())
    return output.model_dump(mode="json")
