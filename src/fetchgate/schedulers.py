"""Background maintenance coroutines."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

import structlog

from fetchgate.errors import FetchGateError

if TYPE_CHECKING:
    from fetchgate.state import AppState

log = structlog.get_logger()


async def run_cache_cleanup(state: AppState) -> None:
    """Drop entries that expired more than ``retention_days`` ago. Non-fatal."""
    cutoff = datetime.now(UTC) - timedelta(days=state.settings.cache.retention_days)
    try:
        snapshots_deleted = await state.snapshots.purge_expired(cutoff)
        search_deleted = await state.search_cache.purge_expired(cutoff)
    except FetchGateError as exc:
        log.warning("cache_cleanup_error", code=exc.code, message=exc.message)
        return
    robots_deleted = state.robots.purge_expired() if state.robots is not None else 0
    buckets_pruned = state.rate_limiter.prune_idle()
    log.info(
        "cache_cleanup_complete",
        snapshots_deleted=snapshots_deleted,
        search_deleted=search_deleted,
        robots_deleted=robots_deleted,
        buckets_pruned=buckets_pruned,
    )


async def run_cache_cleanup_scheduler(state: AppState) -> None:
    """Run cache cleanup at startup and (HTTP mode) on the configured interval."""
    await run_cache_cleanup(state)

    if state.settings.server.transport != "http":
        return

    # HTTP long-running mode: repeat on the configured interval.
    interval_seconds = state.settings.cache.cleanup_interval_hours * 3600
    while True:
        await asyncio.sleep(interval_seconds)
        await run_cache_cleanup(state)
