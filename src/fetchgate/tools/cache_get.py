"""Tool handler for cache_get: read a stored snapshot by its hash."""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from fetchgate.cache import is_fresh
from fetchgate.errors import ErrorCode, FetchGateError
from fetchgate.models.tools import CacheGetInput
from fetchgate.tools.web_extract import build_output

if TYPE_CHECKING:
    from fetchgate.state import AppState


async def handle(hash: str, state: AppState, *, include_raw: bool = False) -> dict:
    """Handle a cache_get tool call. Never touches the network."""
    log = structlog.get_logger().bind(tool="cache_get", hash=hash)
    log.info("handler_called")

    try:
        validated = CacheGetInput(hash=hash, include_raw=include_raw)
    except ValueError as exc:
        raise FetchGateError(
            code=ErrorCode.INVALID_INPUT,
            message=str(exc),
            suggestion="Pass the 'hash' value returned by web_extract.",
            recoverable=False,
        ) from exc

    snapshot = await state.snapshots.lookup(validated.hash)
    if snapshot is None:
        raise FetchGateError(
            code=ErrorCode.CACHE_MISS,
            message=f"No snapshot stored under {validated.hash}",
            suggestion="Call web_extract for the URL; the snapshot may have been purged.",
            recoverable=False,
        )

    status = "fresh" if is_fresh(snapshot) else "stale"
    return build_output(snapshot, status, include_raw=validated.include_raw).model_dump(mode="json")
