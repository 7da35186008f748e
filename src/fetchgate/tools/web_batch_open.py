"""Tool handler for web_batch_open.

Opens several URLs through the fetch orchestrator with bounded concurrency.
Each URL gets its own result or error; one failing URL never fails the call.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from fetchgate.errors import ErrorCode, FetchGateError
from fetchgate.models.tools import (
    BatchItem,
    BatchItemError,
    BatchSummary,
    WebBatchOpenInput,
    WebBatchOpenOutput,
)
from fetchgate.orchestrator import Failed
from fetchgate.tools.web_extract import build_output, fetch_request, outcome_cache_status

if TYPE_CHECKING:
    from fetchgate.state import AppState


async def handle(
    urls: list[str],
    state: AppState,
    *,
    mode: str = "readable",
    accept: str | None = None,
    accept_language: str | None = None,
    max_bytes: int | None = None,
    force_refresh: bool = False,
    include_raw: bool = False,
    include_links: bool = True,
    include_tables: bool = True,
    favor_precision: bool = False,
    max_concurrency: int = 4,
    fail_fast: bool = False,
) -> dict:
    """Handle a web_batch_open tool call."""
    log = structlog.get_logger().bind(tool="web_batch_open")
    log.info("handler_called", url_count=len(urls))

    try:
        validated = WebBatchOpenInput(
            urls=urls,
            mode=mode,
            accept=accept,
            accept_language=accept_language,
            max_bytes=max_bytes,
            force_refresh=force_refresh,
            include_raw=include_raw,
            include_links=include_links,
            include_tables=include_tables,
            favor_precision=favor_precision,
            max_concurrency=max_concurrency,
            fail_fast=fail_fast,
        )
    except ValueError as exc:
        raise FetchGateError(
            code=ErrorCode.INVALID_INPUT,
            message=str(exc),
            suggestion=(
                "Provide 1 to 50 URLs, max_concurrency between 1 and 16, "
                "mode 'readable' or 'raw', and max_bytes between 1 byte and 50 MiB."
            ),
            recoverable=False,
        ) from exc

    semaphore = asyncio.Semaphore(validated.max_concurrency)
    stop = asyncio.Event()

    async def _open(url: str) -> BatchItem:
        async with semaphore:
            # fail_fast: URLs still queued when an item fails are not fetched.
            if stop.is_set():
                return BatchItem(url=url, status="skipped")
            try:
                outcome = await state.orchestrator.fetch(fetch_request(url, validated))
            except FetchGateError as exc:
                error = exc
            else:
                if not isinstance(outcome, Failed):
                    output = build_output(
                        outcome.snapshot,
                        outcome_cache_status(outcome),
                        include_raw=validated.include_raw,
                    )
                    return BatchItem(url=url, status="succeeded", result=output)
                error = outcome.error

            if validated.fail_fast:
                stop.set()
            log.info("batch_item_failed", url=url, code=error.code)
            return BatchItem(
                url=url,
                status="failed",
                error=BatchItemError(
                    code=str(error.code),
                    message=error.message,
                    suggestion=error.suggestion,
                    recoverable=error.recoverable,
                    retry_after=error.retry_after,
                ),
            )

    items = await asyncio.gather(*(_open(url) for url in validated.urls))

    succeeded = [item for item in items if item.status == "succeeded"]
    summary = BatchSummary(
        total=len(items),
        succeeded=len(succeeded),
        cached=sum(
            1
            for item in succeeded
            if item.result is not None and item.result.metadata.cache in ("fresh", "revalidated")
        ),
        failed=sum(1 for item in items if item.status == "failed"),
        skipped=sum(1 for item in items if item.status == "skipped"),
    )
    log.info(
        "batch_complete",
        total=summary.total,
        succeeded=summary.succeeded,
        failed=summary.failed,
        skipped=summary.skipped,
    )
    return WebBatchOpenOutput(results=list(items), summary=summary).model_dump(mode="json")
