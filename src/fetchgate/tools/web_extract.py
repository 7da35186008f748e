"""Tool handler for web_extract.

Validates input, canonicalises the URL, runs the fetch orchestrator and
shapes the resulting snapshot for the agent. No MCP or FastMCP imports;
server.py handles the MCP wiring.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

import structlog

from fetchgate.errors import ErrorCode, FetchGateError
from fetchgate.extractor import ExtractConfig, decode_body
from fetchgate.models.cache import FetchMode
from fetchgate.models.tools import (
    CacheStatus,
    ExtractMetadata,
    ExtractOptions,
    ExtractWarning,
    WebExtractInput,
    WebExtractOutput,
)
from fetchgate.orchestrator import Failed, FetchRequest, Fresh, Revalidated
from fetchgate.urls import canonicalize_url

if TYPE_CHECKING:
    from fetchgate.models.cache import Snapshot
    from fetchgate.orchestrator import Refreshed
    from fetchgate.state import AppState


async def handle(
    url: str,
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
) -> dict:
    """Handle a web_extract tool call."""
    log = structlog.get_logger().bind(tool="web_extract", url=url)
    log.info("handler_called")

    try:
        validated = WebExtractInput(
            url=url,
            mode=mode,
            accept=accept,
            accept_language=accept_language,
            max_bytes=max_bytes,
            force_refresh=force_refresh,
            include_raw=include_raw,
            include_links=include_links,
            include_tables=include_tables,
            favor_precision=favor_precision,
        )
    except ValueError as exc:
        raise FetchGateError(
            code=ErrorCode.INVALID_INPUT,
            message=str(exc),
            suggestion=(
                "Provide an http(s) URL (max 2048 chars), mode 'readable' or 'raw', "
                "and max_bytes between 1 byte and 50 MiB."
            ),
            recoverable=False,
        ) from exc

    outcome = await state.orchestrator.fetch(fetch_request(validated.url, validated))
    if isinstance(outcome, Failed):
        raise outcome.error

    output = build_output(
        outcome.snapshot, outcome_cache_status(outcome), include_raw=validated.include_raw
    )
    return output.model_dump(mode="json")


def fetch_request(url: str, options: ExtractOptions) -> FetchRequest:
    """Canonicalise *url* and apply the caller's fetch and extraction options.

    Raises FetchGateError(INVALID_INPUT) for a URL that cannot be parsed.
    """
    headers: dict[str, str] = {}
    if options.accept:
        headers["Accept"] = options.accept
    if options.accept_language:
        headers["Accept-Language"] = options.accept_language

    return FetchRequest(
        url=canonicalize_url(url),
        mode=options.mode,
        headers=headers,
        max_bytes=options.max_bytes,
        force_refresh=options.force_refresh,
        extract_config=ExtractConfig(
            include_links=options.include_links,
            include_tables=options.include_tables,
            favor_precision=options.favor_precision,
        ),
    )


def outcome_cache_status(outcome: Fresh | Revalidated | Refreshed) -> CacheStatus:
    if isinstance(outcome, Fresh):
        return "fresh"
    if isinstance(outcome, Revalidated):
        return "revalidated"
    return "refreshed"


def build_output(
    snapshot: Snapshot, cache_status: CacheStatus, *, include_raw: bool
) -> WebExtractOutput:
    """Shape a stored snapshot for the agent, with degradation warnings."""
    warnings: list[ExtractWarning] = []
    if snapshot.raw_truncated:
        warnings.append(
            ExtractWarning(
                code=ErrorCode.SIZE_CAP_EXCEEDED,
                message="The response body exceeded max_bytes and was truncated.",
            )
        )
    if (
        snapshot.mode == FetchMode.READABLE
        and not snapshot.is_error
        and snapshot.markdown is None
        and snapshot.text is None
    ):
        warnings.append(
            ExtractWarning(
                code=ErrorCode.EXTRACTION_FAILED,
                message=(
                    "No readable content could be extracted; request include_raw for the body."
                ),
            )
        )

    raw: str | None = None
    if (include_raw or snapshot.mode == FetchMode.RAW) and snapshot.raw_bytes is not None:
        raw = decode_body(snapshot.raw_bytes, snapshot.content_type)

    return WebExtractOutput(
        url=snapshot.url,
        final_url=snapshot.final_url,
        hash=snapshot.hash,
        mode=snapshot.mode,
        title=snapshot.title,
        markdown=snapshot.markdown,
        text=snapshot.text,
        links=snapshot.links,
        raw=raw,
        metadata=ExtractMetadata(
            content_type=snapshot.content_type,
            status_code=snapshot.status_code,
            fetched_at=snapshot.fetched_at,
            expires_at=snapshot.expires_at,
            cache=cache_status,
            raw_truncated=snapshot.raw_truncated,
            raw_length=len(snapshot.raw_bytes or b""),
            extractor_name=snapshot.extractor_name,
            extractor_version=snapshot.extractor_version,
            fetch_ms=snapshot.fetch_ms,
            extract_ms=snapshot.extract_ms,
            warnings=warnings,
        ),
    )
