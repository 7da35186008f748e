"""MCP server entrypoint.

Responsibilities (and nothing more):
- Configure structlog
- Build AppState in the FastMCP lifespan and tear it down on shutdown
- Register tools
- Start the configured transport (stdio or HTTP)
"""

from __future__ import annotations

import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager, suppress
from typing import TYPE_CHECKING

import structlog
from mcp.server.fastmcp import Context, FastMCP
from mcp.types import CallToolResult, TextContent

import fetchgate.tools.cache_get as t_cache_get
import fetchgate.tools.cache_purge as t_cache_purge
import fetchgate.tools.web_batch_open as t_web_batch_open
import fetchgate.tools.web_extract as t_web_extract
import fetchgate.tools.web_search as t_web_search
from fetchgate import __version__
from fetchgate.cache import CacheDb, SearchCache, SnapshotCache
from fetchgate.config import Settings
from fetchgate.errors import FetchGateError
from fetchgate.extractor import TrafilaturaExtractor
from fetchgate.fetcher import Fetcher, build_http_client
from fetchgate.orchestrator import Orchestrator
from fetchgate.ratelimit import HostRateLimiter
from fetchgate.robots import RobotsCache
from fetchgate.safety import SafetyGate
from fetchgate.schedulers import run_cache_cleanup_scheduler
from fetchgate.search import BraveSearchClient
from fetchgate.state import AppState
from fetchgate.transport import run_http_server

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator, Awaitable

log = structlog.get_logger()


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------


def _setup_logging(settings: Settings) -> None:
    """Configure structlog. Called once at startup before any log statements."""
    log_level = logging.getLevelNamesMapping()[settings.logging.level]

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.logging.format == "json":
        processors = [*shared_processors, structlog.processors.JSONRenderer()]
    else:
        processors = [*shared_processors, structlog.dev.ConsoleRenderer()]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        # stdout carries the MCP JSON-RPC stream in stdio mode
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


async def build_state(settings: Settings) -> AppState:
    """Open the store and wire every component. The caller owns teardown."""
    # Store first: nothing needs closing if it fails to open.
    db = await CacheDb.open(settings.cache.db_path)
    http_client = build_http_client(settings.fetcher)

    rate_limiter = HostRateLimiter(
        capacity=settings.rate_limit.capacity,
        refill_per_second=settings.rate_limit.refill_per_second,
    )
    fetcher = Fetcher(http_client)

    robots: RobotsCache | None = None
    if settings.robots.enabled:
        robots = RobotsCache(
            fetcher,
            rate_limiter,
            user_agent=settings.fetcher.user_agent,
            ttl_seconds=settings.robots.ttl_hours * 3600,
            timeout_seconds=settings.robots.timeout_seconds,
            max_wait_seconds=settings.rate_limit.max_wait_seconds,
        )

    gate = SafetyGate(
        allowed_schemes=settings.fetcher.allowed_schemes,
        denied_networks=settings.fetcher.denied_networks,
        robots=robots,
    )
    snapshots = SnapshotCache(db)
    orchestrator = Orchestrator(
        snapshots=snapshots,
        gate=gate,
        rate_limiter=rate_limiter,
        fetcher=fetcher,
        extractor=TrafilaturaExtractor(),
        settings=settings,
    )
    search_provider = BraveSearchClient(
        http_client,
        settings.search,
        rate_limiter,
        max_wait_seconds=settings.rate_limit.max_wait_seconds,
    )

    return AppState(
        settings=settings,
        http_client=http_client,
        db=db,
        snapshots=snapshots,
        search_cache=SearchCache(db),
        rate_limiter=rate_limiter,
        safety_gate=gate,
        orchestrator=orchestrator,
        search_provider=search_provider,
        robots=robots,
    )


@asynccontextmanager
async def lifespan(server: FastMCP) -> AsyncGenerator[AppState, None]:
    """Create and tear down all shared resources for the server's lifetime."""
    settings = Settings()
    _setup_logging(settings)

    log.info("server_starting", version=__version__, transport=settings.server.transport)

    state = await build_state(settings)
    if not state.search_provider.configured:
        log.warning("search_not_configured", hint="set FETCHGATE__SEARCH__API_KEY")

    cache_cleanup_task = asyncio.create_task(run_cache_cleanup_scheduler(state))

    log.info(
        "server_started",
        version=__version__,
        transport=settings.server.transport,
        db_path=state.db.path,
        robots_enabled=state.robots is not None,
    )

    try:
        yield state
    finally:
        cache_cleanup_task.cancel()
        with suppress(asyncio.CancelledError):
            await cache_cleanup_task
        await state.http_client.aclose()
        await state.db.close()
        log.info("server_stopping")


# ---------------------------------------------------------------------------
# FastMCP instance and tool registration
# ---------------------------------------------------------------------------

mcp = FastMCP("fetchgate", lifespan=lifespan)
# FastMCP doesn't expose a version kwarg; set it on the underlying Server
# so the MCP initialize handshake reports our version, not the SDK's.
mcp._mcp_server.version = __version__  # pyright: ignore[reportPrivateUsage]


def _serialise_tool_error(error: FetchGateError) -> CallToolResult:
    """Convert a FetchGateError to the MCP tool error result envelope."""
    return CallToolResult(
        content=[TextContent(type="text", text=json.dumps(error.to_dict()))],
        isError=True,
    )


async def _run_tool(tool: str, call: Awaitable[dict]) -> object:
    try:
        return await call
    except FetchGateError as exc:
        log.warning(
            "tool_error",
            tool=tool,
            code=exc.code,
            message=exc.message,
            recoverable=exc.recoverable,
        )
        return _serialise_tool_error(exc)
    except Exception:
        log.error("tool_unexpected_error", tool=tool, exc_info=True)
        raise


@mcp.tool()
async def web_search(
    query: str,
    ctx: Context,
    count: int = 10,
    offset: int = 0,
    freshness: str | None = None,
    safesearch: str | None = None,
    country: str | None = None,
    search_lang: str | None = None,
    domain_allowlist: list[str] | None = None,
    force_refresh: bool = False,
) -> object:
    """Search the web. Results are cached briefly; identical queries are served from cache.

    freshness: pd (day), pw (week), pm (month), py (year) or YYYY-MM-DDtoYYYY-MM-DD.
    domain_allowlist: keep only results whose host is one of these domains or a subdomain.
    """
    state: AppState = ctx.request_context.lifespan_context
    return await _run_tool(
        "web_search",
        t_web_search.handle(
            query,
            state,
            count=count,
            offset=offset,
            freshness=freshness,
            safesearch=safesearch,
            country=country,
            search_lang=search_lang,
            domain_allowlist=domain_allowlist,
            force_refresh=force_refresh,
        ),
    )


@mcp.tool()
async def web_extract(
    url: str,
    ctx: Context,
    mode: str = "readable",
    accept: str | None = None,
    accept_language: str | None = None,
    max_bytes: int | None = None,
    force_refresh: bool = False,
    include_raw: bool = False,
    include_links: bool = True,
    include_tables: bool = True,
    favor_precision: bool = False,
) -> object:
    """Fetch a web page and return its readable content as Markdown and plain text.

    mode "readable" runs content extraction; "raw" returns the body as fetched.
    Pages are cached and revalidated with conditional requests. Private and
    internal addresses, and paths disallowed by robots.txt, are refused.
    """
    state: AppState = ctx.request_context.lifespan_context
    return await _run_tool(
        "web_extract",
        t_web_extract.handle(
            url,
            state,
            mode=mode,
            accept=accept,
            accept_language=accept_language,
            max_bytes=max_bytes,
            force_refresh=force_refresh,
            include_raw=include_raw,
            include_links=include_links,
            include_tables=include_tables,
            favor_precision=favor_precision,
        ),
    )


@mcp.tool()
async def web_batch_open(
    urls: list[str],
    ctx: Context,
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
) -> object:
    """Fetch and extract up to 50 pages in parallel, like web_extract for each URL.

    Every URL gets its own result or error. max_concurrency (1-16) bounds the
    parallel fetches; with fail_fast, URLs not yet started after a failure are skipped.
    """
    state: AppState = ctx.request_context.lifespan_context
    return await _run_tool(
        "web_batch_open",
        t_web_batch_open.handle(
            urls,
            state,
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
        ),
    )


@mcp.tool()
async def cache_get(hash: str, ctx: Context, include_raw: bool = False) -> object:
    """Return a stored page snapshot by the hash web_extract reported, without fetching."""
    state: AppState = ctx.request_context.lifespan_context
    return await _run_tool("cache_get", t_cache_get.handle(hash, state, include_raw=include_raw))


@mcp.tool()
async def cache_purge(
    ctx: Context,
    expired: bool = False,
    domain: str | None = None,
    max_entries: int | None = None,
) -> object:
    """Evict cached pages: expired entries, a whole domain, and/or all but the newest N."""
    state: AppState = ctx.request_context.lifespan_context
    return await _run_tool(
        "cache_purge",
        t_cache_purge.handle(state, expired=expired, domain=domain, max_entries=max_entries),
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


def main() -> None:
    settings = Settings()

    if settings.server.transport == "http":
        _setup_logging(settings)
        run_http_server(mcp, settings)
        return

    mcp.run()


if __name__ == "__main__":
    main()
