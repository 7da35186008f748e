"""Fetch & cache orchestration.

``Orchestrator.fetch`` answers one page request and reports how it did so:

    Fresh        served from a fresh snapshot, no network access
    Revalidated  stale snapshot confirmed by a 304; only the expiry moved
    Refreshed    fetched (and extracted) anew and stored, or re-extracted from the
                 stored body when the extractor or its settings changed
    Failed       policy denial, network failure, HTTP error or cache I/O error

The orchestrator owns no durable state. It drives collaborators injected by
the lifespan: snapshot cache, safety gate, rate limiter, fetcher, extractor.
Concurrent requests for the same snapshot key share a single in-flight task.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING
from urllib.parse import urldefrag, urljoin

import structlog

from fetchgate.cache import is_fresh
from fetchgate.errors import ErrorCode, FetchGateError
from fetchgate.extractor import ExtractConfig, ExtractionError
from fetchgate.models.cache import FetchMode, Snapshot
from fetchgate.ratelimit import acquire_or_wait
from fetchgate.safety import Deny
from fetchgate.urls import host_of, snapshot_key

if TYPE_CHECKING:
    from structlog.typing import FilteringBoundLogger

    from fetchgate.cache import SnapshotCache
    from fetchgate.config import Settings
    from fetchgate.extractor import ExtractionResult
    from fetchgate.fetcher import Fetcher, FetchResponse
    from fetchgate.protocols import ContentExtractor
    from fetchgate.ratelimit import HostRateLimiter
    from fetchgate.safety import SafetyGate

# Response headers never persisted with a snapshot.
_UNSTORED_HEADERS = frozenset({"set-cookie", "set-cookie2"})
# HTTP statuses worth retrying later; they never replace a good snapshot.
_TRANSIENT_STATUSES = frozenset({408, 425, 429, 500, 502, 503, 504})


def _utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True)
class FetchRequest:
    url: str  # canonical URL (see fetchgate.urls.canonicalize_url)
    mode: FetchMode = FetchMode.READABLE
    headers: dict[str, str] = field(default_factory=dict)
    max_bytes: int | None = None
    force_refresh: bool = False
    extract_config: ExtractConfig = ExtractConfig()

    @property
    def cache_key(self) -> str:
        return snapshot_key(self.url, self.headers, self.mode)


@dataclass(frozen=True)
class Fresh:
    snapshot: Snapshot


@dataclass(frozen=True)
class Revalidated:
    snapshot: Snapshot


@dataclass(frozen=True)
class Refreshed:
    snapshot: Snapshot


@dataclass(frozen=True)
class Failed:
    error: FetchGateError
    snapshot: Snapshot | None = None  # negative-cache record, when one applies


FetchOutcome = Fresh | Revalidated | Refreshed | Failed


def http_error(url: str, status_code: int) -> FetchGateError:
    recoverable = status_code in _TRANSIENT_STATUSES
    return FetchGateError(
        code=ErrorCode.HTTP_ERROR,
        message=f"HTTP {status_code} fetching {url}",
        suggestion=(
            "The site may be temporarily unavailable. Try again later."
            if recoverable
            else "The page could not be retrieved at this URL."
        ),
        recoverable=recoverable,
    )


class Orchestrator:
    def __init__(
        self,
        *,
        snapshots: SnapshotCache,
        gate: SafetyGate,
        rate_limiter: HostRateLimiter,
        fetcher: Fetcher,
        extractor: ContentExtractor,
        settings: Settings,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._snapshots = snapshots
        self._gate = gate
        self._rate_limiter = rate_limiter
        self._fetcher = fetcher
        self._extractor = extractor
        self._settings = settings
        self._now = clock
        self._inflight: dict[str, asyncio.Task[FetchOutcome]] = {}

    @property
    def document_ttl(self) -> timedelta:
        return timedelta(hours=self._settings.cache.document_ttl_hours)

    async def fetch(self, request: FetchRequest) -> FetchOutcome:
        key = request.cache_key
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._run(request, key))
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._forget(key, done))
        else:
            structlog.get_logger().debug("fetch_joined_inflight", url=request.url, hash=key)
        # A cancelled caller must not cancel the fetch other callers share.
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task[FetchOutcome]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _run(self, request: FetchRequest, key: str) -> FetchOutcome:
        log = structlog.get_logger().bind(url=request.url, hash=key, mode=str(request.mode))
        try:
            return await self._fetch(request, key, log)
        except FetchGateError as exc:
            log.info("fetch_failed", code=exc.code, message=exc.message)
            return Failed(exc)

    async def _fetch(
        self, request: FetchRequest, key: str, log: FilteringBoundLogger
    ) -> FetchOutcome:
        cached: Snapshot | None = None
        if not request.force_refresh:
            cached = await self._snapshots.lookup(key)
            if cached is not None and is_fresh(cached, self._now()):
                if cached.is_error:
                    log.info("cache_hit", negative=True, status_code=cached.status_code)
                    return Failed(http_error(cached.final_url, cached.status_code), cached)
                if self._extraction_outdated(request, cached):
                    return Refreshed(await self._reextract(request, cached, log))
                log.info("cache_hit")
                return Fresh(cached)

        conditional: dict[str, str] = {}
        if cached is not None and not cached.is_error and cached.has_validators:
            if cached.etag:
                conditional["If-None-Match"] = cached.etag
            if cached.last_modified:
                conditional["If-Modified-Since"] = cached.last_modified
        log.info("cache_miss", stale=cached is not None, conditional=bool(conditional))

        timeout = self._settings.fetcher.timeout_seconds
        started = time.perf_counter()
        try:
            async with asyncio.timeout(timeout):
                response = await self._follow_redirects(request, conditional, log)
        except TimeoutError as exc:
            raise FetchGateError(
                code=ErrorCode.FETCH_TIMEOUT,
                message=f"Fetching {request.url} did not finish within {timeout:g}s",
                suggestion="The site may be slow or unreachable. Try again later.",
                recoverable=True,
            ) from exc
        fetch_ms = int((time.perf_counter() - started) * 1000)
        fetched_at = self._now()

        if response.status_code == 304 and cached is not None:
            expires_at = fetched_at + self.document_ttl
            await self._snapshots.refresh(key, fetched_at, expires_at)
            log.info("cache_revalidated", expires_at=expires_at.isoformat())
            return Revalidated(
                cached.model_copy(update={"fetched_at": fetched_at, "expires_at": expires_at})
            )

        if not response.is_success:
            return await self._record_http_failure(
                request, key, response, cached, fetched_at, fetch_ms, log
            )

        snapshot = await self._store(request, key, response, fetched_at, fetch_ms, log)
        return Refreshed(snapshot)

    async def _follow_redirects(
        self,
        request: FetchRequest,
        conditional: dict[str, str],
        log: FilteringBoundLogger,
    ) -> FetchResponse:
        """Bounded redirect loop. Every hop is authorised and rate limited."""
        settings = self._settings
        max_redirects = settings.fetcher.max_redirects
        max_bytes = request.max_bytes or settings.fetcher.max_bytes
        # Validators describe the requested URL only; later hops go unconditional.
        headers = {**request.headers, **conditional}
        current = request.url

        for hop in range(max_redirects + 1):
            decision = await self._gate.authorize(current)
            if isinstance(decision, Deny):
                log.warning("fetch_denied", hop=hop, target=current, code=decision.code)
                raise decision.to_error()

            await acquire_or_wait(
                self._rate_limiter, host_of(current), settings.rate_limit.max_wait_seconds
            )
            response = await self._fetcher.fetch_once(current, max_bytes=max_bytes, headers=headers)
            if not response.is_redirect:
                return response

            location = response.location or ""
            current = urldefrag(urljoin(current, location))[0]
            headers = dict(request.headers)
            log.info("redirect_followed", hop=hop + 1, status_code=response.status_code, to=current)

        raise FetchGateError(
            code=ErrorCode.REDIRECT_LOOP_EXCEEDED,
            message=f"More than {max_redirects} redirects fetching {request.url}",
            suggestion="The URL redirects too many times. Try the final destination directly.",
            recoverable=False,
        )

    async def _record_http_failure(
        self,
        request: FetchRequest,
        key: str,
        response: FetchResponse,
        cached: Snapshot | None,
        fetched_at: datetime,
        fetch_ms: int,
        log: FilteringBoundLogger,
    ) -> Failed:
        error = http_error(response.url, response.status_code)
        negative_ttl = self._settings.cache.negative_ttl_seconds
        keep_existing = cached is not None and not cached.is_error and error.recoverable
        if negative_ttl <= 0 or response.status_code < 400 or keep_existing:
            log.info("fetch_http_error", status_code=response.status_code, cached=False)
            return Failed(error)

        snapshot = Snapshot(
            hash=key,
            url=request.url,
            final_url=response.url,
            mode=request.mode,
            content_type=response.content_type,
            status_code=response.status_code,
            headers=_storable_headers(response.headers),
            fetched_at=fetched_at,
            expires_at=fetched_at + timedelta(seconds=negative_ttl),
            fetch_ms=fetch_ms,
        )
        await self._snapshots.put(snapshot)
        log.info("fetch_http_error", status_code=response.status_code, cached=True)
        return Failed(error, snapshot)

    async def _store(
        self,
        request: FetchRequest,
        key: str,
        response: FetchResponse,
        fetched_at: datetime,
        fetch_ms: int,
        log: FilteringBoundLogger,
    ) -> Snapshot:
        extraction: ExtractionResult | None = None
        extract_ms: int | None = None
        if request.mode == FetchMode.READABLE:
            extraction, extract_ms = await self._extract(
                request, response.body, response.content_type, response.url, log
            )

        snapshot = Snapshot(
            hash=key,
            url=request.url,
            final_url=response.url,
            mode=request.mode,
            content_type=response.content_type,
            status_code=response.status_code,
            headers=_storable_headers(response.headers),
            fetched_at=fetched_at,
            expires_at=fetched_at + self.document_ttl,
            etag=response.etag,
            last_modified=response.last_modified,
            raw_bytes=response.body,
            raw_truncated=response.truncated,
            title=extraction.title if extraction else None,
            markdown=extraction.markdown if extraction else None,
            text=extraction.text if extraction else None,
            links=extraction.links if extraction else None,
            extractor_name=self._extractor.name if extraction else None,
            extractor_version=self._extractor.version if extraction else None,
            site_config_id=extraction.site_config_id if extraction else None,
            extract_config=(
                request.extract_config.as_dict() if request.mode == FetchMode.READABLE else None
            ),
            fetch_ms=fetch_ms,
            extract_ms=extract_ms,
        )
        await self._snapshots.put(snapshot)
        log.info(
            "fetch_complete",
            status_code=response.status_code,
            final_url=response.url,
            content_length=len(response.body),
            truncated=response.truncated,
            extracted=extraction is not None,
        )
        return snapshot

    async def _extract(
        self,
        request: FetchRequest,
        body: bytes,
        content_type: str | None,
        base_url: str,
        log: FilteringBoundLogger,
    ) -> tuple[ExtractionResult | None, int]:
        started = time.perf_counter()
        extraction: ExtractionResult | None = None
        try:
            extraction = await asyncio.to_thread(
                self._extractor.extract,
                body,
                content_type,
                request.extract_config,
                base_url=base_url,
            )
        except ExtractionError as exc:
            log.warning("extraction_failed", error=str(exc), content_type=content_type)
        return extraction, int((time.perf_counter() - started) * 1000)

    def _extraction_outdated(self, request: FetchRequest, cached: Snapshot) -> bool:
        """True when a readable snapshot was extracted by other code or settings."""
        if request.mode != FetchMode.READABLE or cached.raw_bytes is None:
            return False
        if cached.extract_config != request.extract_config.as_dict():
            return True
        # A failed extraction records no extractor; only the settings apply then.
        if cached.extractor_name is None:
            return False
        return (cached.extractor_name, cached.extractor_version) != (
            self._extractor.name,
            self._extractor.version,
        )

    async def _reextract(
        self, request: FetchRequest, cached: Snapshot, log: FilteringBoundLogger
    ) -> Snapshot:
        """Extract the stored body again; the fetch timestamps are kept."""
        log.info(
            "cache_reextract",
            extractor_name=cached.extractor_name,
            extractor_version=cached.extractor_version,
        )
        extraction, extract_ms = await self._extract(
            request, cached.raw_bytes or b"", cached.content_type, cached.final_url, log
        )
        snapshot = cached.model_copy(
            update={
                "title": extraction.title if extraction else None,
                "markdown": extraction.markdown if extraction else None,
                "text": extraction.text if extraction else None,
                "links": extraction.links if extraction else None,
                "extractor_name": self._extractor.name if extraction else None,
                "extractor_version": self._extractor.version if extraction else None,
                "site_config_id": extraction.site_config_id if extraction else None,
                "extract_config": request.extract_config.as_dict(),
                "extract_ms": extract_ms,
            }
        )
        await self._snapshots.put(snapshot)
        return snapshot


def _storable_headers(headers: dict[str, str]) -> dict[str, str]:
    return {name: value for name, value in headers.items() if name not in _UNSTORED_HEADERS}
