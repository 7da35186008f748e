"""Single-hop HTTP client with a streamed, size-capped body.

The Fetcher never follows redirects: the orchestrator drives the redirect
loop so every hop passes through the safety gate and the rate limiter. The
Fetcher receives an httpx.AsyncClient via constructor injection; the lifespan
owns the client lifecycle.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import httpx
import structlog

from fetchgate.errors import ErrorCode, FetchGateError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from fetchgate.config import FetcherSettings

log = structlog.get_logger()


def build_http_client(settings: FetcherSettings) -> httpx.AsyncClient:
    """Create the shared httpx client. Called once at startup."""
    return httpx.AsyncClient(
        follow_redirects=False,
        timeout=httpx.Timeout(settings.timeout_seconds),
        headers={"User-Agent": settings.user_agent},
        limits=httpx.Limits(
            max_connections=20,
            max_keepalive_connections=10,
        ),
    )


@dataclass
class FetchResponse:
    url: str
    status_code: int
    headers: dict[str, str]  # lowercased names
    body: bytes
    truncated: bool
    elapsed_ms: int

    @property
    def content_type(self) -> str | None:
        return self.headers.get("content-type")

    @property
    def etag(self) -> str | None:
        return self.headers.get("etag")

    @property
    def last_modified(self) -> str | None:
        return self.headers.get("last-modified")

    @property
    def location(self) -> str | None:
        return self.headers.get("location")

    @property
    def is_redirect(self) -> bool:
        return self.status_code in (301, 302, 303, 307, 308) and bool(self.location)

    @property
    def is_success(self) -> bool:
        return 200 <= self.status_code < 300


async def _read_capped(response: httpx.Response, max_bytes: int) -> tuple[bytes, bool]:
    """Read at most *max_bytes* of the body. Returns (body, truncated)."""
    buf = bytearray()
    async for chunk in response.aiter_bytes():
        remaining = max_bytes - len(buf)
        if len(chunk) > remaining:
            buf.extend(chunk[:remaining])
            return bytes(buf), True
        buf.extend(chunk)
    return bytes(buf), False


class Fetcher:
    """Performs exactly one HTTP GET per call."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def fetch_once(
        self,
        url: str,
        *,
        max_bytes: int,
        headers: Mapping[str, str] | None = None,
    ) -> FetchResponse:
        """GET *url* without following redirects.

        The body is streamed and cut at *max_bytes*; a cut body is reported
        through ``truncated`` rather than as an error. Raises FetchGateError
        on timeouts and transport failures. Non-2xx statuses are returned,
        not raised.
        """
        started = time.perf_counter()
        try:
            async with self._client.stream("GET", url, headers=dict(headers or {})) as response:
                body, truncated = await _read_capped(response, max_bytes)
                status_code = response.status_code
                response_headers = {
                    name.lower(): value for name, value in response.headers.items()
                }
        except httpx.TimeoutException as exc:
            raise FetchGateError(
                code=ErrorCode.FETCH_TIMEOUT,
                message=f"Timed out fetching {url}",
                suggestion="The site may be slow or unreachable. Try again later.",
                recoverable=True,
            ) from exc
        except httpx.HTTPError as exc:
            raise FetchGateError(
                code=ErrorCode.FETCH_NETWORK_ERROR,
                message=f"Network error fetching {url}: {exc}",
                suggestion="The site may be temporarily unavailable.",
                recoverable=True,
            ) from exc

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        if truncated:
            log.info("fetch_truncated", url=url, max_bytes=max_bytes)
        log.debug(
            "fetch_hop_complete",
            url=url,
            status_code=status_code,
            content_length=len(body),
            elapsed_ms=elapsed_ms,
        )
        return FetchResponse(
            url=url,
            status_code=status_code,
            headers=response_headers,
            body=body,
            truncated=truncated,
            elapsed_ms=elapsed_ms,
        )
