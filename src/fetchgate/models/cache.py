from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel


class FetchMode(StrEnum):
    READABLE = "readable"  # fetch and run the content extractor
    RAW = "raw"  # fetch and store the body only


class ExtractedLink(BaseModel):
    text: str
    href: str


class Snapshot(BaseModel):
    """One cached fetch (and optional extraction) of a URL."""

    hash: str  # SHA-256 over (canonical URL, vary headers, mode)
    url: str
    final_url: str
    mode: FetchMode
    content_type: str | None = None
    status_code: int
    headers: dict[str, str] = {}
    fetched_at: datetime
    expires_at: datetime | None = None
    etag: str | None = None
    last_modified: str | None = None
    raw_bytes: bytes | None = None
    raw_truncated: bool = False
    title: str | None = None
    markdown: str | None = None
    text: str | None = None
    links: list[ExtractedLink] | None = None
    extractor_name: str | None = None
    extractor_version: str | None = None
    site_config_id: str | None = None
    extract_config: dict[str, Any] | None = None
    fetch_ms: int | None = None
    extract_ms: int | None = None

    @property
    def is_error(self) -> bool:
        """Negative-cache entry recording an HTTP error response."""
        return self.status_code >= 400

    @property
    def has_validators(self) -> bool:
        return bool(self.etag or self.last_modified)


class SearchCacheEntry(BaseModel):
    """Cached search provider response for one normalised query."""

    key_hash: str
    query: dict[str, Any]  # Normalised request parameters
    response: dict[str, Any]  # Provider-neutral SearchResponse dump
    fetched_at: datetime
    expires_at: datetime
