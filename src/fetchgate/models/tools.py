from __future__ import annotations

import re
from datetime import datetime
from typing import Annotated, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from fetchgate.config import MAX_BYTES_LIMIT
from fetchgate.models.cache import ExtractedLink, FetchMode
from fetchgate.models.search import SearchResult

MAX_URL_LENGTH = 2048
MAX_BATCH_URLS = 50
_HASH_PATTERN = re.compile(r"^[0-9a-f]{64}$")

CacheStatus = Literal["fresh", "stale", "revalidated", "refreshed"]
BatchItemStatus = Literal["succeeded", "failed", "skipped"]

# ---------------------------------------------------------------------------
# web_extract
# ---------------------------------------------------------------------------


class ExtractOptions(BaseModel):
    """Fetch and extraction options shared by web_extract and web_batch_open."""

    mode: FetchMode = FetchMode.READABLE
    accept: str | None = None
    accept_language: str | None = None
    max_bytes: int | None = Field(default=None, gt=0, le=MAX_BYTES_LIMIT)
    force_refresh: bool = False
    include_raw: bool = False
    include_links: bool = True
    include_tables: bool = True
    favor_precision: bool = False


class WebExtractInput(ExtractOptions):
    url: str = Field(max_length=MAX_URL_LENGTH)

    @field_validator("url")
    @classmethod
    def url_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("url must not be empty")
        return v


class ExtractWarning(BaseModel):
    code: str
    message: str


class ExtractMetadata(BaseModel):
    content_type: str | None
    status_code: int
    fetched_at: datetime
    expires_at: datetime | None
    cache: CacheStatus
    raw_truncated: bool
    raw_length: int
    extractor_name: str | None
    extractor_version: str | None
    fetch_ms: int | None
    extract_ms: int | None
    warnings: list[ExtractWarning] = []


class WebExtractOutput(BaseModel):
    url: str
    final_url: str
    hash: str
    mode: FetchMode
    title: str | None
    markdown: str | None
    text: str | None
    links: list[ExtractedLink] | None
    raw: str | None  # decoded body; always present in raw mode
    metadata: ExtractMetadata


# ---------------------------------------------------------------------------
# web_batch_open
# ---------------------------------------------------------------------------


class WebBatchOpenInput(ExtractOptions):
    # Unparseable URLs fail only their own item.
    urls: list[Annotated[str, Field(max_length=MAX_URL_LENGTH)]] = Field(
        min_length=1, max_length=MAX_BATCH_URLS
    )
    max_concurrency: int = Field(default=4, ge=1, le=16)
    fail_fast: bool = False


class BatchItemError(BaseModel):
    code: str
    message: str
    suggestion: str
    recoverable: bool
    retry_after: float | None = None


class BatchItem(BaseModel):
    url: str
    status: BatchItemStatus
    result: WebExtractOutput | None = None
    error: BatchItemError | None = None


class BatchSummary(BaseModel):
    total: int
    succeeded: int
    cached: int  # served fresh or revalidated, a subset of succeeded
    failed: int
    skipped: int


class WebBatchOpenOutput(BaseModel):
    results: list[BatchItem]  # input order
    summary: BatchSummary


# ---------------------------------------------------------------------------
# web_search
# ---------------------------------------------------------------------------


class WebSearchInput(BaseModel):
    query: str
    count: int = 10
    offset: int = 0
    freshness: str | None = None
    safesearch: str | None = None
    country: str | None = None
    search_lang: str | None = None
    domain_allowlist: list[str] = []
    force_refresh: bool = False

    @field_validator("domain_allowlist")
    @classmethod
    def normalise_domains(cls, v: list[str]) -> list[str]:
        return [d.strip().lower().lstrip(".") for d in v if d.strip()]


class WebSearchOutput(BaseModel):
    query: str
    provider: str
    results: list[SearchResult]
    more_results_available: bool
    cached: bool
    fetched_at: datetime
    expires_at: datetime


# ---------------------------------------------------------------------------
# cache_get / cache_purge
# ---------------------------------------------------------------------------


class CacheGetInput(BaseModel):
    hash: str
    include_raw: bool = False

    @field_validator("hash")
    @classmethod
    def validate_hash(cls, v: str) -> str:
        v = v.strip().lower()
        if not _HASH_PATTERN.match(v):
            raise ValueError("hash must be a 64-character hex SHA-256 digest")
        return v


class CachePurgeInput(BaseModel):
    expired: bool = False
    domain: str | None = None
    max_entries: int | None = Field(default=None, ge=0)

    @field_validator("domain")
    @classmethod
    def normalise_domain(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip().lower().lstrip(".")
        return v or None

    @model_validator(mode="after")
    def require_one_criterion(self) -> CachePurgeInput:
        if not self.expired and self.domain is None and self.max_entries is None:
            raise ValueError("specify at least one of expired, domain or max_entries")
        return self


class CachePurgeOutput(BaseModel):
    expired_deleted: int = 0
    domain_deleted: int = 0
    lru_deleted: int = 0
    search_expired_deleted: int = 0
    remaining: int
