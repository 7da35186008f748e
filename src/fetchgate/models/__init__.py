from __future__ import annotations

from fetchgate.models.cache import ExtractedLink, FetchMode, SearchCacheEntry, Snapshot
from fetchgate.models.search import SearchRequest, SearchResponse, SearchResult
from fetchgate.models.tools import (
    BatchItem,
    BatchItemError,
    BatchSummary,
    CacheGetInput,
    CachePurgeInput,
    CachePurgeOutput,
    ExtractMetadata,
    ExtractOptions,
    ExtractWarning,
    WebBatchOpenInput,
    WebBatchOpenOutput,
    WebExtractInput,
    WebExtractOutput,
    WebSearchInput,
    WebSearchOutput,
)

__all__ = [
    # cache
    "FetchMode",
    "ExtractedLink",
    "Snapshot",
    "SearchCacheEntry",
    # search
    "SearchRequest",
    "SearchResult",
    "SearchResponse",
    # tools
    "WebExtractInput",
    "WebExtractOutput",
    "ExtractMetadata",
    "ExtractWarning",
    "WebBatchOpenInput",
    "WebBatchOpenOutput",
    "BatchItem",
    "BatchItemError",
    "BatchSummary",
    "ExtractOptions",
    "WebSearchInput",
    "WebSearchOutput",
    "CacheGetInput",
    "CachePurgeInput",
    "CachePurgeOutput",
]
