"""Protocol interfaces for swappable components.

The orchestrator and tool handlers reference these protocols, not the
concrete implementations, so tests can substitute stubs and another
extractor or search backend can be plugged in without touching them.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

if TYPE_CHECKING:
    from fetchgate.extractor import ExtractConfig, ExtractionResult
    from fetchgate.models.search import SearchRequest, SearchResponse


class ContentExtractor(Protocol):
    """Turns a fetched body into readable content.

    ``extract`` raises ``fetchgate.extractor.ExtractionError`` when it cannot.
    """

    name: str
    version: str

    def extract(
        self,
        body: bytes,
        content_type: str | None,
        config: ExtractConfig,
        *,
        base_url: str | None = None,
    ) -> ExtractionResult: ...


class SearchProvider(Protocol):
    """A web search backend."""

    name: str

    @property
    def configured(self) -> bool:
        """False when credentials are missing; ``search`` would then raise."""
        ...

    async def search(self, request: SearchRequest) -> SearchResponse: ...
