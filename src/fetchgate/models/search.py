from __future__ import annotations

import re
from typing import Literal

from pydantic import BaseModel, Field, field_validator

MAX_QUERY_CHARS = 400
MAX_QUERY_WORDS = 50

_FRESHNESS_PRESETS = frozenset({"pd", "pw", "pm", "py"})
_FRESHNESS_RANGE = re.compile(r"^\d{4}-\d{2}-\d{2}to\d{4}-\d{2}-\d{2}$")


class SearchRequest(BaseModel):
    """Validated, provider-neutral search parameters."""

    q: str
    count: int = Field(default=10, ge=1, le=20)
    offset: int = Field(default=0, ge=0, le=9)
    freshness: str | None = None
    safesearch: Literal["off", "moderate", "strict"] | None = None
    country: str | None = None
    search_lang: str | None = None

    @field_validator("q")
    @classmethod
    def validate_query(cls, v: str) -> str:
        v = " ".join(v.split())
        if not v:
            raise ValueError("query must not be empty")
        if len(v) > MAX_QUERY_CHARS:
            raise ValueError(f"query must be at most {MAX_QUERY_CHARS} characters")
        if len(v.split(" ")) > MAX_QUERY_WORDS:
            raise ValueError(f"query must be at most {MAX_QUERY_WORDS} words")
        return v

    @field_validator("freshness")
    @classmethod
    def validate_freshness(cls, v: str | None) -> str | None:
        if v is None:
            return None
        v = v.strip()
        if v in _FRESHNESS_PRESETS or _FRESHNESS_RANGE.match(v):
            return v
        raise ValueError("freshness must be pd, pw, pm, py or YYYY-MM-DDtoYYYY-MM-DD")

    @field_validator("country", "search_lang")
    @classmethod
    def normalise_code(cls, v: str | None) -> str | None:
        if v is None:
            return None
        return v.strip().lower() or None

    def cache_params(self) -> dict:
        """Parameters that identify a result set, in a stable form."""
        return {
            "q": self.q.lower(),
            "count": self.count,
            "offset": self.offset,
            "freshness": self.freshness,
            "safesearch": self.safesearch,
            "country": self.country,
            "search_lang": self.search_lang,
        }


class SearchResult(BaseModel):
    rank: int  # 1-based position in the provider response
    title: str
    url: str
    description: str = ""
    extra_snippets: list[str] = []
    source: str


class SearchResponse(BaseModel):
    query: str
    results: list[SearchResult] = []
    more_results_available: bool = False
