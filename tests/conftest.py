"""Shared test fixtures for the fetchgate test suite."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

import pytest

from fetchgate.cache import CacheDb, SearchCache, SnapshotCache
from fetchgate.extractor import ExtractConfig
from fetchgate.models.cache import FetchMode, Snapshot
from fetchgate.urls import snapshot_key

PUBLIC_IP = "93.184.216.34"


@pytest.fixture()
async def cache_db() -> CacheDb:
    """In-memory store with all migrations applied."""
    db = await CacheDb.open(":memory:")
    yield db
    await db.close()


@pytest.fixture()
def snapshots(cache_db: CacheDb) -> SnapshotCache:
    return SnapshotCache(cache_db)


@pytest.fixture()
def search_cache(cache_db: CacheDb) -> SearchCache:
    return SearchCache(cache_db)


@pytest.fixture()
def make_snapshot() -> Callable[..., Snapshot]:
    """Factory for fresh readable snapshots; keyword arguments override fields.

    Provenance matches the ``stub`` 1.0 extractor used by orchestrator tests.
    """

    def _make(url: str = "https://example.com/article", **overrides: object) -> Snapshot:
        now = datetime.now(UTC)
        mode = overrides.pop("mode", FetchMode.READABLE)
        fields: dict[str, object] = {
            "hash": snapshot_key(url, None, mode),
            "url": url,
            "final_url": url,
            "mode": mode,
            "content_type": "text/html; charset=utf-8",
            "status_code": 200,
            "headers": {"content-type": "text/html; charset=utf-8"},
            "fetched_at": now,
            "expires_at": now + timedelta(hours=24),
            "raw_bytes": b"<html><body><p>Hello</p></body></html>",
            "title": "Example",
            "markdown": "Hello",
            "text": "Hello",
            "links": [],
            "extractor_name": "stub",
            "extractor_version": "1.0",
            "extract_config": ExtractConfig().as_dict(),
        }
        fields.update(overrides)
        return Snapshot(**fields)

    return _make


@pytest.fixture()
def resolver() -> Callable[..., Callable[[str], Awaitable[list[str]]]]:
    """Factory for fake DNS resolvers: ``resolver({"host": ["10.0.0.1"]})``.

    Hosts not in the mapping resolve to a public address. A mapped
    exception instance is raised instead of returning addresses.
    """

    def _build(
        mapping: dict[str, list[str] | Exception] | None = None,
    ) -> Callable[[str], Awaitable[list[str]]]:
        table = dict(mapping or {})

        async def _resolve(host: str) -> list[str]:
            result = table.get(host, [PUBLIC_IP])
            if isinstance(result, Exception):
                raise result
            return list(result)

        return _resolve

    return _build
