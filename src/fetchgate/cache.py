"""Durable SQLite store for page snapshots and search responses.

The store runs in WAL mode. File-backed databases get one writer connection
and one read-only reader connection, so lookups see the last committed state
while a write is in progress. Writes are serialised by an asyncio lock and
each one commits or rolls back as a unit.

Unlike a best-effort cache, every ``aiosqlite.Error`` here is converted into
``FetchGateError(CACHE_IO_ERROR)``: a failed read or write aborts the request
that triggered it, but never leaves a partially written row behind.
"""

from __future__ import annotations

import asyncio
import json
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiosqlite
import structlog

from fetchgate.errors import ErrorCode, FetchGateError
from fetchgate.models.cache import ExtractedLink, FetchMode, SearchCacheEntry, Snapshot
from fetchgate.urls import domain_matches, host_of

log = structlog.get_logger()

MEMORY = ":memory:"

_CREATE_MIGRATIONS_TABLE = """
CREATE TABLE IF NOT EXISTS _migrations (
    version    INTEGER PRIMARY KEY,
    name       TEXT NOT NULL,
    applied_at TEXT NOT NULL
)
"""

_CREATE_SNAPSHOTS_TABLE = """
CREATE TABLE IF NOT EXISTS snapshots (
    hash              TEXT PRIMARY KEY,
    url               TEXT NOT NULL,
    final_url         TEXT NOT NULL,
    mode              TEXT NOT NULL,
    content_type      TEXT,
    status_code       INTEGER NOT NULL,
    fetched_at        TEXT NOT NULL,
    expires_at        TEXT,
    etag              TEXT,
    last_modified     TEXT,
    raw_bytes         BLOB,
    raw_truncated     INTEGER NOT NULL DEFAULT 0,
    title             TEXT,
    markdown          TEXT,
    text              TEXT,
    links_json        TEXT,
    extractor_name    TEXT,
    extractor_version TEXT,
    siteconfig_id     TEXT,
    extract_cfg_json  TEXT,
    headers_json      TEXT,
    fetch_ms          INTEGER,
    extract_ms        INTEGER
)
"""

_CREATE_SEARCH_TABLE = """
CREATE TABLE IF NOT EXISTS search_cache (
    key_hash      TEXT PRIMARY KEY,
    query_json    TEXT NOT NULL,
    response_json TEXT NOT NULL,
    fetched_at    TEXT NOT NULL,
    expires_at    TEXT NOT NULL
)
"""

# (version, name, statements). Every statement is idempotent so re-running a
# migration against an existing store is harmless.
MIGRATIONS: list[tuple[int, str, tuple[str, ...]]] = [
    (
        1,
        "create_snapshots",
        (
            _CREATE_SNAPSHOTS_TABLE,
            "CREATE INDEX IF NOT EXISTS idx_snapshots_url ON snapshots(url)",
            "CREATE INDEX IF NOT EXISTS idx_snapshots_fetched_at ON snapshots(fetched_at)",
            "CREATE INDEX IF NOT EXISTS idx_snapshots_expires_at ON snapshots(expires_at)",
        ),
    ),
    (
        2,
        "create_search_cache",
        (
            _CREATE_SEARCH_TABLE,
            "CREATE INDEX IF NOT EXISTS idx_search_expires_at ON search_cache(expires_at)",
        ),
    ),
]

_SNAPSHOT_COLUMNS = (
    "hash",
    "url",
    "final_url",
    "mode",
    "content_type",
    "status_code",
    "fetched_at",
    "expires_at",
    "etag",
    "last_modified",
    "raw_bytes",
    "raw_truncated",
    "title",
    "markdown",
    "text",
    "links_json",
    "extractor_name",
    "extractor_version",
    "siteconfig_id",
    "extract_cfg_json",
    "headers_json",
    "fetch_ms",
    "extract_ms",
)

_UPSERT_SNAPSHOT = (
    f"INSERT INTO snapshots ({', '.join(_SNAPSHOT_COLUMNS)}) "
    f"VALUES ({', '.join('?' for _ in _SNAPSHOT_COLUMNS)}) "
    "ON CONFLICT(hash) DO UPDATE SET "
    + ", ".join(f"{col} = excluded.{col}" for col in _SNAPSHOT_COLUMNS if col != "hash")
)


def _ts(value: datetime) -> str:
    return value.astimezone(UTC).isoformat()


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _io_error(operation: str, exc: aiosqlite.Error) -> FetchGateError:
    return FetchGateError(
        code=ErrorCode.CACHE_IO_ERROR,
        message=f"Cache {operation} failed: {exc}",
        suggestion="The local cache database may be locked or corrupt. Retry the request.",
        recoverable=True,
    )


def is_fresh(entry: Snapshot | SearchCacheEntry, now: datetime | None = None) -> bool:
    """True while *now* is before the entry's expiry. No expiry means fresh."""
    if entry.expires_at is None:
        return True
    return (now or datetime.now(UTC)) < entry.expires_at


class CacheDb:
    """Owns the SQLite connections shared by SnapshotCache and SearchCache."""

    def __init__(
        self,
        writer: aiosqlite.Connection,
        reader: aiosqlite.Connection | None = None,
        *,
        path: str = MEMORY,
    ) -> None:
        self.writer = writer
        self.reader = reader or writer
        self.path = path
        self.write_lock = asyncio.Lock()

    @classmethod
    async def open(cls, path: str) -> CacheDb:
        """Open (creating if needed) the store at *path* and apply migrations."""
        if path == MEMORY:
            writer = await aiosqlite.connect(MEMORY)
            db = cls(writer)
        else:
            db_path = Path(path).expanduser()
            db_path.parent.mkdir(parents=True, exist_ok=True)
            writer = await aiosqlite.connect(str(db_path))
            db = cls(writer, path=str(db_path))

        writer.row_factory = aiosqlite.Row
        await writer.execute("PRAGMA journal_mode = WAL")
        await writer.execute("PRAGMA synchronous = NORMAL")
        await writer.execute("PRAGMA temp_store = MEMORY")
        await writer.execute("PRAGMA foreign_keys = ON")
        await db.migrate()

        if path != MEMORY:
            reader = await aiosqlite.connect(db.path)
            reader.row_factory = aiosqlite.Row
            await reader.execute("PRAGMA query_only = ON")
            await reader.execute("PRAGMA temp_store = MEMORY")
            db.reader = reader

        log.info("cache_opened", path=db.path)
        return db

    async def migrate(self) -> list[int]:
        """Apply pending migrations. Returns the versions applied by this call."""
        applied: list[int] = []
        async with self.write_lock:
            await self.writer.execute(_CREATE_MIGRATIONS_TABLE)
            cursor = await self.writer.execute("SELECT version FROM _migrations")
            done = {row[0] for row in await cursor.fetchall()}
            for version, name, statements in MIGRATIONS:
                if version in done:
                    continue
                for statement in statements:
                    await self.writer.execute(statement)
                await self.writer.execute(
                    "INSERT INTO _migrations (version, name, applied_at) VALUES (?, ?, ?)",
                    (version, name, _ts(datetime.now(UTC))),
                )
                applied.append(version)
            await self.writer.commit()
        if applied:
            log.info("cache_migrated", versions=applied)
        return applied

    async def close(self) -> None:
        """Checkpoint the WAL into the main file and close all connections."""
        if self.path != MEMORY:
            try:
                await self.writer.execute("PRAGMA wal_checkpoint(TRUNCATE)")
            except aiosqlite.Error:
                log.warning("cache_checkpoint_error", exc_info=True)
        if self.reader is not self.writer:
            await self.reader.close()
        await self.writer.close()
        log.info("cache_closed", path=self.path)

    async def fetch_one(
        self, operation: str, sql: str, params: tuple = ()
    ) -> aiosqlite.Row | None:
        try:
            cursor = await self.reader.execute(sql, params)
            return await cursor.fetchone()
        except aiosqlite.Error as exc:
            log.warning("cache_read_error", operation=operation, exc_info=True)
            raise _io_error(operation, exc) from exc

    async def write(self, operation: str, sql: str, params: tuple = ()) -> int:
        """Run one statement in its own transaction. Returns the affected row count."""
        async with self.write_lock:
            try:
                cursor = await self.writer.execute(sql, params)
                rowcount = cursor.rowcount
                await self.writer.commit()
                return rowcount
            except aiosqlite.Error as exc:
                log.warning("cache_write_error", operation=operation, exc_info=True)
                await self._rollback()
                raise _io_error(operation, exc) from exc

    async def _rollback(self) -> None:
        try:
            await self.writer.rollback()
        except aiosqlite.Error:
            log.warning("cache_rollback_error", exc_info=True)


class SnapshotCache:
    """Content-addressed page snapshots."""

    def __init__(self, db: CacheDb) -> None:
        self._db = db

    async def lookup(self, snapshot_hash: str) -> Snapshot | None:
        row = await self._db.fetch_one(
            "snapshot_lookup", "SELECT * FROM snapshots WHERE hash = ?", (snapshot_hash,)
        )
        return _row_to_snapshot(row) if row is not None else None

    async def put(self, snapshot: Snapshot) -> None:
        """Insert or fully replace the row for ``snapshot.hash``."""
        await self._db.write("snapshot_put", _UPSERT_SNAPSHOT, _snapshot_params(snapshot))
        log.debug("snapshot_stored", hash=snapshot.hash, url=snapshot.url)

    async def refresh(
        self, snapshot_hash: str, fetched_at: datetime, expires_at: datetime
    ) -> bool:
        """Extend the freshness window after a 304. Touches nothing else."""
        updated = await self._db.write(
            "snapshot_refresh",
            "UPDATE snapshots SET fetched_at = ?, expires_at = ? WHERE hash = ?",
            (_ts(fetched_at), _ts(expires_at), snapshot_hash),
        )
        return updated > 0

    async def purge_expired(self, before: datetime) -> int:
        """Delete snapshots whose expiry is earlier than *before*."""
        return await self._db.write(
            "snapshot_purge_expired",
            "DELETE FROM snapshots WHERE expires_at IS NOT NULL AND expires_at < ?",
            (_ts(before),),
        )

    async def purge_domain(self, domain: str) -> int:
        """Delete snapshots whose URL host is *domain* or a subdomain of it."""
        async with self._db.write_lock:
            try:
                cursor = await self._db.writer.execute("SELECT hash, url FROM snapshots")
                doomed = [
                    (row[0],)
                    for row in await cursor.fetchall()
                    if domain_matches(host_of(row[1]), domain)
                ]
                if doomed:
                    await self._db.writer.executemany(
                        "DELETE FROM snapshots WHERE hash = ?", doomed
                    )
                await self._db.writer.commit()
            except aiosqlite.Error as exc:
                log.warning("cache_write_error", operation="snapshot_purge_domain", exc_info=True)
                await self._db._rollback()
                raise _io_error("snapshot_purge_domain", exc) from exc
        return len(doomed)

    async def purge_oldest(self, max_entries: int) -> int:
        """Keep the *max_entries* most recently fetched snapshots, delete the rest."""
        return await self._db.write(
            "snapshot_purge_oldest",
            "DELETE FROM snapshots WHERE hash IN ("
            "SELECT hash FROM snapshots ORDER BY fetched_at DESC LIMIT -1 OFFSET ?)",
            (max(0, max_entries),),
        )

    async def count(self) -> int:
        row = await self._db.fetch_one("snapshot_count", "SELECT COUNT(*) FROM snapshots")
        return int(row[0]) if row is not None else 0


class SearchCache:
    """Short-lived cache of search provider responses."""

    def __init__(self, db: CacheDb) -> None:
        self._db = db

    async def lookup(self, key_hash: str) -> SearchCacheEntry | None:
        row = await self._db.fetch_one(
            "search_lookup",
            "SELECT key_hash, query_json, response_json, fetched_at, expires_at "
            "FROM search_cache WHERE key_hash = ?",
            (key_hash,),
        )
        if row is None:
            return None
        return SearchCacheEntry(
            key_hash=row["key_hash"],
            query=json.loads(row["query_json"]),
            response=json.loads(row["response_json"]),
            fetched_at=datetime.fromisoformat(row["fetched_at"]),
            expires_at=datetime.fromisoformat(row["expires_at"]),
        )

    async def put(self, entry: SearchCacheEntry) -> None:
        await self._db.write(
            "search_put",
            "INSERT INTO search_cache "
            "(key_hash, query_json, response_json, fetched_at, expires_at) "
            "VALUES (?, ?, ?, ?, ?) "
            "ON CONFLICT(key_hash) DO UPDATE SET query_json = excluded.query_json, "
            "response_json = excluded.response_json, fetched_at = excluded.fetched_at, "
            "expires_at = excluded.expires_at",
            (
                entry.key_hash,
                json.dumps(entry.query, sort_keys=True),
                json.dumps(entry.response),
                _ts(entry.fetched_at),
                _ts(entry.expires_at),
            ),
        )

    async def purge_expired(self, before: datetime) -> int:
        return await self._db.write(
            "search_purge_expired",
            "DELETE FROM search_cache WHERE expires_at < ?",
            (_ts(before),),
        )

    async def count(self) -> int:
        row = await self._db.fetch_one("search_count", "SELECT COUNT(*) FROM search_cache")
        return int(row[0]) if row is not None else 0


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------


def _json_or_none(value: Any) -> str | None:
    return json.dumps(value) if value is not None else None


def _snapshot_params(snapshot: Snapshot) -> tuple:
    links = [link.model_dump() for link in snapshot.links] if snapshot.links is not None else None
    return (
        snapshot.hash,
        snapshot.url,
        snapshot.final_url,
        str(snapshot.mode),
        snapshot.content_type,
        snapshot.status_code,
        _ts(snapshot.fetched_at),
        _ts(snapshot.expires_at) if snapshot.expires_at is not None else None,
        snapshot.etag,
        snapshot.last_modified,
        snapshot.raw_bytes,
        int(snapshot.raw_truncated),
        snapshot.title,
        snapshot.markdown,
        snapshot.text,
        _json_or_none(links),
        snapshot.extractor_name,
        snapshot.extractor_version,
        snapshot.site_config_id,
        _json_or_none(snapshot.extract_config),
        json.dumps(snapshot.headers),
        snapshot.fetch_ms,
        snapshot.extract_ms,
    )


def _row_to_snapshot(row: aiosqlite.Row) -> Snapshot:
    links_json = row["links_json"]
    return Snapshot(
        hash=row["hash"],
        url=row["url"],
        final_url=row["final_url"],
        mode=FetchMode(row["mode"]),
        content_type=row["content_type"],
        status_code=row["status_code"],
        headers=json.loads(row["headers_json"]) if row["headers_json"] else {},
        fetched_at=datetime.fromisoformat(row["fetched_at"]),
        expires_at=_parse_ts(row["expires_at"]),
        etag=row["etag"],
        last_modified=row["last_modified"],
        raw_bytes=row["raw_bytes"],
        raw_truncated=bool(row["raw_truncated"]),
        title=row["title"],
        markdown=row["markdown"],
        text=row["text"],
        links=(
            [ExtractedLink(**link) for link in json.loads(links_json)] if links_json else None
        ),
        extractor_name=row["extractor_name"],
        extractor_version=row["extractor_version"],
        site_config_id=row["siteconfig_id"],
        extract_config=json.loads(row["extract_cfg_json"]) if row["extract_cfg_json"] else None,
        fetch_ms=row["fetch_ms"],
        extract_ms=row["extract_ms"],
    )
