"""Two-tier TTL cache: an in-process dict in front of an SQLite table.

The persistent tier is strictly an optimisation. Any failure talking to it
(I/O, locking, timeouts, unserialisable values) is logged and reported to the
caller as a miss or a failed write, never raised.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import sqlite3
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import aiosqlite

from contentsync.errors import CacheIOError
from contentsync.models import CacheEntry, FileDigest, RepositoryInfo


logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_NAMESPACE = "default"
DEFAULT_TTL_MS = 24 * 60 * 60 * 1000
DEFAULT_MEMORY_LIMIT = 50

REPOSITORY_NAMESPACE = "git-repos"
REPOSITORY_TTL_MS = 2 * 60 * 60 * 1000
FILE_DIGEST_NAMESPACE = "file-hashes"
FILE_DIGEST_TTL_MS = 7 * 24 * 60 * 60 * 1000

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS cache_entry (
    key TEXT PRIMARY KEY,
    namespace TEXT NOT NULL,
    data TEXT NOT NULL,
    timestamp INTEGER NOT NULL,
    ttl INTEGER NOT NULL,
    size INTEGER NOT NULL,
    metadata TEXT NOT NULL
);
"""

INDEX_SQL = "CREATE INDEX IF NOT EXISTS cache_entry_namespace ON cache_entry (namespace);"

_PERSISTENT_ERRORS = (aiosqlite.Error, sqlite3.Error, OSError, asyncio.TimeoutError, ValueError)


@dataclass(slots=True)
class CacheStats:
    enabled: bool
    total_entries: int = 0
    valid_entries: int = 0
    expired_entries: int = 0
    total_size_bytes: int = 0
    memory_entries: int = 0
    location: str | None = None


def _now_ms() -> int:
    return int(time.time() * 1000)


def _serialize(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


class CacheStore:
    def __init__(
        self,
        db_path: Path,
        *,
        enabled: bool = True,
        default_ttl_ms: int = DEFAULT_TTL_MS,
        memory_limit: int = DEFAULT_MEMORY_LIMIT,
        io_timeout: float = 5.0,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.db_path = db_path
        self.enabled = enabled
        self.default_ttl_ms = default_ttl_ms
        self.memory_limit = memory_limit
        self.io_timeout = io_timeout
        self._clock = clock
        self._memory: dict[str, CacheEntry] = {}
        self._schema_ready = False

    @staticmethod
    def key(value: Any, namespace: str = DEFAULT_NAMESPACE) -> str:
        digest = hashlib.sha256(_serialize(value).encode("utf-8")).hexdigest()
        return f"{namespace}_{digest[:16]}"

    @property
    def memory_entries(self) -> int:
        return len(self._memory)

    async def _call(self, operation: Callable[[aiosqlite.Connection], Awaitable[T]]) -> T:
        async def _run() -> T:
            if not self._schema_ready:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
            async with aiosqlite.connect(self.db_path, timeout=self.io_timeout) as db:
                if not self._schema_ready:
                    await db.execute(SCHEMA_SQL)
                    await db.execute(INDEX_SQL)
                    await db.commit()
                    self._schema_ready = True
                db.row_factory = aiosqlite.Row
                return await operation(db)

        try:
            return await asyncio.wait_for(_run(), timeout=self.io_timeout)
        except _PERSISTENT_ERRORS as exc:
            raise CacheIOError(f"cache database {self.db_path}: {exc}") from exc

    async def initialize(self) -> int:
        """Create the database if needed and sweep expired rows."""
        if not self.enabled:
            return 0

        async def _touch(db: aiosqlite.Connection) -> None:
            return None

        try:
            await self._call(_touch)
        except CacheIOError as exc:
            logger.warning("Cache initialization failed, caching disabled: %s", exc)
            self.enabled = False
            return 0
        return await self.sweep_expired()

    async def get(self, key: Any, namespace: str = DEFAULT_NAMESPACE) -> Any | None:
        if not self.enabled:
            return None

        cache_key = self.key(key, namespace)
        now = self._clock()

        entry = self._memory.get(cache_key)
        if entry is not None:
            if entry.is_valid(now):
                return entry.data
            del self._memory[cache_key]

        async def _read(db: aiosqlite.Connection) -> aiosqlite.Row | None:
            cursor = await db.execute(
                "SELECT data, timestamp, ttl, size, metadata FROM cache_entry WHERE key = ?",
                (cache_key,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            return row

        try:
            row = await self._call(_read)
        except CacheIOError as exc:
            logger.warning("Cache read failed for key %s: %s", cache_key, exc)
            return None
        if row is None:
            return None

        try:
            entry = CacheEntry(
                data=json.loads(row["data"]),
                created_at=int(row["timestamp"]),
                ttl=int(row["ttl"]),
                size=int(row["size"]),
                metadata=json.loads(row["metadata"]),
            )
        except ValueError as exc:
            logger.warning("Discarding corrupt cache entry %s: %s", cache_key, exc)
            await self._delete_key(cache_key)
            return None

        if not entry.is_valid(now):
            await self._delete_key(cache_key)
            return None

        if len(self._memory) < self.memory_limit:
            self._memory[cache_key] = entry
        return entry.data

    async def set(
        self,
        key: Any,
        value: Any,
        namespace: str = DEFAULT_NAMESPACE,
        *,
        ttl_ms: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> bool:
        if not self.enabled:
            return False

        cache_key = self.key(key, namespace)
        try:
            data = json.dumps(value)
            metadata_json = json.dumps(metadata or {})
        except (TypeError, ValueError) as exc:
            logger.warning("Cache write skipped for key %s: value not serializable (%s)", cache_key, exc)
            return False

        entry = CacheEntry(
            data=json.loads(data),
            created_at=self._clock(),
            ttl=ttl_ms or self.default_ttl_ms,
            size=len(data.encode("utf-8")),
            metadata=metadata or {},
        )

        async def _write(db: aiosqlite.Connection) -> None:
            await db.execute(
                """
                INSERT OR REPLACE INTO cache_entry (key, namespace, data, timestamp, ttl, size, metadata)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (cache_key, namespace, data, entry.created_at, entry.ttl, entry.size, metadata_json),
            )
            await db.commit()

        try:
            await self._call(_write)
        except CacheIOError as exc:
            logger.warning("Cache write failed for key %s: %s", cache_key, exc)
            return False

        if cache_key in self._memory or len(self._memory) < self.memory_limit:
            self._memory[cache_key] = entry
        return True

    async def _delete_key(self, cache_key: str) -> bool:
        self._memory.pop(cache_key, None)

        async def _delete(db: aiosqlite.Connection) -> None:
            await db.execute("DELETE FROM cache_entry WHERE key = ?", (cache_key,))
            await db.commit()

        try:
            await self._call(_delete)
        except CacheIOError as exc:
            logger.warning("Cache delete failed for key %s: %s", cache_key, exc)
            return False
        return True

    async def delete(self, key: Any, namespace: str = DEFAULT_NAMESPACE) -> bool:
        if not self.enabled:
            return False
        return await self._delete_key(self.key(key, namespace))

    async def clear(self, namespace: str | None = None) -> bool:
        if not self.enabled:
            return False

        if namespace is None:
            self._memory.clear()
        else:
            prefix = f"{namespace}_"
            for cache_key in [k for k in self._memory if k.startswith(prefix)]:
                del self._memory[cache_key]

        async def _clear(db: aiosqlite.Connection) -> None:
            if namespace is None:
                await db.execute("DELETE FROM cache_entry")
            else:
                await db.execute("DELETE FROM cache_entry WHERE namespace = ?", (namespace,))
            await db.commit()

        try:
            await self._call(_clear)
        except CacheIOError as exc:
            logger.warning("Cache clear failed: %s", exc)
            return False
        return True

    def clear_memory(self) -> None:
        self._memory.clear()

    async def sweep_expired(self) -> int:
        """Drop expired entries from both tiers and return how many rows were removed."""
        if not self.enabled:
            return 0

        now = self._clock()
        for cache_key in [k for k, entry in self._memory.items() if not entry.is_valid(now)]:
            del self._memory[cache_key]

        async def _sweep(db: aiosqlite.Connection) -> int:
            cursor = await db.execute(
                "DELETE FROM cache_entry WHERE ? - timestamp >= ttl", (now,)
            )
            removed = cursor.rowcount
            await cursor.close()
            await db.commit()
            return removed

        try:
            removed = await self._call(_sweep)
        except CacheIOError as exc:
            logger.warning("Cache cleanup failed: %s", exc)
            return 0
        if removed:
            logger.debug("Removed %d expired cache entries", removed)
        return removed

    async def wrap(
        self,
        key: Any,
        operation: Callable[[], Awaitable[T]],
        namespace: str = "operations",
        *,
        ttl_ms: int | None = None,
    ) -> T:
        cached = await self.get(key, namespace)
        if cached is not None:
            return cached
        result = await operation()
        await self.set(key, result, namespace, ttl_ms=ttl_ms)
        return result

    async def stats(self) -> CacheStats:
        if not self.enabled:
            return CacheStats(enabled=False)

        now = self._clock()

        async def _stats(db: aiosqlite.Connection) -> tuple[int, int, int]:
            cursor = await db.execute(
                """
                SELECT
                    COUNT(*),
                    COALESCE(SUM(CASE WHEN ? - timestamp < ttl THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(size), 0)
                FROM cache_entry
                """,
                (now,),
            )
            row = await cursor.fetchone()
            await cursor.close()
            return int(row[0]), int(row[1]), int(row[2])

        try:
            total, valid, size = await self._call(_stats)
        except CacheIOError as exc:
            logger.warning("Cache stats unavailable: %s", exc)
            return CacheStats(enabled=True, memory_entries=len(self._memory), location=str(self.db_path))

        return CacheStats(
            enabled=True,
            total_entries=total,
            valid_entries=valid,
            expired_entries=total - valid,
            total_size_bytes=size,
            memory_entries=len(self._memory),
            location=str(self.db_path),
        )

    async def cache_repository_info(self, repo_url: str, info: RepositoryInfo) -> bool:
        return await self.set(
            repo_url,
            info.to_dict(),
            REPOSITORY_NAMESPACE,
            ttl_ms=REPOSITORY_TTL_MS,
            metadata={"type": "repository-info"},
        )

    async def get_cached_repository_info(self, repo_url: str) -> RepositoryInfo | None:
        cached = await self.get(repo_url, REPOSITORY_NAMESPACE)
        if not isinstance(cached, dict) or "commitHash" not in cached:
            return None
        return RepositoryInfo.from_dict(cached)

    async def cache_file_digest(self, path_key: str, digest: str) -> bool:
        return await self.set(
            path_key,
            FileDigest(hash=digest, timestamp=self._clock()).to_dict(),
            FILE_DIGEST_NAMESPACE,
            ttl_ms=FILE_DIGEST_TTL_MS,
            metadata={"type": "file-hash"},
        )

    async def get_cached_file_digest(self, path_key: str) -> FileDigest | None:
        cached = await self.get(path_key, FILE_DIGEST_NAMESPACE)
        if not isinstance(cached, dict) or not cached.get("hash"):
            return None
        return FileDigest.from_dict(cached)
