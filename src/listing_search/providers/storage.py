"""
Cache stores and the content-addressed query cache.

Stores persist (hash, payload, created_at) rows; QueryCache layers TTL and
hashing on top and never lets a store failure block a search.
"""

import asyncio
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import duckdb

from .base import CacheStore
from .models import CacheEntry, SearchQuery, compute_query_hash
from ..db.db import duckdb_connection
from ..utils.errors import CacheError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InMemoryCacheStore(CacheStore):
    """Dict-backed store (for testing/development)."""

    def __init__(self, now: Callable[[], datetime] = utcnow):
        self.now = now
        self.entries: Dict[str, CacheEntry] = {}

    async def find_by_hash(self, hash: str) -> Optional[CacheEntry]:
        return self.entries.get(hash)

    async def upsert_by_hash(self, hash: str, payload: str) -> None:
        self.entries[hash] = CacheEntry(hash=hash, payload=payload, created_at=self.now())

    async def delete_by_hash(self, hash: str) -> None:
        self.entries.pop(hash, None)


class DuckDBCacheStore(CacheStore):
    """
    DuckDB storage backend for cached search results.

    One row per query hash. DuckDB calls are synchronous, so each operation
    runs in a worker thread and the event loop stays free. The table is created
    on first use; an unreachable database surfaces as CacheError from the
    operation that touched it, never from the constructor.
    """

    DDL = """
    CREATE TABLE IF NOT EXISTS listing_cache (
        hash TEXT PRIMARY KEY,
        payload TEXT NOT NULL,
        created_at TIMESTAMP NOT NULL
    );
    """

    def __init__(self, db_path: Path | str, now: Callable[[], datetime] = utcnow):
        """
        Initialize DuckDB storage.

        Args:
            db_path: Path to DuckDB database file
            now: Timestamp source for new rows
        """
        self.db_path = Path(db_path)
        self.now = now
        self._lock = threading.Lock()
        self._schema_ready = False
        logger.info(f"Initialized DuckDB cache: {self.db_path}")

    def _run(self, fn: Callable[[duckdb.DuckDBPyConnection], Any]) -> Any:
        with self._lock:
            try:
                with duckdb_connection(self.db_path) as con:
                    if not self._schema_ready:
                        con.execute(self.DDL)
                        self._schema_ready = True
                    return fn(con)
            except (duckdb.Error, OSError) as e:
                raise CacheError(f"DuckDB cache operation failed: {e}", {"db_path": str(self.db_path)}) from e

    def _find(self, hash: str) -> Optional[CacheEntry]:
        row = self._run(lambda con: con.execute(
            "SELECT hash, payload, created_at FROM listing_cache WHERE hash = ?",
            [hash],
        ).fetchone())
        if row is None:
            return None
        created_at = row[2]
        if created_at.tzinfo is None:
            created_at = created_at.replace(tzinfo=timezone.utc)
        return CacheEntry(hash=row[0], payload=row[1], created_at=created_at)

    def _upsert(self, hash: str, payload: str) -> None:
        # Stored as naive UTC
        created_at = self.now().astimezone(timezone.utc).replace(tzinfo=None)
        self._run(lambda con: con.execute(
            """
            INSERT INTO listing_cache (hash, payload, created_at)
            VALUES (?, ?, ?)
            ON CONFLICT(hash) DO UPDATE SET
                payload = excluded.payload,
                created_at = excluded.created_at
            """,
            [hash, payload, created_at],
        ))

    def _delete(self, hash: str) -> None:
        self._run(lambda con: con.execute("DELETE FROM listing_cache WHERE hash = ?", [hash]))

    async def find_by_hash(self, hash: str) -> Optional[CacheEntry]:
        return await asyncio.to_thread(self._find, hash)

    async def upsert_by_hash(self, hash: str, payload: str) -> None:
        await asyncio.to_thread(self._upsert, hash, payload)

    async def delete_by_hash(self, hash: str) -> None:
        await asyncio.to_thread(self._delete, hash)

    def get_summary(self) -> Dict[str, Any]:
        """Get summary statistics."""
        row = self._run(lambda con: con.execute(
            "SELECT COUNT(*), MIN(created_at), MAX(created_at) FROM listing_cache"
        ).fetchone())
        return {
            "entries": row[0] if row else 0,
            "oldest": row[1] if row else None,
            "newest": row[2] if row else None,
        }


class QueryCache:
    """
    Content-addressed cache of search results with a time-to-live.

    Entries older than `ttl_hours` are deleted on read and reported as a
    miss; stale data is never served. Store failures degrade to a miss (on
    read) or a skipped write (on store).
    """

    def __init__(self, store: CacheStore, ttl_hours: float = 24, now: Callable[[], datetime] = utcnow):
        self.backend = store
        self.ttl_hours = ttl_hours
        self.now = now

    @staticmethod
    def key(query: SearchQuery) -> str:
        return compute_query_hash(query)

    async def lookup(self, query: SearchQuery) -> Optional[List[Dict[str, Any]]]:
        """
        Cached features for `query`, or None on a miss.

        Args:
            query: Validated search query

        Returns:
            Deserialized feature list when a fresh entry exists, else None
        """
        hash = self.key(query)
        try:
            entry = await self.backend.find_by_hash(hash)
        except CacheError as e:
            logger.warning(f"Cache read failed for {hash}, treating as miss: {e}")
            return None

        if entry is None:
            logger.info(f"Cache MISS for hash {hash}")
            return None

        age = entry.age_hours(self.now())
        if age >= self.ttl_hours:
            logger.info(f"Cache EXPIRED for hash {hash} (age {age:.2f}h >= TTL {self.ttl_hours}h), deleting")
            try:
                await self.backend.delete_by_hash(hash)
            except CacheError as e:
                logger.warning(f"Failed to delete expired cache entry {hash}: {e}")
            return None

        try:
            features = entry.features()
        except ValueError as e:
            logger.warning(f"Corrupt cache payload for {hash}, treating as miss: {e}")
            return None

        logger.info(f"Cache HIT for hash {hash} (age {age:.2f}h)")
        return features

    async def store(self, query: SearchQuery, features: List[Dict[str, Any]]) -> bool:
        """
        Persist `features` under the query hash.

        Empty results are never cached so a transient empty upstream response
        cannot stick for a whole TTL window.

        Returns:
            True if the entry was written
        """
        if not features:
            logger.warning("No features found, skipping cache persistence")
            return False

        hash = self.key(query)
        try:
            await self.backend.upsert_by_hash(hash, json.dumps(features))
        except CacheError as e:
            logger.warning(f"Cache write failed for {hash}: {e}")
            return False
        logger.info(f"Persisted {len(features)} features to cache under {hash}")
        return True
