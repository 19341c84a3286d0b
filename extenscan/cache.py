"""SQLite-backed cache for resolver responses."""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from extenscan.errors import CacheCorruption
from extenscan.models import CacheEntry

logger = logging.getLogger(__name__)


def cache_key(kind: str, ecosystem: str, identity: str) -> str:
    """Build a resolver-qualified cache key, e.g. ``osv:npm:lodash@4.17.20``."""
    return f"{kind}:{ecosystem}:{identity}"


class ResolverCache:
    """SQLite cache with per-entry TTL.

    Every row stores its own ``fetched_at`` and ``ttl_seconds``, so entries
    written with different TTLs expire independently. Writes are single
    upserts (last write wins). Rows that fail to decode are dropped and
    reported as misses.

    The cache never fails a scan: a database file that is not SQLite is
    replaced, a database that cannot be opened at all is swapped for an
    in-memory one, and failed writes are logged and skipped.
    """

    def __init__(
        self,
        db_path: str = ":memory:",
        ttl_hours: float = 24,
        clock: Callable[[], float] = time.time,
    ):
        self.db_path = db_path
        self.ttl_seconds = ttl_hours * 3600
        self._clock = clock
        self._lock = threading.Lock()
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = self._open(db_path)

    def _open(self, db_path: str) -> sqlite3.Connection:
        try:
            return self._connect(db_path)
        except sqlite3.OperationalError as e:
            logger.warning("Cache database %s unavailable (%s), using an in-memory cache", db_path, e)
        except sqlite3.DatabaseError as e:
            logger.warning("Cache database %s is corrupt (%s), recreating it", db_path, e)
            try:
                Path(db_path).unlink(missing_ok=True)
                return self._connect(db_path)
            except (OSError, sqlite3.DatabaseError) as retry_error:
                logger.warning("Could not recreate %s (%s), using an in-memory cache", db_path, retry_error)
        self.db_path = ":memory:"
        return self._connect(":memory:")

    @staticmethod
    def _connect(db_path: str) -> sqlite3.Connection:
        conn = sqlite3.connect(db_path, check_same_thread=False)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("""
                CREATE TABLE IF NOT EXISTS resolver_cache (
                    key TEXT PRIMARY KEY,
                    payload_json TEXT NOT NULL,
                    fetched_at REAL NOT NULL,
                    ttl_seconds REAL NOT NULL
                )
            """)
            conn.commit()
        except sqlite3.DatabaseError:
            conn.close()
            raise
        return conn

    def get_entry(self, key: str) -> CacheEntry | None:
        """Get a live cache entry, or None if missing, stale or corrupt."""
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT payload_json, fetched_at, ttl_seconds FROM resolver_cache WHERE key=?",
                    (key,),
                ).fetchone()
            except sqlite3.DatabaseError as e:
                logger.warning("Cache read failed for %s: %s", key, e)
                return None

            if row is None:
                return None

            try:
                entry = self._decode(key, row)
            except CacheCorruption as e:
                logger.warning("Dropping corrupt cache entry: %s", e)
                self._delete(key)
                return None

        if not entry.is_valid(self._clock()):
            return None
        return entry

    def get(self, key: str) -> Any | None:
        """Get a cached payload, or None if missing, stale or corrupt."""
        entry = self.get_entry(key)
        if entry is None:
            logger.debug("Cache miss: %s", key)
            return None
        logger.debug("Cache hit: %s", key)
        return entry.payload

    def put(self, key: str, payload: Any, ttl_seconds: float | None = None) -> None:
        """Store a payload, overwriting any previous entry for the key."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        payload_json = json.dumps(payload)
        with self._lock:
            try:
                self._conn.execute(
                    """INSERT OR REPLACE INTO resolver_cache (key, payload_json, fetched_at, ttl_seconds)
                       VALUES (?, ?, ?, ?)""",
                    (key, payload_json, self._clock(), ttl),
                )
                self._conn.commit()
            except sqlite3.DatabaseError as e:
                logger.warning("Cache write failed for %s: %s", key, e)

    def clear(self, prefix: str | None = None) -> int:
        """Remove all entries, or only those whose key starts with ``prefix``.

        Returns count of deleted rows.
        """
        if prefix is None:
            return self._delete_where("1", ())
        return self._delete_where("substr(key, 1, ?) = ?", (len(prefix), prefix))

    def purge_expired(self) -> int:
        """Remove stale entries. Returns count of deleted rows."""
        return self._delete_where("? - fetched_at >= ttl_seconds", (self._clock(),))

    def _delete_where(self, condition: str, params: tuple) -> int:
        with self._lock:
            try:
                cursor = self._conn.execute(f"DELETE FROM resolver_cache WHERE {condition}", params)
                self._conn.commit()
            except sqlite3.DatabaseError as e:
                logger.warning("Cache cleanup failed: %s", e)
                return 0
            return cursor.rowcount

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()

    def _delete(self, key: str) -> None:
        try:
            self._conn.execute("DELETE FROM resolver_cache WHERE key=?", (key,))
            self._conn.commit()
        except sqlite3.DatabaseError as e:
            logger.warning("Could not delete cache entry %s: %s", key, e)

    @staticmethod
    def _decode(key: str, row: sqlite3.Row) -> CacheEntry:
        try:
            payload = json.loads(row["payload_json"])
            return CacheEntry(
                key=key,
                payload=payload,
                fetched_at=float(row["fetched_at"]),
                ttl_seconds=float(row["ttl_seconds"]),
            )
        except (TypeError, ValueError) as e:
            raise CacheCorruption(f"{key}: {e}") from e
