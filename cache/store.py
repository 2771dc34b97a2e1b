"""
cache/store.py -- SQLite-backed cache for identity-provider metadata.

Holds the OIDC discovery document and the provider's JWK set so that an
authentication attempt does not cost a network round trip. Entries are
namespaced (one namespace per kind of value) and expire after a configurable
TTL (default 60 minutes). Values must be JSON-serialisable.

The default database is a private in-memory SQLite connection: the cache
lives exactly as long as the process. Pass a file path to share it across
workers.

Usage:
    cache = MetadataCache()
    cache.put("OidcConfiguration", "OIDC_CONFIGURATION", {"issuer": "..."})
    data = cache.get("OidcConfiguration", "OIDC_CONFIGURATION")   # dict or None
    cache.remove("OidcConfiguration", "OIDC_CONFIGURATION")
    cache.purge_expired()                # call periodically to trim old entries
"""

import json
import sqlite3
import threading
import time
from pathlib import Path
from typing import Any, Optional, Union

_DEFAULT_DB = ":memory:"
_DEFAULT_TTL = 60 * 60  # 60 minutes in seconds
_DEFAULT_MAX_ENTRIES = 1000

_DDL = """
CREATE TABLE IF NOT EXISTS metadata_cache (
    namespace   TEXT NOT NULL,
    cache_key   TEXT NOT NULL,
    data        TEXT NOT NULL,
    cached_at   REAL NOT NULL,
    PRIMARY KEY (namespace, cache_key)
);
"""


class MetadataCache:
    def __init__(
        self,
        db_path: Union[Path, str] = _DEFAULT_DB,
        ttl: int = _DEFAULT_TTL,
        max_entries: int = _DEFAULT_MAX_ENTRIES,
    ) -> None:
        self.ttl = ttl
        self.max_entries = max_entries
        # One connection shared between request threads; the lock keeps each
        # read or write of a single entry atomic.
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        if db_path != _DEFAULT_DB:
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    @classmethod
    def from_settings(cls, settings, db_path: Union[Path, str] = _DEFAULT_DB) -> "MetadataCache":
        """Build a cache with CACHE_TTL_SECONDS and CACHE_MAX_ENTRIES applied."""
        return cls(db_path, ttl=settings.cache_ttl_seconds, max_entries=settings.cache_max_entries)

    def get(self, namespace: str, key: str) -> Optional[Any]:
        """Return cached data for (namespace, key) if it exists and hasn't expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT data, cached_at FROM metadata_cache WHERE namespace = ? AND cache_key = ?",
                (namespace, key),
            ).fetchone()
            if row is None:
                return None
            data, cached_at = row
            if time.time() - cached_at > self.ttl:
                self._delete(namespace, key)
                return None
        return json.loads(data)

    def put(self, namespace: str, key: str, value: Any) -> None:
        """Store value for (namespace, key), replacing any existing entry."""
        payload = json.dumps(value)
        with self._lock:
            self._conn.execute(
                "INSERT OR REPLACE INTO metadata_cache (namespace, cache_key, data, cached_at) VALUES (?, ?, ?, ?)",
                (namespace, key, payload, time.time()),
            )
            self._evict_overflow()
            self._conn.commit()

    def remove(self, namespace: str, key: str) -> None:
        """Invalidate a single entry. Missing entries are ignored."""
        with self._lock:
            self._delete(namespace, key)

    def purge_expired(self) -> int:
        """Delete all entries older than TTL. Returns number of rows removed."""
        cutoff = time.time() - self.ttl
        with self._lock:
            cursor = self._conn.execute("DELETE FROM metadata_cache WHERE cached_at < ?", (cutoff,))
            self._conn.commit()
        return cursor.rowcount

    def clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM metadata_cache")
            self._conn.commit()

    def _evict_overflow(self) -> None:
        # Oldest entries go first once the bound is exceeded.
        self._conn.execute(
            """
            DELETE FROM metadata_cache WHERE rowid IN (
                SELECT rowid FROM metadata_cache ORDER BY cached_at DESC LIMIT -1 OFFSET ?
            )
            """,
            (self.max_entries,),
        )

    def _delete(self, namespace: str, key: str) -> None:
        self._conn.execute(
            "DELETE FROM metadata_cache WHERE namespace = ? AND cache_key = ?",
            (namespace, key),
        )
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()
