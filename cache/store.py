"""
cache/store.py -- SQLite-backed read-through cache for per-principal lists.

Holds list-shaped payloads for user-scoped read endpoints (favorites, search
history) under keys of the form "{prefix}:{principal_id}". Entries carry an
absolute expiry. The cache is never a source of truth: any entry may be missing,
stale-by-TTL, or evicted, and every value can be rebuilt by its loader.

Writers invalidate before returning. A mutating service calls invalidate() on
the principal's key before handing its result back, so that principal's next
read is never served a value from before its own write. A load that was in
flight when the key was invalidated may hold a pre-write snapshot; its result
is returned to its own caller but never stored.

Prefix invalidation is a single DELETE on the backing table matching the key
prefix -- there is no side registry of known keys.

Thread safety: one sqlite3 connection shared across worker threads
(check_same_thread=False) and serialized with a lock.

Usage:
    cache = UserScopedCache()
    favorites = cache.get_or_load(cache_key("favorites", pid), load_favorites)
    cache.invalidate(cache_key("favorites", pid))
    cache.purge_expired()                # call periodically to trim old entries
"""

import json
import logging
import sqlite3
import threading
import time
from collections.abc import Callable
from typing import Any, Optional

logger = logging.getLogger("educheck.cache")

_DEFAULT_TTL = 30 * 60  # 30 minutes in seconds

_DDL = """
CREATE TABLE IF NOT EXISTS cache_entries (
    cache_key   TEXT PRIMARY KEY,
    data        TEXT NOT NULL,
    expires_at  REAL NOT NULL
);
"""


def cache_key(prefix: str, principal_id: str) -> str:
    return f"{prefix}:{principal_id}"


class _PendingLoad:
    """One get_or_load() call between its miss and its store."""

    __slots__ = ("stale",)

    def __init__(self) -> None:
        self.stale = False


class UserScopedCache:
    def __init__(
        self,
        db_path: str = ":memory:",
        ttl: int = _DEFAULT_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        # key -> loads in flight; only keys with a running loader are present
        self._pending: dict[str, list[_PendingLoad]] = {}
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        if db_path != ":memory:":
            self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute(_DDL)
        self._conn.commit()

    def get(self, key: str) -> Optional[Any]:
        """Return cached data for key if it exists and hasn't expired."""
        with self._lock:
            row = self._conn.execute(
                "SELECT data, expires_at FROM cache_entries WHERE cache_key = ?",
                (key,),
            ).fetchone()
            if row is None:
                logger.debug("Cache miss for key: %s", key)
                return None
            data, expires_at = row
            if self._clock() >= expires_at:
                self._delete(key)
                logger.debug("Cache entry expired for key: %s", key)
                return None
        logger.debug("Cache hit for key: %s", key)
        return json.loads(data)

    def set(self, key: str, data: Any, ttl: Optional[int] = None) -> None:
        """Store data for key, replacing any existing entry."""
        with self._lock:
            self._put(key, data, ttl)

    def get_or_load(self, key: str, loader: Callable[[], Any], ttl: Optional[int] = None) -> Any:
        """Return the cached value, or call loader, cache its result and return it.

        The loader runs outside the lock. If invalidate() hits the key while
        the loader is running, the loaded value may predate that write, so it
        is returned to this caller but not stored.
        """
        cached = self.get(key)
        if cached is not None:
            return cached
        pending = _PendingLoad()
        with self._lock:
            self._pending.setdefault(key, []).append(pending)
        try:
            value = loader()
        except Exception:
            with self._lock:
                self._release(key, pending)
            raise
        with self._lock:
            self._release(key, pending)
            if pending.stale:
                logger.debug("Discarding load invalidated mid-flight for key: %s", key)
            else:
                self._put(key, value, ttl)
        return value

    def invalidate(self, key: str) -> None:
        """Remove the entry and void any load of it still in flight."""
        with self._lock:
            self._delete(key)
            for pending in self._pending.get(key, ()):
                pending.stale = True
        logger.debug("Cache invalidated for key: %s", key)

    def invalidate_prefix(self, prefix: str) -> int:
        """Remove every entry whose key starts with prefix. Returns rows removed."""
        # substr() comparison is exact and case-sensitive, unlike LIKE.
        with self._lock:
            cursor = self._conn.execute(
                "DELETE FROM cache_entries WHERE substr(cache_key, 1, ?) = ?",
                (len(prefix), prefix),
            )
            self._conn.commit()
            for key, loads in self._pending.items():
                if key.startswith(prefix):
                    for pending in loads:
                        pending.stale = True
        return cursor.rowcount

    def purge_expired(self) -> int:
        """Delete all expired entries. Returns number of rows removed."""
        with self._lock:
            cursor = self._conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (self._clock(),))
            self._conn.commit()
        return cursor.rowcount

    def _release(self, key: str, pending: _PendingLoad) -> None:
        loads = self._pending[key]
        loads.remove(pending)
        if not loads:
            del self._pending[key]

    def _put(self, key: str, data: Any, ttl: Optional[int]) -> None:
        expires_at = self._clock() + (ttl if ttl is not None else self.ttl)
        self._conn.execute(
            "INSERT OR REPLACE INTO cache_entries (cache_key, data, expires_at) VALUES (?, ?, ?)",
            (key, json.dumps(data, default=str), expires_at),
        )
        self._conn.commit()

    def _delete(self, key: str) -> None:
        self._conn.execute("DELETE FROM cache_entries WHERE cache_key = ?", (key,))
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()
