"""Fail-open access to the cache store.

A store that cannot be reached must never fail a request: reads fall through
to upstream as misses and writes are dropped. Pattern deletes are the
exception, since invalidation callers need to know which deletes failed.
"""

import logging
import threading
from typing import Any, Iterable, Optional

from services import cache_keys
from services.errors import CacheStoreError
from services.store import CacheStore

logger = logging.getLogger(__name__)


def entries_with_metadata(key: str, value: Any, ttl: int, created_at: float) -> list:
    """Entries writing ``value`` and its refresh metadata in one batch."""
    return [
        (key, value, ttl),
        (cache_keys.metadata(key), {"createdAt": created_at, "ttl": ttl}, ttl),
    ]


class CacheManager:
    """Wraps a ``CacheStore`` with error policy and hit/miss statistics."""

    def __init__(self, store: CacheStore):
        self.store = store
        self._stats_lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "sets": 0, "deletes": 0, "errors": 0}

    def _count(self, **increments):
        with self._stats_lock:
            for name, amount in increments.items():
                self._stats[name] += amount

    def get(self, key: str) -> Optional[Any]:
        try:
            value = self.store.get(key)
        except CacheStoreError as e:
            logger.warning(f"Cache read failed for {key}, treating as miss: {e}")
            self._count(errors=1, misses=1)
            return None

        if value is None:
            self._count(misses=1)
            logger.debug(f"Cache miss: {key}")
        else:
            self._count(hits=1)
            logger.debug(f"Cache hit: {key}")
        return value

    def get_many(self, keys: Iterable[str]) -> dict:
        """Return a dict holding only the keys that were hits."""
        keys = list(keys)
        if not keys:
            return {}
        try:
            results = self.store.get_many(keys)
        except CacheStoreError as e:
            logger.warning(f"Cache batch read of {len(keys)} keys failed, treating as misses: {e}")
            self._count(errors=1, misses=len(keys))
            return {}

        self._count(hits=len(results), misses=len(keys) - len(results))
        return results

    def set(self, key: str, value: Any, ttl: int) -> None:
        try:
            self.store.set(key, value, ttl)
            self._count(sets=1)
        except CacheStoreError as e:
            logger.warning(f"Cache write failed for {key}, continuing uncached: {e}")
            self._count(errors=1)

    def set_many(self, entries: Iterable[tuple]) -> None:
        """Write ``(key, value, ttl)`` entries in one store call."""
        entries = list(entries)
        if not entries:
            return
        try:
            self.store.set_many(entries)
            self._count(sets=len(entries))
        except CacheStoreError as e:
            logger.warning(f"Cache batch write of {len(entries)} entries failed, continuing uncached: {e}")
            self._count(errors=1)

    def delete(self, key: str) -> bool:
        try:
            deleted = self.store.delete(key)
        except CacheStoreError as e:
            logger.warning(f"Cache delete failed for {key}: {e}")
            self._count(errors=1)
            return False
        if deleted:
            self._count(deletes=1)
        return deleted

    def delete_pattern(self, pattern: str) -> int:
        """Delete by glob pattern. Raises ``CacheStoreError`` on failure."""
        try:
            deleted = self.store.delete_pattern(pattern)
        except CacheStoreError:
            self._count(errors=1)
            raise
        self._count(deletes=deleted)
        return deleted

    def available(self) -> bool:
        try:
            return self.store.ping()
        except CacheStoreError as e:
            logger.warning(f"Cache store unreachable: {e}")
            return False

    def stats(self) -> dict:
        with self._stats_lock:
            stats = dict(self._stats)
        total = stats["hits"] + stats["misses"]
        stats["totalRequests"] = total
        stats["hitRate"] = round(stats["hits"] / total * 100, 1) if total > 0 else 0
        return stats

    def info(self) -> dict:
        """Statistics plus a description of the backing store."""
        info = {"stats": self.stats(), "store": type(self.store).__name__}
        try:
            info["keys"] = len(self.store.keys("*"))
        except CacheStoreError as e:
            logger.warning(f"Could not count cache keys: {e}")
            info["keys"] = None
        return info
