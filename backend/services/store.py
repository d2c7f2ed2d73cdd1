"""Cache stores: in-process, Redis, and the two layered together.

Stores raise ``CacheStoreError`` when they cannot serve a call. Deciding what
a failure means for the caller is left to ``CacheManager``.
"""

import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from fnmatch import fnmatchcase
from typing import Any, Iterable, Optional

import redis
from cachetools import TLRUCache
from redis.exceptions import RedisError

from services.errors import CacheStoreError

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    """A value held by the in-process store."""

    value: Any
    created_at: float
    expires_at: float


class CacheStore(ABC):
    """Key-value store with per-entry TTL (seconds) and glob deletes."""

    @abstractmethod
    def get(self, key: str) -> Optional[Any]:
        """Return the value for ``key`` or None on a miss."""

    @abstractmethod
    def set(self, key: str, value: Any, ttl: int) -> None:
        """Store ``value`` under ``key`` for ``ttl`` seconds."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete one key. Returns True if it existed."""

    @abstractmethod
    def keys(self, pattern: str = "*") -> list:
        """List live keys matching a glob pattern."""

    def get_many(self, keys: Iterable[str]) -> dict:
        """Return a dict of the keys that were hits."""
        results = {}
        for key in keys:
            value = self.get(key)
            if value is not None:
                results[key] = value
        return results

    def set_many(self, entries: Iterable[tuple]) -> None:
        for key, value, ttl in entries:
            self.set(key, value, ttl)

    def delete_pattern(self, pattern: str) -> int:
        """Delete every key matching a glob pattern. Returns the count."""
        return sum(1 for key in self.keys(pattern) if self.delete(key))

    def ping(self) -> bool:
        """Check the store is reachable. Raises ``CacheStoreError`` if not."""
        return True


class MemoryStore(CacheStore):
    """Bounded in-process store with per-entry expiry."""

    def __init__(self, maxsize: int = 5000, timer=time.monotonic):
        self._timer = timer
        self._cache = TLRUCache(maxsize=maxsize, ttu=self._time_to_use, timer=timer)
        self._lock = threading.Lock()

    @staticmethod
    def _time_to_use(key, entry: CacheEntry, now) -> float:
        return entry.expires_at

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._cache.get(key)
        return None if entry is None else entry.value

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        with self._lock:
            return self._cache.get(key)

    def set(self, key: str, value: Any, ttl: int) -> None:
        now = self._timer()
        with self._lock:
            self._cache[key] = CacheEntry(value, created_at=now, expires_at=now + ttl)

    def set_many(self, entries: Iterable[tuple]) -> None:
        now = self._timer()
        with self._lock:
            for key, value, ttl in entries:
                self._cache[key] = CacheEntry(value, created_at=now, expires_at=now + ttl)

    def get_many(self, keys: Iterable[str]) -> dict:
        results = {}
        with self._lock:
            for key in keys:
                entry = self._cache.get(key)
                if entry is not None:
                    results[key] = entry.value
        return results

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def keys(self, pattern: str = "*") -> list:
        with self._lock:
            self._cache.expire()
            return [key for key in list(self._cache) if fnmatchcase(key, pattern)]

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            self._cache.expire()
            matched = [key for key in list(self._cache) if fnmatchcase(key, pattern)]
            for key in matched:
                self._cache.pop(key, None)
        return len(matched)

    def __len__(self) -> int:
        with self._lock:
            self._cache.expire()
            return len(self._cache)


@contextmanager
def _redis_errors(operation: str):
    try:
        yield
    except RedisError as e:
        raise CacheStoreError(operation, e) from e


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str)


def _loads(key: str, raw: Optional[str]) -> Optional[Any]:
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        logger.warning(f"Discarding undecodable cache value for {key}")
        return None


class RedisStore(CacheStore):
    """Shared store backed by Redis. Values are stored as JSON."""

    DELETE_BATCH_SIZE = 500

    def __init__(self, client: redis.Redis):
        self._client = client

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 2.0) -> "RedisStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        return cls(client)

    def get(self, key: str) -> Optional[Any]:
        with _redis_errors(f"get:{key}"):
            raw = self._client.get(key)
        return _loads(key, raw)

    def get_many(self, keys: Iterable[str]) -> dict:
        keys = list(keys)
        if not keys:
            return {}
        with _redis_errors("get_many"):
            raw_values = self._client.mget(keys)
        results = {}
        for key, raw in zip(keys, raw_values):
            value = _loads(key, raw)
            if value is not None:
                results[key] = value
        return results

    def set(self, key: str, value: Any, ttl: int) -> None:
        with _redis_errors(f"set:{key}"):
            self._client.set(key, _dumps(value), ex=max(1, int(ttl)))

    def set_many(self, entries: Iterable[tuple]) -> None:
        entries = list(entries)
        if not entries:
            return
        with _redis_errors("set_many"):
            pipe = self._client.pipeline(transaction=False)
            for key, value, ttl in entries:
                pipe.set(key, _dumps(value), ex=max(1, int(ttl)))
            pipe.execute()

    def delete(self, key: str) -> bool:
        with _redis_errors(f"delete:{key}"):
            return self._client.delete(key) > 0

    def keys(self, pattern: str = "*") -> list:
        with _redis_errors(f"scan:{pattern}"):
            return list(self._client.scan_iter(match=pattern, count=100))

    def delete_pattern(self, pattern: str) -> int:
        keys = self.keys(pattern)
        deleted = 0
        with _redis_errors(f"delete_pattern:{pattern}"):
            for i in range(0, len(keys), self.DELETE_BATCH_SIZE):
                pipe = self._client.pipeline(transaction=False)
                for key in keys[i:i + self.DELETE_BATCH_SIZE]:
                    pipe.delete(key)
                deleted += sum(pipe.execute())
        return deleted

    def ping(self) -> bool:
        with _redis_errors("ping"):
            return bool(self._client.ping())


class LayeredStore(CacheStore):
    """A fast local tier checked before a shared tier.

    Local-tier entries, whether written here or copied from a shared-tier
    hit, never outlive ``promote_ttl`` seconds. A value deleted from the
    shared tier by another process lingers locally for at most that long.
    """

    def __init__(self, local: CacheStore, shared: CacheStore, promote_ttl: int = 300):
        self.local = local
        self.shared = shared
        self.promote_ttl = promote_ttl

    def get(self, key: str) -> Optional[Any]:
        value = self.local.get(key)
        if value is not None:
            return value
        try:
            value = self.shared.get(key)
        except CacheStoreError as e:
            logger.warning(f"Shared cache unavailable, serving local tier only: {e}")
            return None
        if value is not None:
            self.local.set(key, value, self.promote_ttl)
        return value

    def get_many(self, keys: Iterable[str]) -> dict:
        keys = list(keys)
        results = self.local.get_many(keys)
        missing = [key for key in keys if key not in results]
        if not missing:
            return results
        try:
            shared_hits = self.shared.get_many(missing)
        except CacheStoreError as e:
            logger.warning(f"Shared cache unavailable, serving local tier only: {e}")
            return results
        if shared_hits:
            self.local.set_many(
                (key, value, self.promote_ttl) for key, value in shared_hits.items()
            )
            results.update(shared_hits)
        return results

    def _local_ttl(self, ttl: int) -> int:
        return min(ttl, self.promote_ttl)

    def set(self, key: str, value: Any, ttl: int) -> None:
        self.local.set(key, value, self._local_ttl(ttl))
        self.shared.set(key, value, ttl)

    def set_many(self, entries: Iterable[tuple]) -> None:
        entries = list(entries)
        self.local.set_many(
            (key, value, self._local_ttl(ttl)) for key, value, ttl in entries
        )
        self.shared.set_many(entries)

    def delete(self, key: str) -> bool:
        local_deleted = self.local.delete(key)
        return self.shared.delete(key) or local_deleted

    def keys(self, pattern: str = "*") -> list:
        keys = set(self.local.keys(pattern))
        keys.update(self.shared.keys(pattern))
        return sorted(keys)

    def delete_pattern(self, pattern: str) -> int:
        local_count = self.local.delete_pattern(pattern)
        shared_count = self.shared.delete_pattern(pattern)
        return max(local_count, shared_count)

    def ping(self) -> bool:
        return self.shared.ping()
