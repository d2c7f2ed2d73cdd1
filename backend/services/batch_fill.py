"""Resolve many independent cache keys with minimal upstream round trips."""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from functools import partial
from typing import Any, Callable, Hashable, Iterable, Optional

from services import cache_keys
from services.cache_manager import CacheManager, entries_with_metadata
from services.errors import BatchFillError

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 6


class BatchFillEngine:
    """Cache-first batch loader.

    One multi-get for the whole batch, concurrent fetches for the misses on a
    bounded pool, then one multi-set. Concurrent batches that miss on the same
    key share a single upstream fetch.
    """

    def __init__(self, cache: CacheManager, max_workers: int = DEFAULT_MAX_WORKERS,
                 clock=time.time):
        self.cache = cache
        self.max_workers = max_workers
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_workers,
                                            thread_name_prefix="batch-fill")
        self._in_flight = {}
        self._lock = threading.Lock()

    def fill_batch(self, items: Iterable[Hashable], key_for: Callable[[Any], str],
                   fetch_one: Callable[[Any], Any], ttl: int,
                   refresher: Optional[Callable] = None) -> dict:
        """Return ``{item: value}`` for every item, in the order given.

        Args:
            items: Logical keys, e.g. sprint IDs
            key_for: Builds the cache key of an item
            fetch_one: Fetches one item's value from upstream
            ttl: TTL in seconds for the values written back
            refresher: Optional ``refresher(key, metadata, refresh_fn, ttl)``.
                When given, refresh metadata is read in the same multi-get and
                written with every fetched value, and each hit is handed to the
                refresher so it can be refreshed past its half-life.

        Raises:
            BatchFillError: if any fetch fails. Values fetched successfully
                are still written to the cache before raising.
        """
        items = list(items)
        keys = [key_for(item) for item in items]
        lookup = list(keys)
        if refresher is not None:
            lookup.extend(cache_keys.metadata(key) for key in keys)
        cached = self.cache.get_many(lookup)

        results = {}
        pending = {}
        for item, key in zip(items, keys):
            if key in cached:
                results[key] = cached[key]
                if refresher is not None:
                    refresher(key, cached.get(cache_keys.metadata(key)), partial(fetch_one, item), ttl)
            elif key not in pending:
                pending[key] = self._fetch(key, item, fetch_one)

        if pending:
            logger.debug(f"Batch fill: {len(results)} hits, {len(pending)} upstream fetches")
            wait(list(pending.values()))

            fetched = {}
            failure = None
            for key, future in pending.items():
                try:
                    fetched[key] = future.result()
                except Exception as e:
                    if failure is None:
                        failure = (key, e)

            self._write_back(fetched, ttl, refresher is not None)

            if failure is not None:
                key, cause = failure
                logger.warning(f"Batch fill aborted, fetch failed for {key}: {cause}")
                raise BatchFillError(key, cause) from cause

            results.update(fetched)

        return {item: results.get(key) for item, key in zip(items, keys)}

    def _fetch(self, key: str, item, fetch_one) -> Future:
        with self._lock:
            future = self._in_flight.get(key)
            if future is not None:
                logger.debug(f"Joining in-flight fetch for {key}")
                return future
            future = self._executor.submit(self._run_fetch, key, item, fetch_one)
            self._in_flight[key] = future
        return future

    def _run_fetch(self, key: str, item, fetch_one):
        # Leaves the in-flight map before the future resolves
        try:
            return fetch_one(item)
        finally:
            with self._lock:
                self._in_flight.pop(key, None)

    def _write_back(self, fetched: dict, ttl: int, with_metadata: bool):
        entries = []
        now = self._clock()
        for key, value in fetched.items():
            if value is None:
                continue
            if with_metadata:
                entries.extend(entries_with_metadata(key, value, ttl, now))
            else:
                entries.append((key, value, ttl))
        self.cache.set_many(entries)

    def in_flight_count(self) -> int:
        with self._lock:
            return len(self._in_flight)

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
