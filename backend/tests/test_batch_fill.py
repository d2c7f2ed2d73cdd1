"""Tests for the batch fill engine."""

import threading
import time
from unittest.mock import Mock

import pytest

from services import cache_keys
from services.batch_fill import BatchFillEngine
from services.cache_manager import entries_with_metadata
from services.errors import BatchFillError, UpstreamFetchError


def counting_fetch(values=None):
    """Fetch function recording the items it was called with."""
    calls = []
    lock = threading.Lock()

    def fetch(item):
        with lock:
            calls.append(item)
        return (values or {}).get(item, [{"key": f"ISSUE-{item}"}])

    fetch.calls = calls
    return fetch


class TestFillBatch:
    """Test cache-first batch loading."""

    def test_second_call_is_served_from_cache(self, batch_engine):
        """Should fetch each key once, then serve the repeat call from cache."""
        fetch = counting_fetch()

        first = batch_engine.fill_batch([1, 2, 3], cache_keys.sprint_issues, fetch, 600)
        assert sorted(fetch.calls) == [1, 2, 3]

        second = batch_engine.fill_batch([1, 2, 3], cache_keys.sprint_issues, fetch, 600)
        assert len(fetch.calls) == 3
        assert first == second

    def test_results_follow_input_order(self, batch_engine, cache):
        """Should return results in the order items were given."""
        cache.set(cache_keys.sprint_issues(2), ["cached"], 600)
        fetch = counting_fetch()

        result = batch_engine.fill_batch([3, 2, 1], cache_keys.sprint_issues, fetch, 600)

        assert list(result) == [3, 2, 1]
        assert result[2] == ["cached"]
        assert sorted(fetch.calls) == [1, 3]

    def test_single_multi_get_and_multi_set(self, clock):
        """Should make one multi-get and one multi-set per batch."""
        cache = Mock()
        cache.get_many.return_value = {}
        engine = BatchFillEngine(cache, clock=clock)
        try:
            engine.fill_batch([1, 2], cache_keys.sprint_issues, counting_fetch(), 600)
        finally:
            engine.shutdown()

        cache.get_many.assert_called_once_with(["sprint:1:issues:all", "sprint:2:issues:all"])
        cache.set_many.assert_called_once()
        written = cache.set_many.call_args[0][0]
        assert [(key, ttl) for key, _, ttl in written] == [
            ("sprint:1:issues:all", 600), ("sprint:2:issues:all", 600)
        ]

    def test_duplicate_items_fetch_once(self, batch_engine):
        """Should fetch a repeated item only once."""
        fetch = counting_fetch()
        result = batch_engine.fill_batch([5, 5], cache_keys.sprint_issues, fetch, 600)
        assert fetch.calls == [5]
        assert result == {5: [{"key": "ISSUE-5"}]}

    def test_none_values_are_not_cached(self, batch_engine, cache):
        """Should not cache a fetch that returned None."""
        fetch = counting_fetch(values={1: None})
        result = batch_engine.fill_batch([1], cache_keys.sprint_issues, fetch, 600)

        assert result == {1: None}
        assert cache.get(cache_keys.sprint_issues(1)) is None

    def test_empty_batch(self, batch_engine):
        """Should do nothing for an empty batch."""
        fetch = counting_fetch()
        assert batch_engine.fill_batch([], cache_keys.sprint_issues, fetch, 600) == {}
        assert fetch.calls == []


class TestFillBatchFailures:
    """A failed fetch aborts the batch."""

    def test_failure_raises_after_writing_successes(self, batch_engine, cache):
        """Should cache the successful fetches before raising BatchFillError."""
        def fetch(item):
            if item == 2:
                raise UpstreamFetchError("Jira down", 503)
            return [item]

        with pytest.raises(BatchFillError) as exc_info:
            batch_engine.fill_batch([1, 2, 3], cache_keys.sprint_issues, fetch, 600)

        assert exc_info.value.key == "sprint:2:issues:all"
        assert isinstance(exc_info.value.cause, UpstreamFetchError)
        assert cache.get(cache_keys.sprint_issues(1)) == [1]
        assert cache.get(cache_keys.sprint_issues(3)) == [3]
        assert cache.get(cache_keys.sprint_issues(2)) is None

    def test_batch_error_is_an_upstream_error(self, batch_engine):
        """Should surface any fetch failure as an upstream error."""
        def fetch(item):
            raise ValueError("bad payload")

        with pytest.raises(UpstreamFetchError):
            batch_engine.fill_batch([1], cache_keys.sprint_issues, fetch, 600)
        assert batch_engine.in_flight_count() == 0


class TestConcurrency:
    """Test bounded fan-out and single-flight fetching."""

    def test_fan_out_is_bounded(self, cache, clock):
        """Should never run more fetches at once than max_workers."""
        engine = BatchFillEngine(cache, max_workers=2, clock=clock)
        lock = threading.Lock()
        state = {"running": 0, "peak": 0}

        def fetch(item):
            with lock:
                state["running"] += 1
                state["peak"] = max(state["peak"], state["running"])
            time.sleep(0.02)
            with lock:
                state["running"] -= 1
            return [item]

        try:
            engine.fill_batch(range(8), cache_keys.sprint_issues, fetch, 600)
        finally:
            engine.shutdown()

        assert state["peak"] <= 2

    def test_concurrent_misses_share_one_fetch(self, batch_engine):
        """Should let concurrent batches share one in-flight fetch."""
        started = threading.Event()
        release = threading.Event()
        calls = []

        def fetch(item):
            calls.append(item)
            started.set()
            release.wait(timeout=5)
            return ["shared"]

        results = []

        def run():
            results.append(batch_engine.fill_batch([7], cache_keys.sprint_issues, fetch, 600))

        first = threading.Thread(target=run)
        first.start()
        assert started.wait(timeout=5)

        second = threading.Thread(target=run)
        second.start()
        time.sleep(0.2)
        release.set()
        first.join(timeout=5)
        second.join(timeout=5)

        assert calls == [7]
        assert results == [{7: ["shared"]}, {7: ["shared"]}]
        assert batch_engine.in_flight_count() == 0


class TestRefresher:
    """Test the refresh hook used for half-life refresh."""

    def test_hits_are_offered_to_refresher(self, batch_engine, cache, clock):
        """Should hand each hit and its metadata to the refresher."""
        key = cache_keys.sprint_issues(1)
        cache.set_many(entries_with_metadata(key, ["old"], 600, clock() - 400))
        refresher = Mock()
        fetch = counting_fetch()

        result = batch_engine.fill_batch([1], cache_keys.sprint_issues, fetch, 600, refresher=refresher)

        assert result == {1: ["old"]}
        refresher.assert_called_once()
        called_key, metadata, refresh_fn, ttl = refresher.call_args[0]
        assert called_key == key
        assert metadata == {"createdAt": clock() - 400, "ttl": 600}
        assert ttl == 600

        refresh_fn()
        assert fetch.calls == [1]

    def test_fetched_values_get_metadata(self, batch_engine, cache, clock):
        """Should write refresh metadata with fetched values."""
        batch_engine.fill_batch([1], cache_keys.sprint_issues, counting_fetch(), 600, refresher=Mock())

        meta = cache.get(cache_keys.metadata(cache_keys.sprint_issues(1)))
        assert meta == {"createdAt": clock(), "ttl": 600}
