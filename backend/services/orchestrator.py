"""Cache warming, half-life refresh and cascading invalidation.

The orchestrator owns no data. It is the only component that deletes cache
entries or populates them outside the normal read paths.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Optional

from services import cache_keys
from services.analytics import build_sprint_snapshot, summarize_sprint
from services.cache_manager import CacheManager, entries_with_metadata
from services.errors import CacheStoreError
from services.ttl_policy import CLOSED, SPRINT_STATE_TTL, STATE_TTLS, TTLPolicyResolver

logger = logging.getLogger(__name__)


def sprint_ids_from_issue_event(issue: dict, changelog: Optional[dict]) -> list:
    """Sprints touched by an issue change, in first-seen order.

    Covers the issue's current sprint(s) and, for sprint moves recorded in
    the changelog, both the source and the destination sprints. Jira lists
    multiple sprints in changelog values as comma-separated IDs. Only
    numeric IDs are returned.
    """
    sprint_ids = []

    def add(value):
        if value is None or value == "":
            return
        if isinstance(value, dict):
            add(value.get("id"))
            return
        if isinstance(value, (list, tuple)):
            for item in value:
                add(item)
            return
        for part in str(value).split(","):
            part = part.strip()
            if not part.isdigit():
                if part:
                    logger.warning(f"Ignoring non-numeric sprint id in issue event: {part!r}")
                continue
            if part not in sprint_ids:
                sprint_ids.append(part)

    issue = issue or {}
    add((issue.get("fields") or {}).get("sprint"))
    add(issue.get("sprint"))

    for item in (changelog or {}).get("items") or []:
        if str(item.get("field", "")).lower() == "sprint":
            add(item.get("from"))
            add(item.get("to"))

    return sprint_ids


class CacheOrchestrator:
    """Coordinates warming, background refresh and invalidation."""

    def __init__(self, cache: CacheManager, jira_client, github_client,
                 ttl_resolver: TTLPolicyResolver = None, max_refresh_workers: int = 2,
                 clock=time.time):
        self.cache = cache
        self.jira_client = jira_client
        self.github_client = github_client
        self.ttl_resolver = ttl_resolver or TTLPolicyResolver(cache, jira_client)
        self._clock = clock
        self._executor = ThreadPoolExecutor(max_workers=max_refresh_workers,
                                            thread_name_prefix="cache-refresh")
        self._refreshing = set()
        self._lock = threading.Lock()

    def ttl_for_sprint(self, sprint_id) -> int:
        return self.ttl_resolver.ttl_for_sprint(sprint_id)

    # Reads

    def get_or_compute(self, key: str, compute: Callable[[], Any], ttl: int,
                       should_cache: Callable[[Any], bool] = None) -> Any:
        """Cache-aside read that keeps popular entries fresh.

        A hit past half its TTL schedules ``compute`` in the background and is
        served as is. A miss computes synchronously and writes the value with
        its refresh metadata.
        """
        meta_key = cache_keys.metadata(key)
        cached = self.cache.get_many([key, meta_key])
        if key in cached:
            self.refresh_if_stale(key, cached.get(meta_key), compute, ttl, should_cache)
            return cached[key]

        value = compute()
        self._write(key, value, ttl, should_cache)
        return value

    def _write(self, key: str, value: Any, ttl: int, should_cache=None) -> bool:
        if value is None or (should_cache is not None and not should_cache(value)):
            logger.debug(f"Not caching empty result for {key}")
            return False
        self.cache.set_many(entries_with_metadata(key, value, ttl, self._clock()))
        return True

    # Background refresh

    def schedule_background_refresh(self, key: str, refresh_fn: Callable[[], Any],
                                    ttl: int) -> Optional[Future]:
        """Refresh ``key`` in the background if it is past its half-life.

        Only entries with refresh metadata are eligible. Returns the future of
        the scheduled refresh, or None when nothing was scheduled.
        """
        metadata = self.cache.get(cache_keys.metadata(key))
        return self.refresh_if_stale(key, metadata, refresh_fn, ttl)

    def refresh_if_stale(self, key: str, metadata, refresh_fn: Callable[[], Any],
                         ttl: int, should_cache=None) -> Optional[Future]:
        if not isinstance(metadata, dict) or "createdAt" not in metadata:
            return None

        age = self._clock() - metadata["createdAt"]
        if age <= ttl / 2:
            return None

        with self._lock:
            if key in self._refreshing:
                return None
            self._refreshing.add(key)

        logger.debug(f"Scheduling background refresh for {key} (age {age:.0f}s of {ttl}s)")
        try:
            return self._executor.submit(self._run_refresh, key, refresh_fn, ttl, should_cache)
        except RuntimeError:
            # Executor already shut down
            with self._lock:
                self._refreshing.discard(key)
            return None

    def _run_refresh(self, key: str, refresh_fn, ttl: int, should_cache) -> bool:
        try:
            logger.info(f"Background refresh started for {key}")
            value = refresh_fn()
            written = self._write(key, value, ttl, should_cache)
            logger.info(f"Background refresh completed for {key}")
            return written
        except Exception as e:
            logger.warning(f"Background refresh failed for {key}: {e}")
            return False
        finally:
            with self._lock:
                self._refreshing.discard(key)

    # Warming

    def warm_sprint_cache(self, sprint_id, owner: str, repo: str) -> dict:
        """Populate every cache entry derived from a closed sprint.

        Entries are written with the closed-sprint TTL without consulting the
        policy resolver. Failures are logged and re-raised.

        Returns:
            Dict of the keys written
        """
        logger.info(f"Warming sprint cache for sprint {sprint_id} ({owner}/{repo})")

        try:
            sprint = self.jira_client.get_sprint(sprint_id)
            issues = self.jira_client.list_sprint_issues(sprint_id)
            commits = self.github_client.list_commits(
                owner, repo,
                since=sprint.get("startDate"),
                until=sprint.get("completeDate") or sprint.get("endDate")
            )
            pull_requests = self.github_client.list_pull_requests(owner, repo, "all")
        except Exception:
            logger.exception(f"Failed to warm sprint cache for sprint {sprint_id}")
            raise

        ttl = STATE_TTLS[CLOSED]
        now = self._clock()
        keys = {
            "state": cache_keys.sprint_state(sprint_id),
            "issues": cache_keys.sprint_issues(sprint_id),
            "metrics": cache_keys.sprint_metrics(sprint_id),
            "comprehensive": cache_keys.comprehensive(sprint_id, owner, repo),
        }

        entries = []
        if sprint.get("state"):
            entries.append((keys["state"], sprint["state"], SPRINT_STATE_TTL))
        entries.extend(entries_with_metadata(keys["issues"], issues, ttl, now))
        entries.extend(entries_with_metadata(keys["metrics"], summarize_sprint(sprint, issues), ttl, now))
        entries.extend(entries_with_metadata(
            keys["comprehensive"],
            build_sprint_snapshot(sprint, issues, commits, pull_requests, owner, repo),
            ttl, now
        ))
        self.cache.set_many(entries)

        logger.info(f"Sprint cache warmed for sprint {sprint_id}: {len(issues)} issues")
        return keys

    def warm_sprint_cache_in_background(self, sprint_id, owner: str, repo: str) -> Future:
        """Warm without blocking the caller. Failures are only logged."""

        def warm():
            try:
                return self.warm_sprint_cache(sprint_id, owner, repo)
            except Exception as e:
                logger.warning(f"Background warming failed for sprint {sprint_id}: {e}")
                return None

        return self._executor.submit(warm)

    # Invalidation

    def invalidate_sprint_cache(self, sprint_id) -> dict:
        """Delete every cache entry derived from a sprint.

        Each pattern is deleted independently; a failed pattern does not stop
        the others.

        Returns:
            Dict mapping pattern to deleted count, or None if the delete failed
        """
        results = {}
        for pattern in cache_keys.sprint_patterns(sprint_id):
            try:
                results[pattern] = self.cache.delete_pattern(pattern)
            except CacheStoreError as e:
                logger.warning(f"Failed to invalidate {pattern}: {e}")
                results[pattern] = None

        deleted = sum(count for count in results.values() if count)
        logger.info(f"Sprint cache invalidated for sprint {sprint_id}: {deleted} entries removed")
        return results

    def invalidate_issue_cache(self, issue: dict, changelog: Optional[dict] = None) -> list:
        """Invalidate every sprint affected by an issue change.

        Returns:
            List of invalidated sprint IDs
        """
        sprint_ids = sprint_ids_from_issue_event(issue, changelog)
        for sprint_id in sprint_ids:
            self.invalidate_sprint_cache(sprint_id)

        logger.info(f"Issue cache invalidated for {(issue or {}).get('key')}: sprints {sprint_ids}")
        return sprint_ids

    def invalidate_board_sprints(self, board_id, state: str = CLOSED) -> bool:
        """Drop a board's cached sprint list so newly closed sprints show up."""
        key = cache_keys.sprint_list(board_id, state)
        deleted = self.cache.delete(key)
        self.cache.delete(cache_keys.metadata(key))
        logger.info(f"Sprint list invalidated for board {board_id}")
        return deleted

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)
