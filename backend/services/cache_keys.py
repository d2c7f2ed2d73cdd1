"""Cache key construction.

Every cache key in the project is built here. Invalidation deletes by prefix
pattern (``sprint:42:issues:*``), so a key assembled anywhere else could
silently escape invalidation.
"""

from enum import Enum

SEPARATOR = ":"
METADATA_SUFFIX = "meta"


class CacheNamespace(str, Enum):
    """Top-level key namespaces."""

    SPRINT = "sprint"
    SPRINTS = "sprints"
    COMPREHENSIVE = "comprehensive"
    ANALYTICS = "analytics"


class SprintQualifier(str, Enum):
    STATE = "state"
    ISSUES = "issues"
    METRICS = "metrics"


class AnalyticsMetric(str, Enum):
    VELOCITY = "velocity"
    TEAM_PERFORMANCE = "team-performance"
    ISSUE_TYPES = "issue-types"
    COMMIT_TRENDS = "commit-trends"


def _segment(part) -> str:
    # A segment must never introduce an extra level into the key
    return str(part.value if isinstance(part, Enum) else part).replace(SEPARATOR, "_")


def build(namespace: CacheNamespace, *parts) -> str:
    """Join a namespace and its qualifiers into a key."""
    return SEPARATOR.join([namespace.value] + [_segment(p) for p in parts])


def pattern(namespace: CacheNamespace, *parts) -> str:
    """Glob pattern matching every key below ``namespace:parts``."""
    return f"{build(namespace, *parts)}{SEPARATOR}*"


# Sprint keys

def sprint_state(sprint_id) -> str:
    return build(CacheNamespace.SPRINT, sprint_id, SprintQualifier.STATE)


def sprint_issues(sprint_id, scope: str = "all") -> str:
    return build(CacheNamespace.SPRINT, sprint_id, SprintQualifier.ISSUES, scope)


def sprint_metrics(sprint_id, name: str = "summary") -> str:
    return build(CacheNamespace.SPRINT, sprint_id, SprintQualifier.METRICS, name)


def comprehensive(sprint_id, owner: str, repo: str) -> str:
    return build(CacheNamespace.COMPREHENSIVE, sprint_id, owner, repo)


def sprint_list(board_id, state: str = "closed") -> str:
    return build(CacheNamespace.SPRINTS, state, board_id)


# Derived metrics

def velocity(board_id, sprint_count: int) -> str:
    return build(CacheNamespace.ANALYTICS, AnalyticsMetric.VELOCITY, board_id, sprint_count)


def team_performance(board_id, sprint_count: int) -> str:
    return build(CacheNamespace.ANALYTICS, AnalyticsMetric.TEAM_PERFORMANCE, board_id, sprint_count)


def issue_types(board_id, sprint_count: int) -> str:
    return build(CacheNamespace.ANALYTICS, AnalyticsMetric.ISSUE_TYPES, board_id, sprint_count)


def commit_trends(owner: str, repo: str, period: str) -> str:
    return build(CacheNamespace.ANALYTICS, AnalyticsMetric.COMMIT_TRENDS, owner, repo, period)


def metadata(key: str) -> str:
    """Refresh metadata key for ``key``.

    Stored as a child of the value key so that any prefix invalidation
    covering the value also removes its metadata.
    """
    return f"{key}{SEPARATOR}{METADATA_SUFFIX}"


def sprint_patterns(sprint_id) -> list:
    """Patterns covering every cache entry derived from one sprint.

    Raises:
        ValueError: if the sprint ID is not numeric, since glob
            metacharacters in it would widen the patterns to other sprints
    """
    if not str(sprint_id).isdigit():
        raise ValueError(f"Invalid sprint id: {sprint_id!r}")
    return [
        pattern(CacheNamespace.SPRINT, sprint_id, SprintQualifier.ISSUES),
        pattern(CacheNamespace.SPRINT, sprint_id, SprintQualifier.METRICS),
        pattern(CacheNamespace.COMPREHENSIVE, sprint_id),
        sprint_state(sprint_id),
    ]

