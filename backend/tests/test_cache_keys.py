"""Tests for cache key construction."""

from fnmatch import fnmatchcase

import pytest

from services import cache_keys
from services.cache_keys import CacheNamespace


class TestKeyBuilders:
    """Test the key layout used across the cache."""

    def test_sprint_keys(self):
        """Should nest sprint data under sprint:{id}."""
        assert cache_keys.sprint_state(42) == "sprint:42:state"
        assert cache_keys.sprint_issues(42) == "sprint:42:issues:all"
        assert cache_keys.sprint_metrics(42) == "sprint:42:metrics:summary"
        assert cache_keys.comprehensive(42, "acme", "widgets") == "comprehensive:42:acme:widgets"

    def test_sprint_list_key(self):
        """Should key sprint lists by state and board."""
        assert cache_keys.sprint_list(7) == "sprints:closed:7"
        assert cache_keys.sprint_list(7, "active") == "sprints:active:7"
        assert cache_keys.build(CacheNamespace.SPRINTS, "closed", 1) == "sprints:closed:1"

    def test_analytics_keys(self):
        """Should include every input of a metric in its key."""
        assert cache_keys.velocity(7, 10) == "analytics:velocity:7:10"
        assert cache_keys.team_performance(7, 10) == "analytics:team-performance:7:10"
        assert cache_keys.issue_types(7, 6) == "analytics:issue-types:7:6"
        assert cache_keys.commit_trends("acme", "widgets", "6months") == \
            "analytics:commit-trends:acme:widgets:6months"

    def test_separator_in_part_is_escaped(self):
        """Should not let a ':' inside a part add a key level."""
        key = cache_keys.comprehensive(42, "acme:evil", "widgets")
        assert key == "comprehensive:42:acme_evil:widgets"
        assert key.count(":") == 3

    def test_metadata_key_is_child_of_value_key(self):
        """Should store refresh metadata below the value key."""
        key = cache_keys.sprint_issues(42)
        assert cache_keys.metadata(key) == "sprint:42:issues:all:meta"


class TestSprintPatterns:
    """Invalidation patterns must cover every key derived from a sprint."""

    def test_patterns(self):
        """Should return the four sprint invalidation patterns."""
        assert cache_keys.sprint_patterns(42) == [
            "sprint:42:issues:*",
            "sprint:42:metrics:*",
            "comprehensive:42:*",
            "sprint:42:state",
        ]

    def test_patterns_cover_all_sprint_keys(self):
        """Should match every value and metadata key of the sprint."""
        patterns = cache_keys.sprint_patterns(42)
        issues = cache_keys.sprint_issues(42)
        metrics = cache_keys.sprint_metrics(42)
        keys = [
            cache_keys.sprint_state(42),
            issues,
            cache_keys.metadata(issues),
            metrics,
            cache_keys.metadata(metrics),
            cache_keys.comprehensive(42, "acme", "widgets"),
        ]
        for key in keys:
            assert any(fnmatchcase(key, p) for p in patterns), key

    def test_patterns_do_not_cover_other_sprints(self):
        """Should not match keys of sprints sharing a prefix."""
        patterns = cache_keys.sprint_patterns(42)
        for key in [cache_keys.sprint_issues(420), cache_keys.sprint_state(4),
                    cache_keys.comprehensive(421, "a", "b")]:
            assert not any(fnmatchcase(key, p) for p in patterns), key

    @pytest.mark.parametrize("sprint_id", ["*", "4[0-9]", "1?", "", "abc"])
    def test_non_numeric_sprint_id_is_rejected(self, sprint_id):
        """Should refuse IDs that would turn into wildcards."""
        with pytest.raises(ValueError):
            cache_keys.sprint_patterns(sprint_id)

    def test_string_numeric_id_is_accepted(self):
        """Should accept numeric IDs given as strings, as webhooks send them."""
        assert cache_keys.sprint_patterns("42") == cache_keys.sprint_patterns(42)
