"""Sprint and repository analytics computed over cached upstream data."""

import logging
from concurrent.futures import ThreadPoolExecutor
from datetime import date, datetime, timezone
from typing import Optional

from services import cache_keys
from services.ttl_policy import CLOSED, SPRINT_LIST_TTL, resolve_ttl

logger = logging.getLogger(__name__)

COMPLETED_STATUSES = {"done", "closed", "resolved"}

ISSUE_TYPE_COLORS = {
    "Story": "#3b82f6",
    "Bug": "#ef4444",
    "Task": "#f59e0b",
    "Epic": "#8b5cf6",
    "Sub-task": "#06b6d4",
    "Improvement": "#10b981",
    "Unknown": "#6b7280",
}
DEFAULT_COLOR = "#6b7280"

PERIOD_MONTHS = {
    "1month": 1,
    "3months": 3,
    "6months": 6,
    "1year": 12,
}
DEFAULT_PERIOD = "6months"


def parse_datetime(value) -> Optional[datetime]:
    """Parse a Jira or GitHub timestamp into an aware UTC datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    else:
        # Jira: "2024-10-31T12:11:56.289-0400", GitHub: "2024-10-31T12:11:56Z"
        formats = [
            "%Y-%m-%dT%H:%M:%S.%f%z",
            "%Y-%m-%dT%H:%M:%S%z",
            "%Y-%m-%dT%H:%M:%S.%f",
            "%Y-%m-%dT%H:%M:%S",
            "%Y-%m-%d"
        ]
        parsed = None
        for fmt in formats:
            try:
                parsed = datetime.strptime(value, fmt)
                break
            except ValueError:
                continue
        if parsed is None:
            return None

    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def is_completed(issue: dict) -> bool:
    status = issue.get("status") or ""
    return isinstance(status, str) and status.lower() in COMPLETED_STATUSES


def _points(issue: dict) -> float:
    return issue.get("storyPoints") or 0


def summarize_sprint(sprint: dict, issues: list) -> dict:
    """Reduce one sprint's issues to commitment and completed points."""
    commitment = sum(_points(issue) for issue in issues)
    completed = sum(_points(issue) for issue in issues if is_completed(issue))
    return {
        "id": sprint.get("id"),
        "name": sprint.get("name"),
        "velocity": completed,
        "commitment": commitment,
        "completed": completed,
    }


def sort_sprints_newest_first(sprints: list) -> list:
    """Sort by start date descending. Sprints without a start date go last."""
    dated = []
    undated = []
    for sprint in sprints:
        start = parse_datetime(sprint.get("startDate"))
        if start is None:
            undated.append(sprint)
        else:
            dated.append((start, sprint))
    dated.sort(key=lambda pair: pair[0], reverse=True)
    return [sprint for _, sprint in dated] + undated


def classify_trend(velocities: list) -> str:
    """Classify a chronological (oldest first) velocity series.

    Compares the mean of the second half of the window against the first.
    Needs at least three sprints, otherwise the trend is "stable".
    """
    if len(velocities) < 3:
        return "stable"

    mid = len(velocities) // 2
    first_half = velocities[:mid]
    second_half = velocities[mid:]
    first_avg = sum(first_half) / len(first_half)
    second_avg = sum(second_half) / len(second_half)

    if second_avg > first_avg * 1.1:
        return "increasing"
    if second_avg < first_avg * 0.9:
        return "decreasing"
    return "stable"


def velocity_report(sprints: list, issues_by_sprint: dict) -> dict:
    """Velocity per sprint (newest first), average and trend."""
    sprint_data = [summarize_sprint(s, issues_by_sprint.get(s["id"]) or []) for s in sprints]
    velocities = [s["velocity"] for s in sprint_data]
    average = sum(velocities) / len(velocities) if velocities else 0

    return {
        "sprints": sprint_data,
        "average": average,
        "trend": classify_trend(list(reversed(velocities))),
    }


def team_performance_report(sprints: list, issues_by_sprint: dict) -> list:
    performance = []
    for sprint in sprints:
        summary = summarize_sprint(sprint, issues_by_sprint.get(sprint["id"]) or [])
        performance.append({
            "name": summary["name"],
            "planned": summary["commitment"],
            "completed": summary["completed"],
            "velocity": summary["velocity"],
        })
    return performance


def issue_type_distribution(issues: list) -> list:
    """Count issues by type for a pie chart, largest first."""
    counts = {}
    for issue in issues:
        issue_type = issue.get("issueType") or issue.get("type") or "Unknown"
        counts[issue_type] = counts.get(issue_type, 0) + 1

    distribution = [
        {"name": name, "value": value, "color": ISSUE_TYPE_COLORS.get(name, DEFAULT_COLOR)}
        for name, value in counts.items()
    ]
    distribution.sort(key=lambda d: d["value"], reverse=True)
    return distribution


def _month_key(value) -> Optional[str]:
    parsed = parse_datetime(value)
    if parsed is None:
        return None
    return f"{parsed.year:04d}-{parsed.month:02d}"


def month_keys(start, end) -> list:
    """Every ``YYYY-MM`` from start's month through end's month."""
    start = parse_datetime(start)
    end = parse_datetime(end)
    year, month = start.year, start.month
    keys = []
    while (year, month) <= (end.year, end.month):
        keys.append(f"{year:04d}-{month:02d}")
        month += 1
        if month > 12:
            year, month = year + 1, 1
    return keys


def _commit_date(commit: dict):
    committer = (commit.get("commit") or {}).get("committer") or {}
    return commit.get("date") or committer.get("date")


def _pull_request_date(pr: dict):
    for field in ("mergedAt", "merged_at", "closedAt", "closed_at", "createdAt", "created_at"):
        if pr.get(field):
            return pr[field]
    return None


def aggregate_commits_by_month(commits: list, pull_requests: list = None,
                               start=None, end=None) -> list:
    """Count commits and PRs per calendar month.

    When a range is given every month in it appears, with zero counts if
    there was no activity, and records dated outside the range are dropped.
    Records without a usable date are skipped.
    """
    monthly = {}
    start = parse_datetime(start)
    end = parse_datetime(end)
    bounded = start is not None and end is not None
    if bounded:
        for key in month_keys(start, end):
            monthly[key] = {"commits": 0, "prs": 0}

    def bucket(value):
        moment = parse_datetime(value)
        if moment is None:
            return None
        if bounded and not start <= moment <= end:
            return None
        return monthly.setdefault(_month_key(moment), {"commits": 0, "prs": 0})

    for commit in commits:
        counts = bucket(_commit_date(commit))
        if counts is not None:
            counts["commits"] += 1

    for pr in pull_requests or []:
        counts = bucket(_pull_request_date(pr))
        if counts is not None:
            counts["prs"] += 1

    return [{"date": key, **counts} for key, counts in sorted(monthly.items())]


def shift_months(moment: datetime, months: int) -> datetime:
    """Move a datetime by whole months, clamping the day to the month's length."""
    month_index = moment.year * 12 + moment.month - 1 + months
    year, month = divmod(month_index, 12)
    month += 1
    days_in_month = [31, 29 if _is_leap(year) else 28, 31, 30, 31, 30,
                     31, 31, 30, 31, 30, 31][month - 1]
    return moment.replace(year=year, month=month, day=min(moment.day, days_in_month))


def _is_leap(year: int) -> bool:
    return year % 4 == 0 and (year % 100 != 0 or year % 400 == 0)


def period_range(period: str, now: datetime) -> tuple:
    """Return (start, end) for a named look-back period ending at ``now``."""
    if period not in PERIOD_MONTHS:
        raise ValueError(f"Unknown period: {period}")
    return shift_months(now, -PERIOD_MONTHS[period]), now


def build_sprint_snapshot(sprint: dict, issues: list, commits: list,
                          pull_requests: list, owner: str, repo: str) -> dict:
    """Sprint summary combined with repository activity inside the sprint window."""
    start = parse_datetime(sprint.get("startDate"))
    end = parse_datetime(sprint.get("completeDate") or sprint.get("endDate"))

    def in_window(value) -> bool:
        moment = parse_datetime(value)
        if moment is None:
            return False
        if start and moment < start:
            return False
        if end and moment > end:
            return False
        return True

    summary = summarize_sprint(sprint, issues)
    return {
        "sprint": sprint,
        "summary": {
            **summary,
            "issueCount": len(issues),
            "completedIssues": sum(1 for issue in issues if is_completed(issue)),
        },
        "issueTypes": issue_type_distribution(issues),
        "github": {
            "owner": owner,
            "repo": repo,
            "commits": sum(1 for c in commits if in_window(_commit_date(c))),
            "pullRequestsOpened": sum(1 for pr in pull_requests
                                      if in_window(pr.get("createdAt") or pr.get("created_at"))),
            "pullRequestsMerged": sum(1 for pr in pull_requests
                                      if in_window(pr.get("mergedAt") or pr.get("merged_at"))),
        },
    }


class AnalyticsAggregator:
    """Computes dashboard metrics through the cache.

    Upstream data is only ever reached through the orchestrator's cache-aside
    reads and the batch fill engine.
    """

    VELOCITY_TTL = 300
    TEAM_PERFORMANCE_TTL = 300
    ISSUE_TYPES_TTL = 600
    COMMIT_TRENDS_TTL = 600

    def __init__(self, orchestrator, batch_engine, jira_client, github_client, now=None):
        self.orchestrator = orchestrator
        self.batch_engine = batch_engine
        self.jira_client = jira_client
        self.github_client = github_client
        self._now = now or (lambda: datetime.now(timezone.utc))

    def _closed_sprints(self, board_id) -> list:
        return self.orchestrator.get_or_compute(
            cache_keys.sprint_list(board_id, CLOSED),
            lambda: self.jira_client.list_sprints(board_id, CLOSED),
            SPRINT_LIST_TTL
        ) or []

    def recent_sprints(self, board_id, sprint_count: int) -> list:
        """The ``sprint_count`` most recently started closed sprints, newest first."""
        return sort_sprints_newest_first(self._closed_sprints(board_id))[:sprint_count]

    def _issues_by_sprint(self, sprints: list, ttl: int = None) -> dict:
        if not sprints:
            return {}
        return self.batch_engine.fill_batch(
            [sprint["id"] for sprint in sprints],
            cache_keys.sprint_issues,
            self.jira_client.list_sprint_issues,
            ttl or resolve_ttl(CLOSED),
            refresher=self.orchestrator.refresh_if_stale
        )

    def calculate_velocity(self, board_id, sprint_count: int) -> dict:
        sprints = self.recent_sprints(board_id, sprint_count)
        return velocity_report(sprints, self._issues_by_sprint(sprints))

    def calculate_team_performance(self, board_id, sprint_count: int) -> list:
        sprints = self.recent_sprints(board_id, sprint_count)
        logger.info(f"Team performance for board {board_id}: {len(sprints)} of {sprint_count} requested sprints")
        if not sprints:
            logger.warning(f"No closed sprints available for board {board_id}")
            return []
        return team_performance_report(sprints, self._issues_by_sprint(sprints))

    def calculate_issue_type_distribution(self, board_id, sprint_count: int) -> list:
        sprints = self.recent_sprints(board_id, sprint_count)
        issues_by_sprint = self._issues_by_sprint(sprints)
        all_issues = [issue for sprint in sprints for issue in issues_by_sprint.get(sprint["id"]) or []]
        return issue_type_distribution(all_issues)

    def calculate_commit_trends(self, owner: str, repo: str, period: str = DEFAULT_PERIOD) -> list:
        start, end = period_range(period, self._now())

        with ThreadPoolExecutor(max_workers=2) as executor:
            commits_future = executor.submit(
                self.github_client.list_commits, owner, repo, start.isoformat(), end.isoformat()
            )
            pulls_future = executor.submit(self.github_client.list_pull_requests, owner, repo, "all")
            commits = commits_future.result()
            pull_requests = pulls_future.result()

        return aggregate_commits_by_month(commits, pull_requests, start, end)

    # Cached entry points

    def get_velocity(self, board_id, sprint_count: int) -> dict:
        return self.orchestrator.get_or_compute(
            cache_keys.velocity(board_id, sprint_count),
            lambda: self.calculate_velocity(board_id, sprint_count),
            self.VELOCITY_TTL
        )

    def get_team_performance(self, board_id, sprint_count: int) -> list:
        return self.orchestrator.get_or_compute(
            cache_keys.team_performance(board_id, sprint_count),
            lambda: self.calculate_team_performance(board_id, sprint_count),
            self.TEAM_PERFORMANCE_TTL,
            should_cache=bool
        )

    def get_issue_type_distribution(self, board_id, sprint_count: int) -> list:
        return self.orchestrator.get_or_compute(
            cache_keys.issue_types(board_id, sprint_count),
            lambda: self.calculate_issue_type_distribution(board_id, sprint_count),
            self.ISSUE_TYPES_TTL
        )

    def get_commit_trends(self, owner: str, repo: str, period: str = DEFAULT_PERIOD) -> list:
        return self.orchestrator.get_or_compute(
            cache_keys.commit_trends(owner, repo, period),
            lambda: self.calculate_commit_trends(owner, repo, period),
            self.COMMIT_TRENDS_TTL
        )

    def get_sprint_issues(self, sprint_id) -> list:
        """Issues of any sprint, cached for as long as its state allows."""
        ttl = self.orchestrator.ttl_for_sprint(sprint_id)
        issues = self.batch_engine.fill_batch(
            [sprint_id],
            cache_keys.sprint_issues,
            self.jira_client.list_sprint_issues,
            ttl,
            refresher=self.orchestrator.refresh_if_stale
        )
        return issues[sprint_id] or []
