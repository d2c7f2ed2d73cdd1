"""Shared fixtures for sprint cache tests."""

import os
import sys
from unittest.mock import Mock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from services.batch_fill import BatchFillEngine  # noqa: E402
from services.cache_manager import CacheManager  # noqa: E402
from services.orchestrator import CacheOrchestrator  # noqa: E402
from services.store import MemoryStore  # noqa: E402


class FakeClock:
    """Manually advanced clock, usable as a cachetools timer and as time.time."""

    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def memory_store(clock):
    """In-process store driven by the fake clock."""
    return MemoryStore(maxsize=100, timer=clock)


@pytest.fixture
def cache(memory_store):
    return CacheManager(memory_store)


@pytest.fixture
def sample_sprints():
    """Normalized closed sprints, newest first."""
    return [
        {
            "id": 103,
            "name": "Sprint 4",
            "state": "closed",
            "startDate": "2024-02-12T00:00:00.000Z",
            "endDate": "2024-02-25T00:00:00.000Z",
            "completeDate": "2024-02-25T12:00:00.000Z",
            "boardId": 1
        },
        {
            "id": 102,
            "name": "Sprint 3",
            "state": "closed",
            "startDate": "2024-01-29T00:00:00.000Z",
            "endDate": "2024-02-11T00:00:00.000Z",
            "completeDate": "2024-02-11T12:00:00.000Z",
            "boardId": 1
        },
        {
            "id": 101,
            "name": "Sprint 2",
            "state": "closed",
            "startDate": "2024-01-15T00:00:00.000Z",
            "endDate": "2024-01-28T00:00:00.000Z",
            "completeDate": "2024-01-28T12:00:00.000Z",
            "boardId": 1
        },
        {
            "id": 100,
            "name": "Sprint 1",
            "state": "closed",
            "startDate": "2024-01-01T00:00:00.000Z",
            "endDate": "2024-01-14T00:00:00.000Z",
            "completeDate": "2024-01-14T12:00:00.000Z",
            "boardId": 1
        }
    ]


@pytest.fixture
def sample_sprint(sample_sprints):
    return sample_sprints[-1]


@pytest.fixture
def sample_issues():
    """Normalized issues of one sprint: 7 of 10 points completed."""
    return [
        {"key": "PROJ-123", "summary": "Implement feature X", "status": "Done",
         "storyPoints": 5.0, "issueType": "Story", "assignee": "Ada", "sprint": 100},
        {"key": "PROJ-124", "summary": "Fix bug Y", "status": "In Progress",
         "storyPoints": 3.0, "issueType": "Bug", "assignee": None, "sprint": 100},
        {"key": "PROJ-126", "summary": "Fix login issue", "status": "Done",
         "storyPoints": 2.0, "issueType": "Bug", "assignee": "Grace", "sprint": 100},
        {"key": "PROJ-125", "summary": "Research task", "status": "Closed",
         "storyPoints": None, "issueType": "Task", "assignee": "Ada", "sprint": 100},
    ]


@pytest.fixture
def sample_commits():
    return [
        {"sha": "a1", "message": "Add cache", "author": "Ada", "date": "2024-01-03T10:00:00Z"},
        {"sha": "b2", "message": "Fix cache", "author": "Grace", "date": "2024-01-10T10:00:00Z"},
        {"sha": "c3", "message": "Later work", "author": "Ada", "date": "2024-02-20T10:00:00Z"},
    ]


@pytest.fixture
def sample_pull_requests():
    return [
        {"number": 1, "title": "Cache", "state": "closed", "author": "ada",
         "createdAt": "2024-01-02T09:00:00Z", "closedAt": "2024-01-05T09:00:00Z",
         "mergedAt": "2024-01-05T09:00:00Z"},
        {"number": 2, "title": "Docs", "state": "open", "author": "grace",
         "createdAt": "2024-02-01T09:00:00Z", "closedAt": None, "mergedAt": None},
    ]


@pytest.fixture
def mock_jira_client(sample_sprints, sample_sprint, sample_issues):
    """Jira client returning the sample data."""
    client = Mock()
    client.list_sprints.return_value = sample_sprints
    client.get_sprint.return_value = sample_sprint
    client.list_sprint_issues.return_value = sample_issues
    return client


@pytest.fixture
def mock_github_client(sample_commits, sample_pull_requests):
    client = Mock()
    client.list_commits.return_value = sample_commits
    client.list_pull_requests.return_value = sample_pull_requests
    return client


@pytest.fixture
def orchestrator(cache, mock_jira_client, mock_github_client, clock):
    orchestrator = CacheOrchestrator(cache, mock_jira_client, mock_github_client, clock=clock)
    yield orchestrator
    orchestrator.shutdown()


@pytest.fixture
def batch_engine(cache, clock):
    engine = BatchFillEngine(cache, max_workers=4, clock=clock)
    yield engine
    engine.shutdown()


@pytest.fixture
def app(tmp_path):
    """Create Flask test app with in-process cache only."""
    from app import create_app
    app = create_app({
        "TESTING": True,
        "CACHE_CONFIG_PATH": str(tmp_path / "missing.json"),
        "REDIS_URL": "",
        "GITHUB_OWNER": "acme",
        "GITHUB_REPO": "widgets",
    })
    yield app
    services = app.extensions["sprint_cache"]
    services.orchestrator.shutdown(wait=False)
    services.batch_engine.shutdown(wait=False)


@pytest.fixture
def client(app):
    """Create Flask test client."""
    return app.test_client()


@pytest.fixture
def mock_services(app):
    """Swap the app's aggregator and orchestrator for mocks."""
    services = app.extensions["sprint_cache"]
    services.orchestrator.shutdown(wait=False)
    services.batch_engine.shutdown(wait=False)
    services.aggregator = Mock()
    services.orchestrator = Mock()
    services.batch_engine = Mock()
    return services
