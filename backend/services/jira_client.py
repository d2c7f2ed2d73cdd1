"""Jira Software client for the sprint and issue data the cache mirrors."""

import logging
import threading
from typing import Optional

import requests

from services.errors import UpstreamFetchError

logger = logging.getLogger(__name__)


class JiraClient:
    """Read-only Jira client returning normalized sprints and issues."""

    SPRINT_PAGE_SIZE = 50
    ISSUE_PAGE_SIZE = 100
    STORY_POINT_FALLBACKS = ["customfield_10002", "customfield_10016", "customfield_10020"]

    def __init__(self, server: str, email: str, token: str, timeout: int = 30):
        self.server = server.rstrip("/")
        self.email = email
        self.token = token
        self.timeout = timeout
        self._story_points_fields = None
        self._fields_lock = threading.Lock()

    def _request(self, endpoint: str, params: Optional[dict] = None):
        """Make authenticated request to Jira API."""
        try:
            response = requests.get(
                f"{self.server}{endpoint}",
                auth=(self.email, self.token),
                headers={"Accept": "application/json"},
                params=params,
                timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            status_code = e.response.status_code if e.response is not None else None
            raise UpstreamFetchError(f"Jira request to {endpoint} failed: {e}", status_code) from e
        except ValueError as e:
            raise UpstreamFetchError(f"Jira returned invalid JSON for {endpoint}") from e

    def _get_story_points_fields(self) -> list:
        """Find all possible story points custom field IDs."""
        with self._fields_lock:
            if self._story_points_fields is not None:
                return self._story_points_fields

        fields = self._request("/rest/api/3/field")
        sp_fields = []

        for field in fields:
            name = field.get("name", "")
            field_id = field.get("id", "")
            if field.get("schema", {}).get("type") != "number":
                continue

            if name == "Story Points":
                sp_fields.insert(0, field_id)
            elif "story point" in name.lower():
                sp_fields.append(field_id)

        for fallback in self.STORY_POINT_FALLBACKS:
            if fallback not in sp_fields:
                sp_fields.append(fallback)

        with self._fields_lock:
            self._story_points_fields = sp_fields
        return sp_fields

    def _get_story_points(self, fields: dict, sp_fields: list) -> Optional[float]:
        for field_id in sp_fields:
            points = fields.get(field_id)
            if points is not None:
                try:
                    return float(points)
                except (TypeError, ValueError):
                    pass
        return None

    @staticmethod
    def normalize_sprint(sprint: dict, board_id=None) -> dict:
        return {
            "id": sprint.get("id"),
            "name": sprint.get("name"),
            "state": sprint.get("state"),
            "startDate": sprint.get("startDate"),
            "endDate": sprint.get("endDate"),
            "completeDate": sprint.get("completeDate"),
            "goal": sprint.get("goal"),
            "boardId": sprint.get("originBoardId", board_id),
        }

    def normalize_issue(self, issue: dict, sp_fields: list, sprint_id=None) -> dict:
        fields = issue.get("fields", {})
        assignee = fields.get("assignee") or {}
        return {
            "key": issue.get("key"),
            "summary": fields.get("summary", ""),
            "status": (fields.get("status") or {}).get("name", ""),
            "storyPoints": self._get_story_points(fields, sp_fields),
            "issueType": (fields.get("issuetype") or {}).get("name", "Unknown"),
            "assignee": assignee.get("displayName"),
            "sprint": sprint_id,
        }

    def list_sprints(self, board_id, state: str = "closed") -> list:
        """Get every sprint of a board in the given state."""
        all_sprints = []
        start_at = 0

        while True:
            data = self._request(
                f"/rest/agile/1.0/board/{board_id}/sprint",
                params={"state": state, "startAt": start_at, "maxResults": self.SPRINT_PAGE_SIZE}
            )

            sprints = data.get("values", [])
            all_sprints.extend(sprints)

            if data.get("isLast", False) or len(sprints) < self.SPRINT_PAGE_SIZE:
                break

            start_at += self.SPRINT_PAGE_SIZE

        logger.debug(f"Fetched {len(all_sprints)} {state} sprints for board {board_id}")
        return [self.normalize_sprint(s, board_id) for s in all_sprints]

    def get_sprint(self, sprint_id) -> dict:
        return self.normalize_sprint(self._request(f"/rest/agile/1.0/sprint/{sprint_id}"))

    def list_sprint_issues(self, sprint_id) -> list:
        """Get all issues in a sprint."""
        sp_fields = self._get_story_points_fields()
        request_fields = ["summary", "issuetype", "status", "assignee"] + sp_fields

        all_issues = []
        start_at = 0

        while True:
            data = self._request(
                f"/rest/agile/1.0/sprint/{sprint_id}/issue",
                params={
                    "startAt": start_at,
                    "maxResults": self.ISSUE_PAGE_SIZE,
                    "fields": ",".join(request_fields)
                }
            )

            issues = data.get("issues", [])
            all_issues.extend(issues)

            if len(issues) < self.ISSUE_PAGE_SIZE:
                break

            start_at += self.ISSUE_PAGE_SIZE

        return [self.normalize_issue(issue, sp_fields, sprint_id) for issue in all_issues]
