"""GitHub REST client for commit and pull request history."""

import logging
from typing import Optional

import requests

from services.errors import UpstreamFetchError

logger = logging.getLogger(__name__)


class GitHubClient:
    """Read-only GitHub client returning normalized commits and PRs."""

    PER_PAGE = 100
    MAX_PAGES = 10

    def __init__(self, token: Optional[str] = None,
                 api_url: str = "https://api.github.com", timeout: int = 30):
        self.token = token
        self.api_url = api_url.rstrip("/")
        self.timeout = timeout

    def _request(self, endpoint: str, params: Optional[dict] = None):
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"

        try:
            response = requests.get(
                f"{self.api_url}{endpoint}",
                headers=headers,
                params=params,
                timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            status_code = e.response.status_code if e.response is not None else None
            raise UpstreamFetchError(f"GitHub request to {endpoint} failed: {e}", status_code) from e
        except ValueError as e:
            raise UpstreamFetchError(f"GitHub returned invalid JSON for {endpoint}") from e

    def _paginate(self, endpoint: str, params: dict) -> list:
        """Fetch pages until a short page, capped at MAX_PAGES."""
        items = []
        for page in range(1, self.MAX_PAGES + 1):
            batch = self._request(endpoint, params={**params, "per_page": self.PER_PAGE, "page": page})
            if not batch:
                break
            items.extend(batch)
            if len(batch) < self.PER_PAGE:
                break
        return items

    def list_commits(self, owner: str, repo: str,
                     since: Optional[str] = None, until: Optional[str] = None) -> list:
        """List commits, optionally bounded by ISO 8601 timestamps."""
        params = {}
        if since:
            params["since"] = since
        if until:
            params["until"] = until

        commits = self._paginate(f"/repos/{owner}/{repo}/commits", params)
        logger.debug(f"Fetched {len(commits)} commits for {owner}/{repo}")

        normalized = []
        for commit in commits:
            details = commit.get("commit", {})
            committer = details.get("committer") or {}
            author = details.get("author") or {}
            normalized.append({
                "sha": commit.get("sha"),
                "message": details.get("message", "").split("\n")[0],
                "author": author.get("name"),
                "date": committer.get("date") or author.get("date"),
            })
        return normalized

    def list_pull_requests(self, owner: str, repo: str, state: str = "all") -> list:
        pulls = self._paginate(
            f"/repos/{owner}/{repo}/pulls",
            {"state": state, "sort": "created", "direction": "desc"}
        )
        logger.debug(f"Fetched {len(pulls)} pull requests for {owner}/{repo}")

        return [
            {
                "number": pr.get("number"),
                "title": pr.get("title"),
                "state": pr.get("state"),
                "author": (pr.get("user") or {}).get("login"),
                "createdAt": pr.get("created_at"),
                "closedAt": pr.get("closed_at"),
                "mergedAt": pr.get("merged_at"),
            }
            for pr in pulls
        ]
