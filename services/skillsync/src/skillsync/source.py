from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any, Protocol

import httpx
from common.utils import now_utc

from skillsync.ratelimit import DEFAULT_QUOTA_THRESHOLD, Quota, RateLimitGovernor

LOGGER = logging.getLogger("skillsync.source")

GITHUB_API_BASE_URL = "https://api.github.com"
USER_AGENT = "skillsync"
TRENDING_WINDOW_DAYS = 7
TRENDING_MIN_STARS = 10


class SourceError(RuntimeError):
    """Transient failure talking to the external source."""


class SourceNotFoundError(SourceError):
    """The requested owner, repository or user does not exist."""


class IssueSource(Protocol):
    def fetch_trending_repositories(self, language: str | None = None) -> list[dict[str, Any]]:
        ...

    def fetch_issues(
        self,
        owner: str,
        name: str,
        *,
        state: str = "open",
        labels: list[str] | None = None,
        per_page: int = 100,
    ) -> list[dict[str, Any]]:
        ...

    def search_issues(
        self,
        query: str,
        *,
        sort: str = "updated",
        per_page: int = 100,
    ) -> dict[str, Any]:
        ...

    def fetch_user_repositories(self, username: str) -> list[dict[str, Any]]:
        ...

    def fetch_activity_events(self, username: str) -> list[dict[str, Any]]:
        ...

    def check_quota(self) -> Quota:
        ...


def is_pull_request(item: dict[str, Any]) -> bool:
    return bool(item.get("pull_request"))


class GitHubSource:
    """GitHub REST client. Every call except the quota lookup goes through the governor."""

    def __init__(
        self,
        token: str | None = None,
        *,
        base_url: str = GITHUB_API_BASE_URL,
        timeout: float = 15.0,
        quota_threshold: int = DEFAULT_QUOTA_THRESHOLD,
        governor: RateLimitGovernor | None = None,
        transport: httpx.BaseTransport | None = None,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        headers = {
            "Accept": "application/vnd.github+json",
            "User-Agent": USER_AGENT,
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )
        self._clock = clock
        self.governor = governor or RateLimitGovernor(
            self.check_quota,
            threshold=quota_threshold,
            clock=clock,
        )

    def close(self) -> None:
        self._client.close()

    def _request(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        governed: bool = True,
    ) -> Any:
        if governed:
            self.governor.wait_if_needed()
        try:
            response = self._client.get(path, params=params)
        except httpx.RequestError as exc:
            raise SourceError(f"GitHub request failed for {path}: {exc}") from exc

        if response.status_code == 404:
            raise SourceNotFoundError(f"GitHub resource not found: {path}")
        if response.status_code >= 400:
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "github_request_failed",
                        "path": path,
                        "status_code": response.status_code,
                    }
                )
            )
            raise SourceError(f"GitHub API error: {response.status_code} for {path}")
        try:
            return response.json()
        except ValueError as exc:
            raise SourceError(f"GitHub returned invalid JSON for {path}") from exc

    def _list(self, path: str, params: dict[str, Any] | None = None) -> list[dict[str, Any]]:
        try:
            payload = self._request(path, params)
        except SourceNotFoundError:
            LOGGER.info(json.dumps({"event": "github_not_found", "path": path}))
            return []
        if not isinstance(payload, list):
            raise SourceError(f"Expected a list from {path}")
        return [item for item in payload if isinstance(item, dict)]

    def _object(
        self,
        path: str,
        params: dict[str, Any] | None = None,
        *,
        governed: bool = True,
    ) -> dict[str, Any]:
        payload = self._request(path, params, governed=governed)
        if not isinstance(payload, dict):
            raise SourceError(f"Expected an object from {path}")
        return payload

    def fetch_trending_repositories(self, language: str | None = None) -> list[dict[str, Any]]:
        since = (self._clock() - timedelta(days=TRENDING_WINDOW_DAYS)).date().isoformat()
        query = f"created:>{since} stars:>{TRENDING_MIN_STARS}"
        if language:
            query += f" language:{language}"
        payload = self._object(
            "/search/repositories",
            {"q": query, "sort": "stars", "order": "desc", "per_page": 100},
        )
        return [item for item in payload.get("items") or [] if isinstance(item, dict)]

    def fetch_issues(
        self,
        owner: str,
        name: str,
        *,
        state: str = "open",
        labels: list[str] | None = None,
        per_page: int = 100,
    ) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "state": state,
            "sort": "updated",
            "direction": "desc",
            "per_page": per_page,
        }
        if labels:
            params["labels"] = ",".join(labels)
        issues = self._list(f"/repos/{owner}/{name}/issues", params)
        return [issue for issue in issues if not is_pull_request(issue)]

    def search_issues(
        self,
        query: str,
        *,
        sort: str = "updated",
        per_page: int = 100,
    ) -> dict[str, Any]:
        payload = self._object(
            "/search/issues",
            {
                "q": f"{query} is:issue is:open".strip(),
                "sort": sort,
                "order": "desc",
                "per_page": per_page,
            },
        )
        items = [
            item
            for item in payload.get("items") or []
            if isinstance(item, dict) and not is_pull_request(item)
        ]
        return {"items": items, "total_count": int(payload.get("total_count", len(items)))}

    def fetch_user_repositories(self, username: str) -> list[dict[str, Any]]:
        return self._list(
            f"/users/{username}/repos",
            {"type": "owner", "sort": "updated", "per_page": 100},
        )

    def fetch_activity_events(self, username: str) -> list[dict[str, Any]]:
        return self._list(f"/users/{username}/events/public", {"per_page": 100})

    def check_quota(self) -> Quota:
        payload = self._object("/rate_limit", governed=False)
        rate = payload.get("rate", {})
        return Quota(
            remaining=int(rate.get("remaining", 0)),
            reset_at=datetime.fromtimestamp(int(rate.get("reset", 0)), UTC),
        )


class InlineIssueSource:
    """In-memory source backed by static payloads, for offline runs and tests.

    Payloads are returned as stored, pull-request records included. ``search_issues``
    ignores the query and returns every stored search item.
    """

    def __init__(
        self,
        *,
        repositories: list[dict[str, Any]] | None = None,
        issues: dict[str, list[dict[str, Any]]] | None = None,
        search_items: list[dict[str, Any]] | None = None,
        user_repositories: dict[str, list[dict[str, Any]]] | None = None,
        events: dict[str, list[dict[str, Any]]] | None = None,
        quota_remaining: int = 5000,
    ) -> None:
        self.repositories = repositories or []
        self.issues = issues or {}
        self.search_items = search_items or []
        self.user_repositories = user_repositories or {}
        self.events = events or {}
        self.quota_remaining = quota_remaining
        self.calls: list[tuple[str, ...]] = []

    @classmethod
    def from_json_file(cls, path: str | Path) -> InlineIssueSource:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("Inline source file must contain a JSON object.")
        return cls(
            repositories=payload.get("repositories", []),
            issues=payload.get("issues", {}),
            search_items=payload.get("search_items", []),
            user_repositories=payload.get("user_repositories", {}),
            events=payload.get("events", {}),
        )

    def fetch_trending_repositories(self, language: str | None = None) -> list[dict[str, Any]]:
        self.calls.append(("fetch_trending_repositories", language or ""))
        if not language:
            return list(self.repositories)
        return [
            repo
            for repo in self.repositories
            if str(repo.get("language") or "").lower() == language.lower()
        ]

    def fetch_issues(
        self,
        owner: str,
        name: str,
        *,
        state: str = "open",
        labels: list[str] | None = None,
        per_page: int = 100,
    ) -> list[dict[str, Any]]:
        self.calls.append(("fetch_issues", f"{owner}/{name}"))
        wanted = {label.lower() for label in labels or []}
        selected = []
        for issue in self.issues.get(f"{owner}/{name}", []):
            if issue.get("state", "open") != state:
                continue
            names = {str(label.get("name", "")).lower() for label in issue.get("labels", [])}
            if wanted and not wanted.issubset(names):
                continue
            selected.append(issue)
        return selected[:per_page]

    def search_issues(
        self,
        query: str,
        *,
        sort: str = "updated",
        per_page: int = 100,
    ) -> dict[str, Any]:
        self.calls.append(("search_issues", query))
        items = list(self.search_items)
        return {"items": items[:per_page], "total_count": len(items)}

    def fetch_user_repositories(self, username: str) -> list[dict[str, Any]]:
        self.calls.append(("fetch_user_repositories", username))
        return list(self.user_repositories.get(username, []))

    def fetch_activity_events(self, username: str) -> list[dict[str, Any]]:
        self.calls.append(("fetch_activity_events", username))
        return list(self.events.get(username, []))

    def check_quota(self) -> Quota:
        self.calls.append(("check_quota",))
        return Quota(remaining=self.quota_remaining, reset_at=now_utc())

    def call_count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)
