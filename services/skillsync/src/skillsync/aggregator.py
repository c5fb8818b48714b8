from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Literal

from common.utils import age_in_days, now_utc, parse_iso_datetime

from skillsync.classifier import classify_issue
from skillsync.models import AggregationReport, AggregationTrigger, IssueUpdate, RepositoryInfo
from skillsync.repository import SkillSyncRepository
from skillsync.settings import Settings
from skillsync.source import IssueSource, SourceError, is_pull_request

LOGGER = logging.getLogger("skillsync.aggregator")

BEGINNER_LABELS = frozenset({"good first issue", "good-first-issue", "help wanted", "beginner"})
GOOD_FIRST_ISSUE_QUERY = 'label:"good first issue"'

STARS_WEIGHT = 0.4
COMMENTS_WEIGHT = 0.3
REACTIONS_WEIGHT = 0.2
FRESHNESS_WEIGHT = 0.1
STARS_CAP = 1000
COMMENTS_CAP = 10
REACTIONS_CAP = 5
FRESHNESS_WINDOW_DAYS = 30


def label_names(issue: dict[str, Any]) -> list[str]:
    names = []
    for label in issue.get("labels") or []:
        name = label.get("name") if isinstance(label, dict) else label
        if isinstance(name, str) and name.strip():
            names.append(name.strip().lower())
    return names


def extract_repository_info(
    issue: dict[str, Any],
    repository: dict[str, Any] | None = None,
) -> RepositoryInfo:
    """Build the repository descriptor from ``repository_url`` plus whatever metadata is at hand.

    Search results carry no repository object, so language and stars may be unknown.
    """
    repo_url = str(issue.get("repository_url") or "").rstrip("/")
    meta = repository or issue.get("repository") or {}
    parts = repo_url.split("/")
    if len(parts) >= 2 and parts[-1]:
        owner, name = parts[-2], parts[-1]
    else:
        owner = str((meta.get("owner") or {}).get("login", ""))
        name = str(meta.get("name", ""))
    return RepositoryInfo(
        name=name,
        full_name=f"{owner}/{name}",
        owner=owner,
        description=meta.get("description"),
        language=meta.get("language"),
        stars=int(meta.get("stargazers_count") or 0),
        url=repo_url or meta.get("url"),
    )


def calculate_popularity(
    *,
    stars: int,
    comments: int,
    reactions: int,
    created_at: datetime,
    as_of: datetime,
) -> float:
    score = min(stars / STARS_CAP, 1) * STARS_WEIGHT
    score += min(comments / COMMENTS_CAP, 1) * COMMENTS_WEIGHT
    score += min(reactions / REACTIONS_CAP, 1) * REACTIONS_WEIGHT
    freshness = 1 - age_in_days(created_at, as_of) / FRESHNESS_WINDOW_DAYS
    score += max(0.0, min(freshness, 1.0)) * FRESHNESS_WEIGHT
    return round(max(0.0, min(score, 1.0)), 6)


def build_issue_update(
    issue: dict[str, Any],
    repository: RepositoryInfo,
) -> IssueUpdate:
    """Derive the stored record from upstream data alone.

    Popularity freshness is measured up to the issue's own ``updated_at``, so re-processing
    an unchanged payload yields the same record whenever the cycle runs.
    """
    created_at = parse_iso_datetime(issue.get("created_at"))
    if created_at is None:
        raise ValueError(f"Issue {issue.get('id')} has no valid created_at")
    updated_at = parse_iso_datetime(issue.get("updated_at")) or created_at
    labels = label_names(issue)
    title = str(issue.get("title") or "")
    body = str(issue.get("body") or "")
    classification = classify_issue(title, body, labels, repository.language)
    reactions = issue.get("reactions") or {}

    return IssueUpdate(
        external_id=str(issue["id"]),
        number=issue.get("number"),
        title=title,
        body=body,
        state="closed" if issue.get("state") == "closed" else "open",
        repository=repository,
        labels=labels,
        difficulty=classification.difficulty,
        required_skills=classification.required_skills,
        estimated_hours=classification.estimated_hours,
        popularity=calculate_popularity(
            stars=repository.stars,
            comments=int(issue.get("comments") or 0),
            reactions=int(reactions.get("total_count") or 0),
            created_at=created_at,
            as_of=updated_at,
        ),
        html_url=issue.get("html_url"),
        created_at=created_at,
        updated_at=updated_at,
        last_activity_at=updated_at,
        active=True,
    )


@dataclass
class CycleCounters:
    repositories: int = 0
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    failed_repositories: int = 0
    seen: set[str] = field(default_factory=set)


class IssueAggregator:
    """Fetch, classify and store candidate issues, one cycle at a time."""

    def __init__(
        self,
        repository: SkillSyncRepository,
        source: IssueSource,
        *,
        settings: Settings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self.repository = repository
        self.source = source
        self.settings = settings or Settings()
        self._sleep = sleep
        self._clock = clock
        self._running = threading.Lock()
        self.last_report: AggregationReport | None = None

    @property
    def state(self) -> Literal["idle", "running"]:
        return "running" if self._running.locked() else "idle"

    def wait_idle(self, timeout: float = -1) -> bool:
        """Block until no cycle is running. Returns False if ``timeout`` elapsed first."""
        if not self._running.acquire(timeout=timeout):
            return False
        self._running.release()
        return True

    def run_cycle(self, trigger: AggregationTrigger = "manual") -> AggregationReport:
        started_at = self._clock()
        if not self._running.acquire(blocking=False):
            LOGGER.info(json.dumps({"event": "aggregation_skipped", "trigger": trigger}))
            return self.repository.record_aggregation_run(
                AggregationReport(
                    trigger=trigger,
                    status="skipped",
                    started_at=started_at.isoformat(),
                    finished_at=self._clock().isoformat(),
                )
            )

        try:
            report = self._run_with_retries(trigger, started_at)
            report = self.repository.record_aggregation_run(report)
            self.last_report = report
        finally:
            self._running.release()

        LOGGER.info(json.dumps({"event": "aggregation_cycle_complete", **report.model_dump()}))
        return report

    def _run_with_retries(
        self,
        trigger: AggregationTrigger,
        started_at: datetime,
    ) -> AggregationReport:
        counters = CycleCounters()
        last_error: str | None = None
        attempts = 0
        status: Literal["ok", "error"] = "error"

        for attempt in range(1, self.settings.max_attempts + 1):
            attempts = attempt
            try:
                self._aggregate_once(counters)
                status = "ok"
                last_error = None
                break
            except Exception as exc:
                last_error = str(exc) or exc.__class__.__name__
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "aggregation_attempt_failed",
                            "attempt": attempt,
                            "max_attempts": self.settings.max_attempts,
                            "error": last_error,
                        }
                    )
                )
                if attempt < self.settings.max_attempts:
                    self._sleep(self.settings.retry_delay_seconds)

        return AggregationReport(
            trigger=trigger,
            status=status,
            started_at=started_at.isoformat(),
            finished_at=self._clock().isoformat(),
            attempts=attempts,
            repositories=counters.repositories,
            fetched=counters.fetched,
            created=counters.created,
            updated=counters.updated,
            skipped=counters.skipped,
            failed=counters.failed,
            failed_repositories=counters.failed_repositories,
            error=last_error,
        )

    def _aggregate_once(self, counters: CycleCounters) -> None:
        repositories = self.fetch_trending_repositories()
        counters.repositories = len(repositories)

        for repo in repositories:
            for issue in self._fetch_beginner_issues(repo, counters):
                self.process_issue(issue, counters, repository=repo)

        result = self.source.search_issues(GOOD_FIRST_ISSUE_QUERY)
        for issue in result.get("items", []):
            self.process_issue(issue, counters)

    def fetch_trending_repositories(self) -> list[dict[str, Any]]:
        collected: list[dict[str, Any]] = []
        for language in self.settings.trending_languages:
            try:
                collected.extend(self.source.fetch_trending_repositories(language))
            except SourceError as exc:
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "trending_fetch_failed",
                            "language": language,
                            "error": str(exc),
                        }
                    )
                )
        collected.extend(self.source.fetch_trending_repositories())

        unique: dict[str, dict[str, Any]] = {}
        for repo in collected:
            key = str(repo.get("id") or repo.get("full_name") or "")
            if key and key not in unique:
                unique[key] = repo
        return list(unique.values())[: self.settings.trending_limit]

    def _fetch_beginner_issues(
        self,
        repo: dict[str, Any],
        counters: CycleCounters,
    ) -> list[dict[str, Any]]:
        owner = (repo.get("owner") or {}).get("login")
        name = repo.get("name")
        if not owner or not name:
            return []
        try:
            issues = self.source.fetch_issues(owner, name, state="open")
        except SourceError as exc:
            counters.failed_repositories += 1
            LOGGER.warning(
                json.dumps(
                    {
                        "event": "repository_issues_fetch_failed",
                        "repository": f"{owner}/{name}",
                        "error": str(exc),
                    }
                )
            )
            return []
        return [issue for issue in issues if BEGINNER_LABELS.intersection(label_names(issue))]

    def process_issue(
        self,
        issue: dict[str, Any],
        counters: CycleCounters,
        *,
        repository: dict[str, Any] | None = None,
    ) -> None:
        counters.fetched += 1
        if not isinstance(issue, dict) or not issue.get("id") or is_pull_request(issue):
            counters.skipped += 1
            return

        external_id = str(issue["id"])
        if external_id in counters.seen:
            return

        counters.seen.add(external_id)
        try:
            update = build_issue_update(issue, extract_repository_info(issue, repository))
            outcome = self.repository.upsert_issue(update)
        except Exception:
            counters.failed += 1
            LOGGER.exception(
                json.dumps({"event": "issue_processing_failed", "external_id": external_id})
            )
            return

        if outcome == "created":
            counters.created += 1
        else:
            counters.updated += 1
        LOGGER.debug(
            json.dumps({"event": "issue_stored", "external_id": external_id, "outcome": outcome})
        )

    def cleanup_stale(self, now: datetime | None = None) -> int:
        threshold = (now or self._clock()) - timedelta(days=self.settings.stale_after_days)
        deactivated = self.repository.bulk_deactivate_older_than(threshold)
        LOGGER.info(
            json.dumps(
                {
                    "event": "stale_issues_deactivated",
                    "deactivated": deactivated,
                    "threshold": threshold.isoformat(),
                }
            )
        )
        return deactivated
