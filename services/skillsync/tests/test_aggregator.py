from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest
from skillsync.aggregator import (
    IssueAggregator,
    build_issue_update,
    calculate_popularity,
    extract_repository_info,
)
from skillsync.repository import SkillSyncRepository
from skillsync.settings import Settings
from skillsync.source import InlineIssueSource, SourceError

pytestmark = pytest.mark.integration

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def repo_payload(repo_id: int, owner: str, name: str, language: str = "Python") -> dict[str, Any]:
    return {
        "id": repo_id,
        "name": name,
        "full_name": f"{owner}/{name}",
        "owner": {"login": owner},
        "description": f"The {name} project",
        "language": language,
        "stargazers_count": 500,
    }


def issue_payload(
    issue_id: int,
    owner: str,
    name: str,
    *,
    labels: tuple[str, ...] = ("good first issue",),
    created_at: str | None = "2026-03-05T12:00:00Z",
    pull_request: bool = False,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": issue_id,
        "number": issue_id % 1000,
        "title": "Improve onboarding docs",
        "body": "Short body.",
        "state": "open",
        "labels": [{"name": label} for label in labels],
        "repository_url": f"https://api.github.com/repos/{owner}/{name}",
        "html_url": f"https://github.com/{owner}/{name}/issues/{issue_id % 1000}",
        "created_at": created_at,
        "updated_at": created_at,
        "comments": 2,
        "reactions": {"total_count": 1},
    }
    if pull_request:
        payload["pull_request"] = {"url": f"https://api.github.com/repos/{owner}/{name}/pulls/1"}
    return payload


def source_payloads() -> dict[str, Any]:
    return {
        "repositories": [
            repo_payload(1, "acme", "widgets"),
            repo_payload(1, "acme", "widgets"),
            repo_payload(2, "acme", "gadgets", language="Go"),
        ],
        "issues": {
            "acme/widgets": [
                issue_payload(101, "acme", "widgets"),
                issue_payload(102, "acme", "widgets", labels=("bug",)),
                issue_payload(103, "acme", "widgets", pull_request=True),
            ],
            "acme/gadgets": [issue_payload(104, "acme", "gadgets", labels=("help wanted",))],
        },
        "search_items": [
            issue_payload(201, "other", "tool"),
            issue_payload(101, "acme", "widgets"),
        ],
    }


class SleepRecorder:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FlakySearchSource(InlineIssueSource):
    def __init__(self, failures: int, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.failures = failures

    def search_issues(self, query: str, *, sort: str = "updated", per_page: int = 100):
        if self.failures > 0:
            self.failures -= 1
            raise SourceError("search is down")
        return super().search_issues(query, sort=sort, per_page=per_page)


class BlockingSource(InlineIssueSource):
    def __init__(self, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self.entered = threading.Event()
        self.release = threading.Event()

    def fetch_trending_repositories(self, language: str | None = None):
        self.entered.set()
        self.release.wait(timeout=5)
        return super().fetch_trending_repositories(language)


@pytest.fixture
def repository(tmp_path: Path):
    repo = SkillSyncRepository(str(tmp_path / "skillsync.sqlite3"))
    repo.connect()
    yield repo
    repo.close()


@pytest.fixture
def sleeper() -> SleepRecorder:
    return SleepRecorder()


def make_aggregator(
    repository: SkillSyncRepository,
    source: InlineIssueSource,
    sleeper: SleepRecorder,
    **settings: Any,
) -> IssueAggregator:
    options: dict[str, Any] = {"max_attempts": 3, "retry_delay_seconds": 7}
    options.update(settings)
    return IssueAggregator(
        repository,
        source,
        settings=Settings(**options),
        sleep=sleeper,
        clock=lambda: NOW,
    )


def test_cycle_stores_beginner_issues_and_reports_counts(
    repository: SkillSyncRepository,
    sleeper: SleepRecorder,
) -> None:
    source = InlineIssueSource(**source_payloads())
    aggregator = make_aggregator(repository, source, sleeper)

    report = aggregator.run_cycle("startup")

    assert report.status == "ok"
    assert report.trigger == "startup"
    assert report.attempts == 1
    assert report.run_id is not None
    assert report.repositories == 2
    assert report.fetched == 5
    assert report.created == 3
    assert report.updated == 0
    assert report.skipped == 1
    assert report.failed == 0
    assert aggregator.last_report == report
    assert sleeper.calls == []

    stored = {item.external_id: item for item in repository.list_active_issues()}
    assert set(stored) == {"101", "104", "201"}
    assert stored["101"].difficulty == "novice"
    assert stored["101"].repository.language == "Python"
    assert stored["101"].popularity == pytest.approx(0.4, abs=1e-6)
    assert stored["104"].difficulty == "intermediate"
    assert stored["201"].repository.full_name == "other/tool"
    assert stored["201"].repository.language is None


def test_repeated_cycles_are_idempotent(
    repository: SkillSyncRepository,
    sleeper: SleepRecorder,
) -> None:
    source = InlineIssueSource(**source_payloads())
    aggregator = make_aggregator(repository, source, sleeper)

    aggregator.run_cycle()
    first_snapshot = [item.model_dump() for item in repository.list_active_issues()]
    second = aggregator.run_cycle()
    second_snapshot = [item.model_dump() for item in repository.list_active_issues()]

    assert second.created == 0
    assert second.updated == 3
    assert first_snapshot == second_snapshot
    assert repository.count_issues() == 3
    assert len(repository.list_aggregation_runs()) == 2


def test_stored_record_does_not_drift_between_scheduled_ticks(
    repository: SkillSyncRepository,
    sleeper: SleepRecorder,
) -> None:
    current = [NOW]
    source = InlineIssueSource(search_items=[issue_payload(1, "acme", "widgets")])
    aggregator = IssueAggregator(
        repository,
        source,
        settings=Settings(max_attempts=1),
        sleep=sleeper,
        clock=lambda: current[0],
    )

    aggregator.run_cycle("scheduled")
    first = repository.find_issue("1")
    current[0] = NOW + timedelta(minutes=30)
    aggregator.run_cycle("scheduled")
    second = repository.find_issue("1")

    assert first is not None and second is not None
    assert first.model_dump() == second.model_dump()


def test_failed_item_is_counted_once_across_retries(
    repository: SkillSyncRepository,
    sleeper: SleepRecorder,
) -> None:
    payloads = source_payloads()
    payloads["issues"]["acme/widgets"].append(
        issue_payload(105, "acme", "widgets", created_at=None)
    )
    source = FlakySearchSource(failures=1, **payloads)

    report = make_aggregator(repository, source, sleeper).run_cycle()

    assert report.status == "ok"
    assert report.attempts == 2
    assert report.failed == 1
    assert report.created == 3
    assert repository.find_issue("105") is None


def test_wait_idle_blocks_until_the_running_cycle_finishes(
    repository: SkillSyncRepository,
    sleeper: SleepRecorder,
) -> None:
    source = BlockingSource(**source_payloads())
    aggregator = make_aggregator(repository, source, sleeper)

    worker = threading.Thread(target=aggregator.run_cycle)
    worker.start()
    try:
        assert source.entered.wait(timeout=5)
        assert aggregator.wait_idle(timeout=0.05) is False
    finally:
        source.release.set()

    assert aggregator.wait_idle(timeout=5) is True
    worker.join(timeout=5)
    assert aggregator.state == "idle"
    assert repository.list_aggregation_runs()[0].status == "ok"


def test_overlapping_cycle_is_skipped(
    repository: SkillSyncRepository,
    sleeper: SleepRecorder,
) -> None:
    source = BlockingSource(**source_payloads())
    aggregator = make_aggregator(repository, source, sleeper)
    results = []

    worker = threading.Thread(target=lambda: results.append(aggregator.run_cycle("scheduled")))
    worker.start()
    try:
        assert source.entered.wait(timeout=5)
        assert aggregator.state == "running"

        skipped = aggregator.run_cycle("manual")
    finally:
        source.release.set()
        worker.join(timeout=5)

    assert skipped.status == "skipped"
    assert skipped.run_id is not None
    assert results[0].status == "ok"
    assert source.call_count("fetch_trending_repositories") == 1
    assert source.call_count("search_issues") == 1
    assert aggregator.state == "idle"
    assert {run.status for run in repository.list_aggregation_runs()} == {"ok", "skipped"}


def test_transient_failure_is_retried(
    repository: SkillSyncRepository,
    sleeper: SleepRecorder,
) -> None:
    source = FlakySearchSource(failures=2, **source_payloads())
    aggregator = make_aggregator(repository, source, sleeper)

    report = aggregator.run_cycle()

    assert report.status == "ok"
    assert report.attempts == 3
    assert report.error is None
    assert report.created == 3
    assert sleeper.calls == [7, 7]


def test_exhausted_retries_report_an_error(
    repository: SkillSyncRepository,
    sleeper: SleepRecorder,
) -> None:
    source = FlakySearchSource(failures=10, **source_payloads())
    aggregator = make_aggregator(repository, source, sleeper, max_attempts=2)

    report = aggregator.run_cycle()

    assert report.status == "error"
    assert report.attempts == 2
    assert report.error == "search is down"
    assert sleeper.calls == [7]
    assert aggregator.state == "idle"
    assert repository.list_aggregation_runs()[0].status == "error"


def test_repository_fetch_failure_does_not_abort_the_cycle(
    repository: SkillSyncRepository,
    sleeper: SleepRecorder,
) -> None:
    class PartiallyBrokenSource(InlineIssueSource):
        def fetch_issues(self, owner: str, name: str, **kwargs: Any):
            if name == "gadgets":
                raise SourceError("gadgets unavailable")
            return super().fetch_issues(owner, name, **kwargs)

    source = PartiallyBrokenSource(**source_payloads())
    report = make_aggregator(repository, source, sleeper).run_cycle()

    assert report.status == "ok"
    assert report.failed_repositories == 1
    assert report.created == 2
    assert repository.find_issue("104") is None


def test_malformed_items_are_skipped_or_counted_as_failed(
    repository: SkillSyncRepository,
    sleeper: SleepRecorder,
) -> None:
    source = InlineIssueSource(
        search_items=[
            "garbage",
            {"title": "no identity"},
            issue_payload(301, "other", "tool", created_at=None),
            issue_payload(302, "other", "tool"),
        ]
    )

    report = make_aggregator(repository, source, sleeper).run_cycle()

    assert report.status == "ok"
    assert report.fetched == 4
    assert report.skipped == 2
    assert report.failed == 1
    assert report.created == 1
    assert repository.find_issue("302") is not None


def test_language_failures_are_tolerated_and_results_capped(
    repository: SkillSyncRepository,
    sleeper: SleepRecorder,
) -> None:
    class LanguageFlakySource(InlineIssueSource):
        def fetch_trending_repositories(self, language: str | None = None):
            if language == "go":
                raise SourceError("language search failed")
            return super().fetch_trending_repositories(language)

    source = LanguageFlakySource(**source_payloads())
    aggregator = make_aggregator(
        repository,
        source,
        sleeper,
        trending_languages=["go", "python"],
        trending_limit=1,
    )

    repos = aggregator.fetch_trending_repositories()

    assert [repo["full_name"] for repo in repos] == ["acme/widgets"]
    assert source.call_count("fetch_trending_repositories") == 2


def test_cleanup_deactivates_stale_issues(
    repository: SkillSyncRepository,
    sleeper: SleepRecorder,
) -> None:
    source = InlineIssueSource(
        search_items=[
            issue_payload(401, "acme", "widgets", created_at="2026-01-01T00:00:00Z"),
            issue_payload(402, "acme", "widgets"),
        ]
    )
    aggregator = make_aggregator(repository, source, sleeper)
    aggregator.run_cycle()

    assert aggregator.cleanup_stale() == 1
    assert [item.external_id for item in repository.list_active_issues()] == ["402"]
    assert repository.count_issues() == 2


def test_calculate_popularity_caps_and_decays() -> None:
    capped = calculate_popularity(
        stars=5000,
        comments=50,
        reactions=10,
        created_at=NOW,
        as_of=NOW,
    )
    old = calculate_popularity(
        stars=0,
        comments=0,
        reactions=0,
        created_at=datetime(2025, 1, 1, tzinfo=UTC),
        as_of=NOW,
    )

    assert capped == pytest.approx(1.0)
    assert old == 0.0


def test_repository_info_falls_back_to_issue_metadata() -> None:
    info = extract_repository_info(
        {"repository_url": "https://api.github.com/repos/acme/widgets/"},
        {"language": "Rust", "stargazers_count": 42, "description": "Widgets"},
    )

    assert info.owner == "acme"
    assert info.name == "widgets"
    assert info.full_name == "acme/widgets"
    assert info.language == "Rust"
    assert info.stars == 42


def test_build_issue_update_requires_created_at() -> None:
    issue = issue_payload(9, "acme", "widgets", created_at=None)
    with pytest.raises(ValueError):
        build_issue_update(issue, extract_repository_info(issue))
