from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
from skillsync.models import (
    AggregationReport,
    ConsumerProfile,
    IssueUpdate,
    RepositoryInfo,
    Skill,
    TechnologyUsage,
)
from skillsync.repository import SkillSyncRepository

pytestmark = pytest.mark.unit

NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


def make_update(external_id: str, **overrides: object) -> IssueUpdate:
    fields: dict[str, object] = {
        "external_id": external_id,
        "number": 1,
        "title": f"Issue {external_id}",
        "body": "Body",
        "repository": RepositoryInfo(
            name="widgets",
            full_name="acme/widgets",
            owner="acme",
            language="Python",
            stars=120,
        ),
        "labels": ["good first issue"],
        "difficulty": "novice",
        "required_skills": ["python"],
        "estimated_hours": 2,
        "popularity": 0.4,
        "created_at": NOW - timedelta(days=2),
        "updated_at": NOW - timedelta(days=1),
        "last_activity_at": NOW - timedelta(days=1),
    }
    fields.update(overrides)
    return IssueUpdate(**fields)


@pytest.fixture
def repository(tmp_path: Path):
    repo = SkillSyncRepository(str(tmp_path / "nested" / "skillsync.sqlite3"))
    repo.connect()
    yield repo
    repo.close()


def test_upsert_creates_then_updates_without_touching_first_seen(
    repository: SkillSyncRepository,
) -> None:
    assert repository.upsert_issue(make_update("1")) == "created"
    first = repository.find_issue("1")
    assert first is not None

    assert repository.upsert_issue(make_update("1", title="Renamed", popularity=0.9)) == "updated"
    second = repository.find_issue("1")
    assert second is not None

    assert second.title == "Renamed"
    assert second.popularity == pytest.approx(0.9)
    assert second.first_seen_at == first.first_seen_at
    assert second.repository.full_name == "acme/widgets"
    assert second.labels == ["good first issue"]
    assert second.required_skills == ["python"]
    assert repository.count_issues() == 1


def test_list_active_issues_skips_closed_and_inactive(repository: SkillSyncRepository) -> None:
    repository.upsert_issue(make_update("open-low", popularity=0.1))
    repository.upsert_issue(make_update("open-high", popularity=0.8))
    repository.upsert_issue(make_update("closed", state="closed"))
    repository.upsert_issue(make_update("inactive", active=False))

    active = repository.list_active_issues()

    assert [item.external_id for item in active] == ["open-high", "open-low"]
    assert repository.list_active_issues(limit=1)[0].external_id == "open-high"
    assert repository.count_issues(active_only=True) == 3


def test_search_issues_filters_and_pages(repository: SkillSyncRepository) -> None:
    go_repo = RepositoryInfo(name="gadgets", full_name="acme/gadgets", owner="acme", language="Go")
    repository.upsert_issue(make_update("py-old", last_activity_at=NOW - timedelta(days=3)))
    repository.upsert_issue(make_update("py-new", title="Fix 100% CPU loop"))
    repository.upsert_issue(
        make_update("go", repository=go_repo, labels=["help wanted"], difficulty="advanced")
    )
    repository.upsert_issue(make_update("closed", state="closed"))

    everything, total = repository.search_issues()
    assert total == 3
    assert [item.external_id for item in everything] == ["go", "py-new", "py-old"]

    assert repository.search_issues(text="100%")[1] == 1
    assert repository.search_issues(text="gadgets")[0][0].external_id == "go"
    assert repository.search_issues(language="PYTH")[1] == 2
    assert repository.search_issues(difficulty="advanced")[1] == 1
    assert repository.search_issues(labels=["Help Wanted", "docs"])[1] == 1

    page, total = repository.search_issues(page=2, limit=2)
    assert total == 3
    assert [item.external_id for item in page] == ["py-old"]


def test_bulk_deactivate_older_than(repository: SkillSyncRepository) -> None:
    repository.upsert_issue(make_update("fresh", last_activity_at=NOW - timedelta(days=2)))
    repository.upsert_issue(make_update("stale", last_activity_at=NOW - timedelta(days=45)))

    deactivated = repository.bulk_deactivate_older_than(NOW - timedelta(days=30))

    assert deactivated == 1
    assert [item.external_id for item in repository.list_active_issues()] == ["fresh"]
    stale = repository.find_issue("stale")
    assert stale is not None
    assert stale.active is False
    assert repository.bulk_deactivate_older_than(NOW - timedelta(days=30)) == 0


def test_reseeing_an_issue_reactivates_it(repository: SkillSyncRepository) -> None:
    repository.upsert_issue(make_update("1", last_activity_at=NOW - timedelta(days=45)))
    repository.bulk_deactivate_older_than(NOW - timedelta(days=30))

    repository.upsert_issue(make_update("1", last_activity_at=NOW))

    item = repository.find_issue("1")
    assert item is not None
    assert item.active is True


def test_profile_round_trip_preserves_created_at(repository: SkillSyncRepository) -> None:
    profile = ConsumerProfile(
        username="octo",
        bio="Backend person",
        skills=[Skill(name="python", tier="advanced", confidence=0.9)],
        technologies=[TechnologyUsage(name="Python", percentage=100.0, size=10, artifact_count=1)],
        preferred_difficulties={"novice", "intermediate"},
    )

    saved = repository.save_profile(profile)
    assert saved.created_at
    assert saved.preferred_difficulties == {"novice", "intermediate"}
    assert saved.skills[0].name == "python"

    resaved = repository.save_profile(saved.model_copy(update={"bio": "Changed", "created_at": None}))
    assert resaved.bio == "Changed"
    assert resaved.created_at == saved.created_at
    assert repository.get_profile("missing") is None


def test_aggregation_runs_are_listed_newest_first(repository: SkillSyncRepository) -> None:
    first = repository.record_aggregation_run(
        AggregationReport(trigger="startup", status="ok", started_at=NOW.isoformat(), created=3)
    )
    second = repository.record_aggregation_run(
        AggregationReport(trigger="manual", status="skipped", started_at=NOW.isoformat())
    )

    runs = repository.list_aggregation_runs()

    assert first.run_id is not None
    assert second.run_id == first.run_id + 1
    assert [run.trigger for run in runs] == ["manual", "startup"]
    assert runs[1].created == 3
    assert repository.list_aggregation_runs(limit=1)[0].status == "skipped"


def test_closed_repository_rejects_queries(tmp_path: Path) -> None:
    repo = SkillSyncRepository(str(tmp_path / "db.sqlite3"))
    repo.connect()
    repo.close()

    with pytest.raises(RuntimeError):
        repo.find_issue("1")
