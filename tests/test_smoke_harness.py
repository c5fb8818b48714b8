from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest
import skillsync.main as skillsync_main
from fastapi.testclient import TestClient

pytestmark = [pytest.mark.integration, pytest.mark.smoke]


def write_inline_source(path: Path) -> None:
    created_at = (datetime.now(UTC) - timedelta(days=2)).isoformat()
    payload = {
        "repositories": [
            {
                "id": 7,
                "name": "starter",
                "full_name": "octo/starter",
                "owner": {"login": "octo"},
                "language": "Python",
                "stargazers_count": 40,
            }
        ],
        "issues": {
            "octo/starter": [
                {
                    "id": 7001,
                    "number": 1,
                    "title": "Add a simple flask health route",
                    "body": "Beginner friendly.",
                    "state": "open",
                    "labels": [{"name": "good first issue"}],
                    "repository_url": "https://api.github.com/repos/octo/starter",
                    "created_at": created_at,
                    "updated_at": created_at,
                }
            ]
        },
        "user_repositories": {
            "newbie": [{"name": "flask-notes", "language": "Python", "size": 200}]
        },
    }
    path.write_text(json.dumps(payload), encoding="utf-8")


def test_smoke_env_configured_service(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    inline_path = tmp_path / "inline.json"
    write_inline_source(inline_path)
    monkeypatch.setenv("SKILLSYNC_DB_PATH", str(tmp_path / "smoke.sqlite3"))
    monkeypatch.setenv("SKILLSYNC_INLINE_SOURCE_PATH", str(inline_path))
    monkeypatch.setenv("SKILLSYNC_SCHEDULER_ENABLED", "false")
    monkeypatch.delenv("GITHUB_API_TOKEN", raising=False)

    with TestClient(skillsync_main.create_app()) as client:
        health = client.get("/health")
        run = client.post("/aggregation/run")
        sync = client.post("/profiles/newbie/sync")
        recommendations = client.get("/profiles/newbie/recommendations")

    assert health.status_code == 200
    assert run.json()["created"] == 1
    assert sync.status_code == 200
    body = recommendations.json()
    assert recommendations.status_code == 200
    assert body["recommendations"][0]["item"]["external_id"] == "7001"
