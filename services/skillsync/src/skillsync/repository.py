from __future__ import annotations

import json
import sqlite3
import threading
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal

from common.utils import now_utc_iso

from skillsync.models import (
    AggregationReport,
    CandidateItem,
    ConsumerProfile,
    IssueUpdate,
    RepositoryInfo,
    Skill,
    TechnologyUsage,
)

ISSUE_COLUMNS: tuple[str, ...] = (
    "external_id",
    "number",
    "title",
    "body",
    "state",
    "repository_json",
    "labels_json",
    "difficulty",
    "required_skills_json",
    "estimated_hours",
    "popularity",
    "html_url",
    "created_at",
    "updated_at",
    "last_activity_at",
    "active",
)

RUN_COLUMNS: tuple[str, ...] = (
    "trigger",
    "status",
    "started_at",
    "finished_at",
    "attempts",
    "repositories",
    "fetched",
    "created",
    "updated",
    "skipped",
    "failed",
    "failed_repositories",
    "error",
)


def to_utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def like_escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def issue_row(update: IssueUpdate) -> dict[str, Any]:
    return {
        "external_id": update.external_id,
        "number": update.number,
        "title": update.title,
        "body": update.body,
        "state": update.state,
        "repository_json": json.dumps(update.repository.model_dump(), sort_keys=True),
        "labels_json": json.dumps(update.labels),
        "difficulty": update.difficulty,
        "required_skills_json": json.dumps(update.required_skills),
        "estimated_hours": update.estimated_hours,
        "popularity": update.popularity,
        "html_url": update.html_url,
        "created_at": to_utc_iso(update.created_at),
        "updated_at": to_utc_iso(update.updated_at),
        "last_activity_at": to_utc_iso(update.last_activity_at),
        "active": int(update.active),
    }


class SkillSyncRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS issues (
                    external_id TEXT PRIMARY KEY,
                    number INTEGER,
                    title TEXT NOT NULL,
                    body TEXT NOT NULL DEFAULT '',
                    state TEXT NOT NULL,
                    repository_json TEXT NOT NULL,
                    labels_json TEXT NOT NULL DEFAULT '[]',
                    difficulty TEXT NOT NULL,
                    required_skills_json TEXT NOT NULL DEFAULT '[]',
                    estimated_hours INTEGER NOT NULL,
                    popularity REAL NOT NULL DEFAULT 0,
                    html_url TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_activity_at TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    first_seen_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_issues_active_activity
                    ON issues (active, last_activity_at);

                CREATE TABLE IF NOT EXISTS profiles (
                    username TEXT PRIMARY KEY,
                    bio TEXT,
                    skills_json TEXT NOT NULL DEFAULT '[]',
                    technologies_json TEXT NOT NULL DEFAULT '[]',
                    preferred_difficulties_json TEXT NOT NULL DEFAULT '[]',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    last_analyzed_at TEXT
                );

                CREATE TABLE IF NOT EXISTS aggregation_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    trigger TEXT NOT NULL,
                    status TEXT NOT NULL,
                    started_at TEXT NOT NULL,
                    finished_at TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    repositories INTEGER NOT NULL DEFAULT 0,
                    fetched INTEGER NOT NULL DEFAULT 0,
                    created INTEGER NOT NULL DEFAULT 0,
                    updated INTEGER NOT NULL DEFAULT 0,
                    skipped INTEGER NOT NULL DEFAULT 0,
                    failed INTEGER NOT NULL DEFAULT 0,
                    failed_repositories INTEGER NOT NULL DEFAULT 0,
                    error TEXT
                );
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def find_issue(self, external_id: str) -> CandidateItem | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM issues WHERE external_id = ?",
                (external_id,),
            ).fetchone()
            return self._to_candidate_item(row) if row else None

    def upsert_issue(self, update: IssueUpdate) -> Literal["created", "updated"]:
        row = issue_row(update)
        assignments = ",\n".join(
            f"{column} = excluded.{column}" for column in ISSUE_COLUMNS if column != "external_id"
        )
        with self._lock:
            exists = (
                self.connection.execute(
                    "SELECT 1 FROM issues WHERE external_id = ?",
                    (update.external_id,),
                ).fetchone()
                is not None
            )
            self.connection.execute(
                f"""
                INSERT INTO issues ({", ".join(ISSUE_COLUMNS)}, first_seen_at)
                VALUES ({", ".join("?" for _ in ISSUE_COLUMNS)}, ?)
                ON CONFLICT(external_id) DO UPDATE SET
                {assignments}
                """,
                (*(row[column] for column in ISSUE_COLUMNS), now_utc_iso()),
            )
            self.connection.commit()
            return "updated" if exists else "created"

    def bulk_deactivate_older_than(self, threshold: datetime) -> int:
        with self._lock:
            cursor = self.connection.execute(
                """
                UPDATE issues
                SET active = 0
                WHERE active = 1 AND last_activity_at < ?
                """,
                (to_utc_iso(threshold),),
            )
            self.connection.commit()
            return cursor.rowcount

    def list_active_issues(self, limit: int = 1000) -> list[CandidateItem]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT *
                FROM issues
                WHERE active = 1 AND state = 'open'
                ORDER BY popularity DESC, last_activity_at DESC, external_id ASC
                LIMIT ?
                """,
                (limit,),
            )
            return [self._to_candidate_item(row) for row in cursor.fetchall()]

    def search_issues(
        self,
        *,
        text: str | None = None,
        language: str | None = None,
        difficulty: str | None = None,
        labels: list[str] | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> tuple[list[CandidateItem], int]:
        """Filter open active issues, newest activity first.

        ``text`` and ``language`` are case-insensitive substring matches; ``labels`` matches
        issues carrying any of the given labels. Returns one page plus the total match count.
        """
        clauses = ["active = 1", "state = 'open'"]
        params: list[Any] = []
        if text:
            pattern = f"%{like_escape(text)}%"
            clauses.append(
                "(title LIKE ? ESCAPE '\\' OR body LIKE ? ESCAPE '\\'"
                " OR json_extract(repository_json, '$.name') LIKE ? ESCAPE '\\')"
            )
            params.extend([pattern, pattern, pattern])
        if language:
            clauses.append("json_extract(repository_json, '$.language') LIKE ? ESCAPE '\\'")
            params.append(f"%{like_escape(language)}%")
        if difficulty:
            clauses.append("difficulty = ?")
            params.append(difficulty)
        wanted = [label.strip().lower() for label in labels or [] if label.strip()]
        if wanted:
            clauses.append(
                "EXISTS (SELECT 1 FROM json_each(labels_json) WHERE json_each.value IN "
                f"({', '.join('?' for _ in wanted)}))"
            )
            params.extend(wanted)
        where = " AND ".join(clauses)

        with self._lock:
            total = int(
                self.connection.execute(
                    f"SELECT COUNT(1) AS c FROM issues WHERE {where}",
                    params,
                ).fetchone()["c"]
            )
            cursor = self.connection.execute(
                f"""
                SELECT *
                FROM issues
                WHERE {where}
                ORDER BY last_activity_at DESC, external_id ASC
                LIMIT ? OFFSET ?
                """,
                (*params, limit, (page - 1) * limit),
            )
            return [self._to_candidate_item(row) for row in cursor.fetchall()], total

    def count_issues(self, *, active_only: bool = False) -> int:
        query = "SELECT COUNT(1) AS c FROM issues"
        if active_only:
            query += " WHERE active = 1"
        with self._lock:
            return int(self.connection.execute(query).fetchone()["c"])

    def get_profile(self, username: str) -> ConsumerProfile | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM profiles WHERE username = ?",
                (username,),
            ).fetchone()
            return self._to_profile(row) if row else None

    def save_profile(self, profile: ConsumerProfile) -> ConsumerProfile:
        now = now_utc_iso()
        with self._lock:
            self.connection.execute(
                """
                INSERT INTO profiles (
                    username,
                    bio,
                    skills_json,
                    technologies_json,
                    preferred_difficulties_json,
                    created_at,
                    updated_at,
                    last_analyzed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(username) DO UPDATE SET
                    bio = excluded.bio,
                    skills_json = excluded.skills_json,
                    technologies_json = excluded.technologies_json,
                    preferred_difficulties_json = excluded.preferred_difficulties_json,
                    updated_at = excluded.updated_at,
                    last_analyzed_at = excluded.last_analyzed_at
                """,
                (
                    profile.username,
                    profile.bio,
                    json.dumps([skill.model_dump() for skill in profile.skills]),
                    json.dumps([usage.model_dump() for usage in profile.technologies]),
                    json.dumps(sorted(profile.preferred_difficulties)),
                    profile.created_at or now,
                    now,
                    profile.last_analyzed_at,
                ),
            )
            self.connection.commit()
            stored = self.get_profile(profile.username)
            if stored is None:
                raise RuntimeError(f"Profile {profile.username} was not persisted")
            return stored

    def record_aggregation_run(self, report: AggregationReport) -> AggregationReport:
        values = report.model_dump(include=set(RUN_COLUMNS))
        with self._lock:
            cursor = self.connection.execute(
                f"""
                INSERT INTO aggregation_runs ({", ".join(RUN_COLUMNS)})
                VALUES ({", ".join("?" for _ in RUN_COLUMNS)})
                """,
                tuple(values[column] for column in RUN_COLUMNS),
            )
            self.connection.commit()
            return report.model_copy(update={"run_id": int(cursor.lastrowid)})

    def list_aggregation_runs(self, limit: int = 20) -> list[AggregationReport]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT id AS run_id, *
                FROM aggregation_runs
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,),
            )
            return [
                AggregationReport(**{key: row[key] for key in ("run_id", *RUN_COLUMNS)})
                for row in cursor.fetchall()
            ]

    def _to_candidate_item(self, row: sqlite3.Row) -> CandidateItem:
        return CandidateItem(
            external_id=row["external_id"],
            number=row["number"],
            title=row["title"],
            body=row["body"],
            state=row["state"],
            repository=RepositoryInfo(**json.loads(row["repository_json"])),
            labels=json.loads(row["labels_json"]),
            difficulty=row["difficulty"],
            required_skills=json.loads(row["required_skills_json"]),
            estimated_hours=row["estimated_hours"],
            popularity=row["popularity"],
            html_url=row["html_url"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_activity_at=row["last_activity_at"],
            active=bool(row["active"]),
            first_seen_at=row["first_seen_at"],
        )

    def _to_profile(self, row: sqlite3.Row) -> ConsumerProfile:
        return ConsumerProfile(
            username=row["username"],
            bio=row["bio"],
            skills=[Skill(**item) for item in json.loads(row["skills_json"])],
            technologies=[
                TechnologyUsage(**item) for item in json.loads(row["technologies_json"])
            ],
            preferred_difficulties=set(json.loads(row["preferred_difficulties_json"])),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            last_analyzed_at=row["last_analyzed_at"],
        )
