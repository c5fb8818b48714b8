from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

SkillTier = Literal["novice", "intermediate", "advanced", "expert"]
DifficultyTier = SkillTier
SkillOrigin = Literal["artifact", "activity", "manual"]
AggregationTrigger = Literal["manual", "scheduled", "startup"]
AggregationStatus = Literal["ok", "error", "skipped"]

TIER_ORDER: tuple[SkillTier, ...] = ("novice", "intermediate", "advanced", "expert")


def tier_rank(tier: str) -> int:
    return TIER_ORDER.index(tier) if tier in TIER_ORDER else 0


class Skill(BaseModel):
    name: str
    tier: SkillTier = "novice"
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)
    origin: SkillOrigin = "artifact"


class TechnologyUsage(BaseModel):
    name: str
    percentage: float = 0.0
    size: int = 0
    artifact_count: int = 0


class ConsumerProfile(BaseModel):
    username: str
    bio: str | None = None
    skills: list[Skill] = Field(default_factory=list)
    technologies: list[TechnologyUsage] = Field(default_factory=list)
    preferred_difficulties: set[DifficultyTier] = Field(default_factory=set)
    created_at: str | None = None
    updated_at: str | None = None
    last_analyzed_at: str | None = None


class Artifact(BaseModel):
    """A repository the consumer owns or contributed to."""

    name: str = ""
    description: str | None = None
    language: str | None = None
    size: int = 0
    topics: list[str] = Field(default_factory=list)


class ActivityEvent(BaseModel):
    """A public activity event; ``messages`` holds commit messages for push events."""

    type: str = ""
    repo_name: str | None = None
    messages: list[str] = Field(default_factory=list)


class ExtractionResult(BaseModel):
    skills: list[Skill]
    technologies: list[TechnologyUsage] = Field(default_factory=list)


class RepositoryInfo(BaseModel):
    name: str
    full_name: str
    owner: str
    description: str | None = None
    language: str | None = None
    stars: int = 0
    url: str | None = None


class Classification(BaseModel):
    difficulty: DifficultyTier = "intermediate"
    required_skills: list[str] = Field(default_factory=list)
    estimated_hours: int = 4


class IssueUpdate(BaseModel):
    """Every field written by an upsert. Fields not listed here are never touched on update."""

    external_id: str
    number: int | None = None
    title: str
    body: str = ""
    state: Literal["open", "closed"] = "open"
    repository: RepositoryInfo
    labels: list[str] = Field(default_factory=list)
    difficulty: DifficultyTier
    required_skills: list[str] = Field(default_factory=list)
    estimated_hours: int
    popularity: float = Field(ge=0.0, le=1.0)
    html_url: str | None = None
    created_at: datetime
    updated_at: datetime
    last_activity_at: datetime
    active: bool = True


class CandidateItem(BaseModel):
    external_id: str
    number: int | None = None
    title: str
    body: str = ""
    state: Literal["open", "closed"] = "open"
    repository: RepositoryInfo
    labels: list[str] = Field(default_factory=list)
    difficulty: DifficultyTier | None = None
    required_skills: list[str] = Field(default_factory=list)
    estimated_hours: int | None = None
    popularity: float = 0.0
    html_url: str | None = None
    created_at: datetime
    updated_at: datetime | None = None
    last_activity_at: datetime | None = None
    active: bool = True
    first_seen_at: str | None = None


class MatchBreakdown(BaseModel):
    language: float | None = None
    skills: float | None = None
    difficulty: float | None = None
    freshness: float
    applicable_weight: float
    final_score: float


class MatchResult(BaseModel):
    item: CandidateItem
    score: float
    reasons: list[str] = Field(default_factory=list)
    breakdown: MatchBreakdown


class AggregationReport(BaseModel):
    run_id: int | None = None
    trigger: AggregationTrigger
    status: AggregationStatus
    started_at: str
    finished_at: str | None = None
    attempts: int = 0
    repositories: int = 0
    fetched: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    failed_repositories: int = 0
    error: str | None = None
