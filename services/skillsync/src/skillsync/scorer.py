from __future__ import annotations

from datetime import datetime

from common.utils import age_in_days, now_utc

from skillsync.models import (
    CandidateItem,
    ConsumerProfile,
    MatchBreakdown,
    MatchResult,
    TechnologyUsage,
)

LANGUAGE_WEIGHT = 0.4
SKILL_WEIGHT = 0.3
DIFFICULTY_WEIGHT = 0.2
FRESHNESS_WEIGHT = 0.1
FRESHNESS_WINDOW_DAYS = 30

MIN_RECOMMENDATION_SCORE = 0.2


def _find_technology(profile: ConsumerProfile, language: str) -> TechnologyUsage | None:
    wanted = language.lower()
    return next(
        (usage for usage in profile.technologies if usage.name.lower() == wanted),
        None,
    )


def _matched_skills(profile: ConsumerProfile, item: CandidateItem) -> list[str]:
    known = {skill.name.lower() for skill in profile.skills}
    return [required for required in item.required_skills if required.lower() in known]


def language_factor(profile: ConsumerProfile, item: CandidateItem) -> float | None:
    language = item.repository.language
    if not language:
        return None
    usage = _find_technology(profile, language)
    if usage is None:
        return 0.0
    return min(usage.percentage / 100, 1.0)


def skill_factor(profile: ConsumerProfile, item: CandidateItem) -> float | None:
    if not item.required_skills:
        return None
    return len(_matched_skills(profile, item)) / len(item.required_skills)


def difficulty_factor(profile: ConsumerProfile, item: CandidateItem) -> float | None:
    if not item.difficulty:
        return None
    return 1.0 if item.difficulty in profile.preferred_difficulties else 0.0


def freshness_factor(created_at: datetime, now: datetime | None = None) -> float:
    decay = 1 - age_in_days(created_at, now or now_utc()) / FRESHNESS_WINDOW_DAYS
    return max(0.0, min(decay, 1.0))


def explain(
    profile: ConsumerProfile,
    item: CandidateItem,
    now: datetime | None = None,
) -> MatchBreakdown:
    language = language_factor(profile, item)
    skills = skill_factor(profile, item)
    difficulty = difficulty_factor(profile, item)
    freshness = freshness_factor(item.created_at, now)

    total = 0.0
    applicable = 0.0
    for value, weight in (
        (language, LANGUAGE_WEIGHT),
        (skills, SKILL_WEIGHT),
        (difficulty, DIFFICULTY_WEIGHT),
        (freshness, FRESHNESS_WEIGHT),
    ):
        if value is None:
            continue
        total += value * weight
        applicable += weight

    final_score = total / applicable if applicable > 0 else 0.0
    return MatchBreakdown(
        language=language,
        skills=skills,
        difficulty=difficulty,
        freshness=freshness,
        applicable_weight=round(applicable, 4),
        final_score=max(0.0, min(final_score, 1.0)),
    )


def score(profile: ConsumerProfile, item: CandidateItem, now: datetime | None = None) -> float:
    return explain(profile, item, now).final_score


# Search results and issue detail views use the same weighting.
advanced_score = score


def reasons(profile: ConsumerProfile, item: CandidateItem) -> list[str]:
    found: list[str] = []
    if item.repository.language:
        usage = _find_technology(profile, item.repository.language)
        if usage is not None:
            found.append(f"Matches your {usage.name} experience")

    matched = _matched_skills(profile, item)
    if matched:
        found.append(f"Matches your skills: {', '.join(matched)}")

    if item.difficulty and item.difficulty in profile.preferred_difficulties:
        found.append("Matches your preferred difficulty level")
    return found


def match(profile: ConsumerProfile, item: CandidateItem, now: datetime | None = None) -> MatchResult:
    breakdown = explain(profile, item, now)
    return MatchResult(
        item=item,
        score=breakdown.final_score,
        reasons=reasons(profile, item),
        breakdown=breakdown,
    )


def rank_issues(
    profile: ConsumerProfile,
    items: list[CandidateItem],
    *,
    limit: int = 20,
    min_score: float = MIN_RECOMMENDATION_SCORE,
    now: datetime | None = None,
) -> list[MatchResult]:
    reference = now or now_utc()
    matches = [match(profile, item, reference) for item in items]
    kept = [result for result in matches if result.score > min_score]
    kept.sort(key=lambda result: (-result.score, -result.item.popularity, result.item.external_id))
    return kept[:limit]
