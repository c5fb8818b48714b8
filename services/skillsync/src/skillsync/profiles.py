from __future__ import annotations

import json
import logging
from typing import Any

from common.utils import now_utc_iso

from skillsync.extractor import extract_profile
from skillsync.models import (
    ActivityEvent,
    Artifact,
    ConsumerProfile,
    DifficultyTier,
    Skill,
    SkillTier,
)
from skillsync.normalizer import SkillSet, normalize
from skillsync.repository import SkillSyncRepository
from skillsync.source import IssueSource, SourceNotFoundError

LOGGER = logging.getLogger("skillsync.profiles")

PUSH_EVENT = "PushEvent"


def artifacts_from_payload(repositories: list[dict[str, Any]]) -> list[Artifact]:
    artifacts = []
    for repo in repositories:
        if not isinstance(repo, dict):
            continue
        artifacts.append(
            Artifact(
                name=str(repo.get("name") or ""),
                description=repo.get("description"),
                language=repo.get("language"),
                size=int(repo.get("size") or 0),
                topics=[topic for topic in repo.get("topics") or [] if isinstance(topic, str)],
            )
        )
    return artifacts


def events_from_payload(events: list[dict[str, Any]]) -> list[ActivityEvent]:
    converted = []
    for event in events:
        if not isinstance(event, dict):
            continue
        messages: list[str] = []
        if event.get("type") == PUSH_EVENT:
            for commit in (event.get("payload") or {}).get("commits") or []:
                message = commit.get("message") if isinstance(commit, dict) else None
                if isinstance(message, str) and message:
                    messages.append(message)
        converted.append(
            ActivityEvent(
                type=str(event.get("type") or ""),
                repo_name=(event.get("repo") or {}).get("name"),
                messages=messages,
            )
        )
    return converted


def sync_profile(
    repository: SkillSyncRepository,
    source: IssueSource,
    username: str,
    *,
    bio: str | None = None,
) -> ConsumerProfile:
    """Rebuild a profile's skills and technologies from the source and persist it.

    Preferences survive a re-sync; skills and technologies are replaced wholesale.
    """
    try:
        repositories = source.fetch_user_repositories(username)
    except SourceNotFoundError:
        repositories = []
    try:
        events = source.fetch_activity_events(username)
    except SourceNotFoundError:
        events = []

    existing = repository.get_profile(username)
    resolved_bio = bio if bio is not None else (existing.bio if existing else None)
    result = extract_profile(
        username,
        artifacts_from_payload(repositories),
        events_from_payload(events),
        bio=resolved_bio,
    )

    profile = ConsumerProfile(
        username=username,
        bio=resolved_bio,
        skills=result.skills,
        technologies=result.technologies,
        preferred_difficulties=existing.preferred_difficulties if existing else set(),
        created_at=existing.created_at if existing else None,
        last_analyzed_at=now_utc_iso(),
    )
    saved = repository.save_profile(profile)
    LOGGER.info(
        json.dumps(
            {
                "event": "profile_synced",
                "username": username,
                "skills": len(saved.skills),
                "technologies": len(saved.technologies),
            }
        )
    )
    return saved


def add_manual_skill(profile: ConsumerProfile, name: str, tier: SkillTier) -> ConsumerProfile:
    normalized = normalize(name)
    if normalized is None:
        raise ValueError(f"Invalid skill name: {name!r}")
    skills = SkillSet(profile.skills)
    skills.put(Skill(name=normalized, tier=tier, confidence=1.0, origin="manual"))
    return profile.model_copy(update={"skills": skills.to_list()})


def remove_skill(profile: ConsumerProfile, name: str) -> tuple[ConsumerProfile, bool]:
    skills = SkillSet(profile.skills)
    removed = skills.remove(name)
    return profile.model_copy(update={"skills": skills.to_list()}), removed


def update_preferences(
    profile: ConsumerProfile,
    difficulties: set[DifficultyTier],
) -> ConsumerProfile:
    return profile.model_copy(update={"preferred_difficulties": set(difficulties)})
