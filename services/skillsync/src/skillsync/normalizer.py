from __future__ import annotations

import re
from collections.abc import Iterator

from skillsync.models import Skill, SkillOrigin, SkillTier, tier_rank

_DISALLOWED_CHARS = re.compile(r"[^a-z0-9+\-.]")

# Canonical values only use characters that survive stripping, so normalize() is idempotent.
SKILL_ALIASES: dict[str, str] = {
    "js": "javascript",
    "ts": "typescript",
    "py": "python",
    "py3": "python",
    "python3": "python",
    "golang": "go",
    "nodejs": "node.js",
    "node": "node.js",
    "reactjs": "react",
    "react.js": "react",
    "vuejs": "vue",
    "vue.js": "vue",
    "angularjs": "angular",
    "nextjs": "next.js",
    "nuxtjs": "nuxt.js",
    "c#": "csharp",
    "f#": "fsharp",
    "cpp": "c++",
    "postgres": "postgresql",
    "mongo": "mongodb",
    "k8s": "kubernetes",
    "tf": "tensorflow",
    "pt": "pytorch",
    "sklearn": "scikit-learn",
    "jupyternotebook": "jupyter",
    "jupyter notebook": "jupyter",
    "ghactions": "github-actions",
    "github actions": "github-actions",
    "githubactions": "github-actions",
    "ci": "continuous-integration",
    "cd": "continuous-deployment",
    "machine learning": "machine-learning",
    "machinelearning": "machine-learning",
    "ml": "machine-learning",
    "data analysis": "data-analysis",
    "dataanalysis": "data-analysis",
    "version control": "version-control",
    "versioncontrol": "version-control",
    "project management": "project-management",
    "projectmanagement": "project-management",
    "mobile development": "mobile-development",
    "mobiledevelopment": "mobile-development",
}


def normalize(raw_name: object) -> str | None:
    """Map a free-text technology name onto the canonical skill vocabulary.

    Returns ``None`` for anything that cannot be a skill name; callers skip those.
    """
    if not isinstance(raw_name, str):
        return None
    lowered = raw_name.strip().lower()
    if not lowered:
        return None
    if lowered in SKILL_ALIASES:
        return SKILL_ALIASES[lowered]
    stripped = _DISALLOWED_CHARS.sub("", lowered)
    if not stripped:
        return None
    return SKILL_ALIASES.get(stripped, stripped)


def higher_tier(current: SkillTier, candidate: SkillTier) -> SkillTier:
    return candidate if tier_rank(candidate) > tier_rank(current) else current


def merge(
    skills: dict[str, Skill],
    name: str,
    tier: SkillTier,
    confidence: float,
    origin: SkillOrigin,
) -> Skill | None:
    """Insert a skill observation or fold it into the existing entry.

    Confidence becomes the mean of old and new; tier only ever moves up.
    """
    normalized = normalize(name)
    if normalized is None:
        return None

    existing = skills.get(normalized)
    if existing is None:
        skill = Skill(name=normalized, tier=tier, confidence=_clamp(confidence), origin=origin)
        skills[normalized] = skill
        return skill

    existing.confidence = _clamp((existing.confidence + confidence) / 2)
    existing.tier = higher_tier(existing.tier, tier)
    return existing


class SkillSet:
    """Ordered collection of skills keyed by normalized name."""

    def __init__(self, skills: list[Skill] | None = None) -> None:
        self._skills: dict[str, Skill] = {}
        for skill in skills or []:
            normalized = normalize(skill.name)
            if normalized is None:
                continue
            if normalized in self._skills:
                merge(self._skills, normalized, skill.tier, skill.confidence, skill.origin)
            else:
                self._skills[normalized] = skill.model_copy(update={"name": normalized})

    def add(
        self,
        name: str,
        tier: SkillTier,
        confidence: float,
        origin: SkillOrigin,
    ) -> Skill | None:
        return merge(self._skills, name, tier, confidence, origin)

    def put(self, skill: Skill) -> Skill | None:
        normalized = normalize(skill.name)
        if normalized is None:
            return None
        stored = skill.model_copy(update={"name": normalized})
        self._skills[normalized] = stored
        return stored

    def remove(self, name: str) -> bool:
        normalized = normalize(name)
        if normalized is None:
            return False
        return self._skills.pop(normalized, None) is not None

    def get(self, name: str) -> Skill | None:
        normalized = normalize(name)
        if normalized is None:
            return None
        return self._skills.get(normalized)

    def names(self) -> set[str]:
        return set(self._skills)

    def to_list(self) -> list[Skill]:
        return list(self._skills.values())

    def __contains__(self, name: object) -> bool:
        normalized = normalize(name)
        return normalized is not None and normalized in self._skills

    def __iter__(self) -> Iterator[Skill]:
        return iter(self._skills.values())

    def __len__(self) -> int:
        return len(self._skills)


def _clamp(value: float) -> float:
    return max(0.0, min(float(value), 1.0))
