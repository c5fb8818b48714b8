from __future__ import annotations

import json
import logging

from common.utils import contains_keyword

from skillsync.models import (
    ActivityEvent,
    Artifact,
    ExtractionResult,
    Skill,
    SkillTier,
    TechnologyUsage,
    TIER_ORDER,
    tier_rank,
)
from skillsync.normalizer import SkillSet

LOGGER = logging.getLogger("skillsync.extractor")

TECHNOLOGY_VOCABULARY: tuple[str, ...] = (
    "react", "vue", "angular", "svelte", "nodejs", "express", "fastapi",
    "django", "flask", "rails", "spring", "laravel", "symfony",
    "tensorflow", "pytorch", "scikit-learn", "pandas", "numpy",
    "docker", "kubernetes", "aws", "azure", "gcp", "mongodb",
    "postgresql", "mysql", "redis", "elasticsearch", "graphql",
    "nextjs", "nuxtjs", "gatsby", "webpack", "vite", "tailwindcss",
    "typescript", "javascript", "java", "csharp", "c++", "go", "rust",
    "php", "ruby", "swift", "objective-c", "scala", "haskell", "matlab",
    "jupyter", "notebook", "firebase", "supabase", "rabbitmq", "celery",
    "airflow", "spark", "hadoop", "bigquery", "redshift", "snowflake",
    "heroku", "vercel", "netlify", "digitalocean", "linode", "openai",
    "huggingface", "langchain", "llama", "transformers", "grpc", "protobuf",
    "eslint", "prettier", "storybook", "jest", "mocha", "chai", "cypress",
    "playwright", "puppeteer", "selenium", "circleci", "github actions",
    "travis", "jenkins", "ansible", "terraform", "pulumi", "prometheus",
    "grafana", "sentry", "datadog", "newrelic", "rollbar", "logrocket",
)

TASK_KEYWORDS: tuple[str, ...] = (
    "api", "database", "frontend", "backend", "ui", "testing",
    "deployment", "security", "performance", "bug", "feature",
)

REPO_NAME_PATTERNS: dict[str, tuple[str, ...]] = {
    "web": ("html", "css", "javascript"),
    "api": ("backend", "api"),
    "mobile": ("mobile-development",),
    "data": ("data-analysis", "python"),
    "ml": ("machine-learning", "python"),
    "bot": ("automation", "scripting"),
}

DEFAULT_SKILLS: tuple[str, ...] = ("javascript", "html", "css", "git")
DEFAULT_TIER: SkillTier = "novice"
DEFAULT_CONFIDENCE = 0.5

# (minimum artifact count, size must exceed, tier), checked top-down.
LANGUAGE_TIER_THRESHOLDS: tuple[tuple[int, int, SkillTier], ...] = (
    (10, 10000, "expert"),
    (5, 5000, "advanced"),
    (3, 1000, "intermediate"),
)


def find_technologies(text: str | None) -> list[str]:
    if not text:
        return []
    return [keyword for keyword in TECHNOLOGY_VOCABULARY if contains_keyword(text, keyword)]


def find_task_keywords(message: str | None) -> list[str]:
    if not message:
        return []
    return [keyword for keyword in TASK_KEYWORDS if contains_keyword(message, keyword)]


def infer_from_repo_name(repo_name: str | None) -> list[str]:
    if not repo_name:
        return []
    lowered = repo_name.lower()
    inferred: list[str] = []
    for pattern, related in REPO_NAME_PATTERNS.items():
        if pattern in lowered:
            inferred.extend(related)
    return inferred


def language_tier(artifact_count: int, total_size: int) -> SkillTier:
    for min_count, min_size, tier in LANGUAGE_TIER_THRESHOLDS:
        if artifact_count >= min_count and total_size > min_size:
            return tier
    return "novice"


def tier_for_confidence(tier: SkillTier, confidence: float) -> SkillTier:
    rank = tier_rank(tier)
    if confidence < 0.3:
        rank = 0
    elif confidence < 0.6:
        rank = min(1, rank)
    elif confidence > 0.9:
        rank = max(rank, 2)
    return TIER_ORDER[rank]


def default_skills() -> list[Skill]:
    return [
        Skill(name=name, tier=DEFAULT_TIER, confidence=DEFAULT_CONFIDENCE, origin="artifact")
        for name in DEFAULT_SKILLS
    ]


def extract_profile(
    username: str,
    artifacts: list[Artifact],
    events: list[ActivityEvent],
    *,
    bio: str | None = None,
) -> ExtractionResult:
    """Derive a skill list and technology usage breakdown from a consumer's footprint.

    Pure and deterministic: identical inputs always yield identical output. Any
    internal failure degrades to the default skill set instead of raising.
    """
    try:
        return _extract(artifacts, events, bio)
    except Exception:
        LOGGER.exception(
            json.dumps({"event": "skill_extraction_failed", "username": username})
        )
        return ExtractionResult(skills=default_skills(), technologies=[])


def _extract(
    artifacts: list[Artifact],
    events: list[ActivityEvent],
    bio: str | None,
) -> ExtractionResult:
    skills = SkillSet()
    languages: dict[str, TechnologyUsage] = {}

    if not artifacts:
        for technology in find_technologies(bio):
            skills.add(technology, "novice", 0.6, "artifact")

    for artifact in artifacts:
        if artifact.language:
            key = artifact.language.lower()
            usage = languages.setdefault(key, TechnologyUsage(name=artifact.language))
            usage.artifact_count += 1
            usage.size += max(artifact.size, 0)
            skills.add(
                artifact.language,
                language_tier(usage.artifact_count, usage.size),
                0.8,
                "artifact",
            )

        for topic in artifact.topics:
            skills.add(topic, "intermediate", 0.6, "artifact")

        text = f"{artifact.name} {artifact.description or ''}"
        for technology in find_technologies(text):
            skills.add(technology, "intermediate", 0.7, "artifact")

    for event in events:
        for message in event.messages:
            for keyword in find_task_keywords(message):
                skills.add(keyword, "intermediate", 0.5, "activity")
        for inferred in infer_from_repo_name(event.repo_name):
            skills.add(inferred, "novice", 0.4, "activity")

    if len(skills) == 0:
        for skill in default_skills():
            skills.add(skill.name, skill.tier, skill.confidence, skill.origin)

    final_skills = []
    for skill in skills:
        confidence = max(0.0, min(skill.confidence, 1.0))
        final_skills.append(
            skill.model_copy(
                update={
                    "confidence": confidence,
                    "tier": tier_for_confidence(skill.tier, confidence),
                }
            )
        )

    total_size = sum(usage.size for usage in languages.values())
    technologies = [
        usage.model_copy(
            update={"percentage": (usage.size / total_size) * 100 if total_size > 0 else 0.0}
        )
        for usage in languages.values()
    ]
    return ExtractionResult(skills=final_skills, technologies=technologies)
