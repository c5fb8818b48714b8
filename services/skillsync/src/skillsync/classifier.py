from __future__ import annotations

import json
import logging
import re

from skillsync.models import Classification, DifficultyTier
from skillsync.normalizer import normalize

LOGGER = logging.getLogger("skillsync.classifier")

NOVICE_LABELS = frozenset({"good first issue", "good-first-issue"})
INTERMEDIATE_LABELS = frozenset({"help wanted"})
NOVICE_TEXT = re.compile(r"\b(?:easy|simple|beginner)", re.IGNORECASE)
ADVANCED_TEXT = re.compile(r"\b(?:advanced|complex)", re.IGNORECASE)

SKILL_PATTERNS: tuple[tuple[re.Pattern[str], str], ...] = (
    (re.compile(r"\b(?:react|vue|angular|svelte)", re.IGNORECASE), "frontend"),
    (re.compile(r"\b(?:node|express|django|flask)", re.IGNORECASE), "backend"),
    (re.compile(r"\b(?:mongodb|mysql|postgresql|sqlite)", re.IGNORECASE), "database"),
    (
        re.compile(r"\b(?:tensorflow|pytorch|scikit-learn|keras)", re.IGNORECASE),
        "machine-learning",
    ),
    (re.compile(r"\b(?:docker|kubernetes|aws|azure|gcp)", re.IGNORECASE), "cloud"),
    (re.compile(r"\b(?:git|github|gitlab)\b", re.IGNORECASE), "version-control"),
    (re.compile(r"\b(?:scrum|kanban|agile)", re.IGNORECASE), "project-management"),
    (re.compile(r"\b(?:photoshop|illustrator|figma)", re.IGNORECASE), "design"),
    (re.compile(r"\b(?:excel|csv|data analysis)", re.IGNORECASE), "data-analysis"),
)

BASE_EFFORT_HOURS: dict[str, int] = {
    "novice": 2,
    "intermediate": 4,
    "advanced": 6,
    "expert": 8,
}
LONG_BODY_WORDS = 300
SHORT_BODY_WORDS = 50
MIN_EFFORT_HOURS = 1
MAX_EFFORT_HOURS = 24

FALLBACK = Classification(difficulty="intermediate", required_skills=[], estimated_hours=4)


def determine_difficulty(text: str, labels: set[str]) -> DifficultyTier:
    if labels & NOVICE_LABELS:
        return "novice"
    if labels & INTERMEDIATE_LABELS:
        return "intermediate"
    if NOVICE_TEXT.search(text):
        return "novice"
    if ADVANCED_TEXT.search(text):
        return "advanced"
    return "intermediate"


def extract_required_skills(text: str, labels: list[str], language: str | None) -> list[str]:
    found: dict[str, None] = {}
    for pattern, skill in SKILL_PATTERNS:
        if pattern.search(text):
            found[skill] = None
    for label in labels:
        normalized = normalize(label)
        if normalized:
            found[normalized] = None
    normalized_language = normalize(language)
    if normalized_language:
        found[normalized_language] = None
    return list(found)


def estimate_hours(difficulty: DifficultyTier, text: str) -> int:
    hours = BASE_EFFORT_HOURS.get(difficulty, BASE_EFFORT_HOURS["intermediate"])
    word_count = len(text.split())
    if word_count > LONG_BODY_WORDS:
        hours += 2
    elif word_count < SHORT_BODY_WORDS:
        hours -= 1
    return max(MIN_EFFORT_HOURS, min(hours, MAX_EFFORT_HOURS))


def classify(text: str, labels: list[str], language: str | None) -> Classification:
    """Classify an item from its text, lower-cased label names and repository language.

    Never raises; any failure yields the intermediate/no-skills/4h fallback.
    """
    try:
        label_names = [label.strip().lower() for label in labels if label and label.strip()]
        difficulty = determine_difficulty(text, set(label_names))
        return Classification(
            difficulty=difficulty,
            required_skills=extract_required_skills(text, label_names, language),
            estimated_hours=estimate_hours(difficulty, text),
        )
    except Exception:
        LOGGER.exception(json.dumps({"event": "classification_failed"}))
        return FALLBACK.model_copy(deep=True)


def classify_issue(
    title: str,
    body: str | None,
    labels: list[str],
    language: str | None,
) -> Classification:
    return classify(f"{title} {body or ''}", labels, language)
