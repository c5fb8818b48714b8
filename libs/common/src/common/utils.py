from __future__ import annotations

import re
from datetime import UTC, datetime

_WORD_CHARS = "a-z0-9"


def now_utc() -> datetime:
    return datetime.now(UTC)


def now_utc_iso() -> str:
    return now_utc().isoformat()


def parse_iso_datetime(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def age_in_days(moment: datetime, now: datetime | None = None) -> float:
    reference = parse_iso_datetime(now) or now_utc()
    return (reference - parse_iso_datetime(moment)).total_seconds() / 86400


def contains_keyword(text: str, keyword: str) -> bool:
    """True when ``keyword`` occurs in ``text`` without touching other letters or digits."""
    pattern = rf"(?<![{_WORD_CHARS}]){re.escape(keyword.lower())}(?![{_WORD_CHARS}])"
    return re.search(pattern, text.lower()) is not None
