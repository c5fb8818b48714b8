from __future__ import annotations

import os
import tempfile

from pydantic import BaseModel, Field

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "skillsync", "skillsync.sqlite3")


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


def _env_list(name: str) -> list[str]:
    raw = os.getenv(name, "")
    return [value.strip() for value in raw.split(",") if value.strip()]


class Settings(BaseModel):
    database_path: str = DEFAULT_DB_PATH
    github_token: str | None = None
    github_base_url: str = "https://api.github.com"
    inline_source_path: str | None = None
    scheduler_enabled: bool = True
    aggregation_interval_seconds: float = Field(default=1800, gt=0)
    warmup_seconds: float = Field(default=5, ge=0)
    max_attempts: int = Field(default=3, ge=1)
    retry_delay_seconds: float = Field(default=5, ge=0)
    trending_limit: int = Field(default=50, ge=1)
    trending_languages: list[str] = Field(default_factory=list)
    stale_after_days: int = Field(default=30, ge=1)
    quota_threshold: int = Field(default=10, ge=0)
    shutdown_timeout_seconds: float = Field(default=30, ge=0)

    @classmethod
    def from_env(cls) -> Settings:
        return cls(
            database_path=os.getenv("SKILLSYNC_DB_PATH", DEFAULT_DB_PATH),
            github_token=os.getenv("GITHUB_API_TOKEN", "").strip() or None,
            github_base_url=os.getenv("GITHUB_API_BASE_URL", "https://api.github.com"),
            inline_source_path=os.getenv("SKILLSYNC_INLINE_SOURCE_PATH", "").strip() or None,
            scheduler_enabled=_env_bool("SKILLSYNC_SCHEDULER_ENABLED", True),
            aggregation_interval_seconds=float(
                os.getenv("SKILLSYNC_AGGREGATION_INTERVAL_SECONDS", "1800")
            ),
            warmup_seconds=float(os.getenv("SKILLSYNC_WARMUP_SECONDS", "5")),
            max_attempts=int(os.getenv("SKILLSYNC_MAX_ATTEMPTS", "3")),
            retry_delay_seconds=float(os.getenv("SKILLSYNC_RETRY_DELAY_SECONDS", "5")),
            trending_limit=int(os.getenv("SKILLSYNC_TRENDING_LIMIT", "50")),
            trending_languages=_env_list("SKILLSYNC_TRENDING_LANGUAGES"),
            stale_after_days=int(os.getenv("SKILLSYNC_STALE_AFTER_DAYS", "30")),
            quota_threshold=int(os.getenv("SKILLSYNC_QUOTA_THRESHOLD", "10")),
            shutdown_timeout_seconds=float(
                os.getenv("SKILLSYNC_SHUTDOWN_TIMEOUT_SECONDS", "30")
            ),
        )
