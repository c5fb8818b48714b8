from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from datetime import datetime

from common.utils import now_utc
from pydantic import BaseModel

LOGGER = logging.getLogger("skillsync.ratelimit")

DEFAULT_QUOTA_THRESHOLD = 10


class Quota(BaseModel):
    remaining: int
    reset_at: datetime


class RateLimitGovernor:
    """Blocks the calling thread until quota resets when remaining calls run low."""

    def __init__(
        self,
        check_quota: Callable[[], Quota],
        *,
        threshold: int = DEFAULT_QUOTA_THRESHOLD,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = now_utc,
    ) -> None:
        self._check_quota = check_quota
        self.threshold = threshold
        self._sleep = sleep
        self._clock = clock
        self.waits = 0

    def wait_if_needed(self) -> float:
        """Return the number of seconds spent waiting (0 when quota is healthy)."""
        try:
            quota = self._check_quota()
        except Exception as exc:
            # Quota lookup is best-effort; the guarded call still runs.
            LOGGER.warning(json.dumps({"event": "rate_limit_check_failed", "error": str(exc)}))
            return 0.0

        if quota.remaining >= self.threshold:
            return 0.0

        wait_seconds = max((quota.reset_at - self._clock()).total_seconds(), 0.0)
        LOGGER.info(
            json.dumps(
                {
                    "event": "rate_limit_wait",
                    "remaining": quota.remaining,
                    "threshold": self.threshold,
                    "wait_seconds": round(wait_seconds, 3),
                }
            )
        )
        if wait_seconds > 0:
            self.waits += 1
            self._sleep(wait_seconds)
        return wait_seconds
