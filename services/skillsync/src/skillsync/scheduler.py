from __future__ import annotations

import asyncio
import contextlib
import json
import logging

from fastapi.concurrency import run_in_threadpool

from skillsync.aggregator import IssueAggregator
from skillsync.models import AggregationTrigger

LOGGER = logging.getLogger("skillsync.scheduler")


class AggregationScheduler:
    """Runs a startup cycle after a warm-up delay, then one cycle per interval."""

    def __init__(
        self,
        aggregator: IssueAggregator,
        *,
        interval_seconds: float = 1800,
        warmup_seconds: float = 5,
    ) -> None:
        self.aggregator = aggregator
        self.interval_seconds = interval_seconds
        self.warmup_seconds = warmup_seconds
        self.ticks = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run())

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    async def run(self) -> None:
        await asyncio.sleep(self.warmup_seconds)
        trigger: AggregationTrigger = "startup"
        while True:
            await self.tick(trigger)
            trigger = "scheduled"
            await asyncio.sleep(self.interval_seconds)

    async def tick(self, trigger: AggregationTrigger = "scheduled") -> None:
        self.ticks += 1
        try:
            await run_in_threadpool(self.aggregator.run_cycle, trigger)
        except Exception:
            LOGGER.exception(json.dumps({"event": "scheduled_cycle_crashed", "trigger": trigger}))
