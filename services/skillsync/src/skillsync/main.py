from __future__ import annotations

import json
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Literal

from common.utils import now_utc, now_utc_iso
from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from skillsync.aggregator import IssueAggregator
from skillsync.models import (
    AggregationReport,
    CandidateItem,
    ConsumerProfile,
    DifficultyTier,
    MatchResult,
    SkillTier,
)
from skillsync.profiles import add_manual_skill, remove_skill, sync_profile, update_preferences
from skillsync.repository import SkillSyncRepository
from skillsync.scheduler import AggregationScheduler
from skillsync.scorer import MIN_RECOMMENDATION_SCORE, advanced_score, rank_issues, reasons
from skillsync.settings import Settings
from skillsync.source import GitHubSource, InlineIssueSource, IssueSource, SourceError

LOGGER = logging.getLogger("skillsync.api")


class ProfileSyncRequest(BaseModel):
    bio: str | None = Field(default=None, max_length=2000)


class PreferencesUpdateRequest(BaseModel):
    preferred_difficulties: list[DifficultyTier] = Field(default_factory=list)


class ManualSkillRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    tier: SkillTier


class AggregationStatusResponse(BaseModel):
    state: Literal["idle", "running"]
    scheduler_running: bool
    last_report: AggregationReport | None = None


class AggregationRunsResponse(BaseModel):
    runs: list[AggregationReport]


class CleanupResponse(BaseModel):
    deactivated: int


class Pagination(BaseModel):
    page: int
    limit: int
    total: int
    has_more: bool


class RecommendationsResponse(BaseModel):
    username: str
    generated_at: str
    candidates: int
    recommendations: list[MatchResult]
    pagination: Pagination


class ScoredIssue(BaseModel):
    item: CandidateItem
    score: float | None = None
    reasons: list[str] | None = None


class IssueSearchResponse(BaseModel):
    username: str | None = None
    results: list[ScoredIssue]
    pagination: Pagination


class IssueCountResponse(BaseModel):
    active: int
    total: int


def elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)


def paginate(page: int, limit: int, total: int) -> Pagination:
    return Pagination(page=page, limit=limit, total=total, has_more=page * limit < total)


def score_issue(item: CandidateItem, profile: ConsumerProfile | None) -> ScoredIssue:
    if profile is None:
        return ScoredIssue(item=item)
    return ScoredIssue(
        item=item,
        score=advanced_score(profile, item, now_utc()),
        reasons=reasons(profile, item),
    )


def build_source(settings: Settings) -> IssueSource:
    if settings.github_token:
        return GitHubSource(
            settings.github_token,
            base_url=settings.github_base_url,
            quota_threshold=settings.quota_threshold,
        )
    if settings.inline_source_path:
        return InlineIssueSource.from_json_file(settings.inline_source_path)
    LOGGER.warning(
        json.dumps(
            {
                "event": "source_not_configured",
                "detail": "GITHUB_API_TOKEN is not set; aggregation runs against an empty source",
            }
        )
    )
    return InlineIssueSource()


def create_app(
    *,
    database_path: str | None = None,
    source: IssueSource | None = None,
    settings: Settings | None = None,
    start_scheduler: bool | None = None,
) -> FastAPI:
    resolved_settings = settings or Settings.from_env()
    if database_path:
        resolved_settings = resolved_settings.model_copy(update={"database_path": database_path})
    scheduler_enabled = (
        resolved_settings.scheduler_enabled if start_scheduler is None else start_scheduler
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        repository = SkillSyncRepository(resolved_settings.database_path)
        await run_in_threadpool(repository.connect)
        resolved_source = source or build_source(resolved_settings)
        aggregator = IssueAggregator(repository, resolved_source, settings=resolved_settings)
        scheduler = AggregationScheduler(
            aggregator,
            interval_seconds=resolved_settings.aggregation_interval_seconds,
            warmup_seconds=resolved_settings.warmup_seconds,
        )
        app.state.settings = resolved_settings
        app.state.repository = repository
        app.state.source = resolved_source
        app.state.aggregator = aggregator
        app.state.scheduler = scheduler
        if scheduler_enabled:
            scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()
            idle = await run_in_threadpool(
                aggregator.wait_idle,
                resolved_settings.shutdown_timeout_seconds,
            )
            if not idle:
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "shutdown_cycle_still_running",
                            "timeout_seconds": resolved_settings.shutdown_timeout_seconds,
                        }
                    )
                )
            if isinstance(resolved_source, GitHubSource) and source is None:
                resolved_source.close()
            await run_in_threadpool(repository.close)

    app = FastAPI(title="SkillSync Issue Matcher", version="0.1.0", lifespan=lifespan)

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()
        record: dict[str, object] = {
            "event": "request_complete",
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
        }

        try:
            response = await call_next(request)
        except Exception as exc:
            record.update(status_code=500, duration_ms=elapsed_ms(started), error=str(exc))
            LOGGER.exception(json.dumps(record))
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        record.update(status_code=response.status_code, duration_ms=elapsed_ms(started))
        response.headers["x-request-id"] = request_id
        LOGGER.info(json.dumps(record))
        return response

    async def load_profile_or_404(request: Request, username: str) -> ConsumerProfile:
        profile = await run_in_threadpool(request.app.state.repository.get_profile, username)
        if profile is None:
            raise HTTPException(status_code=404, detail="Unknown profile")
        return profile

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "skillsync"}

    @app.get("/aggregation/status", response_model=AggregationStatusResponse)
    async def aggregation_status(request: Request) -> AggregationStatusResponse:
        aggregator: IssueAggregator = request.app.state.aggregator
        return AggregationStatusResponse(
            state=aggregator.state,
            scheduler_running=request.app.state.scheduler.running,
            last_report=aggregator.last_report,
        )

    @app.post("/aggregation/run", response_model=AggregationReport)
    async def run_aggregation(request: Request) -> AggregationReport:
        return await run_in_threadpool(request.app.state.aggregator.run_cycle, "manual")

    @app.post("/aggregation/cleanup", response_model=CleanupResponse)
    async def cleanup_stale_issues(request: Request) -> CleanupResponse:
        deactivated = await run_in_threadpool(request.app.state.aggregator.cleanup_stale)
        return CleanupResponse(deactivated=deactivated)

    @app.get("/aggregation/runs", response_model=AggregationRunsResponse)
    async def aggregation_runs(
        request: Request,
        limit: int = Query(default=20, ge=1, le=200),
    ) -> AggregationRunsResponse:
        runs = await run_in_threadpool(request.app.state.repository.list_aggregation_runs, limit)
        return AggregationRunsResponse(runs=runs)

    @app.get("/issues", response_model=list[CandidateItem])
    async def list_issues(
        request: Request,
        limit: int = Query(default=100, ge=1, le=1000),
    ) -> list[CandidateItem]:
        return await run_in_threadpool(request.app.state.repository.list_active_issues, limit)

    @app.get("/issues/count", response_model=IssueCountResponse)
    async def count_issues(request: Request) -> IssueCountResponse:
        repository: SkillSyncRepository = request.app.state.repository
        active = await run_in_threadpool(lambda: repository.count_issues(active_only=True))
        total = await run_in_threadpool(repository.count_issues)
        return IssueCountResponse(active=active, total=total)

    @app.get("/issues/search", response_model=IssueSearchResponse)
    async def search_issues(
        request: Request,
        q: str | None = Query(default=None, max_length=200),
        language: str | None = Query(default=None, max_length=50),
        difficulty: DifficultyTier | None = None,
        labels: str | None = Query(default=None, max_length=500),
        username: str | None = None,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
    ) -> IssueSearchResponse:
        profile = await load_profile_or_404(request, username) if username else None
        items, total = await run_in_threadpool(
            lambda: request.app.state.repository.search_issues(
                text=q.strip() if q else None,
                language=language,
                difficulty=difficulty,
                labels=labels.split(",") if labels else None,
                page=page,
                limit=limit,
            )
        )
        return IssueSearchResponse(
            username=username,
            results=[score_issue(item, profile) for item in items],
            pagination=paginate(page, limit, total),
        )

    @app.get("/issues/{external_id}", response_model=ScoredIssue)
    async def get_issue(
        external_id: str,
        request: Request,
        username: str | None = None,
    ) -> ScoredIssue:
        item = await run_in_threadpool(request.app.state.repository.find_issue, external_id)
        if item is None:
            raise HTTPException(status_code=404, detail="Unknown issue")
        profile = await load_profile_or_404(request, username) if username else None
        return score_issue(item, profile)

    @app.post("/profiles/{username}/sync", response_model=ConsumerProfile)
    async def sync_consumer_profile(
        username: str,
        request: Request,
        payload: ProfileSyncRequest | None = None,
    ) -> ConsumerProfile:
        try:
            return await run_in_threadpool(
                sync_profile,
                request.app.state.repository,
                request.app.state.source,
                username,
                bio=payload.bio if payload else None,
            )
        except SourceError as exc:
            raise HTTPException(
                status_code=502,
                detail={"username": username, "error": str(exc)},
            ) from exc

    @app.get("/profiles/{username}", response_model=ConsumerProfile)
    async def get_profile(username: str, request: Request) -> ConsumerProfile:
        return await load_profile_or_404(request, username)

    @app.put("/profiles/{username}/preferences", response_model=ConsumerProfile)
    async def put_preferences(
        username: str,
        payload: PreferencesUpdateRequest,
        request: Request,
    ) -> ConsumerProfile:
        profile = await load_profile_or_404(request, username)
        updated = update_preferences(profile, set(payload.preferred_difficulties))
        return await run_in_threadpool(request.app.state.repository.save_profile, updated)

    @app.post("/profiles/{username}/skills", response_model=ConsumerProfile)
    async def post_skill(
        username: str,
        payload: ManualSkillRequest,
        request: Request,
    ) -> ConsumerProfile:
        profile = await load_profile_or_404(request, username)
        try:
            updated = add_manual_skill(profile, payload.name, payload.tier)
        except ValueError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        return await run_in_threadpool(request.app.state.repository.save_profile, updated)

    @app.delete("/profiles/{username}/skills/{skill_name}", response_model=ConsumerProfile)
    async def delete_skill(username: str, skill_name: str, request: Request) -> ConsumerProfile:
        profile = await load_profile_or_404(request, username)
        updated, removed = remove_skill(profile, skill_name)
        if not removed:
            raise HTTPException(status_code=404, detail="Unknown skill")
        return await run_in_threadpool(request.app.state.repository.save_profile, updated)

    @app.get("/profiles/{username}/recommendations", response_model=RecommendationsResponse)
    async def recommendations(
        username: str,
        request: Request,
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
        min_score: float = Query(default=MIN_RECOMMENDATION_SCORE, ge=0.0, le=1.0),
    ) -> RecommendationsResponse:
        profile = await load_profile_or_404(request, username)
        repository: SkillSyncRepository = request.app.state.repository
        candidates = await run_in_threadpool(repository.list_active_issues, 1000)
        if not candidates:
            await run_in_threadpool(request.app.state.aggregator.run_cycle, "manual")
            candidates = await run_in_threadpool(repository.list_active_issues, 1000)

        ranked = rank_issues(profile, candidates, limit=len(candidates), min_score=min_score)
        start = (page - 1) * limit
        return RecommendationsResponse(
            username=username,
            generated_at=now_utc_iso(),
            candidates=len(candidates),
            recommendations=ranked[start : start + limit],
            pagination=paginate(page, limit, len(ranked)),
        )

    return app


app = create_app()
