from __future__ import annotations

import json
import logging
import math
import time
import uuid
from collections.abc import Callable
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from jobfeed.actor import ActorClient
from jobfeed.config import Settings
from jobfeed.errors import PipelineError, RecommendationRunError
from jobfeed.export import render_recommendations_csv
from jobfeed.ingestion import IngestionAdapter
from jobfeed.maintenance import cleanup_jobs, repair_titles
from jobfeed.matching import RecommendationEngine
from jobfeed.metrics import MetricsSnapshot, MetricsStore
from jobfeed.models import (
    CleanupResponse,
    DigestPayload,
    JobSearchResponse,
    JobStatistics,
    MarkNotifiedResponse,
    Pagination,
    RecommendationHistoryResponse,
    RecommendationRun,
    RecommendationRunResponse,
    RepairTitlesRequest,
    RepairTitlesResponse,
    RunDigestsResponse,
    ScheduledScrapeRequest,
    ScheduledScrapeResponse,
    ScrapeHistoryResponse,
    ScrapeRequest,
    ScrapeResponse,
    UserPreferenceProfile,
    UserProfileUpsertRequest,
)
from jobfeed.repository import JobFeedRepository

LOGGER = logging.getLogger("jobmatch.jobfeed")


def route_template(request: Request) -> str:
    route = request.scope.get("route")
    return getattr(route, "path", None) or request.url.path


def create_app(
    *,
    settings: Settings | None = None,
    actor_transport: httpx.BaseTransport | None = None,
    sleep: Callable[[float], None] | None = None,
) -> FastAPI:
    resolved_settings = settings or Settings.from_env()
    repository = JobFeedRepository(database_path=resolved_settings.database_path)

    def actor_factory() -> ActorClient:
        return ActorClient.from_settings(
            resolved_settings,
            transport=actor_transport,
            sleep=sleep or time.sleep,
        )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        app.state.settings = resolved_settings
        app.state.repository = repository
        app.state.actor_factory = actor_factory
        app.state.ingestion = IngestionAdapter(resolved_settings, repository, actor_factory)
        app.state.engine = RecommendationEngine(repository, resolved_settings.matching)
        app.state.metrics = MetricsStore()
        try:
            yield
        finally:
            await run_in_threadpool(repository.close)

    app = FastAPI(title="Jobmatch Job Feed", version="0.3.0", lifespan=lifespan)

    @app.exception_handler(PipelineError)
    async def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
        content: dict[str, object] = {"error": str(exc)}
        if request.url.path == "/scrape":
            content.update({"jobs": [], "totalResults": 0})
        if isinstance(exc, RecommendationRunError):
            content.update({"success": False, "runId": exc.run_id})
        LOGGER.error(
            json.dumps(
                {
                    "event": "invocation_failed",
                    "request_id": getattr(request.state, "request_id", None),
                    "path": request.url.path,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                }
            )
        )
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                path=route_template(request),
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"error": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            path=route_template(request),
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        LOGGER.info(
            json.dumps(
                {
                    "event": "request_complete",
                    "request_id": request_id,
                    "method": request.method,
                    "path": request.url.path,
                    "status_code": response.status_code,
                    "duration_ms": round(duration_ms, 3),
                }
            )
        )
        return response

    async def load_run_or_404(request: Request, run_id: int) -> RecommendationRun:
        run = await run_in_threadpool(request.app.state.repository.get_recommendation_run, run_id)
        if run is None:
            raise HTTPException(status_code=404, detail="Unknown run_id")
        return run

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "jobfeed"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.post("/scrape", response_model=ScrapeResponse)
    async def scrape(payload: ScrapeRequest, request: Request) -> ScrapeResponse:
        result = await run_in_threadpool(
            request.app.state.ingestion.ingest,
            payload.query,
            payload.location,
            payload.max_jobs,
            payload.force_refresh,
        )
        if result.from_cache:
            return ScrapeResponse(
                jobs=result.jobs,
                from_cache=True,
                total_results=result.total_results,
            )
        return ScrapeResponse(
            jobs=result.jobs,
            from_cache=False,
            total_results=result.total_results,
            scraped_count=result.scraped_count,
            skipped_count=result.skipped_count,
            debug_info=result.debug_info(),
        )

    @app.post("/scrape/scheduled", response_model=ScheduledScrapeResponse)
    async def scrape_scheduled(
        request: Request,
        payload: ScheduledScrapeRequest | None = None,
    ) -> ScheduledScrapeResponse:
        options = payload or ScheduledScrapeRequest()
        return await run_in_threadpool(
            request.app.state.ingestion.ingest_titles,
            options.job_titles,
            location=options.location,
            max_jobs_per_title=options.max_jobs_per_title,
        )

    @app.get("/scrape/history", response_model=ScrapeHistoryResponse)
    async def scrape_history(
        request: Request,
        limit: int = Query(default=25, ge=1, le=200),
    ) -> ScrapeHistoryResponse:
        runs = await run_in_threadpool(request.app.state.repository.list_scrape_runs, limit)
        return ScrapeHistoryResponse(runs=runs)

    @app.get("/jobs/search", response_model=JobSearchResponse)
    async def search_jobs(
        request: Request,
        query: str = Query(default="", max_length=200),
        location: str = Query(default="", max_length=200),
        remote_type: str | None = Query(default=None, alias="remoteType"),
        employment_type: str | None = Query(default=None, alias="employmentType"),
        experience_level: str | None = Query(default=None, alias="experienceLevel"),
        company: str | None = Query(default=None, max_length=200),
        max_age_days: int = Query(default=30, ge=1, le=365, alias="maxAgeDays"),
        page: int = Query(default=1, ge=1),
        limit: int = Query(default=20, ge=1, le=100),
    ) -> JobSearchResponse:
        repository: JobFeedRepository = request.app.state.repository
        filters = {
            "max_age_days": max_age_days,
            "remote_type": remote_type,
            "employment_type": employment_type,
            "experience_level": experience_level,
            "company": company,
        }
        total = await run_in_threadpool(
            repository.count_search_results,
            query,
            location,
            **filters,
        )
        jobs = await run_in_threadpool(
            repository.search_jobs,
            query,
            location,
            limit=limit,
            offset=(page - 1) * limit,
            **filters,
        )
        total_pages = math.ceil(total / limit) if total else 0
        warnings: list[str] = []
        if total == 0:
            warnings.append("No cached jobs match this search; run a scrape to refresh the catalogue")
        elif page > total_pages:
            warnings.append(f"Page {page} is past the last page ({total_pages})")
        return JobSearchResponse(
            jobs=jobs,
            pagination=Pagination(
                current_page=page,
                total_pages=total_pages,
                has_next_page=page < total_pages,
                has_previous_page=page > 1,
                total_results=total,
                results_per_page=limit,
            ),
            total_results=total,
            warnings=warnings,
        )

    @app.get("/jobs/statistics", response_model=JobStatistics)
    async def job_statistics(request: Request) -> JobStatistics:
        return await run_in_threadpool(request.app.state.repository.job_statistics)

    @app.post("/jobs/cleanup", response_model=CleanupResponse)
    async def job_cleanup(request: Request) -> CleanupResponse:
        return await run_in_threadpool(
            cleanup_jobs,
            request.app.state.settings,
            request.app.state.repository,
        )

    @app.post("/jobs/repair-titles", response_model=RepairTitlesResponse)
    async def job_repair_titles(
        request: Request,
        payload: RepairTitlesRequest | None = None,
    ) -> RepairTitlesResponse:
        options = payload or RepairTitlesRequest()
        return await run_in_threadpool(
            repair_titles,
            request.app.state.settings,
            request.app.state.repository,
            request.app.state.actor_factory,
            dry_run=options.dry_run,
        )

    @app.post("/profiles", response_model=UserPreferenceProfile)
    async def upsert_profile(
        payload: UserProfileUpsertRequest,
        request: Request,
    ) -> UserPreferenceProfile:
        return await run_in_threadpool(request.app.state.repository.upsert_user_profile, payload)

    @app.get("/profiles", response_model=list[UserPreferenceProfile])
    async def list_profiles(request: Request) -> list[UserPreferenceProfile]:
        return await run_in_threadpool(request.app.state.repository.list_user_profiles)

    @app.get("/profiles/{profile_id}", response_model=UserPreferenceProfile)
    async def get_profile(profile_id: str, request: Request) -> UserPreferenceProfile:
        profile = await run_in_threadpool(request.app.state.repository.get_user_profile, profile_id)
        if profile is None:
            raise HTTPException(status_code=404, detail="Unknown profile_id")
        return profile

    @app.delete("/profiles/{profile_id}")
    async def delete_profile(profile_id: str, request: Request) -> dict[str, bool]:
        deleted = await run_in_threadpool(
            request.app.state.repository.delete_user_profile,
            profile_id,
        )
        if not deleted:
            raise HTTPException(status_code=404, detail="Unknown profile_id")
        return {"deleted": True}

    @app.post("/recommendations/run", response_model=RecommendationRunResponse)
    async def run_recommendations(request: Request) -> RecommendationRunResponse:
        return await run_in_threadpool(request.app.state.engine.run)

    @app.get("/recommendations/runs", response_model=RecommendationHistoryResponse)
    async def recommendation_runs(
        request: Request,
        limit: int = Query(default=25, ge=1, le=200),
    ) -> RecommendationHistoryResponse:
        runs = await run_in_threadpool(request.app.state.repository.list_recommendation_runs, limit)
        return RecommendationHistoryResponse(runs=runs)

    @app.get("/recommendations/runs/{run_id}", response_model=RecommendationRun)
    async def recommendation_run(run_id: int, request: Request) -> RecommendationRun:
        return await load_run_or_404(request, run_id)

    @app.get("/recommendations/runs/{run_id}/export.csv")
    async def export_recommendations(run_id: int, request: Request) -> Response:
        await load_run_or_404(request, run_id)
        rows = await run_in_threadpool(request.app.state.repository.list_run_export_rows, run_id)
        return Response(
            content=render_recommendations_csv(rows),
            media_type="text/csv",
            headers={
                "Content-Disposition": f'attachment; filename="job-recommendations-{run_id}.csv"'
            },
        )

    @app.get("/recommendations/runs/{run_id}/digests", response_model=RunDigestsResponse)
    async def run_digests(run_id: int, request: Request) -> RunDigestsResponse:
        await load_run_or_404(request, run_id)
        digests = await run_in_threadpool(request.app.state.repository.list_pending_digests, run_id)
        return RunDigestsResponse(
            run_id=run_id,
            digests=[DigestPayload(**digest) for digest in digests],
        )

    @app.post("/recommendations/runs/{run_id}/mark-notified", response_model=MarkNotifiedResponse)
    async def mark_run_notified(run_id: int, request: Request) -> MarkNotifiedResponse:
        await load_run_or_404(request, run_id)
        marked = await run_in_threadpool(request.app.state.repository.mark_run_notified, run_id)
        LOGGER.info(
            json.dumps(
                {
                    "event": "recommendations_marked_notified",
                    "run_id": run_id,
                    "recommendations_marked": marked,
                }
            )
        )
        return MarkNotifiedResponse(run_id=run_id, recommendations_marked=marked)

    return app


app = create_app()
