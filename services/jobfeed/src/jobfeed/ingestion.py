from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from functools import reduce
from typing import Any

from jobcommon.utils import now_utc_iso

from jobfeed.actor import ActorClient, ActorRun, build_run_input
from jobfeed.config import Settings
from jobfeed.errors import PipelineError
from jobfeed.extract import PostingRejected, RawPosting, to_normalized_job
from jobfeed.models import (
    NormalizedJob,
    ScheduledScrapeResponse,
    ScheduledScrapeSummary,
    ScheduledTitleResult,
    ScrapeRun,
)
from jobfeed.repository import JobFeedRepository, UpsertOutcome

LOGGER = logging.getLogger("jobmatch.jobfeed.ingestion")

ActorFactory = Callable[[], ActorClient]


@dataclass(frozen=True)
class IngestionSummary:
    fetched: int = 0
    inserted: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: tuple[str, ...] = ()

    @property
    def stored(self) -> int:
        return self.inserted + self.updated

    def with_skip(self) -> IngestionSummary:
        return replace(self, fetched=self.fetched + 1, skipped=self.skipped + 1)

    def with_failure(self, error: str) -> IngestionSummary:
        return replace(
            self,
            fetched=self.fetched + 1,
            failed=self.failed + 1,
            errors=(*self.errors, error),
        )

    def with_upsert(self, outcome: UpsertOutcome) -> IngestionSummary:
        if outcome == "inserted":
            return replace(self, fetched=self.fetched + 1, inserted=self.inserted + 1)
        return replace(self, fetched=self.fetched + 1, updated=self.updated + 1)


@dataclass(frozen=True)
class IngestionResult:
    jobs: list[NormalizedJob]
    from_cache: bool
    summary: IngestionSummary = field(default_factory=IngestionSummary)
    actor_run: ActorRun | None = None
    scrape_run: ScrapeRun | None = None

    @property
    def total_results(self) -> int:
        return len(self.jobs)

    @property
    def scraped_count(self) -> int:
        return self.summary.stored

    @property
    def skipped_count(self) -> int:
        # Store failures are reported alongside rejected postings.
        return self.summary.skipped + self.summary.failed

    def debug_info(self) -> dict[str, Any]:
        return {
            "apify_run_id": self.actor_run.run_id if self.actor_run else None,
            "poll_attempts": self.actor_run.attempts if self.actor_run else 0,
            "jobs_scraped": self.summary.fetched,
            "jobs_inserted": self.summary.inserted,
            "jobs_updated": self.summary.updated,
            "jobs_skipped": self.summary.skipped,
            "jobs_failed": self.summary.failed,
        }


class IngestionAdapter:
    """Turns one search request into stored, normalized jobs.

    Serves from the cached job store when it already holds enough recent
    matches; otherwise runs the scrape actor, filters and normalizes every
    posting, upserts the survivors and returns the fresh subset.
    """

    def __init__(
        self,
        settings: Settings,
        repository: JobFeedRepository,
        actor_factory: ActorFactory | None = None,
    ) -> None:
        self.settings = settings
        self.repository = repository
        self._actor_factory = actor_factory or (lambda: ActorClient.from_settings(settings))

    def ingest(
        self,
        query: str,
        location: str = "",
        max_results: int = 100,
        force_refresh: bool = False,
    ) -> IngestionResult:
        self.settings.require_actor_token()
        started_at = now_utc_iso()

        if not force_refresh:
            cached = self.repository.search_jobs(
                query,
                location,
                max_age_days=self.settings.cache_max_age_days,
                limit=max_results,
            )
            if len(cached) >= self.settings.cache_min_results:
                scrape_run = self.repository.record_scrape_run(
                    query=query,
                    location=location,
                    status="cached",
                    started_at=started_at,
                )
                LOGGER.info(
                    json.dumps(
                        {
                            "event": "ingestion_cache_hit",
                            "query": query,
                            "location": location,
                            "results": len(cached),
                        }
                    )
                )
                return IngestionResult(jobs=cached, from_cache=True, scrape_run=scrape_run)

        try:
            with self._actor_factory() as actor:
                actor_run, items = actor.run(
                    build_run_input(self.settings, query, location, max_results)
                )
        except PipelineError as exc:
            self.repository.record_scrape_run(
                query=query,
                location=location,
                status="error",
                started_at=started_at,
                error=str(exc),
            )
            LOGGER.error(
                json.dumps(
                    {
                        "event": "ingestion_failed",
                        "query": query,
                        "location": location,
                        "error": str(exc),
                    }
                )
            )
            raise

        summary = self.store_postings(items, requested_location=location)
        fresh = self.repository.search_jobs(
            query,
            location,
            max_age_days=self.settings.fresh_max_age_days,
            limit=max_results,
        )
        scrape_run = self.repository.record_scrape_run(
            query=query,
            location=location,
            status="ok",
            started_at=started_at,
            actor_run_id=actor_run.run_id,
            fetched=summary.fetched,
            inserted=summary.inserted,
            updated=summary.updated,
            skipped=summary.skipped,
            failed=summary.failed,
        )
        LOGGER.info(
            json.dumps(
                {
                    "event": "ingestion_complete",
                    "query": query,
                    "location": location,
                    "actor_run_id": actor_run.run_id,
                    "fetched": summary.fetched,
                    "inserted": summary.inserted,
                    "updated": summary.updated,
                    "skipped": summary.skipped,
                    "failed": summary.failed,
                    "returned": len(fresh),
                }
            )
        )
        return IngestionResult(
            jobs=fresh,
            from_cache=False,
            summary=summary,
            actor_run=actor_run,
            scrape_run=scrape_run,
        )

    def store_postings(
        self,
        items: Iterable[RawPosting],
        *,
        requested_location: str,
    ) -> IngestionSummary:
        scraped_at = now_utc_iso()

        def step(summary: IngestionSummary, item: RawPosting) -> IngestionSummary:
            try:
                job = to_normalized_job(
                    item,
                    requested_location=requested_location,
                    origin=self.settings.source_origin,
                    job_board=self.settings.job_board,
                    quality_score=self.settings.baseline_quality_score,
                    scraped_at=scraped_at,
                )
            except PostingRejected as exc:
                LOGGER.info(
                    json.dumps(
                        {
                            "event": "posting_skipped",
                            "reason": exc.reason,
                            "detail": str(exc),
                            "index": summary.fetched,
                        }
                    )
                )
                return summary.with_skip()

            try:
                outcome = self.repository.upsert_job(job)
            except sqlite3.Error as exc:
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "posting_store_failed",
                            "external_id": job.external_id,
                            "error": str(exc),
                        }
                    )
                )
                return summary.with_failure(f"{job.external_id}: {exc}")
            return summary.with_upsert(outcome)

        return reduce(step, items, IngestionSummary())

    def ingest_titles(
        self,
        job_titles: Iterable[str] | None = None,
        *,
        location: str = "United States",
        max_jobs_per_title: int = 50,
    ) -> ScheduledScrapeResponse:
        self.settings.require_actor_token()
        titles = [title for title in (job_titles or self.settings.scheduled_job_titles) if title]
        results: list[ScheduledTitleResult] = []
        for title in titles:
            try:
                result = self.ingest(
                    title,
                    location,
                    max_results=max_jobs_per_title,
                    force_refresh=True,
                )
            except PipelineError as exc:
                results.append(ScheduledTitleResult(job_title=title, success=False, error=str(exc)))
                continue
            results.append(
                ScheduledTitleResult(
                    job_title=title,
                    success=True,
                    jobs_scraped=result.summary.fetched,
                    jobs_inserted=result.summary.stored,
                    jobs_skipped=result.skipped_count,
                    run_id=result.actor_run.run_id if result.actor_run else None,
                )
            )

        succeeded = [result for result in results if result.success]
        summary = ScheduledScrapeSummary(
            total_job_titles=len(titles),
            successful_jobs=len(succeeded),
            failed_jobs=len(results) - len(succeeded),
            total_jobs_scraped=sum(result.jobs_scraped for result in succeeded),
            total_jobs_inserted=sum(result.jobs_inserted for result in succeeded),
        )
        LOGGER.info(json.dumps({"event": "scheduled_scrape_complete", **summary.model_dump()}))
        return ScheduledScrapeResponse(
            success=True,
            summary=summary,
            results=results,
            timestamp=now_utc_iso(),
        )
