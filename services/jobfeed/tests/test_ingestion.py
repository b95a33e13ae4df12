from __future__ import annotations

import sqlite3

import pytest
from jobcommon.utils import days_ago_iso

from jobfeed.config import Settings
from jobfeed.errors import ActorRunFailedError, ConfigurationError
from jobfeed.ingestion import IngestionAdapter, IngestionSummary
from jobfeed.maintenance import cleanup_jobs
from jobfeed.repository import JobFeedRepository

pytestmark = pytest.mark.integration

BUSINESS_ANALYST_POSTINGS = [
    {
        "id": "ba-1",
        "positionName": "Senior Business Analyst",
        "company": "Acme Labs",
        "location": "Tampa, FL",
        "url": "https://www.indeed.com/viewjob?jk=ba-1",
    },
    {
        "id": "ba-2",
        "positionName": "Business Analyst II",
        "company": "Globex",
        "url": "/viewjob?jk=ba-2",
    },
    {
        "id": "ba-3",
        "positionName": "Lead Business Analyst",
        "company": "Initech",
    },
]


def fail_if_called():
    pytest.fail("the actor must not be called")


def test_end_to_end_scrape_counts_stored_and_skipped(
    settings: Settings,
    repository: JobFeedRepository,
    actor_factory,
    actor_api,
) -> None:
    actor_api.items = BUSINESS_ANALYST_POSTINGS
    adapter = IngestionAdapter(settings, repository, actor_factory)

    result = adapter.ingest("Business Analyst", "", max_results=100)

    assert result.from_cache is False
    assert result.scraped_count == 2
    assert result.skipped_count == 1
    assert result.summary == IngestionSummary(fetched=3, inserted=2, skipped=1)
    assert {job.external_id for job in result.jobs} == {"ba-1", "ba-2"}
    assert result.total_results == 2
    assert result.debug_info()["apify_run_id"] == "run-1"
    assert result.scrape_run is not None and result.scrape_run.status == "ok"
    assert actor_api.submitted_inputs()[0]["position"] == "Business Analyst"


def test_cache_short_circuit_makes_no_actor_calls(
    settings: Settings,
    repository: JobFeedRepository,
    make_job,
) -> None:
    for index in range(10):
        repository.upsert_job(make_job(f"cached-{index}", f"Business Analyst Level {index}"))
    adapter = IngestionAdapter(settings, repository, fail_if_called)

    result = adapter.ingest("Business Analyst", "", max_results=50)

    assert result.from_cache is True
    assert result.total_results == 10
    assert result.scrape_run is not None and result.scrape_run.status == "cached"


def test_small_cache_falls_through_to_actor(
    settings: Settings,
    repository: JobFeedRepository,
    actor_factory,
    actor_api,
    make_job,
) -> None:
    for index in range(9):
        repository.upsert_job(make_job(f"cached-{index}", f"Business Analyst Level {index}"))
    actor_api.items = BUSINESS_ANALYST_POSTINGS
    adapter = IngestionAdapter(settings, repository, actor_factory)

    result = adapter.ingest("Business Analyst", "")

    assert result.from_cache is False
    assert len(actor_api.submitted_inputs()) == 1


def test_force_refresh_bypasses_cache(
    settings: Settings,
    repository: JobFeedRepository,
    actor_factory,
    actor_api,
    make_job,
) -> None:
    for index in range(12):
        repository.upsert_job(make_job(f"cached-{index}", f"Business Analyst Level {index}"))
    actor_api.items = BUSINESS_ANALYST_POSTINGS
    adapter = IngestionAdapter(settings, repository, actor_factory)

    result = adapter.ingest("Business Analyst", "", force_refresh=True)

    assert result.from_cache is False
    assert result.scraped_count == 2


def test_reingesting_updates_in_place(
    settings: Settings,
    repository: JobFeedRepository,
    actor_factory,
    actor_api,
) -> None:
    adapter = IngestionAdapter(settings, repository, actor_factory)
    actor_api.items = [
        {"id": "dup", "positionName": "Staff Data Engineer", "url": "https://x.example/dup"}
    ]
    adapter.ingest("Data Engineer", "", force_refresh=True)
    actor_api.items = [
        {"id": "dup", "positionName": "Principal Data Engineer", "url": "https://x.example/dup"}
    ]

    result = adapter.ingest("Data Engineer", "", force_refresh=True)

    stored = repository.get_job_by_external_id("dup")
    assert result.summary.updated == 1
    assert repository.count_jobs() == 1
    assert stored is not None and stored.title == "Principal Data Engineer"


def test_rescraped_expired_job_is_reactivated(
    settings: Settings,
    repository: JobFeedRepository,
    actor_factory,
    actor_api,
    make_job,
) -> None:
    repository.upsert_job(make_job("old", "Staff Data Engineer", scraped_at=days_ago_iso(40)))
    cleanup_jobs(settings, repository)
    actor_api.items = [
        {"id": "old", "positionName": "Staff Data Engineer", "url": "https://x.example/old"}
    ]
    adapter = IngestionAdapter(settings, repository, actor_factory)

    result = adapter.ingest("Data Engineer", "", force_refresh=True)

    stored = repository.get_job_by_external_id("old")
    assert result.scraped_count == 1
    assert [job.external_id for job in result.jobs] == ["old"]
    assert stored is not None
    assert stored.is_expired is False
    assert stored.archived_at is None


def test_missing_token_fails_before_any_work(
    settings: Settings,
    repository: JobFeedRepository,
) -> None:
    unconfigured = settings.model_copy(update={"apify_api_token": None})
    adapter = IngestionAdapter(unconfigured, repository, fail_if_called)

    with pytest.raises(ConfigurationError):
        adapter.ingest("Business Analyst", "")

    assert repository.list_scrape_runs(10) == []


def test_actor_failure_is_recorded_and_raised(
    settings: Settings,
    repository: JobFeedRepository,
    actor_factory,
    actor_api,
) -> None:
    actor_api.statuses = ["ABORTED"]
    adapter = IngestionAdapter(settings, repository, actor_factory)

    with pytest.raises(ActorRunFailedError):
        adapter.ingest("Business Analyst", "", force_refresh=True)

    runs = repository.list_scrape_runs(10)
    assert [run.status for run in runs] == ["error"]
    assert "ABORTED" in (runs[0].error or "")


def test_row_store_failures_are_counted_not_raised(
    settings: Settings,
    repository: JobFeedRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    original_upsert = repository.upsert_job

    def flaky_upsert(job):
        if job.external_id == "ba-2":
            raise sqlite3.OperationalError("database is locked")
        return original_upsert(job)

    monkeypatch.setattr(repository, "upsert_job", flaky_upsert)
    adapter = IngestionAdapter(settings, repository, fail_if_called)

    summary = adapter.store_postings(BUSINESS_ANALYST_POSTINGS, requested_location="")

    assert summary.fetched == 3
    assert summary.inserted == 1
    assert summary.skipped == 1
    assert summary.failed == 1
    assert summary.errors == ("ba-2: database is locked",)


def test_scheduled_batch_continues_past_failed_title(
    settings: Settings,
    repository: JobFeedRepository,
    actor_factory,
    actor_api,
) -> None:
    actor_api.items = BUSINESS_ANALYST_POSTINGS
    actor_api.failing_positions = {"Project Manager"}
    adapter = IngestionAdapter(settings, repository, actor_factory)

    response = adapter.ingest_titles(
        ["Business Analyst", "Project Manager"],
        location="United States",
        max_jobs_per_title=10,
    )

    assert response.success is True
    assert response.summary.total_job_titles == 2
    assert response.summary.successful_jobs == 1
    assert response.summary.failed_jobs == 1
    assert response.summary.total_jobs_inserted == 2
    assert response.results[1].success is False
    assert "502" in (response.results[1].error or "")
    assert all(item["location"] == "United States" for item in actor_api.submitted_inputs())


def test_scheduled_batch_defaults_to_configured_titles(
    settings: Settings,
    repository: JobFeedRepository,
    actor_factory,
    actor_api,
) -> None:
    configured = settings.model_copy(update={"scheduled_job_titles": ("Data Engineer",)})
    adapter = IngestionAdapter(configured, repository, actor_factory)

    response = adapter.ingest_titles()

    assert [result.job_title for result in response.results] == ["Data Engineer"]
    assert actor_api.submitted_inputs()[0]["maxItems"] == 50
