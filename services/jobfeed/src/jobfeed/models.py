from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

RunStatus = Literal["running", "completed", "failed"]
ScrapeStatus = Literal["cached", "ok", "error"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class NormalizedJob(CamelModel):
    id: str | None = None
    external_id: str
    title: str
    company: str
    location: str
    description: str = ""
    salary_text: str | None = None
    canonical_url: str
    apply_url: str | None = None
    employment_type: str | None = None
    remote_type: str | None = None
    experience_level: str | None = None
    job_board: str | None = None
    quality_score: int = 7
    posted_at: str | None = None
    scraped_at: str
    archived_at: str | None = None
    is_expired: bool = False


class ScrapeRequest(CamelModel):
    query: str = Field(..., min_length=1, max_length=200)
    location: str = Field(default="", max_length=200)
    max_jobs: int = Field(default=100, ge=1, le=1000)
    force_refresh: bool = False


class ScrapeResponse(CamelModel):
    jobs: list[NormalizedJob]
    from_cache: bool
    total_results: int
    scraped_count: int | None = None
    skipped_count: int | None = None
    debug_info: dict[str, Any] | None = Field(default=None, alias="debug_info")


class ScheduledScrapeRequest(CamelModel):
    job_titles: list[str] | None = None
    max_jobs_per_title: int = Field(default=50, ge=1, le=1000)
    location: str = "United States"


class ScheduledTitleResult(CamelModel):
    job_title: str
    success: bool
    jobs_scraped: int = 0
    jobs_inserted: int = 0
    jobs_skipped: int = 0
    error: str | None = None
    run_id: str | None = None


class ScheduledScrapeSummary(CamelModel):
    total_job_titles: int
    successful_jobs: int
    failed_jobs: int
    total_jobs_scraped: int
    total_jobs_inserted: int


class ScheduledScrapeResponse(CamelModel):
    success: bool
    summary: ScheduledScrapeSummary
    results: list[ScheduledTitleResult]
    timestamp: str


class ScrapeRun(BaseModel):
    scrape_run_id: int
    query: str
    location: str
    status: ScrapeStatus
    actor_run_id: str | None = None
    fetched: int
    inserted: int
    updated: int
    skipped: int
    failed: int
    error: str | None = None
    started_at: str
    finished_at: str


class ScrapeHistoryResponse(BaseModel):
    runs: list[ScrapeRun]


class Pagination(CamelModel):
    current_page: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool
    total_results: int
    results_per_page: int


class JobSearchResponse(CamelModel):
    jobs: list[NormalizedJob]
    pagination: Pagination
    total_results: int
    warnings: list[str] = Field(default_factory=list)


class JobStatistics(CamelModel):
    total_jobs: int
    active_jobs: int
    expired_jobs: int
    archived_jobs: int
    jobs_last_24h: int
    average_quality_score: float | None = None
    by_job_board: dict[str, int] = Field(default_factory=dict)


class CleanupResponse(CamelModel):
    expired: int
    archived: int
    invalid_titles: int


class RepairTitlesRequest(CamelModel):
    dry_run: bool = True


class RepairStats(CamelModel):
    runs_checked: int
    relevant_runs: int
    jobs_in_mapping: int = 0
    jobs_in_database: int = 0
    jobs_needing_update: int = 0
    jobs_actually_updated: int = 0
    dry_run: bool


class RepairExample(CamelModel):
    id: str
    old_title: str
    new_title: str
    external_id: str


class RepairTitlesResponse(CamelModel):
    success: bool
    message: str
    stats: RepairStats
    examples: list[RepairExample] = Field(default_factory=list)


class UserProfileUpsertRequest(BaseModel):
    profile_id: str = Field(..., min_length=3, max_length=64, pattern=r"^[a-zA-Z0-9_-]+$")
    full_name: str | None = Field(default=None, max_length=120)
    email: str | None = Field(default=None, max_length=254)
    desired_job_title: str | None = Field(default=None, max_length=120)
    experience_level: str | None = Field(default=None, max_length=60)
    preferred_location: str | None = Field(default=None, max_length=120)
    industry_preferences: list[str] = Field(default_factory=list)
    work_setting_preference: str | None = Field(default=None, max_length=60)


class UserPreferenceProfile(BaseModel):
    profile_id: str
    full_name: str | None = None
    email: str | None = None
    desired_job_title: str | None = None
    experience_level: str | None = None
    preferred_location: str | None = None
    industry_preferences: list[str] = Field(default_factory=list)
    work_setting_preference: str | None = None
    created_at: str
    updated_at: str


class RecommendationRun(BaseModel):
    run_id: int
    status: RunStatus
    notes: str | None = None
    total_users_processed: int | None = None
    total_recommendations_generated: int | None = None
    created_at: str
    updated_at: str
    notified_at: str | None = None


class RecommendationHistoryResponse(BaseModel):
    runs: list[RecommendationRun]


class RecommendationRecord(BaseModel):
    recommendation_id: int
    run_id: int
    profile_id: str
    job_id: str
    match_score: float
    title_similarity_score: float
    experience_match_score: float
    merge_data: dict[str, str]
    recommended_at: str
    email_sent_at: str | None = None


class RecommendationRunResponse(CamelModel):
    success: bool
    run_id: int
    users_processed: int
    recommendations_generated: int
    message: str


class DigestPayload(BaseModel):
    profile_id: str
    email: str | None = None
    full_name: str | None = None
    merge_fields: dict[str, str]


class RunDigestsResponse(BaseModel):
    run_id: int
    digests: list[DigestPayload]


class MarkNotifiedResponse(BaseModel):
    run_id: int
    recommendations_marked: int


@dataclass(frozen=True)
class NewRecommendation:
    profile_id: str
    job_id: str
    match_score: float
    title_similarity_score: float
    experience_match_score: float
    merge_data: dict[str, str] = field(default_factory=dict)
