from __future__ import annotations

import math
import os
import tempfile
from collections.abc import Mapping

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from jobfeed.errors import ConfigurationError

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "jobmatch", "jobfeed.sqlite3")
DEFAULT_SCHEDULED_TITLES = (
    "Business Analyst",
    "Project Manager",
    "Software Engineer",
    "Product Manager",
    "Sales Representative",
    "Account Executive",
    "Manager",
)


class MatchingPolicy(BaseModel):
    """Default recommendation policy.

    The threshold and the 70/30 weighting are product defaults, not tuned
    constants; they live here so they can be reviewed and overridden.
    """

    model_config = ConfigDict(frozen=True)

    min_match_score: float = Field(default=60.0, ge=0, le=100)
    title_weight: float = Field(default=0.7, ge=0, le=1)
    experience_weight: float = Field(default=0.3, ge=0, le=1)
    max_per_user: int = Field(default=5, ge=1, le=5)
    min_quality_score: int = Field(default=6, ge=0)
    job_pool_limit: int = Field(default=1000, ge=1)
    cooldown_days: int = Field(default=3, ge=0)
    lookback_days: int = Field(default=0, ge=0)
    insert_batch_size: int = Field(default=100, ge=1)

    @model_validator(mode="after")
    def validate_weights(self) -> MatchingPolicy:
        if not math.isclose(self.title_weight + self.experience_weight, 1.0, abs_tol=1e-9):
            raise ValueError("title_weight and experience_weight must sum to 1.0")
        return self


class Settings(BaseModel):
    model_config = ConfigDict(frozen=True)

    database_path: str = Field(default=DEFAULT_DB_PATH, min_length=1)
    apify_api_token: str | None = None
    apify_base_url: str = "https://api.apify.com/v2"
    actor_id: str = "misceres~indeed-scraper"
    source_origin: str = "https://www.indeed.com"
    job_board: str = "Indeed"
    country: str = "US"
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    poll_interval_seconds: float = Field(default=5.0, ge=0)
    max_poll_attempts: int = Field(default=60, ge=1)
    cache_min_results: int = Field(default=10, ge=1)
    cache_max_age_days: int = Field(default=7, ge=1)
    fresh_max_age_days: int = Field(default=1, ge=1)
    baseline_quality_score: int = Field(default=7, ge=0, le=10)
    expire_after_days: int = Field(default=30, ge=1)
    repair_lookback_hours: int = Field(default=6, ge=1)
    scheduled_job_titles: tuple[str, ...] = DEFAULT_SCHEDULED_TITLES
    matching: MatchingPolicy = Field(default_factory=MatchingPolicy)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        values: dict[str, object] = {}
        mapping = {
            "JOBFEED_DB_PATH": "database_path",
            "APIFY_API_TOKEN": "apify_api_token",
            "APIFY_BASE_URL": "apify_base_url",
            "APIFY_ACTOR_ID": "actor_id",
            "JOBFEED_SOURCE_ORIGIN": "source_origin",
            "JOBFEED_JOB_BOARD": "job_board",
            "JOBFEED_POLL_INTERVAL_SECONDS": "poll_interval_seconds",
            "JOBFEED_MAX_POLL_ATTEMPTS": "max_poll_attempts",
            "JOBFEED_REQUEST_TIMEOUT_SECONDS": "request_timeout_seconds",
        }
        for env_name, field_name in mapping.items():
            raw = env.get(env_name, "").strip()
            if raw:
                values[field_name] = raw

        raw_titles = env.get("JOBFEED_SCHEDULED_TITLES", "").strip()
        if raw_titles:
            values["scheduled_job_titles"] = tuple(
                title.strip() for title in raw_titles.split(",") if title.strip()
            )

        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigurationError(f"Invalid jobfeed configuration: {exc}") from exc

    def require_actor_token(self) -> str:
        token = (self.apify_api_token or "").strip()
        if not token:
            raise ConfigurationError("APIFY_API_TOKEN is not configured")
        return token
