from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from datetime import datetime

from jobcommon.utils import days_ago_iso, now_utc, start_of_day_iso, tokenize

from jobfeed.config import MatchingPolicy
from jobfeed.errors import RecommendationRunError
from jobfeed.models import (
    NewRecommendation,
    NormalizedJob,
    RecommendationRunResponse,
    UserPreferenceProfile,
)
from jobfeed.repository import JobFeedRepository

LOGGER = logging.getLogger("jobmatch.jobfeed.matching")

MERGE_SLOTS = 5
MERGE_SLOT_FIELDS = ("TITLE", "COMPANY", "LOCATION", "SALARY", "URL", "MATCH_REASON")
DEFAULT_USER_NAME = "Job Seeker"


def title_similarity(desired: str, candidate: str) -> float:
    """Jaccard overlap of the two titles' word sets, scaled to 0-100."""
    desired_tokens = tokenize(desired)
    candidate_tokens = tokenize(candidate)
    union = desired_tokens | candidate_tokens
    if not union:
        return 0.0
    return len(desired_tokens & candidate_tokens) / len(union) * 100


def experience_match(user_level: str | None, job_level: str | None) -> float:
    user = (user_level or "").strip().lower()
    job = (job_level or "").strip().lower()
    if not user or not job:
        return 0.0
    return 100.0 if user == job else 0.0


def match_score(title_score: float, experience_score: float, policy: MatchingPolicy) -> float:
    return policy.title_weight * title_score + policy.experience_weight * experience_score


@dataclass(frozen=True)
class ScoredJob:
    job: NormalizedJob
    match_score: float
    title_similarity_score: float
    experience_match_score: float


def rank_jobs_for_profile(
    profile: UserPreferenceProfile,
    jobs: list[NormalizedJob],
    policy: MatchingPolicy,
) -> list[ScoredJob]:
    scored: list[ScoredJob] = []
    for job in jobs:
        title_score = title_similarity(profile.desired_job_title or "", job.title)
        experience_score = experience_match(profile.experience_level, job.experience_level)
        score = match_score(title_score, experience_score, policy)
        # Float noise must not push an exact threshold score below the cut.
        if round(score, 4) < policy.min_match_score:
            continue
        scored.append(
            ScoredJob(
                job=job,
                match_score=round(score, 4),
                title_similarity_score=round(title_score, 4),
                experience_match_score=round(experience_score, 4),
            )
        )

    scored.sort(key=lambda item: item.match_score, reverse=True)
    return scored[: policy.max_per_user]


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def format_recommendation_date(moment: datetime) -> str:
    return f"{moment.strftime('%B')} {moment.day}, {moment.year}"


def build_merge_data(
    profile: UserPreferenceProfile,
    matches: list[ScoredJob],
    *,
    generated_at: datetime,
) -> dict[str, str]:
    """Flatten a user's matches into the fixed-shape template payload.

    Always carries ``JOB1_*`` through ``JOB5_*``; unused slots are blank.
    """
    merge_data = {
        "USER_NAME": profile.full_name or DEFAULT_USER_NAME,
        "RECOMMENDATION_DATE": format_recommendation_date(generated_at),
    }
    for slot in range(1, MERGE_SLOTS + 1):
        for name in MERGE_SLOT_FIELDS:
            merge_data[f"JOB{slot}_{name}"] = ""

    for slot, match in enumerate(matches[:MERGE_SLOTS], start=1):
        job = match.job
        merge_data[f"JOB{slot}_TITLE"] = job.title or ""
        merge_data[f"JOB{slot}_COMPANY"] = job.company or ""
        merge_data[f"JOB{slot}_LOCATION"] = job.location or ""
        merge_data[f"JOB{slot}_SALARY"] = job.salary_text or ""
        merge_data[f"JOB{slot}_URL"] = job.canonical_url or ""
        merge_data[f"JOB{slot}_MATCH_REASON"] = (
            f"{_round_half_up(match.match_score)}% match - "
            f"{_round_half_up(match.title_similarity_score)}% title similarity"
        )
    return merge_data


class RecommendationEngine:
    def __init__(self, repository: JobFeedRepository, policy: MatchingPolicy) -> None:
        self.repository = repository
        self.policy = policy

    def candidate_jobs(self, *, now: datetime) -> list[NormalizedJob]:
        return self.repository.list_candidate_jobs(
            scraped_since=start_of_day_iso(days_back=self.policy.lookback_days, now=now),
            min_quality_score=self.policy.min_quality_score,
            limit=self.policy.job_pool_limit,
        )

    def eligible_profiles(self, *, now: datetime) -> list[UserPreferenceProfile]:
        return self.repository.list_eligible_profiles(
            recommended_since=days_ago_iso(self.policy.cooldown_days, now=now),
        )

    def build_recommendations(
        self,
        profiles: list[UserPreferenceProfile],
        jobs: list[NormalizedJob],
        *,
        generated_at: datetime,
    ) -> list[NewRecommendation]:
        recommendations: list[NewRecommendation] = []
        for profile in profiles:
            matches = rank_jobs_for_profile(profile, jobs, self.policy)
            if not matches:
                continue
            merge_data = build_merge_data(profile, matches, generated_at=generated_at)
            recommendations.extend(
                NewRecommendation(
                    profile_id=profile.profile_id,
                    job_id=match.job.id or "",
                    match_score=match.match_score,
                    title_similarity_score=match.title_similarity_score,
                    experience_match_score=match.experience_match_score,
                    merge_data=merge_data,
                )
                for match in matches
            )
        return recommendations

    def run(self) -> RecommendationRunResponse:
        run = self.repository.create_recommendation_run(
            "Starting daily job recommendations generation"
        )
        LOGGER.info(json.dumps({"event": "recommendation_run_started", "run_id": run.run_id}))

        try:
            now = now_utc()
            profiles = self.eligible_profiles(now=now)
            jobs = self.candidate_jobs(now=now)
            LOGGER.info(
                json.dumps(
                    {
                        "event": "recommendation_inputs_loaded",
                        "run_id": run.run_id,
                        "eligible_profiles": len(profiles),
                        "candidate_jobs": len(jobs),
                    }
                )
            )
            recommendations = self.build_recommendations(profiles, jobs, generated_at=now)

            batch_size = self.policy.insert_batch_size
            for start in range(0, len(recommendations), batch_size):
                self.repository.insert_recommendations(
                    run.run_id,
                    recommendations[start : start + batch_size],
                )

            total = len(recommendations)
            self.repository.complete_recommendation_run(
                run.run_id,
                users_processed=len(profiles),
                recommendations_generated=total,
                notes=f"Successfully generated {total} recommendations for {len(profiles)} users",
            )
        except Exception as exc:
            self.repository.fail_recommendation_run(run.run_id, f"Error: {exc}")
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "recommendation_run_failed",
                        "run_id": run.run_id,
                        "error": str(exc),
                    }
                )
            )
            raise RecommendationRunError(run.run_id, str(exc)) from exc

        LOGGER.info(
            json.dumps(
                {
                    "event": "recommendation_run_completed",
                    "run_id": run.run_id,
                    "users_processed": len(profiles),
                    "recommendations_generated": total,
                }
            )
        )
        return RecommendationRunResponse(
            success=True,
            run_id=run.run_id,
            users_processed=len(profiles),
            recommendations_generated=total,
            message=(
                f"Generated {total} job recommendations for {len(profiles)} eligible users"
            ),
        )
