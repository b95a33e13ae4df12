from __future__ import annotations

import sqlite3
from datetime import UTC, datetime

import pytest

from jobfeed.config import MatchingPolicy
from jobfeed.errors import RecommendationRunError
from jobfeed.matching import (
    RecommendationEngine,
    ScoredJob,
    build_merge_data,
    experience_match,
    match_score,
    rank_jobs_for_profile,
    title_similarity,
)
from jobfeed.models import UserPreferenceProfile, UserProfileUpsertRequest
from jobfeed.repository import JobFeedRepository

pytestmark = pytest.mark.unit

POLICY = MatchingPolicy()


def make_profile(**overrides) -> UserPreferenceProfile:
    values = {
        "profile_id": "casey",
        "full_name": "Casey Jordan",
        "email": "casey@example.com",
        "desired_job_title": "Senior Backend Engineer",
        "experience_level": "Senior",
        "created_at": "2026-10-19T00:00:00+00:00",
        "updated_at": "2026-10-19T00:00:00+00:00",
    }
    values.update(overrides)
    return UserPreferenceProfile(**values)


@pytest.mark.parametrize("title", ["Software Engineer", "Sr. Data Engineer", "nurse"])
def test_identical_titles_score_100(title: str) -> None:
    assert title_similarity(title, title) == 100


@pytest.mark.parametrize(
    ("left", "right"),
    [
        ("Senior Backend Engineer", "Backend Engineer II"),
        ("Data Analyst", "Senior Data Scientist"),
        ("Product Manager", "Nurse"),
    ],
)
def test_title_similarity_is_symmetric(left: str, right: str) -> None:
    assert title_similarity(left, right) == title_similarity(right, left)


def test_title_similarity_examples() -> None:
    assert title_similarity("Software Engineer", "Nurse Practitioner") < 30
    assert title_similarity("Software Engineer", "Nurse Practitioner") == 0
    assert title_similarity("Senior Engineer", "Engineer") == pytest.approx(50)
    assert title_similarity("Sr. Engineer!", "sr engineer") == 100
    assert title_similarity("", "") == 0
    assert title_similarity("Engineer", "") == 0


def test_experience_match_is_binary_and_case_insensitive() -> None:
    assert experience_match("Senior", "senior") == 100
    assert experience_match(" Senior ", "SENIOR") == 100
    assert experience_match("Senior", "Mid-Level") == 0
    assert experience_match("", "Senior") == 0
    assert experience_match("Senior", None) == 0


def test_match_score_threshold_examples() -> None:
    assert match_score(50, 0, POLICY) == pytest.approx(35)
    assert match_score(80, 100, POLICY) == pytest.approx(86)


def test_rank_applies_threshold(make_job) -> None:
    profile = make_profile(desired_job_title="Senior Engineer", experience_level="Senior")
    below = make_job("below", "Engineer", experience_level="Junior")
    above = make_job("above", "Senior Staff Platform Engineer", experience_level="Senior")

    ranked = rank_jobs_for_profile(profile, [below, above], POLICY)

    assert [item.job.external_id for item in ranked] == ["above"]
    assert ranked[0].match_score == pytest.approx(65)


def test_rank_keeps_strong_match_and_drops_weak_one(make_job) -> None:
    profile = make_profile(desired_job_title="Senior Backend Platform Engineer")
    strong = make_job("strong", "Senior Backend Platform Engineer II", experience_level="Senior")
    weak = make_job("weak", "Backend Engineer", experience_level="Mid")

    ranked = rank_jobs_for_profile(profile, [weak, strong], POLICY)

    assert [item.job.external_id for item in ranked] == ["strong"]
    assert ranked[0].title_similarity_score == pytest.approx(80)
    assert ranked[0].experience_match_score == pytest.approx(100)
    assert ranked[0].match_score == pytest.approx(86)


def test_rank_keeps_exact_threshold_scores(make_job) -> None:
    policy = MatchingPolicy(min_match_score=70)
    profile = make_profile(desired_job_title="Data Engineer", experience_level="Senior")
    job = make_job("exact", "Data Engineer", experience_level="Mid")

    ranked = rank_jobs_for_profile(profile, [job], policy)

    assert len(ranked) == 1


def test_rank_caps_results_and_sorts_descending(make_job) -> None:
    titles = [
        "Backend Engineer II",
        "Senior Backend Engineer",
        "Senior Engineer",
        "Senior Backend Platform Engineer II",
        "Lead Senior Backend Engineer",
        "Backend Engineer",
        "Senior Python Engineer",
        "Senior Backend Engineer II",
    ]
    jobs = [
        make_job(f"job-{index}", title, experience_level="Senior")
        for index, title in enumerate(titles)
    ]

    ranked = rank_jobs_for_profile(make_profile(), jobs, POLICY)

    scores = [item.match_score for item in ranked]
    assert len(ranked) == 5
    assert scores == sorted(scores, reverse=True)
    assert ranked[0].job.title == "Senior Backend Engineer"
    assert scores[0] == pytest.approx(100)
    assert scores[-1] == pytest.approx(0.7 * 200 / 3 + 30, abs=1e-3)


def test_merge_data_has_fixed_shape(make_job) -> None:
    job = make_job(
        "j1",
        "Senior Backend Engineer II",
        company="Acme Labs",
        location="Austin, TX",
        salary_text="$150k",
    )
    match = ScoredJob(
        job=job,
        match_score=82.5,
        title_similarity_score=75.0,
        experience_match_score=100.0,
    )

    merge_data = build_merge_data(
        make_profile(full_name=None),
        [match],
        generated_at=datetime(2026, 10, 19, 9, 30, tzinfo=UTC),
    )

    assert merge_data["USER_NAME"] == "Job Seeker"
    assert merge_data["RECOMMENDATION_DATE"] == "October 19, 2026"
    assert merge_data["JOB1_TITLE"] == "Senior Backend Engineer II"
    assert merge_data["JOB1_COMPANY"] == "Acme Labs"
    assert merge_data["JOB1_SALARY"] == "$150k"
    assert merge_data["JOB1_URL"] == job.canonical_url
    assert merge_data["JOB1_MATCH_REASON"] == "83% match - 75% title similarity"
    for slot in range(2, 6):
        assert merge_data[f"JOB{slot}_TITLE"] == ""
        assert merge_data[f"JOB{slot}_MATCH_REASON"] == ""
    assert len(merge_data) == 2 + 5 * 6


def seed_profile(repository: JobFeedRepository, profile_id: str = "casey") -> None:
    repository.upsert_user_profile(
        UserProfileUpsertRequest(
            profile_id=profile_id,
            full_name="Casey Jordan",
            email=f"{profile_id}@example.com",
            desired_job_title="Senior Backend Engineer",
            experience_level="Senior",
        )
    )


@pytest.mark.integration
def test_engine_persists_top_five_per_user(repository: JobFeedRepository, make_job) -> None:
    seed_profile(repository)
    titles = [
        "Senior Backend Engineer",
        "Senior Backend Engineer II",
        "Lead Senior Backend Engineer",
        "Senior Backend Platform Engineer II",
        "Backend Engineer",
        "Senior Engineer",
        "Backend Engineer II",
        "Senior Python Engineer",
    ]
    for index, title in enumerate(titles):
        repository.upsert_job(make_job(f"job-{index}", title, experience_level="Senior"))
    repository.upsert_job(make_job("low-quality", "Senior Backend Engineer", quality_score=4))

    response = RecommendationEngine(repository, POLICY).run()

    rows = repository.list_run_recommendations(response.run_id)
    scores = [row.match_score for row in rows]
    run = repository.get_recommendation_run(response.run_id)
    assert response.success is True
    assert response.users_processed == 1
    assert response.recommendations_generated == 5
    assert len(rows) == 5
    assert scores == sorted(scores, reverse=True)
    assert run is not None and run.status == "completed"
    assert run.total_recommendations_generated == 5
    assert rows[0].merge_data["JOB5_TITLE"] != ""


@pytest.mark.integration
def test_engine_respects_cooldown(repository: JobFeedRepository, make_job) -> None:
    seed_profile(repository)
    repository.upsert_job(make_job("job-1", "Senior Backend Engineer", experience_level="Senior"))
    engine = RecommendationEngine(repository, POLICY)

    first = engine.run()
    second = engine.run()

    assert first.recommendations_generated == 1
    assert second.users_processed == 0
    assert second.recommendations_generated == 0


@pytest.mark.integration
def test_engine_batches_inserts(repository: JobFeedRepository, make_job, monkeypatch) -> None:
    for index in range(3):
        seed_profile(repository, f"user_{index}")
    for index in range(5):
        repository.upsert_job(
            make_job(f"job-{index}", "Senior Backend Engineer", experience_level="Senior")
        )
    batch_sizes: list[int] = []
    original_insert = repository.insert_recommendations

    def recording_insert(run_id, batch):
        batch_sizes.append(len(batch))
        return original_insert(run_id, batch)

    monkeypatch.setattr(repository, "insert_recommendations", recording_insert)

    RecommendationEngine(repository, MatchingPolicy(insert_batch_size=4)).run()

    assert batch_sizes == [4, 4, 4, 3]


@pytest.mark.integration
def test_batch_failure_marks_run_failed(repository: JobFeedRepository, make_job, monkeypatch) -> None:
    seed_profile(repository)
    repository.upsert_job(make_job("job-1", "Senior Backend Engineer", experience_level="Senior"))

    def broken_insert(run_id, batch):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(repository, "insert_recommendations", broken_insert)

    with pytest.raises(RecommendationRunError) as excinfo:
        RecommendationEngine(repository, POLICY).run()

    run = repository.get_recommendation_run(excinfo.value.run_id)
    assert run is not None
    assert run.status == "failed"
    assert run.notes == "Error: disk I/O error"
