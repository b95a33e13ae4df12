from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from pathlib import Path
from typing import Any, Literal

from jobcommon.utils import days_ago_iso, normalize_text, now_utc_iso

from jobfeed.models import (
    JobStatistics,
    NewRecommendation,
    NormalizedJob,
    RecommendationRecord,
    RecommendationRun,
    ScrapeRun,
    UserPreferenceProfile,
    UserProfileUpsertRequest,
)

UpsertOutcome = Literal["inserted", "updated"]

JOB_COLUMNS = """
    id,
    external_id,
    title,
    company,
    location,
    description,
    salary_text,
    canonical_url,
    apply_url,
    employment_type,
    remote_type,
    experience_level,
    job_board,
    quality_score,
    posted_at,
    scraped_at,
    archived_at,
    is_expired
"""

PROFILE_COLUMNS = """
    profile_id,
    full_name,
    email,
    desired_job_title,
    experience_level,
    preferred_location,
    industry_preferences_json,
    work_setting_preference,
    created_at,
    updated_at
"""

RUN_COLUMNS = """
    id AS run_id,
    status,
    notes,
    total_users_processed,
    total_recommendations_generated,
    created_at,
    updated_at,
    notified_at
"""


class JobFeedRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS cached_jobs (
                    id TEXT PRIMARY KEY,
                    external_id TEXT NOT NULL UNIQUE,
                    title TEXT NOT NULL,
                    company TEXT NOT NULL,
                    location TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    salary_text TEXT,
                    canonical_url TEXT NOT NULL,
                    apply_url TEXT,
                    employment_type TEXT,
                    remote_type TEXT,
                    experience_level TEXT,
                    job_board TEXT,
                    quality_score INTEGER NOT NULL DEFAULT 7,
                    posted_at TEXT,
                    scraped_at TEXT NOT NULL,
                    first_seen_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    archived_at TEXT,
                    is_expired INTEGER NOT NULL DEFAULT 0,
                    normalized_location TEXT NOT NULL DEFAULT '',
                    search_text TEXT NOT NULL DEFAULT ''
                );

                CREATE INDEX IF NOT EXISTS idx_cached_jobs_scraped_at
                    ON cached_jobs (scraped_at);

                CREATE TABLE IF NOT EXISTS scrape_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    query TEXT NOT NULL,
                    location TEXT NOT NULL,
                    status TEXT NOT NULL,
                    actor_run_id TEXT,
                    fetched INTEGER NOT NULL DEFAULT 0,
                    inserted INTEGER NOT NULL DEFAULT 0,
                    updated INTEGER NOT NULL DEFAULT 0,
                    skipped INTEGER NOT NULL DEFAULT 0,
                    failed INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    started_at TEXT NOT NULL,
                    finished_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS user_profiles (
                    profile_id TEXT PRIMARY KEY,
                    full_name TEXT,
                    email TEXT,
                    desired_job_title TEXT,
                    experience_level TEXT,
                    preferred_location TEXT,
                    industry_preferences_json TEXT NOT NULL DEFAULT '[]',
                    work_setting_preference TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS recommendation_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    status TEXT NOT NULL,
                    notes TEXT,
                    total_users_processed INTEGER,
                    total_recommendations_generated INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    notified_at TEXT
                );

                CREATE TABLE IF NOT EXISTS recommendations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id INTEGER NOT NULL REFERENCES recommendation_runs(id) ON DELETE CASCADE,
                    profile_id TEXT NOT NULL,
                    job_id TEXT NOT NULL,
                    match_score REAL NOT NULL,
                    title_similarity_score REAL NOT NULL,
                    experience_match_score REAL NOT NULL,
                    merge_data_json TEXT NOT NULL,
                    recommended_at TEXT NOT NULL,
                    email_sent_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_recommendations_profile_recent
                    ON recommendations (profile_id, recommended_at);
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    # cached jobs

    def upsert_job(self, job: NormalizedJob) -> UpsertOutcome:
        with self._lock:
            now = now_utc_iso()
            existing = self.connection.execute(
                "SELECT id FROM cached_jobs WHERE external_id = ?",
                (job.external_id,),
            ).fetchone()
            job_id = existing["id"] if existing else str(uuid.uuid4())
            search_text = normalize_text(f"{job.title} {job.company} {job.description}")
            try:
                self.connection.execute(
                    """
                    INSERT INTO cached_jobs (
                        id,
                        external_id,
                        title,
                        company,
                        location,
                        description,
                        salary_text,
                        canonical_url,
                        apply_url,
                        employment_type,
                        remote_type,
                        experience_level,
                        job_board,
                        quality_score,
                        posted_at,
                        scraped_at,
                        first_seen_at,
                        updated_at,
                        normalized_location,
                        search_text
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(external_id) DO UPDATE SET
                        title = excluded.title,
                        company = excluded.company,
                        location = excluded.location,
                        description = excluded.description,
                        salary_text = excluded.salary_text,
                        canonical_url = excluded.canonical_url,
                        apply_url = excluded.apply_url,
                        employment_type = excluded.employment_type,
                        remote_type = excluded.remote_type,
                        experience_level = excluded.experience_level,
                        job_board = excluded.job_board,
                        quality_score = excluded.quality_score,
                        posted_at = excluded.posted_at,
                        scraped_at = excluded.scraped_at,
                        updated_at = excluded.updated_at,
                        normalized_location = excluded.normalized_location,
                        search_text = excluded.search_text,
                        is_expired = 0,
                        archived_at = NULL
                    """,
                    (
                        job_id,
                        job.external_id,
                        job.title,
                        job.company,
                        job.location,
                        job.description,
                        job.salary_text,
                        job.canonical_url,
                        job.apply_url,
                        job.employment_type,
                        job.remote_type,
                        job.experience_level,
                        job.job_board,
                        job.quality_score,
                        job.posted_at,
                        job.scraped_at,
                        now,
                        now,
                        normalize_text(job.location),
                        search_text,
                    ),
                )
            except sqlite3.Error:
                self.connection.rollback()
                raise
            self.connection.commit()
            return "updated" if existing else "inserted"

    def get_job_by_external_id(self, external_id: str) -> NormalizedJob | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {JOB_COLUMNS} FROM cached_jobs WHERE external_id = ?",
                (external_id,),
            ).fetchone()
            return self._to_job(row) if row else None

    def list_jobs_by_external_ids(self, external_ids: list[str]) -> list[NormalizedJob]:
        if not external_ids:
            return []
        with self._lock:
            jobs: list[NormalizedJob] = []
            # Stay well under SQLite's bound-parameter limit.
            for start in range(0, len(external_ids), 500):
                chunk = external_ids[start : start + 500]
                placeholders = ", ".join("?" for _ in chunk)
                cursor = self.connection.execute(
                    f"SELECT {JOB_COLUMNS} FROM cached_jobs WHERE external_id IN ({placeholders})",
                    tuple(chunk),
                )
                jobs.extend(self._to_job(row) for row in cursor.fetchall())
            return jobs

    def count_jobs(self) -> int:
        with self._lock:
            row = self.connection.execute("SELECT COUNT(1) AS c FROM cached_jobs").fetchone()
            return int(row["c"])

    def _search_filters(
        self,
        *,
        query: str,
        location: str,
        max_age_days: float,
        remote_type: str | None,
        employment_type: str | None,
        experience_level: str | None,
        company: str | None,
    ) -> tuple[str, list[Any]]:
        filters = ["is_expired = 0", "archived_at IS NULL", "scraped_at >= ?"]
        params: list[Any] = [days_ago_iso(max_age_days)]
        for token in normalize_text(query).split():
            filters.append("search_text LIKE ?")
            params.append(f"%{token}%")
        normalized_location = normalize_text(location)
        if normalized_location:
            filters.append("normalized_location LIKE ?")
            params.append(f"%{normalized_location}%")
        if remote_type:
            filters.append("LOWER(remote_type) = ?")
            params.append(remote_type.strip().lower())
        if employment_type:
            filters.append("LOWER(employment_type) LIKE ?")
            params.append(f"%{employment_type.strip().lower()}%")
        if experience_level:
            filters.append("LOWER(experience_level) = ?")
            params.append(experience_level.strip().lower())
        if company:
            filters.append("LOWER(company) LIKE ?")
            params.append(f"%{company.strip().lower()}%")
        return " WHERE " + " AND ".join(filters), params

    def search_jobs(
        self,
        query: str = "",
        location: str = "",
        *,
        max_age_days: float,
        limit: int,
        offset: int = 0,
        remote_type: str | None = None,
        employment_type: str | None = None,
        experience_level: str | None = None,
        company: str | None = None,
    ) -> list[NormalizedJob]:
        with self._lock:
            where, params = self._search_filters(
                query=query,
                location=location,
                max_age_days=max_age_days,
                remote_type=remote_type,
                employment_type=employment_type,
                experience_level=experience_level,
                company=company,
            )
            cursor = self.connection.execute(
                f"SELECT {JOB_COLUMNS} FROM cached_jobs{where}"
                " ORDER BY quality_score DESC, scraped_at DESC, title"
                " LIMIT ? OFFSET ?",
                (*params, limit, offset),
            )
            return [self._to_job(row) for row in cursor.fetchall()]

    def count_search_results(
        self,
        query: str = "",
        location: str = "",
        *,
        max_age_days: float,
        remote_type: str | None = None,
        employment_type: str | None = None,
        experience_level: str | None = None,
        company: str | None = None,
    ) -> int:
        with self._lock:
            where, params = self._search_filters(
                query=query,
                location=location,
                max_age_days=max_age_days,
                remote_type=remote_type,
                employment_type=employment_type,
                experience_level=experience_level,
                company=company,
            )
            row = self.connection.execute(
                f"SELECT COUNT(1) AS c FROM cached_jobs{where}",
                tuple(params),
            ).fetchone()
            return int(row["c"])

    def job_statistics(self) -> JobStatistics:
        with self._lock:
            totals = self.connection.execute(
                """
                SELECT
                    COUNT(1) AS total_jobs,
                    COALESCE(SUM(CASE WHEN is_expired = 0 AND archived_at IS NULL
                        THEN 1 ELSE 0 END), 0) AS active_jobs,
                    COALESCE(SUM(CASE WHEN is_expired = 1 THEN 1 ELSE 0 END), 0) AS expired_jobs,
                    COALESCE(SUM(CASE WHEN archived_at IS NOT NULL
                        THEN 1 ELSE 0 END), 0) AS archived_jobs,
                    COALESCE(SUM(CASE WHEN scraped_at >= ? THEN 1 ELSE 0 END), 0) AS jobs_last_24h,
                    AVG(quality_score) AS average_quality_score
                FROM cached_jobs
                """,
                (days_ago_iso(1),),
            ).fetchone()
            boards = self.connection.execute(
                """
                SELECT COALESCE(job_board, 'unknown') AS job_board, COUNT(1) AS c
                FROM cached_jobs
                GROUP BY COALESCE(job_board, 'unknown')
                ORDER BY job_board
                """
            ).fetchall()
            average = totals["average_quality_score"]
            return JobStatistics(
                total_jobs=int(totals["total_jobs"]),
                active_jobs=int(totals["active_jobs"]),
                expired_jobs=int(totals["expired_jobs"]),
                archived_jobs=int(totals["archived_jobs"]),
                jobs_last_24h=int(totals["jobs_last_24h"]),
                average_quality_score=round(float(average), 2) if average is not None else None,
                by_job_board={row["job_board"]: int(row["c"]) for row in boards},
            )

    def expire_jobs_scraped_before(self, cutoff_iso: str) -> int:
        with self._lock:
            cursor = self.connection.execute(
                """
                UPDATE cached_jobs
                SET is_expired = 1, updated_at = ?
                WHERE is_expired = 0 AND scraped_at < ?
                """,
                (now_utc_iso(), cutoff_iso),
            )
            self.connection.commit()
            return cursor.rowcount

    def list_unarchived_jobs(self) -> list[NormalizedJob]:
        with self._lock:
            cursor = self.connection.execute(
                f"SELECT {JOB_COLUMNS} FROM cached_jobs WHERE archived_at IS NULL ORDER BY id"
            )
            return [self._to_job(row) for row in cursor.fetchall()]

    def archive_jobs(self, job_ids: list[str]) -> int:
        if not job_ids:
            return 0
        with self._lock:
            now = now_utc_iso()
            cursor = self.connection.executemany(
                """
                UPDATE cached_jobs
                SET archived_at = ?, updated_at = ?
                WHERE id = ? AND archived_at IS NULL
                """,
                [(now, now, job_id) for job_id in job_ids],
            )
            self.connection.commit()
            return cursor.rowcount

    def update_job_title(self, job_id: str, title: str) -> bool:
        with self._lock:
            row = self.connection.execute(
                "SELECT company, description FROM cached_jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
            if row is None:
                return False
            cursor = self.connection.execute(
                """
                UPDATE cached_jobs
                SET title = ?, search_text = ?, updated_at = ?
                WHERE id = ?
                """,
                (
                    title,
                    normalize_text(f"{title} {row['company']} {row['description']}"),
                    now_utc_iso(),
                    job_id,
                ),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    def list_candidate_jobs(
        self,
        *,
        scraped_since: str,
        min_quality_score: int,
        limit: int,
    ) -> list[NormalizedJob]:
        with self._lock:
            cursor = self.connection.execute(
                f"""
                SELECT {JOB_COLUMNS}
                FROM cached_jobs
                WHERE scraped_at >= ?
                  AND quality_score >= ?
                  AND is_expired = 0
                  AND archived_at IS NULL
                ORDER BY quality_score DESC, scraped_at DESC
                LIMIT ?
                """,
                (scraped_since, min_quality_score, limit),
            )
            return [self._to_job(row) for row in cursor.fetchall()]

    # scrape runs

    def record_scrape_run(
        self,
        *,
        query: str,
        location: str,
        status: str,
        started_at: str,
        actor_run_id: str | None = None,
        fetched: int = 0,
        inserted: int = 0,
        updated: int = 0,
        skipped: int = 0,
        failed: int = 0,
        error: str | None = None,
    ) -> ScrapeRun:
        with self._lock:
            finished_at = now_utc_iso()
            cursor = self.connection.execute(
                """
                INSERT INTO scrape_runs (
                    query,
                    location,
                    status,
                    actor_run_id,
                    fetched,
                    inserted,
                    updated,
                    skipped,
                    failed,
                    error,
                    started_at,
                    finished_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    query,
                    location,
                    status,
                    actor_run_id,
                    fetched,
                    inserted,
                    updated,
                    skipped,
                    failed,
                    error,
                    started_at,
                    finished_at,
                ),
            )
            self.connection.commit()
            return ScrapeRun(
                scrape_run_id=int(cursor.lastrowid),
                query=query,
                location=location,
                status=status,
                actor_run_id=actor_run_id,
                fetched=fetched,
                inserted=inserted,
                updated=updated,
                skipped=skipped,
                failed=failed,
                error=error,
                started_at=started_at,
                finished_at=finished_at,
            )

    def list_scrape_runs(self, limit: int) -> list[ScrapeRun]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    id AS scrape_run_id,
                    query,
                    location,
                    status,
                    actor_run_id,
                    fetched,
                    inserted,
                    updated,
                    skipped,
                    failed,
                    error,
                    started_at,
                    finished_at
                FROM scrape_runs
                ORDER BY id DESC
                LIMIT ?
                """,
                (limit,),
            )
            return [ScrapeRun(**dict(row)) for row in cursor.fetchall()]

    # user profiles

    def upsert_user_profile(self, payload: UserProfileUpsertRequest) -> UserPreferenceProfile:
        with self._lock:
            now = now_utc_iso()
            self.connection.execute(
                """
                INSERT INTO user_profiles (
                    profile_id,
                    full_name,
                    email,
                    desired_job_title,
                    experience_level,
                    preferred_location,
                    industry_preferences_json,
                    work_setting_preference,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(profile_id) DO UPDATE SET
                    full_name = excluded.full_name,
                    email = excluded.email,
                    desired_job_title = excluded.desired_job_title,
                    experience_level = excluded.experience_level,
                    preferred_location = excluded.preferred_location,
                    industry_preferences_json = excluded.industry_preferences_json,
                    work_setting_preference = excluded.work_setting_preference,
                    updated_at = excluded.updated_at
                """,
                (
                    payload.profile_id,
                    payload.full_name,
                    payload.email,
                    payload.desired_job_title,
                    payload.experience_level,
                    payload.preferred_location,
                    json.dumps(
                        [value.strip() for value in payload.industry_preferences if value.strip()]
                    ),
                    payload.work_setting_preference,
                    now,
                    now,
                ),
            )
            self.connection.commit()
            return self.get_user_profile_or_raise(payload.profile_id)

    def get_user_profile_or_raise(self, profile_id: str) -> UserPreferenceProfile:
        profile = self.get_user_profile(profile_id)
        if profile is None:
            raise KeyError(f"Unknown profile_id: {profile_id}")
        return profile

    def get_user_profile(self, profile_id: str) -> UserPreferenceProfile | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {PROFILE_COLUMNS} FROM user_profiles WHERE profile_id = ?",
                (profile_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_user_profile(row)

    def list_user_profiles(self) -> list[UserPreferenceProfile]:
        with self._lock:
            cursor = self.connection.execute(
                f"SELECT {PROFILE_COLUMNS} FROM user_profiles ORDER BY profile_id"
            )
            return [self._to_user_profile(row) for row in cursor.fetchall()]

    def delete_user_profile(self, profile_id: str) -> bool:
        with self._lock:
            cursor = self.connection.execute(
                "DELETE FROM user_profiles WHERE profile_id = ?",
                (profile_id,),
            )
            self.connection.commit()
            return cursor.rowcount > 0

    def list_eligible_profiles(self, *, recommended_since: str) -> list[UserPreferenceProfile]:
        with self._lock:
            cursor = self.connection.execute(
                f"""
                SELECT {PROFILE_COLUMNS}
                FROM user_profiles
                WHERE desired_job_title IS NOT NULL
                  AND TRIM(desired_job_title) != ''
                  AND experience_level IS NOT NULL
                  AND TRIM(experience_level) != ''
                  AND profile_id NOT IN (
                      SELECT DISTINCT profile_id
                      FROM recommendations
                      WHERE recommended_at >= ?
                  )
                ORDER BY profile_id
                """,
                (recommended_since,),
            )
            return [self._to_user_profile(row) for row in cursor.fetchall()]

    # recommendation runs

    def create_recommendation_run(self, notes: str) -> RecommendationRun:
        with self._lock:
            now = now_utc_iso()
            cursor = self.connection.execute(
                """
                INSERT INTO recommendation_runs (status, notes, created_at, updated_at)
                VALUES ('running', ?, ?, ?)
                """,
                (notes, now, now),
            )
            self.connection.commit()
            return self.get_recommendation_run_or_raise(int(cursor.lastrowid))

    def complete_recommendation_run(
        self,
        run_id: int,
        *,
        users_processed: int,
        recommendations_generated: int,
        notes: str,
    ) -> RecommendationRun:
        with self._lock:
            self.connection.execute(
                """
                UPDATE recommendation_runs
                SET
                    status = 'completed',
                    total_users_processed = ?,
                    total_recommendations_generated = ?,
                    notes = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (users_processed, recommendations_generated, notes, now_utc_iso(), run_id),
            )
            self.connection.commit()
            return self.get_recommendation_run_or_raise(run_id)

    def fail_recommendation_run(self, run_id: int, notes: str) -> None:
        with self._lock:
            self.connection.execute(
                """
                UPDATE recommendation_runs
                SET status = 'failed', notes = ?, updated_at = ?
                WHERE id = ?
                """,
                (notes, now_utc_iso(), run_id),
            )
            self.connection.commit()

    def get_recommendation_run_or_raise(self, run_id: int) -> RecommendationRun:
        run = self.get_recommendation_run(run_id)
        if run is None:
            raise KeyError(f"Unknown run_id: {run_id}")
        return run

    def get_recommendation_run(self, run_id: int) -> RecommendationRun | None:
        with self._lock:
            row = self.connection.execute(
                f"SELECT {RUN_COLUMNS} FROM recommendation_runs WHERE id = ?",
                (run_id,),
            ).fetchone()
            return RecommendationRun(**dict(row)) if row else None

    def list_recommendation_runs(self, limit: int) -> list[RecommendationRun]:
        with self._lock:
            cursor = self.connection.execute(
                f"SELECT {RUN_COLUMNS} FROM recommendation_runs ORDER BY id DESC LIMIT ?",
                (limit,),
            )
            return [RecommendationRun(**dict(row)) for row in cursor.fetchall()]

    def insert_recommendations(self, run_id: int, batch: list[NewRecommendation]) -> int:
        with self._lock:
            now = now_utc_iso()
            try:
                self.connection.executemany(
                    """
                    INSERT INTO recommendations (
                        run_id,
                        profile_id,
                        job_id,
                        match_score,
                        title_similarity_score,
                        experience_match_score,
                        merge_data_json,
                        recommended_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            run_id,
                            item.profile_id,
                            item.job_id,
                            item.match_score,
                            item.title_similarity_score,
                            item.experience_match_score,
                            json.dumps(item.merge_data),
                            now,
                        )
                        for item in batch
                    ],
                )
            except sqlite3.Error:
                self.connection.rollback()
                raise
            self.connection.commit()
            return len(batch)

    def list_run_recommendations(self, run_id: int) -> list[RecommendationRecord]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    id AS recommendation_id,
                    run_id,
                    profile_id,
                    job_id,
                    match_score,
                    title_similarity_score,
                    experience_match_score,
                    merge_data_json,
                    recommended_at,
                    email_sent_at
                FROM recommendations
                WHERE run_id = ?
                ORDER BY profile_id, match_score DESC, id
                """,
                (run_id,),
            )
            return [self._to_recommendation(row) for row in cursor.fetchall()]

    def list_run_export_rows(self, run_id: int) -> list[dict[str, Any]]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    p.email AS user_email,
                    p.full_name AS user_name,
                    p.desired_job_title AS user_desired_title,
                    p.experience_level AS user_experience_level,
                    j.title AS job_title,
                    j.company AS company,
                    j.location AS location,
                    j.salary_text AS salary,
                    j.experience_level AS job_experience_level,
                    j.canonical_url AS job_url,
                    r.match_score AS match_score,
                    r.title_similarity_score AS title_similarity,
                    r.experience_match_score AS experience_match,
                    j.quality_score AS job_quality_score,
                    r.recommended_at AS recommended_at
                FROM recommendations r
                JOIN user_profiles p ON p.profile_id = r.profile_id
                JOIN cached_jobs j ON j.id = r.job_id
                WHERE r.run_id = ?
                ORDER BY r.match_score DESC, r.id
                """,
                (run_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def list_pending_digests(self, run_id: int) -> list[dict[str, Any]]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    r.profile_id AS profile_id,
                    r.merge_data_json AS merge_data_json,
                    p.email AS email,
                    p.full_name AS full_name
                FROM recommendations r
                LEFT JOIN user_profiles p ON p.profile_id = r.profile_id
                WHERE r.run_id = ? AND r.email_sent_at IS NULL
                ORDER BY r.profile_id, r.id
                """,
                (run_id,),
            )
            digests: dict[str, dict[str, Any]] = {}
            for row in cursor.fetchall():
                if row["profile_id"] in digests:
                    continue
                digests[row["profile_id"]] = {
                    "profile_id": row["profile_id"],
                    "email": row["email"],
                    "full_name": row["full_name"],
                    "merge_fields": json.loads(row["merge_data_json"]),
                }
            return list(digests.values())

    def mark_run_notified(self, run_id: int) -> int:
        with self._lock:
            now = now_utc_iso()
            cursor = self.connection.execute(
                """
                UPDATE recommendations
                SET email_sent_at = ?
                WHERE run_id = ? AND email_sent_at IS NULL
                """,
                (now, run_id),
            )
            marked = cursor.rowcount
            self.connection.execute(
                "UPDATE recommendation_runs SET notified_at = ?, updated_at = ? WHERE id = ?",
                (now, now, run_id),
            )
            self.connection.commit()
            return marked

    def _to_job(self, row: sqlite3.Row) -> NormalizedJob:
        values = dict(row)
        values["is_expired"] = bool(values["is_expired"])
        return NormalizedJob(**values)

    def _to_user_profile(self, row: sqlite3.Row) -> UserPreferenceProfile:
        return UserPreferenceProfile(
            profile_id=row["profile_id"],
            full_name=row["full_name"],
            email=row["email"],
            desired_job_title=row["desired_job_title"],
            experience_level=row["experience_level"],
            preferred_location=row["preferred_location"],
            industry_preferences=json.loads(row["industry_preferences_json"] or "[]"),
            work_setting_preference=row["work_setting_preference"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _to_recommendation(self, row: sqlite3.Row) -> RecommendationRecord:
        values = dict(row)
        values["merge_data"] = json.loads(values.pop("merge_data_json"))
        return RecommendationRecord(**values)
