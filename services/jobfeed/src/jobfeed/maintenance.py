from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta

from jobcommon.utils import days_ago_iso, now_utc, parse_iso_datetime

from jobfeed.actor import SUCCEEDED_STATUS
from jobfeed.config import Settings
from jobfeed.errors import ActorError
from jobfeed.extract import EXTERNAL_ID, extract_title, first_value, resolve_canonical_url
from jobfeed.ingestion import ActorFactory
from jobfeed.models import CleanupResponse, RepairExample, RepairStats, RepairTitlesResponse
from jobfeed.repository import JobFeedRepository
from jobfeed.titles import is_valid_title

LOGGER = logging.getLogger("jobmatch.jobfeed.maintenance")

RECENT_RUNS_LIMIT = 20
MAX_REPAIR_EXAMPLES = 10


def cleanup_jobs(settings: Settings, repository: JobFeedRepository) -> CleanupResponse:
    """Expire old jobs, then archive expired, low-quality and mistitled ones."""
    expired = repository.expire_jobs_scraped_before(days_ago_iso(settings.expire_after_days))

    to_archive: list[str] = []
    invalid_titles = 0
    for job in repository.list_unarchived_jobs():
        if job.id is None:
            continue
        if not is_valid_title(job.title):
            invalid_titles += 1
            to_archive.append(job.id)
        elif job.is_expired or job.quality_score < settings.matching.min_quality_score:
            to_archive.append(job.id)

    archived = repository.archive_jobs(to_archive)
    LOGGER.info(
        json.dumps(
            {
                "event": "job_cleanup_complete",
                "expired": expired,
                "archived": archived,
                "invalid_titles": invalid_titles,
            }
        )
    )
    return CleanupResponse(expired=expired, archived=archived, invalid_titles=invalid_titles)


def repair_titles(
    settings: Settings,
    repository: JobFeedRepository,
    actor_factory: ActorFactory,
    *,
    dry_run: bool = True,
    now: datetime | None = None,
) -> RepairTitlesResponse:
    """Re-derive stored titles from the datasets of recent successful actor runs."""
    settings.require_actor_token()
    cutoff = (now or now_utc()) - timedelta(hours=settings.repair_lookback_hours)

    titles_by_external_id: dict[str, str] = {}
    with actor_factory() as actor:
        runs = actor.list_runs(limit=RECENT_RUNS_LIMIT)
        relevant = []
        for run in runs:
            raw_finished_at = run.get("finishedAt")
            finished_at = (
                parse_iso_datetime(raw_finished_at) if isinstance(raw_finished_at, str) else None
            )
            if (
                run.get("status") == SUCCEEDED_STATUS
                and run.get("defaultDatasetId")
                and finished_at is not None
                and finished_at >= cutoff
            ):
                relevant.append(run)

        for run in relevant:
            try:
                items = actor.fetch_items(str(run["defaultDatasetId"]))
            except ActorError as exc:
                LOGGER.warning(
                    json.dumps(
                        {
                            "event": "repair_dataset_unreadable",
                            "actor_run_id": run.get("id"),
                            "error": str(exc),
                        }
                    )
                )
                continue
            for item in items:
                external_id = first_value(item, EXTERNAL_ID) or resolve_canonical_url(
                    item, settings.source_origin
                )
                title = extract_title(item)
                if external_id and title:
                    titles_by_external_id[external_id] = title

    if not titles_by_external_id:
        return RepairTitlesResponse(
            success=True,
            message="No valid titles found in recent actor runs",
            stats=RepairStats(
                runs_checked=len(runs),
                relevant_runs=len(relevant),
                dry_run=dry_run,
            ),
        )

    stored = repository.list_jobs_by_external_ids(list(titles_by_external_id))
    needing_update = [
        job for job in stored if job.id and job.title != titles_by_external_id[job.external_id]
    ]

    updated = 0
    if not dry_run:
        for job in needing_update:
            if repository.update_job_title(job.id, titles_by_external_id[job.external_id]):
                updated += 1

    stats = RepairStats(
        runs_checked=len(runs),
        relevant_runs=len(relevant),
        jobs_in_mapping=len(titles_by_external_id),
        jobs_in_database=len(stored),
        jobs_needing_update=len(needing_update),
        jobs_actually_updated=updated,
        dry_run=dry_run,
    )
    LOGGER.info(json.dumps({"event": "title_repair_complete", **stats.model_dump()}))
    message = (
        f"Dry run: {len(needing_update)} titles would be updated"
        if dry_run
        else f"Updated {updated} job titles"
    )
    return RepairTitlesResponse(
        success=True,
        message=message,
        stats=stats,
        examples=[
            RepairExample(
                id=job.id,
                old_title=job.title,
                new_title=titles_by_external_id[job.external_id],
                external_id=job.external_id,
            )
            for job in needing_update[:MAX_REPAIR_EXAMPLES]
        ],
    )
