from __future__ import annotations

import logging

from ..errors import NonRetriableError
from ..models import Job
from ..storage import (
    finish_job,
    get_domain,
    get_job,
    list_artifacts,
    list_versions_for_job,
)
from ..utils import log_event, parse_iso, utc_now_iso


def compute_job_stats(conn, job: Job, hostname: str, finished_at: str) -> dict[str, object]:
    """Statistics for a job, always recomputed from its versions and artifacts."""
    versions = list_versions_for_job(conn, job.id)
    artifacts = list_artifacts(conn, job_id=job.id)
    new_pages = sum(1 for version in versions if version.prev_fingerprint is None)
    changed_pages = sum(
        1 for version in versions if version.changed_enough and version.prev_fingerprint is not None
    )
    unchanged_pages = sum(1 for version in versions if not version.changed_enough)
    average_similarity = (
        round(sum(version.similarity_score for version in versions) / len(versions), 4)
        if versions
        else 0.0
    )
    duration = max(0.0, (parse_iso(finished_at) - parse_iso(job.started_at)).total_seconds())
    completion_rate = (
        round(job.pages_processed / job.pages_received * 100, 1) if job.pages_received else 0.0
    )
    return {
        "domain": hostname,
        "jobType": job.job_type,
        "startedAt": job.started_at,
        "finishedAt": finished_at,
        "durationSeconds": round(duration, 3),
        "durationMinutes": round(duration / 60, 2),
        "totalPagesProcessed": len(versions),
        "uniquePages": len({version.page_id for version in versions}),
        "newPages": new_pages,
        "changedPages": changed_pages,
        "unchangedPages": unchanged_pages,
        "averageSimilarity": average_similarity,
        "pagesReceived": job.pages_received,
        "artifactsGenerated": len(artifacts),
        "artifactIds": [artifact.id for artifact in artifacts],
        "completionRate": completion_rate,
        "emptyCrawl": job.pages_received == 0,
        "finalizedAt": utc_now_iso(),
    }


def finalize_job(conn, config, services, payload: dict[str, object], logger: logging.Logger) -> dict[str, object]:
    job_id = str(payload.get("job_id") or "")
    job = get_job(conn, job_id) if job_id else None
    if not job:
        raise NonRetriableError(f"job_not_found:{job_id}")
    if job.status != "processing":
        log_event(logger, logging.INFO, "finalize_skipped", job_id=job.id, status=job.status)
        return {"status": "skipped", "reason": "job_not_processing"}
    if not job.assembly_claimed:
        raise NonRetriableError(f"assembly_not_claimed job_id={job.id}")
    domain = get_domain(conn, job.domain_id)
    hostname = domain.hostname if domain else job.domain_id

    stats = compute_job_stats(conn, job, hostname, utc_now_iso())
    finished = finish_job(conn, job.id, stats)
    log_event(
        logger,
        logging.INFO,
        "job_finished" if finished else "finalize_lost_race",
        job_id=job.id,
        domain=hostname,
        pages=stats["totalPagesProcessed"],
        changed=stats["newPages"] + stats["changedPages"],
        artifacts=stats["artifactsGenerated"],
    )
    return {"status": "finished" if finished else "skipped", "stats": stats}
