from __future__ import annotations

import logging
from datetime import timedelta

from ..events import INGEST_REQUESTED, emit
from ..storage import fail_job, list_due_domains, list_stale_jobs
from ..utils import log_event, parse_iso, utc_now_iso

STALE_JOB_REASON = "stale_job_timeout"


def schedule_recrawls(conn, config, services, payload: dict[str, object], logger: logging.Logger) -> dict[str, object]:
    """Queue an update crawl for every domain whose check interval has elapsed."""
    now = utc_now_iso()
    reaped = reap_stale_jobs(conn, config, logger, now_iso=now)
    due = list_due_domains(conn, now)
    task_ids = []
    for domain in due:
        task_ids.append(
            emit(
                conn,
                INGEST_REQUESTED,
                {"domain_id": domain.id, "type": "update", "requested_by": "scheduler"},
            )
        )
    log_event(
        logger,
        logging.INFO,
        "recrawl_scheduled",
        due=len(due),
        reaped=len(reaped),
        triggered_by=payload.get("triggered_by") or "worker",
    )
    return {
        "scheduled": len(task_ids),
        "domains": [domain.hostname for domain in due],
        "reaped_jobs": reaped,
    }


def reap_stale_jobs(conn, config, logger: logging.Logger, *, now_iso: str | None = None) -> list[str]:
    now = parse_iso(now_iso or utc_now_iso())
    cutoff = (now - timedelta(minutes=config.jobs.stale_job_minutes)).isoformat()
    reaped = []
    for job in list_stale_jobs(conn, cutoff):
        if fail_job(conn, job.id, STALE_JOB_REASON):
            reaped.append(job.id)
            log_event(
                logger,
                logging.WARNING,
                "job_reaped",
                job_id=job.id,
                started_at=job.started_at,
                received=job.pages_received,
                processed=job.pages_processed,
            )
    return reaped
