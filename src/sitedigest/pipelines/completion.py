from __future__ import annotations

import logging

from ..errors import NonRetriableError
from ..events import ASSEMBLY_REQUESTED
from ..models import Job
from ..storage import (
    fail_job,
    get_domain,
    get_job,
    mark_stream_closed,
    merge_job_stats,
    try_claim,
)
from ..utils import log_event, utc_now_iso
from .ingest_page import check_external_id

EMPTY_CRAWL_ERROR = "crawl completed without reporting any pages"


def is_ready(job: Job) -> bool:
    """All pages the provider sent have been processed and the stream is closed."""
    return (
        job.status == "processing"
        and job.stream_closed
        and job.pages_received > 0
        and job.pages_processed == job.pages_received
        and (job.pages_expected is None or job.pages_received >= job.pages_expected)
    )


def is_empty_close(job: Job) -> bool:
    return (
        job.status == "processing"
        and job.stream_closed
        and job.pages_received == 0
        and not job.pages_expected
    )


def evaluate_completion(conn, config, job_id: str, logger: logging.Logger) -> dict[str, object]:
    job = get_job(conn, job_id)
    if not job or job.status != "processing":
        return {"claimed": False, "reason": "job_not_processing"}
    if job.assembly_claimed:
        return {"claimed": False, "reason": "already_claimed"}
    task_payload = {
        "job_id": job.id,
        "domain_id": job.domain_id,
        "completed_pages": job.pages_processed,
    }

    if is_empty_close(job):
        if config.jobs.empty_crawl_policy == "fail":
            failed = fail_job(conn, job.id, EMPTY_CRAWL_ERROR)
            log_event(logger, logging.WARNING, "job_empty_crawl_failed", job_id=job.id, failed=failed)
            return {"claimed": False, "reason": "empty_crawl_failed"}
        claimed = try_claim(
            conn,
            job.id,
            "assembly_claimed",
            allow_empty=True,
            task_type=ASSEMBLY_REQUESTED,
            task_payload=task_payload,
        )
        log_event(logger, logging.INFO, "job_empty_crawl_claim", job_id=job.id, claimed=claimed)
        return {"claimed": claimed, "reason": "empty_crawl"}

    if not is_ready(job):
        return {
            "claimed": False,
            "reason": "not_ready",
            "pages_received": job.pages_received,
            "pages_processed": job.pages_processed,
            "pages_expected": job.pages_expected,
            "stream_closed": job.stream_closed,
        }

    claimed = try_claim(
        conn,
        job.id,
        "assembly_claimed",
        task_type=ASSEMBLY_REQUESTED,
        task_payload=task_payload,
    )
    if claimed:
        log_event(
            logger,
            logging.INFO,
            "assembly_claimed",
            job_id=job.id,
            pages=job.pages_processed,
        )
    return {"claimed": claimed, "reason": "ready" if claimed else "lost_claim"}


def handle_crawl_completed(conn, config, services, payload: dict[str, object], logger: logging.Logger) -> dict[str, object]:
    job_id = str(payload.get("job_id") or "")
    job = get_job(conn, job_id) if job_id else None
    if not job:
        raise NonRetriableError(f"job_not_found:{job_id}")
    if job.status != "processing":
        return {"status": "ignored", "reason": "job_not_processing"}
    check_external_id(job, payload)
    domain = get_domain(conn, job.domain_id)
    if not domain or not domain.is_active:
        fail_job(conn, job.id, "domain_inactive")
        raise NonRetriableError(f"domain_inactive:{job.domain_id}")

    pages_expected = _parse_total_pages(payload.get("total_pages"), job.id, logger)
    mark_stream_closed(conn, job.id, pages_expected)
    merge_job_stats(
        conn,
        job.id,
        {
            "crawlCompleted": True,
            "streamClosedAt": utc_now_iso(),
            "providerPageCount": pages_expected,
        },
    )
    log_event(
        logger,
        logging.INFO,
        "crawl_stream_closed",
        job_id=job.id,
        pages_expected=pages_expected,
    )
    result = evaluate_completion(conn, config, job.id, logger)
    if result["reason"] == "not_ready":
        pending = int(result["pages_received"]) - int(result["pages_processed"])
        merge_job_stats(
            conn,
            job.id,
            {"completionNote": f"waiting for {pending} page(s) to finish processing"},
        )
    return result


def handle_crawl_failed(conn, config, services, payload: dict[str, object], logger: logging.Logger) -> dict[str, object]:
    job_id = str(payload.get("job_id") or "")
    job = get_job(conn, job_id) if job_id else None
    if not job:
        raise NonRetriableError(f"job_not_found:{job_id}")
    if job.status != "processing":
        return {"status": "ignored", "reason": "job_not_processing"}
    check_external_id(job, payload)
    error = str(payload.get("error") or "provider reported failure")
    failed = fail_job(conn, job.id, f"crawl_failed: {error}")
    log_event(logger, logging.WARNING, "crawl_failed", job_id=job.id, error=error, updated=failed)
    return {"status": "failed" if failed else "ignored"}


def handle_page_processed(conn, config, services, payload: dict[str, object], logger: logging.Logger) -> dict[str, object]:
    job_id = str(payload.get("job_id") or "")
    if not job_id:
        raise NonRetriableError("job_id is required")
    return evaluate_completion(conn, config, job_id, logger)


def _parse_total_pages(value: object, job_id: str, logger: logging.Logger) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool):
        parsed = None
    elif isinstance(value, int):
        parsed = value
    else:
        try:
            parsed = int(str(value).strip())
        except ValueError:
            parsed = None
    if parsed is None or parsed < 0:
        log_event(logger, logging.WARNING, "total_pages_ignored", job_id=job_id, value=repr(value))
        return None
    return parsed
