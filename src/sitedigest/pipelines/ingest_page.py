from __future__ import annotations

import logging

from ..errors import NonRetriableError, TransientError
from ..events import PAGE_PROCESS_REQUESTED
from ..normalize import html_to_text, looks_like_html
from ..objectstore import raw_page_path
from ..storage import accept_page_delivery, get_domain, get_job
from ..utils import log_event, normalize_page_url


def check_external_id(job, payload: dict[str, object]) -> None:
    expected = job.external_job_id
    received = payload.get("external_job_id")
    if not received:
        raise NonRetriableError(f"external_job_id_missing job_id={job.id}")
    if expected is None:
        # Callback raced the launcher recording the provider id.
        raise TransientError(f"external_job_id_pending job_id={job.id}")
    if str(received) != expected:
        raise NonRetriableError(
            f"external_job_id_mismatch job_id={job.id} expected={expected} received={received}"
        )


def handle_crawl_page(conn, config, services, payload: dict[str, object], logger: logging.Logger) -> dict[str, object]:
    job_id = str(payload.get("job_id") or "")
    job = get_job(conn, job_id) if job_id else None
    if not job:
        raise NonRetriableError(f"job_not_found:{job_id}")
    if job.status != "processing":
        log_event(logger, logging.INFO, "page_ignored_job_closed", job_id=job.id, status=job.status)
        return {"status": "ignored", "reason": "job_not_processing"}
    check_external_id(job, payload)
    url = normalize_page_url(str(payload.get("url") or ""))
    if not url:
        raise NonRetriableError(f"page_url_missing job_id={job.id}")
    domain = get_domain(conn, job.domain_id)
    if not domain:
        raise NonRetriableError(f"domain_not_found:{job.domain_id}")

    content = str(payload.get("markdown") or "")
    if not content and payload.get("html"):
        content = html_to_text(str(payload["html"]))
    elif looks_like_html(content):
        content = html_to_text(content)

    raw_path = raw_page_path(domain.hostname, job.id, job.started_at, url)
    services.store.put(raw_path, content)

    metadata = payload.get("metadata") or {}
    result = accept_page_delivery(
        conn,
        job,
        url,
        PAGE_PROCESS_REQUESTED,
        {
            "job_id": job.id,
            "url": url,
            "raw_path": raw_path,
            "title": metadata.get("title") or "",
            "description": metadata.get("description") or "",
        },
    )
    status = result["status"]
    if status == "accepted":
        log_event(
            logger,
            logging.INFO,
            "page_accepted",
            job_id=job.id,
            url=url,
            page_id=result["page_id"],
        )
    elif status == "duplicate":
        log_event(logger, logging.INFO, "page_duplicate_delivery", job_id=job.id, url=url)
    else:
        log_event(logger, logging.INFO, "page_after_assembly_claim", job_id=job.id, url=url)
    return result
