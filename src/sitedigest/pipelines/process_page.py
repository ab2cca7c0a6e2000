from __future__ import annotations

import logging

from ..diff import evaluate_change
from ..errors import NonRetriableError, TransientError
from ..events import PAGE_PROCESSED
from ..models import PageVersion
from ..normalize import clean_content, extract_title
from ..objectstore import processed_page_path
from ..storage import (
    get_domain,
    get_job,
    get_page,
    get_previous_version,
    get_version_for_job,
    record_page_version,
)
from ..utils import log_event, new_id, title_from_url, utc_now_iso


def process_page(conn, config, services, payload: dict[str, object], logger: logging.Logger) -> dict[str, object]:
    job_id = str(payload.get("job_id") or "")
    page_id = str(payload.get("page_id") or "")
    job = get_job(conn, job_id) if job_id else None
    if not job:
        raise NonRetriableError(f"job_not_found:{job_id}")
    if job.status != "processing":
        log_event(logger, logging.INFO, "process_skipped_job_closed", job_id=job.id, status=job.status)
        return {"status": "skipped", "reason": "job_not_processing"}
    page = get_page(conn, page_id) if page_id else None
    if not page:
        raise NonRetriableError(f"page_not_found:{page_id}")
    existing = get_version_for_job(conn, page.id, job.id)
    if existing:
        return {"status": "duplicate", "version_id": existing.id}
    domain = get_domain(conn, job.domain_id)
    if not domain:
        raise NonRetriableError(f"domain_not_found:{job.domain_id}")

    raw_path = str(payload.get("raw_path") or "")
    raw = services.store.get(raw_path) if raw_path else None
    if raw is None:
        raise TransientError(f"raw_content_missing path={raw_path}")

    cleaned = clean_content(
        raw,
        extract_main=config.processing.extract_main,
        remove_metadata=config.processing.remove_metadata,
    )
    previous = get_previous_version(conn, page.id, job.id)

    def load_previous() -> str | None:
        if not previous or not previous.processed_path:
            return None
        return services.store.get(previous.processed_path)

    verdict = evaluate_change(
        cleaned,
        previous.fingerprint if previous else None,
        load_previous,
        config.processing.similarity_threshold,
    )

    title = str(payload.get("title") or "") or extract_title(cleaned) or title_from_url(page.url)
    description = str(payload.get("description") or "")
    summary = ""
    if verdict.changed_enough and config.processing.summarize and services.summarizer:
        prompt = domain.summary_prompt or config.llm.default_prompt
        try:
            result = services.summarizer.summarize(
                cleaned, prompt, url=page.url, model=domain.model
            )
            summary = result.get("summary") or ""
            description = description or result.get("description") or ""
        except Exception as exc:  # noqa: BLE001
            log_event(
                logger,
                logging.WARNING,
                "summary_failed",
                job_id=job.id,
                url=page.url,
                error=str(exc)[:200],
            )

    processed_path = processed_page_path(domain.hostname, job.id, job.started_at, page.url)
    services.store.put(processed_path, cleaned)

    version = PageVersion(
        id=new_id("ver"),
        page_id=page.id,
        job_id=job.id,
        url=page.url,
        raw_path=raw_path,
        processed_path=processed_path,
        fingerprint=verdict.fingerprint,
        prev_fingerprint=verdict.prev_fingerprint,
        similarity_score=verdict.similarity,
        changed_enough=verdict.changed_enough,
        reason=verdict.reason,
        title=title,
        description=description or None,
        summary=summary or None,
        lines_added=verdict.lines_added,
        lines_removed=verdict.lines_removed,
        created_at=utc_now_iso(),
    )
    status = record_page_version(
        conn,
        version,
        PAGE_PROCESSED,
        {
            "job_id": job.id,
            "page_id": page.id,
            "version_id": version.id,
            "changed": verdict.changed_enough,
        },
    )
    log_event(
        logger,
        logging.INFO,
        "page_processed",
        job_id=job.id,
        url=page.url,
        status=status,
        changed=verdict.changed_enough,
        similarity=round(verdict.similarity, 4),
    )
    return {
        "status": status,
        "version_id": version.id if status == "recorded" else None,
        "changed": verdict.changed_enough,
        "reason": verdict.reason,
    }
