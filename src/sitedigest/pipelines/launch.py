from __future__ import annotations

import logging

from ..errors import NonRetriableError, TransientError, is_transient
from ..models import JOB_TYPES
from ..services.crawl_provider import freshness_hint_ms
from ..storage import (
    create_job,
    fail_job,
    get_active_job,
    get_domain,
    get_job,
    merge_job_stats,
    release_lease,
    set_external_job_id,
    try_acquire_lease,
)
from ..utils import log_event, new_id, utc_now_iso


def launch_crawl(conn, config, services, payload: dict[str, object], logger: logging.Logger) -> dict[str, object]:
    """Create a processing job for a domain and start the provider crawl.

    A retried launch carries ``job_id`` in its payload and resumes that job
    instead of creating another one.
    """
    domain_id = str(payload.get("domain_id") or "")
    job_type = str(payload.get("type") or "update")
    if not domain_id:
        raise NonRetriableError("domain_id is required")
    if job_type not in JOB_TYPES:
        raise NonRetriableError(f"unknown_job_type:{job_type}")
    domain = get_domain(conn, domain_id)
    if not domain:
        raise NonRetriableError(f"domain_not_found:{domain_id}")

    job = None
    resume_job_id = payload.get("job_id")
    if resume_job_id:
        job = get_job(conn, str(resume_job_id))
        if not job or job.status != "processing" or job.external_job_id:
            log_event(
                logger,
                logging.INFO,
                "launch_resume_skipped",
                job_id=resume_job_id,
                status=job.status if job else "missing",
            )
            return {"skipped": True, "reason": "resume_not_needed", "job_id": resume_job_id}
    if not domain.is_active:
        if job:
            fail_job(conn, job.id, "domain_inactive")
        raise NonRetriableError(f"domain_inactive:{domain_id}")
    if job is None and get_active_job(conn, domain_id):
        raise NonRetriableError(f"active_job_exists:{domain_id}")

    holder = new_id("launch")
    domain_lease = f"launch:domain:{domain.id}"
    ttl = config.launcher.lease_ttl_seconds
    if not try_acquire_lease(conn, domain_lease, holder, ttl):
        raise TransientError("launch_in_progress")
    slot = None
    try:
        slot = _acquire_launch_slot(conn, holder, config.launcher.max_concurrent_launches, ttl)
        if slot is None:
            raise TransientError("launch_capacity_exhausted")
        if job is None:
            try:
                job = create_job(conn, domain.id, job_type)
            except ValueError as exc:
                raise NonRetriableError(f"active_job_exists:{domain_id}") from exc
            log_event(
                logger,
                logging.INFO,
                "job_created",
                job_id=job.id,
                domain=domain.hostname,
                job_type=job_type,
            )

        max_pages = int(payload.get("max_pages") or domain.max_pages or config.provider.max_pages)
        callback_url = f"{config.app.public_base_url}{config.provider.callback_path}?job_id={job.id}"
        try:
            external_id = services.provider.start(
                f"https://{domain.hostname}",
                freshness_hint_ms(domain.check_interval_minutes),
                callback_url,
                max_pages,
            )
        except NonRetriableError as exc:
            fail_job(conn, job.id, f"provider_rejected: {exc}")
            raise
        except Exception as exc:  # noqa: BLE001
            if is_transient(exc):
                raise TransientError(str(exc), payload_updates={"job_id": job.id}) from exc
            fail_job(conn, job.id, f"provider_error: {exc}")
            raise NonRetriableError(f"provider_error: {exc}") from exc

        if not set_external_job_id(conn, job.id, external_id):
            log_event(logger, logging.WARNING, "launch_job_closed", job_id=job.id)
            return {"job_id": job.id, "external_job_id": external_id, "attached": False}
        merge_job_stats(
            conn,
            job.id,
            {
                "crawlStartedAt": utc_now_iso(),
                "maxPages": max_pages,
                "requestedBy": payload.get("requested_by") or "manual",
            },
        )
        log_event(
            logger,
            logging.INFO,
            "crawl_launched",
            job_id=job.id,
            domain=domain.hostname,
            external_job_id=external_id,
        )
        return {"job_id": job.id, "external_job_id": external_id, "attached": True}
    finally:
        if slot:
            release_lease(conn, slot, holder)
        release_lease(conn, domain_lease, holder)


def _acquire_launch_slot(conn, holder: str, slots: int, ttl_seconds: int) -> str | None:
    for index in range(slots):
        name = f"launch:slot:{index}"
        if try_acquire_lease(conn, name, holder, ttl_seconds):
            return name
    return None
