from __future__ import annotations

import logging

from ..errors import NonRetriableError, TransientError
from ..events import FINALIZE_REQUESTED, emit
from ..models import ARTIFACT_KINDS
from ..objectstore import artifact_path
from ..publish import PageEntry, render_full_archive, render_index
from ..storage import (
    create_artifact,
    get_domain,
    get_job,
    list_artifacts,
    list_versions_for_job,
)
from ..utils import log_event, title_from_url, utc_now_iso


def assemble_artifacts(conn, config, services, payload: dict[str, object], logger: logging.Logger) -> dict[str, object]:
    """Render llms.txt and llms-full.txt for the changed pages of a claimed job."""
    job_id = str(payload.get("job_id") or "")
    job = get_job(conn, job_id) if job_id else None
    if not job:
        raise NonRetriableError(f"job_not_found:{job_id}")
    if job.status != "processing":
        log_event(logger, logging.INFO, "assembly_skipped_job_closed", job_id=job.id, status=job.status)
        return {"status": "skipped", "reason": "job_not_processing"}
    if not job.assembly_claimed:
        raise NonRetriableError(f"assembly_not_claimed job_id={job.id}")
    domain = get_domain(conn, job.domain_id)
    if not domain:
        raise NonRetriableError(f"domain_not_found:{job.domain_id}")

    versions = list_versions_for_job(conn, job.id, changed_only=True)
    if not versions:
        emit(conn, FINALIZE_REQUESTED, {"job_id": job.id, "artifact_ids": []})
        log_event(logger, logging.INFO, "assembly_no_changes", job_id=job.id, domain=domain.hostname)
        return {"status": "no_changes", "artifact_ids": []}

    entries = []
    for version in versions:
        content = services.store.get(version.processed_path) if version.processed_path else None
        if content is None:
            raise TransientError(f"processed_content_missing version_id={version.id}")
        entries.append(
            PageEntry(
                url=version.url,
                title=version.title or title_from_url(version.url),
                description=version.description or "",
                summary=(version.summary or "") if config.assembly.include_summaries else "",
                content=content,
            )
        )

    existing = {artifact.kind: artifact for artifact in list_artifacts(conn, job_id=job.id)}
    generated_at = utc_now_iso()
    renderers = {
        "llms_txt": lambda: render_index(
            domain.hostname,
            entries,
            generated_at,
            description_chars=config.assembly.description_chars,
            include_summaries=config.assembly.include_summaries,
        ),
        "llms_full_txt": lambda: render_full_archive(domain.hostname, entries, generated_at),
    }
    artifact_ids = []
    for kind in ARTIFACT_KINDS:
        artifact = existing.get(kind)
        if artifact is None:
            path = artifact_path(domain.hostname, job.id, job.started_at, kind)
            services.store.put(path, renderers[kind]())
            artifact = create_artifact(conn, job.id, domain.id, kind, path)
            log_event(
                logger,
                logging.INFO,
                "artifact_created",
                job_id=job.id,
                kind=kind,
                version=artifact.version,
                path=path,
            )
        artifact_ids.append(artifact.id)

    emit(conn, FINALIZE_REQUESTED, {"job_id": job.id, "artifact_ids": artifact_ids})
    return {"status": "assembled", "artifact_ids": artifact_ids, "pages": len(entries)}
