from __future__ import annotations

import hashlib
import hmac
import json
import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from uvicorn.middleware.proxy_headers import ProxyHeadersMiddleware

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_runtime_config,
    set_runtime_config,
)
from .db import get_state_db_path
from .events import (
    CRAWL_COMPLETED,
    CRAWL_FAILED,
    CRAWL_PAGE,
    INGEST_REQUESTED,
    RECRAWL_REQUESTED,
    emit,
)
from .fsinit import prepare_runtime
from .models import ARTIFACT_KINDS, JOB_STATUSES
from .objectstore import LocalObjectStore
from .services.domains_service import (
    create_domain,
    get_domain,
    get_or_create_domain,
    list_domains,
    update_domain,
)
from .storage import (
    cancel_job,
    get_active_job,
    get_artifact,
    get_job,
    get_job_by_external_id,
    get_latest_artifact,
    init_db,
    list_artifacts,
    list_due_domains,
    list_jobs,
    list_tasks,
    list_versions_for_job,
)
from .utils import configure_logging, log_event, utc_now_iso

app = FastAPI(title="sitedigest API")

app.add_middleware(ProxyHeadersMiddleware, trusted_hosts="*")

WEBHOOK_SIGNATURE_HEADER = "X-Sitedigest-Signature"
WEBHOOK_SECRET_ENV = "SD_WEBHOOK_SECRET"


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("SD_ADMIN_TOKEN")
    if not token:
        return
    header = request.headers.get("X-Admin-Token")
    if not header or not hmac.compare_digest(header, token):
        raise HTTPException(status_code=401, detail="unauthorized")


class DomainRequest(BaseModel):
    hostname: str | None = None
    url: str | None = None
    is_active: bool | None = None
    check_interval_minutes: int | None = None
    max_pages: int | None = None
    model: str | None = None
    summary_prompt: str | None = None


class CrawlRequest(BaseModel):
    hostname: str | None = None
    url: str | None = None
    type: str | None = None
    max_pages: int | None = None
    check_interval_minutes: int | None = None


class CancelRequest(BaseModel):
    reason: str | None = None


class RuntimeConfigRequest(BaseModel):
    config: dict


@app.get("/")
def root() -> dict[str, str]:
    return {"service": "sitedigest API"}


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@app.on_event("startup")
def _startup() -> None:
    try:
        conn = init_db(get_state_db_path())
        bootstrap_runtime_config(conn)
        config = load_runtime_config(conn)
    except ConfigError:
        return
    prepare_runtime(config, logging.getLogger("sitedigest.admin"))


@app.post("/webhooks/crawl")
async def crawl_webhook(request: Request, job_id: str | None = None) -> dict[str, object]:
    """Translate provider callbacks into queued tasks.

    Deliveries are at-least-once and unordered; every task handler is
    idempotent, so this endpoint only resolves the job and enqueues.
    """
    logger = logging.getLogger("sitedigest.admin")
    raw = await request.body()
    _verify_webhook_signature(request, raw)
    try:
        body = json.loads(raw or b"{}")
    except json.JSONDecodeError as exc:
        raise HTTPException(status_code=400, detail="invalid_json") from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="invalid_payload")
    event_type = str(body.get("type") or "")
    external_id = str(body.get("id") or body.get("jobId") or "")
    data = body.get("data")

    if event_type == "crawl.started":
        return {"received": True, "type": event_type}
    if event_type not in {"crawl.page", "crawl.completed", "crawl.failed"}:
        raise HTTPException(status_code=400, detail=f"unknown_event_type:{event_type}")
    if not external_id:
        raise HTTPException(status_code=400, detail="external_job_id_missing")

    conn = _get_conn()
    job = _resolve_webhook_job(conn, external_id, job_id)
    if not job:
        log_event(logger, logging.WARNING, "webhook_job_not_found", external_job_id=external_id)
        raise HTTPException(status_code=404, detail="job_not_found")

    base = {"job_id": job.id, "external_job_id": external_id}
    task_ids: list[str] = []
    if event_type == "crawl.page":
        documents = data if isinstance(data, list) else [data] if isinstance(data, dict) else []
        for document in documents:
            if not isinstance(document, dict):
                continue
            metadata = document.get("metadata") or {}
            url = str(metadata.get("sourceURL") or metadata.get("url") or "")
            payload = dict(base)
            payload.update(
                {
                    "url": url,
                    "markdown": document.get("markdown") or "",
                    "html": document.get("html") or "",
                    "metadata": {
                        "title": metadata.get("title") or "",
                        "description": metadata.get("description") or "",
                    },
                }
            )
            task_ids.append(emit(conn, CRAWL_PAGE, payload))
    elif event_type == "crawl.completed":
        payload = dict(base)
        total = _completed_total(body, data)
        if total is not None:
            payload["total_pages"] = total
        task_ids.append(emit(conn, CRAWL_COMPLETED, payload))
    else:
        error = ""
        if isinstance(data, dict):
            error = str(data.get("error") or "")
        payload = dict(base)
        payload["error"] = error or str(body.get("error") or "unknown error")
        task_ids.append(emit(conn, CRAWL_FAILED, payload))

    log_event(
        logger,
        logging.INFO,
        "webhook_received",
        type=event_type,
        job_id=job.id,
        external_job_id=external_id,
        tasks=len(task_ids),
    )
    return {"received": True, "type": event_type, "job_id": job.id, "task_ids": task_ids}


@app.get("/domains")
def domains_list(active_only: bool = False) -> list[dict[str, object]]:
    conn = _get_conn()
    return list_domains(conn, active_only)


@app.post("/domains")
def domains_create(
    payload: DomainRequest, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    conn = _get_conn()
    try:
        return create_domain(conn, payload.model_dump())
    except ValueError as exc:
        status = 409 if str(exc) == "domain_exists" else 400
        raise HTTPException(status_code=status, detail=str(exc)) from exc


@app.post("/domains/crawl")
def domains_crawl(
    payload: CrawlRequest, _: None = Depends(_require_admin_token)
) -> dict[str, object]:
    conn = _get_conn()
    fields = payload.model_dump(exclude={"type"})
    try:
        domain, created = get_or_create_domain(conn, fields)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    job_type = payload.type or ("initial" if created else "update")
    return _request_crawl(conn, domain.id, job_type, payload.max_pages, created=created)


@app.get("/domains/{domain_id}")
def domains_read(domain_id: str) -> dict[str, object]:
    conn = _get_conn()
    domain = get_domain(conn, domain_id)
    if not domain:
        raise HTTPException(status_code=404, detail="domain_not_found")
    domain["recent_jobs"] = [_job_to_dict(job) for job in list_jobs(conn, domain_id=domain_id, limit=10)]
    return domain


@app.patch("/domains/{domain_id}")
def domains_update(
    domain_id: str,
    payload: DomainRequest,
    _: None = Depends(_require_admin_token),
) -> dict[str, object]:
    conn = _get_conn()
    fields = payload.model_dump(exclude_unset=True, exclude={"hostname", "url"})
    try:
        return update_domain(conn, domain_id, fields)
    except LookupError as exc:
        raise HTTPException(status_code=404, detail="domain_not_found") from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.post("/domains/{domain_id}/crawl")
def domains_crawl_by_id(
    domain_id: str,
    payload: CrawlRequest | None = None,
    _: None = Depends(_require_admin_token),
) -> dict[str, object]:
    conn = _get_conn()
    if not get_domain(conn, domain_id):
        raise HTTPException(status_code=404, detail="domain_not_found")
    job_type = (payload.type if payload else None) or "update"
    max_pages = payload.max_pages if payload else None
    return _request_crawl(conn, domain_id, job_type, max_pages, created=False)


@app.get("/domains/{domain_id}/artifacts")
def domains_artifacts(domain_id: str, kind: str | None = None, limit: int = 50) -> dict[str, object]:
    conn = _get_conn()
    if not get_domain(conn, domain_id):
        raise HTTPException(status_code=404, detail="domain_not_found")
    if kind and kind not in ARTIFACT_KINDS:
        raise HTTPException(status_code=400, detail=f"unknown_artifact_kind:{kind}")
    artifacts = list_artifacts(conn, domain_id=domain_id, kind=kind, limit=limit)
    latest = {}
    for artifact_kind in ARTIFACT_KINDS:
        artifact = get_latest_artifact(conn, domain_id, artifact_kind)
        latest[artifact_kind] = asdict(artifact) if artifact else None
    return {"artifacts": [asdict(artifact) for artifact in artifacts], "latest": latest}


@app.get("/domains/{domain_id}/artifacts/{kind}/latest", response_class=PlainTextResponse)
def domains_latest_artifact_content(domain_id: str, kind: str) -> str:
    conn = _get_conn()
    if kind not in ARTIFACT_KINDS:
        raise HTTPException(status_code=400, detail=f"unknown_artifact_kind:{kind}")
    artifact = get_latest_artifact(conn, domain_id, kind)
    if not artifact:
        raise HTTPException(status_code=404, detail="artifact_not_found")
    return _read_artifact(conn, artifact.blob_path)


@app.get("/artifacts/{artifact_id}/content", response_class=PlainTextResponse)
def artifact_content(artifact_id: str) -> str:
    conn = _get_conn()
    artifact = get_artifact(conn, artifact_id)
    if not artifact:
        raise HTTPException(status_code=404, detail="artifact_not_found")
    return _read_artifact(conn, artifact.blob_path)


@app.get("/jobs")
def jobs(
    domain_id: str | None = None,
    status: str | None = None,
    limit: int = 20,
) -> list[dict[str, object]]:
    conn = _get_conn()
    if status and status not in JOB_STATUSES:
        raise HTTPException(status_code=400, detail=f"unknown_job_status:{status}")
    return [_job_to_dict(job) for job in list_jobs(conn, domain_id=domain_id, status=status, limit=limit)]


@app.get("/jobs/{job_id}")
def jobs_read(job_id: str) -> dict[str, object]:
    conn = _get_conn()
    job = get_job(conn, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job_not_found")
    data = _job_to_dict(job)
    data["versions"] = [
        {
            "id": version.id,
            "url": version.url,
            "changed_enough": version.changed_enough,
            "reason": version.reason,
            "similarity_score": version.similarity_score,
            "lines_added": version.lines_added,
            "lines_removed": version.lines_removed,
        }
        for version in list_versions_for_job(conn, job.id)
    ]
    data["artifacts"] = [asdict(artifact) for artifact in list_artifacts(conn, job_id=job.id)]
    return data


@app.post("/jobs/{job_id}/cancel")
def jobs_cancel(
    job_id: str,
    payload: CancelRequest | None = None,
    _: None = Depends(_require_admin_token),
) -> dict[str, object]:
    logger = logging.getLogger("sitedigest.admin")
    conn = _get_conn()
    job = get_job(conn, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="job_not_found")
    reason = (payload.reason if payload else None) or "canceled_by_admin"
    if not cancel_job(conn, job_id, reason):
        raise HTTPException(status_code=409, detail=f"job_not_processing:{job.status}")
    log_event(logger, logging.INFO, "job_canceled", job_id=job_id, reason=reason)
    return _job_to_dict(get_job(conn, job_id))


@app.get("/schedule/due")
def schedule_due() -> dict[str, object]:
    conn = _get_conn()
    due = list_due_domains(conn, utc_now_iso())
    return {"total": len(due), "domains": [domain.hostname for domain in due]}


@app.post("/schedule/recrawls")
def schedule_recrawls(_: None = Depends(_require_admin_token)) -> dict[str, object]:
    logger = logging.getLogger("sitedigest.admin")
    conn = _get_conn()
    task_id = emit(conn, RECRAWL_REQUESTED, {"triggered_by": "api"}, debounce=True)
    log_event(logger, logging.INFO, "recrawl_requested", task_id=task_id)
    return {"task_id": task_id}


@app.get("/tasks", dependencies=[Depends(_require_admin_token)])
def tasks(
    status: str | None = None,
    task_type: str | None = None,
    limit: int = 50,
) -> list[dict[str, object]]:
    conn = _get_conn()
    return [
        {
            "id": task.id,
            "task_type": task.task_type,
            "status": task.status,
            "requested_at": task.requested_at,
            "available_at": task.available_at,
            "finished_at": task.finished_at or "",
            "error": task.error or "",
            "attempt": task.payload.get("attempt", 0),
        }
        for task in list_tasks(conn, status=status, task_type=task_type, limit=limit)
    ]


def _request_crawl(conn, domain_id: str, job_type: str, max_pages: int | None, *, created: bool) -> dict[str, object]:
    logger = logging.getLogger("sitedigest.admin")
    active = get_active_job(conn, domain_id)
    if active:
        raise HTTPException(status_code=409, detail=f"active_job_exists:{active.id}")
    payload: dict[str, object] = {"domain_id": domain_id, "type": job_type, "requested_by": "api"}
    if max_pages:
        payload["max_pages"] = max_pages
    task_id = emit(conn, INGEST_REQUESTED, payload)
    log_event(
        logger,
        logging.INFO,
        "crawl_requested",
        domain_id=domain_id,
        job_type=job_type,
        task_id=task_id,
    )
    return {"domain_id": domain_id, "created": created, "type": job_type, "task_id": task_id}


def _resolve_webhook_job(conn, external_id: str, job_id: str | None):
    job = get_job_by_external_id(conn, external_id)
    if job:
        return job
    if not job_id:
        return None
    # The callback can arrive before the launcher has recorded the provider id.
    job = get_job(conn, job_id)
    if job and job.external_job_id in (None, external_id):
        return job
    return None


def _completed_total(body: dict, data: object) -> int | None:
    source = data if isinstance(data, dict) else body
    for key in ("totalPages", "total", "pagesScraped"):
        value = source.get(key)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    return None


def _verify_webhook_signature(request: Request, raw: bytes) -> None:
    secret = os.environ.get(WEBHOOK_SECRET_ENV)
    if not secret:
        return
    provided = request.headers.get(WEBHOOK_SIGNATURE_HEADER, "")
    if provided.startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode("utf-8"), raw, hashlib.sha256).hexdigest()
    if not provided or not hmac.compare_digest(provided, expected):
        raise HTTPException(status_code=401, detail="invalid_signature")


def _read_artifact(conn, blob_path: str) -> str:
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    content = LocalObjectStore(config.paths.object_store_dir).get(blob_path)
    if content is None:
        raise HTTPException(status_code=404, detail="artifact_content_missing")
    return content


def _job_to_dict(job) -> dict[str, object]:
    return {
        "id": job.id,
        "domain_id": job.domain_id,
        "job_type": job.job_type,
        "status": job.status,
        "external_job_id": job.external_job_id,
        "started_at": job.started_at,
        "finished_at": job.finished_at or "",
        "pages_received": job.pages_received,
        "pages_processed": job.pages_processed,
        "pages_expected": job.pages_expected,
        "stream_closed": job.stream_closed,
        "assembly_claimed": job.assembly_claimed,
        "stats": job.stats,
    }


def _setup_logging() -> None:
    configure_logging("sitedigest.admin")


_setup_logging()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("sitedigest")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn():
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn
