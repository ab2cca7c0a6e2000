from __future__ import annotations

import json
import logging
from typing import Any

from .db import IntegrityViolation, connect_db
from .models import Artifact, Domain, Job, Page, PageVersion, Task
from .utils import (
    json_dumps,
    json_loads_or,
    log_event,
    new_id,
    parse_iso,
    utc_now_iso,
    utc_now_iso_offset,
)

_DOMAIN_COLUMNS = """
    id, hostname, is_active, check_interval_minutes, max_pages, model, summary_prompt,
    created_at, updated_at
"""

_JOB_COLUMNS = """
    id, domain_id, job_type, status, external_job_id, started_at, finished_at,
    pages_received, pages_processed, pages_expected, stream_closed, assembly_claimed,
    stats_json
"""

_VERSION_COLUMNS = """
    id, page_id, job_id, url, raw_path, processed_path, fingerprint, prev_fingerprint,
    similarity_score, changed_enough, reason, title, description, summary,
    lines_added, lines_removed, created_at
"""

_ARTIFACT_COLUMNS = "id, job_id, domain_id, kind, blob_path, version, created_at"

_TASK_COLUMNS = """
    id, task_type, status, payload_json, result_json, requested_at, available_at,
    started_at, finished_at, locked_by, locked_at, error
"""

# Readiness for assembly, kept in lockstep with pipelines.completion.is_ready.
_READY_SQL = """
    status = 'processing'
    AND stream_closed = 1
    AND pages_processed = pages_received
    AND (pages_expected IS NULL OR pages_received >= pages_expected)
    AND (pages_received > 0 OR ? = 1)
"""

_CLAIM_CONDITIONS = {
    "assembly_claimed": _READY_SQL,
}

ARTIFACT_VERSION_RETRIES = 5


def init_db(path: str | None = None):
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def create_domain(
    conn: Any,
    hostname: str,
    *,
    is_active: bool = True,
    check_interval_minutes: int = 1440,
    max_pages: int = 10,
    model: str | None = None,
    summary_prompt: str | None = None,
) -> Domain:
    domain_id = new_id("dom")
    now = utc_now_iso()
    try:
        conn.execute(
            """
            INSERT INTO domains
                (id, hostname, is_active, check_interval_minutes, max_pages, model,
                 summary_prompt, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                domain_id,
                hostname,
                1 if is_active else 0,
                check_interval_minutes,
                max_pages,
                model,
                summary_prompt,
                now,
                now,
            ),
        )
    except IntegrityViolation as exc:
        raise ValueError("domain_exists") from exc
    conn.commit()
    return get_domain(conn, domain_id)


def get_domain(conn: Any, domain_id: str) -> Domain | None:
    cursor = conn.execute(f"SELECT {_DOMAIN_COLUMNS} FROM domains WHERE id = ?", (domain_id,))
    row = cursor.fetchone()
    return _row_to_domain(row) if row else None


def get_domain_by_hostname(conn: Any, hostname: str) -> Domain | None:
    cursor = conn.execute(
        f"SELECT {_DOMAIN_COLUMNS} FROM domains WHERE hostname = ?", (hostname,)
    )
    row = cursor.fetchone()
    return _row_to_domain(row) if row else None


def list_domains(conn: Any, active_only: bool = False) -> list[Domain]:
    where = "WHERE is_active = 1" if active_only else ""
    cursor = conn.execute(f"SELECT {_DOMAIN_COLUMNS} FROM domains {where} ORDER BY hostname")
    return [_row_to_domain(row) for row in cursor.fetchall()]


def update_domain(conn: Any, domain_id: str, fields: dict[str, object]) -> Domain | None:
    allowed = {"is_active", "check_interval_minutes", "max_pages", "model", "summary_prompt"}
    assignments = []
    params: list[object] = []
    for key, value in fields.items():
        if key not in allowed:
            raise ValueError(f"unknown_domain_field:{key}")
        if key == "is_active":
            value = 1 if value else 0
        assignments.append(f"{key} = ?")
        params.append(value)
    if assignments:
        assignments.append("updated_at = ?")
        params.append(utc_now_iso())
        params.append(domain_id)
        conn.execute(
            f"UPDATE domains SET {', '.join(assignments)} WHERE id = ?",
            tuple(params),
        )
        conn.commit()
    return get_domain(conn, domain_id)


def list_due_domains(conn: Any, now_iso: str) -> list[Domain]:
    """Active domains whose last finished crawl is older than their interval.

    Domains that never finished a crawl, or that have a crawl in flight, are
    not due.
    """
    cursor = conn.execute(
        f"""
        SELECT {_DOMAIN_COLUMNS},
               (SELECT MAX(j.finished_at) FROM jobs j
                WHERE j.domain_id = domains.id AND j.status = 'finished') AS last_finished_at,
               (SELECT COUNT(*) FROM jobs j
                WHERE j.domain_id = domains.id AND j.status = 'processing') AS active_jobs
        FROM domains
        WHERE is_active = 1
        ORDER BY hostname
        """
    )
    now = parse_iso(now_iso)
    due: list[Domain] = []
    for row in cursor.fetchall():
        domain = _row_to_domain(row[:9])
        last_finished_at, active_jobs = row[9], row[10]
        if not last_finished_at or int(active_jobs or 0) > 0:
            continue
        elapsed_minutes = (now - parse_iso(last_finished_at)).total_seconds() / 60
        if elapsed_minutes >= domain.check_interval_minutes:
            due.append(domain)
    return due


def create_job(conn: Any, domain_id: str, job_type: str) -> Job:
    job_id = new_id("job")
    now = utc_now_iso()
    try:
        conn.execute(
            """
            INSERT INTO jobs
                (id, domain_id, job_type, status, external_job_id, started_at, finished_at,
                 pages_received, pages_processed, pages_expected, stream_closed,
                 assembly_claimed, stats_json)
            VALUES (?, ?, ?, 'processing', NULL, ?, NULL, 0, 0, NULL, 0, 0, ?)
            """,
            (job_id, domain_id, job_type, now, json_dumps({})),
        )
    except IntegrityViolation as exc:
        raise ValueError("active_job_exists") from exc
    conn.commit()
    return get_job(conn, job_id)


def get_job(conn: Any, job_id: str) -> Job | None:
    cursor = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,))
    row = cursor.fetchone()
    return _row_to_job(row) if row else None


def get_job_by_external_id(conn: Any, external_job_id: str) -> Job | None:
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS} FROM jobs
        WHERE external_job_id = ?
        ORDER BY started_at DESC
        LIMIT 1
        """,
        (external_job_id,),
    )
    row = cursor.fetchone()
    return _row_to_job(row) if row else None


def get_active_job(conn: Any, domain_id: str) -> Job | None:
    cursor = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs WHERE domain_id = ? AND status = 'processing'",
        (domain_id,),
    )
    row = cursor.fetchone()
    return _row_to_job(row) if row else None


def list_jobs(
    conn: Any,
    *,
    domain_id: str | None = None,
    status: str | None = None,
    limit: int = 50,
) -> list[Job]:
    clauses = []
    params: list[object] = []
    if domain_id:
        clauses.append("domain_id = ?")
        params.append(domain_id)
    if status:
        clauses.append("status = ?")
        params.append(status)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs {where} ORDER BY started_at DESC LIMIT ?",
        tuple(params),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def list_stale_jobs(conn: Any, started_before: str) -> list[Job]:
    cursor = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS} FROM jobs
        WHERE status = 'processing' AND started_at < ?
        ORDER BY started_at ASC
        """,
        (started_before,),
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def set_external_job_id(conn: Any, job_id: str, external_job_id: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs SET external_job_id = ?
        WHERE id = ? AND status = 'processing'
        """,
        (external_job_id, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def accept_page_delivery(
    conn: Any,
    job: Job,
    url: str,
    task_type: str,
    task_payload: dict[str, object],
) -> dict[str, object]:
    """Record one page delivery and queue its processing in a single transaction.

    Returns ``{"status": "accepted" | "duplicate" | "closed", ...}``. A duplicate
    (same job and url) or a delivery to a job that is no longer accepting pages
    leaves every counter untouched.
    """
    now = utc_now_iso()
    with conn.transaction():
        cursor = conn.execute(
            "INSERT OR IGNORE INTO delivery_keys (job_id, url, received_at) VALUES (?, ?, ?)",
            (job.id, url, now),
        )
        if cursor.rowcount != 1:
            return {"status": "duplicate"}
        cursor = conn.execute(
            """
            UPDATE jobs SET pages_received = pages_received + 1
            WHERE id = ? AND status = 'processing' AND assembly_claimed = 0
            """,
            (job.id,),
        )
        if cursor.rowcount != 1:
            conn.execute(
                "DELETE FROM delivery_keys WHERE job_id = ? AND url = ?",
                (job.id, url),
            )
            return {"status": "closed"}
        page_id = _upsert_page(conn, job.domain_id, url, now)
        payload = dict(task_payload)
        payload["page_id"] = page_id
        task_id = _insert_task(conn, task_type, payload)
    return {"status": "accepted", "page_id": page_id, "task_id": task_id}


def _upsert_page(conn: Any, domain_id: str, url: str, now: str) -> str:
    conn.execute(
        """
        INSERT OR IGNORE INTO pages (id, domain_id, url, last_known_version_id, created_at, updated_at)
        VALUES (?, ?, ?, NULL, ?, ?)
        """,
        (new_id("page"), domain_id, url, now, now),
    )
    row = conn.execute(
        "SELECT id FROM pages WHERE domain_id = ? AND url = ?",
        (domain_id, url),
    ).fetchone()
    return row[0]


def get_page(conn: Any, page_id: str) -> Page | None:
    row = conn.execute(
        "SELECT id, domain_id, url, last_known_version_id FROM pages WHERE id = ?",
        (page_id,),
    ).fetchone()
    return Page(id=row[0], domain_id=row[1], url=row[2], last_known_version_id=row[3]) if row else None


def list_pages(conn: Any, domain_id: str) -> list[Page]:
    cursor = conn.execute(
        """
        SELECT id, domain_id, url, last_known_version_id FROM pages
        WHERE domain_id = ?
        ORDER BY url
        """,
        (domain_id,),
    )
    return [
        Page(id=row[0], domain_id=row[1], url=row[2], last_known_version_id=row[3])
        for row in cursor.fetchall()
    ]


def record_page_version(
    conn: Any,
    version: PageVersion,
    task_type: str,
    task_payload: dict[str, object],
) -> str:
    """Persist an immutable page version and advance the processed counter.

    Returns ``"recorded"``, ``"duplicate"`` when the page already has a version
    for this job, or ``"inactive"`` when the job left ``processing``.
    """
    with conn.transaction():
        row = conn.execute(
            "SELECT status FROM jobs WHERE id = ? FOR UPDATE",
            (version.job_id,),
        ).fetchone()
        if not row or row[0] != "processing":
            return "inactive"
        cursor = conn.execute(
            f"""
            INSERT OR IGNORE INTO page_versions ({_VERSION_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                version.id,
                version.page_id,
                version.job_id,
                version.url,
                version.raw_path,
                version.processed_path,
                version.fingerprint,
                version.prev_fingerprint,
                version.similarity_score,
                1 if version.changed_enough else 0,
                version.reason,
                version.title,
                version.description,
                version.summary,
                version.lines_added,
                version.lines_removed,
                version.created_at,
            ),
        )
        if cursor.rowcount != 1:
            return "duplicate"
        conn.execute(
            "UPDATE pages SET last_known_version_id = ?, updated_at = ? WHERE id = ?",
            (version.id, version.created_at, version.page_id),
        )
        cursor = conn.execute(
            """
            UPDATE jobs SET pages_processed = pages_processed + 1
            WHERE id = ? AND status = 'processing' AND pages_processed < pages_received
            """,
            (version.job_id,),
        )
        if cursor.rowcount != 1:
            raise RuntimeError(f"pages_processed_exceeds_received job_id={version.job_id}")
        _insert_task(conn, task_type, task_payload)
    return "recorded"


def get_page_version(conn: Any, version_id: str) -> PageVersion | None:
    row = conn.execute(
        f"SELECT {_VERSION_COLUMNS} FROM page_versions WHERE id = ?", (version_id,)
    ).fetchone()
    return _row_to_version(row) if row else None


def get_version_for_job(conn: Any, page_id: str, job_id: str) -> PageVersion | None:
    row = conn.execute(
        f"SELECT {_VERSION_COLUMNS} FROM page_versions WHERE page_id = ? AND job_id = ?",
        (page_id, job_id),
    ).fetchone()
    return _row_to_version(row) if row else None


def get_previous_version(conn: Any, page_id: str, before_job_id: str) -> PageVersion | None:
    row = conn.execute(
        f"""
        SELECT {_VERSION_COLUMNS} FROM page_versions
        WHERE page_id = ? AND job_id != ?
        ORDER BY created_at DESC
        LIMIT 1
        """,
        (page_id, before_job_id),
    ).fetchone()
    return _row_to_version(row) if row else None


def list_versions_for_job(
    conn: Any, job_id: str, changed_only: bool = False
) -> list[PageVersion]:
    changed_clause = "AND changed_enough = 1" if changed_only else ""
    cursor = conn.execute(
        f"""
        SELECT {_VERSION_COLUMNS} FROM page_versions
        WHERE job_id = ? {changed_clause}
        ORDER BY url
        """,
        (job_id,),
    )
    return [_row_to_version(row) for row in cursor.fetchall()]


def mark_stream_closed(conn: Any, job_id: str, pages_expected: int | None) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET stream_closed = 1,
            pages_expected = COALESCE(?, pages_expected)
        WHERE id = ? AND status = 'processing'
        """,
        (pages_expected, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def try_claim(
    conn: Any,
    job_id: str,
    field: str,
    *,
    allow_empty: bool = False,
    task_type: str | None = None,
    task_payload: dict[str, object] | None = None,
) -> bool:
    """Flip ``field`` from 0 to 1 when the job satisfies the field's condition.

    Exactly one caller can win. The follow-up task, when given, is queued in
    the same transaction so a winning claim is never lost.
    """
    condition = _CLAIM_CONDITIONS.get(field)
    if condition is None:
        raise ValueError(f"unknown_claim_field:{field}")
    with conn.transaction():
        cursor = conn.execute(
            f"""
            UPDATE jobs SET {field} = 1
            WHERE id = ? AND {field} = 0 AND {condition}
            """,
            (job_id, 1 if allow_empty else 0),
        )
        if cursor.rowcount != 1:
            return False
        if task_type:
            _insert_task(conn, task_type, task_payload or {})
    return True


def merge_job_stats(conn: Any, job_id: str, updates: dict[str, object]) -> dict[str, object]:
    with conn.transaction():
        row = conn.execute(
            "SELECT stats_json FROM jobs WHERE id = ? FOR UPDATE", (job_id,)
        ).fetchone()
        if not row:
            raise ValueError("job_not_found")
        stats = json_loads_or(row[0], {})
        stats.update(updates)
        conn.execute(
            "UPDATE jobs SET stats_json = ? WHERE id = ?",
            (json_dumps(stats), job_id),
        )
    return stats


def finish_job(conn: Any, job_id: str, stats: dict[str, object]) -> bool:
    return _terminate_job(conn, job_id, "finished", stats)


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    return _terminate_job(
        conn, job_id, "failed", {"error": error, "failedAt": utc_now_iso()}
    )


def cancel_job(conn: Any, job_id: str, reason: str = "canceled_by_admin") -> bool:
    return _terminate_job(
        conn,
        job_id,
        "canceled",
        {"canceledReason": reason, "canceledAt": utc_now_iso()},
    )


def _terminate_job(
    conn: Any, job_id: str, status: str, stats_updates: dict[str, object]
) -> bool:
    now = utc_now_iso()
    with conn.transaction():
        row = conn.execute(
            "SELECT status, stats_json FROM jobs WHERE id = ? FOR UPDATE", (job_id,)
        ).fetchone()
        if not row or row[0] != "processing":
            return False
        stats = json_loads_or(row[1], {})
        stats.update(stats_updates)
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = ?, finished_at = ?, stats_json = ?
            WHERE id = ? AND status = 'processing'
            """,
            (status, now, json_dumps(stats), job_id),
        )
        return cursor.rowcount == 1


def create_artifact(
    conn: Any,
    job_id: str,
    domain_id: str,
    kind: str,
    blob_path: str,
) -> Artifact:
    """Insert the (job, kind) artifact with the next version for (domain, kind).

    Versions are allocated inside a write transaction; a concurrent writer that
    takes the same number loses on the unique index and retries.
    """
    logger = logging.getLogger("sitedigest.storage")
    last_error: Exception | None = None
    for attempt in range(ARTIFACT_VERSION_RETRIES):
        try:
            with conn.transaction():
                existing = conn.execute(
                    f"SELECT {_ARTIFACT_COLUMNS} FROM artifacts WHERE job_id = ? AND kind = ?",
                    (job_id, kind),
                ).fetchone()
                if existing:
                    return _row_to_artifact(existing)
                row = conn.execute(
                    """
                    SELECT COALESCE(MAX(version), 0) FROM artifacts
                    WHERE domain_id = ? AND kind = ?
                    """,
                    (domain_id, kind),
                ).fetchone()
                version = int(row[0]) + 1
                artifact = Artifact(
                    id=new_id("art"),
                    job_id=job_id,
                    domain_id=domain_id,
                    kind=kind,
                    blob_path=blob_path,
                    version=version,
                    created_at=utc_now_iso(),
                )
                conn.execute(
                    f"""
                    INSERT INTO artifacts ({_ARTIFACT_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        artifact.id,
                        artifact.job_id,
                        artifact.domain_id,
                        artifact.kind,
                        artifact.blob_path,
                        artifact.version,
                        artifact.created_at,
                    ),
                )
                return artifact
        except IntegrityViolation as exc:
            last_error = exc
            log_event(
                logger,
                logging.INFO,
                "artifact_version_conflict",
                job_id=job_id,
                kind=kind,
                attempt=attempt + 1,
            )
    raise RuntimeError(f"artifact_version_conflict kind={kind}") from last_error


def get_artifact(conn: Any, artifact_id: str) -> Artifact | None:
    row = conn.execute(
        f"SELECT {_ARTIFACT_COLUMNS} FROM artifacts WHERE id = ?", (artifact_id,)
    ).fetchone()
    return _row_to_artifact(row) if row else None


def list_artifacts(
    conn: Any,
    *,
    domain_id: str | None = None,
    job_id: str | None = None,
    kind: str | None = None,
    limit: int = 100,
) -> list[Artifact]:
    clauses = []
    params: list[object] = []
    if domain_id:
        clauses.append("domain_id = ?")
        params.append(domain_id)
    if job_id:
        clauses.append("job_id = ?")
        params.append(job_id)
    if kind:
        clauses.append("kind = ?")
        params.append(kind)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {_ARTIFACT_COLUMNS} FROM artifacts {where}
        ORDER BY kind, version DESC
        LIMIT ?
        """,
        tuple(params),
    )
    return [_row_to_artifact(row) for row in cursor.fetchall()]


def get_latest_artifact(conn: Any, domain_id: str, kind: str) -> Artifact | None:
    row = conn.execute(
        f"""
        SELECT {_ARTIFACT_COLUMNS} FROM artifacts
        WHERE domain_id = ? AND kind = ?
        ORDER BY version DESC
        LIMIT 1
        """,
        (domain_id, kind),
    ).fetchone()
    return _row_to_artifact(row) if row else None


def enqueue_task(
    conn: Any,
    task_type: str,
    payload: dict[str, object] | None,
    *,
    available_at: str | None = None,
    debounce: bool = False,
) -> str:
    if debounce:
        pending = _get_pending_task_id(conn, task_type)
        if pending:
            return pending
    task_id = _insert_task(conn, task_type, payload or {}, available_at=available_at)
    conn.commit()
    return task_id


def _insert_task(
    conn: Any,
    task_type: str,
    payload: dict[str, object],
    available_at: str | None = None,
) -> str:
    task_id = new_id("task")
    now = utc_now_iso()
    conn.execute(
        f"""
        INSERT INTO tasks ({_TASK_COLUMNS})
        VALUES (?, ?, 'queued', ?, NULL, ?, ?, NULL, NULL, NULL, NULL, NULL)
        """,
        (task_id, task_type, json_dumps(payload), now, available_at or now),
    )
    return task_id


def claim_next_task(
    conn: Any,
    worker_id: str,
    allowed_types: list[str] | None = None,
    lock_timeout_seconds: int | None = None,
) -> Task | None:
    now = utc_now_iso()
    with conn.transaction():
        if lock_timeout_seconds is not None:
            cutoff = utc_now_iso_offset(seconds=-lock_timeout_seconds)
            conn.execute(
                """
                UPDATE tasks
                SET status = 'queued',
                    locked_by = NULL,
                    locked_at = NULL,
                    started_at = NULL,
                    error = 'stale_lock_requeued'
                WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
                """,
                (cutoff,),
            )
        params: list[object] = [now]
        type_clause = ""
        if allowed_types:
            placeholders = ",".join(["?"] * len(allowed_types))
            type_clause = f" AND task_type IN ({placeholders})"
            params.extend(allowed_types)
        row = conn.execute(
            f"""
            SELECT id FROM tasks
            WHERE status = 'queued' AND locked_by IS NULL AND available_at <= ? {type_clause}
            ORDER BY available_at ASC, requested_at ASC
            LIMIT 1
            FOR UPDATE SKIP LOCKED
            """,
            tuple(params),
        ).fetchone()
        if not row:
            return None
        cursor = conn.execute(
            """
            UPDATE tasks
            SET status = 'running', started_at = ?, locked_by = ?, locked_at = ?
            WHERE id = ? AND status = 'queued' AND locked_by IS NULL
            """,
            (now, worker_id, now, row[0]),
        )
        if cursor.rowcount != 1:
            return None
    return get_task(conn, row[0])


def get_task(conn: Any, task_id: str) -> Task | None:
    row = conn.execute(f"SELECT {_TASK_COLUMNS} FROM tasks WHERE id = ?", (task_id,)).fetchone()
    return _row_to_task(row) if row else None


def list_tasks(
    conn: Any,
    *,
    status: str | None = None,
    task_type: str | None = None,
    limit: int = 50,
) -> list[Task]:
    clauses = []
    params: list[object] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if task_type:
        clauses.append("task_type = ?")
        params.append(task_type)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)
    cursor = conn.execute(
        f"SELECT {_TASK_COLUMNS} FROM tasks {where} ORDER BY requested_at DESC LIMIT ?",
        tuple(params),
    )
    return [_row_to_task(row) for row in cursor.fetchall()]


def count_tasks(conn: Any, task_type: str, status: str | None = None) -> int:
    if status:
        row = conn.execute(
            "SELECT COUNT(*) FROM tasks WHERE task_type = ? AND status = ?",
            (task_type, status),
        ).fetchone()
    else:
        row = conn.execute(
            "SELECT COUNT(*) FROM tasks WHERE task_type = ?", (task_type,)
        ).fetchone()
    return int(row[0])


def has_pending_task(conn: Any, task_type: str) -> bool:
    return _get_pending_task_id(conn, task_type) is not None


def _get_pending_task_id(conn: Any, task_type: str) -> str | None:
    row = conn.execute(
        """
        SELECT id FROM tasks
        WHERE task_type = ? AND status IN ('queued', 'running')
        ORDER BY requested_at DESC
        LIMIT 1
        """,
        (task_type,),
    ).fetchone()
    return row[0] if row else None


def complete_task(conn: Any, task_id: str, result: dict[str, object] | None = None) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE tasks
        SET status = 'succeeded', finished_at = ?, error = NULL, result_json = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, json_dumps(result) if result else None, task_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_task(conn: Any, task_id: str, error: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE tasks
        SET status = 'failed', finished_at = ?, error = ?
        WHERE id = ? AND status = 'running'
        """,
        (now, error, task_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def requeue_task(
    conn: Any,
    task_id: str,
    payload: dict[str, object],
    available_at: str,
    error: str | None = None,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE tasks
        SET status = 'queued',
            available_at = ?,
            payload_json = ?,
            result_json = NULL,
            started_at = NULL,
            finished_at = NULL,
            locked_by = NULL,
            locked_at = NULL,
            error = ?
        WHERE id = ? AND status = 'running'
        """,
        (available_at, json_dumps(payload), error, task_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def try_acquire_lease(
    conn: Any,
    lease_name: str,
    holder: str,
    ttl_seconds: int,
) -> bool:
    now = utc_now_iso()
    expires_at = utc_now_iso_offset(seconds=ttl_seconds)
    cursor = conn.execute(
        """
        INSERT INTO leases (name, holder, expires_at)
        VALUES (?, ?, ?)
        ON CONFLICT(name) DO UPDATE
            SET holder = excluded.holder, expires_at = excluded.expires_at
            WHERE leases.expires_at < ? OR leases.holder = excluded.holder
        """,
        (lease_name, holder, expires_at, now),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_lease(conn: Any, lease_name: str, holder: str) -> bool:
    cursor = conn.execute(
        "DELETE FROM leases WHERE name = ? AND holder = ?",
        (lease_name, holder),
    )
    conn.commit()
    return cursor.rowcount == 1


def _row_to_domain(row: tuple) -> Domain:
    return Domain(
        id=row[0],
        hostname=row[1],
        is_active=bool(row[2]),
        check_interval_minutes=int(row[3]),
        max_pages=int(row[4]),
        model=row[5],
        summary_prompt=row[6],
        created_at=row[7],
        updated_at=row[8],
    )


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        domain_id,
        job_type,
        status,
        external_job_id,
        started_at,
        finished_at,
        pages_received,
        pages_processed,
        pages_expected,
        stream_closed,
        assembly_claimed,
        stats_json,
    ) = row
    return Job(
        id=job_id,
        domain_id=domain_id,
        job_type=job_type,
        status=status,
        external_job_id=external_job_id,
        started_at=started_at,
        finished_at=finished_at,
        pages_received=int(pages_received),
        pages_processed=int(pages_processed),
        pages_expected=int(pages_expected) if pages_expected is not None else None,
        stream_closed=bool(stream_closed),
        assembly_claimed=bool(assembly_claimed),
        stats=json_loads_or(stats_json, {}),
    )


def _row_to_version(row: tuple) -> PageVersion:
    return PageVersion(
        id=row[0],
        page_id=row[1],
        job_id=row[2],
        url=row[3],
        raw_path=row[4],
        processed_path=row[5],
        fingerprint=row[6],
        prev_fingerprint=row[7],
        similarity_score=float(row[8]),
        changed_enough=bool(row[9]),
        reason=row[10],
        title=row[11],
        description=row[12],
        summary=row[13],
        lines_added=int(row[14]),
        lines_removed=int(row[15]),
        created_at=row[16],
    )


def _row_to_artifact(row: tuple) -> Artifact:
    return Artifact(
        id=row[0],
        job_id=row[1],
        domain_id=row[2],
        kind=row[3],
        blob_path=row[4],
        version=int(row[5]),
        created_at=row[6],
    )


def _row_to_task(row: tuple) -> Task:
    (
        task_id,
        task_type,
        status,
        payload_json,
        result_json,
        requested_at,
        available_at,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        error,
    ) = row
    return Task(
        id=task_id,
        task_type=task_type,
        status=status,
        payload=json_loads_or(payload_json, {}),
        result=json_loads_or(result_json, None),
        requested_at=requested_at,
        available_at=available_at,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        error=error,
    )
