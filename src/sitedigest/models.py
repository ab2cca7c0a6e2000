from __future__ import annotations

from dataclasses import dataclass

JOB_TYPES = ("initial", "update")
JOB_STATUSES = ("processing", "finished", "failed", "canceled")
ARTIFACT_KINDS = ("llms_txt", "llms_full_txt")


@dataclass(frozen=True)
class Domain:
    id: str
    hostname: str
    is_active: bool
    check_interval_minutes: int
    max_pages: int
    model: str | None
    summary_prompt: str | None
    created_at: str
    updated_at: str


@dataclass(frozen=True)
class Job:
    id: str
    domain_id: str
    job_type: str
    status: str
    external_job_id: str | None
    started_at: str
    finished_at: str | None
    pages_received: int
    pages_processed: int
    pages_expected: int | None
    stream_closed: bool
    assembly_claimed: bool
    stats: dict[str, object]


@dataclass(frozen=True)
class Page:
    id: str
    domain_id: str
    url: str
    last_known_version_id: str | None


@dataclass(frozen=True)
class PageVersion:
    id: str
    page_id: str
    job_id: str
    url: str
    raw_path: str
    processed_path: str | None
    fingerprint: str
    prev_fingerprint: str | None
    similarity_score: float
    changed_enough: bool
    reason: str
    title: str | None
    description: str | None
    summary: str | None
    lines_added: int
    lines_removed: int
    created_at: str


@dataclass(frozen=True)
class Artifact:
    id: str
    job_id: str
    domain_id: str
    kind: str
    blob_path: str
    version: int
    created_at: str


@dataclass(frozen=True)
class Task:
    id: str
    task_type: str
    status: str
    payload: dict[str, object]
    result: dict[str, object] | None
    requested_at: str
    available_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None
