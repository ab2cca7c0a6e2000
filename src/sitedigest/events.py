from __future__ import annotations

from typing import Any

from .storage import enqueue_task

# Inbound: requested by operators, the scheduler or the crawl provider.
INGEST_REQUESTED = "domain.ingest_requested"
CRAWL_PAGE = "crawl.page"
CRAWL_COMPLETED = "crawl.completed"
CRAWL_FAILED = "crawl.failed"
RECRAWL_REQUESTED = "schedule.recrawl_requested"

# Internal hand-offs between pipeline stages.
PAGE_PROCESS_REQUESTED = "page.process_requested"
PAGE_PROCESSED = "page.processed"
ASSEMBLY_REQUESTED = "job.assembly_requested"
FINALIZE_REQUESTED = "job.finalize_requested"

ALL_EVENTS = [
    INGEST_REQUESTED,
    CRAWL_PAGE,
    CRAWL_COMPLETED,
    CRAWL_FAILED,
    RECRAWL_REQUESTED,
    PAGE_PROCESS_REQUESTED,
    PAGE_PROCESSED,
    ASSEMBLY_REQUESTED,
    FINALIZE_REQUESTED,
]


def emit(conn: Any, name: str, payload: dict[str, object], *, debounce: bool = False) -> str:
    if name not in ALL_EVENTS:
        raise ValueError(f"unknown_event:{name}")
    return enqueue_task(conn, name, payload, debounce=debounce)
