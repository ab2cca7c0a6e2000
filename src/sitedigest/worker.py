from __future__ import annotations

import argparse
import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable

from .config import ConfigError, load_runtime_config
from .errors import NonRetriableError, TransientError, is_transient
from .events import (
    ALL_EVENTS,
    ASSEMBLY_REQUESTED,
    CRAWL_COMPLETED,
    CRAWL_FAILED,
    CRAWL_PAGE,
    FINALIZE_REQUESTED,
    INGEST_REQUESTED,
    PAGE_PROCESS_REQUESTED,
    PAGE_PROCESSED,
    RECRAWL_REQUESTED,
    emit,
)
from .fsinit import prepare_runtime
from .llm import ChatCompletionSummarizer
from .models import Task
from .objectstore import LocalObjectStore
from .pipelines.assemble import assemble_artifacts
from .pipelines.completion import (
    handle_crawl_completed,
    handle_crawl_failed,
    handle_page_processed,
)
from .pipelines.finalize import finalize_job
from .pipelines.ingest_page import handle_crawl_page
from .pipelines.launch import launch_crawl
from .pipelines.process_page import process_page
from .pipelines.recrawl import schedule_recrawls
from .services.crawl_provider import HttpCrawlProvider
from .storage import (
    claim_next_task,
    complete_task,
    fail_job,
    fail_task,
    get_setting,
    has_pending_task,
    init_db,
    requeue_task,
    set_setting,
)
from .utils import configure_logging, log_event, parse_iso, utc_now_iso, utc_now_iso_offset

RECRAWL_LAST_ENQUEUED_KEY = "recrawl.last_enqueued_at"


@dataclass(frozen=True)
class Services:
    provider: Any
    summarizer: Any
    store: Any


Handler = Callable[[Any, Any, Services, dict, logging.Logger], dict]

TASK_HANDLERS: dict[str, Handler] = {
    INGEST_REQUESTED: launch_crawl,
    CRAWL_PAGE: handle_crawl_page,
    CRAWL_COMPLETED: handle_crawl_completed,
    CRAWL_FAILED: handle_crawl_failed,
    RECRAWL_REQUESTED: schedule_recrawls,
    PAGE_PROCESS_REQUESTED: process_page,
    PAGE_PROCESSED: handle_page_processed,
    ASSEMBLY_REQUESTED: assemble_artifacts,
    FINALIZE_REQUESTED: finalize_job,
}


def _setup_logging() -> logging.Logger:
    return configure_logging("sitedigest.worker")


def build_services(config) -> Services:
    summarizer = None
    if config.llm.enabled:
        summarizer = ChatCompletionSummarizer(
            config.llm.base_url,
            config.llm.model,
            timeout_seconds=config.llm.timeout_seconds,
            temperature=config.llm.temperature,
            max_tokens=config.llm.max_tokens,
            max_input_chars=config.processing.max_summary_input_chars,
        )
    return Services(
        provider=HttpCrawlProvider(
            config.provider.base_url,
            timeout_seconds=config.provider.timeout_seconds,
            user_agent=config.provider.user_agent,
        ),
        summarizer=summarizer,
        store=LocalObjectStore(config.paths.object_store_dir),
    )


def run_once(worker_id: str, allowed_types: list[str] | None = None, services: Services | None = None) -> int:
    logger = _setup_logging()
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    prepare_runtime(config, logger)
    services = services or build_services(config)
    try:
        if _should_tick_recrawl(allowed_types):
            _maybe_enqueue_recrawl(conn, config, logger)
        task = claim_next_task(
            conn,
            worker_id,
            allowed_types=allowed_types or ALL_EVENTS,
            lock_timeout_seconds=config.jobs.lock_timeout_seconds,
        )
        if not task:
            return 0
        return _process_claimed_task(conn, config, services, task, logger)
    finally:
        conn.close()


def _process_claimed_task_thread(services: Services, task: Task) -> int:
    logger = _setup_logging()
    try:
        conn = init_db()
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        return _process_claimed_task(conn, config, services, task, logger)
    finally:
        conn.close()


def run_loop(
    worker_id: str,
    sleep_seconds: int,
    allowed_types: list[str] | None = None,
    concurrency: int = 1,
) -> int:
    if concurrency <= 1:
        while True:
            run_once(worker_id, allowed_types)
            time.sleep(sleep_seconds)

    logger = _setup_logging()
    max_workers = max(1, concurrency)
    services = None
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while True:
            while len(futures) < max_workers:
                try:
                    conn = init_db()
                    config = load_runtime_config(conn)
                except ConfigError as exc:
                    log_event(logger, logging.ERROR, "config_error", error=str(exc))
                    break
                if services is None:
                    prepare_runtime(config, logger)
                    services = build_services(config)
                if _should_tick_recrawl(allowed_types):
                    _maybe_enqueue_recrawl(conn, config, logger)
                task = claim_next_task(
                    conn,
                    worker_id,
                    allowed_types=allowed_types or ALL_EVENTS,
                    lock_timeout_seconds=config.jobs.lock_timeout_seconds,
                )
                conn.close()
                if not task:
                    break
                futures.add(executor.submit(_process_claimed_task_thread, services, task))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "task_thread_error", error=str(exc))
            else:
                time.sleep(sleep_seconds)


def drain(
    conn,
    config,
    services: Services,
    logger: logging.Logger,
    *,
    worker_id: str = "drain",
    allowed_types: list[str] | None = None,
    max_tasks: int = 10000,
) -> int:
    """Run queued tasks inline until none are available; returns the number run."""
    processed = 0
    while processed < max_tasks:
        task = claim_next_task(
            conn,
            worker_id,
            allowed_types=allowed_types or ALL_EVENTS,
            lock_timeout_seconds=config.jobs.lock_timeout_seconds,
        )
        if not task:
            break
        _process_claimed_task(conn, config, services, task, logger)
        processed += 1
    return processed


def run_claimed_task(conn, config, services: Services, task: Task, logger: logging.Logger) -> dict[str, object]:
    log_event(
        logger,
        logging.INFO,
        "task_claimed",
        task_id=task.id,
        task_type=task.task_type,
        job_id=task.payload.get("job_id"),
    )
    handler = TASK_HANDLERS.get(task.task_type)
    if handler is None:
        raise NonRetriableError(f"unsupported task type {task.task_type}")
    return handler(conn, config, services, task.payload, logger) or {}


def _process_claimed_task(conn, config, services: Services, task: Task, logger: logging.Logger) -> int:
    try:
        result = run_claimed_task(conn, config, services, task, logger)
    except Exception as exc:  # noqa: BLE001
        return _handle_task_error(conn, config, task, exc, logger)

    if complete_task(conn, task.id, result=result):
        log_event(logger, logging.INFO, "task_succeeded", task_id=task.id, task_type=task.task_type)
    else:
        log_event(logger, logging.ERROR, "task_complete_failed", task_id=task.id)
    return 0


def _handle_task_error(conn, config, task: Task, exc: Exception, logger: logging.Logger) -> int:
    if not is_transient(exc):
        fail_task(conn, task.id, str(exc))
        log_event(
            logger,
            logging.ERROR,
            "task_failed",
            task_id=task.id,
            task_type=task.task_type,
            error=str(exc),
            retriable=False,
        )
        return 1

    payload = dict(task.payload)
    if isinstance(exc, TransientError):
        payload.update(exc.payload_updates)
    attempt = int(payload.get("attempt", 0)) + 1
    if attempt < config.jobs.max_task_attempts:
        backoff = config.jobs.retry_backoff_seconds
        delay = backoff[min(attempt - 1, len(backoff) - 1)]
        payload["attempt"] = attempt
        requeue_task(
            conn,
            task.id,
            payload,
            available_at=utc_now_iso_offset(seconds=delay),
            error=str(exc),
        )
        log_event(
            logger,
            logging.INFO,
            "task_requeued",
            task_id=task.id,
            task_type=task.task_type,
            attempt=attempt,
            delay_seconds=delay,
            error=str(exc),
        )
        return 0

    fail_task(conn, task.id, str(exc))
    job_id = payload.get("job_id")
    job_failed = False
    if job_id:
        job_failed = fail_job(conn, str(job_id), str(exc))
    log_event(
        logger,
        logging.ERROR,
        "task_retries_exhausted",
        task_id=task.id,
        task_type=task.task_type,
        attempts=attempt,
        job_id=job_id,
        job_failed=job_failed,
        error=str(exc),
    )
    return 1


def _should_tick_recrawl(allowed_types: list[str] | None) -> bool:
    if not allowed_types:
        return True
    return RECRAWL_REQUESTED in allowed_types


def _maybe_enqueue_recrawl(conn, config, logger: logging.Logger) -> None:
    if has_pending_task(conn, RECRAWL_REQUESTED):
        return
    last_enqueued = get_setting(conn, RECRAWL_LAST_ENQUEUED_KEY, None)
    now = utc_now_iso()
    if isinstance(last_enqueued, str):
        next_tick = parse_iso(last_enqueued) + timedelta(seconds=config.jobs.recrawl_tick_seconds)
        if next_tick > parse_iso(now):
            return
    emit(conn, RECRAWL_REQUESTED, {"triggered_by": "worker"}, debounce=True)
    set_setting(conn, RECRAWL_LAST_ENQUEUED_KEY, now)
    log_event(logger, logging.INFO, "recrawl_tick_enqueued")


def _parse_only_types(value: str | None) -> list[str] | None:
    if not value:
        return None
    items = [item.strip() for item in value.split(",") if item.strip()]
    return items or None


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sitedigest-worker")
    parser.add_argument("--once", action="store_true", help="Run a single task and exit")
    parser.add_argument("--sleep", type=int, default=5, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    parser.add_argument("--only-task-types", default=os.environ.get("SD_WORKER_ONLY_TYPES", ""))
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("SD_WORKER_CONCURRENCY", "1")),
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    allowed_types = _parse_only_types(args.only_task_types)
    if args.once:
        return run_once(args.worker_id, allowed_types)
    return run_loop(args.worker_id, args.sleep, allowed_types, args.concurrency)


if __name__ == "__main__":
    raise SystemExit(main())
