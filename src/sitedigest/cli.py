from __future__ import annotations

import argparse
import json
import logging

from .config import ConfigError, bootstrap_runtime_config, load_domains_file, load_runtime_config
from .db import get_state_db_path
from .events import INGEST_REQUESTED, RECRAWL_REQUESTED, emit
from .fsinit import prepare_runtime
from .services.domains_service import create_domain, get_or_create_domain
from .storage import (
    cancel_job,
    get_active_job,
    get_job,
    init_db,
    list_domains,
    list_jobs,
    list_versions_for_job,
)
from .utils import configure_logging, format_minutes, log_event
from .worker import build_services, drain


def _setup_logging() -> logging.Logger:
    return configure_logging("sitedigest.cli")


def _open(logger: logging.Logger):
    conn = init_db(get_state_db_path())
    try:
        bootstrap_runtime_config(conn)
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return conn, None
    return conn, config


def _cmd_domains_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    try:
        entries = load_domains_file(args.path)
    except (ConfigError, OSError) as exc:
        log_event(logger, logging.ERROR, "domains_import_error", error=str(exc))
        return 1
    if not entries:
        log_event(logger, logging.ERROR, "domains_import_error", error="no domains found")
        return 1
    created = 0
    for entry in entries:
        try:
            _, was_created = get_or_create_domain(conn, entry)
        except ValueError as exc:
            log_event(
                logger,
                logging.ERROR,
                "domains_import_error",
                hostname=entry.get("hostname") or entry.get("url"),
                error=str(exc),
            )
            return 1
        created += 1 if was_created else 0
    log_event(logger, logging.INFO, "domains_imported", count=len(entries), created=created)
    return 0


def _cmd_domains_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    domains = list_domains(conn, active_only=args.active_only)
    if not domains:
        log_event(
            logger,
            logging.WARNING,
            "no_domains",
            hint="Add one with `sitedigest domains add example.com`",
        )
        return 1
    for domain in domains:
        log_event(
            logger,
            logging.INFO,
            "domain",
            domain_id=domain.id,
            hostname=domain.hostname,
            active=domain.is_active,
            interval=format_minutes(domain.check_interval_minutes).replace(" ", "_"),
            max_pages=domain.max_pages,
        )
    log_event(logger, logging.INFO, "domains_listed", count=len(domains))
    return 0


def _cmd_domains_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    payload = {
        "hostname": args.hostname,
        "is_active": not args.inactive,
        "check_interval_minutes": args.interval_minutes,
        "max_pages": args.max_pages,
        "model": args.model,
        "summary_prompt": args.prompt,
    }
    try:
        domain = create_domain(conn, payload)
    except ValueError as exc:
        log_event(logger, logging.ERROR, "domain_add_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "domain_added", domain_id=domain["id"], hostname=domain["hostname"])
    return 0


def _cmd_crawl(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    try:
        domain, created = get_or_create_domain(conn, {"hostname": args.hostname})
    except ValueError as exc:
        log_event(logger, logging.ERROR, "crawl_request_error", error=str(exc))
        return 1
    active = get_active_job(conn, domain.id)
    if active:
        log_event(logger, logging.ERROR, "active_job_exists", domain=domain.hostname, job_id=active.id)
        return 1
    payload: dict[str, object] = {
        "domain_id": domain.id,
        "type": args.type or ("initial" if created else "update"),
        "requested_by": "cli",
    }
    if args.max_pages:
        payload["max_pages"] = args.max_pages
    task_id = emit(conn, INGEST_REQUESTED, payload)
    log_event(
        logger,
        logging.INFO,
        "crawl_requested",
        domain=domain.hostname,
        job_type=payload["type"],
        task_id=task_id,
    )
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    for job in list_jobs(conn, domain_id=args.domain_id, status=args.status, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            domain_id=job.domain_id,
            job_type=job.job_type,
            status=job.status,
            started_at=job.started_at,
            finished_at=job.finished_at,
            received=job.pages_received,
            processed=job.pages_processed,
        )
    return 0


def _cmd_jobs_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    job = get_job(conn, args.job_id)
    if job is None:
        log_event(logger, logging.ERROR, "job_not_found", job_id=args.job_id)
        return 1
    data = dict(job.__dict__)
    data["versions"] = [
        {"url": version.url, "changed": version.changed_enough, "reason": version.reason}
        for version in list_versions_for_job(conn, job.id)
    ]
    logger.info(json.dumps(data, indent=2, sort_keys=True))
    return 0


def _cmd_jobs_cancel(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    job = get_job(conn, args.job_id)
    if job is None:
        log_event(logger, logging.ERROR, "job_not_found", job_id=args.job_id)
        return 1
    if not cancel_job(conn, job.id, args.reason):
        log_event(logger, logging.ERROR, "job_not_processing", job_id=job.id, status=job.status)
        return 1
    log_event(logger, logging.INFO, "job_canceled", job_id=job.id, reason=args.reason)
    return 0


def _cmd_recrawl(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    task_id = emit(conn, RECRAWL_REQUESTED, {"triggered_by": "cli"}, debounce=True)
    log_event(logger, logging.INFO, "recrawl_requested", task_id=task_id)
    return 0


def _cmd_drain(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if config is None:
        return 1
    prepare_runtime(config, logger)
    count = drain(
        conn,
        config,
        build_services(config),
        logger,
        worker_id="cli-drain",
        max_tasks=args.max_tasks,
    )
    log_event(logger, logging.INFO, "drain_complete", tasks=count)
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    init_db(get_state_db_path())
    log_event(logger, logging.INFO, "db_migrated", path=get_state_db_path())
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sitedigest")
    subparsers = parser.add_subparsers(dest="command", required=True)

    domains_parser = subparsers.add_parser("domains", help="Manage domains")
    domains_subparsers = domains_parser.add_subparsers(dest="domains_command", required=True)

    domains_import = domains_subparsers.add_parser("import", help="Import domains from YAML")
    domains_import.add_argument("path", help="Path to a domains YAML file")
    domains_import.set_defaults(func=_cmd_domains_import)

    domains_list = domains_subparsers.add_parser("list", help="List domains")
    domains_list.add_argument("--active-only", action="store_true")
    domains_list.set_defaults(func=_cmd_domains_list)

    domains_add = domains_subparsers.add_parser("add", help="Add a domain")
    domains_add.add_argument("hostname", help="Hostname or URL, e.g. docs.example.com")
    domains_add.add_argument("--interval-minutes", type=int, default=1440)
    domains_add.add_argument("--max-pages", type=int, default=10)
    domains_add.add_argument("--model", default=None, help="Summary model override")
    domains_add.add_argument("--prompt", default=None, help="Summary prompt override")
    domains_add.add_argument("--inactive", action="store_true", help="Add the domain disabled")
    domains_add.set_defaults(func=_cmd_domains_add)

    crawl_parser = subparsers.add_parser("crawl", help="Request a crawl for a domain")
    crawl_parser.add_argument("hostname", help="Hostname or URL")
    crawl_parser.add_argument("--type", choices=["initial", "update"], default=None)
    crawl_parser.add_argument("--max-pages", type=int, default=None)
    crawl_parser.set_defaults(func=_cmd_crawl)

    jobs_parser = subparsers.add_parser("jobs", help="Crawl job commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--domain-id", default=None)
    jobs_list.add_argument("--status", default=None)
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    jobs_show = jobs_subparsers.add_parser("show", help="Show a job with its page versions")
    jobs_show.add_argument("job_id")
    jobs_show.set_defaults(func=_cmd_jobs_show)

    jobs_cancel = jobs_subparsers.add_parser("cancel", help="Cancel a processing job")
    jobs_cancel.add_argument("job_id")
    jobs_cancel.add_argument("--reason", default="canceled_by_admin")
    jobs_cancel.set_defaults(func=_cmd_jobs_cancel)

    recrawl_parser = subparsers.add_parser("recrawl", help="Queue recrawls for due domains")
    recrawl_parser.set_defaults(func=_cmd_recrawl)

    drain_parser = subparsers.add_parser("drain", help="Run queued tasks inline until idle")
    drain_parser.add_argument("--max-tasks", type=int, default=10000)
    drain_parser.set_defaults(func=_cmd_drain)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)

    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
