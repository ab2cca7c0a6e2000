from __future__ import annotations

from dataclasses import asdict
from typing import Any

from ..models import Domain
from ..storage import (
    create_domain as _create_domain,
    get_active_job,
    get_domain as _get_domain,
    get_domain_by_hostname,
    list_domains as _list_domains,
    update_domain as _update_domain,
)
from ..utils import format_minutes, normalize_hostname

MIN_INTERVAL_MINUTES = 5
MAX_PAGES_LIMIT = 10000


def domain_to_dict(conn: Any, domain: Domain) -> dict[str, Any]:
    data = asdict(domain)
    data["check_interval_human"] = format_minutes(domain.check_interval_minutes)
    active = get_active_job(conn, domain.id)
    data["active_job_id"] = active.id if active else None
    return data


def list_domains(conn: Any, active_only: bool = False) -> list[dict[str, Any]]:
    return [domain_to_dict(conn, domain) for domain in _list_domains(conn, active_only)]


def get_domain(conn: Any, domain_id: str) -> dict[str, Any] | None:
    domain = _get_domain(conn, domain_id)
    return domain_to_dict(conn, domain) if domain else None


def create_domain(conn: Any, payload: dict[str, Any]) -> dict[str, Any]:
    raw_host = str(payload.get("hostname") or payload.get("url") or "").strip()
    if not raw_host:
        raise ValueError("hostname is required")
    hostname = normalize_hostname(raw_host)
    fields = _validated_fields(payload)
    domain = _create_domain(
        conn,
        hostname,
        is_active=bool(fields.get("is_active", True)),
        check_interval_minutes=int(fields.get("check_interval_minutes", 1440)),
        max_pages=int(fields.get("max_pages", 10)),
        model=fields.get("model"),
        summary_prompt=fields.get("summary_prompt"),
    )
    return domain_to_dict(conn, domain)


def get_or_create_domain(conn: Any, payload: dict[str, Any]) -> tuple[Domain, bool]:
    raw_host = str(payload.get("hostname") or payload.get("url") or "").strip()
    if not raw_host:
        raise ValueError("hostname is required")
    hostname = normalize_hostname(raw_host)
    existing = get_domain_by_hostname(conn, hostname)
    if existing:
        fields = _validated_fields(payload)
        if fields:
            existing = _update_domain(conn, existing.id, fields) or existing
        return existing, False
    data = create_domain(conn, payload)
    return _get_domain(conn, data["id"]), True


def update_domain(conn: Any, domain_id: str, payload: dict[str, Any]) -> dict[str, Any]:
    if not _get_domain(conn, domain_id):
        raise LookupError("domain_not_found")
    fields = _validated_fields(payload)
    domain = _update_domain(conn, domain_id, fields)
    return domain_to_dict(conn, domain)


def _validated_fields(payload: dict[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    if payload.get("is_active") is not None:
        fields["is_active"] = bool(payload["is_active"])
    if payload.get("check_interval_minutes") is not None:
        interval = int(payload["check_interval_minutes"])
        if interval < MIN_INTERVAL_MINUTES:
            raise ValueError(f"check_interval_minutes must be >= {MIN_INTERVAL_MINUTES}")
        fields["check_interval_minutes"] = interval
    if payload.get("max_pages") is not None:
        max_pages = int(payload["max_pages"])
        if not 1 <= max_pages <= MAX_PAGES_LIMIT:
            raise ValueError(f"max_pages must be between 1 and {MAX_PAGES_LIMIT}")
        fields["max_pages"] = max_pages
    for key in ("model", "summary_prompt"):
        if key in payload and payload[key] is not None:
            value = str(payload[key]).strip()
            fields[key] = value or None
    return fields
