from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Protocol

from ..errors import NonRetriableError, TransientError
from ..utils import log_event

API_KEY_ENV = "SD_PROVIDER_API_KEY"
WEBHOOK_EVENTS = ["started", "page", "completed", "failed"]


class CrawlProvider(Protocol):
    def start(
        self,
        url: str,
        max_age_ms: int,
        callback_url: str,
        max_pages: int,
    ) -> str:
        ...


def freshness_hint_ms(check_interval_minutes: int) -> int:
    return max(0, int(check_interval_minutes) * 60_000)


class HttpCrawlProvider:
    """Starts asynchronous crawls against a Firecrawl-compatible ``/crawl`` API."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: int = 30,
        user_agent: str = "sitedigest",
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key if api_key is not None else os.environ.get(API_KEY_ENV)
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent
        self.logger = logger or logging.getLogger("sitedigest.provider")

    def start(
        self,
        url: str,
        max_age_ms: int,
        callback_url: str,
        max_pages: int,
    ) -> str:
        payload = {
            "url": url,
            "limit": max_pages,
            "scrapeOptions": {
                "formats": ["markdown"],
                "onlyMainContent": True,
                "maxAge": max(0, int(max_age_ms)),
            },
            "webhook": {"url": callback_url, "events": WEBHOOK_EVENTS},
        }
        response = self._request("POST", "/crawl", payload)
        external_id = response.get("id") or response.get("jobId")
        if not external_id:
            raise NonRetriableError(f"provider_missing_job_id: {json.dumps(response)[:300]}")
        log_event(
            self.logger,
            logging.INFO,
            "provider_crawl_started",
            url=url,
            external_job_id=external_id,
            max_pages=max_pages,
        )
        return str(external_id)

    def _request(self, method: str, path: str, payload: dict[str, Any] | None) -> dict[str, Any]:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = urllib.request.Request(self.base_url + path, data=data, method=method)
        request.add_header("Content-Type", "application/json")
        request.add_header("User-Agent", self.user_agent)
        if self.api_key:
            request.add_header("Authorization", f"Bearer {self.api_key}")
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")[:500]
            log_event(
                self.logger,
                logging.WARNING,
                "provider_http_error",
                path=path,
                status=exc.code,
            )
            if exc.code >= 500 or exc.code == 429:
                raise TransientError(f"provider_http_error {exc.code}: {body}") from exc
            raise NonRetriableError(f"provider_http_error {exc.code}: {body}") from exc
        except (urllib.error.URLError, TimeoutError, ConnectionError) as exc:
            log_event(self.logger, logging.WARNING, "provider_network_error", path=path, error=str(exc))
            raise TransientError(f"provider_network_error: {exc}") from exc
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise TransientError("provider_invalid_json") from exc
        if isinstance(parsed, dict) and parsed.get("success") is False:
            raise NonRetriableError(f"provider_rejected: {parsed.get('error') or raw[:300]}")
        return parsed if isinstance(parsed, dict) else {"raw": parsed}
