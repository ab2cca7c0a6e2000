from __future__ import annotations

import copy
import logging

import pytest

from sitedigest.config import (
    DEFAULT_CONFIG,
    get_runtime_config,
    load_runtime_config,
    set_runtime_config,
)
from sitedigest.events import CRAWL_COMPLETED, CRAWL_PAGE, INGEST_REQUESTED, emit
from sitedigest.objectstore import LocalObjectStore
from sitedigest.storage import create_domain, get_active_job, init_db
from sitedigest.worker import Services, drain


class FakeProvider:
    def __init__(self) -> None:
        self.calls: list[dict[str, object]] = []
        self.error: Exception | None = None
        self._counter = 0

    def start(self, url, max_age_ms, callback_url, max_pages):
        self.calls.append(
            {
                "url": url,
                "max_age_ms": max_age_ms,
                "callback_url": callback_url,
                "max_pages": max_pages,
            }
        )
        if self.error is not None:
            raise self.error
        self._counter += 1
        return f"ext-{self._counter}"


class FakeSummarizer:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.fail = False

    def summarize(self, text, prompt, *, url="", model=None):
        self.calls.append(url)
        if self.fail:
            raise RuntimeError("summarizer unavailable")
        return {"description": f"About {url}", "summary": f"Summary of {url}"}


@pytest.fixture
def data_dir(tmp_path, monkeypatch):
    path = tmp_path / "data"
    monkeypatch.setenv("SD_DATA_DIR", str(path))
    monkeypatch.delenv("SD_DB_URL", raising=False)
    monkeypatch.delenv("SD_ADMIN_TOKEN", raising=False)
    monkeypatch.delenv("SD_WEBHOOK_SECRET", raising=False)
    return path


@pytest.fixture
def conn(data_dir):
    conn = init_db()
    cfg = copy.deepcopy(DEFAULT_CONFIG)
    cfg["paths"]["data_dir"] = str(data_dir)
    cfg["paths"]["object_store_dir"] = str(data_dir / "objects")
    cfg["jobs"]["retry_backoff_seconds"] = [0]
    set_runtime_config(conn, cfg)
    yield conn
    conn.close()


@pytest.fixture
def config(conn):
    return load_runtime_config(conn)


@pytest.fixture
def set_config(conn):
    def _update(section: str, **values):
        cfg = get_runtime_config(conn)
        cfg[section].update(values)
        set_runtime_config(conn, cfg)
        return load_runtime_config(conn)

    return _update


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def summarizer():
    return FakeSummarizer()


@pytest.fixture
def services(config, provider, summarizer):
    return Services(
        provider=provider,
        summarizer=summarizer,
        store=LocalObjectStore(config.paths.object_store_dir),
    )


@pytest.fixture
def logger():
    return logging.getLogger("sitedigest.tests")


@pytest.fixture
def domain(conn):
    return create_domain(conn, "docs.example.com", max_pages=5)


@pytest.fixture
def run_tasks(conn, services, logger):
    """Drain the queue with whatever runtime config is current."""

    def _run() -> int:
        return drain(conn, load_runtime_config(conn), services, logger)

    return _run


@pytest.fixture
def start_job(conn, run_tasks):
    def _start(domain, job_type: str = "initial"):
        emit(conn, INGEST_REQUESTED, {"domain_id": domain.id, "type": job_type})
        run_tasks()
        return get_active_job(conn, domain.id)

    return _start


@pytest.fixture
def send_page(conn):
    def _send(job, url: str, markdown: str, **metadata):
        return emit(
            conn,
            CRAWL_PAGE,
            {
                "job_id": job.id,
                "external_job_id": job.external_job_id,
                "url": url,
                "markdown": markdown,
                "metadata": metadata,
            },
        )

    return _send


@pytest.fixture
def send_completed(conn):
    def _send(job, total_pages: int | None = None):
        payload = {"job_id": job.id, "external_job_id": job.external_job_id}
        if total_pages is not None:
            payload["total_pages"] = total_pages
        return emit(conn, CRAWL_COMPLETED, payload)

    return _send
