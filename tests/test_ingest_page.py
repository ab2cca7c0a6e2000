import threading

import pytest

from sitedigest.errors import NonRetriableError, TransientError
from sitedigest.events import PAGE_PROCESS_REQUESTED
from sitedigest.pipelines.ingest_page import handle_crawl_page
from sitedigest.storage import (
    cancel_job,
    count_tasks,
    create_job,
    get_job,
    init_db,
    list_pages,
    set_external_job_id,
)


def _payload(job, url, markdown="# Page\n\nbody", **extra):
    payload = {
        "job_id": job.id,
        "external_job_id": job.external_job_id,
        "url": url,
        "markdown": markdown,
        "metadata": {"title": "Page title", "description": "Short description"},
    }
    payload.update(extra)
    return payload


def _job(conn, domain):
    job = create_job(conn, domain.id, "initial")
    set_external_job_id(conn, job.id, "ext-abc")
    return get_job(conn, job.id)


def test_page_is_accepted_and_queued(conn, config, services, domain, logger):
    job = _job(conn, domain)
    result = handle_crawl_page(conn, config, services, _payload(job, "https://docs.example.com/a"), logger)

    assert result["status"] == "accepted"
    assert get_job(conn, job.id).pages_received == 1
    assert count_tasks(conn, PAGE_PROCESS_REQUESTED) == 1
    assert [page.url for page in list_pages(conn, domain.id)] == ["https://docs.example.com/a"]


def test_duplicate_delivery_does_not_double_count(conn, config, services, domain, logger):
    job = _job(conn, domain)
    payload = _payload(job, "https://docs.example.com/a")
    handle_crawl_page(conn, config, services, payload, logger)
    result = handle_crawl_page(conn, config, services, payload, logger)

    assert result["status"] == "duplicate"
    assert get_job(conn, job.id).pages_received == 1
    assert count_tasks(conn, PAGE_PROCESS_REQUESTED) == 1


def test_concurrent_deliveries_count_each_url_once(conn, config, services, domain, logger):
    job = _job(conn, domain)
    urls = [f"https://docs.example.com/page-{index % 4}" for index in range(12)]
    statuses = []
    errors = []
    barrier = threading.Barrier(len(urls))

    def deliver(url):
        local = init_db()
        try:
            barrier.wait()
            result = handle_crawl_page(local, config, services, _payload(job, url), logger)
            statuses.append(result["status"])
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)
        finally:
            local.close()

    threads = [threading.Thread(target=deliver, args=(url,)) for url in urls]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert statuses.count("accepted") == 4
    assert statuses.count("duplicate") == 8
    assert get_job(conn, job.id).pages_received == 4
    assert count_tasks(conn, PAGE_PROCESS_REQUESTED) == 4
    assert len(list_pages(conn, domain.id)) == 4


def test_mismatched_external_id_is_rejected(conn, config, services, domain, logger):
    job = _job(conn, domain)
    payload = _payload(job, "https://docs.example.com/a", external_job_id="ext-other")
    with pytest.raises(NonRetriableError):
        handle_crawl_page(conn, config, services, payload, logger)
    assert get_job(conn, job.id).pages_received == 0


def test_callback_before_external_id_recorded_is_retried(conn, config, services, domain, logger):
    job = create_job(conn, domain.id, "initial")
    payload = _payload(job, "https://docs.example.com/a", external_job_id="ext-abc")
    with pytest.raises(TransientError):
        handle_crawl_page(conn, config, services, payload, logger)


def test_pages_for_closed_job_are_ignored(conn, config, services, domain, logger):
    job = _job(conn, domain)
    cancel_job(conn, job.id)
    result = handle_crawl_page(conn, config, services, _payload(job, "https://docs.example.com/a"), logger)
    assert result["status"] == "ignored"
    assert get_job(conn, job.id).pages_received == 0


def test_html_payload_is_converted(conn, config, services, domain, logger):
    job = _job(conn, domain)
    payload = _payload(
        job,
        "https://docs.example.com/html",
        markdown="",
        html="<html><body><h1>Doc</h1><p>From html</p></body></html>",
    )
    handle_crawl_page(conn, config, services, payload, logger)
    stored = [
        path
        for path in (services.store.root / "domains").rglob("*_raw.md")
    ]
    assert len(stored) == 1
    assert "# Doc" in stored[0].read_text(encoding="utf-8")
