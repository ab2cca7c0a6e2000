import threading

import pytest

from sitedigest.diff import NEW_PAGE_REASON, UNCHANGED_REASON
from sitedigest.errors import TransientError
from sitedigest.events import PAGE_PROCESSED
from sitedigest.objectstore import raw_page_path
from sitedigest.pipelines.ingest_page import handle_crawl_page
from sitedigest.pipelines.process_page import process_page
from sitedigest.storage import (
    cancel_job,
    count_tasks,
    create_job,
    finish_job,
    get_domain,
    get_job,
    get_page_version,
    init_db,
    list_versions_for_job,
    set_external_job_id,
)


def _accepted(conn, config, services, logger, job, url, markdown, **metadata):
    result = handle_crawl_page(
        conn,
        config,
        services,
        {
            "job_id": job.id,
            "external_job_id": job.external_job_id,
            "url": url,
            "markdown": markdown,
            "metadata": metadata,
        },
        logger,
    )
    assert result["status"] == "accepted"
    return {
        "job_id": job.id,
        "page_id": result["page_id"],
        "url": url,
        "raw_path": raw_page_path(_domain_hostname(conn, job), job.id, job.started_at, url),
        "title": metadata.get("title") or "",
        "description": metadata.get("description") or "",
    }


def _domain_hostname(conn, job):
    return get_domain(conn, job.domain_id).hostname


def _job(conn, domain):
    job = create_job(conn, domain.id, "initial")
    set_external_job_id(conn, job.id, f"ext-{job.id}")
    return get_job(conn, job.id)


def test_new_page_is_recorded_as_changed(conn, config, services, domain, logger):
    job = _job(conn, domain)
    payload = _accepted(conn, config, services, logger, job, "https://docs.example.com/a", "# Alpha\n\nbody")

    result = process_page(conn, config, services, payload, logger)

    assert result["status"] == "recorded"
    version = get_page_version(conn, result["version_id"])
    assert version.changed_enough is True
    assert version.reason == NEW_PAGE_REASON
    assert version.title == "Alpha"
    assert services.store.get(version.processed_path).startswith("# Alpha")
    assert get_job(conn, job.id).pages_processed == 1
    assert count_tasks(conn, PAGE_PROCESSED) == 1


def test_redelivered_processing_is_a_noop(conn, config, services, domain, logger):
    job = _job(conn, domain)
    payload = _accepted(conn, config, services, logger, job, "https://docs.example.com/a", "# Alpha")
    process_page(conn, config, services, payload, logger)
    result = process_page(conn, config, services, payload, logger)

    assert result["status"] == "duplicate"
    assert get_job(conn, job.id).pages_processed == 1
    assert len(list_versions_for_job(conn, job.id)) == 1


def test_concurrent_processing_counts_each_page_once(conn, config, services, domain, logger):
    job = _job(conn, domain)
    payloads = [
        _accepted(conn, config, services, logger, job, f"https://docs.example.com/p{index}", f"# Page {index}\n\nbody {index}")
        for index in range(4)
    ]
    work = payloads * 2
    statuses = []
    errors = []
    barrier = threading.Barrier(len(work))

    def run(payload):
        local = init_db()
        try:
            barrier.wait()
            statuses.append(process_page(local, config, services, dict(payload), logger)["status"])
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)
        finally:
            local.close()

    threads = [threading.Thread(target=run, args=(payload,)) for payload in work]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert statuses.count("recorded") == 4
    job = get_job(conn, job.id)
    assert job.pages_processed == 4
    assert job.pages_processed <= job.pages_received
    assert len(list_versions_for_job(conn, job.id)) == 4
    assert count_tasks(conn, PAGE_PROCESSED) == 4


def test_identical_content_on_recrawl_is_unchanged(conn, config, services, domain, logger):
    first = _job(conn, domain)
    payload = _accepted(conn, config, services, logger, first, "https://docs.example.com/a", "# Alpha\n\nsame")
    process_page(conn, config, services, payload, logger)
    finish_job(conn, first.id, {})

    second = _job(conn, domain)
    payload = _accepted(conn, config, services, logger, second, "https://docs.example.com/a", "# Alpha\n\nsame")
    result = process_page(conn, config, services, payload, logger)

    version = get_page_version(conn, result["version_id"])
    assert version.changed_enough is False
    assert version.reason == UNCHANGED_REASON
    assert version.similarity_score == 1.0
    assert version.prev_fingerprint == version.fingerprint


def test_rewritten_content_on_recrawl_is_changed(conn, config, services, domain, logger):
    first = _job(conn, domain)
    payload = _accepted(conn, config, services, logger, first, "https://docs.example.com/a", "# Alpha\n\nold words here")
    process_page(conn, config, services, payload, logger)
    finish_job(conn, first.id, {})

    second = _job(conn, domain)
    payload = _accepted(
        conn, config, services, logger, second, "https://docs.example.com/a", "# Alpha\n\ntotally new wording entirely"
    )
    result = process_page(conn, config, services, payload, logger)

    version = get_page_version(conn, result["version_id"])
    assert version.changed_enough is True
    assert version.lines_added == 1
    assert version.lines_removed == 1


def test_canceled_job_writes_no_version(conn, config, services, domain, logger):
    job = _job(conn, domain)
    payload = _accepted(conn, config, services, logger, job, "https://docs.example.com/a", "# Alpha")
    cancel_job(conn, job.id)

    result = process_page(conn, config, services, payload, logger)

    assert result["status"] == "skipped"
    assert list_versions_for_job(conn, job.id) == []
    assert get_job(conn, job.id).pages_processed == 0


def test_missing_raw_content_is_transient(conn, config, services, domain, logger):
    job = _job(conn, domain)
    payload = _accepted(conn, config, services, logger, job, "https://docs.example.com/a", "# Alpha")
    payload["raw_path"] = "domains/missing/raw.md"
    with pytest.raises(TransientError):
        process_page(conn, config, services, payload, logger)


def test_summaries_are_best_effort(conn, services, summarizer, domain, logger, set_config):
    config = set_config("processing", summarize=True)
    job = _job(conn, domain)

    payload = _accepted(conn, config, services, logger, job, "https://docs.example.com/a", "# Alpha")
    result = process_page(conn, config, services, payload, logger)
    version = get_page_version(conn, result["version_id"])
    assert version.summary == "Summary of https://docs.example.com/a"
    assert version.description == "About https://docs.example.com/a"

    summarizer.fail = True
    payload = _accepted(conn, config, services, logger, job, "https://docs.example.com/b", "# Beta")
    result = process_page(conn, config, services, payload, logger)
    version = get_page_version(conn, result["version_id"])
    assert result["status"] == "recorded"
    assert version.summary is None
