import threading

import pytest

from sitedigest.errors import NonRetriableError
from sitedigest.events import ASSEMBLY_REQUESTED
from sitedigest.pipelines.completion import (
    EMPTY_CRAWL_ERROR,
    evaluate_completion,
    handle_crawl_completed,
    handle_crawl_failed,
    is_empty_close,
    is_ready,
)
from sitedigest.storage import (
    count_tasks,
    create_job,
    get_job,
    init_db,
    set_external_job_id,
    update_domain,
)


def _job(conn, domain, *, received=0, processed=0, expected=None, closed=False):
    job = create_job(conn, domain.id, "initial")
    set_external_job_id(conn, job.id, "ext-1")
    conn.execute(
        """
        UPDATE jobs
        SET pages_received = ?, pages_processed = ?, pages_expected = ?, stream_closed = ?
        WHERE id = ?
        """,
        (received, processed, expected, 1 if closed else 0, job.id),
    )
    return get_job(conn, job.id)


def test_readiness_predicate(conn, domain):
    assert is_ready(_job(conn, domain, received=2, processed=2, closed=True))


@pytest.mark.parametrize(
    "received,processed,expected,closed",
    [
        (2, 2, None, False),
        (2, 1, None, True),
        (2, 2, 3, True),
        (0, 0, None, True),
    ],
)
def test_not_ready(conn, domain, received, processed, expected, closed):
    job = _job(conn, domain, received=received, processed=processed, expected=expected, closed=closed)
    assert not is_ready(job)


def test_empty_close_predicate(conn, domain):
    assert is_empty_close(_job(conn, domain, closed=True))


def test_concurrent_completion_checks_claim_once(conn, config, domain, logger):
    job = _job(conn, domain, received=3, processed=3, closed=True)
    results = []
    errors = []
    barrier = threading.Barrier(8)

    def check():
        local = init_db()
        try:
            barrier.wait()
            results.append(evaluate_completion(local, config, job.id, logger)["claimed"])
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)
        finally:
            local.close()

    threads = [threading.Thread(target=check) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert results.count(True) == 1
    assert count_tasks(conn, ASSEMBLY_REQUESTED) == 1
    assert get_job(conn, job.id).assembly_claimed is True


def test_stream_close_waits_for_processing(conn, config, services, domain, logger):
    job = _job(conn, domain, received=2, processed=1)
    result = handle_crawl_completed(
        conn, config, services, {"job_id": job.id, "external_job_id": "ext-1", "total_pages": 2}, logger
    )

    assert result["claimed"] is False
    job = get_job(conn, job.id)
    assert job.stream_closed is True
    assert job.pages_expected == 2
    assert job.stats["completionNote"] == "waiting for 1 page(s) to finish processing"
    assert count_tasks(conn, ASSEMBLY_REQUESTED) == 0


@pytest.mark.parametrize("total_pages, expected", [("many", None), ("3", 3), (-1, None), (True, None)])
def test_stream_close_tolerates_odd_page_counts(conn, config, services, domain, logger, total_pages, expected):
    job = _job(conn, domain, received=2, processed=1)
    result = handle_crawl_completed(
        conn, config, services, {"job_id": job.id, "external_job_id": "ext-1", "total_pages": total_pages}, logger
    )

    assert result["claimed"] is False
    job = get_job(conn, job.id)
    assert job.stream_closed is True
    assert job.pages_expected == expected


def test_stream_close_after_processing_claims(conn, config, services, domain, logger):
    job = _job(conn, domain, received=2, processed=2)
    result = handle_crawl_completed(conn, config, services, {"job_id": job.id, "external_job_id": "ext-1"}, logger)
    assert result["claimed"] is True
    assert count_tasks(conn, ASSEMBLY_REQUESTED) == 1


def test_empty_close_finish_policy(conn, config, services, domain, logger):
    job = _job(conn, domain)
    result = handle_crawl_completed(conn, config, services, {"job_id": job.id, "external_job_id": "ext-1"}, logger)
    assert result == {"claimed": True, "reason": "empty_crawl"}
    assert count_tasks(conn, ASSEMBLY_REQUESTED) == 1


def test_empty_close_fail_policy(conn, services, domain, logger, set_config):
    config = set_config("jobs", empty_crawl_policy="fail")
    job = _job(conn, domain)
    handle_crawl_completed(conn, config, services, {"job_id": job.id, "external_job_id": "ext-1"}, logger)
    job = get_job(conn, job.id)
    assert job.status == "failed"
    assert job.stats["error"] == EMPTY_CRAWL_ERROR
    assert count_tasks(conn, ASSEMBLY_REQUESTED) == 0


def test_close_for_inactive_domain_fails_job(conn, config, services, domain, logger):
    job = _job(conn, domain, received=1, processed=1)
    update_domain(conn, domain.id, {"is_active": False})
    with pytest.raises(NonRetriableError):
        handle_crawl_completed(conn, config, services, {"job_id": job.id, "external_job_id": "ext-1"}, logger)
    assert get_job(conn, job.id).status == "failed"


def test_crawl_failed_marks_job_failed(conn, config, services, domain, logger):
    job = _job(conn, domain, received=1)
    result = handle_crawl_failed(
        conn, config, services, {"job_id": job.id, "external_job_id": "ext-1", "error": "blocked"}, logger
    )
    assert result["status"] == "failed"
    job = get_job(conn, job.id)
    assert job.status == "failed"
    assert job.stats["error"] == "crawl_failed: blocked"

    again = handle_crawl_failed(
        conn, config, services, {"job_id": job.id, "external_job_id": "ext-1", "error": "blocked"}, logger
    )
    assert again["status"] == "ignored"
