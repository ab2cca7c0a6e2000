import pytest

from sitedigest.errors import NonRetriableError
from sitedigest.pipelines.finalize import compute_job_stats, finalize_job
from sitedigest.storage import create_job, get_job


def test_finalize_is_idempotent(conn, config, services, logger, domain, start_job, send_page, send_completed, run_tasks):
    job = start_job(domain)
    send_page(job, "https://docs.example.com/a", "# A")
    send_completed(job, total_pages=1)
    run_tasks()

    finished = get_job(conn, job.id)
    assert finished.status == "finished"
    result = finalize_job(conn, config, services, {"job_id": job.id}, logger)
    assert result["status"] == "skipped"
    assert get_job(conn, job.id).stats == finished.stats
    assert get_job(conn, job.id).finished_at == finished.finished_at


def test_finalize_requires_claim(conn, config, services, logger, domain):
    job = create_job(conn, domain.id, "initial")
    with pytest.raises(NonRetriableError):
        finalize_job(conn, config, services, {"job_id": job.id}, logger)


def test_stats_keys(conn, domain, start_job, send_page, send_completed, run_tasks):
    job = start_job(domain)
    send_page(job, "https://docs.example.com/a", "# A")
    send_page(job, "https://docs.example.com/b", "# B")
    send_completed(job, total_pages=2)
    run_tasks()

    job = get_job(conn, job.id)
    stats = compute_job_stats(conn, job, domain.hostname, job.finished_at)
    assert stats["domain"] == "docs.example.com"
    assert stats["jobType"] == "initial"
    assert stats["totalPagesProcessed"] == 2
    assert stats["uniquePages"] == 2
    assert stats["newPages"] == 2
    assert stats["changedPages"] == 0
    assert stats["unchangedPages"] == 0
    assert stats["pagesReceived"] == 2
    assert stats["completionRate"] == 100.0
    assert stats["emptyCrawl"] is False
    assert stats["durationSeconds"] >= 0
    assert len(stats["artifactIds"]) == 2
    assert job.stats["crawlStartedAt"]
    assert job.stats["providerPageCount"] == 2
