from sitedigest.events import INGEST_REQUESTED, RECRAWL_REQUESTED
from sitedigest.pipelines.recrawl import STALE_JOB_REASON, reap_stale_jobs, schedule_recrawls
from sitedigest.storage import (
    count_tasks,
    create_domain,
    create_job,
    finish_job,
    get_job,
    list_due_domains,
    list_tasks,
)
from sitedigest.utils import utc_now_iso, utc_now_iso_offset
from sitedigest.worker import _maybe_enqueue_recrawl


def _age_job(conn, job_id, *, started_minutes_ago, finished_minutes_ago=None):
    conn.execute(
        "UPDATE jobs SET started_at = ?, finished_at = ? WHERE id = ?",
        (
            utc_now_iso_offset(seconds=-started_minutes_ago * 60),
            utc_now_iso_offset(seconds=-finished_minutes_ago * 60)
            if finished_minutes_ago is not None
            else None,
            job_id,
        ),
    )


def test_due_domains_respect_interval(conn):
    due = create_domain(conn, "due.example.com", check_interval_minutes=60)
    fresh = create_domain(conn, "fresh.example.com", check_interval_minutes=60)
    create_domain(conn, "never.example.com", check_interval_minutes=60)
    inactive = create_domain(conn, "off.example.com", check_interval_minutes=60, is_active=False)

    for domain, finished_ago in ((due, 90), (fresh, 10), (inactive, 90)):
        job = create_job(conn, domain.id, "initial")
        finish_job(conn, job.id, {})
        _age_job(conn, job.id, started_minutes_ago=finished_ago + 5, finished_minutes_ago=finished_ago)

    assert [domain.hostname for domain in list_due_domains(conn, utc_now_iso())] == ["due.example.com"]


def test_domain_with_active_job_is_not_due(conn):
    domain = create_domain(conn, "busy.example.com", check_interval_minutes=60)
    job = create_job(conn, domain.id, "initial")
    finish_job(conn, job.id, {})
    _age_job(conn, job.id, started_minutes_ago=120, finished_minutes_ago=100)
    create_job(conn, domain.id, "update")

    assert list_due_domains(conn, utc_now_iso()) == []


def test_schedule_emits_update_ingest(conn, config, services, logger):
    domain = create_domain(conn, "due.example.com", check_interval_minutes=60)
    job = create_job(conn, domain.id, "initial")
    finish_job(conn, job.id, {})
    _age_job(conn, job.id, started_minutes_ago=200, finished_minutes_ago=180)

    result = schedule_recrawls(conn, config, services, {}, logger)

    assert result["scheduled"] == 1
    assert result["domains"] == ["due.example.com"]
    task = list_tasks(conn, task_type=INGEST_REQUESTED)[0]
    assert task.payload == {"domain_id": domain.id, "type": "update", "requested_by": "scheduler"}


def test_reaper_fails_stale_jobs(conn, config, logger, set_config):
    config = set_config("jobs", stale_job_minutes=30)
    domain = create_domain(conn, "slow.example.com")
    other = create_domain(conn, "quick.example.com")
    stale = create_job(conn, domain.id, "initial")
    recent = create_job(conn, other.id, "initial")
    _age_job(conn, stale.id, started_minutes_ago=45)

    assert reap_stale_jobs(conn, config, logger) == [stale.id]
    stale = get_job(conn, stale.id)
    assert stale.status == "failed"
    assert stale.stats["error"] == STALE_JOB_REASON
    assert get_job(conn, recent.id).status == "processing"


def test_recrawl_tick_is_debounced(conn, config, logger):
    _maybe_enqueue_recrawl(conn, config, logger)
    _maybe_enqueue_recrawl(conn, config, logger)
    assert count_tasks(conn, RECRAWL_REQUESTED) == 1

    conn.execute("UPDATE tasks SET status = 'succeeded' WHERE task_type = ?", (RECRAWL_REQUESTED,))
    _maybe_enqueue_recrawl(conn, config, logger)
    assert count_tasks(conn, RECRAWL_REQUESTED) == 1
