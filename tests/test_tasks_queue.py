from sitedigest.storage import (
    claim_next_task,
    complete_task,
    enqueue_task,
    get_task,
    init_db,
    list_tasks,
    release_lease,
    requeue_task,
    try_acquire_lease,
)
from sitedigest.utils import utc_now_iso_offset


def test_enqueue_and_claim_task(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = init_db(str(db_path))
    conn2 = init_db(str(db_path))

    task_id = enqueue_task(conn, "page.processed", {"job_id": "job_1"})
    claimed = claim_next_task(conn, "worker-1")

    assert claimed is not None
    assert claimed.id == task_id
    assert claimed.status == "running"
    assert claimed.payload == {"job_id": "job_1"}
    assert claim_next_task(conn2, "worker-2") is None


def test_debounce_reuses_pending_task(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    first = enqueue_task(conn, "schedule.recrawl_requested", None, debounce=True)
    second = enqueue_task(conn, "schedule.recrawl_requested", None, debounce=True)
    assert first == second
    assert len(list_tasks(conn)) == 1


def test_future_tasks_are_not_claimed(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    enqueue_task(conn, "page.processed", {}, available_at=utc_now_iso_offset(seconds=60))
    assert claim_next_task(conn, "worker-1") is None


def test_requeue_updates_payload(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    task_id = enqueue_task(conn, "domain.ingest_requested", {"domain_id": "dom_1"})
    claim_next_task(conn, "worker-1")
    assert requeue_task(
        conn,
        task_id,
        {"domain_id": "dom_1", "job_id": "job_1", "attempt": 1},
        available_at=utc_now_iso_offset(seconds=-1),
        error="launch_in_progress",
    )
    task = get_task(conn, task_id)
    assert task.status == "queued"
    assert task.error == "launch_in_progress"
    assert task.payload["job_id"] == "job_1"
    claimed = claim_next_task(conn, "worker-1")
    assert claimed.id == task_id
    assert complete_task(conn, task_id, {"ok": True})
    assert get_task(conn, task_id).result == {"ok": True}


def test_stale_lock_requeues_task(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    task_id = enqueue_task(conn, "page.processed", {})
    claim_next_task(conn, "worker-1")
    conn.execute(
        "UPDATE tasks SET locked_at = ? WHERE id = ?",
        (utc_now_iso_offset(seconds=-600), task_id),
    )
    claimed = claim_next_task(conn, "worker-2", lock_timeout_seconds=60)
    assert claimed is not None
    assert claimed.id == task_id
    assert claimed.locked_by == "worker-2"


def test_leases_are_exclusive(tmp_path):
    conn = init_db(str(tmp_path / "state.sqlite3"))
    assert try_acquire_lease(conn, "launch:domain:dom_1", "holder-a", 60)
    assert not try_acquire_lease(conn, "launch:domain:dom_1", "holder-b", 60)
    assert try_acquire_lease(conn, "launch:domain:dom_1", "holder-a", 60)
    assert release_lease(conn, "launch:domain:dom_1", "holder-a")
    assert try_acquire_lease(conn, "launch:domain:dom_1", "holder-b", 60)
