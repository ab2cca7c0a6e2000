from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("sitedigest.migrations")
    conn.execute("BEGIN")
    try:
        conn.execute("SELECT pg_advisory_xact_lock(4201)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL
            )
            """
        )
        applied = {
            row[0]
            for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
        }
        if "pg_bootstrap_001" not in applied:
            _bootstrap_schema(conn)
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                ("pg_bootstrap_001", utc_now_iso()),
            )
            logger.info("migration_applied version=pg_bootstrap_001")
        conn.execute("COMMIT")
    except Exception:
        conn.execute("ROLLBACK")
        raise


def _bootstrap_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS domains (
            id TEXT PRIMARY KEY,
            hostname TEXT NOT NULL UNIQUE,
            is_active INTEGER NOT NULL DEFAULT 1,
            check_interval_minutes INTEGER NOT NULL DEFAULT 1440,
            max_pages INTEGER NOT NULL DEFAULT 10,
            model TEXT NULL,
            summary_prompt TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            domain_id TEXT NOT NULL REFERENCES domains(id),
            job_type TEXT NOT NULL,
            status TEXT NOT NULL,
            external_job_id TEXT NULL,
            started_at TEXT NOT NULL,
            finished_at TEXT NULL,
            pages_received INTEGER NOT NULL DEFAULT 0,
            pages_processed INTEGER NOT NULL DEFAULT 0,
            pages_expected INTEGER NULL,
            stream_closed INTEGER NOT NULL DEFAULT 0,
            assembly_claimed INTEGER NOT NULL DEFAULT 0,
            stats_json TEXT NULL,
            CHECK (pages_processed <= pages_received)
        )
        """
    )
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_one_active_per_domain
        ON jobs(domain_id) WHERE status = 'processing'
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_external ON jobs(external_job_id)")
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_domain_started ON jobs(domain_id, started_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS pages (
            id TEXT PRIMARY KEY,
            domain_id TEXT NOT NULL REFERENCES domains(id),
            url TEXT NOT NULL,
            last_known_version_id TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE(domain_id, url)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS page_versions (
            id TEXT PRIMARY KEY,
            page_id TEXT NOT NULL REFERENCES pages(id),
            job_id TEXT NOT NULL REFERENCES jobs(id),
            url TEXT NOT NULL,
            raw_path TEXT NOT NULL,
            processed_path TEXT NULL,
            fingerprint TEXT NOT NULL,
            prev_fingerprint TEXT NULL,
            similarity_score DOUBLE PRECISION NOT NULL,
            changed_enough INTEGER NOT NULL,
            reason TEXT NOT NULL,
            title TEXT NULL,
            description TEXT NULL,
            summary TEXT NULL,
            lines_added INTEGER NOT NULL DEFAULT 0,
            lines_removed INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            UNIQUE(page_id, job_id)
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_page_versions_job ON page_versions(job_id)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS artifacts (
            id TEXT PRIMARY KEY,
            job_id TEXT NOT NULL REFERENCES jobs(id),
            domain_id TEXT NOT NULL REFERENCES domains(id),
            kind TEXT NOT NULL,
            blob_path TEXT NOT NULL,
            version INTEGER NOT NULL,
            created_at TEXT NOT NULL,
            UNIQUE(domain_id, kind, version),
            UNIQUE(job_id, kind)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS delivery_keys (
            job_id TEXT NOT NULL REFERENCES jobs(id),
            url TEXT NOT NULL,
            received_at TEXT NOT NULL,
            PRIMARY KEY (job_id, url)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS tasks (
            id TEXT PRIMARY KEY,
            task_type TEXT NOT NULL,
            status TEXT NOT NULL,
            payload_json TEXT NULL,
            result_json TEXT NULL,
            requested_at TEXT NOT NULL,
            available_at TEXT NOT NULL,
            started_at TEXT NULL,
            finished_at TEXT NULL,
            locked_by TEXT NULL,
            locked_at TEXT NULL,
            error TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_tasks_status_available ON tasks(status, available_at)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS leases (
            name TEXT PRIMARY KEY,
            holder TEXT NOT NULL,
            expires_at TEXT NOT NULL
        )
        """
    )
