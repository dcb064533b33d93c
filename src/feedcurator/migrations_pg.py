from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("feedcurator.migrations")
    conn.execute("BEGIN")
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
    for version, migration in (
        ("pg_bootstrap_001", _bootstrap_schema),
        ("pg_run_logs_002", _run_logs_schema),
    ):
        if version in applied:
            continue
        migration(conn)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            (version, utc_now_iso()),
        )
        logger.info("migration_applied version=%s", version)
    conn.commit()


def _bootstrap_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS sources (
            id BIGSERIAL PRIMARY KEY,
            title TEXT NOT NULL,
            url TEXT NULL,
            feed_url TEXT NULL,
            include_in_newsfeed INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS topics (
            id BIGSERIAL PRIMARY KEY,
            name TEXT NOT NULL UNIQUE,
            slug TEXT NOT NULL,
            description TEXT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS content_items (
            id BIGSERIAL PRIMARY KEY,
            link TEXT NOT NULL UNIQUE,
            title TEXT NOT NULL,
            description TEXT NOT NULL DEFAULT '',
            content TEXT NOT NULL DEFAULT '',
            image_path TEXT NULL,
            date_created TEXT NOT NULL,
            date_published TEXT NULL,
            status TEXT NOT NULL DEFAULT 'draft'
                CHECK (status IN ('draft', 'published', 'archived')),
            indexed INTEGER NOT NULL DEFAULT 0,
            summary TEXT NOT NULL DEFAULT '',
            source_id BIGINT NULL REFERENCES sources(id) ON DELETE SET NULL,
            user_id TEXT NULL
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_content_items_indexed ON content_items(indexed, status, id)"
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS content_item_topics (
            content_item_id BIGINT NOT NULL REFERENCES content_items(id) ON DELETE CASCADE,
            topic_id BIGINT NOT NULL REFERENCES topics(id) ON DELETE CASCADE
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_content_item_topics_item ON content_item_topics(content_item_id)"
    )
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
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            status TEXT NOT NULL
                CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
            job_type TEXT NOT NULL,
            is_cron INTEGER NOT NULL DEFAULT 0,
            batch_size INTEGER NOT NULL,
            total_batches INTEGER NOT NULL DEFAULT 0,
            current_batch INTEGER NOT NULL DEFAULT 0,
            total_sources INTEGER NOT NULL DEFAULT 0,
            processed_sources INTEGER NOT NULL DEFAULT 0,
            processed_items INTEGER NOT NULL DEFAULT 0,
            error_count INTEGER NOT NULL DEFAULT 0,
            current_source TEXT NULL,
            last_processed_source_id BIGINT NULL,
            batch_token TEXT NULL,
            cursor_source_index INTEGER NOT NULL DEFAULT 0,
            cursor_item_index INTEGER NOT NULL DEFAULT 0,
            created_at TEXT NOT NULL,
            started_at TEXT NULL,
            completed_at TEXT NULL,
            last_updated TEXT NOT NULL,
            duration_seconds DOUBLE PRECISION NOT NULL DEFAULT 0,
            error TEXT NULL,
            metadata_json TEXT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status ON jobs(status, created_at)")
    conn.execute(
        """
        CREATE UNIQUE INDEX IF NOT EXISTS idx_jobs_single_active ON jobs(job_type)
        WHERE status IN ('pending', 'processing')
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS job_events (
            id BIGSERIAL PRIMARY KEY,
            job_id TEXT NOT NULL REFERENCES jobs(id) ON DELETE CASCADE,
            event_type TEXT NOT NULL,
            payload_json TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_job_events_job ON job_events(job_id, id)")


def _run_logs_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS run_logs (
            id TEXT PRIMARY KEY,
            function_name TEXT NOT NULL,
            job_id TEXT NULL,
            batch_number INTEGER NULL,
            status TEXT NOT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT NULL,
            duration_ms INTEGER NULL,
            success INTEGER NULL,
            error TEXT NULL,
            items_processed INTEGER NOT NULL DEFAULT 0,
            items_failed INTEGER NOT NULL DEFAULT 0,
            context_json TEXT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_run_logs_job ON run_logs(job_id, started_at)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS run_steps (
            id BIGSERIAL PRIMARY KEY,
            run_id TEXT NOT NULL REFERENCES run_logs(id) ON DELETE CASCADE,
            step_name TEXT NOT NULL,
            started_at TEXT NOT NULL,
            completed_at TEXT NULL,
            duration_ms INTEGER NULL,
            success INTEGER NULL,
            message TEXT NULL,
            data_json TEXT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_run_steps_run ON run_steps(run_id, id)")
