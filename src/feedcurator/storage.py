from __future__ import annotations

import json
import uuid
from typing import Any, Iterable

from .db import connect_db, is_unique_violation
from .models import (
    ACTIVE_JOB_STATUSES,
    ContentItem,
    Job,
    JobEvent,
    JobStatus,
    Source,
    Topic,
)
from .utils import json_dumps, json_loads, slugify, utc_now_iso

_SOURCE_COLUMNS = "id, title, url, feed_url, include_in_newsfeed"
_TOPIC_COLUMNS = "id, name, slug, description"
_ITEM_COLUMNS = """
    id, link, title, description, content, image_path, date_created, date_published,
    status, indexed, summary, source_id, user_id
"""
_JOB_COLUMNS = """
    id, status, job_type, is_cron, batch_size, total_batches, current_batch,
    total_sources, processed_sources, processed_items, error_count, current_source,
    last_processed_source_id, batch_token, cursor_source_index, cursor_item_index,
    created_at, started_at, completed_at, last_updated, duration_seconds, error,
    metadata_json
"""


def init_db(path: str):
    return connect_db(path)


def add_source(
    conn: Any,
    title: str,
    feed_url: str | None,
    url: str | None = None,
    include_in_newsfeed: bool = True,
) -> int:
    now = utc_now_iso()
    source_id = _insert_returning_id(
        conn,
        """
        INSERT INTO sources (title, url, feed_url, include_in_newsfeed, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (title, url, feed_url, 1 if include_in_newsfeed else 0, now, now),
    )
    conn.commit()
    return source_id


def list_sources(conn: Any) -> list[Source]:
    cursor = conn.execute(f"SELECT {_SOURCE_COLUMNS} FROM sources ORDER BY id")
    return [_row_to_source(row) for row in cursor.fetchall()]


def count_eligible_sources(conn: Any) -> int:
    row = conn.execute(
        """
        SELECT COUNT(*) FROM sources
        WHERE include_in_newsfeed = 1 AND feed_url IS NOT NULL
        """
    ).fetchone()
    return int(row[0]) if row else 0


def list_source_slice(conn: Any, batch_number: int, batch_size: int) -> list[Source]:
    cursor = conn.execute(
        f"""
        SELECT {_SOURCE_COLUMNS} FROM sources
        WHERE include_in_newsfeed = 1 AND feed_url IS NOT NULL
        ORDER BY id
        LIMIT ? OFFSET ?
        """,
        (batch_size, batch_number * batch_size),
    )
    return [_row_to_source(row) for row in cursor.fetchall()]


def add_topic(conn: Any, name: str, description: str | None = None) -> int:
    topic_id = _insert_returning_id(
        conn,
        "INSERT INTO topics (name, slug, description) VALUES (?, ?, ?)",
        (name, slugify(name), description),
    )
    conn.commit()
    return topic_id


def list_topics(conn: Any) -> list[Topic]:
    cursor = conn.execute(f"SELECT {_TOPIC_COLUMNS} FROM topics ORDER BY name")
    return [_row_to_topic(row) for row in cursor.fetchall()]


def list_item_topics(conn: Any, item_id: int) -> list[Topic]:
    cursor = conn.execute(
        """
        SELECT t.id, t.name, t.slug, t.description
        FROM content_item_topics cit
        JOIN topics t ON t.id = cit.topic_id
        WHERE cit.content_item_id = ?
        ORDER BY t.name
        """,
        (item_id,),
    )
    return [_row_to_topic(row) for row in cursor.fetchall()]


def replace_item_topics(conn: Any, item_id: int, topic_ids: Iterable[int]) -> int:
    conn.execute("DELETE FROM content_item_topics WHERE content_item_id = ?", (item_id,))
    rows = [(item_id, topic_id) for topic_id in topic_ids]
    if rows:
        conn.executemany(
            "INSERT INTO content_item_topics (content_item_id, topic_id) VALUES (?, ?)",
            rows,
        )
    conn.commit()
    return len(rows)


def get_item(conn: Any, item_id: int) -> ContentItem | None:
    row = conn.execute(
        f"SELECT {_ITEM_COLUMNS} FROM content_items WHERE id = ?", (item_id,)
    ).fetchone()
    return _row_to_item(row) if row else None


def get_item_by_link(conn: Any, link: str) -> ContentItem | None:
    row = conn.execute(
        f"SELECT {_ITEM_COLUMNS} FROM content_items WHERE link = ?", (link,)
    ).fetchone()
    return _row_to_item(row) if row else None


def link_exists(conn: Any, link: str) -> bool:
    row = conn.execute("SELECT 1 FROM content_items WHERE link = ?", (link,)).fetchone()
    return row is not None


def insert_item(
    conn: Any,
    *,
    link: str,
    title: str,
    description: str,
    content: str,
    image_path: str | None,
    status: str,
    date_published: str | None = None,
    source_id: int | None = None,
    user_id: str | None = None,
) -> tuple[ContentItem, bool]:
    """Insert a content item keyed by link.

    Returns ``(item, created)``. When another writer already holds the link the
    existing row is returned with ``created=False``.
    """
    now = utc_now_iso()
    try:
        item_id = _insert_returning_id(
            conn,
            """
            INSERT INTO content_items
                (link, title, description, content, image_path, date_created,
                 date_published, status, indexed, summary, source_id, user_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, '', ?, ?)
            """,
            (
                link,
                title,
                description,
                content,
                image_path,
                now,
                date_published or now,
                status,
                source_id,
                user_id,
            ),
        )
        conn.commit()
    except Exception as exc:
        conn.rollback()
        if not is_unique_violation(exc):
            raise
        existing = get_item_by_link(conn, link)
        if existing is None:
            raise
        return existing, False
    item = get_item(conn, item_id)
    if item is None:
        raise RuntimeError(f"content item {item_id} vanished after insert")
    return item, True


def update_summary(conn: Any, item_id: int, summary: str) -> bool:
    cursor = conn.execute(
        "UPDATE content_items SET summary = ? WHERE id = ?", (summary, item_id)
    )
    conn.commit()
    return cursor.rowcount == 1


def set_indexed(conn: Any, item_id: int, indexed: bool) -> bool:
    cursor = conn.execute(
        "UPDATE content_items SET indexed = ? WHERE id = ?", (1 if indexed else 0, item_id)
    )
    conn.commit()
    return cursor.rowcount == 1


def list_item_ids(conn: Any) -> list[int]:
    cursor = conn.execute("SELECT id FROM content_items ORDER BY id")
    return [int(row[0]) for row in cursor.fetchall()]


def reset_indexed_flags(conn: Any) -> int:
    cursor = conn.execute("UPDATE content_items SET indexed = 0 WHERE indexed = 1")
    conn.commit()
    return cursor.rowcount


def list_unindexed_items(
    conn: Any, limit: int = 100, statuses: Iterable[str] = ("published",)
) -> list[ContentItem]:
    status_list = list(statuses)
    if not status_list:
        return []
    placeholders = ", ".join("?" for _ in status_list)
    cursor = conn.execute(
        f"""
        SELECT {_ITEM_COLUMNS} FROM content_items
        WHERE indexed = 0 AND status IN ({placeholders})
        ORDER BY id
        LIMIT ?
        """,
        (*status_list, limit),
    )
    return [_row_to_item(row) for row in cursor.fetchall()]


def create_job(
    conn: Any,
    *,
    job_type: str,
    is_cron: bool,
    batch_size: int,
    total_batches: int,
    total_sources: int,
    metadata: dict[str, object] | None = None,
) -> Job:
    job_id = _new_job_id()
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO jobs
            (id, status, job_type, is_cron, batch_size, total_batches, current_batch,
             total_sources, created_at, last_updated, metadata_json)
        VALUES (?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)
        """,
        (
            job_id,
            JobStatus.PENDING.value,
            job_type,
            1 if is_cron else 0,
            batch_size,
            total_batches,
            total_sources,
            now,
            now,
            json_dumps(metadata) if metadata else None,
        ),
    )
    conn.commit()
    job = get_job(conn, job_id)
    if job is None:
        raise RuntimeError(f"job {job_id} vanished after insert")
    return job


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def list_jobs(conn: Any, limit: int = 50) -> list[Job]:
    cursor = conn.execute(
        f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY created_at DESC LIMIT ?", (limit,)
    )
    return [_row_to_job(row) for row in cursor.fetchall()]


def find_active_job(conn: Any) -> Job | None:
    row = conn.execute(
        f"""
        SELECT {_JOB_COLUMNS} FROM jobs
        WHERE status IN (?, ?)
        ORDER BY created_at ASC
        LIMIT 1
        """,
        ACTIVE_JOB_STATUSES,
    ).fetchone()
    return _row_to_job(row) if row else None


def start_job(conn: Any, job_id: str, token: str) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'processing', started_at = ?, last_updated = ?, batch_token = ?,
            current_batch = 0, cursor_source_index = 0, cursor_item_index = 0
        WHERE id = ? AND status = 'pending'
        """,
        (now, now, token, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def take_over_batch(conn: Any, job_id: str, batch_number: int, token: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET batch_token = ?,
            cursor_source_index = CASE WHEN current_batch = ? THEN cursor_source_index ELSE 0 END,
            cursor_item_index = CASE WHEN current_batch = ? THEN cursor_item_index ELSE 0 END,
            current_batch = ?,
            last_updated = ?
        WHERE id = ? AND status = 'processing'
        """,
        (token, batch_number, batch_number, batch_number, utc_now_iso(), job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def set_current_source(
    conn: Any, job_id: str, token: str, source_label: str, source_id: int
) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET current_source = ?, last_processed_source_id = ?, last_updated = ?
        WHERE id = ? AND batch_token = ? AND status = 'processing'
        """,
        (source_label, source_id, utc_now_iso(), job_id, token),
    )
    conn.commit()
    return cursor.rowcount == 1


def record_batch_progress(
    conn: Any,
    job_id: str,
    token: str,
    *,
    sources: int,
    items: int,
    errors: int,
    duration_seconds: float,
    cursor_source_index: int,
    cursor_item_index: int,
) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET processed_sources = processed_sources + ?,
            processed_items = processed_items + ?,
            error_count = error_count + ?,
            duration_seconds = duration_seconds + ?,
            cursor_source_index = ?,
            cursor_item_index = ?,
            last_updated = ?
        WHERE id = ? AND batch_token = ? AND status = 'processing'
        """,
        (
            sources,
            items,
            errors,
            duration_seconds,
            cursor_source_index,
            cursor_item_index,
            utc_now_iso(),
            job_id,
            token,
        ),
    )
    conn.commit()
    return cursor.rowcount == 1


def hand_off_batch(
    conn: Any, job_id: str, token: str, *, next_batch: int, new_token: str
) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET current_batch = ?, batch_token = ?, last_updated = ?
        WHERE id = ? AND batch_token = ? AND status = 'processing'
        """,
        (next_batch, new_token, utc_now_iso(), job_id, token),
    )
    conn.commit()
    return cursor.rowcount == 1


def complete_job(conn: Any, job_id: str, token: str | None = None) -> bool:
    now = utc_now_iso()
    sql = """
        UPDATE jobs
        SET status = 'completed', completed_at = ?, last_updated = ?, current_source = NULL,
            batch_token = NULL, error = NULL
        WHERE id = ? AND status = 'processing'
    """
    params: tuple = (now, now, job_id)
    if token is not None:
        sql += " AND batch_token = ?"
        params = (*params, token)
    cursor = conn.execute(sql, params)
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    """Move an active job to ``failed``.

    A job that already failed only has its error text replaced; completed jobs
    are left untouched.
    """
    now = utc_now_iso()
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', completed_at = ?, last_updated = ?, error = ?, batch_token = NULL
        WHERE id = ? AND status IN ('pending', 'processing')
        """,
        (now, now, error, job_id),
    )
    if cursor.rowcount == 1:
        conn.commit()
        return True
    conn.execute(
        "UPDATE jobs SET error = ?, last_updated = ? WHERE id = ? AND status = 'failed'",
        (error, now, job_id),
    )
    conn.commit()
    return False


def list_stale_job_ids(conn: Any, cutoff_iso: str) -> list[str]:
    cursor = conn.execute(
        """
        SELECT id FROM jobs
        WHERE status IN (?, ?) AND last_updated < ?
        ORDER BY created_at
        """,
        (*ACTIVE_JOB_STATUSES, cutoff_iso),
    )
    return [row[0] for row in cursor.fetchall()]


def insert_job_event(
    conn: Any, job_id: str, event_type: str, payload: dict[str, object] | None = None
) -> None:
    conn.execute(
        """
        INSERT INTO job_events (job_id, event_type, payload_json, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (job_id, event_type, json_dumps(payload) if payload else None, utc_now_iso()),
    )
    conn.commit()


def list_job_events(conn: Any, job_id: str, limit: int = 200) -> list[JobEvent]:
    cursor = conn.execute(
        """
        SELECT id, job_id, event_type, payload_json, created_at
        FROM job_events
        WHERE job_id = ?
        ORDER BY id
        LIMIT ?
        """,
        (job_id, limit),
    )
    return [
        JobEvent(
            id=int(row[0]),
            job_id=row[1],
            event_type=row[2],
            payload=json_loads(row[3], {}),
            created_at=row[4],
        )
        for row in cursor.fetchall()
    ]


def get_setting(conn: Any, key: str, default: object) -> object:
    row = conn.execute("SELECT value FROM settings WHERE key = ?", (key,)).fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def _insert_returning_id(conn: Any, sql: str, params: tuple) -> int:
    if getattr(conn, "backend", "sqlite") == "postgres":
        cursor = conn.execute(sql.rstrip() + " RETURNING id", params)
        return int(cursor.fetchone()[0])
    cursor = conn.execute(sql, params)
    return int(cursor.lastrowid)


def new_batch_token() -> str:
    return uuid.uuid4().hex


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def _row_to_source(row: tuple) -> Source:
    source_id, title, url, feed_url, include_in_newsfeed = row
    return Source(
        id=int(source_id),
        title=title,
        url=url,
        feed_url=feed_url,
        include_in_newsfeed=bool(include_in_newsfeed),
    )


def _row_to_topic(row: tuple) -> Topic:
    topic_id, name, slug, description = row
    return Topic(id=int(topic_id), name=name, slug=slug, description=description)


def _row_to_item(row: tuple) -> ContentItem:
    (
        item_id,
        link,
        title,
        description,
        content,
        image_path,
        date_created,
        date_published,
        status,
        indexed,
        summary,
        source_id,
        user_id,
    ) = row
    return ContentItem(
        id=int(item_id),
        link=link,
        title=title,
        description=description or "",
        content=content or "",
        image_path=image_path,
        date_created=date_created,
        date_published=date_published,
        status=status,
        indexed=bool(indexed),
        summary=summary or "",
        source_id=int(source_id) if source_id is not None else None,
        user_id=user_id,
    )


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        status,
        job_type,
        is_cron,
        batch_size,
        total_batches,
        current_batch,
        total_sources,
        processed_sources,
        processed_items,
        error_count,
        current_source,
        last_processed_source_id,
        batch_token,
        cursor_source_index,
        cursor_item_index,
        created_at,
        started_at,
        completed_at,
        last_updated,
        duration_seconds,
        error,
        metadata_json,
    ) = row
    return Job(
        id=job_id,
        status=status,
        job_type=job_type,
        is_cron=bool(is_cron),
        batch_size=int(batch_size),
        total_batches=int(total_batches),
        current_batch=int(current_batch),
        total_sources=int(total_sources),
        processed_sources=int(processed_sources),
        processed_items=int(processed_items),
        error_count=int(error_count),
        current_source=current_source,
        last_processed_source_id=(
            int(last_processed_source_id) if last_processed_source_id is not None else None
        ),
        batch_token=batch_token,
        cursor_source_index=int(cursor_source_index),
        cursor_item_index=int(cursor_item_index),
        created_at=created_at,
        started_at=started_at,
        completed_at=completed_at,
        last_updated=last_updated,
        duration_seconds=float(duration_seconds or 0),
        error=error,
        metadata=json_loads(metadata_json, {}),
    )
