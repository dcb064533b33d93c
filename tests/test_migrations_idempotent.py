import sqlite3

from feedcurator.migrations import _get_migrations, apply_migrations


def test_apply_migrations_idempotent(tmp_path):
    db_path = tmp_path / "state.sqlite3"
    conn = sqlite3.connect(str(db_path))
    apply_migrations(conn)
    apply_migrations(conn)

    rows = conn.execute("SELECT version FROM schema_migrations").fetchall()
    versions = [row[0] for row in rows]
    expected = [version for version, _ in _get_migrations()]
    assert sorted(versions) == sorted(expected)
    assert len(versions) == len(set(versions))


def test_single_active_job_index(tmp_path):
    conn = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    apply_migrations(conn)

    insert = (
        "INSERT INTO jobs (id, status, job_type, batch_size, created_at, last_updated) "
        "VALUES (?, ?, 'feed_ingest', 5, '2024-01-01', '2024-01-01')"
    )
    conn.execute(insert, ("job_a", "completed"))
    conn.execute(insert, ("job_b", "pending"))
    conn.commit()
    try:
        conn.execute(insert, ("job_c", "processing"))
    except sqlite3.IntegrityError:
        conn.rollback()
    else:
        raise AssertionError("second active job was accepted")
