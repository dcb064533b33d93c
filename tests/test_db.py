from feedcurator.db import _normalize_sql, is_postgres_url


def test_postgres_sql_normalization():
    sql = "INSERT OR IGNORE INTO topics (name, slug) VALUES (?, ?)"
    assert _normalize_sql(sql, "postgres") == (
        "INSERT INTO topics (name, slug) VALUES (%s, %s) ON CONFLICT DO NOTHING"
    )
    assert _normalize_sql(sql, "sqlite") == sql


def test_qmark_inside_literal_is_kept():
    sql = "SELECT id FROM jobs WHERE error = '?' AND id = ?"
    assert _normalize_sql(sql, "postgres") == "SELECT id FROM jobs WHERE error = '?' AND id = %s"


def test_postgres_url_detection():
    assert is_postgres_url("postgresql://user@db/feeds")
    assert is_postgres_url("postgres://db/feeds")
    assert not is_postgres_url("/data/state.sqlite3")
    assert not is_postgres_url(None)
