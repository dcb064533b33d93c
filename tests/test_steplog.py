import sqlite3

import pytest

from feedcurator.db import DBConn
from feedcurator.steplog import StepLogger, get_run, list_runs, list_steps


def test_run_with_steps(conn):
    steplog = StepLogger(conn, "batch-worker", job_id="job_1", batch_number=0)
    run_id = steplog.start({"token": "abc"})
    with steplog.step("fetch", {"url": "https://example.com"}) as info:
        info["status"] = 200
    steplog.start_step("left_open")
    steplog.complete(True, items_processed=3, items_failed=1)

    run = get_run(conn, run_id)
    assert run.status == "completed"
    assert run.success is True
    assert run.items_processed == 3
    assert run.items_failed == 1
    assert run.context == {"token": "abc"}

    steps = list_steps(conn, run_id)
    assert [step.step_name for step in steps] == ["fetch", "left_open"]
    assert steps[0].success is True
    assert steps[0].data == {"url": "https://example.com", "status": 200}
    assert steps[1].success is False
    assert steps[1].message == "step_not_closed"
    assert [run.id for run in list_runs(conn, job_id="job_1")] == [run_id]


def test_step_context_records_failure_and_reraises(conn):
    steplog = StepLogger(conn, "content-pipeline")
    run_id = steplog.start()
    with pytest.raises(ValueError):
        with steplog.step("extract"):
            raise ValueError("bad markup")
    steplog.complete(False, error="bad markup")

    steps = list_steps(conn, run_id)
    assert steps[0].success is False
    assert steps[0].message == "bad markup"
    assert get_run(conn, run_id).status == "failed"


def test_end_step_for_unknown_step_is_ignored(conn):
    steplog = StepLogger(conn, "content-pipeline")
    run_id = steplog.start()
    steplog.end_step("never_started", True)
    assert list_steps(conn, run_id) == []


class _BrokenConn:
    def execute(self, *args, **kwargs):
        raise RuntimeError("database is locked")

    def commit(self):
        pass

    def rollback(self):
        pass


def test_datastore_failures_do_not_propagate():
    steplog = StepLogger(_BrokenConn(), "batch-worker")
    assert steplog.start() is None
    with steplog.step("fetch"):
        pass
    steplog.complete(True)


class _PostgresStyleCursor:
    """sqlite cursor that takes ``%s`` placeholders and has no ``lastrowid``."""

    def __init__(self, cursor):
        self._cursor = cursor
        self._rows = []

    def execute(self, sql, params=()):
        self._cursor.execute(sql.replace("%s", "?"), params)
        self._rows = self._cursor.fetchall() if self._cursor.description else []

    def fetchone(self):
        return self._rows.pop(0) if self._rows else None

    def fetchall(self):
        rows, self._rows = self._rows, []
        return rows

    @property
    def rowcount(self):
        return self._cursor.rowcount


class _PostgresStyleConnection:
    def __init__(self, raw):
        self._raw = raw

    def cursor(self):
        return _PostgresStyleCursor(self._raw.cursor())

    def commit(self):
        self._raw.commit()

    def rollback(self):
        self._raw.rollback()

    def close(self):
        self._raw.close()


def test_steps_tracked_on_postgres_backend(conn, tmp_path):
    raw = sqlite3.connect(str(tmp_path / "state.sqlite3"))
    pg_conn = DBConn(_PostgresStyleConnection(raw), "postgres")
    try:
        steplog = StepLogger(pg_conn, "batch-worker", job_id="job_pg", batch_number=0)
        run_id = steplog.start()
        with steplog.step("fetch") as info:
            info["status"] = 200
        steplog.complete(True, items_processed=1)

        steps = list_steps(pg_conn, run_id)
        assert [step.step_name for step in steps] == ["fetch"]
        assert steps[0].success is True
        assert steps[0].completed_at is not None
        assert steps[0].data == {"status": 200}
    finally:
        pg_conn.close()
