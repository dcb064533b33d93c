from __future__ import annotations

import logging
import time
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from .models import RunLog, RunStep
from .utils import json_dumps, json_loads, log_event, utc_now_iso


class StepLogger:
    """Persists one run row per invocation plus a row per named step.

    Every write is best-effort: a datastore failure is reported through the
    Python logger and never reaches the caller.
    """

    def __init__(
        self,
        conn: Any,
        function_name: str,
        job_id: str | None = None,
        batch_number: int | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._conn = conn
        self.function_name = function_name
        self.job_id = job_id
        self.batch_number = batch_number
        self.run_id: str | None = None
        self._logger = logger or logging.getLogger("feedcurator.steplog")
        self._started = 0.0
        self._open_steps: dict[str, tuple[int, float, dict[str, Any]]] = {}

    def start(self, context: dict[str, Any] | None = None) -> str | None:
        run_id = f"run_{uuid.uuid4().hex}"
        self._started = time.monotonic()
        ok = self._write(
            "run_start",
            """
            INSERT INTO run_logs
                (id, function_name, job_id, batch_number, status, started_at, context_json)
            VALUES (?, ?, ?, ?, 'started', ?, ?)
            """,
            (
                run_id,
                self.function_name,
                self.job_id,
                self.batch_number,
                utc_now_iso(),
                json_dumps(context) if context else None,
            ),
        )
        if ok:
            self.run_id = run_id
        return self.run_id

    def start_step(self, name: str, data: dict[str, Any] | None = None) -> None:
        if not self.run_id:
            return
        step_data = dict(data or {})
        sql = """
            INSERT INTO run_steps (run_id, step_name, started_at, data_json)
            VALUES (?, ?, ?, ?)
        """
        params = (self.run_id, name, utc_now_iso(), json_dumps(step_data) if step_data else None)
        try:
            if getattr(self._conn, "backend", "sqlite") == "postgres":
                step_id = self._conn.execute(sql.rstrip() + " RETURNING id", params).fetchone()[0]
            else:
                step_id = self._conn.execute(sql, params).lastrowid
            if step_id is None:
                row = self._conn.execute(
                    "SELECT MAX(id) FROM run_steps WHERE run_id = ? AND step_name = ?",
                    (self.run_id, name),
                ).fetchone()
                step_id = row[0] if row else None
            self._conn.commit()
        except Exception as exc:  # noqa: BLE001
            self._report_failure("step_start", exc, step=name)
            return
        if step_id is not None:
            self._open_steps[name] = (int(step_id), time.monotonic(), step_data)

    def end_step(
        self,
        name: str,
        success: bool,
        message: str | None = None,
        data: dict[str, Any] | None = None,
    ) -> None:
        entry = self._open_steps.pop(name, None)
        if entry is None:
            return
        step_id, started, step_data = entry
        merged = {**step_data, **(data or {})}
        self._write(
            "step_end",
            """
            UPDATE run_steps
            SET completed_at = ?, duration_ms = ?, success = ?, message = ?, data_json = ?
            WHERE id = ?
            """,
            (
                utc_now_iso(),
                int((time.monotonic() - started) * 1000),
                1 if success else 0,
                message,
                json_dumps(merged) if merged else None,
                step_id,
            ),
        )

    @contextmanager
    def step(self, name: str, data: dict[str, Any] | None = None) -> Iterator[dict[str, Any]]:
        """Record ``name`` around a block; the yielded dict is merged into the step data."""
        extra: dict[str, Any] = {}
        self.start_step(name, data)
        try:
            yield extra
        except Exception as exc:
            self.end_step(name, False, message=str(exc), data=extra)
            raise
        self.end_step(name, True, data=extra)

    def complete(
        self,
        success: bool,
        items_processed: int = 0,
        items_failed: int = 0,
        error: str | None = None,
    ) -> None:
        if not self.run_id:
            return
        for name in list(self._open_steps):
            self.end_step(name, False, message="step_not_closed")
        self._write(
            "run_complete",
            """
            UPDATE run_logs
            SET status = ?, completed_at = ?, duration_ms = ?, success = ?, error = ?,
                items_processed = ?, items_failed = ?
            WHERE id = ?
            """,
            (
                "completed" if success else "failed",
                utc_now_iso(),
                int((time.monotonic() - self._started) * 1000),
                1 if success else 0,
                error,
                items_processed,
                items_failed,
                self.run_id,
            ),
        )

    def _write(self, action: str, sql: str, params: tuple) -> bool:
        try:
            self._conn.execute(sql, params)
            self._conn.commit()
        except Exception as exc:  # noqa: BLE001
            self._report_failure(action, exc)
            return False
        return True

    def _report_failure(self, action: str, exc: Exception, **fields: Any) -> None:
        try:
            self._conn.rollback()
        except Exception:  # noqa: BLE001
            pass
        log_event(
            self._logger,
            logging.WARNING,
            "steplog_write_failed",
            action=action,
            function=self.function_name,
            run_id=self.run_id,
            error=str(exc),
            **fields,
        )


def list_runs(conn: Any, job_id: str | None = None, limit: int = 50) -> list[RunLog]:
    columns = """
        id, function_name, job_id, batch_number, status, started_at, completed_at,
        duration_ms, success, error, items_processed, items_failed, context_json
    """
    if job_id:
        cursor = conn.execute(
            f"SELECT {columns} FROM run_logs WHERE job_id = ? ORDER BY started_at DESC LIMIT ?",
            (job_id, limit),
        )
    else:
        cursor = conn.execute(
            f"SELECT {columns} FROM run_logs ORDER BY started_at DESC LIMIT ?", (limit,)
        )
    return [_row_to_run(row) for row in cursor.fetchall()]


def get_run(conn: Any, run_id: str) -> RunLog | None:
    row = conn.execute(
        """
        SELECT id, function_name, job_id, batch_number, status, started_at, completed_at,
               duration_ms, success, error, items_processed, items_failed, context_json
        FROM run_logs WHERE id = ?
        """,
        (run_id,),
    ).fetchone()
    return _row_to_run(row) if row else None


def list_steps(conn: Any, run_id: str) -> list[RunStep]:
    cursor = conn.execute(
        """
        SELECT id, run_id, step_name, started_at, completed_at, duration_ms, success,
               message, data_json
        FROM run_steps WHERE run_id = ? ORDER BY id
        """,
        (run_id,),
    )
    return [
        RunStep(
            id=int(row[0]),
            run_id=row[1],
            step_name=row[2],
            started_at=row[3],
            completed_at=row[4],
            duration_ms=row[5],
            success=None if row[6] is None else bool(row[6]),
            message=row[7],
            data=json_loads(row[8], {}),
        )
        for row in cursor.fetchall()
    ]


def _row_to_run(row: tuple) -> RunLog:
    return RunLog(
        id=row[0],
        function_name=row[1],
        job_id=row[2],
        batch_number=row[3],
        status=row[4],
        started_at=row[5],
        completed_at=row[6],
        duration_ms=row[7],
        success=None if row[8] is None else bool(row[8]),
        error=row[9],
        items_processed=int(row[10] or 0),
        items_failed=int(row[11] or 0),
        context=json_loads(row[12], {}),
    )
