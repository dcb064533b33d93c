from __future__ import annotations

import json
import logging
import os
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from .errors import DispatchError
from .storage import fail_job, insert_job_event
from .utils import log_event


@dataclass(frozen=True)
class BatchRequest:
    job_id: str
    batch_number: int
    token: str | None = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"jobId": self.job_id, "batchNumber": self.batch_number}
        if self.token:
            payload["token"] = self.token
        return payload


ErrorHandler = Callable[[BatchRequest, Exception], None]


class QueueDispatcher:
    """Collects continuations so a caller can drain them in-process."""

    def __init__(self) -> None:
        self.pending: deque[BatchRequest] = deque()
        self.dispatched: list[BatchRequest] = []

    def dispatch(self, request: BatchRequest) -> None:
        self.pending.append(request)
        self.dispatched.append(request)

    def pop(self) -> BatchRequest | None:
        if not self.pending:
            return None
        return self.pending.popleft()


class DeferredDispatcher:
    """Hands the dispatch to a scheduler, e.g. FastAPI ``BackgroundTasks.add_task``."""

    def __init__(self, schedule: Callable[..., Any], inner: Any) -> None:
        self._schedule = schedule
        self._inner = inner

    def dispatch(self, request: BatchRequest) -> None:
        self._schedule(self._inner.dispatch, request)


class HttpDispatcher:
    """Fire-and-forget POST of the next batch to the worker endpoint.

    The request runs on a private thread pool so the caller returns at once.
    A refused or rejected continuation is reported to ``on_error``; a read
    timeout is only logged because the worker may still be running.
    """

    def __init__(
        self,
        worker_url: str,
        *,
        admin_token: str | None = None,
        timeout_seconds: int = 10,
        on_error: ErrorHandler | None = None,
        max_workers: int = 2,
        logger: logging.Logger | None = None,
    ) -> None:
        if not worker_url:
            raise DispatchError("worker url is not configured")
        self.worker_url = worker_url
        self.admin_token = admin_token
        self.timeout_seconds = timeout_seconds
        self._on_error = on_error
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="feedcurator-dispatch"
        )
        self._logger = logger or logging.getLogger("feedcurator.dispatch")

    @classmethod
    def from_env(
        cls,
        *,
        timeout_seconds: int = 10,
        on_error: ErrorHandler | None = None,
        logger: logging.Logger | None = None,
    ) -> "HttpDispatcher":
        worker_url = os.environ.get("FC_WORKER_URL", "").strip()
        if not worker_url:
            raise DispatchError("FC_WORKER_URL not set")
        return cls(
            worker_url,
            admin_token=os.environ.get("FC_ADMIN_TOKEN") or None,
            timeout_seconds=timeout_seconds,
            on_error=on_error,
            logger=logger,
        )

    def dispatch(self, request: BatchRequest) -> None:
        log_event(
            self._logger,
            logging.INFO,
            "continuation_dispatched",
            job_id=request.job_id,
            batch=request.batch_number,
        )
        self._executor.submit(self._post, request)

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _post(self, request: BatchRequest) -> None:
        body = json.dumps(request.to_payload()).encode("utf-8")
        http_request = Request(self.worker_url, data=body, method="POST")
        http_request.add_header("Content-Type", "application/json")
        if self.admin_token:
            http_request.add_header("X-Admin-Token", self.admin_token)
        try:
            with urlopen(http_request, timeout=self.timeout_seconds) as response:
                status = response.getcode()
            log_event(
                self._logger,
                logging.DEBUG,
                "continuation_accepted",
                job_id=request.job_id,
                batch=request.batch_number,
                status=status,
            )
        except HTTPError as exc:
            self._report(request, exc)
        except TimeoutError:
            self._log_timeout(request)
        except URLError as exc:
            if isinstance(exc.reason, TimeoutError):
                self._log_timeout(request)
                return
            self._report(request, exc)
        except Exception as exc:  # noqa: BLE001
            self._report(request, exc)

    def _log_timeout(self, request: BatchRequest) -> None:
        log_event(
            self._logger,
            logging.WARNING,
            "continuation_timeout",
            job_id=request.job_id,
            batch=request.batch_number,
        )

    def _report(self, request: BatchRequest, exc: Exception) -> None:
        log_event(
            self._logger,
            logging.ERROR,
            "continuation_failed",
            job_id=request.job_id,
            batch=request.batch_number,
            error=str(exc),
        )
        if self._on_error is None:
            return
        try:
            self._on_error(request, exc)
        except Exception as handler_exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "continuation_error_handler_failed",
                job_id=request.job_id,
                error=str(handler_exc),
            )


def fail_job_on_dispatch_error(conn_factory: Callable[[], Any]) -> ErrorHandler:
    def _handler(request: BatchRequest, exc: Exception) -> None:
        conn = conn_factory()
        try:
            message = f"continuation_dispatch_failed: {exc}"
            if fail_job(conn, request.job_id, message):
                insert_job_event(
                    conn,
                    request.job_id,
                    "job_error",
                    {"batch": request.batch_number, "error": message},
                )
        finally:
            conn.close()

    return _handler
