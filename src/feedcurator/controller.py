from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from .config import Config
from .db import is_unique_violation
from .dispatch import BatchRequest
from .errors import JobNotFound
from .models import Job, JobStatus
from .storage import (
    count_eligible_sources,
    create_job,
    fail_job,
    find_active_job,
    get_job,
    insert_job_event,
    list_stale_job_ids,
    new_batch_token,
    start_job,
)
from .utils import log_event, utc_now_iso_offset

JOB_TYPE = "feed_ingest"
STALE_JOB_ERROR = "stale_job_timeout"


@dataclass(frozen=True)
class ControllerResult:
    job: Job
    created: bool
    already_running: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "success": True,
            "jobId": self.job.id,
            "jobStatus": self.job.status,
            "totalSites": self.job.total_sources,
            "totalBatches": self.job.total_batches,
        }


def start_or_resume_job(
    conn: Any,
    config: Config,
    *,
    dispatcher: Any,
    job_id: str | None = None,
    is_cron: bool = True,
    logger: logging.Logger | None = None,
) -> ControllerResult:
    logger = logger or logging.getLogger("feedcurator.controller")
    if job_id:
        job = get_job(conn, job_id)
        if job is None:
            raise JobNotFound(job_id)
        if job.status != JobStatus.PENDING.value:
            return ControllerResult(job, created=False)
        return ControllerResult(_start(conn, job, dispatcher, logger), created=False)

    sweep_stale_jobs(conn, config.jobs.stale_after_seconds, logger=logger)

    active = find_active_job(conn)
    if active is not None:
        log_event(
            logger,
            logging.INFO,
            "controller_job_running",
            job_id=active.id,
            status=active.status,
        )
        return ControllerResult(active, created=False, already_running=True)

    batch_size = config.jobs.batch_size
    total_sources = count_eligible_sources(conn)
    total_batches = math.ceil(total_sources / batch_size)
    try:
        job = create_job(
            conn,
            job_type=JOB_TYPE,
            is_cron=is_cron,
            batch_size=batch_size,
            total_batches=total_batches,
            total_sources=total_sources,
            metadata={"trigger": "cron" if is_cron else "manual"},
        )
    except Exception as exc:
        if not is_unique_violation(exc):
            raise
        conn.rollback()
        active = find_active_job(conn)
        if active is None:
            raise
        return ControllerResult(active, created=False, already_running=True)
    log_event(
        logger,
        logging.INFO,
        "controller_job_created",
        job_id=job.id,
        sources=total_sources,
        batches=total_batches,
        batch_size=batch_size,
    )
    return ControllerResult(_start(conn, job, dispatcher, logger), created=True)


def _start(conn: Any, job: Job, dispatcher: Any, logger: logging.Logger) -> Job:
    token = new_batch_token()
    if not start_job(conn, job.id, token):
        return get_job(conn, job.id) or job
    insert_job_event(
        conn,
        job.id,
        "job_started",
        {"total_sources": job.total_sources, "total_batches": job.total_batches},
    )
    dispatcher.dispatch(BatchRequest(job.id, 0, token))
    return get_job(conn, job.id) or job


def sweep_stale_jobs(
    conn: Any, stale_after_seconds: int, logger: logging.Logger | None = None
) -> list[str]:
    """Fail active jobs that have not been touched for ``stale_after_seconds``."""
    if stale_after_seconds <= 0:
        return []
    logger = logger or logging.getLogger("feedcurator.controller")
    cutoff = utc_now_iso_offset(seconds=-stale_after_seconds)
    swept = []
    for stale_id in list_stale_job_ids(conn, cutoff):
        if fail_job(conn, stale_id, STALE_JOB_ERROR):
            insert_job_event(conn, stale_id, "job_error", {"error": STALE_JOB_ERROR})
            swept.append(stale_id)
            log_event(logger, logging.WARNING, "stale_job_failed", job_id=stale_id)
    return swept
