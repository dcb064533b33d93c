from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

from .config import Config
from .dispatch import BatchRequest
from .errors import JobNotFound
from .feeds import fetch_feed
from .models import ItemStatus, Job, JobStatus
from .steplog import StepLogger
from .storage import (
    complete_job,
    fail_job,
    get_job,
    hand_off_batch,
    insert_job_event,
    link_exists,
    list_source_slice,
    new_batch_token,
    record_batch_progress,
    set_current_source,
    take_over_batch,
)
from .utils import log_event

FUNCTION_NAME = "batch-worker"


@dataclass(frozen=True)
class BatchResult:
    job_id: str
    batch_number: int
    processed: int = 0
    errors: int = 0
    sources: int = 0
    duration: float = 0.0
    next_batch: int | None = None
    deferred: bool = False
    completed: bool = False
    stale: bool = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "processed": self.processed,
            "errors": self.errors,
            "duration": round(self.duration, 3),
        }
        if self.next_batch is not None:
            payload["nextBatch"] = self.next_batch
        return payload


@dataclass
class _Progress:
    processed: int = 0
    errors: int = 0
    sources: int = 0
    cursor_source: int = 0
    cursor_item: int = 0
    slice_size: int = 0
    budget_exhausted: bool = False


def run_batch(
    conn: Any,
    config: Config,
    job_id: str,
    batch_number: int,
    *,
    pipeline: Any,
    dispatcher: Any,
    token: str | None = None,
    feed_fetcher: Callable[..., Any] = fetch_feed,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
    logger: logging.Logger | None = None,
) -> BatchResult:
    """Process one batch of sources for ``job_id``.

    ``token`` fences the invocation: it must match the job's current batch
    token. Without a token the call takes the batch over with a fresh one.
    When the execution budget runs out the position inside the batch is saved
    and the same batch is dispatched again; otherwise the next batch is
    dispatched or the job is completed.
    """
    logger = logger or logging.getLogger("feedcurator.worker")
    job = get_job(conn, job_id)
    if job is None:
        raise JobNotFound(job_id)

    job, token = _claim_batch(conn, job, batch_number, token, logger)
    if job is None or token is None:
        return BatchResult(job_id, batch_number, stale=True)

    started = clock()
    steplog = StepLogger(conn, FUNCTION_NAME, job_id=job_id, batch_number=batch_number, logger=logger)
    steplog.start({"token": token, "cursor_source": job.cursor_source_index})
    try:
        progress = _process_sources(
            conn,
            config,
            job,
            batch_number,
            token,
            pipeline=pipeline,
            feed_fetcher=feed_fetcher,
            clock=clock,
            sleep=sleep,
            started=started,
            steplog=steplog,
            logger=logger,
        )
        with steplog.step("finalize"):
            result = _finalize(
                conn,
                job,
                batch_number,
                token,
                progress,
                duration=clock() - started,
                dispatcher=dispatcher,
                logger=logger,
            )
    except Exception as exc:
        _mark_failed(conn, job_id, batch_number, exc, logger)
        steplog.complete(False, error=str(exc))
        raise
    steplog.complete(
        not result.stale,
        items_processed=result.processed,
        items_failed=result.errors,
    )
    return result


def _claim_batch(
    conn: Any,
    job: Job,
    batch_number: int,
    token: str | None,
    logger: logging.Logger,
) -> tuple[Job | None, str | None]:
    if job.status != JobStatus.PROCESSING.value:
        log_event(
            logger,
            logging.WARNING,
            "batch_rejected",
            job_id=job.id,
            batch=batch_number,
            reason=f"status_{job.status}",
        )
        return None, None
    if token is not None:
        if token != job.batch_token or batch_number != job.current_batch:
            log_event(
                logger,
                logging.WARNING,
                "batch_rejected",
                job_id=job.id,
                batch=batch_number,
                reason="stale_token",
                current_batch=job.current_batch,
            )
            return None, None
        return job, token

    fresh = new_batch_token()
    if not take_over_batch(conn, job.id, batch_number, fresh):
        return None, None
    log_event(logger, logging.INFO, "batch_taken_over", job_id=job.id, batch=batch_number)
    return get_job(conn, job.id), fresh


def _process_sources(
    conn: Any,
    config: Config,
    job: Job,
    batch_number: int,
    token: str,
    *,
    pipeline: Any,
    feed_fetcher: Callable[..., Any],
    clock: Callable[[], float],
    sleep: Callable[[float], None],
    started: float,
    steplog: StepLogger,
    logger: logging.Logger,
) -> _Progress:
    budget = config.jobs.max_execution_seconds
    sources = list_source_slice(conn, batch_number, job.batch_size)
    progress = _Progress()
    # The saved position only applies to the batch it was recorded for.
    first_source = job.cursor_source_index if job.current_batch == batch_number else 0
    first_item = job.cursor_item_index if job.current_batch == batch_number else 0
    log_event(
        logger,
        logging.INFO,
        "batch_started",
        job_id=job.id,
        batch=batch_number,
        sources=len(sources),
        resume_source=first_source,
        resume_item=first_item,
    )

    for source_index in range(first_source, len(sources)):
        source = sources[source_index]
        item_start = first_item if source_index == first_source else 0
        if clock() - started >= budget:
            progress.budget_exhausted = True
            progress.cursor_source = source_index
            progress.cursor_item = item_start
            break
        if not source.feed_url:
            progress.sources += 1
            continue

        set_current_source(conn, job.id, token, source.title, source.id)
        steplog.start_step(f"source_{source.id}", {"feed_url": source.feed_url})
        try:
            feed = feed_fetcher(source.feed_url, config.http, logger)
        except Exception as exc:  # noqa: BLE001
            progress.errors += 1
            progress.sources += 1
            log_event(
                logger,
                logging.WARNING,
                "feed_failed",
                job_id=job.id,
                source_id=source.id,
                error=str(exc),
            )
            steplog.end_step(f"source_{source.id}", False, message=str(exc))
            sleep(config.jobs.source_delay_seconds)
            continue

        source_items = 0
        for entry_index in range(item_start, len(feed.entries)):
            # Always attempt one entry after a fetch so a slow feed still advances the cursor.
            if entry_index > item_start and clock() - started >= budget:
                progress.budget_exhausted = True
                progress.cursor_source = source_index
                progress.cursor_item = entry_index
                break
            entry = feed.entries[entry_index]
            if not entry.link or link_exists(conn, entry.link):
                continue
            try:
                result = pipeline.process(
                    entry.link,
                    source_id=source.id,
                    status=ItemStatus.PUBLISHED.value,
                    published_at=entry.published_at,
                )
            except Exception as exc:  # noqa: BLE001
                progress.errors += 1
                log_event(
                    logger,
                    logging.WARNING,
                    "item_failed",
                    job_id=job.id,
                    source_id=source.id,
                    link=entry.link,
                    error=str(exc),
                )
            else:
                if result.created:
                    progress.processed += 1
                    source_items += 1
                    insert_job_event(
                        conn,
                        job.id,
                        "item_processed",
                        {"item_id": result.item.id, "link": result.item.link, "source_id": source.id},
                    )
            sleep(config.jobs.item_delay_seconds)

        steplog.end_step(
            f"source_{source.id}",
            True,
            message="budget_exhausted" if progress.budget_exhausted else None,
            data={"entries": len(feed.entries), "created": source_items},
        )
        if progress.budget_exhausted:
            break
        progress.sources += 1
        sleep(config.jobs.source_delay_seconds)

    if not progress.budget_exhausted:
        progress.cursor_source = 0
        progress.cursor_item = 0
    progress.slice_size = len(sources)
    log_event(
        logger,
        logging.INFO,
        "batch_loop_finished",
        job_id=job.id,
        batch=batch_number,
        processed=progress.processed,
        errors=progress.errors,
        budget_exhausted=progress.budget_exhausted,
        slice_size=progress.slice_size,
    )
    return progress


def _finalize(
    conn: Any,
    job: Job,
    batch_number: int,
    token: str,
    progress: _Progress,
    *,
    duration: float,
    dispatcher: Any,
    logger: logging.Logger,
) -> BatchResult:
    recorded = record_batch_progress(
        conn,
        job.id,
        token,
        sources=progress.sources,
        items=progress.processed,
        errors=progress.errors,
        duration_seconds=duration,
        cursor_source_index=progress.cursor_source,
        cursor_item_index=progress.cursor_item,
    )
    base = {
        "job_id": job.id,
        "batch_number": batch_number,
        "processed": progress.processed,
        "errors": progress.errors,
        "sources": progress.sources,
        "duration": duration,
    }
    if not recorded:
        log_event(logger, logging.WARNING, "batch_superseded", job_id=job.id, batch=batch_number)
        return BatchResult(**base, stale=True)

    if progress.budget_exhausted:
        next_batch = batch_number
        event = "batch_deferred"
    else:
        is_last = batch_number >= job.total_batches - 1
        if is_last or progress.slice_size < job.batch_size:
            complete_job(conn, job.id, token)
            insert_job_event(
                conn,
                job.id,
                "job_completed",
                {"batch": batch_number, "processed": progress.processed, "errors": progress.errors},
            )
            log_event(logger, logging.INFO, "job_completed", job_id=job.id, batch=batch_number)
            return BatchResult(**base, completed=True)
        next_batch = batch_number + 1
        event = "batch_completed"

    new_token = new_batch_token()
    if not hand_off_batch(conn, job.id, token, next_batch=next_batch, new_token=new_token):
        log_event(logger, logging.WARNING, "batch_superseded", job_id=job.id, batch=batch_number)
        return BatchResult(**base, stale=True)
    insert_job_event(
        conn,
        job.id,
        event,
        {
            "batch": batch_number,
            "next_batch": next_batch,
            "cursor_source": progress.cursor_source,
            "cursor_item": progress.cursor_item,
        },
    )
    log_event(
        logger,
        logging.INFO,
        event,
        job_id=job.id,
        batch=batch_number,
        next_batch=next_batch,
        processed=progress.processed,
        errors=progress.errors,
    )
    dispatcher.dispatch(BatchRequest(job.id, next_batch, new_token))
    return BatchResult(
        **base,
        next_batch=next_batch,
        deferred=progress.budget_exhausted,
    )


def _mark_failed(
    conn: Any, job_id: str, batch_number: int, exc: Exception, logger: logging.Logger
) -> None:
    log_event(
        logger,
        logging.ERROR,
        "batch_failed",
        job_id=job_id,
        batch=batch_number,
        error=str(exc),
    )
    try:
        conn.rollback()
        if fail_job(conn, job_id, str(exc)):
            insert_job_event(conn, job_id, "job_error", {"batch": batch_number, "error": str(exc)})
    except Exception as mark_exc:  # noqa: BLE001
        log_event(
            logger,
            logging.ERROR,
            "job_fail_mark_failed",
            job_id=job_id,
            error=str(mark_exc),
        )
