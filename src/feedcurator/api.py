from __future__ import annotations

import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from functools import lru_cache
from typing import Any, Callable

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    set_runtime_config,
)
from .controller import start_or_resume_job
from .dispatch import DeferredDispatcher, HttpDispatcher, fail_job_on_dispatch_error
from .errors import CompletionFailed, FetchFailed, InvalidUrl, JobNotFound
from .feeds import fetch_feed
from .fsinit import ensure_runtime_dirs, runtime_paths, set_umask_from_env
from .models import ItemStatus
from .pipeline import build_client, build_indexer, build_pipeline, process_unindexed_items
from .steplog import StepLogger, get_run, list_runs, list_steps
from .storage import (
    get_job,
    init_db,
    list_item_topics,
    list_job_events,
    list_jobs,
    reset_indexed_flags,
)
from .tagger import tag_all_items
from .utils import configure_logging, log_event
from .worker import run_batch

app = FastAPI(title="FeedCurator API")


class ControllerRequest(BaseModel):
    jobId: str | None = None
    isCron: bool = False


class WorkerRequest(BaseModel):
    jobId: str | None = None
    batchNumber: int | None = None
    token: str | None = None


class ItemRequest(BaseModel):
    url: str
    status: ItemStatus = ItemStatus.DRAFT
    userId: str | None = None


class EmbedRequest(BaseModel):
    limit: int | None = None


class SearchRequest(BaseModel):
    query: str = ""
    topK: int = 10


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("FC_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


def _get_conn():
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


def get_conn():
    conn = _get_conn()
    try:
        yield conn
    finally:
        conn.close()


@lru_cache(maxsize=1)
def get_dispatcher() -> HttpDispatcher:
    conn = _get_conn()
    try:
        timeout = load_runtime_config(conn).jobs.worker_timeout_seconds
    finally:
        conn.close()
    return HttpDispatcher.from_env(
        timeout_seconds=timeout,
        on_error=fail_job_on_dispatch_error(_get_conn),
        logger=logging.getLogger("feedcurator.dispatch"),
    )


def get_pipeline_builder() -> Callable[..., Any]:
    return build_pipeline


def get_indexer_builder() -> Callable[..., Any]:
    return build_indexer


def get_feed_fetcher() -> Callable[..., Any]:
    return fetch_feed


def get_client_builder() -> Callable[..., Any]:
    return build_client


def _load_config(conn):
    try:
        return load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc


router = APIRouter(dependencies=[Depends(_require_admin_token)])


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@router.post("/controller")
def controller_endpoint(
    body: ControllerRequest,
    background_tasks: BackgroundTasks,
    conn=Depends(get_conn),
    dispatcher=Depends(get_dispatcher),
):
    logger = logging.getLogger("feedcurator.api")
    try:
        config = load_runtime_config(conn)
        result = start_or_resume_job(
            conn,
            config,
            dispatcher=DeferredDispatcher(background_tasks.add_task, dispatcher),
            job_id=body.jobId,
            is_cron=body.isCron,
            logger=logger,
        )
    except JobNotFound as exc:
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "controller_failed", error=str(exc))
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
    if result.already_running:
        return JSONResponse(
            status_code=409,
            content={
                "success": False,
                "message": "Another job is already running",
                "jobId": result.job.id,
            },
        )
    return result.to_payload()


@router.post("/worker")
def worker_endpoint(
    body: WorkerRequest,
    background_tasks: BackgroundTasks,
    conn=Depends(get_conn),
    dispatcher=Depends(get_dispatcher),
    pipeline_builder=Depends(get_pipeline_builder),
    feed_fetcher=Depends(get_feed_fetcher),
):
    logger = logging.getLogger("feedcurator.api")
    if not body.jobId or body.batchNumber is None:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": "jobId and batchNumber are required"},
        )
    if body.batchNumber < 0:
        return JSONResponse(
            status_code=400, content={"success": False, "error": "batchNumber must be >= 0"}
        )
    try:
        config = load_runtime_config(conn)
        pipeline = pipeline_builder(conn, config, logger=logger)
        result = run_batch(
            conn,
            config,
            body.jobId,
            body.batchNumber,
            pipeline=pipeline,
            dispatcher=DeferredDispatcher(background_tasks.add_task, dispatcher),
            token=body.token,
            feed_fetcher=feed_fetcher,
            logger=logger,
        )
    except JobNotFound as exc:
        return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "worker_failed", job_id=body.jobId, error=str(exc))
        return JSONResponse(status_code=500, content={"success": False, "error": str(exc)})
    if result.stale:
        return JSONResponse(
            status_code=409,
            content={
                "success": False,
                "message": "Batch invocation is stale",
                "jobId": body.jobId,
            },
        )
    return {"success": True, "results": result.to_payload()}


@router.get("/jobs")
def jobs_list(limit: int = 50, conn=Depends(get_conn)) -> list[dict[str, object]]:
    return [asdict(job) for job in list_jobs(conn, limit=limit)]


@router.get("/jobs/{job_id}")
def jobs_get(job_id: str, conn=Depends(get_conn)) -> dict[str, object]:
    job = get_job(conn, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return asdict(job)


@router.get("/jobs/{job_id}/events")
def jobs_events(job_id: str, conn=Depends(get_conn)) -> list[dict[str, object]]:
    if get_job(conn, job_id) is None:
        raise HTTPException(status_code=404, detail="job not found")
    return [asdict(event) for event in list_job_events(conn, job_id)]


@router.get("/runs")
def runs_list(
    job_id: str | None = None, limit: int = 50, conn=Depends(get_conn)
) -> list[dict[str, object]]:
    return [asdict(run) for run in list_runs(conn, job_id=job_id, limit=limit)]


@router.get("/runs/{run_id}/steps")
def runs_steps(run_id: str, conn=Depends(get_conn)) -> list[dict[str, object]]:
    if get_run(conn, run_id) is None:
        raise HTTPException(status_code=404, detail="run not found")
    return [asdict(step) for step in list_steps(conn, run_id)]


@router.post("/items")
def items_process(
    body: ItemRequest,
    conn=Depends(get_conn),
    pipeline_builder=Depends(get_pipeline_builder),
) -> dict[str, object]:
    logger = logging.getLogger("feedcurator.api")
    config = _load_config(conn)
    steplog = StepLogger(conn, "content-pipeline", logger=logger)
    steplog.start({"url": body.url})
    pipeline = pipeline_builder(conn, config, steplog=steplog, logger=logger)
    try:
        result = pipeline.process(body.url, status=body.status.value, user_id=body.userId)
    except InvalidUrl as exc:
        steplog.complete(False, items_failed=1, error=str(exc))
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except FetchFailed as exc:
        steplog.complete(False, items_failed=1, error=str(exc))
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    steplog.complete(True, items_processed=1 if result.created else 0)
    return {
        "success": True,
        "created": result.created,
        "item": asdict(result.item),
        "topics": [topic.name for topic in list_item_topics(conn, result.item.id)],
        "stages": [
            {"stage": stage.stage, "outcome": stage.outcome.value, "message": stage.message}
            for stage in result.stages
        ],
    }


@router.post("/embed-unindexed")
def embed_unindexed(
    body: EmbedRequest,
    conn=Depends(get_conn),
    indexer_builder=Depends(get_indexer_builder),
) -> dict[str, object]:
    config = _load_config(conn)
    indexer = indexer_builder(conn, config)
    limit = body.limit or config.embedding.unindexed_batch_limit
    summary = process_unindexed_items(conn, indexer, limit=limit)
    return {"success": True, **summary}


@router.post("/search")
def search(
    body: SearchRequest,
    conn=Depends(get_conn),
    indexer_builder=Depends(get_indexer_builder),
) -> dict[str, object]:
    query = body.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="query is required")
    if body.topK < 1:
        raise HTTPException(status_code=400, detail="topK must be >= 1")
    config = _load_config(conn)
    indexer = indexer_builder(conn, config)
    try:
        matches = indexer.search(query, top_k=body.topK)
    except CompletionFailed as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {
        "success": True,
        "results": [
            {"id": match["id"], "similarity": match["similarity"], **match["metadata"]}
            for match in matches
        ],
    }


@router.post("/tag-all")
def tag_all(
    conn=Depends(get_conn),
    client_builder=Depends(get_client_builder),
) -> dict[str, object]:
    config = _load_config(conn)
    try:
        client = client_builder(config, logger=logging.getLogger("feedcurator.api"))
    except ConfigError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    summary = tag_all_items(
        conn,
        client,
        max_topics=config.llm.max_topics,
        max_input_chars=config.llm.max_input_chars,
    )
    return {"success": True, **summary}


@router.post("/reset-index-status")
def reset_index_status(conn=Depends(get_conn)) -> dict[str, object]:
    return {"success": True, "reset": reset_indexed_flags(conn)}


@router.get("/config")
def runtime_config_get(conn=Depends(get_conn)) -> dict[str, object]:
    try:
        return get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@router.put("/config")
def runtime_config_put(payload: dict[str, Any], conn=Depends(get_conn)) -> dict[str, object]:
    try:
        set_runtime_config(conn, payload)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"success": True}


app.include_router(router)


@app.on_event("startup")
def _startup() -> None:
    set_umask_from_env()
    conn = _get_conn()
    try:
        config = load_runtime_config(conn)
    except ConfigError:
        return
    finally:
        conn.close()
    ensure_runtime_dirs(runtime_paths(config.paths))


def _setup_logging() -> None:
    configure_logging("feedcurator.api")


_setup_logging()


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("feedcurator")
    except Exception:  # noqa: BLE001
        return "unknown"
