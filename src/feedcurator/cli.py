from __future__ import annotations

import argparse
import json
import logging
from dataclasses import asdict

from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_state_db_path,
    load_catalog_file,
    load_runtime_config,
)
from .controller import start_or_resume_job
from .dispatch import QueueDispatcher
from .errors import FeedCuratorError
from .fsinit import ensure_runtime_dirs, runtime_paths, set_umask_from_env
from .models import ItemStatus
from .pipeline import build_client, build_indexer, build_pipeline, process_unindexed_items
from .steplog import StepLogger
from .storage import (
    add_source,
    add_topic,
    get_job,
    init_db,
    list_item_topics,
    list_job_events,
    list_jobs,
    list_sources,
    list_topics,
    reset_indexed_flags,
)
from .tagger import tag_all_items
from .utils import configure_logging, log_event
from .worker import run_batch


def _setup_logging() -> logging.Logger:
    return configure_logging("feedcurator")


def _open(args: argparse.Namespace, logger: logging.Logger):
    path = args.db or get_state_db_path()
    conn = init_db(path)
    bootstrap_runtime_config(conn)
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        conn.close()
        return None, None
    return conn, config


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    path = args.db or get_state_db_path()
    conn = init_db(path)
    bootstrap_runtime_config(conn)
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=path)
    return 0


def _cmd_sources_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    try:
        source_id = add_source(
            conn,
            args.title,
            args.feed_url,
            url=args.url,
            include_in_newsfeed=not args.exclude,
        )
    finally:
        conn.close()
    log_event(logger, logging.INFO, "source_added", source_id=source_id, feed_url=args.feed_url)
    return 0


def _cmd_sources_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    try:
        sources = list_sources(conn)
    finally:
        conn.close()
    for source in sources:
        log_event(
            logger,
            logging.INFO,
            "source",
            source_id=source.id,
            title=source.title,
            feed_url=source.feed_url,
            include_in_newsfeed=source.include_in_newsfeed,
        )
    log_event(logger, logging.INFO, "sources_listed", count=len(sources))
    return 0


def _cmd_topics_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    try:
        topic_id = add_topic(conn, args.name, args.description)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "topic_added", topic_id=topic_id, name=args.name)
    return 0


def _cmd_topics_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    try:
        topics = list_topics(conn)
    finally:
        conn.close()
    for topic in topics:
        log_event(logger, logging.INFO, "topic", topic_id=topic.id, name=topic.name, slug=topic.slug)
    log_event(logger, logging.INFO, "topics_listed", count=len(topics))
    return 0


def _cmd_catalog_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        catalog = load_catalog_file(args.path)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "catalog_import_error", error=str(exc))
        return 1
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    try:
        known_feeds = {source.feed_url for source in list_sources(conn)}
        known_topics = {topic.name.lower() for topic in list_topics(conn)}
        added_sources = 0
        for entry in catalog["sources"]:
            feed_url = str(entry["feed_url"]).strip()
            if feed_url in known_feeds:
                continue
            add_source(
                conn,
                str(entry.get("title") or feed_url),
                feed_url,
                url=entry.get("url"),
                include_in_newsfeed=bool(entry.get("include_in_newsfeed", True)),
            )
            known_feeds.add(feed_url)
            added_sources += 1
        added_topics = 0
        for entry in catalog["topics"]:
            name = str(entry["name"]).strip()
            if name.lower() in known_topics:
                continue
            add_topic(conn, name, entry.get("description"))
            known_topics.add(name.lower())
            added_topics += 1
    finally:
        conn.close()
    log_event(
        logger,
        logging.INFO,
        "catalog_imported",
        path=args.path,
        sources=added_sources,
        topics=added_topics,
    )
    return 0


def _cmd_jobs_run(args: argparse.Namespace, logger: logging.Logger) -> int:
    """Start a job and drain its batches in this process."""
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    set_umask_from_env()
    ensure_runtime_dirs(runtime_paths(config.paths))
    dispatcher = QueueDispatcher()
    try:
        result = start_or_resume_job(
            conn, config, dispatcher=dispatcher, job_id=args.job_id, is_cron=False, logger=logger
        )
        if result.already_running and not dispatcher.pending:
            log_event(logger, logging.WARNING, "job_already_running", job_id=result.job.id)
            return 1
        pipeline = build_pipeline(conn, config, logger=logger)
        while True:
            request = dispatcher.pop()
            if request is None:
                break
            batch = run_batch(
                conn,
                config,
                request.job_id,
                request.batch_number,
                pipeline=pipeline,
                dispatcher=dispatcher,
                token=request.token,
                logger=logger,
            )
            log_event(
                logger,
                logging.INFO,
                "batch_result",
                job_id=batch.job_id,
                batch=batch.batch_number,
                processed=batch.processed,
                errors=batch.errors,
                next_batch=batch.next_batch,
                completed=batch.completed,
            )
        job = get_job(conn, result.job.id)
    except (FeedCuratorError, ConfigError) as exc:
        log_event(logger, logging.ERROR, "job_run_failed", error=str(exc))
        return 1
    finally:
        conn.close()
    if job is None:
        return 1
    log_event(
        logger,
        logging.INFO,
        "job_finished",
        job_id=job.id,
        status=job.status,
        items=job.processed_items,
        errors=job.error_count,
    )
    return 0 if job.status == "completed" else 1


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    try:
        jobs = list_jobs(conn, limit=args.limit)
    finally:
        conn.close()
    for job in jobs:
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            status=job.status,
            current_batch=job.current_batch,
            total_batches=job.total_batches,
            items=job.processed_items,
            errors=job.error_count,
            created_at=job.created_at,
        )
    return 0


def _cmd_jobs_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    try:
        job = get_job(conn, args.job_id)
        events = list_job_events(conn, args.job_id) if job else []
    finally:
        conn.close()
    if job is None:
        log_event(logger, logging.ERROR, "job_not_found", job_id=args.job_id)
        return 1
    payload = asdict(job)
    payload["events"] = [asdict(event) for event in events]
    logger.info(json.dumps(payload, indent=2, sort_keys=True, default=str))
    return 0


def _cmd_items_process(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    steplog = StepLogger(conn, "content-pipeline", logger=logger)
    steplog.start({"url": args.url})
    try:
        pipeline = build_pipeline(conn, config, steplog=steplog, logger=logger)
        result = pipeline.process(args.url, status=args.status)
        topics = [topic.name for topic in list_item_topics(conn, result.item.id)]
    except (FeedCuratorError, ValueError) as exc:
        steplog.complete(False, items_failed=1, error=str(exc))
        log_event(logger, logging.ERROR, "item_process_failed", url=args.url, error=str(exc))
        conn.close()
        return 1
    steplog.complete(True, items_processed=1 if result.created else 0)
    conn.close()
    log_event(
        logger,
        logging.INFO,
        "item_processed",
        item_id=result.item.id,
        created=result.created,
        indexed=result.item.indexed,
        topics=",".join(topics),
        stages=",".join(f"{stage.stage}:{stage.outcome.value}" for stage in result.stages),
    )
    return 0


def _cmd_items_embed_unindexed(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    try:
        indexer = build_indexer(conn, config, logger=logger)
        summary = process_unindexed_items(
            conn,
            indexer,
            limit=args.limit or config.embedding.unindexed_batch_limit,
            logger=logger,
        )
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    return 0 if summary["failed"] == 0 else 1


def _cmd_items_retag_all(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(args, logger)
    if conn is None:
        return 1
    try:
        summary = tag_all_items(
            conn,
            build_client(config, logger=logger),
            max_topics=config.llm.max_topics,
            max_input_chars=config.llm.max_input_chars,
            logger=logger,
        )
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    return 0 if summary["failed"] == 0 else 1


def _cmd_items_reset_index(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(args, logger)
    if conn is None:
        return 1
    try:
        count = reset_indexed_flags(conn)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "index_status_reset", items=count)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="feedcurator", description="FeedCurator CLI")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the SQLite state database (defaults to FC_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply database migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    sources_parser = subparsers.add_parser("sources", help="Manage feed sources")
    sources_subparsers = sources_parser.add_subparsers(dest="sources_command", required=True)
    sources_add = sources_subparsers.add_parser("add", help="Add a feed source")
    sources_add.add_argument("feed_url", help="RSS or Atom feed URL")
    sources_add.add_argument("--title", required=True, help="Source title")
    sources_add.add_argument("--url", default=None, help="Site URL")
    sources_add.add_argument(
        "--exclude",
        action="store_true",
        help="Keep the source out of scheduled ingestion",
    )
    sources_add.set_defaults(func=_cmd_sources_add)
    sources_list = sources_subparsers.add_parser("list", help="List sources")
    sources_list.set_defaults(func=_cmd_sources_list)

    topics_parser = subparsers.add_parser("topics", help="Manage the topic vocabulary")
    topics_subparsers = topics_parser.add_subparsers(dest="topics_command", required=True)
    topics_add = topics_subparsers.add_parser("add", help="Add a topic")
    topics_add.add_argument("name", help="Topic name")
    topics_add.add_argument("--description", default=None, help="Topic description")
    topics_add.set_defaults(func=_cmd_topics_add)
    topics_list = topics_subparsers.add_parser("list", help="List topics")
    topics_list.set_defaults(func=_cmd_topics_list)

    catalog_parser = subparsers.add_parser("catalog", help="Seed sources and topics")
    catalog_subparsers = catalog_parser.add_subparsers(dest="catalog_command", required=True)
    catalog_import = catalog_subparsers.add_parser(
        "import", help="Import sources and topics from a YAML file"
    )
    catalog_import.add_argument("path", help="Path to the catalog YAML file")
    catalog_import.set_defaults(func=_cmd_catalog_import)

    jobs_parser = subparsers.add_parser("jobs", help="Ingestion jobs")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_run = jobs_subparsers.add_parser("run", help="Run an ingestion job to completion")
    jobs_run.add_argument("--job-id", default=None, help="Resume a pending job")
    jobs_run.set_defaults(func=_cmd_jobs_run)
    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)
    jobs_show = jobs_subparsers.add_parser("show", help="Show a job and its events")
    jobs_show.add_argument("job_id", help="Job id")
    jobs_show.set_defaults(func=_cmd_jobs_show)

    items_parser = subparsers.add_parser("items", help="Content items")
    items_subparsers = items_parser.add_subparsers(dest="items_command", required=True)
    items_process = items_subparsers.add_parser("process", help="Ingest a single article URL")
    items_process.add_argument("url", help="Article URL")
    items_process.add_argument(
        "--status",
        choices=[status.value for status in ItemStatus],
        default=ItemStatus.DRAFT.value,
        help="Status of the stored item",
    )
    items_process.set_defaults(func=_cmd_items_process)
    items_embed = items_subparsers.add_parser(
        "embed-unindexed", help="Embed published items that are not indexed yet"
    )
    items_embed.add_argument("--limit", type=int, default=None, help="Maximum items to embed")
    items_embed.set_defaults(func=_cmd_items_embed_unindexed)
    items_retag = items_subparsers.add_parser(
        "retag-all", help="Re-run topic tagging for every item"
    )
    items_retag.set_defaults(func=_cmd_items_retag_all)
    items_reset = items_subparsers.add_parser(
        "reset-index", help="Mark every item unindexed so the sweep embeds it again"
    )
    items_reset.set_defaults(func=_cmd_items_reset_index)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = _setup_logging()
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
