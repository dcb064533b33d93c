from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable

from .config import Config
from .extractor import extract_page, fetch_page, validate_url
from .llm import CompletionClient
from .models import ContentItem, ItemStatus, Outcome, StageResult
from .steplog import StepLogger
from .storage import get_item, get_item_by_link, insert_item, list_unindexed_items
from .summarizer import summarize_item
from .tagger import tag_item
from .utils import log_event
from .vector_index import VectorIndexer

PageFetcher = Callable[..., tuple[int, str]]


@dataclass(frozen=True)
class PipelineResult:
    item: ContentItem
    created: bool
    stages: list[StageResult] = field(default_factory=list)

    def stage(self, name: str) -> StageResult | None:
        for result in self.stages:
            if result.stage == name:
                return result
        return None


class ContentPipeline:
    """Fetch, extract, persist and enrich one article link.

    ``process`` raises ``InvalidUrl`` and ``FetchFailed`` before anything is
    stored. Once the item row exists every later stage is best-effort.
    """

    def __init__(
        self,
        conn: Any,
        config: Config,
        *,
        client: Any,
        indexer: VectorIndexer,
        fetch: PageFetcher = fetch_page,
        steplog: StepLogger | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._conn = conn
        self._config = config
        self._client = client
        self._indexer = indexer
        self._fetch = fetch
        self._steplog = steplog
        self._logger = logger or logging.getLogger("feedcurator.pipeline")

    def process(
        self,
        link: str,
        *,
        source_id: int | None = None,
        status: str = ItemStatus.DRAFT.value,
        published_at: str | None = None,
        user_id: str | None = None,
    ) -> PipelineResult:
        url = validate_url(link)

        existing = get_item_by_link(self._conn, url)
        if existing is not None:
            log_event(self._logger, logging.DEBUG, "pipeline_existing_item", item_id=existing.id)
            return PipelineResult(
                existing,
                False,
                [StageResult("insert", Outcome.DUPLICATE_LINK, "link already stored")],
            )

        with self._step("fetch_page", {"url": url}):
            _, html = self._fetch(
                url,
                timeout_seconds=self._config.http.timeout_seconds,
                user_agent=self._config.http.user_agent,
                logger=self._logger,
            )

        extract_cfg = self._config.extract
        with self._step("extract", {"url": url}) as info:
            page = extract_page(
                html,
                url,
                min_content_chars=extract_cfg.min_content_chars,
                max_title_chars=extract_cfg.max_title_chars,
                max_description_chars=extract_cfg.max_description_chars,
            )
            info["content_chars"] = len(page.content)

        with self._step("insert", {"url": url}) as info:
            item, created = insert_item(
                self._conn,
                link=url,
                title=page.title,
                description=page.description,
                content=page.content,
                image_path=page.image,
                status=status,
                date_published=published_at,
                source_id=source_id,
                user_id=user_id,
            )
            info["item_id"] = item.id
            info["created"] = created
        if not created:
            log_event(self._logger, logging.INFO, "pipeline_insert_race", item_id=item.id)
            return PipelineResult(
                item,
                False,
                [StageResult("insert", Outcome.DUPLICATE_LINK, "link inserted concurrently")],
            )

        llm = self._config.llm
        stages = [
            self._run_stage(
                "summarize",
                lambda: summarize_item(
                    self._conn,
                    self._client,
                    item.id,
                    max_words=llm.summary_words,
                    max_input_chars=llm.max_input_chars,
                    logger=self._logger,
                ),
            ),
            self._run_stage(
                "tag",
                lambda: tag_item(
                    self._conn,
                    self._client,
                    item.id,
                    max_topics=llm.max_topics,
                    max_input_chars=llm.max_input_chars,
                    logger=self._logger,
                ),
            ),
            self._run_stage("embed", lambda: self._indexer.embed(item.id)),
        ]
        final = get_item(self._conn, item.id) or item
        log_event(
            self._logger,
            logging.INFO,
            "pipeline_item_processed",
            item_id=final.id,
            indexed=final.indexed,
            stages=",".join(f"{stage.stage}:{stage.outcome.value}" for stage in stages),
        )
        return PipelineResult(final, True, stages)

    def _run_stage(self, name: str, call: Callable[[], StageResult]) -> StageResult:
        self._step_start(name)
        try:
            result = call()
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger, logging.WARNING, "pipeline_stage_error", stage=name, error=str(exc)
            )
            result = StageResult(name, Outcome.STAGE_ERROR, str(exc))
        if self._steplog is not None:
            self._steplog.end_step(
                name, result.ok, message=result.message, data={"outcome": result.outcome.value}
            )
        return result

    def _step(self, name: str, data: dict[str, Any]):
        if self._steplog is None:
            return _NullStep()
        return self._steplog.step(name, data)

    def _step_start(self, name: str) -> None:
        if self._steplog is not None:
            self._steplog.start_step(name)


class _NullStep:
    def __enter__(self) -> dict[str, Any]:
        return {}

    def __exit__(self, *exc_info) -> bool:
        return False


def process_unindexed_items(
    conn: Any,
    indexer: VectorIndexer,
    *,
    limit: int = 100,
    statuses: Iterable[str] = (ItemStatus.PUBLISHED.value,),
    logger: logging.Logger | None = None,
) -> dict[str, int]:
    logger = logger or logging.getLogger("feedcurator.pipeline")
    items = list_unindexed_items(conn, limit=limit, statuses=statuses)
    succeeded = 0
    failed = 0
    for item in items:
        result = indexer.embed(item.id)
        if result.ok:
            succeeded += 1
        else:
            failed += 1
    log_event(
        logger,
        logging.INFO,
        "unindexed_sweep_complete",
        processed=len(items),
        succeeded=succeeded,
        failed=failed,
    )
    return {"processed": len(items), "succeeded": succeeded, "failed": failed}


def build_client(config: Config, logger: logging.Logger | None = None) -> CompletionClient:
    return CompletionClient.from_config(config.llm, config.embedding, logger=logger)


def build_indexer(
    conn: Any,
    config: Config,
    *,
    client: Any | None = None,
    store: Any | None = None,
    logger: logging.Logger | None = None,
) -> VectorIndexer:
    if client is None:
        client = build_client(config, logger=logger)
    if store is None:
        from .vector_store import open_store

        store = open_store(config.paths.vector_dir, config.embedding.collection)
    return VectorIndexer(conn, client, store, config.embedding.tiers, logger=logger)


def build_pipeline(
    conn: Any,
    config: Config,
    *,
    client: Any | None = None,
    store: Any | None = None,
    fetch: PageFetcher = fetch_page,
    steplog: StepLogger | None = None,
    logger: logging.Logger | None = None,
) -> ContentPipeline:
    if client is None:
        client = build_client(config, logger=logger)
    indexer = build_indexer(conn, config, client=client, store=store, logger=logger)
    return ContentPipeline(
        conn,
        config,
        client=client,
        indexer=indexer,
        fetch=fetch,
        steplog=steplog,
        logger=logger,
    )
