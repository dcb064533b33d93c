from __future__ import annotations

import logging
from typing import Any

from .errors import CompletionFailed
from .models import Outcome, StageResult
from .storage import get_item, update_summary
from .utils import log_event

STAGE = "summarize"


def build_summary_prompt(max_words: int) -> str:
    return (
        "You write concise summaries of articles for a curated news feed. "
        f"Keep the summary under {max_words} words. "
        "It should read like an introduction to the article, in plain prose, "
        "without a heading, quotes or a preamble."
    )


def summarize_item(
    conn: Any,
    client: Any,
    item_id: int,
    *,
    max_words: int = 30,
    max_input_chars: int = 12000,
    logger: logging.Logger | None = None,
) -> StageResult:
    logger = logger or logging.getLogger("feedcurator.summarizer")
    item = get_item(conn, item_id)
    if item is None:
        return StageResult(STAGE, Outcome.NOT_FOUND, f"content item {item_id} not found")
    text = (item.content or item.description).strip()
    if not text:
        return StageResult(STAGE, Outcome.NO_CONTENT, "item has no content to summarize")

    user = f"Title: {item.title}\n\nContent: {text[:max_input_chars]}"
    try:
        raw = client.complete(build_summary_prompt(max_words), user)
    except CompletionFailed as exc:
        log_event(logger, logging.WARNING, "summary_failed", item_id=item_id, error=str(exc))
        return StageResult(STAGE, Outcome.COMPLETION_FAILED, str(exc))

    summary = (raw or "").strip()
    if not summary:
        log_event(logger, logging.WARNING, "summary_empty", item_id=item_id)
        return StageResult(STAGE, Outcome.EMPTY_COMPLETION, "completion returned no text")

    update_summary(conn, item_id, summary)
    log_event(logger, logging.INFO, "summary_saved", item_id=item_id, words=len(summary.split()))
    return StageResult(STAGE, Outcome.OK, data={"summary": summary})
