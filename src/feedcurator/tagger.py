from __future__ import annotations

import logging
import re
from typing import Any, Iterable

from .errors import CompletionFailed
from .models import Outcome, StageResult, Topic
from .storage import get_item, list_item_ids, list_topics, replace_item_topics
from .utils import log_event

STAGE = "tag"


def normalize_tag(tag: str) -> str:
    cleaned = tag.strip().lower()
    cleaned = re.sub(r"\s+", "-", cleaned)
    cleaned = re.sub(r"[^a-z0-9\-]", "-", cleaned)
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    return cleaned


def build_topic_prompt(topics: Iterable[Topic], max_topics: int) -> str:
    lines = []
    for topic in topics:
        if topic.description:
            lines.append(f"- {topic.name} ({topic.description})")
        else:
            lines.append(f"- {topic.name}")
    return (
        "You classify articles into topics from a fixed list.\n"
        f"Choose at most {max_topics} topics that best match the article.\n"
        "Use the topic names exactly as written and do not invent new ones.\n"
        "Reply with the chosen names separated by commas and nothing else.\n\n"
        "Available topics:\n" + "\n".join(lines)
    )


def parse_topic_response(raw: str, topics: Iterable[Topic], max_topics: int) -> list[Topic]:
    """Resolve a free-text completion to known topics.

    Names outside the vocabulary are dropped. Order follows the response.
    """
    vocabulary = {normalize_tag(topic.name): topic for topic in topics}
    matched: list[Topic] = []
    seen: set[int] = set()
    for part in re.split(r"[,\n]", raw or ""):
        candidate = part.strip().strip("-*\"'`.").strip()
        if not candidate:
            continue
        topic = vocabulary.get(normalize_tag(candidate))
        if topic is None or topic.id in seen:
            continue
        matched.append(topic)
        seen.add(topic.id)
        if len(matched) >= max_topics:
            break
    return matched


def tag_item(
    conn: Any,
    client: Any,
    item_id: int,
    *,
    max_topics: int = 4,
    max_input_chars: int = 12000,
    logger: logging.Logger | None = None,
) -> StageResult:
    logger = logger or logging.getLogger("feedcurator.tagger")
    item = get_item(conn, item_id)
    if item is None:
        return StageResult(STAGE, Outcome.NOT_FOUND, f"content item {item_id} not found")
    topics = list_topics(conn)
    if not topics:
        return StageResult(STAGE, Outcome.NO_TOPICS_DEFINED, "topic vocabulary is empty")

    user = (
        f"Title: {item.title}\n\n"
        f"Description: {item.description}\n\n"
        f"Content: {item.content[:max_input_chars]}"
    )
    try:
        raw = client.complete(build_topic_prompt(topics, max_topics), user)
    except CompletionFailed as exc:
        log_event(logger, logging.WARNING, "tagging_failed", item_id=item_id, error=str(exc))
        return StageResult(STAGE, Outcome.COMPLETION_FAILED, str(exc))

    matched = parse_topic_response(raw, topics, max_topics)
    replace_item_topics(conn, item_id, [topic.id for topic in matched])
    names = [topic.name for topic in matched]
    if not matched:
        log_event(logger, logging.WARNING, "tagging_no_match", item_id=item_id, raw=raw[:200])
        return StageResult(STAGE, Outcome.NO_TOPICS_MATCHED, "no suggested topic is known")
    log_event(logger, logging.INFO, "tagging_saved", item_id=item_id, topics=",".join(names))
    return StageResult(STAGE, Outcome.OK, data={"topics": names})


def tag_all_items(
    conn: Any,
    client: Any,
    *,
    max_topics: int = 4,
    max_input_chars: int = 12000,
    logger: logging.Logger | None = None,
) -> dict[str, Any]:
    """Re-tag every content item, replacing its topic assignments."""
    logger = logger or logging.getLogger("feedcurator.tagger")
    item_ids = list_item_ids(conn)
    succeeded = 0
    errors: list[dict[str, Any]] = []
    for item_id in item_ids:
        result = tag_item(
            conn,
            client,
            item_id,
            max_topics=max_topics,
            max_input_chars=max_input_chars,
            logger=logger,
        )
        if result.ok:
            succeeded += 1
        else:
            errors.append(
                {"itemId": item_id, "outcome": result.outcome.value, "error": result.message}
            )
    log_event(
        logger,
        logging.INFO,
        "tag_all_complete",
        total=len(item_ids),
        succeeded=succeeded,
        failed=len(errors),
    )
    return {
        "total": len(item_ids),
        "succeeded": succeeded,
        "failed": len(errors),
        "errors": errors,
    }
