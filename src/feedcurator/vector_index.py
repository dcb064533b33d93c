from __future__ import annotations

import html
import logging
import re
from typing import Any, Iterable, Protocol

from .config import ChunkTier
from .models import ContentItem, Outcome, StageResult
from .storage import get_item, set_indexed
from .utils import log_event

STAGE = "embed"

DEFAULT_TIERS: tuple[ChunkTier, ...] = (
    ChunkTier(below=5000, size=1000, overlap=200),
    ChunkTier(below=20000, size=2000, overlap=400),
    ChunkTier(below=0, size=4000, overlap=800),
)


class VectorStore(Protocol):
    def upsert(
        self, window_id: str, vector: list[float], metadata: dict[str, Any], document: str
    ) -> None: ...

    def delete_for_content(self, content_id: int) -> None: ...

    def ids_for_content(self, content_id: int) -> list[str]: ...

    def query(self, vector: list[float], top_k: int = 10) -> list[dict[str, Any]]: ...


def clean_html(text: str) -> str:
    cleaned = re.sub(r"<script\b[^>]*>.*?</script>", " ", text or "", flags=re.I | re.S)
    cleaned = re.sub(r"<style\b[^>]*>.*?</style>", " ", cleaned, flags=re.I | re.S)
    cleaned = re.sub(r"<[^>]+>", " ", cleaned)
    cleaned = html.unescape(cleaned)
    return re.sub(r"\s+", " ", cleaned).strip()


def chunk_config(length: int, tiers: Iterable[ChunkTier] = DEFAULT_TIERS) -> ChunkTier:
    tier_list = list(tiers)
    for tier in tier_list:
        if tier.below == 0 or length < tier.below:
            return tier
    return tier_list[-1]


def split_windows(text: str, size: int, overlap: int) -> list[str]:
    if size <= overlap:
        raise ValueError("window size must exceed overlap")
    if not text:
        return []
    step = size - overlap
    windows: list[str] = []
    start = 0
    while start < len(text):
        windows.append(text[start : start + size])
        if start + size >= len(text):
            break
        start += step
    return windows


def window_id(content_id: int, index: int) -> str:
    return f"{content_id}-chunk-{index}"


def build_embedding_text(item: ContentItem) -> str:
    return (
        f"Title: {item.title}\n\n"
        f"Description: {clean_html(item.description)}\n\n"
        f"Content: {clean_html(item.content)}"
    )


class VectorIndexer:
    def __init__(
        self,
        conn: Any,
        client: Any,
        store: VectorStore,
        tiers: Iterable[ChunkTier] = DEFAULT_TIERS,
        logger: logging.Logger | None = None,
    ) -> None:
        self._conn = conn
        self._client = client
        self._store = store
        self._tiers = tuple(tiers)
        self._logger = logger or logging.getLogger("feedcurator.vector_index")

    def embed(self, content_id: int) -> StageResult:
        item = get_item(self._conn, content_id)
        if item is None:
            return StageResult(STAGE, Outcome.NOT_FOUND, f"content item {content_id} not found")
        text = build_embedding_text(item)
        tier = chunk_config(len(text), self._tiers)
        windows = split_windows(text, tier.size, tier.overlap)
        total = len(windows)
        try:
            self._store.delete_for_content(content_id)
            for index, window in enumerate(windows):
                vector = self._client.embed(window)
                self._store.upsert(
                    window_id(content_id, index),
                    vector,
                    {
                        "content_id": content_id,
                        "title": item.title,
                        "link": item.link,
                        "chunk_index": index,
                        "total_chunks": total,
                        "content": window,
                    },
                    window,
                )
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.WARNING,
                "embed_failed",
                content_id=content_id,
                error=str(exc),
            )
            self._cleanup(content_id)
            set_indexed(self._conn, content_id, False)
            return StageResult(STAGE, Outcome.EMBED_FAILED, str(exc))

        set_indexed(self._conn, content_id, True)
        log_event(
            self._logger,
            logging.INFO,
            "embed_complete",
            content_id=content_id,
            chunks=total,
            size=tier.size,
            overlap=tier.overlap,
        )
        return StageResult(
            STAGE,
            Outcome.OK,
            data={"chunk_count": total, "chunk_size": tier.size, "overlap": tier.overlap},
        )

    def search(self, query: str, top_k: int = 10) -> list[dict[str, Any]]:
        """Embed ``query`` and return the closest windows, best match first."""
        vector = self._client.embed(query)
        matches = self._store.query(vector, top_k)
        log_event(
            self._logger,
            logging.INFO,
            "vector_search",
            top_k=top_k,
            matches=len(matches),
        )
        return sorted(matches, key=lambda match: match["similarity"], reverse=True)

    def _cleanup(self, content_id: int) -> None:
        try:
            self._store.delete_for_content(content_id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self._logger,
                logging.ERROR,
                "embed_cleanup_failed",
                content_id=content_id,
                error=str(exc),
            )
