from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Any

os.environ.setdefault("ANONYMIZED_TELEMETRY", "False")

import chromadb
from chromadb.config import Settings

from .utils import log_event


class ChromaVectorStore:
    """Content windows kept in a ChromaDB collection with cosine distance.

    Vectors are computed by the completion client and always passed in, so the
    collection is opened without an embedding function.
    """

    def __init__(
        self,
        client: Any,
        collection_name: str = "content_windows",
        logger: logging.Logger | None = None,
    ) -> None:
        self._client = client
        self._logger = logger or logging.getLogger("feedcurator.vector_store")
        self._collection = client.get_or_create_collection(
            name=collection_name,
            metadata={"hnsw:space": "cosine"},
            embedding_function=None,
        )

    @classmethod
    def persistent(cls, path: str, collection_name: str = "content_windows") -> "ChromaVectorStore":
        os.makedirs(path, exist_ok=True)
        client = chromadb.PersistentClient(
            path=path,
            settings=Settings(anonymized_telemetry=False),
        )
        return cls(client, collection_name)

    def upsert(
        self, window_id: str, vector: list[float], metadata: dict[str, Any], document: str
    ) -> None:
        self._collection.upsert(
            ids=[window_id],
            embeddings=[vector],
            documents=[document],
            metadatas=[metadata],
        )

    def delete_for_content(self, content_id: int) -> None:
        ids = self.ids_for_content(content_id)
        if not ids:
            return
        self._collection.delete(ids=ids)
        log_event(
            self._logger,
            logging.DEBUG,
            "vector_windows_deleted",
            content_id=content_id,
            count=len(ids),
        )

    def ids_for_content(self, content_id: int) -> list[str]:
        result = self._collection.get(where={"content_id": content_id}, include=[])
        return sorted(result.get("ids") or [])

    def query(self, vector: list[float], top_k: int = 10) -> list[dict[str, Any]]:
        count = self._collection.count()
        if count == 0:
            return []
        result = self._collection.query(
            query_embeddings=[vector],
            n_results=min(top_k, count),
            include=["metadatas", "documents", "distances"],
        )
        ids = (result.get("ids") or [[]])[0]
        metadatas = (result.get("metadatas") or [[]])[0]
        distances = (result.get("distances") or [[]])[0]
        return [
            {
                "id": window_id,
                "metadata": dict(metadata or {}),
                "similarity": 1.0 - float(distance),
            }
            for window_id, metadata, distance in zip(ids, metadatas, distances)
        ]


@lru_cache(maxsize=4)
def open_store(path: str, collection_name: str) -> ChromaVectorStore:
    return ChromaVectorStore.persistent(path, collection_name)
