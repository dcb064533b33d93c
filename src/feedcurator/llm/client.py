from __future__ import annotations

import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any

import jsonschema

from ..config import ConfigError, LlmConfig, EmbeddingConfig
from ..errors import CompletionFailed
from ..utils import log_event

DEFAULT_BASE_URL = "https://api.openai.com/v1"

_CHAT_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["choices"],
    "properties": {
        "choices": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["message"],
                "properties": {
                    "message": {
                        "type": "object",
                        "properties": {"content": {"type": ["string", "null"]}},
                    }
                },
            },
        }
    },
}

_EMBEDDING_RESPONSE_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["data"],
    "properties": {
        "data": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["embedding"],
                "properties": {
                    "embedding": {"type": "array", "items": {"type": "number"}},
                },
            },
        }
    },
}


class CompletionClient:
    """Chat-completion and embedding calls against an OpenAI-compatible endpoint."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        model: str,
        embedding_model: str,
        embedding_dimensions: int | None = None,
        temperature: float = 0.3,
        max_tokens: int = 200,
        timeout_seconds: int = 60,
        logger: logging.Logger | None = None,
    ) -> None:
        self.base_url = base_url
        self.api_key = api_key
        self.model = model
        self.embedding_model = embedding_model
        self.embedding_dimensions = embedding_dimensions
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.timeout_seconds = timeout_seconds
        self._logger = logger or logging.getLogger("feedcurator.llm")

    @classmethod
    def from_config(
        cls,
        llm: LlmConfig,
        embedding: EmbeddingConfig,
        logger: logging.Logger | None = None,
    ) -> "CompletionClient":
        base_url = os.environ.get("FC_LLM_BASE_URL", "").strip() or DEFAULT_BASE_URL
        api_key = os.environ.get("FC_LLM_API_KEY", "").strip()
        if not api_key:
            raise ConfigError("FC_LLM_API_KEY not set")
        return cls(
            base_url=base_url,
            api_key=api_key,
            model=llm.model,
            embedding_model=embedding.model,
            embedding_dimensions=embedding.dimensions,
            temperature=llm.temperature,
            max_tokens=llm.max_tokens,
            timeout_seconds=llm.timeout_seconds,
            logger=logger,
        )

    def complete(self, system: str, user: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        response = self._post("/chat/completions", payload)
        _validate(_CHAT_RESPONSE_SCHEMA, response, "chat_response_invalid")
        return response["choices"][0]["message"].get("content") or ""

    def embed(self, text: str) -> list[float]:
        payload: dict[str, Any] = {"model": self.embedding_model, "input": text}
        if self.embedding_dimensions:
            payload["dimensions"] = self.embedding_dimensions
        response = self._post("/embeddings", payload)
        _validate(_EMBEDDING_RESPONSE_SCHEMA, response, "embedding_response_invalid")
        return [float(value) for value in response["data"][0]["embedding"]]

    def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        url = _join_url(self.base_url, path)
        request = urllib.request.Request(
            url, data=json.dumps(payload).encode("utf-8"), method="POST"
        )
        request.add_header("Content-Type", "application/json")
        request.add_header("Authorization", f"Bearer {self.api_key}")
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            body = exc.read().decode("utf-8", errors="ignore")
            log_event(self._logger, logging.WARNING, "llm_http_error", path=path, status=exc.code)
            raise CompletionFailed(f"http_error {exc.code}: {body[:500]}") from exc
        except (urllib.error.URLError, TimeoutError, OSError) as exc:
            log_event(self._logger, logging.WARNING, "llm_network_error", path=path, error=str(exc))
            raise CompletionFailed(f"network_error: {exc}") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise CompletionFailed(f"invalid_json: {raw[:200]}") from exc


def _validate(schema: dict[str, Any], payload: Any, code: str) -> None:
    try:
        jsonschema.validate(payload, schema)
    except jsonschema.ValidationError as exc:
        raise CompletionFailed(f"{code}: {exc.message}") from exc


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path
