from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

import yaml

from .storage import get_setting, set_setting


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str
    timezone: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str
    vector_dir: str


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str
    max_retries: int
    backoff_seconds: int


@dataclass(frozen=True)
class JobsConfig:
    batch_size: int
    max_execution_seconds: float
    item_delay_seconds: float
    source_delay_seconds: float
    stale_after_seconds: int
    worker_timeout_seconds: int


@dataclass(frozen=True)
class LlmConfig:
    model: str
    temperature: float
    max_tokens: int
    timeout_seconds: int
    summary_words: int
    max_topics: int
    max_input_chars: int


@dataclass(frozen=True)
class ChunkTier:
    below: int
    size: int
    overlap: int


@dataclass(frozen=True)
class EmbeddingConfig:
    model: str
    dimensions: int
    collection: str
    unindexed_batch_limit: int
    tiers: tuple[ChunkTier, ...]


@dataclass(frozen=True)
class ExtractConfig:
    min_content_chars: int
    max_title_chars: int
    max_description_chars: int


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    http: HttpConfig
    jobs: JobsConfig
    llm: LlmConfig
    embedding: EmbeddingConfig
    extract: ExtractConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "FeedCurator",
        "timezone": "UTC",
    },
    "paths": {
        "data_dir": "/data",
        "state_db": "/data/state.sqlite3",
        "vector_dir": "/data/vectors",
    },
    "http": {
        "timeout_seconds": 20,
        "user_agent": "Mozilla/5.0 (compatible; FeedCurator/0.1; +https://feedcurator.invalid/bot)",
        "max_retries": 2,
        "backoff_seconds": 2,
    },
    "jobs": {
        "batch_size": 5,
        "max_execution_seconds": 55.0,
        "item_delay_seconds": 1.0,
        "source_delay_seconds": 2.0,
        "stale_after_seconds": 1800,
        "worker_timeout_seconds": 10,
    },
    "llm": {
        "model": "gpt-4o-mini",
        "temperature": 0.3,
        "max_tokens": 200,
        "timeout_seconds": 60,
        "summary_words": 30,
        "max_topics": 4,
        "max_input_chars": 12000,
    },
    "embedding": {
        "model": "text-embedding-3-small",
        "dimensions": 1536,
        "collection": "content_windows",
        "unindexed_batch_limit": 100,
        "tiers": [
            {"below": 5000, "size": 1000, "overlap": 200},
            {"below": 20000, "size": 2000, "overlap": 400},
            {"below": 0, "size": 4000, "overlap": 800},
        ],
    },
    "extract": {
        "min_content_chars": 100,
        "max_title_chars": 255,
        "max_description_chars": 500,
    },
}

CONFIG_KEY = "config.runtime"


def get_state_db_path() -> str:
    data_dir = os.environ.get("FC_DATA_DIR", DEFAULT_CONFIG["paths"]["data_dir"])
    return os.path.join(data_dir, "state.sqlite3")


def default_runtime_config() -> dict[str, Any]:
    cfg = _deep_copy(DEFAULT_CONFIG)
    data_dir = os.environ.get("FC_DATA_DIR")
    if data_dir:
        cfg["paths"]["data_dir"] = data_dir
        cfg["paths"]["state_db"] = os.path.join(data_dir, "state.sqlite3")
        cfg["paths"]["vector_dir"] = os.path.join(data_dir, "vectors")
    return cfg


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, default_runtime_config())
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if errors:
        return errors
    jobs = cfg["jobs"]
    if jobs["batch_size"] < 1:
        errors.append("config.runtime.jobs.batch_size must be >= 1")
    if jobs["max_execution_seconds"] <= 0:
        errors.append("config.runtime.jobs.max_execution_seconds must be > 0")
    if not 1 <= cfg["llm"]["max_topics"] <= 10:
        errors.append("config.runtime.llm.max_topics must be between 1 and 10")
    _validate_tiers(cfg["embedding"]["tiers"], "config.runtime.embedding.tiers", errors)
    return errors


def _validate_tiers(tiers: list[dict[str, Any]], path: str, errors: list[str]) -> None:
    if not tiers:
        errors.append(f"{path} must not be empty")
        return
    previous = 0
    for index, tier in enumerate(tiers):
        item_path = f"{path}[{index}]"
        for key in ("below", "size", "overlap"):
            if not isinstance(tier.get(key), int) or isinstance(tier.get(key), bool):
                errors.append(f"{item_path}.{key} must be an integer")
                return
        if tier["size"] <= tier["overlap"] or tier["overlap"] < 0:
            errors.append(f"{item_path} requires 0 <= overlap < size")
        is_last = index == len(tiers) - 1
        if is_last and tier["below"] != 0:
            errors.append(f"{item_path}.below must be 0 for the final tier")
        if not is_last and tier["below"] <= previous:
            errors.append(f"{item_path}.below must be increasing")
        previous = tier["below"]


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, list):
        if not isinstance(value, list):
            errors.append(f"{path} must be a list")
            return
        if default:
            sample = default[0]
            for item in value:
                if not isinstance(item, type(sample)):
                    errors.append(f"{path} must be a list of {type(sample).__name__}")
                    break
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    http_cfg = cfg.get("http") or {}
    jobs_cfg = cfg.get("jobs") or {}
    llm_cfg = cfg.get("llm") or {}
    embedding_cfg = cfg.get("embedding") or {}
    extract_cfg = cfg.get("extract") or {}

    app = AppConfig(
        name=str(app_cfg.get("name")),
        timezone=str(app_cfg.get("timezone")),
    )

    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        state_db=str(paths_cfg.get("state_db")),
        vector_dir=str(paths_cfg.get("vector_dir")),
    )

    http = HttpConfig(
        timeout_seconds=int(http_cfg.get("timeout_seconds")),
        user_agent=str(http_cfg.get("user_agent")),
        max_retries=int(http_cfg.get("max_retries")),
        backoff_seconds=int(http_cfg.get("backoff_seconds")),
    )

    jobs = JobsConfig(
        batch_size=int(jobs_cfg.get("batch_size")),
        max_execution_seconds=float(jobs_cfg.get("max_execution_seconds")),
        item_delay_seconds=float(jobs_cfg.get("item_delay_seconds")),
        source_delay_seconds=float(jobs_cfg.get("source_delay_seconds")),
        stale_after_seconds=int(jobs_cfg.get("stale_after_seconds")),
        worker_timeout_seconds=int(jobs_cfg.get("worker_timeout_seconds")),
    )

    llm = LlmConfig(
        model=str(llm_cfg.get("model")),
        temperature=float(llm_cfg.get("temperature")),
        max_tokens=int(llm_cfg.get("max_tokens")),
        timeout_seconds=int(llm_cfg.get("timeout_seconds")),
        summary_words=int(llm_cfg.get("summary_words")),
        max_topics=int(llm_cfg.get("max_topics")),
        max_input_chars=int(llm_cfg.get("max_input_chars")),
    )

    embedding = EmbeddingConfig(
        model=str(embedding_cfg.get("model")),
        dimensions=int(embedding_cfg.get("dimensions")),
        collection=str(embedding_cfg.get("collection")),
        unindexed_batch_limit=int(embedding_cfg.get("unindexed_batch_limit")),
        tiers=tuple(
            ChunkTier(
                below=int(tier["below"]),
                size=int(tier["size"]),
                overlap=int(tier["overlap"]),
            )
            for tier in embedding_cfg.get("tiers") or []
        ),
    )

    extract = ExtractConfig(
        min_content_chars=int(extract_cfg.get("min_content_chars")),
        max_title_chars=int(extract_cfg.get("max_title_chars")),
        max_description_chars=int(extract_cfg.get("max_description_chars")),
    )

    return Config(
        app=app,
        paths=paths,
        http=http,
        jobs=jobs,
        llm=llm,
        embedding=embedding,
        extract=extract,
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))


def load_catalog_file(path: str) -> dict[str, list[dict[str, Any]]]:
    """Read a YAML file listing ``sources`` and ``topics`` to seed the database."""
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Catalog file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError("Catalog file must contain a mapping")

    catalog: dict[str, list[dict[str, Any]]] = {"sources": [], "topics": []}
    for key, required in (("sources", "feed_url"), ("topics", "name")):
        entries = data.get(key) or []
        if not isinstance(entries, list):
            raise ConfigError(f"{key} must be a list")
        for index, entry in enumerate(entries):
            if not isinstance(entry, dict) or not entry.get(required):
                raise ConfigError(f"{key}[{index}].{required} is required")
            catalog[key].append(entry)
    return catalog
