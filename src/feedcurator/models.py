from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


ACTIVE_JOB_STATUSES = (JobStatus.PENDING.value, JobStatus.PROCESSING.value)


class ItemStatus(str, Enum):
    DRAFT = "draft"
    PUBLISHED = "published"
    ARCHIVED = "archived"


class Outcome(str, Enum):
    OK = "ok"
    DUPLICATE_LINK = "duplicate_link"
    NO_CONTENT = "no_content"
    EMPTY_COMPLETION = "empty_completion"
    COMPLETION_FAILED = "completion_failed"
    NO_TOPICS_DEFINED = "no_topics_defined"
    NO_TOPICS_MATCHED = "no_topics_matched"
    EMBED_FAILED = "embed_failed"
    NOT_FOUND = "not_found"
    STAGE_ERROR = "stage_error"


@dataclass(frozen=True)
class StageResult:
    stage: str
    outcome: Outcome
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.outcome == Outcome.OK


@dataclass(frozen=True)
class Source:
    id: int
    title: str
    url: str | None
    feed_url: str | None
    include_in_newsfeed: bool


@dataclass(frozen=True)
class Topic:
    id: int
    name: str
    slug: str
    description: str | None


@dataclass(frozen=True)
class ContentItem:
    id: int
    link: str
    title: str
    description: str
    content: str
    image_path: str | None
    date_created: str
    date_published: str | None
    status: str
    indexed: bool
    summary: str
    source_id: int | None
    user_id: str | None


@dataclass(frozen=True)
class Job:
    id: str
    status: str
    job_type: str
    is_cron: bool
    batch_size: int
    total_batches: int
    current_batch: int
    total_sources: int
    processed_sources: int
    processed_items: int
    error_count: int
    current_source: str | None
    last_processed_source_id: int | None
    batch_token: str | None
    cursor_source_index: int
    cursor_item_index: int
    created_at: str
    started_at: str | None
    completed_at: str | None
    last_updated: str
    duration_seconds: float
    error: str | None
    metadata: dict[str, object]

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value)


@dataclass(frozen=True)
class JobEvent:
    id: int
    job_id: str
    event_type: str
    payload: dict[str, object]
    created_at: str


@dataclass(frozen=True)
class RunLog:
    id: str
    function_name: str
    job_id: str | None
    batch_number: int | None
    status: str
    started_at: str
    completed_at: str | None
    duration_ms: int | None
    success: bool | None
    error: str | None
    items_processed: int
    items_failed: int
    context: dict[str, object]


@dataclass(frozen=True)
class RunStep:
    id: int
    run_id: str
    step_name: str
    started_at: str
    completed_at: str | None
    duration_ms: int | None
    success: bool | None
    message: str | None
    data: dict[str, object]
