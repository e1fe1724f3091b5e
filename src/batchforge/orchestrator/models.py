"""Domain models for generation tasks, units and their coordination."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

BASE_STYLE_ID = "base"


class TaskStatus(str, Enum):
    """Aggregate lifecycle states of a generation request."""

    DRAFT = "draft"
    QUEUED = "queued"
    EXPANDING = "expanding"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL_FAILED = "partial_failed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class UnitStatus(str, Enum):
    """Lifecycle states of a single work unit (sub-task)."""

    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorCategory(str, Enum):
    """Normalized execution failure categories used by retry policy."""

    RATE_LIMITED = "RATE_LIMITED"
    CONTENT_FILTERED = "CONTENT_FILTERED"
    INVALID_INPUT = "INVALID_INPUT"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT = "TIMEOUT"
    UNKNOWN = "UNKNOWN"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_ERROR_CATEGORIES


RETRYABLE_ERROR_CATEGORIES = frozenset(
    {
        ErrorCategory.RATE_LIMITED,
        ErrorCategory.PROVIDER_ERROR,
        ErrorCategory.NETWORK_ERROR,
        ErrorCategory.TIMEOUT,
    },
)


class AspectRatio(str, Enum):
    """Supported output aspect ratios."""

    SQUARE = "1:1"
    LANDSCAPE = "16:9"
    PORTRAIT = "9:16"
    STANDARD = "4:3"
    STANDARD_PORTRAIT = "3:4"


@dataclass(slots=True, frozen=True)
class PromptVariant:
    """One expanded rewrite of the request subject."""

    variant_id: str
    name: str
    text: str


@dataclass(slots=True, frozen=True)
class FissionBreakdown:
    """The four cardinalities a total unit count was computed from."""

    prompt_count: int
    style_count: int
    model_count: int
    batch_size: int


@dataclass(slots=True, frozen=True)
class FissionResult:
    """Unit count for a request, with an optional large-batch warning."""

    total: int
    breakdown: FissionBreakdown
    warning: str | None = None


@dataclass(slots=True)
class SubmissionContext:
    """Everything needed to expand one request into unit specifications."""

    prompt_variants: list[PromptVariant]
    style_ids: list[str]
    model_ids: list[str]
    batch_size: int
    include_base_style: bool = True


@dataclass(slots=True, frozen=True)
class SubTaskSpec:
    """Concrete, not yet persisted, unit of work at one cross-product coordinate."""

    task_id: str
    sequence: int
    variant_id: str
    variant_name: str
    variant_text: str
    style_id: str
    model_id: str
    batch_index: int

    @property
    def coordinate(self) -> tuple[str, str, str, int]:
        return (self.variant_id, self.style_id, self.model_id, self.batch_index)


@dataclass(slots=True)
class SubTaskWrite:
    """Unit spec with its resolved prompt fields, ready to be persisted."""

    spec: SubTaskSpec
    final_prompt: str
    negative_prompt: str | None
    aspect_ratio: AspectRatio
    seed: int | None = None
    priority: int = 0


@dataclass(slots=True)
class TaskCreate:
    """Input payload for creating a draft generation task."""

    subject: str
    style_ids: list[str]
    model_ids: list[str]
    batch_size: int = 1
    include_base_style: bool = True
    variant_count: int = 3
    aspect_ratio: AspectRatio = AspectRatio.SQUARE
    seed: int | None = None
    negative_prompt: str | None = None
    task_id: str | None = None


@dataclass(slots=True)
class TaskView:
    """Readable task view for CLI and services."""

    task_id: str
    subject: str
    style_ids: list[str]
    model_ids: list[str]
    batch_size: int
    include_base_style: bool
    variant_count: int
    aspect_ratio: AspectRatio
    seed: int | None
    negative_prompt: str | None
    prompt_variants: list[PromptVariant]
    total_expected: int
    status: TaskStatus
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class SubTaskView:
    """Readable unit view; also what a worker receives after a claim."""

    sub_task_id: str
    task_id: str
    sequence: int
    variant_id: str
    variant_name: str
    style_id: str
    model_id: str
    batch_index: int
    final_prompt: str
    negative_prompt: str | None
    aspect_ratio: AspectRatio
    seed: int | None
    priority: int
    status: UnitStatus
    retry_count: int
    reclaim_count: int
    error_category: ErrorCategory | None
    error_log: str | None
    lease_owner: str | None
    lease_expires_at: datetime | None
    started_at: datetime | None
    completed_at: datetime | None
    result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class TaskEventView:
    """Task event stream item."""

    event_id: int
    task_id: str
    sub_task_id: str | None
    event_type: str
    status_from: str | None
    status_to: str | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StatusCounts:
    """Unit counts by status for one task."""

    pending: int = 0
    processing: int = 0
    success: int = 0
    failed: int = 0
    cancelled: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.success + self.failed + self.cancelled

    def add(self, status: UnitStatus, count: int = 1) -> None:
        setattr(self, status.value, getattr(self, status.value) + count)


@dataclass(slots=True)
class TaskDetails:
    """Task view with unit counts, units and event stream."""

    task: TaskView
    counts: StatusCounts
    units: list[SubTaskView]
    events: list[TaskEventView]


@dataclass(slots=True, frozen=True)
class CancelResult:
    """Per-status counts reported after cancelling a task."""

    task_id: str
    cancelled_count: int
    completed_count: int
    already_cancelled_count: int


@dataclass(slots=True, frozen=True)
class UnitRetryOutcome:
    """Result of re-arming one failed unit during a bulk retry."""

    sub_task_id: str
    retried: bool
    error: str | None = None


@dataclass(slots=True)
class BulkRetryResult:
    """Per-unit outcomes of a non-atomic bulk retry."""

    task_id: str
    outcomes: list[UnitRetryOutcome] = field(default_factory=list)

    @property
    def retried_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.retried)

    @property
    def failed_outcomes(self) -> list[UnitRetryOutcome]:
        return [outcome for outcome in self.outcomes if not outcome.retried]
