"""Backend interface for unit execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from batchforge.orchestrator.models import ErrorCategory, PromptVariant, SubTaskView


@dataclass(slots=True, frozen=True)
class GenerationRequest:
    """Inputs required to execute one unit."""

    sub_task_id: str
    task_id: str
    model_id: str
    style_id: str
    prompt: str
    negative_prompt: str | None
    aspect_ratio: str
    seed: int | None
    batch_index: int

    @classmethod
    def from_unit(cls, unit: SubTaskView) -> GenerationRequest:
        return cls(
            sub_task_id=unit.sub_task_id,
            task_id=unit.task_id,
            model_id=unit.model_id,
            style_id=unit.style_id,
            prompt=unit.final_prompt,
            negative_prompt=unit.negative_prompt,
            aspect_ratio=unit.aspect_ratio.value,
            seed=unit.seed,
            batch_index=unit.batch_index,
        )


@dataclass(slots=True)
class GenerationResult:
    """Execution outcome: success with metadata, or a categorized failure."""

    success: bool
    metadata: dict[str, Any] = field(default_factory=dict)
    error_category: ErrorCategory | None = None
    error_message: str | None = None
    retryable: bool = False

    @classmethod
    def ok(cls, metadata: dict[str, Any]) -> GenerationResult:
        return cls(success=True, metadata=metadata)

    @classmethod
    def failure(cls, category: ErrorCategory, message: str) -> GenerationResult:
        return cls(
            success=False,
            error_category=category,
            error_message=message,
            retryable=category.retryable,
        )


class GenerationBackend(Protocol):
    """Protocol implemented by generation providers."""

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """Execute one unit and return its outcome."""


class PromptExpander(Protocol):
    """Turns a task subject into prompt variants when none were supplied."""

    def expand(self, subject: str, count: int) -> list[PromptVariant]:
        """Return exactly ``count`` variants with unique ids."""
