"""Task submission and expansion service."""

from __future__ import annotations

import logging
from dataclasses import replace

from batchforge.orchestrator.backend.base import PromptExpander
from batchforge.orchestrator.backend.template_expander import TemplateExpander, template_variants
from batchforge.orchestrator.errors import PreconditionError, ValidationError
from batchforge.orchestrator.fission import (
    BATCH_WARNING_THRESHOLD,
    MAX_BATCH_SIZE,
    calculate_fission_for_submission,
    effective_model_ids,
    effective_style_ids,
    validate_fission_input,
)
from batchforge.orchestrator.models import (
    FissionResult,
    PromptVariant,
    SubmissionContext,
    SubTaskWrite,
    TaskCreate,
    TaskStatus,
    TaskView,
)
from batchforge.orchestrator.repository import OrchestratorRepository
from batchforge.orchestrator.spec_generator import create_unit_specs
from batchforge.orchestrator.styles import StyleCatalog, merge_prompt

logger = logging.getLogger(__name__)


class SubmissionService:
    """Drives a task from ``draft`` through ``queued`` and ``expanding`` to ``processing``."""

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        styles: StyleCatalog | None = None,
        expander: PromptExpander | None = None,
        max_batch_size: int = MAX_BATCH_SIZE,
        warning_threshold: int = BATCH_WARNING_THRESHOLD,
    ) -> None:
        self.repository = repository
        self.styles = styles or StyleCatalog()
        self.expander = expander or TemplateExpander()
        self.max_batch_size = max_batch_size
        self.warning_threshold = warning_threshold

    def preview(self, context: SubmissionContext) -> FissionResult:
        return preview_fission(
            context,
            max_batch_size=self.max_batch_size,
            warning_threshold=self.warning_threshold,
        )

    def create_task(self, payload: TaskCreate) -> tuple[TaskView, FissionResult]:
        """Persist a draft task sized for ``payload.variant_count`` variants."""

        if not payload.subject.strip():
            raise ValidationError("subject must not be empty.")
        fission = self.preview(
            SubmissionContext(
                prompt_variants=template_variants(payload.subject, payload.variant_count),
                style_ids=payload.style_ids,
                model_ids=payload.model_ids,
                batch_size=payload.batch_size,
                include_base_style=payload.include_base_style,
            ),
        )
        payload = replace(
            payload,
            style_ids=effective_style_ids(
                payload.style_ids,
                include_base_style=payload.include_base_style,
            ),
            model_ids=effective_model_ids(payload.model_ids),
        )
        task = self.repository.create_task(payload, total_expected=fission.total)
        if fission.warning:
            logger.warning("Task %s: %s", task.task_id, fission.warning)
        return task, fission

    def submit_task(self, task_id: str) -> TaskView:
        return self.repository.transition_task(
            task_id=task_id,
            target=TaskStatus.QUEUED,
            event_type="submitted",
        )

    def expand_task(
        self,
        task_id: str,
        prompt_variants: list[PromptVariant] | None = None,
    ) -> TaskView:
        """Materialize every unit of a queued task.

        Without explicit variants the expander derives ``variant_count``
        variants from the subject. A validation failure during expansion
        marks the task ``failed`` and re-raises.
        """

        task = self.repository.transition_task(
            task_id=task_id,
            target=TaskStatus.EXPANDING,
            event_type="expansion_started",
        )
        variants = prompt_variants or self.expander.expand(task.subject, task.variant_count)
        try:
            units = self._build_units(task, variants)
        except ValidationError as error:
            logger.warning("Expansion of task %s failed: %s", task_id, error)
            try:
                self.repository.transition_task(
                    task_id=task_id,
                    target=TaskStatus.FAILED,
                    event_type="expansion_failed",
                    details={"error": str(error)},
                )
            except PreconditionError as transition_error:
                logger.info("Task %s not marked failed: %s", task_id, transition_error)
            raise

        expanded = self.repository.materialize_units(
            task_id=task_id,
            prompt_variants=variants,
            units=units,
        )
        logger.info("Task %s expanded into %d units", task_id, expanded.total_expected)
        return expanded

    def _build_units(self, task: TaskView, variants: list[PromptVariant]) -> list[SubTaskWrite]:
        context = SubmissionContext(
            prompt_variants=variants,
            style_ids=task.style_ids,
            model_ids=task.model_ids,
            batch_size=task.batch_size,
            include_base_style=task.include_base_style,
        )
        _validate(context, max_batch_size=self.max_batch_size)
        for variant in variants:
            if not variant.text.strip():
                raise ValidationError(f"Prompt variant {variant.variant_id!r} has empty text.")

        units: list[SubTaskWrite] = []
        for spec in create_unit_specs(context, task_id=task.task_id):
            merged = merge_prompt(
                spec.variant_text,
                self.styles.get(spec.style_id),
                extra_negative_prompt=task.negative_prompt,
            )
            units.append(
                SubTaskWrite(
                    spec=spec,
                    final_prompt=merged.final_prompt,
                    negative_prompt=merged.negative_prompt,
                    aspect_ratio=task.aspect_ratio,
                    seed=task.seed + spec.batch_index if task.seed is not None else None,
                ),
            )
        return units


def preview_fission(
    context: SubmissionContext,
    *,
    max_batch_size: int = MAX_BATCH_SIZE,
    warning_threshold: int = BATCH_WARNING_THRESHOLD,
) -> FissionResult:
    """Validate a submission and return its fission without touching the store."""

    _validate(context, max_batch_size=max_batch_size)
    return calculate_fission_for_submission(context, warning_threshold=warning_threshold)


def _validate(context: SubmissionContext, *, max_batch_size: int) -> None:
    validate_fission_input(
        prompt_count=len(context.prompt_variants),
        style_count=len(
            effective_style_ids(
                context.style_ids,
                include_base_style=context.include_base_style,
            ),
        ),
        model_count=len(effective_model_ids(context.model_ids)),
        batch_size=context.batch_size,
        max_batch_size=max_batch_size,
    )
