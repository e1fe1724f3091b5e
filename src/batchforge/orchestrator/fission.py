"""Fission arithmetic: how many units a request expands into."""

from __future__ import annotations

from collections.abc import Iterable

from batchforge.orchestrator.errors import ValidationError
from batchforge.orchestrator.models import (
    BASE_STYLE_ID,
    FissionBreakdown,
    FissionResult,
    SubmissionContext,
)

BATCH_WARNING_THRESHOLD = 500
MAX_BATCH_SIZE = 50
DEFAULT_BATCH_SIZE = 1
DEFAULT_VARIANT_COUNT = 3


def calculate_fission(
    *,
    prompt_count: int,
    style_count: int,
    model_count: int,
    batch_size: int,
    warning_threshold: int = BATCH_WARNING_THRESHOLD,
) -> FissionResult:
    """Return the unit count for four cardinalities.

    Pure and total: inputs are expected to be validated by the caller
    (see ``validate_fission_input``). A zero cardinality yields zero units
    and never a warning.
    """

    total = prompt_count * style_count * model_count * batch_size
    breakdown = FissionBreakdown(
        prompt_count=prompt_count,
        style_count=style_count,
        model_count=model_count,
        batch_size=batch_size,
    )
    warning = None
    if total > warning_threshold:
        warning = (
            f"Large batch: {total} images will be generated. "
            "This may take significant time and resources. "
            "Consider reducing the batch size or selections."
        )
    return FissionResult(total=total, breakdown=breakdown, warning=warning)


def validate_fission_input(
    *,
    prompt_count: int,
    style_count: int,
    model_count: int,
    batch_size: int,
    max_batch_size: int = MAX_BATCH_SIZE,
) -> None:
    """Reject non-positive cardinalities and oversized batches."""

    for name, value in (
        ("prompt_count", prompt_count),
        ("style_count", style_count),
        ("model_count", model_count),
        ("batch_size", batch_size),
    ):
        if value <= 0:
            raise ValidationError(f"{name} must be a positive integer, got {value}.")
    if batch_size > max_batch_size:
        raise ValidationError(
            f"batch_size must be <= {max_batch_size}, got {batch_size}.",
        )


def effective_style_ids(style_ids: Iterable[str], *, include_base_style: bool) -> list[str]:
    """Deduplicate selected styles; with the base style included it always comes first."""

    selected = _dedupe(style_ids)
    if not include_base_style:
        return selected
    return [BASE_STYLE_ID, *(style_id for style_id in selected if style_id != BASE_STYLE_ID)]


def effective_model_ids(model_ids: Iterable[str]) -> list[str]:
    return _dedupe(model_ids)


def calculate_fission_for_submission(
    context: SubmissionContext,
    *,
    warning_threshold: int = BATCH_WARNING_THRESHOLD,
) -> FissionResult:
    """Derive cardinalities from a submission context and compute its fission."""

    return calculate_fission(
        prompt_count=len(context.prompt_variants),
        style_count=len(
            effective_style_ids(
                context.style_ids,
                include_base_style=context.include_base_style,
            ),
        ),
        model_count=len(effective_model_ids(context.model_ids)),
        batch_size=context.batch_size,
        warning_threshold=warning_threshold,
    )


def _dedupe(values: Iterable[str]) -> list[str]:
    deduped: list[str] = []
    seen: set[str] = set()
    for value in values:
        normalized = value.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return deduped
