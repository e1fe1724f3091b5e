"""Expand a submission into the ordered cross product of unit specifications."""

from __future__ import annotations

from batchforge.orchestrator.errors import ValidationError
from batchforge.orchestrator.fission import (
    calculate_fission_for_submission,
    effective_model_ids,
    effective_style_ids,
)
from batchforge.orchestrator.models import SubmissionContext, SubTaskSpec


def create_unit_specs(context: SubmissionContext, *, task_id: str) -> list[SubTaskSpec]:
    """Return one spec per (variant, style, model, batch index), in a stable order.

    Order is variant-major: variants in submission order, then effective styles
    (base first when included), then models, then batch indices ``0..batch_size-1``.
    """

    _ensure_unique_variant_ids(context)
    style_ids = effective_style_ids(
        context.style_ids,
        include_base_style=context.include_base_style,
    )
    model_ids = effective_model_ids(context.model_ids)

    specs: list[SubTaskSpec] = []
    for variant in context.prompt_variants:
        for style_id in style_ids:
            for model_id in model_ids:
                for batch_index in range(context.batch_size):
                    specs.append(
                        SubTaskSpec(
                            task_id=task_id,
                            sequence=len(specs),
                            variant_id=variant.variant_id,
                            variant_name=variant.name,
                            variant_text=variant.text,
                            style_id=style_id,
                            model_id=model_id,
                            batch_index=batch_index,
                        ),
                    )

    expected = calculate_fission_for_submission(context).total
    if len(specs) != expected:
        raise RuntimeError(
            f"Unit spec count {len(specs)} does not match fission total {expected} "
            f"(task_id={task_id}).",
        )
    return specs


def _ensure_unique_variant_ids(context: SubmissionContext) -> None:
    seen: set[str] = set()
    for variant in context.prompt_variants:
        if variant.variant_id in seen:
            raise ValidationError(f"Duplicate prompt variant id: {variant.variant_id!r}")
        seen.add(variant.variant_id)
