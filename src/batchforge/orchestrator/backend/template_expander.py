"""Offline prompt expansion used when no variants are supplied."""

from __future__ import annotations

from batchforge.orchestrator.models import PromptVariant

DEFAULT_VARIANT_NAMES = (
    "Realistic",
    "Abstract",
    "Artistic",
    "Cinematic",
    "Surreal",
    "Minimalist",
    "Dramatic",
    "Whimsical",
    "Dark",
    "Vibrant",
)
QUALITY_SUFFIX = "high quality, detailed, professional, masterpiece"


def template_variants(subject: str, count: int) -> list[PromptVariant]:
    """``count`` variants of ``subject``, one named look each.

    Past the named looks the name falls back to ``Variant N``, so texts stay
    distinct for any count.
    """

    variants: list[PromptVariant] = []
    for index in range(count):
        name = (
            DEFAULT_VARIANT_NAMES[index]
            if index < len(DEFAULT_VARIANT_NAMES)
            else f"Variant {index + 1}"
        )
        variants.append(
            PromptVariant(
                variant_id=f"variant-{index + 1}",
                name=name,
                text=f"{subject}, {name.lower()} style, {QUALITY_SUFFIX}",
            ),
        )
    return variants


class TemplateExpander:
    """``PromptExpander`` that needs no model: subject plus a fixed look per variant."""

    def expand(self, subject: str, count: int) -> list[PromptVariant]:
        return template_variants(subject.strip(), count)
