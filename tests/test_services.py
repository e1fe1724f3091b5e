from __future__ import annotations

import allure
import pytest

from batchforge.orchestrator.backend import TemplateExpander
from batchforge.orchestrator.errors import PreconditionError, ValidationError
from batchforge.orchestrator.models import (
    AspectRatio,
    PromptVariant,
    TaskCreate,
    TaskStatus,
)
from batchforge.orchestrator.repository import OrchestratorRepository
from batchforge.orchestrator.services import SubmissionService

pytestmark = [
    allure.epic("Task Lifecycle"),
    allure.feature("Submission & Expansion"),
]


def _create(service: SubmissionService, **overrides) -> str:
    payload = TaskCreate(
        subject=overrides.pop("subject", "a paper boat"),
        style_ids=overrides.pop("style_ids", ["anime"]),
        model_ids=overrides.pop("model_ids", ["m1", "m2"]),
        **overrides,
    )
    task, _ = service.create_task(payload)
    return task.task_id


def test_create_task_stores_draft_with_expected_units(
    repository: OrchestratorRepository,
) -> None:
    service = SubmissionService(repository=repository)

    task, fission = service.create_task(
        TaskCreate(
            subject="a paper boat",
            style_ids=["anime", "base", "anime"],
            model_ids=["m1", "m1", "m2"],
            batch_size=2,
            variant_count=3,
            aspect_ratio=AspectRatio.LANDSCAPE,
        ),
    )

    assert task.status == TaskStatus.DRAFT
    assert task.style_ids == ["base", "anime"]
    assert task.model_ids == ["m1", "m2"]
    assert task.total_expected == fission.total == 3 * 2 * 2 * 2
    assert task.aspect_ratio == AspectRatio.LANDSCAPE
    assert task.prompt_variants == []


def test_create_task_rejects_blank_subject(repository: OrchestratorRepository) -> None:
    service = SubmissionService(repository=repository)

    with pytest.raises(ValidationError, match="subject"):
        service.create_task(TaskCreate(subject="   ", style_ids=[], model_ids=["m"]))

    assert repository.list_tasks() == []


def test_create_task_rejects_oversized_batch(repository: OrchestratorRepository) -> None:
    service = SubmissionService(repository=repository, max_batch_size=4)

    with pytest.raises(ValidationError, match="batch_size"):
        service.create_task(
            TaskCreate(subject="x", style_ids=[], model_ids=["m"], batch_size=5),
        )

    assert repository.list_tasks() == []


def test_large_task_warns(repository: OrchestratorRepository, caplog) -> None:
    service = SubmissionService(repository=repository, warning_threshold=10)

    with caplog.at_level("WARNING"):
        _, fission = service.create_task(
            TaskCreate(subject="x", style_ids=[], model_ids=["m"], batch_size=11, variant_count=1),
        )

    assert fission.warning is not None
    assert "Large batch" in caplog.text


def test_expand_requires_submission(repository: OrchestratorRepository) -> None:
    service = SubmissionService(repository=repository)
    task_id = _create(service)

    with pytest.raises(PreconditionError) as error:
        service.expand_task(task_id)

    assert error.value.current_status == "draft"


def test_expand_with_explicit_variants_merges_styles(repository: OrchestratorRepository) -> None:
    service = SubmissionService(repository=repository)
    task_id = _create(
        service,
        negative_prompt="watermark",
        seed=100,
        batch_size=2,
    )
    service.submit_task(task_id)

    task = service.expand_task(
        task_id,
        [
            PromptVariant(variant_id="calm", name="Calm", text="a paper boat on a still pond"),
            PromptVariant(variant_id="storm", name="Storm", text="a paper boat in a storm"),
        ],
    )

    assert task.status == TaskStatus.PROCESSING
    assert task.total_expected == 2 * 2 * 2 * 2
    assert [variant.variant_id for variant in task.prompt_variants] == ["calm", "storm"]

    details = repository.get_task_details(task_id=task_id)
    assert details is not None
    assert details.counts.pending == 16
    first, second = details.units[0], details.units[1]
    assert (first.variant_id, first.style_id, first.model_id, first.batch_index) == (
        "calm",
        "base",
        "m1",
        0,
    )
    assert first.final_prompt == "a paper boat on a still pond"
    assert first.negative_prompt == "watermark"
    assert (first.seed, second.seed) == (100, 101)
    anime = next(unit for unit in details.units if unit.style_id == "anime")
    assert anime.final_prompt.startswith("anime artwork of a paper boat on a still pond")
    assert anime.negative_prompt is not None
    assert anime.negative_prompt.endswith(", watermark")
    assert [event.event_type for event in details.events] == [
        "created",
        "submitted",
        "expansion_started",
        "expanded",
    ]


def test_expand_defaults_to_distinct_template_variants(
    repository: OrchestratorRepository,
) -> None:
    service = SubmissionService(repository=repository)
    task_id = _create(service, variant_count=3, model_ids=["m1"], style_ids=[])
    service.submit_task(task_id)

    task = service.expand_task(task_id)

    assert task.total_expected == 3
    assert [variant.variant_id for variant in task.prompt_variants] == [
        "variant-1",
        "variant-2",
        "variant-3",
    ]
    assert [variant.name for variant in task.prompt_variants] == [
        "Realistic",
        "Abstract",
        "Artistic",
    ]
    assert task.prompt_variants[0].text == (
        "a paper boat, realistic style, high quality, detailed, professional, masterpiece"
    )
    details = repository.get_task_details(task_id=task_id)
    assert details is not None
    assert len({unit.final_prompt for unit in details.units}) == 3


def test_expand_uses_injected_expander(repository: OrchestratorRepository) -> None:
    class _MoodExpander:
        def expand(self, subject: str, count: int) -> list[PromptVariant]:
            return [
                PromptVariant(variant_id=f"mood-{index}", name=mood, text=f"{subject}, {mood}")
                for index, mood in enumerate(["calm", "stormy", "foggy"][:count])
            ]

    service = SubmissionService(repository=repository, expander=_MoodExpander())
    task_id = _create(service, variant_count=2, model_ids=["m1"], style_ids=[])
    service.submit_task(task_id)

    task = service.expand_task(task_id)

    assert [variant.text for variant in task.prompt_variants] == [
        "a paper boat, calm",
        "a paper boat, stormy",
    ]


def test_expand_with_invalid_variants_fails_task(repository: OrchestratorRepository) -> None:
    service = SubmissionService(repository=repository)
    task_id = _create(service)
    service.submit_task(task_id)

    with pytest.raises(ValidationError, match="empty text"):
        service.expand_task(
            task_id,
            [PromptVariant(variant_id="v1", name="Blank", text="  ")],
        )

    details = repository.get_task_details(task_id=task_id)
    assert details is not None
    assert details.task.status == TaskStatus.FAILED
    assert details.counts.total == 0
    assert details.events[-1].event_type == "expansion_failed"


def test_submit_twice_is_rejected(repository: OrchestratorRepository) -> None:
    service = SubmissionService(repository=repository)
    task_id = _create(service)
    service.submit_task(task_id)

    with pytest.raises(PreconditionError, match="cannot move from queued to queued"):
        service.submit_task(task_id)


def test_template_variants_stay_distinct_past_named_looks() -> None:
    variants = TemplateExpander().expand("  a paper boat ", 12)

    assert len({variant.text for variant in variants}) == 12
    assert len({variant.variant_id for variant in variants}) == 12
    assert variants[9].name == "Vibrant"
    assert variants[11].name == "Variant 12"
    assert variants[11].text.startswith("a paper boat, variant 12 style, ")
