"""Controllers for batchforge CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from batchforge.config import Settings
from batchforge.orchestrator.backend import (
    EchoBackend,
    GenerationBackend,
    HttpGenerationBackend,
)
from batchforge.orchestrator.backend.template_expander import template_variants
from batchforge.orchestrator.cancellation import CancellationCoordinator
from batchforge.orchestrator.errors import ValidationError
from batchforge.orchestrator.models import (
    AspectRatio,
    PromptVariant,
    SubmissionContext,
    TaskCreate,
    TaskStatus,
)
from batchforge.orchestrator.reclaimer import ZombieReclaimer
from batchforge.orchestrator.repository import OrchestratorRepository
from batchforge.orchestrator.retry import RetryCoordinator
from batchforge.orchestrator.services import (
    SubmissionService,
    preview_fission,
)
from batchforge.orchestrator.styles import StyleCatalog
from batchforge.orchestrator.worker import UnitWorker, WorkerPool, WorkerRunSummary


@dataclass(slots=True)
class FissionPreviewCommand:
    """CLI input for a dry-run fission calculation."""

    variant_count: int
    style_ids: tuple[str, ...]
    model_ids: tuple[str, ...]
    batch_size: int
    include_base_style: bool | None


@dataclass(slots=True)
class TaskCreateCommand:
    """CLI input for creating a draft task."""

    db_path: Path | None
    subject: str
    style_ids: tuple[str, ...]
    model_ids: tuple[str, ...]
    batch_size: int
    variant_count: int | None
    include_base_style: bool | None
    aspect_ratio: str
    seed: int | None
    negative_prompt: str | None


@dataclass(slots=True)
class TaskMutateCommand:
    """CLI input for task commands addressed by id."""

    db_path: Path | None
    task_id: str


@dataclass(slots=True)
class TaskExpandCommand:
    """CLI input for expanding a queued task into units."""

    db_path: Path | None
    task_id: str
    variants: tuple[str, ...]


@dataclass(slots=True)
class TaskListCommand:
    """CLI input for task listing."""

    db_path: Path | None
    status: str | None
    limit: int


@dataclass(slots=True)
class TaskInspectCommand:
    """CLI input for task details."""

    db_path: Path | None
    task_id: str
    unit_limit: int


@dataclass(slots=True)
class UnitRetryCommand:
    """CLI input for retrying one failed unit."""

    db_path: Path | None
    sub_task_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for running workers."""

    db_path: Path | None
    once: bool
    max_units: int | None
    concurrency: int | None
    max_idle_polls: int


@dataclass(slots=True)
class ReclaimCommand:
    """CLI input for the expired-lease sweep."""

    db_path: Path | None
    once: bool
    max_sweeps: int | None


class OrchestratorCliController:
    """Coordinates fission, task lifecycle, worker and reclaim CLI operations."""

    def preview_fission(self, command: FissionPreviewCommand) -> list[str]:
        settings = _settings(None)
        include_base = (
            settings.fission.include_base_style
            if command.include_base_style is None
            else command.include_base_style
        )
        result = preview_fission(
            SubmissionContext(
                prompt_variants=template_variants("preview", command.variant_count),
                style_ids=list(command.style_ids),
                model_ids=list(command.model_ids),
                batch_size=command.batch_size,
                include_base_style=include_base,
            ),
            max_batch_size=settings.fission.max_batch_size,
            warning_threshold=settings.fission.batch_warning_threshold,
        )
        breakdown = result.breakdown
        lines = [
            f"Total units: {result.total}",
            "Breakdown: "
            f"prompts={breakdown.prompt_count} styles={breakdown.style_count} "
            f"models={breakdown.model_count} batch_size={breakdown.batch_size}",
        ]
        if result.warning:
            lines.append(f"Warning: {result.warning}")
        return lines

    def create_task(self, command: TaskCreateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task, fission = _submission_service(settings, repository).create_task(
                TaskCreate(
                    subject=command.subject,
                    style_ids=list(command.style_ids),
                    model_ids=list(command.model_ids),
                    batch_size=command.batch_size,
                    include_base_style=(
                        settings.fission.include_base_style
                        if command.include_base_style is None
                        else command.include_base_style
                    ),
                    variant_count=command.variant_count or settings.fission.default_variant_count,
                    aspect_ratio=AspectRatio(command.aspect_ratio),
                    seed=command.seed,
                    negative_prompt=command.negative_prompt,
                ),
            )

        lines = [
            f"Task created: task_id={task.task_id} status={task.status.value} "
            f"expected_units={task.total_expected}",
        ]
        if fission.warning:
            lines.append(f"Warning: {fission.warning}")
        return lines

    def submit_task(self, command: TaskMutateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            task = _submission_service(settings, repository).submit_task(command.task_id)
        return [f"Task submitted: {task.task_id} status={task.status.value}"]

    def expand_task(self, command: TaskExpandCommand) -> list[str]:
        settings = _settings(command.db_path)
        variants = [
            _parse_variant(raw, index=index)
            for index, raw in enumerate(command.variants, start=1)
        ]
        with _repository(settings) as repository:
            task = _submission_service(settings, repository).expand_task(
                command.task_id,
                variants or None,
            )
        return [
            f"Task expanded: {task.task_id} status={task.status.value} "
            f"units={task.total_expected} variants={len(task.prompt_variants)}",
        ]

    def list_tasks(self, command: TaskListCommand) -> list[str]:
        settings = _settings(command.db_path)
        status_filter = TaskStatus(command.status) if command.status else None
        with _repository(settings) as repository:
            tasks = repository.list_tasks(status=status_filter, limit=command.limit)

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.task_id} status={task.status.value} "
                f"units={task.total_expected} created_at={task.created_at.isoformat()} "
                f"subject={task.subject!r}",
            )
        return lines

    def inspect_task(self, command: TaskInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            details = repository.get_task_details(task_id=command.task_id)
        if details is None:
            return [f"Task not found: {command.task_id}"]

        task = details.task
        counts = details.counts
        lines = [
            f"Task: {task.task_id}",
            f"Subject: {task.subject}",
            f"Status: {task.status.value}",
            f"Styles: {', '.join(task.style_ids) or '-'}",
            f"Models: {', '.join(task.model_ids) or '-'}",
            f"Batch size: {task.batch_size}",
            f"Expected units: {task.total_expected}",
            "Units: "
            f"pending={counts.pending} processing={counts.processing} "
            f"success={counts.success} failed={counts.failed} cancelled={counts.cancelled}",
        ]
        for unit in details.units[: command.unit_limit]:
            error = f" error={unit.error_category.value}" if unit.error_category else ""
            lines.append(
                f"  #{unit.sequence} {unit.sub_task_id} {unit.status.value} "
                f"variant={unit.variant_id} style={unit.style_id} model={unit.model_id} "
                f"batch={unit.batch_index} retries={unit.retry_count}{error}",
            )
        if len(details.units) > command.unit_limit:
            lines.append(f"  ... {len(details.units) - command.unit_limit} more units")
        lines.append(f"Events: {len(details.events)}")
        for event in details.events:
            lines.append(
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from or '-'} -> {event.status_to or '-'}"
                + (f" unit={event.sub_task_id}" if event.sub_task_id else ""),
            )
        return lines

    def cancel_task(self, command: TaskMutateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            result = CancellationCoordinator(repository=repository).cancel_task(command.task_id)
        return [
            f"Task cancelled: {result.task_id}",
            f"Units: cancelled={result.cancelled_count} completed={result.completed_count} "
            f"already_cancelled={result.already_cancelled_count}",
        ]

    def retry_failed(self, command: TaskMutateCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            result = RetryCoordinator(repository=repository).retry_failed(command.task_id)

        lines = [
            f"Retried units: {result.retried_count}/{len(result.outcomes)} "
            f"(task_id={result.task_id})",
        ]
        for outcome in result.failed_outcomes:
            lines.append(f"  {outcome.sub_task_id} not retried: {outcome.error}")
        return lines

    def retry_unit(self, command: UnitRetryCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            retried = RetryCoordinator(repository=repository).retry_unit(command.sub_task_id)
        if not retried:
            return [f"Unit changed concurrently, not retried: {command.sub_task_id}"]
        return [f"Unit re-queued: {command.sub_task_id}"]

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = _settings(command.db_path)
        concurrency = command.concurrency or settings.worker.concurrency
        with _repository(settings) as repository, _backend(settings) as backend:
            if command.once or concurrency == 1:
                worker = UnitWorker(
                    repository=repository,
                    backend=backend,
                    worker_id=settings.worker.worker_id,
                    lease_seconds=settings.worker.lease_seconds,
                    max_retry_attempts=settings.worker.max_retry_attempts,
                    poll_interval_seconds=settings.worker.poll_interval_seconds,
                )
                summary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(
                        max_units=command.max_units,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
            else:
                summary = WorkerPool(
                    db_path=settings.db_path,
                    backend=backend,
                    concurrency=concurrency,
                    worker_id_prefix=settings.worker.worker_id,
                    lease_seconds=settings.worker.lease_seconds,
                    max_retry_attempts=settings.worker.max_retry_attempts,
                    poll_interval_seconds=settings.worker.poll_interval_seconds,
                    sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
                ).run(max_units=command.max_units, max_idle_polls=command.max_idle_polls)
        return [_render_worker_summary(summary)]

    def reclaim(self, command: ReclaimCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            reclaimer = ZombieReclaimer(
                repository=repository,
                max_reclaims=settings.reclaim.max_reclaims,
            )
            if command.once:
                summary = reclaimer.sweep()
            else:
                summary = reclaimer.run_forever(
                    interval_seconds=settings.reclaim.interval_seconds,
                    max_sweeps=command.max_sweeps,
                )
        return [
            "Reclaim summary: "
            f"sweeps={summary.sweeps} reclaimed={summary.reclaimed} "
            f"exhausted={summary.exhausted} cancelled={summary.cancelled} "
            f"lost_races={summary.lost_races}",
        ]


def _render_worker_summary(summary: WorkerRunSummary) -> str:
    return (
        "Worker summary: "
        f"processed={summary.processed} succeeded={summary.succeeded} "
        f"failed={summary.failed} retried={summary.retried} "
        f"cancelled={summary.cancelled} lost={summary.lost} idle_polls={summary.idle_polls}"
    )


def _parse_variant(raw: str, *, index: int) -> PromptVariant:
    parts = raw.split("|", 2)
    if len(parts) == 1:
        return PromptVariant(variant_id=f"v{index}", name=f"Variant {index}", text=raw.strip())
    if len(parts) != 3:  # noqa: PLR2004
        raise ValidationError(
            f"Invalid --variant value {raw!r}. Expected '<text>' or '<id>|<name>|<text>'.",
        )
    variant_id, name, text = (part.strip() for part in parts)
    if not variant_id:
        raise ValidationError(f"Invalid --variant value {raw!r}: empty variant id.")
    return PromptVariant(variant_id=variant_id, name=name or variant_id, text=text)


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _submission_service(
    settings: Settings,
    repository: OrchestratorRepository,
) -> SubmissionService:
    return SubmissionService(
        repository=repository,
        styles=StyleCatalog.from_path(settings.fission.styles_path),
        max_batch_size=settings.fission.max_batch_size,
        warning_threshold=settings.fission.batch_warning_threshold,
    )


@contextmanager
def _backend(settings: Settings) -> Iterator[GenerationBackend]:
    if settings.backend.kind == "echo":
        yield EchoBackend()
        return
    if settings.backend.url is None:
        raise ValueError("BATCHFORGE_BACKEND_URL is required when BATCHFORGE_BACKEND=http.")
    backend = HttpGenerationBackend(
        base_url=settings.backend.url,
        api_key=settings.backend.api_key,
        timeout_seconds=settings.backend.timeout_seconds,
    )
    try:
        yield backend
    finally:
        backend.close()


@contextmanager
def _repository(settings: Settings) -> Iterator[OrchestratorRepository]:
    repository = OrchestratorRepository(
        settings.db_path,
        sqlite_busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
