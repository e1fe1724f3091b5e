"""CLI entrypoint for batchforge."""

import logging
import os
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from batchforge import __version__
from batchforge.orchestrator.controllers import (
    FissionPreviewCommand,
    OrchestratorCliController,
    ReclaimCommand,
    TaskCreateCommand,
    TaskExpandCommand,
    TaskInspectCommand,
    TaskListCommand,
    TaskMutateCommand,
    UnitRetryCommand,
    WorkerCommand,
)
from batchforge.orchestrator.errors import NotFoundError, PreconditionError
from batchforge.orchestrator.models import AspectRatio, TaskStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = OrchestratorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="batchforge")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Log level; defaults to BATCHFORGE_LOG_LEVEL or WARNING.",
)
def batchforge(log_level: str | None) -> None:
    """Fan a generation request out into leased work units.

    Units are coordinated through SQLite conditional updates only:
    **claim**, **retry**, **cancel** and **reclaim** never need a broker.
    """

    level = (log_level or os.getenv("BATCHFORGE_LOG_LEVEL", "WARNING")).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@batchforge.group()
def fission() -> None:
    """Fission arithmetic."""


@fission.command("preview")
@click.option(
    "--variants",
    "variant_count",
    type=click.IntRange(min=1),
    default=3,
    show_default=True,
    help="Number of prompt variants.",
)
@click.option("--style", "style_ids", multiple=True, help="Style id. Can be repeated.")
@click.option(
    "--base-style/--no-base-style",
    default=None,
    help="Include the implicit base style (default from BATCHFORGE_INCLUDE_BASE_STYLE).",
)
@click.option("--model", "model_ids", multiple=True, required=True, help="Model id. Repeatable.")
@click.option(
    "--batch-size",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Repetitions per (variant, style, model).",
)
def fission_preview(
    variant_count: int,
    style_ids: tuple[str, ...],
    base_style: bool | None,
    model_ids: tuple[str, ...],
    batch_size: int,
) -> None:
    """Show how many units a request would expand into."""

    _run(
        lambda: CONTROLLER.preview_fission(
            FissionPreviewCommand(
                variant_count=variant_count,
                style_ids=style_ids,
                model_ids=model_ids,
                batch_size=batch_size,
                include_base_style=base_style,
            ),
        ),
    )


@batchforge.group()
def task() -> None:
    """Task lifecycle commands."""


@task.command("create")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--subject", required=True, help="What to generate.")
@click.option("--style", "style_ids", multiple=True, help="Style id. Can be repeated.")
@click.option("--model", "model_ids", multiple=True, required=True, help="Model id. Repeatable.")
@click.option(
    "--batch-size",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Repetitions per (variant, style, model).",
)
@click.option(
    "--variants",
    "variant_count",
    type=click.IntRange(min=1),
    default=None,
    help="Planned prompt variants (default from BATCHFORGE_DEFAULT_VARIANT_COUNT).",
)
@click.option(
    "--base-style/--no-base-style",
    default=None,
    help="Include the implicit base style (default from BATCHFORGE_INCLUDE_BASE_STYLE).",
)
@click.option(
    "--aspect-ratio",
    type=click.Choice([ratio.value for ratio in AspectRatio]),
    default=AspectRatio.SQUARE.value,
    show_default=True,
    help="Output aspect ratio.",
)
@click.option("--seed", type=int, default=None, help="Base seed; batch index is added per unit.")
@click.option("--negative-prompt", default=None, help="Extra negative prompt for every unit.")
def task_create(  # noqa: PLR0913
    db_path: Path | None,
    subject: str,
    style_ids: tuple[str, ...],
    model_ids: tuple[str, ...],
    batch_size: int,
    variant_count: int | None,
    base_style: bool | None,
    aspect_ratio: str,
    seed: int | None,
    negative_prompt: str | None,
) -> None:
    """Create a draft task."""

    _run(
        lambda: CONTROLLER.create_task(
            TaskCreateCommand(
                db_path=db_path,
                subject=subject,
                style_ids=style_ids,
                model_ids=model_ids,
                batch_size=batch_size,
                variant_count=variant_count,
                include_base_style=base_style,
                aspect_ratio=aspect_ratio,
                seed=seed,
                negative_prompt=negative_prompt,
            ),
        ),
    )


@task.command("submit")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_submit(db_path: Path | None, task_id: str) -> None:
    """Queue a draft task for expansion."""

    _run(lambda: CONTROLLER.submit_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@task.command("expand")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--variant",
    "variants",
    multiple=True,
    help="Prompt variant as `<text>` or `<id>|<name>|<text>`. Repeatable; "
    "defaults to the subject for each planned variant.",
)
def task_expand(db_path: Path | None, task_id: str, variants: tuple[str, ...]) -> None:
    """Expand a queued task into pending units."""

    _run(
        lambda: CONTROLLER.expand_task(
            TaskExpandCommand(db_path=db_path, task_id=task_id, variants=variants),
        ),
    )


@task.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=20,
    show_default=True,
    help="Max tasks to print.",
)
def task_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List recent tasks."""

    _run(
        lambda: CONTROLLER.list_tasks(
            TaskListCommand(
                db_path=db_path,
                status=status.lower() if status is not None else None,
                limit=limit,
            ),
        ),
    )


@task.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
@click.option(
    "--unit-limit",
    type=click.IntRange(min=0),
    default=50,
    show_default=True,
    help="Max units to print.",
)
def task_inspect(db_path: Path | None, task_id: str, unit_limit: int) -> None:
    """Inspect one task with unit counts, units and event history."""

    _run(
        lambda: CONTROLLER.inspect_task(
            TaskInspectCommand(db_path=db_path, task_id=task_id, unit_limit=unit_limit),
        ),
    )


@task.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a task; pending units are cancelled, in-flight units finish."""

    _run(lambda: CONTROLLER.cancel_task(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@task.command("retry-failed")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def task_retry_failed(db_path: Path | None, task_id: str) -> None:
    """Re-queue every failed unit of a task."""

    _run(lambda: CONTROLLER.retry_failed(TaskMutateCommand(db_path=db_path, task_id=task_id)))


@batchforge.group()
def unit() -> None:
    """Unit commands."""


@unit.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--unit-id", required=True, help="Unit (sub-task) id.")
def unit_retry(db_path: Path | None, unit_id: str) -> None:
    """Re-queue one failed unit."""

    _run(lambda: CONTROLLER.retry_unit(UnitRetryCommand(db_path=db_path, sub_task_id=unit_id)))


@batchforge.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one claim-execute cycle or loop until idle.",
)
@click.option(
    "--max-units",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed units in loop mode.",
)
@click.option(
    "--concurrency",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Worker threads in loop mode (default from BATCHFORGE_WORKER_CONCURRENCY).",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before a worker exits.",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_units: int | None,
    concurrency: int | None,
    max_idle_polls: int,
) -> None:
    """Run unit workers."""

    _run(
        lambda: CONTROLLER.run_worker(
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_units=max_units,
                concurrency=concurrency,
                max_idle_polls=max_idle_polls,
            ),
        ),
    )


@batchforge.command("reclaim")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one sweep or sweep every BATCHFORGE_RECLAIM_INTERVAL_SECONDS.",
)
@click.option(
    "--max-sweeps",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for sweeps in loop mode.",
)
def reclaim(db_path: Path | None, once: bool, max_sweeps: int | None) -> None:
    """Return units with expired leases to pending."""

    _run(
        lambda: CONTROLLER.reclaim(
            ReclaimCommand(db_path=db_path, once=once, max_sweeps=max_sweeps),
        ),
    )


def _run(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (ValueError, NotFoundError, PreconditionError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    batchforge()
