from __future__ import annotations

import re
from pathlib import Path

import allure
from click.testing import CliRunner

from batchforge.main import batchforge
from batchforge.orchestrator.models import ErrorCategory, TaskStatus, UnitStatus
from batchforge.orchestrator.repository import OrchestratorRepository

pytestmark = [
    allure.epic("Operations"),
    allure.feature("CLI"),
]


def _create_task(runner: CliRunner, db_path: Path, *extra: str) -> str:
    result = runner.invoke(
        batchforge,
        [
            "task",
            "create",
            "--db-path",
            str(db_path),
            "--subject",
            "a glass teapot",
            "--style",
            "anime",
            "--model",
            "m1",
            "--variants",
            "2",
            *extra,
        ],
    )
    assert result.exit_code == 0, result.output
    match = re.search(r"task_id=(\S+)", result.output)
    assert match is not None
    return match.group(1)


def test_fission_preview_prints_breakdown_and_warning() -> None:
    runner = CliRunner()

    result = runner.invoke(
        batchforge,
        [
            "fission",
            "preview",
            "--variants",
            "3",
            "--style",
            "cinematic",
            "--style",
            "anime",
            "--style",
            "watercolor",
            "--style",
            "ghibli",
            "--model",
            "m1",
            "--model",
            "m2",
            "--model",
            "m3",
            "--batch-size",
            "20",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Total units: 900" in result.output
    assert "prompts=3 styles=5 models=3 batch_size=20" in result.output
    assert "Warning: Large batch" in result.output


def test_fission_preview_without_base_style() -> None:
    runner = CliRunner()

    result = runner.invoke(
        batchforge,
        [
            "fission",
            "preview",
            "--variants",
            "1",
            "--style",
            "anime",
            "--no-base-style",
            "--model",
            "m1",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Total units: 1" in result.output
    assert "Warning" not in result.output


def test_fission_preview_rejects_oversized_batch() -> None:
    runner = CliRunner()

    result = runner.invoke(
        batchforge,
        ["fission", "preview", "--model", "m1", "--batch-size", "51"],
    )

    assert result.exit_code != 0
    assert "batch_size" in result.output


def test_cli_full_lifecycle(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    task_id = _create_task(runner, db_path, "--batch-size", "2", "--seed", "5")

    submit = runner.invoke(
        batchforge,
        ["task", "submit", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert submit.exit_code == 0, submit.output
    assert "status=queued" in submit.output

    expand = runner.invoke(
        batchforge,
        [
            "task",
            "expand",
            "--db-path",
            str(db_path),
            "--task-id",
            task_id,
            "--variant",
            "day|Daylight|a glass teapot in sunlight",
            "--variant",
            "a glass teapot at night",
        ],
    )
    assert expand.exit_code == 0, expand.output
    assert "units=8 variants=2" in expand.output

    worker = runner.invoke(
        batchforge,
        ["worker", "--db-path", str(db_path), "--loop", "--concurrency", "2"],
    )
    assert worker.exit_code == 0, worker.output
    assert "processed=8 succeeded=8" in worker.output

    listing = runner.invoke(
        batchforge,
        ["task", "list", "--db-path", str(db_path), "--status", "completed"],
    )
    assert listing.exit_code == 0, listing.output
    assert "Tasks: 1" in listing.output
    assert task_id in listing.output

    inspect = runner.invoke(
        batchforge,
        ["task", "inspect", "--db-path", str(db_path), "--task-id", task_id, "--unit-limit", "3"],
    )
    assert inspect.exit_code == 0, inspect.output
    assert "Status: completed" in inspect.output
    assert "success=8" in inspect.output
    assert "variant=day style=base model=m1 batch=0" in inspect.output
    assert "... 5 more units" in inspect.output
    assert "expanded" in inspect.output


def test_cli_cancel_and_retry_commands(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()
    task_id = _create_task(runner, db_path, "--batch-size", "2")
    runner.invoke(batchforge, ["task", "submit", "--db-path", str(db_path), "--task-id", task_id])
    runner.invoke(batchforge, ["task", "expand", "--db-path", str(db_path), "--task-id", task_id])

    repository = OrchestratorRepository(db_path)
    first = repository.claim_next_unit(worker_id="w")
    assert first is not None
    repository.fail_unit(
        sub_task_id=first.sub_task_id,
        error_category=ErrorCategory.PROVIDER_ERROR,
        detail="upstream 500",
        worker_id="w",
    )
    second = repository.claim_next_unit(worker_id="w")
    assert second is not None
    repository.fail_unit(
        sub_task_id=second.sub_task_id,
        error_category=ErrorCategory.PROVIDER_ERROR,
        detail="upstream 500",
        worker_id="w",
    )

    retry_unit = runner.invoke(
        batchforge,
        ["unit", "retry", "--db-path", str(db_path), "--unit-id", first.sub_task_id],
    )
    assert retry_unit.exit_code == 0, retry_unit.output
    assert f"Unit re-queued: {first.sub_task_id}" in retry_unit.output

    retry_again = runner.invoke(
        batchforge,
        ["unit", "retry", "--db-path", str(db_path), "--unit-id", first.sub_task_id],
    )
    assert retry_again.exit_code != 0
    assert "pending" in retry_again.output

    retry_failed = runner.invoke(
        batchforge,
        ["task", "retry-failed", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert retry_failed.exit_code == 0, retry_failed.output
    assert "Retried units: 1/1" in retry_failed.output

    cancel = runner.invoke(
        batchforge,
        ["task", "cancel", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert cancel.exit_code == 0, cancel.output
    assert "cancelled=8 completed=0 already_cancelled=0" in cancel.output

    cancel_again = runner.invoke(
        batchforge,
        ["task", "cancel", "--db-path", str(db_path), "--task-id", task_id],
    )
    assert cancel_again.exit_code != 0

    task = repository.get_task(task_id=task_id)
    assert task is not None
    assert task.status == TaskStatus.CANCELLED
    assert repository.count_units(task_id=task_id).cancelled == 8
    unit = repository.get_unit(sub_task_id=first.sub_task_id)
    assert unit is not None
    assert unit.status == UnitStatus.CANCELLED
    repository.close()


def test_cli_reclaim_once_reports_summary(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    runner = CliRunner()

    result = runner.invoke(batchforge, ["reclaim", "--db-path", str(db_path), "--once"])

    assert result.exit_code == 0, result.output
    assert (
        "Reclaim summary: sweeps=1 reclaimed=0 exhausted=0 cancelled=0 lost_races=0"
        in result.output
    )


def test_cli_worker_once_without_work(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(batchforge, ["worker", "--db-path", str(tmp_path / "cli.db")])

    assert result.exit_code == 0, result.output
    assert "processed=0" in result.output
    assert "idle_polls=1" in result.output


def test_cli_unknown_task_is_reported(tmp_path: Path) -> None:
    runner = CliRunner()

    result = runner.invoke(
        batchforge,
        ["task", "cancel", "--db-path", str(tmp_path / "cli.db"), "--task-id", "missing"],
    )

    assert result.exit_code != 0
    assert "missing" in result.output


def test_cli_http_backend_requires_url(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("BATCHFORGE_BACKEND", "http")
    runner = CliRunner()

    result = runner.invoke(batchforge, ["worker", "--db-path", str(tmp_path / "cli.db")])

    assert result.exit_code != 0
    assert "BATCHFORGE_BACKEND_URL" in result.output
