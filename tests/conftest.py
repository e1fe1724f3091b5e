"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from pathlib import Path

import pytest

from batchforge.orchestrator.models import TaskCreate, TaskView
from batchforge.orchestrator.repository import OrchestratorRepository
from batchforge.orchestrator.services import SubmissionService

_BATCHFORGE_ENV = (
    "BATCHFORGE_DB_PATH",
    "BATCHFORGE_LOG_LEVEL",
    "BATCHFORGE_MAX_BATCH_SIZE",
    "BATCHFORGE_BATCH_WARNING_THRESHOLD",
    "BATCHFORGE_DEFAULT_VARIANT_COUNT",
    "BATCHFORGE_INCLUDE_BASE_STYLE",
    "BATCHFORGE_STYLES_PATH",
    "BATCHFORGE_WORKER_ID",
    "BATCHFORGE_WORKER_CONCURRENCY",
    "BATCHFORGE_LEASE_SECONDS",
    "BATCHFORGE_MAX_RETRY_ATTEMPTS",
    "BATCHFORGE_POLL_INTERVAL_SECONDS",
    "BATCHFORGE_RECLAIM_INTERVAL_SECONDS",
    "BATCHFORGE_MAX_RECLAIMS",
    "BATCHFORGE_BACKEND",
    "BATCHFORGE_BACKEND_URL",
    "BATCHFORGE_BACKEND_API_KEY",
    "BATCHFORGE_BACKEND_TIMEOUT_SECONDS",
    "BATCHFORGE_SQLITE_BUSY_TIMEOUT_MS",
)


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep developer BATCHFORGE_* variables out of the tests."""
    for name in _BATCHFORGE_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("BATCHFORGE_POLL_INTERVAL_SECONDS", "0")


@pytest.fixture()
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "batchforge.db"


@pytest.fixture()
def repository(db_path: Path) -> Iterator[OrchestratorRepository]:
    repo = OrchestratorRepository(db_path)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def make_task(repository: OrchestratorRepository) -> Callable[..., TaskView]:
    """Create, submit and expand a task; returns the ``processing`` task view."""

    def _make(
        *,
        subject: str = "a lighthouse at dusk",
        style_ids: tuple[str, ...] = (),
        model_ids: tuple[str, ...] = ("model-a",),
        batch_size: int = 1,
        variant_count: int = 1,
        include_base_style: bool = True,
        seed: int | None = None,
    ) -> TaskView:
        service = SubmissionService(repository=repository)
        task, _ = service.create_task(
            TaskCreate(
                subject=subject,
                style_ids=list(style_ids),
                model_ids=list(model_ids),
                batch_size=batch_size,
                include_base_style=include_base_style,
                variant_count=variant_count,
                seed=seed,
            ),
        )
        service.submit_task(task.task_id)
        return service.expand_task(task.task_id)

    return _make
