from __future__ import annotations

import multiprocessing
import threading
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest

from batchforge.orchestrator.errors import NotFoundError, PreconditionError
from batchforge.orchestrator.models import (
    ErrorCategory,
    TaskCreate,
    TaskStatus,
    TaskView,
    UnitStatus,
)
from batchforge.orchestrator.repository import OrchestratorRepository
from batchforge.orchestrator.services import SubmissionService

pytestmark = [
    allure.epic("Queueless Coordination"),
    allure.feature("Atomic Claims"),
]


def _claim_in_process(  # pragma: no cover - executed in child process
    db_path: str,
    worker_id: str,
    start_event: multiprocessing.synchronize.Event,
    result_queue: multiprocessing.queues.Queue[tuple[str, str | None, str]],
) -> None:
    repository = OrchestratorRepository(Path(db_path))
    try:
        start_event.wait(timeout=5)
        unit = repository.claim_next_unit(worker_id=worker_id)
        result_queue.put((worker_id, unit.sub_task_id if unit else None, ""))
    except Exception as error:  # noqa: BLE001
        result_queue.put((worker_id, None, str(error)))
    finally:
        repository.close()


def test_claim_leases_unit_and_records_event(
    repository: OrchestratorRepository,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(seed=7)
    now = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

    claimed = repository.claim_next_unit(worker_id="worker-a", lease_seconds=60, now=now)

    assert claimed is not None
    assert claimed.task_id == task.task_id
    assert claimed.status == UnitStatus.PROCESSING
    assert claimed.lease_owner == "worker-a"
    assert claimed.lease_expires_at == now + timedelta(seconds=60)
    assert claimed.started_at == now
    assert claimed.final_prompt.startswith("a lighthouse at dusk, realistic style")
    assert claimed.seed == 7
    assert repository.claim_next_unit(worker_id="worker-b") is None

    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    claim_events = [event for event in details.events if event.event_type == "claimed"]
    assert len(claim_events) == 1
    assert claim_events[0].sub_task_id == claimed.sub_task_id
    assert claim_events[0].details["worker_id"] == "worker-a"


def test_claim_returns_none_when_no_pending_units(repository: OrchestratorRepository) -> None:
    assert repository.claim_next_unit(worker_id="worker-a") is None


def test_claim_order_is_oldest_task_then_sequence(
    repository: OrchestratorRepository,
    make_task: Callable[..., TaskView],
) -> None:
    first = make_task(model_ids=("m1", "m2"))
    second = make_task()

    claimed = [repository.claim_next_unit(worker_id="w") for _ in range(3)]

    assert [unit.task_id for unit in claimed if unit] == [
        first.task_id,
        first.task_id,
        second.task_id,
    ]
    assert [unit.model_id for unit in claimed[:2] if unit] == ["m1", "m2"]


def test_concurrent_thread_claims_are_exclusive(
    db_path: Path,
    make_task: Callable[..., TaskView],
) -> None:
    make_task()
    contenders = 8
    barrier = threading.Barrier(contenders)
    results: list[str | None] = []
    lock = threading.Lock()

    def _claim(index: int) -> None:
        repository = OrchestratorRepository(db_path)
        try:
            barrier.wait(timeout=5)
            unit = repository.claim_next_unit(worker_id=f"thread-{index}")
            with lock:
                results.append(unit.sub_task_id if unit else None)
        finally:
            repository.close()

    threads = [threading.Thread(target=_claim, args=(index,)) for index in range(contenders)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    winners = [result for result in results if result is not None]
    assert len(results) == contenders
    assert len(winners) == 1


def test_concurrent_claims_split_units_without_overlap(
    db_path: Path,
    make_task: Callable[..., TaskView],
) -> None:
    make_task(model_ids=("m1", "m2", "m3"), batch_size=4)
    claimed: list[str] = []
    lock = threading.Lock()

    def _drain(index: int) -> None:
        repository = OrchestratorRepository(db_path)
        try:
            while True:
                unit = repository.claim_next_unit(worker_id=f"thread-{index}")
                if unit is None:
                    return
                with lock:
                    claimed.append(unit.sub_task_id)
        finally:
            repository.close()

    threads = [threading.Thread(target=_drain, args=(index,)) for index in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    assert len(claimed) == 12
    assert len(set(claimed)) == 12


def test_claim_race_is_exclusive_across_processes(
    db_path: Path,
    make_task: Callable[..., TaskView],
) -> None:
    make_task()

    context = multiprocessing.get_context("spawn")
    start_event = context.Event()
    result_queue: multiprocessing.queues.Queue[tuple[str, str | None, str]] = context.Queue()
    processes = [
        context.Process(
            target=_claim_in_process,
            args=(str(db_path), f"proc-{index}", start_event, result_queue),
        )
        for index in range(3)
    ]
    for process in processes:
        process.start()
    start_event.set()
    for process in processes:
        process.join(timeout=20)
        assert process.exitcode == 0

    results = [result_queue.get(timeout=5) for _ in processes]
    assert [error for _, _, error in results if error] == []
    assert len([unit_id for _, unit_id, _ in results if unit_id is not None]) == 1


def test_complete_requires_lease_owner_and_derives_completed(
    repository: OrchestratorRepository,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task()
    unit = repository.claim_next_unit(worker_id="worker-a")
    assert unit is not None

    assert (
        repository.complete_unit(
            sub_task_id=unit.sub_task_id,
            result={"asset_id": "x"},
            worker_id="worker-b",
        )
        is False
    )
    assert repository.complete_unit(
        sub_task_id=unit.sub_task_id,
        result={"asset_id": "x"},
        worker_id="worker-a",
    )
    assert (
        repository.complete_unit(sub_task_id=unit.sub_task_id, result={"asset_id": "y"})
        is False
    )

    stored = repository.get_unit(sub_task_id=unit.sub_task_id)
    assert stored is not None
    assert stored.status == UnitStatus.SUCCESS
    assert stored.result == {"asset_id": "x"}
    assert stored.lease_owner is None
    assert stored.lease_expires_at is None
    assert stored.completed_at is not None

    refreshed = repository.get_task(task_id=task.task_id)
    assert refreshed is not None
    assert refreshed.status == TaskStatus.COMPLETED


def test_failures_derive_partial_failed_aggregate(
    repository: OrchestratorRepository,
    make_task: Callable[..., TaskView],
) -> None:
    task = make_task(model_ids=("m1", "m2"))
    first = repository.claim_next_unit(worker_id="w")
    second = repository.claim_next_unit(worker_id="w")
    assert first is not None
    assert second is not None

    assert repository.fail_unit(
        sub_task_id=first.sub_task_id,
        error_category=ErrorCategory.CONTENT_FILTERED,
        detail="blocked by safety filter",
        worker_id="w",
    )
    in_flight = repository.get_task(task_id=task.task_id)
    assert in_flight is not None
    assert in_flight.status == TaskStatus.PROCESSING

    assert repository.complete_unit(sub_task_id=second.sub_task_id, result={}, worker_id="w")

    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    assert details.task.status == TaskStatus.PARTIAL_FAILED
    assert details.counts.failed == 1
    assert details.counts.success == 1
    failed_unit = details.units[0]
    assert failed_unit.error_category == ErrorCategory.CONTENT_FILTERED
    assert failed_unit.error_log == "blocked by safety filter"
    assert "status_derived" in [event.event_type for event in details.events]


def test_requeue_bumps_retry_count_and_keeps_error(
    repository: OrchestratorRepository,
    make_task: Callable[..., TaskView],
) -> None:
    make_task()
    unit = repository.claim_next_unit(worker_id="w")
    assert unit is not None

    outcome = repository.requeue_unit(
        sub_task_id=unit.sub_task_id,
        error_category=ErrorCategory.RATE_LIMITED,
        detail="429",
        worker_id="w",
    )

    assert outcome is UnitStatus.PENDING

    stored = repository.get_unit(sub_task_id=unit.sub_task_id)
    assert stored is not None
    assert stored.status == UnitStatus.PENDING
    assert stored.retry_count == 1
    assert stored.error_category == ErrorCategory.RATE_LIMITED
    assert stored.lease_owner is None
    assert repository.claim_next_unit(worker_id="w") is not None


def test_finish_unknown_unit_raises_not_found(repository: OrchestratorRepository) -> None:
    with pytest.raises(NotFoundError):
        repository.complete_unit(sub_task_id="missing", result={})


def test_units_are_not_created_for_task_cancelled_during_expansion(
    repository: OrchestratorRepository,
) -> None:
    service = SubmissionService(repository=repository)
    task, _ = service.create_task(TaskCreate(subject="fox", style_ids=[], model_ids=["m"]))
    service.submit_task(task.task_id)
    repository.transition_task(
        task_id=task.task_id,
        target=TaskStatus.EXPANDING,
        event_type="expansion_started",
    )
    repository.cancel_task(task_id=task.task_id)

    with pytest.raises(PreconditionError) as error:
        repository.materialize_units(task_id=task.task_id, prompt_variants=[], units=[])

    assert error.value.current_status == "cancelled"
    assert repository.count_units(task_id=task.task_id).total == 0


def test_list_tasks_filters_by_status(
    repository: OrchestratorRepository,
    make_task: Callable[..., TaskView],
) -> None:
    processing = make_task()
    service = SubmissionService(repository=repository)
    draft, _ = service.create_task(TaskCreate(subject="owl", style_ids=[], model_ids=["m"]))

    assert [task.task_id for task in repository.list_tasks(status=TaskStatus.DRAFT)] == [
        draft.task_id,
    ]
    assert [task.task_id for task in repository.list_tasks(status=TaskStatus.PROCESSING)] == [
        processing.task_id,
    ]
    assert len(repository.list_tasks(limit=1)) == 1
    assert repository.get_task_details(task_id="missing") is None
