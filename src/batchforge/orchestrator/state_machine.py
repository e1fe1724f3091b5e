"""Legal lifecycle transitions for units and their parent tasks."""

from __future__ import annotations

from batchforge.orchestrator.errors import PreconditionError
from batchforge.orchestrator.models import StatusCounts, TaskStatus, UnitStatus

UNIT_TRANSITIONS: dict[UnitStatus, frozenset[UnitStatus]] = {
    UnitStatus.PENDING: frozenset({UnitStatus.PROCESSING, UnitStatus.CANCELLED}),
    # processing -> pending is a requeue (lease expiry or automatic retry), not a failure.
    # A requeue under a cancelled task lands in cancelled instead.
    UnitStatus.PROCESSING: frozenset(
        {UnitStatus.SUCCESS, UnitStatus.FAILED, UnitStatus.PENDING, UnitStatus.CANCELLED},
    ),
    UnitStatus.FAILED: frozenset({UnitStatus.PENDING}),
    UnitStatus.SUCCESS: frozenset(),
    UnitStatus.CANCELLED: frozenset(),
}

TASK_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.DRAFT: frozenset({TaskStatus.QUEUED}),
    TaskStatus.QUEUED: frozenset({TaskStatus.EXPANDING, TaskStatus.CANCELLED}),
    TaskStatus.EXPANDING: frozenset(
        {TaskStatus.PROCESSING, TaskStatus.FAILED, TaskStatus.CANCELLED},
    ),
    TaskStatus.PROCESSING: frozenset(
        {
            TaskStatus.COMPLETED,
            TaskStatus.PARTIAL_FAILED,
            TaskStatus.FAILED,
            TaskStatus.CANCELLED,
        },
    ),
    TaskStatus.COMPLETED: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.PARTIAL_FAILED: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.FAILED: frozenset({TaskStatus.PROCESSING}),
    TaskStatus.CANCELLED: frozenset(),
}

CANCELLABLE_TASK_STATUSES = frozenset(
    {TaskStatus.QUEUED, TaskStatus.EXPANDING, TaskStatus.PROCESSING},
)
# Statuses whose value is recomputed from unit counts; cancelled is sticky and
# everything before processing precedes unit creation.
DERIVED_TASK_STATUSES = frozenset(
    {
        TaskStatus.PROCESSING,
        TaskStatus.COMPLETED,
        TaskStatus.PARTIAL_FAILED,
        TaskStatus.FAILED,
    },
)
REOPENABLE_TASK_STATUSES = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.PARTIAL_FAILED, TaskStatus.FAILED},
)


def is_unit_transition_allowed(current: UnitStatus, target: UnitStatus) -> bool:
    return target in UNIT_TRANSITIONS[current]


def is_task_transition_allowed(current: TaskStatus, target: TaskStatus) -> bool:
    return target in TASK_TRANSITIONS[current]


def ensure_task_transition(current: TaskStatus, target: TaskStatus, *, task_id: str) -> None:
    """Raise ``PreconditionError`` unless ``current -> target`` is a legal task transition."""

    if not is_task_transition_allowed(current, target):
        raise PreconditionError(
            f"Task {task_id} cannot move from {current.value} to {target.value}.",
            current_status=current.value,
        )


def derive_task_status(counts: StatusCounts) -> TaskStatus | None:
    """Aggregate status implied by unit counts, or ``None`` when there are no units.

    Any pending or processing unit keeps the task processing. Once every unit
    is terminal, failures make it ``partial_failed`` (some success) or
    ``failed`` (none); otherwise it is ``completed``, including the case where
    the remaining units were cancelled.
    """

    if counts.total == 0:
        return None
    if counts.pending or counts.processing:
        return TaskStatus.PROCESSING
    if counts.failed:
        return TaskStatus.PARTIAL_FAILED if counts.success else TaskStatus.FAILED
    return TaskStatus.COMPLETED
