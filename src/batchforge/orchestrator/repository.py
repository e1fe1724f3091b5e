"""Persistent task/unit store with compare-and-swap transitions."""

from __future__ import annotations

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import func, or_
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from batchforge.orchestrator.errors import NotFoundError, PreconditionError
from batchforge.orchestrator.models import (
    AspectRatio,
    CancelResult,
    ErrorCategory,
    PromptVariant,
    StatusCounts,
    SubTaskView,
    SubTaskWrite,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
    UnitStatus,
)
from batchforge.orchestrator.state_machine import (
    CANCELLABLE_TASK_STATUSES,
    DERIVED_TASK_STATUSES,
    REOPENABLE_TASK_STATUSES,
    derive_task_status,
    ensure_task_transition,
    is_unit_transition_allowed,
)
from batchforge.storage.alembic_runner import upgrade_head
from batchforge.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from batchforge.storage.sqlmodel_models import GenerationTask, SubTask, TaskEvent

logger = logging.getLogger(__name__)

DEFAULT_LEASE_SECONDS = 300


class OrchestratorRepository:
    """Task and unit persistence facade backed by SQLModel + SQLite.

    Every state change is a conditional ``UPDATE`` guarded on the status the
    caller expects; ``rowcount != 1`` means another actor moved first.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # Tasks

    def create_task(self, payload: TaskCreate, *, total_expected: int) -> TaskView:
        """Persist a draft task."""

        now = utc_now()
        task_id = payload.task_id or str(uuid4())
        with Session(self.engine) as session:
            row = GenerationTask(
                task_id=task_id,
                subject=payload.subject,
                style_ids_json=json.dumps(payload.style_ids, ensure_ascii=False),
                model_ids_json=json.dumps(payload.model_ids, ensure_ascii=False),
                batch_size=payload.batch_size,
                include_base_style=payload.include_base_style,
                variant_count=payload.variant_count,
                aspect_ratio=payload.aspect_ratio.value,
                seed=payload.seed,
                negative_prompt=payload.negative_prompt,
                prompt_variants_json=None,
                total_expected=total_expected,
                status=TaskStatus.DRAFT.value,
                created_at=now,
                updated_at=now,
            )
            session.add(row)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="created",
                status_from=None,
                status_to=TaskStatus.DRAFT.value,
                details={"total_expected": total_expected},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def transition_task(
        self,
        *,
        task_id: str,
        target: TaskStatus,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> TaskView:
        """Move a task along one legal lifecycle edge (CAS on the status read)."""

        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            ensure_task_transition(previous, target, task_id=task_id)
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == previous.value,
                )
                .values(status=target.value, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount != 1:
                session.rollback()
                raise PreconditionError(
                    f"Task state changed concurrently (task_id={task_id}).",
                    current_status=self._read_task_status(task_id),
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type=event_type,
                status_from=previous.value,
                status_to=target.value,
                details=details or {},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def materialize_units(
        self,
        *,
        task_id: str,
        prompt_variants: list[PromptVariant],
        units: list[SubTaskWrite],
    ) -> TaskView:
        """Insert all units as pending and move the task ``expanding -> processing``.

        Both happen in one transaction guarded on ``status == expanding``, so a
        task cancelled during expansion never gets units.
        """

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == TaskStatus.EXPANDING.value,
                )
                .values(
                    status=TaskStatus.PROCESSING.value,
                    prompt_variants_json=_dump_variants(prompt_variants),
                    variant_count=len(prompt_variants),
                    total_expected=len(units),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                current = self._read_task_status(task_id)
                raise PreconditionError(
                    f"Task {task_id} is not expanding (status={current}); units not created.",
                    current_status=current,
                )

            for unit in units:
                spec = unit.spec
                session.add(
                    SubTask(
                        sub_task_id=str(uuid4()),
                        task_id=task_id,
                        sequence=spec.sequence,
                        variant_id=spec.variant_id,
                        variant_name=spec.variant_name,
                        style_id=spec.style_id,
                        model_id=spec.model_id,
                        batch_index=spec.batch_index,
                        final_prompt=unit.final_prompt,
                        negative_prompt=unit.negative_prompt,
                        aspect_ratio=unit.aspect_ratio.value,
                        seed=unit.seed,
                        priority=unit.priority,
                        status=UnitStatus.PENDING.value,
                        created_at=now,
                        updated_at=now,
                    ),
                )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="expanded",
                status_from=TaskStatus.EXPANDING.value,
                status_to=TaskStatus.PROCESSING.value,
                details={"units": len(units), "variants": len(prompt_variants)},
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, *, task_id: str) -> TaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(GenerationTask).where(GenerationTask.task_id == task_id),
            ).one_or_none()
            return _to_task_view(row) if row is not None else None

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, optionally filtered by status."""

        with Session(self.engine) as session:
            statement = (
                select(GenerationTask)
                .order_by(col(GenerationTask.created_at).desc())
                .limit(limit)
            )
            if status is not None:
                statement = statement.where(GenerationTask.status == status.value)
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def count_units(self, *, task_id: str) -> StatusCounts:
        with Session(self.engine) as session:
            return _count_units(session=session, task_id=task_id)

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task view, unit counts, units in sequence order and event stream."""

        with Session(self.engine) as session:
            task = session.exec(
                select(GenerationTask).where(GenerationTask.task_id == task_id),
            ).one_or_none()
            if task is None:
                return None
            counts = _count_units(session=session, task_id=task_id)
            unit_rows = session.exec(
                select(SubTask)
                .where(SubTask.task_id == task_id)
                .order_by(col(SubTask.sequence).asc()),
            ).all()
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()

        events = [
            TaskEventView(
                event_id=row.id or 0,
                task_id=row.task_id,
                sub_task_id=row.sub_task_id,
                event_type=row.event_type,
                status_from=row.status_from,
                status_to=row.status_to,
                created_at=to_utc_aware_datetime(row.created_at),
                details=_load_details(row.details_json),
            )
            for row in event_rows
        ]
        return TaskDetails(
            task=_to_task_view(task),
            counts=counts,
            units=[_to_unit_view(row) for row in unit_rows],
            events=events,
        )

    # Units

    def get_unit(self, *, sub_task_id: str) -> SubTaskView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(SubTask).where(SubTask.sub_task_id == sub_task_id),
            ).one_or_none()
            return _to_unit_view(row) if row is not None else None

    def list_unit_ids(self, *, task_id: str, status: UnitStatus) -> list[str]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(SubTask.sub_task_id)
                .where(SubTask.task_id == task_id, SubTask.status == status.value)
                .order_by(col(SubTask.sequence).asc()),
            ).all()
        return list(rows)

    def claim_next_unit(
        self,
        *,
        worker_id: str,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        now: datetime | None = None,
    ) -> SubTaskView | None:
        """Atomically lease the oldest eligible pending unit, or return ``None``.

        Eligible means ``pending`` with no lease or an expired one, under a task
        that is not cancelled. Order is oldest first, then higher priority, then
        cross-product sequence.
        """

        while True:
            claimed_at = now or utc_now()
            db_now = to_db_datetime(claimed_at)
            lease_free = or_(
                col(SubTask.lease_expires_at).is_(None),
                col(SubTask.lease_expires_at) <= db_now,
            )
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(SubTask)
                    .where(
                        SubTask.status == UnitStatus.PENDING.value,
                        lease_free,
                        _task_not_cancelled(),
                    )
                    .order_by(
                        col(SubTask.created_at).asc(),
                        col(SubTask.priority).desc(),
                        col(SubTask.sequence).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                result = session.exec(
                    sa_update(SubTask)
                    .where(
                        col(SubTask.sub_task_id) == candidate.sub_task_id,
                        col(SubTask.status) == UnitStatus.PENDING.value,
                        lease_free,
                        _task_not_cancelled(),
                    )
                    .values(
                        status=UnitStatus.PROCESSING.value,
                        lease_owner=worker_id,
                        lease_expires_at=db_now + timedelta(seconds=lease_seconds),
                        started_at=db_now,
                        completed_at=None,
                        updated_at=db_now,
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    logger.debug(
                        "Lost claim race for unit %s (worker=%s)",
                        candidate.sub_task_id,
                        worker_id,
                    )
                    continue

                claimed = session.exec(
                    select(SubTask).where(SubTask.sub_task_id == candidate.sub_task_id),
                ).one()
                self._add_event(
                    session=session,
                    task_id=claimed.task_id,
                    sub_task_id=claimed.sub_task_id,
                    event_type="claimed",
                    status_from=UnitStatus.PENDING.value,
                    status_to=UnitStatus.PROCESSING.value,
                    details={"worker_id": worker_id, "lease_seconds": lease_seconds},
                )
                session.commit()
                return _to_unit_view(claimed)

    def complete_unit(
        self,
        *,
        sub_task_id: str,
        result: dict[str, Any],
        worker_id: str | None = None,
    ) -> bool:
        """``processing -> success``; ``False`` when the unit is no longer ours."""

        now = to_db_datetime(utc_now())
        finished = self._finish_processing(
            sub_task_id=sub_task_id,
            worker_id=worker_id,
            target=UnitStatus.SUCCESS,
            event_type="succeeded",
            values={
                "completed_at": now,
                "result_json": json.dumps(result, ensure_ascii=False, sort_keys=True),
                "error_category": None,
                "error_log": None,
            },
            details={},
        )
        return finished is not None

    def fail_unit(
        self,
        *,
        sub_task_id: str,
        error_category: ErrorCategory,
        detail: str,
        worker_id: str | None = None,
    ) -> bool:
        """``processing -> failed`` with error category and detail recorded."""

        now = to_db_datetime(utc_now())
        finished = self._finish_processing(
            sub_task_id=sub_task_id,
            worker_id=worker_id,
            target=UnitStatus.FAILED,
            event_type="failed",
            values={
                "completed_at": now,
                "error_category": error_category.value,
                "error_log": detail,
            },
            details={"error_category": error_category.value},
        )
        return finished is not None

    def requeue_unit(
        self,
        *,
        sub_task_id: str,
        error_category: ErrorCategory,
        detail: str,
        worker_id: str | None = None,
    ) -> UnitStatus | None:
        """``processing -> pending`` for an automatic retry; bumps ``retry_count``.

        When the parent task was cancelled meanwhile the unit goes to
        ``cancelled`` instead. Returns the status the unit landed in, or
        ``None`` when it is no longer ours.
        """

        return self._finish_processing(
            sub_task_id=sub_task_id,
            worker_id=worker_id,
            target=UnitStatus.PENDING,
            event_type="auto_retry",
            values={
                "retry_count": col(SubTask.retry_count) + 1,
                "error_category": error_category.value,
                "error_log": detail,
                "started_at": None,
            },
            details={"error_category": error_category.value},
            cancel_with_task=True,
        )

    def retry_unit(self, *, sub_task_id: str) -> bool:
        """Re-arm a failed unit: ``failed -> pending`` with errors, lease and counters cleared.

        Reopens a terminal parent task to ``processing``. Returns ``False``
        when the unit changed concurrently after the precondition check.
        """

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = session.exec(
                select(SubTask).where(SubTask.sub_task_id == sub_task_id),
            ).one_or_none()
            if row is None:
                raise NotFoundError(f"Unit not found: {sub_task_id}")
            if UnitStatus(row.status) is not UnitStatus.FAILED:
                raise PreconditionError(
                    f"Only failed units can be retried, got {row.status}.",
                    current_status=row.status,
                )
            task = self._get_task_row(session=session, task_id=row.task_id)
            if task.status == TaskStatus.CANCELLED.value:
                raise PreconditionError(
                    f"Cannot retry unit {sub_task_id}: task {task.task_id} is cancelled.",
                    current_status=task.status,
                )

            result = session.exec(
                sa_update(SubTask)
                .where(
                    col(SubTask.sub_task_id) == sub_task_id,
                    col(SubTask.status) == UnitStatus.FAILED.value,
                    _task_not_cancelled(),
                )
                .values(
                    status=UnitStatus.PENDING.value,
                    retry_count=0,
                    reclaim_count=0,
                    error_category=None,
                    error_log=None,
                    lease_owner=None,
                    lease_expires_at=None,
                    started_at=None,
                    completed_at=None,
                    updated_at=now,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                if self._read_task_status(row.task_id) == TaskStatus.CANCELLED.value:
                    raise PreconditionError(
                        f"Cannot retry unit {sub_task_id}: task {row.task_id} is cancelled.",
                        current_status=TaskStatus.CANCELLED.value,
                    )
                logger.info("Unit %s changed concurrently; retry skipped", sub_task_id)
                return False

            self._add_event(
                session=session,
                task_id=row.task_id,
                sub_task_id=sub_task_id,
                event_type="manual_retry",
                status_from=UnitStatus.FAILED.value,
                status_to=UnitStatus.PENDING.value,
                details={"previous_error_category": row.error_category},
            )
            reopened = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == row.task_id,
                    col(GenerationTask.status).in_(
                        [status.value for status in REOPENABLE_TASK_STATUSES],
                    ),
                )
                .values(status=TaskStatus.PROCESSING.value, updated_at=now),
            )
            if reopened.rowcount == 1:
                self._add_event(
                    session=session,
                    task_id=row.task_id,
                    event_type="reopened",
                    status_from=task.status,
                    status_to=TaskStatus.PROCESSING.value,
                    details={"sub_task_id": sub_task_id},
                )
            session.commit()
            return True

    def cancel_task(self, *, task_id: str) -> CancelResult:
        """Cancel a task and its pending units; leave in-flight and terminal units alone."""

        now = to_db_datetime(utc_now())
        with Session(self.engine) as session:
            row = self._get_task_row(session=session, task_id=task_id)
            previous = TaskStatus(row.status)
            if previous not in CANCELLABLE_TASK_STATUSES:
                raise PreconditionError(
                    f"Task cannot be cancelled from status={row.status}",
                    current_status=row.status,
                )

            result = session.exec(
                sa_update(GenerationTask)
                .where(
                    col(GenerationTask.task_id) == task_id,
                    col(GenerationTask.status) == previous.value,
                )
                .values(status=TaskStatus.CANCELLED.value, updated_at=now),
            )
            if result.rowcount != 1:
                session.rollback()
                raise PreconditionError(
                    "Task state changed concurrently while cancelling; "
                    f"please retry command (task_id={task_id}).",
                    current_status=self._read_task_status(task_id),
                )

            counts = _count_units(session=session, task_id=task_id)
            cancelled = session.exec(
                sa_update(SubTask)
                .where(
                    col(SubTask.task_id) == task_id,
                    col(SubTask.status) == UnitStatus.PENDING.value,
                )
                .values(
                    status=UnitStatus.CANCELLED.value,
                    completed_at=now,
                    lease_owner=None,
                    lease_expires_at=None,
                    updated_at=now,
                ),
            )
            outcome = CancelResult(
                task_id=task_id,
                cancelled_count=cancelled.rowcount,
                completed_count=counts.success,
                already_cancelled_count=counts.cancelled,
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="cancelled",
                status_from=previous.value,
                status_to=TaskStatus.CANCELLED.value,
                details={
                    "cancelled": outcome.cancelled_count,
                    "completed": outcome.completed_count,
                    "already_cancelled": outcome.already_cancelled_count,
                    "left_processing": counts.processing,
                    "left_failed": counts.failed,
                },
            )
            session.commit()
            return outcome

    def list_expired_leases(self, *, now: datetime, limit: int = 100) -> list[SubTaskView]:
        """Processing units whose lease expired at or before ``now``."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(SubTask)
                .where(
                    SubTask.status == UnitStatus.PROCESSING.value,
                    col(SubTask.lease_expires_at) <= to_db_datetime(now),
                )
                .order_by(col(SubTask.lease_expires_at).asc())
                .limit(limit),
            ).all()
        return [_to_unit_view(row) for row in rows]

    def reclaim_unit(
        self,
        *,
        sub_task_id: str,
        lease_owner: str | None,
        now: datetime,
        max_reclaims: int = 0,
    ) -> UnitStatus | None:
        """Take back an expired lease; returns the new status or ``None`` on a lost race.

        The guard repeats the scan filter (still processing, same owner, lease
        expired), so a worker finishing the unit at the same moment wins
        cleanly. With ``max_reclaims > 0`` the reclaim that would exceed the
        ceiling fails the unit instead of returning it to ``pending``.
        A unit whose task was cancelled goes to ``cancelled`` instead.
        """

        db_now = to_db_datetime(now)
        with Session(self.engine) as session:
            row = session.exec(
                select(SubTask).where(SubTask.sub_task_id == sub_task_id),
            ).one_or_none()
            if row is None:
                return None
            exhausted = max_reclaims > 0 and row.reclaim_count + 1 > max_reclaims
            target = UnitStatus.FAILED if exhausted else UnitStatus.PENDING

            values: dict[str, Any] = {
                "status": target.value,
                "lease_owner": None,
                "lease_expires_at": None,
                "reclaim_count": col(SubTask.reclaim_count) + 1,
                "updated_at": db_now,
            }
            if exhausted:
                values["completed_at"] = db_now
                values["error_category"] = ErrorCategory.TIMEOUT.value
                values["error_log"] = (
                    f"Lease expired {row.reclaim_count + 1} times; reclaim limit "
                    f"{max_reclaims} exceeded."
                )
            else:
                values["started_at"] = None

            owner_guard = (
                col(SubTask.lease_owner).is_(None)
                if lease_owner is None
                else col(SubTask.lease_owner) == lease_owner
            )
            conditions = [
                col(SubTask.sub_task_id) == sub_task_id,
                col(SubTask.status) == UnitStatus.PROCESSING.value,
                col(SubTask.lease_expires_at) <= db_now,
                owner_guard,
            ]
            result = session.exec(
                sa_update(SubTask)
                .where(*conditions, _task_not_cancelled())
                .values(**values),
            )
            if result.rowcount != 1:
                if self._cancel_in_flight(
                    session=session,
                    conditions=conditions,
                    task_id=row.task_id,
                    sub_task_id=sub_task_id,
                    now=db_now,
                    details={"lease_owner": lease_owner, "instead_of": "reclaimed"},
                ):
                    session.commit()
                    return UnitStatus.CANCELLED
                session.rollback()
                return None

            self._add_event(
                session=session,
                task_id=row.task_id,
                sub_task_id=sub_task_id,
                event_type="reclaim_exhausted" if exhausted else "reclaimed",
                status_from=UnitStatus.PROCESSING.value,
                status_to=target.value,
                details={"lease_owner": lease_owner, "reclaim_count": row.reclaim_count + 1},
            )
            if exhausted:
                self._refresh_task_status(session=session, task_id=row.task_id)
            session.commit()
            return target

    def _finish_processing(  # noqa: PLR0913
        self,
        *,
        sub_task_id: str,
        worker_id: str | None,
        target: UnitStatus,
        event_type: str,
        values: dict[str, Any],
        details: dict[str, object],
        cancel_with_task: bool = False,
    ) -> UnitStatus | None:
        conditions = [
            col(SubTask.sub_task_id) == sub_task_id,
            col(SubTask.status) == UnitStatus.PROCESSING.value,
        ]
        if worker_id is not None:
            conditions.append(col(SubTask.lease_owner) == worker_id)

        with Session(self.engine) as session:
            row = session.exec(
                select(SubTask).where(SubTask.sub_task_id == sub_task_id),
            ).one_or_none()
            if row is None:
                raise NotFoundError(f"Unit not found: {sub_task_id}")
            if not is_unit_transition_allowed(UnitStatus(row.status), target):
                logger.info(
                    "Unit %s is %s, not processing; %s dropped",
                    sub_task_id,
                    row.status,
                    event_type,
                )
                return None

            now = to_db_datetime(utc_now())
            guard = [*conditions, _task_not_cancelled()] if cancel_with_task else conditions
            result = session.exec(
                sa_update(SubTask)
                .where(*guard)
                .values(
                    status=target.value,
                    lease_owner=None,
                    lease_expires_at=None,
                    updated_at=now,
                    **values,
                ),
            )
            if result.rowcount != 1:
                if cancel_with_task and self._cancel_in_flight(
                    session=session,
                    conditions=conditions,
                    task_id=row.task_id,
                    sub_task_id=sub_task_id,
                    now=now,
                    details={"worker_id": worker_id, "instead_of": event_type, **details},
                ):
                    session.commit()
                    logger.info(
                        "Unit %s cancelled with task %s instead of %s",
                        sub_task_id,
                        row.task_id,
                        event_type,
                    )
                    return UnitStatus.CANCELLED
                session.rollback()
                logger.info(
                    "Unit %s no longer processing for worker %s; %s dropped",
                    sub_task_id,
                    worker_id or "-",
                    event_type,
                )
                return None

            self._add_event(
                session=session,
                task_id=row.task_id,
                sub_task_id=sub_task_id,
                event_type=event_type,
                status_from=UnitStatus.PROCESSING.value,
                status_to=target.value,
                details={"worker_id": worker_id, **details},
            )
            self._refresh_task_status(session=session, task_id=row.task_id)
            session.commit()
            return target

    def _cancel_in_flight(
        self,
        *,
        session: Session,
        conditions: list[Any],
        task_id: str,
        sub_task_id: str,
        now: datetime,
        details: dict[str, object],
    ) -> bool:
        """``processing -> cancelled`` for a unit whose task is already cancelled.

        Runs in the caller's transaction; the caller commits on ``True``.
        """

        result = session.exec(
            sa_update(SubTask)
            .where(*conditions, _task_cancelled())
            .values(
                status=UnitStatus.CANCELLED.value,
                lease_owner=None,
                lease_expires_at=None,
                completed_at=now,
                updated_at=now,
            ),
        )
        if result.rowcount != 1:
            return False
        self._add_event(
            session=session,
            task_id=task_id,
            sub_task_id=sub_task_id,
            event_type="cancelled_in_flight",
            status_from=UnitStatus.PROCESSING.value,
            status_to=UnitStatus.CANCELLED.value,
            details=details,
        )
        return True

    def _refresh_task_status(self, *, session: Session, task_id: str) -> None:
        """Recompute the aggregate from unit counts inside the caller's transaction."""

        task = session.exec(
            select(GenerationTask).where(GenerationTask.task_id == task_id),
        ).one_or_none()
        if task is None:
            return
        current = TaskStatus(task.status)
        if current not in DERIVED_TASK_STATUSES:
            return
        derived = derive_task_status(_count_units(session=session, task_id=task_id))
        if derived is None or derived is current:
            return

        result = session.exec(
            sa_update(GenerationTask)
            .where(
                col(GenerationTask.task_id) == task_id,
                col(GenerationTask.status) == current.value,
            )
            .values(status=derived.value, updated_at=to_db_datetime(utc_now())),
        )
        if result.rowcount == 1:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="status_derived",
                status_from=current.value,
                status_to=derived.value,
                details={},
            )

    def _get_task_row(self, *, session: Session, task_id: str) -> GenerationTask:
        row = session.exec(
            select(GenerationTask).where(GenerationTask.task_id == task_id),
        ).one_or_none()
        if row is None:
            raise NotFoundError(f"Task not found: {task_id}")
        return row

    def _read_task_status(self, task_id: str) -> str | None:
        with Session(self.engine) as session:
            return session.exec(
                select(GenerationTask.status).where(GenerationTask.task_id == task_id),
            ).one_or_none()

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: str | None,
        status_to: str | None,
        details: dict[str, object],
        sub_task_id: str | None = None,
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                sub_task_id=sub_task_id,
                event_type=event_type,
                status_from=status_from,
                status_to=status_to,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True)
                if details
                else None,
                created_at=utc_now(),
            ),
        )


def _cancelled_task_ids() -> Any:
    return sa_select(col(GenerationTask.task_id)).where(
        col(GenerationTask.status) == TaskStatus.CANCELLED.value,
    )


def _task_cancelled() -> Any:
    return col(SubTask.task_id).in_(_cancelled_task_ids())


def _task_not_cancelled() -> Any:
    return col(SubTask.task_id).not_in(_cancelled_task_ids())


def _count_units(*, session: Session, task_id: str) -> StatusCounts:
    rows = session.exec(
        select(SubTask.status, func.count())
        .where(SubTask.task_id == task_id)
        .group_by(SubTask.status),
    ).all()
    counts = StatusCounts()
    for status, count in rows:
        counts.add(UnitStatus(status), count)
    return counts


def _load_details(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _dump_variants(variants: list[PromptVariant]) -> str:
    return json.dumps(
        [{"id": item.variant_id, "name": item.name, "text": item.text} for item in variants],
        ensure_ascii=False,
    )


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_task_view(row: GenerationTask) -> TaskView:
    variants = json.loads(row.prompt_variants_json) if row.prompt_variants_json else []
    return TaskView(
        task_id=row.task_id,
        subject=row.subject,
        style_ids=list(json.loads(row.style_ids_json)),
        model_ids=list(json.loads(row.model_ids_json)),
        batch_size=row.batch_size,
        include_base_style=row.include_base_style,
        variant_count=row.variant_count,
        aspect_ratio=AspectRatio(row.aspect_ratio),
        seed=row.seed,
        negative_prompt=row.negative_prompt,
        prompt_variants=[
            PromptVariant(variant_id=item["id"], name=item["name"], text=item["text"])
            for item in variants
        ],
        total_expected=row.total_expected,
        status=TaskStatus(row.status),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_unit_view(row: SubTask) -> SubTaskView:
    return SubTaskView(
        sub_task_id=row.sub_task_id,
        task_id=row.task_id,
        sequence=row.sequence,
        variant_id=row.variant_id,
        variant_name=row.variant_name,
        style_id=row.style_id,
        model_id=row.model_id,
        batch_index=row.batch_index,
        final_prompt=row.final_prompt,
        negative_prompt=row.negative_prompt,
        aspect_ratio=AspectRatio(row.aspect_ratio),
        seed=row.seed,
        priority=row.priority,
        status=UnitStatus(row.status),
        retry_count=row.retry_count,
        reclaim_count=row.reclaim_count,
        error_category=ErrorCategory(row.error_category) if row.error_category else None,
        error_log=row.error_log,
        lease_owner=row.lease_owner,
        lease_expires_at=_optional_aware(row.lease_expires_at),
        started_at=_optional_aware(row.started_at),
        completed_at=_optional_aware(row.completed_at),
        result=_load_details(row.result_json) if row.result_json else None,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
