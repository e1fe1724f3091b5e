"""Explicit re-arming of failed units."""

from __future__ import annotations

import logging

from sqlalchemy.exc import OperationalError

from batchforge.orchestrator.errors import NotFoundError, PreconditionError
from batchforge.orchestrator.models import BulkRetryResult, UnitRetryOutcome, UnitStatus
from batchforge.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


class RetryCoordinator:
    """Moves failed units back to pending and reopens their parent task."""

    def __init__(self, *, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def retry_unit(self, sub_task_id: str) -> bool:
        """Retry one failed unit.

        Raises ``NotFoundError`` for an unknown unit and ``PreconditionError``
        when the unit is not failed or its task was cancelled. Returns
        ``False`` when the unit changed between the check and the update.
        """

        retried = self.repository.retry_unit(sub_task_id=sub_task_id)
        if retried:
            logger.info("Unit %s re-queued for retry", sub_task_id)
        return retried

    def retry_failed(self, task_id: str) -> BulkRetryResult:
        """Retry every failed unit of a task, one unit at a time.

        Not atomic across units: an error on one unit is recorded in its
        outcome and the loop moves on; earlier retries stay in place.
        """

        if self.repository.get_task(task_id=task_id) is None:
            raise NotFoundError(f"Task not found: {task_id}")

        result = BulkRetryResult(task_id=task_id)
        for sub_task_id in self.repository.list_unit_ids(
            task_id=task_id,
            status=UnitStatus.FAILED,
        ):
            try:
                retried = self.retry_unit(sub_task_id)
            except (NotFoundError, PreconditionError, OperationalError) as error:
                logger.warning("Retry of unit %s failed: %s", sub_task_id, error)
                result.outcomes.append(
                    UnitRetryOutcome(sub_task_id=sub_task_id, retried=False, error=str(error)),
                )
                continue
            result.outcomes.append(
                UnitRetryOutcome(
                    sub_task_id=sub_task_id,
                    retried=retried,
                    error=None if retried else "unit changed concurrently",
                ),
            )
        logger.info(
            "Bulk retry for task %s: %d/%d units re-queued",
            task_id,
            result.retried_count,
            len(result.outcomes),
        )
        return result
