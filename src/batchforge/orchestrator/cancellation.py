"""Cancellation of a task and its not-yet-started units."""

from __future__ import annotations

import logging

from batchforge.orchestrator.models import CancelResult
from batchforge.orchestrator.repository import OrchestratorRepository

logger = logging.getLogger(__name__)


class CancellationCoordinator:
    """Cancels a task; pending units are cancelled, in-flight and finished units are kept."""

    def __init__(self, *, repository: OrchestratorRepository) -> None:
        self.repository = repository

    def cancel_task(self, task_id: str) -> CancelResult:
        """Cancel ``task_id``.

        Only ``queued``, ``expanding`` and ``processing`` tasks can be
        cancelled; anything else (including a second cancel) raises
        ``PreconditionError`` without touching the task.
        """

        result = self.repository.cancel_task(task_id=task_id)
        logger.info(
            "Task %s cancelled: cancelled=%d completed=%d already_cancelled=%d",
            task_id,
            result.cancelled_count,
            result.completed_count,
            result.already_cancelled_count,
        )
        return result
