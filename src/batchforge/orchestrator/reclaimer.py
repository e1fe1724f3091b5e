"""Periodic reclamation of units whose lease expired without completion."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime

from batchforge.orchestrator.models import UnitStatus
from batchforge.orchestrator.repository import OrchestratorRepository
from batchforge.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_RECLAIMS = 5


@dataclass(slots=True)
class ReclaimSummary:
    """Counters accumulated over reclaim sweeps."""

    sweeps: int = 0
    reclaimed: int = 0
    exhausted: int = 0
    lost_races: int = 0
    cancelled: int = 0


class ZombieReclaimer:
    """Returns expired-lease units to ``pending`` using the same CAS discipline as claims.

    Reclamation does not touch ``retry_count``. ``max_reclaims`` bounds how
    often one unit may be reclaimed before it is failed with a timeout
    category; ``0`` means unbounded.
    """

    def __init__(
        self,
        *,
        repository: OrchestratorRepository,
        max_reclaims: int = DEFAULT_MAX_RECLAIMS,
        scan_limit: int = 100,
    ) -> None:
        self.repository = repository
        self.max_reclaims = max_reclaims
        self.scan_limit = scan_limit
        self._stop = threading.Event()

    def run_once(self, *, now: datetime | None = None) -> int:
        """One sweep; returns how many units went back to ``pending``."""

        return self.sweep(now=now).reclaimed

    def sweep(self, *, now: datetime | None = None) -> ReclaimSummary:
        now = now or utc_now()
        summary = ReclaimSummary(sweeps=1)
        for unit in self.repository.list_expired_leases(now=now, limit=self.scan_limit):
            outcome = self.repository.reclaim_unit(
                sub_task_id=unit.sub_task_id,
                lease_owner=unit.lease_owner,
                now=now,
                max_reclaims=self.max_reclaims,
            )
            if outcome is UnitStatus.PENDING:
                summary.reclaimed += 1
                logger.warning(
                    "Reclaimed unit %s from worker %s (lease expired %s)",
                    unit.sub_task_id,
                    unit.lease_owner,
                    unit.lease_expires_at.isoformat() if unit.lease_expires_at else "-",
                )
            elif outcome is UnitStatus.CANCELLED:
                summary.cancelled += 1
                logger.info("Unit %s belongs to a cancelled task; cancelled", unit.sub_task_id)
            elif outcome is UnitStatus.FAILED:
                summary.exhausted += 1
                logger.error(
                    "Unit %s exceeded %d reclaims; marked failed",
                    unit.sub_task_id,
                    self.max_reclaims,
                )
            else:
                summary.lost_races += 1
                logger.debug("Unit %s already moved on; reclaim skipped", unit.sub_task_id)
        return summary

    def run_forever(
        self,
        *,
        interval_seconds: float,
        max_sweeps: int | None = None,
    ) -> ReclaimSummary:
        """Sweep every ``interval_seconds`` until ``stop()`` or ``max_sweeps``."""

        total = ReclaimSummary()
        self._stop.clear()
        while not self._stop.is_set():
            sweep = self.sweep()
            total.sweeps += sweep.sweeps
            total.reclaimed += sweep.reclaimed
            total.exhausted += sweep.exhausted
            total.lost_races += sweep.lost_races
            total.cancelled += sweep.cancelled
            if max_sweeps is not None and total.sweeps >= max_sweeps:
                break
            self._stop.wait(timeout=interval_seconds)
        return total

    def stop(self) -> None:
        self._stop.set()
