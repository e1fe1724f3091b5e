"""Unit workers: claim, execute, and record the outcome of generation units."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from batchforge.orchestrator.backend.base import (
    GenerationBackend,
    GenerationRequest,
    GenerationResult,
)
from batchforge.orchestrator.failure_classifier import classify_exception
from batchforge.orchestrator.models import ErrorCategory, SubTaskView, UnitStatus
from batchforge.orchestrator.repository import DEFAULT_LEASE_SECONDS, OrchestratorRepository

logger = logging.getLogger(__name__)

MAX_RETRY_ATTEMPTS = 3


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    succeeded: int = 0
    failed: int = 0
    retried: int = 0
    lost: int = 0
    cancelled: int = 0
    idle_polls: int = 0

    def merge(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.succeeded += other.succeeded
        self.failed += other.failed
        self.retried += other.retried
        self.lost += other.lost
        self.cancelled += other.cancelled
        self.idle_polls += other.idle_polls


class UnitWorker:
    """Processes one leased unit at a time against a generation backend."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: OrchestratorRepository,
        backend: GenerationBackend,
        worker_id: str,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        max_retry_attempts: int = MAX_RETRY_ATTEMPTS,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.repository = repository
        self.backend = backend
        self.worker_id = worker_id
        self.lease_seconds = lease_seconds
        self.max_retry_attempts = max_retry_attempts
        self.poll_interval_seconds = poll_interval_seconds
        self._stop = threading.Event()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one unit."""

        summary = WorkerRunSummary()
        if self._stop.is_set():
            summary.idle_polls = 1
            return summary

        unit = self.repository.claim_next_unit(
            worker_id=self.worker_id,
            lease_seconds=self.lease_seconds,
        )
        if unit is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        result = self._execute(unit)
        if result.success:
            if self.repository.complete_unit(
                sub_task_id=unit.sub_task_id,
                result=result.metadata,
                worker_id=self.worker_id,
            ):
                summary.succeeded = 1
            else:
                summary.lost = 1
            return summary

        self._handle_failure(unit=unit, result=result, summary=summary)
        return summary

    def run_loop(
        self,
        *,
        max_units: int | None = None,
        max_idle_polls: int = 1,
    ) -> WorkerRunSummary:
        """Run until idle, stopped, or ``max_units`` processed.

        Args:
            max_units: Stop after processing this many units (None = unlimited).
            max_idle_polls: How many consecutive empty polls before exiting.
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self._stop.is_set():
                if max_units is not None and aggregate.processed >= max_units:
                    break

                summary = self.run_once()
                aggregate.merge(summary)
                if summary.processed == 0:
                    consecutive_idle += 1
                    if consecutive_idle >= max_idle_polls:
                        break
                    self._stop.wait(timeout=self.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        return aggregate

    def stop(self) -> None:
        self._stop.set()

    def _execute(self, unit: SubTaskView) -> GenerationResult:
        try:
            return self.backend.generate(GenerationRequest.from_unit(unit))
        except Exception as error:  # noqa: BLE001
            classification = classify_exception(error)
            logger.exception("Backend raised for unit %s", unit.sub_task_id)
            return GenerationResult.failure(
                classification.category,
                f"{type(error).__name__}: {error}",
            )

    def _handle_failure(
        self,
        *,
        unit: SubTaskView,
        result: GenerationResult,
        summary: WorkerRunSummary,
    ) -> None:
        category = result.error_category or ErrorCategory.UNKNOWN
        detail = result.error_message or category.value
        if result.retryable and unit.retry_count + 1 < self.max_retry_attempts:
            outcome = self.repository.requeue_unit(
                sub_task_id=unit.sub_task_id,
                error_category=category,
                detail=detail,
                worker_id=self.worker_id,
            )
            if outcome is UnitStatus.PENDING:
                summary.retried = 1
                logger.info(
                    "Unit %s re-queued after %s (attempt %d/%d)",
                    unit.sub_task_id,
                    category.value,
                    unit.retry_count + 1,
                    self.max_retry_attempts,
                )
            elif outcome is UnitStatus.CANCELLED:
                summary.cancelled = 1
            else:
                summary.lost = 1
            return

        if self.repository.fail_unit(
            sub_task_id=unit.sub_task_id,
            error_category=category,
            detail=detail,
            worker_id=self.worker_id,
        ):
            summary.failed = 1
            logger.warning("Unit %s failed: %s %s", unit.sub_task_id, category.value, detail)
        else:
            summary.lost = 1

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        # Handlers can only be installed from the main thread.
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.info("Received %s, finishing current unit", signal.Signals(signum).name)
            self.stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


class WorkerPool:
    """Runs ``concurrency`` workers in threads, each with its own repository and engine.

    The database is the only state the threads share; each claims units
    through the same CAS path a separate process would use.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        db_path: Path,
        backend: GenerationBackend,
        concurrency: int,
        worker_id_prefix: str,
        lease_seconds: int = DEFAULT_LEASE_SECONDS,
        max_retry_attempts: int = MAX_RETRY_ATTEMPTS,
        poll_interval_seconds: float = 1.0,
        sqlite_busy_timeout_ms: int = 5_000,
    ) -> None:
        self.db_path = db_path
        self.backend = backend
        self.concurrency = max(1, concurrency)
        self.worker_id_prefix = worker_id_prefix
        self.lease_seconds = lease_seconds
        self.max_retry_attempts = max_retry_attempts
        self.poll_interval_seconds = poll_interval_seconds
        self.sqlite_busy_timeout_ms = sqlite_busy_timeout_ms
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._summary = WorkerRunSummary()
        self._remaining: int | None = None
        self._errors: list[BaseException] = []

    def run(self, *, max_units: int | None = None, max_idle_polls: int = 1) -> WorkerRunSummary:
        """Run all workers until each is idle or ``max_units`` were processed in total."""

        self._summary = WorkerRunSummary()
        self._remaining = max_units
        self._errors = []
        self._stop.clear()
        threads = [
            threading.Thread(
                target=self._thread_main,
                kwargs={"index": index, "max_idle_polls": max_idle_polls},
                name=f"{self.worker_id_prefix}-{index}",
                daemon=True,
            )
            for index in range(1, self.concurrency + 1)
        ]
        for thread in threads:
            thread.start()
        try:
            for thread in threads:
                thread.join()
        except KeyboardInterrupt:
            logger.info("Interrupted, waiting for in-flight units")
            self.stop()
            for thread in threads:
                thread.join()
        if self._errors:
            raise self._errors[0]
        return self._summary

    def stop(self) -> None:
        self._stop.set()

    def _thread_main(self, *, index: int, max_idle_polls: int) -> None:
        repository = OrchestratorRepository(
            self.db_path,
            sqlite_busy_timeout_ms=self.sqlite_busy_timeout_ms,
        )
        worker = UnitWorker(
            repository=repository,
            backend=self.backend,
            worker_id=f"{self.worker_id_prefix}-{index}",
            lease_seconds=self.lease_seconds,
            max_retry_attempts=self.max_retry_attempts,
            poll_interval_seconds=self.poll_interval_seconds,
        )
        consecutive_idle = 0
        try:
            while not self._stop.is_set() and self._reserve():
                summary = worker.run_once()
                with self._lock:
                    self._summary.merge(summary)
                if summary.processed:
                    consecutive_idle = 0
                    continue
                self._release()
                consecutive_idle += 1
                if consecutive_idle >= max_idle_polls:
                    break
                self._stop.wait(timeout=self.poll_interval_seconds)
        except Exception as error:
            logger.exception("Worker %s stopped on error", worker.worker_id)
            with self._lock:
                self._errors.append(error)
            self.stop()
        finally:
            repository.close()

    def _reserve(self) -> bool:
        with self._lock:
            if self._remaining is None:
                return True
            if self._remaining <= 0:
                return False
            self._remaining -= 1
            return True

    def _release(self) -> None:
        with self._lock:
            if self._remaining is not None:
                self._remaining += 1
