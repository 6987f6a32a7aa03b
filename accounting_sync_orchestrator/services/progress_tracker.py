"""
ProgressTracker service for Accounting Sync Orchestrator

Live accumulator for one migration's counts, batch cursor, timing and error
list. There is a single writer (the migration's processing loop) and any
number of readers (operators polling for progress). Writers serialise on a
lock and publish a new immutable ProgressSnapshot; readers only ever
dereference the current snapshot and never take the lock.
"""

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from ..core.exceptions import InvalidStateTransitionError
from ..models.migration import (
    ErrorEntry,
    MigrationStatus,
    ProgressSnapshot,
    TERMINAL_STATUSES,
    can_transition_to
)


class ProgressTracker:
    """Thread-safe progress accumulator publishing consistent snapshots."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        self._lock = threading.Lock()
        self._errors: List[ErrorEntry] = []
        self._batch_durations: List[float] = []
        self._snapshot = ProgressSnapshot(job_id=job_id, status=MigrationStatus.PENDING)

    # Reads

    def snapshot(self) -> ProgressSnapshot:
        """Current snapshot; safe to call from any thread or task."""
        return self._snapshot

    @property
    def status(self) -> MigrationStatus:
        return self._snapshot.status

    @property
    def average_batch_seconds(self) -> Optional[float]:
        durations = self._batch_durations
        if not durations:
            return None
        return sum(durations) / len(durations)

    # Writes

    def begin(self, total_records: int, total_batches: int, skipped_records: int = 0):
        """Set totals before the first batch runs."""
        with self._lock:
            self._publish(
                total_records=total_records,
                total_batches=total_batches,
                skipped_records=skipped_records
            )

    def transition(self, target: MigrationStatus) -> ProgressSnapshot:
        """
        Move to ``target`` status.

        Raises:
            InvalidStateTransitionError: if the transition table forbids it
        """
        with self._lock:
            current = self._snapshot.status
            if current == target:
                return self._snapshot
            if not can_transition_to(current, target):
                raise InvalidStateTransitionError(self.job_id, current.value, target.value)

            changes = {"status": target}
            now = datetime.utcnow()
            if target == MigrationStatus.RUNNING and self._snapshot.started_at is None:
                changes["started_at"] = now
            if target in TERMINAL_STATUSES:
                changes["completed_at"] = now
                changes["estimated_completion_at"] = None
            return self._publish(**changes)

    def start_batch(self, batch_number: int):
        """Record that 1-based ``batch_number`` is now in flight."""
        with self._lock:
            self._ensure_mutable()
            self._publish(current_batch=batch_number, last_batch_at=datetime.utcnow())

    def record_batch(
        self,
        batch_number: int,
        succeeded: int,
        failed: int,
        errors: Iterable[ErrorEntry],
        elapsed_seconds: float
    ) -> ProgressSnapshot:
        """
        Apply one settled batch atomically.

        Counters, error list, batch cursor and the completion estimate change
        together in a single published snapshot.
        """
        with self._lock:
            self._ensure_mutable()
            current = self._snapshot
            processed = current.processed_records + succeeded + failed
            if processed > current.total_records:
                raise ValueError(
                    f"Batch {batch_number} would process {processed} of {current.total_records} records"
                )

            self._errors.extend(errors)
            self._batch_durations.append(elapsed_seconds)

            remaining_batches = current.total_batches - batch_number
            estimate = None
            if remaining_batches > 0:
                average = sum(self._batch_durations) / len(self._batch_durations)
                estimate = datetime.utcnow() + timedelta(seconds=average * remaining_batches)

            return self._publish(
                processed_records=processed,
                successful_records=current.successful_records + succeeded,
                failed_records=current.failed_records + failed,
                current_batch=batch_number,
                completed_batches=batch_number,
                last_batch_at=datetime.utcnow(),
                estimated_completion_at=estimate,
                errors=tuple(self._errors)
            )

    def add_error(self, entry: ErrorEntry):
        """Append a job-level error (systemic failure, cancellation note)."""
        with self._lock:
            self._errors.append(entry)
            self._publish(errors=tuple(self._errors))

    def _ensure_mutable(self):
        status = self._snapshot.status
        if status in TERMINAL_STATUSES:
            raise InvalidStateTransitionError(self.job_id, status.value, "update")

    def _publish(self, **changes) -> ProgressSnapshot:
        # Caller holds the lock; assignment swaps the reference atomically.
        self._snapshot = replace(self._snapshot, **changes)
        return self._snapshot
