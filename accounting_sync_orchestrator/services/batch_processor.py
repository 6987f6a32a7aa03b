"""
BatchProcessor service for Accounting Sync Orchestrator

Splits an ordered record set into fixed-size batches and drives them through
the retry manager one batch at a time, sleeping between batches to stay under
the accounting system's rate limits.
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from ..core.exceptions import PermanentSubmissionError, ValidationError
from ..models.migration import MAX_BATCH_SIZE, MIN_BATCH_SIZE, ErrorClassification, ErrorEntry
from ..utils.logger import get_logger, set_log_context
from ..utils import metrics
from .progress_tracker import ProgressTracker
from .retry_manager import RecordOutcome, RetryManager
from .validation_engine import ValidationEngine, record_id_of

Submitter = Callable[[Mapping[str, Any]], Awaitable[Any]]


def create_batches(records: Sequence[Any], batch_size: int) -> List[List[Any]]:
    """
    Split ``records`` into ``ceil(N / batch_size)`` order-preserving batches.

    Raises:
        ValidationError: if batch_size is outside 1-100
    """
    if not isinstance(batch_size, int) or not MIN_BATCH_SIZE <= batch_size <= MAX_BATCH_SIZE:
        raise ValidationError("batch_size", f"must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}", batch_size)
    return [list(records[i:i + batch_size]) for i in range(0, len(records), batch_size)]


class BatchRunOutcome(Enum):
    """Why ``BatchProcessor.run`` returned."""
    COMPLETED = "completed"
    INTERRUPTED = "interrupted"
    SYSTEMIC_FAILURE = "systemic_failure"


class MigrationControl:
    """
    Pause and cancel signals for one migration.

    ``signal`` is set whenever either request is raised, so sleeps can wait on
    a single event.
    """

    def __init__(self):
        self.pause_requested = asyncio.Event()
        self.cancel_requested = asyncio.Event()
        self.signal = asyncio.Event()

    @property
    def stop_requested(self) -> bool:
        return self.pause_requested.is_set() or self.cancel_requested.is_set()

    def request_pause(self):
        self.pause_requested.set()
        self.signal.set()

    def request_cancel(self):
        self.cancel_requested.set()
        self.signal.set()

    def clear_pause(self):
        self.pause_requested.clear()
        if not self.cancel_requested.is_set():
            self.signal.clear()


@dataclass
class BatchResult:
    """Settled outcome of one batch."""
    batch_number: int
    outcomes: List[RecordOutcome] = field(default_factory=list)
    elapsed_seconds: float = 0.0

    @property
    def succeeded(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if not o.succeeded)

    @property
    def errors(self) -> List[ErrorEntry]:
        return [o.error for o in self.outcomes if o.error is not None]

    @property
    def succeeded_ids(self) -> List[str]:
        return [o.record_id for o in self.outcomes if o.succeeded]

    @property
    def is_systemic_failure(self) -> bool:
        """Every record exhausted its retries on transient errors."""
        if not self.outcomes:
            return False
        return all(
            not o.succeeded
            and not o.interrupted
            and o.classification == ErrorClassification.TRANSIENT
            for o in self.outcomes
        )


@dataclass
class BatchRunResult:
    outcome: BatchRunOutcome
    next_batch_index: int
    last_batch: Optional[BatchResult] = None


class DryRunSubmitter:
    """
    Stand-in for the accounting client during dry runs.

    Re-validates the record and simulates success, or a permanent rejection
    when the record has blocking issues. Never talks to the external system.
    """

    def __init__(self, validation_engine: ValidationEngine):
        self.validation_engine = validation_engine
        self.logger = get_logger(__name__)

    async def __call__(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        issues = [i for i in self.validation_engine.validate_record(record) if i.is_blocking]
        record_id = record_id_of(record)
        if issues:
            raise PermanentSubmissionError(
                f"[DRY RUN] would be rejected: {issues[0].message}",
                record_id=record_id
            )
        self.logger.debug(f"[DRY RUN] Would migrate record: {record_id}")
        return {"record_id": record_id, "dry_run": True}


class BatchProcessor:
    """
    Drives sequential batch processing for one migration.

    Batches never overlap. Within a batch up to ``concurrency`` submissions
    are in flight, and the whole batch settles before the next batch, the
    inter-batch delay, or a pause/cancel takes effect.
    """

    def __init__(
        self,
        retry_manager: RetryManager,
        tracker: ProgressTracker,
        submitter: Submitter,
        delay_between_batches_ms: int = 0,
        concurrency: int = 1,
        dry_run: bool = False,
        on_batch_settled: Optional[Callable[[BatchResult], Awaitable[None]]] = None
    ):
        """
        Initialize BatchProcessor.

        Args:
            retry_manager: Retry wrapper for single-record submissions
            tracker: Progress tracker receiving batch outcomes
            submitter: Coroutine function submitting one record
            delay_between_batches_ms: Pause between batches
            concurrency: In-flight submissions per batch
            dry_run: Label metrics as dry-run submissions
            on_batch_settled: Optional hook awaited after each batch is recorded
        """
        self.retry_manager = retry_manager
        self.tracker = tracker
        self.submitter = submitter
        self.delay_between_batches_ms = delay_between_batches_ms
        self.concurrency = max(1, concurrency)
        self.dry_run = dry_run
        self.on_batch_settled = on_batch_settled

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="batch_processor")

    async def run(
        self,
        batches: Sequence[Sequence[Mapping[str, Any]]],
        start_index: int,
        control: MigrationControl
    ) -> BatchRunResult:
        """
        Process ``batches[start_index:]`` until done, interrupted or systemically failed.

        Pause and cancel requests are checked only between batches.
        """
        index = start_index
        last_result: Optional[BatchResult] = None

        while index < len(batches):
            if control.stop_requested:
                return BatchRunResult(BatchRunOutcome.INTERRUPTED, index, last_result)

            batch_number = index + 1
            self.tracker.start_batch(batch_number)
            last_result = await self.process_batch(batch_number, batches[index], control)

            self.tracker.record_batch(
                batch_number,
                succeeded=last_result.succeeded,
                failed=last_result.failed,
                errors=last_result.errors,
                elapsed_seconds=last_result.elapsed_seconds
            )
            index += 1

            if self.on_batch_settled:
                await self.on_batch_settled(last_result)

            if last_result.is_systemic_failure:
                self.logger.error("Systemic failure: every record in batch failed transiently", extra={
                    "job_id": self.tracker.job_id,
                    "batch": batch_number
                })
                return BatchRunResult(BatchRunOutcome.SYSTEMIC_FAILURE, index, last_result)

            if index < len(batches):
                await self.wait_between_batches(control)

        return BatchRunResult(BatchRunOutcome.COMPLETED, index, last_result)

    async def process_batch(
        self,
        batch_number: int,
        records: Sequence[Mapping[str, Any]],
        control: Optional[MigrationControl] = None
    ) -> BatchResult:
        """Submit every record of one batch; outcomes keep the input order."""
        started = time.monotonic()
        semaphore = asyncio.Semaphore(self.concurrency)
        interrupt = control.cancel_requested if control else None

        async def submit(record: Mapping[str, Any]) -> RecordOutcome:
            async with semaphore:
                return await self.retry_manager.execute(
                    record_id_of(record),
                    lambda: self.submitter(record),
                    interrupt=interrupt
                )

        outcomes = await asyncio.gather(*(submit(record) for record in records))
        elapsed = time.monotonic() - started

        result = BatchResult(batch_number=batch_number, outcomes=list(outcomes), elapsed_seconds=elapsed)

        dry_run_label = "true" if self.dry_run else "false"
        metrics.RECORDS_SUBMITTED.labels(outcome="succeeded", dry_run=dry_run_label).inc(result.succeeded)
        metrics.RECORDS_SUBMITTED.labels(outcome="failed", dry_run=dry_run_label).inc(result.failed)
        metrics.BATCH_DURATION.observe(elapsed)

        self.logger.info(f"Batch {batch_number} settled", extra={
            "job_id": self.tracker.job_id,
            "batch": batch_number,
            "succeeded": result.succeeded,
            "failed": result.failed,
            "elapsed_seconds": round(elapsed, 3)
        })

        return result

    async def wait_between_batches(self, control: MigrationControl) -> bool:
        """
        Sleep for the configured delay.

        Returns:
            True if a pause or cancel request cut the delay short
        """
        if self.delay_between_batches_ms <= 0:
            return control.stop_requested
        try:
            await asyncio.wait_for(control.signal.wait(), timeout=self.delay_between_batches_ms / 1000)
            return True
        except asyncio.TimeoutError:
            return False
