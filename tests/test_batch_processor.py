"""
Unit tests for batch splitting and the BatchProcessor.
"""

import asyncio
import time

import pytest

from accounting_sync_orchestrator.core.exceptions import PermanentSubmissionError, TransientSubmissionError, ValidationError
from accounting_sync_orchestrator.models.migration import MigrationStatus
from accounting_sync_orchestrator.services.batch_processor import (
    BatchProcessor,
    BatchRunOutcome,
    DryRunSubmitter,
    MigrationControl,
    create_batches
)
from accounting_sync_orchestrator.services.progress_tracker import ProgressTracker
from accounting_sync_orchestrator.services.retry_manager import RetryManager, RetryPolicy
from accounting_sync_orchestrator.services.validation_engine import ValidationEngine

from .conftest import make_record, make_records


def running_tracker(records, batches):
    tracker = ProgressTracker("mig_batches")
    tracker.begin(len(records), len(batches))
    tracker.transition(MigrationStatus.RUNNING)
    return tracker


def build_processor(tracker, submitter, **kwargs):
    retry = RetryManager(RetryPolicy(max_retries=1, initial_delay=0.001))
    return BatchProcessor(retry_manager=retry, tracker=tracker, submitter=submitter, **kwargs)


class TestCreateBatches:
    """Order-preserving fixed-size batches."""

    def test_twenty_five_in_tens(self):
        batches = create_batches(list(range(25)), 10)

        assert [len(b) for b in batches] == [10, 10, 5]
        assert [x for b in batches for x in b] == list(range(25))

    def test_exact_multiple(self):
        assert [len(b) for b in create_batches(list(range(20)), 10)] == [10, 10]

    def test_empty_input(self):
        assert create_batches([], 10) == []

    @pytest.mark.parametrize("size", [0, 101, -5])
    def test_out_of_range_batch_size(self, size):
        with pytest.raises(ValidationError):
            create_batches(list(range(5)), size)

    def test_bounds_are_inclusive(self):
        assert len(create_batches(list(range(5)), 1)) == 5
        assert len(create_batches(list(range(150)), 100)) == 2


class TestRun:
    """Sequential processing with control checks at batch boundaries."""

    @pytest.mark.asyncio
    async def test_processes_every_batch_in_order(self):
        records = make_records(7)
        batches = create_batches(records, 3)
        tracker = running_tracker(records, batches)
        seen = []

        async def submit(record):
            seen.append(record["id"])
            return {"id": record["id"]}

        result = await build_processor(tracker, submit).run(batches, 0, MigrationControl())

        assert result.outcome == BatchRunOutcome.COMPLETED
        assert result.next_batch_index == 3
        assert seen == [r["id"] for r in records]
        snapshot = tracker.snapshot()
        assert snapshot.completed_batches == 3
        assert snapshot.successful_records == 7

    @pytest.mark.asyncio
    async def test_pause_request_stops_before_next_batch(self):
        records = make_records(6)
        batches = create_batches(records, 2)
        tracker = running_tracker(records, batches)
        control = MigrationControl()

        async def submit(record):
            if record["id"] == "rec-002":
                control.request_pause()
            return {}

        result = await build_processor(tracker, submit).run(batches, 0, control)

        assert result.outcome == BatchRunOutcome.INTERRUPTED
        assert result.next_batch_index == 1
        assert tracker.snapshot().processed_records == 2

    @pytest.mark.asyncio
    async def test_resume_from_index(self):
        records = make_records(6)
        batches = create_batches(records, 2)
        tracker = running_tracker(records, batches)
        seen = []

        async def submit(record):
            seen.append(record["id"])

        result = await build_processor(tracker, submit).run(batches, 2, MigrationControl())

        assert result.outcome == BatchRunOutcome.COMPLETED
        assert seen == ["rec-005", "rec-006"]

    @pytest.mark.asyncio
    async def test_failed_record_does_not_stop_batch(self):
        records = make_records(4)
        batches = create_batches(records, 4)
        tracker = running_tracker(records, batches)

        async def submit(record):
            if record["id"] == "rec-002":
                raise PermanentSubmissionError("duplicate", status_code=409)

        result = await build_processor(tracker, submit).run(batches, 0, MigrationControl())

        assert result.outcome == BatchRunOutcome.COMPLETED
        assert result.last_batch.succeeded == 3
        assert result.last_batch.failed == 1
        assert tracker.snapshot().failed_records == 1

    @pytest.mark.asyncio
    async def test_all_transient_failures_are_systemic(self):
        records = make_records(4)
        batches = create_batches(records, 2)
        tracker = running_tracker(records, batches)

        async def submit(record):
            raise TransientSubmissionError("connection refused")

        result = await build_processor(tracker, submit).run(batches, 0, MigrationControl())

        assert result.outcome == BatchRunOutcome.SYSTEMIC_FAILURE
        assert result.next_batch_index == 1
        assert result.last_batch.is_systemic_failure

    @pytest.mark.asyncio
    async def test_concurrency_is_bounded(self):
        records = make_records(10)
        batches = create_batches(records, 10)
        tracker = running_tracker(records, batches)
        in_flight = 0
        peak = 0

        async def submit(record):
            nonlocal in_flight, peak
            in_flight += 1
            peak = max(peak, in_flight)
            await asyncio.sleep(0.005)
            in_flight -= 1

        result = await build_processor(tracker, submit, concurrency=3).run(batches, 0, MigrationControl())

        assert peak == 3
        assert [o.record_id for o in result.last_batch.outcomes] == [r["id"] for r in records]

    @pytest.mark.asyncio
    async def test_settled_hook_runs_per_batch(self):
        records = make_records(5)
        batches = create_batches(records, 2)
        tracker = running_tracker(records, batches)
        settled = []

        async def submit(record):
            return {}

        async def on_settled(result):
            settled.append((result.batch_number, result.succeeded_ids))

        await build_processor(tracker, submit, on_batch_settled=on_settled).run(batches, 0, MigrationControl())

        assert settled == [
            (1, ["rec-001", "rec-002"]),
            (2, ["rec-003", "rec-004"]),
            (3, ["rec-005"])
        ]


class TestInterBatchDelay:
    """Delay between batches, cut short by control requests."""

    @pytest.mark.asyncio
    async def test_delay_is_applied(self):
        processor = build_processor(ProgressTracker("mig_delay"), None, delay_between_batches_ms=50)
        started = time.monotonic()

        interrupted = await processor.wait_between_batches(MigrationControl())

        assert interrupted is False
        assert time.monotonic() - started >= 0.04

    @pytest.mark.asyncio
    async def test_cancel_interrupts_delay(self):
        processor = build_processor(ProgressTracker("mig_delay"), None, delay_between_batches_ms=30000)
        control = MigrationControl()

        waiting = asyncio.create_task(processor.wait_between_batches(control))
        await asyncio.sleep(0.01)
        control.request_cancel()

        assert await asyncio.wait_for(waiting, 1.0) is True


class TestDryRunSubmitter:
    """Simulated submissions."""

    @pytest.mark.asyncio
    async def test_valid_record_simulates_success(self):
        submitter = DryRunSubmitter(ValidationEngine())

        result = await submitter(make_record(1))

        assert result == {"record_id": "rec-001", "dry_run": True}

    @pytest.mark.asyncio
    async def test_blocked_record_simulates_rejection(self):
        submitter = DryRunSubmitter(ValidationEngine())

        with pytest.raises(PermanentSubmissionError) as exc_info:
            await submitter(make_record(2, entries=[]))

        assert exc_info.value.message.startswith("[DRY RUN]")
        assert exc_info.value.record_id == "rec-002"
