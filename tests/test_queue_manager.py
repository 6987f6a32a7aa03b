"""
Unit tests for the QueueManager.

Dispatch is driven with ``process_next`` so ordering and failure handling are
deterministic; one test runs the background dispatchers end to end.
"""

import asyncio

import pytest

from accounting_sync_orchestrator.connectors.memory import InMemoryAuditSink
from accounting_sync_orchestrator.core.exceptions import (
    PermanentSubmissionError,
    QueueError,
    QueueNotFoundError,
    TransientSubmissionError
)
from accounting_sync_orchestrator.models.queue import QueueJobState, RetryJobOutcome
from accounting_sync_orchestrator.services.queue_manager import QueueManager
from accounting_sync_orchestrator.services.retry_manager import RetryPolicy

ACTOR = "ops@example.com"


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def manager(audit_sink):
    manager = QueueManager(audit_sink, retry_policy=RetryPolicy(initial_delay=0.001), poll_interval=0.01)
    manager.declare_queue("sync")
    return manager


async def reject(job):
    raise PermanentSubmissionError("invalid account code", status_code=400)


async def accept(job):
    return {"synced": job.payload["record_id"]}


async def add_failed_jobs(manager, count):
    """Enqueue ``count`` jobs of type 'reject' and process them into the failed state."""
    manager.register_handler("sync", "reject", reject)
    job_ids = []
    for i in range(count):
        job_ids.append(await manager.add("sync", {"record_id": f"bad-{i}"}, ACTOR, job_type="reject", priority=1))
    for _ in range(count):
        job = await manager.process_next("sync")
        assert job.state == QueueJobState.FAILED
    return job_ids


class TestClear:
    """Clearing jobs by state."""

    @pytest.mark.asyncio
    async def test_clear_failed_only(self, manager, audit_sink):
        """3 waiting and 2 failed: clearing 'failed' removes 2 and leaves the waiting jobs."""
        await add_failed_jobs(manager, 2)
        for i in range(3):
            await manager.add("sync", {"record_id": f"rec-{i}"}, ACTOR)

        cleared = await manager.clear("sync", ACTOR, job_type_filter=["failed"])

        stats = manager.get_stats("sync")["sync"]
        assert cleared == 2
        assert stats.waiting == 3
        assert stats.failed == 0

        audit = audit_sink.for_action("queue.clear")[0]
        assert audit.actor == ACTOR
        assert audit.scope == "sync"
        assert audit.affected_count == 2
        assert audit.details["job_type_filter"] == ["failed"]

    @pytest.mark.asyncio
    async def test_clear_without_filter_removes_all_idle_jobs(self, manager):
        await add_failed_jobs(manager, 1)
        await manager.add("sync", {"record_id": "rec-1"}, ACTOR)
        await manager.add("sync", {"record_id": "rec-2"}, ACTOR, delay_ms=60000)

        assert await manager.clear("sync", ACTOR) == 3
        assert manager.get_jobs("sync") == []

    @pytest.mark.asyncio
    async def test_clear_unknown_state_raises(self, manager, audit_sink):
        with pytest.raises(QueueError):
            await manager.clear("sync", ACTOR, job_type_filter=["exploded"])

        rejected = audit_sink.for_action("queue.clear")
        assert [a.outcome for a in rejected] == ["rejected"]
        assert "exploded" in rejected[0].details["error"]

    @pytest.mark.asyncio
    async def test_clear_never_touches_active_jobs(self, manager):
        started = asyncio.Event()
        release = asyncio.Event()

        async def slow(job):
            started.set()
            await release.wait()

        manager.register_handler("sync", "slow", slow)
        job_id = await manager.add("sync", {}, ACTOR, job_type="slow")
        processing = asyncio.create_task(manager.process_next("sync"))
        await asyncio.wait_for(started.wait(), 5)

        assert await manager.clear("sync", ACTOR) == 0
        assert await manager.remove("sync", [job_id], ACTOR) == 0

        release.set()
        job = await processing
        assert job.state == QueueJobState.COMPLETED


class TestDispatch:
    """Priority order, handler outcomes and delayed retry."""

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, manager):
        manager.register_handler("sync", "sync", accept)
        low = await manager.add("sync", {"record_id": "low"}, ACTOR, priority=9)
        first = await manager.add("sync", {"record_id": "first"}, ACTOR, priority=2)
        second = await manager.add("sync", {"record_id": "second"}, ACTOR, priority=2)

        order = [(await manager.process_next("sync")).job_id for _ in range(3)]

        assert order == [first, second, low]
        assert await manager.process_next("sync") is None

    @pytest.mark.asyncio
    async def test_successful_job_keeps_result(self, manager):
        manager.register_handler("sync", "sync", accept)
        await manager.add("sync", {"record_id": "rec-1"}, ACTOR)

        job = await manager.process_next("sync")

        assert job.state == QueueJobState.COMPLETED
        assert job.result == {"synced": "rec-1"}
        assert job.attempts == 1
        assert manager.get_stats("sync")["sync"].completed == 1

    @pytest.mark.asyncio
    async def test_missing_handler_fails_job(self, manager):
        await manager.add("sync", {}, ACTOR, job_type="unregistered")

        job = await manager.process_next("sync")

        assert job.state == QueueJobState.FAILED
        assert "no handler registered" in job.failed_reason

    @pytest.mark.asyncio
    async def test_transient_failure_is_delayed_then_retried(self, manager):
        """A transient error delays the job; it runs again once due and then succeeds."""
        calls = []

        async def flaky(job):
            calls.append(job.attempts)
            if len(calls) == 1:
                raise TransientSubmissionError("rate limited", status_code=429)
            return "ok"

        manager.register_handler("sync", "flaky", flaky)
        await manager.add("sync", {}, ACTOR, job_type="flaky")

        job = await manager.process_next("sync")
        assert job.state == QueueJobState.DELAYED
        assert job.run_at is not None

        await asyncio.sleep(0.01)
        job = await manager.process_next("sync")
        assert job.state == QueueJobState.COMPLETED
        assert calls == [1, 2]

    @pytest.mark.asyncio
    async def test_transient_failure_exhausts_attempts(self, manager):
        async def down(job):
            raise TransientSubmissionError("bad gateway", status_code=502)

        manager.register_handler("sync", "down", down)
        await manager.add("sync", {}, ACTOR, job_type="down", max_attempts=2)

        await manager.process_next("sync")
        await asyncio.sleep(0.01)
        job = await manager.process_next("sync")

        assert job.state == QueueJobState.FAILED
        assert job.attempts == 2

    @pytest.mark.asyncio
    async def test_delayed_job_waits_until_due(self, manager):
        manager.register_handler("sync", "sync", accept)
        await manager.add("sync", {"record_id": "later"}, ACTOR, delay_ms=60000)

        assert await manager.process_next("sync") is None
        assert manager.get_stats("sync")["sync"].delayed == 1

    @pytest.mark.asyncio
    async def test_workers_drain_queue(self, manager):
        manager.register_handler("sync", "sync", accept)
        await manager.start()
        try:
            for i in range(5):
                await manager.add("sync", {"record_id": f"rec-{i}"}, ACTOR)

            for _ in range(500):
                if manager.get_stats("sync")["sync"].completed == 5:
                    break
                await asyncio.sleep(0.01)

            health = manager.health_check()
        finally:
            await manager.stop()

        assert manager.get_stats("sync")["sync"].completed == 5
        assert health["healthy"] is True
        assert health["queues"]["sync"]["workers_alive"] == 1


class TestPauseResume:
    """Queue-level pause stops dispatch but not enqueueing."""

    @pytest.mark.asyncio
    async def test_paused_queue_accepts_but_does_not_dispatch(self, manager):
        manager.register_handler("sync", "sync", accept)

        assert await manager.pause("sync", ACTOR) is True
        assert await manager.pause("sync", ACTOR) is False

        await manager.add("sync", {"record_id": "rec-1"}, ACTOR)
        assert await manager.process_next("sync") is None
        assert manager.get_stats("sync")["sync"].paused is True

        assert await manager.resume("sync", ACTOR) is True
        assert await manager.resume("sync", ACTOR) is False
        job = await manager.process_next("sync")
        assert job.state == QueueJobState.COMPLETED

    @pytest.mark.asyncio
    async def test_pause_is_scoped_to_one_queue(self, manager):
        manager.declare_queue("invoices")
        manager.register_handler("invoices", "sync", accept)
        await manager.pause("sync", ACTOR)

        await manager.add("invoices", {"record_id": "inv-1"}, ACTOR)
        job = await manager.process_next("invoices")

        assert job.state == QueueJobState.COMPLETED


class TestRetryAndRemove:
    """Operator retry and removal of specific jobs."""

    @pytest.mark.asyncio
    async def test_retry_reports_per_job_outcome(self, manager, audit_sink):
        failed_ids = await add_failed_jobs(manager, 1)
        waiting_id = await manager.add("sync", {"record_id": "rec-1"}, ACTOR)

        outcomes = await manager.retry("sync", [failed_ids[0], waiting_id, "qj_missing"], ACTOR)

        assert outcomes == {
            failed_ids[0]: RetryJobOutcome.RETRIED,
            waiting_id: RetryJobOutcome.NOT_FAILED,
            "qj_missing": RetryJobOutcome.NOT_FOUND
        }
        retried = manager.get_jobs("sync", state="waiting")
        assert failed_ids[0] in [j.job_id for j in retried]
        assert next(j for j in retried if j.job_id == failed_ids[0]).attempts == 0
        assert audit_sink.for_action("queue.retry")[0].affected_count == 1

    @pytest.mark.asyncio
    async def test_remove_specific_jobs(self, manager):
        keep = await manager.add("sync", {"record_id": "keep"}, ACTOR)
        drop = await manager.add("sync", {"record_id": "drop"}, ACTOR)

        removed = await manager.remove("sync", iter([drop, "qj_missing"]), ACTOR)

        assert removed == 1
        assert [j.job_id for j in manager.get_jobs("sync")] == [keep]

    @pytest.mark.asyncio
    async def test_unknown_queue_raises(self, manager, audit_sink):
        with pytest.raises(QueueNotFoundError):
            await manager.pause("nope", ACTOR)
        with pytest.raises(QueueNotFoundError):
            await manager.add("nope", {}, ACTOR)
        with pytest.raises(QueueNotFoundError):
            manager.get_stats("nope")

        rejected = [a for a in audit_sink.records if a.scope == "nope"]
        assert [(a.action, a.outcome) for a in rejected] == [
            ("queue.pause", "rejected"),
            ("queue.add", "rejected")
        ]
        assert rejected[0].actor == ACTOR


class TestQueries:
    """Stats and job listings."""

    @pytest.mark.asyncio
    async def test_get_jobs_paginates_in_dispatch_order(self, manager):
        ids = [await manager.add("sync", {"n": i}, ACTOR) for i in range(5)]

        page = manager.get_jobs("sync", limit=2, offset=1)

        assert [j.job_id for j in page] == ids[1:3]

    def test_stats_cover_every_queue(self, manager):
        manager.declare_queue("invoices", concurrency=2)

        stats = manager.get_stats()

        assert set(stats) == {"sync", "invoices"}
        assert stats["invoices"].waiting == 0

    def test_declare_rejects_zero_concurrency(self, manager):
        with pytest.raises(QueueError):
            manager.declare_queue("broken", concurrency=0)
