"""
QueueManager service for Accounting Sync Orchestrator

Manages named queues of small sync tasks, priority scheduling, delayed retry
and operator control (pause/resume/clear/retry/remove). Each queue is its own
unit of mutual exclusion, so operations on one queue never wait on another.
"""

import asyncio
import itertools
import uuid
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple

from ..connectors.base import AuditSink
from ..core.exceptions import QueueError, QueueNotFoundError
from ..models.audit import AuditRecord
from ..models.migration import ErrorClassification
from ..models.queue import QueueJob, QueueJobState, QueueStats, RetryJobOutcome
from ..utils.logger import get_logger, set_log_context
from ..utils import metrics
from .retry_manager import RetryPolicy, classify_error

JobHandler = Callable[[QueueJob], Awaitable[Any]]

DEFAULT_PRIORITY = 5


class _NamedQueue:
    """State of one named queue; mutated only under ``lock``."""

    def __init__(self, name: str, concurrency: int):
        self.name = name
        self.concurrency = concurrency
        self.lock = asyncio.Lock()
        self.wakeup = asyncio.Event()
        self.paused = False
        self.jobs: Dict[str, QueueJob] = {}
        self.workers: List[asyncio.Task] = []

    def count(self, state: QueueJobState) -> int:
        return sum(1 for job in self.jobs.values() if job.state == state)


class QueueManager:
    """
    Manages named job queues and their dispatchers.

    Provides capabilities for:
    - Priority-based queuing (lower number runs first, FIFO within a priority)
    - Delayed jobs and backoff for transient handler failures
    - Pause/resume, clear, retry and remove with audit records
    - Live per-queue statistics and health checks
    """

    def __init__(
        self,
        audit_sink: AuditSink,
        retry_policy: Optional[RetryPolicy] = None,
        poll_interval: float = 0.5
    ):
        """
        Initialize QueueManager.

        Args:
            audit_sink: Destination for audit records of mutating operations
            retry_policy: Backoff used when a job is retried after a transient failure
            poll_interval: Longest a dispatcher sleeps before re-checking delayed jobs
        """
        self.audit_sink = audit_sink
        self.retry_policy = retry_policy or RetryPolicy()
        self.poll_interval = poll_interval

        self._queues: Dict[str, _NamedQueue] = {}
        self._handlers: Dict[Tuple[str, str], JobHandler] = {}
        self._sequence = itertools.count(1)
        self._is_running = False

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="queue_manager")

    # Setup and lifecycle

    def declare_queue(self, queue_name: str, concurrency: int = 1):
        """Create a named queue; declaring an existing queue is a no-op."""
        if concurrency < 1:
            raise QueueError("declare_queue", "concurrency must be >= 1")
        if queue_name in self._queues:
            return
        queue = _NamedQueue(queue_name, concurrency)
        self._queues[queue_name] = queue
        if self._is_running:
            self._spawn_workers(queue)
        self.logger.info("Queue declared", extra={"queue_name": queue_name, "concurrency": concurrency})

    def register_handler(self, queue_name: str, job_type: str, handler: JobHandler):
        """Register the coroutine function that executes ``job_type`` jobs of a queue."""
        self._get_queue(queue_name)
        self._handlers[(queue_name, job_type)] = handler

    @property
    def queue_names(self) -> List[str]:
        return list(self._queues)

    async def start(self):
        """Start dispatchers for every declared queue."""
        self.logger.info("Starting QueueManager", extra={"queues": self.queue_names})
        self._is_running = True
        for queue in self._queues.values():
            self._spawn_workers(queue)

    async def stop(self):
        """Stop dispatchers; jobs left active are returned to waiting."""
        self.logger.info("Stopping QueueManager")
        self._is_running = False

        workers = [w for q in self._queues.values() for w in q.workers]
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)

        for queue in self._queues.values():
            queue.workers = []
            async with queue.lock:
                for job in queue.jobs.values():
                    if job.state == QueueJobState.ACTIVE:
                        job.state = QueueJobState.WAITING
                self._update_gauges(queue)

    # Mutating operations

    async def add(
        self,
        queue_name: str,
        payload: Dict[str, Any],
        actor: str,
        job_type: str = "sync",
        priority: int = DEFAULT_PRIORITY,
        delay_ms: int = 0,
        max_attempts: int = 3
    ) -> str:
        """
        Add a job to a queue. Paused queues accept jobs but do not dispatch them.

        Returns:
            ID of the new queue job
        """
        queue = await self._get_queue_for(actor, "add", queue_name)
        if max_attempts < 1:
            await self._reject(actor, "add", queue_name, QueueError("add", "max_attempts must be >= 1"))
        if delay_ms < 0:
            await self._reject(actor, "add", queue_name, QueueError("add", "delay_ms must be >= 0"))

        now = datetime.utcnow()
        job = QueueJob(
            job_id=f"qj_{uuid.uuid4().hex[:12]}",
            queue_name=queue_name,
            job_type=job_type,
            payload=dict(payload),
            priority=priority,
            max_attempts=max_attempts,
            sequence=next(self._sequence),
            created_at=now
        )
        if delay_ms:
            job.state = QueueJobState.DELAYED
            job.run_at = now + timedelta(milliseconds=delay_ms)

        async with queue.lock:
            queue.jobs[job.job_id] = job
            self._update_gauges(queue)
        queue.wakeup.set()

        self.logger.info("Job enqueued", extra={
            "queue_name": queue_name,
            "job_id": job.job_id,
            "job_type": job_type,
            "priority": priority
        })
        await self._audit(actor, "add", queue_name, 1, {"job_id": job.job_id, "job_type": job_type})
        return job.job_id

    async def pause(self, queue_name: str, actor: str) -> bool:
        """Stop dispatching from a queue. Returns False if it was already paused."""
        queue = await self._get_queue_for(actor, "pause", queue_name)
        async with queue.lock:
            applied = not queue.paused
            queue.paused = True
        self.logger.info("Queue processing paused", extra={"queue_name": queue_name})
        await self._audit(actor, "pause", queue_name, 0, {"applied": applied})
        return applied

    async def resume(self, queue_name: str, actor: str) -> bool:
        """Resume dispatching. Returns False if the queue was not paused."""
        queue = await self._get_queue_for(actor, "resume", queue_name)
        async with queue.lock:
            applied = queue.paused
            queue.paused = False
        queue.wakeup.set()
        self.logger.info("Queue processing resumed", extra={"queue_name": queue_name})
        await self._audit(actor, "resume", queue_name, 0, {"applied": applied})
        return applied

    async def clear(self, queue_name: str, actor: str,
                    job_type_filter: Optional[Iterable[str]] = None) -> int:
        """
        Remove jobs in the given states (all non-active jobs when no filter).

        Args:
            queue_name: Queue to clear
            actor: Operator identity
            job_type_filter: State names such as ``["failed", "completed"]``

        Returns:
            Number of jobs removed; active jobs are never cleared
        """
        queue = await self._get_queue_for(actor, "clear", queue_name)
        job_type_filter = list(job_type_filter) if job_type_filter else None
        try:
            states = self._parse_states("clear", job_type_filter)
        except QueueError as e:
            await self._reject(actor, "clear", queue_name, e)

        async with queue.lock:
            doomed = [
                job_id for job_id, job in queue.jobs.items()
                if job.state != QueueJobState.ACTIVE and (states is None or job.state in states)
            ]
            for job_id in doomed:
                del queue.jobs[job_id]
            self._update_gauges(queue)

        self.logger.info(f"Cleared {len(doomed)} jobs", extra={
            "queue_name": queue_name,
            "states": sorted(s.value for s in states) if states else "all"
        })
        await self._audit(actor, "clear", queue_name, len(doomed), {
            "job_type_filter": job_type_filter
        })
        return len(doomed)

    async def retry(self, queue_name: str, job_ids: Iterable[str], actor: str) -> Dict[str, RetryJobOutcome]:
        """Reset failed jobs to waiting; reports the outcome for every requested id."""
        queue = await self._get_queue_for(actor, "retry", queue_name)
        outcomes: Dict[str, RetryJobOutcome] = {}

        async with queue.lock:
            for job_id in job_ids:
                job = queue.jobs.get(job_id)
                if job is None:
                    outcomes[job_id] = RetryJobOutcome.NOT_FOUND
                elif job.state != QueueJobState.FAILED:
                    outcomes[job_id] = RetryJobOutcome.NOT_FAILED
                else:
                    job.state = QueueJobState.WAITING
                    job.attempts = 0
                    job.run_at = None
                    job.failed_reason = None
                    job.finished_at = None
                    outcomes[job_id] = RetryJobOutcome.RETRIED
            self._update_gauges(queue)
        queue.wakeup.set()

        retried = sum(1 for o in outcomes.values() if o == RetryJobOutcome.RETRIED)
        await self._audit(actor, "retry", queue_name, retried, {
            "outcomes": {job_id: o.value for job_id, o in outcomes.items()}
        })
        return outcomes

    async def remove(self, queue_name: str, job_ids: Iterable[str], actor: str) -> int:
        """Remove specific jobs; active jobs are left alone. Returns the count removed."""
        queue = await self._get_queue_for(actor, "remove", queue_name)
        job_ids = list(job_ids)
        removed = 0

        async with queue.lock:
            for job_id in job_ids:
                job = queue.jobs.get(job_id)
                if job is not None and job.state != QueueJobState.ACTIVE:
                    del queue.jobs[job_id]
                    removed += 1
            self._update_gauges(queue)

        await self._audit(actor, "remove", queue_name, removed, {"requested": list(job_ids)})
        return removed

    # Queries

    def get_stats(self, queue_name: Optional[str] = None) -> Dict[str, QueueStats]:
        """Live counts for one queue or every queue."""
        queues = [self._get_queue(queue_name)] if queue_name else list(self._queues.values())
        return {
            queue.name: QueueStats(
                queue_name=queue.name,
                waiting=queue.count(QueueJobState.WAITING),
                active=queue.count(QueueJobState.ACTIVE),
                completed=queue.count(QueueJobState.COMPLETED),
                failed=queue.count(QueueJobState.FAILED),
                delayed=queue.count(QueueJobState.DELAYED),
                paused=queue.paused
            )
            for queue in queues
        }

    def get_jobs(self, queue_name: str, state: Optional[str] = None,
                 limit: int = 50, offset: int = 0) -> List[QueueJob]:
        """Jobs of a queue in dispatch order, optionally filtered by state name."""
        queue = self._get_queue(queue_name)
        states = self._parse_states("jobs", [state] if state else None)
        jobs = [j for j in queue.jobs.values() if states is None or j.state in states]
        jobs.sort(key=lambda j: (j.priority, j.sequence))
        return jobs[offset:offset + limit]

    def health_check(self) -> Dict[str, Any]:
        """Dispatcher liveness and backlog per queue."""
        queues = {}
        healthy = self._is_running
        for queue in self._queues.values():
            alive = sum(1 for w in queue.workers if not w.done())
            if self._is_running and alive < queue.concurrency:
                healthy = False
            queues[queue.name] = {
                "paused": queue.paused,
                "workers_alive": alive,
                "concurrency": queue.concurrency,
                "waiting": queue.count(QueueJobState.WAITING),
                "failed": queue.count(QueueJobState.FAILED)
            }
        return {
            "healthy": healthy,
            "running": self._is_running,
            "queues": queues,
            "checked_at": datetime.utcnow().isoformat()
        }

    # Dispatch

    async def process_next(self, queue_name: str) -> Optional[QueueJob]:
        """
        Claim and execute the next due job of a queue.

        Returns:
            The settled job, or None if the queue is paused or has nothing due
        """
        queue = self._get_queue(queue_name)
        job = await self._claim(queue)
        if job is None:
            return None

        handler = self._handlers.get((queue_name, job.job_type))
        try:
            if handler is None:
                raise QueueError("dispatch", f"no handler registered for job type '{job.job_type}'")
            result = await handler(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._settle_failure(queue, job, e)
        else:
            async with queue.lock:
                job.state = QueueJobState.COMPLETED
                job.result = result
                job.finished_at = datetime.utcnow()
                self._update_gauges(queue)
            self.logger.debug("Job completed", extra={"queue_name": queue_name, "job_id": job.job_id})
        return job

    async def _claim(self, queue: _NamedQueue) -> Optional[QueueJob]:
        async with queue.lock:
            if queue.paused:
                return None
            now = datetime.utcnow()
            for job in queue.jobs.values():
                if job.state == QueueJobState.DELAYED and job.is_due(now):
                    job.state = QueueJobState.WAITING
                    job.run_at = None

            waiting = [j for j in queue.jobs.values() if j.state == QueueJobState.WAITING]
            if not waiting:
                return None
            job = min(waiting, key=lambda j: (j.priority, j.sequence))
            job.state = QueueJobState.ACTIVE
            job.attempts += 1
            job.processed_at = now
            self._update_gauges(queue)
            return job

    async def _settle_failure(self, queue: _NamedQueue, job: QueueJob, error: Exception):
        reason = str(error) or error.__class__.__name__
        retryable = (
            not isinstance(error, QueueError)
            and classify_error(error) == ErrorClassification.TRANSIENT
            and job.attempts < job.max_attempts
        )
        async with queue.lock:
            job.failed_reason = reason
            if retryable:
                job.state = QueueJobState.DELAYED
                job.run_at = datetime.utcnow() + timedelta(seconds=self.retry_policy.delay_for(job.attempts))
            else:
                job.state = QueueJobState.FAILED
                job.finished_at = datetime.utcnow()
            self._update_gauges(queue)

        self.logger.warning(f"Job {'delayed for retry' if retryable else 'failed'}: {reason}", extra={
            "queue_name": queue.name,
            "job_id": job.job_id,
            "attempts": job.attempts
        })

    def _spawn_workers(self, queue: _NamedQueue):
        queue.workers = [w for w in queue.workers if not w.done()]
        for index in range(len(queue.workers), queue.concurrency):
            queue.workers.append(asyncio.create_task(
                self._worker_loop(queue), name=f"queue-{queue.name}-{index}"
            ))

    async def _worker_loop(self, queue: _NamedQueue):
        while self._is_running:
            try:
                job = await self.process_next(queue.name)
            except asyncio.CancelledError:
                raise
            except Exception:
                self.logger.error("Queue dispatcher error", exc_info=True, extra={"queue_name": queue.name})
                job = None

            if job is None:
                queue.wakeup.clear()
                try:
                    await asyncio.wait_for(queue.wakeup.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass

    # Helpers

    def _get_queue(self, queue_name: str) -> _NamedQueue:
        queue = self._queues.get(queue_name)
        if queue is None:
            raise QueueNotFoundError(queue_name)
        return queue

    async def _get_queue_for(self, actor: str, action: str, queue_name: str) -> _NamedQueue:
        queue = self._queues.get(queue_name)
        if queue is None:
            await self._reject(actor, action, queue_name, QueueNotFoundError(queue_name))
        return queue

    async def _reject(self, actor: str, action: str, queue_name: str, error: Exception):
        """Audit a refused operation, then raise ``error``."""
        await self._audit(actor, action, queue_name, 0, {"error": str(error)}, outcome="rejected")
        raise error

    @staticmethod
    def _parse_states(operation: str, names: Optional[Iterable[str]]) -> Optional[set]:
        if not names:
            return None
        try:
            return {QueueJobState(name.lower()) for name in names}
        except ValueError:
            valid = ", ".join(s.value for s in QueueJobState)
            raise QueueError(operation, f"unknown job state in {list(names)}; expected one of {valid}")

    def _update_gauges(self, queue: _NamedQueue):
        for state in QueueJobState:
            metrics.QUEUE_JOBS.labels(queue=queue.name, state=state.value).set(queue.count(state))

    async def _audit(self, actor: str, action: str, queue_name: str, affected_count: int,
                     details: Optional[Dict[str, Any]] = None, outcome: str = "success"):
        await self.audit_sink.record(AuditRecord(
            actor=actor,
            action=f"queue.{action}",
            scope=queue_name,
            scope_type="queue",
            outcome=outcome,
            affected_count=affected_count,
            details=details or {}
        ))
