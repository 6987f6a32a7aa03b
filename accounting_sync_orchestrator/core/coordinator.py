"""
MigrationCoordinator for Accounting Sync Orchestrator

Owns the migration job lifecycle: admission (scope lock, validation gate,
connection check), the per-job processing task, operator control
(pause/resume/cancel), persistence of job state and audit records, and the hand-off of
unmigratable records to quarantine and back.
"""

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..connectors.base import AccountingClient, AuditSink, RecordSource
from ..models.audit import AuditRecord
from ..models.migration import (
    DateRange,
    ErrorClassification,
    ErrorEntry,
    LIVE_STATUSES,
    MigrationConfig,
    MigrationStatus,
    MigrationSummary,
    ProgressSnapshot,
    TERMINAL_STATUSES,
    format_duration
)
from ..models.quarantine import RecoveryResult
from ..models.validation import ValidationReport
from ..services.batch_processor import (
    BatchProcessor,
    BatchResult,
    BatchRunOutcome,
    DryRunSubmitter,
    MigrationControl,
    create_batches
)
from ..services.progress_tracker import ProgressTracker
from ..services.quarantine_manager import QuarantineManager
from ..services.retry_manager import RetryManager, RetryPolicy
from ..services.validation_engine import ValidationEngine, approved_at_of, record_id_of
from ..utils.database import InMemoryMigrationStore, MigrationStore
from ..utils.logger import get_logger, set_log_context
from ..utils import metrics
from .exceptions import (
    ConcurrentMigrationError,
    ExternalSystemUnavailableError,
    MigrationNotFoundError,
    MigrationStartError,
    SyncOrchestratorError,
    SystemicFailureError,
    ValidationBlockedError,
    ValidationError
)

SYSTEM_ACTOR = "system"
SYSTEM_RECORD_ID = "SYSTEM"

# Planning figures used by analyze_migration
ANALYSIS_BATCH_SIZE = 50
ANALYSIS_MINUTES_PER_BATCH = 2


@dataclass
class ControlResult:
    """Outcome of a pause, resume or cancel request."""
    job_id: str
    action: str
    applied: bool
    status: MigrationStatus
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "action": self.action,
            "applied": self.applied,
            "status": self.status.value,
            "message": self.message
        }


class MigrationJob:
    """
    One migration run: configuration, the ordered record set split into
    batches, its progress tracker and its control signals.
    """

    def __init__(
        self,
        job_id: str,
        config: MigrationConfig,
        created_by: str,
        records: Sequence[Mapping[str, Any]],
        forced: bool = False,
        parent_job_id: Optional[str] = None
    ):
        self.job_id = job_id
        self.config = config
        self.created_by = created_by
        self.created_at = datetime.utcnow()
        self.forced = forced
        self.parent_job_id = parent_job_id
        self.batches = create_batches(list(records), config.batch_size)
        self.tracker = ProgressTracker(job_id)
        self.control = MigrationControl()
        # Serialises pause/resume/cancel so only one caller acts on a status
        self.control_lock = asyncio.Lock()
        self.task: Optional[asyncio.Task] = None

    @property
    def status(self) -> MigrationStatus:
        return self.tracker.status

    @property
    def records(self) -> List[Mapping[str, Any]]:
        return [record for batch in self.batches for record in batch]

    def snapshot(self) -> ProgressSnapshot:
        return self.tracker.snapshot()


class MigrationCoordinator:
    """
    Coordinates batch migrations into the accounting system.

    Provides capabilities for:
    - Admission control with a per-scope lock and pre-flight validation
    - Sequential batch processing with retries, one task per job
    - Cooperative pause, resume and cancel at batch boundaries
    - Persistence of job state after every batch and audited control actions
    - Quarantine of unmigratable records and recovery of corrected ones
    """

    def __init__(
        self,
        record_source: RecordSource,
        accounting_client: AccountingClient,
        audit_sink: AuditSink,
        store: Optional[MigrationStore] = None,
        validation_engine: Optional[ValidationEngine] = None,
        retry_policy: Optional[RetryPolicy] = None,
        quarantine: Optional[QuarantineManager] = None
    ):
        """
        Initialize the MigrationCoordinator.

        Args:
            record_source: Source of committed records awaiting migration
            accounting_client: Client for the external accounting system
            audit_sink: Destination for control-plane audit records
            store: Persistence for job state; in-memory when omitted
            validation_engine: Pre-flight validator; built-in rules when omitted
            retry_policy: Backoff settings; ``max_retries`` comes from each job's config
            quarantine: Holds records that live runs could not migrate; built on ``store`` when omitted
        """
        self.record_source = record_source
        self.accounting_client = accounting_client
        self.audit_sink = audit_sink
        self.store = store or InMemoryMigrationStore()
        self.validation_engine = validation_engine or ValidationEngine()
        self.retry_manager = RetryManager(retry_policy)
        self.quarantine = quarantine or QuarantineManager(audit_sink, self.store, self.validation_engine)

        self._jobs: Dict[str, MigrationJob] = {}
        self._admission_lock = asyncio.Lock()
        self._is_running = False

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="coordinator")

    # Lifecycle

    async def start(self):
        """Start the coordinator and initialise its store."""
        self.logger.info("Starting MigrationCoordinator")
        await self.store.initialize()
        self._is_running = True
        self.logger.info("MigrationCoordinator started successfully")

    async def stop(self):
        """Cancel live migrations cooperatively and wait for their tasks."""
        self.logger.info("Stopping MigrationCoordinator")
        self._is_running = False

        for job in self._jobs.values():
            if job.status in LIVE_STATUSES:
                await self.cancel(job.job_id, SYSTEM_ACTOR)

        tasks = [job.task for job in self._jobs.values() if job.task and not job.task.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

        await self.store.close()
        self.logger.info("MigrationCoordinator stopped")

    @property
    def is_running(self) -> bool:
        return self._is_running

    # Migration lifecycle

    async def start_migration(self, config: MigrationConfig, actor: str, force: bool = False) -> str:
        """
        Admit and launch a migration.

        Args:
            config: Migration configuration
            actor: Authenticated operator identity
            force: Start despite blocking validation errors (audited)

        Returns:
            Job ID of the new migration

        Raises:
            ValidationError: configuration out of range
            ConcurrentMigrationError: a live migration already covers the scope
            MigrationStartError: nothing to migrate
            ValidationBlockedError: blocking validation errors without an override
            ExternalSystemUnavailableError: live run and the accounting system is unreachable
        """
        self._ensure_running()
        await self._validate_config(actor, "start", config.scope_key(), config)

        async with self._admission_lock:
            conflict = self._find_conflict(config)
            if conflict:
                await self._audit(actor, "start", config.scope_key(), "rejected",
                                  details={"reason": "concurrent_migration", "active_job_id": conflict.job_id})
                raise ConcurrentMigrationError(config.scope_key(), conflict.job_id)

            records = await self.record_source.fetch_pending(config.date_range, config.include_rejected)
            job = await self._admit(config, actor, records, force)

        self._launch(job, start_index=0)
        return job.job_id

    async def remigrate_failed(self, job_id: str, actor: str,
                               overrides: Optional[Dict[str, Any]] = None) -> str:
        """
        Start a new migration over the records that failed in a finished job.

        Raises:
            MigrationNotFoundError: unknown job
            MigrationStartError: the job is still live or has no failed records
        """
        self._ensure_running()
        source_job = await self._get_job_for(actor, "remigrate_failed", job_id)
        if source_job.status not in TERMINAL_STATUSES:
            await self._audit(actor, "remigrate_failed", job_id, "rejected",
                              details={"reason": "migration_live", "status": source_job.status.value})
            raise MigrationStartError(f"migration {job_id} is still {source_job.status.value}")

        failed_ids = []
        for entry in source_job.snapshot().unresolved_errors:
            if entry.record_id != SYSTEM_RECORD_ID and entry.record_id not in failed_ids:
                failed_ids.append(entry.record_id)
        # Records of a systemically failed or cancelled job that never ran
        processed = {e.record_id for e in source_job.snapshot().errors}
        processed_count = source_job.snapshot().processed_records
        for record in source_job.records[processed_count:]:
            record_id = record_id_of(record)
            if record_id not in processed and record_id not in failed_ids:
                failed_ids.append(record_id)

        if not failed_ids:
            await self._audit(actor, "remigrate_failed", job_id, "rejected", details={"reason": "no_failed_records"})
            raise MigrationStartError(f"migration {job_id} has no failed records to re-migrate")

        config = await self._config_from(actor, "remigrate_failed", job_id,
                                         {**source_job.config.to_dict(), **(overrides or {})})

        async with self._admission_lock:
            conflict = self._find_conflict(config)
            if conflict:
                await self._audit(actor, "remigrate_failed", job_id, "rejected",
                                  details={"reason": "concurrent_migration", "active_job_id": conflict.job_id})
                raise ConcurrentMigrationError(config.scope_key(), conflict.job_id)

            records = await self.record_source.fetch_by_ids(failed_ids)
            job = await self._admit(config, actor, records, force=False, parent_job_id=job_id,
                                    action="remigrate_failed")

        self._launch(job, start_index=0)
        return job.job_id

    async def recover_quarantined(
        self,
        actor: str,
        priority_only: bool = False,
        max_records: int = 100,
        dry_run: bool = False,
        overrides: Optional[Dict[str, Any]] = None
    ) -> RecoveryResult:
        """
        Re-migrate quarantined records that now pass validation.

        Open entries are re-validated against their corrected data, or the
        original record when none was supplied. With ``dry_run`` the pass only
        reports what it would recover. Otherwise the recoverable records go
        out in a new live migration and their entries stay under review until
        that migration syncs them.

        Raises:
            ValidationError: ``overrides`` produce an invalid configuration
            ConcurrentMigrationError: a live migration already covers the scope
        """
        self._ensure_running()
        candidates = self.quarantine.recovery_candidates(priority_only, max_records)
        recoverable = [
            entry for entry in candidates
            if not self.validation_engine.has_blocking_issues(entry.migratable_record)
        ]
        result = RecoveryResult(
            candidates=len(candidates),
            recovered=len(recoverable),
            still_invalid=len(candidates) - len(recoverable),
            recovered_ids=[entry.record_id for entry in recoverable],
            dry_run=dry_run
        )

        if dry_run or not recoverable:
            await self._audit(actor, "recover_quarantined", "quarantine",
                              "previewed" if dry_run else "not_applied",
                              affected_count=result.recovered, details=result.to_dict())
            return result

        config = await self._config_from(actor, "recover_quarantined", "quarantine",
                                         {"dry_run": False, **(overrides or {})})

        async with self._admission_lock:
            conflict = self._find_conflict(config)
            if conflict:
                await self._audit(actor, "recover_quarantined", "quarantine", "rejected",
                                  details={"reason": "concurrent_migration", "active_job_id": conflict.job_id})
                raise ConcurrentMigrationError(config.scope_key(), conflict.job_id)

            records = [entry.migratable_record for entry in recoverable]
            job = await self._admit(config, actor, records, force=False, action="recover_quarantined")

        await self.quarantine.mark_recovering(recoverable, job.job_id, actor)
        self._launch(job, start_index=0)
        result.job_id = job.job_id
        return result

    async def pause(self, job_id: str, actor: str) -> ControlResult:
        """Request a pause; it takes effect after the in-flight batch settles."""
        job = await self._get_job_for(actor, "pause", job_id)

        async with job.control_lock:
            status = job.status
            if status == MigrationStatus.RUNNING and not job.control.pause_requested.is_set():
                job.control.request_pause()
                result = ControlResult(job_id, "pause", True, status,
                                       "Pause requested; takes effect at the next batch boundary")
            elif status == MigrationStatus.RUNNING:
                result = ControlResult(job_id, "pause", False, status, "Pause already requested")
            elif status == MigrationStatus.PAUSED:
                result = ControlResult(job_id, "pause", False, status, "Migration is already paused")
            else:
                result = ControlResult(job_id, "pause", False, status,
                                       f"Cannot pause a migration that is {status.value}")

            await self._audit_control(actor, result)
        return result

    async def resume(self, job_id: str, actor: str) -> ControlResult:
        """Resume a paused migration from the next unprocessed batch."""
        job = await self._get_job_for(actor, "resume", job_id)

        async with job.control_lock:
            status = job.status
            if status == MigrationStatus.PAUSED:
                if job.task and not job.task.done():
                    await job.task
                job.control.clear_pause()
                job.tracker.transition(MigrationStatus.RUNNING)
                start_index = job.snapshot().completed_batches
                self._launch(job, start_index=start_index)
                result = ControlResult(job_id, "resume", True, MigrationStatus.RUNNING,
                                       f"Resumed at batch {start_index + 1} of {len(job.batches)}")
            elif status == MigrationStatus.RUNNING and job.control.pause_requested.is_set():
                job.control.clear_pause()
                result = ControlResult(job_id, "resume", True, status, "Pending pause request withdrawn")
            else:
                result = ControlResult(job_id, "resume", False, status,
                                       f"Cannot resume a migration that is {status.value}")

            await self._audit_control(actor, result)
        return result

    async def cancel(self, job_id: str, actor: str) -> ControlResult:
        """Cancel a migration; terminal. Running jobs stop at the next batch boundary."""
        job = await self._get_job_for(actor, "cancel", job_id)

        async with job.control_lock:
            status = job.status
            if status in (MigrationStatus.PAUSED, MigrationStatus.PENDING):
                job.control.request_cancel()
                if job.task and not job.task.done():
                    await job.task
                job.tracker.transition(MigrationStatus.CANCELLED)
                await self._finish(job)
                result = ControlResult(job_id, "cancel", True, MigrationStatus.CANCELLED, "Migration cancelled")
            elif status == MigrationStatus.RUNNING and not job.control.cancel_requested.is_set():
                job.control.request_cancel()
                result = ControlResult(job_id, "cancel", True, status,
                                       "Cancellation requested; takes effect at the next batch boundary")
            elif status == MigrationStatus.RUNNING:
                result = ControlResult(job_id, "cancel", False, status, "Cancellation already requested")
            else:
                result = ControlResult(job_id, "cancel", False, status,
                                       f"Cannot cancel a migration that is {status.value}")

            await self._audit_control(actor, result)
        return result

    def get_progress(self, job_id: str) -> ProgressSnapshot:
        """Consistent snapshot of a migration's progress."""
        return self._get_job(job_id).snapshot()

    def list_migrations(self) -> List[ProgressSnapshot]:
        """Snapshots of every known migration, oldest first."""
        jobs = sorted(self._jobs.values(), key=lambda job: job.created_at)
        return [job.snapshot() for job in jobs]

    async def wait_for_status(self, job_id: str, *statuses: MigrationStatus,
                              timeout: Optional[float] = None) -> ProgressSnapshot:
        """Poll until the migration reaches one of ``statuses`` (terminal by default)."""
        wanted = set(statuses) or set(TERMINAL_STATUSES)

        async def poll() -> ProgressSnapshot:
            while True:
                snapshot = self.get_progress(job_id)
                if snapshot.status in wanted:
                    return snapshot
                await asyncio.sleep(0.01)

        return await asyncio.wait_for(poll(), timeout=timeout)

    # Analysis

    async def analyze_migration(self, date_range: Optional[DateRange] = None) -> MigrationSummary:
        """Count what a migration over ``date_range`` would have to move."""
        total = await self.record_source.count_approved(date_range)
        synced = await self.record_source.count_synced(date_range)
        pending = await self.record_source.fetch_pending(date_range)

        approvals = [ts for ts in (approved_at_of(r) for r in pending) if ts is not None]
        batches = -(-len(pending) // ANALYSIS_BATCH_SIZE)

        return MigrationSummary(
            total_approved_records=total,
            already_synced_records=synced,
            pending_migration_records=len(pending),
            oldest_pending_at=min(approvals) if approvals else None,
            newest_pending_at=max(approvals) if approvals else None,
            estimated_duration=format_duration(batches * ANALYSIS_MINUTES_PER_BATCH)
        )

    async def validate_pending(self, date_range: Optional[DateRange] = None,
                               include_rejected: bool = False) -> ValidationReport:
        """Validate pending records without starting a migration."""
        records = await self.record_source.fetch_pending(date_range, include_rejected)
        return self.validation_engine.validate(records)

    # Internals

    def _ensure_running(self):
        if not self._is_running:
            raise SyncOrchestratorError("Coordinator is not running", error_code="COORDINATOR_STOPPED")

    def _get_job(self, job_id: str) -> MigrationJob:
        job = self._jobs.get(job_id)
        if job is None:
            raise MigrationNotFoundError(job_id)
        return job

    async def _get_job_for(self, actor: str, action: str, job_id: str) -> MigrationJob:
        """Look up the target of a mutating request, auditing the rejection of an unknown id."""
        job = self._jobs.get(job_id)
        if job is None:
            await self._audit(actor, action, job_id, "rejected", details={"reason": "not_found"})
            raise MigrationNotFoundError(job_id)
        return job

    async def _validate_config(self, actor: str, action: str, scope: str, config: MigrationConfig):
        try:
            config.validate()
        except ValidationError as e:
            await self._audit(actor, action, scope, "rejected", details={"reason": "invalid_config", **e.details})
            raise

    async def _config_from(self, actor: str, action: str, scope: str, data: Dict[str, Any]) -> MigrationConfig:
        """Validated MigrationConfig built from operator-supplied settings."""
        try:
            config = MigrationConfig.from_dict(data)
        except (TypeError, ValueError, ValidationError) as e:
            await self._audit(actor, action, scope, "rejected", details={"reason": "invalid_config", "error": str(e)})
            raise ValidationError("overrides", str(e), data)
        await self._validate_config(actor, action, scope, config)
        return config

    def _find_conflict(self, config: MigrationConfig) -> Optional[MigrationJob]:
        for job in self._jobs.values():
            if job.status in LIVE_STATUSES and job.config.overlaps(config):
                return job
        return None

    async def _admit(
        self,
        config: MigrationConfig,
        actor: str,
        records: List[Mapping[str, Any]],
        force: bool,
        parent_job_id: Optional[str] = None,
        action: str = "start"
    ) -> MigrationJob:
        """Validation gate and job creation; caller holds the admission lock."""
        scope = config.scope_key()
        if not records:
            await self._audit(actor, action, scope, "rejected", details={"reason": "no_pending_records"})
            raise MigrationStartError("No pending records found for migration", config.to_dict())

        report = self.validation_engine.validate(records)
        excluded: List[Mapping[str, Any]] = []
        if report.has_blocking_errors:
            if config.skip_invalid:
                kept = []
                for record in records:
                    (excluded if self.validation_engine.has_blocking_issues(record) else kept).append(record)
                records = kept
            elif not force:
                await self._audit(actor, action, scope, "rejected", affected_count=report.invalid_records,
                                  details={"reason": "validation_blocked",
                                           "readiness_score": report.readiness_score})
                raise ValidationBlockedError(report.invalid_records, report.readiness_score, report.to_dict())

        if not records:
            await self._audit(actor, action, scope, "rejected", details={"reason": "all_records_invalid"})
            raise MigrationStartError("Every pending record failed validation", config.to_dict())

        if not config.dry_run and not await self.accounting_client.check_connection():
            await self._audit(actor, action, scope, "rejected", details={"reason": "external_unavailable"})
            raise ExternalSystemUnavailableError("accounting system", "connection check failed")

        forced = force and report.has_blocking_errors and not config.skip_invalid
        job = MigrationJob(
            job_id=f"mig_{uuid.uuid4().hex[:12]}",
            config=config,
            created_by=actor,
            records=records,
            forced=forced,
            parent_job_id=parent_job_id
        )
        skipped = len(excluded)
        job.tracker.begin(len(records), len(job.batches), skipped_records=skipped)
        self._jobs[job.job_id] = job
        await self._persist(job)
        if excluded and not config.dry_run:
            await self.quarantine.quarantine_invalid(job.job_id, excluded, actor)

        await self._audit(actor, action, job.job_id, "accepted",
                          affected_count=len(records), details={
                              "config": config.to_dict(),
                              "forced": forced,
                              "skipped_records": skipped,
                              "readiness_score": report.readiness_score,
                              "parent_job_id": parent_job_id
                          })

        self.logger.info("Migration admitted", extra={
            "job_id": job.job_id,
            "scope": scope,
            "total_records": len(records),
            "total_batches": len(job.batches),
            "dry_run": config.dry_run,
            "forced": forced
        })
        return job

    def _launch(self, job: MigrationJob, start_index: int):
        if job.status == MigrationStatus.PENDING:
            job.tracker.transition(MigrationStatus.RUNNING)
        job.task = asyncio.create_task(self._run_job(job, start_index), name=f"migration-{job.job_id}")

    def _build_processor(self, job: MigrationJob) -> BatchProcessor:
        config = job.config
        if config.dry_run:
            submitter = DryRunSubmitter(self.validation_engine)
        else:
            submitter = self.accounting_client.submit

        async def on_batch_settled(result: BatchResult):
            if not config.dry_run and result.succeeded_ids:
                await self.record_source.mark_synced(result.succeeded_ids)
                await self.quarantine.resolve_synced(result.succeeded_ids, job.job_id)
            await self._persist(job)

        return BatchProcessor(
            retry_manager=self.retry_manager.with_max_retries(config.max_retries),
            tracker=job.tracker,
            submitter=submitter,
            delay_between_batches_ms=config.delay_between_batches_ms,
            concurrency=config.concurrency,
            dry_run=config.dry_run,
            on_batch_settled=on_batch_settled
        )

    async def _run_job(self, job: MigrationJob, start_index: int):
        """Processing loop for one job; ends when the job is paused or terminal."""
        processor = self._build_processor(job)
        metrics.ACTIVE_MIGRATIONS.inc()
        self.logger.info(f"Processing migration from batch {start_index + 1}", extra={"job_id": job.job_id})

        try:
            index = start_index
            while True:
                run = await processor.run(job.batches, index, job.control)
                index = run.next_batch_index

                if run.outcome == BatchRunOutcome.COMPLETED:
                    job.tracker.transition(MigrationStatus.COMPLETED)
                elif run.outcome == BatchRunOutcome.SYSTEMIC_FAILURE:
                    failure = SystemicFailureError(job.job_id, run.last_batch.batch_number, run.last_batch.failed)
                    job.tracker.add_error(ErrorEntry(
                        record_id=SYSTEM_RECORD_ID,
                        message=failure.message,
                        classification=ErrorClassification.SYSTEMIC
                    ))
                    job.tracker.transition(MigrationStatus.FAILED)
                elif job.control.cancel_requested.is_set():
                    job.tracker.transition(MigrationStatus.CANCELLED)
                elif job.control.pause_requested.is_set():
                    job.tracker.transition(MigrationStatus.PAUSED)
                else:
                    # Pause withdrawn while the run was unwinding
                    continue
                break

        except asyncio.CancelledError:
            if not job.tracker.snapshot().is_terminal:
                job.tracker.transition(MigrationStatus.CANCELLED)
            raise
        except Exception as e:
            self.logger.error("Migration processing failed", exc_info=True, extra={"job_id": job.job_id})
            if not job.tracker.snapshot().is_terminal:
                job.tracker.add_error(ErrorEntry(
                    record_id=SYSTEM_RECORD_ID,
                    message=f"Unexpected error: {e}",
                    classification=ErrorClassification.SYSTEMIC
                ))
                job.tracker.transition(MigrationStatus.FAILED)
        finally:
            metrics.ACTIVE_MIGRATIONS.dec()
            if job.tracker.snapshot().is_terminal:
                await self._finish(job)
            else:
                await self._persist(job)

    async def _finish(self, job: MigrationJob):
        snapshot = job.snapshot()
        metrics.MIGRATIONS_FINISHED.labels(status=snapshot.status.value).inc()
        await self._persist(job)
        if not job.config.dry_run:
            await self.quarantine.quarantine_failures(job.job_id, job.records, snapshot.errors)
        await self._audit(SYSTEM_ACTOR, "finish", job.job_id, snapshot.status.value,
                          affected_count=snapshot.processed_records, details={
                              "successful_records": snapshot.successful_records,
                              "failed_records": snapshot.failed_records,
                              "skipped_records": snapshot.skipped_records
                          })
        self.logger.info(f"Migration {snapshot.status.value}", extra={
            "job_id": job.job_id,
            "processed_records": snapshot.processed_records,
            "successful_records": snapshot.successful_records,
            "failed_records": snapshot.failed_records
        })

    async def _persist(self, job: MigrationJob):
        await self.store.save_migration(job.snapshot(), job.config, job.created_by)

    async def _audit(self, actor: str, action: str, scope: str, outcome: str,
                     affected_count: int = 0, details: Optional[Dict[str, Any]] = None):
        await self.audit_sink.record(AuditRecord(
            actor=actor,
            action=action,
            scope=scope,
            scope_type="migration",
            outcome=outcome,
            affected_count=affected_count,
            details=details or {}
        ))

    async def _audit_control(self, actor: str, result: ControlResult):
        await self._audit(actor, result.action, result.job_id,
                          "applied" if result.applied else "not_applied",
                          details={"status": result.status.value, "message": result.message})
