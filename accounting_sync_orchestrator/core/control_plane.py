"""
Control plane for Accounting Sync Orchestrator

Single entry point for operator requests coming from an API handler or the
CLI. Requests are parsed into command models, dispatched to the migration
coordinator, the quarantine manager or the queue manager, and answered with
JSON-ready dicts.

Mutating requests that never reach a service (malformed payloads, a missing
queue manager) are audited here as rejected; services audit their own
rejections.
"""

from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from ..models.audit import AuditRecord
from ..models.quarantine import QuarantineStatus
from ..services.queue_manager import QueueManager
from ..utils.logger import get_logger, set_log_context
from .commands import (
    AddQueueJob,
    AnalyzeMigration,
    BulkUpdateQuarantine,
    CancelMigration,
    ClearQueue,
    GetProgress,
    ListMigrations,
    ListQuarantine,
    PauseMigration,
    PauseQueue,
    QuarantineAnalytics,
    QuarantineStatsCommand,
    QueueHealthCommand,
    QueueJobsCommand,
    QueueStatsCommand,
    RecoverQuarantined,
    RemigrateFailed,
    RemoveQueueJobs,
    ResumeMigration,
    ResumeQueue,
    RetryQueueJobs,
    ReviewQuarantine,
    StartMigration,
    ValidatePending,
    parse_migration_command,
    parse_quarantine_command,
    parse_queue_command
)
from .coordinator import MigrationCoordinator
from .exceptions import QueueError, SyncOrchestratorError

MIGRATION_MUTATIONS = frozenset({"start", "pause", "resume", "cancel", "remigrate_failed"})
QUEUE_MUTATIONS = frozenset({"add", "pause", "resume", "clear", "retry", "remove"})
QUARANTINE_MUTATIONS = frozenset({"review", "bulk_update", "recover"})


def _ok(data: Any) -> Dict[str, Any]:
    return {"success": True, "data": data}


def _error(error: SyncOrchestratorError) -> Dict[str, Any]:
    return {"success": False, "error": error.to_dict()}


def _date_range(command):
    return command.date_range.to_date_range() if command.date_range else None


class ControlPlane:
    """Dispatches validated commands to the coordinator, the quarantine manager and the queue manager."""

    def __init__(self, coordinator: MigrationCoordinator, queue_manager: Optional[QueueManager] = None):
        self.coordinator = coordinator
        self.queue_manager = queue_manager

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="control_plane")

    async def handle_migration_request(self, payload: Any, actor: str) -> Dict[str, Any]:
        """
        Handle a migration request.

        Args:
            payload: Request body with an ``action`` field
            actor: Authenticated operator identity

        Returns:
            ``{"success": True, "data": ...}`` or ``{"success": False, "error": ...}``
        """
        try:
            command = parse_migration_command(payload)
        except SyncOrchestratorError as e:
            await self._audit_unparsed(payload, actor, e, MIGRATION_MUTATIONS, "", "migration",
                                       ("jobId", "job_id"))
            return self._rejected("Migration", actor, e)

        try:
            return _ok(await self._dispatch_migration(command, actor))
        except SyncOrchestratorError as e:
            return self._rejected("Migration", actor, e)

    async def handle_quarantine_request(self, payload: Any, actor: str) -> Dict[str, Any]:
        """Handle a quarantine review or recovery request; same response shape as migration requests."""
        try:
            command = parse_quarantine_command(payload)
        except SyncOrchestratorError as e:
            await self._audit_unparsed(payload, actor, e, QUARANTINE_MUTATIONS, "quarantine.", "quarantine",
                                       ("quarantineId", "quarantine_id"))
            return self._rejected("Quarantine", actor, e)

        try:
            return _ok(await self._dispatch_quarantine(command, actor))
        except SyncOrchestratorError as e:
            return self._rejected("Quarantine", actor, e)

    async def handle_queue_request(self, payload: Any, actor: str) -> Dict[str, Any]:
        """Handle a queue management request; same response shape as migration requests."""
        try:
            command = parse_queue_command(payload)
            if self.queue_manager is None:
                raise QueueError(command.action, "queue manager is not configured")
        except SyncOrchestratorError as e:
            await self._audit_unparsed(payload, actor, e, QUEUE_MUTATIONS, "queue.", "queue",
                                       ("queueName", "queue_name"))
            return self._rejected("Queue", actor, e)

        try:
            return _ok(await self._dispatch_queue(command, actor))
        except SyncOrchestratorError as e:
            return self._rejected("Queue", actor, e)

    def _rejected(self, kind: str, actor: str, error: SyncOrchestratorError) -> Dict[str, Any]:
        self.logger.warning(f"{kind} request rejected: {error.message}", extra={
            "actor": actor,
            "error_code": error.error_code
        })
        return _error(error)

    async def _audit_unparsed(self, payload: Any, actor: str, error: SyncOrchestratorError,
                              mutations: FrozenSet[str], action_prefix: str, scope_type: str,
                              scope_keys: Tuple[str, ...]):
        """Audit a mutating request that was rejected before any service saw it."""
        if not isinstance(payload, Mapping):
            return
        action = payload.get("action")
        if action not in mutations:
            return

        scope = next(
            (payload[key] for key in scope_keys if isinstance(payload.get(key), str)),
            "request"
        )
        await self.coordinator.audit_sink.record(AuditRecord(
            actor=actor,
            action=f"{action_prefix}{action}",
            scope=scope,
            scope_type=scope_type,
            outcome="rejected",
            details={"error_code": error.error_code, "error": error.message}
        ))

    async def _dispatch_migration(self, command, actor: str) -> Any:
        coordinator = self.coordinator

        if isinstance(command, StartMigration):
            job_id = await coordinator.start_migration(command.to_config(), actor, force=command.force)
            return {"job_id": job_id, "status": coordinator.get_progress(job_id).status.value}
        if isinstance(command, PauseMigration):
            return (await coordinator.pause(command.job_id, actor)).to_dict()
        if isinstance(command, ResumeMigration):
            return (await coordinator.resume(command.job_id, actor)).to_dict()
        if isinstance(command, CancelMigration):
            return (await coordinator.cancel(command.job_id, actor)).to_dict()
        if isinstance(command, GetProgress):
            return coordinator.get_progress(command.job_id).to_dict()
        if isinstance(command, ListMigrations):
            return [snapshot.to_dict() for snapshot in coordinator.list_migrations()]
        if isinstance(command, AnalyzeMigration):
            return (await coordinator.analyze_migration(_date_range(command))).to_dict()
        if isinstance(command, ValidatePending):
            return (await coordinator.validate_pending(_date_range(command), command.include_rejected)).to_dict()
        if isinstance(command, RemigrateFailed):
            job_id = await coordinator.remigrate_failed(command.job_id, actor, command.overrides)
            return {"job_id": job_id, "parent_job_id": command.job_id}
        raise TypeError(f"Unhandled migration command {type(command).__name__}")

    async def _dispatch_quarantine(self, command, actor: str) -> Any:
        quarantine = self.coordinator.quarantine

        if isinstance(command, ListQuarantine):
            entries = quarantine.list_entries(
                status=command.status,
                priority=command.priority,
                reason=command.reason,
                job_id=command.job_id,
                limit=command.limit,
                offset=command.offset
            )
            return [entry.to_dict() for entry in entries]
        if isinstance(command, ReviewQuarantine):
            entry = await quarantine.review(
                command.quarantine_id,
                actor,
                QuarantineStatus(command.status),
                notes=command.notes,
                corrected_data=command.corrected_data
            )
            return entry.to_dict()
        if isinstance(command, BulkUpdateQuarantine):
            return await quarantine.bulk_update(
                command.quarantine_ids, actor, QuarantineStatus(command.status), command.notes
            )
        if isinstance(command, QuarantineStatsCommand):
            return quarantine.stats(_date_range(command)).to_dict()
        if isinstance(command, QuarantineAnalytics):
            return quarantine.analytics(_date_range(command), command.top)
        if isinstance(command, RecoverQuarantined):
            result = await self.coordinator.recover_quarantined(
                actor,
                priority_only=command.priority_only,
                max_records=command.max_records,
                dry_run=command.dry_run,
                overrides=command.overrides
            )
            return result.to_dict()
        raise TypeError(f"Unhandled quarantine command {type(command).__name__}")

    async def _dispatch_queue(self, command, actor: str) -> Any:
        queues = self.queue_manager

        if isinstance(command, QueueStatsCommand):
            return {name: stats.to_dict() for name, stats in queues.get_stats(command.queue_name).items()}
        if isinstance(command, QueueJobsCommand):
            jobs = queues.get_jobs(command.queue_name, command.state, command.limit, command.offset)
            return [job.to_dict() for job in jobs]
        if isinstance(command, QueueHealthCommand):
            return queues.health_check()
        if isinstance(command, PauseQueue):
            return {"queue_name": command.queue_name, "applied": await queues.pause(command.queue_name, actor)}
        if isinstance(command, ResumeQueue):
            return {"queue_name": command.queue_name, "applied": await queues.resume(command.queue_name, actor)}
        if isinstance(command, ClearQueue):
            cleared = await queues.clear(command.queue_name, actor, command.job_type_filter)
            return {"queue_name": command.queue_name, "cleared_count": cleared}
        if isinstance(command, RetryQueueJobs):
            outcomes = await queues.retry(command.queue_name, command.job_ids, actor)
            return {"queue_name": command.queue_name, "results": {k: v.value for k, v in outcomes.items()}}
        if isinstance(command, RemoveQueueJobs):
            removed = await queues.remove(command.queue_name, command.job_ids, actor)
            return {"queue_name": command.queue_name, "removed_count": removed}
        if isinstance(command, AddQueueJob):
            job_id = await queues.add(
                command.queue_name,
                command.payload,
                actor,
                job_type=command.job_type,
                priority=command.priority,
                delay_ms=command.delay_ms,
                max_attempts=command.max_attempts
            )
            return {"queue_name": command.queue_name, "job_id": job_id}
        raise TypeError(f"Unhandled queue command {type(command).__name__}")
