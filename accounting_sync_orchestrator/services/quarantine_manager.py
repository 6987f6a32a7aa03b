"""
QuarantineManager service for Accounting Sync Orchestrator

Holds records that could not be migrated (permanent rejections, exhausted
retries, records excluded by validation) for operator review. Entries are
reviewed, corrected and resolved here; the coordinator re-migrates the
recoverable ones and resolves entries whose records later sync.
"""

from collections import Counter
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from ..connectors.base import AuditSink
from ..core.exceptions import QuarantineError, QuarantineNotFoundError, SyncOrchestratorError
from ..models.audit import AuditRecord
from ..models.migration import DateRange, ErrorClassification, ErrorEntry
from ..models.quarantine import (
    QuarantineEntry,
    QuarantinePriority,
    QuarantineReason,
    QuarantineStats,
    QuarantineStatus,
    REVIEW_STATUSES
)
from ..models.validation import IssueCategory, ValidationIssue
from ..utils.database import MigrationStore
from ..utils.logger import get_logger, set_log_context
from ..utils import metrics
from .validation_engine import ValidationEngine, record_id_of

SYSTEM_ACTOR = "system"


def reason_for_issues(issues: Sequence[ValidationIssue]) -> QuarantineReason:
    """Quarantine reason for a record blocked by validation."""
    categories = {issue.category for issue in issues if issue.is_blocking}
    if IssueCategory.DATA_INTEGRITY in categories:
        return QuarantineReason.DATA_INTEGRITY
    if IssueCategory.BUSINESS_RULE in categories:
        return QuarantineReason.BUSINESS_RULE_VIOLATION
    return QuarantineReason.VALIDATION_FAILED


def priority_for_reason(reason: QuarantineReason) -> QuarantinePriority:
    if reason == QuarantineReason.DATA_INTEGRITY:
        return QuarantinePriority.CRITICAL
    if reason in (QuarantineReason.VALIDATION_FAILED, QuarantineReason.BUSINESS_RULE_VIOLATION):
        return QuarantinePriority.HIGH
    if reason == QuarantineReason.API_ERROR:
        return QuarantinePriority.MEDIUM
    return QuarantinePriority.LOW


def _parse_enum(enum_cls, names: Optional[Iterable[str]], operation: str) -> Optional[set]:
    if not names:
        return None
    try:
        return {enum_cls(name.lower()) for name in names}
    except ValueError:
        valid = ", ".join(member.value for member in enum_cls)
        raise QuarantineError(operation, f"unknown value in {list(names)}; expected one of {valid}")


class QuarantineManager:
    """
    Quarantine of records that could not be migrated.

    Provides capabilities for:
    - Quarantining failed or invalid records with a reason and review priority
    - Filtered, priority-ordered listings for review
    - Single and bulk review with operator corrections
    - Statistics and error analytics over the quarantine
    - Automatic resolution once a quarantined record syncs
    """

    def __init__(
        self,
        audit_sink: AuditSink,
        store: Optional[MigrationStore] = None,
        validation_engine: Optional[ValidationEngine] = None
    ):
        """
        Initialize QuarantineManager.

        Args:
            audit_sink: Destination for audit records of quarantine actions
            store: Optional persistence for quarantine entries
            validation_engine: Used to explain why a failed record was rejected
        """
        self.audit_sink = audit_sink
        self.store = store
        self.validation_engine = validation_engine or ValidationEngine()

        self._entries: Dict[str, QuarantineEntry] = {}

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="quarantine_manager")

    # Intake

    async def quarantine(
        self,
        record: Mapping[str, Any],
        reason: QuarantineReason,
        messages: Sequence[str],
        actor: str = SYSTEM_ACTOR,
        job_id: Optional[str] = None,
        priority: Optional[QuarantinePriority] = None
    ) -> QuarantineEntry:
        """
        Quarantine a record, or refresh its open entry if it is already held.

        A record has at most one open entry; repeat failures bump
        ``occurrences`` and reopen an entry that was under review.
        """
        record_id = record_id_of(record)
        priority = priority or priority_for_reason(reason)
        entry = self.find_open(record_id)

        if entry is None:
            entry = QuarantineEntry(
                record_id=record_id,
                record=dict(record) if isinstance(record, Mapping) else {"raw": repr(record)},
                reason=reason,
                priority=priority,
                messages=list(messages),
                job_id=job_id,
                quarantined_by=actor
            )
            self._entries[entry.quarantine_id] = entry
            outcome = "success"
        else:
            entry.occurrences += 1
            entry.reason = reason
            entry.job_id = job_id
            entry.status = QuarantineStatus.QUARANTINED
            if priority.rank > entry.priority.rank:
                entry.priority = priority
            entry.messages.extend(m for m in messages if m not in entry.messages)
            outcome = "updated"

        metrics.QUARANTINED_RECORDS.labels(reason=reason.value).inc()
        await self._save(entry)
        await self._audit(actor, "quarantine", entry.quarantine_id, outcome, details={
            "record_id": record_id,
            "reason": reason.value,
            "priority": entry.priority.value,
            "job_id": job_id
        })
        self.logger.warning(f"Record {record_id} quarantined: {reason.value}", extra={
            "quarantine_id": entry.quarantine_id,
            "job_id": job_id,
            "occurrences": entry.occurrences
        })
        return entry

    async def quarantine_failures(
        self,
        job_id: str,
        records: Sequence[Mapping[str, Any]],
        errors: Iterable[ErrorEntry]
    ) -> List[QuarantineEntry]:
        """Quarantine the records behind a finished job's unresolved record errors."""
        by_id = {record_id_of(record): record for record in records}
        messages: Dict[str, List[str]] = {}
        classifications: Dict[str, ErrorClassification] = {}

        for error in errors:
            if error.resolved or error.record_id not in by_id:
                continue
            messages.setdefault(error.record_id, []).append(error.message)
            classifications[error.record_id] = error.classification

        entries = []
        for record_id, record_messages in messages.items():
            record = by_id[record_id]
            if classifications[record_id] == ErrorClassification.TRANSIENT:
                reason = QuarantineReason.RETRIES_EXHAUSTED
            else:
                issues = [i for i in self.validation_engine.validate_record(record) if i.is_blocking]
                reason = reason_for_issues(issues) if issues else QuarantineReason.API_ERROR
                record_messages = record_messages + [i.message for i in issues]
            entries.append(await self.quarantine(record, reason, record_messages, job_id=job_id))
        return entries

    async def quarantine_invalid(self, job_id: str, records: Sequence[Mapping[str, Any]],
                                 actor: str = SYSTEM_ACTOR) -> List[QuarantineEntry]:
        """Quarantine records excluded from a job by validation."""
        entries = []
        for record in records:
            issues = [i for i in self.validation_engine.validate_record(record) if i.is_blocking]
            entries.append(await self.quarantine(
                record, reason_for_issues(issues), [i.message for i in issues], actor=actor, job_id=job_id
            ))
        return entries

    async def resolve_synced(self, record_ids: Iterable[str], job_id: str) -> int:
        """Resolve open entries whose records have now been synced by ``job_id``."""
        resolved = []
        now = datetime.utcnow()
        for record_id in record_ids:
            entry = self.find_open(record_id)
            if entry is None:
                continue
            entry.status = QuarantineStatus.RESOLVED
            entry.reviewed_at = now
            entry.reviewed_by = SYSTEM_ACTOR
            entry.resolution_notes = f"Synced by migration {job_id}"
            await self._save(entry)
            resolved.append(entry.quarantine_id)

        if resolved:
            await self.audit_sink.record(AuditRecord(
                actor=SYSTEM_ACTOR,
                action="quarantine.resolve",
                scope=job_id,
                scope_type="quarantine",
                outcome="success",
                affected_count=len(resolved),
                details={"quarantine_ids": resolved}
            ))
        return len(resolved)

    async def mark_recovering(self, entries: Iterable[QuarantineEntry], job_id: str, actor: str):
        """Move entries under review while ``job_id`` re-migrates them."""
        for entry in entries:
            entry.status = QuarantineStatus.UNDER_REVIEW
            entry.reviewed_at = datetime.utcnow()
            entry.reviewed_by = actor
            entry.resolution_notes = f"Re-migrating in {job_id}"
            await self._save(entry)

    # Review

    async def review(
        self,
        quarantine_id: str,
        actor: str,
        status: QuarantineStatus,
        notes: Optional[str] = None,
        corrected_data: Optional[Dict[str, Any]] = None
    ) -> QuarantineEntry:
        """
        Record an operator decision on an open entry.

        ``under_review`` keeps the entry open (and may attach corrected data
        for the next recovery pass); ``resolved`` and ``rejected`` close it.

        Raises:
            QuarantineNotFoundError: unknown entry
            QuarantineError: the entry is closed, the status is not a review
                status, or corrected data is invalid
        """
        try:
            entry = self.get(quarantine_id)
        except QuarantineNotFoundError as e:
            await self._audit(actor, "review", quarantine_id, "rejected", details={"error": e.message})
            raise

        try:
            if status not in REVIEW_STATUSES:
                raise QuarantineError("review", f"cannot set status {status.value}", quarantine_id)
            if not entry.is_open:
                raise QuarantineError("review", f"entry is already {entry.status.value}", quarantine_id)
            if corrected_data is not None:
                if status != QuarantineStatus.UNDER_REVIEW:
                    raise QuarantineError("review", "corrected data requires status under_review", quarantine_id)
                corrected_data = dict(corrected_data)
                corrected_data.setdefault("id", entry.record.get("id"))
                if record_id_of(corrected_data) != entry.record_id:
                    raise QuarantineError("review", "corrected data must keep the record id", quarantine_id)
        except QuarantineError as e:
            await self._audit(actor, "review", quarantine_id, "rejected", details={"error": e.message})
            raise

        entry.status = status
        entry.reviewed_at = datetime.utcnow()
        entry.reviewed_by = actor
        if notes is not None:
            entry.resolution_notes = notes
        if corrected_data is not None:
            entry.corrected_data = corrected_data

        await self._save(entry)
        await self._audit(actor, "review", quarantine_id, "success", details={
            "status": status.value,
            "notes": notes,
            "corrected": corrected_data is not None
        })
        return entry

    async def bulk_update(self, quarantine_ids: Iterable[str], actor: str, status: QuarantineStatus,
                          notes: Optional[str] = None) -> Dict[str, Any]:
        """Review several entries at once; failures are reported per entry."""
        updated = 0
        errors = []
        for quarantine_id in quarantine_ids:
            try:
                await self.review(quarantine_id, actor, status, notes or "Bulk update")
                updated += 1
            except SyncOrchestratorError as e:
                errors.append(e.message)
        return {"updated": updated, "errors": errors}

    # Queries

    def get(self, quarantine_id: str) -> QuarantineEntry:
        entry = self._entries.get(quarantine_id)
        if entry is None:
            raise QuarantineNotFoundError(quarantine_id)
        return entry

    def find_open(self, record_id: str) -> Optional[QuarantineEntry]:
        for entry in self._entries.values():
            if entry.record_id == record_id and entry.is_open:
                return entry
        return None

    def list_entries(
        self,
        status: Optional[Iterable[str]] = None,
        priority: Optional[Iterable[str]] = None,
        reason: Optional[Iterable[str]] = None,
        job_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0
    ) -> List[QuarantineEntry]:
        """Entries matching every given filter, highest priority then oldest first."""
        statuses = _parse_enum(QuarantineStatus, status, "list")
        priorities = _parse_enum(QuarantinePriority, priority, "list")
        reasons = _parse_enum(QuarantineReason, reason, "list")

        entries = [
            e for e in self._entries.values()
            if (statuses is None or e.status in statuses)
            and (priorities is None or e.priority in priorities)
            and (reasons is None or e.reason in reasons)
            and (job_id is None or e.job_id == job_id)
        ]
        entries.sort(key=lambda e: (-e.priority.rank, e.quarantined_at))
        return entries[offset:offset + limit]

    def recovery_candidates(self, priority_only: bool = False, max_records: int = 100) -> List[QuarantineEntry]:
        """Open entries in review order; ``priority_only`` keeps high and critical ones."""
        priorities = ["high", "critical"] if priority_only else None
        return self.list_entries(status=["quarantined", "under_review"], priority=priorities, limit=max_records)

    def stats(self, date_range: Optional[DateRange] = None) -> QuarantineStats:
        """Counts by status, priority and reason, plus resolution timing."""
        entries = [
            e for e in self._entries.values()
            if date_range is None or date_range.contains(e.quarantined_at)
        ]
        stats = QuarantineStats(
            total=len(entries),
            by_status={s.value: 0 for s in QuarantineStatus},
            by_priority={p.value: 0 for p in QuarantinePriority},
            by_reason={r.value: 0 for r in QuarantineReason}
        )
        resolution_hours = []
        for entry in entries:
            stats.by_status[entry.status.value] += 1
            stats.by_priority[entry.priority.value] += 1
            stats.by_reason[entry.reason.value] += 1
            if entry.status == QuarantineStatus.RESOLVED and entry.reviewed_at:
                resolution_hours.append((entry.reviewed_at - entry.quarantined_at).total_seconds() / 3600)

        if resolution_hours:
            stats.avg_resolution_hours = sum(resolution_hours) / len(resolution_hours)
        unresolved = [e.quarantined_at for e in entries if e.is_open]
        stats.oldest_unresolved_at = min(unresolved) if unresolved else None
        return stats

    def analytics(self, date_range: Optional[DateRange] = None, top: int = 5) -> Dict[str, Any]:
        """Statistics plus the most frequent error messages and repeatedly failing records."""
        entries = [
            e for e in self._entries.values()
            if date_range is None or date_range.contains(e.quarantined_at)
        ]
        messages = Counter(message for entry in entries for message in entry.messages)
        repeat_offenders = sorted(
            (e for e in entries if e.occurrences > 1),
            key=lambda e: (-e.occurrences, e.record_id)
        )
        return {
            "summary": self.stats(date_range).to_dict(),
            "top_error_messages": [
                {"message": message, "count": count} for message, count in messages.most_common(top)
            ],
            "problematic_records": [
                {"record_id": e.record_id, "occurrences": e.occurrences} for e in repeat_offenders[:top]
            ]
        }

    # Helpers

    async def _save(self, entry: QuarantineEntry):
        if self.store is not None:
            await self.store.save_quarantine(entry)

    async def _audit(self, actor: str, action: str, scope: str, outcome: str,
                     details: Optional[Dict[str, Any]] = None):
        await self.audit_sink.record(AuditRecord(
            actor=actor,
            action=f"quarantine.{action}",
            scope=scope,
            scope_type="quarantine",
            outcome=outcome,
            affected_count=1,
            details=details or {}
        ))
