"""
Migration data models for Accounting Sync Orchestrator

Defines migration statuses, migration configuration, error entries and the
immutable progress snapshot published by the progress tracker.
"""

from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List, Tuple
from dataclasses import dataclass, field

from ..core.exceptions import ValidationError

MIN_BATCH_SIZE = 1
MAX_BATCH_SIZE = 100
MAX_CONCURRENCY = 5


class MigrationStatus(Enum):
    """Migration job status enumeration."""
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class ErrorClassification(Enum):
    """How a record failure should be treated."""
    TRANSIENT = "transient"
    PERMANENT = "permanent"
    SYSTEMIC = "systemic"


TERMINAL_STATUSES = frozenset({
    MigrationStatus.COMPLETED,
    MigrationStatus.FAILED,
    MigrationStatus.CANCELLED
})

LIVE_STATUSES = frozenset({
    MigrationStatus.PENDING,
    MigrationStatus.RUNNING,
    MigrationStatus.PAUSED
})


@dataclass(frozen=True)
class DateRange:
    """Inclusive range of approval dates a migration is restricted to."""

    start: datetime
    end: datetime

    def __post_init__(self):
        if self.start > self.end:
            raise ValidationError("date_range", "start must not be after end", f"{self.start} > {self.end}")

    def contains(self, value: Optional[datetime]) -> bool:
        if value is None:
            return False
        return self.start <= value <= self.end

    def overlaps(self, other: "DateRange") -> bool:
        return self.start <= other.end and other.start <= self.end

    def to_dict(self) -> Dict[str, str]:
        return {"start": self.start.isoformat(), "end": self.end.isoformat()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DateRange":
        start = data.get("start", data.get("start_date", data.get("startDate")))
        end = data.get("end", data.get("end_date", data.get("endDate")))
        if isinstance(start, str):
            start = datetime.fromisoformat(start)
        if isinstance(end, str):
            end = datetime.fromisoformat(end)
        return cls(start=start, end=end)


@dataclass
class MigrationConfig:
    """Operator-supplied configuration for one migration run."""

    batch_size: int = 50
    delay_between_batches_ms: int = 2000
    max_retries: int = 3
    dry_run: bool = True
    date_range: Optional[DateRange] = None
    include_rejected: bool = False
    record_type: str = "timesheet"
    concurrency: int = 1
    skip_invalid: bool = False

    def validate(self) -> "MigrationConfig":
        """Raise ValidationError if any setting is out of range."""
        if not isinstance(self.batch_size, int) or not MIN_BATCH_SIZE <= self.batch_size <= MAX_BATCH_SIZE:
            raise ValidationError(
                "batch_size",
                f"must be between {MIN_BATCH_SIZE} and {MAX_BATCH_SIZE}",
                self.batch_size
            )
        if self.delay_between_batches_ms < 0:
            raise ValidationError("delay_between_batches_ms", "must be >= 0", self.delay_between_batches_ms)
        if self.max_retries < 0:
            raise ValidationError("max_retries", "must be >= 0", self.max_retries)
        if not 1 <= self.concurrency <= MAX_CONCURRENCY:
            raise ValidationError("concurrency", f"must be between 1 and {MAX_CONCURRENCY}", self.concurrency)
        if not self.record_type:
            raise ValidationError("record_type", "must not be empty", self.record_type)
        return self

    def scope_key(self) -> str:
        """Human-readable identifier of the records this configuration targets."""
        if self.date_range:
            return f"{self.record_type}:{self.date_range.start.date()}..{self.date_range.end.date()}"
        return f"{self.record_type}:all"

    def overlaps(self, other: "MigrationConfig") -> bool:
        """Check whether two configurations may select the same source records."""
        if self.record_type != other.record_type:
            return False
        if self.date_range is None or other.date_range is None:
            return True
        return self.date_range.overlaps(other.date_range)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "batch_size": self.batch_size,
            "delay_between_batches_ms": self.delay_between_batches_ms,
            "max_retries": self.max_retries,
            "dry_run": self.dry_run,
            "date_range": self.date_range.to_dict() if self.date_range else None,
            "include_rejected": self.include_rejected,
            "record_type": self.record_type,
            "concurrency": self.concurrency,
            "skip_invalid": self.skip_invalid
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MigrationConfig":
        data = dict(data)
        if data.get("date_range") and not isinstance(data["date_range"], DateRange):
            data["date_range"] = DateRange.from_dict(data["date_range"])
        known = set(cls.__dataclass_fields__)
        return cls(**{k: v for k, v in data.items() if k in known})


@dataclass
class ErrorEntry:
    """A record-level (or job-level) failure recorded during a migration."""

    record_id: str
    message: str
    classification: ErrorClassification
    retry_count: int = 0
    timestamp: datetime = field(default_factory=datetime.utcnow)
    resolved: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "message": self.message,
            "classification": self.classification.value,
            "retry_count": self.retry_count,
            "timestamp": self.timestamp.isoformat(),
            "resolved": self.resolved
        }


@dataclass(frozen=True)
class ProgressSnapshot:
    """Immutable, internally consistent view of a migration's progress."""

    job_id: str
    status: MigrationStatus
    total_records: int = 0
    processed_records: int = 0
    successful_records: int = 0
    failed_records: int = 0
    skipped_records: int = 0
    current_batch: int = 0
    completed_batches: int = 0
    total_batches: int = 0
    started_at: Optional[datetime] = None
    last_batch_at: Optional[datetime] = None
    estimated_completion_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    errors: Tuple[ErrorEntry, ...] = ()

    @property
    def progress_percent(self) -> float:
        if self.total_records > 0:
            return (self.processed_records / self.total_records) * 100
        return 0.0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def unresolved_errors(self) -> List[ErrorEntry]:
        return [e for e in self.errors if not e.resolved]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "successful_records": self.successful_records,
            "failed_records": self.failed_records,
            "skipped_records": self.skipped_records,
            "current_batch": self.current_batch,
            "completed_batches": self.completed_batches,
            "total_batches": self.total_batches,
            "progress_percent": round(self.progress_percent, 2),
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_batch_at": self.last_batch_at.isoformat() if self.last_batch_at else None,
            "estimated_completion_at": self.estimated_completion_at.isoformat() if self.estimated_completion_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "errors": [e.to_dict() for e in self.errors]
        }


@dataclass
class MigrationSummary:
    """Result of analysing what a migration would have to move."""

    total_approved_records: int
    already_synced_records: int
    pending_migration_records: int
    oldest_pending_at: Optional[datetime] = None
    newest_pending_at: Optional[datetime] = None
    estimated_duration: str = "0 minutes"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_approved_records": self.total_approved_records,
            "already_synced_records": self.already_synced_records,
            "pending_migration_records": self.pending_migration_records,
            "oldest_pending_at": self.oldest_pending_at.isoformat() if self.oldest_pending_at else None,
            "newest_pending_at": self.newest_pending_at.isoformat() if self.newest_pending_at else None,
            "estimated_duration": self.estimated_duration
        }


def format_duration(minutes: int) -> str:
    """Render a duration in minutes the way operators read it."""
    if minutes < 60:
        return f"{minutes} minutes"
    if minutes < 1440:
        return f"{minutes // 60}h {minutes % 60}m"
    return f"{minutes // 1440}d {(minutes % 1440) // 60}h"


# Migration status transition rules
MIGRATION_STATUS_TRANSITIONS = {
    MigrationStatus.PENDING: [MigrationStatus.RUNNING, MigrationStatus.CANCELLED, MigrationStatus.FAILED],
    MigrationStatus.RUNNING: [MigrationStatus.PAUSED, MigrationStatus.COMPLETED, MigrationStatus.FAILED, MigrationStatus.CANCELLED],
    MigrationStatus.PAUSED: [MigrationStatus.RUNNING, MigrationStatus.CANCELLED],
    MigrationStatus.COMPLETED: [],  # Terminal state
    MigrationStatus.FAILED: [],  # Terminal state
    MigrationStatus.CANCELLED: []  # Terminal state
}


def can_transition_to(current_status: MigrationStatus, target_status: MigrationStatus) -> bool:
    """Check if a migration can transition from current status to target status."""
    return target_status in MIGRATION_STATUS_TRANSITIONS.get(current_status, [])
