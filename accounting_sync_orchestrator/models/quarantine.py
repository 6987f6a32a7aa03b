"""
Quarantine data models for Accounting Sync Orchestrator

Records that fail permanently, exhaust their retries or are excluded by
validation are held in quarantine for operator review instead of being
silently dropped.
"""

from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
import uuid


class QuarantineStatus(Enum):
    """Review state of a quarantined record."""
    QUARANTINED = "quarantined"
    UNDER_REVIEW = "under_review"
    RESOLVED = "resolved"
    REJECTED = "rejected"


class QuarantineReason(Enum):
    """Why a record was quarantined."""
    VALIDATION_FAILED = "validation_failed"
    API_ERROR = "api_error"
    DATA_INTEGRITY = "data_integrity"
    BUSINESS_RULE_VIOLATION = "business_rule_violation"
    RETRIES_EXHAUSTED = "retries_exhausted"
    MANUAL = "manual"


class QuarantinePriority(Enum):
    """Review priority; higher rank is reviewed first."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return list(QuarantinePriority).index(self)


OPEN_QUARANTINE_STATUSES = frozenset({
    QuarantineStatus.QUARANTINED,
    QuarantineStatus.UNDER_REVIEW
})

# Statuses an operator review may set
REVIEW_STATUSES = frozenset({
    QuarantineStatus.UNDER_REVIEW,
    QuarantineStatus.RESOLVED,
    QuarantineStatus.REJECTED
})


@dataclass
class QuarantineEntry:
    """A source record held back from migration, with the errors that put it there."""

    record_id: str
    record: Dict[str, Any]
    reason: QuarantineReason
    priority: QuarantinePriority
    messages: List[str] = field(default_factory=list)
    job_id: Optional[str] = None
    quarantine_id: str = field(default_factory=lambda: f"qr_{uuid.uuid4().hex[:12]}")
    status: QuarantineStatus = QuarantineStatus.QUARANTINED
    occurrences: int = 1
    quarantined_at: datetime = field(default_factory=datetime.utcnow)
    quarantined_by: str = "system"
    reviewed_at: Optional[datetime] = None
    reviewed_by: Optional[str] = None
    resolution_notes: Optional[str] = None
    corrected_data: Optional[Dict[str, Any]] = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_QUARANTINE_STATUSES

    @property
    def migratable_record(self) -> Dict[str, Any]:
        """Corrected data when an operator supplied it, otherwise the original record."""
        return self.corrected_data if self.corrected_data is not None else self.record

    def to_dict(self) -> Dict[str, Any]:
        return {
            "quarantine_id": self.quarantine_id,
            "record_id": self.record_id,
            "job_id": self.job_id,
            "reason": self.reason.value,
            "priority": self.priority.value,
            "status": self.status.value,
            "messages": list(self.messages),
            "occurrences": self.occurrences,
            "quarantined_at": self.quarantined_at.isoformat(),
            "quarantined_by": self.quarantined_by,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
            "reviewed_by": self.reviewed_by,
            "resolution_notes": self.resolution_notes,
            "has_corrected_data": self.corrected_data is not None
        }


@dataclass
class QuarantineStats:
    """Counts over the quarantine, plus resolution timing."""

    total: int = 0
    by_status: Dict[str, int] = field(default_factory=dict)
    by_priority: Dict[str, int] = field(default_factory=dict)
    by_reason: Dict[str, int] = field(default_factory=dict)
    avg_resolution_hours: float = 0.0
    oldest_unresolved_at: Optional[datetime] = None

    @property
    def resolution_rate(self) -> float:
        if self.total == 0:
            return 0.0
        return self.by_status.get(QuarantineStatus.RESOLVED.value, 0) / self.total * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "by_status": dict(self.by_status),
            "by_priority": dict(self.by_priority),
            "by_reason": dict(self.by_reason),
            "avg_resolution_hours": round(self.avg_resolution_hours, 2),
            "resolution_rate": round(self.resolution_rate, 2),
            "oldest_unresolved_at": self.oldest_unresolved_at.isoformat() if self.oldest_unresolved_at else None
        }


@dataclass
class RecoveryResult:
    """Outcome of a recovery pass over quarantined records."""

    candidates: int = 0
    recovered: int = 0
    still_invalid: int = 0
    recovered_ids: List[str] = field(default_factory=list)
    job_id: Optional[str] = None
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "candidates": self.candidates,
            "recovered": self.recovered,
            "still_invalid": self.still_invalid,
            "recovered_ids": list(self.recovered_ids),
            "job_id": self.job_id,
            "dry_run": self.dry_run
        }
