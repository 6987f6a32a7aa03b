"""
Validation data models for Accounting Sync Orchestrator

Defines the issues produced by a pre-flight validation pass and the report
that summarises a whole candidate record set.
"""

from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any, List, Set
from dataclasses import dataclass, field


class IssueSeverity(Enum):
    """Validation issue severity."""
    WARNING = "warning"
    ERROR = "error"


class IssueCategory(Enum):
    """Abstract classification of a validation issue."""
    MISSING_REFERENCE = "missing_reference"
    MISSING_RATE = "missing_rate"
    MISSING_FIELD = "missing_field"
    MALFORMED_IDENTIFIER = "malformed_identifier"
    FIELD_TOO_LONG = "field_too_long"
    BUSINESS_RULE = "business_rule"
    DATA_INTEGRITY = "data_integrity"


@dataclass(frozen=True)
class ValidationIssue:
    """A single problem found on a candidate record."""

    record_id: str
    field: str
    message: str
    severity: IssueSeverity
    category: IssueCategory

    @property
    def is_blocking(self) -> bool:
        return self.severity == IssueSeverity.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "field": self.field,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value
        }


@dataclass
class ValidationReport:
    """Outcome of validating a candidate record set."""

    total_records: int = 0
    valid_records: int = 0
    warning_records: int = 0
    invalid_records: int = 0
    category_counts: Dict[str, Dict[str, int]] = field(default_factory=dict)
    issues: List[ValidationIssue] = field(default_factory=list)
    omitted_issue_count: int = 0
    blocking_record_ids: Set[str] = field(default_factory=set)
    validated_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def readiness_score(self) -> float:
        """Percentage of records with zero blocking errors."""
        if self.total_records == 0:
            return 100.0
        return ((self.total_records - self.invalid_records) / self.total_records) * 100

    @property
    def has_blocking_errors(self) -> bool:
        return self.invalid_records > 0

    @property
    def issue_summary(self) -> Optional[str]:
        if self.omitted_issue_count:
            return f"+{self.omitted_issue_count} more"
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_records": self.total_records,
            "valid_records": self.valid_records,
            "warning_records": self.warning_records,
            "invalid_records": self.invalid_records,
            "readiness_score": round(self.readiness_score, 2),
            "category_counts": self.category_counts,
            "issues": [issue.to_dict() for issue in self.issues],
            "omitted_issue_count": self.omitted_issue_count,
            "issue_summary": self.issue_summary,
            "blocking_record_ids": sorted(self.blocking_record_ids),
            "validated_at": self.validated_at.isoformat()
        }
