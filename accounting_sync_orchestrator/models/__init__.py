"""
Data models for Accounting Sync Orchestrator

This module contains the data models shared by the migration coordinator,
the validation engine, the quarantine manager and the queue manager.
"""

# Migration models
from .migration import (
    MigrationStatus,
    MigrationConfig,
    DateRange,
    ErrorEntry,
    ErrorClassification,
    ProgressSnapshot,
    MigrationSummary,
    MIGRATION_STATUS_TRANSITIONS,
    TERMINAL_STATUSES,
    can_transition_to,
    format_duration
)

# Validation models
from .validation import (
    ValidationIssue,
    ValidationReport,
    IssueSeverity,
    IssueCategory
)

# Queue models
from .queue import (
    QueueJob,
    QueueJobState,
    QueueStats,
    RetryJobOutcome
)

# Quarantine models
from .quarantine import (
    QuarantineEntry,
    QuarantineStatus,
    QuarantineReason,
    QuarantinePriority,
    QuarantineStats,
    RecoveryResult
)

# Audit models
from .audit import AuditRecord

__all__ = [
    # Migration models
    "MigrationStatus",
    "MigrationConfig",
    "DateRange",
    "ErrorEntry",
    "ErrorClassification",
    "ProgressSnapshot",
    "MigrationSummary",
    "MIGRATION_STATUS_TRANSITIONS",
    "TERMINAL_STATUSES",
    "can_transition_to",
    "format_duration",

    # Validation models
    "ValidationIssue",
    "ValidationReport",
    "IssueSeverity",
    "IssueCategory",

    # Queue models
    "QueueJob",
    "QueueJobState",
    "QueueStats",
    "RetryJobOutcome",

    # Quarantine models
    "QuarantineEntry",
    "QuarantineStatus",
    "QuarantineReason",
    "QuarantinePriority",
    "QuarantineStats",
    "RecoveryResult",

    # Audit models
    "AuditRecord"
]
