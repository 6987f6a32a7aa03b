"""
Core package for Accounting Sync Orchestrator

Contains the exception hierarchy. The coordinator, command schemas and
control plane live in ``core.coordinator``, ``core.commands`` and
``core.control_plane``.
"""

from .exceptions import (
    SyncOrchestratorError,
    ValidationError,
    ConfigurationError,
    CommandValidationError,
    MigrationNotFoundError,
    MigrationStartError,
    ConcurrentMigrationError,
    ValidationBlockedError,
    InvalidStateTransitionError,
    SubmissionError,
    TransientSubmissionError,
    PermanentSubmissionError,
    ExternalSystemUnavailableError,
    SystemicFailureError,
    QueueError,
    QueueNotFoundError,
    QuarantineError,
    QuarantineNotFoundError,
    DatabaseError
)

__all__ = [
    "SyncOrchestratorError",
    "ValidationError",
    "ConfigurationError",
    "CommandValidationError",
    "MigrationNotFoundError",
    "MigrationStartError",
    "ConcurrentMigrationError",
    "ValidationBlockedError",
    "InvalidStateTransitionError",
    "SubmissionError",
    "TransientSubmissionError",
    "PermanentSubmissionError",
    "ExternalSystemUnavailableError",
    "SystemicFailureError",
    "QueueError",
    "QueueNotFoundError",
    "QuarantineError",
    "QuarantineNotFoundError",
    "DatabaseError"
]
