"""
Exception classes for Accounting Sync Orchestrator

Provides the hierarchy of exceptions raised by the migration coordinator,
the queue manager and the connectors to the external accounting system.
"""

from typing import Optional, Dict, Any, List


class SyncOrchestratorError(Exception):
    """Base exception for all sync orchestrator errors."""

    def __init__(self, message: str, error_code: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "error": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


class ValidationError(SyncOrchestratorError):
    """Raised when input validation fails."""

    def __init__(self, field: str, message: str, value: Any = None):
        super().__init__(
            f"Validation error for {field}: {message}",
            error_code="VALIDATION_ERROR",
            details={"field": field, "value": str(value) if value is not None else None}
        )


class ConfigurationError(SyncOrchestratorError):
    """Raised when there's an error in configuration."""

    def __init__(self, config_key: str, message: str):
        super().__init__(
            f"Configuration error for {config_key}: {message}",
            error_code="CONFIGURATION_ERROR",
            details={"config_key": config_key}
        )


class CommandValidationError(SyncOrchestratorError):
    """Raised when a control-plane command cannot be parsed."""

    def __init__(self, message: str, errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(
            f"Invalid command: {message}",
            error_code="COMMAND_VALIDATION_ERROR",
            details={"errors": errors or []}
        )


class MigrationNotFoundError(SyncOrchestratorError):
    """Raised when a requested migration job cannot be found."""

    def __init__(self, job_id: str):
        super().__init__(
            f"Migration {job_id} not found",
            error_code="MIGRATION_NOT_FOUND",
            details={"job_id": job_id}
        )


class MigrationStartError(SyncOrchestratorError):
    """Raised when a migration cannot be started."""

    def __init__(self, message: str, config: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Migration start failed: {message}",
            error_code="MIGRATION_START_ERROR",
            details={"config": config}
        )


class ConcurrentMigrationError(SyncOrchestratorError):
    """Raised when another live migration already covers the same scope."""

    def __init__(self, scope: str, active_job_id: str):
        super().__init__(
            f"Migration {active_job_id} is already active for scope {scope}",
            error_code="CONCURRENT_MIGRATION",
            details={"scope": scope, "active_job_id": active_job_id}
        )


class ValidationBlockedError(SyncOrchestratorError):
    """Raised when pre-flight validation finds blocking errors and no override was given."""

    def __init__(self, invalid_records: int, readiness_score: float, report: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Pre-flight validation found {invalid_records} records with blocking errors "
            f"(readiness {readiness_score:.1f}%)",
            error_code="VALIDATION_BLOCKED",
            details={
                "invalid_records": invalid_records,
                "readiness_score": readiness_score,
                "report": report
            }
        )


class InvalidStateTransitionError(SyncOrchestratorError):
    """Raised when a migration job is asked to move to a state it cannot reach."""

    def __init__(self, job_id: str, current: str, target: str):
        super().__init__(
            f"Migration {job_id} cannot transition from {current} to {target}",
            error_code="INVALID_STATE_TRANSITION",
            details={"job_id": job_id, "current": current, "target": target}
        )


class SubmissionError(SyncOrchestratorError):
    """Raised by an accounting client when a record submission fails."""

    def __init__(self, message: str, status_code: Optional[int] = None, record_id: Optional[str] = None):
        super().__init__(
            message,
            error_code="SUBMISSION_ERROR",
            details={"status_code": status_code, "record_id": record_id}
        )
        self.status_code = status_code
        self.record_id = record_id


class TransientSubmissionError(SubmissionError):
    """Submission failure that is expected to succeed on retry (rate limit, timeout, 5xx)."""


class PermanentSubmissionError(SubmissionError):
    """Submission failure that will not succeed on retry (rejected or malformed data)."""


class ExternalSystemUnavailableError(SyncOrchestratorError):
    """Raised when the accounting system cannot be reached before a live migration."""

    def __init__(self, system: str, message: str):
        super().__init__(
            f"{system} is unavailable: {message}",
            error_code="EXTERNAL_SYSTEM_UNAVAILABLE",
            details={"system": system}
        )


class SystemicFailureError(SyncOrchestratorError):
    """Raised when a whole batch failed transiently after exhausting retries."""

    def __init__(self, job_id: str, batch_number: int, failed_records: int):
        super().__init__(
            f"Migration {job_id} batch {batch_number} failed for all {failed_records} records; "
            "external system appears unreachable",
            error_code="SYSTEMIC_FAILURE",
            details={"job_id": job_id, "batch_number": batch_number, "failed_records": failed_records}
        )


class QueueError(SyncOrchestratorError):
    """Raised when queue operations fail."""

    def __init__(self, operation: str, message: str):
        super().__init__(
            f"Queue operation '{operation}' failed: {message}",
            error_code="QUEUE_ERROR",
            details={"operation": operation}
        )


class QueueNotFoundError(SyncOrchestratorError):
    """Raised when a queue name has not been declared."""

    def __init__(self, queue_name: str):
        super().__init__(
            f"Queue {queue_name} not found",
            error_code="QUEUE_NOT_FOUND",
            details={"queue_name": queue_name}
        )


class DatabaseError(SyncOrchestratorError):
    """Raised when database operations fail."""

    def __init__(self, operation: str, message: str, table: Optional[str] = None):
        super().__init__(
            f"Database operation '{operation}' failed: {message}",
            error_code="DATABASE_ERROR",
            details={"operation": operation, "table": table}
        )


class QuarantineError(SyncOrchestratorError):
    """Raised when a quarantine review or recovery request cannot be applied."""

    def __init__(self, operation: str, message: str, quarantine_id: Optional[str] = None):
        super().__init__(
            f"Quarantine operation '{operation}' failed: {message}",
            error_code="QUARANTINE_ERROR",
            details={"operation": operation, "quarantine_id": quarantine_id}
        )


class QuarantineNotFoundError(SyncOrchestratorError):
    """Raised when a quarantine entry cannot be found."""

    def __init__(self, quarantine_id: str):
        super().__init__(
            f"Quarantine entry {quarantine_id} not found",
            error_code="QUARANTINE_NOT_FOUND",
            details={"quarantine_id": quarantine_id}
        )
