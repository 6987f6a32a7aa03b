"""
Accounting Sync Orchestrator

Batch migration and sync orchestration for moving committed business records
(approved timesheet submissions) into an external accounting system in
controlled, resumable batches.

Key Features:
- Pre-flight validation with readiness scoring and an audited force override
- Sequential batches with bounded in-batch concurrency and rate-limit delays
- Transient/permanent error classification with exponential backoff retries
- Pause, resume and cancel at batch boundaries with consistent progress snapshots
- Quarantine with operator review and recovery for records that cannot be synced
- Named task queues with pause/resume/clear/retry/remove
- Structured logging, Prometheus metrics and an audit trail for every mutation

Usage:
    from accounting_sync_orchestrator import (
        MigrationCoordinator, MigrationConfig, FileRecordSource,
        HttpAccountingClient, LoggingAuditSink
    )

    source = await FileRecordSource.from_file("approved_timesheets.json")
    client = HttpAccountingClient("https://accounting.example.com/api", api_token="...")

    coordinator = MigrationCoordinator(source, client, LoggingAuditSink())
    await coordinator.start()

    job_id = await coordinator.start_migration(
        MigrationConfig(batch_size=50, dry_run=False),
        actor="ops@example.com"
    )
    snapshot = await coordinator.wait_for_status(job_id)
    print(f"{snapshot.status.value}: {snapshot.successful_records}/{snapshot.total_records}")
"""

__version__ = "1.0.0"
__author__ = "Accounting Sync Orchestrator Team"
__license__ = "MIT"

# Core coordinator and control plane
from .core.coordinator import MigrationCoordinator, MigrationJob, ControlResult
from .core.control_plane import ControlPlane

# Data models
from .models.migration import MigrationConfig, MigrationStatus, DateRange, ErrorEntry, ProgressSnapshot
from .models.validation import ValidationReport, ValidationIssue
from .models.queue import QueueJob, QueueJobState, QueueStats
from .models.quarantine import QuarantineEntry, QuarantineStatus, QuarantineReason, QuarantinePriority, RecoveryResult

# Services (for advanced usage)
from .services.validation_engine import ValidationEngine
from .services.batch_processor import BatchProcessor
from .services.retry_manager import RetryManager, RetryPolicy
from .services.progress_tracker import ProgressTracker
from .services.queue_manager import QueueManager
from .services.quarantine_manager import QuarantineManager

# Connectors
from .connectors.base import RecordSource, AccountingClient, AuditSink
from .connectors.memory import InMemoryRecordSource, FileRecordSource, InMemoryAuditSink, LoggingAuditSink
from .connectors.accounting_api import HttpAccountingClient

# Utilities
from .utils.database import DatabaseManager, InMemoryMigrationStore
from .utils.config import OrchestratorSettings
from .utils.logger import setup_logger, get_logger

# Exceptions
from .core.exceptions import (
    SyncOrchestratorError,
    ValidationError,
    ConfigurationError,
    MigrationNotFoundError,
    MigrationStartError,
    ConcurrentMigrationError,
    ValidationBlockedError,
    TransientSubmissionError,
    PermanentSubmissionError,
    QueueError,
    QuarantineError,
    QuarantineNotFoundError
)

__all__ = [
    # Core
    "MigrationCoordinator",
    "MigrationJob",
    "ControlResult",
    "ControlPlane",

    # Models
    "MigrationConfig",
    "MigrationStatus",
    "DateRange",
    "ErrorEntry",
    "ProgressSnapshot",
    "ValidationReport",
    "ValidationIssue",
    "QueueJob",
    "QueueJobState",
    "QueueStats",
    "QuarantineEntry",
    "QuarantineStatus",
    "QuarantineReason",
    "QuarantinePriority",
    "RecoveryResult",

    # Services (for advanced usage)
    "ValidationEngine",
    "BatchProcessor",
    "RetryManager",
    "RetryPolicy",
    "ProgressTracker",
    "QueueManager",
    "QuarantineManager",

    # Connectors
    "RecordSource",
    "AccountingClient",
    "AuditSink",
    "InMemoryRecordSource",
    "FileRecordSource",
    "InMemoryAuditSink",
    "LoggingAuditSink",
    "HttpAccountingClient",

    # Utilities
    "DatabaseManager",
    "InMemoryMigrationStore",
    "OrchestratorSettings",
    "setup_logger",
    "get_logger",

    # Exceptions
    "SyncOrchestratorError",
    "ValidationError",
    "ConfigurationError",
    "MigrationNotFoundError",
    "MigrationStartError",
    "ConcurrentMigrationError",
    "ValidationBlockedError",
    "TransientSubmissionError",
    "PermanentSubmissionError",
    "QueueError",
    "QuarantineError",
    "QuarantineNotFoundError",

    # Package metadata
    "__version__",
    "__author__",
    "__license__"
]

# Package-level configuration
import logging
logging.getLogger(__name__).addHandler(logging.NullHandler())
