"""
Services package for Accounting Sync Orchestrator

Contains the validation, batching, retry, progress, quarantine and queue
services used by the migration coordinator.
"""

from .validation_engine import ValidationEngine
from .batch_processor import BatchProcessor, DryRunSubmitter, MigrationControl, create_batches
from .retry_manager import RetryManager, RetryPolicy, classify_error
from .progress_tracker import ProgressTracker
from .queue_manager import QueueManager
from .quarantine_manager import QuarantineManager

__all__ = [
    "ValidationEngine",
    "BatchProcessor",
    "DryRunSubmitter",
    "MigrationControl",
    "create_batches",
    "RetryManager",
    "RetryPolicy",
    "classify_error",
    "ProgressTracker",
    "QueueManager",
    "QuarantineManager"
]
