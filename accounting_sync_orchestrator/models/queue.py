"""
Queue data models for Accounting Sync Orchestrator

Small, continuously arriving sync tasks live in named queues as QueueJobs,
independently of one-off migration jobs.
"""

from enum import Enum
from datetime import datetime
from typing import Optional, Dict, Any
from dataclasses import dataclass, field


class QueueJobState(Enum):
    """Queue job state enumeration."""
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    DELAYED = "delayed"


class RetryJobOutcome(Enum):
    """Per-job result of a queue retry request."""
    RETRIED = "retried"
    NOT_FOUND = "not_found"
    NOT_FAILED = "not_failed"


@dataclass
class QueueJob:
    """A single task held by a named queue."""

    job_id: str
    queue_name: str
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    state: QueueJobState = QueueJobState.WAITING
    priority: int = 5
    attempts: int = 0
    max_attempts: int = 3
    sequence: int = 0
    created_at: datetime = field(default_factory=datetime.utcnow)
    run_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    result: Any = None

    def is_due(self, now: datetime) -> bool:
        return self.run_at is None or self.run_at <= now

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "queue_name": self.queue_name,
            "job_type": self.job_type,
            "payload": self.payload,
            "state": self.state.value,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at.isoformat(),
            "run_at": self.run_at.isoformat() if self.run_at else None,
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "failed_reason": self.failed_reason,
            "result": self.result
        }


@dataclass
class QueueStats:
    """Live per-queue counts."""

    queue_name: str
    waiting: int = 0
    active: int = 0
    completed: int = 0
    failed: int = 0
    delayed: int = 0
    paused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "queue_name": self.queue_name,
            "waiting": self.waiting,
            "active": self.active,
            "completed": self.completed,
            "failed": self.failed,
            "delayed": self.delayed,
            "paused": self.paused
        }
