"""
Control-plane command schemas.

Migration, queue and quarantine requests are closed unions discriminated on ``action``:
a request either parses into exactly one command model or is rejected at the
boundary. Field names accept camelCase aliases (``batchSize``, ``jobIds``).
"""

from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from ..models.migration import DateRange, MAX_BATCH_SIZE, MAX_CONCURRENCY, MIN_BATCH_SIZE, MigrationConfig
from .exceptions import CommandValidationError


class Command(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")


class DateRangeInput(Command):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def check_order(self) -> "DateRangeInput":
        if self.start > self.end:
            raise ValueError("start must not be after end")
        return self

    def to_date_range(self) -> DateRange:
        return DateRange(start=self.start, end=self.end)


def _date_range(value: Optional[DateRangeInput]) -> Optional[DateRange]:
    return value.to_date_range() if value else None


# Migration commands

class StartMigration(Command):
    action: Literal["start"]
    batch_size: int = Field(50, ge=MIN_BATCH_SIZE, le=MAX_BATCH_SIZE)
    delay_between_batches_ms: int = Field(2000, ge=0)
    max_retries: int = Field(3, ge=0)
    dry_run: bool = True
    date_range: Optional[DateRangeInput] = None
    include_rejected: bool = False
    record_type: str = Field("timesheet", min_length=1)
    concurrency: int = Field(1, ge=1, le=MAX_CONCURRENCY)
    skip_invalid: bool = False
    force: bool = False

    def to_config(self) -> MigrationConfig:
        return MigrationConfig(
            batch_size=self.batch_size,
            delay_between_batches_ms=self.delay_between_batches_ms,
            max_retries=self.max_retries,
            dry_run=self.dry_run,
            date_range=_date_range(self.date_range),
            include_rejected=self.include_rejected,
            record_type=self.record_type,
            concurrency=self.concurrency,
            skip_invalid=self.skip_invalid
        )


class PauseMigration(Command):
    action: Literal["pause"]
    job_id: str


class ResumeMigration(Command):
    action: Literal["resume"]
    job_id: str


class CancelMigration(Command):
    action: Literal["cancel"]
    job_id: str


class GetProgress(Command):
    action: Literal["progress"]
    job_id: str


class ListMigrations(Command):
    action: Literal["list"]


class AnalyzeMigration(Command):
    action: Literal["analyze"]
    date_range: Optional[DateRangeInput] = None


class ValidatePending(Command):
    action: Literal["validate"]
    date_range: Optional[DateRangeInput] = None
    include_rejected: bool = False


class RemigrateFailed(Command):
    action: Literal["remigrate_failed"]
    job_id: str
    overrides: Dict[str, Any] = Field(default_factory=dict)


MigrationCommand = Annotated[
    Union[
        StartMigration,
        PauseMigration,
        ResumeMigration,
        CancelMigration,
        GetProgress,
        ListMigrations,
        AnalyzeMigration,
        ValidatePending,
        RemigrateFailed
    ],
    Field(discriminator="action")
]


# Queue commands

class QueueStatsCommand(Command):
    action: Literal["stats"]
    queue_name: Optional[str] = None


class QueueJobsCommand(Command):
    action: Literal["jobs"]
    queue_name: str
    state: Optional[str] = None
    limit: int = Field(50, ge=1, le=1000)
    offset: int = Field(0, ge=0)


class QueueHealthCommand(Command):
    action: Literal["health"]


class PauseQueue(Command):
    action: Literal["pause"]
    queue_name: str


class ResumeQueue(Command):
    action: Literal["resume"]
    queue_name: str


class ClearQueue(Command):
    action: Literal["clear"]
    queue_name: str
    job_type_filter: Optional[List[str]] = None


class RetryQueueJobs(Command):
    action: Literal["retry"]
    queue_name: str
    job_ids: List[str] = Field(min_length=1)


class RemoveQueueJobs(Command):
    action: Literal["remove"]
    queue_name: str
    job_ids: List[str] = Field(min_length=1)


class AddQueueJob(Command):
    action: Literal["add"]
    queue_name: str
    payload: Dict[str, Any] = Field(default_factory=dict)
    job_type: str = "sync"
    priority: int = Field(5, ge=1, le=10)
    delay_ms: int = Field(0, ge=0)
    max_attempts: int = Field(3, ge=1)


QueueCommand = Annotated[
    Union[
        QueueStatsCommand,
        QueueJobsCommand,
        QueueHealthCommand,
        PauseQueue,
        ResumeQueue,
        ClearQueue,
        RetryQueueJobs,
        RemoveQueueJobs,
        AddQueueJob
    ],
    Field(discriminator="action")
]


# Quarantine commands

ReviewStatus = Literal["under_review", "resolved", "rejected"]


class ListQuarantine(Command):
    action: Literal["list"]
    status: Optional[List[str]] = None
    priority: Optional[List[str]] = None
    reason: Optional[List[str]] = None
    job_id: Optional[str] = None
    limit: int = Field(50, ge=1, le=1000)
    offset: int = Field(0, ge=0)


class ReviewQuarantine(Command):
    action: Literal["review"]
    quarantine_id: str
    status: ReviewStatus
    notes: Optional[str] = None
    corrected_data: Optional[Dict[str, Any]] = None


class BulkUpdateQuarantine(Command):
    action: Literal["bulk_update"]
    quarantine_ids: List[str] = Field(min_length=1)
    status: ReviewStatus
    notes: Optional[str] = None


class QuarantineStatsCommand(Command):
    action: Literal["stats"]
    date_range: Optional[DateRangeInput] = None


class QuarantineAnalytics(Command):
    action: Literal["analytics"]
    date_range: Optional[DateRangeInput] = None
    top: int = Field(5, ge=1, le=100)


class RecoverQuarantined(Command):
    action: Literal["recover"]
    priority_only: bool = False
    max_records: int = Field(100, ge=1, le=10000)
    dry_run: bool = False
    overrides: Dict[str, Any] = Field(default_factory=dict)


QuarantineCommand = Annotated[
    Union[
        ListQuarantine,
        ReviewQuarantine,
        BulkUpdateQuarantine,
        QuarantineStatsCommand,
        QuarantineAnalytics,
        RecoverQuarantined
    ],
    Field(discriminator="action")
]

_migration_adapter = TypeAdapter(MigrationCommand)
_queue_adapter = TypeAdapter(QueueCommand)
_quarantine_adapter = TypeAdapter(QuarantineCommand)


def _parse(adapter: TypeAdapter, payload: Any):
    try:
        return adapter.validate_python(payload)
    except ValidationError as e:
        errors = [
            {"loc": ".".join(str(part) for part in err["loc"]), "msg": err["msg"], "type": err["type"]}
            for err in e.errors()
        ]
        raise CommandValidationError(errors[0]["msg"] if errors else str(e), errors)


def parse_migration_command(payload: Any):
    """Parse a migration request; raises CommandValidationError for unknown actions or bad fields."""
    return _parse(_migration_adapter, payload)


def parse_queue_command(payload: Any):
    """Parse a queue request; raises CommandValidationError for unknown actions or bad fields."""
    return _parse(_queue_adapter, payload)


def parse_quarantine_command(payload: Any):
    """Parse a quarantine request; raises CommandValidationError for unknown actions or bad fields."""
    return _parse(_quarantine_adapter, payload)
