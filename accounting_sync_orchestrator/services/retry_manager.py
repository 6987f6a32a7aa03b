"""
Retry management for single-record submissions.

Wraps one record's call to the accounting system with:
- Error classification (transient vs permanent)
- Bounded retry with strictly increasing exponential backoff
- Per-attempt timeouts
- Backoff sleeps that a cancellation signal can cut short
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional

import httpx

from ..core.exceptions import PermanentSubmissionError, SubmissionError, TransientSubmissionError
from ..models.migration import ErrorClassification, ErrorEntry
from ..utils.logger import get_logger
from ..utils import metrics

RATE_LIMIT_STATUS = 429


@dataclass
class RetryPolicy:
    """Configuration for retry behavior."""
    max_retries: int = 3
    initial_delay: float = 1.0
    exponential_base: float = 2.0
    attempt_timeout: Optional[float] = 30.0

    def __post_init__(self):
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.initial_delay <= 0:
            raise ValueError("initial_delay must be > 0")
        if self.exponential_base <= 1:
            raise ValueError("exponential_base must be > 1")

    def delay_for(self, retry_number: int) -> float:
        """Backoff before retry ``retry_number`` (1-based)."""
        return self.initial_delay * (self.exponential_base ** (retry_number - 1))


@dataclass
class RecordOutcome:
    """Final result of submitting one record."""
    record_id: str
    succeeded: bool
    attempts: int
    result: Any = None
    error: Optional[ErrorEntry] = None
    interrupted: bool = False

    @property
    def retry_count(self) -> int:
        return max(self.attempts - 1, 0)

    @property
    def classification(self) -> Optional[ErrorClassification]:
        return self.error.classification if self.error else None


def classify_error(error: BaseException) -> ErrorClassification:
    """Decide whether a failed submission is worth retrying."""
    if isinstance(error, TransientSubmissionError):
        return ErrorClassification.TRANSIENT
    if isinstance(error, PermanentSubmissionError):
        return ErrorClassification.PERMANENT
    if isinstance(error, SubmissionError) and error.status_code is not None:
        if error.status_code == RATE_LIMIT_STATUS or error.status_code >= 500:
            return ErrorClassification.TRANSIENT
        return ErrorClassification.PERMANENT
    if isinstance(error, httpx.HTTPStatusError):
        status = error.response.status_code
        if status == RATE_LIMIT_STATUS or status >= 500:
            return ErrorClassification.TRANSIENT
        return ErrorClassification.PERMANENT
    if isinstance(error, (asyncio.TimeoutError, httpx.TransportError, ConnectionError, OSError)):
        return ErrorClassification.TRANSIENT
    return ErrorClassification.PERMANENT


class RetryManager:
    """
    Executes single-record submissions with retry and failure classification.

    Permanent errors are attempted exactly once; transient errors are
    attempted at most ``max_retries + 1`` times.
    """

    def __init__(self, policy: Optional[RetryPolicy] = None):
        """
        Initialize retry manager.

        Args:
            policy: Retry policy; defaults to 3 retries starting at 1 second
        """
        self.policy = policy or RetryPolicy()
        self.logger = get_logger(__name__)

    def with_max_retries(self, max_retries: int) -> "RetryManager":
        """Copy of this manager with a per-migration retry budget."""
        return RetryManager(RetryPolicy(
            max_retries=max_retries,
            initial_delay=self.policy.initial_delay,
            exponential_base=self.policy.exponential_base,
            attempt_timeout=self.policy.attempt_timeout
        ))

    async def execute(
        self,
        record_id: str,
        operation: Callable[[], Awaitable[Any]],
        interrupt: Optional[asyncio.Event] = None
    ) -> RecordOutcome:
        """
        Submit one record with retry.

        Args:
            record_id: Identifier used for logging and error entries
            operation: Zero-argument coroutine function performing the submission
            interrupt: Event that aborts pending backoff sleeps when set

        Returns:
            RecordOutcome; never raises for submission failures
        """
        policy = self.policy
        attempts = 0
        entry: Optional[ErrorEntry] = None

        while True:
            attempts += 1
            try:
                if policy.attempt_timeout:
                    result = await asyncio.wait_for(operation(), timeout=policy.attempt_timeout)
                else:
                    result = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                classification = classify_error(e)
                message = str(e) or e.__class__.__name__
                if entry is None:
                    entry = ErrorEntry(record_id=record_id, message=message, classification=classification)
                entry.message = message
                entry.classification = classification
                entry.retry_count = attempts - 1
                entry.timestamp = datetime.utcnow()

                if classification != ErrorClassification.TRANSIENT:
                    self.logger.warning(f"Permanent error for record {record_id}: {message}", extra={
                        "record_id": record_id,
                        "attempts": attempts
                    })
                    return RecordOutcome(record_id, succeeded=False, attempts=attempts, error=entry)

                if attempts > policy.max_retries:
                    self.logger.error(f"Record {record_id} failed after {attempts} attempts", extra={
                        "record_id": record_id,
                        "last_error": message
                    })
                    return RecordOutcome(record_id, succeeded=False, attempts=attempts, error=entry)

                delay = policy.delay_for(attempts)
                self.logger.info(f"Retrying record {record_id} in {delay:.2f} seconds", extra={
                    "record_id": record_id,
                    "attempt": attempts,
                    "error": message
                })
                metrics.SUBMISSION_RETRIES.inc()

                if await self._sleep(delay, interrupt):
                    entry.message = f"{message} (retry interrupted by cancellation)"
                    return RecordOutcome(record_id, succeeded=False, attempts=attempts, error=entry, interrupted=True)
                continue

            if entry is not None:
                entry.resolved = True
                entry.retry_count = attempts - 1
                self.logger.info(f"Record {record_id} succeeded on attempt {attempts}")
            return RecordOutcome(record_id, succeeded=True, attempts=attempts, result=result, error=entry)

    @staticmethod
    async def _sleep(delay: float, interrupt: Optional[asyncio.Event]) -> bool:
        """Sleep for ``delay`` seconds; True if ``interrupt`` fired first."""
        if interrupt is None:
            await asyncio.sleep(delay)
            return False
        if interrupt.is_set():
            return True
        try:
            await asyncio.wait_for(interrupt.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False
