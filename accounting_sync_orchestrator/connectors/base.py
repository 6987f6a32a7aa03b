"""
Connector interfaces.

Defines the boundaries to the collaborators the orchestrator does not own:
the record store holding source records, the accounting system client, and
the audit sink.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..models.audit import AuditRecord
from ..models.migration import DateRange


class RecordSource(ABC):
    """
    Read access to committed source records (approved timesheet submissions).

    Implementations must return records in a deterministic order (oldest
    approval first) so that batching and resume are reproducible.
    """

    @abstractmethod
    async def fetch_pending(
        self,
        date_range: Optional[DateRange] = None,
        include_rejected: bool = False
    ) -> List[Dict[str, Any]]:
        """
        Records that still need to be sent to the accounting system.

        Args:
            date_range: Optional approval date filter
            include_rejected: Also return previously rejected submissions

        Returns:
            Ordered list of records
        """
        pass

    @abstractmethod
    async def fetch_by_ids(self, record_ids: Sequence[str]) -> List[Dict[str, Any]]:
        """Records with the given ids, in the order of ``record_ids``."""
        pass

    @abstractmethod
    async def count_approved(self, date_range: Optional[DateRange] = None) -> int:
        """Number of approved records, synced or not."""
        pass

    @abstractmethod
    async def count_synced(self, date_range: Optional[DateRange] = None) -> int:
        """Number of records already present in the accounting system."""
        pass

    async def mark_synced(self, record_ids: Sequence[str]) -> None:
        """Remember records that were submitted successfully."""
        return None


class AccountingClient(ABC):
    """
    Client for the external accounting system.

    ``submit`` raises ``TransientSubmissionError`` or
    ``PermanentSubmissionError`` (or ``SubmissionError`` with a status code)
    so the retry manager can classify failures.
    """

    @abstractmethod
    async def check_connection(self) -> bool:
        """True if the accounting system is reachable and authorised."""
        pass

    @abstractmethod
    async def submit(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        """Create or update one record in the accounting system."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None


class AuditSink(ABC):
    """Destination for control-plane audit records."""

    @abstractmethod
    async def record(self, entry: AuditRecord) -> None:
        pass
