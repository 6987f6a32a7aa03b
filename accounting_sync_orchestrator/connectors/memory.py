"""
In-process connector implementations.

Used for local runs from exported record files, for dry runs, and by tests.
"""

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Union

import aiofiles

from ..models.audit import AuditRecord
from ..models.migration import DateRange
from ..utils.logger import get_logger
from ..services.validation_engine import approved_at_of
from .base import AuditSink, RecordSource

APPROVED = "APPROVED"
REJECTED = "REJECTED"


async def _read_records(path: Union[str, Path]) -> List[Dict[str, Any]]:
    async with aiofiles.open(path, "r", encoding="utf-8") as f:
        content = await f.read()

    if content.lstrip().startswith("["):
        return json.loads(content)
    return [json.loads(line) for line in content.splitlines() if line.strip()]


def _flagged_synced(records: Iterable[Dict[str, Any]]) -> List[str]:
    return [str(r["id"]) for r in records if isinstance(r, dict) and r.get("synced") and "id" in r]


class InMemoryRecordSource(RecordSource):
    """
    Record source backed by a list of submission dicts.

    Records are selected when approved (or rejected, on request), not yet
    synced, and inside the optional date range; ordered by approval date then id.
    """

    def __init__(self, records: Optional[Iterable[Dict[str, Any]]] = None,
                 synced_ids: Optional[Iterable[str]] = None):
        self.records: List[Dict[str, Any]] = list(records or [])
        self.synced_ids: Set[str] = set(synced_ids or [])
        self.logger = get_logger(__name__)

    @classmethod
    async def from_file(cls, path: Union[str, Path]) -> "InMemoryRecordSource":
        """
        Load records from a JSON array file or a JSON-lines file.

        A record carrying ``"synced": true`` is treated as already migrated.
        """
        records = await _read_records(path)
        return cls(records, synced_ids=_flagged_synced(records))

    def _matches(self, record: Dict[str, Any], date_range: Optional[DateRange],
                 statuses: Set[str]) -> bool:
        if str(record.get("status", APPROVED)).upper() not in statuses:
            return False
        if date_range is not None and not date_range.contains(approved_at_of(record)):
            return False
        return True

    def _ordered(self, records: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return sorted(records, key=lambda r: (approved_at_of(r) or datetime.min, str(r.get("id", ""))))

    async def fetch_pending(self, date_range: Optional[DateRange] = None,
                            include_rejected: bool = False) -> List[Dict[str, Any]]:
        statuses = {APPROVED, REJECTED} if include_rejected else {APPROVED}
        pending = [
            r for r in self.records
            if str(r.get("id")) not in self.synced_ids and self._matches(r, date_range, statuses)
        ]
        return self._ordered(pending)

    async def fetch_by_ids(self, record_ids: Sequence[str]) -> List[Dict[str, Any]]:
        by_id = {str(r.get("id")): r for r in self.records}
        return [by_id[record_id] for record_id in record_ids if record_id in by_id]

    async def count_approved(self, date_range: Optional[DateRange] = None) -> int:
        return sum(1 for r in self.records if self._matches(r, date_range, {APPROVED}))

    async def count_synced(self, date_range: Optional[DateRange] = None) -> int:
        return sum(
            1 for r in self.records
            if str(r.get("id")) in self.synced_ids and self._matches(r, date_range, {APPROVED, REJECTED})
        )

    async def mark_synced(self, record_ids: Sequence[str]) -> None:
        self.synced_ids.update(str(record_id) for record_id in record_ids)


class FileRecordSource(InMemoryRecordSource):
    """
    Record source backed by an exported records file.

    Synced ids are appended to a ledger next to the export
    (``<records file>.synced``, one id per line) and read back on load, so a
    later run over the same export does not submit them again.
    """

    LEDGER_SUFFIX = ".synced"

    def __init__(self, records: Iterable[Dict[str, Any]], ledger_path: Union[str, Path],
                 synced_ids: Optional[Iterable[str]] = None):
        super().__init__(records, synced_ids)
        self.ledger_path = Path(ledger_path)

    @classmethod
    def ledger_path_for(cls, path: Union[str, Path]) -> Path:
        path = Path(path)
        return path.with_name(path.name + cls.LEDGER_SUFFIX)

    @classmethod
    async def from_file(cls, path: Union[str, Path],
                        ledger_path: Optional[Union[str, Path]] = None) -> "FileRecordSource":
        """
        Load records plus the ids already recorded in the ledger.

        Args:
            path: JSON array or JSON-lines export
            ledger_path: Ledger location; defaults to ``<path>.synced``
        """
        records = await _read_records(path)
        ledger = Path(ledger_path) if ledger_path else cls.ledger_path_for(path)

        synced = set(_flagged_synced(records))
        if ledger.exists():
            async with aiofiles.open(ledger, "r", encoding="utf-8") as f:
                synced.update(line.strip() for line in (await f.read()).splitlines() if line.strip())

        source = cls(records, ledger, synced)
        source.logger.info(f"Loaded {len(records)} records from {path}", extra={
            "ledger_path": str(ledger),
            "synced_count": len(synced)
        })
        return source

    async def mark_synced(self, record_ids: Sequence[str]) -> None:
        new_ids = list(dict.fromkeys(
            str(record_id) for record_id in record_ids if str(record_id) not in self.synced_ids
        ))
        if not new_ids:
            return

        async with aiofiles.open(self.ledger_path, "a", encoding="utf-8") as f:
            await f.write("".join(f"{record_id}\n" for record_id in new_ids))
        self.synced_ids.update(new_ids)


class InMemoryAuditSink(AuditSink):
    """Keeps audit records in a list, newest last."""

    def __init__(self):
        self.records: List[AuditRecord] = []

    async def record(self, entry: AuditRecord) -> None:
        self.records.append(entry)

    def for_action(self, action: str) -> List[AuditRecord]:
        return [r for r in self.records if r.action == action]


class LoggingAuditSink(AuditSink):
    """Writes audit records to the structured log."""

    def __init__(self, logger_name: str = "accounting_sync_orchestrator.audit"):
        self.logger = get_logger(logger_name)

    async def record(self, entry: AuditRecord) -> None:
        self.logger.info(f"Audit: {entry.action} on {entry.scope} by {entry.actor} -> {entry.outcome}",
                         extra={"audit": entry.to_dict()})
