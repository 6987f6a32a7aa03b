"""
Audit sink writing to the migration store.
"""

from ..models.audit import AuditRecord
from ..utils.database import MigrationStore
from ..utils.logger import get_logger
from .base import AuditSink


class DatabaseAuditSink(AuditSink):
    """Persists audit records through a ``MigrationStore`` and mirrors them to the log."""

    def __init__(self, store: MigrationStore):
        self.store = store
        self.logger = get_logger(__name__)

    async def record(self, entry: AuditRecord) -> None:
        await self.store.save_audit(entry)
        self.logger.debug(f"Audit stored: {entry.action} on {entry.scope}", extra={
            "audit_id": entry.audit_id,
            "actor": entry.actor,
            "outcome": entry.outcome
        })
