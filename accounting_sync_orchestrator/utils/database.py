"""
Database utilities for Accounting Sync Orchestrator

Provides persistence for migration job state, quarantined records and the
control-plane audit log. ``DatabaseManager`` stores them in PostgreSQL through an asyncpg
connection pool; ``InMemoryMigrationStore`` keeps them in process for dry
runs, single-shot CLI runs and tests.
"""

import json
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from importlib import resources
from typing import Dict, List, Optional, Any

import asyncpg

from ..models.audit import AuditRecord
from ..models.migration import MigrationConfig, ProgressSnapshot
from ..models.quarantine import QuarantineEntry
from ..core.exceptions import DatabaseError


class MigrationStore(ABC):
    """Durable home of migration job state and audit records."""

    async def initialize(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def save_migration(self, snapshot: ProgressSnapshot, config: MigrationConfig,
                             created_by: str) -> None:
        """Insert or update the persisted state of one migration."""
        pass

    @abstractmethod
    async def get_migration(self, job_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def list_migrations(self) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def save_audit(self, entry: AuditRecord) -> None:
        pass

    @abstractmethod
    async def save_quarantine(self, entry: QuarantineEntry) -> None:
        """Insert or update one quarantine entry."""
        pass


class InMemoryMigrationStore(MigrationStore):
    """Process-local store; state is lost when the process exits."""

    def __init__(self):
        self.migrations: Dict[str, Dict[str, Any]] = {}
        self.audit_log: List[AuditRecord] = []
        self.quarantine: Dict[str, Dict[str, Any]] = {}

    async def save_migration(self, snapshot: ProgressSnapshot, config: MigrationConfig,
                             created_by: str) -> None:
        row = snapshot.to_dict()
        row["config"] = config.to_dict()
        row["created_by"] = created_by
        self.migrations[snapshot.job_id] = row

    async def get_migration(self, job_id: str) -> Optional[Dict[str, Any]]:
        return self.migrations.get(job_id)

    async def list_migrations(self) -> List[Dict[str, Any]]:
        return list(self.migrations.values())

    async def save_audit(self, entry: AuditRecord) -> None:
        self.audit_log.append(entry)

    async def save_quarantine(self, entry: QuarantineEntry) -> None:
        self.quarantine[entry.quarantine_id] = entry.to_dict()


def load_schema() -> str:
    """SQL creating the tables used by ``DatabaseManager``."""
    return resources.files("accounting_sync_orchestrator").joinpath("sql/schema.sql").read_text(encoding="utf-8")


class DatabaseManager(MigrationStore):
    """
    Manages database connections and operations for the sync orchestrator.

    Provides high-level methods for migration state and audit persistence
    with connection pooling.
    """

    def __init__(self, connection_string: str, pool_size: int = 10, max_overflow: int = 20):
        """
        Initialize database manager.

        Args:
            connection_string: PostgreSQL connection string
            pool_size: Base connection pool size
            max_overflow: Maximum additional connections
        """
        self.connection_string = connection_string
        self.pool_size = pool_size
        self.max_overflow = max_overflow
        self.pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Initialize database connection pool."""
        try:
            self.pool = await asyncpg.create_pool(
                self.connection_string,
                min_size=1,
                max_size=self.pool_size + self.max_overflow,
                command_timeout=60
            )
        except Exception as e:
            raise DatabaseError("initialization", f"Failed to create connection pool: {str(e)}")

    async def close(self) -> None:
        """Close database connection pool."""
        if self.pool:
            await self.pool.close()
            self.pool = None

    @asynccontextmanager
    async def get_connection(self):
        """Get a database connection from the pool."""
        if not self.pool:
            raise DatabaseError("connection", "Database pool not initialized")

        async with self.pool.acquire() as connection:
            yield connection

    async def create_schema(self) -> None:
        """Create tables if they do not exist."""
        try:
            async with self.get_connection() as conn:
                await conn.execute(load_schema())
        except asyncpg.PostgresError as e:
            raise DatabaseError("create_schema", str(e))

    # Migration state
    async def save_migration(self, snapshot: ProgressSnapshot, config: MigrationConfig,
                             created_by: str) -> None:
        """Insert or update a migration row."""
        try:
            async with self.get_connection() as conn:
                await conn.execute("""
                    INSERT INTO migration_jobs (
                        job_id, status, config, created_by, total_records,
                        processed_records, successful_records, failed_records,
                        skipped_records, current_batch, completed_batches,
                        total_batches, started_at, last_batch_at,
                        estimated_completion_at, completed_at, errors
                    ) VALUES ($1, $2, $3::jsonb, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15, $16, $17::jsonb)
                    ON CONFLICT (job_id) DO UPDATE SET
                        status = EXCLUDED.status,
                        processed_records = EXCLUDED.processed_records,
                        successful_records = EXCLUDED.successful_records,
                        failed_records = EXCLUDED.failed_records,
                        skipped_records = EXCLUDED.skipped_records,
                        current_batch = EXCLUDED.current_batch,
                        completed_batches = EXCLUDED.completed_batches,
                        started_at = EXCLUDED.started_at,
                        last_batch_at = EXCLUDED.last_batch_at,
                        estimated_completion_at = EXCLUDED.estimated_completion_at,
                        completed_at = EXCLUDED.completed_at,
                        errors = EXCLUDED.errors,
                        updated_at = NOW()
                """,
                snapshot.job_id, snapshot.status.value, json.dumps(config.to_dict()), created_by,
                snapshot.total_records, snapshot.processed_records, snapshot.successful_records,
                snapshot.failed_records, snapshot.skipped_records, snapshot.current_batch,
                snapshot.completed_batches, snapshot.total_batches, snapshot.started_at,
                snapshot.last_batch_at, snapshot.estimated_completion_at, snapshot.completed_at,
                json.dumps([e.to_dict() for e in snapshot.errors]))
        except asyncpg.PostgresError as e:
            raise DatabaseError("save_migration", str(e), table="migration_jobs")

    async def get_migration(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Get a migration row by ID."""
        try:
            async with self.get_connection() as conn:
                row = await conn.fetchrow("SELECT * FROM migration_jobs WHERE job_id = $1", job_id)
                return self._row_to_dict(row) if row else None
        except asyncpg.PostgresError as e:
            raise DatabaseError("get_migration", str(e), table="migration_jobs")

    async def list_migrations(self) -> List[Dict[str, Any]]:
        """Get all migration rows, newest first."""
        try:
            async with self.get_connection() as conn:
                rows = await conn.fetch("SELECT * FROM migration_jobs ORDER BY created_at DESC")
                return [self._row_to_dict(row) for row in rows]
        except asyncpg.PostgresError as e:
            raise DatabaseError("list_migrations", str(e), table="migration_jobs")

    # Audit log
    async def save_audit(self, entry: AuditRecord) -> None:
        """Append one audit record."""
        try:
            async with self.get_connection() as conn:
                await conn.execute("""
                    INSERT INTO audit_log (
                        audit_id, actor, action, scope, scope_type, outcome,
                        affected_count, details, created_at
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8::jsonb, $9)
                """,
                entry.audit_id, entry.actor, entry.action, entry.scope, entry.scope_type,
                entry.outcome, entry.affected_count, json.dumps(entry.details, default=str),
                entry.timestamp)
        except asyncpg.PostgresError as e:
            raise DatabaseError("save_audit", str(e), table="audit_log")

    # Quarantine
    async def save_quarantine(self, entry: QuarantineEntry) -> None:
        """Insert or update a quarantine row."""
        try:
            async with self.get_connection() as conn:
                await conn.execute("""
                    INSERT INTO quarantine_records (
                        quarantine_id, record_id, job_id, reason, priority, status,
                        messages, occurrences, record, corrected_data, quarantined_at,
                        quarantined_by, reviewed_at, reviewed_by, resolution_notes
                    ) VALUES ($1, $2, $3, $4, $5, $6, $7::jsonb, $8, $9::jsonb, $10::jsonb, $11, $12, $13, $14, $15)
                    ON CONFLICT (quarantine_id) DO UPDATE SET
                        job_id = EXCLUDED.job_id,
                        reason = EXCLUDED.reason,
                        priority = EXCLUDED.priority,
                        status = EXCLUDED.status,
                        messages = EXCLUDED.messages,
                        occurrences = EXCLUDED.occurrences,
                        corrected_data = EXCLUDED.corrected_data,
                        reviewed_at = EXCLUDED.reviewed_at,
                        reviewed_by = EXCLUDED.reviewed_by,
                        resolution_notes = EXCLUDED.resolution_notes
                """,
                entry.quarantine_id, entry.record_id, entry.job_id, entry.reason.value,
                entry.priority.value, entry.status.value, json.dumps(entry.messages), entry.occurrences,
                json.dumps(entry.record, default=str),
                json.dumps(entry.corrected_data, default=str) if entry.corrected_data is not None else None,
                entry.quarantined_at, entry.quarantined_by, entry.reviewed_at, entry.reviewed_by,
                entry.resolution_notes)
        except asyncpg.PostgresError as e:
            raise DatabaseError("save_quarantine", str(e), table="quarantine_records")

    @staticmethod
    def _row_to_dict(row) -> Dict[str, Any]:
        data = dict(row)
        for key in ("config", "errors"):
            if isinstance(data.get(key), str):
                data[key] = json.loads(data[key])
        for key, value in list(data.items()):
            if hasattr(value, "isoformat"):
                data[key] = value.isoformat()
        return data
