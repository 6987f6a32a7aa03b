"""
Shared fixtures and fakes for the test suite.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

import pytest
import pytest_asyncio

from accounting_sync_orchestrator.connectors.base import AccountingClient
from accounting_sync_orchestrator.connectors.memory import InMemoryAuditSink, InMemoryRecordSource
from accounting_sync_orchestrator.core.coordinator import MigrationCoordinator
from accounting_sync_orchestrator.services.retry_manager import RetryPolicy
from accounting_sync_orchestrator.utils.database import InMemoryMigrationStore

BASE_APPROVAL = datetime(2024, 1, 1, 9, 0, 0)


def make_record(index: int, approved_at: Optional[datetime] = None, **overrides) -> Dict[str, Any]:
    """A valid approved timesheet submission; ``overrides`` replace top-level keys."""
    record = {
        "id": f"rec-{index:03d}",
        "status": "APPROVED",
        "approved_at": approved_at or BASE_APPROVAL + timedelta(hours=index),
        "user": {"id": f"u{index}", "email": f"user{index}@example.com"},
        "entries": [
            {
                "id": f"te-{index:03d}",
                "project": {"id": "p1", "name": "Website", "client": {"id": "c1", "name": "Acme"}},
                "billable": True,
                "bill_rate": 120.0,
                "duration_minutes": 480,
                "description": "Implementation work"
            }
        ]
    }
    record.update(overrides)
    return record


def make_records(count: int) -> List[Dict[str, Any]]:
    return [make_record(i) for i in range(1, count + 1)]


class FakeAccountingClient(AccountingClient):
    """
    Scripted accounting client.

    ``failures`` maps a record id to exceptions raised on successive attempts;
    ``always_fail`` maps a record id to an exception raised on every attempt.
    When ``gate_record`` is set, submitting that record blocks until ``gate``
    is set, and ``gate_reached`` fires when it gets there.
    """

    def __init__(
        self,
        failures: Optional[Mapping[str, Iterable[Exception]]] = None,
        always_fail: Optional[Mapping[str, Exception]] = None,
        connected: bool = True,
        gate_record: Optional[str] = None
    ):
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.always_fail = dict(always_fail or {})
        self.connected = connected
        self.gate_record = gate_record
        self.gate = asyncio.Event()
        self.gate_reached = asyncio.Event()
        self.calls: List[str] = []
        self.closed = False

    async def check_connection(self) -> bool:
        return self.connected

    async def submit(self, record: Mapping[str, Any]) -> Dict[str, Any]:
        record_id = record["id"]
        self.calls.append(record_id)

        if record_id == self.gate_record and not self.gate.is_set():
            self.gate_reached.set()
            await self.gate.wait()

        scripted = self.failures.get(record_id)
        if scripted:
            raise scripted.pop(0)
        if record_id in self.always_fail:
            raise self.always_fail[record_id]
        return {"id": record_id, "status": "created"}

    async def close(self) -> None:
        self.closed = True

    def attempts(self, record_id: str) -> int:
        return self.calls.count(record_id)


@pytest.fixture
def fast_retry_policy() -> RetryPolicy:
    return RetryPolicy(initial_delay=0.001, exponential_base=2.0, attempt_timeout=5.0)


@pytest.fixture
def audit_sink() -> InMemoryAuditSink:
    return InMemoryAuditSink()


@pytest.fixture
def store() -> InMemoryMigrationStore:
    return InMemoryMigrationStore()


@pytest.fixture
def source() -> InMemoryRecordSource:
    return InMemoryRecordSource(make_records(25))


@pytest.fixture
def client() -> FakeAccountingClient:
    return FakeAccountingClient()


@pytest_asyncio.fixture
async def coordinator(source, client, audit_sink, store, fast_retry_policy):
    """Started coordinator over 25 valid records; stopped after the test."""
    coordinator = MigrationCoordinator(
        source,
        client,
        audit_sink,
        store=store,
        retry_policy=fast_retry_policy
    )
    await coordinator.start()
    yield coordinator
    await coordinator.stop()
