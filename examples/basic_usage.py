"""
Basic usage example for Accounting Sync Orchestrator

This example runs a dry-run migration over an in-memory record set, pauses
and resumes it, and drives a named sync queue through the control plane.
"""

import asyncio
from datetime import datetime, timedelta

from accounting_sync_orchestrator import (
    ControlPlane,
    HttpAccountingClient,
    InMemoryRecordSource,
    LoggingAuditSink,
    MigrationConfig,
    MigrationCoordinator,
    MigrationStatus,
    QueueManager,
    setup_logger
)


def sample_records(count: int):
    approved = datetime(2024, 1, 1, 9, 0, 0)
    return [
        {
            "id": f"sub_{i:04d}",
            "status": "APPROVED",
            "approved_at": approved + timedelta(hours=i),
            "user": {"id": f"u{i % 7}", "email": f"employee{i % 7}@example.com"},
            "entries": [
                {
                    "id": f"te_{i:04d}",
                    "project": {"id": "p1", "name": "Website", "client": {"id": "c1", "name": "Acme"}},
                    "billable": True,
                    "bill_rate": 120.0,
                    "duration_minutes": 240,
                    "description": "Implementation"
                }
            ]
        }
        for i in range(1, count + 1)
    ]


async def migration_example():
    """Dry-run migration with pause and resume."""
    print("Starting migration example")

    source = InMemoryRecordSource(sample_records(120))
    client = HttpAccountingClient("https://accounting.example.com/api", api_token="example-token")
    coordinator = MigrationCoordinator(source, client, LoggingAuditSink())
    await coordinator.start()

    try:
        summary = await coordinator.analyze_migration()
        print(f"Pending records: {summary.pending_migration_records} (about {summary.estimated_duration})")

        job_id = await coordinator.start_migration(
            MigrationConfig(batch_size=25, delay_between_batches_ms=200, dry_run=True),
            actor="ops@example.com"
        )
        print(f"Migration started: {job_id}")

        await asyncio.sleep(0.1)
        await coordinator.pause(job_id, actor="ops@example.com")
        paused = await coordinator.wait_for_status(job_id, MigrationStatus.PAUSED, timeout=10)
        print(f"Paused after batch {paused.current_batch}/{paused.total_batches}")

        await coordinator.resume(job_id, actor="ops@example.com")
        final = await coordinator.wait_for_status(job_id, timeout=30)
        print(f"Migration {final.status.value}: {final.successful_records}/{final.total_records} records")

    finally:
        await coordinator.stop()
        await client.close()


async def queue_example():
    """Named queue driven through the control plane."""
    print("\nStarting queue example")

    audit_sink = LoggingAuditSink()
    coordinator = MigrationCoordinator(InMemoryRecordSource([]), HttpAccountingClient("http://localhost"), audit_sink)
    queues = QueueManager(audit_sink, poll_interval=0.1)
    queues.declare_queue("sync", concurrency=2)

    async def sync_record(job):
        await asyncio.sleep(0.01)
        return {"synced": job.payload["record_id"]}

    queues.register_handler("sync", "sync", sync_record)
    control_plane = ControlPlane(coordinator, queues)

    await coordinator.start()
    await queues.start()
    try:
        for i in range(5):
            await control_plane.handle_queue_request(
                {"action": "add", "queueName": "sync", "payload": {"record_id": f"sub_{i}"}},
                actor="ops@example.com"
            )
        await asyncio.sleep(0.5)

        stats = await control_plane.handle_queue_request({"action": "stats"}, actor="ops@example.com")
        print(f"Queue stats: {stats['data']['sync']}")

        cleared = await control_plane.handle_queue_request(
            {"action": "clear", "queueName": "sync", "jobTypeFilter": ["completed"]},
            actor="ops@example.com"
        )
        print(f"Cleared {cleared['data']['cleared_count']} completed jobs")

    finally:
        await queues.stop()
        await coordinator.stop()
        await coordinator.accounting_client.close()


if __name__ == "__main__":
    setup_logger("accounting_sync_orchestrator", level="INFO", structured=False)
    asyncio.run(migration_example())
    asyncio.run(queue_example())
