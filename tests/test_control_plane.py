"""
Tests for command parsing and the ControlPlane request handlers, including
quarantine requests and the audit of requests rejected at the boundary.
"""

import pytest
import pytest_asyncio

from accounting_sync_orchestrator.connectors.memory import InMemoryRecordSource
from accounting_sync_orchestrator.core.commands import (
    ClearQueue,
    ReviewQuarantine,
    StartMigration,
    parse_migration_command,
    parse_quarantine_command,
    parse_queue_command
)
from accounting_sync_orchestrator.core.control_plane import ControlPlane
from accounting_sync_orchestrator.core.coordinator import MigrationCoordinator
from accounting_sync_orchestrator.core.exceptions import CommandValidationError
from accounting_sync_orchestrator.models.migration import MigrationConfig
from accounting_sync_orchestrator.services.queue_manager import QueueManager

from .conftest import FakeAccountingClient, make_record, make_records

ACTOR = "ops@example.com"


class TestCommandParsing:
    """Closed command unions with camelCase aliases."""

    def test_start_with_camel_case_fields(self):
        command = parse_migration_command({
            "action": "start",
            "batchSize": 25,
            "delayBetweenBatchesMs": 0,
            "dryRun": False,
            "dateRange": {"start": "2024-01-01T00:00:00", "end": "2024-01-31T23:59:59"}
        })

        assert isinstance(command, StartMigration)
        config = command.to_config()
        assert config.batch_size == 25
        assert config.delay_between_batches_ms == 0
        assert config.dry_run is False
        assert config.date_range.start.day == 1

    def test_snake_case_fields_are_accepted(self):
        command = parse_migration_command({"action": "start", "batch_size": 10})

        assert command.batch_size == 10

    def test_defaults(self):
        config = parse_migration_command({"action": "start"}).to_config()

        assert config.batch_size == 50
        assert config.delay_between_batches_ms == 2000
        assert config.max_retries == 3
        assert config.dry_run is True

    @pytest.mark.parametrize("batch_size", [0, 101])
    def test_batch_size_out_of_range(self, batch_size):
        with pytest.raises(CommandValidationError) as exc_info:
            parse_migration_command({"action": "start", "batchSize": batch_size})

        assert exc_info.value.error_code == "COMMAND_VALIDATION_ERROR"
        assert exc_info.value.details["errors"][0]["loc"].endswith("batchSize")

    def test_unknown_action_is_rejected(self):
        with pytest.raises(CommandValidationError):
            parse_migration_command({"action": "explode"})

    def test_unknown_field_is_rejected(self):
        with pytest.raises(CommandValidationError):
            parse_migration_command({"action": "pause", "jobId": "mig_1", "urgent": True})

    def test_inverted_date_range(self):
        with pytest.raises(CommandValidationError):
            parse_migration_command({
                "action": "analyze",
                "dateRange": {"start": "2024-02-01T00:00:00", "end": "2024-01-01T00:00:00"}
            })

    def test_queue_clear_filter(self):
        command = parse_queue_command({"action": "clear", "queueName": "sync", "jobTypeFilter": ["failed"]})

        assert isinstance(command, ClearQueue)
        assert command.job_type_filter == ["failed"]

    def test_retry_requires_job_ids(self):
        with pytest.raises(CommandValidationError):
            parse_queue_command({"action": "retry", "queueName": "sync", "jobIds": []})


@pytest.fixture
def queue_manager(audit_sink):
    manager = QueueManager(audit_sink)
    manager.declare_queue("sync")
    return manager


@pytest_asyncio.fixture
async def control_plane(coordinator, queue_manager):
    return ControlPlane(coordinator, queue_manager)


class TestMigrationRequests:
    """Migration requests answered with success/error envelopes."""

    @pytest.mark.asyncio
    async def test_start_then_progress(self, control_plane, coordinator):
        started = await control_plane.handle_migration_request(
            {"action": "start", "batchSize": 10, "delayBetweenBatchesMs": 0, "dryRun": True}, ACTOR
        )

        assert started["success"] is True
        job_id = started["data"]["job_id"]
        assert started["data"]["status"] == "running"

        await coordinator.wait_for_status(job_id, timeout=5.0)
        progress = await control_plane.handle_migration_request({"action": "progress", "jobId": job_id}, ACTOR)

        assert progress["data"]["status"] == "completed"
        assert progress["data"]["processed_records"] == 25
        assert progress["data"]["total_batches"] == 3

    @pytest.mark.asyncio
    async def test_invalid_request_returns_error(self, control_plane):
        response = await control_plane.handle_migration_request({"action": "start", "batchSize": 500}, ACTOR)

        assert response["success"] is False
        assert response["error"]["error_code"] == "COMMAND_VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_job_returns_not_found(self, control_plane):
        response = await control_plane.handle_migration_request({"action": "cancel", "jobId": "mig_nope"}, ACTOR)

        assert response["success"] is False
        assert response["error"]["error_code"] == "MIGRATION_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_analyze_and_list(self, control_plane):
        analysis = await control_plane.handle_migration_request({"action": "analyze"}, ACTOR)
        listing = await control_plane.handle_migration_request({"action": "list"}, ACTOR)

        assert analysis["data"]["pending_migration_records"] == 25
        assert analysis["data"]["estimated_duration"] == "2 minutes"
        assert listing == {"success": True, "data": []}


class TestQueueRequests:
    """Queue requests through the control plane."""

    @pytest.mark.asyncio
    async def test_add_then_stats(self, control_plane):
        added = await control_plane.handle_queue_request(
            {"action": "add", "queueName": "sync", "payload": {"record_id": "rec-1"}, "priority": 2}, ACTOR
        )
        stats = await control_plane.handle_queue_request({"action": "stats", "queueName": "sync"}, ACTOR)

        assert added["data"]["job_id"].startswith("qj_")
        assert stats["data"]["sync"]["waiting"] == 1

    @pytest.mark.asyncio
    async def test_clear_response_shape(self, control_plane):
        await control_plane.handle_queue_request({"action": "add", "queueName": "sync"}, ACTOR)

        response = await control_plane.handle_queue_request(
            {"action": "clear", "queueName": "sync", "jobTypeFilter": ["waiting"]}, ACTOR
        )

        assert response == {"success": True, "data": {"queue_name": "sync", "cleared_count": 1}}

    @pytest.mark.asyncio
    async def test_retry_reports_each_id(self, control_plane):
        response = await control_plane.handle_queue_request(
            {"action": "retry", "queueName": "sync", "jobIds": ["qj_missing"]}, ACTOR
        )

        assert response["data"]["results"] == {"qj_missing": "not_found"}

    @pytest.mark.asyncio
    async def test_unknown_queue(self, control_plane):
        response = await control_plane.handle_queue_request({"action": "pause", "queueName": "nope"}, ACTOR)

        assert response["success"] is False
        assert response["error"]["error_code"] == "QUEUE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_queue_manager_not_configured(self, coordinator):
        control_plane = ControlPlane(coordinator)

        response = await control_plane.handle_queue_request({"action": "health"}, ACTOR)

        assert response["success"] is False
        assert response["error"]["error_code"] == "QUEUE_ERROR"


class TestQuarantineParsing:
    """Quarantine command union."""

    def test_review_with_corrected_data(self):
        command = parse_quarantine_command({
            "action": "review",
            "quarantineId": "qr_1",
            "status": "under_review",
            "correctedData": {"id": "rec-001"}
        })

        assert isinstance(command, ReviewQuarantine)
        assert command.corrected_data == {"id": "rec-001"}

    def test_review_status_must_be_a_review_status(self):
        with pytest.raises(CommandValidationError):
            parse_quarantine_command({"action": "review", "quarantineId": "qr_1", "status": "quarantined"})

    def test_recover_defaults(self):
        command = parse_quarantine_command({"action": "recover", "maxRecords": 10})

        assert command.max_records == 10
        assert command.priority_only is False
        assert command.dry_run is False


@pytest_asyncio.fixture
async def malformed_coordinator(audit_sink, fast_retry_policy):
    """Coordinator whose pending records include structurally broken ones."""
    records = make_records(2) + [
        make_record(3, entries=["not-an-entry"]),
        make_record(4, entries=[{"id": "te-4", "project": {"client": {"id": "c1"}}, "duration_minutes": "8h"}])
    ]
    coordinator = MigrationCoordinator(
        InMemoryRecordSource(records), FakeAccountingClient(), audit_sink, retry_policy=fast_retry_policy
    )
    await coordinator.start()
    yield coordinator
    await coordinator.stop()


class TestMalformedRecords:
    """Broken record shapes stay inside the validation report."""

    @pytest.mark.asyncio
    async def test_validate_reports_malformed_records(self, malformed_coordinator):
        control_plane = ControlPlane(malformed_coordinator)

        response = await control_plane.handle_migration_request({"action": "validate"}, ACTOR)

        assert response["success"] is True
        assert response["data"]["invalid_records"] == 2
        assert response["data"]["category_counts"]["data_integrity"]["records"] == 2

    @pytest.mark.asyncio
    async def test_start_is_blocked_not_crashed(self, malformed_coordinator):
        control_plane = ControlPlane(malformed_coordinator)

        response = await control_plane.handle_migration_request({"action": "start"}, ACTOR)

        assert response["success"] is False
        assert response["error"]["error_code"] == "VALIDATION_BLOCKED"


class TestRejectedRequestAudit:
    """Mutating requests refused at the boundary are audited."""

    @pytest.mark.asyncio
    async def test_unparseable_start_is_audited(self, control_plane, audit_sink):
        response = await control_plane.handle_migration_request({"action": "start", "batchSize": 0}, ACTOR)

        assert response["success"] is False
        audit = audit_sink.for_action("start")[0]
        assert audit.outcome == "rejected"
        assert audit.actor == ACTOR
        assert audit.scope == "request"
        assert audit.details["error_code"] == "COMMAND_VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_unknown_job_pause_is_audited(self, control_plane, audit_sink):
        response = await control_plane.handle_migration_request({"action": "pause", "jobId": "nope"}, ACTOR)

        assert response["error"]["error_code"] == "MIGRATION_NOT_FOUND"
        audit = audit_sink.for_action("pause")[0]
        assert audit.outcome == "rejected"
        assert audit.scope == "nope"

    @pytest.mark.asyncio
    async def test_malformed_pause_is_audited_with_job_scope(self, control_plane, audit_sink):
        await control_plane.handle_migration_request({"action": "pause", "jobId": "mig_1", "urgent": True}, ACTOR)

        audit = audit_sink.for_action("pause")[0]
        assert audit.outcome == "rejected"
        assert audit.scope == "mig_1"

    @pytest.mark.asyncio
    async def test_read_only_failures_are_not_audited(self, control_plane, audit_sink):
        await control_plane.handle_migration_request({"action": "progress"}, ACTOR)
        await control_plane.handle_migration_request({"action": "explode"}, ACTOR)
        await control_plane.handle_migration_request(["not", "a", "mapping"], ACTOR)

        assert audit_sink.records == []

    @pytest.mark.asyncio
    async def test_unparseable_queue_mutation_is_audited(self, control_plane, audit_sink):
        await control_plane.handle_queue_request({"action": "retry", "queueName": "sync", "jobIds": []}, ACTOR)

        audit = audit_sink.for_action("queue.retry")[0]
        assert audit.outcome == "rejected"
        assert audit.scope == "sync"

    @pytest.mark.asyncio
    async def test_unknown_queue_state_filter_is_audited(self, control_plane, audit_sink):
        response = await control_plane.handle_queue_request(
            {"action": "clear", "queueName": "sync", "jobTypeFilter": ["exploded"]}, ACTOR
        )

        assert response["error"]["error_code"] == "QUEUE_ERROR"
        assert [a.outcome for a in audit_sink.for_action("queue.clear")] == ["rejected"]

    @pytest.mark.asyncio
    async def test_mutation_without_queue_manager_is_audited(self, coordinator, audit_sink):
        control_plane = ControlPlane(coordinator)

        await control_plane.handle_queue_request({"action": "pause", "queueName": "sync"}, ACTOR)

        audit = audit_sink.for_action("queue.pause")[0]
        assert audit.outcome == "rejected"
        assert audit.details["error_code"] == "QUEUE_ERROR"


class TestQuarantineRequests:
    """Review and recovery through the control plane."""

    @pytest_asyncio.fixture
    async def quarantined(self, audit_sink, fast_retry_policy):
        """Started coordinator whose first live run skipped one record with no user."""
        records = make_records(2) + [make_record(3, user=None)]
        coordinator = MigrationCoordinator(
            InMemoryRecordSource(records), FakeAccountingClient(), audit_sink, retry_policy=fast_retry_policy
        )
        await coordinator.start()
        job_id = await coordinator.start_migration(
            MigrationConfig(delay_between_batches_ms=0, dry_run=False, skip_invalid=True), ACTOR
        )
        await coordinator.wait_for_status(job_id, timeout=5.0)
        yield ControlPlane(coordinator)
        await coordinator.stop()

    @pytest.mark.asyncio
    async def test_list_then_review_and_recover(self, quarantined):
        listing = await quarantined.handle_quarantine_request({"action": "list", "status": ["quarantined"]}, ACTOR)
        entry = listing["data"][0]
        assert entry["record_id"] == "rec-003"
        assert entry["priority"] == "high"

        reviewed = await quarantined.handle_quarantine_request({
            "action": "review",
            "quarantineId": entry["quarantine_id"],
            "status": "under_review",
            "correctedData": make_record(3)
        }, ACTOR)
        assert reviewed["data"]["has_corrected_data"] is True

        recovered = await quarantined.handle_quarantine_request({"action": "recover"}, ACTOR)
        assert recovered["data"]["recovered_ids"] == ["rec-003"]

        final = await quarantined.coordinator.wait_for_status(recovered["data"]["job_id"], timeout=5.0)
        assert final.successful_records == 1
        stats = await quarantined.handle_quarantine_request({"action": "stats"}, ACTOR)
        assert stats["data"]["by_status"]["resolved"] == 1
        assert stats["data"]["resolution_rate"] == 100.0

    @pytest.mark.asyncio
    async def test_review_of_unknown_entry(self, quarantined, audit_sink):
        response = await quarantined.handle_quarantine_request(
            {"action": "review", "quarantineId": "qr_missing", "status": "rejected"}, ACTOR
        )

        assert response["error"]["error_code"] == "QUARANTINE_NOT_FOUND"
        assert audit_sink.for_action("quarantine.review")[0].outcome == "rejected"

    @pytest.mark.asyncio
    async def test_unknown_list_filter(self, quarantined):
        response = await quarantined.handle_quarantine_request({"action": "list", "priority": ["urgent"]}, ACTOR)

        assert response["error"]["error_code"] == "QUARANTINE_ERROR"

    @pytest.mark.asyncio
    async def test_malformed_bulk_update_is_audited(self, quarantined, audit_sink):
        await quarantined.handle_quarantine_request({"action": "bulk_update", "status": "resolved"}, ACTOR)

        assert audit_sink.for_action("quarantine.bulk_update")[0].outcome == "rejected"

    @pytest.mark.asyncio
    async def test_analytics(self, quarantined):
        response = await quarantined.handle_quarantine_request({"action": "analytics", "top": 3}, ACTOR)

        assert response["data"]["summary"]["total"] == 1
        assert response["data"]["top_error_messages"][0]["message"] == "Submission has no user"
        assert response["data"]["problematic_records"] == []
