"""
Unit tests for the QuarantineManager.
"""

from datetime import datetime, timedelta

import pytest

from accounting_sync_orchestrator.core.exceptions import QuarantineError, QuarantineNotFoundError
from accounting_sync_orchestrator.models.migration import DateRange, ErrorClassification, ErrorEntry
from accounting_sync_orchestrator.models.quarantine import (
    QuarantinePriority,
    QuarantineReason,
    QuarantineStatus
)
from accounting_sync_orchestrator.services.quarantine_manager import (
    QuarantineManager,
    priority_for_reason,
    reason_for_issues
)
from accounting_sync_orchestrator.services.validation_engine import ValidationEngine

from .conftest import make_record

ACTOR = "reviewer@example.com"


@pytest.fixture
def manager(audit_sink, store):
    return QuarantineManager(audit_sink, store)


class TestIntake:
    """Quarantining records and refreshing open entries."""

    @pytest.mark.asyncio
    async def test_new_entry_is_persisted_and_audited(self, manager, audit_sink, store):
        entry = await manager.quarantine(make_record(1), QuarantineReason.API_ERROR, ["HTTP 422"], job_id="mig_1")

        assert entry.status == QuarantineStatus.QUARANTINED
        assert entry.priority == QuarantinePriority.MEDIUM
        assert entry.quarantine_id.startswith("qr_")
        assert store.quarantine[entry.quarantine_id]["status"] == "quarantined"
        audit = audit_sink.for_action("quarantine.quarantine")[0]
        assert audit.outcome == "success"
        assert audit.details["record_id"] == "rec-001"

    @pytest.mark.asyncio
    async def test_repeat_failure_updates_open_entry(self, manager, audit_sink):
        first = await manager.quarantine(make_record(1), QuarantineReason.API_ERROR, ["HTTP 422"], job_id="mig_1")
        second = await manager.quarantine(
            make_record(1), QuarantineReason.DATA_INTEGRITY, ["HTTP 422", "bad totals"], job_id="mig_2"
        )

        assert second is first
        assert first.occurrences == 2
        assert first.job_id == "mig_2"
        assert first.priority == QuarantinePriority.CRITICAL
        assert first.messages == ["HTTP 422", "bad totals"]
        assert len(manager.list_entries()) == 1
        assert audit_sink.for_action("quarantine.quarantine")[1].outcome == "updated"

    @pytest.mark.asyncio
    async def test_closed_entry_is_not_reused(self, manager):
        first = await manager.quarantine(make_record(1), QuarantineReason.MANUAL, ["held"])
        await manager.review(first.quarantine_id, ACTOR, QuarantineStatus.REJECTED)

        second = await manager.quarantine(make_record(1), QuarantineReason.MANUAL, ["held again"])

        assert second.quarantine_id != first.quarantine_id
        assert manager.find_open("rec-001") is second

    @pytest.mark.asyncio
    async def test_failures_classified_by_cause(self, manager):
        records = [make_record(1), make_record(2), make_record(3, user=None), make_record(4)]
        errors = [
            ErrorEntry("rec-001", "HTTP 503", ErrorClassification.TRANSIENT, retry_count=3),
            ErrorEntry("rec-002", "HTTP 422", ErrorClassification.PERMANENT),
            ErrorEntry("rec-003", "HTTP 400", ErrorClassification.PERMANENT),
            ErrorEntry("rec-004", "HTTP 503", ErrorClassification.TRANSIENT, resolved=True),
            ErrorEntry("__job__", "systemic", ErrorClassification.SYSTEMIC)
        ]

        entries = await manager.quarantine_failures("mig_1", records, errors)

        reasons = {e.record_id: e.reason for e in entries}
        assert reasons == {
            "rec-001": QuarantineReason.RETRIES_EXHAUSTED,
            "rec-002": QuarantineReason.API_ERROR,
            "rec-003": QuarantineReason.VALIDATION_FAILED
        }
        assert "Submission has no user" in manager.find_open("rec-003").messages

    @pytest.mark.asyncio
    async def test_invalid_records_carry_their_issues(self, manager):
        broken = make_record(1, entries=["garbage"])

        [entry] = await manager.quarantine_invalid("mig_1", [broken], actor="ops@example.com")

        assert entry.reason == QuarantineReason.DATA_INTEGRITY
        assert entry.priority == QuarantinePriority.CRITICAL
        assert entry.quarantined_by == "ops@example.com"
        assert entry.messages == ["Time entry at position 0 is not a mapping"]


class TestReview:
    """Operator decisions on quarantined records."""

    @pytest.mark.asyncio
    async def test_review_with_corrected_data(self, manager):
        entry = await manager.quarantine(make_record(1, user=None), QuarantineReason.VALIDATION_FAILED, ["no user"])
        corrected = make_record(1)
        del corrected["id"]

        reviewed = await manager.review(entry.quarantine_id, ACTOR, QuarantineStatus.UNDER_REVIEW,
                                        notes="user restored", corrected_data=corrected)

        assert reviewed.status == QuarantineStatus.UNDER_REVIEW
        assert reviewed.is_open
        assert reviewed.reviewed_by == ACTOR
        assert reviewed.migratable_record["id"] == "rec-001"
        assert reviewed.migratable_record["user"]["email"] == "user1@example.com"
        assert reviewed.to_dict()["has_corrected_data"] is True

    @pytest.mark.asyncio
    async def test_corrected_data_must_keep_record_id(self, manager, audit_sink):
        entry = await manager.quarantine(make_record(1), QuarantineReason.MANUAL, ["held"])

        with pytest.raises(QuarantineError):
            await manager.review(entry.quarantine_id, ACTOR, QuarantineStatus.UNDER_REVIEW,
                                 corrected_data=make_record(2))

        assert entry.corrected_data is None
        assert audit_sink.for_action("quarantine.review")[0].outcome == "rejected"

    @pytest.mark.asyncio
    async def test_corrected_data_requires_under_review(self, manager):
        entry = await manager.quarantine(make_record(1), QuarantineReason.MANUAL, ["held"])

        with pytest.raises(QuarantineError):
            await manager.review(entry.quarantine_id, ACTOR, QuarantineStatus.RESOLVED,
                                 corrected_data=make_record(1))

    @pytest.mark.asyncio
    async def test_closed_entry_cannot_be_reviewed(self, manager):
        entry = await manager.quarantine(make_record(1), QuarantineReason.MANUAL, ["held"])
        await manager.review(entry.quarantine_id, ACTOR, QuarantineStatus.RESOLVED, notes="fixed upstream")

        with pytest.raises(QuarantineError):
            await manager.review(entry.quarantine_id, ACTOR, QuarantineStatus.UNDER_REVIEW)

    @pytest.mark.asyncio
    async def test_quarantined_is_not_a_review_status(self, manager):
        entry = await manager.quarantine(make_record(1), QuarantineReason.MANUAL, ["held"])

        with pytest.raises(QuarantineError):
            await manager.review(entry.quarantine_id, ACTOR, QuarantineStatus.QUARANTINED)

    @pytest.mark.asyncio
    async def test_unknown_entry(self, manager, audit_sink):
        with pytest.raises(QuarantineNotFoundError):
            await manager.review("qr_missing", ACTOR, QuarantineStatus.RESOLVED)

        audit = audit_sink.for_action("quarantine.review")[0]
        assert audit.scope == "qr_missing"
        assert audit.outcome == "rejected"

    @pytest.mark.asyncio
    async def test_bulk_update_reports_failures(self, manager):
        first = await manager.quarantine(make_record(1), QuarantineReason.MANUAL, ["held"])
        second = await manager.quarantine(make_record(2), QuarantineReason.MANUAL, ["held"])

        outcome = await manager.bulk_update(
            [first.quarantine_id, "qr_missing", second.quarantine_id], ACTOR, QuarantineStatus.REJECTED
        )

        assert outcome["updated"] == 2
        assert outcome["errors"] == ["Quarantine entry qr_missing not found"]
        assert first.status == QuarantineStatus.REJECTED
        assert first.resolution_notes == "Bulk update"


class TestSyncResolution:
    """Entries close once their record syncs."""

    @pytest.mark.asyncio
    async def test_resolve_synced_closes_open_entries(self, manager, audit_sink):
        entry = await manager.quarantine(make_record(1), QuarantineReason.API_ERROR, ["HTTP 422"])

        resolved = await manager.resolve_synced(["rec-001", "rec-002"], "mig_9")

        assert resolved == 1
        assert entry.status == QuarantineStatus.RESOLVED
        assert entry.resolution_notes == "Synced by migration mig_9"
        assert audit_sink.for_action("quarantine.resolve")[0].affected_count == 1

    @pytest.mark.asyncio
    async def test_nothing_to_resolve_is_silent(self, manager, audit_sink):
        assert await manager.resolve_synced(["rec-001"], "mig_9") == 0
        assert audit_sink.records == []


class TestQueries:
    """Listings, statistics and analytics."""

    @pytest.mark.asyncio
    async def test_listing_orders_by_priority_then_age(self, manager):
        low = await manager.quarantine(make_record(1), QuarantineReason.MANUAL, ["a"])
        critical = await manager.quarantine(make_record(2), QuarantineReason.DATA_INTEGRITY, ["b"])
        medium = await manager.quarantine(make_record(3), QuarantineReason.API_ERROR, ["c"], job_id="mig_1")

        assert manager.list_entries() == [critical, medium, low]
        assert manager.list_entries(priority=["low", "medium"]) == [medium, low]
        assert manager.list_entries(job_id="mig_1") == [medium]
        assert manager.list_entries(limit=1, offset=1) == [medium]

    @pytest.mark.asyncio
    async def test_unknown_filter_value(self, manager):
        with pytest.raises(QuarantineError):
            manager.list_entries(status=["lost"])

    @pytest.mark.asyncio
    async def test_recovery_candidates_skip_closed_and_low_priority(self, manager):
        await manager.quarantine(make_record(1), QuarantineReason.MANUAL, ["a"])
        high = await manager.quarantine(make_record(2), QuarantineReason.VALIDATION_FAILED, ["b"])
        closed = await manager.quarantine(make_record(3), QuarantineReason.DATA_INTEGRITY, ["c"])
        await manager.review(closed.quarantine_id, ACTOR, QuarantineStatus.REJECTED)

        assert manager.recovery_candidates(priority_only=True) == [high]
        assert len(manager.recovery_candidates()) == 2

    @pytest.mark.asyncio
    async def test_stats(self, manager):
        entry = await manager.quarantine(make_record(1), QuarantineReason.API_ERROR, ["HTTP 422"])
        await manager.quarantine(make_record(2), QuarantineReason.API_ERROR, ["HTTP 422"])
        entry.quarantined_at = datetime.utcnow() - timedelta(hours=4)
        await manager.review(entry.quarantine_id, ACTOR, QuarantineStatus.RESOLVED)

        stats = manager.stats()

        assert stats.total == 2
        assert stats.by_status["resolved"] == 1
        assert stats.by_status["quarantined"] == 1
        assert stats.by_reason["api_error"] == 2
        assert stats.resolution_rate == 50.0
        assert 3.9 < stats.avg_resolution_hours < 4.1
        assert stats.oldest_unresolved_at is not None

    @pytest.mark.asyncio
    async def test_stats_date_range(self, manager):
        entry = await manager.quarantine(make_record(1), QuarantineReason.API_ERROR, ["HTTP 422"])
        entry.quarantined_at = datetime(2023, 6, 1)

        stats = manager.stats(DateRange(datetime(2024, 1, 1), datetime(2024, 12, 31)))

        assert stats.total == 0
        assert stats.to_dict()["resolution_rate"] == 0.0

    @pytest.mark.asyncio
    async def test_analytics_surfaces_repeat_offenders(self, manager):
        for _ in range(3):
            await manager.quarantine(make_record(1), QuarantineReason.API_ERROR, ["HTTP 422"])
        await manager.quarantine(make_record(2), QuarantineReason.API_ERROR, ["HTTP 422", "HTTP 409"])

        analytics = manager.analytics(top=1)

        assert analytics["top_error_messages"] == [{"message": "HTTP 422", "count": 2}]
        assert analytics["problematic_records"] == [{"record_id": "rec-001", "occurrences": 3}]
        assert analytics["summary"]["total"] == 2


class TestClassification:
    """Reason and priority derivation."""

    def test_reason_follows_most_severe_category(self):
        engine = ValidationEngine()
        issues = engine.validate_record(make_record(1, user=None, entries=["garbage"]))

        assert reason_for_issues(issues) == QuarantineReason.DATA_INTEGRITY
        assert reason_for_issues([]) == QuarantineReason.VALIDATION_FAILED

    @pytest.mark.parametrize("reason, priority", [
        (QuarantineReason.DATA_INTEGRITY, QuarantinePriority.CRITICAL),
        (QuarantineReason.BUSINESS_RULE_VIOLATION, QuarantinePriority.HIGH),
        (QuarantineReason.API_ERROR, QuarantinePriority.MEDIUM),
        (QuarantineReason.RETRIES_EXHAUSTED, QuarantinePriority.LOW)
    ])
    def test_priority_for_reason(self, reason, priority):
        assert priority_for_reason(reason) == priority
