"""
ValidationEngine service for Accounting Sync Orchestrator

Pre-flight validation of candidate records before they are sent to the
accounting system. Validation is read-only: it classifies records as
migratable, migratable with warnings, or blocked, and never mutates the
records or touches the external system.

Records are timesheet submissions shaped like::

    {
        "id": "sub_001",
        "status": "APPROVED",
        "approved_at": datetime(...),
        "user": {"id": "u1", "email": "ada@example.com"},
        "entries": [
            {
                "id": "te_1",
                "project": {"id": "p1", "client": {"id": "c1", "name": "Acme"}},
                "billable": True,
                "bill_rate": 120.0,
                "duration_minutes": 480,
                "description": "Design review"
            }
        ]
    }
"""

import re
from collections import defaultdict
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..models.validation import (
    IssueCategory,
    IssueSeverity,
    ValidationIssue,
    ValidationReport
)
from ..utils.logger import get_logger, set_log_context

ValidationRule = Callable[[Mapping[str, Any]], Iterable[ValidationIssue]]

DEFAULT_MAX_ISSUES = 100
MAX_ENTRY_MINUTES = 1440
MAX_DESCRIPTION_LENGTH = 500

RECORD_ID_PATTERN = re.compile(r"^[A-Za-z0-9_\-]+$")
EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


def record_id_of(record: Mapping[str, Any]) -> str:
    """Identifier used in issues and error entries for a source record."""
    record_id = record.get("id") if isinstance(record, Mapping) else None
    return str(record_id) if record_id is not None else "<unknown>"


def approved_at_of(record: Mapping[str, Any]) -> Optional[datetime]:
    """Approval timestamp of a record as a naive UTC datetime, if present."""
    value = record.get("approved_at") if isinstance(record, Mapping) else None
    if isinstance(value, str):
        return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
    return value


def _issue(record: Mapping[str, Any], field: str, message: str,
           severity: IssueSeverity, category: IssueCategory) -> ValidationIssue:
    return ValidationIssue(
        record_id=record_id_of(record),
        field=field,
        message=message,
        severity=severity,
        category=category
    )


# Built-in rules

def check_record_identifier(record: Mapping[str, Any]) -> List[ValidationIssue]:
    record_id = record.get("id")
    if record_id is None or not RECORD_ID_PATTERN.match(str(record_id)):
        return [_issue(record, "id", "Record identifier is missing or malformed",
                       IssueSeverity.ERROR, IssueCategory.MALFORMED_IDENTIFIER)]
    return []


def check_user_reference(record: Mapping[str, Any]) -> List[ValidationIssue]:
    user = record.get("user")
    if not isinstance(user, Mapping):
        return [_issue(record, "user", "Submission has no user",
                       IssueSeverity.ERROR, IssueCategory.MISSING_REFERENCE)]

    email = user.get("email")
    if not email:
        return [_issue(record, "user.email", "User email is missing",
                       IssueSeverity.ERROR, IssueCategory.MISSING_REFERENCE)]
    if not EMAIL_PATTERN.match(str(email)):
        return [_issue(record, "user.email", "User email is not a valid address",
                       IssueSeverity.ERROR, IssueCategory.MALFORMED_IDENTIFIER)]
    return []


def check_entries_present(record: Mapping[str, Any]) -> List[ValidationIssue]:
    if not record.get("entries"):
        return [_issue(record, "entries", "No time entries found",
                       IssueSeverity.ERROR, IssueCategory.MISSING_FIELD)]
    return []


def check_entries(record: Mapping[str, Any]) -> List[ValidationIssue]:
    issues = []
    entries = record.get("entries") or []
    if not isinstance(entries, (list, tuple)):
        return [_issue(record, "entries", "Time entries are not a list",
                       IssueSeverity.ERROR, IssueCategory.DATA_INTEGRITY)]

    for position, entry in enumerate(entries):
        field_prefix = f"entries[{position}]"
        if not isinstance(entry, Mapping):
            issues.append(_issue(
                record, field_prefix, f"Time entry at position {position} is not a mapping",
                IssueSeverity.ERROR, IssueCategory.DATA_INTEGRITY
            ))
            continue
        entry_id = entry.get("id", position)

        project = entry.get("project")
        if not isinstance(project, Mapping) or not project.get("client"):
            issues.append(_issue(
                record, f"{field_prefix}.project.client",
                f"Time entry {entry_id} missing client information",
                IssueSeverity.ERROR, IssueCategory.MISSING_REFERENCE
            ))

        if entry.get("billable") and not entry.get("bill_rate"):
            issues.append(_issue(
                record, f"{field_prefix}.bill_rate",
                f"Billable time entry {entry_id} missing bill rate",
                IssueSeverity.WARNING, IssueCategory.MISSING_RATE
            ))

        duration = entry.get("duration_minutes")
        if duration is not None:
            if isinstance(duration, bool) or not isinstance(duration, (int, float)):
                issues.append(_issue(
                    record, f"{field_prefix}.duration_minutes",
                    f"Time entry {entry_id} duration is not a number",
                    IssueSeverity.ERROR, IssueCategory.DATA_INTEGRITY
                ))
            elif duration > MAX_ENTRY_MINUTES:
                issues.append(_issue(
                    record, f"{field_prefix}.duration_minutes",
                    f"Time entry {entry_id} duration exceeds 24 hours",
                    IssueSeverity.ERROR, IssueCategory.BUSINESS_RULE
                ))
            elif duration <= 0:
                issues.append(_issue(
                    record, f"{field_prefix}.duration_minutes",
                    f"Time entry {entry_id} has no recorded duration",
                    IssueSeverity.WARNING, IssueCategory.BUSINESS_RULE
                ))

        description = entry.get("description")
        if isinstance(description, str) and len(description) > MAX_DESCRIPTION_LENGTH:
            issues.append(_issue(
                record, f"{field_prefix}.description",
                f"Time entry {entry_id} description exceeds {MAX_DESCRIPTION_LENGTH} characters",
                IssueSeverity.ERROR, IssueCategory.FIELD_TOO_LONG
            ))

    return issues


DEFAULT_RULES: List[ValidationRule] = [
    check_record_identifier,
    check_user_reference,
    check_entries_present,
    check_entries
]


class ValidationEngine:
    """
    Classifies candidate records before migration.

    Provides capabilities for:
    - Per-record validation against an ordered list of rules
    - Aggregate reports with per-category counts
    - Bounded issue lists for pathological inputs
    - Readiness scoring used to gate migration starts
    """

    def __init__(self, rules: Optional[List[ValidationRule]] = None, max_issues: int = DEFAULT_MAX_ISSUES):
        """
        Initialize ValidationEngine.

        Args:
            rules: Ordered validation rules; defaults to the built-in rules
            max_issues: Maximum number of issues kept in a report
        """
        self.rules: List[ValidationRule] = list(rules) if rules is not None else list(DEFAULT_RULES)
        self.max_issues = max_issues

        self.logger = get_logger(__name__)
        set_log_context(self.logger, component="validation_engine")

    def add_rule(self, rule: ValidationRule):
        """Append a custom rule; it runs after the existing ones."""
        self.rules.append(rule)

    def validate_record(self, record: Mapping[str, Any]) -> List[ValidationIssue]:
        """Return every issue found on one record."""
        if not isinstance(record, Mapping):
            return [ValidationIssue(
                record_id="<unknown>",
                field="record",
                message="Record is not a mapping",
                severity=IssueSeverity.ERROR,
                category=IssueCategory.DATA_INTEGRITY
            )]

        issues: List[ValidationIssue] = []
        for rule in self.rules:
            try:
                issues.extend(rule(record))
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                rule_name = getattr(rule, "__name__", repr(rule))
                self.logger.warning(f"Validation rule {rule_name} failed on malformed record: {e}",
                                    extra={"record_id": record_id_of(record)})
                issues.append(_issue(record, "record", f"Record could not be checked by {rule_name}: {e}",
                                     IssueSeverity.ERROR, IssueCategory.DATA_INTEGRITY))
        return issues

    def has_blocking_issues(self, record: Mapping[str, Any]) -> bool:
        return any(issue.is_blocking for issue in self.validate_record(record))

    def validate(self, records: Iterable[Mapping[str, Any]]) -> ValidationReport:
        """
        Validate a candidate record set.

        Args:
            records: Records to check, in migration order

        Returns:
            ValidationReport with counts, capped issue list and readiness score
        """
        report = ValidationReport()
        category_counts: Dict[str, Dict[str, int]] = defaultdict(lambda: {"records": 0, "issues": 0})

        for record in records:
            report.total_records += 1
            issues = self.validate_record(record)

            if any(issue.is_blocking for issue in issues):
                report.invalid_records += 1
                report.blocking_record_ids.add(record_id_of(record))
            elif issues:
                report.warning_records += 1
                report.valid_records += 1
            else:
                report.valid_records += 1

            for category in {issue.category.value for issue in issues}:
                category_counts[category]["records"] += 1
            for issue in issues:
                category_counts[issue.category.value]["issues"] += 1
                if len(report.issues) < self.max_issues:
                    report.issues.append(issue)
                else:
                    report.omitted_issue_count += 1

        report.category_counts = dict(category_counts)

        self.logger.info("Validation pass finished", extra={
            "total_records": report.total_records,
            "valid_records": report.valid_records,
            "invalid_records": report.invalid_records,
            "readiness_score": round(report.readiness_score, 2)
        })

        return report
