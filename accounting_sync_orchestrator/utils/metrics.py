"""
Prometheus metrics for Accounting Sync Orchestrator.

Metrics are registered once on import against the default registry; expose
them with ``prometheus_client.start_http_server`` or any ASGI/WSGI exporter.
"""

from prometheus_client import Counter, Gauge, Histogram

RECORDS_SUBMITTED = Counter(
    "aso_records_submitted_total",
    "Records sent through the retry manager, by final outcome",
    ["outcome", "dry_run"]
)

SUBMISSION_RETRIES = Counter(
    "aso_submission_retries_total",
    "Retries performed after transient submission errors"
)

BATCH_DURATION = Histogram(
    "aso_batch_duration_seconds",
    "Wall-clock time to settle one migration batch",
    buckets=(0.1, 0.5, 1, 2.5, 5, 10, 30, 60, 120, 300)
)

MIGRATIONS_FINISHED = Counter(
    "aso_migrations_finished_total",
    "Migrations that reached a terminal status",
    ["status"]
)

ACTIVE_MIGRATIONS = Gauge(
    "aso_active_migrations",
    "Migrations currently running"
)

QUEUE_JOBS = Gauge(
    "aso_queue_jobs",
    "Queue jobs by queue and state",
    ["queue", "state"]
)

QUARANTINED_RECORDS = Counter(
    "aso_quarantined_records_total",
    "Records placed in quarantine, by reason",
    ["reason"]
)
