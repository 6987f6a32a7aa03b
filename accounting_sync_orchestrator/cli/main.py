"""
Main CLI entry point for Accounting Sync Orchestrator

Provides command-line interface for analysing, validating and running
migrations from an exported records file, and for database setup.
"""

import asyncio
import json
import sys
from datetime import datetime
from typing import Optional

import click

from ..connectors.accounting_api import HttpAccountingClient
from ..connectors.audit import DatabaseAuditSink
from ..connectors.memory import FileRecordSource, LoggingAuditSink
from ..core.coordinator import MigrationCoordinator
from ..core.exceptions import SyncOrchestratorError
from ..models.migration import DateRange, ProgressSnapshot
from ..models.validation import ValidationReport
from ..utils.config import OrchestratorSettings
from ..utils.database import DatabaseManager, InMemoryMigrationStore
from ..utils.logger import LoggerContext, setup_logger


@click.group()
@click.option('--config', '-c', type=click.Path(exists=True), help='Configuration file path')
@click.option('--database-url', '-d', help='Database connection URL')
@click.option('--log-level', '-l', default=None, help='Log level')
@click.option('--verbose', '-v', is_flag=True, help='Verbose output')
@click.pass_context
def cli(ctx, config, database_url, log_level, verbose):
    """Accounting Sync Orchestrator CLI"""

    # Ensure context object exists
    ctx.ensure_object(dict)

    try:
        settings = OrchestratorSettings.load(config)
    except SyncOrchestratorError as e:
        raise click.ClickException(e.message)

    if database_url:
        settings.database_url = database_url

    # Set up logging
    logger = setup_logger(
        "accounting_sync_orchestrator",
        level=log_level or settings.log_level,
        structured=settings.structured_logs and not verbose
    )
    ctx.obj['logger'] = logger
    ctx.obj['settings'] = settings
    ctx.obj['verbose'] = verbose


@cli.group()
@click.pass_context
def db(ctx):
    """Database management commands"""
    pass


def _date_range(start: Optional[datetime], end: Optional[datetime]) -> Optional[DateRange]:
    if start is None and end is None:
        return None
    if start is None or end is None:
        raise click.BadParameter("--start and --end must be given together")
    try:
        return DateRange(start=start, end=end)
    except SyncOrchestratorError as e:
        raise click.BadParameter(e.message)


def _build_coordinator(settings: OrchestratorSettings, source: FileRecordSource) -> MigrationCoordinator:
    api = settings.accounting_api
    client = HttpAccountingClient(
        api.base_url,
        api_token=api.api_token,
        timeout_seconds=api.timeout_seconds,
        rate_limit=api.rate_limit,
        rate_period_seconds=api.rate_period_seconds
    )
    if settings.database_url:
        store = DatabaseManager(settings.database_url)
        audit_sink = DatabaseAuditSink(store)
    else:
        store = InMemoryMigrationStore()
        audit_sink = LoggingAuditSink()

    return MigrationCoordinator(
        source,
        client,
        audit_sink,
        store=store,
        retry_policy=settings.retry.to_policy()
    )


date_options = [
    click.option('--start', type=click.DateTime(), help='Approval date range start'),
    click.option('--end', type=click.DateTime(), help='Approval date range end')
]


def with_date_options(func):
    for option in reversed(date_options):
        func = option(func)
    return func


@cli.command('analyze')
@click.argument('records_file', type=click.Path(exists=True))
@with_date_options
@click.option('--json-output', is_flag=True, help='Print the summary as JSON')
@click.pass_context
def analyze(ctx, records_file, start, end, json_output):
    """Summarise what a migration would have to move"""

    async def _analyze():
        source = await FileRecordSource.from_file(records_file)
        coordinator = _build_coordinator(ctx.obj['settings'], source)
        try:
            summary = await coordinator.analyze_migration(_date_range(start, end))
        finally:
            await coordinator.accounting_client.close()

        if json_output:
            click.echo(json.dumps(summary.to_dict(), indent=2))
            return

        click.echo(f"Approved records:   {summary.total_approved_records}")
        click.echo(f"Already synced:     {summary.already_synced_records}")
        click.echo(f"Pending migration:  {summary.pending_migration_records}")
        if summary.oldest_pending_at:
            click.echo(f"Oldest pending:     {summary.oldest_pending_at.isoformat()}")
            click.echo(f"Newest pending:     {summary.newest_pending_at.isoformat()}")
        click.echo(f"Estimated duration: {summary.estimated_duration}")

    asyncio.run(_analyze())


@cli.command('validate')
@click.argument('records_file', type=click.Path(exists=True))
@with_date_options
@click.option('--include-rejected', is_flag=True, help='Include previously rejected submissions')
@click.option('--json-output', is_flag=True, help='Print the report as JSON')
@click.pass_context
def validate(ctx, records_file, start, end, include_rejected, json_output):
    """Validate pending records without migrating them"""

    async def _validate() -> ValidationReport:
        source = await FileRecordSource.from_file(records_file)
        coordinator = _build_coordinator(ctx.obj['settings'], source)
        try:
            return await coordinator.validate_pending(_date_range(start, end), include_rejected)
        finally:
            await coordinator.accounting_client.close()

    report = asyncio.run(_validate())
    if json_output:
        click.echo(json.dumps(report.to_dict(), indent=2))
    else:
        _display_validation_report(report, ctx.obj['verbose'])

    if report.has_blocking_errors:
        sys.exit(1)


@cli.command('migrate')
@click.argument('records_file', type=click.Path(exists=True))
@with_date_options
@click.option('--batch-size', type=int, help='Records per batch (1-100)')
@click.option('--delay-ms', type=int, help='Delay between batches in milliseconds')
@click.option('--max-retries', type=int, help='Retries for transient errors')
@click.option('--concurrency', type=int, help='In-flight submissions per batch (1-5)')
@click.option('--live', is_flag=True, help='Submit to the accounting system (default is a dry run)')
@click.option('--include-rejected', is_flag=True, help='Include previously rejected submissions')
@click.option('--skip-invalid', is_flag=True, help='Exclude records with blocking validation errors')
@click.option('--force', is_flag=True, help='Start despite blocking validation errors')
@click.option('--actor', default='cli', help='Operator identity recorded in the audit log')
@click.option('--poll-interval', type=float, default=1.0, help='Seconds between progress updates')
@click.pass_context
def migrate(ctx, records_file, start, end, batch_size, delay_ms, max_retries, concurrency,
            live, include_rejected, skip_invalid, force, actor, poll_interval):
    """Run a migration and follow its progress until it finishes

    Live runs append synced record ids to RECORDS_FILE.synced; later runs
    over the same file skip them.
    """
    settings: OrchestratorSettings = ctx.obj['settings']
    logger = ctx.obj['logger']

    async def _migrate() -> ProgressSnapshot:
        source = await FileRecordSource.from_file(records_file)
        coordinator = _build_coordinator(settings, source)
        await coordinator.start()
        try:
            config = settings.migration_config(
                batch_size=batch_size,
                delay_between_batches_ms=delay_ms,
                max_retries=max_retries,
                concurrency=concurrency,
                dry_run=not live,
                include_rejected=include_rejected or None,
                skip_invalid=skip_invalid or None,
                date_range=_date_range(start, end)
            )
            job_id = await coordinator.start_migration(config, actor, force=force)
            click.echo(f"Migration started: {job_id}{' (dry run)' if config.dry_run else ''}")

            with LoggerContext(logger, job_id=job_id):
                while True:
                    snapshot = coordinator.get_progress(job_id)
                    click.echo(
                        f"  batch {snapshot.current_batch}/{snapshot.total_batches} "
                        f"processed {snapshot.processed_records}/{snapshot.total_records} "
                        f"({snapshot.progress_percent:.1f}%) failed {snapshot.failed_records}"
                    )
                    if snapshot.is_terminal:
                        return snapshot
                    await asyncio.sleep(poll_interval)
        finally:
            await coordinator.stop()
            await coordinator.accounting_client.close()

    try:
        snapshot = asyncio.run(_migrate())
    except SyncOrchestratorError as e:
        click.echo(f"Error: {e.message}", err=True)
        if ctx.obj['verbose'] and e.details:
            click.echo(json.dumps(e.details, indent=2, default=str), err=True)
        sys.exit(1)

    _display_migration_result(snapshot, ctx.obj['verbose'])
    if snapshot.status.value != "completed":
        sys.exit(1)


@db.command('init')
@click.pass_context
def db_init(ctx):
    """Create the database schema"""
    settings: OrchestratorSettings = ctx.obj['settings']
    if not settings.database_url:
        raise click.ClickException("No database URL configured (use --database-url or ASO_DATABASE_URL)")

    async def _init():
        manager = DatabaseManager(settings.database_url)
        await manager.initialize()
        try:
            await manager.create_schema()
        finally:
            await manager.close()

    try:
        asyncio.run(_init())
    except SyncOrchestratorError as e:
        click.echo(f"Error initialising database: {e.message}", err=True)
        sys.exit(1)
    click.echo("Database schema created")


# Helper functions for display
def _display_validation_report(report: ValidationReport, verbose: bool):
    """Display validation report"""
    click.echo(f"Records checked:  {report.total_records}")
    click.echo(f"Valid:            {report.valid_records} ({report.warning_records} with warnings)")
    click.echo(f"Blocked:          {report.invalid_records}")
    click.echo(f"Readiness:        {report.readiness_score:.1f}%")

    if report.category_counts:
        click.echo()
        click.echo(f"{'Category':<24} {'Records':<8} {'Issues':<8}")
        click.echo("-" * 40)
        for category, counts in sorted(report.category_counts.items()):
            click.echo(f"{category:<24} {counts['records']:<8} {counts['issues']:<8}")

    if verbose and report.issues:
        click.echo()
        for issue in report.issues:
            click.echo(f"  [{issue.severity.value}] {issue.record_id} {issue.field}: {issue.message}")
        if report.issue_summary:
            click.echo(f"  {report.issue_summary}")


def _display_migration_result(snapshot: ProgressSnapshot, verbose: bool):
    """Display final migration state"""
    click.echo()
    click.echo(f"Migration {snapshot.job_id}: {snapshot.status.value.upper()}")
    click.echo(f"  Succeeded: {snapshot.successful_records}")
    click.echo(f"  Failed:    {snapshot.failed_records}")
    click.echo(f"  Skipped:   {snapshot.skipped_records}")

    errors = snapshot.errors if verbose else snapshot.unresolved_errors
    if errors:
        click.echo()
        click.echo(f"{'Record':<20} {'Class':<10} {'Retries':<8} Message")
        click.echo("-" * 72)
        for entry in errors:
            click.echo(f"{entry.record_id:<20} {entry.classification.value:<10} "
                       f"{entry.retry_count:<8} {entry.message}")


def main():
    """Main CLI entry point"""
    cli()


if __name__ == '__main__':
    main()
