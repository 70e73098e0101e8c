import json
import logging
import sys
import uuid

import click

from asyncreports.content_client import CompendiumClient
from asyncreports.download_links import DownloadLinkIssuer
from asyncreports.errors import NotFoundError, ReportError
from asyncreports.queue_handler import build_job_queue
from asyncreports.report_builder import ReportBuilder
from asyncreports.report_service import ReportService
from asyncreports.report_store import ReportStore
from asyncreports.settings import get_settings
from asyncreports.storage_client import StorageClient
from asyncreports.worker import ReportWorker


def _configure_logging(level=None):
    logging.basicConfig(
        level=level if level is not None else getattr(logging, get_settings().log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )


def build_worker() -> ReportWorker:
    settings = get_settings()
    report_store = ReportStore(settings.database_dsn)
    storage_client = StorageClient(settings)
    builder = ReportBuilder(settings, report_store, CompendiumClient(settings), storage_client)
    return ReportWorker(
        settings,
        build_job_queue(settings),
        builder,
        report_store=report_store,
        storage_client=storage_client,
    )


def build_report_service() -> ReportService:
    settings = get_settings()
    report_store = ReportStore(settings.database_dsn)
    issuer = DownloadLinkIssuer(settings, report_store, StorageClient(settings))
    return ReportService(settings, report_store, build_job_queue(settings), issuer)


@click.group()
def cli():
    """Asynchronous report generation: worker and report commands."""
    pass


@cli.command()
def worker():
    """Start the report worker to build reports from the job queue."""
    try:
        _configure_logging()
        settings = get_settings()

        click.echo("Starting report worker...")
        click.echo(f"Queue backend: {settings.queue_backend}")
        click.echo(f"Queue: {settings.queue_name}")
        click.echo(f"Concurrency: {settings.worker_concurrency}")

        worker_instance = build_worker()
        worker_instance.start(install_signal_handlers=True)
    except KeyboardInterrupt:
        click.echo("Worker stopped by user")
    except Exception as e:
        click.echo(f"Worker failed: {e}", err=True)
        sys.exit(1)


@cli.command()
def init_db():
    """Create the reports table if it does not exist."""
    _configure_logging()
    ReportStore(get_settings().database_dsn).create_schema()
    click.echo("reports table ready")


@cli.command()
@click.option('--user-id', required=True, type=click.UUID, help='Owner of the report')
@click.option('--report-type', required=True, help='Report type, e.g. monsters')
def enqueue_report(user_id, report_type):
    """Create a report and publish its build job."""
    _configure_logging()
    try:
        report = build_report_service().enqueue_report(user_id, report_type)
    except ReportError as e:
        click.echo(f"Enqueue failed: {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps(report.to_dict(), indent=2))


@cli.command()
@click.option('--user-id', required=True, type=click.UUID, help='Owner of the report')
@click.option('--report-id', required=True, type=click.UUID, help='Report identifier')
def get_report(user_id: uuid.UUID, report_id: uuid.UUID):
    """Show a report, issuing a download URL when it is completed."""
    _configure_logging()
    try:
        report = build_report_service().get_report(user_id, report_id)
    except NotFoundError as e:
        click.echo(str(e), err=True)
        sys.exit(2)
    except ReportError as e:
        click.echo(f"Failed to read report: {e}", err=True)
        sys.exit(1)
    click.echo(json.dumps(report.to_dict(), indent=2))


@cli.command()
@click.option('--format', type=click.Choice(['json', 'text']), default='text', help='Output format')
def health_check(format):
    """Perform health check and exit with appropriate status code."""
    # Configure logging to ERROR only for health checks
    _configure_logging(logging.ERROR)

    try:
        worker_instance = build_worker()
        health_status = worker_instance.check_health()
        overall_healthy = bool(health_status.get("healthy", False))

        if format == 'json':
            click.echo(json.dumps(health_status, indent=2))
        else:
            click.echo("Report Worker Health Check")
            click.echo("=" * 40)

            click.echo(f"Overall Status: {'✓ HEALTHY' if overall_healthy else '✗ UNHEALTHY'}")

            for check_name, check_data in health_status.get("checks", {}).items():
                status = "✓" if check_data.get("healthy", False) else "✗"
                error = check_data.get("error", "")
                click.echo(f"{check_name.upper()}: {status} {error}")

        sys.exit(0 if overall_healthy else 1)

    except Exception as e:
        if format == 'json':
            click.echo(json.dumps({
                "healthy": False,
                "error": str(e)
            }, indent=2))
        else:
            click.echo(f"Health check failed: {e}")

        sys.exit(1)


if __name__ == '__main__':
    cli()
