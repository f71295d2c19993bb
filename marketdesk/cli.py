"""CLI tools for running workers and operating the sync pipeline."""

import asyncio
import logging

import click

from marketdesk.core.config import settings
from marketdesk.core.monitoring import init_sentry
from marketdesk.db.enums import JobType
from marketdesk.db.session import SessionLocal
from marketdesk.services import global_sync_service, job_service, outbound_service
from marketdesk.services.marketplace_api import MarketplaceClientFactory


@click.group()
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def cli(verbose: bool):
    """Marketdesk CLI tools."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


@cli.command()
@click.option("--once", is_flag=True, help="Drain due jobs, then exit")
def worker(once: bool):
    """Run the background job worker."""
    from marketdesk.worker import worker_loop

    init_sentry("marketdesk-worker")
    handled = asyncio.run(worker_loop(run_once=once))
    if once:
        click.echo(f"✓ Handled {handled} job(s)")


@cli.command("outbound-worker")
@click.option("--once", is_flag=True, help="Drain due deliveries, then exit")
def outbound_worker(once: bool):
    """Run the outbound delivery worker."""
    from marketdesk.outbound_worker import outbound_loop

    init_sentry("marketdesk-outbound-worker")
    counts = asyncio.run(outbound_loop(run_once=once))
    if once:
        click.echo(f"✓ Deliveries: {counts}")


@cli.command("global-sync")
def global_sync():
    """Delta sync the stalest batch of connected tenants."""
    db = SessionLocal()
    try:
        result = asyncio.run(
            global_sync_service.run_global_sync(db, client_factory=MarketplaceClientFactory())
        )
    finally:
        db.close()

    click.echo(
        f"✓ Processed {result['tenants_processed']} tenant(s), "
        f"skipped {result['tenants_skipped']} in {result['total_duration_ms']}ms"
    )
    for row in result["results"]:
        click.echo(f"  {row['tenant_id']}: {row['status']} {row['error'] or row['detail'] or ''}")
    if not result["success"]:
        raise SystemExit(1)


@cli.command("enqueue-recurring")
def enqueue_recurring():
    """Enqueue poll jobs for connected tenants that are due one."""
    db = SessionLocal()
    try:
        result = job_service.enqueue_recurring_jobs(db)
    finally:
        db.close()
    click.echo(f"✓ Enqueued {result['enqueued']} poll job(s), skipped {result['skipped']}")


@cli.command()
@click.option("--tenant-id", required=True, help="Tenant to backfill")
@click.option(
    "--days",
    default=settings.BACKFILL_DEFAULT_DAYS,
    show_default=True,
    type=click.IntRange(1, settings.BACKFILL_MAX_DAYS),
    help="How many days of order history to import",
)
def backfill(tenant_id: str, days: int):
    """
    Enqueue a historical backfill for one tenant.

    The worker runs it under the tenant's sync lock.

    Example:
        marketdesk backfill --tenant-id acme --days 90
    """
    db = SessionLocal()
    try:
        job = job_service.enqueue_job(
            db, JobType.MARKETPLACE_BACKFILL, tenant_id, {"days": days}
        )
        click.echo(f"✓ Enqueued backfill job {job.id} ({days} days)")
    except Exception as e:
        db.rollback()
        click.echo(f"❌ Error: {e}")
        raise SystemExit(1)
    finally:
        db.close()


@cli.command("reclaim-stale")
def reclaim_stale():
    """Return jobs and deliveries with expired leases to the queue."""
    db = SessionLocal()
    try:
        jobs = job_service.reclaim_stale_jobs(db)
        deliveries = outbound_service.reclaim_stale_deliveries(db)
    finally:
        db.close()
    click.echo(f"✓ Reclaimed {jobs} job(s) and {deliveries} delivery(ies)")


if __name__ == "__main__":
    cli()
