"""
Background worker for processing queued jobs.

Usage:
    python -m marketdesk.worker          # run forever
    python -m marketdesk.worker --once   # drain due jobs, then exit

Run as many worker processes as needed; they coordinate only through the
jobs table (SKIP LOCKED claims) and Redis (tenant sync locks).
"""

import asyncio
import contextlib
import logging
import sys

from marketdesk.core.config import settings
from marketdesk.core.monitoring import init_sentry, report_exception
from marketdesk.core.redis_client import require_sync_redis_client
from marketdesk.core.structured_logging import build_log_context
from marketdesk.db.session import SessionLocal
from marketdesk.jobs.payloads import parse_job_payload
from marketdesk.jobs.registry import lock_key_for, resolve_job_handler
from marketdesk.services import job_service, lock_service
from marketdesk.services.marketplace_api import MarketplaceClientFactory

logger = logging.getLogger(__name__)

LOCK_UNAVAILABLE = "Lock unavailable - sync already in progress"


async def _renew_lease_forever(job_id, worker_id: str, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            with SessionLocal() as hb_db:
                if not job_service.renew_job_lease(hb_db, job_id, worker_id):
                    logger.warning("Job %s lease no longer held by %s", job_id, worker_id)
                    return
        except Exception as e:
            logger.warning("Lease heartbeat for job %s failed: %s", job_id, type(e).__name__)


async def process_job(db, job, client_factory: MarketplaceClientFactory) -> None:
    """Dispatch a job to the handler registered for its type."""
    logger.info(
        "Processing job %s (type=%s, attempt=%s)",
        job.id,
        job.job_type,
        job.attempts + 1,
    )
    handler = resolve_job_handler(job.job_type)
    payload = parse_job_payload(job.job_type, job.payload)
    await handler(db, job, payload, client_factory)


async def run_claimed_job(
    db,
    job,
    worker_id: str,
    redis_client=None,
    client_factory: MarketplaceClientFactory | None = None,
) -> str:
    """
    Run one claimed job and record the outcome.

    Returns "done", "failed" or "deferred". The auxiliary lock, when the
    job type needs one, is released in ``finally`` whatever happens.
    """
    job_id = job.id
    context = build_log_context(
        tenant_id=job.tenant_id, job_id=job_id, job_type=job.job_type, worker_id=worker_id
    )
    lock_key = None
    acquired = False
    heartbeat = None
    try:
        lock_key = lock_key_for(job)
        if lock_key is not None:
            redis_client = redis_client or require_sync_redis_client()
            acquired = lock_service.acquire_lock(
                lock_key, settings.SYNC_LOCK_TTL_SECONDS, holder=worker_id, client=redis_client
            )
            if not acquired:
                job_service.defer_job(
                    db, job_id, settings.JOB_LOCK_RETRY_SECONDS, LOCK_UNAVAILABLE, worker_id=worker_id
                )
                logger.info("Job %s deferred: %s", job_id, LOCK_UNAVAILABLE, extra=context)
                return "deferred"

        heartbeat = asyncio.create_task(
            _renew_lease_forever(job_id, worker_id, settings.JOB_LEASE_SECONDS / 3)
        )
        await process_job(db, job, client_factory or MarketplaceClientFactory())
        job_service.mark_job_done(db, job_id, worker_id=worker_id)
        logger.info("Job %s completed successfully", job_id, extra=context)
        return "done"
    except Exception as e:
        db.rollback()
        job_service.mark_job_failed(db, job_id, str(e) or type(e).__name__, worker_id=worker_id)
        logger.error("Job %s failed: %s", job_id, type(e).__name__, extra=context)
        report_exception(e)
        return "failed"
    finally:
        if heartbeat is not None:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
        if acquired:
            lock_service.release_lock(lock_key, client=redis_client)


async def worker_loop(
    run_once: bool = False,
    worker_id: str | None = None,
    poll_interval: float | None = None,
    redis_client=None,
    client_factory: MarketplaceClientFactory | None = None,
) -> int:
    """
    Claim and run jobs until stopped.

    In run-once mode the loop exits as soon as no job is due and returns the
    number of jobs handled. Errors never stop the loop; after one it waits
    twice the poll interval.

    One client factory, and so one access-token cache, serves every job the
    loop runs.
    """
    worker_id = worker_id or settings.worker_id
    interval = poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_SECONDS
    client_factory = client_factory or MarketplaceClientFactory()
    handled = 0
    logger.info("Worker %s starting (poll interval: %ss, once=%s)", worker_id, interval, run_once)

    while True:
        try:
            with SessionLocal() as db:
                job = job_service.claim_next_job(db, worker_id)
                if job is not None:
                    await run_claimed_job(
                        db, job, worker_id, redis_client=redis_client, client_factory=client_factory
                    )
                    handled += 1
                    continue
                reclaimed = job_service.reclaim_stale_jobs(db)
                if reclaimed:
                    logger.warning("Reclaimed %s stale jobs", reclaimed)
                    continue
        except Exception as e:
            logger.error("Error in worker loop: %s", type(e).__name__)
            report_exception(e)
            if run_once:
                return handled
            await asyncio.sleep(interval * 2)
            continue

        if run_once:
            return handled
        await asyncio.sleep(interval)


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    init_sentry("marketdesk-worker")
    argv = sys.argv[1:] if argv is None else argv
    try:
        asyncio.run(worker_loop(run_once="--once" in argv))
    except KeyboardInterrupt:
        logger.info("Worker stopped")


if __name__ == "__main__":
    main()
