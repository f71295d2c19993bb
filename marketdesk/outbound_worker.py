"""
Outbound delivery worker.

Usage:
    python -m marketdesk.outbound_worker          # run forever
    python -m marketdesk.outbound_worker --once   # drain due deliveries, then exit

Polls the outbound_deliveries table more often than the generic job worker
and sends each claimed delivery through its provider route.
"""

import asyncio
import logging
import random
import sys

from marketdesk.core.config import settings
from marketdesk.core.monitoring import init_sentry, report_exception
from marketdesk.core.structured_logging import build_log_context
from marketdesk.db.enums import DeliveryStatus
from marketdesk.db.session import SessionLocal
from marketdesk.services import outbound_service
from marketdesk.services.marketplace_api import MarketplaceClientFactory

logger = logging.getLogger(__name__)

IDLE_JITTER_SECONDS = 1.0


async def outbound_loop(
    run_once: bool = False,
    worker_id: str | None = None,
    poll_interval: float | None = None,
    client_factory: MarketplaceClientFactory | None = None,
    redis_client=None,
) -> dict:
    """
    Claim and send deliveries until stopped.

    Returns counts by final status when running once.
    """
    worker_id = worker_id or settings.worker_id
    interval = (
        poll_interval if poll_interval is not None else settings.OUTBOUND_POLL_INTERVAL_SECONDS
    )
    client_factory = client_factory or MarketplaceClientFactory()
    counts = {status.value: 0 for status in DeliveryStatus}
    logger.info("Outbound worker %s starting (poll interval: %ss)", worker_id, interval)

    while True:
        try:
            with SessionLocal() as db:
                delivery = outbound_service.claim_next_delivery(db, worker_id)
                if delivery is not None:
                    delivery = await outbound_service.process_delivery(
                        db, delivery, client_factory=client_factory, redis_client=redis_client
                    )
                    counts[delivery.status] += 1
                    logger.info(
                        "Delivery %s -> %s",
                        delivery.id,
                        delivery.status,
                        extra=build_log_context(
                            tenant_id=delivery.tenant_id,
                            delivery_id=delivery.id,
                            worker_id=worker_id,
                        ),
                    )
                    continue
                outbound_service.reclaim_stale_deliveries(db)
        except Exception as e:
            logger.error("Error in outbound loop: %s", type(e).__name__)
            report_exception(e)
            if run_once:
                return counts
            await asyncio.sleep(interval * 2)
            continue

        if run_once:
            return counts
        await asyncio.sleep(interval + random.uniform(0, IDLE_JITTER_SECONDS))


def main(argv: list[str] | None = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    init_sentry("marketdesk-outbound-worker")
    argv = sys.argv[1:] if argv is None else argv
    try:
        asyncio.run(outbound_loop(run_once="--once" in argv))
    except KeyboardInterrupt:
        logger.info("Outbound worker stopped")


if __name__ == "__main__":
    main()
