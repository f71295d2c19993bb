"""Outbound delivery job handler."""

import logging

from marketdesk.core.config import settings
from marketdesk.jobs.payloads import OutboundSendPayload
from marketdesk.services import outbound_service
from marketdesk.services.marketplace_api import MarketplaceClientFactory

logger = logging.getLogger(__name__)


async def process_outbound_send(
    db, job, payload: OutboundSendPayload, client_factory: MarketplaceClientFactory
) -> None:
    """Send a delivery right away instead of waiting for the outbound poller.

    A delivery already claimed or finished elsewhere is a no-op.
    """
    delivery = await outbound_service.send_delivery_now(
        db,
        payload.delivery_id,
        job.locked_by or settings.worker_id,
        client_factory=client_factory,
    )
    if delivery is None:
        logger.info("Delivery %s not claimable; skipping", payload.delivery_id)
