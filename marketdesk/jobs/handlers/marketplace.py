"""Marketplace sync job handlers.

The worker holds the tenant sync lock around these handlers (see
``TENANT_LOCKED_JOB_TYPES`` in the registry) and passes in its client
factory, which owns the access-token cache for the worker's lifetime.
Sync functions report expected failures in their result; the job itself
only fails on unexpected errors.
"""

import logging

from marketdesk.core.structured_logging import build_log_context
from marketdesk.jobs.payloads import (
    MarketplaceBackfillPayload,
    MarketplaceMissingItemsPayload,
    MarketplacePollPayload,
)
from marketdesk.services import marketplace_sync_service
from marketdesk.services.marketplace_api import MarketplaceClientFactory

logger = logging.getLogger(__name__)


def _log_result(job, label: str, result: dict) -> None:
    context = build_log_context(tenant_id=job.tenant_id, job_id=job.id, job_type=job.job_type)
    if result.get("success"):
        logger.info(
            "%s finished: %s orders, %s errors",
            label,
            result.get("orders_processed", result.get("orders_fixed", 0)),
            len(result.get("errors") or []),
            extra=context,
        )
    else:
        logger.warning("%s did not complete: %s", label, result.get("error"), extra=context)


async def process_marketplace_poll(
    db, job, payload: MarketplacePollPayload, client_factory: MarketplaceClientFactory
) -> None:
    result = await marketplace_sync_service.run_delta_sync(
        db, job.tenant_id, client_factory=client_factory
    )
    _log_result(job, "Delta sync", result)


async def process_marketplace_backfill(
    db, job, payload: MarketplaceBackfillPayload, client_factory: MarketplaceClientFactory
) -> None:
    result = await marketplace_sync_service.run_backfill(
        db, job.tenant_id, days=payload.days, client_factory=client_factory
    )
    _log_result(job, "Backfill", result)


async def process_marketplace_missing_items(
    db, job, payload: MarketplaceMissingItemsPayload, client_factory: MarketplaceClientFactory
) -> None:
    result = await marketplace_sync_service.sync_missing_items(
        db, job.tenant_id, limit=payload.limit, client_factory=client_factory
    )
    _log_result(job, "Missing items sweep", result)
