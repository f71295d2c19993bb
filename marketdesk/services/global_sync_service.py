"""Global marketplace sync across tenants.

One pass picks the most neglected connected tenants (never synced first,
then oldest last success), try-locks each tenant, runs delta sync and
releases the lock. A tenant whose lock is held is skipped, not waited on.
"""

import asyncio
import logging
import time

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from marketdesk.core.config import settings
from marketdesk.db.enums import ConnectionStatus, SyncOutcome, SyncSystem
from marketdesk.db.models import MarketplaceConnection, SyncState
from marketdesk.services import lock_service, marketplace_sync_service
from marketdesk.services.marketplace_api import MarketplaceClientFactory
from marketdesk.utils.dates import ensure_aware

logger = logging.getLogger(__name__)

LOCK_UNAVAILABLE = "Lock unavailable - sync already in progress"


async def _pause(seconds: float) -> None:
    if seconds > 0:
        await asyncio.sleep(seconds)


def _staleness_query():
    return (
        select(MarketplaceConnection.tenant_id, SyncState)
        .outerjoin(
            SyncState,
            and_(
                SyncState.tenant_id == MarketplaceConnection.tenant_id,
                SyncState.system == SyncSystem.MARKETPLACE_ORDERS.value,
            ),
        )
        .where(MarketplaceConnection.status == ConnectionStatus.CONNECTED.value)
        .order_by(
            SyncState.last_success_at.asc().nulls_first(),
            MarketplaceConnection.created_at.asc(),
        )
    )


def select_stale_tenants(db: Session, limit: int | None = None) -> list[str]:
    """Connected tenants, never-synced first, then by oldest last success."""
    batch_size = limit if limit is not None else settings.GLOBAL_SYNC_BATCH_SIZE
    rows = db.execute(_staleness_query().limit(batch_size)).all()
    return [tenant_id for tenant_id, _state in rows]


async def run_global_sync(
    db: Session,
    client_factory: MarketplaceClientFactory | None = None,
    redis_client=None,
    batch_size: int | None = None,
    tenant_delay_seconds: float | None = None,
) -> dict:
    """
    Run delta sync for a bounded batch of the stalest tenants.

    Returns:
        {"success", "tenants_processed", "tenants_skipped",
         "results": [{"tenant_id", "status", "orders_processed", "error", "detail"}],
         "total_duration_ms"}
    """
    started = time.monotonic()
    client_factory = client_factory or MarketplaceClientFactory()
    delay = (
        tenant_delay_seconds
        if tenant_delay_seconds is not None
        else settings.GLOBAL_SYNC_TENANT_DELAY_SECONDS
    )
    tenant_ids = select_stale_tenants(db, batch_size)
    results: list[dict] = []
    processed = 0
    skipped = 0

    for index, tenant_id in enumerate(tenant_ids):
        if index > 0:
            await _pause(delay)

        lock_key = lock_service.tenant_sync_lock(tenant_id)
        if not lock_service.acquire_lock(
            lock_key, settings.SYNC_LOCK_TTL_SECONDS, holder="global_sync", client=redis_client
        ):
            skipped += 1
            logger.info("Skipping tenant %s: %s", tenant_id, LOCK_UNAVAILABLE)
            results.append(
                {
                    "tenant_id": tenant_id,
                    "status": SyncOutcome.SKIPPED.value,
                    "orders_processed": 0,
                    "error": None,
                    "detail": LOCK_UNAVAILABLE,
                }
            )
            continue

        try:
            sync_result = await marketplace_sync_service.run_delta_sync(
                db, tenant_id, client_factory=client_factory, redis_client=redis_client
            )
            status = SyncOutcome.SUCCESS if sync_result["success"] else SyncOutcome.FAILED
            results.append(
                {
                    "tenant_id": tenant_id,
                    "status": status.value,
                    "orders_processed": sync_result["orders_processed"],
                    "error": sync_result["error"],
                    "detail": None,
                }
            )
        except Exception as e:
            db.rollback()
            logger.exception("Global sync failed for tenant %s", tenant_id)
            results.append(
                {
                    "tenant_id": tenant_id,
                    "status": SyncOutcome.FAILED.value,
                    "orders_processed": 0,
                    "error": str(e) or type(e).__name__,
                    "detail": None,
                }
            )
        finally:
            lock_service.release_lock(lock_key, client=redis_client)
        processed += 1

    duration_ms = int((time.monotonic() - started) * 1000)
    logger.info(
        "Global sync: %s processed, %s skipped in %sms", processed, skipped, duration_ms
    )
    return {
        "success": all(r["status"] != SyncOutcome.FAILED.value for r in results),
        "tenants_processed": processed,
        "tenants_skipped": skipped,
        "results": results,
        "total_duration_ms": duration_ms,
    }


def get_global_sync_status(db: Session) -> dict:
    """Sync checkpoint summary for every connected tenant."""
    rows = db.execute(_staleness_query()).all()
    tenants = []
    for tenant_id, state in rows:
        tenants.append(
            {
                "tenant_id": tenant_id,
                "cursor": state.cursor if state else None,
                "last_polled_at": ensure_aware(state.last_polled_at) if state else None,
                "last_success_at": ensure_aware(state.last_success_at) if state else None,
                "last_error": state.last_error if state else None,
                "backfill_status": state.backfill_status if state else None,
            }
        )
    return {
        "tenants": tenants,
        "total_connected": len(tenants),
        "never_synced": sum(1 for t in tenants if t["last_success_at"] is None),
    }
