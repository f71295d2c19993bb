"""Marketplace sync router - status reads and manual triggers per tenant."""

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from marketdesk.core.config import settings
from marketdesk.core.deps import (
    get_db,
    get_marketplace_clients,
    get_redis,
    verify_internal_secret,
)
from marketdesk.schemas.sync import (
    BackfillRunResult,
    BackfillStatusRead,
    GlobalSyncStatus,
    MissingItemsResult,
    SyncRunResult,
    SyncStatus,
)
from marketdesk.services import global_sync_service, lock_service, marketplace_sync_service
from marketdesk.services.marketplace_api import MarketplaceClientFactory

router = APIRouter(
    prefix="/marketplace-sync",
    tags=["marketplace-sync"],
    dependencies=[Depends(verify_internal_secret)],
)


def _acquire_tenant_lock(tenant_id: str, redis_client) -> lock_service.LockKey:
    lock_key = lock_service.tenant_sync_lock(tenant_id)
    if not lock_service.acquire_lock(
        lock_key, settings.SYNC_LOCK_TTL_SECONDS, holder="api", client=redis_client
    ):
        raise HTTPException(status_code=409, detail="Sync already in progress for tenant")
    return lock_key


@router.get("/global/status", response_model=GlobalSyncStatus)
def global_status(db: Session = Depends(get_db)):
    return global_sync_service.get_global_sync_status(db)


@router.get("/{tenant_id}/status", response_model=SyncStatus)
def sync_status(tenant_id: str, db: Session = Depends(get_db)):
    return marketplace_sync_service.get_sync_status(db, tenant_id)


@router.get("/{tenant_id}/backfill", response_model=BackfillStatusRead)
def backfill_status(tenant_id: str, db: Session = Depends(get_db)):
    return marketplace_sync_service.get_backfill_status(db, tenant_id)


@router.post("/{tenant_id}/run", response_model=SyncRunResult)
async def run_sync(
    tenant_id: str,
    db: Session = Depends(get_db),
    redis_client=Depends(get_redis),
    clients: MarketplaceClientFactory = Depends(get_marketplace_clients),
):
    """Run a delta sync for one tenant now."""
    lock_key = _acquire_tenant_lock(tenant_id, redis_client)
    try:
        return await marketplace_sync_service.run_delta_sync(
            db, tenant_id, client_factory=clients, redis_client=redis_client
        )
    finally:
        lock_service.release_lock(lock_key, client=redis_client)


@router.post("/{tenant_id}/backfill", response_model=BackfillRunResult)
async def run_backfill(
    tenant_id: str,
    days: int = Query(default=365, ge=1, le=730),
    db: Session = Depends(get_db),
    redis_client=Depends(get_redis),
    clients: MarketplaceClientFactory = Depends(get_marketplace_clients),
):
    """Run a historical backfill for one tenant now."""
    lock_key = _acquire_tenant_lock(tenant_id, redis_client)
    try:
        return await marketplace_sync_service.run_backfill(
            db, tenant_id, days=days, client_factory=clients, redis_client=redis_client
        )
    finally:
        lock_service.release_lock(lock_key, client=redis_client)


@router.post("/{tenant_id}/missing-items", response_model=MissingItemsResult)
async def missing_items(
    tenant_id: str,
    limit: int = Query(default=50, ge=1, le=500),
    db: Session = Depends(get_db),
    redis_client=Depends(get_redis),
    clients: MarketplaceClientFactory = Depends(get_marketplace_clients),
):
    """Fetch items for orders that have none."""
    lock_key = _acquire_tenant_lock(tenant_id, redis_client)
    try:
        return await marketplace_sync_service.sync_missing_items(
            db, tenant_id, limit=limit, client_factory=clients, redis_client=redis_client
        )
    finally:
        lock_service.release_lock(lock_key, client=redis_client)
