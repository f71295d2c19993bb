"""
Internal endpoints for scheduled/cron operations.

Protected by X-Internal-Secret header.
Call from an external scheduler (cron, GH Actions, Cloud Scheduler).
"""

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from marketdesk.core.deps import (
    get_db,
    get_marketplace_clients,
    get_redis,
    verify_internal_secret,
)
from marketdesk.schemas.sync import GlobalSyncResult, RecurringEnqueueResult
from marketdesk.services import global_sync_service, job_service
from marketdesk.services.marketplace_api import MarketplaceClientFactory

router = APIRouter(
    prefix="/internal/scheduled",
    tags=["internal"],
    dependencies=[Depends(verify_internal_secret)],
)


@router.post("/global-sync", response_model=GlobalSyncResult)
async def global_sync(
    db: Session = Depends(get_db),
    redis_client=Depends(get_redis),
    clients: MarketplaceClientFactory = Depends(get_marketplace_clients),
):
    """Delta sync the stalest batch of connected tenants."""
    return await global_sync_service.run_global_sync(
        db, client_factory=clients, redis_client=redis_client
    )


@router.post("/enqueue-recurring", response_model=RecurringEnqueueResult)
def enqueue_recurring(db: Session = Depends(get_db)):
    """Enqueue poll jobs for connected tenants that are due one."""
    return job_service.enqueue_recurring_jobs(db)
