"""API routers."""

from marketdesk.routers.internal import router as internal_router
from marketdesk.routers.jobs import router as jobs_router
from marketdesk.routers.marketplace_sync import router as marketplace_sync_router
from marketdesk.routers.ops import router as ops_router

__all__ = [
    "internal_router",
    "jobs_router",
    "marketplace_sync_router",
    "ops_router",
]
