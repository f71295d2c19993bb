"""FastAPI application entry point."""

from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from sqlalchemy import text

from marketdesk.core.config import settings
from marketdesk.core.monitoring import init_sentry
from marketdesk.core.rate_limit import limiter
from marketdesk.db.session import engine
from marketdesk.routers import (
    internal_router,
    jobs_router,
    marketplace_sync_router,
    ops_router,
)
from marketdesk.services.marketplace_api import MarketplaceClientFactory

# ============================================================================
# Sentry Integration (optional, for production error tracking)
# ============================================================================

init_sentry("marketdesk-api", with_fastapi=True)

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Marketdesk API",
    description="Multi-tenant support backend: job queue, outbound delivery and marketplace sync",
    version=settings.VERSION,
    docs_url="/docs" if settings.ENV == "dev" else None,
    redoc_url="/redoc" if settings.ENV == "dev" else None,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
app.add_middleware(SlowAPIMiddleware)

# One token cache per process, shared by every request
app.state.marketplace_clients = MarketplaceClientFactory()

# ============================================================================
# Routers
# ============================================================================

app.include_router(jobs_router)
app.include_router(marketplace_sync_router)

# Internal endpoints (scheduled/cron jobs - protected by INTERNAL_SECRET)
app.include_router(internal_router)

# Ops endpoints (queue health - protected by OPS_API_KEY)
app.include_router(ops_router)


# ============================================================================
# Health Check
# ============================================================================


@app.get("/health")
def health():
    """
    Health check endpoint.

    Verifies database connectivity and returns environment info.
    """
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "env": settings.ENV, "version": settings.VERSION}
