"""FastAPI dependencies for database access and internal authentication."""

import hmac
from typing import Generator

from fastapi import Header, HTTPException, Request
from sqlalchemy.orm import Session

from marketdesk.core.config import settings
from marketdesk.core.redis_client import get_sync_redis_client
from marketdesk.db.session import SessionLocal
from marketdesk.services.marketplace_api import MarketplaceClientFactory


def get_db() -> Generator[Session, None, None]:
    """
    Database session dependency.

    Yields a database session and ensures it's closed after the request.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def verify_internal_secret(x_internal_secret: str = Header(...)) -> None:
    """Verify the X-Internal-Secret header used by schedulers and producers."""
    expected = settings.INTERNAL_SECRET
    if not expected:
        raise HTTPException(status_code=501, detail="INTERNAL_SECRET not configured")
    if not hmac.compare_digest(x_internal_secret, expected):
        raise HTTPException(status_code=403, detail="Invalid internal secret")


def verify_ops_key(authorization: str | None = Header(default=None)) -> None:
    """Verify `Authorization: Bearer <OPS_API_KEY>` for ops reads."""
    expected = settings.OPS_API_KEY
    if not expected:
        raise HTTPException(status_code=501, detail="OPS_API_KEY not configured")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    if not hmac.compare_digest(token.strip(), expected):
        raise HTTPException(status_code=403, detail="Invalid ops key")


def get_redis():
    """Shared Redis client for lock-taking endpoints."""
    client = get_sync_redis_client()
    if client is None:
        raise HTTPException(status_code=503, detail="REDIS_URL not configured")
    return client


def get_marketplace_clients(request: Request) -> MarketplaceClientFactory:
    """Process-wide marketplace client factory (one token cache per app)."""
    factory = getattr(request.app.state, "marketplace_clients", None)
    if factory is None:
        factory = MarketplaceClientFactory()
        request.app.state.marketplace_clients = factory
    return factory
