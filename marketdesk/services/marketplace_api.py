"""Marketplace (Selling Partner style) API client.

Handles:
- Refresh-token exchange with an explicit, injectable access-token cache
- Paginated order listing by last-update or creation time
- Paginated order item listing
- Buyer messaging for an order

A 429 response raises MarketplaceRateLimited so callers can back off
separately from generic failures; other non-2xx responses raise
MarketplaceApiError. A rejected access token (401 or 403) is re-exchanged
and the request retried once before the error surfaces.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime
from typing import Callable

import httpx
from sqlalchemy.orm import Session

from marketdesk.core.config import settings
from marketdesk.db.enums import SyncSystem
from marketdesk.services import credential_store
from marketdesk.services.http_service import HTTPX_TIMEOUT, request_with_retries
from marketdesk.types import JsonObject
from marketdesk.utils.dates import format_iso_datetime

logger = logging.getLogger(__name__)

ORDERS_PATH = "/orders/v0/orders"
MAX_RESULTS_PER_PAGE = 100
# 429 is handled by callers, not retried blindly here
TRANSIENT_STATUSES = {500, 502, 503, 504}
AUTH_REJECTED_STATUSES = {401, 403}


class MarketplaceApiError(Exception):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class MarketplaceRateLimited(MarketplaceApiError):
    def __init__(self, message: str = "Rate limited by marketplace API", retry_after: float | None = None):
        super().__init__(message, status_code=429)
        self.retry_after = retry_after


class AccessTokenCache:
    """In-memory access-token cache keyed by refresh token.

    The owner decides the TTL and lifetime; nothing here is module-global.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[str, tuple[str, float]] = {}

    def get(self, refresh_token: str) -> str | None:
        entry = self._entries.get(refresh_token)
        if entry is None:
            return None
        token, expires_at = entry
        if self._clock() >= expires_at:
            del self._entries[refresh_token]
            return None
        return token

    def set(self, refresh_token: str, access_token: str, ttl_seconds: float | None = None) -> None:
        ttl = self.ttl_seconds if ttl_seconds is None else min(ttl_seconds, self.ttl_seconds)
        self._entries[refresh_token] = (access_token, self._clock() + ttl)

    def invalidate(self, refresh_token: str | None = None) -> None:
        if refresh_token is None:
            self._entries.clear()
        else:
            self._entries.pop(refresh_token, None)

    def __len__(self) -> int:
        return len(self._entries)


def _raise_for_status(response: httpx.Response, context: str) -> None:
    if response.status_code == 429:
        retry_after = response.headers.get("Retry-After")
        raise MarketplaceRateLimited(
            f"{context}: rate limited",
            retry_after=float(retry_after) if retry_after and retry_after.isdigit() else None,
        )
    if response.status_code >= 400:
        raise MarketplaceApiError(
            f"{context}: HTTP {response.status_code}", status_code=response.status_code
        )


class MarketplaceClient:
    """API client for one tenant's seller account."""

    def __init__(
        self,
        *,
        refresh_token: str,
        marketplace_id: str | None = None,
        token_cache: AccessTokenCache | None = None,
        http_client: httpx.AsyncClient | None = None,
        base_url: str | None = None,
    ):
        self.refresh_token = refresh_token
        self.marketplace_id = marketplace_id
        self.token_cache = token_cache or AccessTokenCache(settings.MARKETPLACE_TOKEN_TTL_SECONDS)
        self.base_url = (base_url or settings.MARKETPLACE_API_BASE_URL).rstrip("/")
        self._http_client = http_client

    async def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        if self._http_client is not None:
            return await request_with_retries(
                lambda: self._http_client.request(method, url, **kwargs),
                retry_statuses=TRANSIENT_STATUSES,
            )
        async with httpx.AsyncClient(timeout=HTTPX_TIMEOUT) as client:
            return await request_with_retries(
                lambda: client.request(method, url, **kwargs),
                retry_statuses=TRANSIENT_STATUSES,
            )

    async def get_access_token(self) -> str:
        cached = self.token_cache.get(self.refresh_token)
        if cached:
            return cached

        response = await self._request(
            "POST",
            settings.MARKETPLACE_TOKEN_URL,
            data={
                "grant_type": "refresh_token",
                "refresh_token": self.refresh_token,
                "client_id": settings.MARKETPLACE_CLIENT_ID,
                "client_secret": settings.MARKETPLACE_CLIENT_SECRET,
            },
        )
        _raise_for_status(response, "Token exchange")
        data = response.json()
        access_token = data.get("access_token")
        if not access_token:
            raise MarketplaceApiError("Token exchange returned no access_token")
        self.token_cache.set(self.refresh_token, access_token, data.get("expires_in"))
        return access_token

    async def _authorized(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Send with the cached access token, re-exchanging it once on 401/403."""
        token = await self.get_access_token()
        response = await self._request(
            method, url, headers={"x-amz-access-token": token}, **kwargs
        )
        if response.status_code in AUTH_REJECTED_STATUSES:
            logger.info("Access token rejected (HTTP %s); re-exchanging", response.status_code)
            self.token_cache.invalidate(self.refresh_token)
            token = await self.get_access_token()
            response = await self._request(
                method, url, headers={"x-amz-access-token": token}, **kwargs
            )
            if response.status_code in AUTH_REJECTED_STATUSES:
                self.token_cache.invalidate(self.refresh_token)
        return response

    async def _get(self, path: str, params: dict, context: str) -> JsonObject:
        response = await self._authorized("GET", f"{self.base_url}{path}", params=params)
        _raise_for_status(response, context)
        return response.json().get("payload") or {}

    async def list_orders(
        self,
        *,
        updated_after: datetime | None = None,
        created_after: datetime | None = None,
        next_token: str | None = None,
        max_results: int = MAX_RESULTS_PER_PAGE,
    ) -> tuple[list[JsonObject], str | None]:
        """Fetch one page of orders. Returns (orders, next_token)."""
        params: dict[str, object] = {}
        if self.marketplace_id:
            params["MarketplaceIds"] = self.marketplace_id
        if next_token:
            params["NextToken"] = next_token
        else:
            if updated_after is not None:
                params["LastUpdatedAfter"] = format_iso_datetime(updated_after)
            if created_after is not None:
                params["CreatedAfter"] = format_iso_datetime(created_after)
            params["MaxResultsPerPage"] = max_results

        payload = await self._get(ORDERS_PATH, params, "List orders")
        return list(payload.get("Orders") or []), payload.get("NextToken")

    async def list_order_items(self, order_id: str) -> list[JsonObject]:
        """Fetch every item of one order, following NextToken."""
        items: list[JsonObject] = []
        next_token: str | None = None
        while True:
            params = {"NextToken": next_token} if next_token else {}
            payload = await self._get(
                f"{ORDERS_PATH}/{order_id}/orderItems", params, f"List items for {order_id}"
            )
            items.extend(payload.get("OrderItems") or [])
            next_token = payload.get("NextToken")
            if not next_token:
                return items

    async def send_message(self, order_id: str, text: str) -> JsonObject:
        """Send a buyer message attached to an order."""
        params = {"marketplaceIds": self.marketplace_id} if self.marketplace_id else {}
        response = await self._authorized(
            "POST",
            f"{self.base_url}/messaging/v1/orders/{order_id}/messages/confirmOrderDetails",
            params=params,
            json={"text": text},
        )
        _raise_for_status(response, f"Send message for {order_id}")
        if not response.content:
            return {}
        return response.json()


class MarketplaceClientFactory:
    """Builds per-tenant clients that share one token cache.

    Create one per process (worker, CLI, API app) and pass it to the sync
    and outbound services.
    """

    def __init__(
        self,
        token_cache: AccessTokenCache | None = None,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.token_cache = token_cache or AccessTokenCache(settings.MARKETPLACE_TOKEN_TTL_SECONDS)
        self.http_client = http_client

    def for_tenant(self, db: Session, tenant_id: str) -> MarketplaceClient | None:
        """Return a client, or None when the tenant has no stored credentials."""
        credentials = credential_store.get_credentials(
            db, tenant_id, SyncSystem.MARKETPLACE_ORDERS
        )
        if not credentials or not credentials.get("refresh_token"):
            return None
        return MarketplaceClient(
            refresh_token=str(credentials["refresh_token"]),
            marketplace_id=credentials.get("marketplace_id"),
            token_cache=self.token_cache,
            http_client=self.http_client,
        )
