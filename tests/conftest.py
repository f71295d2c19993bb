"""
Test configuration and fixtures.

Provides:
- In-memory SQLite database, rebuilt for every test
- FakeRedis with a controllable clock for lock and rate-limit tests
- Marketplace connection/credential helpers and a scriptable fake client
"""
import os

from cryptography.fernet import Fernet

# Settings are read at import time; configure before importing marketdesk.
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("TESTING", "1")
os.environ.setdefault("INTERNAL_SECRET", "test-internal-secret")
os.environ.setdefault("OPS_API_KEY", "test-ops-key")
os.environ.setdefault("FERNET_KEY", Fernet.generate_key().decode())
os.environ["REDIS_URL"] = ""
os.environ["RESEND_API_KEY"] = ""
os.environ["SYNC_PAGE_DELAY_SECONDS"] = "0"
os.environ["GLOBAL_SYNC_TENANT_DELAY_SECONDS"] = "0"

from typing import Generator

import pytest
from redis import exceptions as redis_exceptions
from sqlalchemy.orm import Session

import marketdesk.db.models  # noqa: F401
from marketdesk.db.base import Base
from marketdesk.db.enums import ConnectionStatus, SyncSystem
from marketdesk.db.models import MarketplaceConnection
from marketdesk.db.session import SessionLocal, engine
from marketdesk.services import credential_store, global_sync_service, marketplace_sync_service
from marketdesk.services.marketplace_api import MarketplaceRateLimited


# =============================================================================
# Database
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """Fresh schema per test. Services commit freely."""
    Base.metadata.create_all(engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)


# =============================================================================
# Redis
# =============================================================================

class FakeRedis:
    """Just enough of redis-py for SET NX EX locks and INCR/EXPIRE windows."""

    def __init__(self):
        self.now = 0.0
        self._data: dict[str, object] = {}
        self._expires: dict[str, float] = {}

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def _purge(self, key: str) -> None:
        expires_at = self._expires.get(key)
        if expires_at is not None and self.now >= expires_at:
            self._data.pop(key, None)
            self._expires.pop(key, None)

    def set(self, key, value, nx=False, ex=None):
        self._purge(key)
        if nx and key in self._data:
            return None
        self._data[key] = value
        if ex is not None:
            self._expires[key] = self.now + ex
        else:
            self._expires.pop(key, None)
        return True

    def get(self, key):
        self._purge(key)
        return self._data.get(key)

    def delete(self, *keys):
        removed = 0
        for key in keys:
            self._purge(key)
            if key in self._data:
                removed += 1
            self._data.pop(key, None)
            self._expires.pop(key, None)
        return removed

    def incr(self, key):
        self._purge(key)
        value = int(self._data.get(key, 0)) + 1
        self._data[key] = value
        return value

    def expire(self, key, seconds, nx=False):
        self._purge(key)
        if key not in self._data:
            return False
        if nx and key in self._expires:
            return False
        self._expires[key] = self.now + seconds
        return True

    def pipeline(self, transaction=True):
        return FakePipeline(self)

    def ttl(self, key):
        self._purge(key)
        if key not in self._data:
            return -2
        if key not in self._expires:
            return -1
        return int(self._expires[key] - self.now)


class FakePipeline:
    """Queues commands and runs them back to back on execute()."""

    def __init__(self, redis: FakeRedis):
        self._redis = redis
        self._commands: list = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self._commands.append((name, args, kwargs))
            return self

        return queue

    def execute(self):
        commands, self._commands = self._commands, []
        return [getattr(self._redis, name)(*args, **kwargs) for name, args, kwargs in commands]


class BrokenRedis:
    """Every command fails as if the server went away."""

    def __getattr__(self, name):
        def fail(*args, **kwargs):
            raise redis_exceptions.ConnectionError("Connection refused")

        return fail


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


# =============================================================================
# Marketplace
# =============================================================================

class FakeMarketplaceClient:
    """
    Scriptable stand-in for MarketplaceClient.

    ``pages`` is a list of (orders, next_token) tuples or exceptions, consumed
    in order. ``items`` maps order id to an item list or an exception.
    """

    def __init__(self, pages=None, items=None):
        self.pages = list(pages or [])
        self.items = dict(items or {})
        self.list_orders_calls: list[dict] = []
        self.sent_messages: list[tuple[str, str]] = []
        self.send_error: Exception | None = None

    async def list_orders(self, *, updated_after=None, created_after=None, next_token=None, max_results=100):
        self.list_orders_calls.append(
            {"updated_after": updated_after, "created_after": created_after, "next_token": next_token}
        )
        if not self.pages:
            return [], None
        page = self.pages.pop(0)
        if isinstance(page, Exception):
            raise page
        return page

    async def list_order_items(self, order_id):
        value = self.items.get(order_id, [])
        if isinstance(value, Exception):
            raise value
        return value

    async def send_message(self, order_id, text):
        if self.send_error is not None:
            raise self.send_error
        self.sent_messages.append((order_id, text))
        return {"messageId": f"msg-{order_id}"}


class FakeClientFactory:
    def __init__(self, clients=None, default=None):
        self.clients = dict(clients or {})
        self.default = default

    def for_tenant(self, db, tenant_id):
        return self.clients.get(tenant_id, self.default)


@pytest.fixture(autouse=True)
def no_sleep(monkeypatch):
    """Sync code paces itself with _pause; tests never wait."""
    async def _no_pause(seconds):
        return None

    monkeypatch.setattr(marketplace_sync_service, "_pause", _no_pause)
    monkeypatch.setattr(global_sync_service, "_pause", _no_pause)


def make_connection(db: Session, tenant_id: str, *, credentials: bool = True) -> MarketplaceConnection:
    connection = MarketplaceConnection(
        tenant_id=tenant_id,
        status=ConnectionStatus.CONNECTED.value,
        seller_id=f"seller-{tenant_id}",
        marketplace_id="ATVPDKIKX0DER",
    )
    db.add(connection)
    db.commit()
    db.refresh(connection)
    if credentials:
        credential_store.put_credentials(
            db,
            tenant_id,
            SyncSystem.MARKETPLACE_ORDERS,
            {"refresh_token": f"refresh-{tenant_id}", "marketplace_id": "ATVPDKIKX0DER"},
        )
    return connection


def make_order(order_id: str, updated: str, status: str = "Unshipped", **extra) -> dict:
    data = {
        "AmazonOrderId": order_id,
        "OrderStatus": status,
        "PurchaseDate": updated,
        "LastUpdateDate": updated,
        "OrderTotal": {"Amount": "20.00", "CurrencyCode": "USD"},
        "BuyerInfo": {"BuyerEmail": f"{order_id}@marketplace.amazon", "BuyerName": "Buyer"},
        "ShippingAddress": {"City": "Seattle", "CountryCode": "US"},
        "FulfillmentChannel": "MFN",
    }
    data.update(extra)
    return data


def make_item(item_id: str, ordered: int = 1, shipped: int = 0, price: str = "20.00") -> dict:
    return {
        "OrderItemId": item_id,
        "SellerSKU": f"SKU-{item_id}",
        "ASIN": "B000TEST",
        "Title": "Test item",
        "QuantityOrdered": ordered,
        "QuantityShipped": shipped,
        "ItemPrice": {"Amount": price, "CurrencyCode": "USD"},
    }


def rate_limited() -> MarketplaceRateLimited:
    return MarketplaceRateLimited("List orders: rate limited")
