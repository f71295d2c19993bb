"""Marketplace order sync: delta, backfill and missing-item repair.

Delta sync pulls orders changed since the stored watermark, merges them
and only then moves the watermark to max(LastUpdateDate) + 1s. Backfill
pulls a bounded window by creation date and tracks its own status. Both
mutate the tenant's SyncState row, so callers must hold the tenant sync
lock (see global_sync_service and the job worker).

Expected failures (no connection, missing credentials, rate limiting,
API errors) come back in the result dict; they are not raised.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation

import httpx
from sqlalchemy import func, select
from sqlalchemy.orm import Session

from marketdesk.core.backoff import ITEM_RATE_LIMIT_BACKOFF
from marketdesk.core.config import settings
from marketdesk.core.redis_client import get_sync_redis_client
from marketdesk.db.enums import (
    BackfillStatus,
    ConnectionStatus,
    DeliveryStatusCode,
    OrderStatus,
    SyncSystem,
)
from marketdesk.db.models import MarketplaceConnection, Order, OrderItem, SyncState
from marketdesk.services import lock_service
from marketdesk.services.marketplace_api import (
    MarketplaceApiError,
    MarketplaceClient,
    MarketplaceClientFactory,
    MarketplaceRateLimited,
)
from marketdesk.types import JsonObject
from marketdesk.utils.dates import (
    ensure_aware,
    format_iso_datetime,
    parse_iso_datetime,
    utcnow,
)

logger = logging.getLogger(__name__)

WATERMARK_EPSILON = timedelta(seconds=1)
MAX_RESULT_ERRORS = 10
MAX_STATE_ERRORS = 3
MAX_STATE_ERROR_LENGTH = 1000
BACKFILL_RATE_LIMIT_WAIT_SECONDS = 5.0
MAX_PAGE_RATE_LIMIT_RETRIES = 5
CALL_BUDGET_WAIT_SECONDS = 1.0
MAX_CALL_BUDGET_WAITS = 5

ORDER_STATUS_MAP = {
    "Pending": OrderStatus.PENDING,
    "PendingAvailability": OrderStatus.PENDING,
    "Unshipped": OrderStatus.CONFIRMED,
    "PartiallyShipped": OrderStatus.SHIPPED,
    "Shipped": OrderStatus.SHIPPED,
    "Canceled": OrderStatus.CANCELLED,
    "Unfulfillable": OrderStatus.CANCELLED,
}


async def _pause(seconds: float) -> None:
    if seconds > 0:
        await asyncio.sleep(seconds)


class CallPacer:
    """Holds one tenant's marketplace calls to the shared per-second budget.

    Without Redis nothing is paced. After MAX_CALL_BUDGET_WAITS waits the
    call goes ahead anyway and the API's own 429 handling takes over.
    """

    def __init__(self, tenant_id: str, redis_client=None):
        self.tenant_id = tenant_id
        self.redis_client = redis_client

    async def wait(self) -> None:
        if self.redis_client is None:
            return
        for _ in range(MAX_CALL_BUDGET_WAITS):
            if lock_service.check_marketplace_poll_rate(self.tenant_id, client=self.redis_client):
                return
            await _pause(CALL_BUDGET_WAIT_SECONDS)
        logger.warning("Call budget for tenant %s still exhausted; proceeding", self.tenant_id)


def _pacer_for(tenant_id: str, redis_client=None) -> CallPacer:
    return CallPacer(tenant_id, redis_client or get_sync_redis_client())


# =============================================================================
# State helpers
# =============================================================================


def get_sync_state(db: Session, tenant_id: str) -> SyncState | None:
    return db.scalar(
        select(SyncState).where(
            SyncState.tenant_id == tenant_id,
            SyncState.system == SyncSystem.MARKETPLACE_ORDERS.value,
        )
    )


def get_or_create_sync_state(db: Session, tenant_id: str) -> SyncState:
    """Created lazily on the first sync attempt for a tenant."""
    state = get_sync_state(db, tenant_id)
    if state is None:
        state = SyncState(tenant_id=tenant_id, system=SyncSystem.MARKETPLACE_ORDERS.value)
        db.add(state)
        db.commit()
        db.refresh(state)
    return state


def get_connection(db: Session, tenant_id: str) -> MarketplaceConnection | None:
    return db.scalar(
        select(MarketplaceConnection).where(
            MarketplaceConnection.tenant_id == tenant_id,
            MarketplaceConnection.status == ConnectionStatus.CONNECTED.value,
        )
    )


def _record_failure(db: Session, state: SyncState, error: str) -> None:
    """Store the error; the watermark is left untouched."""
    state.last_error = error[:MAX_STATE_ERROR_LENGTH]
    state.last_error_at = utcnow()
    db.commit()


def _summarize_errors(errors: list[str]) -> str | None:
    if not errors:
        return None
    return "; ".join(errors[:MAX_STATE_ERRORS])[:MAX_STATE_ERROR_LENGTH]


def _empty_result(tenant_id: str) -> dict:
    return {
        "success": False,
        "tenant_id": tenant_id,
        "orders_processed": 0,
        "items_processed": 0,
        "errors": [],
        "error": None,
        "cursor": None,
        "duration_ms": 0,
    }


# =============================================================================
# Mapping
# =============================================================================


def map_order_status(external_status: str | None) -> OrderStatus:
    return ORDER_STATUS_MAP.get(external_status or "", OrderStatus.PENDING)


def derive_delivery_status(items: list[JsonObject]) -> DeliveryStatusCode:
    shipped = sum(int(item.get("QuantityShipped") or 0) for item in items)
    ordered = sum(int(item.get("QuantityOrdered") or 0) for item in items)
    unshipped = max(ordered - shipped, 0)
    if shipped > 0 and unshipped > 0:
        return DeliveryStatusCode.SHIPPED
    if shipped > 0:
        return DeliveryStatusCode.IN_TRANSIT
    return DeliveryStatusCode.PREPARING


def _money(value: JsonObject | None) -> tuple[Decimal | None, str | None]:
    if not value:
        return None, None
    try:
        amount = Decimal(str(value.get("Amount")))
    except (InvalidOperation, TypeError):
        return None, value.get("CurrencyCode")
    return amount, value.get("CurrencyCode")


def _unit_price(item: JsonObject) -> tuple[Decimal | None, str | None]:
    total, currency = _money(item.get("ItemPrice"))
    quantity = int(item.get("QuantityOrdered") or 0)
    if total is None or quantity <= 0:
        return total, currency
    return (total / quantity).quantize(Decimal("0.01")), currency


def _upsert_order(
    db: Session,
    connection: MarketplaceConnection,
    data: JsonObject,
    items: list[JsonObject] | None,
) -> Order:
    """Insert or update one order; replace its items when they were fetched."""
    external_id = data["AmazonOrderId"]
    order = db.scalar(
        select(Order).where(
            Order.tenant_id == connection.tenant_id,
            Order.external_order_id == external_id,
        )
    )
    if order is None:
        order = Order(
            tenant_id=connection.tenant_id,
            connection_id=connection.id,
            external_order_id=external_id,
            order_ref=f"#{external_id[-6:]}",
        )
        db.add(order)

    buyer = data.get("BuyerInfo") or {}
    address = data.get("ShippingAddress") or {}
    shipping_settings = data.get("AutomatedShippingSettings") or {}
    total, currency = _money(data.get("OrderTotal"))

    order.external_status = data.get("OrderStatus")
    order.status = map_order_status(data.get("OrderStatus")).value
    order.purchase_date = parse_iso_datetime(data.get("PurchaseDate"))
    order.last_update_date = parse_iso_datetime(data.get("LastUpdateDate"))
    order.buyer_email = buyer.get("BuyerEmail")
    order.buyer_name = buyer.get("BuyerName")
    order.order_total = total
    order.currency = currency
    order.fulfillment_channel = data.get("FulfillmentChannel")
    order.ship_city = address.get("City")
    order.ship_country = address.get("CountryCode")
    order.carrier = shipping_settings.get("AutomatedCarrier") or order.carrier
    order.raw = data

    if items is not None:
        _replace_items(order, items)
    return order


def _replace_items(order: Order, items: list[JsonObject]) -> None:
    order.items.clear()
    for item in items:
        unit_price, item_currency = _unit_price(item)
        order.items.append(
            OrderItem(
                external_item_id=str(item.get("OrderItemId") or ""),
                sku=item.get("SellerSKU"),
                asin=item.get("ASIN"),
                title=(item.get("Title") or "")[:500] or None,
                quantity=int(item.get("QuantityOrdered") or 0),
                quantity_shipped=int(item.get("QuantityShipped") or 0),
                unit_price=unit_price,
                currency=item_currency,
            )
        )
    order.delivery_status = derive_delivery_status(items).value


# =============================================================================
# Fetching
# =============================================================================


async def fetch_order_items(
    client: MarketplaceClient,
    order_id: str,
    max_retries: int | None = None,
    pacer: CallPacer | None = None,
) -> list[JsonObject]:
    """Fetch one order's items, retrying rate limits (2s..60s) and errors.

    At least one attempt is always made. Raises the last error once retries
    are used up.
    """
    retries = max(1, max_retries if max_retries is not None else settings.SYNC_ITEM_MAX_RETRIES)
    attempt = 0
    while True:
        if pacer is not None:
            await pacer.wait()
        try:
            return await client.list_order_items(order_id)
        except MarketplaceRateLimited:
            if attempt >= retries - 1:
                raise
            wait = ITEM_RATE_LIMIT_BACKOFF.delay_seconds(attempt)
        except MarketplaceApiError:
            if attempt >= retries - 1:
                raise
            wait = 1.0 * (attempt + 1)
        await _pause(wait)
        attempt += 1


async def _fetch_all_orders(
    client: MarketplaceClient,
    *,
    updated_after: datetime | None = None,
    created_after: datetime | None = None,
    rate_limit_wait: float | None = None,
    pacer: CallPacer | None = None,
) -> list[JsonObject]:
    """Accumulate every page until the API stops returning a NextToken."""
    orders: list[JsonObject] = []
    next_token: str | None = None
    rate_limited = 0
    while True:
        if pacer is not None:
            await pacer.wait()
        try:
            page, next_token = await client.list_orders(
                updated_after=updated_after,
                created_after=created_after,
                next_token=next_token,
            )
        except MarketplaceRateLimited:
            rate_limited += 1
            if rate_limited > MAX_PAGE_RATE_LIMIT_RETRIES:
                raise
            wait = (
                rate_limit_wait
                if rate_limit_wait is not None
                else ITEM_RATE_LIMIT_BACKOFF.delay_seconds(rate_limited - 1)
            )
            logger.warning("Order page rate limited, waiting %.1fs", wait)
            await _pause(wait)
            continue

        orders.extend(page)
        if not next_token:
            return orders
        await _pause(settings.SYNC_PAGE_DELAY_SECONDS)


async def _merge_orders(
    db: Session,
    client: MarketplaceClient,
    connection: MarketplaceConnection,
    orders: list[JsonObject],
    result: dict,
    pacer: CallPacer | None = None,
) -> datetime | None:
    """Upsert every order in API order. Returns the max LastUpdateDate seen.

    A failed item fetch still upserts the order (items left for the
    missing-items sweep) and is reported as a per-order error.
    """
    max_seen: datetime | None = None
    for data in orders:
        order_id = data.get("AmazonOrderId")
        if not order_id:
            result["errors"].append("Order without AmazonOrderId skipped")
            continue

        updated = parse_iso_datetime(data.get("LastUpdateDate"))
        if updated and (max_seen is None or updated > max_seen):
            max_seen = updated

        items: list[JsonObject] | None
        try:
            items = await fetch_order_items(client, order_id, pacer=pacer)
        except (MarketplaceApiError, httpx.HTTPError) as e:
            items = None
            result["errors"].append(f"{order_id}: items fetch failed: {e}")

        try:
            _upsert_order(db, connection, data, items)
            db.commit()
        except Exception as e:
            db.rollback()
            result["errors"].append(f"{order_id}: {e}")
            continue

        result["orders_processed"] += 1
        result["items_processed"] += len(items or [])
    return max_seen


# =============================================================================
# Delta sync
# =============================================================================


async def run_delta_sync(
    db: Session,
    tenant_id: str,
    client_factory: MarketplaceClientFactory | None = None,
    now: datetime | None = None,
    redis_client=None,
) -> dict:
    """
    Incremental sync of orders changed since the stored watermark.

    Returns:
        {"success", "tenant_id", "orders_processed", "items_processed",
         "errors": [...<=10], "error", "cursor", "duration_ms"}
    """
    started = time.monotonic()
    now = now or utcnow()
    result = _empty_result(tenant_id)

    state = get_or_create_sync_state(db, tenant_id)
    state.last_polled_at = now
    db.commit()

    connection = get_connection(db, tenant_id)
    if connection is None:
        result["error"] = "No connected marketplace account"
        _record_failure(db, state, result["error"])
        return result

    client = (client_factory or MarketplaceClientFactory()).for_tenant(db, tenant_id)
    if client is None:
        result["error"] = "Missing marketplace credentials"
        _record_failure(db, state, result["error"])
        return result

    previous = parse_iso_datetime(state.cursor)
    updated_after = previous or now - timedelta(days=settings.SYNC_DEFAULT_LOOKBACK_DAYS)

    try:
        pacer = _pacer_for(tenant_id, redis_client)
        orders = await _fetch_all_orders(client, updated_after=updated_after, pacer=pacer)
        max_seen = await _merge_orders(db, client, connection, orders, result, pacer=pacer)
    except Exception as e:
        db.rollback()
        logger.error("Delta sync failed for tenant %s: %s", tenant_id, type(e).__name__)
        result["error"] = str(e) or type(e).__name__
        _record_failure(db, state, result["error"])
        result["duration_ms"] = int((time.monotonic() - started) * 1000)
        return result

    new_cursor = updated_after
    if max_seen is not None:
        new_cursor = max(updated_after, max_seen + WATERMARK_EPSILON)

    state = get_or_create_sync_state(db, tenant_id)
    state.cursor = format_iso_datetime(new_cursor)
    state.last_success_at = utcnow()
    state.last_error = _summarize_errors(result["errors"])
    state.last_error_at = utcnow() if result["errors"] else None
    db.commit()

    result["success"] = True
    result["cursor"] = state.cursor
    result["errors"] = result["errors"][:MAX_RESULT_ERRORS]
    result["duration_ms"] = int((time.monotonic() - started) * 1000)
    logger.info(
        "Delta sync for tenant %s: %s orders, %s errors, cursor=%s",
        tenant_id,
        result["orders_processed"],
        len(result["errors"]),
        state.cursor,
    )
    return result


# =============================================================================
# Backfill
# =============================================================================


async def run_backfill(
    db: Session,
    tenant_id: str,
    days: int | None = None,
    client_factory: MarketplaceClientFactory | None = None,
    now: datetime | None = None,
    redis_client=None,
) -> dict:
    """
    One-time historical pull of orders created in the last ``days`` days.

    ``days`` is clamped to [1, BACKFILL_MAX_DAYS]. On success the backfill
    status becomes ``success`` and the watermark is moved forward (never
    back) past the newest order seen.
    """
    started = time.monotonic()
    now = now or utcnow()
    days = min(max(days or settings.BACKFILL_DEFAULT_DAYS, 1), settings.BACKFILL_MAX_DAYS)
    result = _empty_result(tenant_id)
    result["days"] = days

    state = get_or_create_sync_state(db, tenant_id)
    connection = get_connection(db, tenant_id)
    client = (
        (client_factory or MarketplaceClientFactory()).for_tenant(db, tenant_id)
        if connection is not None
        else None
    )
    if connection is None or client is None:
        result["error"] = (
            "No connected marketplace account"
            if connection is None
            else "Missing marketplace credentials"
        )
        state.backfill_status = BackfillStatus.FAILED.value
        _record_failure(db, state, result["error"])
        return result

    state.backfill_status = BackfillStatus.IN_PROGRESS.value
    state.backfill_days = days
    state.backfill_started_at = now
    db.commit()

    try:
        pacer = _pacer_for(tenant_id, redis_client)
        orders = await _fetch_all_orders(
            client,
            created_after=now - timedelta(days=days),
            rate_limit_wait=BACKFILL_RATE_LIMIT_WAIT_SECONDS,
            pacer=pacer,
        )
        max_seen = await _merge_orders(db, client, connection, orders, result, pacer=pacer)
    except Exception as e:
        db.rollback()
        logger.error("Backfill failed for tenant %s: %s", tenant_id, type(e).__name__)
        result["error"] = str(e) or type(e).__name__
        state = get_or_create_sync_state(db, tenant_id)
        state.backfill_status = BackfillStatus.FAILED.value
        _record_failure(db, state, result["error"])
        result["duration_ms"] = int((time.monotonic() - started) * 1000)
        return result

    state = get_or_create_sync_state(db, tenant_id)
    state.backfill_status = BackfillStatus.SUCCESS.value
    state.initial_backfill_done_at = utcnow()
    if max_seen is not None:
        candidate = max_seen + WATERMARK_EPSILON
        current = parse_iso_datetime(state.cursor)
        if current is None or candidate > current:
            state.cursor = format_iso_datetime(candidate)
    state.last_error = _summarize_errors(result["errors"])
    db.commit()

    result["success"] = True
    result["cursor"] = state.cursor
    result["errors"] = result["errors"][:MAX_RESULT_ERRORS]
    result["duration_ms"] = int((time.monotonic() - started) * 1000)
    logger.info(
        "Backfill for tenant %s (%s days): %s orders",
        tenant_id,
        days,
        result["orders_processed"],
    )
    return result


def needs_initial_backfill(db: Session, tenant_id: str) -> bool:
    state = get_sync_state(db, tenant_id)
    return state is None or state.backfill_status != BackfillStatus.SUCCESS.value


def get_backfill_status(db: Session, tenant_id: str) -> dict:
    state = get_sync_state(db, tenant_id)
    orders_count, oldest = db.execute(
        select(func.count(Order.id), func.min(Order.purchase_date)).where(
            Order.tenant_id == tenant_id
        )
    ).one()
    return {
        "tenant_id": tenant_id,
        "status": state.backfill_status if state else BackfillStatus.NOT_STARTED.value,
        "days": state.backfill_days if state else None,
        "started_at": ensure_aware(state.backfill_started_at) if state else None,
        "done_at": ensure_aware(state.initial_backfill_done_at) if state else None,
        "orders_count": orders_count,
        "oldest_order_date": ensure_aware(oldest),
    }


# =============================================================================
# Missing items (self-healing)
# =============================================================================


async def sync_missing_items(
    db: Session,
    tenant_id: str,
    limit: int = 50,
    client_factory: MarketplaceClientFactory | None = None,
    redis_client=None,
) -> dict:
    """Fetch items for orders that have none (e.g. after a failed item fetch)."""
    result = {
        "success": False,
        "tenant_id": tenant_id,
        "orders_checked": 0,
        "orders_fixed": 0,
        "errors": [],
        "error": None,
    }
    connection = get_connection(db, tenant_id)
    if connection is None:
        result["error"] = "No connected marketplace account"
        return result
    client = (client_factory or MarketplaceClientFactory()).for_tenant(db, tenant_id)
    if client is None:
        result["error"] = "Missing marketplace credentials"
        return result

    orders = db.scalars(
        select(Order)
        .where(Order.tenant_id == tenant_id, ~Order.items.any())
        .order_by(Order.purchase_date.desc())
        .limit(limit)
    ).all()

    pacer = _pacer_for(tenant_id, redis_client)
    for order in orders:
        result["orders_checked"] += 1
        try:
            items = await fetch_order_items(client, order.external_order_id, pacer=pacer)
            _replace_items(order, items)
            db.commit()
            if items:
                result["orders_fixed"] += 1
        except Exception as e:
            db.rollback()
            result["errors"].append(f"{order.external_order_id}: {e}")
        await _pause(settings.SYNC_PAGE_DELAY_SECONDS)

    result["success"] = True
    result["errors"] = result["errors"][:MAX_RESULT_ERRORS]
    return result


# =============================================================================
# Status
# =============================================================================


def get_sync_status(db: Session, tenant_id: str) -> dict:
    state = get_sync_state(db, tenant_id)
    orders_count = db.scalar(
        select(func.count(Order.id)).where(Order.tenant_id == tenant_id)
    )
    items_count = db.scalar(
        select(func.count(OrderItem.id))
        .join(Order, OrderItem.order_id == Order.id)
        .where(Order.tenant_id == tenant_id)
    )
    orders_without_items = db.scalar(
        select(func.count(Order.id)).where(
            Order.tenant_id == tenant_id, ~Order.items.any()
        )
    )
    return {
        "tenant_id": tenant_id,
        "connected": get_connection(db, tenant_id) is not None,
        "cursor": state.cursor if state else None,
        "last_polled_at": ensure_aware(state.last_polled_at) if state else None,
        "last_success_at": ensure_aware(state.last_success_at) if state else None,
        "last_error": state.last_error if state else None,
        "backfill_status": state.backfill_status if state else BackfillStatus.NOT_STARTED.value,
        "needs_backfill": needs_initial_backfill(db, tenant_id),
        "orders_count": orders_count or 0,
        "items_count": items_count or 0,
        "orders_without_items": orders_without_items or 0,
    }
