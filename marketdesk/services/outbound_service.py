"""Outbound delivery queue and provider routing.

Deliveries have their own claim queue (same SKIP LOCKED claim as jobs);
the claim also increments attempt_count. Routing for marketplace tickets:

1. order id known             -> marketplace messaging API
2. buyer on marketplace relay -> email threaded onto the inbound message
3. plain email address known  -> fallback email
4. otherwise                  -> permanent failure, no retry
"""

import hashlib
import html
import logging
import re
from datetime import datetime, timedelta
from uuid import UUID

import httpx
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketdesk.core.backoff import BackoffPolicy, delivery_backoff_policy
from marketdesk.core.config import settings
from marketdesk.core.monitoring import report_exception
from marketdesk.core.redis_client import get_sync_redis_client
from marketdesk.db.enums import DeliveryProvider, DeliveryRoute, DeliveryStatus
from marketdesk.db.models import OutboundDelivery, Ticket, TicketMessage
from marketdesk.services import email_service, lock_service
from marketdesk.services.marketplace_api import (
    MarketplaceApiError,
    MarketplaceClientFactory,
)
from marketdesk.types import JsonObject
from marketdesk.utils.dates import format_iso_datetime, utcnow

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500
CONTENT_HASH_LENGTH = 32
NO_VALID_TARGET = "No order ID and no valid email address"
LEASE_EXPIRED_ERROR = "Lease expired while sending"


class DeliveryError(Exception):
    """Transient delivery failure; retried with backoff."""


class PermanentDeliveryError(DeliveryError):
    """Structural failure (no target, no credentials); never retried."""


def compute_content_hash(body: str) -> str:
    return hashlib.sha256(body.encode("utf-8")).hexdigest()[:CONTENT_HASH_LENGTH]


def compute_dedupe_key(connection_id: UUID | None, ticket_id: UUID, content_hash: str) -> str:
    """Idempotency key for one logical send; "-" stands in for no connection."""
    return f"{connection_id or '-'}:{ticket_id}:{content_hash}"


def text_to_html(text: str) -> str:
    """Plain text to minimal HTML: escaped, <p> per paragraph, <br> per line."""
    escaped = html.escape(text.replace("\r\n", "\n"), quote=False)
    paragraphs = [p for p in re.split(r"\n\s*\n", escaped) if p.strip()]
    return "".join(f"<p>{p.strip().replace(chr(10), '<br>')}</p>" for p in paragraphs)


def _reply_subject(subject: str | None) -> str:
    subject = (subject or "").strip() or "Your order"
    if subject.lower().startswith("re:"):
        return subject
    return f"Re: {subject}"


def _is_email(value: str | None) -> bool:
    return bool(value) and "@" in value


def _is_marketplace_relay(value: str | None) -> bool:
    return bool(value) and value.lower().endswith(f"@{settings.MARKETPLACE_EMAIL_DOMAIN}".lower())


# =============================================================================
# Queue
# =============================================================================


def _find_existing(db: Session, dedupe_key: str) -> OutboundDelivery | None:
    return db.scalar(select(OutboundDelivery).where(OutboundDelivery.dedupe_key == dedupe_key))


def queue_delivery(
    db: Session,
    ticket: Ticket,
    body: str,
    provider: DeliveryProvider = DeliveryProvider.MARKETPLACE,
    target_address: str | None = None,
    external_order_id: str | None = None,
    subject: str | None = None,
    message_id: UUID | None = None,
) -> OutboundDelivery:
    """
    Queue one logical send, or return the existing row for the same content.

    (connection, ticket, content hash) is the idempotency key; a concurrent
    duplicate that loses the unique-constraint race resolves to the winner.
    """
    content_hash = compute_content_hash(body)
    dedupe_key = compute_dedupe_key(ticket.connection_id, ticket.id, content_hash)
    existing = _find_existing(db, dedupe_key)
    if existing:
        logger.info("Delivery for ticket %s already queued as %s", ticket.id, existing.id)
        return existing

    delivery = OutboundDelivery(
        tenant_id=ticket.tenant_id,
        connection_id=ticket.connection_id,
        ticket_id=ticket.id,
        message_id=message_id,
        provider=provider.value,
        status=DeliveryStatus.QUEUED.value,
        target_address=target_address or ticket.customer_handle,
        external_order_id=external_order_id or ticket.external_order_id,
        subject=subject or ticket.subject,
        body=body,
        content_hash=content_hash,
        dedupe_key=dedupe_key,
        trace={},
    )
    db.add(delivery)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        existing = _find_existing(db, dedupe_key)
        if existing is None:
            raise
        return existing
    db.refresh(delivery)
    return delivery


def claim_next_delivery(
    db: Session,
    worker_id: str,
    delivery_id: UUID | None = None,
    now: datetime | None = None,
) -> OutboundDelivery | None:
    """Atomically claim the oldest due queued delivery (or one given id)."""
    now = now or utcnow()
    candidate = (
        select(OutboundDelivery.id)
        .where(
            OutboundDelivery.status == DeliveryStatus.QUEUED.value,
            (OutboundDelivery.next_retry_at.is_(None))
            | (OutboundDelivery.next_retry_at <= now),
        )
        .order_by(OutboundDelivery.created_at)
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    if delivery_id is not None:
        candidate = candidate.where(OutboundDelivery.id == delivery_id)

    stmt = (
        update(OutboundDelivery)
        .where(
            OutboundDelivery.id == candidate.scalar_subquery(),
            OutboundDelivery.status == DeliveryStatus.QUEUED.value,
        )
        .values(
            status=DeliveryStatus.SENDING.value,
            attempt_count=OutboundDelivery.attempt_count + 1,
            claimed_by=worker_id,
            claimed_at=now,
            updated_at=now,
        )
        .returning(OutboundDelivery.id)
        .execution_options(synchronize_session=False)
    )
    claimed_id = db.scalar(stmt)
    db.commit()
    if claimed_id is None:
        return None
    return db.get(OutboundDelivery, claimed_id, populate_existing=True)


def mark_delivered(
    db: Session,
    delivery: OutboundDelivery,
    external_message_id: str | None,
    trace: JsonObject,
) -> OutboundDelivery:
    now = utcnow()
    delivery.status = DeliveryStatus.DELIVERED.value
    delivery.delivered_at = now
    delivery.external_message_id = external_message_id
    delivery.last_error = None
    delivery.next_retry_at = None
    delivery.claimed_by = None
    delivery.claimed_at = None
    delivery.trace = {
        **trace,
        "delivered_at": format_iso_datetime(now),
        "external_message_id": external_message_id,
    }
    if delivery.message_id:
        message = db.get(TicketMessage, delivery.message_id)
        if message:
            message.sent_at = now
            message.external_message_id = external_message_id
    db.commit()
    db.refresh(delivery)
    return delivery


def mark_delivery_failed(
    db: Session,
    delivery: OutboundDelivery,
    error: str,
    trace: JsonObject | None = None,
    permanent: bool = False,
    policy: BackoffPolicy | None = None,
    now: datetime | None = None,
) -> OutboundDelivery:
    """
    Requeue with backoff, or fail for good.

    attempt_count was already incremented by the claim, so the first retry
    waits one base delay. Permanent errors and exhausted budgets end in
    ``failed``; rows are kept for audit.
    """
    now = now or utcnow()
    policy = policy or delivery_backoff_policy()
    error = (error or "Unknown error")[:MAX_ERROR_LENGTH]
    terminal = permanent or delivery.attempt_count >= settings.OUTBOUND_MAX_ATTEMPTS

    delivery.last_error = error
    delivery.claimed_by = None
    delivery.claimed_at = None
    trace = {**(trace or {}), "error": error, "attempt_count": delivery.attempt_count}
    if terminal:
        delivery.status = DeliveryStatus.FAILED.value
        delivery.next_retry_at = None
        trace["failed_at"] = format_iso_datetime(now)
    else:
        delivery.status = DeliveryStatus.QUEUED.value
        delivery.next_retry_at = policy.next_run_at(delivery.attempt_count - 1, now=now)
    delivery.trace = trace
    db.commit()
    db.refresh(delivery)
    return delivery


def reclaim_stale_deliveries(
    db: Session, lease_seconds: int | None = None, now: datetime | None = None
) -> int:
    """
    Recover deliveries stuck in ``sending`` past the lease.

    The claim already spent an attempt, so rows that used up the budget end
    in ``failed``; the rest go back to ``queued``.
    """
    now = now or utcnow()
    lease = lease_seconds if lease_seconds is not None else settings.OUTBOUND_LEASE_SECONDS
    stale = (
        OutboundDelivery.status == DeliveryStatus.SENDING.value,
        OutboundDelivery.claimed_at < now - timedelta(seconds=lease),
    )
    exhausted = db.execute(
        update(OutboundDelivery)
        .where(*stale, OutboundDelivery.attempt_count >= settings.OUTBOUND_MAX_ATTEMPTS)
        .values(
            status=DeliveryStatus.FAILED.value,
            claimed_by=None,
            claimed_at=None,
            next_retry_at=None,
            last_error=LEASE_EXPIRED_ERROR,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    requeued = db.execute(
        update(OutboundDelivery)
        .where(*stale)
        .values(
            status=DeliveryStatus.QUEUED.value,
            claimed_by=None,
            claimed_at=None,
            next_retry_at=now,
            last_error=LEASE_EXPIRED_ERROR,
            updated_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    total = exhausted.rowcount + requeued.rowcount
    if total:
        logger.warning(
            "Recovered %s stale deliveries (%s failed, %s requeued)",
            total,
            exhausted.rowcount,
            requeued.rowcount,
        )
    return total


# =============================================================================
# Routing + send
# =============================================================================


def choose_route(delivery: OutboundDelivery, ticket: Ticket | None) -> DeliveryRoute:
    """Pick the concrete send path. Raises PermanentDeliveryError when none fits."""
    provider = DeliveryProvider(delivery.provider)
    if provider == DeliveryProvider.MOCK:
        return DeliveryRoute.MOCK

    target = delivery.target_address
    handle = ticket.customer_handle if ticket else None
    if provider == DeliveryProvider.EMAIL:
        if _is_email(target):
            return DeliveryRoute.EMAIL_FALLBACK
        raise PermanentDeliveryError(NO_VALID_TARGET)

    if delivery.external_order_id:
        return DeliveryRoute.MARKETPLACE_ORDER
    if _is_marketplace_relay(target) or _is_marketplace_relay(handle):
        return DeliveryRoute.EMAIL_MARKETPLACE_THREAD
    if _is_email(target):
        return DeliveryRoute.EMAIL_FALLBACK
    raise PermanentDeliveryError(NO_VALID_TARGET)


def _check_email_budget(delivery: OutboundDelivery, redis_client) -> None:
    client = redis_client or get_sync_redis_client()
    if client is None:
        return
    if not lock_service.check_email_rate(delivery.tenant_id, client=client):
        raise DeliveryError("Tenant email rate limit reached")
    if not lock_service.check_ticket_email_rate(str(delivery.ticket_id), client=client):
        raise DeliveryError("Ticket email rate limit reached")


async def _send_email(
    delivery: OutboundDelivery, ticket: Ticket | None, route: DeliveryRoute
) -> str | None:
    if route == DeliveryRoute.EMAIL_MARKETPLACE_THREAD:
        to = delivery.target_address if _is_marketplace_relay(delivery.target_address) else ticket.customer_handle
        headers = {}
        if ticket and ticket.last_inbound_message_id:
            reference = f"<{ticket.last_inbound_message_id.strip('<>')}>"
            headers = {"In-Reply-To": reference, "References": reference}
        subject = _reply_subject(delivery.subject)
    else:
        to = delivery.target_address
        headers = {}
        subject = delivery.subject or "Message from support"

    result = await email_service.send_email(
        to=to,
        subject=subject,
        text=delivery.body,
        html=text_to_html(delivery.body),
        headers=headers or None,
        idempotency_key=f"outbound-delivery/{delivery.id}",
    )
    if not result["success"]:
        raise DeliveryError(result["error"] or "Email send failed")
    return result["message_id"]


async def process_delivery(
    db: Session,
    delivery: OutboundDelivery,
    client_factory: MarketplaceClientFactory | None = None,
    redis_client=None,
) -> OutboundDelivery:
    """Send one claimed delivery and record the outcome. Send errors never escape."""
    ticket = db.get(Ticket, delivery.ticket_id)
    trace: JsonObject = {
        "processed_at": format_iso_datetime(utcnow()),
        "provider": delivery.provider,
        "attempt_count": delivery.attempt_count,
    }
    try:
        route = choose_route(delivery, ticket)
        trace["provider_route"] = route.value

        if route == DeliveryRoute.MOCK:
            external_id = f"mock-{delivery.id}"
        elif route == DeliveryRoute.MARKETPLACE_ORDER:
            client = (client_factory or MarketplaceClientFactory()).for_tenant(db, delivery.tenant_id)
            if client is None:
                raise PermanentDeliveryError("Missing marketplace credentials")
            response = await client.send_message(delivery.external_order_id, delivery.body)
            external_id = response.get("messageId") or f"order-{delivery.external_order_id}"
        else:
            _check_email_budget(delivery, redis_client)
            external_id = await _send_email(delivery, ticket, route)
    except PermanentDeliveryError as e:
        logger.warning("Delivery %s failed permanently: %s", delivery.id, e)
        return mark_delivery_failed(db, delivery, str(e), trace=trace, permanent=True)
    except (DeliveryError, MarketplaceApiError, httpx.HTTPError) as e:
        logger.warning("Delivery %s attempt %s failed: %s", delivery.id, delivery.attempt_count, type(e).__name__)
        return mark_delivery_failed(db, delivery, str(e) or type(e).__name__, trace=trace)
    except Exception as e:
        db.rollback()
        logger.error("Delivery %s attempt %s raised %s", delivery.id, delivery.attempt_count, type(e).__name__)
        report_exception(e)
        return mark_delivery_failed(db, delivery, str(e) or type(e).__name__, trace=trace)

    logger.info("Delivery %s sent via %s", delivery.id, trace["provider_route"])
    return mark_delivered(db, delivery, external_id, trace)


async def send_delivery_now(
    db: Session,
    delivery_id: UUID,
    worker_id: str,
    client_factory: MarketplaceClientFactory | None = None,
    redis_client=None,
) -> OutboundDelivery | None:
    """Claim one specific delivery and send it. None if it is not claimable."""
    delivery = claim_next_delivery(db, worker_id, delivery_id=delivery_id)
    if delivery is None:
        return None
    return await process_delivery(
        db, delivery, client_factory=client_factory, redis_client=redis_client
    )
