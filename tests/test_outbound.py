"""Outbound delivery queue, routing decision tree and retry policy."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

from marketdesk.core.backoff import BackoffPolicy
from marketdesk.core.config import settings
from marketdesk.db.enums import DeliveryProvider, DeliveryRoute, DeliveryStatus
from marketdesk.db.models import OutboundDelivery, Ticket, TicketMessage
from marketdesk.services import email_service, outbound_service
from marketdesk.services.marketplace_api import MarketplaceApiError
from marketdesk.services.outbound_service import PermanentDeliveryError
from marketdesk.utils.dates import ensure_aware, utcnow

from conftest import BrokenRedis, FakeClientFactory, FakeMarketplaceClient, make_connection


def _ticket(db, *, handle="buyer@example.com", order_id=None, connection=None, inbound_id=None) -> Ticket:
    ticket = Ticket(
        tenant_id="t1",
        connection_id=connection.id if connection else None,
        subject="Where is my order?",
        customer_handle=handle,
        external_order_id=order_id,
        last_inbound_message_id=inbound_id,
    )
    db.add(ticket)
    db.commit()
    db.refresh(ticket)
    return ticket


def _delivery(**fields) -> OutboundDelivery:
    defaults = {
        "tenant_id": "t1",
        "provider": DeliveryProvider.MARKETPLACE.value,
        "body": "hello",
        "content_hash": "x",
        "target_address": None,
        "external_order_id": None,
    }
    defaults.update(fields)
    return OutboundDelivery(**defaults)


# =============================================================================
# Routing
# =============================================================================


def test_route_prefers_order_messaging_when_order_known():
    delivery = _delivery(external_order_id="111-222", target_address="x@marketplace.amazon")
    assert outbound_service.choose_route(delivery, None) == DeliveryRoute.MARKETPLACE_ORDER


def test_route_relay_address_uses_threaded_email():
    delivery = _delivery(target_address="abc123@marketplace.amazon")
    assert outbound_service.choose_route(delivery, None) == DeliveryRoute.EMAIL_MARKETPLACE_THREAD


def test_route_relay_handle_on_ticket_uses_threaded_email():
    ticket = Ticket(tenant_id="t1", customer_handle="ABC@Marketplace.Amazon")
    delivery = _delivery(target_address=None)
    assert outbound_service.choose_route(delivery, ticket) == DeliveryRoute.EMAIL_MARKETPLACE_THREAD


def test_route_plain_email_falls_back():
    delivery = _delivery(target_address="buyer@example.com")
    assert outbound_service.choose_route(delivery, None) == DeliveryRoute.EMAIL_FALLBACK


def test_route_without_target_is_permanent_failure():
    delivery = _delivery(target_address="not-an-address")
    with pytest.raises(PermanentDeliveryError, match=outbound_service.NO_VALID_TARGET):
        outbound_service.choose_route(delivery, None)


def test_route_mock_and_email_providers():
    assert outbound_service.choose_route(_delivery(provider="mock"), None) == DeliveryRoute.MOCK
    email = _delivery(provider="email", target_address="a@b.com", external_order_id="111")
    assert outbound_service.choose_route(email, None) == DeliveryRoute.EMAIL_FALLBACK


# =============================================================================
# Queue
# =============================================================================


def test_queue_delivery_is_idempotent_on_content(db):
    connection = make_connection(db, "t1")
    ticket = _ticket(db, connection=connection)

    first = outbound_service.queue_delivery(db, ticket, "Your parcel shipped")
    second = outbound_service.queue_delivery(db, ticket, "Your parcel shipped")
    other = outbound_service.queue_delivery(db, ticket, "Different text")

    assert first.id == second.id
    assert other.id != first.id
    assert db.query(OutboundDelivery).count() == 2
    assert first.status == DeliveryStatus.QUEUED.value
    assert first.content_hash == outbound_service.compute_content_hash("Your parcel shipped")


def test_duplicate_content_without_connection_is_rejected_by_the_database(db):
    ticket = _ticket(db)
    key = outbound_service.compute_dedupe_key(None, ticket.id, "x")
    db.add(_delivery(ticket_id=ticket.id, dedupe_key=key))
    db.commit()

    db.add(_delivery(ticket_id=ticket.id, dedupe_key=key))
    with pytest.raises(IntegrityError):
        db.commit()
    db.rollback()


def test_concurrent_duplicate_resolves_to_the_winning_row(db, monkeypatch):
    ticket = _ticket(db)
    winner = outbound_service.queue_delivery(db, ticket, "hello")

    real_find = outbound_service._find_existing
    lookups = []

    def find_after_losing_race(session, dedupe_key):
        lookups.append(dedupe_key)
        if len(lookups) == 1:
            return None
        return real_find(session, dedupe_key)

    monkeypatch.setattr(outbound_service, "_find_existing", find_after_losing_race)
    loser = outbound_service.queue_delivery(db, ticket, "hello")

    assert loser.id == winner.id
    assert len(lookups) == 2
    assert db.query(OutboundDelivery).count() == 1


def test_claim_increments_attempts_and_skips_not_due(db):
    ticket = _ticket(db)
    delivery = outbound_service.queue_delivery(db, ticket, "hello")

    claimed = outbound_service.claim_next_delivery(db, "ow1")
    assert claimed.id == delivery.id
    assert claimed.status == DeliveryStatus.SENDING.value
    assert claimed.attempt_count == 1
    assert claimed.claimed_by == "ow1"
    assert outbound_service.claim_next_delivery(db, "ow2") is None


def test_failed_attempt_requeues_with_backoff(db):
    ticket = _ticket(db)
    outbound_service.queue_delivery(db, ticket, "hello")
    now = utcnow()

    claimed = outbound_service.claim_next_delivery(db, "ow1", now=now)
    failed = outbound_service.mark_delivery_failed(db, claimed, "timeout", now=now)
    assert failed.status == DeliveryStatus.QUEUED.value
    assert failed.last_error == "timeout"
    assert (ensure_aware(failed.next_retry_at) - now).total_seconds() == pytest.approx(60)

    assert outbound_service.claim_next_delivery(db, "ow1", now=now) is None
    later = now + timedelta(seconds=61)
    again = outbound_service.claim_next_delivery(db, "ow1", now=later)
    failed = outbound_service.mark_delivery_failed(db, again, "timeout", now=later)
    assert (ensure_aware(failed.next_retry_at) - later).total_seconds() == pytest.approx(120)


def test_delivery_fails_after_max_attempts(db):
    ticket = _ticket(db)
    delivery = outbound_service.queue_delivery(db, ticket, "hello")
    instant = BackoffPolicy(base_seconds=0)

    for _ in range(5):
        claimed = outbound_service.claim_next_delivery(db, "ow1")
        assert claimed is not None
        result = outbound_service.mark_delivery_failed(db, claimed, "503", policy=instant)

    assert result.status == DeliveryStatus.FAILED.value
    assert result.attempt_count == 5
    assert outbound_service.claim_next_delivery(db, "ow1") is None
    db.refresh(delivery)
    assert delivery.trace["failed_at"]


def test_reclaim_stale_deliveries(db):
    ticket = _ticket(db)
    outbound_service.queue_delivery(db, ticket, "hello")
    claimed = outbound_service.claim_next_delivery(db, "ow1")

    assert outbound_service.reclaim_stale_deliveries(db, lease_seconds=600) == 0
    later = utcnow() + timedelta(minutes=11)
    assert outbound_service.reclaim_stale_deliveries(db, lease_seconds=600, now=later) == 1
    db.refresh(claimed)
    assert claimed.status == DeliveryStatus.QUEUED.value
    assert claimed.claimed_by is None


def test_reclaim_fails_stale_delivery_with_spent_budget(db):
    ticket = _ticket(db)
    delivery = outbound_service.queue_delivery(db, ticket, "hello")
    delivery.attempt_count = settings.OUTBOUND_MAX_ATTEMPTS - 1
    db.commit()
    claimed = outbound_service.claim_next_delivery(db, "ow1")
    assert claimed.attempt_count == settings.OUTBOUND_MAX_ATTEMPTS

    later = utcnow() + timedelta(minutes=11)
    assert outbound_service.reclaim_stale_deliveries(db, lease_seconds=600, now=later) == 1
    db.refresh(claimed)
    assert claimed.status == DeliveryStatus.FAILED.value
    assert claimed.last_error == outbound_service.LEASE_EXPIRED_ERROR
    assert outbound_service.claim_next_delivery(db, "ow1", now=later) is None


# =============================================================================
# Send
# =============================================================================


@pytest.mark.asyncio
async def test_process_delivery_sends_order_message(db):
    connection = make_connection(db, "t1")
    ticket = _ticket(db, order_id="111-222", connection=connection)
    message = TicketMessage(ticket_id=ticket.id, body="Shipped today")
    db.add(message)
    db.commit()
    delivery = outbound_service.queue_delivery(db, ticket, "Shipped today", message_id=message.id)
    client = FakeMarketplaceClient()

    claimed = outbound_service.claim_next_delivery(db, "ow1")
    result = await outbound_service.process_delivery(
        db, claimed, client_factory=FakeClientFactory(default=client)
    )

    assert result.status == DeliveryStatus.DELIVERED.value
    assert result.external_message_id == "msg-111-222"
    assert result.trace["provider_route"] == DeliveryRoute.MARKETPLACE_ORDER.value
    assert client.sent_messages == [("111-222", "Shipped today")]
    db.refresh(message)
    assert message.external_message_id == "msg-111-222"
    assert message.sent_at is not None
    assert delivery.id == result.id


@pytest.mark.asyncio
async def test_process_delivery_api_error_is_retried(db):
    ticket = _ticket(db, order_id="111-222")
    outbound_service.queue_delivery(db, ticket, "hello")
    client = FakeMarketplaceClient()
    client.send_error = MarketplaceApiError("Send message: HTTP 503", status_code=503)

    claimed = outbound_service.claim_next_delivery(db, "ow1")
    result = await outbound_service.process_delivery(
        db, claimed, client_factory=FakeClientFactory(default=client)
    )

    assert result.status == DeliveryStatus.QUEUED.value
    assert "503" in result.last_error
    assert result.next_retry_at is not None


@pytest.mark.asyncio
async def test_process_delivery_missing_credentials_is_permanent(db):
    ticket = _ticket(db, order_id="111-222")
    outbound_service.queue_delivery(db, ticket, "hello")

    claimed = outbound_service.claim_next_delivery(db, "ow1")
    result = await outbound_service.process_delivery(db, claimed, client_factory=FakeClientFactory())

    assert result.status == DeliveryStatus.FAILED.value
    assert result.attempt_count == 1


@pytest.mark.asyncio
async def test_process_delivery_no_target_fails_without_retry(db):
    ticket = _ticket(db, handle=None)
    outbound_service.queue_delivery(db, ticket, "hello")

    claimed = outbound_service.claim_next_delivery(db, "ow1")
    result = await outbound_service.process_delivery(db, claimed, client_factory=FakeClientFactory())

    assert result.status == DeliveryStatus.FAILED.value
    assert result.last_error == outbound_service.NO_VALID_TARGET
    assert result.next_retry_at is None


@pytest.mark.asyncio
async def test_threaded_email_replies_to_inbound_message(db, monkeypatch):
    sent = {}

    async def fake_send_email(**kwargs):
        sent.update(kwargs)
        return {"success": True, "message_id": "resend-1", "error": None}

    monkeypatch.setattr(email_service, "send_email", fake_send_email)
    ticket = _ticket(db, handle="abc@marketplace.amazon", inbound_id="<inbound-1@mail>")
    outbound_service.queue_delivery(db, ticket, "Line one\nLine two\n\nNew paragraph")

    claimed = outbound_service.claim_next_delivery(db, "ow1")
    result = await outbound_service.process_delivery(db, claimed, client_factory=FakeClientFactory())

    assert result.status == DeliveryStatus.DELIVERED.value
    assert result.trace["provider_route"] == DeliveryRoute.EMAIL_MARKETPLACE_THREAD.value
    assert sent["to"] == "abc@marketplace.amazon"
    assert sent["subject"] == "Re: Where is my order?"
    assert sent["headers"] == {"In-Reply-To": "<inbound-1@mail>", "References": "<inbound-1@mail>"}
    assert sent["idempotency_key"] == f"outbound-delivery/{claimed.id}"
    assert sent["html"] == "<p>Line one<br>Line two</p><p>New paragraph</p>"


@pytest.mark.asyncio
async def test_email_rate_limit_requeues(db, fake_redis):
    ticket = _ticket(db, handle="buyer@example.com")
    for _ in range(5):
        assert outbound_service.lock_service.check_ticket_email_rate(str(ticket.id), client=fake_redis)
    outbound_service.queue_delivery(db, ticket, "hello")

    claimed = outbound_service.claim_next_delivery(db, "ow1")
    result = await outbound_service.process_delivery(
        db, claimed, client_factory=FakeClientFactory(), redis_client=fake_redis
    )

    assert result.status == DeliveryStatus.QUEUED.value
    assert result.last_error == "Ticket email rate limit reached"


@pytest.mark.asyncio
async def test_unexpected_send_error_is_recorded_and_retried(db):
    ticket = _ticket(db, order_id="111-222")
    outbound_service.queue_delivery(db, ticket, "hello")
    client = FakeMarketplaceClient()
    client.send_error = ValueError("unexpected payload")
    factory = FakeClientFactory(default=client)

    claimed = outbound_service.claim_next_delivery(db, "ow1")
    result = await outbound_service.process_delivery(db, claimed, client_factory=factory)
    assert result.status == DeliveryStatus.QUEUED.value
    assert result.last_error == "unexpected payload"
    assert result.claimed_by is None

    far_future = utcnow() + timedelta(days=1)
    while result.status == DeliveryStatus.QUEUED.value:
        claimed = outbound_service.claim_next_delivery(db, "ow1", now=far_future)
        result = await outbound_service.process_delivery(db, claimed, client_factory=factory)

    assert result.status == DeliveryStatus.FAILED.value
    assert result.attempt_count == settings.OUTBOUND_MAX_ATTEMPTS


@pytest.mark.asyncio
async def test_email_sends_when_rate_limit_store_is_down(db, monkeypatch):
    async def fake_send_email(**kwargs):
        return {"success": True, "message_id": "resend-2", "error": None}

    monkeypatch.setattr(email_service, "send_email", fake_send_email)
    ticket = _ticket(db, handle="buyer@example.com")
    outbound_service.queue_delivery(db, ticket, "hello")

    claimed = outbound_service.claim_next_delivery(db, "ow1")
    result = await outbound_service.process_delivery(
        db, claimed, client_factory=FakeClientFactory(), redis_client=BrokenRedis()
    )

    assert result.status == DeliveryStatus.DELIVERED.value
    assert result.external_message_id == "resend-2"


@pytest.mark.asyncio
async def test_send_delivery_now_ignores_already_claimed(db):
    ticket = _ticket(db)
    delivery = outbound_service.queue_delivery(db, ticket, "hello", provider=DeliveryProvider.MOCK)
    outbound_service.claim_next_delivery(db, "ow1")

    assert await outbound_service.send_delivery_now(db, delivery.id, "w2") is None


def test_text_to_html_escapes_markup():
    assert outbound_service.text_to_html("a < b & c") == "<p>a &lt; b &amp; c</p>"
    assert outbound_service.text_to_html("") == ""
