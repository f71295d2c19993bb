"""Marketplace API client: token cache, pagination and error mapping."""

import json

import httpx
import pytest

from marketdesk.services.marketplace_api import (
    AccessTokenCache,
    MarketplaceApiError,
    MarketplaceClient,
    MarketplaceClientFactory,
    MarketplaceRateLimited,
)

from conftest import make_connection


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_token_cache_expires_entries():
    clock = Clock()
    cache = AccessTokenCache(ttl_seconds=100, clock=clock)
    cache.set("refresh-1", "access-1")

    clock.now += 99
    assert cache.get("refresh-1") == "access-1"
    clock.now += 1
    assert cache.get("refresh-1") is None
    assert len(cache) == 0


def test_token_cache_honours_shorter_provider_ttl():
    clock = Clock()
    cache = AccessTokenCache(ttl_seconds=3300, clock=clock)
    cache.set("refresh-1", "access-1", ttl_seconds=60)

    clock.now += 61
    assert cache.get("refresh-1") is None


def test_token_cache_invalidate():
    cache = AccessTokenCache(ttl_seconds=100)
    cache.set("a", "1")
    cache.set("b", "2")
    cache.invalidate("a")
    assert cache.get("a") is None
    assert cache.get("b") == "2"
    cache.invalidate()
    assert len(cache) == 0


def _client(handler, cache=None) -> tuple[MarketplaceClient, list[httpx.Request]]:
    requests: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        if request.url.path.endswith("/token"):
            return httpx.Response(200, json={"access_token": "access-1", "expires_in": 3600})
        return handler(request)

    http_client = httpx.AsyncClient(transport=httpx.MockTransport(_record))
    client = MarketplaceClient(
        refresh_token="refresh-1",
        marketplace_id="MKT",
        token_cache=cache or AccessTokenCache(3300),
        http_client=http_client,
        base_url="https://api.test",
    )
    return client, requests


@pytest.mark.asyncio
async def test_list_orders_reuses_cached_token():
    def handler(request):
        return httpx.Response(
            200, json={"payload": {"Orders": [{"AmazonOrderId": "A1"}], "NextToken": "next"}}
        )

    client, requests = _client(handler)
    orders, next_token = await client.list_orders(updated_after=None)
    await client.list_orders(next_token=next_token)

    assert orders == [{"AmazonOrderId": "A1"}]
    assert next_token == "next"
    token_calls = [r for r in requests if r.url.path.endswith("/token")]
    assert len(token_calls) == 1
    assert requests[-1].url.params["NextToken"] == "next"
    assert requests[-1].headers["x-amz-access-token"] == "access-1"


@pytest.mark.asyncio
async def test_list_order_items_follows_next_token():
    pages = [
        {"payload": {"OrderItems": [{"OrderItemId": "1"}], "NextToken": "p2"}},
        {"payload": {"OrderItems": [{"OrderItemId": "2"}]}},
    ]

    def handler(request):
        return httpx.Response(200, json=pages.pop(0))

    client, _ = _client(handler)
    items = await client.list_order_items("A1")
    assert [i["OrderItemId"] for i in items] == ["1", "2"]


@pytest.mark.asyncio
async def test_rate_limit_and_errors_are_typed():
    statuses = [429, 400]

    def handler(request):
        return httpx.Response(statuses.pop(0), headers={"Retry-After": "3"})

    client, _ = _client(handler)
    with pytest.raises(MarketplaceRateLimited) as excinfo:
        await client.list_orders()
    assert excinfo.value.retry_after == 3.0

    with pytest.raises(MarketplaceApiError) as excinfo:
        await client.list_orders()
    assert excinfo.value.status_code == 400


@pytest.mark.asyncio
async def test_forbidden_invalidates_cached_token():
    cache = AccessTokenCache(3300)

    def handler(request):
        return httpx.Response(403)

    client, requests = _client(handler, cache=cache)
    with pytest.raises(MarketplaceApiError):
        await client.list_orders()
    assert cache.get("refresh-1") is None
    token_calls = [r for r in requests if r.url.path.endswith("/token")]
    assert len(token_calls) == 2


@pytest.mark.asyncio
async def test_rejected_token_is_reexchanged_and_request_retried():
    cache = AccessTokenCache(3300)
    cache.set("refresh-1", "expired-token")
    statuses = [401, 200]

    def handler(request):
        status = statuses.pop(0)
        if status == 401:
            assert request.headers["x-amz-access-token"] == "expired-token"
            return httpx.Response(401)
        assert request.headers["x-amz-access-token"] == "access-1"
        return httpx.Response(200, json={"payload": {"Orders": [{"AmazonOrderId": "A1"}]}})

    client, requests = _client(handler, cache=cache)
    orders, next_token = await client.list_orders()

    assert orders == [{"AmazonOrderId": "A1"}]
    assert next_token is None
    token_calls = [r for r in requests if r.url.path.endswith("/token")]
    assert len(token_calls) == 1
    assert cache.get("refresh-1") == "access-1"


@pytest.mark.asyncio
async def test_send_message_retries_after_unauthorized():
    cache = AccessTokenCache(3300)
    cache.set("refresh-1", "expired-token")
    statuses = [401, 201]

    def handler(request):
        return httpx.Response(statuses.pop(0), json={"messageId": "m-2"})

    client, requests = _client(handler, cache=cache)
    assert await client.send_message("A1", "hello") == {"messageId": "m-2"}
    message_calls = [r for r in requests if "/messaging/" in r.url.path]
    assert len(message_calls) == 2


@pytest.mark.asyncio
async def test_send_message_posts_text():
    def handler(request):
        assert json.loads(request.content) == {"text": "hello"}
        return httpx.Response(201, json={"messageId": "m-1"})

    client, _ = _client(handler)
    assert await client.send_message("A1", "hello") == {"messageId": "m-1"}


def test_factory_requires_stored_credentials(db):
    make_connection(db, "with-creds")
    make_connection(db, "no-creds", credentials=False)
    factory = MarketplaceClientFactory()

    client = factory.for_tenant(db, "with-creds")
    assert client.refresh_token == "refresh-with-creds"
    assert client.token_cache is factory.token_cache
    assert factory.for_tenant(db, "no-creds") is None
