"""HTTP helpers with retry/backoff for integrations."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable

import httpx

from marketdesk.core.backoff import BackoffPolicy

logger = logging.getLogger(__name__)

DEFAULT_RETRY_STATUSES = {429, 500, 502, 503, 504}
DEFAULT_HTTP_BACKOFF = BackoffPolicy(base_seconds=0.5, multiplier=2.0, cap_seconds=4.0)

# Shared by every integration client
HTTPX_TIMEOUT = httpx.Timeout(10.0, connect=5.0)


def _retry_delay(policy: BackoffPolicy, attempt: int) -> float:
    delay = policy.delay_seconds(attempt)
    if delay:
        delay = delay + random.uniform(0, delay / 2)
    return delay


async def request_with_retries(
    request_fn: Callable[[], Awaitable[httpx.Response]],
    *,
    max_attempts: int = 3,
    policy: BackoffPolicy = DEFAULT_HTTP_BACKOFF,
    retry_statuses: set[int] | None = None,
) -> httpx.Response:
    """Execute an HTTP request, retrying transport errors and retryable statuses.

    The last response is returned as-is once attempts run out; the last
    transport error is re-raised.
    """
    statuses = retry_statuses if retry_statuses is not None else DEFAULT_RETRY_STATUSES

    for attempt in range(max_attempts):
        last_attempt = attempt >= max_attempts - 1
        try:
            response = await request_fn()
        except httpx.RequestError as exc:
            if last_attempt:
                raise
            logger.warning("HTTP request failed, retrying", exc_info=exc)
            delay = _retry_delay(policy, attempt)
            if delay:
                await asyncio.sleep(delay)
            continue

        if response.status_code in statuses and not last_attempt:
            logger.warning("HTTP request returned %s, retrying", response.status_code)
            delay = _retry_delay(policy, attempt)
            if delay:
                await asyncio.sleep(delay)
            continue

        return response

    return response
