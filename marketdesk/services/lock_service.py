"""Distributed locks and fixed-window rate limits on Redis.

All keys are TTL-bounded so a crashed holder never blocks a resource
forever. Callers pass an explicit client in tests; otherwise the shared
process pool from ``redis_client`` is used.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from redis.exceptions import RedisError

from marketdesk.core.redis_client import require_sync_redis_client

logger = logging.getLogger(__name__)

LOCK_PREFIX = "lock:"
RATE_LIMIT_PREFIX = "rl:"
DEFAULT_LOCK_TTL_SECONDS = 60

MARKETPLACE_SYNC_LOCK_DOMAIN = "marketplace_sync"

MARKETPLACE_POLL_LIMIT = (1, 1)  # 1 call per second per tenant
EMAIL_TENANT_LIMIT = (50, 3600)
EMAIL_TICKET_LIMIT = (5, 3600)


@dataclass(frozen=True)
class LockKey:
    """Namespaced lock key: (domain, resource id).

    Different domains never collide even when resource ids are equal.
    """

    domain: str
    resource_id: str

    def __str__(self) -> str:
        return f"{self.domain}:{self.resource_id}"

    @property
    def redis_key(self) -> str:
        return f"{LOCK_PREFIX}{self}"


def tenant_sync_lock(tenant_id: str) -> LockKey:
    return LockKey(MARKETPLACE_SYNC_LOCK_DOMAIN, str(tenant_id))


def _lock_redis_key(key: LockKey | str) -> str:
    if isinstance(key, LockKey):
        return key.redis_key
    return f"{LOCK_PREFIX}{key}"


def acquire_lock(
    key: LockKey | str,
    ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
    *,
    holder: str = "1",
    client=None,
) -> bool:
    """Try once to take the lock (SET NX EX). Never blocks."""
    client = client or require_sync_redis_client()
    acquired = client.set(_lock_redis_key(key), holder, nx=True, ex=ttl_seconds)
    return bool(acquired)


def release_lock(key: LockKey | str, *, client=None) -> None:
    """Delete the lock unconditionally."""
    client = client or require_sync_redis_client()
    client.delete(_lock_redis_key(key))


def check_rate_limit(key: str, max_count: int, window_seconds: int, *, client=None) -> bool:
    """Count one call in the current window; True while within budget.

    INCR and EXPIRE NX run in one MULTI/EXEC, so every counter carries a TTL
    and resets itself when the window elapses. Redis errors fail open.
    """
    client = client or require_sync_redis_client()
    redis_key = f"{RATE_LIMIT_PREFIX}{key}"
    try:
        pipe = client.pipeline(transaction=True)
        pipe.incr(redis_key)
        pipe.expire(redis_key, window_seconds, nx=True)
        count, _ = pipe.execute()
    except RedisError as e:
        logger.warning("Rate limit check for %s failed open: %s", key, type(e).__name__)
        return True
    allowed = count <= max_count
    if not allowed:
        logger.debug("Rate limit exceeded for %s (%s/%s)", key, count, max_count)
    return allowed


def get_rate_limit_count(key: str, *, client=None) -> int:
    client = client or require_sync_redis_client()
    value = client.get(f"{RATE_LIMIT_PREFIX}{key}")
    return int(value) if value is not None else 0


def reset_rate_limit(key: str, *, client=None) -> None:
    client = client or require_sync_redis_client()
    client.delete(f"{RATE_LIMIT_PREFIX}{key}")


def check_marketplace_poll_rate(tenant_id: str, *, client=None) -> bool:
    max_count, window = MARKETPLACE_POLL_LIMIT
    return check_rate_limit(f"marketplace_poll:{tenant_id}", max_count, window, client=client)


def check_email_rate(tenant_id: str, *, client=None) -> bool:
    max_count, window = EMAIL_TENANT_LIMIT
    return check_rate_limit(f"email:{tenant_id}", max_count, window, client=client)


def check_ticket_email_rate(ticket_id: str, *, client=None) -> bool:
    max_count, window = EMAIL_TICKET_LIMIT
    return check_rate_limit(f"email_ticket:{ticket_id}", max_count, window, client=client)
