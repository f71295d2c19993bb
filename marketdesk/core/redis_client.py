"""Redis client helpers with connection pooling."""

from __future__ import annotations

from marketdesk.core.config import settings

DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS = 2.0
DEFAULT_REDIS_SOCKET_TIMEOUT_SECONDS = 2.0
DEFAULT_REDIS_HEALTH_CHECK_SECONDS = 30

_sync_client = None


def get_redis_url() -> str | None:
    """Configured Redis URL, or None when Redis is disabled ("" or memory://)."""
    if not settings.redis_enabled:
        return None
    return settings.REDIS_URL.strip()


def get_sync_redis_client():
    """Return the process-wide Redis client, or None when Redis is disabled.

    The pool is built once per process and shared by every lock and
    rate-limit call.
    """
    url = get_redis_url()
    if not url:
        return None

    global _sync_client
    if _sync_client is None:
        import redis

        pool = redis.ConnectionPool.from_url(
            url,
            max_connections=settings.REDIS_MAX_CONNECTIONS,
            socket_connect_timeout=DEFAULT_REDIS_CONNECT_TIMEOUT_SECONDS,
            socket_timeout=DEFAULT_REDIS_SOCKET_TIMEOUT_SECONDS,
            health_check_interval=DEFAULT_REDIS_HEALTH_CHECK_SECONDS,
            retry_on_timeout=True,
        )
        _sync_client = redis.Redis(connection_pool=pool)
    return _sync_client


def require_sync_redis_client():
    """Like get_sync_redis_client, but raise when Redis is not configured."""
    client = get_sync_redis_client()
    if client is None:
        raise RuntimeError("REDIS_URL not configured; locks and rate limits need Redis")
    return client
