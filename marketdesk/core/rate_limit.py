"""HTTP rate limiting for the operational API."""

import logging
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

from marketdesk.core.config import settings
from marketdesk.core.redis_client import get_redis_url

IS_TESTING = os.getenv("TESTING", "").lower() in ("1", "true", "yes")
DEFAULT_LIMITS = (
    []
    if IS_TESTING or settings.RATE_LIMIT_API <= 0
    else [f"{settings.RATE_LIMIT_API}/minute"]
)


def _build_limiter() -> Limiter:
    redis_url = None if IS_TESTING else get_redis_url()
    if redis_url:
        try:
            import redis

            redis.from_url(redis_url, socket_connect_timeout=1).ping()
            return Limiter(
                key_func=get_remote_address,
                storage_uri=redis_url,
                default_limits=DEFAULT_LIMITS,
            )
        except Exception as e:
            logging.warning(f"Redis unavailable for rate limiting, using in-memory: {e}")
    return Limiter(
        key_func=get_remote_address,
        storage_uri="memory://",
        default_limits=DEFAULT_LIMITS,
    )


limiter = _build_limiter()
