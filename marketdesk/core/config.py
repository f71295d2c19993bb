"""Application configuration with environment variables."""

import os
import time

from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_worker_id() -> str:
    return f"worker-{os.getpid()}-{int(time.time())}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # Environment
    ENV: str = "dev"
    VERSION: str = "0.1.0"

    # Database
    DATABASE_URL: str

    # Redis (locks + rate limits). Empty or memory:// disables it.
    REDIS_URL: str = ""
    REDIS_MAX_CONNECTIONS: int = 20

    # Internal scheduled endpoints (cron jobs)
    INTERNAL_SECRET: str = ""
    # Bearer key for /internal/ops/*
    OPS_API_KEY: str = ""

    # Token Encryption (stored marketplace credentials)
    FERNET_KEY: str = ""  # Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"

    # Outbound email (Resend)
    RESEND_API_KEY: str = ""
    EMAIL_FROM: str = "support@example.com"

    # Marketplace API
    MARKETPLACE_API_BASE_URL: str = "https://sellingpartnerapi-na.amazon.com"
    MARKETPLACE_TOKEN_URL: str = "https://api.amazon.com/auth/o2/token"
    MARKETPLACE_CLIENT_ID: str = ""
    MARKETPLACE_CLIENT_SECRET: str = ""
    MARKETPLACE_EMAIL_DOMAIN: str = "marketplace.amazon"
    MARKETPLACE_TOKEN_TTL_SECONDS: int = 3300

    # Error tracking
    SENTRY_DSN: str = ""

    # HTTP rate limiting (requests per minute, 0 disables)
    RATE_LIMIT_API: int = 120

    # Job worker
    WORKER_ID: str = ""
    WORKER_POLL_INTERVAL_SECONDS: float = 2.0
    JOB_MAX_ATTEMPTS: int = 8
    JOB_BACKOFF_CAP_SECONDS: int = 0  # 0 = uncapped 2^n
    JOB_LEASE_SECONDS: int = 900
    JOB_LOCK_RETRY_SECONDS: int = 30

    # Outbound delivery worker
    OUTBOUND_POLL_INTERVAL_SECONDS: float = 5.0
    OUTBOUND_MAX_ATTEMPTS: int = 5
    OUTBOUND_BACKOFF_BASE_SECONDS: int = 60
    OUTBOUND_BACKOFF_CAP_SECONDS: int = 3600
    OUTBOUND_LEASE_SECONDS: int = 600

    # Marketplace sync
    SYNC_DEFAULT_LOOKBACK_DAYS: int = 7
    SYNC_PAGE_DELAY_SECONDS: float = 0.5
    SYNC_ITEM_MAX_RETRIES: int = 3
    SYNC_LOCK_TTL_SECONDS: int = 1800
    GLOBAL_SYNC_BATCH_SIZE: int = 5
    GLOBAL_SYNC_TENANT_DELAY_SECONDS: float = 2.0
    BACKFILL_DEFAULT_DAYS: int = 365
    BACKFILL_MAX_DAYS: int = 730
    RECURRING_POLL_MIN_INTERVAL_SECONDS: int = 240

    @property
    def worker_id(self) -> str:
        return self.WORKER_ID or _default_worker_id()

    @property
    def redis_enabled(self) -> bool:
        url = self.REDIS_URL.strip().lower()
        return bool(url) and url != "memory://"


settings = Settings()
