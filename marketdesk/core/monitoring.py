"""Optional Sentry error tracking."""

import logging

from marketdesk.core.config import settings

logger = logging.getLogger(__name__)


def init_sentry(component: str, *, with_fastapi: bool = False) -> bool:
    """Initialize Sentry when SENTRY_DSN is set outside dev. Returns True if enabled."""
    if not settings.SENTRY_DSN or settings.ENV == "dev":
        return False

    import sentry_sdk
    from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

    integrations = [SqlalchemyIntegration()]
    if with_fastapi:
        from sentry_sdk.integrations.fastapi import FastApiIntegration

        integrations.append(FastApiIntegration(transaction_style="endpoint"))

    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENV,
        release=settings.VERSION,
        server_name=component,
        integrations=integrations,
        traces_sample_rate=0.1,
        send_default_pii=False,  # Never ship buyer data
    )
    logger.info("Sentry initialized for %s", component)
    return True


def report_exception(exc: BaseException) -> None:
    if not settings.SENTRY_DSN or settings.ENV == "dev":
        return
    import sentry_sdk

    sentry_sdk.capture_exception(exc)
