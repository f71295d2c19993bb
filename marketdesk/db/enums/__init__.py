"""Enum definitions for application constants."""

from marketdesk.db.enums.jobs import CLAIMABLE_JOB_STATUSES, JobStatus, JobType
from marketdesk.db.enums.marketplaces import (
    BackfillStatus,
    ConnectionStatus,
    DeliveryStatusCode,
    OrderStatus,
    SyncOutcome,
    SyncSystem,
)
from marketdesk.db.enums.outbound import (
    DeliveryProvider,
    DeliveryRoute,
    DeliveryStatus,
    MessageDirection,
)

DEFAULT_JOB_STATUS: JobStatus = JobStatus.PENDING
DEFAULT_DELIVERY_STATUS: DeliveryStatus = DeliveryStatus.QUEUED
DEFAULT_BACKFILL_STATUS: BackfillStatus = BackfillStatus.NOT_STARTED

__all__ = [
    "BackfillStatus",
    "CLAIMABLE_JOB_STATUSES",
    "ConnectionStatus",
    "DEFAULT_BACKFILL_STATUS",
    "DEFAULT_DELIVERY_STATUS",
    "DEFAULT_JOB_STATUS",
    "DeliveryProvider",
    "DeliveryRoute",
    "DeliveryStatus",
    "DeliveryStatusCode",
    "JobStatus",
    "JobType",
    "MessageDirection",
    "OrderStatus",
    "SyncOutcome",
    "SyncSystem",
]
