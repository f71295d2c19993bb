"""Outbound delivery enums."""

from enum import Enum


class DeliveryProvider(str, Enum):
    """Channel a delivery was queued for."""

    MOCK = "mock"
    MARKETPLACE = "marketplace"
    EMAIL = "email"


class DeliveryStatus(str, Enum):
    QUEUED = "queued"
    SENDING = "sending"
    DELIVERED = "delivered"
    FAILED = "failed"


class DeliveryRoute(str, Enum):
    """Concrete path chosen for a marketplace delivery (recorded in the trace)."""

    MOCK = "MOCK"
    MARKETPLACE_ORDER = "MARKETPLACE_ORDER"
    EMAIL_MARKETPLACE_THREAD = "EMAIL_MARKETPLACE_THREAD"
    EMAIL_FALLBACK = "EMAIL_FALLBACK"


class MessageDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
