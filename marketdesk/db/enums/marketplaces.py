"""Marketplace connection and order enums."""

from enum import Enum


class ConnectionStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class SyncSystem(str, Enum):
    """External systems a tenant can be synchronized with."""

    MARKETPLACE_ORDERS = "marketplace_orders"


class BackfillStatus(str, Enum):
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    SUCCESS = "success"
    FAILED = "failed"


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    SHIPPED = "SHIPPED"
    CANCELLED = "CANCELLED"


class DeliveryStatusCode(str, Enum):
    """Fulfilment progress derived from shipped/unshipped item counts."""

    PREPARING = "PREPARING"
    IN_TRANSIT = "IN_TRANSIT"
    SHIPPED = "SHIPPED"


class SyncOutcome(str, Enum):
    """Per-tenant outcome of a global sync pass."""

    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
