"""SQLAlchemy ORM models."""

from marketdesk.db.models.credentials import TenantCredential
from marketdesk.db.models.jobs import Job
from marketdesk.db.models.orders import Order, OrderItem
from marketdesk.db.models.sync import MarketplaceConnection, SyncState
from marketdesk.db.models.ticketing import OutboundDelivery, Ticket, TicketMessage

__all__ = [
    "Job",
    "MarketplaceConnection",
    "Order",
    "OrderItem",
    "OutboundDelivery",
    "SyncState",
    "TenantCredential",
    "Ticket",
    "TicketMessage",
]
