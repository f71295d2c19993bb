"""Orders mirrored from the marketplace."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import (
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from marketdesk.db.base import Base
from marketdesk.db.enums import DeliveryStatusCode, OrderStatus
from marketdesk.db.types import JsonType
from marketdesk.utils.dates import utcnow

if TYPE_CHECKING:
    from marketdesk.db.models import MarketplaceConnection


class Order(Base):
    """Local copy of a marketplace order, keyed by its external id."""

    __tablename__ = "orders"
    __table_args__ = (
        UniqueConstraint("tenant_id", "external_order_id", name="uq_order_external"),
        Index("idx_orders_tenant_updated", "tenant_id", "last_update_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    connection_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("marketplace_connections.id", ondelete="CASCADE"),
        nullable=False,
    )

    external_order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_ref: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=OrderStatus.PENDING.value, nullable=False
    )
    external_status: Mapped[str | None] = mapped_column(String(40), nullable=True)
    delivery_status: Mapped[str] = mapped_column(
        String(20), default=DeliveryStatusCode.PREPARING.value, nullable=False
    )
    carrier: Mapped[str | None] = mapped_column(String(100), nullable=True)
    fulfillment_channel: Mapped[str | None] = mapped_column(String(20), nullable=True)

    purchase_date: Mapped[datetime | None] = mapped_column(nullable=True)
    last_update_date: Mapped[datetime | None] = mapped_column(nullable=True)

    buyer_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    buyer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    order_total: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)
    ship_city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    ship_country: Mapped[str | None] = mapped_column(String(2), nullable=True)

    raw: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )

    connection: Mapped["MarketplaceConnection"] = relationship()
    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderItem.external_item_id",
    )


class OrderItem(Base):
    """Line item of an order. Replaced wholesale on each sync of its order."""

    __tablename__ = "order_items"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True
    )
    external_item_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sku: Mapped[str | None] = mapped_column(String(100), nullable=True)
    asin: Mapped[str | None] = mapped_column(String(20), nullable=True)
    title: Mapped[str | None] = mapped_column(String(500), nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    quantity_shipped: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    unit_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    currency: Mapped[str | None] = mapped_column(String(3), nullable=True)

    order: Mapped["Order"] = relationship(back_populates="items")
