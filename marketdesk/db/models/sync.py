"""Marketplace connections and per-tenant sync checkpoints."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Integer, String, Text, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from marketdesk.db.base import Base
from marketdesk.db.enums import DEFAULT_BACKFILL_STATUS, ConnectionStatus
from marketdesk.utils.dates import utcnow


class MarketplaceConnection(Base):
    """A tenant's link to a marketplace seller account."""

    __tablename__ = "marketplace_connections"
    __table_args__ = (
        UniqueConstraint("tenant_id", name="uq_marketplace_connection_tenant"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), default=ConnectionStatus.CONNECTED.value, nullable=False
    )
    seller_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    marketplace_id: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )


class SyncState(Base):
    """
    Sync checkpoint for one (tenant, external system).

    ``cursor`` is the delta watermark (ISO timestamp). It only moves forward
    and only after a whole run has been merged.
    """

    __tablename__ = "sync_states"
    __table_args__ = (
        UniqueConstraint("tenant_id", "system", name="uq_sync_state_tenant_system"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    system: Mapped[str] = mapped_column(String(50), nullable=False)

    cursor: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_polled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_success_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_error_at: Mapped[datetime | None] = mapped_column(nullable=True)

    backfill_status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_BACKFILL_STATUS.value, nullable=False
    )
    backfill_days: Mapped[int | None] = mapped_column(Integer, nullable=True)
    backfill_started_at: Mapped[datetime | None] = mapped_column(nullable=True)
    initial_backfill_done_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )
