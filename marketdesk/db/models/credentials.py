"""Per-tenant secrets for external systems."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import String, UniqueConstraint, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from marketdesk.db.base import Base
from marketdesk.db.types import EncryptedString
from marketdesk.utils.dates import utcnow


class TenantCredential(Base):
    """Encrypted JSON credential blob for one (tenant, system)."""

    __tablename__ = "tenant_credentials"
    __table_args__ = (
        UniqueConstraint("tenant_id", "system", name="uq_tenant_credential_system"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    system: Mapped[str] = mapped_column(String(50), nullable=False)
    secret: Mapped[str] = mapped_column(EncryptedString, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )
