"""Durable job queue table."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import Index, Integer, String, Text, Uuid, func, text
from sqlalchemy.orm import Mapped, mapped_column

from marketdesk.db.base import Base
from marketdesk.db.enums import DEFAULT_JOB_STATUS
from marketdesk.db.types import JsonType
from marketdesk.utils.dates import utcnow


class Job(Base):
    """
    Background job for async processing.

    Producers insert rows; worker processes claim one due row at a time
    with SELECT ... FOR UPDATE SKIP LOCKED and record the outcome.
    Rows are never deleted so failures stay inspectable.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index(
            "idx_jobs_claimable",
            "status",
            "next_run_at",
            postgresql_where=text("status IN ('pending', 'retry')"),
        ),
        Index("idx_jobs_tenant", "tenant_id", "created_at"),
        Index("idx_jobs_status_updated", "status", "updated_at"),
        Index(
            "uq_job_idempotency",
            "idempotency_key",
            unique=True,
            postgresql_where=text("idempotency_key IS NOT NULL"),
            sqlite_where=text("idempotency_key IS NOT NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    job_type: Mapped[str] = mapped_column(String(50), nullable=False)
    payload: Mapped[dict] = mapped_column(JsonType, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        String(20), default=DEFAULT_JOB_STATUS.value, nullable=False
    )
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_attempts: Mapped[int] = mapped_column(Integer, default=8, nullable=False)
    next_run_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )

    # Lock holder; set by the claim statement, cleared on completion/retry
    locked_by: Mapped[str | None] = mapped_column(String(100), nullable=True)
    locked_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        default=utcnow, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        default=utcnow, onupdate=utcnow, server_default=func.now(), nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
