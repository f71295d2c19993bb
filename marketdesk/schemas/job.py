"""Pydantic schemas for background jobs."""

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from marketdesk.db.enums import JobType


class JobEnqueue(BaseModel):
    """Enqueue a new job."""
    job_type: JobType
    tenant_id: str = Field(min_length=1, max_length=64)
    payload: dict = {}
    run_at: datetime | None = None
    max_attempts: int | None = Field(default=None, ge=1, le=50)
    idempotency_key: str | None = Field(default=None, max_length=255)


class JobRead(BaseModel):
    """Job response schema."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    job_type: str
    payload: dict
    status: str
    attempts: int
    max_attempts: int
    next_run_at: datetime
    locked_by: str | None
    locked_at: datetime | None
    last_error: str | None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None


class JobListItem(BaseModel):
    """Job list item (minimal)."""
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    job_type: str
    status: str
    attempts: int
    next_run_at: datetime
    created_at: datetime
    completed_at: datetime | None


class JobStatsRow(BaseModel):
    status: str
    job_type: str
    count: int


class JobStats(BaseModel):
    by_status_and_type: list[JobStatsRow]
    total: int


class FailedJob(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: str
    job_type: str
    attempts: int
    max_attempts: int
    last_error: str | None
    updated_at: datetime
