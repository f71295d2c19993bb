"""Pydantic schemas for marketplace sync status and runs."""

from datetime import datetime

from pydantic import BaseModel


class SyncRunResult(BaseModel):
    success: bool
    tenant_id: str
    orders_processed: int
    items_processed: int
    errors: list[str]
    error: str | None
    cursor: str | None
    duration_ms: int


class BackfillRunResult(SyncRunResult):
    days: int


class MissingItemsResult(BaseModel):
    success: bool
    tenant_id: str
    orders_checked: int
    orders_fixed: int
    errors: list[str]
    error: str | None


class SyncStatus(BaseModel):
    tenant_id: str
    connected: bool
    cursor: str | None
    last_polled_at: datetime | None
    last_success_at: datetime | None
    last_error: str | None
    backfill_status: str
    needs_backfill: bool
    orders_count: int
    items_count: int
    orders_without_items: int


class BackfillStatusRead(BaseModel):
    tenant_id: str
    status: str
    days: int | None
    started_at: datetime | None
    done_at: datetime | None
    orders_count: int
    oldest_order_date: datetime | None


class TenantSyncOutcome(BaseModel):
    tenant_id: str
    status: str
    orders_processed: int
    error: str | None
    detail: str | None


class GlobalSyncResult(BaseModel):
    success: bool
    tenants_processed: int
    tenants_skipped: int
    results: list[TenantSyncOutcome]
    total_duration_ms: int


class TenantSyncSummary(BaseModel):
    tenant_id: str
    cursor: str | None
    last_polled_at: datetime | None
    last_success_at: datetime | None
    last_error: str | None
    backfill_status: str | None


class GlobalSyncStatus(BaseModel):
    tenants: list[TenantSyncSummary]
    total_connected: int
    never_synced: int


class RecurringEnqueueResult(BaseModel):
    enqueued: int
    skipped: int
    tenant_ids: list[str]
