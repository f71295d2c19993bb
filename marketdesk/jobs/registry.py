"""Job handler registry.

Each JobType maps to one handler taking (db, job, typed payload, client
factory). Job types listed in TENANT_LOCKED_JOB_TYPES run under the
tenant's sync lock, which the worker takes before dispatch and always
releases afterwards.
"""

from __future__ import annotations

from typing import Awaitable, Callable, Mapping

from marketdesk.db.enums import JobType
from marketdesk.jobs.handlers import marketplace, outbound
from marketdesk.jobs.payloads import coerce_job_type
from marketdesk.services.lock_service import LockKey, tenant_sync_lock

JobHandler = Callable[[object, object, object, object], Awaitable[None]]

JOB_HANDLERS: Mapping[str, JobHandler] = {
    JobType.MARKETPLACE_POLL.value: marketplace.process_marketplace_poll,
    JobType.MARKETPLACE_BACKFILL.value: marketplace.process_marketplace_backfill,
    JobType.MARKETPLACE_MISSING_ITEMS.value: marketplace.process_marketplace_missing_items,
    JobType.OUTBOUND_SEND.value: outbound.process_outbound_send,
}

TENANT_LOCKED_JOB_TYPES = frozenset(
    {
        JobType.MARKETPLACE_POLL.value,
        JobType.MARKETPLACE_BACKFILL.value,
        JobType.MARKETPLACE_MISSING_ITEMS.value,
    }
)


def resolve_job_handler(job_type: str) -> JobHandler:
    try:
        return JOB_HANDLERS[coerce_job_type(job_type).value]
    except (KeyError, ValueError) as exc:
        raise ValueError(f"Unknown job type: {job_type}") from exc


def lock_key_for(job) -> LockKey | None:
    """Auxiliary lock the worker must hold while running this job, if any."""
    if job.job_type in TENANT_LOCKED_JOB_TYPES:
        return tenant_sync_lock(job.tenant_id)
    return None
