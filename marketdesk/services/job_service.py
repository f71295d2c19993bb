"""Job service - durable queue operations for background jobs.

Workers claim one due job at a time with a single UPDATE whose target row
is chosen by ``SELECT ... FOR UPDATE SKIP LOCKED``, so concurrent claimers
never block each other and never receive the same job. Every later
transition is a single-row update keyed by id and guarded by the RUNNING
status (and the lock holder, when given).
"""

import logging
from datetime import datetime, timedelta
from uuid import UUID

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session

from marketdesk.core.backoff import BackoffPolicy, job_backoff_policy
from marketdesk.core.config import settings
from marketdesk.db.enums import (
    CLAIMABLE_JOB_STATUSES,
    ConnectionStatus,
    JobStatus,
    JobType,
)
from marketdesk.db.models import Job, MarketplaceConnection
from marketdesk.jobs.payloads import coerce_job_type, validate_job_payload
from marketdesk.types import JsonObject
from marketdesk.utils.dates import ensure_aware, utcnow

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 10000
LEASE_EXPIRED_ERROR = "Lease expired before the job finished"


def _truncate_error(error: str | None) -> str | None:
    if error is None:
        return None
    return error[:MAX_ERROR_LENGTH]


# =============================================================================
# Producer
# =============================================================================


def enqueue_job(
    db: Session,
    job_type: JobType | str,
    tenant_id: str,
    payload: JsonObject | None = None,
    run_at: datetime | None = None,
    max_attempts: int | None = None,
    idempotency_key: str | None = None,
) -> Job:
    """
    Insert a new job.

    The payload is validated against the job type's payload model; unknown
    types raise UnknownJobTypeError and bad payloads raise ValidationError.
    If idempotency_key is provided, a duplicate key fails with IntegrityError
    (caller should catch and handle).
    """
    job_type = coerce_job_type(job_type)
    job = Job(
        tenant_id=str(tenant_id),
        job_type=job_type.value,
        payload=validate_job_payload(job_type, payload),
        status=JobStatus.PENDING.value,
        attempts=0,
        max_attempts=max_attempts or settings.JOB_MAX_ATTEMPTS,
        next_run_at=run_at or utcnow(),
        idempotency_key=idempotency_key,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def enqueue_recurring_jobs(db: Session, now: datetime | None = None) -> dict:
    """
    Enqueue a MARKETPLACE_POLL job for every connected tenant.

    A tenant is skipped while it already has a poll job waiting or running,
    or when one was created within RECURRING_POLL_MIN_INTERVAL_SECONDS.

    Returns:
        {"enqueued": N, "skipped": N, "tenant_ids": [...]}
    """
    now = now or utcnow()
    recent_cutoff = now - timedelta(seconds=settings.RECURRING_POLL_MIN_INTERVAL_SECONDS)
    tenant_ids = db.scalars(
        select(MarketplaceConnection.tenant_id)
        .where(MarketplaceConnection.status == ConnectionStatus.CONNECTED.value)
        .order_by(MarketplaceConnection.created_at)
    ).all()

    result = {"enqueued": 0, "skipped": 0, "tenant_ids": []}
    for tenant_id in tenant_ids:
        existing = db.scalar(
            select(Job.id)
            .where(
                Job.tenant_id == tenant_id,
                Job.job_type == JobType.MARKETPLACE_POLL.value,
                or_(
                    Job.status.in_(
                        [*CLAIMABLE_JOB_STATUSES, JobStatus.RUNNING.value]
                    ),
                    Job.created_at >= recent_cutoff,
                ),
            )
            .limit(1)
        )
        if existing:
            result["skipped"] += 1
            continue
        enqueue_job(db, JobType.MARKETPLACE_POLL, tenant_id, {}, run_at=now)
        result["enqueued"] += 1
        result["tenant_ids"].append(tenant_id)

    logger.info(
        "Recurring poll jobs: enqueued=%s skipped=%s",
        result["enqueued"],
        result["skipped"],
    )
    return result


# =============================================================================
# Claim + transitions
# =============================================================================


def claim_next_job(
    db: Session,
    worker_id: str,
    job_types: list[JobType] | None = None,
    now: datetime | None = None,
) -> Job | None:
    """
    Atomically claim the oldest due PENDING/RETRY job for this worker.

    Returns None when nothing is due. The claim commits immediately so the
    row lock is held only for the duration of the UPDATE.
    """
    now = now or utcnow()
    candidate = (
        select(Job.id)
        .where(
            Job.status.in_(CLAIMABLE_JOB_STATUSES),
            Job.next_run_at <= now,
        )
        .order_by(Job.next_run_at, Job.created_at)
        .limit(1)
        .with_for_update(skip_locked=True)
    )
    if job_types:
        candidate = candidate.where(Job.job_type.in_([t.value for t in job_types]))

    stmt = (
        update(Job)
        .where(
            Job.id == candidate.scalar_subquery(),
            Job.status.in_(CLAIMABLE_JOB_STATUSES),
        )
        .values(
            status=JobStatus.RUNNING.value,
            locked_by=worker_id,
            locked_at=now,
            updated_at=now,
        )
        .returning(Job.id)
        .execution_options(synchronize_session=False)
    )
    job_id = db.scalar(stmt)
    db.commit()
    if job_id is None:
        return None
    return db.get(Job, job_id, populate_existing=True)


def _get_running_job(db: Session, job_id: UUID, worker_id: str | None) -> Job | None:
    job = db.get(Job, job_id, with_for_update=True, populate_existing=True)
    if not job or job.status != JobStatus.RUNNING.value:
        return None
    if worker_id and job.locked_by != worker_id:
        return None
    return job


def mark_job_done(db: Session, job_id: UUID, worker_id: str | None = None) -> Job | None:
    """Mark a running job as done and clear its lock and last error.

    Returns None (and changes nothing) if the job is no longer running under
    this worker, e.g. after its lease was reclaimed.
    """
    job = _get_running_job(db, job_id, worker_id)
    if job is None:
        db.rollback()
        logger.warning("Job %s was not running under %s; done ignored", job_id, worker_id)
        return None
    now = utcnow()
    job.status = JobStatus.DONE.value
    job.locked_by = None
    job.locked_at = None
    job.last_error = None
    job.completed_at = now
    job.updated_at = now
    db.commit()
    db.refresh(job)
    return job


def _apply_failure(job: Job, error: str, policy: BackoffPolicy, now: datetime) -> None:
    job.attempts += 1
    job.last_error = _truncate_error(error)
    job.locked_by = None
    job.locked_at = None
    job.updated_at = now
    if job.attempts < job.max_attempts:
        job.status = JobStatus.RETRY.value
        job.next_run_at = policy.next_run_at(job.attempts, now=now)
    else:
        job.status = JobStatus.FAILED.value
        job.completed_at = now


def mark_job_failed(
    db: Session,
    job_id: UUID,
    error: str,
    worker_id: str | None = None,
    policy: BackoffPolicy | None = None,
    now: datetime | None = None,
) -> Job | None:
    """
    Record a failed attempt.

    Increments attempts. Below max_attempts the job moves to RETRY with
    next_run_at = now + backoff(attempts); otherwise it becomes FAILED.
    """
    job = _get_running_job(db, job_id, worker_id)
    if job is None:
        db.rollback()
        logger.warning("Job %s was not running under %s; failure ignored", job_id, worker_id)
        return None
    _apply_failure(job, error, policy or job_backoff_policy(), now or utcnow())
    db.commit()
    db.refresh(job)
    return job


def defer_job(
    db: Session,
    job_id: UUID,
    delay_seconds: float,
    reason: str,
    worker_id: str | None = None,
) -> Job | None:
    """Hand a claimed job back without spending an attempt (lock contention)."""
    job = _get_running_job(db, job_id, worker_id)
    if job is None:
        db.rollback()
        return None
    now = utcnow()
    job.status = JobStatus.RETRY.value
    job.next_run_at = now + timedelta(seconds=delay_seconds)
    job.locked_by = None
    job.locked_at = None
    job.last_error = _truncate_error(reason)
    job.updated_at = now
    db.commit()
    db.refresh(job)
    return job


def renew_job_lease(db: Session, job_id: UUID, worker_id: str) -> bool:
    """Heartbeat: push locked_at forward for the current holder."""
    now = utcnow()
    result = db.execute(
        update(Job)
        .where(
            Job.id == job_id,
            Job.status == JobStatus.RUNNING.value,
            Job.locked_by == worker_id,
        )
        .values(locked_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def reclaim_stale_jobs(
    db: Session,
    lease_seconds: int | None = None,
    now: datetime | None = None,
) -> int:
    """
    Recover RUNNING jobs whose holder stopped renewing its lease.

    Each one counts as a failed attempt, so a job that keeps crashing its
    worker still ends in FAILED.
    """
    now = now or utcnow()
    lease = lease_seconds if lease_seconds is not None else settings.JOB_LEASE_SECONDS
    cutoff = now - timedelta(seconds=lease)
    stale = db.scalars(
        select(Job)
        .where(Job.status == JobStatus.RUNNING.value, Job.locked_at < cutoff)
        .with_for_update(skip_locked=True)
    ).all()
    policy = job_backoff_policy()
    for job in stale:
        logger.warning(
            "Reclaiming job %s held by %s since %s",
            job.id,
            job.locked_by,
            ensure_aware(job.locked_at),
        )
        _apply_failure(job, LEASE_EXPIRED_ERROR, policy, now)
    db.commit()
    return len(stale)


def replay_job(db: Session, job_id: UUID) -> Job | None:
    """Put a FAILED job back in the queue with a fresh attempt budget."""
    job = db.get(Job, job_id)
    if not job or job.status != JobStatus.FAILED.value:
        return None
    now = utcnow()
    job.status = JobStatus.PENDING.value
    job.attempts = 0
    job.next_run_at = now
    job.last_error = None
    job.completed_at = None
    job.updated_at = now
    db.commit()
    db.refresh(job)
    return job


# =============================================================================
# Inspection (read-only)
# =============================================================================


def get_job(db: Session, job_id: UUID, tenant_id: str | None = None) -> Job | None:
    """Get a job by ID, optionally scoped to a tenant."""
    stmt = select(Job).where(Job.id == job_id)
    if tenant_id:
        stmt = stmt.where(Job.tenant_id == tenant_id)
    return db.scalar(stmt)


def list_jobs(
    db: Session,
    tenant_id: str | None = None,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    limit: int = 50,
) -> list[Job]:
    """List jobs, newest first, with optional filters."""
    stmt = select(Job)
    if tenant_id:
        stmt = stmt.where(Job.tenant_id == tenant_id)
    if status:
        stmt = stmt.where(Job.status == status.value)
    if job_type:
        stmt = stmt.where(Job.job_type == job_type.value)
    return list(db.scalars(stmt.order_by(Job.created_at.desc()).limit(limit)).all())


def get_job_stats(db: Session) -> dict:
    """Count jobs grouped by status and type."""
    rows = db.execute(
        select(Job.status, Job.job_type, func.count(Job.id))
        .group_by(Job.status, Job.job_type)
        .order_by(Job.status, Job.job_type)
    ).all()
    by_status_and_type = [
        {"status": status, "job_type": job_type, "count": count}
        for status, job_type, count in rows
    ]
    return {
        "by_status_and_type": by_status_and_type,
        "total": sum(row["count"] for row in by_status_and_type),
    }


def get_recent_failed_jobs(db: Session, limit: int = 20) -> list[Job]:
    """Most recently failed jobs, newest first."""
    return list(
        db.scalars(
            select(Job)
            .where(Job.status == JobStatus.FAILED.value)
            .order_by(Job.updated_at.desc())
            .limit(limit)
        ).all()
    )
