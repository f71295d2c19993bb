"""Jobs router - enqueue and inspect background jobs (internal callers only)."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketdesk.core.deps import get_db, verify_internal_secret
from marketdesk.db.enums import JobStatus, JobType
from marketdesk.jobs.payloads import UnknownJobTypeError
from marketdesk.schemas.job import JobEnqueue, JobListItem, JobRead
from marketdesk.services import job_service

router = APIRouter(
    prefix="/jobs",
    tags=["Jobs"],
    dependencies=[Depends(verify_internal_secret)],
)


@router.post("", response_model=JobRead, status_code=201)
def enqueue_job(data: JobEnqueue, db: Session = Depends(get_db)):
    """Enqueue a job. The payload is validated against the job type."""
    try:
        return job_service.enqueue_job(
            db,
            data.job_type,
            data.tenant_id,
            data.payload,
            run_at=data.run_at,
            max_attempts=data.max_attempts,
            idempotency_key=data.idempotency_key,
        )
    except UnknownJobTypeError as e:
        raise HTTPException(status_code=422, detail=str(e))
    except ValidationError as e:
        raise HTTPException(status_code=422, detail=e.errors(include_url=False))
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Duplicate idempotency key")


@router.get("", response_model=list[JobListItem])
def list_jobs(
    tenant_id: str | None = None,
    status: JobStatus | None = None,
    job_type: JobType | None = None,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """List recent jobs, newest first."""
    return job_service.list_jobs(
        db,
        tenant_id=tenant_id,
        status=status,
        job_type=job_type,
        limit=min(limit, 100),
    )


@router.get("/{job_id}", response_model=JobRead)
def get_job(job_id: UUID, db: Session = Depends(get_db)):
    job = job_service.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job


@router.post("/{job_id}/replay", response_model=JobRead)
def replay_job(job_id: UUID, db: Session = Depends(get_db)):
    """Requeue a FAILED job with a fresh attempt budget."""
    job = job_service.get_job(db, job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    replayed = job_service.replay_job(db, job_id)
    if not replayed:
        raise HTTPException(status_code=409, detail="Only failed jobs can be replayed")
    return replayed
