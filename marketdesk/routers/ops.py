"""Ops router - queue health reads for operators."""

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from marketdesk.core.deps import get_db, verify_ops_key
from marketdesk.schemas.job import FailedJob, JobStats
from marketdesk.services import job_service

router = APIRouter(
    prefix="/internal/ops",
    tags=["ops"],
    dependencies=[Depends(verify_ops_key)],
)


@router.get("/jobs/stats", response_model=JobStats)
def job_stats(db: Session = Depends(get_db)):
    """Job counts by status and type."""
    return job_service.get_job_stats(db)


@router.get("/jobs/failed", response_model=list[FailedJob])
def failed_jobs(
    limit: int = Query(default=20, ge=1, le=100),
    db: Session = Depends(get_db),
):
    """Most recent terminally failed jobs."""
    return job_service.get_recent_failed_jobs(db, limit=limit)
