from datetime import timedelta
import threading
import uuid

import pytest
from pydantic import ValidationError
from sqlalchemy.exc import IntegrityError

from marketdesk.core.backoff import BackoffPolicy
from marketdesk.db.enums import JobStatus, JobType
from marketdesk.db.models import Job
from marketdesk.db.session import SessionLocal, engine, is_postgres
from marketdesk.jobs.payloads import UnknownJobTypeError
from marketdesk.services import job_service
from marketdesk.utils.dates import ensure_aware, utcnow

from conftest import make_connection


def test_enqueue_validates_payload(db):
    job = job_service.enqueue_job(db, JobType.MARKETPLACE_BACKFILL, "t1", {"days": 30})
    assert job.status == JobStatus.PENDING.value
    assert job.attempts == 0
    assert job.payload == {"days": 30}

    with pytest.raises(ValidationError):
        job_service.enqueue_job(db, JobType.MARKETPLACE_BACKFILL, "t1", {"days": 0})
    with pytest.raises(ValidationError):
        job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1", {"unexpected": True})
    with pytest.raises(UnknownJobTypeError):
        job_service.enqueue_job(db, "not_a_job", "t1", {})


def test_enqueue_duplicate_idempotency_key_rejected(db):
    job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1", idempotency_key="poll-t1")
    with pytest.raises(IntegrityError):
        job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1", idempotency_key="poll-t1")
    db.rollback()
    assert db.query(Job).count() == 1


def test_claim_marks_running_and_skips_future_jobs(db):
    due = job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1")
    job_service.enqueue_job(
        db, JobType.MARKETPLACE_POLL, "t2", run_at=utcnow() + timedelta(hours=1)
    )

    claimed = job_service.claim_next_job(db, "worker-a")
    assert claimed.id == due.id
    assert claimed.status == JobStatus.RUNNING.value
    assert claimed.locked_by == "worker-a"
    assert claimed.locked_at is not None
    # Claiming does not spend an attempt
    assert claimed.attempts == 0

    assert job_service.claim_next_job(db, "worker-b") is None


def test_claim_orders_by_next_run_at(db):
    now = utcnow()
    later = job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1", run_at=now - timedelta(seconds=5))
    earlier = job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t2", run_at=now - timedelta(seconds=60))

    assert job_service.claim_next_job(db, "w").id == earlier.id
    assert job_service.claim_next_job(db, "w").id == later.id


def test_claim_filters_by_type(db):
    job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1")
    send = job_service.enqueue_job(
        db, JobType.OUTBOUND_SEND, "t1", {"delivery_id": str(uuid.uuid4())}
    )

    claimed = job_service.claim_next_job(db, "w", job_types=[JobType.OUTBOUND_SEND])
    assert claimed.id == send.id


def test_enqueue_claim_done_end_to_end(db):
    job = job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1")
    claimed = job_service.claim_next_job(db, "worker-a")
    done = job_service.mark_job_done(db, claimed.id, worker_id="worker-a")

    assert done.id == job.id
    assert done.status == JobStatus.DONE.value
    assert done.locked_by is None
    assert done.completed_at is not None
    assert job_service.claim_next_job(db, "worker-a") is None


def test_done_ignored_for_other_holder(db):
    job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1")
    claimed = job_service.claim_next_job(db, "worker-a")

    assert job_service.mark_job_done(db, claimed.id, worker_id="worker-b") is None
    db.refresh(claimed)
    assert claimed.status == JobStatus.RUNNING.value


def test_failure_schedules_retry_with_growing_backoff(db):
    job = job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1", max_attempts=5)
    delays = []
    for expected_attempts in range(1, 4):
        now = utcnow()
        db.query(Job).filter(Job.id == job.id).update({"next_run_at": now})
        db.commit()
        claimed = job_service.claim_next_job(db, "w", now=now)
        assert claimed is not None
        failed = job_service.mark_job_failed(db, claimed.id, "boom", worker_id="w", now=now)
        assert failed.status == JobStatus.RETRY.value
        assert failed.attempts == expected_attempts
        assert failed.last_error == "boom"
        assert failed.locked_by is None
        delays.append((ensure_aware(failed.next_run_at) - now).total_seconds())

    assert delays == pytest.approx([2.0, 4.0, 8.0], abs=0.01)


def test_failure_backoff_respects_cap(db):
    job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1", max_attempts=10)
    policy = BackoffPolicy(base_seconds=1.0, multiplier=2.0, cap_seconds=3.0)
    now = utcnow()
    claimed = job_service.claim_next_job(db, "w", now=now)
    claimed.attempts = 4
    db.commit()

    failed = job_service.mark_job_failed(db, claimed.id, "boom", worker_id="w", policy=policy, now=now)
    assert (ensure_aware(failed.next_run_at) - now).total_seconds() == pytest.approx(3.0, abs=0.01)


def test_job_fails_terminally_after_max_attempts(db):
    job = job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1", max_attempts=3)
    instant = BackoffPolicy(base_seconds=0)

    for attempt in range(1, 4):
        claimed = job_service.claim_next_job(db, "w")
        assert claimed is not None, f"attempt {attempt} should be claimable"
        result = job_service.mark_job_failed(
            db, claimed.id, f"error {attempt}", worker_id="w", policy=instant
        )
        expected = JobStatus.FAILED.value if attempt == 3 else JobStatus.RETRY.value
        assert result.status == expected

    db.refresh(job)
    assert job.attempts == 3
    assert job.last_error == "error 3"
    assert job.completed_at is not None
    assert job_service.claim_next_job(db, "w") is None


def test_failure_error_is_truncated(db):
    job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1")
    claimed = job_service.claim_next_job(db, "w")
    failed = job_service.mark_job_failed(db, claimed.id, "x" * 20000, worker_id="w")
    assert len(failed.last_error) == job_service.MAX_ERROR_LENGTH


def test_defer_does_not_spend_attempt(db):
    job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1")
    claimed = job_service.claim_next_job(db, "w")

    deferred = job_service.defer_job(db, claimed.id, 30, "busy", worker_id="w")
    assert deferred.status == JobStatus.RETRY.value
    assert deferred.attempts == 0
    assert deferred.last_error == "busy"
    assert ensure_aware(deferred.next_run_at) > utcnow() + timedelta(seconds=25)


def test_reclaim_stale_jobs_counts_as_failure(db):
    job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1", max_attempts=2)
    claimed = job_service.claim_next_job(db, "crashed-worker")

    assert job_service.reclaim_stale_jobs(db, lease_seconds=60) == 0

    later = utcnow() + timedelta(minutes=5)
    assert job_service.reclaim_stale_jobs(db, lease_seconds=60, now=later) == 1
    db.refresh(claimed)
    assert claimed.status == JobStatus.RETRY.value
    assert claimed.attempts == 1
    assert claimed.locked_by is None
    assert claimed.last_error == job_service.LEASE_EXPIRED_ERROR


def test_renew_lease_keeps_job_from_reclaim(db):
    past = utcnow() - timedelta(minutes=10)
    job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1", run_at=past - timedelta(seconds=1))
    claimed = job_service.claim_next_job(db, "w", now=past)

    assert job_service.renew_job_lease(db, claimed.id, "someone-else") is False
    assert job_service.renew_job_lease(db, claimed.id, "w") is True
    assert job_service.reclaim_stale_jobs(db, lease_seconds=60) == 0


def test_replay_only_failed_jobs(db):
    job = job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1", max_attempts=1)
    assert job_service.replay_job(db, job.id) is None

    claimed = job_service.claim_next_job(db, "w")
    job_service.mark_job_failed(db, claimed.id, "boom", worker_id="w")

    replayed = job_service.replay_job(db, job.id)
    assert replayed.status == JobStatus.PENDING.value
    assert replayed.attempts == 0
    assert replayed.last_error is None
    assert job_service.claim_next_job(db, "w").id == job.id


def test_stats_and_failed_listing(db):
    job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t1")
    job_service.enqueue_job(db, JobType.MARKETPLACE_POLL, "t2")
    failing = job_service.enqueue_job(db, JobType.MARKETPLACE_BACKFILL, "t1", max_attempts=1)
    db.query(Job).filter(Job.id != failing.id).update({"next_run_at": utcnow() + timedelta(hours=1)})
    db.commit()
    claimed = job_service.claim_next_job(db, "w")
    job_service.mark_job_failed(db, claimed.id, "kaput", worker_id="w")

    stats = job_service.get_job_stats(db)
    assert stats["total"] == 3
    rows = {(r["status"], r["job_type"]): r["count"] for r in stats["by_status_and_type"]}
    assert rows[(JobStatus.PENDING.value, JobType.MARKETPLACE_POLL.value)] == 2
    assert rows[(JobStatus.FAILED.value, JobType.MARKETPLACE_BACKFILL.value)] == 1

    failed = job_service.get_recent_failed_jobs(db)
    assert [j.id for j in failed] == [failing.id]
    assert job_service.list_jobs(db, tenant_id="t2")[0].tenant_id == "t2"
    assert job_service.get_job(db, failing.id, tenant_id="t2") is None


def test_enqueue_recurring_skips_tenants_with_open_poll(db):
    make_connection(db, "t1")
    make_connection(db, "t2")

    first = job_service.enqueue_recurring_jobs(db)
    assert first["enqueued"] == 2
    assert sorted(first["tenant_ids"]) == ["t1", "t2"]

    second = job_service.enqueue_recurring_jobs(db)
    assert second == {"enqueued": 0, "skipped": 2, "tenant_ids": []}


def test_claim_skip_locked_concurrent_workers():
    if not is_postgres():
        pytest.skip("SKIP LOCKED behavior requires PostgreSQL")

    from marketdesk.db.base import Base

    Base.metadata.create_all(engine)
    setup = SessionLocal()
    try:
        job_ids = {
            job_service.enqueue_job(setup, JobType.MARKETPLACE_POLL, f"race-{i}").id
            for i in range(20)
        }
    finally:
        setup.close()

    claimed: list = []
    lock = threading.Lock()

    def _worker(name: str) -> None:
        session = SessionLocal()
        try:
            while True:
                job = job_service.claim_next_job(session, name)
                if job is None:
                    return
                with lock:
                    claimed.append(job.id)
        finally:
            session.close()

    threads = [threading.Thread(target=_worker, args=(f"w{i}",)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    cleanup = SessionLocal()
    try:
        cleanup.query(Job).filter(Job.id.in_(job_ids)).delete(synchronize_session=False)
        cleanup.commit()
    finally:
        cleanup.close()

    assert len(claimed) == len(set(claimed))
    assert set(claimed) >= job_ids
