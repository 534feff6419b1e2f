"""Job service - background job scheduling and processing."""

from datetime import datetime, timezone
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from replyready.db.enums import JobStatus, JobType
from replyready.db.models import Job


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def schedule_job(
    db: Session,
    job_type: JobType,
    payload: dict,
    *,
    agent_id: UUID | None = None,
    run_at: datetime | None = None,
    idempotency_key: str | None = None,
) -> Job:
    """
    Schedule a new background job.

    If run_at is None, the job runs immediately.
    If idempotency_key is provided, duplicate jobs with same key will fail
    with IntegrityError (caller should catch and handle, or use enqueue_once).
    """
    job = Job(
        agent_id=agent_id,
        job_type=job_type.value,
        payload=payload,
        run_at=run_at or _now_utc(),
        status=JobStatus.PENDING.value,
        idempotency_key=idempotency_key,
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def enqueue_once(
    db: Session,
    job_type: JobType,
    payload: dict,
    *,
    idempotency_key: str,
    agent_id: UUID | None = None,
) -> Job | None:
    """Schedule a job unless one with the same key exists. Returns None on duplicate."""
    existing = db.query(Job).filter(Job.idempotency_key == idempotency_key).first()
    if existing:
        return None
    try:
        return schedule_job(
            db,
            job_type,
            payload,
            agent_id=agent_id,
            idempotency_key=idempotency_key,
        )
    except IntegrityError:
        db.rollback()
        return None


def has_active_job(db: Session, job_type: JobType, *, connection_id: UUID) -> bool:
    """True if a pending/running job of this type exists for the connection."""
    jobs = (
        db.query(Job)
        .filter(
            Job.job_type == job_type.value,
            Job.status.in_([JobStatus.PENDING.value, JobStatus.RUNNING.value]),
        )
        .all()
    )
    return any((job.payload or {}).get("connection_id") == str(connection_id) for job in jobs)


def get_pending_jobs(db: Session, limit: int = 10) -> list[Job]:
    """
    Get pending jobs that are due to run.

    Returns jobs where status='pending' and run_at <= now, ordered by run_at.
    """
    now = _now_utc()
    return (
        db.query(Job)
        .filter(
            Job.status == JobStatus.PENDING.value,
            Job.run_at <= now,
        )
        .order_by(Job.run_at)
        .limit(limit)
        .all()
    )


def claim_job(db: Session, job: Job) -> bool:
    """Move a job pending -> running with a conditional update; False if another worker won."""
    updated = (
        db.query(Job)
        .filter(Job.id == job.id, Job.status == JobStatus.PENDING.value)
        .update(
            {Job.status: JobStatus.RUNNING.value, Job.attempts: Job.attempts + 1},
            synchronize_session=False,
        )
    )
    db.commit()
    if updated:
        db.refresh(job)
    return bool(updated)


def mark_job_completed(db: Session, job: Job) -> Job:
    """Mark a job as completed."""
    job.status = JobStatus.COMPLETED.value
    job.completed_at = _now_utc()
    job.last_error = None
    db.commit()
    db.refresh(job)
    return job


def mark_job_failed(db: Session, job: Job, error: str) -> Job:
    """
    Mark a job as failed.

    If attempts < max_attempts, reset to pending for retry.
    """
    job.last_error = error[:500]
    if job.attempts < job.max_attempts:
        job.status = JobStatus.PENDING.value
    else:
        job.status = JobStatus.FAILED.value
    db.commit()
    db.refresh(job)
    return job
