"""MindfulAI — Background Job Tracking.

`background_jobs` is what the dashboard polls. Status writes are
best-effort: a failed write is logged and never aborts the sync itself.
"""

import random
import string
import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from sqlmodel import Session, select

from app.core.logging import get_logger
from app.models.job_models import (
    ACTIVE_STATUSES,
    SYNC_JOB_TYPE,
    BackgroundJob,
    JobStatus,
)
from app.models.meta_models import utcnow

logger = get_logger("jobs")

_ID_ALPHABET = string.ascii_lowercase + string.digits


class JobNotFoundError(LookupError):
    """No job exists for the request ID."""


class JobStateError(ValueError):
    """The job is in a state that forbids the requested transition."""


def _clamp(progress: int) -> int:
    return max(0, min(100, int(progress)))


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def get_job(session: Session, request_id: str) -> Optional[BackgroundJob]:
    return session.exec(
        select(BackgroundJob).where(BackgroundJob.request_id == request_id)
    ).first()


def create_job(
    session: Session, request_id: str, job_type: str = SYNC_JOB_TYPE
) -> BackgroundJob:
    """Create a `queued` job row (or return the existing one)."""
    job = get_job(session, request_id)
    if job is not None:
        return job
    job = BackgroundJob(
        request_id=request_id,
        job_type=job_type,
        status=JobStatus.QUEUED.value,
        progress=0,
    )
    session.add(job)
    session.commit()
    session.refresh(job)
    logger.info(f"🆕 Job {request_id} queued", extra={"request_id": request_id})
    return job


def update_job_status(
    session: Session,
    request_id: str,
    status: JobStatus,
    progress: Optional[int] = None,
    error_message: Optional[str] = None,
    result_data: Optional[Dict[str, Any]] = None,
    monotonic: bool = False,
) -> Optional[BackgroundJob]:
    """Upsert a job's status. A job in a terminal state is never reopened.

    With `monotonic`, progress never drops below the stored value (follow-up
    messages only see the work left, not the whole run).
    """
    status = JobStatus(status)
    try:
        job = get_job(session, request_id)
        if job is None:
            job = BackgroundJob(request_id=request_id, job_type=SYNC_JOB_TYPE)
        elif JobStatus(job.status).is_terminal:
            if job.status != status.value:
                logger.info(
                    f"Job {request_id} is {job.status}; ignoring transition to {status.value}",
                    extra={"request_id": request_id},
                )
            return job

        now = utcnow()
        job.status = status.value
        if progress is not None:
            progress = _clamp(progress)
            if monotonic and job.progress and job.progress > progress:
                progress = job.progress
            job.progress = progress
        if error_message is not None:
            job.error_message = error_message
        if result_data is not None:
            job.result_data = result_data
        job.updated_at = now
        if status.is_terminal:
            job.completed_at = now

        session.add(job)
        session.commit()
        session.refresh(job)
        return job
    except Exception as e:
        session.rollback()
        logger.error(
            f"❌ Failed to update job {request_id} to {status.value}: {e}",
            extra={"request_id": request_id},
        )
        return None


def is_cancelled(session: Session, request_id: str) -> bool:
    try:
        job = get_job(session, request_id)
    except Exception as e:
        logger.warning(f"Cancellation check failed for {request_id}: {e}")
        return False
    return job is not None and job.status == JobStatus.CANCELLED.value


def cancel_job(
    session: Session, request_id: str, reason: str = "Job cancelled by user"
) -> BackgroundJob:
    """Cancel one job, keeping its progress."""
    job = get_job(session, request_id)
    if job is None:
        raise JobNotFoundError(f"Job {request_id} not found")
    if job.status == JobStatus.CANCELLED.value:
        return job
    if job.status in (JobStatus.COMPLETED.value, JobStatus.FAILED.value):
        raise JobStateError(f"Cannot cancel a job that is already {job.status}")

    now = utcnow()
    job.status = JobStatus.CANCELLED.value
    job.error_message = reason
    job.updated_at = now
    job.completed_at = now
    session.add(job)
    session.commit()
    session.refresh(job)
    logger.info(f"🛑 Job {request_id} cancelled", extra={"request_id": request_id})
    return job


def cancel_active_jobs(
    session: Session, reason: str = "Emergency stop - all jobs cancelled"
) -> List[str]:
    """Cancel every queued or processing job. Returns their request IDs."""
    jobs = session.exec(
        select(BackgroundJob).where(
            BackgroundJob.status.in_([s.value for s in ACTIVE_STATUSES])
        )
    ).all()
    now = utcnow()
    for job in jobs:
        job.status = JobStatus.CANCELLED.value
        job.error_message = reason
        job.updated_at = now
        job.completed_at = now
        session.add(job)
    session.commit()
    cancelled = [job.request_id for job in jobs]
    logger.warning(f"🚨 Emergency stop cancelled {len(cancelled)} active jobs")
    return cancelled


def list_jobs(
    session: Session,
    job_type: Optional[str] = None,
    limit: int = 10,
    statuses: Optional[Sequence[JobStatus]] = None,
) -> List[BackgroundJob]:
    query = select(BackgroundJob)
    if job_type:
        query = query.where(BackgroundJob.job_type == job_type)
    if statuses:
        query = query.where(BackgroundJob.status.in_([JobStatus(s).value for s in statuses]))
    query = query.order_by(BackgroundJob.created_at.desc()).limit(limit)
    return list(session.exec(query).all())


def status_summary(jobs: Sequence[BackgroundJob]) -> Dict[str, int]:
    summary = {status.value: 0 for status in JobStatus}
    for job in jobs:
        summary[job.status] = summary.get(job.status, 0) + 1
    summary["total"] = len(jobs)
    return summary


def estimate_time_remaining(
    job: BackgroundJob, now: Optional[datetime] = None
) -> Optional[int]:
    """Seconds left for a processing job, extrapolated from its progress."""
    if job.status != JobStatus.PROCESSING.value or not (0 < job.progress < 100):
        return None
    now = now or utcnow()
    elapsed = (now - as_utc(job.created_at)).total_seconds()
    total = elapsed / (job.progress / 100)
    return max(0, round(total - elapsed))


def serialize_job(job: BackgroundJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "request_id": job.request_id,
        "job_type": job.job_type,
        "status": job.status,
        "progress": job.progress,
        "error_message": job.error_message,
        "result_data": job.result_data,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "updated_at": job.updated_at.isoformat() if job.updated_at else None,
        "completed_at": job.completed_at.isoformat() if job.completed_at else None,
        "estimated_time_remaining": estimate_time_remaining(job),
    }


def new_request_id(prefix: str = "meta") -> str:
    """`<prefix>-<epoch ms>-<9 random base36 chars>`."""
    suffix = "".join(random.choices(_ID_ALPHABET, k=9))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"
