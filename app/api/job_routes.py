"""MindfulAI — Job Status & Queue Management Routes."""

from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from sqlmodel import Session, select

from app.config import settings
from app.core.logging import get_logger
from app.database import get_session
from app.models.job_models import ACTIVE_STATUSES, MetaCronLog
from app.sync import jobs

logger = get_logger("api.jobs")

router = APIRouter(prefix="/api", tags=["Jobs"])


@router.get("/job-status")
async def job_status(
    request_id: Optional[str] = Query(None, alias="requestId"),
    limit: int = Query(10, ge=1, le=100),
    job_type: Optional[str] = Query(None, alias="type"),
    session: Session = Depends(get_session),
):
    """One job by requestId, or the most recent jobs with a status summary."""
    if request_id:
        job = jobs.get_job(session, request_id)
        if job is None:
            raise HTTPException(status_code=404, detail="Job not found")
        return {"job": jobs.serialize_job(job)}

    recent = jobs.list_jobs(session, job_type=job_type, limit=limit)
    return {
        "jobs": [jobs.serialize_job(job) for job in recent],
        "summary": jobs.status_summary(recent),
    }


@router.post("/job-status")
async def cron_logs(
    limit: int = Body(10, embed=True, ge=1, le=100),
    session: Session = Depends(get_session),
):
    """Recent runs of the daily fan-out."""
    logs = session.exec(
        select(MetaCronLog).order_by(MetaCronLog.execution_time.desc()).limit(limit)
    ).all()
    return {
        "logs": [
            {
                "id": log.id,
                "execution_time": log.execution_time.isoformat(),
                "accounts_processed": log.accounts_processed,
                "successful_accounts": log.successful_accounts,
                "failed_accounts": log.failed_accounts,
                "results": log.results,
            }
            for log in logs
        ]
    }


@router.get("/qstash-queue-manager")
async def queue_status(session: Session = Depends(get_session)):
    active = jobs.list_jobs(session, limit=100, statuses=ACTIVE_STATUSES)
    return {
        "activeJobs": [jobs.serialize_job(job) for job in active],
        "count": len(active),
        "workerDisabled": settings.worker_disabled,
        "globalKillSwitch": settings.global_worker_kill_switch,
        "killSwitchActive": settings.kill_switch_active,
    }


@router.post("/qstash-queue-manager")
async def emergency_stop(session: Session = Depends(get_session)):
    """Cancel every queued or processing job."""
    cancelled = jobs.cancel_active_jobs(session)
    return {
        "success": True,
        "cancelledJobs": cancelled,
        "count": len(cancelled),
        "message": f"Emergency stop: cancelled {len(cancelled)} jobs",
    }
