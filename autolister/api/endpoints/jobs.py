from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy import select
from sqlalchemy.orm import Session
import logging
import uuid

from autolister.db import get_session
from autolister.models import Job, JobStage, JobStatus
from autolister.services.job_ledger import JobLedger

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("")
def list_jobs(
    session: Session = Depends(get_session),
    status: str | None = Query(default=None),
    stage: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=200),
):
    """
    Job 원장 조회 (status / stage 필터)
    """
    if status and status.upper() not in (JobStatus.RUNNING, *JobStatus.TERMINAL):
        raise HTTPException(status_code=400, detail=f"Unknown status: {status}")
    if stage and stage.upper() not in JobStage.ALL:
        raise HTTPException(status_code=400, detail=f"Unknown stage: {stage}")

    ledger = JobLedger(session)
    if status and stage:
        jobs = [j for j in ledger.list_by_status(status) if j.stage == stage.upper()][:limit]
    elif status:
        jobs = ledger.list_by_status(status, limit=limit)
    elif stage:
        jobs = ledger.list_by_stage(stage, limit=limit)
    else:
        jobs = session.execute(select(Job).order_by(Job.created_at.desc()).limit(limit)).scalars().all()

    return {"success": True, "data": [job.to_dict() for job in jobs]}


@router.get("/{job_id}")
def get_job(job_id: uuid.UUID, session: Session = Depends(get_session)):
    job = JobLedger(session).get(job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="Job not found")
    return {"success": True, "data": job.to_dict()}
