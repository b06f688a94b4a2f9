"""System API: health check, scheduler status, job logs, dead letters, manual sweep."""

from dataclasses import asdict

from fastapi import APIRouter, Depends, HTTPException
from sqlmodel import Session, select

from session_guard.api.deps import get_runtime
from session_guard.engine.runtime import Runtime
from session_guard.models.job_log import JobLog
from session_guard.schemas.session import JobRecord

router = APIRouter(prefix="/api/system", tags=["system"])


@router.get("/health")
def health_check():
    return {"status": "ok"}


@router.get("/scheduler")
def scheduler_status(runtime: Runtime = Depends(get_runtime)):
    """Current scheduler state with trigger details."""
    return runtime.scheduler.status()


@router.get("/jobs", response_model=list[JobRecord])
def list_jobs(
    session_id: str | None = None,
    state: str | None = None,
    runtime: Runtime = Depends(get_runtime),
):
    return [job.to_record() for job in runtime.scheduler.list_jobs(session_id=session_id, state=state)]


@router.get("/jobs/{job_id}", response_model=JobRecord)
def get_job(job_id: str, runtime: Runtime = Depends(get_runtime)):
    job = runtime.scheduler.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return job.to_record()


@router.get("/dead-letters", response_model=list[JobRecord])
def dead_letters(limit: int = 100, runtime: Runtime = Depends(get_runtime)):
    return [job.to_record() for job in runtime.scheduler.dead_letters(limit)]


@router.get("/logs")
def job_logs(
    session_id: str | None = None,
    job_type: str | None = None,
    status: str | None = None,
    limit: int = 100,
    offset: int = 0,
    runtime: Runtime = Depends(get_runtime),
):
    stmt = select(JobLog).order_by(JobLog.timestamp.desc())
    if session_id is not None:
        stmt = stmt.where(JobLog.session_id == session_id)
    if job_type is not None:
        stmt = stmt.where(JobLog.job_type == job_type)
    if status is not None:
        stmt = stmt.where(JobLog.status == status)
    stmt = stmt.offset(offset).limit(limit)
    with Session(runtime.engine) as session:
        return session.exec(stmt).all()


@router.get("/notifications")
def recent_notifications(
    session_id: str | None = None,
    type: str | None = None,
    runtime: Runtime = Depends(get_runtime),
):
    return [asdict(n) for n in runtime.notifier.recent(session_id=session_id, type=type)]


@router.post("/sweep")
async def run_sweep(runtime: Runtime = Depends(get_runtime)):
    """Run the cleanup sweep now."""
    result = await runtime.sweeper.sweep()
    return asdict(result)
