"""
Jobs API Router

Endpoints for monitoring, triggering and aborting background jobs.
All endpoints require the admin API key (X-API-Key).
"""

from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Request
from pydantic import BaseModel

from ..config import get_settings
from ..core.exceptions import AdmissionDenied, Unauthorized
from ..core.logging import get_logger
from ..models.jobs import JobParams
from ..services.scheduler import SchedulerService

logger = get_logger(__name__)

router = APIRouter(prefix="/jobs", tags=["jobs"])


class TriggerRequest(BaseModel):
    provider_id: Optional[str] = None


async def verify_admin_access(x_api_key: Optional[str] = Header(None)):
    """Accept only requests carrying the configured X-API-Key."""
    admin_key = get_settings().admin_api_key
    if admin_key and x_api_key and x_api_key == admin_key:
        return {"method": "api_key"}
    logger.warning("admin_access_denied")
    raise Unauthorized("Missing or invalid X-API-Key header.")


def get_scheduler(request: Request) -> SchedulerService:
    return request.app.state.scheduler


@router.get("")
async def list_jobs(
    admin: dict = Depends(verify_admin_access),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """All configured jobs with their run-records and next fire times."""
    return {"jobs": await scheduler.list_jobs()}


@router.get("/progress")
async def get_progress(
    request: Request,
    admin: dict = Depends(verify_admin_access),
):
    """Live {total, remaining} counters of running pipelines, keyed "{provider}:{type}"."""
    return {
        "progress": request.app.state.ctx.progress.snapshot(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.get("/{job_name}")
async def get_job(
    job_name: str,
    admin: dict = Depends(verify_admin_access),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    return await scheduler.get_job(job_name)


@router.post("/{job_name}/trigger")
async def trigger_job(
    job_name: str,
    payload: Optional[TriggerRequest] = Body(None),
    admin: dict = Depends(verify_admin_access),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """
    Manually trigger a job.

    Optional body: {"provider_id": "..."} restricts provider jobs to one
    provider and is handed on to post-execute jobs. A rejected admission
    answers 409 with the gate's reason.
    """
    params = JobParams(provider_id=payload.provider_id if payload else None)
    logger.info("manual_job_trigger", job=job_name, provider_id=params.provider_id)

    result = await scheduler.dispatch(job_name, params)
    if not result.admitted:
        raise AdmissionDenied(result.reason)

    message = f"Job '{job_name}' triggered successfully"
    if params.provider_id:
        message += f" for provider '{params.provider_id}'"
    return {
        "success": True,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/{job_name}/abort")
async def abort_job(
    job_name: str,
    admin: dict = Depends(verify_admin_access),
    scheduler: SchedulerService = Depends(get_scheduler),
):
    """Cancel a running job. It is recorded as failed with reason "canceled"."""
    aborted = scheduler.abort_job(job_name)
    return {
        "success": aborted,
        "message": f"Job '{job_name}' abort requested" if aborted else f"Job '{job_name}' is not running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
