from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List, Optional
from uuid import UUID

from hemobank.api.v1.deps import get_current_actor, get_db, require_admin, require_super_admin
from hemobank.core.exceptions import InvalidInputError, NotFoundError
from hemobank.core.security import Actor
from hemobank.models.enums import BloodGroup
from hemobank.schemas.monitor import JobRunResult, JobStatus, StockForecast
from hemobank.services.stock_monitor import stock_monitor

router = APIRouter()


def _scheduler(request: Request):
    return request.app.state.scheduler


@router.get("/jobs", response_model=List[JobStatus])
async def list_jobs(request: Request, actor: Actor = Depends(require_admin)):
    scheduler = _scheduler(request)
    return scheduler.status() if scheduler else []


@router.post("/jobs/{name}/run", response_model=JobRunResult)
async def run_job(name: str, request: Request, actor: Actor = Depends(require_super_admin)):
    """Run a background job immediately, outside its schedule."""
    scheduler = _scheduler(request)
    job = scheduler.get(name) if scheduler else None
    if job is None:
        raise NotFoundError(f"Job {name} not found")
    result = await job.run_once()
    return {"job": name, "result": result, "error": job.last_error}


@router.get("/forecast", response_model=StockForecast)
async def get_forecast(
    blood_group: BloodGroup,
    hospital_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    target = hospital_id or actor.hospital_id
    if target is None:
        raise InvalidInputError("hospital_id is required")
    actor.ensure_scope(target, "Hospital")
    return await stock_monitor.forecast(db, target, blood_group)
