from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from uuid import UUID

from hemobank.api.v1.deps import get_current_actor, get_db, require_admin
from hemobank.core.security import Actor
from hemobank.models.enums import BloodGroup, RequestStatus
from hemobank.schemas.blood_request import (
    BloodRequestCreate, BloodRequestList, BloodRequestResponse, RequestReject,
)
from hemobank.services.reservation import reservation_engine

router = APIRouter()


@router.post("/", response_model=BloodRequestResponse, status_code=201)
async def create_blood_request(
    payload: BloodRequestCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await reservation_engine.create_request(
        db, actor,
        patient_name=payload.patient_name,
        blood_group=payload.blood_group,
        quantity=payload.quantity,
        reason=payload.reason,
        urgency=payload.urgency,
        required_by=payload.required_by,
    )


@router.get("/", response_model=BloodRequestList)
async def list_blood_requests(
    status: Optional[RequestStatus] = None,
    blood_group: Optional[BloodGroup] = None,
    skip: int = 0,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    requests, total = await reservation_engine.list_requests(
        db, actor, status=status, blood_group=blood_group, skip=skip, limit=limit
    )
    return {"requests": requests, "total": total, "skip": skip, "limit": limit}


@router.get("/{request_id}", response_model=BloodRequestResponse)
async def get_blood_request(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await reservation_engine.get(db, actor, request_id)


@router.post("/{request_id}/approve", response_model=BloodRequestResponse)
async def approve_blood_request(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    """Reserve stock for the request. 409 when stock is short or the request is no longer pending."""
    return await reservation_engine.approve(db, actor, request_id)


@router.post("/{request_id}/reject", response_model=BloodRequestResponse)
async def reject_blood_request(
    request_id: UUID,
    payload: RequestReject,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return await reservation_engine.reject(db, actor, request_id, payload.reason)


@router.post("/{request_id}/fulfill", response_model=BloodRequestResponse)
async def fulfill_blood_request(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(require_admin),
):
    return await reservation_engine.fulfill(db, actor, request_id)


@router.post("/{request_id}/cancel", response_model=BloodRequestResponse)
async def cancel_blood_request(
    request_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await reservation_engine.cancel(db, actor, request_id)
