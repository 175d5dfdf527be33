from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from uuid import UUID

from hemobank.api.v1.deps import get_current_actor, get_db
from hemobank.core.security import Actor
from hemobank.models.enums import TransferStatus
from hemobank.schemas.transfer import TransferCreate, TransferList, TransferReject, TransferResponse
from hemobank.services.transfers import transfer_service

router = APIRouter()


@router.post("/", response_model=TransferResponse, status_code=201)
async def create_transfer(
    payload: TransferCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await transfer_service.create(
        db, actor,
        to_hospital_id=payload.to_hospital_id,
        blood_group=payload.blood_group,
        quantity=payload.quantity,
        urgency=payload.urgency,
        note=payload.note,
    )


@router.get("/", response_model=TransferList)
async def list_transfers(
    status: Optional[TransferStatus] = None,
    direction: Optional[str] = Query(None, pattern="^(incoming|outgoing)$"),
    skip: int = 0,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    transfers, total = await transfer_service.list_transfers(
        db, actor, status=status, direction=direction, skip=skip, limit=limit
    )
    return {"transfers": transfers, "total": total}


@router.get("/{transfer_id}", response_model=TransferResponse)
async def get_transfer(
    transfer_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await transfer_service.get(db, actor, transfer_id)


@router.post("/{transfer_id}/approve", response_model=TransferResponse)
async def approve_transfer(
    transfer_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await transfer_service.approve(db, actor, transfer_id)


@router.post("/{transfer_id}/reject", response_model=TransferResponse)
async def reject_transfer(
    transfer_id: UUID,
    payload: TransferReject,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await transfer_service.reject(db, actor, transfer_id, payload.reason)


@router.post("/{transfer_id}/complete", response_model=TransferResponse)
async def complete_transfer(
    transfer_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await transfer_service.complete(db, actor, transfer_id)


@router.post("/{transfer_id}/cancel", response_model=TransferResponse)
async def cancel_transfer(
    transfer_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await transfer_service.cancel(db, actor, transfer_id)
