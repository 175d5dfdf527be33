from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional
from uuid import UUID
import logging

from hemobank.api.v1.deps import get_current_actor, get_db
from hemobank.core.security import Actor
from hemobank.core.exceptions import InvalidInputError
from hemobank.models.enums import BloodGroup, UnitStatus
from hemobank.schemas.blood_unit import (
    BloodUnitCreate, BloodUnitList, BloodUnitResponse, InventorySummary,
    TestResultUpdate, UnitDispose, UnitMove,
)
from hemobank.services.unit_store import unit_store

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/", response_model=BloodUnitResponse, status_code=201)
async def create_blood_unit(
    payload: BloodUnitCreate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Register a collected unit. Expiry is derived from the collection date."""
    storage = payload.storage
    return await unit_store.create(
        db, actor,
        donor_id=payload.donor_id,
        blood_group=payload.blood_group,
        collection_date=payload.collection_date,
        volume=payload.volume,
        rack_number=payload.rack_number,
        storage_location=storage.location if storage else None,
        storage_temperature=storage.temperature if storage else None,
        storage_shelf=storage.shelf if storage else None,
    )


@router.get("/", response_model=BloodUnitList)
async def list_blood_units(
    blood_group: Optional[BloodGroup] = None,
    status: Optional[UnitStatus] = None,
    expiring_soon: bool = False,
    hospital_id: Optional[UUID] = None,
    skip: int = 0,
    limit: int = 50,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    units, total = await unit_store.list_units(
        db, actor, blood_group=blood_group, status=status, expiring_soon=expiring_soon,
        hospital_id=hospital_id, skip=skip, limit=limit,
    )
    return {"units": units, "total": total, "skip": skip, "limit": limit}


@router.get("/inventory", response_model=InventorySummary)
async def get_inventory(
    hospital_id: Optional[UUID] = None,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    """Available, unexpired units per blood group."""
    target = hospital_id if actor.is_super_admin and hospital_id else actor.hospital_id
    if target is None:
        raise InvalidInputError("hospital_id is required")
    counts = await unit_store.inventory_summary(db, target)
    return {"hospital_id": target, "counts": counts}


@router.get("/bag/{bag_id}", response_model=BloodUnitResponse)
async def get_blood_unit_by_bag(
    bag_id: str,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await unit_store.get_by_bag_id(db, actor, bag_id)


@router.get("/{unit_id}", response_model=BloodUnitResponse)
async def get_blood_unit(
    unit_id: UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await unit_store.get(db, actor, unit_id)


@router.put("/{unit_id}/test-results", response_model=BloodUnitResponse)
async def update_test_results(
    unit_id: UUID,
    payload: TestResultUpdate,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await unit_store.record_tests(db, actor, unit_id, payload.results)


@router.put("/{unit_id}/location", response_model=BloodUnitResponse)
async def move_blood_unit(
    unit_id: UUID,
    payload: UnitMove,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await unit_store.move(
        db, actor, unit_id, payload.location,
        temperature=payload.temperature, shelf=payload.shelf, notes=payload.notes,
    )


@router.post("/{unit_id}/dispose", response_model=BloodUnitResponse)
async def dispose_blood_unit(
    unit_id: UUID,
    payload: UnitDispose,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
):
    return await unit_store.dispose(db, actor, unit_id, payload.reason)
