from pydantic import BaseModel
from typing import Optional, List, Dict
from datetime import datetime
from uuid import UUID
from hemobank.models.enums import Assay, AssayResult, BloodGroup, UnitStatus


class StorageInfo(BaseModel):
    location: Optional[str] = None
    temperature: Optional[float] = None
    shelf: Optional[str] = None


class BloodUnitCreate(BaseModel):
    donor_id: UUID
    blood_group: BloodGroup
    collection_date: Optional[datetime] = None
    volume: float = 450.0
    rack_number: Optional[str] = None
    storage: Optional[StorageInfo] = None


class TestResultUpdate(BaseModel):
    results: Dict[Assay, AssayResult]


class UnitMove(BaseModel):
    location: str
    temperature: Optional[float] = None
    shelf: Optional[str] = None
    notes: Optional[str] = None


class UnitDispose(BaseModel):
    reason: str


class BloodUnitResponse(BaseModel):
    id: UUID
    bag_id: str
    blood_group: BloodGroup
    donor_id: UUID
    hospital_id: UUID
    collection_date: datetime
    expiry_date: datetime
    status: UnitStatus
    test_results: dict
    storage_location: Optional[str] = None
    storage_temperature: Optional[float] = None
    storage_shelf: Optional[str] = None
    rack_number: Optional[str] = None
    movement_history: list = []
    volume: float
    reservation_id: Optional[UUID] = None
    issued_to: Optional[UUID] = None
    issued_at: Optional[datetime] = None
    disposal_reason: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BloodUnitList(BaseModel):
    units: List[BloodUnitResponse]
    total: int
    skip: int
    limit: int


class InventorySummary(BaseModel):
    hospital_id: UUID
    counts: Dict[BloodGroup, int]
