from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from uuid import UUID
from hemobank.models.enums import BloodGroup, TransferStatus, Urgency


class TransferCreate(BaseModel):
    to_hospital_id: UUID
    blood_group: BloodGroup
    quantity: int
    urgency: Urgency = Urgency.MEDIUM
    note: Optional[str] = None


class TransferReject(BaseModel):
    reason: Optional[str] = None


class TransferResponse(BaseModel):
    id: UUID
    from_hospital_id: UUID
    to_hospital_id: UUID
    requested_by: UUID
    blood_group: BloodGroup
    quantity: int
    urgency: Urgency
    note: Optional[str] = None
    status: TransferStatus
    rejected_reason: Optional[str] = None
    approved_by: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    reserved_units: List[str] = []
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TransferList(BaseModel):
    transfers: List[TransferResponse]
    total: int
