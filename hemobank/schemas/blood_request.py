from pydantic import BaseModel
from typing import Optional, List
from datetime import datetime
from uuid import UUID
from hemobank.models.enums import BloodGroup, RequestStatus, Urgency


class BloodRequestCreate(BaseModel):
    patient_name: str
    blood_group: BloodGroup
    quantity: int
    reason: str
    urgency: Urgency = Urgency.MEDIUM
    required_by: Optional[datetime] = None


class RequestReject(BaseModel):
    reason: str


class BloodRequestResponse(BaseModel):
    id: UUID
    request_code: str
    hospital_id: UUID
    requested_by: UUID
    patient_name: str
    blood_group: BloodGroup
    quantity: int
    urgency: Urgency
    reason: str
    required_by: Optional[datetime] = None
    status: RequestStatus
    approved_by: Optional[UUID] = None
    approved_at: Optional[datetime] = None
    rejected_reason: Optional[str] = None
    rejected_by: Optional[UUID] = None
    reserved_units: List[str] = []
    fulfilled_units: List[dict] = []
    fulfilled_by: Optional[UUID] = None
    fulfilled_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class BloodRequestList(BaseModel):
    requests: List[BloodRequestResponse]
    total: int
    skip: int
    limit: int
