import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, ForeignKey, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from hemobank.database import Base, JSONType, UTCDateTime, str_enum, utcnow
from hemobank.models.enums import BloodGroup, RequestStatus, TransferStatus, Urgency


class BloodRequest(Base):
    __tablename__ = "blood_requests"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_blood_requests_quantity_positive"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_code: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    hospital_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("hospitals.id"), nullable=False, index=True)
    requested_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    patient_name: Mapped[str] = mapped_column(String(255), nullable=False)
    blood_group: Mapped[BloodGroup] = mapped_column(str_enum(BloodGroup), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    urgency: Mapped[Urgency] = mapped_column(str_enum(Urgency), nullable=False, default=Urgency.MEDIUM)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    required_by: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    status: Mapped[RequestStatus] = mapped_column(
        str_enum(RequestStatus), nullable=False, default=RequestStatus.PENDING, index=True
    )

    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    rejected_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    # unit ids claimed at approval time; fulfilment issues exactly these
    reserved_units: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    # [{"unit_id": ..., "fulfilled_at": ...}], only populated at fulfilment
    fulfilled_units: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    fulfilled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    fulfilled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def snapshot(self) -> dict:
        return {
            "request_code": self.request_code,
            "status": self.status.value,
            "blood_group": self.blood_group.value,
            "quantity": self.quantity,
            "reserved_units": list(self.reserved_units or []),
        }


class TransferRequest(Base):
    """Blood requested by one hospital from another."""

    __tablename__ = "transfer_requests"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_transfer_requests_quantity_positive"),)

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    from_hospital_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("hospitals.id"), nullable=False, index=True)
    to_hospital_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("hospitals.id"), nullable=False, index=True)
    requested_by: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    blood_group: Mapped[BloodGroup] = mapped_column(str_enum(BloodGroup), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    urgency: Mapped[Urgency] = mapped_column(str_enum(Urgency), nullable=False, default=Urgency.MEDIUM)
    note: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[TransferStatus] = mapped_column(
        str_enum(TransferStatus), nullable=False, default=TransferStatus.PENDING, index=True
    )
    rejected_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    reserved_units: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    def snapshot(self) -> dict:
        return {
            "status": self.status.value,
            "blood_group": self.blood_group.value,
            "quantity": self.quantity,
            "reserved_units": list(self.reserved_units or []),
        }
