"""BloodUnit: one physical bag, tracked from collection to issue or disposal."""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Float, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column, validates

from hemobank.core.exceptions import InvalidTransitionError
from hemobank.database import Base, JSONType, UTCDateTime, str_enum, utcnow
from hemobank.models.enums import Assay, AssayResult, BloodGroup, UnitStatus


def pending_test_results() -> dict:
    return {
        assay.value: {"status": AssayResult.PENDING.value, "tested_at": None, "tested_by": None}
        for assay in Assay
    }


class BloodUnit(Base):
    __tablename__ = "blood_units"
    __table_args__ = (
        # claim/monitor lookups: hospital x group x status, FEFO by expiry
        Index("ix_blood_units_stock", "hospital_id", "blood_group", "status", "expiry_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    bag_id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False, index=True)
    blood_group: Mapped[BloodGroup] = mapped_column(str_enum(BloodGroup), nullable=False)
    donor_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("donors.id"), nullable=False)
    hospital_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("hospitals.id"), nullable=False)
    collection_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expiry_date: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    status: Mapped[UnitStatus] = mapped_column(str_enum(UnitStatus), nullable=False, default=UnitStatus.COLLECTED)
    test_results: Mapped[dict] = mapped_column(JSONType, nullable=False, default=pending_test_results)

    storage_location: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    storage_temperature: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    storage_shelf: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    rack_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    movement_history: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    volume: Mapped[float] = mapped_column(Float, nullable=False, default=450.0)  # ml

    # Request or transfer currently holding the unit (set by claim, cleared by release)
    reservation_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    issued_to: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    issued_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    issued_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    disposal_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow)

    @validates("bag_id", "collection_date", "expiry_date")
    def _write_once(self, key, value):
        current = getattr(self, key)
        if current is not None and current != value:
            raise InvalidTransitionError(f"{key} of unit {self.bag_id} is immutable")
        return value

    def assay_status(self, assay: Assay) -> AssayResult:
        return AssayResult(self.test_results[assay.value]["status"])

    def snapshot(self) -> dict:
        """Audit payload."""
        return {
            "bag_id": self.bag_id,
            "status": self.status.value,
            "blood_group": self.blood_group.value,
            "reservation_id": str(self.reservation_id) if self.reservation_id else None,
            "storage_location": self.storage_location,
        }
