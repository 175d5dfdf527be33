"""Test data builders shared by the database-backed tests."""
import uuid
from datetime import timedelta

from sqlalchemy import func, select

from hemobank.core.security import Actor, Role
from hemobank.database import utcnow
from hemobank.models import (
    Assay, AssayResult, BloodGroup, BloodRequest, BloodUnit, Donor, Hospital, RequestStatus, UnitStatus, User,
)
from hemobank.models.blood_unit import pending_test_results
from hemobank.services.reservation import reservation_engine
from hemobank.services.unit_store import compute_expiry, generate_bag_id


def all_negative():
    return {
        assay.value: {"status": AssayResult.NEGATIVE.value, "tested_at": None, "tested_by": None}
        for assay in Assay
    }


async def make_hospital(db, name="City Hospital", approved=True, latitude=None, longitude=None,
                        thresholds=None, with_admin=True):
    """Create a hospital and (by default) its admin. Returns (hospital, admin_actor)."""
    hospital = Hospital(
        id=uuid.uuid4(), name=name, is_approved=approved,
        latitude=latitude, longitude=longitude, blood_thresholds=thresholds or {},
    )
    db.add(hospital)
    await db.flush()
    admin = None
    if with_admin:
        user = User(id=uuid.uuid4(), email=f"admin-{hospital.id}@test.local",
                    role=Role.HOSPITAL_ADMIN, hospital_id=hospital.id)
        db.add(user)
        hospital.admin_id = user.id
        admin = Actor(id=user.id, role=Role.HOSPITAL_ADMIN, hospital_id=hospital.id)
    await db.commit()
    return hospital, admin


async def make_staff(db, hospital):
    user = User(id=uuid.uuid4(), email=f"staff-{uuid.uuid4()}@test.local", role=Role.STAFF, hospital_id=hospital.id)
    db.add(user)
    await db.commit()
    return Actor(id=user.id, role=Role.STAFF, hospital_id=hospital.id)


async def make_super_admin(db):
    user = User(id=uuid.uuid4(), email=f"root-{uuid.uuid4()}@test.local", role=Role.SUPER_ADMIN)
    db.add(user)
    await db.commit()
    return Actor(id=user.id, role=Role.SUPER_ADMIN)


async def make_donor(db, hospital, blood_group=BloodGroup.O_POSITIVE, **kwargs):
    donor = Donor(
        id=uuid.uuid4(),
        hospital_id=hospital.id,
        first_name=kwargs.pop("first_name", "Test"),
        last_name=kwargs.pop("last_name", "Donor"),
        phone=kwargs.pop("phone", "+10000000000"),
        blood_group=blood_group,
        **kwargs,
    )
    db.add(donor)
    await db.commit()
    return donor


async def add_units(db, hospital, donor, count, status=UnitStatus.AVAILABLE, days_ago=1, blood_group=None):
    """Insert ready-made units directly. Larger days_ago means earlier expiry."""
    units = []
    for _ in range(count):
        collected = utcnow() - timedelta(days=days_ago)
        unit = BloodUnit(
            id=uuid.uuid4(),
            bag_id=generate_bag_id(),
            blood_group=blood_group or donor.blood_group,
            donor_id=donor.id,
            hospital_id=hospital.id,
            collection_date=collected,
            expiry_date=compute_expiry(collected),
            status=status,
            test_results=all_negative() if status != UnitStatus.COLLECTED else pending_test_results(),
            movement_history=[],
        )
        db.add(unit)
        units.append(unit)
    await db.commit()
    return units


async def make_request(db, actor, quantity=1, blood_group=BloodGroup.O_POSITIVE, **kwargs):
    return await reservation_engine.create_request(
        db, actor,
        patient_name=kwargs.pop("patient_name", "Jane Doe"),
        blood_group=blood_group,
        quantity=quantity,
        reason=kwargs.pop("reason", "Surgery"),
        **kwargs,
    )


async def unit_statuses(db, unit_ids):
    result = await db.execute(select(BloodUnit.id, BloodUnit.status).where(BloodUnit.id.in_(list(unit_ids))))
    return {unit_id: UnitStatus(status) for unit_id, status in result.all()}


async def request_status(db, request_id):
    return RequestStatus(await db.scalar(select(BloodRequest.status).where(BloodRequest.id == request_id)))


async def count_units(db, hospital_id, status):
    return await db.scalar(
        select(func.count()).select_from(BloodUnit).where(
            BloodUnit.hospital_id == hospital_id, BloodUnit.status == status
        )
    )
