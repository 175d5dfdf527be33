"""
Unit store: the blood unit lifecycle.

Every state change that competes with another request is a conditional
UPDATE (WHERE status = <expected>) whose rowcount decides who won. No
in-process locking is used, so several API workers can share the database.
"""
import logging
import secrets
import string
import time
import uuid
from datetime import datetime, timedelta, timezone
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hemobank.core.config import settings
from hemobank.core.exceptions import InvalidInputError, InvalidTransitionError, NotFoundError
from hemobank.core.security import Actor
from hemobank.database import utcnow
from hemobank.models import Assay, AssayResult, BloodGroup, BloodUnit, Donor, UnitStatus
from hemobank.models.enums import TERMINAL_UNIT_STATES
from hemobank.services.audit_service import audit_service

logger = logging.getLogger(__name__)

BAG_ID_ALPHABET = string.ascii_uppercase + string.digits
EXPIRING_SOON_DAYS = 7
# states in which test results may still be recorded
TESTABLE_STATES = frozenset({UnitStatus.COLLECTED, UnitStatus.TESTED, UnitStatus.AVAILABLE})


def generate_bag_id() -> str:
    suffix = "".join(secrets.choice(BAG_ID_ALPHABET) for _ in range(9))
    return f"BLD-{int(time.time() * 1000)}-{suffix}"


def compute_expiry(collection_date: datetime) -> datetime:
    """Expiry is fixed at collection time: collection + shelf life."""
    if collection_date.tzinfo is None:
        collection_date = collection_date.replace(tzinfo=timezone.utc)
    return collection_date + timedelta(days=settings.UNIT_SHELF_LIFE_DAYS)


def _claimable(now: datetime):
    return (BloodUnit.status == UnitStatus.AVAILABLE, BloodUnit.expiry_date > now)


class UnitStore:
    """Blood unit registration, testing, reservation and issue."""

    # Registration and testing

    @staticmethod
    async def create(
        db: AsyncSession,
        actor: Actor,
        donor_id: uuid.UUID,
        blood_group: BloodGroup,
        collection_date: Optional[datetime] = None,
        volume: float = 450.0,
        rack_number: Optional[str] = None,
        storage_location: Optional[str] = None,
        storage_temperature: Optional[float] = None,
        storage_shelf: Optional[str] = None,
    ) -> BloodUnit:
        """
        Register a newly collected unit.

        The unit belongs to the donor's hospital and starts in `collected`
        with all four assays pending. The donor's donation counters move
        in the same transaction.
        """
        now = utcnow()
        collection_date = collection_date or now
        if collection_date.tzinfo is None:
            collection_date = collection_date.replace(tzinfo=timezone.utc)
        if collection_date > now + timedelta(minutes=5):
            raise InvalidInputError("Collection date cannot be in the future")
        if volume <= 0:
            raise InvalidInputError("Volume must be positive")

        donor = await db.get(Donor, donor_id)
        if not donor or not actor.can_see(donor.hospital_id):
            raise NotFoundError("Donor not found")
        if donor.blood_group != blood_group:
            raise InvalidInputError(
                f"Blood group {blood_group.value} does not match donor group {donor.blood_group.value}"
            )

        unit = BloodUnit(
            id=uuid.uuid4(),
            bag_id=generate_bag_id(),
            blood_group=blood_group,
            donor_id=donor.id,
            hospital_id=donor.hospital_id,
            collection_date=collection_date,
            expiry_date=compute_expiry(collection_date),
            status=UnitStatus.COLLECTED,
            volume=volume,
            rack_number=rack_number,
            storage_location=storage_location,
            storage_temperature=storage_temperature,
            storage_shelf=storage_shelf,
            movement_history=[],
        )
        db.add(unit)

        donor.total_donations = (donor.total_donations or 0) + 1
        if donor.last_donation_date is None or donor.last_donation_date < collection_date:
            donor.last_donation_date = collection_date

        await db.commit()
        await db.refresh(unit)

        logger.info(f"Registered unit {unit.bag_id} ({unit.blood_group.value}) at hospital {unit.hospital_id}")
        audit_service.emit(
            db, "BLOOD_UNIT_CREATED", "BloodUnit", unit.id,
            user_id=actor.id, hospital_id=unit.hospital_id, after=unit.snapshot(),
        )
        return unit

    @staticmethod
    async def record_test(
        db: AsyncSession, actor: Actor, unit_id: uuid.UUID, assay: Assay, result: AssayResult
    ) -> BloodUnit:
        return await UnitStore.record_tests(db, actor, unit_id, {assay: result})

    @staticmethod
    async def record_tests(
        db: AsyncSession, actor: Actor, unit_id: uuid.UUID, results: dict[Assay, AssayResult]
    ) -> BloodUnit:
        """
        Record one or more assay results and apply the resulting transition.

        The unit row is locked for the duration, so the results and the
        status they imply are written together:
            any positive      -> disposed
            all negative      -> available
            otherwise         -> tested
        """
        if not results:
            raise InvalidInputError("At least one test result is required")
        if any(result == AssayResult.PENDING for result in results.values()):
            raise InvalidInputError("A recorded test result must be positive or negative")

        unit = await db.scalar(
            select(BloodUnit)
            .where(BloodUnit.id == unit_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if not unit or not actor.can_see(unit.hospital_id):
            raise NotFoundError("Blood unit not found")
        if unit.status not in TESTABLE_STATES:
            raise InvalidTransitionError(
                f"Cannot record test results on a {unit.status.value} unit", status=unit.status.value
            )

        before = unit.snapshot()
        now = utcnow()
        test_results = {key: dict(value) for key, value in (unit.test_results or {}).items()}
        for assay, result in results.items():
            test_results[assay.value] = {
                "status": result.value,
                "tested_at": now.isoformat(),
                "tested_by": str(actor.id),
            }
        unit.test_results = test_results

        statuses = [AssayResult(test_results[assay.value]["status"]) for assay in Assay]
        positives = [assay.value for assay, status in zip(Assay, statuses) if status == AssayResult.POSITIVE]
        if positives:
            unit.status = UnitStatus.DISPOSED
            unit.disposal_reason = f"Positive test result: {', '.join(positives)}"
        elif all(status == AssayResult.NEGATIVE for status in statuses):
            unit.status = UnitStatus.AVAILABLE
        elif unit.status == UnitStatus.COLLECTED:
            unit.status = UnitStatus.TESTED

        await db.commit()
        await db.refresh(unit)

        if unit.status == UnitStatus.DISPOSED:
            logger.warning(f"Unit {unit.bag_id} disposed: {unit.disposal_reason}")
        audit_service.emit(
            db, "BLOOD_UNIT_TESTED", "BloodUnit", unit.id,
            user_id=actor.id, hospital_id=unit.hospital_id, before=before, after=unit.snapshot(),
            results={assay.value: result.value for assay, result in results.items()},
        )
        return unit

    # Reservation primitives. These run inside the caller's transaction and
    # never commit; the caller commits or rolls back the whole step.

    @staticmethod
    async def claim_available(
        db: AsyncSession,
        hospital_id: uuid.UUID,
        blood_group: BloodGroup,
        count: int,
        reservation_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> list[uuid.UUID]:
        """
        Move up to `count` unexpired available units to reserved, earliest
        expiry first. Each unit is claimed by its own conditional update,
        so a unit taken by a concurrent claimer is skipped, never shared.

        Returns the ids actually claimed; may be fewer than requested.
        """
        now = now or utcnow()
        claimed: list[uuid.UUID] = []
        attempted: set[uuid.UUID] = set()

        while len(claimed) < count:
            query = (
                select(BloodUnit.id)
                .where(
                    BloodUnit.hospital_id == hospital_id,
                    BloodUnit.blood_group == blood_group,
                    *_claimable(now),
                )
                .order_by(BloodUnit.expiry_date.asc(), BloodUnit.created_at.asc())
                .limit(count - len(claimed))
            )
            if attempted:
                query = query.where(BloodUnit.id.not_in(attempted))
            candidates = (await db.scalars(query)).all()
            if not candidates:
                break

            for unit_id in candidates:
                attempted.add(unit_id)
                result = await db.execute(
                    update(BloodUnit)
                    .where(BloodUnit.id == unit_id, *_claimable(now))
                    .values(status=UnitStatus.RESERVED, reservation_id=reservation_id, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    claimed.append(unit_id)
                else:
                    logger.debug(f"Unit {unit_id} was claimed concurrently; skipping")

        logger.info(
            f"Claimed {len(claimed)}/{count} {blood_group.value} units at hospital {hospital_id} "
            f"for {reservation_id}"
        )
        return claimed

    @staticmethod
    async def release(
        db: AsyncSession,
        unit_ids: Iterable[uuid.UUID],
        reservation_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Return units held by `reservation_id` to stock. Units whose expiry
        passed while they were held go straight to expired.
        """
        unit_ids = list(unit_ids)
        if not unit_ids:
            return 0
        now = now or utcnow()
        held = (
            BloodUnit.id.in_(unit_ids),
            BloodUnit.status == UnitStatus.RESERVED,
            BloodUnit.reservation_id == reservation_id,
        )
        released = await db.execute(
            update(BloodUnit)
            .where(*held, BloodUnit.expiry_date > now)
            .values(status=UnitStatus.AVAILABLE, reservation_id=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        expired = await db.execute(
            update(BloodUnit)
            .where(*held, BloodUnit.expiry_date <= now)
            .values(status=UnitStatus.EXPIRED, reservation_id=None, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if expired.rowcount:
            logger.warning(f"{expired.rowcount} units held by {reservation_id} expired before release")
        return released.rowcount + expired.rowcount

    @staticmethod
    async def issue(
        db: AsyncSession,
        unit_ids: Iterable[uuid.UUID],
        request_id: uuid.UUID,
        issuer_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> list[uuid.UUID]:
        """
        Issue units reserved for `request_id`. All or nothing: if any unit
        is no longer reserved for this request the transaction is rolled
        back and InvalidTransitionError is raised.
        """
        unit_ids = list(unit_ids)
        now = now or utcnow()

        expired = await db.scalar(
            select(func.count()).select_from(BloodUnit).where(
                BloodUnit.id.in_(unit_ids), BloodUnit.expiry_date <= now
            )
        )
        if expired:
            logger.warning(f"Issuing {expired} units past expiry for request {request_id}")

        result = await db.execute(
            update(BloodUnit)
            .where(
                BloodUnit.id.in_(unit_ids),
                BloodUnit.status == UnitStatus.RESERVED,
                BloodUnit.reservation_id == request_id,
            )
            .values(
                status=UnitStatus.ISSUED,
                issued_to=request_id,
                issued_at=now,
                issued_by=issuer_id,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != len(unit_ids):
            await db.rollback()
            raise InvalidTransitionError(
                f"Only {result.rowcount} of {len(unit_ids)} units are still reserved for this request"
            )
        return unit_ids

    # Housekeeping

    @staticmethod
    async def sweep_expired(db: AsyncSession, now: Optional[datetime] = None) -> int:
        """Mark available units past their expiry date as expired. Reserved units are left to their holder."""
        now = now or utcnow()
        result = await db.execute(
            update(BloodUnit)
            .where(BloodUnit.status == UnitStatus.AVAILABLE, BloodUnit.expiry_date <= now)
            .values(status=UnitStatus.EXPIRED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount:
            logger.info(f"Expired {result.rowcount} blood units")
            audit_service.emit(db, "BLOOD_UNITS_EXPIRED", "BloodUnit", count=result.rowcount)
        return result.rowcount

    @staticmethod
    async def move(
        db: AsyncSession,
        actor: Actor,
        unit_id: uuid.UUID,
        location: str,
        temperature: Optional[float] = None,
        shelf: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> BloodUnit:
        """Change storage location and append to the movement history."""
        if not location or not location.strip():
            raise InvalidInputError("A destination location is required")
        unit = await UnitStore.get(db, actor, unit_id)
        if unit.status in TERMINAL_UNIT_STATES:
            raise InvalidTransitionError(f"Cannot move a {unit.status.value} unit", status=unit.status.value)

        before = unit.snapshot()
        unit.movement_history = list(unit.movement_history or []) + [{
            "from": unit.storage_location or "Unknown",
            "to": location,
            "moved_by": str(actor.id),
            "moved_at": utcnow().isoformat(),
            "notes": notes,
        }]
        unit.storage_location = location
        if temperature is not None:
            unit.storage_temperature = temperature
        if shelf is not None:
            unit.storage_shelf = shelf

        await db.commit()
        await db.refresh(unit)
        audit_service.emit(
            db, "BLOOD_UNIT_MOVED", "BloodUnit", unit.id,
            user_id=actor.id, hospital_id=unit.hospital_id, before=before, after=unit.snapshot(),
        )
        return unit

    @staticmethod
    async def dispose(db: AsyncSession, actor: Actor, unit_id: uuid.UUID, reason: str) -> BloodUnit:
        """Manually discard a unit. Reserved units must be released by their holder first."""
        if not reason or not reason.strip():
            raise InvalidInputError("A disposal reason is required")
        unit = await UnitStore.get(db, actor, unit_id)
        before = unit.snapshot()

        result = await db.execute(
            update(BloodUnit)
            .where(
                BloodUnit.id == unit.id,
                BloodUnit.status.in_([
                    UnitStatus.COLLECTED, UnitStatus.TESTED, UnitStatus.AVAILABLE, UnitStatus.EXPIRED,
                ]),
            )
            .values(status=UnitStatus.DISPOSED, disposal_reason=reason.strip(), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            await db.refresh(unit)
            raise InvalidTransitionError(f"Cannot dispose a {unit.status.value} unit", status=unit.status.value)
        await db.commit()
        await db.refresh(unit)

        logger.info(f"Unit {unit.bag_id} disposed by {actor.id}: {unit.disposal_reason}")
        audit_service.emit(
            db, "BLOOD_UNIT_DISPOSED", "BloodUnit", unit.id,
            user_id=actor.id, hospital_id=unit.hospital_id, before=before, after=unit.snapshot(),
        )
        return unit

    # Queries

    @staticmethod
    async def get(db: AsyncSession, actor: Actor, unit_id: uuid.UUID) -> BloodUnit:
        unit = await db.get(BloodUnit, unit_id)
        if not unit or not actor.can_see(unit.hospital_id):
            raise NotFoundError("Blood unit not found")
        return unit

    @staticmethod
    async def get_by_bag_id(db: AsyncSession, actor: Actor, bag_id: str) -> BloodUnit:
        unit = await db.scalar(select(BloodUnit).where(BloodUnit.bag_id == bag_id))
        if not unit or not actor.can_see(unit.hospital_id):
            raise NotFoundError("Blood unit not found")
        return unit

    @staticmethod
    async def list_units(
        db: AsyncSession,
        actor: Actor,
        blood_group: Optional[BloodGroup] = None,
        status: Optional[UnitStatus] = None,
        expiring_soon: bool = False,
        hospital_id: Optional[uuid.UUID] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[BloodUnit], int]:
        """Units visible to the actor, soonest expiry first."""
        conditions = []
        if not actor.is_super_admin:
            conditions.append(BloodUnit.hospital_id == actor.hospital_id)
        elif hospital_id:
            conditions.append(BloodUnit.hospital_id == hospital_id)
        if blood_group:
            conditions.append(BloodUnit.blood_group == blood_group)
        if status:
            conditions.append(BloodUnit.status == status)
        if expiring_soon:
            now = utcnow()
            conditions.extend([
                BloodUnit.expiry_date > now,
                BloodUnit.expiry_date <= now + timedelta(days=EXPIRING_SOON_DAYS),
            ])

        total = await db.scalar(select(func.count()).select_from(BloodUnit).where(*conditions))
        result = await db.execute(
            select(BloodUnit)
            .where(*conditions)
            .order_by(BloodUnit.expiry_date.asc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    @staticmethod
    async def inventory_summary(
        db: AsyncSession, hospital_id: uuid.UUID, now: Optional[datetime] = None
    ) -> dict[BloodGroup, int]:
        """Unexpired available units per group; every group is present, zero included."""
        now = now or utcnow()
        result = await db.execute(
            select(BloodUnit.blood_group, func.count())
            .where(BloodUnit.hospital_id == hospital_id, *_claimable(now))
            .group_by(BloodUnit.blood_group)
        )
        counts = {group: 0 for group in BloodGroup}
        for group, count in result.all():
            counts[BloodGroup(group)] = count
        return counts


# Global instance
unit_store = UnitStore()
