"""Blood request lifecycle: approve/reject/fulfil/cancel and the all-or-nothing claim."""
import asyncio
import uuid
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from hemobank.core.exceptions import (
    InsufficientStockError, InvalidInputError, InvalidStateError, NotAuthorizedError, NotFoundError,
)
from hemobank.database import utcnow
from hemobank.models import (
    Assay, AssayResult, BloodGroup, BloodRequest, BloodUnit, Notification, NotificationType,
    RequestStatus, UnitStatus,
)
from hemobank.services.reservation import reservation_engine
from hemobank.services.unit_store import unit_store
from tests.helpers import (
    add_units, count_units, make_donor, make_hospital, make_request, make_staff, request_status, unit_statuses,
)


def test_collect_test_approve_fulfil(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db)
            staff = await make_staff(db, hospital)
            donor = await make_donor(db, hospital)
            unit = await unit_store.create(
                db, staff, donor.id, BloodGroup.O_POSITIVE, collection_date=utcnow() - timedelta(days=2)
            )
            for assay in Assay:
                unit = await unit_store.record_test(db, staff, unit.id, assay, AssayResult.NEGATIVE)
            assert unit.status == UnitStatus.AVAILABLE

            request = await make_request(db, staff, quantity=1)
            assert request.status == RequestStatus.PENDING
            assert request.request_code.startswith("REQ-")

            request = await reservation_engine.approve(db, admin, request.id)
            assert request.status == RequestStatus.APPROVED
            assert request.approved_by == admin.id
            assert request.reserved_units == [str(unit.id)]
            assert (await unit_statuses(db, [unit.id]))[unit.id] == UnitStatus.RESERVED

            request = await reservation_engine.fulfill(db, admin, request.id)
            assert request.status == RequestStatus.FULFILLED
            assert [entry["unit_id"] for entry in request.fulfilled_units] == [str(unit.id)]
            issued = await db.get(BloodUnit, unit.id, populate_existing=True)
            assert issued.status == UnitStatus.ISSUED
            assert issued.issued_to == request.id

    run_db(scenario)


def test_insufficient_stock_leaves_units_available(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db)
            donor = await make_donor(db, hospital)
            units = await add_units(db, hospital, donor, 3)
            request = await make_request(db, admin, quantity=5)

            with pytest.raises(InsufficientStockError) as exc_info:
                await reservation_engine.approve(db, admin, request.id)
            assert exc_info.value.available == 3
            assert exc_info.value.required == 5

            statuses = await unit_statuses(db, [u.id for u in units])
            assert set(statuses.values()) == {UnitStatus.AVAILABLE}
            assert await request_status(db, request.id) == RequestStatus.PENDING
            reserved_for = await db.scalar(
                select(func.count()).select_from(BloodUnit).where(BloodUnit.reservation_id.is_not(None))
            )
            assert reserved_for == 0

    run_db(scenario)


def test_reject_then_approve_is_invalid_state(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db)
            donor = await make_donor(db, hospital)
            await add_units(db, hospital, donor, 2)
            request = await make_request(db, admin, quantity=1)
            request_id = request.id

            rejected = await reservation_engine.reject(db, admin, request_id, "Not compatible")
            assert rejected.status == RequestStatus.REJECTED
            assert rejected.rejected_reason == "Not compatible"

            with pytest.raises(InvalidStateError) as exc_info:
                await reservation_engine.approve(db, admin, request_id)
            assert exc_info.value.current_state == "rejected"
            assert "rejected" in exc_info.value.message
            assert await count_units(db, hospital.id, UnitStatus.AVAILABLE) == 2

    run_db(scenario)


def test_reject_requires_reason(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db)
            request = await make_request(db, admin)
            with pytest.raises(InvalidInputError):
                await reservation_engine.reject(db, admin, request.id, "")

    run_db(scenario)


def test_second_request_sees_only_the_remainder(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db)
            donor = await make_donor(db, hospital)
            await add_units(db, hospital, donor, 4)
            first = await make_request(db, admin, quantity=3)
            second = await make_request(db, admin, quantity=3)

            await reservation_engine.approve(db, admin, first.id)
            with pytest.raises(InsufficientStockError) as exc_info:
                await reservation_engine.approve(db, admin, second.id)
            assert (exc_info.value.available, exc_info.value.required) == (1, 3)
            assert await count_units(db, hospital.id, UnitStatus.AVAILABLE) == 1

    run_db(scenario)


def test_concurrent_approvals_never_share_units(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db)
            donor = await make_donor(db, hospital)
            await add_units(db, hospital, donor, 4)
            first = await make_request(db, admin, quantity=3)
            second = await make_request(db, admin, quantity=3)

        async def approve(request_id):
            async with sf() as db:
                return await reservation_engine.approve(db, admin, request_id)

        outcomes = await asyncio.gather(approve(first.id), approve(second.id), return_exceptions=True)

        async with sf() as db:
            requests = (await db.execute(select(BloodRequest))).scalars().all()
            reserved = await count_units(db, hospital.id, UnitStatus.RESERVED)
            available = await count_units(db, hospital.id, UnitStatus.AVAILABLE)
        return outcomes, requests, reserved, available

    outcomes, requests, reserved, available = run_db(scenario)
    approved = [o for o in outcomes if isinstance(o, BloodRequest)]
    failed = [o for o in outcomes if isinstance(o, InsufficientStockError)]
    assert len(approved) == 1 and len(failed) == 1
    assert failed[0].available <= 1 and failed[0].required == 3
    assert reserved == 3 and available == 1

    claimed_sets = [set(r.reserved_units) for r in requests if r.status == RequestStatus.APPROVED]
    assert len(claimed_sets) == 1 and len(claimed_sets[0]) == 3


def test_concurrent_approval_of_one_request_has_one_winner(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db)
            donor = await make_donor(db, hospital)
            await add_units(db, hospital, donor, 4)
            request = await make_request(db, admin, quantity=2)

        async def approve():
            async with sf() as db:
                return await reservation_engine.approve(db, admin, request.id)

        outcomes = await asyncio.gather(approve(), approve(), return_exceptions=True)
        async with sf() as db:
            reserved = await count_units(db, hospital.id, UnitStatus.RESERVED)
        return outcomes, reserved

    outcomes, reserved = run_db(scenario)
    assert sum(isinstance(o, BloodRequest) for o in outcomes) == 1
    assert sum(isinstance(o, InvalidStateError) for o in outcomes) == 1
    assert reserved == 2


def test_fulfil_issues_only_its_own_reservation(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db)
            donor = await make_donor(db, hospital)
            await add_units(db, hospital, donor, 2)
            first = await reservation_engine.approve(db, admin, (await make_request(db, admin)).id)
            second = await reservation_engine.approve(db, admin, (await make_request(db, admin)).id)

            await reservation_engine.fulfill(db, admin, first.id)
            first_unit = uuid.UUID(first.reserved_units[0])
            second_unit = uuid.UUID(second.reserved_units[0])
            statuses = await unit_statuses(db, [first_unit, second_unit])
            assert statuses[first_unit] == UnitStatus.ISSUED
            assert statuses[second_unit] == UnitStatus.RESERVED
            held = await db.get(BloodUnit, second_unit, populate_existing=True)
            assert held.reservation_id == second.id

    run_db(scenario)


def test_fulfil_requires_approval(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db)
            request = await make_request(db, admin)
            with pytest.raises(InvalidStateError):
                await reservation_engine.fulfill(db, admin, request.id)

    run_db(scenario)


def test_cancel_approved_request_releases_units(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db)
            staff = await make_staff(db, hospital)
            donor = await make_donor(db, hospital)
            await add_units(db, hospital, donor, 2)
            request = await make_request(db, staff, quantity=2)
            await reservation_engine.approve(db, admin, request.id)

            cancelled = await reservation_engine.cancel(db, staff, request.id)
            assert cancelled.status == RequestStatus.CANCELLED
            assert cancelled.cancelled_by == staff.id
            assert await count_units(db, hospital.id, UnitStatus.AVAILABLE) == 2

            with pytest.raises(InvalidStateError):
                await reservation_engine.cancel(db, admin, request.id)

    run_db(scenario)


def test_only_admins_or_the_requester_can_cancel(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db)
            requester = await make_staff(db, hospital)
            colleague = await make_staff(db, hospital)
            request = await make_request(db, requester)
            with pytest.raises(NotAuthorizedError):
                await reservation_engine.cancel(db, colleague, request.id)

    run_db(scenario)


def test_authorization_and_scope(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db, name="A")
            _, other_admin = await make_hospital(db, name="B")
            staff = await make_staff(db, hospital)
            request = await make_request(db, staff)

            with pytest.raises(NotAuthorizedError):
                await reservation_engine.approve(db, staff, request.id)
            with pytest.raises(NotFoundError):
                await reservation_engine.approve(db, other_admin, request.id)
            with pytest.raises(NotFoundError):
                await reservation_engine.get(db, other_admin, request.id)
            with pytest.raises(InvalidInputError):
                await make_request(db, staff, quantity=0)

            listed, total = await reservation_engine.list_requests(db, other_admin)
            assert total == 0 and listed == []

    run_db(scenario)


def test_requester_is_notified_of_approval(run_db):
    async def scenario(sf):
        async with sf() as db:
            hospital, admin = await make_hospital(db)
            staff = await make_staff(db, hospital)
            donor = await make_donor(db, hospital)
            await add_units(db, hospital, donor, 1)
            request = await make_request(db, staff)
            await reservation_engine.approve(db, admin, request.id)

            result = await db.execute(select(Notification).where(Notification.recipient_id == staff.id))
            return result.scalars().all(), request.id

    notifications, request_id = run_db(scenario)
    assert [n.type for n in notifications] == [NotificationType.BLOOD_REQUEST_APPROVED]
    assert notifications[0].meta["requestId"] == str(request_id)
