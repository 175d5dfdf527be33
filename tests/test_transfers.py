"""Inter-hospital transfers between a requesting and a supplying hospital."""
import pytest
from sqlalchemy import select

from hemobank.core.exceptions import (
    InsufficientStockError, InvalidInputError, InvalidStateError, NotAuthorizedError, NotFoundError,
)
from hemobank.models import (
    BloodGroup, BloodUnit, Notification, NotificationType, TransferStatus, UnitStatus, Urgency,
)
from hemobank.services.transfers import transfer_service
from tests.helpers import add_units, make_donor, make_hospital, make_staff


async def two_hospitals(db, stock=3):
    """Requester A with no stock, supplier B holding `stock` O+ units."""
    requester, requester_admin = await make_hospital(db, name="Requester")
    supplier, supplier_admin = await make_hospital(db, name="Supplier")
    donor = await make_donor(db, supplier)
    units = await add_units(db, supplier, donor, stock)
    return requester, requester_admin, supplier, supplier_admin, units


async def notification_types(db, recipient_id):
    result = await db.execute(
        select(Notification.type).where(Notification.recipient_id == recipient_id).order_by(Notification.created_at)
    )
    return list(result.scalars().all())


def test_transfer_lifecycle_moves_units(run_db):
    async def scenario(sf):
        async with sf() as db:
            requester, requester_admin, supplier, supplier_admin, units = await two_hospitals(db)

            transfer = await transfer_service.create(
                db, requester_admin, supplier.id, BloodGroup.O_POSITIVE, 2, urgency=Urgency.HIGH, note="Trauma"
            )
            assert transfer.status == TransferStatus.PENDING
            assert transfer.from_hospital_id == requester.id

            transfer = await transfer_service.approve(db, supplier_admin, transfer.id)
            assert transfer.status == TransferStatus.APPROVED
            assert len(transfer.reserved_units) == 2

            transfer = await transfer_service.complete(db, requester_admin, transfer.id)
            assert transfer.status == TransferStatus.COMPLETED
            assert transfer.completed_at is not None

            result = await db.execute(select(BloodUnit).execution_options(populate_existing=True))
            by_hospital = {}
            for unit in result.scalars().all():
                by_hospital.setdefault(unit.hospital_id, []).append(unit)
            moved = by_hospital[requester.id]
            assert len(moved) == 2 and len(by_hospital[supplier.id]) == 1
            for unit in moved:
                assert unit.status == UnitStatus.AVAILABLE
                assert unit.reservation_id is None
                assert unit.movement_history[-1]["to"] == f"hospital:{requester.id}"

            assert await notification_types(db, supplier_admin.id) == [
                NotificationType.TRANSFER_REQUEST_CREATED, NotificationType.TRANSFER_COMPLETED,
            ]
            assert await notification_types(db, requester_admin.id) == [NotificationType.TRANSFER_APPROVED]

    run_db(scenario)


def test_only_the_supplier_admin_decides(run_db):
    async def scenario(sf):
        async with sf() as db:
            requester, requester_admin, supplier, supplier_admin, _ = await two_hospitals(db)
            supplier_staff = await make_staff(db, supplier)
            transfer = await transfer_service.create(db, requester_admin, supplier.id, BloodGroup.O_POSITIVE, 1)

            with pytest.raises(NotAuthorizedError):
                await transfer_service.approve(db, requester_admin, transfer.id)
            with pytest.raises(NotAuthorizedError):
                await transfer_service.approve(db, supplier_staff, transfer.id)
            with pytest.raises(NotAuthorizedError):
                await transfer_service.reject(db, requester_admin, transfer.id)

            rejected = await transfer_service.reject(db, supplier_admin, transfer.id)
            assert rejected.status == TransferStatus.REJECTED
            assert rejected.rejected_reason == "Rejected by hospital"

            with pytest.raises(InvalidStateError):
                await transfer_service.approve(db, supplier_admin, transfer.id)

    run_db(scenario)


def test_approval_is_all_or_nothing(run_db):
    async def scenario(sf):
        async with sf() as db:
            requester, requester_admin, supplier, supplier_admin, units = await two_hospitals(db, stock=2)
            transfer = await transfer_service.create(db, requester_admin, supplier.id, BloodGroup.O_POSITIVE, 3)

            with pytest.raises(InsufficientStockError) as exc_info:
                await transfer_service.approve(db, supplier_admin, transfer.id)
            assert (exc_info.value.available, exc_info.value.required) == (2, 3)

            statuses = await db.execute(select(BloodUnit.status))
            assert set(statuses.scalars().all()) == {UnitStatus.AVAILABLE}
            current = await transfer_service.get(db, requester_admin, transfer.id)
            assert current.status == TransferStatus.PENDING

    run_db(scenario)


def test_cancel_approved_transfer_returns_stock_to_supplier(run_db):
    async def scenario(sf):
        async with sf() as db:
            requester, requester_admin, supplier, supplier_admin, _ = await two_hospitals(db)
            transfer = await transfer_service.create(db, requester_admin, supplier.id, BloodGroup.O_POSITIVE, 2)
            await transfer_service.approve(db, supplier_admin, transfer.id)

            with pytest.raises(NotAuthorizedError):
                await transfer_service.cancel(db, supplier_admin, transfer.id)

            cancelled = await transfer_service.cancel(db, requester_admin, transfer.id)
            assert cancelled.status == TransferStatus.CANCELLED

            result = await db.execute(select(BloodUnit.hospital_id, BloodUnit.status, BloodUnit.reservation_id))
            for hospital_id, status, reservation_id in result.all():
                assert hospital_id == supplier.id
                assert status == UnitStatus.AVAILABLE
                assert reservation_id is None

            with pytest.raises(InvalidStateError):
                await transfer_service.complete(db, requester_admin, transfer.id)

    run_db(scenario)


def test_create_validation(run_db):
    async def scenario(sf):
        async with sf() as db:
            requester, requester_admin = await make_hospital(db, name="Requester")
            pending, _ = await make_hospital(db, name="Unapproved", approved=False)

            with pytest.raises(InvalidInputError):
                await transfer_service.create(db, requester_admin, requester.id, BloodGroup.A_NEGATIVE, 1)
            with pytest.raises(InvalidInputError):
                await transfer_service.create(db, requester_admin, pending.id, BloodGroup.A_NEGATIVE, 1)
            with pytest.raises(InvalidInputError):
                await transfer_service.create(db, requester_admin, pending.id, BloodGroup.A_NEGATIVE, 0)

    run_db(scenario)


def test_visibility_and_direction(run_db):
    async def scenario(sf):
        async with sf() as db:
            requester, requester_admin, supplier, supplier_admin, _ = await two_hospitals(db)
            _, outsider = await make_hospital(db, name="Outsider")
            transfer = await transfer_service.create(db, requester_admin, supplier.id, BloodGroup.O_POSITIVE, 1)

            with pytest.raises(NotFoundError):
                await transfer_service.get(db, outsider, transfer.id)
            assert (await transfer_service.get(db, supplier_admin, transfer.id)).id == transfer.id

            incoming, total = await transfer_service.list_transfers(db, supplier_admin, direction="incoming")
            assert total == 1 and incoming[0].id == transfer.id
            _, total = await transfer_service.list_transfers(db, supplier_admin, direction="outgoing")
            assert total == 0
            _, total = await transfer_service.list_transfers(db, requester_admin)
            assert total == 1
            _, total = await transfer_service.list_transfers(db, outsider)
            assert total == 0

    run_db(scenario)
