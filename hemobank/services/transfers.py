"""
Inter-hospital transfers.

A transfer is raised by the hospital that needs blood (from_hospital) and
addressed to the hospital that holds it (to_hospital). Approval claims units
at the supplying hospital with the same all-or-nothing claim used for blood
requests; completion hands the units over as available stock.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hemobank.core.exceptions import (
    InsufficientStockError, InvalidInputError, InvalidStateError, InvalidTransitionError,
    NotAuthorizedError, NotFoundError,
)
from hemobank.core.security import Actor
from hemobank.database import utcnow
from hemobank.models import (
    BloodGroup, BloodUnit, Hospital, NotificationPriority, NotificationType, TransferRequest,
    TransferStatus, UnitStatus, Urgency,
)
from hemobank.services.audit_service import audit_service
from hemobank.services.notification_service import notification_service
from hemobank.services.unit_store import unit_store

logger = logging.getLogger(__name__)


class TransferService:
    def __init__(self, units=None, notifications=None, audit=None):
        self.units = units or unit_store
        self.notifications = notifications or notification_service
        self.audit = audit or audit_service

    async def _transition(self, db: AsyncSession, transfer: TransferRequest, expected: TransferStatus, **values) -> bool:
        result = await db.execute(
            update(TransferRequest)
            .where(TransferRequest.id == transfer.id, TransferRequest.status == expected)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _lost_race(self, db: AsyncSession, transfer: TransferRequest) -> InvalidStateError:
        await db.rollback()
        await db.refresh(transfer)
        return InvalidStateError(f"Transfer is already {transfer.status.value}", transfer.status.value)

    @staticmethod
    def _require_status(transfer: TransferRequest, expected: TransferStatus, action: str) -> None:
        if transfer.status != expected:
            raise InvalidStateError(
                f"Cannot {action} a {transfer.status.value} transfer", transfer.status.value
            )

    @staticmethod
    def _require_admin_of(actor: Actor, hospital_id: uuid.UUID, action: str) -> None:
        if not actor.is_admin or actor.hospital_id != hospital_id:
            raise NotAuthorizedError(f"Only the supplying hospital's administrator can {action} this transfer")

    def _emit(self, db, action: str, transfer: TransferRequest, actor: Actor, before: Optional[dict] = None, **extra):
        self.audit.emit(
            db, action, "TransferRequest", transfer.id,
            user_id=actor.id, hospital_id=actor.hospital_id,
            before=before, after=transfer.snapshot(), **extra,
        )

    async def create(
        self,
        db: AsyncSession,
        actor: Actor,
        to_hospital_id: uuid.UUID,
        blood_group: BloodGroup,
        quantity: int,
        urgency: Urgency = Urgency.MEDIUM,
        note: Optional[str] = None,
    ) -> TransferRequest:
        if actor.hospital_id is None:
            raise InvalidInputError("User is not linked to a hospital")
        if quantity <= 0:
            raise InvalidInputError("Quantity must be a positive integer")
        if to_hospital_id == actor.hospital_id:
            raise InvalidInputError("Cannot request a transfer from your own hospital")
        supplier = await db.get(Hospital, to_hospital_id)
        if not supplier or not supplier.is_approved:
            raise InvalidInputError("Target hospital not found or not approved")

        transfer = TransferRequest(
            id=uuid.uuid4(),
            from_hospital_id=actor.hospital_id,
            to_hospital_id=to_hospital_id,
            requested_by=actor.id,
            blood_group=blood_group,
            quantity=quantity,
            urgency=urgency,
            note=note,
            status=TransferStatus.PENDING,
            reserved_units=[],
        )
        db.add(transfer)
        await db.commit()
        await db.refresh(transfer)

        logger.info(f"Transfer {transfer.id}: {quantity} x {blood_group.value} requested from {supplier.name}")
        self._emit(db, "TRANSFER_CREATED", transfer, actor)
        await self.notifications.notify_transfer(
            db, transfer, NotificationType.TRANSFER_REQUEST_CREATED, transfer.to_hospital_id,
            "New Transfer Request",
            f"A hospital has requested {quantity} units of {blood_group.value}.",
            priority=NotificationPriority.HIGH if urgency in (Urgency.HIGH, Urgency.CRITICAL) else NotificationPriority.MEDIUM,
            action_required=True,
        )
        return transfer

    async def get(self, db: AsyncSession, actor: Actor, transfer_id: uuid.UUID) -> TransferRequest:
        """Visible to both parties and to super admins."""
        transfer = await db.get(TransferRequest, transfer_id, populate_existing=True)
        if not transfer or not (
            actor.is_super_admin or actor.hospital_id in (transfer.from_hospital_id, transfer.to_hospital_id)
        ):
            raise NotFoundError("Transfer request not found")
        return transfer

    async def list_transfers(
        self,
        db: AsyncSession,
        actor: Actor,
        status: Optional[TransferStatus] = None,
        direction: Optional[str] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[TransferRequest], int]:
        """direction: "incoming" (asked of us), "outgoing" (raised by us) or None for both."""
        conditions = []
        if not actor.is_super_admin:
            if direction == "incoming":
                conditions.append(TransferRequest.to_hospital_id == actor.hospital_id)
            elif direction == "outgoing":
                conditions.append(TransferRequest.from_hospital_id == actor.hospital_id)
            else:
                conditions.append(or_(
                    TransferRequest.from_hospital_id == actor.hospital_id,
                    TransferRequest.to_hospital_id == actor.hospital_id,
                ))
        if status:
            conditions.append(TransferRequest.status == status)

        total = await db.scalar(select(func.count()).select_from(TransferRequest).where(*conditions))
        result = await db.execute(
            select(TransferRequest)
            .where(*conditions)
            .order_by(TransferRequest.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def approve(self, db: AsyncSession, actor: Actor, transfer_id: uuid.UUID) -> TransferRequest:
        transfer = await self.get(db, actor, transfer_id)
        self._require_admin_of(actor, transfer.to_hospital_id, "approve")
        self._require_status(transfer, TransferStatus.PENDING, "approve")
        before = transfer.snapshot()

        try:
            claimed = await self.units.claim_available(
                db, transfer.to_hospital_id, transfer.blood_group, transfer.quantity, reservation_id=transfer.id
            )
            if len(claimed) < transfer.quantity:
                await self.units.release(db, claimed, transfer.id)
                await db.commit()
                raise InsufficientStockError(available=len(claimed), required=transfer.quantity)
            won = await self._transition(
                db, transfer, TransferStatus.PENDING,
                status=TransferStatus.APPROVED,
                approved_by=actor.id,
                approved_at=utcnow(),
                reserved_units=[str(unit_id) for unit_id in claimed],
            )
            if not won:
                raise await self._lost_race(db, transfer)
            await db.commit()
        except Exception:
            if db.in_transaction():
                await db.rollback()
            raise

        await db.refresh(transfer)
        logger.info(f"Transfer {transfer.id} approved; {transfer.quantity} units reserved")
        self._emit(db, "TRANSFER_APPROVED", transfer, actor, before)
        await self.notifications.notify_transfer(
            db, transfer, NotificationType.TRANSFER_APPROVED, transfer.from_hospital_id,
            "Transfer Request Approved",
            f"Your transfer request for {transfer.quantity} units of {transfer.blood_group.value} has been approved.",
            priority=NotificationPriority.HIGH,
        )
        return transfer

    async def reject(self, db: AsyncSession, actor: Actor, transfer_id: uuid.UUID,
                     reason: Optional[str] = None) -> TransferRequest:
        transfer = await self.get(db, actor, transfer_id)
        self._require_admin_of(actor, transfer.to_hospital_id, "reject")
        self._require_status(transfer, TransferStatus.PENDING, "reject")
        before = transfer.snapshot()

        won = await self._transition(
            db, transfer, TransferStatus.PENDING,
            status=TransferStatus.REJECTED,
            rejected_reason=(reason or "").strip() or "Rejected by hospital",
        )
        if not won:
            raise await self._lost_race(db, transfer)
        await db.commit()
        await db.refresh(transfer)

        self._emit(db, "TRANSFER_REJECTED", transfer, actor, before, reason=transfer.rejected_reason)
        await self.notifications.notify_transfer(
            db, transfer, NotificationType.TRANSFER_REJECTED, transfer.from_hospital_id,
            "Transfer Request Rejected",
            f"Your transfer request for {transfer.quantity} units of {transfer.blood_group.value} "
            f"was rejected. Reason: {transfer.rejected_reason}",
            priority=NotificationPriority.HIGH,
        )
        return transfer

    async def complete(self, db: AsyncSession, actor: Actor, transfer_id: uuid.UUID) -> TransferRequest:
        """Hand the reserved units over to the requesting hospital as available stock."""
        transfer = await self.get(db, actor, transfer_id)
        if not actor.is_admin or actor.hospital_id not in (transfer.from_hospital_id, transfer.to_hospital_id):
            raise NotAuthorizedError("Only an administrator of either hospital can complete this transfer")
        self._require_status(transfer, TransferStatus.APPROVED, "complete")
        before = transfer.snapshot()
        unit_ids = [uuid.UUID(unit_id) for unit_id in transfer.reserved_units]

        try:
            now = utcnow()
            won = await self._transition(
                db, transfer, TransferStatus.APPROVED, status=TransferStatus.COMPLETED, completed_at=now,
            )
            if not won:
                raise await self._lost_race(db, transfer)

            result = await db.execute(
                select(BloodUnit)
                .where(
                    BloodUnit.id.in_(unit_ids),
                    BloodUnit.status == UnitStatus.RESERVED,
                    BloodUnit.reservation_id == transfer.id,
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            )
            units = result.scalars().all()
            if len(units) != len(unit_ids):
                raise InvalidTransitionError(
                    f"Only {len(units)} of {len(unit_ids)} units are still reserved for this transfer"
                )
            for unit in units:
                unit.movement_history = list(unit.movement_history or []) + [{
                    "from": f"hospital:{transfer.to_hospital_id}",
                    "to": f"hospital:{transfer.from_hospital_id}",
                    "moved_by": str(actor.id),
                    "moved_at": now.isoformat(),
                    "notes": f"Inter-hospital transfer {transfer.id}",
                }]
                unit.hospital_id = transfer.from_hospital_id
                unit.status = UnitStatus.AVAILABLE
                unit.reservation_id = None
                unit.storage_location = None
                unit.storage_shelf = None
            await db.commit()
        except Exception:
            if db.in_transaction():
                await db.rollback()
            raise

        await db.refresh(transfer)
        logger.info(f"Transfer {transfer.id} completed; {len(unit_ids)} units moved")
        self._emit(db, "TRANSFER_COMPLETED", transfer, actor, before)
        other_side = (
            transfer.to_hospital_id if actor.hospital_id == transfer.from_hospital_id else transfer.from_hospital_id
        )
        await self.notifications.notify_transfer(
            db, transfer, NotificationType.TRANSFER_COMPLETED, other_side,
            "Transfer Completed",
            f"The transfer of {transfer.quantity} units of {transfer.blood_group.value} has been completed.",
        )
        return transfer

    async def cancel(self, db: AsyncSession, actor: Actor, transfer_id: uuid.UUID) -> TransferRequest:
        """Withdrawn by the requesting hospital; approved units return to the supplier's stock."""
        transfer = await self.get(db, actor, transfer_id)
        if actor.hospital_id != transfer.from_hospital_id or not (actor.is_admin or actor.id == transfer.requested_by):
            raise NotAuthorizedError("Only the requesting hospital can cancel this transfer")
        current = transfer.status
        if current not in (TransferStatus.PENDING, TransferStatus.APPROVED):
            raise InvalidStateError(f"Cannot cancel a {current.value} transfer", current.value)
        before = transfer.snapshot()

        try:
            won = await self._transition(
                db, transfer, current, status=TransferStatus.CANCELLED, cancelled_at=utcnow(),
            )
            if not won:
                raise await self._lost_race(db, transfer)
            if current == TransferStatus.APPROVED:
                await self.units.release(
                    db, [uuid.UUID(unit_id) for unit_id in transfer.reserved_units], transfer.id
                )
            await db.commit()
        except Exception:
            if db.in_transaction():
                await db.rollback()
            raise

        await db.refresh(transfer)
        self._emit(db, "TRANSFER_CANCELLED", transfer, actor, before)
        await self.notifications.notify_transfer(
            db, transfer, NotificationType.TRANSFER_CANCELLED, transfer.to_hospital_id,
            "Transfer Request Cancelled",
            f"The transfer request for {transfer.quantity} units of {transfer.blood_group.value} was cancelled.",
        )
        return transfer


# Global instance
transfer_service = TransferService()
