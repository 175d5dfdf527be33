"""
Reservation engine: blood request lifecycle.

    pending --approve--> approved --fulfill--> fulfilled
       |                    |
       +--reject--> rejected +--cancel--> cancelled (units released)
       +--cancel--> cancelled

Approval claims exactly `quantity` units or nothing. Every request
transition is a conditional update on the current status, so concurrent
approvals, rejections and cancellations of one request have one winner.
"""
import logging
import secrets
import string
import time
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hemobank.core.exceptions import (
    InsufficientStockError, InvalidInputError, InvalidStateError, NotAuthorizedError, NotFoundError,
)
from hemobank.core.security import Actor
from hemobank.database import utcnow
from hemobank.models import BloodGroup, BloodRequest, RequestStatus, Urgency
from hemobank.services.audit_service import audit_service
from hemobank.services.notification_service import notification_service
from hemobank.services.unit_store import unit_store

logger = logging.getLogger(__name__)


def generate_request_code() -> str:
    suffix = "".join(secrets.choice(string.ascii_uppercase + string.digits) for _ in range(9))
    return f"REQ-{int(time.time() * 1000)}-{suffix}"


class ReservationEngine:
    """Approves, rejects, fulfils and cancels blood requests."""

    def __init__(self, units=None, notifications=None, audit=None):
        self.units = units or unit_store
        self.notifications = notifications or notification_service
        self.audit = audit or audit_service

    @staticmethod
    def _require_admin(actor: Actor, action: str) -> None:
        if not actor.is_admin:
            raise NotAuthorizedError(f"Only administrators can {action} blood requests")

    async def _transition(
        self, db: AsyncSession, request: BloodRequest, expected: RequestStatus, **values
    ) -> bool:
        """Conditional status write; False when another caller moved the request first."""
        result = await db.execute(
            update(BloodRequest)
            .where(BloodRequest.id == request.id, BloodRequest.status == expected)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def _lost_race(self, db: AsyncSession, request: BloodRequest) -> InvalidStateError:
        await db.rollback()
        await db.refresh(request)
        return InvalidStateError(f"Request is already {request.status.value}", request.status.value)

    async def create_request(
        self,
        db: AsyncSession,
        actor: Actor,
        patient_name: str,
        blood_group: BloodGroup,
        quantity: int,
        reason: str,
        urgency: Urgency = Urgency.MEDIUM,
        required_by: Optional[datetime] = None,
    ) -> BloodRequest:
        if actor.hospital_id is None:
            raise InvalidInputError("User is not linked to a hospital")
        if quantity <= 0:
            raise InvalidInputError("Quantity must be a positive integer")
        if not patient_name or not patient_name.strip():
            raise InvalidInputError("Patient name is required")
        if not reason or not reason.strip():
            raise InvalidInputError("A reason is required")

        request = BloodRequest(
            id=uuid.uuid4(),
            request_code=generate_request_code(),
            hospital_id=actor.hospital_id,
            requested_by=actor.id,
            patient_name=patient_name.strip(),
            blood_group=blood_group,
            quantity=quantity,
            urgency=urgency,
            reason=reason.strip(),
            required_by=required_by,
            status=RequestStatus.PENDING,
            reserved_units=[],
            fulfilled_units=[],
        )
        db.add(request)
        await db.commit()
        await db.refresh(request)

        logger.info(f"Blood request {request.request_code} created: {quantity} x {blood_group.value}")
        self.audit.emit(
            db, "BLOOD_REQUEST_CREATED", "BloodRequest", request.id,
            user_id=actor.id, hospital_id=request.hospital_id, after=request.snapshot(),
        )
        return request

    async def get(self, db: AsyncSession, actor: Actor, request_id: uuid.UUID) -> BloodRequest:
        request = await db.get(BloodRequest, request_id, populate_existing=True)
        if not request or not actor.can_see(request.hospital_id):
            raise NotFoundError("Blood request not found")
        return request

    async def list_requests(
        self,
        db: AsyncSession,
        actor: Actor,
        status: Optional[RequestStatus] = None,
        blood_group: Optional[BloodGroup] = None,
        skip: int = 0,
        limit: int = 50,
    ) -> tuple[list[BloodRequest], int]:
        conditions = []
        if not actor.is_super_admin:
            conditions.append(BloodRequest.hospital_id == actor.hospital_id)
        if status:
            conditions.append(BloodRequest.status == status)
        if blood_group:
            conditions.append(BloodRequest.blood_group == blood_group)

        total = await db.scalar(select(func.count()).select_from(BloodRequest).where(*conditions))
        result = await db.execute(
            select(BloodRequest)
            .where(*conditions)
            .order_by(BloodRequest.created_at.desc())
            .offset(skip)
            .limit(limit)
        )
        return list(result.scalars().all()), total

    async def approve(self, db: AsyncSession, actor: Actor, request_id: uuid.UUID) -> BloodRequest:
        """
        Claim `quantity` units for the request and mark it approved.

        Raises:
            InvalidStateError: request is not pending
            InsufficientStockError: fewer claimable units than requested;
                any partial claim is released first
        """
        self._require_admin(actor, "approve")
        request = await self.get(db, actor, request_id)
        if request.status != RequestStatus.PENDING:
            raise InvalidStateError(f"Request is already {request.status.value}", request.status.value)
        before = request.snapshot()

        try:
            claimed = await self.units.claim_available(
                db, request.hospital_id, request.blood_group, request.quantity, reservation_id=request.id
            )
            if len(claimed) < request.quantity:
                await self.units.release(db, claimed, request.id)
                await db.commit()
                logger.info(
                    f"Request {request.request_code} not approved: "
                    f"{len(claimed)}/{request.quantity} {request.blood_group.value} available"
                )
                raise InsufficientStockError(available=len(claimed), required=request.quantity)

            now = utcnow()
            won = await self._transition(
                db, request, RequestStatus.PENDING,
                status=RequestStatus.APPROVED,
                approved_by=actor.id,
                approved_at=now,
                reserved_units=[str(unit_id) for unit_id in claimed],
            )
            if not won:
                raise await self._lost_race(db, request)
            await db.commit()
        except Exception:
            if db.in_transaction():
                await db.rollback()
            raise

        await db.refresh(request)
        logger.info(f"Request {request.request_code} approved by {actor.id}")
        self.audit.emit(
            db, "BLOOD_REQUEST_APPROVED", "BloodRequest", request.id,
            user_id=actor.id, hospital_id=request.hospital_id, before=before, after=request.snapshot(),
        )
        await self.notifications.notify_request_approved(db, request)
        return request

    async def reject(self, db: AsyncSession, actor: Actor, request_id: uuid.UUID, reason: str) -> BloodRequest:
        self._require_admin(actor, "reject")
        if not reason or not reason.strip():
            raise InvalidInputError("A rejection reason is required")
        request = await self.get(db, actor, request_id)
        if request.status != RequestStatus.PENDING:
            raise InvalidStateError(f"Request is already {request.status.value}", request.status.value)
        before = request.snapshot()

        won = await self._transition(
            db, request, RequestStatus.PENDING,
            status=RequestStatus.REJECTED,
            rejected_reason=reason.strip(),
            rejected_by=actor.id,
            rejected_at=utcnow(),
        )
        if not won:
            raise await self._lost_race(db, request)
        await db.commit()
        await db.refresh(request)

        logger.info(f"Request {request.request_code} rejected by {actor.id}")
        self.audit.emit(
            db, "BLOOD_REQUEST_REJECTED", "BloodRequest", request.id,
            user_id=actor.id, hospital_id=request.hospital_id, before=before, after=request.snapshot(),
            reason=request.rejected_reason,
        )
        await self.notifications.notify_request_rejected(db, request)
        return request

    async def fulfill(self, db: AsyncSession, actor: Actor, request_id: uuid.UUID) -> BloodRequest:
        """Issue exactly the units reserved at approval."""
        self._require_admin(actor, "fulfil")
        request = await self.get(db, actor, request_id)
        if request.status != RequestStatus.APPROVED:
            raise InvalidStateError(
                f"Only approved requests can be fulfilled; request is {request.status.value}",
                request.status.value,
            )
        before = request.snapshot()
        unit_ids = [uuid.UUID(unit_id) for unit_id in request.reserved_units]

        try:
            await self.units.issue(db, unit_ids, request.id, actor.id)
            now = utcnow()
            won = await self._transition(
                db, request, RequestStatus.APPROVED,
                status=RequestStatus.FULFILLED,
                fulfilled_by=actor.id,
                fulfilled_at=now,
                fulfilled_units=[{"unit_id": str(unit_id), "fulfilled_at": now.isoformat()} for unit_id in unit_ids],
            )
            if not won:
                raise await self._lost_race(db, request)
            await db.commit()
        except Exception:
            if db.in_transaction():
                await db.rollback()
            raise

        await db.refresh(request)
        logger.info(f"Request {request.request_code} fulfilled with {len(unit_ids)} units")
        self.audit.emit(
            db, "BLOOD_REQUEST_FULFILLED", "BloodRequest", request.id,
            user_id=actor.id, hospital_id=request.hospital_id, before=before, after=request.snapshot(),
        )
        await self.notifications.notify_request_fulfilled(db, request)
        return request

    async def cancel(self, db: AsyncSession, actor: Actor, request_id: uuid.UUID) -> BloodRequest:
        """Cancel a pending or approved request; an approved request's units go back to stock."""
        request = await self.get(db, actor, request_id)
        if not actor.is_admin and request.requested_by != actor.id:
            raise NotAuthorizedError("Only administrators or the requester can cancel a blood request")
        current = request.status
        if current not in (RequestStatus.PENDING, RequestStatus.APPROVED):
            raise InvalidStateError(f"Request is already {current.value}", current.value)
        before = request.snapshot()

        try:
            won = await self._transition(
                db, request, current,
                status=RequestStatus.CANCELLED,
                cancelled_by=actor.id,
                cancelled_at=utcnow(),
            )
            if not won:
                raise await self._lost_race(db, request)
            released = 0
            if current == RequestStatus.APPROVED:
                released = await self.units.release(
                    db, [uuid.UUID(unit_id) for unit_id in request.reserved_units], request.id
                )
            await db.commit()
        except Exception:
            if db.in_transaction():
                await db.rollback()
            raise

        await db.refresh(request)
        logger.info(f"Request {request.request_code} cancelled; {released} units released")
        self.audit.emit(
            db, "BLOOD_REQUEST_CANCELLED", "BloodRequest", request.id,
            user_id=actor.id, hospital_id=request.hospital_id, before=before, after=request.snapshot(),
            released_units=released,
        )
        await self.notifications.notify_request_cancelled(db, request)
        return request


# Global instance
reservation_engine = ReservationEngine()
