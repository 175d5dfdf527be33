"""
Notification fan-out: persist a notification, then push it to the recipient's
real-time channels. The stored row is the source of truth; the push is best
effort.
"""
import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Iterable, Optional

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from hemobank.core.config import settings
from hemobank.core.exceptions import NotFoundError
from hemobank.core.security import Role
from hemobank.database import make_session_factory, utcnow
from hemobank.models import (
    BloodRequest, Hospital, Notification, NotificationPriority, NotificationType,
    RecipientModel, TransferRequest, User,
)
from hemobank.services.realtime import (
    NotificationHub, hospital_channel, notification_hub, role_channel, user_channel,
)

logger = logging.getLogger(__name__)

# Types that are also pushed to whole roles
ROLE_BROADCAST_TYPES: dict[NotificationType, tuple[Role, ...]] = {
    NotificationType.EMERGENCY_BROADCAST: (Role.HOSPITAL_ADMIN, Role.SUPER_ADMIN),
    NotificationType.SYSTEM_MAINTENANCE: (Role.SUPER_ADMIN, Role.HOSPITAL_ADMIN, Role.STAFF),
}


def default_expiry(
    type: NotificationType, priority: NotificationPriority, now: Optional[datetime] = None
) -> Optional[datetime]:
    now = now or utcnow()
    if type == NotificationType.SYSTEM_MAINTENANCE:
        return now + timedelta(days=settings.MAINTENANCE_NOTIFICATION_TTL_DAYS)
    if priority == NotificationPriority.LOW:
        return now + timedelta(days=settings.LOW_PRIORITY_NOTIFICATION_TTL_DAYS)
    return None


def _visible(now: datetime):
    return or_(Notification.expires_at.is_(None), Notification.expires_at > now)


class NotificationService:
    """Service for creating, delivering and managing notifications."""

    def __init__(self, hub: Optional[NotificationHub] = None):
        self.hub = hub or notification_hub

    def _build(
        self,
        recipient_id: uuid.UUID,
        type: NotificationType,
        title: str,
        message: str,
        priority: NotificationPriority = NotificationPriority.MEDIUM,
        recipient_model: RecipientModel = RecipientModel.USER,
        hospital_id: Optional[uuid.UUID] = None,
        action_required: bool = False,
        action_url: Optional[str] = None,
        action_text: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        created_by: Optional[uuid.UUID] = None,
        metadata: Optional[dict] = None,
    ) -> Notification:
        now = utcnow()
        return Notification(
            id=uuid.uuid4(),
            recipient_id=recipient_id,
            recipient_model=recipient_model,
            hospital_id=hospital_id,
            type=type,
            title=title.strip(),
            message=message.strip(),
            priority=priority,
            read=False,
            action_required=action_required,
            action_url=action_url,
            action_text=action_text,
            expires_at=expires_at or default_expiry(type, priority, now),
            created_by=created_by,
            meta=metadata or {},
            created_at=now,
        )

    async def _shared_hospital(self, db: AsyncSession, notification: Notification) -> Optional[uuid.UUID]:
        """Hospital channel a notification is shared on: only when the recipient belongs to that hospital."""
        if notification.hospital_id is None or notification.recipient_model != RecipientModel.USER:
            return None
        own = await db.scalar(select(User.hospital_id).where(User.id == notification.recipient_id))
        return notification.hospital_id if own == notification.hospital_id else None

    def _fan_out(self, notification: Notification, hospital_id: Optional[uuid.UUID] = None) -> None:
        channels = [user_channel(notification.recipient_id)]
        if hospital_id:
            channels.append(hospital_channel(hospital_id))
        channels.extend(role_channel(role) for role in ROLE_BROADCAST_TYPES.get(notification.type, ()))
        self.hub.publish_many(channels, notification.to_payload())

    async def create(self, db: AsyncSession, recipient_id: uuid.UUID, type: NotificationType,
                     title: str, message: str, **kwargs) -> Notification:
        """Persist a notification, then publish it to the recipient's channels."""
        notification = self._build(recipient_id, type, title, message, **kwargs)
        db.add(notification)
        await db.commit()
        self._fan_out(notification, await self._shared_hospital(db, notification))
        logger.info(f"Notification {notification.type.value} -> {notification.recipient_id}")
        return notification

    async def dispatch(self, db: AsyncSession, recipients: Iterable[uuid.UUID], type: NotificationType,
                       title: str, message: str, **kwargs) -> list[Notification]:
        """
        Create notifications as a side effect of a workflow step.
        Uses its own session; failures are logged per recipient and
        swallowed so the calling operation is never affected.
        """
        created = []
        targets = [r for r in recipients if r is not None]
        if not targets:
            logger.warning(f"No recipients for {type.value}; notification skipped")
            return created
        async with make_session_factory(db.bind)() as session:
            for recipient_id in targets:
                try:
                    notification = await self.create(session, recipient_id, type, title, message, **kwargs)
                    # detach so a later rollback cannot expire it
                    session.expunge(notification)
                    created.append(notification)
                except Exception as e:
                    logger.error(f"Error sending {type.value} to {recipient_id}: {e}", exc_info=True)
                    await session.rollback()
        return created

    # Workflow notifications

    async def notify_request_approved(self, db: AsyncSession, request: BloodRequest):
        return await self.dispatch(
            db, [request.requested_by], NotificationType.BLOOD_REQUEST_APPROVED,
            "Blood Request Approved",
            f"Your blood request for {request.blood_group.value} ({request.quantity} units) has been approved.",
            priority=NotificationPriority.HIGH,
            hospital_id=request.hospital_id,
            action_url=f"/blood-requests/{request.id}",
            action_text="View Request",
            metadata={"requestId": str(request.id), "bloodGroup": request.blood_group.value,
                      "quantity": request.quantity, "hospitalId": str(request.hospital_id)},
        )

    async def notify_request_rejected(self, db: AsyncSession, request: BloodRequest):
        reason = f" Reason: {request.rejected_reason}" if request.rejected_reason else ""
        return await self.dispatch(
            db, [request.requested_by], NotificationType.BLOOD_REQUEST_REJECTED,
            "Blood Request Rejected",
            f"Your blood request for {request.blood_group.value} ({request.quantity} units) has been rejected.{reason}",
            priority=NotificationPriority.HIGH,
            hospital_id=request.hospital_id,
            metadata={"requestId": str(request.id), "bloodGroup": request.blood_group.value,
                      "quantity": request.quantity, "rejectionReason": request.rejected_reason},
        )

    async def notify_request_fulfilled(self, db: AsyncSession, request: BloodRequest):
        return await self.dispatch(
            db, [request.requested_by], NotificationType.BLOOD_REQUEST_FULFILLED,
            "Blood Request Fulfilled",
            f"Your blood request for {request.blood_group.value} ({request.quantity} units) has been fulfilled successfully.",
            priority=NotificationPriority.MEDIUM,
            hospital_id=request.hospital_id,
            action_url=f"/blood-requests/{request.id}",
            action_text="View Details",
            metadata={"requestId": str(request.id), "bloodGroup": request.blood_group.value,
                      "quantity": request.quantity},
        )

    async def notify_request_cancelled(self, db: AsyncSession, request: BloodRequest):
        return await self.dispatch(
            db, [request.requested_by], NotificationType.BLOOD_REQUEST_CANCELLED,
            "Blood Request Cancelled",
            f"The blood request for {request.blood_group.value} ({request.quantity} units) has been cancelled.",
            priority=NotificationPriority.MEDIUM,
            hospital_id=request.hospital_id,
            metadata={"requestId": str(request.id), "bloodGroup": request.blood_group.value},
        )

    async def notify_transfer(self, db: AsyncSession, transfer: TransferRequest, type: NotificationType,
                              hospital_id: uuid.UUID, title: str, message: str,
                              priority: NotificationPriority = NotificationPriority.MEDIUM,
                              action_required: bool = False):
        """Notify the admin of one side of a transfer."""
        try:
            admin_id = await db.scalar(select(Hospital.admin_id).where(Hospital.id == hospital_id))
        except Exception as e:
            logger.error(f"Error looking up admin of hospital {hospital_id}: {e}")
            return []
        if not admin_id:
            logger.warning(f"Hospital {hospital_id} has no admin; {type.value} not delivered")
            return []
        return await self.dispatch(
            db, [admin_id], type, title, message,
            priority=priority,
            hospital_id=hospital_id,
            action_required=action_required,
            action_url=f"/inter-hospital-requests/{transfer.id}",
            action_text="View Request",
            metadata={"transferId": str(transfer.id), "fromHospitalId": str(transfer.from_hospital_id),
                      "toHospitalId": str(transfer.to_hospital_id), "status": transfer.status.value,
                      "bloodGroup": transfer.blood_group.value, "quantity": transfer.quantity},
        )

    async def super_admin_ids(self, db: AsyncSession) -> list[uuid.UUID]:
        result = await db.execute(
            select(User.id).where(User.role == Role.SUPER_ADMIN, User.is_active.is_(True))
        )
        return list(result.scalars().all())

    async def broadcast_emergency(self, db: AsyncSession, title: str, message: str,
                                  priority: NotificationPriority = NotificationPriority.HIGH,
                                  created_by: Optional[uuid.UUID] = None) -> list[Notification]:
        """
        Persist one notification per admin and push a single alert on each
        admin role channel. Admins pick up their stored copy on re-fetch.
        """
        result = await db.execute(
            select(User).where(
                User.role.in_([Role.HOSPITAL_ADMIN, Role.SUPER_ADMIN]),
                User.is_active.is_(True),
            )
        )
        admins = result.scalars().all()
        notifications = [
            self._build(
                admin.id, NotificationType.EMERGENCY_BROADCAST, title, message,
                priority=priority,
                hospital_id=admin.hospital_id,
                action_required=True,
                action_url="/dashboard",
                action_text="View Dashboard",
                created_by=created_by,
            )
            for admin in admins
        ]
        db.add_all(notifications)
        await db.commit()

        payload = {"type": NotificationType.EMERGENCY_BROADCAST.value, "title": title,
                   "message": message, "priority": priority.value}
        for role in ROLE_BROADCAST_TYPES[NotificationType.EMERGENCY_BROADCAST]:
            self.hub.publish(role_channel(role), payload, event="emergency_notification")
        logger.info(f"Emergency broadcast delivered to {len(notifications)} admins")
        return notifications

    # Recipient-facing operations

    async def list_for_recipient(self, db: AsyncSession, recipient_id: uuid.UUID,
                                 recipient_model: RecipientModel = RecipientModel.USER,
                                 page: int = 1, limit: int = 20) -> dict:
        now = utcnow()
        page = max(page, 1)
        conditions = (
            Notification.recipient_id == recipient_id,
            Notification.recipient_model == recipient_model,
            _visible(now),
        )
        result = await db.execute(
            select(Notification)
            .where(*conditions)
            .order_by(Notification.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        notifications = result.scalars().all()
        total = await db.scalar(select(func.count()).select_from(Notification).where(*conditions))
        unread = await self.unread_count(db, recipient_id, recipient_model)
        return {
            "notifications": list(notifications),
            "total": total,
            "unread_count": unread,
            "page": page,
            "total_pages": math.ceil(total / limit) if limit else 0,
        }

    async def unread_count(self, db: AsyncSession, recipient_id: uuid.UUID,
                           recipient_model: RecipientModel = RecipientModel.USER) -> int:
        return await db.scalar(
            select(func.count()).select_from(Notification).where(
                Notification.recipient_id == recipient_id,
                Notification.recipient_model == recipient_model,
                Notification.read.is_(False),
                _visible(utcnow()),
            )
        )

    async def mark_read(self, db: AsyncSession, notification_id: uuid.UUID,
                        recipient_id: uuid.UUID) -> Notification:
        """Idempotent: an already-read notification is returned unchanged."""
        notification = await db.scalar(
            select(Notification).where(
                Notification.id == notification_id,
                Notification.recipient_id == recipient_id,
            )
        )
        if not notification:
            raise NotFoundError("Notification not found")
        if not notification.read:
            await db.execute(
                update(Notification)
                .where(Notification.id == notification_id, Notification.read.is_(False))
                .values(read=True, read_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            await db.refresh(notification)
        return notification

    async def mark_many_read(self, db: AsyncSession, notification_ids: list[uuid.UUID],
                             recipient_id: uuid.UUID) -> int:
        if not notification_ids:
            return 0
        result = await db.execute(
            update(Notification)
            .where(
                Notification.id.in_(notification_ids),
                Notification.recipient_id == recipient_id,
                Notification.read.is_(False),
            )
            .values(read=True, read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount

    async def mark_all_read(self, db: AsyncSession, recipient_id: uuid.UUID,
                            recipient_model: RecipientModel = RecipientModel.USER) -> int:
        result = await db.execute(
            update(Notification)
            .where(
                Notification.recipient_id == recipient_id,
                Notification.recipient_model == recipient_model,
                Notification.read.is_(False),
            )
            .values(read=True, read_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        return result.rowcount

    async def delete(self, db: AsyncSession, notification_id: uuid.UUID, recipient_id: uuid.UUID) -> None:
        result = await db.execute(
            delete(Notification)
            .where(Notification.id == notification_id, Notification.recipient_id == recipient_id)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount == 0:
            raise NotFoundError("Notification not found")

    async def cleanup_expired(self, db: AsyncSession) -> int:
        """Delete every notification whose expiry has passed."""
        result = await db.execute(
            delete(Notification)
            .where(Notification.expires_at.is_not(None), Notification.expires_at < utcnow())
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info(f"Cleaned up {result.rowcount} expired notifications")
        return result.rowcount


# Global instance
notification_service = NotificationService()
