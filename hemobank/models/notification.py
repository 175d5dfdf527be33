import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from hemobank.database import Base, JSONType, UTCDateTime, str_enum, utcnow
from hemobank.models.enums import NotificationPriority, NotificationType, RecipientModel


class Notification(Base):
    __tablename__ = "notifications"
    __table_args__ = (
        Index("ix_notifications_recipient_created", "recipient_id", "created_at"),
        Index("ix_notifications_recipient_read", "recipient_id", "read"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    recipient_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    recipient_model: Mapped[RecipientModel] = mapped_column(
        str_enum(RecipientModel), nullable=False, default=RecipientModel.USER
    )
    # set when the recipient is hospital staff; drives the hospital channel
    hospital_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True, index=True)
    type: Mapped[NotificationType] = mapped_column(str_enum(NotificationType), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[NotificationPriority] = mapped_column(
        str_enum(NotificationPriority), nullable=False, default=NotificationPriority.MEDIUM
    )
    read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    read_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    action_required: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    action_url: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    action_text: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True, index=True)
    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid, nullable=True)
    # "metadata" is reserved on declarative classes
    meta: Mapped[dict] = mapped_column("metadata", JSONType, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)

    def to_payload(self) -> dict:
        """Real-time message body."""
        return {
            "id": str(self.id),
            "type": self.type.value,
            "title": self.title,
            "message": self.message,
            "priority": self.priority.value,
            "actionRequired": self.action_required,
            "actionUrl": self.action_url,
            "actionText": self.action_text,
            "data": self.meta,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "read": self.read,
        }
