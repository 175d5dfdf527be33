from pydantic import BaseModel, Field
from typing import Optional, List
from datetime import datetime
from uuid import UUID
from hemobank.models.enums import NotificationPriority, NotificationType


class NotificationResponse(BaseModel):
    id: UUID
    recipient_id: UUID
    hospital_id: Optional[UUID] = None
    type: NotificationType
    title: str
    message: str
    priority: NotificationPriority
    read: bool
    read_at: Optional[datetime] = None
    action_required: bool
    action_url: Optional[str] = None
    action_text: Optional[str] = None
    expires_at: Optional[datetime] = None
    metadata: dict = Field(default_factory=dict, validation_alias="meta")
    created_at: datetime

    class Config:
        from_attributes = True


class NotificationPage(BaseModel):
    notifications: List[NotificationResponse]
    total: int
    unread_count: int
    page: int
    total_pages: int


class MarkReadRequest(BaseModel):
    notification_ids: List[UUID]


class EmergencyBroadcast(BaseModel):
    title: str
    message: str
    priority: NotificationPriority = NotificationPriority.HIGH
