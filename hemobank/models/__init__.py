# Database models
from .enums import (
    BloodGroup, UnitStatus, Assay, AssayResult, RequestStatus, TransferStatus, Urgency,
    NotificationType, NotificationPriority, RecipientModel,
)
from .hospital import Hospital, User, Donor
from .blood_unit import BloodUnit
from .blood_request import BloodRequest, TransferRequest
from .notification import Notification
from .audit_log import AuditLog
