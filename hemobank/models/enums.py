import enum


class BloodGroup(str, enum.Enum):
    A_POSITIVE = "A+"
    A_NEGATIVE = "A-"
    B_POSITIVE = "B+"
    B_NEGATIVE = "B-"
    AB_POSITIVE = "AB+"
    AB_NEGATIVE = "AB-"
    O_POSITIVE = "O+"
    O_NEGATIVE = "O-"


class UnitStatus(str, enum.Enum):
    COLLECTED = "collected"
    TESTED = "tested"
    AVAILABLE = "available"
    RESERVED = "reserved"
    ISSUED = "issued"
    EXPIRED = "expired"
    DISPOSED = "disposed"


class Assay(str, enum.Enum):
    HIV = "hiv"
    HEPATITIS_B = "hepatitisB"
    HEPATITIS_C = "hepatitisC"
    SYPHILIS = "syphilis"


class AssayResult(str, enum.Enum):
    PENDING = "pending"
    NEGATIVE = "negative"
    POSITIVE = "positive"


class RequestStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    FULFILLED = "fulfilled"
    CANCELLED = "cancelled"


class TransferStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Urgency(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class NotificationType(str, enum.Enum):
    BLOOD_REQUEST_APPROVED = "BLOOD_REQUEST_APPROVED"
    BLOOD_REQUEST_REJECTED = "BLOOD_REQUEST_REJECTED"
    BLOOD_REQUEST_FULFILLED = "BLOOD_REQUEST_FULFILLED"
    BLOOD_REQUEST_CANCELLED = "BLOOD_REQUEST_CANCELLED"
    LOW_STOCK_ALERT = "LOW_STOCK_ALERT"
    CRITICAL_STOCK_ALERT = "CRITICAL_STOCK_ALERT"
    EMERGENCY_BROADCAST = "EMERGENCY_BROADCAST"
    TRANSFER_REQUEST_CREATED = "TRANSFER_REQUEST_CREATED"
    TRANSFER_APPROVED = "TRANSFER_APPROVED"
    TRANSFER_REJECTED = "TRANSFER_REJECTED"
    TRANSFER_COMPLETED = "TRANSFER_COMPLETED"
    TRANSFER_CANCELLED = "TRANSFER_CANCELLED"
    SYSTEM_MAINTENANCE = "SYSTEM_MAINTENANCE"


class NotificationPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class RecipientModel(str, enum.Enum):
    USER = "User"
    PUBLIC_USER = "PublicUser"


# Units in these states never change again
TERMINAL_UNIT_STATES = frozenset({UnitStatus.ISSUED, UnitStatus.EXPIRED, UnitStatus.DISPOSED})
TERMINAL_REQUEST_STATES = frozenset({RequestStatus.FULFILLED, RequestStatus.REJECTED, RequestStatus.CANCELLED})
