"""
Audit Logging Service
Writes structured audit events in the background. A failed audit write is
logged and dropped; it never reaches the operation that emitted it.
"""
import asyncio
import logging
import uuid
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession

from hemobank.database import make_session_factory
from hemobank.models.audit_log import AuditLog

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = {"password", "password_hash", "token", "secret", "api_key", "otp", "phone"}


class AuditService:
    """Fire-and-forget audit writer."""

    def __init__(self):
        self.tasks: set[asyncio.Task] = set()

    def emit(
        self,
        db: AsyncSession,
        action: str,
        entity_type: str,
        entity_id: Optional[uuid.UUID] = None,
        user_id: Optional[uuid.UUID] = None,
        hospital_id: Optional[uuid.UUID] = None,
        before: Optional[dict] = None,
        after: Optional[dict] = None,
        **extra,
    ) -> None:
        """
        Schedule an audit record.

        Args:
            db: Session of the calling operation; only its engine is reused.
            action: e.g. "BLOOD_REQUEST_APPROVED"
            entity_type: e.g. "BloodRequest"
            before/after: State payloads around the change
            extra: Any other change details
        """
        changes = dict(extra)
        if before is not None:
            changes["before"] = before
        if after is not None:
            changes["after"] = after
        record = AuditLog(
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            user_id=user_id,
            hospital_id=hospital_id,
            changes=self._clean_sensitive_data(changes) or {},
        )
        try:
            task = asyncio.get_running_loop().create_task(self._write(db.bind, record))
        except Exception as e:
            logger.warning(f"Audit event {action} not scheduled: {e}")
            return
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    async def _write(self, bind, record: AuditLog) -> None:
        try:
            async with make_session_factory(bind)() as session:
                session.add(record)
                await session.commit()
        except Exception as e:
            logger.warning(f"Audit log error for {record.action} on {record.entity_type} {record.entity_id}: {e}")

    async def flush(self) -> None:
        """Wait for audit writes that are still in flight."""
        if self.tasks:
            await asyncio.gather(*list(self.tasks), return_exceptions=True)

    @staticmethod
    def _clean_sensitive_data(data: Optional[dict]) -> Optional[dict]:
        """Remove sensitive fields from audit data."""
        if not data:
            return None

        cleaned = {}
        for key, value in data.items():
            if key.lower() in SENSITIVE_FIELDS:
                cleaned[key] = "[REDACTED]"
            elif isinstance(value, dict):
                cleaned[key] = AuditService._clean_sensitive_data(value)
            else:
                cleaned[key] = value
        return cleaned


# Global instance
audit_service = AuditService()
