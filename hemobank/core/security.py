"""
Caller identity.

Tokens are issued by the external authentication service; this module only
verifies the signature and turns the claims into an Actor. The core trusts
the role and hospital scope it finds there.
"""
import enum
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from hemobank.core.config import settings
from hemobank.core.exceptions import HemoBankError, NotFoundError

logger = logging.getLogger(__name__)


class Role(str, enum.Enum):
    SUPER_ADMIN = "super_admin"
    HOSPITAL_ADMIN = "hospital_admin"
    STAFF = "staff"


class AuthenticationError(HemoBankError):
    status_code = 401
    code = "not_authenticated"


@dataclass(frozen=True)
class Actor:
    id: uuid.UUID
    role: Role
    hospital_id: Optional[uuid.UUID] = None

    @property
    def is_super_admin(self) -> bool:
        return self.role == Role.SUPER_ADMIN

    @property
    def is_admin(self) -> bool:
        return self.role in (Role.SUPER_ADMIN, Role.HOSPITAL_ADMIN)

    def can_see(self, hospital_id) -> bool:
        return self.is_super_admin or (self.hospital_id is not None and self.hospital_id == hospital_id)

    def ensure_scope(self, hospital_id, entity: str = "Record") -> None:
        """Scope violations look exactly like a missing record."""
        if not self.can_see(hospital_id):
            raise NotFoundError(f"{entity} not found")

    def channels(self) -> list[str]:
        names = [f"user_{self.id}", f"role_{self.role.value}"]
        if self.hospital_id:
            names.append(f"hospital_{self.hospital_id}")
        return names


def create_access_token(actor: Actor, expires_delta: Optional[timedelta] = None) -> str:
    """Mint a token for an actor. Used by scripts and tests; production tokens come from auth."""
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=30))
    claims = {
        "sub": str(actor.id),
        "role": actor.role.value,
        "hospital_id": str(actor.hospital_id) if actor.hospital_id else None,
        "exp": expire,
        "aud": settings.APP_NAME,
    }
    return jwt.encode(claims, settings.SECRET_KEY, algorithm=settings.ALGORITHM)


def decode_actor(token: str) -> Actor:
    """Verify a bearer token and return the caller identity."""
    try:
        payload = jwt.decode(
            token,
            settings.SECRET_KEY,
            algorithms=[settings.ALGORITHM],
            audience=settings.APP_NAME,
        )
    except JWTError as e:
        logger.warning(f"Token verification failed: {e}")
        raise AuthenticationError("Could not validate credentials")

    try:
        role = Role(payload.get("role"))
        actor_id = uuid.UUID(payload["sub"])
        hospital_id = payload.get("hospital_id")
        hospital_uuid = uuid.UUID(hospital_id) if hospital_id else None
    except (KeyError, ValueError, TypeError):
        raise AuthenticationError("Malformed token claims")

    if role != Role.SUPER_ADMIN and hospital_uuid is None:
        raise AuthenticationError("Token is missing hospital scope")

    return Actor(id=actor_id, role=role, hospital_id=hospital_uuid)
