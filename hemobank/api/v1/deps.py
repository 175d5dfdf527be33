"""Request dependencies: database session and caller identity."""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from hemobank.core.exceptions import NotAuthorizedError
from hemobank.core.security import Actor, AuthenticationError, decode_actor
from hemobank.database import get_session

bearer_scheme = HTTPBearer(auto_error=False)

# re-exported so endpoints import both dependencies from one place
get_db = get_session


async def get_current_actor(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> Actor:
    if credentials is None:
        raise AuthenticationError("Not authenticated")
    return decode_actor(credentials.credentials)


async def require_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_admin:
        raise NotAuthorizedError("Administrator role required")
    return actor


async def require_super_admin(actor: Actor = Depends(get_current_actor)) -> Actor:
    if not actor.is_super_admin:
        raise NotAuthorizedError("Super administrator role required")
    return actor
