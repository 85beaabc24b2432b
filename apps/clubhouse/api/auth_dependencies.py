"""
Authentication dependencies for FastAPI routes.
"""

from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.database.db import get_db_session
from clubhouse.database.models import ParentRole
from clubhouse.services import auth_service, parent_service
from clubhouse.services.errors import Forbidden, Unauthorized

# auto_error=False so a missing header renders as our 401 envelope
security = HTTPBearer(auto_error=False)


async def get_current_parent(
    session: AsyncSession = Depends(get_db_session),
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> dict:
    """
    Dependency to get the current authenticated parent from the JWT.

    Returns:
        Parent dictionary including ``players`` (owned player ids)

    Raises:
        Unauthorized: If the token is missing, invalid or expired, or the
            parent no longer exists
    """
    if credentials is None:
        raise Unauthorized("Authentication token is required")

    payload = auth_service.verify_token(credentials.credentials)
    if payload is None:
        raise Unauthorized("Invalid authentication token")

    parent_id = payload.get("id")
    if parent_id is None:
        raise Unauthorized("Invalid token payload")

    parent = await parent_service.get_parent_by_id(session, parent_id)
    if parent is None:
        raise Unauthorized("Account not found")

    player_ids = await parent_service.list_player_ids(session, parent.id)
    return parent_service.parent_to_dict(parent, player_ids)


async def require_admin(parent: dict = Depends(get_current_parent)) -> dict:
    """Require an admin account."""
    if parent.get("role") != ParentRole.ADMIN.value:
        raise Forbidden("Admin access required")
    return parent
