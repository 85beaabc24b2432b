"""
Parent account service: account lifecycle, email verification, password
reset and communication preferences.

Functions flush but do not commit; the request's session dependency commits.
"""

import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.database.models import DEFAULT_COMMUNICATION_PREFERENCES, Parent, ParentRole, Player
from clubhouse.services import auth_service
from clubhouse.services.errors import (
    DuplicateRegistration,
    NotFound,
    Unauthorized,
    ValidationError,
)
from clubhouse.utils.datetime_utils import ensure_utc, to_iso, utcnow

logger = logging.getLogger(__name__)

EMAIL_VERIFICATION_TTL = timedelta(hours=24)
PASSWORD_RESET_TTL = timedelta(hours=1)
MIN_PASSWORD_LENGTH = 6


def parent_to_dict(parent: Parent, player_ids: Optional[List[int]] = None) -> Dict[str, Any]:
    data = {
        "id": parent.id,
        "email": parent.email,
        "fullName": parent.full_name,
        "phone": parent.phone,
        "address": parent.address,
        "relationship": parent.relationship,
        "role": parent.role,
        "isCoach": parent.is_coach,
        "aauNumber": parent.aau_number,
        "emailVerified": parent.email_verified,
        "registrationComplete": parent.registration_complete,
        "paymentComplete": parent.payment_complete,
        "additionalGuardians": parent.additional_guardians or [],
        "avatar": parent.avatar,
    }
    if player_ids is not None:
        data["players"] = player_ids
    return data


def validate_password(password: str) -> None:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must be at least {MIN_PASSWORD_LENGTH} characters",
            details=[{"field": "password", "message": "too short"}],
        )


async def get_parent_by_id(session: AsyncSession, parent_id: int) -> Optional[Parent]:
    return await session.get(Parent, parent_id)


async def get_parent_by_email(session: AsyncSession, email: str) -> Optional[Parent]:
    result = await session.execute(
        select(Parent).where(Parent.email == auth_service.normalize_email(email))
    )
    return result.scalar_one_or_none()


async def require_parent(session: AsyncSession, parent_id: int) -> Parent:
    parent = await get_parent_by_id(session, parent_id)
    if parent is None:
        raise NotFound(f"Parent {parent_id} not found")
    return parent


async def list_player_ids(session: AsyncSession, parent_id: int) -> List[int]:
    """Players owned by a parent, from the authoritative player -> parent edge."""
    result = await session.execute(
        select(Player.id).where(Player.parent_id == parent_id).order_by(Player.id)
    )
    return list(result.scalars().all())


async def create_parent(
    session: AsyncSession,
    email: str,
    password: Optional[str],
    full_name: str,
    phone: Optional[str] = None,
    address: Optional[Dict[str, Any]] = None,
    relationship: Optional[str] = None,
    is_coach: bool = False,
    aau_number: Optional[str] = None,
    additional_guardians: Optional[List[Dict[str, Any]]] = None,
    register_method: str = "self",
    email_verified: bool = False,
    password_hash: Optional[str] = None,
) -> Parent:
    """
    Create a parent account.

    Args:
        password: Plain password; ignored when ``password_hash`` is given
        password_hash: Already-hashed password (temp-account flow)

    Returns:
        The flushed Parent

    Raises:
        DuplicateRegistration: If the email is already registered
        ValidationError: If the password is too short
    """
    normalized = auth_service.normalize_email(email)
    if await get_parent_by_email(session, normalized) is not None:
        raise DuplicateRegistration("An account with this email already exists")

    if password_hash is None:
        validate_password(password or "")
        password_hash = auth_service.hash_password(password)

    parent = Parent(
        email=normalized,
        password_hash=password_hash,
        full_name=full_name.strip(),
        phone=phone,
        address=address,
        relationship=relationship,
        is_coach=is_coach,
        aau_number=aau_number if is_coach else None,
        role=ParentRole.COACH.value if is_coach else ParentRole.USER.value,
        register_method=register_method,
        email_verified=email_verified,
        additional_guardians=additional_guardians or [],
        communication_preferences={
            **DEFAULT_COMMUNICATION_PREFERENCES,
            "lastUpdated": to_iso(utcnow()),
        },
    )
    session.add(parent)
    await session.flush()
    logger.info(f"Created parent account {parent.id} ({register_method})")
    return parent


async def authenticate(session: AsyncSession, email: str, password: str) -> Parent:
    """
    Raises:
        Unauthorized: If the email is unknown or the password is wrong
    """
    parent = await get_parent_by_email(session, email)
    if parent is None or not auth_service.verify_password(password, parent.password_hash):
        raise Unauthorized("Invalid email or password")
    return parent


async def issue_access_token(session: AsyncSession, parent: Parent) -> str:
    player_ids = await list_player_ids(session, parent.id)
    return auth_service.create_access_token(auth_service.build_token_payload(parent, player_ids))


async def start_email_verification(session: AsyncSession, parent: Parent) -> str:
    """Generate a 24-hour email verification token for the parent."""
    token = auth_service.generate_token()
    parent.email_verification_token = token
    parent.email_verification_expires = utcnow() + EMAIL_VERIFICATION_TTL
    await session.flush()
    return token


async def verify_email(session: AsyncSession, token: str) -> Parent:
    """
    Raises:
        ValidationError: If the token is unknown or expired
    """
    result = await session.execute(
        select(Parent).where(Parent.email_verification_token == token)
    )
    parent = result.scalar_one_or_none()
    expires = ensure_utc(parent.email_verification_expires) if parent else None
    if parent is None or expires is None or expires <= utcnow():
        raise ValidationError("Invalid or expired verification token")
    parent.email_verified = True
    parent.email_verification_token = None
    parent.email_verification_expires = None
    await session.flush()
    return parent


async def request_password_reset(session: AsyncSession, email: str) -> Optional[str]:
    """
    Create a one-hour reset token.

    Returns:
        The token, or None for unknown emails (callers respond identically)
    """
    parent = await get_parent_by_email(session, email)
    if parent is None:
        logger.info("Password reset requested for unknown email")
        return None
    token = auth_service.generate_token()
    parent.reset_password_token = token
    parent.reset_password_expires = utcnow() + PASSWORD_RESET_TTL
    await session.flush()
    return token


async def reset_password(session: AsyncSession, token: str, new_password: str) -> Parent:
    validate_password(new_password)
    result = await session.execute(select(Parent).where(Parent.reset_password_token == token))
    parent = result.scalar_one_or_none()
    expires = ensure_utc(parent.reset_password_expires) if parent else None
    if parent is None or expires is None or expires <= utcnow():
        raise ValidationError("Invalid or expired reset token")
    parent.password_hash = auth_service.hash_password(new_password)
    parent.reset_password_token = None
    parent.reset_password_expires = None
    await session.flush()
    return parent


async def change_password(
    session: AsyncSession, parent_id: int, current_password: str, new_password: str
) -> None:
    parent = await require_parent(session, parent_id)
    if not auth_service.verify_password(current_password, parent.password_hash):
        raise Unauthorized("Current password is incorrect")
    validate_password(new_password)
    parent.password_hash = auth_service.hash_password(new_password)
    await session.flush()


async def get_communication_preferences(session: AsyncSession, parent_id: int) -> Dict[str, Any]:
    parent = await require_parent(session, parent_id)
    return {**DEFAULT_COMMUNICATION_PREFERENCES, **(parent.communication_preferences or {})}


async def update_communication_preferences(
    session: AsyncSession, parent_id: int, updates: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Update some of the six preference flags and stamp ``lastUpdated``.

    Raises:
        ValidationError: For unknown keys or non-boolean values
    """
    errors = []
    for key, value in updates.items():
        if key not in DEFAULT_COMMUNICATION_PREFERENCES:
            errors.append({"field": key, "message": "unknown preference"})
        elif not isinstance(value, bool):
            errors.append({"field": key, "message": "must be a boolean"})
    if errors:
        raise ValidationError("Invalid communication preferences", details=errors)

    parent = await require_parent(session, parent_id)
    preferences = {**DEFAULT_COMMUNICATION_PREFERENCES, **(parent.communication_preferences or {})}
    preferences.update(updates)
    preferences["lastUpdated"] = to_iso(utcnow())
    parent.communication_preferences = preferences
    await session.flush()
    return preferences
