"""Account lifecycle route handlers."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.api.auth_dependencies import get_current_parent
from clubhouse.api.routes import limiter
from clubhouse.database.db import get_db_session
from clubhouse.models.schemas import (
    ChangePasswordRequest,
    EmailRequest,
    LoginRequest,
    RegisterRequest,
    ResetPasswordRequest,
    TempAccountRequest,
    VerifyEmailRequest,
)
from clubhouse.services import auth_service, email_service, parent_service
from clubhouse.services.errors import DuplicateRegistration
from clubhouse.services.temp_token_service import get_temp_token_store

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/auth/register", response_model=Dict[str, Any])
@limiter.limit("10/minute")
async def register(
    request: Request, body: RegisterRequest, session: AsyncSession = Depends(get_db_session)
):
    """Create a parent account and send the email verification link."""
    data = body.model_dump()
    parent = await parent_service.create_parent(
        session,
        email=data["email"],
        password=data["password"],
        full_name=data["full_name"],
        phone=data["phone"],
        address=data["address"],
        relationship=data["relationship"],
        is_coach=data["is_coach"],
        aau_number=data["aau_number"],
        additional_guardians=data["additional_guardians"],
    )
    verification_token = await parent_service.start_email_verification(session, parent)
    await email_service.send_verification_email(session, parent, verification_token)
    token = await parent_service.issue_access_token(session, parent)
    return {"success": True, "token": token, "parent": parent_service.parent_to_dict(parent, [])}


@router.post("/api/auth/login", response_model=Dict[str, Any])
@limiter.limit("10/minute")
async def login(request: Request, body: LoginRequest, session: AsyncSession = Depends(get_db_session)):
    """Login with email and password."""
    parent = await parent_service.authenticate(session, body.email, body.password)
    player_ids = await parent_service.list_player_ids(session, parent.id)
    token = auth_service.create_access_token(auth_service.build_token_payload(parent, player_ids))
    return {"success": True, "token": token, "parent": parent_service.parent_to_dict(parent, player_ids)}


@router.get("/api/auth/me", response_model=Dict[str, Any])
async def me(parent: dict = Depends(get_current_parent)):
    return {"success": True, "parent": parent}


@router.post("/api/auth/request-password-reset", response_model=Dict[str, Any])
@limiter.limit("5/minute")
async def request_password_reset(
    request: Request, body: EmailRequest, session: AsyncSession = Depends(get_db_session)
):
    """Always answers the same way so account existence is not revealed."""
    token = await parent_service.request_password_reset(session, body.email)
    if token is not None:
        parent = await parent_service.get_parent_by_email(session, body.email)
        await email_service.send_password_reset_email(session, parent, token)
    return {
        "success": True,
        "message": "If an account exists for that email, a reset link has been sent",
    }


@router.post("/api/auth/reset-password", response_model=Dict[str, Any])
async def reset_password(body: ResetPasswordRequest, session: AsyncSession = Depends(get_db_session)):
    await parent_service.reset_password(session, body.token, body.new_password)
    return {"success": True, "message": "Password has been reset"}


@router.post("/api/auth/change-password", response_model=Dict[str, Any])
async def change_password(
    body: ChangePasswordRequest,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    await parent_service.change_password(session, parent["id"], body.current_password, body.new_password)
    return {"success": True, "message": "Password changed"}


@router.post("/api/auth/create-temp-account", response_model=Dict[str, Any])
@limiter.limit("5/minute")
async def create_temp_account(
    request: Request, body: TempAccountRequest, session: AsyncSession = Depends(get_db_session)
):
    """
    Start a registration before the account exists: hold the credentials and
    email a verification token.
    """
    email = auth_service.normalize_email(body.email)
    if await parent_service.get_parent_by_email(session, email) is not None:
        raise DuplicateRegistration("This email is already associated with an account. Please login instead.")
    parent_service.validate_password(body.password)

    entry = get_temp_token_store().issue(email, auth_service.hash_password(body.password.strip()))
    await email_service.send_temp_account_email(email, entry.token)
    return {"success": True, "message": "Verification email sent", "email": email}


@router.post("/api/auth/verify-email", response_model=Dict[str, Any])
async def verify_email(body: VerifyEmailRequest, session: AsyncSession = Depends(get_db_session)):
    """Verify an account email, or a pending temp account when an email is given."""
    if body.email:
        email = auth_service.normalize_email(body.email)
        get_temp_token_store().verify(email, body.token.strip())
        return {"success": True, "message": "Email verified successfully", "email": email}

    parent = await parent_service.verify_email(session, body.token.strip())
    return {"success": True, "message": "Email verified successfully", "email": parent.email}


@router.post("/api/auth/resend-verification-email", response_model=Dict[str, Any])
@limiter.limit("5/minute")
async def resend_verification_email(
    request: Request, body: EmailRequest, session: AsyncSession = Depends(get_db_session)
):
    email = auth_service.normalize_email(body.email)
    parent = await parent_service.get_parent_by_email(session, email)
    if parent is not None and not parent.email_verified:
        token = await parent_service.start_email_verification(session, parent)
        await email_service.send_verification_email(session, parent, token)
        return {"success": True, "message": "Verification email sent"}

    entry = get_temp_token_store().resend(email)
    await email_service.send_temp_account_email(email, entry.token)
    return {"success": True, "message": "Verification email sent"}
