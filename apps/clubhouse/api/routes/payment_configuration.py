"""Payment configuration admin route handlers."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.api.auth_dependencies import require_admin
from clubhouse.database.db import get_db_session
from clubhouse.models.schemas import PaymentConfigurationRequest
from clubhouse.services import payment_configuration_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/api/payment-configuration/public/active", response_model=Dict[str, Any])
async def get_public_active_configuration(session: AsyncSession = Depends(get_db_session)):
    """Non-secret settings for checkout pages. No auth."""
    return {
        "success": True,
        "configuration": await payment_configuration_service.get_public_active_configuration(session),
    }


@router.get("/api/payment-configuration", response_model=Dict[str, Any])
async def list_configurations(
    admin: dict = Depends(require_admin), session: AsyncSession = Depends(get_db_session)
):
    return {
        "success": True,
        "configurations": await payment_configuration_service.list_configurations(session),
    }


@router.post("/api/payment-configuration", response_model=Dict[str, Any], status_code=201)
async def create_configuration(
    body: PaymentConfigurationRequest,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    configuration = await payment_configuration_service.create_configuration(
        session, body.model_dump(exclude_none=True), admin_id=admin["id"]
    )
    return {"success": True, "configuration": configuration}


@router.get("/api/payment-configuration/{configuration_id}", response_model=Dict[str, Any])
async def get_configuration(
    configuration_id: int,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    configuration = await payment_configuration_service.get_configuration(session, configuration_id)
    return {
        "success": True,
        "configuration": payment_configuration_service.configuration_to_dict(configuration),
    }


@router.put("/api/payment-configuration/{configuration_id}", response_model=Dict[str, Any])
async def update_configuration(
    configuration_id: int,
    body: PaymentConfigurationRequest,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    configuration = await payment_configuration_service.update_configuration(
        session, configuration_id, body.model_dump(exclude_none=True), admin_id=admin["id"]
    )
    return {"success": True, "configuration": configuration}


@router.delete("/api/payment-configuration/{configuration_id}", response_model=Dict[str, Any])
async def delete_configuration(
    configuration_id: int,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    await payment_configuration_service.delete_configuration(session, configuration_id)
    return {"success": True, "message": "Payment configuration deleted"}
