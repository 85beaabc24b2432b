"""Communication preference route handlers."""

from typing import Any, Dict

from fastapi import APIRouter, Body, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.api.auth_dependencies import get_current_parent
from clubhouse.database.db import get_db_session
from clubhouse.services import parent_service

router = APIRouter()


@router.get("/api/communication-preferences", response_model=Dict[str, Any])
async def get_preferences(
    parent: dict = Depends(get_current_parent), session: AsyncSession = Depends(get_db_session)
):
    preferences = await parent_service.get_communication_preferences(session, parent["id"])
    return {"success": True, "preferences": preferences}


@router.put("/api/communication-preferences", response_model=Dict[str, Any])
async def update_preferences(
    updates: Dict[str, Any] = Body(...),
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    preferences = await parent_service.update_communication_preferences(session, parent["id"], updates)
    return {"success": True, "preferences": preferences}
