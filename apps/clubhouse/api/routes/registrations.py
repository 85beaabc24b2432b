"""Registration route handlers: camp sign-up, players, tournament teams."""

import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.api.auth_dependencies import get_current_parent
from clubhouse.api.routes import limiter
from clubhouse.database.db import get_db_session
from clubhouse.models.schemas import (
    BasketballCampRequest,
    PlayerRegisterRequest,
    TeamTournamentRequest,
    TournamentTeamRequest,
    TournamentTeamsRequest,
)
from clubhouse.services import registration_service

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/api/register/basketball-camp", response_model=Dict[str, Any], status_code=201)
@limiter.limit("10/minute")
async def register_basketball_camp(
    request: Request, body: BasketballCampRequest, session: AsyncSession = Depends(get_db_session)
):
    """Create the parent account, its players and their pending program registrations."""
    return await registration_service.register_basketball_camp(session, body.model_dump())


@router.post("/api/players/register", response_model=Dict[str, Any], status_code=201)
async def register_player(
    body: PlayerRegisterRequest,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    return await registration_service.register_player(session, parent["id"], body.model_dump())


@router.post("/api/register/tournament-team", response_model=Dict[str, Any], status_code=201)
async def register_tournament_team(
    body: TournamentTeamRequest,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    return await registration_service.register_tournament_team(session, parent["id"], body.model_dump())


@router.post("/api/register/tournament-team-multiple", response_model=Dict[str, Any], status_code=201)
async def register_tournament_teams(
    body: TournamentTeamsRequest,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    return await registration_service.register_tournament_teams(session, parent["id"], body.model_dump())


@router.post("/api/teams/register-tournament", response_model=Dict[str, Any], status_code=201)
async def add_team_to_tournament(
    body: TeamTournamentRequest,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    return await registration_service.add_team_to_tournament(
        session,
        parent["id"],
        body.team_id,
        body.tournament,
        body.year,
        body.level_of_competition,
    )
