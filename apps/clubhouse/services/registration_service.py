"""
Registration entry points: create accounts, players and teams, and enrol
them in programs and tournaments as pending (unpaid).

Payments later upgrade the pending entries written here. Functions flush but
do not commit; the request's session dependency commits once.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.database.models import Player, PaymentStatus, Team
from clubhouse.services import parent_service
from clubhouse.services import registration_store as store
from clubhouse.services.errors import DuplicateRegistration, Forbidden, ValidationError
from clubhouse.services.temp_token_service import get_temp_token_store
from clubhouse.utils.season_utils import default_tryout_id, get_current_season

logger = logging.getLogger(__name__)

PENDING = PaymentStatus.PENDING.value


def player_to_dict(player: Player) -> Dict[str, Any]:
    return {
        "id": player.id,
        "parentId": player.parent_id,
        "fullName": player.full_name,
        "gender": player.gender,
        "dob": player.dob.isoformat() if player.dob else None,
        "schoolName": player.school_name,
        "grade": player.grade,
        "healthConcerns": player.health_concerns,
        "aauNumber": player.aau_number,
        "season": player.season,
        "registrationYear": player.registration_year,
        "paymentStatus": player.payment_status,
        "paymentComplete": player.payment_complete,
        "registrationComplete": player.registration_complete,
        "seasons": player.seasons or [],
    }


def team_to_dict(team: Team) -> Dict[str, Any]:
    return {
        "id": team.id,
        "name": team.name,
        "grade": team.grade,
        "sex": team.sex,
        "levelOfCompetition": team.level_of_competition,
        "tournament": team.tournament,
        "registrationYear": team.registration_year,
        "coachIds": team.coach_ids or [],
        "tournaments": team.tournaments or [],
        "paymentStatus": team.payment_status,
        "paymentComplete": team.payment_complete,
    }


async def _create_player(session: AsyncSession, parent_id: int, data: Dict[str, Any]) -> Player:
    full_name = (data.get("full_name") or "").strip()
    await store.assert_no_duplicate_player(
        session, parent_id, full_name, data["dob"], data["gender"]
    )
    player = Player(
        parent_id=parent_id,
        full_name=full_name,
        gender=data["gender"],
        dob=data["dob"],
        school_name=data.get("school_name"),
        grade=data.get("grade"),
        health_concerns=data.get("health_concerns"),
        aau_number=data.get("aau_number"),
        seasons=[],
    )
    session.add(player)
    await store.flush(session)
    return player


async def enrol_player(
    session: AsyncSession,
    player: Player,
    season: str,
    year: int,
    tryout_id: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Add a pending seasons entry and its Registration row for one player.

    Raises:
        DuplicateRegistration: If the player is already enrolled in the program
    """
    season = season.strip()
    tryout_id = tryout_id or default_tryout_id(season, year)
    await store.assert_no_duplicate_season(session, player.id, season, year, tryout_id)
    await store.upsert_player_season(
        session,
        player.id,
        {"season": season, "year": year, "tryoutId": tryout_id, "paymentStatus": PENDING},
    )
    registration = await store.upsert_registration(
        session,
        {
            "player_id": player.id,
            "parent_id": player.parent_id,
            "season": season,
            "year": year,
            "tryout_id": tryout_id,
        },
        {"payment_status": PENDING, "registration_complete": True},
    )
    player.registration_complete = True
    return {
        "registrationId": registration.id,
        "playerId": player.id,
        "season": season,
        "year": int(year),
        "tryoutId": tryout_id,
        "paymentStatus": PENDING,
    }


async def register_basketball_camp(session: AsyncSession, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create a parent account with players, each enrolled in a program as pending.

    Args:
        data: snake_case payload; ``players`` items carry their own
            season/year/tryout_id

    Returns:
        ``{success, token, parent, players, registrations}``

    Raises:
        DuplicateRegistration: Email already registered, or a duplicate player
        ValidationError: Terms not accepted, no players, short password
    """
    if not data.get("agree_to_terms"):
        raise ValidationError(
            "You must agree to the terms",
            details=[{"field": "agreeToTerms", "message": "must be true"}],
        )
    players_data = data.get("players") or []
    if not players_data:
        raise ValidationError(
            "At least one player is required",
            details=[{"field": "players", "message": "at least one player is required"}],
        )

    # A visitor who verified through the temp-account flow registers without
    # resending the password
    temp_store = get_temp_token_store()
    password_hash = None
    email_verified = False
    if not data.get("password"):
        pending = temp_store.get_verified(data["email"])
        if pending is None:
            raise ValidationError(
                "Password is required",
                details=[{"field": "password", "message": "required unless the email was verified"}],
            )
        password_hash, email_verified = pending.password_hash, True

    parent = await parent_service.create_parent(
        session,
        email=data["email"],
        password=data.get("password"),
        password_hash=password_hash,
        email_verified=email_verified,
        full_name=data["full_name"],
        phone=data.get("phone"),
        address=data.get("address"),
        relationship=data.get("relationship"),
        is_coach=bool(data.get("is_coach")),
        aau_number=data.get("aau_number"),
        additional_guardians=data.get("additional_guardians"),
        register_method="self",
    )

    players = []
    registrations = []
    for player_data in players_data:
        player = await _create_player(session, parent.id, player_data)
        registrations.append(
            await enrol_player(
                session,
                player,
                player_data["season"],
                player_data["year"],
                player_data.get("tryout_id"),
            )
        )
        players.append(player)

    parent.registration_complete = True
    await store.flush(session)
    temp_store.discard(data["email"])
    token = await parent_service.issue_access_token(session, parent)
    logger.info(
        f"Basketball camp registration: parent {parent.id} with {len(players)} player(s)"
    )
    return {
        "success": True,
        "token": token,
        "parent": parent_service.parent_to_dict(parent, [player.id for player in players]),
        "players": [player_to_dict(player) for player in players],
        "registrations": registrations,
    }


async def register_player(session: AsyncSession, parent_id: int, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Add one player to a parent's account, optionally enrolled in a program.

    A season needs a registration year; a year without a season enrols the
    player in the current base season.
    """
    await parent_service.require_parent(session, parent_id)
    player = await _create_player(session, parent_id, data)

    registration = None
    season = (data.get("season") or "").strip()
    year = data.get("registration_year")
    if (season or year) and not data.get("skip_season_registration"):
        if not year:
            raise ValidationError(
                "Registration year is required with a season",
                details=[{"field": "registrationYear", "message": "required"}],
            )
        registration = await enrol_player(
            session, player, season or get_current_season(), year, data.get("tryout_id")
        )

    logger.info(f"Registered player {player.id} for parent {parent_id}")
    return {"success": True, "player": player_to_dict(player), "registration": registration}


async def find_team(session: AsyncSession, name: str, grade: str, sex: str) -> Optional[Team]:
    result = await session.execute(
        select(Team).where(
            func.lower(Team.name) == name.strip().lower(),
            Team.grade == grade,
            Team.sex == sex,
        )
    )
    return result.scalars().first()


async def _enter_tournament(
    session: AsyncSession,
    team: Team,
    parent_id: int,
    tournament: str,
    year: int,
    level: Optional[str] = None,
) -> Dict[str, Any]:
    if store.find_tournament_entry(team.tournaments or [], tournament, year) is not None:
        raise DuplicateRegistration(
            f"{team.name} is already registered for {tournament} {year}",
            details={"teamId": team.id, "tournament": tournament, "year": int(year)},
        )
    resolved_level = store.check_team_level(team, tournament, year, level)

    registration = await store.upsert_registration(
        session,
        {"team_id": team.id, "parent_id": parent_id, "tournament": tournament, "year": year},
        {
            "level_of_competition": resolved_level,
            "payment_status": PENDING,
            "registration_complete": True,
        },
    )
    await store.add_or_update_team_tournament(
        session,
        team.id,
        {
            "tournament": tournament,
            "year": year,
            "levelOfCompetition": resolved_level,
            "paymentStatus": PENDING,
            "registrationId": registration.id,
        },
    )
    await store.ensure_coach(session, team.id, parent_id)
    await store.flush(session)
    return {
        "registrationId": registration.id,
        "teamId": team.id,
        "tournament": tournament,
        "year": int(year),
        "levelOfCompetition": resolved_level,
        "paymentStatus": PENDING,
    }


async def _register_one_team(
    session: AsyncSession,
    parent_id: int,
    team_data: Dict[str, Any],
    tournament: str,
    year: int,
) -> Dict[str, Any]:
    name = (team_data.get("team_name") or "").strip()
    team = await find_team(session, name, team_data["grade"], team_data["sex"])
    if team is None:
        team = Team(
            name=name,
            grade=team_data["grade"],
            sex=team_data["sex"],
            level_of_competition=team_data.get("level_of_competition") or "Silver",
            coach_ids=[parent_id],
            tournaments=[],
        )
        session.add(team)
        await store.flush(session)
        logger.info(f"Created team {team.id} ({team.name}, {team.grade}, {team.sex})")
    registration = await _enter_tournament(
        session, team, parent_id, tournament, year, team_data.get("level_of_competition")
    )
    return {"team": team_to_dict(team), "registration": registration}


async def register_tournament_team(
    session: AsyncSession, parent_id: int, data: Dict[str, Any]
) -> Dict[str, Any]:
    """
    Create or reuse a team (matched by name, grade and sex) and enter it in a
    tournament as pending.

    Raises:
        DuplicateRegistration: The team is already entered for (tournament, year)
        LevelMismatch: The requested level differs from the team's
    """
    parent = await parent_service.require_parent(session, parent_id)
    parent.is_coach = True
    result = await _register_one_team(session, parent_id, data, data["tournament"], data["year"])
    return {"success": True, **result}


async def register_tournament_teams(
    session: AsyncSession, parent_id: int, data: Dict[str, Any]
) -> Dict[str, Any]:
    """Enter several teams in one tournament; any failure aborts all of them."""
    teams_data = data.get("teams") or []
    if not teams_data:
        raise ValidationError(
            "At least one team is required",
            details=[{"field": "teams", "message": "at least one team is required"}],
        )
    parent = await parent_service.require_parent(session, parent_id)
    parent.is_coach = True
    results: List[Dict[str, Any]] = []
    for team_data in teams_data:
        results.append(
            await _register_one_team(session, parent_id, team_data, data["tournament"], data["year"])
        )
    return {
        "success": True,
        "teams": [result["team"] for result in results],
        "registrations": [result["registration"] for result in results],
    }


async def add_team_to_tournament(
    session: AsyncSession,
    parent_id: int,
    team_id: int,
    tournament: str,
    year: int,
    level_of_competition: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Enter an existing team in a tournament as pending.

    Raises:
        Forbidden: The caller does not coach the team
    """
    team = await store.get_team(session, team_id)
    if parent_id not in (team.coach_ids or []):
        raise Forbidden(f"You are not a coach of team {team.name}")
    registration = await _enter_tournament(
        session, team, parent_id, tournament, year, level_of_competition
    )
    return {
        "success": True,
        "team": team_to_dict(team),
        "registration": registration,
    }
