"""
Write model over parents, players, registrations and teams.

Every function works inside the caller's transaction (the ``AsyncSession``
passed in) and never commits. Together they keep these rules:

- every ``player.seasons`` entry has exactly one Registration row with the
  same key and the same payment fields;
- the player's top-level season/payment fields mirror the seasons entry with
  the greatest ``registrationDate``;
- a team enters a (tournament, year) at most once, at its own level.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pytz
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.database.models import (
    Parent,
    PaymentStatus,
    Player,
    Registration,
    Team,
)
from clubhouse.services.errors import DuplicateRegistration, LevelMismatch, NotFound
from clubhouse.utils.datetime_utils import parse_iso, to_iso, utcnow
from clubhouse.utils.season_utils import normalize_season, seasons_equal

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=pytz.UTC)

PAID = PaymentStatus.PAID.value
PENDING = PaymentStatus.PENDING.value

# Registration columns that may be set through upsert_registration
REGISTRATION_FIELDS = (
    "level_of_competition",
    "payment_status",
    "payment_id",
    "payment_record_id",
    "amount_paid",
    "currency",
    "payment_method",
    "card_last4",
    "card_brand",
    "payment_date",
    "registration_complete",
)


async def flush(session: AsyncSession) -> None:
    """Flush pending writes, reporting unique-index violations as duplicates."""
    try:
        await session.flush()
    except IntegrityError as e:
        logger.warning(f"Unique constraint violated during registration write: {e.orig}")
        raise DuplicateRegistration("This registration already exists") from e


async def get_player(session: AsyncSession, player_id: int) -> Player:
    player = await session.get(Player, player_id)
    if player is None:
        raise NotFound(f"Player {player_id} not found")
    return player


async def get_team(session: AsyncSession, team_id: int) -> Team:
    team = await session.get(Team, team_id)
    if team is None:
        raise NotFound(f"Team {team_id} not found")
    return team


async def lock_players(session: AsyncSession, player_ids: Sequence[int]) -> Dict[int, Player]:
    """
    Load players with a row lock held until the transaction ends.

    Concurrent payments for the same player serialise here, so the second one
    sees the first one's committed seasons before deciding it is not a duplicate.

    Raises:
        NotFound: If any id does not exist
    """
    result = await session.execute(
        select(Player)
        .where(Player.id.in_(list(player_ids)))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    players = {player.id: player for player in result.scalars().all()}
    for player_id in player_ids:
        if player_id not in players:
            raise NotFound(f"Player {player_id} not found")
    return players


async def lock_teams(session: AsyncSession, team_ids: Sequence[int]) -> Dict[int, Team]:
    """Load teams with a row lock held until the transaction ends."""
    result = await session.execute(
        select(Team)
        .where(Team.id.in_(list(team_ids)))
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    teams = {team.id: team for team in result.scalars().all()}
    for team_id in team_ids:
        if team_id not in teams:
            raise NotFound(f"Team {team_id} not found")
    return teams


# ---------------------------------------------------------------------------
# Season entries
# ---------------------------------------------------------------------------


def season_entry_matches(
    entry: Mapping[str, Any],
    season: str,
    year: int,
    tryout_id: Optional[str] = None,
    exact: bool = False,
) -> bool:
    """
    Season is compared case-insensitively. The tryout id only counts when
    given, unless ``exact`` is set, in which case None matches only None.
    """
    if not seasons_equal(entry.get("season"), season):
        return False
    if int(entry.get("year") or 0) != int(year):
        return False
    if (exact or tryout_id is not None) and entry.get("tryoutId") != tryout_id:
        return False
    return True


def find_season_entry(
    seasons: Iterable[Mapping[str, Any]],
    season: str,
    year: int,
    tryout_id: Optional[str] = None,
    exact: bool = False,
) -> Optional[int]:
    for index, entry in enumerate(seasons):
        if season_entry_matches(entry, season, year, tryout_id, exact=exact):
            return index
    return None


def resolve_tryout_id(player: Player, season: str, year: int) -> Optional[str]:
    """
    Tryout id of the player's unpaid entry for (season, year), if there is one.

    Payment line items may omit the tryout id; the pending entry written at
    enrolment carries the one the payment must settle.
    """
    for entry in player.seasons or []:
        if season_entry_matches(entry, season, year) and entry.get("paymentStatus") != PAID:
            return entry.get("tryoutId")
    return None


def latest_season_entry(seasons: Sequence[Mapping[str, Any]]) -> Optional[Mapping[str, Any]]:
    """The entry with the greatest registrationDate; later list position wins ties."""
    latest = None
    latest_key: Optional[Tuple[datetime, int]] = None
    for index, entry in enumerate(seasons):
        key = (parse_iso(entry.get("registrationDate")) or _EPOCH, index)
        if latest_key is None or key >= latest_key:
            latest, latest_key = entry, key
    return latest


def refresh_player_mirror(player: Player) -> None:
    """Copy the latest seasons entry into the player's top-level fields."""
    latest = latest_season_entry(player.seasons or [])
    if latest is None:
        return
    player.season = latest.get("season")
    player.registration_year = latest.get("year")
    player.payment_status = latest.get("paymentStatus", PENDING)
    player.payment_complete = bool(latest.get("paymentComplete"))
    if player.payment_complete and latest.get("paymentDate"):
        player.last_payment_date = parse_iso(latest["paymentDate"])


def _normalize_season_entry(season_data: Mapping[str, Any]) -> Dict[str, Any]:
    entry = dict(season_data)
    entry["season"] = (entry.get("season") or "").strip()
    entry["year"] = int(entry["year"])
    entry.setdefault("tryoutId", None)
    entry.setdefault("paymentStatus", PENDING)
    entry["paymentComplete"] = entry["paymentStatus"] == PAID
    return entry


async def assert_no_duplicate_player(
    session: AsyncSession, parent_id: int, full_name: str, dob, gender: str
) -> None:
    """
    Raises:
        DuplicateRegistration: If the parent already has this player
    """
    result = await session.execute(
        select(Player.id).where(
            Player.parent_id == parent_id,
            func.lower(Player.full_name) == full_name.strip().lower(),
            Player.dob == dob,
            Player.gender == gender,
        )
    )
    if result.first() is not None:
        raise DuplicateRegistration(f"{full_name.strip()} is already registered under this account")


async def assert_no_duplicate_season(
    session: AsyncSession,
    player_id: int,
    season: str,
    year: int,
    tryout_id: Optional[str] = None,
    allow_pending: bool = False,
) -> None:
    """
    Refuse a second enrolment of a player in the same program.

    Args:
        allow_pending: When True only paid enrolments count, so a pending
            entry can be upgraded by a payment.

    Raises:
        NotFound: If the player does not exist
        DuplicateRegistration: If a matching enrolment exists
    """
    player = await get_player(session, player_id)
    for entry in player.seasons or []:
        if not season_entry_matches(entry, season, year, tryout_id):
            continue
        if allow_pending and entry.get("paymentStatus") != PAID:
            continue
        raise DuplicateRegistration(
            f"{player.full_name} is already registered for {season} {year}",
            details={"playerId": player.id, "season": season, "year": year, "tryoutId": tryout_id},
        )

    if allow_pending:
        registration = await _find_player_registration(
            session, player.id, player.parent_id, season, year, tryout_id
        )
        if registration is not None and registration.payment_status == PAID:
            raise DuplicateRegistration(
                f"{player.full_name} is already registered for {season} {year}",
                details={"playerId": player.id, "season": season, "year": year, "tryoutId": tryout_id},
            )


async def upsert_player_season(
    session: AsyncSession, player_id: int, season_data: Mapping[str, Any]
) -> Player:
    """
    Insert or replace the player's seasons entry for one program.

    A matching entry keeps its original registrationDate. The top-level
    mirror fields are refreshed afterwards.
    """
    player = await get_player(session, player_id)
    entry = _normalize_season_entry(season_data)
    seasons = [dict(item) for item in (player.seasons or [])]

    index = find_season_entry(
        seasons, entry["season"], entry["year"], entry["tryoutId"], exact=True
    )
    if index is not None:
        existing = seasons[index]
        registration_date = (
            existing.get("registrationDate")
            or entry.get("registrationDate")
            or to_iso(utcnow())
        )
        seasons[index] = {**existing, **entry, "registrationDate": registration_date}
    else:
        entry.setdefault("registrationDate", to_iso(utcnow()))
        seasons.append(entry)

    player.seasons = seasons
    refresh_player_mirror(player)
    return player


# ---------------------------------------------------------------------------
# Registration rows
# ---------------------------------------------------------------------------


async def _find_player_registration(
    session: AsyncSession,
    player_id: int,
    parent_id: int,
    season: str,
    year: int,
    tryout_id: Optional[str],
    exact: bool = False,
) -> Optional[Registration]:
    """Without ``exact`` a None tryout id matches any tryout id."""
    query = select(Registration).where(
        Registration.player_id == player_id,
        Registration.parent_id == parent_id,
        func.lower(Registration.season) == normalize_season(season),
        Registration.year == int(year),
    )
    if tryout_id is not None:
        query = query.where(Registration.tryout_id == tryout_id)
    elif exact:
        query = query.where(Registration.tryout_id.is_(None))
    result = await session.execute(query.order_by(Registration.id))
    return result.scalars().first()


async def find_team_registration(
    session: AsyncSession, parent_id: int, team_id: int, tournament: str, year: int
) -> Optional[Registration]:
    result = await session.execute(
        select(Registration).where(
            Registration.parent_id == parent_id,
            Registration.team_id == team_id,
            Registration.tournament == tournament,
            Registration.year == int(year),
        )
    )
    return result.scalars().first()


async def upsert_registration(
    session: AsyncSession, key: Mapping[str, Any], patch: Mapping[str, Any]
) -> Registration:
    """
    Insert or update the Registration row identified by ``key``.

    Args:
        key: Either ``{player_id, parent_id, season, year, tryout_id}`` or
            ``{team_id, parent_id, tournament, year}``
        patch: Column values to set (see REGISTRATION_FIELDS)

    Returns:
        The flushed Registration (its id is available)

    Raises:
        DuplicateRegistration: If a concurrent insert won the unique index
    """
    if key.get("team_id") is not None:
        registration = await find_team_registration(
            session, key["parent_id"], key["team_id"], key["tournament"], key["year"]
        )
    else:
        registration = await _find_player_registration(
            session,
            key["player_id"],
            key["parent_id"],
            key["season"],
            key["year"],
            key.get("tryout_id"),
            exact=True,
        )

    if registration is None:
        registration = Registration(
            player_id=key.get("player_id"),
            parent_id=key["parent_id"],
            team_id=key.get("team_id"),
            season=(key.get("season") or "").strip() or None,
            year=int(key["year"]),
            tryout_id=key.get("tryout_id"),
            tournament=key.get("tournament"),
            payment_status=PENDING,
            payment_complete=False,
            registration_complete=True,
        )
        session.add(registration)

    for name, value in patch.items():
        if name not in REGISTRATION_FIELDS:
            raise ValueError(f"Unknown registration field: {name}")
        setattr(registration, name, value)
    registration.payment_complete = registration.payment_status == PAID

    await flush(session)
    return registration


# ---------------------------------------------------------------------------
# Teams
# ---------------------------------------------------------------------------


def find_tournament_entry(
    tournaments: Iterable[Mapping[str, Any]], tournament: str, year: int
) -> Optional[int]:
    for index, entry in enumerate(tournaments):
        if entry.get("tournament") == tournament and int(entry.get("year") or 0) == int(year):
            return index
    return None


def check_team_level(team: Team, tournament: str, year: int, level: Optional[str] = None) -> str:
    """
    Resolve the level a team enters a tournament at.

    Raises:
        LevelMismatch: If the requested level differs from the team's level or
            from an existing entry for the same (tournament, year)
    """
    resolved = level or team.level_of_competition
    if resolved != team.level_of_competition:
        raise LevelMismatch(
            f"{team.name} competes at {team.level_of_competition} level, not {resolved}"
        )
    index = find_tournament_entry(team.tournaments or [], tournament, year)
    if index is not None:
        existing_level = team.tournaments[index].get("levelOfCompetition")
        if existing_level and existing_level != resolved:
            raise LevelMismatch(
                f"{team.name} is already registered for {tournament} {year} at {existing_level} level"
            )
    return resolved


async def add_or_update_team_tournament(
    session: AsyncSession, team_id: int, entry: Mapping[str, Any]
) -> Team:
    """
    Insert or replace the team's tournaments entry for (tournament, year).

    Raises:
        NotFound: If the team does not exist
        LevelMismatch: Before any mutation, if the level conflicts
    """
    team = await get_team(session, team_id)
    tournament = entry["tournament"]
    year = int(entry["year"])
    level = check_team_level(team, tournament, year, entry.get("levelOfCompetition"))

    new_entry = dict(entry)
    new_entry["year"] = year
    new_entry["levelOfCompetition"] = level
    new_entry.setdefault("paymentStatus", PENDING)
    new_entry["paymentComplete"] = new_entry["paymentStatus"] == PAID

    tournaments = [dict(item) for item in (team.tournaments or [])]
    index = find_tournament_entry(tournaments, tournament, year)
    if index is not None:
        existing = tournaments[index]
        registration_date = existing.get("registrationDate") or to_iso(utcnow())
        tournaments[index] = {**existing, **new_entry, "registrationDate": registration_date}
    else:
        new_entry.setdefault("registrationDate", to_iso(utcnow()))
        tournaments.append(new_entry)

    team.tournaments = tournaments
    team.tournament = tournament
    team.registration_year = year
    team.payment_status = new_entry["paymentStatus"]
    team.payment_complete = new_entry["paymentComplete"]
    return team


async def ensure_coach(session: AsyncSession, team_id: int, parent_id: int) -> Team:
    team = await get_team(session, team_id)
    coach_ids = list(team.coach_ids or [])
    if parent_id not in coach_ids:
        coach_ids.append(parent_id)
        team.coach_ids = coach_ids
    return team


# ---------------------------------------------------------------------------
# Parent aggregate
# ---------------------------------------------------------------------------


def _registration_in_program(registration: Registration, program: Mapping[str, Any]) -> bool:
    if int(registration.year) != int(program["year"]):
        return False
    if program.get("tournament") is not None:
        return registration.team_id is not None and registration.tournament == program["tournament"]
    if registration.player_id is None or not seasons_equal(registration.season, program.get("season")):
        return False
    tryout_id = program.get("tryoutId")
    return tryout_id is None or registration.tryout_id == tryout_id


async def refresh_parent_payment_complete(
    session: AsyncSession, parent_id: int, programs: List[Mapping[str, Any]]
) -> bool:
    """
    Set ``parent.payment_complete`` from the registrations of the current programs.

    Args:
        programs: ``{season, year, tryoutId}`` or ``{tournament, year}`` dicts
            for the programs the payment being written belongs to

    Returns:
        The new aggregate value
    """
    parent = await session.get(Parent, parent_id)
    if parent is None:
        raise NotFound(f"Parent {parent_id} not found")

    await flush(session)
    result = await session.execute(
        select(Registration).where(Registration.parent_id == parent_id)
    )
    current = [
        registration
        for registration in result.scalars().all()
        if any(_registration_in_program(registration, program) for program in programs)
    ]
    parent.payment_complete = bool(current) and all(
        registration.payment_status == PAID for registration in current
    )
    return parent.payment_complete
