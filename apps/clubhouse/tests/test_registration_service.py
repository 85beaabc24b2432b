"""
Tests for account, player and team registration (pending enrolments).
"""
from datetime import date

import pytest
from sqlalchemy import select

from conftest import create_parent, create_player, create_team
from clubhouse.database.models import Parent, Registration, Team
from clubhouse.services import auth_service, registration_service
from clubhouse.services.errors import (
    DuplicateRegistration,
    Forbidden,
    LevelMismatch,
    NotFound,
    ValidationError,
)
from clubhouse.services.temp_token_service import get_temp_token_store
from clubhouse.utils.season_utils import get_current_season


def camp_payload(**overrides):
    data = {
        "email": "New.Parent@Example.com",
        "password": "secret123",
        "full_name": "Pat Parent",
        "phone": "555-0100",
        "agree_to_terms": True,
        "players": [
            {
                "full_name": "Quinn Player",
                "gender": "Male",
                "dob": date(2012, 5, 1),
                "grade": "7",
                "season": "Summer Camp",
                "year": 2025,
            },
            {
                "full_name": "Riley Player",
                "gender": "Female",
                "dob": date(2014, 2, 3),
                "grade": "5",
                "season": "Basketball Select Tryout",
                "year": 2025,
                "tryout_id": "tryout-7",
            },
        ],
    }
    data.update(overrides)
    return data


class TestBasketballCamp:
    @pytest.mark.asyncio
    async def test_creates_account_players_and_pending_registrations(self, db_session):
        result = await registration_service.register_basketball_camp(db_session, camp_payload())

        parent = result["parent"]
        assert parent["email"] == "new.parent@example.com"
        assert parent["registrationComplete"] is True
        assert parent["paymentComplete"] is False
        assert len(result["players"]) == 2
        assert parent["players"] == [player["id"] for player in result["players"]]

        first, second = result["registrations"]
        assert first["tryoutId"] == "summer-camp-2025-tryout-default"
        assert second["tryoutId"] == "tryout-7"
        assert {r["paymentStatus"] for r in result["registrations"]} == {"pending"}

        quinn = result["players"][0]
        assert quinn["season"] == "Summer Camp"
        assert quinn["paymentStatus"] == "pending"
        assert quinn["registrationComplete"] is True
        assert quinn["seasons"][0]["tryoutId"] == "summer-camp-2025-tryout-default"

        rows = (await db_session.execute(select(Registration))).scalars().all()
        assert len(rows) == 2
        assert all(row.payment_status == "pending" for row in rows)

        claims = auth_service.verify_token(result["token"])
        assert claims["email"] == "new.parent@example.com"
        assert claims["players"] == parent["players"]

    @pytest.mark.asyncio
    async def test_email_already_registered(self, db_session):
        await create_parent(db_session, email="new.parent@example.com")
        with pytest.raises(DuplicateRegistration):
            await registration_service.register_basketball_camp(db_session, camp_payload())

    @pytest.mark.asyncio
    async def test_terms_required(self, db_session):
        with pytest.raises(ValidationError) as exc_info:
            await registration_service.register_basketball_camp(
                db_session, camp_payload(agree_to_terms=False)
            )
        assert exc_info.value.details[0]["field"] == "agreeToTerms"

    @pytest.mark.asyncio
    async def test_players_required(self, db_session):
        with pytest.raises(ValidationError):
            await registration_service.register_basketball_camp(db_session, camp_payload(players=[]))

    @pytest.mark.asyncio
    async def test_short_password(self, db_session):
        with pytest.raises(ValidationError):
            await registration_service.register_basketball_camp(db_session, camp_payload(password="abc"))

    @pytest.mark.asyncio
    async def test_same_player_twice_in_payload(self, db_session):
        payload = camp_payload()
        payload["players"] = [payload["players"][0], dict(payload["players"][0], full_name="QUINN PLAYER")]
        with pytest.raises(DuplicateRegistration):
            await registration_service.register_basketball_camp(db_session, payload)

    @pytest.mark.asyncio
    async def test_password_required_without_verified_temp_account(self, db_session):
        with pytest.raises(ValidationError) as exc_info:
            await registration_service.register_basketball_camp(db_session, camp_payload(password=None))
        assert exc_info.value.details[0]["field"] == "password"

    @pytest.mark.asyncio
    async def test_verified_temp_account_supplies_password(self, db_session):
        temp_store = get_temp_token_store()
        entry = temp_store.issue("new.parent@example.com", auth_service.hash_password("temp-pass"))
        temp_store.verify("new.parent@example.com", entry.token)

        result = await registration_service.register_basketball_camp(db_session, camp_payload(password=None))

        assert result["parent"]["emailVerified"] is True
        parent = await db_session.get(Parent, result["parent"]["id"])
        assert auth_service.verify_password("temp-pass", parent.password_hash)
        assert temp_store.get("new.parent@example.com") is None


class TestRegisterPlayer:
    @pytest.mark.asyncio
    async def test_player_with_season(self, db_session):
        parent = await create_parent(db_session)
        result = await registration_service.register_player(
            db_session,
            parent.id,
            {
                "full_name": "Sam Player",
                "gender": "Male",
                "dob": date(2013, 1, 1),
                "season": "Fall League",
                "registration_year": 2025,
            },
        )

        assert result["player"]["season"] == "Fall League"
        assert result["registration"]["tryoutId"] == "fall-league-2025-tryout-default"

    @pytest.mark.asyncio
    async def test_year_without_season_uses_current_season(self, db_session):
        parent = await create_parent(db_session)
        result = await registration_service.register_player(
            db_session,
            parent.id,
            {"full_name": "Sam Player", "gender": "Male", "dob": date(2013, 1, 1), "registration_year": 2025},
        )
        assert result["registration"]["season"] == get_current_season()

    @pytest.mark.asyncio
    async def test_season_needs_year(self, db_session):
        parent = await create_parent(db_session)
        with pytest.raises(ValidationError):
            await registration_service.register_player(
                db_session,
                parent.id,
                {"full_name": "Sam Player", "gender": "Male", "dob": date(2013, 1, 1), "season": "Fall League"},
            )

    @pytest.mark.asyncio
    async def test_skip_season_registration(self, db_session):
        parent = await create_parent(db_session)
        result = await registration_service.register_player(
            db_session,
            parent.id,
            {
                "full_name": "Sam Player",
                "gender": "Male",
                "dob": date(2013, 1, 1),
                "season": "Fall League",
                "registration_year": 2025,
                "skip_season_registration": True,
            },
        )
        assert result["registration"] is None
        assert result["player"]["seasons"] == []

    @pytest.mark.asyncio
    async def test_duplicate_player(self, db_session):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        with pytest.raises(DuplicateRegistration):
            await registration_service.register_player(
                db_session,
                parent.id,
                {"full_name": "quinn player", "gender": player.gender, "dob": player.dob},
            )

    @pytest.mark.asyncio
    async def test_unknown_parent(self, db_session):
        with pytest.raises(NotFound):
            await registration_service.register_player(
                db_session, 404, {"full_name": "Sam", "gender": "Male", "dob": date(2013, 1, 1)}
            )

    @pytest.mark.asyncio
    async def test_enrol_twice_in_same_program(self, db_session):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        await registration_service.enrol_player(db_session, player, "Summer Camp", 2025)
        with pytest.raises(DuplicateRegistration):
            await registration_service.enrol_player(db_session, player, " summer camp ", 2025)


def team_payload(**overrides):
    data = {
        "team_name": "Thunder",
        "grade": "7",
        "sex": "Male",
        "level_of_competition": "Silver",
        "tournament": "Winter Classic",
        "year": 2025,
    }
    data.update(overrides)
    return data


class TestTournamentTeams:
    @pytest.mark.asyncio
    async def test_creates_team_and_pending_entry(self, db_session):
        coach = await create_parent(db_session, email="coach@example.com")

        result = await registration_service.register_tournament_team(db_session, coach.id, team_payload())

        team = result["team"]
        assert team["coachIds"] == [coach.id]
        assert team["tournament"] == "Winter Classic"
        assert team["tournaments"][0]["paymentStatus"] == "pending"
        assert team["tournaments"][0]["registrationId"] == result["registration"]["registrationId"]
        assert coach.is_coach is True

    @pytest.mark.asyncio
    async def test_existing_team_is_reused(self, db_session):
        coach = await create_parent(db_session, email="coach@example.com")
        existing = await create_team(db_session, coach.id, name="Thunder")

        result = await registration_service.register_tournament_team(
            db_session, coach.id, team_payload(team_name="  thunder ")
        )

        assert result["team"]["id"] == existing.id
        teams = (await db_session.execute(select(Team))).scalars().all()
        assert len(teams) == 1

    @pytest.mark.asyncio
    async def test_same_tournament_twice(self, db_session):
        coach = await create_parent(db_session, email="coach@example.com")
        await registration_service.register_tournament_team(db_session, coach.id, team_payload())
        with pytest.raises(DuplicateRegistration):
            await registration_service.register_tournament_team(db_session, coach.id, team_payload())

    @pytest.mark.asyncio
    async def test_level_must_match_existing_team(self, db_session):
        coach = await create_parent(db_session, email="coach@example.com")
        await create_team(db_session, coach.id, name="Thunder", level="Silver")
        with pytest.raises(LevelMismatch):
            await registration_service.register_tournament_team(
                db_session, coach.id, team_payload(level_of_competition="Gold")
            )

    @pytest.mark.asyncio
    async def test_several_teams(self, db_session):
        coach = await create_parent(db_session, email="coach@example.com")
        result = await registration_service.register_tournament_teams(
            db_session,
            coach.id,
            {
                "tournament": "Winter Classic",
                "year": 2025,
                "teams": [
                    {"team_name": "T1", "grade": "7", "sex": "Male", "level_of_competition": "Gold"},
                    {"team_name": "T2", "grade": "7", "sex": "Male", "level_of_competition": "Silver"},
                ],
            },
        )

        assert [team["levelOfCompetition"] for team in result["teams"]] == ["Gold", "Silver"]
        assert len(result["registrations"]) == 2

    @pytest.mark.asyncio
    async def test_several_teams_needs_teams(self, db_session):
        coach = await create_parent(db_session, email="coach@example.com")
        with pytest.raises(ValidationError):
            await registration_service.register_tournament_teams(
                db_session, coach.id, {"tournament": "Winter Classic", "year": 2025, "teams": []}
            )

    @pytest.mark.asyncio
    async def test_add_existing_team_requires_coach(self, db_session):
        coach = await create_parent(db_session, email="coach@example.com")
        stranger = await create_parent(db_session, email="stranger@example.com")
        team = await create_team(db_session, coach.id)

        with pytest.raises(Forbidden):
            await registration_service.add_team_to_tournament(
                db_session, stranger.id, team.id, "Winter Classic", 2025
            )

        result = await registration_service.add_team_to_tournament(
            db_session, coach.id, team.id, "Winter Classic", 2025
        )
        assert result["registration"]["levelOfCompetition"] == "Silver"
