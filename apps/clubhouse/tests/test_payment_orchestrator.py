"""
End-to-end tests for the payment orchestrator.

Square is replaced with an httpx.MockTransport; tournament flows use a
test-mode configuration. Every test checks both the response and what was
(or was not) written to the database.
"""
import asyncio
import json
import logging
from decimal import Decimal

import httpx
import pytest
from sqlalchemy import func, select

from conftest import (
    SQUARE_CREDENTIALS,
    USING_POSTGRES,
    create_configuration,
    create_parent,
    create_player,
    create_team,
)
from clubhouse.database import db
from clubhouse.database.models import Payment, Registration
from clubhouse.services import email_service, registration_service, registration_store
from clubhouse.services.errors import (
    ConfigError,
    DuplicateRegistration,
    Forbidden,
    LevelMismatch,
    PaymentRefused,
    ProviderError,
    TransactionAborted,
    Unauthorized,
    ValidationError,
)
from clubhouse.services.payment_orchestrator import (
    PaymentRequest,
    PlayerLineItem,
    process_payment,
    validate_request,
)
from clubhouse.services.provider_registry import ProviderRegistry

TRYOUT = "Basketball Select Tryout"


class FakeSquare:
    """Square stand-in that records charges and answers with a fixed payment status."""

    def __init__(self, status="COMPLETED", http_status=200):
        self.status = status
        self.http_status = http_status
        self.charges = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v2/customers":
            return httpx.Response(200, json={"customer": {"id": "CUST1"}})
        if request.url.path == "/v2/payments":
            self.charges.append(json.loads(request.content))
            if self.http_status >= 400:
                return httpx.Response(
                    self.http_status,
                    json={"errors": [{"category": "API_ERROR", "code": "INTERNAL_SERVER_ERROR"}]},
                )
            number = len(self.charges)
            card_details = {
                "card": {"last_4": "1111", "card_brand": "VISA", "exp_month": 12, "exp_year": 2030}
            }
            if self.status != "COMPLETED":
                card_details["errors"] = [
                    {
                        "category": "PAYMENT_METHOD_ERROR",
                        "code": "GENERIC_DECLINE",
                        "detail": "Authorization error: 'GENERIC_DECLINE'",
                    }
                ]
            return httpx.Response(
                200,
                json={
                    "payment": {
                        "id": f"sq_pay_{number}",
                        "status": self.status,
                        "location_id": "LOC123",
                        "receipt_url": f"https://squareup.com/receipt/sq_pay_{number}",
                        "card_details": card_details,
                    }
                },
            )
        return httpx.Response(404, json={"errors": [{"category": "INVALID_REQUEST_ERROR", "code": "NOT_FOUND"}]})

    def registry(self) -> ProviderRegistry:
        return ProviderRegistry(transport=httpx.MockTransport(self.handler))


def tryout_request(parent_id, player_ids, amount=5000, **kwargs):
    return PaymentRequest(
        flow=kwargs.pop("flow", "tryout"),
        parent_id=parent_id,
        amount=amount,
        source_id=kwargs.pop("source_id", "cnon:card-nonce-ok"),
        players=[PlayerLineItem(player_id, TRYOUT, 2025, "tryout-1") for player_id in player_ids],
        **kwargs,
    )


def teams_request(parent_id, team_ids, amount=85000, flow="tournament-teams", **kwargs):
    return PaymentRequest(
        flow=flow,
        parent_id=parent_id,
        amount=amount,
        source_id="cnon:card-nonce-ok",
        team_ids=team_ids,
        tournament="Winter Classic",
        year=2025,
        **kwargs,
    )


async def count_rows(session, model):
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


class TestTryoutPayments:
    @pytest.mark.asyncio
    async def test_single_player_tryout(self, db_session, captured_emails):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        configuration = await create_configuration(db_session)
        square = FakeSquare()

        response = await process_payment(db_session, tryout_request(parent.id, [player.id]), square.registry())

        assert response["success"] is True
        assert response["externalPaymentId"] == "sq_pay_1"
        assert response["paymentSystem"] == "square"
        assert response["amount"] == "50.00"
        assert response["currency"] == "USD"
        assert response["parentPaymentComplete"] is True
        assert response["players"][0]["paymentStatus"] == "paid"

        charge = square.charges[0]
        assert charge["amount_money"] == {"amount": 5000, "currency": "USD"}
        assert charge["reference_id"] == f"parent:{parent.id}"
        assert charge["customer_id"] == "CUST1"

        payment = (await db_session.execute(select(Payment))).scalar_one()
        assert payment.id == response["paymentId"]
        assert payment.payment_type == "tryout"
        assert payment.player_ids == [player.id]
        assert payment.amount == Decimal("50.00")
        assert payment.location_id == "LOC123"
        assert payment.configuration_id == configuration.id
        assert payment.card_last_four == "1111"
        assert payment.payment_metadata["amountPerPlayer"] == ["50.00"]

        registration = (await db_session.execute(select(Registration))).scalar_one()
        assert registration.player_id == player.id
        assert registration.payment_status == "paid"
        assert registration.payment_complete is True
        assert registration.payment_record_id == payment.id
        assert registration.amount_paid == Decimal("50.00")

        assert len(player.seasons) == 1
        entry = player.seasons[0]
        assert entry["paymentStatus"] == "paid"
        assert entry["paymentId"] == "sq_pay_1"
        assert entry["amountPaid"] == 50.0
        assert player.payment_complete is True
        assert player.registration_complete is True

        assert parent.payment_complete is True
        assert parent.square_customer_id == "CUST1"
        assert len(captured_emails) == 1

    @pytest.mark.asyncio
    async def test_training_splits_odd_cents(self, db_session, captured_emails):
        parent = await create_parent(db_session)
        first = await create_player(db_session, parent.id, full_name="First Player")
        second = await create_player(db_session, parent.id, full_name="Second Player")
        await create_configuration(db_session)
        square = FakeSquare()

        response = await process_payment(
            db_session,
            tryout_request(parent.id, [first.id, second.id], amount=1001, flow="training"),
            square.registry(),
        )

        assert response["amount"] == "10.01"
        assert square.charges[0]["reference_id"].startswith(f"training:{parent.id}:")
        registrations = (
            await db_session.execute(select(Registration).order_by(Registration.id))
        ).scalars().all()
        assert [r.amount_paid for r in registrations] == [Decimal("5.00"), Decimal("5.01")]
        payment = (await db_session.execute(select(Payment))).scalar_one()
        assert payment.payment_type == "training"
        assert payment.payment_metadata["amountPerPlayer"] == ["5.00", "5.01"]

    @pytest.mark.asyncio
    async def test_pending_enrolment_is_upgraded(self, db_session, captured_emails):
        parent = await create_parent(db_session)
        player = await create_player(
            db_session,
            parent.id,
            seasons=[
                {
                    "season": TRYOUT,
                    "year": 2025,
                    "tryoutId": "tryout-1",
                    "paymentStatus": "pending",
                    "registrationDate": "2025-01-01T00:00:00+00:00",
                }
            ],
        )
        await registration_store.upsert_registration(
            db_session,
            {
                "player_id": player.id,
                "parent_id": parent.id,
                "season": TRYOUT,
                "year": 2025,
                "tryout_id": "tryout-1",
            },
            {"payment_status": "pending"},
        )
        await db_session.commit()
        await create_configuration(db_session)

        await process_payment(db_session, tryout_request(parent.id, [player.id]), FakeSquare().registry())

        assert len(player.seasons) == 1
        assert player.seasons[0]["paymentStatus"] == "paid"
        assert player.seasons[0]["registrationDate"] == "2025-01-01T00:00:00+00:00"
        assert await count_rows(db_session, Registration) == 1

    @pytest.mark.asyncio
    async def test_line_item_without_tryout_settles_enrolment(self, db_session, captured_emails):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        await registration_service.enrol_player(db_session, player, "Spring Tryout", 2025)
        await db_session.commit()
        await create_configuration(db_session)
        request = PaymentRequest(
            flow="tryout",
            parent_id=parent.id,
            amount=5000,
            source_id="cnon:card-nonce-ok",
            players=[PlayerLineItem(player.id, "Spring Tryout", 2025)],
        )

        await process_payment(db_session, request, FakeSquare().registry())

        await db_session.refresh(player)
        assert len(player.seasons) == 1
        assert player.seasons[0]["tryoutId"] == "spring-tryout-2025-tryout-default"
        assert player.seasons[0]["paymentStatus"] == "paid"
        registrations = (await db_session.execute(select(Registration))).scalars().all()
        assert len(registrations) == 1
        assert registrations[0].tryout_id == "spring-tryout-2025-tryout-default"
        assert registrations[0].payment_status == "paid"

    @pytest.mark.asyncio
    async def test_repeat_payment_rejected_without_charge(self, db_session, captured_emails):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        await create_configuration(db_session)
        square = FakeSquare()
        registry = square.registry()

        await process_payment(db_session, tryout_request(parent.id, [player.id]), registry)
        with pytest.raises(DuplicateRegistration):
            await process_payment(db_session, tryout_request(parent.id, [player.id]), registry)

        assert len(square.charges) == 1
        assert await count_rows(db_session, Payment) == 1

    @pytest.mark.skipif(not USING_POSTGRES, reason="row locks need PostgreSQL")
    @pytest.mark.asyncio
    async def test_concurrent_payments_charge_once(self, db_session, captured_emails):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        await create_configuration(db_session)
        square = FakeSquare()
        registry = square.registry()

        async def attempt():
            async with db.AsyncSessionLocal() as session:
                return await process_payment(session, tryout_request(parent.id, [player.id]), registry)

        results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

        successes = [r for r in results if isinstance(r, dict)]
        duplicates = [r for r in results if isinstance(r, DuplicateRegistration)]
        assert len(successes) == 1
        assert len(duplicates) == 1
        assert len(square.charges) == 1
        assert await count_rows(db_session, Payment) == 1

    @pytest.mark.asyncio
    async def test_registration_written_by_other_checkout_is_duplicate(
        self, db_session, captured_emails, monkeypatch, caplog
    ):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        await create_configuration(db_session)
        square = FakeSquare()
        check_season = registration_store.assert_no_duplicate_season

        async def check_then_lose_race(session, player_id, season, year, tryout_id=None, **kwargs):
            await check_season(session, player_id, season, year, tryout_id, **kwargs)
            # The other checkout commits the same program after this one's checks
            async with db.AsyncSessionLocal() as other:
                other.add(
                    Registration(
                        player_id=player_id,
                        parent_id=parent.id,
                        season=season,
                        year=year,
                        tryout_id=tryout_id,
                        payment_status="paid",
                        payment_complete=True,
                        payment_id="sq_pay_other",
                    )
                )
                await other.commit()

        async def lookup_before_other_commit(*args, **kwargs):
            return None

        monkeypatch.setattr(registration_store, "assert_no_duplicate_season", check_then_lose_race)
        monkeypatch.setattr(registration_store, "_find_player_registration", lookup_before_other_commit)
        caplog.set_level(logging.CRITICAL, logger="clubhouse.services.payment_orchestrator")

        with pytest.raises(DuplicateRegistration) as exc_info:
            await process_payment(db_session, tryout_request(parent.id, [player.id]), square.registry())

        assert exc_info.value.status_code == 409
        assert await count_rows(db_session, Payment) == 0
        registrations = (await db_session.execute(select(Registration))).scalars().all()
        assert [registration.payment_id for registration in registrations] == ["sq_pay_other"]
        assert any("sq_pay_1" in record.getMessage() for record in caplog.records)
        assert captured_emails == []

    @pytest.mark.asyncio
    async def test_declined_card_writes_nothing(self, db_session, captured_emails):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        await create_configuration(db_session)
        square = FakeSquare(status="FAILED")

        with pytest.raises(PaymentRefused) as exc_info:
            await process_payment(db_session, tryout_request(parent.id, [player.id]), square.registry())

        assert exc_info.value.status_code == 400
        assert exc_info.value.message == "Payment was declined by square: Authorization error: 'GENERIC_DECLINE'"
        assert exc_info.value.provider == "square"
        assert len(square.charges) == 1
        assert await count_rows(db_session, Payment) == 0
        assert await count_rows(db_session, Registration) == 0
        await db_session.refresh(player)
        await db_session.refresh(parent)
        assert player.seasons == []
        assert player.payment_complete is False
        assert parent.payment_complete is False
        assert parent.square_customer_id is None
        assert captured_emails == []

    @pytest.mark.asyncio
    async def test_processor_outage_writes_nothing(self, db_session, captured_emails):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        await create_configuration(db_session)

        with pytest.raises(ProviderError) as exc_info:
            await process_payment(
                db_session, tryout_request(parent.id, [player.id]), FakeSquare(http_status=500).registry()
            )

        assert exc_info.value.retryable is True
        assert await count_rows(db_session, Payment) == 0
        assert await count_rows(db_session, Registration) == 0

    @pytest.mark.asyncio
    async def test_missing_source_rejected_before_charge(self, db_session):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        await create_configuration(db_session)
        square = FakeSquare()

        with pytest.raises(ValidationError) as exc_info:
            await process_payment(
                db_session, tryout_request(parent.id, [player.id], source_id=None), square.registry()
            )

        fields = [item["field"] for item in exc_info.value.details]
        assert "sourceId" in fields
        assert square.charges == []

    @pytest.mark.asyncio
    async def test_incomplete_configuration_rejected_before_charge(self, db_session):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        credentials = {k: v for k, v in SQUARE_CREDENTIALS.items() if k != "locationId"}
        await create_configuration(db_session, credentials=credentials)
        square = FakeSquare()

        with pytest.raises(ConfigError) as exc_info:
            await process_payment(db_session, tryout_request(parent.id, [player.id]), square.registry())

        assert exc_info.value.field == "locationId"
        assert square.charges == []
        assert await count_rows(db_session, Payment) == 0

    @pytest.mark.asyncio
    async def test_other_parents_player_forbidden(self, db_session):
        owner = await create_parent(db_session)
        intruder = await create_parent(db_session, email="intruder@example.com")
        player = await create_player(db_session, owner.id)
        await create_configuration(db_session)
        square = FakeSquare()

        with pytest.raises(Forbidden):
            await process_payment(db_session, tryout_request(intruder.id, [player.id]), square.registry())
        assert square.charges == []

    @pytest.mark.asyncio
    async def test_unknown_parent(self, db_session):
        with pytest.raises(Unauthorized):
            await process_payment(db_session, tryout_request(404, [1]), FakeSquare().registry())

    @pytest.mark.asyncio
    async def test_failure_after_charge_is_transaction_aborted(
        self, db_session, captured_emails, monkeypatch, caplog
    ):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        await create_configuration(db_session)
        square = FakeSquare()

        async def broken(*args, **kwargs):
            raise RuntimeError("database went away")

        monkeypatch.setattr(registration_store, "refresh_parent_payment_complete", broken)
        caplog.set_level(logging.CRITICAL, logger="clubhouse.services.payment_orchestrator")

        with pytest.raises(TransactionAborted) as exc_info:
            await process_payment(db_session, tryout_request(parent.id, [player.id]), square.registry())

        assert exc_info.value.details == {"externalPaymentId": "sq_pay_1"}
        assert any(
            record.levelno == logging.CRITICAL and "sq_pay_1" in record.getMessage()
            for record in caplog.records
        )
        assert await count_rows(db_session, Payment) == 0
        assert captured_emails == []


class TestReceipts:
    @pytest.mark.asyncio
    async def test_receipt_respects_transactional_opt_out(self, db_session, captured_emails, monkeypatch):
        monkeypatch.setattr(email_service, "ENABLE_EMAIL", True)
        parent = await create_parent(
            db_session, communication_preferences={"transactionalEmails": False}
        )
        player = await create_player(db_session, parent.id)
        await create_configuration(db_session)

        response = await process_payment(
            db_session, tryout_request(parent.id, [player.id]), FakeSquare().registry()
        )

        assert response["success"] is True
        assert len(captured_emails) == 1
        result = await captured_emails.pop()
        assert result == {"sent": False, "skipped": True, "reason": "user_opt_out"}

    @pytest.mark.asyncio
    async def test_send_receipt_false_schedules_nothing(self, db_session, captured_emails):
        parent = await create_parent(db_session)
        player = await create_player(db_session, parent.id)
        await create_configuration(db_session)

        await process_payment(
            db_session, tryout_request(parent.id, [player.id]), FakeSquare().registry(), send_receipt=False
        )
        assert captured_emails == []


class TestTournamentPayments:
    @pytest.mark.asyncio
    async def test_two_teams_at_their_own_levels(self, db_session, captured_emails):
        coach = await create_parent(db_session, email="coach@example.com", is_coach=True)
        gold = await create_team(db_session, coach.id, name="T1", level="Gold")
        silver = await create_team(db_session, coach.id, name="T2", level="Silver")
        await create_configuration(db_session, test_mode=True)

        response = await process_payment(
            db_session, teams_request(coach.id, [gold.id, silver.id]), ProviderRegistry()
        )

        assert response["externalPaymentId"].startswith("test_square_")
        assert response["amount"] == "850.00"
        assert [team["levelOfCompetition"] for team in response["teams"]] == ["Gold", "Silver"]

        payment = (await db_session.execute(select(Payment))).scalar_one()
        assert payment.payment_type == "tournament"
        assert payment.team_ids == [gold.id, silver.id]
        assert payment.tournament_name == "Winter Classic"
        assert payment.payment_metadata["amountPerTeam"] == ["425.00", "425.00"]

        registrations = {
            r.team_id: r for r in (await db_session.execute(select(Registration))).scalars().all()
        }
        assert registrations[gold.id].level_of_competition == "Gold"
        assert registrations[silver.id].level_of_competition == "Silver"
        assert registrations[gold.id].amount_paid == Decimal("425.00")

        for team in (gold, silver):
            assert len(team.tournaments) == 1
            entry = team.tournaments[0]
            assert entry["registrationId"] == registrations[team.id].id
            assert entry["levelOfCompetition"] == team.level_of_competition
            assert entry["paymentStatus"] == "paid"
            assert team.payment_complete is True

        assert coach.payment_complete is True

    @pytest.mark.asyncio
    async def test_single_team_reference(self, db_session, captured_emails):
        coach = await create_parent(db_session, email="coach@example.com", is_coach=True)
        team = await create_team(db_session, coach.id)
        await create_configuration(db_session, test_mode=True)

        response = await process_payment(
            db_session, teams_request(coach.id, [team.id], amount=42500, flow="tournament-team"), ProviderRegistry()
        )

        assert response["teams"][0]["paymentComplete"] is True
        payment = (await db_session.execute(select(Payment))).scalar_one()
        assert payment.payment_metadata["referenceId"] == f"t:{team.id}:2025"
        assert payment.note == "Tournament reg: Winter Classic 2025 - Team Thunder"

    @pytest.mark.asyncio
    async def test_level_mismatch_rejected_before_charge(self, db_session):
        coach = await create_parent(db_session, email="coach@example.com", is_coach=True)
        team = await create_team(db_session, coach.id, level="Silver")
        await create_configuration(db_session)
        square = FakeSquare()

        with pytest.raises(LevelMismatch):
            await process_payment(
                db_session,
                teams_request(coach.id, [team.id], flow="tournament-team", level_of_competition="Gold"),
                square.registry(),
            )

        assert square.charges == []
        await db_session.refresh(team)
        assert team.tournaments == []

    @pytest.mark.asyncio
    async def test_non_coach_forbidden(self, db_session):
        coach = await create_parent(db_session, email="coach@example.com", is_coach=True)
        stranger = await create_parent(db_session, email="stranger@example.com")
        team = await create_team(db_session, coach.id)
        await create_configuration(db_session, test_mode=True)

        with pytest.raises(Forbidden):
            await process_payment(db_session, teams_request(stranger.id, [team.id]), ProviderRegistry())

    @pytest.mark.asyncio
    async def test_team_paid_twice_rejected(self, db_session, captured_emails):
        coach = await create_parent(db_session, email="coach@example.com", is_coach=True)
        team = await create_team(db_session, coach.id)
        await create_configuration(db_session, test_mode=True)
        registry = ProviderRegistry()

        await process_payment(db_session, teams_request(coach.id, [team.id]), registry)
        with pytest.raises(DuplicateRegistration):
            await process_payment(db_session, teams_request(coach.id, [team.id]), registry)
        assert await count_rows(db_session, Payment) == 1

    @pytest.mark.asyncio
    async def test_test_mode_decline(self, db_session, captured_emails):
        coach = await create_parent(db_session, email="coach@example.com", is_coach=True)
        team = await create_team(db_session, coach.id)
        await create_configuration(db_session, test_mode=True)
        request = teams_request(coach.id, [team.id])
        request.source_id = "test-decline"

        with pytest.raises(PaymentRefused):
            await process_payment(db_session, request, ProviderRegistry())
        assert await count_rows(db_session, Registration) == 0


class TestValidateRequest:
    def test_unknown_flow(self):
        with pytest.raises(ValidationError):
            validate_request(PaymentRequest(flow="donation", parent_id=1, amount=100, source_id="x"))

    def test_amount_must_be_positive_integer(self):
        for amount in (0, -5, True, 10.5):
            with pytest.raises(ValidationError) as exc_info:
                validate_request(tryout_request(1, [1], amount=amount))
            assert exc_info.value.details[0]["field"] == "amount"

    def test_source_token_accepted(self):
        request = tryout_request(1, [1], source_id=None, source_token="tok_123")
        assert validate_request(request).name == "tryout"
        assert request.source == "tok_123"

    def test_duplicate_line_items(self):
        with pytest.raises(ValidationError) as exc_info:
            validate_request(tryout_request(1, [7, 7]))
        assert exc_info.value.details[0]["message"] == "duplicate line item"

    def test_player_flow_needs_players(self):
        request = PaymentRequest(flow="tryout", parent_id=1, amount=100, source_id="x")
        with pytest.raises(ValidationError):
            validate_request(request)

    def test_single_team_flow_takes_one_team(self):
        with pytest.raises(ValidationError):
            validate_request(teams_request(1, [1, 2], flow="tournament-team"))

    def test_team_flow_needs_tournament(self):
        request = teams_request(1, [1])
        request.tournament = " "
        with pytest.raises(ValidationError) as exc_info:
            validate_request(request)
        assert exc_info.value.details[0]["field"] == "tournament"
