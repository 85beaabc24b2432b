"""
Payment orchestrator: charge a card and turn pending registrations into paid
ones in a single database transaction.

One algorithm serves every flow (tryout, training, tournament-team,
tournament-teams, general). A flow only decides its line items, reference id
and note, the persistence fan-out, and the receipt template.

Each step either returns normally or raises a typed ``PortalError`` that
aborts the transaction. Nothing is written unless the processor accepted the
charge, and the commit outcome is known before the response is built.
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.database.models import (
    Parent,
    PaymentRecordStatus,
    PaymentStatus,
    PaymentType,
    Player,
    Team,
    Payment,
)
from clubhouse.services import email_service
from clubhouse.services import registration_store as store
from clubhouse.services.errors import (
    DuplicateRegistration,
    Forbidden,
    PaymentRefused,
    PortalError,
    TransactionAborted,
    Unauthorized,
    ValidationError,
)
from clubhouse.services.pricing import allocate_major, to_major
from clubhouse.services.provider_adapters import ChargeRequest, ChargeResult, ProviderAdapter
from clubhouse.services.provider_registry import ProviderRegistry, provider_registry
from clubhouse.utils.datetime_utils import to_iso, utcnow

logger = logging.getLogger(__name__)

PAID = PaymentStatus.PAID.value


@dataclass
class PlayerLineItem:
    player_id: int
    season: str
    year: int
    tryout_id: Optional[str] = None

    def program(self) -> Dict[str, Any]:
        return {"season": self.season.strip(), "year": int(self.year), "tryoutId": self.tryout_id}


@dataclass
class PaymentRequest:
    """
    One orchestrator call.

    ``amount`` is the total in minor units. Either ``source_token`` or
    ``source_id`` carries the client-side card token.
    """

    flow: str
    parent_id: int
    amount: int
    source_id: Optional[str] = None
    source_token: Optional[str] = None
    buyer_email: Optional[str] = None
    players: List[PlayerLineItem] = field(default_factory=list)
    team_ids: List[int] = field(default_factory=list)
    tournament: Optional[str] = None
    year: Optional[int] = None
    level_of_competition: Optional[str] = None
    payment_system: Optional[str] = None
    card_details: Dict[str, Any] = field(default_factory=dict)

    @property
    def source(self) -> Optional[str]:
        return self.source_token or self.source_id


@dataclass
class FlowSpec:
    name: str
    payment_type: str
    line_items: str  # "players" or "teams"
    reference: Callable[["PaymentRequest", List[Team]], str]
    note: Callable[["PaymentRequest", List[Team]], str]


def _id_suffix(value: Any) -> str:
    return str(value)[-12:]


def _player_count(request: PaymentRequest) -> int:
    return len(request.players)


FLOW_SPECS: Dict[str, FlowSpec] = {
    "tryout": FlowSpec(
        name="tryout",
        payment_type=PaymentType.TRYOUT.value,
        line_items="players",
        reference=lambda request, teams: f"parent:{request.parent_id}",
        note=lambda request, teams: f"Tryout payment for {_player_count(request)} player(s)",
    ),
    "training": FlowSpec(
        name="training",
        payment_type=PaymentType.TRAINING.value,
        line_items="players",
        reference=lambda request, teams: f"training:{request.parent_id}:{int(utcnow().timestamp())}",
        note=lambda request, teams: f"Training payment for {_player_count(request)} player(s)",
    ),
    "tournament-team": FlowSpec(
        name="tournament-team",
        payment_type=PaymentType.TOURNAMENT.value,
        line_items="teams",
        reference=lambda request, teams: f"t:{_id_suffix(teams[0].id)}:{request.year}",
        note=lambda request, teams: (
            f"Tournament reg: {request.tournament} {request.year} - Team {teams[0].name}"
        ),
    ),
    "tournament-teams": FlowSpec(
        name="tournament-teams",
        payment_type=PaymentType.TOURNAMENT.value,
        line_items="teams",
        reference=lambda request, teams: f"t:{_id_suffix(request.parent_id)}:{request.year}",
        note=lambda request, teams: (
            f"Tournament reg: {request.tournament} {request.year} - {len(teams)} team(s)"
        ),
    ),
    "general": FlowSpec(
        name="general",
        payment_type=PaymentType.GENERAL.value,
        line_items="players",
        reference=lambda request, teams: f"parent:{request.parent_id}",
        note=lambda request, teams: f"Payment for {_player_count(request)} player(s)",
    ),
}


def validate_request(request: PaymentRequest) -> FlowSpec:
    """
    Check the request shape before anything touches the database or processor.

    Raises:
        ValidationError: With a per-field list of problems
    """
    flow_spec = FLOW_SPECS.get(request.flow)
    if flow_spec is None:
        raise ValidationError(f"Unknown payment flow: {request.flow}")

    errors = []
    if not request.source:
        errors.append({"field": "sourceId", "message": "sourceId or token is required"})
    if not isinstance(request.amount, int) or isinstance(request.amount, bool) or request.amount <= 0:
        errors.append({"field": "amount", "message": "amount must be a positive integer in minor units"})

    if flow_spec.line_items == "players":
        if not request.players:
            errors.append({"field": "players", "message": "at least one player is required"})
        seen = set()
        for index, item in enumerate(request.players):
            if not (item.season or "").strip():
                errors.append({"field": f"players[{index}].season", "message": "season is required"})
            if not item.year:
                errors.append({"field": f"players[{index}].year", "message": "year is required"})
            key = (item.player_id, (item.season or "").strip().lower(), item.year, item.tryout_id)
            if key in seen:
                errors.append({"field": f"players[{index}]", "message": "duplicate line item"})
            seen.add(key)
    else:
        if not request.team_ids:
            errors.append({"field": "teamIds", "message": "at least one team is required"})
        if request.flow == "tournament-team" and len(request.team_ids) > 1:
            errors.append({"field": "teamIds", "message": "exactly one team is required"})
        if len(set(request.team_ids)) != len(request.team_ids):
            errors.append({"field": "teamIds", "message": "duplicate team"})
        if not (request.tournament or "").strip():
            errors.append({"field": "tournament", "message": "tournament is required"})
        if not request.year:
            errors.append({"field": "year", "message": "year is required"})

    if errors:
        raise ValidationError("Invalid payment request", details=errors)
    return flow_spec


async def _check_players(
    session: AsyncSession, parent: Parent, request: PaymentRequest
) -> Dict[int, Player]:
    """Ownership and dedup for player flows; holds row locks on the players."""
    players = await store.lock_players(session, [item.player_id for item in request.players])
    for item in request.players:
        player = players[item.player_id]
        if player.parent_id != parent.id:
            raise Forbidden(f"Player {player.id} does not belong to this account")
        await store.assert_no_duplicate_season(
            session,
            player.id,
            item.season,
            item.year,
            item.tryout_id,
            allow_pending=True,
        )
        if item.tryout_id is None:
            # Settle the pending entry under its own key
            item.tryout_id = store.resolve_tryout_id(player, item.season, item.year)
    return players


async def _check_teams(
    session: AsyncSession, parent: Parent, request: PaymentRequest
) -> List[Team]:
    """Ownership, dedup and level checks for tournament flows; holds row locks on the teams."""
    teams = await store.lock_teams(session, request.team_ids)
    ordered = []
    for team_id in request.team_ids:
        team = teams[team_id]
        if parent.id not in (team.coach_ids or []):
            raise Forbidden(f"You are not a coach of team {team.name}")
        existing = await store.find_team_registration(
            session, parent.id, team.id, request.tournament, request.year
        )
        if existing is not None and existing.payment_complete:
            raise DuplicateRegistration(
                f"{team.name} is already registered for {request.tournament} {request.year}",
                details={"teamId": team.id, "tournament": request.tournament, "year": request.year},
            )
        store.check_team_level(team, request.tournament, request.year, request.level_of_competition)
        ordered.append(team)
    return ordered


async def _ensure_square_customer(
    session: AsyncSession, adapter: ProviderAdapter, parent: Parent
) -> Optional[str]:
    """Create and persist the parent's Square customer id; failures are logged only."""
    if adapter.kind != "square":
        return None
    if parent.square_customer_id:
        return parent.square_customer_id
    try:
        customer_id = await adapter.create_customer(
            parent.email, f"parent:{parent.id}", parent.full_name
        )
    except Exception as e:
        logger.warning(f"Square customer creation failed for parent {parent.id}: {e}")
        return None
    if customer_id:
        parent.square_customer_id = customer_id
    return customer_id


def _card_value(result: ChargeResult, request: PaymentRequest, attr: str, key: str):
    value = getattr(result.card, attr)
    if value is None:
        value = request.card_details.get(key)
    return value


def _build_payment(
    request: PaymentRequest,
    flow_spec: FlowSpec,
    adapter: ProviderAdapter,
    result: ChargeResult,
    parent: Parent,
    teams: List[Team],
    currency: str,
    reference_id: str,
    note: str,
) -> Payment:
    now = utcnow()
    amount = to_major(request.amount)
    count = len(teams) if flow_spec.line_items == "teams" else len(request.players)
    per_item = [str(part) for part in allocate_major(request.amount, count)]
    metadata: Dict[str, Any] = {"flow": flow_spec.name, "referenceId": reference_id}
    if flow_spec.line_items == "teams":
        metadata.update(
            {
                "teamCount": count,
                "amountPerTeam": per_item,
                "tournament": request.tournament,
                "year": request.year,
            }
        )
    else:
        metadata.update({"playerCount": count, "amountPerPlayer": per_item})

    exp_month = _card_value(result, request, "exp_month", "exp_month")
    exp_year = _card_value(result, request, "exp_year", "exp_year")
    return Payment(
        parent_id=parent.id,
        player_ids=list(dict.fromkeys(item.player_id for item in request.players)),
        team_ids=[team.id for team in teams],
        payment_id=result.external_payment_id,
        payment_system=adapter.kind,
        configuration_id=adapter.configuration_id,
        order_id=result.order_id,
        location_id=result.location_id if adapter.kind == "square" else None,
        merchant_id=result.merchant_id if adapter.kind == "clover" else None,
        buyer_email=request.buyer_email or parent.email,
        card_last_four=_card_value(result, request, "last4", "last_4"),
        card_brand=_card_value(result, request, "brand", "card_brand"),
        card_exp_month=int(exp_month) if exp_month is not None else None,
        card_exp_year=int(exp_year) if exp_year is not None else None,
        amount=amount,
        currency=currency,
        status=PaymentRecordStatus.COMPLETED.value,
        processed_at=now,
        receipt_url=result.receipt_url,
        payment_type=flow_spec.payment_type,
        note=note,
        players=[
            {
                "playerId": item.player_id,
                "season": item.season.strip(),
                "year": int(item.year),
                "tryoutId": item.tryout_id,
            }
            for item in request.players
        ],
        tournament_name=request.tournament if flow_spec.line_items == "teams" else None,
        year=int(request.year) if request.year else None,
        payment_metadata=metadata,
        refunds=[],
        refunded_amount=Decimal("0.00"),
        refund_status="none",
    )


async def _fan_out_players(
    session: AsyncSession,
    request: PaymentRequest,
    payment: Payment,
    players: Dict[int, Player],
) -> List[Dict[str, Any]]:
    paid_at = to_iso(payment.processed_at)
    shares = allocate_major(request.amount, len(request.players))
    for item, share in zip(request.players, shares):
        await store.upsert_player_season(
            session,
            item.player_id,
            {
                "season": item.season,
                "year": item.year,
                "tryoutId": item.tryout_id,
                "paymentStatus": PAID,
                "paymentComplete": True,
                "paymentId": payment.payment_id,
                "amountPaid": float(share),
                "cardLast4": payment.card_last_four,
                "cardBrand": payment.card_brand,
                "paymentDate": paid_at,
            },
        )
        await store.upsert_registration(
            session,
            {
                "player_id": item.player_id,
                "parent_id": payment.parent_id,
                "season": item.season,
                "year": item.year,
                "tryout_id": item.tryout_id,
            },
            {
                "payment_status": PAID,
                "payment_id": payment.payment_id,
                "payment_record_id": payment.id,
                "amount_paid": share,
                "currency": payment.currency,
                "payment_method": "card",
                "card_last4": payment.card_last_four,
                "card_brand": payment.card_brand,
                "payment_date": payment.processed_at,
                "registration_complete": True,
            },
        )
        players[item.player_id].registration_complete = True

    return [
        {
            "id": player.id,
            "fullName": player.full_name,
            "season": player.season,
            "registrationYear": player.registration_year,
            "paymentStatus": player.payment_status,
            "paymentComplete": player.payment_complete,
        }
        for player in players.values()
    ]


async def _fan_out_teams(
    session: AsyncSession,
    request: PaymentRequest,
    payment: Payment,
    teams: List[Team],
) -> List[Dict[str, Any]]:
    paid_at = to_iso(payment.processed_at)
    shares = allocate_major(request.amount, len(teams))
    for team, share in zip(teams, shares):
        registration = await store.upsert_registration(
            session,
            {
                "team_id": team.id,
                "parent_id": payment.parent_id,
                "tournament": request.tournament,
                "year": request.year,
            },
            {
                "level_of_competition": team.level_of_competition,
                "payment_status": PAID,
                "payment_id": payment.payment_id,
                "payment_record_id": payment.id,
                "amount_paid": share,
                "currency": payment.currency,
                "payment_method": "card",
                "card_last4": payment.card_last_four,
                "card_brand": payment.card_brand,
                "payment_date": payment.processed_at,
                "registration_complete": True,
            },
        )
        await store.add_or_update_team_tournament(
            session,
            team.id,
            {
                "tournament": request.tournament,
                "year": request.year,
                "levelOfCompetition": team.level_of_competition,
                "paymentStatus": PAID,
                "paymentComplete": True,
                "amountPaid": float(share),
                "paymentId": payment.payment_id,
                "paymentMethod": "card",
                "cardLast4": payment.card_last_four,
                "cardBrand": payment.card_brand,
                "paymentDate": paid_at,
                "registrationId": registration.id,
            },
        )
        await store.ensure_coach(session, team.id, payment.parent_id)

    return [
        {
            "id": team.id,
            "name": team.name,
            "levelOfCompetition": team.level_of_competition,
            "paymentStatus": team.payment_status,
            "paymentComplete": team.payment_complete,
        }
        for team in teams
    ]


def _reconciliation_context(
    parent_id: int, adapter: ProviderAdapter, result: ChargeResult, request: PaymentRequest
) -> str:
    return (
        f"parent={parent_id} provider={adapter.kind} external_payment_id={result.external_payment_id} "
        f"order_id={result.order_id} amount_minor={request.amount} flow={request.flow}"
    )


async def process_payment(
    session: AsyncSession,
    request: PaymentRequest,
    registry: ProviderRegistry = provider_registry,
    send_receipt: bool = True,
) -> Dict[str, Any]:
    """
    Charge the card and record the payment and its registrations atomically.

    Args:
        session: Request database session; committed or rolled back here
        request: Validated-or-not payment request
        registry: Provider registry (tests pass one with a mock transport)
        send_receipt: Schedule the confirmation email after commit

    Returns:
        Response payload with internal and external payment ids

    Raises:
        Unauthorized, ValidationError, ConfigError, Forbidden, NotFound,
        DuplicateRegistration, LevelMismatch, PaymentRefused, ProviderError,
        TransactionAborted
    """
    parent = await session.get(Parent, request.parent_id)
    if parent is None:
        raise Unauthorized("Account not found")

    parent_id = parent.id
    flow_spec = validate_request(request)

    adapter = await registry.get_service(session, request.payment_system)
    registry.validate(adapter, flow_spec.name)
    currency = adapter.currency

    result: Optional[ChargeResult] = None
    try:
        players: Dict[int, Player] = {}
        teams: List[Team] = []
        if flow_spec.line_items == "players":
            players = await _check_players(session, parent, request)
        else:
            teams = await _check_teams(session, parent, request)

        customer_id = await _ensure_square_customer(session, adapter, parent)

        reference_id = flow_spec.reference(request, teams)
        note = flow_spec.note(request, teams)
        result = await adapter.charge(
            ChargeRequest(
                source_id=request.source,
                minor_amount=request.amount,
                currency=currency,
                customer_reference_id=reference_id,
                note=note,
                buyer_email=request.buyer_email or parent.email,
                customer_id=customer_id,
            )
        )
        if not result.succeeded:
            reason = result.decline_message or f"status {result.status}"
            raise PaymentRefused(
                f"Payment was declined by {adapter.kind}: {reason}",
                provider=adapter.kind,
                provider_status=None,
                retryable=False,
            )

        payment = _build_payment(
            request, flow_spec, adapter, result, parent, teams, currency, reference_id, note
        )
        session.add(payment)
        await store.flush(session)

        if flow_spec.line_items == "players":
            updated = await _fan_out_players(session, request, payment, players)
            programs = [item.program() for item in request.players]
        else:
            updated = await _fan_out_teams(session, request, payment, teams)
            programs = [{"tournament": request.tournament, "year": int(request.year)}]

        await store.refresh_parent_payment_complete(session, parent.id, programs)
        parent.last_payment_date = payment.processed_at
        await store.flush(session)
    except PortalError:
        await session.rollback()
        if result is not None and result.succeeded:
            logger.critical(
                "Charge succeeded but payment could not be recorded: "
                + _reconciliation_context(parent_id, adapter, result, request)
            )
        raise
    except Exception as e:
        await session.rollback()
        if result is not None and result.succeeded:
            logger.critical(
                "Charge succeeded but payment could not be recorded: "
                + _reconciliation_context(parent_id, adapter, result, request),
                exc_info=True,
            )
            raise TransactionAborted(
                "Payment was charged but could not be recorded. Support has been notified.",
                details={"externalPaymentId": result.external_payment_id},
            ) from e
        raise

    try:
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.critical(
            "Commit failed after successful charge: "
            + _reconciliation_context(parent_id, adapter, result, request),
            exc_info=True,
        )
        raise TransactionAborted(
            "Payment was charged but could not be recorded. Support has been notified.",
            details={"externalPaymentId": result.external_payment_id},
        ) from e

    logger.info(
        f"Payment {payment.payment_id} completed for parent {parent.id}: "
        f"{payment.amount} {payment.currency} via {adapter.kind} ({flow_spec.name})"
    )

    if send_receipt:
        email_service.send_in_background(
            email_service.send_payment_receipt(parent.id, payment.id, flow_spec.name)
        )

    response = {
        "success": True,
        "paymentId": payment.id,
        "externalPaymentId": payment.payment_id,
        "paymentSystem": payment.payment_system,
        "receiptUrl": payment.receipt_url,
        "status": payment.status,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "parentPaymentComplete": parent.payment_complete,
    }
    response["teams" if flow_spec.line_items == "teams" else "players"] = updated
    return response
