"""Payment route handlers: the orchestrator flows and post-charge operations."""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.api.auth_dependencies import get_current_parent, require_admin
from clubhouse.database.db import get_db_session
from clubhouse.models.schemas import (
    PlayerPaymentRequest,
    RefundRequest,
    SwitchSystemRequest,
    TournamentPaymentRequest,
)
from clubhouse.services import payment_configuration_service, payment_reconciliation
from clubhouse.services.payment_orchestrator import PaymentRequest, PlayerLineItem, process_payment
from clubhouse.services.provider_registry import provider_registry

logger = logging.getLogger(__name__)
router = APIRouter()


def _player_request(
    flow: str, parent: dict, body: PlayerPaymentRequest, payment_system: Optional[str] = None
) -> PaymentRequest:
    return PaymentRequest(
        flow=flow,
        parent_id=parent["id"],
        amount=body.amount,
        source_id=body.source_id,
        source_token=body.token,
        buyer_email=body.email or parent["email"],
        players=[
            PlayerLineItem(
                player_id=item.player_id,
                season=item.season or "",
                year=item.year,
                tryout_id=item.tryout_id,
            )
            for item in body.players
        ],
        payment_system=payment_system or body.payment_system,
        card_details=body.card_details,
    )


def _tournament_request(flow: str, parent: dict, body: TournamentPaymentRequest) -> PaymentRequest:
    team_ids = list(body.team_ids)
    if body.team_id is not None and body.team_id not in team_ids:
        team_ids.insert(0, body.team_id)
    return PaymentRequest(
        flow=flow,
        parent_id=parent["id"],
        amount=body.amount,
        source_id=body.source_id,
        source_token=body.token,
        buyer_email=body.email or parent["email"],
        team_ids=team_ids,
        tournament=(body.tournament or "").strip() or None,
        year=body.year,
        level_of_competition=body.level_of_competition,
        payment_system=body.payment_system,
        card_details=body.card_details,
    )


@router.post("/api/payments/process", response_model=Dict[str, Any])
async def process_general_payment(
    body: PlayerPaymentRequest,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    return await process_payment(session, _player_request("general", parent, body))


@router.post("/api/payments/tryout", response_model=Dict[str, Any])
async def process_tryout_payment(
    body: PlayerPaymentRequest,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    return await process_payment(session, _player_request("tryout", parent, body))


@router.post("/api/payments/training", response_model=Dict[str, Any])
async def process_training_payment(
    body: PlayerPaymentRequest,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    return await process_payment(session, _player_request("training", parent, body))


@router.post("/api/payments/tournament-team", response_model=Dict[str, Any])
async def process_tournament_team_payment(
    body: TournamentPaymentRequest,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    return await process_payment(session, _tournament_request("tournament-team", parent, body))


@router.post("/api/payments/tournament-teams", response_model=Dict[str, Any])
async def process_tournament_teams_payment(
    body: TournamentPaymentRequest,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    return await process_payment(session, _tournament_request("tournament-teams", parent, body))


@router.post("/api/payments/clover/process", response_model=Dict[str, Any])
async def process_clover_payment(
    body: PlayerPaymentRequest,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    """General flow pinned to Clover regardless of the default configuration."""
    return await process_payment(session, _player_request("general", parent, body, payment_system="clover"))


@router.post("/api/payments/refund", response_model=Dict[str, Any])
async def refund_payment(
    body: RefundRequest,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    result = await payment_reconciliation.refund_payment(
        session, body.payment_id, body.amount, body.reason, refunded_by=admin["id"]
    )
    return {"success": True, **result}


@router.get("/api/payments/verify/{payment_id}", response_model=Dict[str, Any])
async def verify_payment(
    payment_id: str,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    return await payment_reconciliation.verify_payment(session, payment_id, parent)


@router.get("/api/payments/details/{payment_id}", response_model=Dict[str, Any])
async def payment_details(
    payment_id: str,
    payment_system: Optional[str] = None,
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    """Processor-side view of a payment the caller owns (admins may read any)."""
    payment = await payment_reconciliation.get_payment_for_caller(session, payment_id, parent)
    details = await payment_reconciliation.get_payment_details(
        session, payment.payment_id, payment_system or payment.payment_system
    )
    return {"success": True, "details": details}


@router.get("/api/payments/system", response_model=Dict[str, Any])
async def payment_system(
    parent: dict = Depends(get_current_parent),
    session: AsyncSession = Depends(get_db_session),
):
    return {"success": True, **await payment_configuration_service.get_active_system(session)}


@router.post("/api/payments/switch", response_model=Dict[str, Any])
async def switch_payment_system(
    body: SwitchSystemRequest,
    admin: dict = Depends(require_admin),
    session: AsyncSession = Depends(get_db_session),
):
    adapter = await provider_registry.switch(session, body.payment_system)
    logger.info(f"Admin {admin['id']} switched payment system to {adapter.kind}")
    return {"success": True, "paymentSystem": adapter.kind, "configurationId": adapter.configuration_id}
