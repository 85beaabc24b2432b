"""Card processor webhook handlers. No bearer auth; each processor is verified its own way."""

import logging
import os
from typing import Any, Dict

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.database.db import get_db_session
from clubhouse.services import payment_reconciliation
from clubhouse.services.errors import ValidationError

logger = logging.getLogger(__name__)
router = APIRouter()

SQUARE_SIGNATURE_HEADERS = ("x-square-hmacsha256-signature", "x-square-hmacsha256")


@router.post("/api/payments/square/webhook", response_model=Dict[str, Any])
async def square_webhook(request: Request, session: AsyncSession = Depends(get_db_session)):
    body = await request.body()
    signature = next(
        (request.headers[name] for name in SQUARE_SIGNATURE_HEADERS if name in request.headers),
        None,
    )
    # Square signs the URL it was configured with, which differs from
    # request.url behind a proxy
    notification_url = os.getenv("SQUARE_WEBHOOK_URL") or str(request.url)
    result = await payment_reconciliation.handle_square_webhook(session, body, signature, notification_url)
    return {"success": True, **result}


@router.post("/api/payments/clover/webhook", response_model=Dict[str, Any])
async def clover_webhook(request: Request, session: AsyncSession = Depends(get_db_session)):
    try:
        payload = await request.json()
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")
    if not isinstance(payload, dict):
        raise ValidationError("Webhook body must be a JSON object")
    result = await payment_reconciliation.handle_clover_webhook(session, payload)
    return {"success": True, **result}
