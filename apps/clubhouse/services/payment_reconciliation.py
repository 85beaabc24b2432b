"""
Post-charge payment operations: refunds, lookups and processor webhooks.

These are the only code paths that change a Payment row after it is written.
Player and team registration status is never rewritten here; reversing a
registration after a refund is a manual admin task.
"""

import base64
import hashlib
import hmac
import json
import logging
import uuid
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.database.models import ParentRole, Payment, PaymentRecordStatus
from clubhouse.services.errors import (
    Forbidden,
    NotFound,
    ProviderError,
    TransactionAborted,
    Unauthorized,
    ValidationError,
)
from clubhouse.services.pricing import to_major, to_minor
from clubhouse.services.provider_registry import ProviderRegistry, provider_registry
from clubhouse.utils.datetime_utils import to_iso, utcnow

logger = logging.getLogger(__name__)

PAYMENT_PAID = "payment_paid"
PAYMENT_FAILED = "payment_failed"
PAYMENT_REFUNDED = "payment_refunded"

CLOVER_EVENTS = {
    "PAYMENT_PAID": PAYMENT_PAID,
    "ORDER_PAID": PAYMENT_PAID,
    "PAYMENT_FAILED": PAYMENT_FAILED,
    "PAYMENT_REFUNDED": PAYMENT_REFUNDED,
    "REFUND_SUCCEEDED": PAYMENT_REFUNDED,
}


def payment_to_dict(payment: Payment) -> Dict[str, Any]:
    return {
        "id": payment.id,
        "parentId": payment.parent_id,
        "playerIds": payment.player_ids or [],
        "teamIds": payment.team_ids or [],
        "paymentId": payment.payment_id,
        "paymentSystem": payment.payment_system,
        "configurationId": payment.configuration_id,
        "orderId": payment.order_id,
        "locationId": payment.location_id,
        "merchantId": payment.merchant_id,
        "buyerEmail": payment.buyer_email,
        "cardLastFour": payment.card_last_four,
        "cardBrand": payment.card_brand,
        "cardExpMonth": payment.card_exp_month,
        "cardExpYear": payment.card_exp_year,
        "amount": str(payment.amount),
        "currency": payment.currency,
        "status": payment.status,
        "processedAt": to_iso(payment.processed_at),
        "receiptUrl": payment.receipt_url,
        "paymentType": payment.payment_type,
        "note": payment.note,
        "players": payment.players or [],
        "tournamentName": payment.tournament_name,
        "year": payment.year,
        "metadata": payment.payment_metadata or {},
        "refunds": payment.refunds or [],
        "refundedAmount": str(payment.refunded_amount),
        "refundStatus": payment.refund_status,
    }


async def _select_payment(session: AsyncSession, condition, for_update: bool) -> Optional[Payment]:
    query = select(Payment).where(condition)
    if for_update:
        # Re-read even when the row is already in the identity map
        query = query.with_for_update().execution_options(populate_existing=True)
    result = await session.execute(query)
    return result.scalar_one_or_none()


async def find_payment(
    session: AsyncSession, payment_ref: Union[int, str], for_update: bool = False
) -> Optional[Payment]:
    """
    Look a payment up by internal id or by the processor's payment id.

    With ``for_update`` the row is locked until the transaction ends, so
    refunds and webhooks on the same payment serialise.
    """
    if isinstance(payment_ref, int) or str(payment_ref).isdigit():
        payment = await _select_payment(session, Payment.id == int(payment_ref), for_update)
        if payment is not None:
            return payment
    return await _select_payment(session, Payment.payment_id == str(payment_ref), for_update)


async def get_payment_for_caller(
    session: AsyncSession, payment_ref: Union[int, str], caller: Dict[str, Any]
) -> Payment:
    """
    Raises:
        NotFound: If the payment does not exist
        Forbidden: If the caller neither owns it nor is an admin
    """
    payment = await find_payment(session, payment_ref)
    if payment is None:
        raise NotFound("Payment not found")
    if payment.parent_id != caller["id"] and caller.get("role") != ParentRole.ADMIN.value:
        raise Forbidden("You do not have access to this payment")
    return payment


async def verify_payment(
    session: AsyncSession, payment_ref: Union[int, str], caller: Dict[str, Any]
) -> Dict[str, Any]:
    payment = await get_payment_for_caller(session, payment_ref, caller)
    return {
        "success": True,
        "verified": payment.status == PaymentRecordStatus.COMPLETED.value,
        "status": payment.status,
        "payment": payment_to_dict(payment),
    }


async def get_payment_details(
    session: AsyncSession,
    external_payment_id: str,
    payment_system: Optional[str] = None,
    registry: ProviderRegistry = provider_registry,
) -> Dict[str, Any]:
    """Ask the processor for its view of a payment."""
    adapter = await registry.get_service(session, payment_system)
    details = await adapter.fetch(external_payment_id)
    return {"paymentSystem": adapter.kind, **details}


def _apply_refund(
    payment: Payment,
    minor_amount: int,
    reason: str,
    status: str,
    external_refund_id: Optional[str],
    source: str,
    refunded_by: Optional[int] = None,
) -> Dict[str, Any]:
    refund = {
        "refundId": uuid.uuid4().hex,
        "externalRefundId": external_refund_id,
        "amount": str(to_major(minor_amount)),
        "reason": reason,
        "status": status,
        "processedAt": to_iso(utcnow()),
        "source": source,
    }
    if refunded_by is not None:
        refund["refundedBy"] = refunded_by
    payment.refunds = list(payment.refunds or []) + [refund]

    refunded = Decimal(str(payment.refunded_amount or 0)) + to_major(minor_amount)
    payment.refunded_amount = refunded
    if refunded >= Decimal(str(payment.amount)):
        payment.refund_status = "refunded"
        payment.status = PaymentRecordStatus.REFUNDED.value
    else:
        payment.refund_status = "partial"
    return refund


async def refund_payment(
    session: AsyncSession,
    payment_ref: Union[int, str],
    minor_amount: int,
    reason: str,
    refunded_by: Optional[int] = None,
    registry: ProviderRegistry = provider_registry,
) -> Dict[str, Any]:
    """
    Refund part or all of a payment through the processor that took it.

    Args:
        payment_ref: Internal payment id or processor payment id
        minor_amount: Amount to refund in minor units
        reason: Free-text reason recorded on the refund
        refunded_by: Admin parent id

    Returns:
        ``{"refund": ..., "payment": ...}``

    Raises:
        NotFound: Unknown payment
        ValidationError: Non-positive amount or cumulative refunds above the charge
        ProviderError: The processor rejected the refund
        TransactionAborted: The refund went through but could not be recorded
    """
    if not isinstance(minor_amount, int) or minor_amount <= 0:
        raise ValidationError(
            "Refund amount must be a positive integer in minor units",
            details=[{"field": "amount", "message": "must be positive"}],
        )

    # The lock is held through the processor call; a concurrent refund waits
    # here and then checks against the committed total
    payment = await find_payment(session, payment_ref, for_update=True)
    if payment is None:
        raise NotFound("Payment not found")
    if payment.status == PaymentRecordStatus.FAILED.value:
        raise ValidationError("Failed payments cannot be refunded")

    charged = to_minor(payment.amount)
    already_refunded = to_minor(payment.refunded_amount or 0)
    if already_refunded + minor_amount > charged:
        raise ValidationError(
            "Refund exceeds the remaining refundable amount",
            details={"charged": charged, "refunded": already_refunded, "requested": minor_amount},
        )

    adapter = await registry.get_service(session, payment.payment_system)
    result = await adapter.refund(payment.payment_id, minor_amount, reason)
    if not result.succeeded:
        raise ProviderError(
            f"Refund was {result.status} by {adapter.kind}",
            provider=adapter.kind,
            retryable=False,
        )

    payment_id = payment.id
    refund = _apply_refund(
        payment, minor_amount, reason, result.status, result.external_refund_id, "admin", refunded_by
    )
    try:
        await session.commit()
    except Exception as e:
        await session.rollback()
        logger.critical(
            f"Refund {result.external_refund_id} of {minor_amount} on payment {payment_id} "
            f"succeeded at {adapter.kind} but could not be recorded",
            exc_info=True,
        )
        raise TransactionAborted(
            "Refund was issued but could not be recorded. Support has been notified.",
            details={"externalRefundId": result.external_refund_id},
        ) from e

    logger.info(
        f"Refunded {minor_amount} on payment {payment.payment_id} via {adapter.kind} "
        f"(refund status {payment.refund_status})"
    )
    return {"refund": refund, "payment": payment_to_dict(payment)}


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


async def apply_payment_event(
    session: AsyncSession,
    event: str,
    external_payment_id: str,
    refund_minor: Optional[int] = None,
    external_refund_id: Optional[str] = None,
    source: str = "webhook",
) -> Optional[Payment]:
    """
    Reconcile one normalised processor event onto the Payment row.

    Unknown payments are logged and ignored so the processor stops retrying.
    """
    payment = await _select_payment(session, Payment.payment_id == external_payment_id, for_update=True)
    if payment is None:
        logger.info(f"Webhook {event} for unknown payment {external_payment_id}; ignoring")
        return None

    if event == PAYMENT_PAID:
        if payment.status != PaymentRecordStatus.REFUNDED.value:
            payment.status = PaymentRecordStatus.COMPLETED.value
            payment.processed_at = payment.processed_at or utcnow()
    elif event == PAYMENT_FAILED:
        payment.status = PaymentRecordStatus.FAILED.value
    elif event == PAYMENT_REFUNDED:
        known = {refund.get("externalRefundId") for refund in payment.refunds or []}
        if external_refund_id and external_refund_id in known:
            logger.info(f"Refund {external_refund_id} already recorded on {external_payment_id}")
            return payment
        remaining = to_minor(payment.amount) - to_minor(payment.refunded_amount or 0)
        if remaining <= 0:
            logger.info(f"Payment {external_payment_id} is already fully refunded")
            return payment
        amount = refund_minor if refund_minor is not None else remaining
        _apply_refund(
            payment, min(amount, remaining), "Processor refund", "completed", external_refund_id, source
        )
    else:
        raise ValidationError(f"Unsupported payment event: {event}")

    await session.flush()
    logger.info(f"Webhook {event} applied to payment {external_payment_id} (status {payment.status})")
    return payment


def square_signature(signature_key: str, notification_url: str, body: bytes) -> str:
    """Base64 HMAC-SHA256 of notification URL + raw body, as Square signs webhooks."""
    digest = hmac.new(
        signature_key.encode("utf-8"), notification_url.encode("utf-8") + body, hashlib.sha256
    ).digest()
    return base64.b64encode(digest).decode("utf-8")


async def handle_square_webhook(
    session: AsyncSession,
    body: bytes,
    signature: Optional[str],
    notification_url: str,
    registry: ProviderRegistry = provider_registry,
) -> Dict[str, Any]:
    """
    Verify and apply a Square webhook.

    Raises:
        Unauthorized: Bad signature
        Forbidden: Event for a location other than the configured one
        ValidationError: Body is not JSON
    """
    adapter = await registry.get_service(session, "square")
    signature_key = adapter.credentials.get("webhookSignatureKey")
    if signature_key:
        expected = square_signature(signature_key, notification_url, body)
        if not signature or not hmac.compare_digest(expected, signature):
            logger.warning("Square webhook rejected: invalid signature")
            raise Unauthorized("Invalid webhook signature")
    else:
        logger.warning("Square webhook signature key not configured; skipping verification")

    try:
        event = json.loads(body or b"{}")
    except ValueError:
        raise ValidationError("Webhook body is not valid JSON")

    event_type = event.get("type", "")
    data_object = (event.get("data") or {}).get("object") or {}
    configured_location = adapter.credentials.get("locationId")

    if event_type.startswith("payment."):
        square_payment = data_object.get("payment") or {}
        if square_payment.get("location_id") and square_payment["location_id"] != configured_location:
            raise Forbidden("Unknown Square location")
        status = square_payment.get("status")
        normalized = {"COMPLETED": PAYMENT_PAID, "FAILED": PAYMENT_FAILED, "CANCELED": PAYMENT_FAILED}.get(status)
        if normalized is None:
            return {"received": True, "handled": False}
        payment = await apply_payment_event(session, normalized, square_payment.get("id", ""))
        if payment is not None and square_payment.get("receipt_url"):
            payment.receipt_url = square_payment["receipt_url"]
        return {"received": True, "handled": payment is not None, "event": normalized}

    if event_type.startswith("refund."):
        refund = data_object.get("refund") or {}
        if refund.get("location_id") and refund["location_id"] != configured_location:
            raise Forbidden("Unknown Square location")
        if refund.get("status") != "COMPLETED":
            return {"received": True, "handled": False}
        payment = await apply_payment_event(
            session,
            PAYMENT_REFUNDED,
            refund.get("payment_id", ""),
            refund_minor=(refund.get("amount_money") or {}).get("amount"),
            external_refund_id=refund.get("id"),
        )
        return {"received": True, "handled": payment is not None, "event": PAYMENT_REFUNDED}

    logger.info(f"Ignoring Square webhook type {event_type}")
    return {"received": True, "handled": False}


async def handle_clover_webhook(
    session: AsyncSession,
    payload: Dict[str, Any],
    registry: ProviderRegistry = provider_registry,
) -> Dict[str, Any]:
    """
    Apply a Clover webhook after checking its merchant id.

    Raises:
        Forbidden: Merchant id does not match the active Clover configuration
    """
    adapter = await registry.get_service(session, "clover")
    merchant_id = payload.get("merchantId")
    if merchant_id != adapter.credentials.get("merchantId"):
        logger.warning(f"Clover webhook rejected: unknown merchant {merchant_id}")
        raise Forbidden("Invalid merchant ID")

    event = CLOVER_EVENTS.get(payload.get("type", ""))
    data = payload.get("data") or {}
    if event is None or not data.get("paymentId"):
        logger.info(f"Ignoring Clover webhook type {payload.get('type')}")
        return {"received": True, "handled": False}

    if event == PAYMENT_REFUNDED:
        payment = await apply_payment_event(
            session,
            event,
            data["paymentId"],
            refund_minor=data.get("amount"),
            external_refund_id=data.get("refundId"),
        )
    else:
        payment = await apply_payment_event(session, event, data["paymentId"])
    return {"received": True, "handled": payment is not None, "event": event}
