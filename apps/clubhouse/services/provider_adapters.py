"""
Card processor adapters.

A single ``ProviderAdapter`` value is tagged with the processor ``kind``
(square, clover, stripe, paypal). Its ``charge``/``refund``/``fetch``
operations dispatch explicitly through per-kind tables to plain functions
that talk to each processor's REST API over httpx.

Amounts crossing this boundary are always integer minor units.
"""

import logging
import os
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

import httpx

from clubhouse.services.errors import PaymentRefused, ProviderError
from clubhouse.services.pricing import format_major, resolve_currency, to_minor

logger = logging.getLogger(__name__)

PAYMENT_HTTP_TIMEOUT = float(os.getenv("PAYMENT_HTTP_TIMEOUT", "30"))

# Normalised charge statuses
COMPLETED = "COMPLETED"
PAID = "PAID"
AUTHORIZED = "AUTHORIZED"
FAILED = "FAILED"
SUCCESS_STATUSES = (COMPLETED, PAID, AUTHORIZED)

SQUARE_VERSION = "2024-01-18"

BASE_URLS = {
    "square": {
        "sandbox": "https://connect.squareupsandbox.com",
        "production": "https://connect.squareup.com",
    },
    "clover": {
        "sandbox": "https://scl-sandbox.dev.clover.com",
        "production": "https://scl.clover.com",
    },
    "stripe": {
        "sandbox": "https://api.stripe.com",
        "production": "https://api.stripe.com",
    },
    "paypal": {
        "sandbox": "https://api-m.sandbox.paypal.com",
        "production": "https://api-m.paypal.com",
    },
}

# Source token that the simulated test-mode processor declines
TEST_DECLINE_SOURCE = "test-decline"


@dataclass
class ChargeRequest:
    source_id: str
    minor_amount: int
    currency: str
    customer_reference_id: str
    note: str
    buyer_email: str
    customer_id: Optional[str] = None


@dataclass
class CardDetails:
    last4: Optional[str] = None
    brand: Optional[str] = None
    exp_month: Optional[int] = None
    exp_year: Optional[int] = None


@dataclass
class ChargeResult:
    external_payment_id: str
    status: str
    order_id: Optional[str] = None
    receipt_url: Optional[str] = None
    card: CardDetails = field(default_factory=CardDetails)
    location_id: Optional[str] = None
    merchant_id: Optional[str] = None
    # Processor's reason when the charge did not succeed
    decline_message: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status in SUCCESS_STATUSES


@dataclass
class RefundResult:
    external_refund_id: str
    status: str  # pending, completed, failed, rejected
    minor_amount: int
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status in ("pending", "completed")


@dataclass
class ProviderAdapter:
    """
    Facade over one card processor, built from a PaymentConfiguration row.

    Attributes:
        kind: Processor name
        credentials: Provider-specific config block (secrets included)
        settings: General configuration settings (currency, descriptions...)
        configuration_id: Id of the PaymentConfiguration it was built from
        test_mode: Explicit configuration bit; simulated results, no network
        transport: Optional httpx transport (tests inject MockTransport)
    """

    kind: str
    credentials: Dict[str, Any]
    settings: Dict[str, Any] = field(default_factory=dict)
    configuration_id: Optional[int] = None
    test_mode: bool = False
    transport: Optional[httpx.AsyncBaseTransport] = None
    timeout: float = PAYMENT_HTTP_TIMEOUT

    @property
    def environment(self) -> str:
        return self.credentials.get("environment") or "sandbox"

    @property
    def currency(self) -> str:
        return resolve_currency(self.settings)

    @property
    def base_url(self) -> str:
        if self.kind == "clover" and self.credentials.get("apiBaseUrl"):
            return self.credentials["apiBaseUrl"].rstrip("/")
        return BASE_URLS[self.kind][self.environment]

    def client(self, headers: Optional[Dict[str, str]] = None, auth=None) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            auth=auth,
            timeout=self.timeout,
            transport=self.transport,
        )

    async def charge(self, request: ChargeRequest) -> ChargeResult:
        if self.test_mode:
            return _simulate_charge(self, request)
        return await _CHARGE_HANDLERS[self.kind](self, request)

    async def refund(self, external_payment_id: str, minor_amount: int, reason: str) -> RefundResult:
        if self.test_mode:
            return RefundResult(f"test_refund_{uuid.uuid4().hex[:16]}", "completed", minor_amount)
        return await _REFUND_HANDLERS[self.kind](self, external_payment_id, minor_amount, reason)

    async def fetch(self, external_payment_id: str) -> Dict[str, Any]:
        if self.test_mode:
            return {"externalPaymentId": external_payment_id, "status": COMPLETED, "testMode": True}
        return await _FETCH_HANDLERS[self.kind](self, external_payment_id)

    async def create_customer(
        self, email: str, reference_id: str, full_name: Optional[str] = None
    ) -> Optional[str]:
        """Create a processor-side customer. Only Square keeps customers per parent."""
        if self.kind != "square":
            return None
        if self.test_mode:
            return f"test_customer_{uuid.uuid4().hex[:12]}"
        return await _square_create_customer(self, email, reference_id, full_name)


# ---------------------------------------------------------------------------
# Shared HTTP plumbing
# ---------------------------------------------------------------------------


async def _send(
    adapter: ProviderAdapter,
    client: httpx.AsyncClient,
    method: str,
    path: str,
    **kwargs,
) -> Dict[str, Any]:
    """Issue one processor request and return its JSON body, raising ProviderError on failure."""
    try:
        response = await client.request(method, path, **kwargs)
    except httpx.TimeoutException as e:
        logger.error(f"{adapter.kind} request {method} {path} timed out: {e}")
        raise ProviderError(
            f"{adapter.kind} request timed out", provider=adapter.kind, retryable=True
        )
    except httpx.HTTPError as e:
        logger.error(f"{adapter.kind} request {method} {path} failed: {e}")
        raise ProviderError(
            f"Could not reach {adapter.kind}: {e}", provider=adapter.kind, retryable=True
        )

    try:
        payload = response.json() if response.content else {}
    except ValueError:
        payload = {"message": response.text}

    if response.status_code >= 400:
        message, declined = _ERROR_PARSERS[adapter.kind](payload)
        message = message or f"{adapter.kind} returned HTTP {response.status_code}"
        declined = declined or response.status_code == 402
        retryable = response.status_code == 429 or response.status_code >= 500
        logger.warning(
            f"{adapter.kind} {method} {path} returned {response.status_code}: {message}"
        )
        error_cls = PaymentRefused if declined else ProviderError
        raise error_cls(
            message,
            provider=adapter.kind,
            provider_status=response.status_code,
            retryable=retryable,
        )
    return payload


def _parse_square_error(payload: Dict[str, Any]) -> Tuple[Optional[str], bool]:
    errors = payload.get("errors") or []
    if not errors:
        return payload.get("message"), False
    first = errors[0]
    message = first.get("detail") or first.get("code")
    declined = first.get("category") == "PAYMENT_METHOD_ERROR"
    return message, declined


def _parse_clover_error(payload: Dict[str, Any]) -> Tuple[Optional[str], bool]:
    error = payload.get("error") or {}
    if isinstance(error, str):
        return payload.get("message") or error, False
    message = error.get("message") or payload.get("message")
    declined = error.get("type") == "card_error" or error.get("code") == "card_declined"
    return message, declined


def _parse_stripe_error(payload: Dict[str, Any]) -> Tuple[Optional[str], bool]:
    error = payload.get("error") or {}
    return error.get("message"), error.get("type") == "card_error"


def _parse_paypal_error(payload: Dict[str, Any]) -> Tuple[Optional[str], bool]:
    details = payload.get("details") or []
    issue = details[0].get("issue", "") if details else ""
    message = (details[0].get("description") if details else None) or payload.get("message")
    declined = "DECLINED" in issue
    return message or payload.get("error_description"), declined


_ERROR_PARSERS: Dict[str, Callable[[Dict[str, Any]], Tuple[Optional[str], bool]]] = {
    "square": _parse_square_error,
    "clover": _parse_clover_error,
    "stripe": _parse_stripe_error,
    "paypal": _parse_paypal_error,
}


def _int_or_none(value) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _simulate_charge(adapter: ProviderAdapter, request: ChargeRequest) -> ChargeResult:
    """Deterministic result for configurations that have test_mode enabled."""
    logger.info(f"Simulating {adapter.kind} charge of {request.minor_amount} (test mode)")
    success = {"square": COMPLETED, "clover": PAID, "stripe": COMPLETED, "paypal": COMPLETED}
    status = FAILED if request.source_id == TEST_DECLINE_SOURCE else success[adapter.kind]
    order_id = f"test_order_{uuid.uuid4().hex[:12]}" if adapter.kind in ("clover", "paypal") else None
    return ChargeResult(
        external_payment_id=f"test_{adapter.kind}_{uuid.uuid4().hex[:16]}",
        status=status,
        order_id=order_id,
        card=CardDetails(last4="1111", brand="VISA"),
        location_id=adapter.credentials.get("locationId"),
        merchant_id=adapter.credentials.get("merchantId"),
        decline_message="Test card declined" if status == FAILED else None,
        raw={"testMode": True},
    )


# ---------------------------------------------------------------------------
# Square
# ---------------------------------------------------------------------------


def _square_client(adapter: ProviderAdapter) -> httpx.AsyncClient:
    return adapter.client(
        headers={
            "Authorization": f"Bearer {adapter.credentials['accessToken']}",
            "Square-Version": SQUARE_VERSION,
            "Content-Type": "application/json",
        }
    )


_SQUARE_STATUSES = {"COMPLETED": COMPLETED, "APPROVED": AUTHORIZED}


def _square_card(payment: Dict[str, Any]) -> CardDetails:
    card = (payment.get("card_details") or {}).get("card") or {}
    return CardDetails(
        last4=card.get("last_4"),
        brand=card.get("card_brand"),
        exp_month=_int_or_none(card.get("exp_month")),
        exp_year=_int_or_none(card.get("exp_year")),
    )


def _square_decline_message(payment: Dict[str, Any]) -> Optional[str]:
    if payment.get("status") in _SQUARE_STATUSES:
        return None
    errors = (payment.get("card_details") or {}).get("errors") or []
    if errors:
        return errors[0].get("detail") or errors[0].get("code")
    return f"Square payment status {payment.get('status') or 'unknown'}"


async def _square_charge(adapter: ProviderAdapter, request: ChargeRequest) -> ChargeResult:
    body = {
        # Fresh key per attempt; a failed source token is never retried
        "idempotency_key": str(uuid.uuid4()),
        "source_id": request.source_id,
        "amount_money": {"amount": request.minor_amount, "currency": request.currency},
        "location_id": adapter.credentials["locationId"],
        "autocomplete": True,
        "reference_id": request.customer_reference_id[:40],
        "note": request.note[:500],
        "buyer_email_address": request.buyer_email,
    }
    if request.customer_id:
        body["customer_id"] = request.customer_id

    async with _square_client(adapter) as client:
        payload = await _send(adapter, client, "POST", "/v2/payments", json=body)

    payment = payload.get("payment") or {}
    return ChargeResult(
        external_payment_id=payment.get("id", ""),
        status=_SQUARE_STATUSES.get(payment.get("status"), FAILED),
        order_id=payment.get("order_id"),
        receipt_url=payment.get("receipt_url"),
        card=_square_card(payment),
        location_id=payment.get("location_id") or adapter.credentials["locationId"],
        decline_message=_square_decline_message(payment),
        raw=payment,
    )


async def _square_refund(
    adapter: ProviderAdapter, external_payment_id: str, minor_amount: int, reason: str
) -> RefundResult:
    body = {
        "idempotency_key": str(uuid.uuid4()),
        "payment_id": external_payment_id,
        "amount_money": {"amount": minor_amount, "currency": adapter.currency},
        "reason": reason[:192],
    }
    async with _square_client(adapter) as client:
        payload = await _send(adapter, client, "POST", "/v2/refunds", json=body)
    refund = payload.get("refund") or {}
    return RefundResult(
        external_refund_id=refund.get("id", ""),
        status=(refund.get("status") or "pending").lower(),
        minor_amount=(refund.get("amount_money") or {}).get("amount", minor_amount),
        raw=refund,
    )


async def _square_fetch(adapter: ProviderAdapter, external_payment_id: str) -> Dict[str, Any]:
    async with _square_client(adapter) as client:
        payload = await _send(adapter, client, "GET", f"/v2/payments/{external_payment_id}")
    payment = payload.get("payment") or {}
    money = payment.get("amount_money") or {}
    return {
        "externalPaymentId": payment.get("id"),
        "status": _SQUARE_STATUSES.get(payment.get("status"), FAILED),
        "providerStatus": payment.get("status"),
        "amount": money.get("amount"),
        "currency": money.get("currency"),
        "orderId": payment.get("order_id"),
        "receiptUrl": payment.get("receipt_url"),
        "card": _square_card(payment).__dict__,
    }


async def _square_create_customer(
    adapter: ProviderAdapter, email: str, reference_id: str, full_name: Optional[str]
) -> Optional[str]:
    body = {
        "idempotency_key": str(uuid.uuid4()),
        "email_address": email,
        "reference_id": reference_id,
    }
    if full_name:
        parts = full_name.split(" ", 1)
        body["given_name"] = parts[0]
        if len(parts) > 1:
            body["family_name"] = parts[1]
    async with _square_client(adapter) as client:
        payload = await _send(adapter, client, "POST", "/v2/customers", json=body)
    return (payload.get("customer") or {}).get("id")


# ---------------------------------------------------------------------------
# Clover
# ---------------------------------------------------------------------------


def _clover_client(adapter: ProviderAdapter) -> httpx.AsyncClient:
    return adapter.client(
        headers={
            "Authorization": f"Bearer {adapter.credentials['accessToken']}",
            "Content-Type": "application/json",
        }
    )


def _clover_status(charge: Dict[str, Any]) -> str:
    if charge.get("status") in ("succeeded", "paid") or charge.get("paid"):
        return PAID if charge.get("captured", True) else AUTHORIZED
    return FAILED


def _clover_card(charge: Dict[str, Any]) -> CardDetails:
    source = charge.get("source") or {}
    return CardDetails(
        last4=source.get("last4"),
        brand=source.get("brand"),
        exp_month=_int_or_none(source.get("exp_month")),
        exp_year=_int_or_none(source.get("exp_year")),
    )


async def _clover_charge(adapter: ProviderAdapter, request: ChargeRequest) -> ChargeResult:
    currency = request.currency.lower()
    async with _clover_client(adapter) as client:
        order = await _send(
            adapter,
            client,
            "POST",
            "/v1/orders",
            json={
                "currency": currency,
                "email": request.buyer_email,
                "items": [
                    {
                        "amount": request.minor_amount,
                        "currency": currency,
                        "description": request.note[:127],
                        "quantity": 1,
                    }
                ],
            },
        )
        order_id = order.get("id")
        charge = await _send(
            adapter,
            client,
            "POST",
            "/v1/charges",
            json={
                "amount": request.minor_amount,
                "currency": currency,
                "source": request.source_id,
                "order_id": order_id,
                "description": request.note[:127],
                "receipt_email": request.buyer_email,
                "external_reference_id": request.customer_reference_id[:12],
                "capture": True,
            },
        )

    return ChargeResult(
        external_payment_id=charge.get("id", ""),
        status=_clover_status(charge),
        order_id=order_id,
        receipt_url=charge.get("receipt_url"),
        card=_clover_card(charge),
        merchant_id=adapter.credentials.get("merchantId"),
        decline_message=charge.get("failure_message"),
        raw=charge,
    )


async def _clover_refund(
    adapter: ProviderAdapter, external_payment_id: str, minor_amount: int, reason: str
) -> RefundResult:
    async with _clover_client(adapter) as client:
        refund = await _send(
            adapter,
            client,
            "POST",
            "/v1/refunds",
            json={"charge": external_payment_id, "amount": minor_amount, "reason": reason},
        )
    status = "completed" if refund.get("status") in ("succeeded", None) else refund["status"]
    return RefundResult(
        external_refund_id=refund.get("id", ""),
        status=status,
        minor_amount=refund.get("amount", minor_amount),
        raw=refund,
    )


async def _clover_fetch(adapter: ProviderAdapter, external_payment_id: str) -> Dict[str, Any]:
    async with _clover_client(adapter) as client:
        charge = await _send(adapter, client, "GET", f"/v1/charges/{external_payment_id}")
    return {
        "externalPaymentId": charge.get("id"),
        "status": _clover_status(charge),
        "providerStatus": charge.get("status"),
        "amount": charge.get("amount"),
        "currency": (charge.get("currency") or "").upper() or None,
        "orderId": charge.get("order_id") or charge.get("order"),
        "receiptUrl": charge.get("receipt_url"),
        "card": _clover_card(charge).__dict__,
    }


# ---------------------------------------------------------------------------
# Stripe
# ---------------------------------------------------------------------------


def _stripe_client(adapter: ProviderAdapter) -> httpx.AsyncClient:
    return adapter.client(
        headers={"Authorization": f"Bearer {adapter.credentials['secretKey']}"}
    )


_STRIPE_STATUSES = {"succeeded": COMPLETED, "requires_capture": AUTHORIZED}


def _stripe_charge_details(intent: Dict[str, Any]) -> Tuple[CardDetails, Optional[str]]:
    charge = intent.get("latest_charge")
    if not isinstance(charge, dict):
        return CardDetails(), None
    card = (charge.get("payment_method_details") or {}).get("card") or {}
    details = CardDetails(
        last4=card.get("last4"),
        brand=card.get("brand"),
        exp_month=_int_or_none(card.get("exp_month")),
        exp_year=_int_or_none(card.get("exp_year")),
    )
    return details, charge.get("receipt_url")


async def _stripe_charge(adapter: ProviderAdapter, request: ChargeRequest) -> ChargeResult:
    form = {
        "amount": str(request.minor_amount),
        "currency": request.currency.lower(),
        "payment_method": request.source_id,
        "confirmation_method": "automatic",
        "confirm": "true",
        "description": request.note,
        "receipt_email": request.buyer_email,
        "metadata[reference_id]": request.customer_reference_id,
        "expand[]": "latest_charge",
    }
    if request.customer_id:
        form["customer"] = request.customer_id

    async with _stripe_client(adapter) as client:
        intent = await _send(adapter, client, "POST", "/v1/payment_intents", data=form)

    card, receipt_url = _stripe_charge_details(intent)
    return ChargeResult(
        external_payment_id=intent.get("id", ""),
        status=_STRIPE_STATUSES.get(intent.get("status"), FAILED),
        receipt_url=receipt_url,
        card=card,
        decline_message=(intent.get("last_payment_error") or {}).get("message"),
        raw=intent,
    )


async def _stripe_refund(
    adapter: ProviderAdapter, external_payment_id: str, minor_amount: int, reason: str
) -> RefundResult:
    form = {
        "payment_intent": external_payment_id,
        "amount": str(minor_amount),
        "reason": "requested_by_customer",
        "metadata[reason]": reason,
    }
    async with _stripe_client(adapter) as client:
        refund = await _send(adapter, client, "POST", "/v1/refunds", data=form)
    status = {"succeeded": "completed", "canceled": "failed"}.get(
        refund.get("status"), refund.get("status") or "pending"
    )
    return RefundResult(
        external_refund_id=refund.get("id", ""),
        status=status,
        minor_amount=refund.get("amount", minor_amount),
        raw=refund,
    )


async def _stripe_fetch(adapter: ProviderAdapter, external_payment_id: str) -> Dict[str, Any]:
    async with _stripe_client(adapter) as client:
        intent = await _send(
            adapter,
            client,
            "GET",
            f"/v1/payment_intents/{external_payment_id}",
            params={"expand[]": "latest_charge"},
        )
    card, receipt_url = _stripe_charge_details(intent)
    return {
        "externalPaymentId": intent.get("id"),
        "status": _STRIPE_STATUSES.get(intent.get("status"), FAILED),
        "providerStatus": intent.get("status"),
        "amount": intent.get("amount"),
        "currency": (intent.get("currency") or "").upper() or None,
        "receiptUrl": receipt_url,
        "card": card.__dict__,
    }


# ---------------------------------------------------------------------------
# PayPal
# ---------------------------------------------------------------------------


async def _paypal_access_token(adapter: ProviderAdapter) -> str:
    async with adapter.client(
        auth=(adapter.credentials["clientId"], adapter.credentials["clientSecret"])
    ) as client:
        payload = await _send(
            adapter,
            client,
            "POST",
            "/v1/oauth2/token",
            data={"grant_type": "client_credentials"},
        )
    token = payload.get("access_token")
    if not token:
        raise ProviderError("PayPal did not return an access token", provider="paypal")
    return token


async def _paypal_client(adapter: ProviderAdapter) -> httpx.AsyncClient:
    token = await _paypal_access_token(adapter)
    return adapter.client(
        headers={"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
    )


_PAYPAL_STATUSES = {"COMPLETED": COMPLETED, "PENDING": AUTHORIZED}


def _paypal_card(payload: Dict[str, Any]) -> CardDetails:
    card = (payload.get("payment_source") or {}).get("card") or {}
    expiry = card.get("expiry") or ""
    year, _, month = expiry.partition("-")
    return CardDetails(
        last4=card.get("last_digits"),
        brand=card.get("brand"),
        exp_month=_int_or_none(month or None),
        exp_year=_int_or_none(year or None),
    )


async def _paypal_charge(adapter: ProviderAdapter, request: ChargeRequest) -> ChargeResult:
    client = await _paypal_client(adapter)
    async with client:
        order = await _send(
            adapter,
            client,
            "POST",
            "/v2/checkout/orders",
            headers={"PayPal-Request-Id": str(uuid.uuid4())},
            json={
                "intent": "CAPTURE",
                "purchase_units": [
                    {
                        "reference_id": request.customer_reference_id[:256],
                        "custom_id": request.customer_reference_id[:127],
                        "description": request.note[:127],
                        "amount": {
                            "currency_code": request.currency,
                            "value": format_major(request.minor_amount),
                        },
                    }
                ],
                "payment_source": {
                    "token": {"id": request.source_id, "type": "BILLING_AGREEMENT"}
                },
            },
        )
        order_id = order.get("id")
        captured = await _send(
            adapter,
            client,
            "POST",
            f"/v2/checkout/orders/{order_id}/capture",
            headers={"PayPal-Request-Id": str(uuid.uuid4())},
            json={},
        )

    units = captured.get("purchase_units") or [{}]
    captures = (units[0].get("payments") or {}).get("captures") or [{}]
    capture = captures[0]
    receipt_url = next(
        (link.get("href") for link in capture.get("links", []) if link.get("rel") == "self"),
        None,
    )
    return ChargeResult(
        external_payment_id=capture.get("id", ""),
        status=_PAYPAL_STATUSES.get(capture.get("status"), FAILED),
        order_id=order_id,
        receipt_url=receipt_url,
        card=_paypal_card(captured),
        decline_message=(capture.get("status_details") or {}).get("reason"),
        raw=captured,
    )


async def _paypal_refund(
    adapter: ProviderAdapter, external_payment_id: str, minor_amount: int, reason: str
) -> RefundResult:
    client = await _paypal_client(adapter)
    async with client:
        refund = await _send(
            adapter,
            client,
            "POST",
            f"/v2/payments/captures/{external_payment_id}/refund",
            json={
                "amount": {"value": format_major(minor_amount), "currency_code": adapter.currency},
                "note_to_payer": reason[:255],
            },
        )
    status = {"COMPLETED": "completed", "PENDING": "pending", "CANCELLED": "failed"}.get(
        refund.get("status"), "failed"
    )
    return RefundResult(
        external_refund_id=refund.get("id", ""),
        status=status,
        minor_amount=minor_amount,
        raw=refund,
    )


async def _paypal_fetch(adapter: ProviderAdapter, external_payment_id: str) -> Dict[str, Any]:
    client = await _paypal_client(adapter)
    async with client:
        capture = await _send(adapter, client, "GET", f"/v2/payments/captures/{external_payment_id}")
    amount = capture.get("amount") or {}
    value = amount.get("value")
    return {
        "externalPaymentId": capture.get("id"),
        "status": _PAYPAL_STATUSES.get(capture.get("status"), FAILED),
        "providerStatus": capture.get("status"),
        "amount": to_minor(value) if value is not None else None,
        "currency": amount.get("currency_code"),
        "orderId": (capture.get("supplementary_data") or {}).get("related_ids", {}).get("order_id"),
        "receiptUrl": None,
        "card": CardDetails().__dict__,
    }


_CHARGE_HANDLERS = {
    "square": _square_charge,
    "clover": _clover_charge,
    "stripe": _stripe_charge,
    "paypal": _paypal_charge,
}

_REFUND_HANDLERS = {
    "square": _square_refund,
    "clover": _clover_refund,
    "stripe": _stripe_refund,
    "paypal": _paypal_refund,
}

_FETCH_HANDLERS = {
    "square": _square_fetch,
    "clover": _clover_fetch,
    "stripe": _stripe_fetch,
    "paypal": _paypal_fetch,
}
