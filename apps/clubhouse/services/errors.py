"""
Typed errors raised by the registration and payment services.

Each error knows the HTTP status it maps to; api/main.py renders them as
``{"success": false, "error": ..., "message": ..., "details": ...}``.
"""

from typing import Any, Optional


class PortalError(Exception):
    """Base class for all errors the API renders to clients."""

    status_code = 500
    error = "server_error"

    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        body = {"success": False, "error": self.error, "message": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class ValidationError(PortalError):
    """Malformed or missing input. ``details`` is a per-field list."""

    status_code = 400
    error = "validation_error"


class Unauthorized(PortalError):
    status_code = 401
    error = "unauthorized"


class Forbidden(PortalError):
    status_code = 403
    error = "forbidden"


class NotFound(PortalError):
    status_code = 404
    error = "not_found"


class DuplicateRegistration(PortalError):
    status_code = 409
    error = "duplicate_registration"


class Conflict(PortalError):
    """The change would break a reference held by other records."""

    status_code = 409
    error = "conflict"


class LevelMismatch(PortalError):
    status_code = 400
    error = "level_mismatch"


class RateLimited(PortalError):
    status_code = 429
    error = "rate_limited"


class ConfigError(PortalError):
    """Payment provider configuration is missing or incomplete."""

    status_code = 500
    error = "config_error"

    def __init__(self, message: str, provider: Optional[str] = None, field: Optional[str] = None):
        details = None
        if provider or field:
            details = {"provider": provider, "field": field}
        super().__init__(message, details)
        self.provider = provider
        self.field = field


class ProviderError(PortalError):
    """
    A card processor returned a non-success response or could not be reached.

    Attributes:
        provider: Processor name (square, clover, stripe, paypal)
        provider_status: HTTP status returned by the processor, if any
        retryable: True for throttling, server errors and transport failures
    """

    status_code = 502
    error = "provider_error"

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        provider_status: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(
            message,
            {"provider": provider, "providerStatus": provider_status, "retryable": retryable},
        )
        self.provider = provider
        self.provider_status = provider_status
        self.retryable = retryable


class PaymentRefused(ProviderError):
    """The processor declined the charge. Customer-facing, so 400."""

    status_code = 400
    error = "payment_refused"


class TransactionAborted(PortalError):
    """The database commit failed after the processor accepted the charge."""

    status_code = 500
    error = "transaction_aborted"
