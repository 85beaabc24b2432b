"""
Admin management of card processor configurations.

Rules kept on every write:
- at most one configuration is the default;
- at most one configuration per provider type is active;
- the change is committed here, then the provider registry cache is
  cleared so the next charge sees it.

Secrets are masked on every read except the registry's own.
"""

import logging
from numbers import Number
from typing import Any, Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.database.models import Payment, PaymentConfiguration
from clubhouse.services.errors import Conflict, NotFound, ValidationError
from clubhouse.services.pricing import SUPPORTED_CURRENCIES, resolve_currency
from clubhouse.services.provider_registry import (
    PROVIDER_KINDS,
    REQUIRED_FIELDS,
    ProviderRegistry,
    provider_credentials,
    provider_registry,
)

logger = logging.getLogger(__name__)

SECRET_FIELDS = ("accessToken", "secretKey", "clientSecret", "webhookSignatureKey", "webhookSecret")
MASK_PREFIX = "****"

# Non-secret credential fields the checkout page needs
PUBLIC_FIELDS = {
    "square": ("applicationId", "locationId", "environment"),
    "clover": ("merchantId", "environment"),
    "stripe": ("publishableKey",),
    "paypal": ("clientId", "environment"),
}


def mask_secret(value: Optional[str]) -> Optional[str]:
    if not value:
        return value
    return MASK_PREFIX + str(value)[-4:]


def _masked(credentials: Dict[str, Any]) -> Dict[str, Any]:
    return {
        key: mask_secret(value) if key in SECRET_FIELDS else value
        for key, value in (credentials or {}).items()
    }


def configuration_to_dict(configuration: PaymentConfiguration) -> Dict[str, Any]:
    return {
        "id": configuration.id,
        "paymentSystem": configuration.payment_system,
        "isActive": configuration.is_active,
        "isDefault": configuration.is_default,
        "testMode": configuration.test_mode,
        "squareConfig": _masked(configuration.square_config),
        "cloverConfig": _masked(configuration.clover_config),
        "stripeConfig": _masked(configuration.stripe_config),
        "paypalConfig": _masked(configuration.paypal_config),
        "settings": configuration.settings or {},
        "webhookUrls": configuration.webhook_urls or {},
        "createdBy": configuration.created_by,
        "lastModifiedBy": configuration.last_modified_by,
        "createdAt": configuration.created_at.isoformat() if configuration.created_at else None,
        "updatedAt": configuration.updated_at.isoformat() if configuration.updated_at else None,
    }


def validate_settings(settings: Optional[Dict[str, Any]]) -> None:
    """
    Raises:
        ValidationError: For an unsupported currency or a tax rate outside 0..100
    """
    if not settings:
        return
    errors = []
    currency = settings.get("currency")
    if currency is not None and str(currency).upper() not in SUPPORTED_CURRENCIES:
        errors.append(
            {"field": "settings.currency", "message": f"must be one of {', '.join(SUPPORTED_CURRENCIES)}"}
        )
    tax_rate = settings.get("taxRate")
    if tax_rate is not None and (
        isinstance(tax_rate, bool) or not isinstance(tax_rate, Number) or not 0 <= tax_rate <= 100
    ):
        errors.append({"field": "settings.taxRate", "message": "must be a number between 0 and 100"})
    if errors:
        raise ValidationError("Invalid payment settings", details=errors)


def _validate_configuration(configuration: PaymentConfiguration) -> None:
    errors = []
    credentials = provider_credentials(configuration)
    for field_name in REQUIRED_FIELDS[configuration.payment_system]:
        if not credentials.get(field_name):
            errors.append(
                {
                    "field": f"{configuration.payment_system}Config.{field_name}",
                    "message": f"{configuration.payment_system} configuration is missing {field_name}",
                }
            )
    if configuration.test_mode and credentials.get("environment") == "production":
        errors.append({"field": "testMode", "message": "test mode cannot be used in production"})
    if errors:
        raise ValidationError("Invalid payment configuration", details=errors)


def _merge_credentials(existing: Dict[str, Any], incoming: Dict[str, Any]) -> Dict[str, Any]:
    """Apply incoming credentials; masked echoes of secrets keep the stored value."""
    merged = dict(existing or {})
    for key, value in (incoming or {}).items():
        if key in SECRET_FIELDS and isinstance(value, str) and value.startswith(MASK_PREFIX):
            continue
        merged[key] = value
    return merged


async def _enforce_exclusivity(session: AsyncSession, configuration: PaymentConfiguration) -> None:
    if configuration.is_default:
        await session.execute(
            update(PaymentConfiguration)
            .where(PaymentConfiguration.id != configuration.id, PaymentConfiguration.is_default.is_(True))
            .values(is_default=False)
        )
    if configuration.is_active:
        await session.execute(
            update(PaymentConfiguration)
            .where(
                PaymentConfiguration.id != configuration.id,
                PaymentConfiguration.payment_system == configuration.payment_system,
                PaymentConfiguration.is_active.is_(True),
            )
            .values(is_active=False)
        )


async def list_configurations(session: AsyncSession) -> List[Dict[str, Any]]:
    result = await session.execute(
        select(PaymentConfiguration).order_by(
            PaymentConfiguration.is_default.desc(), PaymentConfiguration.id
        )
    )
    return [configuration_to_dict(configuration) for configuration in result.scalars().all()]


async def get_configuration(session: AsyncSession, configuration_id: int) -> PaymentConfiguration:
    configuration = await session.get(PaymentConfiguration, configuration_id)
    if configuration is None:
        raise NotFound(f"Payment configuration {configuration_id} not found")
    return configuration


async def _commit_and_clear(session: AsyncSession, registry: ProviderRegistry) -> None:
    # A charge running between clear() and commit would cache the old row
    await session.commit()
    registry.clear()


async def create_configuration(
    session: AsyncSession,
    data: Dict[str, Any],
    admin_id: Optional[int] = None,
    registry: ProviderRegistry = provider_registry,
) -> Dict[str, Any]:
    """
    Create a configuration.

    Args:
        data: snake_case fields (payment_system, is_active, is_default,
            test_mode, square_config, clover_config, stripe_config,
            paypal_config, settings, webhook_urls)
        admin_id: Parent id of the admin making the change

    Raises:
        ValidationError: Unknown provider, missing credentials, bad settings
    """
    payment_system = data.get("payment_system")
    if payment_system not in PROVIDER_KINDS:
        raise ValidationError(
            "Unsupported payment system",
            details=[{"field": "paymentSystem", "message": f"must be one of {', '.join(PROVIDER_KINDS)}"}],
        )
    settings = dict(data.get("settings") or {})
    validate_settings(settings)
    settings["currency"] = resolve_currency(settings)

    configuration = PaymentConfiguration(
        payment_system=payment_system,
        is_active=data.get("is_active", True),
        is_default=data.get("is_default", False),
        test_mode=data.get("test_mode", False),
        square_config=dict(data.get("square_config") or {}),
        clover_config=dict(data.get("clover_config") or {}),
        stripe_config=dict(data.get("stripe_config") or {}),
        paypal_config=dict(data.get("paypal_config") or {}),
        settings=settings,
        webhook_urls=dict(data.get("webhook_urls") or {}),
        created_by=admin_id,
        last_modified_by=admin_id,
    )
    _validate_configuration(configuration)
    session.add(configuration)
    await session.flush()
    await _enforce_exclusivity(session, configuration)
    await session.flush()
    await session.refresh(configuration)

    await _commit_and_clear(session, registry)
    logger.info(f"Payment configuration {configuration.id} ({payment_system}) created by {admin_id}")
    return configuration_to_dict(configuration)


async def update_configuration(
    session: AsyncSession,
    configuration_id: int,
    data: Dict[str, Any],
    admin_id: Optional[int] = None,
    registry: ProviderRegistry = provider_registry,
) -> Dict[str, Any]:
    """Partially update a configuration. Masked secrets sent back unchanged are ignored."""
    configuration = await get_configuration(session, configuration_id)
    if "payment_system" in data and data["payment_system"] != configuration.payment_system:
        raise ValidationError(
            "The payment system of a configuration cannot be changed",
            details=[{"field": "paymentSystem", "message": "immutable"}],
        )

    for kind in PROVIDER_KINDS:
        key = f"{kind}_config"
        if data.get(key) is not None:
            setattr(configuration, key, _merge_credentials(getattr(configuration, key), data[key]))
    if data.get("settings") is not None:
        settings = {**(configuration.settings or {}), **data["settings"]}
        validate_settings(settings)
        settings["currency"] = resolve_currency(settings)
        configuration.settings = settings
    if data.get("webhook_urls") is not None:
        configuration.webhook_urls = dict(data["webhook_urls"])
    for flag in ("is_active", "is_default", "test_mode"):
        if data.get(flag) is not None:
            setattr(configuration, flag, bool(data[flag]))
    configuration.last_modified_by = admin_id

    _validate_configuration(configuration)
    await session.flush()
    await _enforce_exclusivity(session, configuration)
    await session.flush()
    await session.refresh(configuration)

    await _commit_and_clear(session, registry)
    logger.info(f"Payment configuration {configuration.id} updated by {admin_id}")
    return configuration_to_dict(configuration)


async def delete_configuration(
    session: AsyncSession,
    configuration_id: int,
    registry: ProviderRegistry = provider_registry,
) -> None:
    """
    Delete a configuration no payment was taken with.

    Raises:
        NotFound: Unknown configuration
        Conflict: Recorded payments reference it; deactivate it instead
    """
    configuration = await get_configuration(session, configuration_id)
    result = await session.execute(
        select(func.count()).select_from(Payment).where(Payment.configuration_id == configuration_id)
    )
    payment_count = result.scalar_one()
    if payment_count:
        raise Conflict(
            f"Payment configuration {configuration_id} is referenced by recorded payments; "
            "deactivate it instead",
            details={"configurationId": configuration_id, "payments": payment_count},
        )
    await session.delete(configuration)
    try:
        await session.flush()
    except IntegrityError as e:
        # A payment recorded after the count above
        raise Conflict(
            f"Payment configuration {configuration_id} is referenced by recorded payments; "
            "deactivate it instead",
            details={"configurationId": configuration_id},
        ) from e
    await _commit_and_clear(session, registry)
    logger.info(f"Payment configuration {configuration_id} deleted")


async def get_public_active_configuration(session: AsyncSession) -> Dict[str, Any]:
    """
    The non-secret view of the configuration checkout pages should use.

    Raises:
        NotFound: If no configuration is active
    """
    result = await session.execute(
        select(PaymentConfiguration)
        .where(PaymentConfiguration.is_active.is_(True))
        .order_by(
            PaymentConfiguration.is_default.desc(),
            PaymentConfiguration.updated_at.desc(),
            PaymentConfiguration.id.desc(),
        )
        .limit(1)
    )
    configuration = result.scalar_one_or_none()
    if configuration is None:
        raise NotFound("No active payment configuration")

    credentials = provider_credentials(configuration)
    settings = configuration.settings or {}
    return {
        "paymentSystem": configuration.payment_system,
        "testMode": configuration.test_mode,
        "currency": resolve_currency(settings),
        "taxRate": settings.get("taxRate", 0),
        "config": {
            key: credentials.get(key)
            for key in PUBLIC_FIELDS[configuration.payment_system]
            if credentials.get(key) is not None
        },
    }


async def get_active_system(
    session: AsyncSession, registry: ProviderRegistry = provider_registry
) -> Dict[str, Any]:
    adapter = await registry.get_service(session)
    return {
        "paymentSystem": adapter.kind,
        "configurationId": adapter.configuration_id,
        "environment": adapter.environment,
        "testMode": adapter.test_mode,
        "currency": adapter.currency,
    }
