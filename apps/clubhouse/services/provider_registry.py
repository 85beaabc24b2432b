"""
Provider registry: resolves the active PaymentConfiguration into a cached
ProviderAdapter.

The cache is process-wide state owned by one ``ProviderRegistry`` instance.
Its contents are rebuilt from the database on demand, so losing it on
restart is harmless. Admin writes to payment configurations call ``clear``.
"""

import logging
from typing import Dict, Optional

import httpx
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from clubhouse.database.models import PaymentConfiguration, PaymentSystem
from clubhouse.services.errors import ConfigError
from clubhouse.services.provider_adapters import ProviderAdapter

logger = logging.getLogger(__name__)

PROVIDER_KINDS = tuple(system.value for system in PaymentSystem)

REQUIRED_FIELDS = {
    "square": ("accessToken", "locationId"),
    "clover": ("accessToken", "merchantId"),
    "stripe": ("secretKey",),
    "paypal": ("clientId", "clientSecret"),
}

DEFAULT_KEY = "default"


def provider_credentials(configuration: PaymentConfiguration) -> dict:
    """Return the provider-specific config block of a configuration row."""
    return dict(getattr(configuration, f"{configuration.payment_system}_config") or {})


class ProviderRegistry:
    """
    Builds and caches provider adapters.

    Lifecycle: one instance per process (``provider_registry``). Adapters are
    cached by provider kind, or under ``"default"`` when no kind was asked for.
    ``clear`` drops cached adapters; ``switch`` clears and rebuilds one.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._cache: Dict[str, ProviderAdapter] = {}
        # Passed to every adapter; tests use an httpx.MockTransport
        self.transport = transport

    async def get_service(self, session: AsyncSession, kind: Optional[str] = None) -> ProviderAdapter:
        """
        Return the adapter for ``kind`` or for the active default configuration.

        Args:
            session: Database session
            kind: Optional provider kind (square, clover, stripe, paypal)

        Returns:
            Validated ProviderAdapter

        Raises:
            ConfigError: If no active configuration exists or it is incomplete
        """
        if kind is not None and kind not in PROVIDER_KINDS:
            raise ConfigError(f"Unsupported payment system: {kind}", provider=kind)

        key = kind or DEFAULT_KEY
        cached = self._cache.get(key)
        if cached is not None:
            return cached

        configuration = await self._load_configuration(session, kind)
        self.validate(configuration)
        adapter = self._build_adapter(configuration)
        self._cache[key] = adapter
        logger.info(
            f"Payment adapter loaded: {adapter.kind} "
            f"(configuration {configuration.id}, environment {adapter.environment}, "
            f"test_mode={adapter.test_mode})"
        )
        return adapter

    async def _load_configuration(
        self, session: AsyncSession, kind: Optional[str]
    ) -> PaymentConfiguration:
        query = select(PaymentConfiguration).where(PaymentConfiguration.is_active.is_(True))
        if kind is not None:
            query = query.where(PaymentConfiguration.payment_system == kind)
        query = query.order_by(
            PaymentConfiguration.is_default.desc(),
            PaymentConfiguration.updated_at.desc(),
            PaymentConfiguration.id.desc(),
        ).limit(1)
        result = await session.execute(query)
        configuration = result.scalar_one_or_none()
        if configuration is None:
            if kind:
                raise ConfigError(f"No active {kind} payment configuration found", provider=kind)
            raise ConfigError("No active payment configuration found")
        return configuration

    def _build_adapter(self, configuration: PaymentConfiguration) -> ProviderAdapter:
        return ProviderAdapter(
            kind=configuration.payment_system,
            credentials=provider_credentials(configuration),
            settings=dict(configuration.settings or {}),
            configuration_id=configuration.id,
            test_mode=bool(configuration.test_mode),
            transport=self.transport,
        )

    def validate(self, target, flow: Optional[str] = None) -> None:
        """
        Assert the provider's required credentials are present.

        Args:
            target: PaymentConfiguration row or an adapter built from one
            flow: Optional payment flow name, for logging

        Raises:
            ConfigError: Naming the provider and the missing field
        """
        if isinstance(target, ProviderAdapter):
            kind, credentials = target.kind, target.credentials
            test_mode, active = target.test_mode, True
        else:
            kind, credentials = target.payment_system, provider_credentials(target)
            test_mode, active = bool(target.test_mode), bool(target.is_active)

        if kind not in REQUIRED_FIELDS:
            raise ConfigError(f"Unsupported payment system: {kind}", provider=kind)
        if not active:
            raise ConfigError(f"{kind} configuration is not active", provider=kind)
        for field_name in REQUIRED_FIELDS[kind]:
            if not credentials.get(field_name):
                raise ConfigError(
                    f"{kind} configuration is missing {field_name}",
                    provider=kind,
                    field=field_name,
                )
        if test_mode and credentials.get("environment") == "production":
            raise ConfigError(
                f"{kind} configuration cannot use test mode in production",
                provider=kind,
                field="testMode",
            )
        if flow is not None:
            logger.debug(f"Validated {kind} configuration for {flow} flow")

    def clear(self, kind: Optional[str] = None) -> None:
        """Drop cached adapters: all of them, or one kind plus the default entry."""
        if kind is None:
            self._cache.clear()
        else:
            self._cache.pop(kind, None)
            self._cache.pop(DEFAULT_KEY, None)
        logger.info(f"Payment adapter cache cleared ({kind or 'all'})")

    async def switch(self, session: AsyncSession, kind: str) -> ProviderAdapter:
        """Clear the cache and rebuild the adapter for ``kind``."""
        self.clear()
        adapter = await self.get_service(session, kind)
        self._cache[DEFAULT_KEY] = adapter
        logger.info(f"Switched payment system to {kind}")
        return adapter


provider_registry = ProviderRegistry()
