"""
Tests for provider registry selection, validation and caching.
"""
import pytest

from conftest import CLOVER_CREDENTIALS, SQUARE_CREDENTIALS, create_configuration
from clubhouse.services.errors import ConfigError
from clubhouse.services.provider_adapters import ProviderAdapter
from clubhouse.services.provider_registry import ProviderRegistry


@pytest.fixture
def registry():
    return ProviderRegistry()


class TestGetService:
    @pytest.mark.asyncio
    async def test_no_active_configuration(self, db_session, registry):
        with pytest.raises(ConfigError) as exc_info:
            await registry.get_service(db_session)
        assert exc_info.value.status_code == 500

    @pytest.mark.asyncio
    async def test_builds_adapter_from_default_configuration(self, db_session, registry):
        configuration = await create_configuration(db_session, test_mode=True)

        adapter = await registry.get_service(db_session)

        assert adapter.kind == "square"
        assert adapter.configuration_id == configuration.id
        assert adapter.test_mode is True
        assert adapter.credentials["locationId"] == "LOC123"
        assert adapter.currency == "USD"

    @pytest.mark.asyncio
    async def test_default_preferred_over_other_active(self, db_session, registry):
        await create_configuration(db_session, payment_system="clover", is_default=False)
        await create_configuration(db_session, payment_system="square", is_default=True)

        adapter = await registry.get_service(db_session)
        assert adapter.kind == "square"

    @pytest.mark.asyncio
    async def test_select_by_kind(self, db_session, registry):
        await create_configuration(db_session, payment_system="square", is_default=True)
        await create_configuration(db_session, payment_system="clover", is_default=False)

        adapter = await registry.get_service(db_session, "clover")
        assert adapter.kind == "clover"
        assert adapter.credentials["merchantId"] == "MERCHANT1"

    @pytest.mark.asyncio
    async def test_inactive_configuration_ignored(self, db_session, registry):
        await create_configuration(db_session, is_active=False)
        with pytest.raises(ConfigError):
            await registry.get_service(db_session)

    @pytest.mark.asyncio
    async def test_unsupported_kind(self, db_session, registry):
        with pytest.raises(ConfigError) as exc_info:
            await registry.get_service(db_session, "venmo")
        assert exc_info.value.provider == "venmo"

    @pytest.mark.asyncio
    async def test_missing_location_id_names_field(self, db_session, registry):
        credentials = {k: v for k, v in SQUARE_CREDENTIALS.items() if k != "locationId"}
        await create_configuration(db_session, credentials=credentials)

        with pytest.raises(ConfigError) as exc_info:
            await registry.get_service(db_session)

        assert exc_info.value.provider == "square"
        assert exc_info.value.field == "locationId"
        assert exc_info.value.to_dict()["details"] == {"provider": "square", "field": "locationId"}

    @pytest.mark.asyncio
    async def test_adapter_is_cached(self, db_session, registry):
        await create_configuration(db_session)

        first = await registry.get_service(db_session)
        second = await registry.get_service(db_session)
        assert first is second

    @pytest.mark.asyncio
    async def test_clear_rebuilds_from_current_rows(self, db_session, registry):
        configuration = await create_configuration(db_session)
        first = await registry.get_service(db_session)

        configuration.square_config = {**SQUARE_CREDENTIALS, "locationId": "LOC999"}
        await db_session.commit()

        assert (await registry.get_service(db_session)) is first
        registry.clear()
        rebuilt = await registry.get_service(db_session)
        assert rebuilt is not first
        assert rebuilt.credentials["locationId"] == "LOC999"

    @pytest.mark.asyncio
    async def test_switch_replaces_default(self, db_session, registry):
        await create_configuration(db_session, payment_system="square", is_default=True)
        await create_configuration(db_session, payment_system="clover", is_default=False)
        assert (await registry.get_service(db_session)).kind == "square"

        switched = await registry.switch(db_session, "clover")

        assert switched.kind == "clover"
        assert (await registry.get_service(db_session)) is switched

    @pytest.mark.asyncio
    async def test_transport_passed_to_adapters(self, db_session):
        sentinel = object()
        registry = ProviderRegistry(transport=sentinel)
        await create_configuration(db_session)

        adapter = await registry.get_service(db_session)
        assert adapter.transport is sentinel


class TestValidate:
    def test_validate_adapter(self, registry):
        adapter = ProviderAdapter(kind="clover", credentials=dict(CLOVER_CREDENTIALS))
        registry.validate(adapter, "tournament")

    def test_missing_merchant_id(self, registry):
        adapter = ProviderAdapter(kind="clover", credentials={"accessToken": "x"})
        with pytest.raises(ConfigError) as exc_info:
            registry.validate(adapter)
        assert exc_info.value.field == "merchantId"

    def test_stripe_and_paypal_fields(self, registry):
        with pytest.raises(ConfigError) as exc_info:
            registry.validate(ProviderAdapter(kind="stripe", credentials={}))
        assert exc_info.value.field == "secretKey"

        with pytest.raises(ConfigError) as exc_info:
            registry.validate(ProviderAdapter(kind="paypal", credentials={"clientId": "id"}))
        assert exc_info.value.field == "clientSecret"

    def test_test_mode_refused_in_production(self, registry):
        adapter = ProviderAdapter(
            kind="square",
            credentials={**SQUARE_CREDENTIALS, "environment": "production"},
            test_mode=True,
        )
        with pytest.raises(ConfigError) as exc_info:
            registry.validate(adapter)
        assert exc_info.value.field == "testMode"

    @pytest.mark.asyncio
    async def test_inactive_row_rejected(self, db_session, registry):
        configuration = await create_configuration(db_session, is_active=False)
        with pytest.raises(ConfigError):
            registry.validate(configuration)
