"""
Shared pytest configuration for clubhouse tests.

Runs against PostgreSQL when TEST_DATABASE_URL is set, otherwise against a
throwaway SQLite file per test (aiosqlite).

SAFETY: a PostgreSQL URL is refused unless its database name contains
"test". Tables are created for each test and dropped afterwards.
"""

import os

# Must be set before the app modules read them at import time
os.environ["ENV"] = "test"
os.environ.setdefault("JWT_SECRET", "clubhouse-test-secret")
os.environ.pop("SENDGRID_API_KEY", None)

import asyncio
from datetime import date

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from clubhouse.database import db
from clubhouse.database.db import Base
from clubhouse.database.models import Parent, PaymentConfiguration, Player, Team
from clubhouse.services import auth_service, email_service
from clubhouse.services.provider_registry import provider_registry
from clubhouse.services.temp_token_service import get_temp_token_store


def _resolve_test_database_url(tmp_path) -> str:
    """Build the test database URL with safety checks.

    Raises ``RuntimeError`` if a server URL does not point to a database
    whose name contains "test".
    """
    url = os.getenv("TEST_DATABASE_URL", "")
    if not url:
        return f"sqlite+aiosqlite:///{tmp_path / 'clubhouse_test.db'}"

    # ── Safety gate: database name MUST contain "test" ──────────────────
    db_name = url.rsplit("/", 1)[-1].split("?")[0]
    if "test" not in db_name.lower():
        raise RuntimeError(
            f"\n{'=' * 70}\n"
            f"  SAFETY: Refusing to run tests against database '{db_name}'.\n"
            f"  The database name must contain 'test' to prevent accidental\n"
            f"  data loss in development or production databases.\n\n"
            f"  Fix: set TEST_DATABASE_URL to a test database, e.g.:\n"
            f"    export TEST_DATABASE_URL=postgresql+asyncpg://.../clubhouse_test\n"
            f"{'=' * 70}"
        )
    return url


USING_POSTGRES = os.getenv("TEST_DATABASE_URL", "").startswith("postgresql")


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """Create the schema on a fresh engine and route db.AsyncSessionLocal to it."""
    # NullPool avoids reusing connections across event loops
    engine = create_async_engine(
        _resolve_test_database_url(tmp_path),
        echo=False,
        poolclass=NullPool,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    # Code that opens its own session (receipt emails, request handlers)
    # must see the same database as the fixtures
    test_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    original_async_session_local = db.AsyncSessionLocal
    db.AsyncSessionLocal = test_session_maker

    yield engine

    db.AsyncSessionLocal = original_async_session_local
    await asyncio.sleep(0.05)  # let background email tasks release connections
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine):
    """A session on the test database, configured like the application's."""
    async_session_maker = async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.rollback()
            await session.close()


@pytest.fixture(autouse=True)
def _reset_process_state(monkeypatch):
    """Process-wide caches must not leak between tests."""
    monkeypatch.setattr(auth_service, "BCRYPT_ROUNDS", 4)
    provider_registry.clear()
    get_temp_token_store()._tokens.clear()
    yield
    provider_registry.clear()
    get_temp_token_store()._tokens.clear()


@pytest.fixture
def captured_emails(monkeypatch):
    """Capture coroutines handed to send_in_background instead of scheduling them."""
    scheduled = []

    def fake_send_in_background(coro):
        scheduled.append(coro)

    monkeypatch.setattr(email_service, "send_in_background", fake_send_in_background)
    yield scheduled
    for coro in scheduled:
        coro.close()


# ============================================================================
# Seed helpers
# ============================================================================


async def create_parent(session, email="parent@example.com", full_name="Pat Parent", **kwargs) -> Parent:
    parent = Parent(
        email=email,
        password_hash=auth_service.hash_password("secret123"),
        full_name=full_name,
        additional_guardians=[],
        communication_preferences=kwargs.pop("communication_preferences", {}),
        **kwargs,
    )
    session.add(parent)
    await session.commit()
    return parent


async def create_player(session, parent_id, full_name="Quinn Player", **kwargs) -> Player:
    player = Player(
        parent_id=parent_id,
        full_name=full_name,
        gender=kwargs.pop("gender", "Male"),
        dob=kwargs.pop("dob", date(2012, 5, 1)),
        grade=kwargs.pop("grade", "7"),
        seasons=kwargs.pop("seasons", []),
        **kwargs,
    )
    session.add(player)
    await session.commit()
    return player


async def create_team(session, coach_id, name="Thunder", level="Silver", **kwargs) -> Team:
    team = Team(
        name=name,
        grade=kwargs.pop("grade", "7"),
        sex=kwargs.pop("sex", "Male"),
        level_of_competition=level,
        coach_ids=[coach_id],
        tournaments=kwargs.pop("tournaments", []),
        **kwargs,
    )
    session.add(team)
    await session.commit()
    return team


SQUARE_CREDENTIALS = {
    "accessToken": "sq-access-token-1234",
    "locationId": "LOC123",
    "applicationId": "sq-app-id",
    "environment": "sandbox",
    "webhookSignatureKey": "sq-signature-key",
}

CLOVER_CREDENTIALS = {
    "accessToken": "clover-access-token-9876",
    "merchantId": "MERCHANT1",
    "environment": "sandbox",
}


async def create_configuration(
    session, payment_system="square", credentials=None, test_mode=False, **kwargs
) -> PaymentConfiguration:
    if credentials is None:
        credentials = SQUARE_CREDENTIALS if payment_system == "square" else CLOVER_CREDENTIALS
    configuration = PaymentConfiguration(
        payment_system=payment_system,
        is_active=kwargs.pop("is_active", True),
        is_default=kwargs.pop("is_default", True),
        test_mode=test_mode,
        settings=kwargs.pop("settings", {"currency": "USD"}),
        **{f"{payment_system}_config": dict(credentials)},
        **kwargs,
    )
    session.add(configuration)
    await session.commit()
    return configuration


def auth_header(parent) -> dict:
    token = auth_service.create_access_token(auth_service.build_token_payload(parent, []))
    return {"Authorization": f"Bearer {token}"}
