"""Shared test configuration and fixtures.

Each test gets a fresh in-memory SQLite database (aiosqlite) with all cashier
tables, so no external database is needed. SQLite's driver-level transaction
handling is disabled so SAVEPOINTs behave like on PostgreSQL.
"""

import uuid
from collections.abc import AsyncGenerator
from unittest.mock import MagicMock

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool

import cashier.models  # noqa: F401  (registers every table on Base.metadata)
from cashier.billing.billable import Billable
from cashier.billing.stripe_client import StripeGateway
from cashier.config import Settings
from cashier.database import Base
from cashier.models.user import User
from cashier.services.subscription_store import SqlAlchemySubscriptionStore

TEST_DATABASE_URL = "sqlite+aiosqlite://"


def _make_engine() -> AsyncEngine:
    engine = create_async_engine(TEST_DATABASE_URL, poolclass=StaticPool)

    @event.listens_for(engine.sync_engine, "connect")
    def _do_connect(dbapi_connection, connection_record):
        # Disable the driver's own BEGIN handling so SAVEPOINT works
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _do_begin(conn):
        conn.exec_driver_sql("BEGIN")

    return engine


# ---------------------------------------------------------------------------
# Per-test database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_engine() -> AsyncGenerator[AsyncEngine, None]:
    """Create a fresh in-memory database with every table."""
    engine = _make_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(test_engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session on the per-test database."""
    session = AsyncSession(bind=test_engine, expire_on_commit=False)
    try:
        yield session
    finally:
        await session.close()


@pytest.fixture
def store(db_session: AsyncSession) -> SqlAlchemySubscriptionStore:
    return SqlAlchemySubscriptionStore(db_session)


# ---------------------------------------------------------------------------
# Configuration and gateway
# ---------------------------------------------------------------------------


@pytest.fixture
def test_settings() -> Settings:
    """Settings isolated from any local .env file."""
    return Settings(
        _env_file=None,
        stripe_secret_key="sk_test_cashier",
        stripe_webhook_secret="whsec_test_cashier",
        cashier_currency="eur",
        cashier_currency_symbol="€",
        cashier_plan_trial_days={"price_trial": 14},
    )


@pytest.fixture
def gateway() -> MagicMock:
    """Gateway double; every async operation is an AsyncMock."""
    return MagicMock(spec=StripeGateway)


# ---------------------------------------------------------------------------
# Convenience fixtures: billable user
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def test_user(db_session: AsyncSession) -> User:
    """Create and return a user that is not yet a Stripe customer."""
    unique = uuid.uuid4().hex[:8]
    user = User(email=f"billable-{unique}@test.com", name="Billable User")
    db_session.add(user)
    await db_session.flush()
    return user


@pytest_asyncio.fixture
async def customer_user(db_session: AsyncSession) -> User:
    """Create and return a user that is already a Stripe customer with a card."""
    unique = uuid.uuid4().hex[:8]
    user = User(
        email=f"customer-{unique}@test.com",
        name="Customer User",
        stripe_id=f"cus_{unique}",
        card_brand="Visa",
        card_last_four="4242",
    )
    db_session.add(user)
    await db_session.flush()
    return user


@pytest.fixture
def billable(test_user, gateway, store, test_settings) -> Billable:
    return Billable(test_user, gateway=gateway, store=store, config=test_settings)


@pytest.fixture
def customer_billable(customer_user, gateway, store, test_settings) -> Billable:
    return Billable(customer_user, gateway=gateway, store=store, config=test_settings)
