"""Shared test fixtures and configuration."""

import os
import pytest
from typing import Dict, Any

# Set up test environment variables before importing modules
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from stripe_gateway.config import GatewayConfig
from stripe_gateway.connectors import StripeSimulator
from stripe_gateway.database import (
    Base,
    create_async_engine,
    get_async_session_factory,
    UserRepository,
    OrderRepository,
)


BILLING = {
    "billing_first_name": "Jane",
    "billing_last_name": "Doe",
    "billing_email": "jane@example.com",
    "billing_phone": "555-0100",
    "billing_address_1": "1 Main St",
    "billing_city": "Springfield",
    "billing_state": "IL",
    "billing_postcode": "62701",
    "billing_country": "US",
}


def card_data(fingerprint: str, last4: str = "4242", brand: str = "visa") -> Dict[str, Any]:
    """Card details for StripeSimulator.add_payment_method."""
    return {
        "card": {
            "brand": brand,
            "last4": last4,
            "exp_month": 12,
            "exp_year": 2030,
            "fingerprint": fingerprint,
        }
    }


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    session_factory = get_async_session_factory(db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def simulator():
    return StripeSimulator()


@pytest.fixture
def config():
    """Test mode configuration with cards and SEPA enabled."""
    return GatewayConfig(
        stripe_api_key="sk_test_dummy_key_for_testing",
        api_key="test_api_key_12345",
        enabled_payment_methods=["card", "sepa_debit"],
    )


@pytest.fixture
def make_user(db_session):
    """Factory creating users with a full billing profile."""
    counter = {"n": 0}

    async def _make_user(**fields):
        counter["n"] += 1
        values = {
            "username": f"customer{counter['n']}",
            "email": f"customer{counter['n']}@example.com",
            "first_name": "Jane",
            "last_name": "Doe",
            **BILLING,
        }
        values.update(fields)
        return await UserRepository(db_session).create(**values)

    return _make_user


@pytest.fixture
def make_order(db_session):
    """Factory creating orders with a full billing address."""

    async def _make_order(total="12.00", currency="usd", **fields):
        values = dict(BILLING)
        values.update(fields)
        return await OrderRepository(db_session).create(currency=currency, total=total, **values)

    return _make_order


@pytest.fixture
def auth_headers():
    """Return headers with authentication."""
    return {"Authorization": "Bearer test_api_key_12345"}
