"""
Pytest configuration and shared fixtures for marketplace tests.

WHAT: Centralized test configuration with markers and component fixtures
WHY: Enable test organization, filtering, and isolated in-memory components per test
HOW: Register pytest markers; build Settings, database, stores and registry per test
"""

import asyncio

import pytest

from agent_market.core.config import Settings
from agent_market.core.database import Database
from agent_market.core.listing_store import ListingStore
from agent_market.core.payments import PaymentRepository
from agent_market.core.registry import AgentRegistry
from agent_market.core.session_archive import SessionArchive
from agent_market.models.listing import ListingDraft


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "unit: Unit tests (isolated component tests)"
    )
    config.addinivalue_line(
        "markers", "integration: Integration tests (multiple components)"
    )
    config.addinivalue_line(
        "markers", "slow: Tests that take significant time to run"
    )


def make_settings(tmp_path=None, **overrides) -> Settings:
    """
    Test settings isolated from the environment and .env.

    Retries have no delay so failure paths stay fast.
    """
    values = {
        "DATABASE_URL": "sqlite://",
        "ORACLE_MODE": "rules",
        "DISCOVERY_MODE": "local",
        "SETTLEMENT_MODE": "local",
        "A2A_API_KEY": "",
        "EXTERNAL_RETRY_DELAY": 0.0,
        "LLM_RETRY_DELAY": 0.0,
        "LOG_LEVEL": "DEBUG",
    }
    if tmp_path is not None:
        values["LOG_FILE"] = str(tmp_path / "logs" / "app.log")
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def db():
    """Fresh in-memory database per test."""
    database = Database("sqlite://")
    database.init()
    yield database
    database.close()


@pytest.fixture
def store(db) -> ListingStore:
    return ListingStore(db)


@pytest.fixture
def payments(db) -> PaymentRepository:
    return PaymentRepository(db)


@pytest.fixture
def archive(db) -> SessionArchive:
    return SessionArchive(db)


@pytest.fixture
def camera_draft() -> ListingDraft:
    return ListingDraft(
        title="Vintage film camera",
        description="35mm rangefinder camera, fully working",
        price="100.00",
        currency="HBAR",
        condition="good",
        category="cameras",
    )


@pytest.fixture
def active_listing(store, camera_draft):
    """An active listing owned by seller-agent."""
    listing = store.create_with_id("listing-camera", camera_draft, "seller-agent", "0.0.2002")
    return store.publish(listing.listing_id)


@pytest.fixture
def registry(test_settings):
    """
    Started agent registry with in-process transport and local ledger.

    WHAT: Full component graph on an in-memory database
    WHY: Integration tests exercise buyer and seller through the real protocol
    HOW: AgentRegistry.start(); shutdown after the test
    """
    reg = AgentRegistry(test_settings).start()
    yield reg
    asyncio.run(reg.shutdown())
