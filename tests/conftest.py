"""
Pytest configuration and fixtures

Store-backed tests run against a fresh in-memory SQLite database per test
(StaticPool keeps the single connection alive across sessions).
"""
import pytest
import os
import sys
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add src to path
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Set test environment variables before importing
os.environ["ENV"] = "test"
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["CORS_ORIGINS"] = "http://localhost:3000"
os.environ["LOG_LEVEL"] = "WARNING"  # Reduce log noise in tests

# Import after setting env vars
from license_billing.app import create_app
from license_billing.db import Base, get_db
from license_billing.services.license_service import LicenseService


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


@pytest.fixture(scope="function")
def test_engine():
    """Fresh schema for every test"""
    engine = create_engine(
        "sqlite:///:memory:",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def session_factory(test_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_engine)


@pytest.fixture(scope="function")
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture(scope="session")
def app():
    return create_app()


@pytest.fixture(scope="function")
def client(app, session_factory):
    """TestClient with get_db bound to the per-test database"""
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def make_license(db_session):
    """Factory for persisted licenses; keyword arguments override the defaults"""
    def _make(**overrides):
        data = {
            "tenant_id": 1,
            "license_type": "standard",
            "billing_cycle_months": 1,
            "base_price_usd": Decimal("3.00"),
            "minimum_seats": 5,
            "billing_currency_code": "USD",
            "current_period_start": utc(2024, 1, 1),
            "current_period_end": utc(2024, 1, 31),
            "initial_seats": 10,
        }
        data.update(overrides)
        return LicenseService(db_session).create_license(data)

    return _make
