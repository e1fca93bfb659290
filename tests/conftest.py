"""Shared test fixtures."""

from collections.abc import Generator
from typing import Any

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from stcredit.api import create_app, limiter
from stcredit.auth import get_supabase_client
from stcredit.config import StCreditConfig
from stcredit.dependencies import get_app_config, get_repository
from stcredit.models import Invoice, PaymentRecord
from stcredit.repositories.memory import InMemoryBalanceRepository

TEST_SUPABASE_TOKEN = "test-supabase-jwt"
TEST_API_KEY = "test-api-key"


@pytest.fixture(autouse=True)
def mock_supabase_auth(
    monkeypatch: pytest.MonkeyPatch, request: pytest.FixtureRequest
) -> Generator[None, None, None]:
    """Mock Supabase JWT verification for offline tests."""
    if request.module.__name__.endswith("test_config"):
        yield
        return

    def _fake_fetch_supabase_user(token: str, client: object) -> dict[str, str]:
        _ = client
        if token == TEST_SUPABASE_TOKEN:
            return {"id": "test-user-id", "email": "operator@example.com"}
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    monkeypatch.setattr("stcredit.auth.fetch_supabase_user", _fake_fetch_supabase_user)
    yield


@pytest.fixture
def repository() -> InMemoryBalanceRepository:
    return InMemoryBalanceRepository()


@pytest.fixture
def payments() -> list[PaymentRecord]:
    return [
        PaymentRecord(
            guia_id="g-1",
            note_number="000123",
            status="UTILIZAVEL",
            icms_proprio_credit="10,00",
            icms_st_credit="20,00",
        ),
        PaymentRecord(
            guia_id="g-2",
            note_number="124",
            status="UTILIZAVEL",
            icms_proprio_credit=5.0,
            icms_st_credit=15.0,
        ),
        PaymentRecord(guia_id="g-3", note_number="125", status="NAO PAGO"),
    ]


@pytest.fixture
def invoices() -> list[Invoice]:
    return [
        Invoice(note_number="123", quantity=100),
        Invoice(note_number="0124", quantity=50),
        Invoice(note_number="125", quantity=30),
    ]


@pytest.fixture
def api_test_config() -> StCreditConfig:
    """Provide a test-owned API config instance for dependency overrides."""
    return StCreditConfig(
        _env_file=None,
        storage_backend="memory",
        api_keys=TEST_API_KEY,
        allowed_origins="http://localhost:5173",
        operator_id="test-operator",
    )


@pytest.fixture
def api_test_app(
    api_test_config: StCreditConfig,
    repository: InMemoryBalanceRepository,
) -> Generator[Any, None, None]:
    """Create a fresh FastAPI app with explicit dependency overrides."""
    limiter.reset()
    app = create_app(api_test_config)
    app.dependency_overrides[get_app_config] = lambda: api_test_config
    app.dependency_overrides[get_repository] = lambda: repository
    app.dependency_overrides[get_supabase_client] = lambda: object()
    try:
        yield app
    finally:
        app.dependency_overrides.clear()
        limiter.reset()


@pytest.fixture
def api_test_client(api_test_app: Any) -> Generator[TestClient, None, None]:
    """Create a TestClient for the overridden API app."""
    with TestClient(api_test_app) as client:
        yield client


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {"Authorization": f"Bearer {TEST_SUPABASE_TOKEN}"}
