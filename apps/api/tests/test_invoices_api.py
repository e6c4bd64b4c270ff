from __future__ import annotations

from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesflow.core.auth import AuthUser, get_current_user
from salesflow.core.config import get_settings
from salesflow.core.database import Base, get_db
from salesflow.main import app
from salesflow.middleware.rate_limit import reset_rate_limiter
from salesflow.payments.gateway import CheckoutSession, UnavailableGateway
from salesflow.payments.service import invoice_service


WEBHOOK_SECRET = "invoice-hook-secret"


class FakeGateway:
    def __init__(self) -> None:
        self.calls: list[tuple[Decimal, str, dict[str, str]]] = []

    def create_checkout_session(
        self, amount: Decimal, currency: str, metadata: dict[str, str], *, description: str
    ) -> CheckoutSession:
        self.calls.append((amount, currency, metadata))
        return CheckoutSession(session_id=f"cs_test_{len(self.calls)}", url="https://pay.example.com/cs_test")


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def setup_env(monkeypatch: pytest.MonkeyPatch) -> Generator[None, None, None]:
    monkeypatch.setenv("RATE_LIMIT_DISABLED", "true")
    monkeypatch.setenv("WEBHOOK_SECRET", WEBHOOK_SECRET)
    get_settings.cache_clear()
    reset_rate_limiter()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def gateway(monkeypatch: pytest.MonkeyPatch) -> FakeGateway:
    fake = FakeGateway()
    monkeypatch.setattr(invoice_service, "_gateway", fake)
    return fake


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    def override_get_current_user() -> AuthUser:
        return AuthUser(sub="user-1", roles=["sales"])

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_current_user] = override_get_current_user
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _create_opportunity(client: TestClient, value_estimate: str | None = "10000") -> str:
    payload: dict[str, str] = {"name": "Morgan Price", "email": "morgan@example.com"}
    if value_estimate is not None:
        payload["value_estimate"] = value_estimate
    response = client.post("/api/webhooks/leads", json=payload, headers={"X-Webhook-Secret": WEBHOOK_SECRET})
    assert response.status_code == 201
    return response.json()["opportunity_id"]


def test_deposit_invoice_is_raised_once(client: TestClient, gateway: FakeGateway) -> None:
    opportunity_id = _create_opportunity(client)

    first = client.post(f"/api/crm/opportunities/{opportunity_id}/invoices")
    assert first.status_code == 201
    body = first.json()
    assert Decimal(body["amount"]) == Decimal("10000")
    assert Decimal(body["amount_due"]) == Decimal("5000")
    assert body["status"] == "pending"
    assert body["checkout_url"] is None

    second = client.post(f"/api/crm/opportunities/{opportunity_id}/invoices")
    assert second.status_code == 201
    assert second.json()["id"] == body["id"]

    listed = client.get(f"/api/crm/opportunities/{opportunity_id}/invoices")
    assert [item["id"] for item in listed.json()] == [body["id"]]


def test_invoice_needs_value_estimate(client: TestClient, gateway: FakeGateway) -> None:
    opportunity_id = _create_opportunity(client, value_estimate=None)

    response = client.post(f"/api/crm/opportunities/{opportunity_id}/invoices")

    assert response.status_code == 422
    assert response.json()["code"] == "validation"
    assert response.json()["details"]["operation"] == "create_invoice"


def test_checkout_link_is_created_once(client: TestClient, gateway: FakeGateway) -> None:
    opportunity_id = _create_opportunity(client)
    invoice_id = client.post(f"/api/crm/opportunities/{opportunity_id}/invoices").json()["id"]

    first = client.post(f"/api/crm/invoices/{invoice_id}/checkout")
    second = client.post(f"/api/crm/invoices/{invoice_id}/checkout")

    assert first.status_code == 200
    assert first.json()["checkout_url"] == "https://pay.example.com/cs_test"
    assert second.json()["checkout_url"] == "https://pay.example.com/cs_test"
    assert len(gateway.calls) == 1
    amount, currency, metadata = gateway.calls[0]
    assert amount == Decimal("5000")
    assert currency == get_settings().currency
    assert metadata == {"invoice_id": invoice_id, "opportunity_id": opportunity_id}


def test_checkout_without_provider_is_external_failure(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(invoice_service, "_gateway", UnavailableGateway())
    opportunity_id = _create_opportunity(client)
    invoice_id = client.post(f"/api/crm/opportunities/{opportunity_id}/invoices").json()["id"]

    response = client.post(f"/api/crm/invoices/{invoice_id}/checkout")

    assert response.status_code == 502
    assert response.json()["code"] == "external_failure"
    listed = client.get(f"/api/crm/opportunities/{opportunity_id}/invoices").json()
    assert listed[0]["checkout_url"] is None
