from __future__ import annotations

import json
import uuid
from collections.abc import Generator
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesflow import events
from salesflow.core.config import get_settings
from salesflow.core.database import Base, get_db
from salesflow.errors import NotFound, ValidationFailed
from salesflow.main import app
from salesflow.middleware.rate_limit import reset_rate_limiter
from salesflow.payments.gateway import from_minor_units, sign_payload, to_minor_units, verify_signature
from salesflow.payments.models import Invoice, Payment
from salesflow.payments.service import InvoiceService, PaymentReconciliation
from salesflow.pipeline.leads import lead_intake_service
from salesflow.pipeline.schemas import LeadIntakeRequest
from salesflow.pipeline.service import TransitionCommand, get_opportunity, list_stage_log, stage_controller
from salesflow.pipeline.stages import Stage


PAYMENT_SECRET = "whsec_test_secret"


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
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", PAYMENT_SECRET)
    get_settings.cache_clear()
    reset_rate_limiter()
    events.published_events.clear()
    yield
    get_settings.cache_clear()
    reset_rate_limiter()


@pytest.fixture()
def client(db_session: Session) -> Generator[TestClient, None, None]:
    def override_get_db() -> Generator[Session, None, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _invoice_at(session: Session, stage: Stage) -> Invoice:
    result = lead_intake_service.intake(
        session, LeadIntakeRequest(name="Jordan Smith", email="jordan@example.com", value_estimate=Decimal("8000"))
    )
    if stage != Stage.NEW_ENQUIRY:
        stage_controller.transition(session, TransitionCommand(result.opportunity_id, stage, "user-1"))
    return InvoiceService(gateway=None).create_deposit_invoice(session, get_opportunity(session, result.opportunity_id))


def _succeeded(invoice_id: uuid.UUID | str, *, payment_id: str = "pi_123", amount: int = 400000) -> dict:
    return {
        "id": "evt_1",
        "type": "payment_intent.succeeded",
        "data": {
            "object": {
                "id": payment_id,
                "amount_received": amount,
                "currency": "gbp",
                "metadata": {"invoice_id": str(invoice_id)},
            }
        },
    }


def test_signature_roundtrip_and_rejections() -> None:
    body = b'{"type":"payment_intent.succeeded"}'
    header = sign_payload(body, PAYMENT_SECRET, timestamp=1_700_000_000)

    assert verify_signature(body, header, PAYMENT_SECRET, now=1_700_000_100)
    assert not verify_signature(body, header, PAYMENT_SECRET, now=1_700_000_400)
    assert not verify_signature(body + b" ", header, PAYMENT_SECRET, now=1_700_000_100)
    assert not verify_signature(body, header, "other-secret", now=1_700_000_100)
    assert not verify_signature(body, None, PAYMENT_SECRET)
    assert not verify_signature(body, "t=abc,v1=deadbeef", PAYMENT_SECRET)
    assert not verify_signature(body, header, "", now=1_700_000_100)
    rotated = f"t=1700000000,v1=0000,{header.split(',')[1]}"
    assert verify_signature(body, rotated, PAYMENT_SECRET, now=1_700_000_000)


def test_minor_unit_conversion() -> None:
    assert to_minor_units(Decimal("4000.005")) == 400001
    assert from_minor_units(400000) == Decimal("4000.00")
    assert from_minor_units("1999") == Decimal("19.99")


def test_deposit_invoice_amounts(db_session: Session) -> None:
    invoice = _invoice_at(db_session, Stage.AWAITING_DEPOSIT)

    assert invoice.amount == Decimal("8000.00")
    assert invoice.deposit_amount == Decimal("4000.00")
    assert invoice.amount_due == Decimal("4000.00")
    assert invoice.status == "pending"
    again = InvoiceService(gateway=None).create_deposit_invoice(db_session, get_opportunity(db_session, invoice.opportunity_id))
    assert again.id == invoice.id


def test_payment_at_awaiting_deposit_advances_stage(db_session: Session) -> None:
    invoice = _invoice_at(db_session, Stage.AWAITING_DEPOSIT)

    result = PaymentReconciliation().handle_event(db_session, _succeeded(invoice.id))

    assert result.status == "recorded"
    assert result.stage_advanced
    opportunity = get_opportunity(db_session, invoice.opportunity_id)
    assert opportunity.stage == "deposit_paid"
    assert opportunity.deposit_paid_at is not None
    last = list_stage_log(db_session, invoice.opportunity_id)[-1]
    assert (last.from_stage, last.to_stage) == ("awaiting_deposit", "deposit_paid")
    assert last.actor_id is None
    assert last.rationale == "Deposit received via payment pi_123"

    payment = db_session.scalar(select(Payment))
    assert payment.amount == Decimal("4000.00")
    assert db_session.get(Invoice, invoice.id).status == "paid"
    event_types = [event["event_type"] for event in events.published_events]
    assert event_types[-2:] == ["payments.payment_recorded", "pipeline.stage_entered"]


@pytest.mark.parametrize("stage", [Stage.PROPOSAL_AGREED, Stage.PRODUCTION])
def test_payment_at_other_stage_is_recorded_only(db_session: Session, stage: Stage) -> None:
    invoice = _invoice_at(db_session, stage)
    log_length = len(list_stage_log(db_session, invoice.opportunity_id))

    result = PaymentReconciliation().handle_event(db_session, _succeeded(invoice.id))

    assert result.status == "recorded"
    assert not result.stage_advanced
    assert get_opportunity(db_session, invoice.opportunity_id).stage == stage.value
    assert len(list_stage_log(db_session, invoice.opportunity_id)) == log_length
    assert db_session.scalar(select(Payment)) is not None


def test_redelivered_event_is_a_duplicate(db_session: Session) -> None:
    invoice = _invoice_at(db_session, Stage.AWAITING_DEPOSIT)
    reconciliation = PaymentReconciliation()

    first = reconciliation.handle_event(db_session, _succeeded(invoice.id))
    second = reconciliation.handle_event(db_session, _succeeded(invoice.id))

    assert second.status == "duplicate"
    assert second.payment_id == first.payment_id
    assert len(list(db_session.scalars(select(Payment)))) == 1
    assert len(list_stage_log(db_session, invoice.opportunity_id)) == 3


def test_malformed_and_unknown_events(db_session: Session) -> None:
    reconciliation = PaymentReconciliation()

    assert reconciliation.handle_event(db_session, {"type": "charge.refunded", "data": {}}).status == "ignored"
    failed = {"type": "payment_intent.payment_failed", "data": {"object": {"last_payment_error": {"message": "card declined"}}}}
    assert reconciliation.handle_event(db_session, failed).status == "logged"

    with pytest.raises(ValidationFailed):
        reconciliation.handle_event(db_session, {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1"}}})
    with pytest.raises(ValidationFailed):
        reconciliation.handle_event(db_session, _succeeded("not-a-uuid"))
    with pytest.raises(NotFound):
        reconciliation.handle_event(db_session, _succeeded(uuid.uuid4()))


def test_payment_webhook_rejects_bad_signature(client: TestClient, db_session: Session) -> None:
    invoice = _invoice_at(db_session, Stage.AWAITING_DEPOSIT)
    body = json.dumps(_succeeded(invoice.id)).encode("utf-8")

    response = client.post(
        "/api/webhooks/payments",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, "wrong-secret"), "Content-Type": "application/json"},
    )

    assert response.status_code == 401
    assert response.json()["code"] == "unauthorized"
    assert response.json()["details"] == {"operation": "payment_webhook"}
    assert db_session.scalar(select(Payment)) is None
    assert get_opportunity(db_session, invoice.opportunity_id).stage == "awaiting_deposit"


def test_payment_webhook_records_and_advances(client: TestClient, db_session: Session) -> None:
    invoice = _invoice_at(db_session, Stage.AWAITING_DEPOSIT)
    body = json.dumps(_succeeded(invoice.id, payment_id="pi_webhook")).encode("utf-8")

    response = client.post(
        "/api/webhooks/payments",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, PAYMENT_SECRET), "Content-Type": "application/json"},
    )

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "recorded"
    assert payload["stage_advanced"] is True
    assert payload["invoice_id"] == str(invoice.id)
    db_session.expire_all()
    assert get_opportunity(db_session, invoice.opportunity_id).stage == "deposit_paid"

    replay = client.post(
        "/api/webhooks/payments",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, PAYMENT_SECRET), "Content-Type": "application/json"},
    )
    assert replay.json()["status"] == "duplicate"


def test_payment_webhook_rejects_non_json(client: TestClient) -> None:
    body = b"not json"

    response = client.post("/api/webhooks/payments", content=body, headers={"Stripe-Signature": sign_payload(body, PAYMENT_SECRET)})

    assert response.status_code == 422
    assert response.json()["code"] == "validation"


@pytest.mark.parametrize(
    "event",
    [
        {"type": "payment_intent.succeeded", "data": "pi_123"},
        {"type": "payment_intent.succeeded", "data": {"object": ["pi_123"]}},
        {"type": "payment_intent.succeeded", "data": {"object": {"id": "pi_1", "metadata": "invoice"}}},
        {"type": "payment_intent.payment_failed", "data": {"object": {"last_payment_error": "declined"}}},
    ],
)
def test_non_object_event_sections_are_rejected(db_session: Session, event: dict) -> None:
    with pytest.raises(ValidationFailed):
        PaymentReconciliation().handle_event(db_session, event)


@pytest.mark.parametrize("amount", ["lots", "Infinity", "-100", 12.5, True, {"value": 1}])
def test_unusable_amount_is_rejected_before_recording(db_session: Session, amount: object) -> None:
    invoice = _invoice_at(db_session, Stage.AWAITING_DEPOSIT)
    event = _succeeded(invoice.id)
    event["data"]["object"]["amount_received"] = amount

    with pytest.raises(ValidationFailed):
        PaymentReconciliation().handle_event(db_session, event)

    assert db_session.scalar(select(Payment)) is None
    assert get_opportunity(db_session, invoice.opportunity_id).stage == "awaiting_deposit"


def test_payment_webhook_rejects_malformed_sections(client: TestClient, db_session: Session) -> None:
    invoice = _invoice_at(db_session, Stage.AWAITING_DEPOSIT)
    event = _succeeded(invoice.id)
    event["data"]["object"]["metadata"] = "not-a-mapping"
    body = json.dumps(event).encode("utf-8")

    response = client.post(
        "/api/webhooks/payments",
        content=body,
        headers={"Stripe-Signature": sign_payload(body, PAYMENT_SECRET), "Content-Type": "application/json"},
    )

    assert response.status_code == 422
    assert response.json()["code"] == "validation"
    assert db_session.scalar(select(Payment)) is None
