from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

from opentelemetry import trace
from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from salesflow import events
from salesflow.core.clock import utcnow
from salesflow.core.config import get_settings
from salesflow.errors import Conflict, NotFound, StorageFailure, ValidationFailed
from salesflow.metrics import observe_payment_reconciled
from salesflow.payments.gateway import PaymentGateway, build_payment_gateway, from_minor_units
from salesflow.payments.models import Invoice, Payment
from salesflow.pipeline.models import Opportunity
from salesflow.pipeline.service import StageTransitionController, TransitionCommand, get_opportunity, stage_controller
from salesflow.pipeline.stages import Stage


logger = logging.getLogger("salesflow.payments")
tracer = trace.get_tracer("salesflow.payments.service")

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"


class InvoiceService:
    def __init__(self, gateway: PaymentGateway | None = None) -> None:
        self._gateway = gateway

    @property
    def gateway(self) -> PaymentGateway:
        if self._gateway is None:
            self._gateway = build_payment_gateway(get_settings())
        return self._gateway

    def list_for_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> list[Invoice]:
        return list(
            session.scalars(select(Invoice).where(Invoice.opportunity_id == opportunity_id).order_by(Invoice.created_at.desc()))
        )

    def create_deposit_invoice(self, session: Session, opportunity: Opportunity) -> Invoice:
        """Pending deposit invoice for the opportunity. Returns the existing one when already raised."""
        existing = session.scalar(
            select(Invoice).where(and_(Invoice.opportunity_id == opportunity.id, Invoice.status == "pending"))
        )
        if existing is not None:
            return existing
        if opportunity.value_estimate is None:
            raise ValidationFailed("opportunity has no value estimate to invoice against")

        settings = get_settings()
        amount = Decimal(opportunity.value_estimate).quantize(Decimal("0.01"))
        deposit = (amount * settings.deposit_ratio).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        invoice = Invoice(
            opportunity_id=opportunity.id,
            lead_id=opportunity.lead_id,
            amount=amount,
            deposit_amount=deposit,
            currency=settings.currency,
            status="pending",
        )
        session.add(invoice)
        session.commit()
        session.refresh(invoice)
        logger.info("payments.invoice_created", extra={"invoice_id": str(invoice.id), "opportunity_id": str(opportunity.id)})
        return invoice

    def create_checkout(self, session: Session, invoice_id: uuid.UUID) -> Invoice:
        invoice = session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFound("invoice not found", details={"invoice_id": str(invoice_id)})
        if invoice.status != "pending":
            raise Conflict(f"invoice is already {invoice.status}")
        if invoice.checkout_url:
            return invoice

        checkout = self.gateway.create_checkout_session(
            invoice.amount_due,
            invoice.currency,
            {"invoice_id": str(invoice.id), "opportunity_id": str(invoice.opportunity_id)},
            description="Project deposit",
        )
        invoice.checkout_session_id = checkout.session_id
        invoice.checkout_url = checkout.url
        session.add(invoice)
        session.commit()
        session.refresh(invoice)
        return invoice


@dataclass(frozen=True)
class ReconciliationResult:
    event_type: str
    status: str
    payment_id: uuid.UUID | None = None
    invoice_id: uuid.UUID | None = None
    opportunity_id: uuid.UUID | None = None
    stage_advanced: bool = False


def _mapping(value: Any, field_name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationFailed(f"payment event {field_name} must be an object", details={"field": field_name})
    return value


def _received_amount(value: Any) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, str)):
        raise ValidationFailed("payment amount must be an integer in minor units", details={"field": "amount_received"})
    try:
        amount = from_minor_units(value)
    except ArithmeticError:
        raise ValidationFailed("payment amount is not a number", details={"field": "amount_received"}) from None
    if not amount.is_finite() or amount < 0:
        raise ValidationFailed("payment amount is out of range", details={"field": "amount_received"})
    return amount

class PaymentReconciliation:
    def __init__(self, controller: StageTransitionController | None = None) -> None:
        self.controller = controller or stage_controller

    def handle_event(self, session: Session, event: dict[str, Any]) -> ReconciliationResult:
        event_type = str(event.get("type") or "")
        data_object = _mapping(_mapping(event.get("data"), "data").get("object"), "data.object")
        with tracer.start_as_current_span("payments.reconcile") as span:
            span.set_attribute("event_type", event_type)
            if event_type == PAYMENT_SUCCEEDED:
                return self._payment_succeeded(session, data_object)
            if event_type == PAYMENT_FAILED:
                error = _mapping(data_object.get("last_payment_error"), "last_payment_error").get("message")
                logger.warning("payments.payment_failed", extra={"status": "failed", "error": str(error or "unknown")})
                observe_payment_reconciled("payment_failed")
                return ReconciliationResult(event_type=event_type, status="logged")
        observe_payment_reconciled("ignored")
        return ReconciliationResult(event_type=event_type, status="ignored")

    def _payment_succeeded(self, session: Session, intent: dict[str, Any]) -> ReconciliationResult:
        external_id = str(intent.get("id") or "")
        metadata = _mapping(intent.get("metadata"), "metadata")
        invoice_raw = metadata.get("invoice_id")
        if not external_id or not invoice_raw:
            raise ValidationFailed("payment event is missing the payment id or invoice reference")
        try:
            invoice_id = uuid.UUID(str(invoice_raw))
        except ValueError:
            raise ValidationFailed("invoice reference is not a valid id") from None
        minor_amount = intent.get("amount_received", intent.get("amount"))
        received = _received_amount(minor_amount) if minor_amount is not None else None

        duplicate = session.scalar(select(Payment).where(Payment.external_id == external_id))
        if duplicate is not None:
            observe_payment_reconciled("duplicate")
            return ReconciliationResult(
                event_type=PAYMENT_SUCCEEDED,
                status="duplicate",
                payment_id=duplicate.id,
                invoice_id=duplicate.invoice_id,
                opportunity_id=duplicate.opportunity_id,
            )

        invoice = session.get(Invoice, invoice_id)
        if invoice is None:
            raise NotFound("invoice not found", details={"invoice_id": str(invoice_id)})

        amount = received if received is not None else invoice.amount_due
        now = utcnow()
        payment = Payment(
            invoice_id=invoice.id,
            opportunity_id=invoice.opportunity_id,
            external_id=external_id,
            amount=amount,
            currency=str(intent.get("currency") or invoice.currency),
            payment_method="stripe",
            received_at=now,
        )
        invoice.status = "paid"
        invoice.paid_at = now
        session.add_all([payment, invoice])
        try:
            session.commit()
        except IntegrityError:
            # a concurrent delivery of the same event won the insert
            session.rollback()
            observe_payment_reconciled("duplicate")
            return ReconciliationResult(event_type=PAYMENT_SUCCEEDED, status="duplicate", invoice_id=invoice_id)
        except SQLAlchemyError as exc:
            session.rollback()
            raise StorageFailure("could not record payment") from exc

        opportunity_id = invoice.opportunity_id
        payment_id = payment.id
        logger.info("payments.payment_recorded", extra={"invoice_id": str(invoice_id), "opportunity_id": str(opportunity_id)})
        events.publish(
            events.build_envelope(
                "payments.payment_recorded",
                {"payment_id": str(payment_id), "invoice_id": str(invoice_id), "amount": str(amount)},
            )
        )

        advanced = self._advance_if_awaiting_deposit(session, opportunity_id, external_id)
        observe_payment_reconciled("advanced" if advanced else "recorded")
        return ReconciliationResult(
            event_type=PAYMENT_SUCCEEDED,
            status="recorded",
            payment_id=payment_id,
            invoice_id=invoice_id,
            opportunity_id=opportunity_id,
            stage_advanced=advanced,
        )

    def _advance_if_awaiting_deposit(self, session: Session, opportunity_id: uuid.UUID, external_id: str) -> bool:
        opportunity = get_opportunity(session, opportunity_id)
        if opportunity.stage != Stage.AWAITING_DEPOSIT.value:
            logger.info(
                "payments.stage_unchanged",
                extra={"opportunity_id": str(opportunity_id), "from_stage": opportunity.stage, "status": "not_awaiting_deposit"},
            )
            return False
        try:
            self.controller.transition(
                session,
                TransitionCommand(
                    opportunity_id=opportunity_id,
                    to_stage=Stage.DEPOSIT_PAID,
                    actor_id=None,
                    rationale=f"Deposit received via payment {external_id}",
                    expected_from_stage=Stage.AWAITING_DEPOSIT,
                ),
            )
        except Conflict:
            logger.warning("payments.stage_advance_conflict", extra={"opportunity_id": str(opportunity_id)})
            return False
        return True


invoice_service = InvoiceService()
payment_reconciliation = PaymentReconciliation()
