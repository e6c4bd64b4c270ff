from __future__ import annotations

import json
import logging
import uuid

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from salesflow.api.responses import pipeline_error_response
from salesflow.core.auth import AuthUser, get_current_user
from salesflow.core.config import get_settings
from salesflow.core.database import get_db
from salesflow.core.rbac import SALES_ROLES, require_role
from salesflow.errors import PipelineError, Unauthorized, ValidationFailed
from salesflow.payments.gateway import verify_signature
from salesflow.payments.schemas import InvoiceRead, PaymentWebhookResponse
from salesflow.payments.service import invoice_service, payment_reconciliation
from salesflow.pipeline.service import get_opportunity

logger = logging.getLogger("salesflow.payments.api")

payment_webhook_router = APIRouter(prefix="/api/webhooks", tags=["webhooks.payments"])
invoices_router = APIRouter(prefix="/api/crm", tags=["crm.invoices"])


@payment_webhook_router.post("/payments", response_model=PaymentWebhookResponse)
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
) -> PaymentWebhookResponse | JSONResponse:
    payload = await request.body()
    settings = get_settings()
    try:
        if not verify_signature(
            payload,
            request.headers.get("stripe-signature"),
            settings.stripe_webhook_secret,
            tolerance_seconds=settings.stripe_signature_tolerance_seconds,
        ):
            logger.warning("payments.webhook_rejected", extra={"status": "invalid_signature"})
            raise Unauthorized("invalid payment webhook signature")
        try:
            event = json.loads(payload)
        except ValueError:
            raise ValidationFailed("payment webhook body is not valid JSON") from None
        if not isinstance(event, dict):
            raise ValidationFailed("payment webhook body must be an object")

        result = payment_reconciliation.handle_event(db, event)
        return PaymentWebhookResponse(
            received=True,
            event_type=result.event_type,
            status=result.status,
            payment_id=result.payment_id,
            invoice_id=result.invoice_id,
            opportunity_id=result.opportunity_id,
            stage_advanced=result.stage_advanced,
        )
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="payment_webhook")


@invoices_router.get("/opportunities/{opportunity_id}/invoices", response_model=list[InvoiceRead])
def list_invoices(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[InvoiceRead] | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        get_opportunity(db, opportunity_id)
        return invoice_service.list_for_opportunity(db, opportunity_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="list_invoices")


@invoices_router.post(
    "/opportunities/{opportunity_id}/invoices", response_model=InvoiceRead, status_code=status.HTTP_201_CREATED
)
def create_deposit_invoice(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> InvoiceRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return invoice_service.create_deposit_invoice(db, get_opportunity(db, opportunity_id))
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="create_invoice")


@invoices_router.post("/invoices/{invoice_id}/checkout", response_model=InvoiceRead)
def create_checkout(
    request: Request,
    invoice_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> InvoiceRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return invoice_service.create_checkout(db, invoice_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="create_checkout")
