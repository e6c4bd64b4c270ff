from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict


class InvoiceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    opportunity_id: uuid.UUID
    lead_id: uuid.UUID
    amount: Decimal
    deposit_amount: Decimal | None
    amount_due: Decimal
    currency: str
    status: str
    checkout_url: str | None
    paid_at: datetime | None
    created_at: datetime


class PaymentWebhookResponse(BaseModel):
    received: bool
    event_type: str
    status: str
    payment_id: uuid.UUID | None = None
    invoice_id: uuid.UUID | None = None
    opportunity_id: uuid.UUID | None = None
    stage_advanced: bool = False
