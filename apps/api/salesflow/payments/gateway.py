from __future__ import annotations

import hashlib
import hmac
import time
import uuid
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

import httpx
from opentelemetry import trace

from salesflow.context import get_correlation_id
from salesflow.core.config import Settings
from salesflow.errors import ExternalFailure


tracer = trace.get_tracer("salesflow.payments.gateway")


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str


class PaymentGateway(Protocol):
    def create_checkout_session(self, amount: Decimal, currency: str, metadata: dict[str, str], *, description: str) -> CheckoutSession: ...


def to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_minor_units(value: int | str) -> Decimal:
    return (Decimal(str(value)) / Decimal(100)).quantize(Decimal("0.01"))


class StripeGateway:
    def __init__(self, secret_key: str, api_base: str, site_url: str, timeout: float) -> None:
        self.secret_key = secret_key
        self.api_base = api_base.rstrip("/")
        self.site_url = site_url.rstrip("/")
        self.timeout = timeout

    def create_checkout_session(self, amount: Decimal, currency: str, metadata: dict[str, str], *, description: str) -> CheckoutSession:
        form: dict[str, str] = {
            "mode": "payment",
            "success_url": f"{self.site_url}/payment/success?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": f"{self.site_url}/payment/cancelled",
            "line_items[0][quantity]": "1",
            "line_items[0][price_data][currency]": currency.lower(),
            "line_items[0][price_data][unit_amount]": str(to_minor_units(amount)),
            "line_items[0][price_data][product_data][name]": description,
        }
        for key, value in metadata.items():
            form[f"metadata[{key}]"] = value
            # payment_intent events only carry the intent's own metadata
            form[f"payment_intent_data[metadata][{key}]"] = value

        with tracer.start_as_current_span("payments.checkout.create") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                response = httpx.post(
                    f"{self.api_base}/checkout/sessions",
                    auth=(self.secret_key, ""),
                    data=form,
                    headers={"Idempotency-Key": metadata.get("invoice_id") or str(uuid.uuid4())},
                    timeout=self.timeout,
                )
            except httpx.HTTPError as exc:
                raise ExternalFailure(f"payment provider unreachable: {exc}") from exc
            if response.status_code >= 400:
                raise ExternalFailure(
                    "payment provider rejected checkout session",
                    details={"status_code": response.status_code, "body": response.text[:300]},
                )
            body = response.json()
            return CheckoutSession(session_id=str(body["id"]), url=str(body["url"]))


class UnavailableGateway:
    def create_checkout_session(self, amount: Decimal, currency: str, metadata: dict[str, str], *, description: str) -> CheckoutSession:
        raise ExternalFailure("payment provider is not configured")


def build_payment_gateway(settings: Settings) -> PaymentGateway:
    if not settings.stripe_secret_key:
        return UnavailableGateway()
    return StripeGateway(settings.stripe_secret_key, settings.stripe_api_base, settings.site_url, settings.external_timeout_seconds)


def verify_signature(
    payload: bytes,
    signature_header: str | None,
    secret: str,
    *,
    tolerance_seconds: int = 300,
    now: float | None = None,
) -> bool:
    """Check a `t=<ts>,v1=<hex>` header: HMAC-SHA256 over "<ts>.<payload>" within the tolerance window."""
    if not signature_header or not secret:
        return False

    timestamp: str | None = None
    candidates: list[str] = []
    for part in signature_header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            candidates.append(value)
    if timestamp is None or not candidates:
        return False

    try:
        issued_at = int(timestamp)
    except ValueError:
        return False
    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - issued_at) > tolerance_seconds:
        return False

    signed = timestamp.encode("utf-8") + b"." + payload
    expected = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return any(hmac.compare_digest(expected, candidate) for candidate in candidates)


def sign_payload(payload: bytes, secret: str, *, timestamp: int | None = None) -> str:
    issued_at = int(time.time()) if timestamp is None else timestamp
    digest = hmac.new(secret.encode("utf-8"), f"{issued_at}.".encode("utf-8") + payload, hashlib.sha256).hexdigest()
    return f"t={issued_at},v1={digest}"
