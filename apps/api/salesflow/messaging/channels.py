from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Protocol

import httpx
from opentelemetry import trace
from twilio.base.exceptions import TwilioException, TwilioRestException
from twilio.http.http_client import TwilioHttpClient
from twilio.rest import Client

from salesflow.context import get_correlation_id
from salesflow.core.config import Settings


logger = logging.getLogger("salesflow.messaging.channels")
tracer = trace.get_tracer("salesflow.messaging.channels")

RESEND_API_URL = "https://api.resend.com/emails"


@dataclass(frozen=True)
class SendResult:
    success: bool
    external_id: str | None = None
    error: str | None = None


class ChannelSender(Protocol):
    def send(self, to: str, subject: str | None, body: str) -> SendResult: ...


class ResendEmailSender:
    def __init__(self, api_key: str, from_email: str, timeout: float) -> None:
        self.api_key = api_key
        self.from_email = from_email
        self.timeout = timeout

    def send(self, to: str, subject: str | None, body: str) -> SendResult:
        with tracer.start_as_current_span("messaging.email.send") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                response = httpx.post(
                    RESEND_API_URL,
                    headers={"Authorization": f"Bearer {self.api_key}"},
                    json={"from": self.from_email, "to": [to], "subject": subject or "", "text": body},
                    timeout=self.timeout,
                )
            except httpx.HTTPError as exc:
                return SendResult(success=False, error=f"email transport error: {exc}")
            if response.status_code >= 400:
                return SendResult(success=False, error=f"email rejected ({response.status_code}): {response.text[:300]}")
            return SendResult(success=True, external_id=str(response.json().get("id") or ""))


class TwilioSender:
    """SMS and WhatsApp both go through the Twilio Messages API; WhatsApp numbers carry a prefix."""

    def __init__(self, client: Client, from_number: str, *, whatsapp: bool = False) -> None:
        self.client = client
        self.from_number = from_number
        self.whatsapp = whatsapp

    def _address(self, number: str) -> str:
        return f"whatsapp:{number}" if self.whatsapp and not number.startswith("whatsapp:") else number

    def send(self, to: str, subject: str | None, body: str) -> SendResult:
        channel = "whatsapp" if self.whatsapp else "sms"
        with tracer.start_as_current_span(f"messaging.{channel}.send") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                message = self.client.messages.create(body=body, from_=self._address(self.from_number), to=self._address(to))
            except TwilioRestException as exc:
                return SendResult(success=False, error=f"{channel} rejected ({exc.status}): {str(exc.msg)[:300]}")
            except TwilioException as exc:
                return SendResult(success=False, error=f"{channel} transport error: {exc}")
            return SendResult(success=True, external_id=str(message.sid or ""))


class LoggingSender:
    """Used when a channel has no credentials outside production. Logs instead of sending."""

    def __init__(self, channel: str) -> None:
        self.channel = channel

    def send(self, to: str, subject: str | None, body: str) -> SendResult:
        logger.info("messaging.stub_send", extra={"channel": self.channel, "status": "logged"})
        return SendResult(success=True, external_id=f"stub-{uuid.uuid4()}")


class UnconfiguredSender:
    def __init__(self, channel: str) -> None:
        self.channel = channel

    def send(self, to: str, subject: str | None, body: str) -> SendResult:
        return SendResult(success=False, error=f"{self.channel} channel is not configured")


def build_channel_senders(settings: Settings) -> dict[str, ChannelSender]:
    production = settings.app_env.lower() in {"prod", "production"}

    def fallback(channel: str) -> ChannelSender:
        return UnconfiguredSender(channel) if production else LoggingSender(channel)

    timeout = settings.external_timeout_seconds
    senders: dict[str, ChannelSender] = {}
    if settings.resend_api_key:
        senders["email"] = ResendEmailSender(settings.resend_api_key, settings.resend_from_email, timeout)
    else:
        senders["email"] = fallback("email")

    twilio: Client | None = None
    if settings.twilio_account_sid and settings.twilio_auth_token:
        twilio = Client(settings.twilio_account_sid, settings.twilio_auth_token, http_client=TwilioHttpClient(timeout=timeout))
    if twilio is not None and settings.twilio_sms_from:
        senders["sms"] = TwilioSender(twilio, settings.twilio_sms_from)
    else:
        senders["sms"] = fallback("sms")
    if twilio is not None and settings.twilio_whatsapp_from:
        senders["whatsapp"] = TwilioSender(twilio, settings.twilio_whatsapp_from, whatsapp=True)
    else:
        senders["whatsapp"] = fallback("whatsapp")
    return senders
