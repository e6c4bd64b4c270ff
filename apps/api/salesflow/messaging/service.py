from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from salesflow.context import reset_sweep_name, set_sweep_name
from salesflow.core.clock import as_utc, utcnow
from salesflow.core.config import get_settings
from salesflow.errors import Conflict, NotFound, ValidationFailed
from salesflow.meetings.models import Booking, BookingOutcome
from salesflow.messaging.channels import ChannelSender, build_channel_senders
from salesflow.messaging.models import MessageLogEntry, MessageTemplate
from salesflow.messaging.schemas import (
    AdHocMessageRequest,
    MessageTemplateCreate,
    MessageTemplateUpdate,
    TemplatePreviewResponse,
)
from salesflow.messaging.templates import (
    DEFAULT_TEMPLATES,
    DELAY_AFTER,
    DELAY_BEFORE_BOOKING,
    interpolate,
    placeholders,
)
from salesflow.metrics import observe_message_dispatch, observe_sweep
from salesflow.payments.models import Invoice
from salesflow.pipeline.models import Lead, SalesUser
from salesflow.pipeline.stages import Stage


logger = logging.getLogger("salesflow.messaging")
tracer = trace.get_tracer("salesflow.messaging.service")

_CURRENCY_SYMBOLS = {"gbp": "£", "eur": "€", "usd": "$"}


def format_amount(amount: Any, currency: str) -> str:
    symbol = _CURRENCY_SYMBOLS.get(currency.lower())
    if symbol:
        return f"{symbol}{amount:,.2f}"
    return f"{amount:,.2f} {currency.upper()}"


def build_variables(session: Session, lead: Lead, opportunity_id: uuid.UUID | None) -> dict[str, Any]:
    settings = get_settings()
    site_url = settings.site_url.rstrip("/")
    variables: dict[str, Any] = {
        "name": lead.name,
        "first_name": lead.first_name,
        "project_type": lead.project_type or "home improvement",
        "owner_name": "our team",
        "booking_link": f"{site_url}/book?lead={lead.id}",
        "review_link": f"{site_url}/review?lead={lead.id}",
    }
    if lead.owner_id is not None:
        owner = session.get(SalesUser, lead.owner_id)
        if owner is not None:
            variables["owner_name"] = owner.name

    if opportunity_id is None:
        return variables

    booking = session.scalar(
        select(Booking)
        .where(and_(Booking.opportunity_id == opportunity_id, Booking.outcome == BookingOutcome.PENDING.value))
        .order_by(Booking.scheduled_at.desc())
        .limit(1)
    )
    if booking is not None:
        scheduled_at = as_utc(booking.scheduled_at)
        variables["date"] = scheduled_at.strftime("%A %d %B")
        variables["time"] = scheduled_at.strftime("%H:%M")
        if booking.meet_link:
            variables["meet_link"] = booking.meet_link

    invoice = session.scalar(
        select(Invoice).where(Invoice.opportunity_id == opportunity_id).order_by(Invoice.created_at.desc()).limit(1)
    )
    if invoice is not None:
        variables["amount"] = format_amount(invoice.amount_due, invoice.currency)
        if invoice.checkout_url:
            variables["payment_link"] = invoice.checkout_url
    return variables


class MessageScheduler:
    def templates_for(
        self,
        session: Session,
        *,
        trigger_stage: str | None = None,
        trigger_event: str | None = None,
    ) -> list[MessageTemplate]:
        stmt = select(MessageTemplate).where(MessageTemplate.active.is_(True))
        if trigger_stage is not None:
            stmt = stmt.where(MessageTemplate.trigger_stage == trigger_stage)
        elif trigger_event is not None:
            stmt = stmt.where(MessageTemplate.trigger_event == trigger_event)
        else:
            return []
        return list(session.scalars(stmt.order_by(MessageTemplate.sort_order, MessageTemplate.slug)))

    def enqueue_for_stage(
        self,
        session: Session,
        lead: Lead,
        stage: Stage | str,
        *,
        opportunity_id: uuid.UUID | None = None,
        now: datetime | None = None,
    ) -> list[MessageLogEntry]:
        stage_value = stage.value if isinstance(stage, Stage) else str(stage)
        templates = self.templates_for(session, trigger_stage=stage_value)
        return self._enqueue(session, lead, templates, opportunity_id=opportunity_id, anchor_at=None, variables=None, now=now)

    def enqueue_for_event(
        self,
        session: Session,
        lead: Lead,
        event: str,
        *,
        opportunity_id: uuid.UUID | None = None,
        anchor_at: datetime | None = None,
        variables: Mapping[str, Any] | None = None,
        now: datetime | None = None,
    ) -> list[MessageLogEntry]:
        templates = self.templates_for(session, trigger_event=event)
        return self._enqueue(
            session, lead, templates, opportunity_id=opportunity_id, anchor_at=anchor_at, variables=variables, now=now
        )

    def enqueue_ad_hoc(
        self,
        session: Session,
        lead: Lead,
        request: AdHocMessageRequest,
        *,
        opportunity_id: uuid.UUID | None = None,
        actor_id: str | None = None,
    ) -> MessageLogEntry:
        if request.channel == "email" and not request.subject:
            raise ValidationFailed("email messages need a subject")
        entry = MessageLogEntry(
            lead_id=lead.id,
            opportunity_id=opportunity_id,
            template_id=None,
            channel=request.channel,
            status="queued",
            scheduled_for=request.scheduled_for or utcnow(),
            payload={"subject": request.subject, "body": request.body, "queued_by": actor_id},
        )
        session.add(entry)
        session.commit()
        session.refresh(entry)
        return entry

    def skip_queued_for_event(self, session: Session, opportunity_id: uuid.UUID, event: str, *, reason: str) -> int:
        """Retire still-queued messages of an event's templates, e.g. reminders anchored to a moved booking."""
        template_ids = [template.id for template in self.templates_for(session, trigger_event=event)]
        if not template_ids:
            return 0
        result = session.execute(
            update(MessageLogEntry)
            .where(
                and_(
                    MessageLogEntry.opportunity_id == opportunity_id,
                    MessageLogEntry.status == "queued",
                    MessageLogEntry.template_id.in_(template_ids),
                )
            )
            .values(status="skipped", error=reason, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return int(result.rowcount or 0)

    def _enqueue(
        self,
        session: Session,
        lead: Lead,
        templates: list[MessageTemplate],
        *,
        opportunity_id: uuid.UUID | None,
        anchor_at: datetime | None,
        variables: Mapping[str, Any] | None,
        now: datetime | None,
    ) -> list[MessageLogEntry]:
        reference = now or utcnow()
        entries: list[MessageLogEntry] = []
        for template in templates:
            scheduled_for = self._scheduled_for(template, reference, as_utc(anchor_at))
            if scheduled_for is None:
                logger.info("messages.enqueue_skipped", extra={"lead_id": str(lead.id), "status": template.slug})
                continue
            for channel in template.channels:
                entry = MessageLogEntry(
                    lead_id=lead.id,
                    opportunity_id=opportunity_id,
                    template_id=template.id,
                    channel=channel,
                    status="queued",
                    scheduled_for=scheduled_for,
                    payload={"template_slug": template.slug, "variables": dict(variables or {})},
                )
                session.add(entry)
                entries.append(entry)
        if entries:
            session.commit()
            logger.info("messages.enqueued", extra={"lead_id": str(lead.id), "processed": len(entries)})
        return entries

    def _scheduled_for(self, template: MessageTemplate, now: datetime, anchor_at: datetime | None) -> datetime | None:
        offset = timedelta(minutes=template.delay_minutes or 0)
        if template.delay_rule == DELAY_AFTER:
            return now + offset
        if template.delay_rule == DELAY_BEFORE_BOOKING:
            if anchor_at is None:
                return None
            scheduled = anchor_at - offset
            # reminders whose send time has already passed are dropped, not sent late
            return scheduled if scheduled > now else None
        return now


@dataclass(frozen=True)
class DispatchSummary:
    claimed: int
    sent: int
    failed: int
    skipped: int

    @property
    def processed(self) -> int:
        return self.sent + self.failed + self.skipped


@dataclass(frozen=True)
class QueueDepth:
    ready_to_send: int
    scheduled: int

    @property
    def total_queued(self) -> int:
        return self.ready_to_send + self.scheduled


class MessageDispatcher:
    """Claims due queued entries and moves each to exactly one terminal status."""

    def __init__(self, senders: Mapping[str, ChannelSender] | None = None) -> None:
        self._senders = dict(senders) if senders is not None else None

    @property
    def senders(self) -> Mapping[str, ChannelSender]:
        if self._senders is None:
            self._senders = build_channel_senders(get_settings())
        return self._senders

    def run_sweep(self, session: Session, *, limit: int | None = None, now: datetime | None = None) -> DispatchSummary:
        batch_size = limit or get_settings().message_dispatch_batch_size
        reference = now or utcnow()
        token = uuid.uuid4().hex
        counts = {"sent": 0, "failed": 0, "skipped": 0}
        claimed: list[uuid.UUID] = []
        sweep_token = set_sweep_name("messages")
        started = time.perf_counter()
        sweep_status = "failed"
        try:
            with tracer.start_as_current_span("messaging.dispatch_sweep") as span:
                claimed = self._claim(session, token, reference, batch_size)
                span.set_attribute("claimed", len(claimed))
                for entry_id in claimed:
                    try:
                        status = self._deliver(session, entry_id, token)
                    except SQLAlchemyError as exc:
                        session.rollback()
                        logger.exception("messages.finalize_failed", extra={"message_id": str(entry_id), "error": str(exc)})
                        status = "failed"
                    counts[status] += 1
            sweep_status = "ok"
        finally:
            observe_sweep("messages", sweep_status, time.perf_counter() - started)
            reset_sweep_name(sweep_token)

        summary = DispatchSummary(claimed=len(claimed), **counts)
        logger.info(
            "messages.dispatch.finished",
            extra={"processed": summary.processed, "status": sweep_status, "duration_ms": round((time.perf_counter() - started) * 1000, 2)},
        )
        return summary

    def _claim(self, session: Session, token: str, now: datetime, limit: int) -> list[uuid.UUID]:
        due = list(
            session.scalars(
                select(MessageLogEntry.id)
                .where(
                    and_(
                        MessageLogEntry.status == "queued",
                        or_(MessageLogEntry.scheduled_for.is_(None), MessageLogEntry.scheduled_for <= now),
                    )
                )
                .order_by(MessageLogEntry.created_at)
                .limit(limit)
            )
        )
        if not due:
            return []
        session.execute(
            update(MessageLogEntry)
            .where(and_(MessageLogEntry.id.in_(due), MessageLogEntry.status == "queued"))
            .values(status="sending", claim_token=token, claimed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return list(
            session.scalars(
                select(MessageLogEntry.id)
                .where(and_(MessageLogEntry.claim_token == token, MessageLogEntry.status == "sending"))
                .order_by(MessageLogEntry.created_at)
            )
        )

    def _deliver(self, session: Session, entry_id: uuid.UUID, token: str) -> str:
        entry = session.execute(
            select(MessageLogEntry).where(MessageLogEntry.id == entry_id).execution_options(populate_existing=True)
        ).scalar_one()
        channel = entry.channel
        try:
            lead = session.get(Lead, entry.lead_id)
            if lead is None:
                return self._finish(session, entry_id, token, channel, "failed", error="lead not found")
            if lead.opted_out:
                return self._finish(session, entry_id, token, channel, "skipped", error="lead opted out")

            address = self._address(lead, channel)
            if not address:
                missing = "email address" if channel == "email" else "phone number"
                return self._finish(session, entry_id, token, channel, "failed", error=f"lead has no {missing}")

            sender = self.senders.get(channel)
            if sender is None:
                return self._finish(session, entry_id, token, channel, "failed", error=f"unsupported channel: {channel}")

            subject, body = self._render(session, entry, lead)
            result = sender.send(address, subject, body)
        except Exception as exc:
            # one bad entry must not stop the rest of the batch
            session.rollback()
            logger.exception("messages.send_failed", extra={"message_id": str(entry_id), "channel": channel, "error": str(exc)})
            return self._finish(session, entry_id, token, channel, "failed", error=str(exc)[:500])

        if result.success:
            return self._finish(session, entry_id, token, channel, "sent", external_id=result.external_id)
        return self._finish(session, entry_id, token, channel, "failed", error=(result.error or "send failed")[:500])

    def _address(self, lead: Lead, channel: str) -> str | None:
        if channel == "email":
            return lead.email
        if channel in {"sms", "whatsapp"}:
            return lead.phone
        return None

    def _render(self, session: Session, entry: MessageLogEntry, lead: Lead) -> tuple[str | None, str]:
        payload = entry.payload or {}
        variables = build_variables(session, lead, entry.opportunity_id)
        variables.update(payload.get("variables") or {})
        if entry.template_id is None:
            subject_source = payload.get("subject")
            body_source = payload.get("body")
        else:
            template = session.get(MessageTemplate, entry.template_id)
            if template is None:
                raise NotFound("template no longer exists")
            subject_source = template.subject
            body_source = template.body
        if not body_source:
            raise ValidationFailed("message has no body")
        subject = interpolate(subject_source, variables) if subject_source else None
        return subject, interpolate(body_source, variables)

    def _finish(
        self,
        session: Session,
        entry_id: uuid.UUID,
        token: str,
        channel: str,
        status: str,
        *,
        external_id: str | None = None,
        error: str | None = None,
    ) -> str:
        now = utcnow()
        values: dict[str, Any] = {"status": status, "error": error, "updated_at": now}
        if status == "sent":
            values["sent_at"] = now
            values["external_id"] = external_id
        session.execute(
            update(MessageLogEntry)
            .where(
                and_(
                    MessageLogEntry.id == entry_id,
                    MessageLogEntry.claim_token == token,
                    MessageLogEntry.status == "sending",
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        observe_message_dispatch(channel, status)
        log = logger.info if status == "sent" else logger.warning
        log("messages.delivered", extra={"message_id": str(entry_id), "channel": channel, "status": status, "error": error})
        return status

    def queue_depth(self, session: Session, *, now: datetime | None = None) -> QueueDepth:
        reference = now or utcnow()
        ready = session.scalar(
            select(func.count(MessageLogEntry.id)).where(
                and_(
                    MessageLogEntry.status == "queued",
                    or_(MessageLogEntry.scheduled_for.is_(None), MessageLogEntry.scheduled_for <= reference),
                )
            )
        )
        scheduled = session.scalar(
            select(func.count(MessageLogEntry.id)).where(
                and_(MessageLogEntry.status == "queued", MessageLogEntry.scheduled_for > reference)
            )
        )
        return QueueDepth(ready_to_send=int(ready or 0), scheduled=int(scheduled or 0))


class MessageLogService:
    def list_for_lead(self, session: Session, lead_id: uuid.UUID) -> list[MessageLogEntry]:
        return list(
            session.scalars(
                select(MessageLogEntry).where(MessageLogEntry.lead_id == lead_id).order_by(MessageLogEntry.created_at.desc())
            )
        )

    def record_engagement(self, session: Session, message_id: uuid.UUID, kind: str) -> MessageLogEntry:
        entry = session.get(MessageLogEntry, message_id)
        if entry is None:
            raise NotFound("message not found", details={"message_id": str(message_id)})
        now = utcnow()
        if kind == "open" and entry.opened_at is None:
            entry.opened_at = now
        elif kind == "click":
            entry.clicked_at = entry.clicked_at or now
            # a click implies the message was opened even if the pixel was blocked
            entry.opened_at = entry.opened_at or now
        session.add(entry)
        session.commit()
        return entry


class TemplateService:
    def list_templates(self, session: Session) -> list[MessageTemplate]:
        return list(session.scalars(select(MessageTemplate).order_by(MessageTemplate.sort_order, MessageTemplate.slug)))

    def get_template(self, session: Session, template_id: uuid.UUID) -> MessageTemplate:
        template = session.get(MessageTemplate, template_id)
        if template is None:
            raise NotFound("template not found", details={"template_id": str(template_id)})
        return template

    def create_template(self, session: Session, payload: MessageTemplateCreate) -> MessageTemplate:
        data = payload.model_dump(mode="python")
        if data.get("trigger_stage") is not None:
            data["trigger_stage"] = Stage(data["trigger_stage"]).value
        template = MessageTemplate(**data)
        session.add(template)
        try:
            session.commit()
        except IntegrityError as exc:
            session.rollback()
            raise Conflict(f"template slug already exists: {payload.slug}") from exc
        session.refresh(template)
        return template

    def update_template(self, session: Session, template_id: uuid.UUID, payload: MessageTemplateUpdate) -> MessageTemplate:
        template = self.get_template(session, template_id)
        changes = payload.model_dump(mode="python", exclude_unset=True)
        if "trigger_stage" in changes and changes["trigger_stage"] is not None:
            changes["trigger_stage"] = Stage(changes["trigger_stage"]).value
        for field_name, value in changes.items():
            setattr(template, field_name, value)
        if template.trigger_stage is not None and template.trigger_event is not None:
            session.rollback()
            raise ValidationFailed("a template is triggered by a stage or an event, not both")
        session.add(template)
        session.commit()
        session.refresh(template)
        return template

    def preview(self, session: Session, template_id: uuid.UUID, variables: Mapping[str, str]) -> TemplatePreviewResponse:
        template = self.get_template(session, template_id)
        subject = interpolate(template.subject, variables) if template.subject else None
        body = interpolate(template.body, variables)
        missing = sorted((placeholders(template.body) | placeholders(template.subject or "")) - set(variables))
        return TemplatePreviewResponse(subject=subject, body=body, missing=missing)

    def seed_defaults(self, session: Session) -> list[MessageTemplate]:
        existing = set(session.scalars(select(MessageTemplate.slug)))
        created: list[MessageTemplate] = []
        for definition in DEFAULT_TEMPLATES:
            if definition["slug"] in existing:
                continue
            template = MessageTemplate(**definition)
            session.add(template)
            created.append(template)
        if created:
            session.commit()
            logger.info("messages.templates_seeded", extra={"processed": len(created)})
        return created


message_scheduler = MessageScheduler()
message_dispatcher = MessageDispatcher()
message_log_service = MessageLogService()
template_service = TemplateService()
