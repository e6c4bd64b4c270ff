from __future__ import annotations

from collections.abc import Generator
from datetime import timedelta
from decimal import Decimal

import pytest
from pydantic import ValidationError
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesflow.core.clock import as_utc, utcnow
from salesflow.core.database import Base
from salesflow.errors import Conflict, ValidationFailed
from salesflow.messaging.models import MessageLogEntry, MessageTemplate
from salesflow.messaging.schemas import MessageTemplateCreate, MessageTemplateUpdate
from salesflow.messaging.service import format_amount, message_scheduler, template_service
from salesflow.messaging.templates import DEFAULT_TEMPLATES, EVENT_CALL1_BOOKED, interpolate, placeholders
from salesflow.pipeline.leads import lead_intake_service
from salesflow.pipeline.models import Lead
from salesflow.pipeline.schemas import LeadIntakeRequest
from salesflow.pipeline.stages import Stage


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


def _lead(session: Session) -> Lead:
    lead = Lead(name="Jordan Smith", email="jordan@example.com", phone="+447700900123")
    session.add(lead)
    session.commit()
    return lead


def test_interpolate_replaces_known_and_keeps_unknown_placeholders() -> None:
    text = "Hi {{first_name}}, your call is at {{time}} with {{owner_name}}"

    assert interpolate(text, {"first_name": "Jordan", "time": 15}) == "Hi Jordan, your call is at 15 with {{owner_name}}"
    assert placeholders(text) == {"first_name", "time", "owner_name"}
    assert placeholders("no variables here") == set()


def test_format_amount() -> None:
    assert format_amount(Decimal("6000"), "gbp") == "£6,000.00"
    assert format_amount(Decimal("99.5"), "USD") == "$99.50"
    assert format_amount(Decimal("1234.5"), "chf") == "1,234.50 CHF"


def test_seed_defaults_is_idempotent(db_session: Session) -> None:
    created = template_service.seed_defaults(db_session)
    again = template_service.seed_defaults(db_session)

    assert len(created) == len(DEFAULT_TEMPLATES)
    assert again == []
    slugs = [template.slug for template in template_service.list_templates(db_session)]
    assert slugs[0] == "enquiry_received"
    assert len(slugs) == len(set(slugs))


def test_stage_templates_only_match_their_stage(db_session: Session) -> None:
    template_service.seed_defaults(db_session)
    lead = _lead(db_session)

    entries = message_scheduler.enqueue_for_stage(db_session, lead, Stage.CALL1_SCHEDULED)

    assert sorted(entry.channel for entry in entries) == ["email", "sms"]
    assert {entry.payload["template_slug"] for entry in entries} == {"call1_confirmed"}
    assert message_scheduler.enqueue_for_stage(db_session, lead, Stage.PRODUCTION) == []


def test_inactive_templates_are_not_enqueued(db_session: Session) -> None:
    template_service.seed_defaults(db_session)
    template = db_session.scalar(select(MessageTemplate).where(MessageTemplate.slug == "enquiry_received"))
    template_service.update_template(db_session, template.id, MessageTemplateUpdate(active=False))

    assert message_scheduler.enqueue_for_stage(db_session, _lead(db_session), Stage.NEW_ENQUIRY) == []


def test_after_delay_is_relative_to_enqueue_time(db_session: Session) -> None:
    template_service.seed_defaults(db_session)
    now = utcnow()

    entries = message_scheduler.enqueue_for_stage(db_session, _lead(db_session), Stage.COMPLETED, now=now)

    assert len(entries) == 1
    assert as_utc(entries[0].scheduled_for) == now + timedelta(days=3)


def test_booking_reminders_are_anchored_and_past_ones_dropped(db_session: Session) -> None:
    template_service.seed_defaults(db_session)
    lead = _lead(db_session)
    now = utcnow()

    far = message_scheduler.enqueue_for_event(
        db_session, lead, EVENT_CALL1_BOOKED, anchor_at=now + timedelta(days=2), now=now
    )
    assert {entry.payload["template_slug"]: as_utc(entry.scheduled_for) for entry in far} == {
        "call1_reminder": now + timedelta(days=1),
        "call1_reminder_2h": now + timedelta(days=2) - timedelta(hours=2),
    }

    soon = message_scheduler.enqueue_for_event(
        db_session, lead, EVENT_CALL1_BOOKED, anchor_at=now + timedelta(hours=5), now=now
    )
    assert [entry.payload["template_slug"] for entry in soon] == ["call1_reminder_2h"]

    assert message_scheduler.enqueue_for_event(db_session, lead, EVENT_CALL1_BOOKED, now=now) == []


def test_skip_queued_for_event_retires_pending_reminders(db_session: Session) -> None:
    template_service.seed_defaults(db_session)
    result = lead_intake_service.intake(db_session, LeadIntakeRequest(name="Jordan Smith", email="jordan@example.com"))
    lead = db_session.get(Lead, result.lead_id)
    message_scheduler.enqueue_for_event(
        db_session,
        lead,
        EVENT_CALL1_BOOKED,
        opportunity_id=result.opportunity_id,
        anchor_at=utcnow() + timedelta(days=2),
    )

    skipped = message_scheduler.skip_queued_for_event(
        db_session, result.opportunity_id, EVENT_CALL1_BOOKED, reason="superseded by reschedule"
    )

    assert skipped == 2
    db_session.expire_all()
    statuses = {entry.status for entry in db_session.scalars(select(MessageLogEntry))}
    assert statuses == {"skipped"}


def test_create_template_rejects_duplicates_and_double_triggers(db_session: Session) -> None:
    payload = MessageTemplateCreate(
        slug="site_survey",
        name="Site survey",
        subject="Survey booked",
        body="Hi {{first_name}}",
        channels=["email"],
        trigger_stage=Stage.PROPOSAL_AGREED,
    )
    template = template_service.create_template(db_session, payload)
    assert template.trigger_stage == "proposal_agreed"

    with pytest.raises(Conflict):
        template_service.create_template(db_session, payload)

    with pytest.raises(ValidationError):
        MessageTemplateCreate(
            slug="both",
            name="Both",
            body="Hi",
            channels=["sms"],
            trigger_stage=Stage.QUALIFIED,
            trigger_event=EVENT_CALL1_BOOKED,
        )
    with pytest.raises(ValidationError):
        MessageTemplateCreate(slug="no_subject", name="No subject", body="Hi", channels=["email"])

    with pytest.raises(ValidationFailed):
        template_service.update_template(db_session, template.id, MessageTemplateUpdate(trigger_event=EVENT_CALL1_BOOKED))


def test_preview_reports_missing_placeholders(db_session: Session) -> None:
    template_service.seed_defaults(db_session)
    template = db_session.scalar(select(MessageTemplate).where(MessageTemplate.slug == "call1_confirmed"))

    preview = template_service.preview(db_session, template.id, {"first_name": "Jordan", "date": "Monday 19 October"})

    assert preview.subject == "Your discovery call is booked for Monday 19 October"
    assert preview.body.startswith("Hi Jordan,")
    assert preview.missing == ["meet_link", "owner_name", "time"]
