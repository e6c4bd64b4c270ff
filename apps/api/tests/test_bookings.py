from __future__ import annotations

import uuid
from collections.abc import Generator
from datetime import datetime, timedelta
from typing import Any

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from salesflow.core.clock import as_utc, utcnow
from salesflow.core.database import Base
from salesflow.errors import Conflict, ExternalFailure, ValidationFailed
from salesflow.meetings.calendar import BusyInterval, CalendarEvent, EventDraft
from salesflow.meetings.inference import InferenceContext
from salesflow.meetings.models import BookingOutcome, BookingType, PostCallAction
from salesflow.meetings.schemas import BookingCreate, BookingOutcomeRequest, BookingReschedule
from salesflow.meetings.service import BookingService
from salesflow.meetings.suggestions import AISuggestionWorkflow
from salesflow.messaging.models import MessageLogEntry
from salesflow.messaging.service import template_service
from salesflow.pipeline.leads import lead_intake_service
from salesflow.pipeline.models import SalesUser, Task
from salesflow.pipeline.schemas import LeadIntakeRequest
from salesflow.pipeline.service import get_opportunity, list_stage_log


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


class FakeCalendar:
    def __init__(self, busy: list[BusyInterval] | None = None, free_busy_error: bool = False) -> None:
        self.busy = busy or []
        self.free_busy_error = free_busy_error
        self.created: list[EventDraft] = []
        self.updated: list[tuple[str, datetime, int]] = []

    def create_event(self, draft: EventDraft) -> CalendarEvent:
        self.created.append(draft)
        return CalendarEvent(event_id=f"evt-{len(self.created)}", start=draft.start, meet_link="https://meet.example.com/abc")

    def update_event(self, event_id: str, *, start: datetime, duration_minutes: int) -> CalendarEvent:
        self.updated.append((event_id, start, duration_minutes))
        return CalendarEvent(event_id=event_id, start=start)

    def delete_event(self, event_id: str) -> None:
        return None

    def get_event(self, event_id: str) -> CalendarEvent | None:
        return None

    def query_free_busy(self, time_min: datetime, time_max: datetime) -> list[BusyInterval]:
        if self.free_busy_error:
            raise ExternalFailure("free/busy lookup timed out")
        return self.busy


class FakeInference:
    def classify(self, context: InferenceContext) -> dict[str, Any]:
        return {"stage": "qualified", "confidence": 50, "reasoning": "Interested but undecided"}


def _service(calendar: FakeCalendar | None = None) -> BookingService:
    return BookingService(calendar=calendar or FakeCalendar(), workflow=AISuggestionWorkflow(inference=FakeInference()))


def _opportunity(session: Session, *, with_owner: bool = False) -> uuid.UUID:
    if with_owner:
        session.add(SalesUser(name="Riley Rep", email=f"riley-{uuid.uuid4().hex[:6]}@example.com", service_regions=["M"]))
        session.commit()
    result = lead_intake_service.intake(
        session,
        LeadIntakeRequest(name="Jordan Smith", email="jordan@example.com", phone="+447700900123", postcode="M1 1AA"),
    )
    return result.opportunity_id


def _create(opportunity_id: uuid.UUID, start: datetime, booking_type: BookingType = BookingType.CALL1) -> BookingCreate:
    return BookingCreate(opportunity_id=opportunity_id, booking_type=booking_type, scheduled_at=start)


def _queued_slugs(session: Session, opportunity_id: uuid.UUID) -> list[str]:
    session.expire_all()
    entries = session.scalars(
        select(MessageLogEntry)
        .where(MessageLogEntry.opportunity_id == opportunity_id, MessageLogEntry.status == "queued")
        .order_by(MessageLogEntry.scheduled_for)
    )
    return [entry.payload["template_slug"] for entry in entries]


def test_schedule_books_calendar_moves_stage_and_queues_reminders(db_session: Session) -> None:
    template_service.seed_defaults(db_session)
    opportunity_id = _opportunity(db_session)
    calendar = FakeCalendar()
    start = utcnow() + timedelta(days=3)

    booking = _service(calendar).schedule(db_session, _create(opportunity_id, start), actor_id="user-1")

    assert booking.calendar_event_id == "evt-1"
    assert booking.meet_link == "https://meet.example.com/abc"
    assert booking.location_type == "video"
    assert calendar.created[0].summary == "Discovery Call - Jordan Smith"
    assert calendar.created[0].attendee_email == "jordan@example.com"

    assert get_opportunity(db_session, opportunity_id).stage == "call1_scheduled"
    last = list_stage_log(db_session, opportunity_id)[-1]
    assert (last.from_stage, last.to_stage, last.actor_id) == ("new_enquiry", "call1_scheduled", "user-1")
    assert _queued_slugs(db_session, opportunity_id) == ["call1_reminder", "call1_reminder_2h"]


def test_onboarding_defaults_to_in_person_without_meet_link(db_session: Session) -> None:
    opportunity_id = _opportunity(db_session)
    calendar = FakeCalendar()

    booking = _service(calendar).schedule(
        db_session, _create(opportunity_id, utcnow() + timedelta(days=2), BookingType.ONBOARDING), actor_id="user-1"
    )

    assert booking.location_type == "in_person"
    assert calendar.created[0].add_meet_link is False
    assert get_opportunity(db_session, opportunity_id).stage == "onboarding_scheduled"


def test_booking_earlier_stage_meeting_does_not_move_backwards(db_session: Session) -> None:
    opportunity_id = _opportunity(db_session)
    service = _service()
    service.schedule(
        db_session, _create(opportunity_id, utcnow() + timedelta(days=1), BookingType.CALL2), actor_id="user-1"
    )

    service.schedule(db_session, _create(opportunity_id, utcnow() + timedelta(days=5)), actor_id="user-1")

    assert get_opportunity(db_session, opportunity_id).stage == "call2_scheduled"


def test_schedule_rejects_past_times(db_session: Session) -> None:
    opportunity_id = _opportunity(db_session)

    with pytest.raises(ValidationFailed):
        _service().schedule(db_session, _create(opportunity_id, utcnow() - timedelta(minutes=1)), actor_id="user-1")


def test_owner_double_booking_is_a_conflict(db_session: Session) -> None:
    opportunity_id = _opportunity(db_session, with_owner=True)
    service = _service()
    start = utcnow() + timedelta(days=2)
    service.schedule(db_session, _create(opportunity_id, start), actor_id="user-1")

    with pytest.raises(Conflict):
        service.schedule(db_session, _create(opportunity_id, start + timedelta(minutes=15)), actor_id="user-1")

    service.schedule(db_session, _create(opportunity_id, start + timedelta(minutes=30)), actor_id="user-1")


def test_busy_calendar_is_a_conflict_and_unavailable_lookup_is_not(db_session: Session) -> None:
    opportunity_id = _opportunity(db_session)
    start = utcnow() + timedelta(days=2)
    busy = FakeCalendar(busy=[BusyInterval(start=start - timedelta(minutes=10), end=start + timedelta(minutes=10))])

    with pytest.raises(Conflict):
        _service(busy).schedule(db_session, _create(opportunity_id, start), actor_id="user-1")

    booking = _service(FakeCalendar(free_busy_error=True)).schedule(db_session, _create(opportunity_id, start), actor_id="user-1")
    assert booking.outcome == "pending"


def test_reschedule_retires_old_reminders_and_queues_new_ones(db_session: Session) -> None:
    template_service.seed_defaults(db_session)
    opportunity_id = _opportunity(db_session)
    calendar = FakeCalendar()
    service = _service(calendar)
    booking = service.schedule(db_session, _create(opportunity_id, utcnow() + timedelta(days=3)), actor_id="user-1")
    new_start = utcnow() + timedelta(days=5)

    moved = service.reschedule(db_session, booking.id, BookingReschedule(scheduled_at=new_start), actor_id="user-1")

    assert as_utc(moved.scheduled_at) == new_start
    assert calendar.updated == [("evt-1", new_start, 30)]
    skipped = list(
        db_session.scalars(select(MessageLogEntry).where(MessageLogEntry.status == "skipped", MessageLogEntry.opportunity_id == opportunity_id))
    )
    assert len(skipped) == 2
    assert {entry.error for entry in skipped} == {"superseded by reschedule"}
    assert _queued_slugs(db_session, opportunity_id).count("call1_reminder") == 1
    actions = [action.action_type for action in db_session.scalars(select(PostCallAction))]
    assert actions == ["rescheduled"]


def test_manual_no_show_outcome_creates_follow_up(db_session: Session) -> None:
    opportunity_id = _opportunity(db_session)
    service = _service()
    booking = service.schedule(db_session, _create(opportunity_id, utcnow() + timedelta(days=1)), actor_id="user-1")

    settled = service.record_outcome(
        db_session, booking.id, BookingOutcomeRequest(outcome=BookingOutcome.NO_SHOW), actor_id="user-1"
    )

    assert (settled.outcome, settled.tracking_status) == ("no_show", "checked")
    task_types = {task.task_type for task in db_session.scalars(select(Task).where(Task.opportunity_id == opportunity_id))}
    assert "follow_up_no_show" in task_types

    with pytest.raises(Conflict):
        service.record_outcome(db_session, booking.id, BookingOutcomeRequest(outcome=BookingOutcome.COMPLETED), actor_id="user-1")
    with pytest.raises(ValidationFailed):
        service.record_outcome(db_session, booking.id, BookingOutcomeRequest(outcome=BookingOutcome.PENDING), actor_id="user-1")


def test_manual_outcome_waits_for_running_tracker(db_session: Session) -> None:
    opportunity_id = _opportunity(db_session)
    service = _service()
    booking = service.schedule(db_session, _create(opportunity_id, utcnow() + timedelta(days=1)), actor_id="user-1")
    booking.tracking_status = "processing"
    db_session.add(booking)
    db_session.commit()

    with pytest.raises(Conflict):
        service.record_outcome(db_session, booking.id, BookingOutcomeRequest(outcome=BookingOutcome.COMPLETED), actor_id="user-1")


def test_completed_outcome_with_notes_requests_suggestion(db_session: Session) -> None:
    opportunity_id = _opportunity(db_session)
    service = _service()
    booking = service.schedule(db_session, _create(opportunity_id, utcnow() + timedelta(days=1)), actor_id="user-1")

    settled = service.record_outcome(
        db_session,
        booking.id,
        BookingOutcomeRequest(outcome=BookingOutcome.COMPLETED, notes="Keen, wants to think about budget"),
        actor_id="user-1",
    )

    assert settled.outcome == "completed"
    assert settled.suggestion_state == "suggested"
    assert settled.suggested_stage == "qualified"
    assert get_opportunity(db_session, opportunity_id).stage == "call1_scheduled"
