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
from salesflow.meetings.calendar import CalendarAttendee, CalendarEvent
from salesflow.meetings.inference import InferenceContext
from salesflow.meetings.models import Booking, PostCallAction, TrackingStatus
from salesflow.meetings.suggestions import AISuggestionWorkflow
from salesflow.meetings.tracker import MeetingTracker
from salesflow.messaging.models import MessageLogEntry
from salesflow.messaging.service import template_service
from salesflow.pipeline.leads import lead_intake_service
from salesflow.pipeline.models import Task
from salesflow.pipeline.schemas import LeadIntakeRequest
from salesflow.pipeline.service import TransitionCommand, get_opportunity, stage_controller
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


class FakeCalendar:
    def __init__(self, events: dict[str, CalendarEvent] | None = None, error: Exception | None = None) -> None:
        self.events = events or {}
        self.error = error

    def get_event(self, event_id: str) -> CalendarEvent | None:
        if self.error is not None:
            raise self.error
        return self.events.get(event_id)


class FakeInference:
    def __init__(self, answer: dict[str, Any]) -> None:
        self.answer = answer

    def classify(self, context: InferenceContext) -> dict[str, Any]:
        return dict(self.answer)


def _tracker(calendar: FakeCalendar, answer: dict[str, Any] | None = None) -> MeetingTracker:
    inference = FakeInference(answer or {"stage": "no_change", "confidence": 10, "reasoning": "unclear"})
    return MeetingTracker(calendar=calendar, workflow=AISuggestionWorkflow(inference=inference))


def _booking(
    session: Session,
    scheduled_at: datetime,
    *,
    event_id: str | None = "evt-1",
    notes: str | None = None,
    booking_type: str = "call1",
) -> Booking:
    result = lead_intake_service.intake(
        session,
        LeadIntakeRequest(name="Jordan Smith", email="jordan@example.com", phone="+447700900123"),
    )
    stage_controller.transition(session, TransitionCommand(result.opportunity_id, Stage.CALL1_SCHEDULED, "user-1"))
    booking = Booking(
        opportunity_id=result.opportunity_id,
        lead_id=result.lead_id,
        booking_type=booking_type,
        scheduled_at=scheduled_at,
        calendar_event_id=event_id,
        notes=notes,
    )
    session.add(booking)
    session.commit()
    return booking


def _event(scheduled_at: datetime, response_status: str, *, used: bool = False, status: str = "confirmed") -> CalendarEvent:
    created = scheduled_at - timedelta(days=1)
    return CalendarEvent(
        event_id="evt-1",
        status=status,
        start=scheduled_at,
        created=created,
        updated=scheduled_at + timedelta(minutes=5) if used else created,
        attendees=(CalendarAttendee(email="jordan@example.com", response_status=response_status),),
    )


def _reload(session: Session, booking_id: uuid.UUID) -> Booking:
    session.expire_all()
    return session.get(Booking, booking_id)


def _task_types(session: Session, opportunity_id: uuid.UUID) -> set[str]:
    return {task.task_type for task in session.scalars(select(Task).where(Task.opportunity_id == opportunity_id))}


def test_no_show_queues_follow_up_message_and_task(db_session: Session) -> None:
    template_service.seed_defaults(db_session)
    scheduled_at = utcnow() - timedelta(hours=2)
    booking = _booking(db_session, scheduled_at)
    tracker = _tracker(FakeCalendar({"evt-1": _event(scheduled_at, "needsAction")}))

    summary = tracker.run_sweep(db_session)

    assert (summary.claimed, summary.updated) == (1, 1)
    stored = _reload(db_session, booking.id)
    assert (stored.outcome, stored.tracking_status, stored.tracking_claim_token) == ("no_show", "checked", None)
    assert "follow_up_no_show" in _task_types(db_session, booking.opportunity_id)
    follow_ups = list(
        db_session.scalars(select(MessageLogEntry).where(MessageLogEntry.opportunity_id == booking.opportunity_id))
    )
    assert sorted(entry.channel for entry in follow_ups) == ["email", "sms"]
    assert follow_ups[0].payload["variables"] == {"meeting_name": "discovery call"}
    actions = [action.action_type for action in db_session.scalars(select(PostCallAction))]
    assert actions == ["auto_no_show"]

    assert tracker.run_sweep(db_session).claimed == 0


def test_completed_meeting_with_notes_runs_suggestion(db_session: Session) -> None:
    scheduled_at = utcnow() - timedelta(hours=2)
    booking = _booking(db_session, scheduled_at, notes="Loved the samples, wants a design call")
    tracker = _tracker(
        FakeCalendar({"evt-1": _event(scheduled_at, "accepted", used=True)}),
        {"stage": "qualified", "confidence": 96, "reasoning": "Clear intent"},
    )

    tracker.run_sweep(db_session)

    assert _reload(db_session, booking.id).outcome == "completed"
    assert get_opportunity(db_session, booking.opportunity_id).stage == "qualified"
    assert "post_call_notes" not in _task_types(db_session, booking.opportunity_id)


def test_completed_meeting_without_notes_prompts_owner(db_session: Session) -> None:
    scheduled_at = utcnow() - timedelta(hours=2)
    booking = _booking(db_session, scheduled_at)
    tracker = _tracker(FakeCalendar({"evt-1": _event(scheduled_at, "accepted", used=True)}))

    tracker.run_sweep(db_session)

    assert _reload(db_session, booking.id).outcome == "completed"
    assert get_opportunity(db_session, booking.opportunity_id).stage == "call1_scheduled"
    assert "post_call_notes" in _task_types(db_session, booking.opportunity_id)


def test_ambiguous_attendance_goes_to_manual_review(db_session: Session) -> None:
    scheduled_at = utcnow() - timedelta(hours=2)
    booking = _booking(db_session, scheduled_at)
    tracker = _tracker(FakeCalendar({"evt-1": _event(scheduled_at, "accepted")}))

    summary = tracker.run_sweep(db_session)

    assert summary.manual == 1
    stored = _reload(db_session, booking.id)
    assert (stored.outcome, stored.tracking_status) == ("pending", "manual")
    assert tracker.pending_count(db_session) == 0


def test_booking_without_event_settles_from_notes(db_session: Session) -> None:
    booking = _booking(db_session, utcnow() - timedelta(hours=2), event_id=None, notes="Good chat")

    _tracker(FakeCalendar()).run_sweep(db_session)

    assert _reload(db_session, booking.id).outcome == "completed"


def test_meeting_still_running_is_handed_back(db_session: Session) -> None:
    scheduled_at = utcnow() - timedelta(minutes=20)
    booking = _booking(db_session, scheduled_at)
    tracker = _tracker(FakeCalendar({"evt-1": _event(scheduled_at, "accepted")}))

    summary = tracker.run_sweep(db_session)

    assert summary.deferred == 1
    stored = _reload(db_session, booking.id)
    assert (stored.outcome, stored.tracking_status, stored.tracking_claim_token) == ("pending", "pending", None)
    assert tracker.pending_count(db_session) == 1


def test_calendar_error_marks_booking_failed(db_session: Session) -> None:
    booking = _booking(db_session, utcnow() - timedelta(hours=2))

    summary = _tracker(FakeCalendar(error=RuntimeError("calendar timeout"))).run_sweep(db_session)

    assert summary.errors == 1
    stored = _reload(db_session, booking.id)
    assert (stored.outcome, stored.tracking_status) == ("pending", "failed")


def test_recent_bookings_are_not_claimed_yet(db_session: Session) -> None:
    _booking(db_session, utcnow() - timedelta(minutes=5))
    _booking(db_session, utcnow() + timedelta(days=3))

    tracker = _tracker(FakeCalendar())

    assert tracker.run_sweep(db_session).claimed == 0
    assert tracker.pending_count(db_session) == 1


def test_monitor_upcoming_settles_cancelled_and_resyncs_moved_events(db_session: Session) -> None:
    now = utcnow()
    cancelled = _booking(db_session, now + timedelta(hours=3), event_id="evt-cancelled")
    moved = _booking(db_session, now + timedelta(hours=5), event_id="evt-moved")
    unchanged = _booking(db_session, now + timedelta(hours=6), event_id="evt-same")
    calendar = FakeCalendar(
        {
            "evt-cancelled": _event(now + timedelta(hours=3), "accepted", status="cancelled"),
            "evt-moved": _event(now + timedelta(hours=8), "accepted"),
            "evt-same": _event(now + timedelta(hours=6, minutes=2), "accepted"),
        }
    )

    flagged = _tracker(calendar).monitor_upcoming(db_session, now=now)

    assert flagged == 2
    settled = _reload(db_session, cancelled.id)
    assert (settled.outcome, settled.tracking_status) == ("cancelled", "checked")
    assert "reschedule_cancelled" in _task_types(db_session, cancelled.opportunity_id)
    assert as_utc(_reload(db_session, moved.id).scheduled_at) == now + timedelta(hours=8)
    assert as_utc(_reload(db_session, unchanged.id).scheduled_at) == now + timedelta(hours=6)


def test_booking_claimed_by_a_running_sweep_is_left_alone(db_session: Session) -> None:
    scheduled_at = utcnow() - timedelta(hours=2)
    booking = _booking(db_session, scheduled_at)
    calendar = FakeCalendar({"evt-1": _event(scheduled_at, "accepted", used=True)})
    tracker = _tracker(calendar)
    first_token = uuid.uuid4().hex

    claimed = tracker._claim(db_session, first_token, utcnow(), 10)
    overlapping = tracker.run_sweep(db_session)

    assert claimed == [booking.id]
    assert overlapping.claimed == 0
    stored = _reload(db_session, booking.id)
    assert stored.tracking_status == TrackingStatus.PROCESSING.value
    assert stored.outcome == "pending"

    assert tracker._release(db_session, booking.id, uuid.uuid4().hex, TrackingStatus.FAILED) is False
    stored = _reload(db_session, booking.id)
    assert stored.tracking_status == TrackingStatus.PROCESSING.value
    assert stored.tracking_claim_token == first_token

    assert tracker._release(db_session, booking.id, first_token, TrackingStatus.PENDING) is True
    stored = _reload(db_session, booking.id)
    assert stored.tracking_status == TrackingStatus.PENDING.value
    assert stored.tracking_claim_token is None
    assert tracker.run_sweep(db_session).claimed == 1
