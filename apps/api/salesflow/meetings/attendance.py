from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from salesflow.core.clock import as_utc
from salesflow.meetings.calendar import CalendarEvent
from salesflow.meetings.models import BookingOutcome, BookingType

MANUAL_REVIEW = "manual"

VIDEO_BOOKING_TYPES = (BookingType.CALL1.value, BookingType.CALL2.value)


@dataclass(frozen=True)
class AttendanceResult:
    outcome: str
    action_type: str
    reasoning: str

    @property
    def needs_review(self) -> bool:
        return self.outcome == MANUAL_REVIEW


def _was_actively_used(event: CalendarEvent, scheduled_at: datetime) -> bool:
    # Meet participation is not exposed; an event edited after the start is the usable signal
    if event.updated is None or event.created is None:
        return False
    updated = as_utc(event.updated)
    return updated > scheduled_at and updated != as_utc(event.created)


def determine_attendance(
    event: CalendarEvent,
    *,
    booking_type: str,
    scheduled_at: datetime,
    duration_minutes: int,
    now: datetime,
    no_show_grace_minutes: int = 15,
) -> AttendanceResult | None:
    """Infer a meeting outcome from its calendar event. Returns None while the meeting may still be running."""
    if event.status == "cancelled":
        return AttendanceResult(BookingOutcome.CANCELLED.value, "auto_move", "Calendar event was cancelled")

    guests = [attendee for attendee in event.attendees if not attendee.is_self]
    accepted = any(guest.response_status == "accepted" for guest in guests)
    declined = any(guest.response_status == "declined" for guest in guests)
    no_response = any(guest.response_status not in ("accepted", "declined") for guest in guests)

    if declined:
        return AttendanceResult(BookingOutcome.CANCELLED.value, "auto_move", "Customer declined the calendar invite")

    start = as_utc(scheduled_at)
    scheduled_end = start + timedelta(minutes=duration_minutes)
    if as_utc(now) < scheduled_end + timedelta(minutes=no_show_grace_minutes):
        return None

    if booking_type not in VIDEO_BOOKING_TYPES:
        return AttendanceResult(MANUAL_REVIEW, "reminder_sent", "In-person visit time has passed. Please update the outcome.")

    used = _was_actively_used(event, start)
    if accepted and used:
        return AttendanceResult(
            BookingOutcome.COMPLETED.value,
            "auto_move",
            "Customer accepted invite and event shows activity during meeting window",
        )
    if accepted:
        return AttendanceResult(
            MANUAL_REVIEW,
            "reminder_sent",
            "Customer accepted invite but no meeting activity detected. Please confirm the outcome.",
        )
    if no_response and not used:
        return AttendanceResult(
            BookingOutcome.NO_SHOW.value,
            "auto_no_show",
            "Customer never responded to invite and no meeting activity detected",
        )
    if used:
        return AttendanceResult(BookingOutcome.COMPLETED.value, "auto_move", "Event shows activity during meeting window")
    return AttendanceResult(BookingOutcome.NO_SHOW.value, "auto_no_show", "No meeting activity detected after scheduled end time")


def attendance_from_notes(notes: str | None) -> AttendanceResult:
    if notes and notes.strip():
        return AttendanceResult(BookingOutcome.COMPLETED.value, "auto_move", "Post-call notes were recorded")
    return AttendanceResult(MANUAL_REVIEW, "reminder_sent", "No calendar event or notes. Please update the outcome.")
