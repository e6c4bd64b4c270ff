from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from opentelemetry import trace
from sqlalchemy import and_, func, select, update
from sqlalchemy.orm import Session

from salesflow.context import reset_sweep_name, set_sweep_name
from salesflow.core.clock import as_utc, utcnow
from salesflow.core.config import get_settings
from salesflow.errors import PipelineError
from salesflow.meetings.attendance import AttendanceResult, attendance_from_notes, determine_attendance
from salesflow.meetings.calendar import CalendarClient, build_calendar_client
from salesflow.meetings.followups import OutcomeFollowUps, outcome_follow_ups
from salesflow.meetings.models import Booking, BookingOutcome, PostCallAction, TrackingStatus
from salesflow.meetings.suggestions import AISuggestionWorkflow, ai_suggestion_workflow
from salesflow.metrics import observe_meeting_tracked, observe_sweep


logger = logging.getLogger("salesflow.meetings.tracker")
tracer = trace.get_tracer("salesflow.meetings.tracker")

RESCHEDULE_TOLERANCE = timedelta(minutes=5)
MONITOR_WINDOW = timedelta(hours=24)


@dataclass
class TrackerSummary:
    claimed: int = 0
    updated: int = 0
    manual: int = 0
    deferred: int = 0
    errors: int = 0
    pre_meeting_flagged: int = 0

    @property
    def processed(self) -> int:
        return self.updated + self.manual + self.deferred + self.errors


class MeetingTracker:
    """Settles outcomes of past bookings. Rows are claimed pending -> processing, so overlapping sweeps skip each other's work."""

    def __init__(
        self,
        calendar: CalendarClient | None = None,
        workflow: AISuggestionWorkflow | None = None,
        follow_ups: OutcomeFollowUps | None = None,
    ) -> None:
        self._calendar = calendar
        self.workflow = workflow or ai_suggestion_workflow
        self.follow_ups = follow_ups or outcome_follow_ups

    @property
    def calendar(self) -> CalendarClient:
        if self._calendar is None:
            self._calendar = build_calendar_client(get_settings())
        return self._calendar

    def run_sweep(self, session: Session, *, limit: int | None = None, now: datetime | None = None) -> TrackerSummary:
        settings = get_settings()
        batch_size = limit or settings.meeting_tracker_batch_size
        reference = now or utcnow()
        token = uuid.uuid4().hex
        summary = TrackerSummary()
        sweep_token = set_sweep_name("meetings")
        started = time.perf_counter()
        sweep_status = "failed"
        try:
            with tracer.start_as_current_span("meetings.tracker_sweep") as span:
                try:
                    summary.pre_meeting_flagged = self.monitor_upcoming(session, now=reference)
                except Exception as exc:
                    session.rollback()
                    logger.exception("meetings.monitor_failed", extra={"error": str(exc)})

                cutoff = reference - timedelta(minutes=settings.meeting_check_grace_minutes)
                claimed = self._claim(session, token, cutoff, batch_size)
                summary.claimed = len(claimed)
                span.set_attribute("claimed", len(claimed))
                for booking_id in claimed:
                    try:
                        result = self._track(session, booking_id, token, reference)
                    except Exception as exc:
                        session.rollback()
                        logger.exception("meetings.track_failed", extra={"booking_id": str(booking_id), "error": str(exc)})
                        self._release(session, booking_id, token, TrackingStatus.FAILED)
                        observe_meeting_tracked("error")
                        summary.errors += 1
                        continue
                    if result == "deferred":
                        summary.deferred += 1
                    elif result == TrackingStatus.MANUAL.value:
                        summary.manual += 1
                    else:
                        summary.updated += 1
            sweep_status = "ok"
        finally:
            observe_sweep("meetings", sweep_status, time.perf_counter() - started)
            reset_sweep_name(sweep_token)

        logger.info(
            "meetings.tracker.finished",
            extra={"processed": summary.processed, "status": sweep_status, "duration_ms": round((time.perf_counter() - started) * 1000, 2)},
        )
        return summary

    def _claim(self, session: Session, token: str, cutoff: datetime, limit: int) -> list[uuid.UUID]:
        due = list(
            session.scalars(
                select(Booking.id)
                .where(
                    and_(
                        Booking.outcome == BookingOutcome.PENDING.value,
                        Booking.tracking_status == TrackingStatus.PENDING.value,
                        Booking.scheduled_at <= cutoff,
                    )
                )
                .order_by(Booking.scheduled_at)
                .limit(limit)
            )
        )
        if not due:
            return []
        session.execute(
            update(Booking)
            .where(and_(Booking.id.in_(due), Booking.tracking_status == TrackingStatus.PENDING.value))
            .values(tracking_status=TrackingStatus.PROCESSING.value, tracking_claim_token=token, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        session.commit()
        return list(
            session.scalars(
                select(Booking.id)
                .where(and_(Booking.tracking_claim_token == token, Booking.tracking_status == TrackingStatus.PROCESSING.value))
                .order_by(Booking.scheduled_at)
            )
        )

    def _release(self, session: Session, booking_id: uuid.UUID, token: str, status: TrackingStatus, **values: Any) -> bool:
        values.update(tracking_status=status.value, tracking_claim_token=None, updated_at=utcnow())
        if status != TrackingStatus.PENDING:
            values.setdefault("tracked_at", utcnow())
        result = session.execute(
            update(Booking)
            .where(
                and_(
                    Booking.id == booking_id,
                    Booking.tracking_claim_token == token,
                    Booking.tracking_status == TrackingStatus.PROCESSING.value,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            # claim lost; drop anything staged alongside the release
            session.rollback()
            return False
        session.commit()
        return True

    def _track(self, session: Session, booking_id: uuid.UUID, token: str, now: datetime) -> str:
        booking = session.execute(
            select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        ).scalar_one()
        settings = get_settings()

        result: AttendanceResult | None
        event = self.calendar.get_event(booking.calendar_event_id) if booking.calendar_event_id else None
        if event is not None:
            result = determine_attendance(
                event,
                booking_type=booking.booking_type,
                scheduled_at=as_utc(booking.scheduled_at),
                duration_minutes=booking.duration_minutes,
                now=now,
                no_show_grace_minutes=settings.meeting_no_show_grace_minutes,
            )
        else:
            result = attendance_from_notes(booking.notes)

        if result is None:
            # meeting may still be running; hand it back for the next sweep
            self._release(session, booking_id, token, TrackingStatus.PENDING)
            return "deferred"

        session.add(
            PostCallAction(
                booking_id=booking.id,
                opportunity_id=booking.opportunity_id,
                action_type=result.action_type,
                reasoning=result.reasoning,
            )
        )
        session.flush()
        if result.needs_review:
            self._release(session, booking_id, token, TrackingStatus.MANUAL)
            observe_meeting_tracked("manual")
            logger.info("meetings.tracked", extra={"booking_id": str(booking_id), "outcome": "manual"})
            return TrackingStatus.MANUAL.value

        if not self._release(session, booking_id, token, TrackingStatus.CHECKED, outcome=result.outcome):
            return "deferred"
        observe_meeting_tracked(result.outcome)
        logger.info("meetings.tracked", extra={"booking_id": str(booking_id), "outcome": result.outcome})

        booking = session.execute(
            select(Booking).where(Booking.id == booking_id).execution_options(populate_existing=True)
        ).scalar_one()
        self._after_outcome(session, booking)
        return result.outcome

    def _after_outcome(self, session: Session, booking: Booking) -> None:
        try:
            self.follow_ups.apply(session, booking)
        except Exception as exc:
            session.rollback()
            logger.exception("meetings.follow_up_failed", extra={"booking_id": str(booking.id), "error": str(exc)})

        if booking.outcome == BookingOutcome.COMPLETED.value and booking.notes:
            try:
                self.workflow.process_post_call_notes(session, booking.id, booking.notes)
            except PipelineError as exc:
                session.rollback()
                logger.warning("meetings.suggestion_failed", extra={"booking_id": str(booking.id), "error": exc.message})

    def pending_count(self, session: Session, *, now: datetime | None = None) -> int:
        reference = now or utcnow()
        count = session.scalar(
            select(func.count(Booking.id)).where(
                and_(
                    Booking.outcome == BookingOutcome.PENDING.value,
                    Booking.tracking_status == TrackingStatus.PENDING.value,
                    Booking.scheduled_at <= reference,
                )
            )
        )
        return int(count or 0)

    def monitor_upcoming(self, session: Session, *, now: datetime | None = None) -> int:
        """Pre-meeting checks for the next 24h: cancelled events settle the booking, moved events resync its time."""
        reference = now or utcnow()
        upcoming = list(
            session.scalars(
                select(Booking)
                .where(
                    and_(
                        Booking.outcome == BookingOutcome.PENDING.value,
                        Booking.calendar_event_id.is_not(None),
                        Booking.scheduled_at >= reference,
                        Booking.scheduled_at <= reference + MONITOR_WINDOW,
                    )
                )
                .order_by(Booking.scheduled_at)
                .limit(get_settings().meeting_tracker_batch_size)
            )
        )
        flagged = 0
        for booking in upcoming:
            try:
                if self._check_upcoming(session, booking):
                    flagged += 1
            except Exception as exc:
                session.rollback()
                logger.exception("meetings.monitor_item_failed", extra={"booking_id": str(booking.id), "error": str(exc)})
        return flagged

    def _check_upcoming(self, session: Session, booking: Booking) -> bool:
        event = self.calendar.get_event(booking.calendar_event_id or "")
        if event is None:
            return False

        if event.status == "cancelled":
            result = session.execute(
                update(Booking)
                .where(and_(Booking.id == booking.id, Booking.outcome == BookingOutcome.PENDING.value))
                .values(
                    outcome=BookingOutcome.CANCELLED.value,
                    tracking_status=TrackingStatus.CHECKED.value,
                    tracked_at=utcnow(),
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if not result.rowcount:
                session.rollback()
                return False
            session.add(
                PostCallAction(
                    booking_id=booking.id,
                    opportunity_id=booking.opportunity_id,
                    action_type="auto_move",
                    reasoning="Calendar event was cancelled before the meeting",
                )
            )
            session.commit()
            observe_meeting_tracked(BookingOutcome.CANCELLED.value)
            refreshed = session.execute(
                select(Booking).where(Booking.id == booking.id).execution_options(populate_existing=True)
            ).scalar_one()
            self._after_outcome(session, refreshed)
            return True

        if event.start is not None:
            booked_start = as_utc(booking.scheduled_at)
            event_start = as_utc(event.start)
            if abs(event_start - booked_start) > RESCHEDULE_TOLERANCE:
                booking.scheduled_at = event_start
                session.add(booking)
                session.add(
                    PostCallAction(
                        booking_id=booking.id,
                        opportunity_id=booking.opportunity_id,
                        action_type="auto_move",
                        reasoning=f"Meeting moved in the calendar to {event_start:%d/%m/%Y %H:%M}",
                    )
                )
                session.commit()
                logger.info("meetings.booking_resynced", extra={"booking_id": str(booking.id)})
                return True
        return False


meeting_tracker = MeetingTracker()
