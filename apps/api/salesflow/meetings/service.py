from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from salesflow.core.clock import as_utc, utcnow
from salesflow.core.config import get_settings
from salesflow.errors import Conflict, ExternalFailure, PipelineError, ValidationFailed
from salesflow.meetings.calendar import CalendarClient, EventDraft, build_calendar_client
from salesflow.meetings.followups import OutcomeFollowUps, outcome_follow_ups
from salesflow.meetings.inference import BOOKING_LABELS
from salesflow.meetings.models import Booking, BookingOutcome, BookingType, PostCallAction, TrackingStatus
from salesflow.meetings.schemas import BookingCreate, BookingOutcomeRequest, BookingReschedule
from salesflow.meetings.suggestions import AISuggestionWorkflow, ai_suggestion_workflow, get_booking
from salesflow.messaging.service import MessageScheduler, message_scheduler
from salesflow.messaging.templates import EVENT_CALL1_BOOKED, EVENT_CALL2_BOOKED, EVENT_ONBOARDING_BOOKED
from salesflow.pipeline.models import Lead
from salesflow.pipeline.service import StageTransitionController, TransitionCommand, get_opportunity, stage_controller
from salesflow.pipeline.stages import Stage, is_forward, parse_stage


logger = logging.getLogger("salesflow.meetings.bookings")

SCHEDULED_STAGES: dict[str, Stage] = {
    BookingType.CALL1.value: Stage.CALL1_SCHEDULED,
    BookingType.CALL2.value: Stage.CALL2_SCHEDULED,
    BookingType.ONBOARDING.value: Stage.ONBOARDING_SCHEDULED,
}

BOOKED_EVENTS: dict[str, str] = {
    BookingType.CALL1.value: EVENT_CALL1_BOOKED,
    BookingType.CALL2.value: EVENT_CALL2_BOOKED,
    BookingType.ONBOARDING.value: EVENT_ONBOARDING_BOOKED,
}


class BookingService:
    def __init__(
        self,
        calendar: CalendarClient | None = None,
        controller: StageTransitionController | None = None,
        scheduler: MessageScheduler | None = None,
        follow_ups: OutcomeFollowUps | None = None,
        workflow: AISuggestionWorkflow | None = None,
    ) -> None:
        self._calendar = calendar
        self.controller = controller or stage_controller
        self.scheduler = scheduler or message_scheduler
        self.follow_ups = follow_ups or outcome_follow_ups
        self.workflow = workflow or ai_suggestion_workflow

    @property
    def calendar(self) -> CalendarClient:
        if self._calendar is None:
            self._calendar = build_calendar_client(get_settings())
        return self._calendar

    def get(self, session: Session, booking_id: uuid.UUID) -> Booking:
        return get_booking(session, booking_id)

    def list_for_opportunity(self, session: Session, opportunity_id: uuid.UUID) -> list[Booking]:
        get_opportunity(session, opportunity_id)
        return list(
            session.scalars(select(Booking).where(Booking.opportunity_id == opportunity_id).order_by(Booking.scheduled_at))
        )

    def _ensure_slot_free(
        self,
        session: Session,
        owner_id: uuid.UUID | None,
        start: datetime,
        duration_minutes: int,
        *,
        ignore_booking_id: uuid.UUID | None = None,
    ) -> None:
        end = start + timedelta(minutes=duration_minutes)
        if owner_id is not None:
            # window is bounded by the longest bookable meeting
            stmt = select(Booking).where(
                and_(
                    Booking.owner_id == owner_id,
                    Booking.outcome == BookingOutcome.PENDING.value,
                    Booking.scheduled_at < end,
                    Booking.scheduled_at > start - timedelta(minutes=480),
                )
            )
            for existing in session.scalars(stmt):
                if existing.id == ignore_booking_id:
                    continue
                existing_start = as_utc(existing.scheduled_at)
                if existing_start < end and start < existing_start + timedelta(minutes=existing.duration_minutes):
                    raise Conflict("owner already has a booking in that slot", details={"booking_id": str(existing.id)})

        try:
            busy = self.calendar.query_free_busy(start, end)
        except ExternalFailure as exc:
            logger.warning("meetings.free_busy_unavailable", extra={"error": exc.message})
            return
        for interval in busy:
            if interval.overlaps(start, end):
                raise Conflict(
                    "calendar is busy in that slot",
                    details={"busy_start": interval.start.isoformat(), "busy_end": interval.end.isoformat()},
                )

    def schedule(self, session: Session, payload: BookingCreate, *, actor_id: str | None) -> Booking:
        start = as_utc(payload.scheduled_at)
        if start <= utcnow():
            raise ValidationFailed("bookings must be scheduled in the future")
        opportunity = get_opportunity(session, payload.opportunity_id)
        lead = session.get(Lead, opportunity.lead_id)
        booking_type = payload.booking_type.value
        self._ensure_slot_free(session, opportunity.owner_id, start, payload.duration_minutes)

        location_type = payload.location_type or ("in_person" if booking_type == BookingType.ONBOARDING.value else "video")
        booking = Booking(
            opportunity_id=opportunity.id,
            lead_id=opportunity.lead_id,
            owner_id=opportunity.owner_id,
            booking_type=booking_type,
            location_type=location_type,
            scheduled_at=start,
            duration_minutes=payload.duration_minutes,
            notes=payload.notes,
        )
        session.add(booking)
        session.commit()
        session.refresh(booking)
        booking_id = booking.id
        logger.info("meetings.booking_created", extra={"booking_id": str(booking_id), "opportunity_id": str(opportunity.id)})

        self._sync_calendar(session, booking, lead)

        current = parse_stage(opportunity.stage)
        target = SCHEDULED_STAGES[booking_type]
        if is_forward(current, target):
            try:
                self.controller.transition(
                    session,
                    TransitionCommand(
                        opportunity_id=opportunity.id,
                        to_stage=target,
                        actor_id=actor_id,
                        rationale=f"{BOOKING_LABELS[booking_type]} booked for {start:%d/%m/%Y %H:%M}",
                        expected_from_stage=current,
                    ),
                )
            except Conflict as exc:
                logger.warning("meetings.booking_transition_skipped", extra={"booking_id": str(booking_id), "error": exc.message})

        if lead is not None:
            self.scheduler.enqueue_for_event(
                session, lead, BOOKED_EVENTS[booking_type], opportunity_id=opportunity.id, anchor_at=start
            )
        return get_booking(session, booking_id)

    def _sync_calendar(self, session: Session, booking: Booking, lead: Lead | None) -> None:
        label = BOOKING_LABELS.get(booking.booking_type, booking.booking_type)
        lead_name = lead.name if lead is not None else "Customer"
        draft = EventDraft(
            summary=f"{label} - {lead_name}",
            description=f"{label} with {lead_name}.\nOpportunity: {booking.opportunity_id}",
            start=as_utc(booking.scheduled_at),
            duration_minutes=booking.duration_minutes,
            attendee_email=lead.email if lead is not None else None,
            add_meet_link=booking.location_type == "video",
        )
        try:
            event = self.calendar.create_event(draft)
        except ExternalFailure as exc:
            logger.warning("meetings.calendar_sync_failed", extra={"booking_id": str(booking.id), "error": exc.message})
            return
        booking.calendar_event_id = event.event_id
        booking.meet_link = event.meet_link
        session.add(booking)
        session.commit()

    def reschedule(self, session: Session, booking_id: uuid.UUID, payload: BookingReschedule, *, actor_id: str | None) -> Booking:
        booking = get_booking(session, booking_id)
        if booking.outcome != BookingOutcome.PENDING.value:
            raise Conflict(f"booking is already {booking.outcome}")
        start = as_utc(payload.scheduled_at)
        if start <= utcnow():
            raise ValidationFailed("bookings must be scheduled in the future")
        duration = payload.duration_minutes or booking.duration_minutes
        self._ensure_slot_free(session, booking.owner_id, start, duration, ignore_booking_id=booking.id)

        previous = as_utc(booking.scheduled_at)
        booking.scheduled_at = start
        booking.duration_minutes = duration
        booking.tracking_status = TrackingStatus.PENDING.value
        session.add(booking)
        session.add(
            PostCallAction(
                booking_id=booking.id,
                opportunity_id=booking.opportunity_id,
                action_type="rescheduled",
                reasoning=f"Moved from {previous:%d/%m/%Y %H:%M} to {start:%d/%m/%Y %H:%M}",
                actor_id=actor_id,
            )
        )
        session.commit()

        if booking.calendar_event_id:
            try:
                self.calendar.update_event(booking.calendar_event_id, start=start, duration_minutes=duration)
            except ExternalFailure as exc:
                logger.warning("meetings.calendar_sync_failed", extra={"booking_id": str(booking_id), "error": exc.message})

        event = BOOKED_EVENTS[booking.booking_type]
        self.scheduler.skip_queued_for_event(session, booking.opportunity_id, event, reason="superseded by reschedule")
        lead = session.get(Lead, booking.lead_id)
        if lead is not None:
            self.scheduler.enqueue_for_event(session, lead, event, opportunity_id=booking.opportunity_id, anchor_at=start)
        logger.info("meetings.booking_rescheduled", extra={"booking_id": str(booking_id)})
        return get_booking(session, booking_id)

    def record_outcome(
        self, session: Session, booking_id: uuid.UUID, payload: BookingOutcomeRequest, *, actor_id: str | None
    ) -> Booking:
        if payload.outcome == BookingOutcome.PENDING:
            raise ValidationFailed("outcome must be a settled value")
        booking = get_booking(session, booking_id)
        if booking.outcome != BookingOutcome.PENDING.value:
            raise Conflict(f"booking outcome is already {booking.outcome}")
        if booking.tracking_status == TrackingStatus.PROCESSING.value:
            raise Conflict("booking is being tracked, retry shortly")

        booking.outcome = payload.outcome.value
        booking.tracking_status = TrackingStatus.CHECKED.value
        booking.tracking_claim_token = None
        booking.tracked_at = utcnow()
        if payload.notes:
            booking.notes = payload.notes.strip()
        session.add(booking)
        session.add(
            PostCallAction(
                booking_id=booking.id,
                opportunity_id=booking.opportunity_id,
                action_type="manual_outcome",
                reasoning=f"Outcome recorded as {payload.outcome.value}",
                actor_id=actor_id,
            )
        )
        session.commit()
        logger.info("meetings.outcome_recorded", extra={"booking_id": str(booking_id), "outcome": payload.outcome.value})

        booking = get_booking(session, booking_id)
        try:
            self.follow_ups.apply(session, booking)
        except Exception as exc:
            session.rollback()
            logger.exception("meetings.follow_up_failed", extra={"booking_id": str(booking_id), "error": str(exc)})
        if booking.outcome == BookingOutcome.COMPLETED.value and booking.notes:
            try:
                self.workflow.process_post_call_notes(session, booking_id, booking.notes, actor_id=actor_id)
            except PipelineError as exc:
                session.rollback()
                logger.warning("meetings.suggestion_failed", extra={"booking_id": str(booking_id), "error": exc.message})
        return get_booking(session, booking_id)


booking_service = BookingService()
