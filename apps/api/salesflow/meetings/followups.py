from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.orm import Session

from salesflow.core.clock import as_utc, utcnow
from salesflow.meetings.models import Booking, BookingOutcome, PostCallAction
from salesflow.messaging.service import MessageScheduler, message_scheduler
from salesflow.messaging.templates import EVENT_MEETING_NO_SHOW
from salesflow.pipeline.models import Lead
from salesflow.pipeline.service import get_opportunity
from salesflow.pipeline.tasks import TaskService, task_service


logger = logging.getLogger("salesflow.meetings.followups")

MEETING_NAMES = {"call1": "discovery call", "call2": "design call", "onboarding": "onboarding visit"}


class OutcomeFollowUps:
    """Tasks and messages that follow a settled booking outcome."""

    def __init__(self, scheduler: MessageScheduler | None = None, tasks: TaskService | None = None) -> None:
        self.scheduler = scheduler or message_scheduler
        self.tasks = tasks or task_service

    def apply(self, session: Session, booking: Booking) -> None:
        if booking.outcome == BookingOutcome.NO_SHOW.value:
            self._no_show(session, booking)
        elif booking.outcome == BookingOutcome.CANCELLED.value:
            self._cancelled(session, booking)
        elif booking.outcome == BookingOutcome.COMPLETED.value:
            self._completed(session, booking)

    def _lead(self, session: Session, booking: Booking) -> Lead | None:
        return session.get(Lead, booking.lead_id)

    def _no_show(self, session: Session, booking: Booking) -> None:
        lead = self._lead(session, booking)
        if lead is None:
            return
        meeting = MEETING_NAMES.get(booking.booking_type, booking.booking_type)
        self.scheduler.enqueue_for_event(
            session,
            lead,
            EVENT_MEETING_NO_SHOW,
            opportunity_id=booking.opportunity_id,
            variables={"meeting_name": meeting},
        )
        self.tasks.create_task(
            session,
            get_opportunity(session, booking.opportunity_id),
            task_type="follow_up_no_show",
            description=f"No-show: {lead.name} missed their {meeting} on {as_utc(booking.scheduled_at):%d/%m/%Y}. Follow-up message queued.",
            due_at=utcnow(),
        )
        session.commit()

    def _cancelled(self, session: Session, booking: Booking) -> None:
        lead = self._lead(session, booking)
        name = lead.name if lead is not None else "Customer"
        meeting = MEETING_NAMES.get(booking.booking_type, booking.booking_type)
        self.tasks.create_task(
            session,
            get_opportunity(session, booking.opportunity_id),
            task_type="reschedule_cancelled",
            description=f"Cancelled: {name} cancelled their {meeting}. Reach out to reschedule.",
            due_at=utcnow(),
        )
        session.commit()

    def _completed(self, session: Session, booking: Booking) -> None:
        if booking.notes:
            return
        lead = self._lead(session, booking)
        name = lead.name if lead is not None else "the customer"
        meeting = MEETING_NAMES.get(booking.booking_type, booking.booking_type)
        self.tasks.create_task(
            session,
            get_opportunity(session, booking.opportunity_id),
            task_type="post_call_notes",
            description=f"Add notes for your {meeting} with {name} so a next step can be suggested.",
            due_at=utcnow() + timedelta(hours=1),
        )
        session.add(
            PostCallAction(
                booking_id=booking.id,
                opportunity_id=booking.opportunity_id,
                action_type="reminder_sent",
                reasoning="Meeting completed, prompted owner for post-call notes",
            )
        )
        session.commit()


outcome_follow_ups = OutcomeFollowUps()
