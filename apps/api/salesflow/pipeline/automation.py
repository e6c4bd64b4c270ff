from __future__ import annotations

import logging
import time
import uuid
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import and_, select
from sqlalchemy.orm import Session

from salesflow.context import reset_sweep_name, set_sweep_name
from salesflow.core.clock import as_utc, utcnow
from salesflow.core.database import SessionLocal
from salesflow.core.events import InternalEvent, event_bus
from salesflow.meetings.models import Booking, BookingOutcome, BookingType
from salesflow.messaging.service import MessageScheduler, message_scheduler
from salesflow.metrics import observe_sweep
from salesflow.payments.service import InvoiceService, invoice_service
from salesflow.pipeline.models import Lead, Opportunity
from salesflow.pipeline.service import STAGE_ENTERED_EVENT, get_opportunity
from salesflow.pipeline.stages import STAGE_REGISTRY, Stage, is_stale, parse_stage
from salesflow.pipeline.tasks import TaskService, task_service


logger = logging.getLogger("salesflow.pipeline.automation")

FOLLOW_UP_TASKS: dict[Stage, tuple[str, str]] = {
    Stage.QUALIFIED: ("schedule_call2", "Book the design call"),
    Stage.DEPOSIT_PAID: ("schedule_onboarding", "Book the onboarding session"),
}

# stage -> (booking type, hours before the booking at which a reminder task is due)
REMINDER_TASKS: dict[Stage, tuple[BookingType, tuple[int, ...]]] = {
    Stage.CALL1_SCHEDULED: (BookingType.CALL1, (24, 2)),
    Stage.CALL2_SCHEDULED: (BookingType.CALL2, (24,)),
    Stage.ONBOARDING_SCHEDULED: (BookingType.ONBOARDING, (24,)),
}

STALE_TASK_TYPE = "stale_follow_up"


class StageAutomation:
    """Side effects of entering a stage. Each action is isolated: a failure is logged and the rest still run."""

    def __init__(
        self,
        scheduler: MessageScheduler | None = None,
        invoices: InvoiceService | None = None,
        tasks: TaskService | None = None,
    ) -> None:
        self.scheduler = scheduler or message_scheduler
        self.invoices = invoices or invoice_service
        self.tasks = tasks or task_service

    def on_stage_entered(self, session: Session, opportunity_id: uuid.UUID, stage: Stage | str) -> list[str]:
        entered = parse_stage(stage)
        opportunity = get_opportunity(session, opportunity_id)
        if opportunity.stage != entered.value:
            # the opportunity moved on before the handler ran; the newer event will cover it
            logger.info("pipeline.automation_superseded", extra={"opportunity_id": str(opportunity_id), "to_stage": entered.value})
            return []

        actions: list[tuple[str, Callable[[], None]]] = []
        if entered == Stage.AWAITING_DEPOSIT:
            actions.append(("deposit_invoice", lambda: self._raise_deposit_invoice(session, opportunity_id)))
        if entered in FOLLOW_UP_TASKS:
            actions.append(("follow_up_task", lambda: self._create_follow_up_task(session, opportunity_id, entered)))
        if entered in REMINDER_TASKS:
            actions.append(("reminder_tasks", lambda: self._create_reminder_tasks(session, opportunity_id, entered)))
        actions.append(("stage_messages", lambda: self._enqueue_messages(session, opportunity_id, entered)))

        completed: list[str] = []
        for name, action in actions:
            try:
                action()
                completed.append(name)
            except Exception as exc:
                session.rollback()
                logger.exception(
                    "pipeline.automation_failed",
                    extra={"opportunity_id": str(opportunity_id), "to_stage": entered.value, "status": name, "error": str(exc)},
                )
        return completed

    def _enqueue_messages(self, session: Session, opportunity_id: uuid.UUID, stage: Stage) -> None:
        opportunity = get_opportunity(session, opportunity_id)
        lead = session.get(Lead, opportunity.lead_id)
        if lead is None:
            return
        self.scheduler.enqueue_for_stage(session, lead, stage, opportunity_id=opportunity_id)

    def _raise_deposit_invoice(self, session: Session, opportunity_id: uuid.UUID) -> None:
        invoice = self.invoices.create_deposit_invoice(session, get_opportunity(session, opportunity_id))
        self.invoices.create_checkout(session, invoice.id)

    def _create_follow_up_task(self, session: Session, opportunity_id: uuid.UUID, stage: Stage) -> None:
        task_type, description = FOLLOW_UP_TASKS[stage]
        if self.tasks.has_open_task(session, opportunity_id, task_type):
            return
        self.tasks.create_task(
            session,
            get_opportunity(session, opportunity_id),
            task_type=task_type,
            description=description,
            due_at=utcnow() + timedelta(days=1),
        )
        session.commit()

    def _create_reminder_tasks(self, session: Session, opportunity_id: uuid.UUID, stage: Stage) -> None:
        booking_type, hours_before = REMINDER_TASKS[stage]
        booking = session.scalar(
            select(Booking)
            .where(
                and_(
                    Booking.opportunity_id == opportunity_id,
                    Booking.booking_type == booking_type.value,
                    Booking.outcome == BookingOutcome.PENDING.value,
                )
            )
            .order_by(Booking.scheduled_at.desc())
            .limit(1)
        )
        if booking is None:
            return
        now = utcnow()
        scheduled_at = as_utc(booking.scheduled_at)
        opportunity = get_opportunity(session, opportunity_id)
        created = False
        for hours in hours_before:
            due_at = scheduled_at - timedelta(hours=hours)
            if due_at <= now:
                continue
            self.tasks.create_task(
                session,
                opportunity,
                task_type=f"{booking_type.value}_reminder_{hours}h",
                description=f"Remind the customer about the {booking_type.value} booking",
                due_at=due_at,
            )
            created = True
        if created:
            session.commit()

    def flag_stale_opportunities(self, session: Session, *, now: datetime | None = None) -> int:
        """Open one stale_follow_up task per opportunity that has overrun its stage's response target."""
        reference = now or utcnow()
        sweep_token = set_sweep_name("stale_opportunities")
        started = time.perf_counter()
        flagged = 0
        errors = 0
        sweep_status = "failed"
        try:
            tracked_stages = [stage.value for stage, definition in STAGE_REGISTRY.items() if definition.response_target is not None]
            candidates = list(
                session.execute(select(Opportunity.id, Opportunity.stage, Opportunity.stage_entered_at).where(Opportunity.stage.in_(tracked_stages)))
            )
            for opportunity_id, stage, stage_entered_at in candidates:
                if not is_stale(stage, stage_entered_at, reference):
                    continue
                try:
                    if self._flag_stale(session, opportunity_id, reference):
                        flagged += 1
                except Exception as exc:
                    session.rollback()
                    errors += 1
                    logger.exception("pipeline.stale_flag_failed", extra={"opportunity_id": str(opportunity_id), "error": str(exc)})
            sweep_status = "ok"
        finally:
            observe_sweep("stale_opportunities", sweep_status, time.perf_counter() - started)
            reset_sweep_name(sweep_token)
        logger.info("pipeline.stale_sweep.finished", extra={"processed": flagged, "status": sweep_status, "errors": errors})
        return flagged

    def _flag_stale(self, session: Session, opportunity_id: uuid.UUID, reference: datetime) -> bool:
        if self.tasks.has_open_task(session, opportunity_id, STALE_TASK_TYPE):
            return False
        opportunity = get_opportunity(session, opportunity_id)
        label = STAGE_REGISTRY[parse_stage(opportunity.stage)].label
        self.tasks.create_task(
            session,
            opportunity,
            task_type=STALE_TASK_TYPE,
            description=f"Opportunity has been in {label} longer than its response target",
            due_at=reference,
        )
        session.commit()
        return True


stage_automation = StageAutomation()

SessionScope = Callable[[], AbstractContextManager[Session]]


@contextmanager
def default_session_scope() -> Iterator[Session]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


_session_scope: SessionScope | None = None


def _on_stage_entered(event: InternalEvent) -> None:
    envelope: Any = event.payload
    payload = envelope.get("payload") if isinstance(envelope, dict) else None
    if not isinstance(payload, dict):
        return
    try:
        opportunity_id = uuid.UUID(str(payload.get("opportunity_id")))
    except ValueError:
        return
    to_stage = payload.get("to_stage")
    if not isinstance(to_stage, str):
        return

    scope = _session_scope or default_session_scope
    try:
        with scope() as session:
            stage_automation.on_stage_entered(session, opportunity_id, to_stage)
    except Exception as exc:
        logger.exception(
            "pipeline.automation_dispatch_failed",
            extra={"event_name": event.name, "opportunity_id": str(opportunity_id), "error": str(exc)[:500]},
        )


def register_handlers(session_scope: SessionScope | None = None) -> None:
    """Subscribe stage automation to stage_entered events. Safe to call more than once per process."""
    global _session_scope
    _session_scope = session_scope or default_session_scope
    event_bus.unsubscribe(STAGE_ENTERED_EVENT, _on_stage_entered)
    event_bus.subscribe(STAGE_ENTERED_EVENT, _on_stage_entered)


def unregister_handlers() -> None:
    global _session_scope
    event_bus.unsubscribe(STAGE_ENTERED_EVENT, _on_stage_entered)
    _session_scope = None
