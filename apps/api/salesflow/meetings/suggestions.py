from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from sqlalchemy import select
from sqlalchemy.orm import Session

from salesflow.core.clock import utcnow
from salesflow.core.config import get_settings
from salesflow.errors import Conflict, NotFound, ValidationFailed
from salesflow.meetings.inference import (
    InferenceClient,
    InferenceContext,
    StageSuggestion,
    build_inference_client,
    parse_suggestion,
)
from salesflow.meetings.models import NO_CHANGE, Booking, BookingOutcome, PostCallAction, SuggestionState
from salesflow.messaging.models import MessageLogEntry
from salesflow.metrics import observe_ai_suggestion
from salesflow.pipeline.models import Lead, StageLogEntry
from salesflow.pipeline.service import (
    StageTransitionController,
    TransitionCommand,
    TransitionResult,
    get_opportunity,
    stage_controller,
)
from salesflow.pipeline.stages import is_forward, parse_stage


logger = logging.getLogger("salesflow.meetings.suggestions")
tracer = trace.get_tracer("salesflow.meetings.suggestions")

SYSTEM_ACTOR = "system"


@dataclass(frozen=True)
class SuggestionOutcome:
    booking_id: uuid.UUID
    state: SuggestionState
    suggestion: StageSuggestion | None = None
    transition: TransitionResult | None = None

    @property
    def auto_applied(self) -> bool:
        return self.state == SuggestionState.CONFIRMED and self.transition is not None


def get_booking(session: Session, booking_id: uuid.UUID) -> Booking:
    booking = session.get(Booking, booking_id)
    if booking is None:
        raise NotFound("booking not found", details={"booking_id": str(booking_id)})
    return booking


def _clear_suggestion(booking: Booking, state: SuggestionState) -> None:
    booking.suggestion_state = state.value
    booking.suggested_stage = None
    booking.suggested_from_stage = None
    booking.suggestion_confidence = None
    booking.suggestion_reasoning = None
    booking.suggestion_payload = None


class AISuggestionWorkflow:
    """Post-call stage suggestions. A booking holds at most one unresolved suggestion; a newer one replaces it."""

    def __init__(self, inference: InferenceClient | None = None, controller: StageTransitionController | None = None) -> None:
        self._inference = inference
        self.controller = controller or stage_controller

    @property
    def inference(self) -> InferenceClient:
        if self._inference is None:
            self._inference = build_inference_client(get_settings())
        return self._inference

    def process_post_call_notes(
        self, session: Session, booking_id: uuid.UUID, notes: str, *, actor_id: str | None = None
    ) -> SuggestionOutcome:
        if not notes or not notes.strip():
            raise ValidationFailed("notes are required")
        booking = get_booking(session, booking_id)
        booking.notes = notes.strip()
        session.add(booking)
        session.commit()
        return self._analyse(session, booking, booking.notes, actor_id=actor_id)

    def suggest_from_activity(self, session: Session, opportunity_id: uuid.UUID, *, actor_id: str | None = None) -> SuggestionOutcome:
        """Same flow as post-call notes, with the notes assembled from recent stage and message history."""
        opportunity = get_opportunity(session, opportunity_id)
        booking = session.scalar(
            select(Booking)
            .where(Booking.opportunity_id == opportunity_id)
            .where(Booking.outcome.in_([BookingOutcome.COMPLETED.value, BookingOutcome.PENDING.value]))
            .order_by(Booking.scheduled_at.desc())
            .limit(1)
        )
        if booking is None:
            raise NotFound("opportunity has no booking to attach a suggestion to", details={"opportunity_id": str(opportunity_id)})

        lines = ["Recent stage changes:"]
        stage_entries = session.scalars(
            select(StageLogEntry)
            .where(StageLogEntry.opportunity_id == opportunity_id)
            .order_by(StageLogEntry.sequence.desc())
            .limit(10)
        )
        for entry in stage_entries:
            line = f"- {entry.created_at:%Y-%m-%d} {entry.from_stage or 'start'} -> {entry.to_stage}"
            lines.append(f"{line}: {entry.rationale}" if entry.rationale else line)
        lines.append("Recent messages:")
        messages = session.scalars(
            select(MessageLogEntry)
            .where(MessageLogEntry.lead_id == opportunity.lead_id)
            .order_by(MessageLogEntry.created_at.desc())
            .limit(10)
        )
        for message in messages:
            slug = (message.payload or {}).get("template_slug") or "ad hoc"
            lines.append(f"- {message.channel} {slug}: {message.status}")
        if booking.notes:
            lines.extend(["Latest call notes:", booking.notes])
        return self._analyse(session, booking, "\n".join(lines), actor_id=actor_id)

    def _analyse(self, session: Session, booking: Booking, notes: str, *, actor_id: str | None) -> SuggestionOutcome:
        opportunity = get_opportunity(session, booking.opportunity_id)
        lead = session.get(Lead, opportunity.lead_id)
        current_stage = parse_stage(opportunity.stage)
        context = InferenceContext(
            booking_type=booking.booking_type,
            current_stage=current_stage.value,
            notes=notes,
            customer_name=lead.name if lead is not None else None,
            project_type=lead.project_type if lead is not None else None,
            budget_band=lead.budget_band if lead is not None else None,
            value_estimate=str(opportunity.value_estimate) if opportunity.value_estimate is not None else None,
        )
        with tracer.start_as_current_span("meetings.suggest") as span:
            span.set_attribute("booking_id", str(booking.id))
            suggestion = parse_suggestion(self.inference.classify(context), booking.booking_type)
            span.set_attribute("suggested_stage", suggestion.stage)
            span.set_attribute("confidence", suggestion.confidence)

        self._record_action(
            session,
            booking,
            "ai_suggestion",
            suggested_stage=suggestion.stage,
            confidence=suggestion.confidence,
            reasoning=suggestion.reasoning,
            actor_id=actor_id,
            payload=suggestion.as_payload(),
        )
        session.commit()

        threshold = get_settings().ai_auto_apply_threshold
        if (
            not suggestion.is_no_change
            and suggestion.confidence >= threshold
            and is_forward(current_stage, suggestion.stage)
        ):
            try:
                result = self.controller.transition(
                    session,
                    TransitionCommand(
                        opportunity_id=booking.opportunity_id,
                        to_stage=suggestion.stage,
                        actor_id=SYSTEM_ACTOR,
                        rationale=f"AI auto-moved (confidence: {suggestion.confidence}%): {suggestion.reasoning}",
                        expected_from_stage=current_stage,
                    ),
                )
            except (Conflict, ValidationFailed) as exc:
                logger.warning(
                    "meetings.auto_apply_skipped",
                    extra={"booking_id": str(booking.id), "to_stage": suggestion.stage, "error": exc.message},
                )
            else:
                booking = get_booking(session, booking.id)
                _clear_suggestion(booking, SuggestionState.CONFIRMED)
                booking.suggested_at = utcnow()
                self._record_action(
                    session,
                    booking,
                    "system_auto",
                    suggested_stage=suggestion.stage,
                    actual_stage=suggestion.stage,
                    confidence=suggestion.confidence,
                    reasoning=f"Auto-moved to {suggestion.stage} (confidence {suggestion.confidence}%)",
                    actor_id=SYSTEM_ACTOR,
                )
                session.commit()
                observe_ai_suggestion("auto_applied")
                logger.info("meetings.suggestion_auto_applied", extra={"booking_id": str(booking.id), "to_stage": suggestion.stage})
                return SuggestionOutcome(booking.id, SuggestionState.CONFIRMED, suggestion, result)

        booking = get_booking(session, booking.id)
        if booking.suggestion_state == SuggestionState.SUGGESTED.value:
            logger.info("meetings.suggestion_superseded", extra={"booking_id": str(booking.id)})
        booking.suggestion_state = SuggestionState.SUGGESTED.value
        booking.suggested_stage = suggestion.stage
        booking.suggested_from_stage = current_stage.value
        booking.suggestion_confidence = suggestion.confidence
        booking.suggestion_reasoning = suggestion.reasoning
        booking.suggestion_payload = suggestion.as_payload()
        booking.suggested_at = utcnow()
        session.add(booking)
        session.commit()
        observe_ai_suggestion("no_change" if suggestion.is_no_change else "suggested")
        return SuggestionOutcome(booking.id, SuggestionState.SUGGESTED, suggestion)

    def confirm(self, session: Session, booking_id: uuid.UUID, *, actor_id: str | None) -> SuggestionOutcome:
        booking = get_booking(session, booking_id)
        if booking.suggestion_state != SuggestionState.SUGGESTED.value:
            raise Conflict("booking has no pending suggestion", details={"suggestion_state": booking.suggestion_state})
        if not booking.suggested_stage or booking.suggested_stage == NO_CHANGE:
            raise ValidationFailed("suggestion does not name a stage to move to")

        suggested_stage = booking.suggested_stage
        confidence = booking.suggestion_confidence
        result = self.controller.transition(
            session,
            TransitionCommand(
                opportunity_id=booking.opportunity_id,
                to_stage=suggested_stage,
                actor_id=actor_id,
                rationale=f"Confirmed AI suggestion: {booking.suggestion_reasoning or ''}".strip(),
                expected_from_stage=booking.suggested_from_stage,
            ),
        )
        booking = get_booking(session, booking_id)
        _clear_suggestion(booking, SuggestionState.CONFIRMED)
        self._record_action(
            session,
            booking,
            "owner_confirm",
            suggested_stage=suggested_stage,
            actual_stage=suggested_stage,
            confidence=confidence,
            actor_id=actor_id,
        )
        session.commit()
        observe_ai_suggestion("confirmed")
        return SuggestionOutcome(booking.id, SuggestionState.CONFIRMED, transition=result)

    def override(
        self,
        session: Session,
        booking_id: uuid.UUID,
        stage: str,
        *,
        actor_id: str | None,
        rationale: str | None = None,
    ) -> SuggestionOutcome:
        target = parse_stage(stage)
        booking = get_booking(session, booking_id)
        pending = booking.suggestion_state == SuggestionState.SUGGESTED.value
        suggested_stage = booking.suggested_stage if pending else None
        confidence = booking.suggestion_confidence if pending else None

        result = self.controller.transition(
            session,
            TransitionCommand(
                opportunity_id=booking.opportunity_id,
                to_stage=target,
                actor_id=actor_id,
                rationale=rationale or f"Owner override to {target.value}",
            ),
        )
        booking = get_booking(session, booking_id)
        if pending:
            _clear_suggestion(booking, SuggestionState.OVERRIDDEN)
        self._record_action(
            session,
            booking,
            "owner_override",
            suggested_stage=suggested_stage,
            actual_stage=target.value,
            confidence=confidence,
            reasoning=rationale,
            actor_id=actor_id,
        )
        session.commit()
        observe_ai_suggestion("overridden")
        return SuggestionOutcome(booking.id, SuggestionState(booking.suggestion_state), transition=result)

    def dismiss(self, session: Session, booking_id: uuid.UUID, *, actor_id: str | None) -> SuggestionOutcome:
        booking = get_booking(session, booking_id)
        if booking.suggestion_state != SuggestionState.SUGGESTED.value:
            raise Conflict("booking has no pending suggestion", details={"suggestion_state": booking.suggestion_state})
        suggested_stage = booking.suggested_stage
        confidence = booking.suggestion_confidence
        _clear_suggestion(booking, SuggestionState.DISMISSED)
        self._record_action(
            session,
            booking,
            "owner_dismiss",
            suggested_stage=suggested_stage,
            actual_stage=None,
            confidence=confidence,
            actor_id=actor_id,
        )
        session.commit()
        observe_ai_suggestion("dismissed")
        return SuggestionOutcome(booking.id, SuggestionState.DISMISSED)

    def list_actions(self, session: Session, booking_id: uuid.UUID) -> list[PostCallAction]:
        get_booking(session, booking_id)
        return list(
            session.scalars(
                select(PostCallAction).where(PostCallAction.booking_id == booking_id).order_by(PostCallAction.created_at)
            )
        )

    def _record_action(
        self,
        session: Session,
        booking: Booking,
        action_type: str,
        *,
        suggested_stage: str | None = None,
        actual_stage: str | None = None,
        confidence: int | None = None,
        reasoning: str | None = None,
        actor_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> PostCallAction:
        action = PostCallAction(
            booking_id=booking.id,
            opportunity_id=booking.opportunity_id,
            action_type=action_type,
            suggested_stage=suggested_stage,
            actual_stage=actual_stage,
            confidence=confidence,
            reasoning=reasoning,
            actor_id=actor_id,
            payload=payload,
        )
        session.add(action)
        session.add(booking)
        return action


ai_suggestion_workflow = AISuggestionWorkflow()
