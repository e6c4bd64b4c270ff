from __future__ import annotations

import logging
import uuid

from fastapi import APIRouter, Depends, Query, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from salesflow.api.responses import pipeline_error_response
from salesflow.core.auth import AuthUser, authorize_sweep_caller, get_current_user
from salesflow.core.database import get_db
from salesflow.core.rbac import SALES_ROLES, require_role
from salesflow.errors import PipelineError
from salesflow.meetings.schemas import (
    BookingCreate,
    BookingOutcomeRequest,
    BookingRead,
    BookingReschedule,
    PostCallActionRead,
    PostCallNotesRequest,
    SuggestionOutcomeRead,
    SuggestionOverrideRequest,
    TrackerSummaryRead,
)
from salesflow.meetings.service import booking_service
from salesflow.meetings.suggestions import SuggestionOutcome, ai_suggestion_workflow
from salesflow.meetings.tracker import meeting_tracker

logger = logging.getLogger("salesflow.meetings.api")

bookings_router = APIRouter(prefix="/api/crm", tags=["crm.bookings"])
suggestions_router = APIRouter(prefix="/api/crm", tags=["crm.suggestions"])
meetings_cron_router = APIRouter(prefix="/api/cron", tags=["cron.meetings"])


def _suggestion_read(outcome: SuggestionOutcome) -> SuggestionOutcomeRead:
    suggestion = outcome.suggestion
    transition = outcome.transition
    return SuggestionOutcomeRead(
        booking_id=outcome.booking_id,
        state=outcome.state.value,
        auto_applied=outcome.auto_applied,
        suggested_stage=suggestion.stage if suggestion is not None else None,
        confidence=suggestion.confidence if suggestion is not None else None,
        reasoning=suggestion.reasoning if suggestion is not None else None,
        from_stage=transition.from_stage.value if transition is not None else None,
        to_stage=transition.to_stage.value if transition is not None else None,
    )


@bookings_router.post("/bookings", response_model=BookingRead, status_code=status.HTTP_201_CREATED)
def create_booking(
    request: Request,
    dto: BookingCreate,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> BookingRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return booking_service.schedule(db, dto, actor_id=user.actor_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="create_booking")


@bookings_router.get("/bookings/{booking_id}", response_model=BookingRead)
def get_booking(
    request: Request,
    booking_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> BookingRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return booking_service.get(db, booking_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="get_booking")


@bookings_router.get("/opportunities/{opportunity_id}/bookings", response_model=list[BookingRead])
def list_bookings(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[BookingRead] | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return booking_service.list_for_opportunity(db, opportunity_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="list_bookings")


@bookings_router.post("/bookings/{booking_id}/reschedule", response_model=BookingRead)
def reschedule_booking(
    request: Request,
    booking_id: uuid.UUID,
    dto: BookingReschedule,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> BookingRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return booking_service.reschedule(db, booking_id, dto, actor_id=user.actor_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="reschedule_booking")


@bookings_router.post("/bookings/{booking_id}/outcome", response_model=BookingRead)
def record_booking_outcome(
    request: Request,
    booking_id: uuid.UUID,
    dto: BookingOutcomeRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> BookingRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return booking_service.record_outcome(db, booking_id, dto, actor_id=user.actor_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="record_outcome")


@bookings_router.get("/bookings/{booking_id}/actions", response_model=list[PostCallActionRead])
def list_post_call_actions(
    request: Request,
    booking_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> list[PostCallActionRead] | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return ai_suggestion_workflow.list_actions(db, booking_id)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="list_post_call_actions")


@suggestions_router.post("/bookings/{booking_id}/notes", response_model=SuggestionOutcomeRead)
def submit_post_call_notes(
    request: Request,
    booking_id: uuid.UUID,
    dto: PostCallNotesRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> SuggestionOutcomeRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        outcome = ai_suggestion_workflow.process_post_call_notes(db, booking_id, dto.notes, actor_id=user.actor_id)
        return _suggestion_read(outcome)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="process_post_call_notes")


@suggestions_router.post("/opportunities/{opportunity_id}/suggest", response_model=SuggestionOutcomeRead)
def suggest_from_activity(
    request: Request,
    opportunity_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> SuggestionOutcomeRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return _suggestion_read(ai_suggestion_workflow.suggest_from_activity(db, opportunity_id, actor_id=user.actor_id))
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="suggest_from_activity")


@suggestions_router.post("/bookings/{booking_id}/suggestion/confirm", response_model=SuggestionOutcomeRead)
def confirm_suggestion(
    request: Request,
    booking_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> SuggestionOutcomeRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return _suggestion_read(ai_suggestion_workflow.confirm(db, booking_id, actor_id=user.actor_id))
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="confirm_suggestion")


@suggestions_router.post("/bookings/{booking_id}/suggestion/override", response_model=SuggestionOutcomeRead)
def override_suggestion(
    request: Request,
    booking_id: uuid.UUID,
    dto: SuggestionOverrideRequest,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> SuggestionOutcomeRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        outcome = ai_suggestion_workflow.override(
            db, booking_id, dto.stage.value, actor_id=user.actor_id, rationale=dto.rationale
        )
        return _suggestion_read(outcome)
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="override_suggestion")


@suggestions_router.post("/bookings/{booking_id}/suggestion/dismiss", response_model=SuggestionOutcomeRead)
def dismiss_suggestion(
    request: Request,
    booking_id: uuid.UUID,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> SuggestionOutcomeRead | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return _suggestion_read(ai_suggestion_workflow.dismiss(db, booking_id, actor_id=user.actor_id))
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="dismiss_suggestion")


@meetings_cron_router.post("/meetings", response_model=TrackerSummaryRead)
def track_meetings(
    request: Request,
    limit: int | None = Query(default=None, ge=1, le=200),
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> TrackerSummaryRead | JSONResponse:
    try:
        auth_path = authorize_sweep_caller(request, user)
        logger.info("meetings.tracker.requested", extra={"status": auth_path})
        summary = meeting_tracker.run_sweep(db, limit=limit)
        return TrackerSummaryRead(
            claimed=summary.claimed,
            processed=summary.processed,
            updated=summary.updated,
            manual=summary.manual,
            deferred=summary.deferred,
            errors=summary.errors,
            pre_meeting_flagged=summary.pre_meeting_flagged,
        )
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="track_meetings")


@meetings_cron_router.get("/meetings", response_model=None)
def pending_tracking(
    request: Request,
    db: Session = Depends(get_db),
    user: AuthUser = Depends(get_current_user),
) -> dict[str, int] | JSONResponse:
    try:
        require_role(user, *SALES_ROLES)
        return {"pending_tracking": meeting_tracker.pending_count(db)}
    except PipelineError as exc:
        return pipeline_error_response(request, exc, operation="pending_tracking")
