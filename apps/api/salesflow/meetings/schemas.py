from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from salesflow.meetings.models import BookingOutcome, BookingType
from salesflow.pipeline.stages import Stage


class BookingCreate(BaseModel):
    opportunity_id: uuid.UUID
    booking_type: BookingType
    scheduled_at: datetime
    duration_minutes: int = Field(default=30, ge=5, le=480)
    location_type: Literal["video", "phone", "in_person"] | None = None
    notes: str | None = None


class BookingReschedule(BaseModel):
    scheduled_at: datetime
    duration_minutes: int | None = Field(default=None, ge=5, le=480)


class BookingOutcomeRequest(BaseModel):
    outcome: BookingOutcome
    notes: str | None = None


class PostCallNotesRequest(BaseModel):
    notes: str = Field(min_length=1, max_length=10000)


class SuggestionOverrideRequest(BaseModel):
    stage: Stage
    rationale: str | None = Field(default=None, max_length=1000)


class BookingRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    opportunity_id: uuid.UUID
    lead_id: uuid.UUID
    owner_id: uuid.UUID | None
    booking_type: str
    location_type: str
    scheduled_at: datetime
    duration_minutes: int
    outcome: str
    tracking_status: str
    calendar_event_id: str | None
    meet_link: str | None
    notes: str | None
    suggestion_state: str
    suggested_stage: str | None
    suggested_from_stage: str | None
    suggestion_confidence: int | None
    suggestion_reasoning: str | None
    suggestion_payload: dict[str, Any] | None
    suggested_at: datetime | None
    created_at: datetime


class PostCallActionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    booking_id: uuid.UUID | None
    opportunity_id: uuid.UUID
    action_type: str
    suggested_stage: str | None
    actual_stage: str | None
    confidence: int | None
    reasoning: str | None
    actor_id: str | None
    created_at: datetime


class SuggestionOutcomeRead(BaseModel):
    booking_id: uuid.UUID
    state: str
    auto_applied: bool
    suggested_stage: str | None = None
    confidence: int | None = None
    reasoning: str | None = None
    from_stage: str | None = None
    to_stage: str | None = None


class TrackerSummaryRead(BaseModel):
    claimed: int
    processed: int
    updated: int
    manual: int
    deferred: int
    errors: int
    pre_meeting_flagged: int
