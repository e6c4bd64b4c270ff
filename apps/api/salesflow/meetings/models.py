from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any

from sqlalchemy import JSON, DateTime, ForeignKey, Index, Integer, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from salesflow.core.clock import utcnow
from salesflow.core.database import Base


class BookingType(str, Enum):
    CALL1 = "call1"
    CALL2 = "call2"
    ONBOARDING = "onboarding"


class BookingOutcome(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    NO_SHOW = "no_show"
    CANCELLED = "cancelled"
    RESCHEDULED = "rescheduled"
    OWNER_NO_SHOW = "owner_no_show"
    TECHNICAL_ISSUE = "technical_issue"
    PARTIAL = "partial"


class TrackingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    CHECKED = "checked"
    MANUAL = "manual"
    FAILED = "failed"


class SuggestionState(str, Enum):
    NONE = "none"
    SUGGESTED = "suggested"
    CONFIRMED = "confirmed"
    OVERRIDDEN = "overridden"
    DISMISSED = "dismissed"


NO_CHANGE = "no_change"


class Booking(Base):
    __tablename__ = "meetings_booking"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    opportunity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("pipeline_opportunity.id", ondelete="CASCADE"), nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), ForeignKey("pipeline_lead.id", ondelete="CASCADE"), nullable=False)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("pipeline_sales_user.id", ondelete="SET NULL"), nullable=True
    )
    booking_type: Mapped[str] = mapped_column(String(16), nullable=False)
    location_type: Mapped[str] = mapped_column(String(16), nullable=False, default="video", server_default="video")
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False, default=30, server_default="30")
    outcome: Mapped[str] = mapped_column(String(32), nullable=False, default=BookingOutcome.PENDING.value, server_default="pending")
    tracking_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=TrackingStatus.PENDING.value, server_default="pending"
    )
    tracking_claim_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tracked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    calendar_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    meet_link: Mapped[str | None] = mapped_column(String(512), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    suggestion_state: Mapped[str] = mapped_column(
        String(16), nullable=False, default=SuggestionState.NONE.value, server_default="none"
    )
    suggested_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    suggested_from_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    suggestion_confidence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    suggestion_reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    suggestion_payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    suggested_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_meetings_booking_tracking", "tracking_status", "outcome", "scheduled_at"),
        Index("ix_meetings_booking_opportunity", "opportunity_id"),
    )


class PostCallAction(Base):
    __tablename__ = "meetings_post_call_action"

    id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    booking_id: Mapped[uuid.UUID | None] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("meetings_booking.id", ondelete="SET NULL"), nullable=True
    )
    opportunity_id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True), ForeignKey("pipeline_opportunity.id", ondelete="CASCADE"), nullable=False
    )
    action_type: Mapped[str] = mapped_column(String(32), nullable=False)
    suggested_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actual_stage: Mapped[str | None] = mapped_column(String(64), nullable=True)
    confidence: Mapped[int | None] = mapped_column(Integer, nullable=True)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    payload: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_meetings_post_call_action_booking", "booking_id"),
        Index("ix_meetings_post_call_action_opportunity", "opportunity_id"),
    )
