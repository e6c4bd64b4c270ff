from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

from salesflow.pipeline.stages import Stage


Channel = Literal["email", "sms", "whatsapp"]
DelayRule = Literal["immediate", "after", "before_booking"]


class MessageTemplateCreate(BaseModel):
    slug: str = Field(min_length=1, max_length=64, pattern=r"^[a-z0-9_]+$")
    name: str = Field(min_length=1, max_length=255)
    subject: str | None = Field(default=None, max_length=255)
    body: str = Field(min_length=1)
    channels: list[Channel] = Field(min_length=1)
    trigger_stage: Stage | None = None
    trigger_event: str | None = Field(default=None, max_length=64)
    delay_rule: DelayRule = "immediate"
    delay_minutes: int = Field(default=0, ge=0)
    active: bool = True
    sort_order: int = 0

    @model_validator(mode="after")
    def _check_trigger(self) -> MessageTemplateCreate:
        if self.trigger_stage is not None and self.trigger_event is not None:
            raise ValueError("a template is triggered by a stage or an event, not both")
        if "email" in self.channels and not self.subject:
            raise ValueError("email templates need a subject")
        return self


class MessageTemplateUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=255)
    subject: str | None = Field(default=None, max_length=255)
    body: str | None = Field(default=None, min_length=1)
    channels: list[Channel] | None = Field(default=None, min_length=1)
    trigger_stage: Stage | None = None
    trigger_event: str | None = Field(default=None, max_length=64)
    delay_rule: DelayRule | None = None
    delay_minutes: int | None = Field(default=None, ge=0)
    active: bool | None = None
    sort_order: int | None = None


class MessageTemplateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    slug: str
    name: str
    subject: str | None
    body: str
    channels: list[str]
    trigger_stage: str | None
    trigger_event: str | None
    delay_rule: str
    delay_minutes: int
    active: bool
    sort_order: int
    updated_at: datetime


class TemplatePreviewRequest(BaseModel):
    variables: dict[str, str] = Field(default_factory=dict)


class TemplatePreviewResponse(BaseModel):
    subject: str | None
    body: str
    missing: list[str]


class AdHocMessageRequest(BaseModel):
    channel: Channel
    subject: str | None = Field(default=None, max_length=255)
    body: str = Field(min_length=1, max_length=5000)
    scheduled_for: datetime | None = None


class MessageLogRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    lead_id: uuid.UUID
    opportunity_id: uuid.UUID | None
    template_id: uuid.UUID | None
    channel: str
    status: str
    scheduled_for: datetime | None
    payload: dict[str, Any]
    sent_at: datetime | None
    external_id: str | None
    error: str | None
    opened_at: datetime | None
    clicked_at: datetime | None
    created_at: datetime


class DispatchSummaryRead(BaseModel):
    claimed: int
    processed: int
    sent: int
    failed: int
    skipped: int


class QueueDepthRead(BaseModel):
    ready_to_send: int
    scheduled: int
    total_queued: int
