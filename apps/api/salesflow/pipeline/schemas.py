from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

from salesflow.pipeline.stages import Stage


class StageRead(BaseModel):
    stage: Stage
    label: str
    description: str
    position: int
    response_target_days: int | None


class LeadIntakeRequest(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=64)
    postcode: str | None = Field(default=None, max_length=16)
    project_type: str | None = Field(default=None, max_length=128)
    budget_band: str | None = Field(default=None, max_length=64)
    notes: str | None = None
    source: str = Field(default="webhook", max_length=64)
    value_estimate: Decimal | None = Field(default=None, ge=0)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("name must not be blank")
        return stripped

    @field_validator("email", "phone", "postcode", "project_type", "budget_band", "notes", mode="before")
    @classmethod
    def _blank_to_none(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value


class LeadIntakeResponse(BaseModel):
    lead_id: uuid.UUID
    opportunity_id: uuid.UUID
    owner_id: uuid.UUID | None


class LeadRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    email: str | None
    phone: str | None
    postcode: str | None
    project_type: str | None
    budget_band: str | None
    source: str
    owner_id: uuid.UUID | None
    opted_out: bool
    opted_out_at: datetime | None
    created_at: datetime


class OpportunityRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    lead_id: uuid.UUID
    owner_id: uuid.UUID | None
    stage: Stage
    value_estimate: Decimal | None
    stage_entered_at: datetime
    call1_completed_at: datetime | None
    deposit_paid_at: datetime | None
    onboarding_completed_at: datetime | None
    completed_at: datetime | None
    row_version: int
    created_at: datetime
    updated_at: datetime


class TransitionRequest(BaseModel):
    to_stage: str
    rationale: str | None = Field(default=None, max_length=2000)
    expected_from_stage: str | None = None


class StageLogEntryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    opportunity_id: uuid.UUID
    sequence: int
    from_stage: Stage | None
    to_stage: Stage
    actor_id: str | None
    rationale: str | None
    created_at: datetime


class TaskRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    opportunity_id: uuid.UUID
    owner_id: uuid.UUID | None
    task_type: str
    description: str | None
    due_at: datetime | None
    status: Literal["open", "done", "cancelled"]
    completed_at: datetime | None
    completed_by: str | None
    created_at: datetime


class TaskCompleteRequest(BaseModel):
    status: Literal["done", "cancelled"] = "done"


class SalesUserCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    role: Literal["sales", "admin", "support"] = "sales"
    active: bool = True
    service_regions: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _normalise_regions(self) -> SalesUserCreate:
        self.service_regions = [region.strip().upper() for region in self.service_regions if region.strip()]
        return self


class SalesUserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    name: str
    email: str
    role: str
    active: bool
    service_regions: list[str]
    active_opportunities: int
    last_assigned_at: datetime | None


class ScoreFactorRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    label: str
    score: int
    max: int
    insight: str | None = None


class LeadScoreRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total: int = Field(ge=0, le=100)
    tier: Literal["hot", "warm", "cold"]
    factors: list[ScoreFactorRead]


class AILeadScoreRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    score: int = Field(ge=0, le=100)
    tier: Literal["hot", "warm", "cold"]
    summary: str
    factors: list[ScoreFactorRead]
    closing_tip: str | None
    rule_based: LeadScoreRead


class NextActionRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    action: str
    reason: str
    urgency: Literal["high", "medium", "low"]
    source: Literal["rules", "ai"]
    script_hint: str | None = None
    risk: str | None = None


class ActivitySummaryRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    narrative: str
    key_milestones: list[str]
    engagement_level: Literal["high", "medium", "low"]
    next_milestone: str | None
    risk_note: str | None
    days_in_pipeline: int
