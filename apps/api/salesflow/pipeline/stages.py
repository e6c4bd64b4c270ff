from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from salesflow.core.clock import as_utc, utcnow
from salesflow.errors import InvalidStage


class Stage(str, Enum):
    NEW_ENQUIRY = "new_enquiry"
    CALL1_SCHEDULED = "call1_scheduled"
    QUALIFIED = "qualified"
    CALL2_SCHEDULED = "call2_scheduled"
    PROPOSAL_AGREED = "proposal_agreed"
    AWAITING_DEPOSIT = "awaiting_deposit"
    DEPOSIT_PAID = "deposit_paid"
    ONBOARDING_SCHEDULED = "onboarding_scheduled"
    ONBOARDING_COMPLETE = "onboarding_complete"
    PRODUCTION = "production"
    INSTALLATION = "installation"
    COMPLETED = "completed"


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)
INITIAL_STAGE = Stage.NEW_ENQUIRY


@dataclass(frozen=True)
class StageDefinition:
    stage: Stage
    label: str
    description: str
    response_target: timedelta | None

    @property
    def position(self) -> int:
        return STAGE_ORDER.index(self.stage)


def _define(stage: Stage, label: str, description: str, target_days: int | None) -> StageDefinition:
    target = timedelta(days=target_days) if target_days is not None else None
    return StageDefinition(stage=stage, label=label, description=description, response_target=target)


STAGE_REGISTRY: dict[Stage, StageDefinition] = {
    definition.stage: definition
    for definition in (
        _define(Stage.NEW_ENQUIRY, "New Enquiry", "Lead received, first call not yet booked", 2),
        _define(Stage.CALL1_SCHEDULED, "Call 1 Scheduled", "Discovery call booked", 3),
        _define(Stage.QUALIFIED, "Qualified", "Discovery call held and the project is a fit", 5),
        _define(Stage.CALL2_SCHEDULED, "Call 2 Scheduled", "Design and proposal call booked", 3),
        _define(Stage.PROPOSAL_AGREED, "Proposal Agreed", "Customer accepted the proposal", 7),
        _define(Stage.AWAITING_DEPOSIT, "Awaiting Deposit", "Deposit invoice sent", 5),
        _define(Stage.DEPOSIT_PAID, "Deposit Paid", "Deposit received", 3),
        _define(Stage.ONBOARDING_SCHEDULED, "Onboarding Scheduled", "Onboarding session booked", 2),
        _define(Stage.ONBOARDING_COMPLETE, "Onboarding Complete", "Onboarding session held", None),
        _define(Stage.PRODUCTION, "Production", "Order in production", None),
        _define(Stage.INSTALLATION, "Installation", "Installation in progress", None),
        _define(Stage.COMPLETED, "Completed", "Project delivered", None),
    )
}


def parse_stage(value: Stage | str) -> Stage:
    if isinstance(value, Stage):
        return value
    try:
        return Stage(str(value).strip())
    except ValueError:
        raise InvalidStage(f"unknown stage: {value}", details={"stage": str(value)}) from None


def stage_position(stage: Stage | str) -> int:
    return STAGE_ORDER.index(parse_stage(stage))


def is_forward(from_stage: Stage | str, to_stage: Stage | str) -> bool:
    return stage_position(to_stage) > stage_position(from_stage)


def response_target(stage: Stage | str) -> timedelta | None:
    return STAGE_REGISTRY[parse_stage(stage)].response_target


def time_in_stage(stage_entered_at: datetime, now: datetime | None = None) -> timedelta:
    reference = now or utcnow()
    entered = as_utc(stage_entered_at)
    return max(timedelta(0), reference - entered)


def is_stale(stage: Stage | str, stage_entered_at: datetime, now: datetime | None = None) -> bool:
    target = response_target(stage)
    if target is None:
        return False
    return time_in_stage(stage_entered_at, now) > target
