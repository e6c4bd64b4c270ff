"""Advisory views of an opportunity: lead score, next best action and an activity summary.

The rule-based score and next action are computed locally and always available. The AI
variants go through the inference client and surface ExternalFailure when it is unavailable.
"""

from __future__ import annotations

import logging
import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from salesflow.core.clock import as_utc, utcnow
from salesflow.core.config import get_settings
from salesflow.errors import ExternalFailure, NotFound
from salesflow.meetings.inference import InferenceClient, LeadSnapshot, build_inference_client, clamp_score
from salesflow.meetings.models import Booking
from salesflow.messaging.models import MessageLogEntry
from salesflow.pipeline.models import Lead, Opportunity, Task
from salesflow.pipeline.service import get_opportunity, list_stage_log
from salesflow.pipeline.stages import STAGE_REGISTRY, Stage, parse_stage


logger = logging.getLogger("salesflow.pipeline.insights")

TIERS = ("hot", "warm", "cold")
URGENCY_RANK = {"low": 0, "medium": 1, "high": 2}
ENGAGEMENT_LEVELS = ("high", "medium", "low")

UK_POSTCODE = re.compile(r"^[A-Z]{1,2}\d[A-Z\d]?\d[A-Z]{2}$")

# business days without any activity before a lead of each tier is going cold
STALE_BUSINESS_DAYS = {"hot": 3, "warm": 5, "cold": 7}

# stage -> (action, target days for stages without a response target)
STAGE_ACTIONS: dict[Stage, tuple[str, int | None]] = {
    Stage.NEW_ENQUIRY: ("Call to introduce yourself", None),
    Stage.CALL1_SCHEDULED: ("Confirm the discovery call", None),
    Stage.QUALIFIED: ("Book the design call", None),
    Stage.CALL2_SCHEDULED: ("Prepare the proposal for the design call", None),
    Stage.PROPOSAL_AGREED: ("Send the deposit request", None),
    Stage.AWAITING_DEPOSIT: ("Follow up on the deposit payment", None),
    Stage.DEPOSIT_PAID: ("Book the onboarding session", None),
    Stage.ONBOARDING_SCHEDULED: ("Prepare onboarding materials", None),
    Stage.ONBOARDING_COMPLETE: ("Confirm the production start date", 3),
    Stage.PRODUCTION: ("Update the customer on production progress", 14),
    Stage.INSTALLATION: ("Confirm the installation date", 7),
}

RECENT_STAGE_CHANGES = 10
RECENT_MESSAGES = 8
RECENT_TASKS = 8
RECENT_BOOKINGS = 5


@dataclass(frozen=True)
class ScoreFactor:
    label: str
    score: int
    max: int
    insight: str | None = None


@dataclass(frozen=True)
class LeadScore:
    total: int
    tier: str
    factors: tuple[ScoreFactor, ...]


@dataclass(frozen=True)
class AILeadScore:
    score: int
    tier: str
    summary: str
    factors: tuple[ScoreFactor, ...]
    closing_tip: str | None
    rule_based: LeadScore


@dataclass(frozen=True)
class NextAction:
    action: str
    reason: str
    urgency: str
    source: str = "rules"
    script_hint: str | None = None
    risk: str | None = None


@dataclass(frozen=True)
class ActivitySummary:
    narrative: str
    key_milestones: list[str]
    engagement_level: str
    next_milestone: str | None
    risk_note: str | None
    days_in_pipeline: int


@dataclass
class OpportunityDossier:
    opportunity: Opportunity
    lead: Lead
    tasks: list[Task] = field(default_factory=list)
    messages: list[MessageLogEntry] = field(default_factory=list)
    bookings: list[Booking] = field(default_factory=list)
    stage_changes: list[str] = field(default_factory=list)


def tier_for(total: int) -> str:
    if total >= 70:
        return "hot"
    if total >= 40:
        return "warm"
    return "cold"


def _score_budget(budget_band: str | None) -> int:
    if not budget_band:
        return 10
    band = budget_band.lower()
    if any(marker in band for marker in ("5000", "premium", "luxury")):
        return 30
    if any(marker in band for marker in ("3000", "4000", "mid")):
        return 22
    if "2000" in band or "standard" in band:
        return 15
    if "1000" in band or "budget" in band:
        return 8
    return 12


def _score_location(postcode: str | None) -> int:
    if not postcode:
        return 5
    cleaned = re.sub(r"\s+", "", postcode).upper()
    return 18 if UK_POSTCODE.match(cleaned) else 8


def _score_response_speed(enquired_at: datetime, first_booked_at: datetime | None) -> int:
    if first_booked_at is None:
        return 10
    hours = (as_utc(first_booked_at) - as_utc(enquired_at)).total_seconds() / 3600
    if hours <= 1:
        return 20
    if hours <= 24:
        return 16
    if hours <= 72:
        return 12
    if hours <= 168:
        return 8
    return 5


def _score_project_value(project_type: str | None, value_estimate: Decimal | None) -> int:
    if value_estimate is not None:
        if value_estimate >= 5000:
            return 15
        if value_estimate >= 3000:
            return 11
        if value_estimate >= 1500:
            return 7
    if not project_type:
        return 5
    project = project_type.lower()
    if any(marker in project for marker in ("walk-in", "dressing room", "his & hers")):
        return 14
    if "fitted" in project or "sliding" in project:
        return 10
    if "storage" in project or "shelving" in project:
        return 6
    return 7


def _score_engagement(lead: Lead) -> int:
    score = 0
    if lead.phone:
        score += 4
    if lead.email:
        score += 3
    if lead.postcode:
        score += 3
    if lead.project_type:
        score += 3
    if lead.budget_band:
        score += 2
    return min(15, score)


def score_lead(lead: Lead, value_estimate: Decimal | None = None, *, first_booked_at: datetime | None = None) -> LeadScore:
    """Weighted 0-100 score: budget 30, location 20, response speed 20, project value 15, engagement 15."""
    factors = (
        ScoreFactor("Budget", _score_budget(lead.budget_band), 30),
        ScoreFactor("Location", _score_location(lead.postcode), 20),
        ScoreFactor("Response Speed", _score_response_speed(lead.created_at, first_booked_at), 20),
        ScoreFactor("Project Value", _score_project_value(lead.project_type, value_estimate), 15),
        ScoreFactor("Engagement", _score_engagement(lead), 15),
    )
    total = min(100, sum(factor.score for factor in factors))
    return LeadScore(total=total, tier=tier_for(total), factors=factors)


def business_days_between(start: datetime, end: datetime) -> int:
    current = as_utc(start).date()
    last = as_utc(end).date()
    count = 0
    while current < last:
        current += timedelta(days=1)
        if current.weekday() < 5:
            count += 1
    return count


def stage_target_days(stage: Stage) -> int | None:
    target = STAGE_REGISTRY[stage].response_target
    if target is not None:
        return target.days
    return STAGE_ACTIONS.get(stage, ("", None))[1]


def suggest_next_action(dossier: OpportunityDossier, tier: str, *, now: datetime | None = None) -> NextAction:
    """Pick the most urgent rule that fires; ties keep rule order."""
    reference = now or utcnow()
    stage = parse_stage(dossier.opportunity.stage)
    first_name = dossier.lead.first_name
    if stage == Stage.COMPLETED:
        return NextAction(action="No follow-up due", reason="Project delivered", urgency="low")

    candidates: list[NextAction] = []
    overdue = [
        task
        for task in dossier.tasks
        if task.status == "open" and task.due_at is not None and as_utc(task.due_at) < reference
    ]
    if overdue:
        first = overdue[0]
        action = f"Complete {first.task_type}: {first.description}" if first.description else f"Complete {first.task_type}"
        plural = "s" if len(overdue) > 1 else ""
        candidates.append(NextAction(action=action, reason=f"{len(overdue)} overdue task{plural}", urgency="high"))

    stage_action, _ = STAGE_ACTIONS[stage]
    label = STAGE_REGISTRY[stage].label
    target = stage_target_days(stage)
    days_in_stage = business_days_between(dossier.opportunity.stage_entered_at, reference)
    if target is not None:
        if days_in_stage > target * 2:
            candidates.append(
                NextAction(
                    action=f"{stage_action} for {first_name}",
                    reason=f"Stuck in {label} for {days_in_stage}d against a {target}d target",
                    urgency="high",
                )
            )
        elif days_in_stage >= target:
            candidates.append(
                NextAction(
                    action=f"{stage_action} for {first_name}",
                    reason=f"Target {target}d, current {days_in_stage}d",
                    urgency="medium",
                )
            )

    threshold = STALE_BUSINESS_DAYS.get(tier, STALE_BUSINESS_DAYS["cold"])
    quiet_days = business_days_between(_last_activity(dossier), reference)
    if quiet_days > threshold * 2:
        candidates.append(NextAction(action=f"Re-engage {first_name}", reason=f"No activity in {quiet_days}d", urgency="high"))
    elif quiet_days > threshold:
        candidates.append(NextAction(action=f"Check in with {first_name}", reason=f"{quiet_days}d since last activity", urgency="medium"))

    if candidates:
        return max(candidates, key=lambda candidate: URGENCY_RANK[candidate.urgency])
    remaining = f"{target - days_in_stage}d remaining" if target is not None else f"{days_in_stage}d in {label}"
    return NextAction(action=f"{stage_action} for {first_name}", reason=remaining, urgency="low")


def _last_activity(dossier: OpportunityDossier) -> datetime:
    moments = [as_utc(dossier.lead.created_at), as_utc(dossier.opportunity.stage_entered_at)]
    moments.extend(as_utc(entry.sent_at) for entry in dossier.messages if entry.sent_at is not None)
    return max(moments)


def _text(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_factors(raw: Any) -> tuple[ScoreFactor, ...]:
    if not isinstance(raw, list):
        return ()
    factors: list[ScoreFactor] = []
    for item in raw:
        if not isinstance(item, dict) or not _text(item.get("label")):
            continue
        maximum = clamp_score(item.get("max"))
        score = clamp_score(item.get("score"))
        factors.append(
            ScoreFactor(
                label=str(item["label"]).strip(),
                score=min(score, maximum) if maximum else score,
                max=maximum,
                insight=_text(item.get("insight")),
            )
        )
    return tuple(factors)


def parse_ai_score(raw: dict[str, Any], rule_based: LeadScore) -> AILeadScore:
    score = clamp_score(raw.get("score"))
    tier = str(raw.get("tier") or "").lower()
    if tier not in TIERS:
        tier = tier_for(score)
    return AILeadScore(
        score=score,
        tier=tier,
        summary=_text(raw.get("summary")) or "",
        factors=_parse_factors(raw.get("factors")),
        closing_tip=_text(raw.get("closing_tip")),
        rule_based=rule_based,
    )


def parse_next_action(raw: dict[str, Any]) -> NextAction:
    action = _text(raw.get("action"))
    if action is None:
        raise ExternalFailure("inference returned no action")
    urgency = str(raw.get("urgency") or "").lower()
    if urgency not in URGENCY_RANK:
        urgency = "medium"
    return NextAction(
        action=action,
        reason=_text(raw.get("reason")) or "",
        urgency=urgency,
        source="ai",
        script_hint=_text(raw.get("script_hint")),
        risk=_text(raw.get("risk")),
    )


def parse_activity_summary(raw: dict[str, Any], days_in_pipeline: int) -> ActivitySummary:
    narrative = _text(raw.get("narrative"))
    if narrative is None:
        raise ExternalFailure("inference returned no narrative")
    milestones = raw.get("key_milestones")
    engagement = str(raw.get("engagement_level") or "").lower()
    return ActivitySummary(
        narrative=narrative,
        key_milestones=[str(item) for item in milestones[:4]] if isinstance(milestones, list) else [],
        engagement_level=engagement if engagement in ENGAGEMENT_LEVELS else "medium",
        next_milestone=_text(raw.get("next_milestone")),
        risk_note=_text(raw.get("risk_note")),
        days_in_pipeline=days_in_pipeline,
    )


def _day(value: datetime | None) -> str:
    return as_utc(value).strftime("%d/%m/%Y") if value is not None else "unscheduled"


class OpportunityInsights:
    def __init__(self, inference: InferenceClient | None = None) -> None:
        self._inference = inference

    @property
    def inference(self) -> InferenceClient:
        if self._inference is None:
            self._inference = build_inference_client(get_settings())
        return self._inference

    def load(self, session: Session, opportunity_id: uuid.UUID) -> OpportunityDossier:
        opportunity = get_opportunity(session, opportunity_id)
        lead = session.get(Lead, opportunity.lead_id)
        if lead is None:
            raise NotFound("lead not found", details={"lead_id": str(opportunity.lead_id)})
        tasks = list(
            session.scalars(select(Task).where(Task.opportunity_id == opportunity_id).order_by(Task.created_at.desc()))
        )
        messages = list(
            session.scalars(
                select(MessageLogEntry)
                .where(MessageLogEntry.opportunity_id == opportunity_id)
                .order_by(MessageLogEntry.created_at.desc())
            )
        )
        bookings = list(
            session.scalars(select(Booking).where(Booking.opportunity_id == opportunity_id).order_by(Booking.created_at.desc()))
        )
        stage_changes = [
            f"{entry.from_stage or 'new'} -> {entry.to_stage} ({_day(entry.created_at)})"
            for entry in reversed(list_stage_log(session, opportunity_id))
        ]
        return OpportunityDossier(
            opportunity=opportunity,
            lead=lead,
            tasks=tasks,
            messages=messages,
            bookings=bookings,
            stage_changes=stage_changes,
        )

    def rule_score(self, dossier: OpportunityDossier) -> LeadScore:
        first_booked_at = min((booking.created_at for booking in dossier.bookings), key=as_utc, default=None)
        return score_lead(dossier.lead, dossier.opportunity.value_estimate, first_booked_at=first_booked_at)

    def snapshot(self, dossier: OpportunityDossier, *, now: datetime | None = None) -> LeadSnapshot:
        reference = now or utcnow()
        lead = dossier.lead
        opportunity = dossier.opportunity
        score = self.rule_score(dossier)
        return LeadSnapshot(
            name=lead.name,
            stage=STAGE_REGISTRY[parse_stage(opportunity.stage)].label,
            email=lead.email,
            phone=lead.phone,
            postcode=lead.postcode,
            project_type=lead.project_type,
            budget_band=lead.budget_band,
            source=lead.source,
            notes=lead.notes,
            value_estimate=str(opportunity.value_estimate) if opportunity.value_estimate is not None else None,
            opted_out=lead.opted_out,
            days_in_pipeline=(reference - as_utc(lead.created_at)).days,
            days_in_stage=(reference - as_utc(opportunity.stage_entered_at)).days,
            rule_score=score.total,
            tier=score.tier,
            stage_changes=tuple(dossier.stage_changes[:RECENT_STAGE_CHANGES]),
            messages=tuple(
                f"{entry.channel} {entry.payload.get('template_slug') or 'custom'}: {entry.status} ({_day(entry.sent_at or entry.created_at)})"
                for entry in dossier.messages[:RECENT_MESSAGES]
            ),
            tasks=tuple(
                f"{task.task_type}: {task.status}" + (f" due {_day(task.due_at)}" if task.due_at is not None else "")
                for task in dossier.tasks[:RECENT_TASKS]
            ),
            bookings=tuple(
                f"{booking.booking_type}: {booking.outcome} ({_day(booking.scheduled_at)})"
                for booking in dossier.bookings[:RECENT_BOOKINGS]
            ),
        )

    def score(self, session: Session, opportunity_id: uuid.UUID) -> LeadScore:
        return self.rule_score(self.load(session, opportunity_id))

    def ai_score(self, session: Session, opportunity_id: uuid.UUID) -> AILeadScore:
        dossier = self.load(session, opportunity_id)
        result = parse_ai_score(self.inference.score_lead(self.snapshot(dossier)), self.rule_score(dossier))
        logger.info("pipeline.ai_score", extra={"opportunity_id": str(opportunity_id), "outcome": result.tier})
        return result

    def next_action(self, session: Session, opportunity_id: uuid.UUID, *, now: datetime | None = None) -> NextAction:
        dossier = self.load(session, opportunity_id)
        return suggest_next_action(dossier, self.rule_score(dossier).tier, now=now)

    def ai_next_action(self, session: Session, opportunity_id: uuid.UUID) -> NextAction:
        dossier = self.load(session, opportunity_id)
        result = parse_next_action(self.inference.suggest_next_action(self.snapshot(dossier)))
        logger.info("pipeline.ai_next_action", extra={"opportunity_id": str(opportunity_id), "outcome": result.urgency})
        return result

    def activity_summary(self, session: Session, opportunity_id: uuid.UUID, *, now: datetime | None = None) -> ActivitySummary:
        dossier = self.load(session, opportunity_id)
        snapshot = self.snapshot(dossier, now=now)
        result = parse_activity_summary(self.inference.summarize_activity(snapshot), snapshot.days_in_pipeline)
        logger.info("pipeline.activity_summary", extra={"opportunity_id": str(opportunity_id), "outcome": result.engagement_level})
        return result


opportunity_insights = OpportunityInsights()
