from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Protocol

from openai import OpenAI, OpenAIError
from opentelemetry import trace

from salesflow.core.config import Settings
from salesflow.errors import ExternalFailure
from salesflow.meetings.models import NO_CHANGE, BookingType
from salesflow.pipeline.stages import Stage


logger = logging.getLogger("salesflow.meetings.inference")
tracer = trace.get_tracer("salesflow.meetings.inference")

ALLOWED_SUGGESTION_STAGES: dict[str, tuple[Stage, ...]] = {
    BookingType.CALL1.value: (Stage.QUALIFIED,),
    BookingType.CALL2.value: (Stage.PROPOSAL_AGREED, Stage.QUALIFIED),
    BookingType.ONBOARDING.value: (Stage.ONBOARDING_COMPLETE,),
}

SENTIMENTS = ("positive", "negative", "mixed")

BOOKING_LABELS = {
    BookingType.CALL1.value: "Discovery Call",
    BookingType.CALL2.value: "Design Call",
    BookingType.ONBOARDING.value: "Onboarding Visit",
}


@dataclass(frozen=True)
class InferenceContext:
    booking_type: str
    current_stage: str
    notes: str
    customer_name: str | None = None
    project_type: str | None = None
    budget_band: str | None = None
    value_estimate: str | None = None


@dataclass(frozen=True)
class StageSuggestion:
    stage: str
    confidence: int
    reasoning: str
    sentiment: str = "mixed"
    objections: list[str] = field(default_factory=list)
    follow_up_actions: list[str] = field(default_factory=list)

    @property
    def is_no_change(self) -> bool:
        return self.stage == NO_CHANGE

    def as_payload(self) -> dict[str, Any]:
        return {
            "stage": self.stage,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "sentiment": self.sentiment,
            "objections": list(self.objections),
            "follow_up_actions": list(self.follow_up_actions),
        }


@dataclass(frozen=True)
class LeadSnapshot:
    """A lead, its opportunity and recent activity flattened to prompt-ready text."""

    name: str
    stage: str
    email: str | None = None
    phone: str | None = None
    postcode: str | None = None
    project_type: str | None = None
    budget_band: str | None = None
    source: str | None = None
    notes: str | None = None
    value_estimate: str | None = None
    opted_out: bool = False
    days_in_pipeline: int = 0
    days_in_stage: int = 0
    rule_score: int | None = None
    tier: str | None = None
    stage_changes: tuple[str, ...] = ()
    messages: tuple[str, ...] = ()
    tasks: tuple[str, ...] = ()
    bookings: tuple[str, ...] = ()


class InferenceClient(Protocol):
    def classify(self, context: InferenceContext) -> dict[str, Any]: ...

    def score_lead(self, snapshot: LeadSnapshot) -> dict[str, Any]: ...

    def suggest_next_action(self, snapshot: LeadSnapshot) -> dict[str, Any]: ...

    def summarize_activity(self, snapshot: LeadSnapshot) -> dict[str, Any]: ...


def _allowed_values(booking_type: str) -> list[str]:
    return [stage.value for stage in ALLOWED_SUGGESTION_STAGES.get(booking_type, ())]


def build_messages(context: InferenceContext) -> list[dict[str, str]]:
    options = ", ".join(f'"{value}"' for value in _allowed_values(context.booking_type))
    system = (
        "You are a CRM assistant for a home improvement company. Analyse post-call notes and suggest "
        "the next pipeline stage.\n\n"
        "Respond with JSON matching this schema:\n"
        "{\n"
        f'  "stage": string,        // one of: {options}, or "no_change"\n'
        '  "confidence": number,    // 0-100\n'
        '  "reasoning": string,     // 1-2 sentences\n'
        '  "sentiment": string,     // "positive", "negative" or "mixed"\n'
        '  "objections": string[],\n'
        '  "follow_up_actions": string[]\n'
        "}\n\n"
        "Rules:\n"
        f"- Only suggest stages from {options}, or \"no_change\"\n"
        "- Ambiguous or mixed signals, or the customer needs time to think: \"no_change\"\n"
        "- Technical problems on the call: \"no_change\" with a follow-up action to reschedule\n"
        "- When in doubt, lower the confidence\n"
        "- Use only what the notes say"
    )
    user = "\n".join(
        [
            f"Call type: {BOOKING_LABELS.get(context.booking_type, context.booking_type)}",
            f"Customer: {context.customer_name or 'Unknown'}",
            f"Project: {context.project_type or 'not specified'}",
            f"Budget: {context.budget_band or 'not specified'}",
            f"Current stage: {context.current_stage}",
            f"Estimated value: {context.value_estimate or 'not set'}",
            "",
            "Post-call notes:",
            context.notes,
        ]
    )
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def _listing(items: tuple[str, ...]) -> str:
    return ", ".join(items) if items else "None"


def _lead_lines(snapshot: LeadSnapshot) -> list[str]:
    lines = [
        f"Lead: {snapshot.name}",
        f"Email: {snapshot.email or 'Not provided'}",
        f"Phone: {snapshot.phone or 'Not provided'}",
        f"Postcode: {snapshot.postcode or 'Not provided'}",
        f"Project type: {snapshot.project_type or 'Not specified'}",
        f"Budget band: {snapshot.budget_band or 'Not specified'}",
        f"Source: {snapshot.source or 'Unknown'}",
        f"Notes: {snapshot.notes or 'None'}",
        f"Stage: {snapshot.stage}",
        f"Estimated value: {snapshot.value_estimate or 'Not set'}",
        f"Days in pipeline: {snapshot.days_in_pipeline}",
        f"Days in current stage: {snapshot.days_in_stage}",
    ]
    if snapshot.rule_score is not None:
        lines.append(f"Rule-based score: {snapshot.rule_score} ({snapshot.tier})")
    if snapshot.opted_out:
        lines.append("Note: lead has opted out of communications")
    return lines


def _activity_lines(snapshot: LeadSnapshot) -> list[str]:
    return [
        f"Stage changes: {_listing(snapshot.stage_changes)}",
        f"Messages: {_listing(snapshot.messages)}",
        f"Tasks: {_listing(snapshot.tasks)}",
        f"Bookings: {_listing(snapshot.bookings)}",
    ]


def build_score_messages(snapshot: LeadSnapshot) -> list[dict[str, str]]:
    system = (
        "You are a sales analyst for a home improvement company. Score leads 0-100 and explain the score.\n\n"
        "Weigh: budget fit (0-30), location in the service area (0-20), engagement signals such as "
        "phone, email, postcode and project details (0-20), project type and value (0-15), "
        "timing and urgency (0-15).\n\n"
        "Respond with JSON matching this schema:\n"
        "{\n"
        '  "score": number,         // 0-100\n'
        '  "tier": string,          // "hot", "warm" or "cold"\n'
        '  "summary": string,       // one sentence\n'
        '  "factors": [{"label": string, "score": number, "max": number, "insight": string}],\n'
        '  "closing_tip": string\n'
        "}"
    )
    user = "\n".join(["Score this lead:", "", *_lead_lines(snapshot)])
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def build_next_action_messages(snapshot: LeadSnapshot) -> list[dict[str, str]]:
    stages = " -> ".join(stage.value for stage in Stage)
    system = (
        "You are a sales coach for a home improvement company. Suggest the single best next action "
        "for the sales rep.\n\n"
        f"Pipeline stages in order: {stages}\n\n"
        "Respond with JSON matching this schema:\n"
        "{\n"
        '  "action": string,        // specific, e.g. who to call and why\n'
        '  "reason": string,        // why this is the priority now\n'
        '  "urgency": string,       // "high", "medium" or "low"\n'
        '  "script_hint": string,   // optional talking point or email opener\n'
        '  "risk": string           // what happens if this waits\n'
        "}"
    )
    user = "\n".join([*_lead_lines(snapshot), "", *_activity_lines(snapshot), "", "What should the sales rep do next?"])
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def build_summary_messages(snapshot: LeadSnapshot) -> list[dict[str, str]]:
    system = (
        "You are a sales assistant for a home improvement company. Summarise a lead's activity history "
        "as a brief for a colleague taking over the account.\n\n"
        "Respond with JSON matching this schema:\n"
        "{\n"
        '  "narrative": string,          // 2-4 sentences\n'
        '  "key_milestones": string[],   // at most 4, most recent first\n'
        '  "engagement_level": string,   // "high", "medium" or "low"\n'
        '  "next_milestone": string,\n'
        '  "risk_note": string | null\n'
        "}\n\n"
        "Rules:\n"
        "- Use only what the data says\n"
        "- A new lead with little activity gets a short summary"
    )
    user = "\n".join([*_lead_lines(snapshot), "", *_activity_lines(snapshot), "", "Summarise this lead's activity."])
    return [{"role": "system", "content": system}, {"role": "user", "content": user}]


class OpenAIInferenceClient:
    def __init__(self, api_key: str, model: str, *, max_output_tokens: int, timeout: float) -> None:
        self.model = model
        self.max_output_tokens = max_output_tokens
        self._client = OpenAI(api_key=api_key, timeout=timeout, max_retries=1)

    def classify(self, context: InferenceContext) -> dict[str, Any]:
        return self._complete_json("classify", build_messages(context), temperature=0.1, booking_type=context.booking_type)

    def score_lead(self, snapshot: LeadSnapshot) -> dict[str, Any]:
        return self._complete_json("score_lead", build_score_messages(snapshot), temperature=0.3, stage=snapshot.stage)

    def suggest_next_action(self, snapshot: LeadSnapshot) -> dict[str, Any]:
        return self._complete_json("next_action", build_next_action_messages(snapshot), temperature=0.4, stage=snapshot.stage)

    def summarize_activity(self, snapshot: LeadSnapshot) -> dict[str, Any]:
        return self._complete_json("activity_summary", build_summary_messages(snapshot), temperature=0.4, stage=snapshot.stage)

    def _complete_json(
        self, operation: str, messages: list[dict[str, str]], *, temperature: float, **attributes: str
    ) -> dict[str, Any]:
        with tracer.start_as_current_span(f"meetings.inference.{operation}") as span:
            for key, value in attributes.items():
                span.set_attribute(key, value)
            try:
                completion = self._client.chat.completions.create(
                    model=self.model,
                    temperature=temperature,
                    max_tokens=self.max_output_tokens,
                    response_format={"type": "json_object"},
                    messages=messages,
                )
            except OpenAIError as exc:
                raise ExternalFailure(f"inference request failed: {exc}") from exc

            content = completion.choices[0].message.content if completion.choices else None
            if not content:
                raise ExternalFailure("inference returned an empty response")
            try:
                parsed = json.loads(content)
            except json.JSONDecodeError as exc:
                raise ExternalFailure("inference returned malformed JSON") from exc
            if not isinstance(parsed, dict):
                raise ExternalFailure("inference returned a non-object response")
            return parsed


class UnavailableInferenceClient:
    def classify(self, context: InferenceContext) -> dict[str, Any]:
        raise ExternalFailure("inference provider is not configured")

    def score_lead(self, snapshot: LeadSnapshot) -> dict[str, Any]:
        raise ExternalFailure("inference provider is not configured")

    def suggest_next_action(self, snapshot: LeadSnapshot) -> dict[str, Any]:
        raise ExternalFailure("inference provider is not configured")

    def summarize_activity(self, snapshot: LeadSnapshot) -> dict[str, Any]:
        raise ExternalFailure("inference provider is not configured")


def build_inference_client(settings: Settings) -> InferenceClient:
    if not settings.openai_api_key:
        return UnavailableInferenceClient()
    return OpenAIInferenceClient(
        settings.openai_api_key,
        settings.openai_model,
        max_output_tokens=settings.ai_max_output_tokens,
        timeout=settings.external_timeout_seconds,
    )


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


def clamp_score(value: Any) -> int:
    try:
        number = float(value or 0)
    except (TypeError, ValueError):
        number = 0.0
    # inf and nan score 0
    score = int(round(number)) if math.isfinite(number) else 0
    return max(0, min(100, score))


def parse_suggestion(raw: dict[str, Any], booking_type: str) -> StageSuggestion:
    """Normalise a model answer: unknown stages become no_change, confidence is clamped to 0-100."""
    stage = str(raw.get("stage") or NO_CHANGE)
    if stage not in _allowed_values(booking_type):
        stage = NO_CHANGE

    confidence = clamp_score(raw.get("confidence"))

    sentiment = str(raw.get("sentiment") or "mixed")
    if sentiment not in SENTIMENTS:
        sentiment = "mixed"

    return StageSuggestion(
        stage=stage,
        confidence=confidence,
        reasoning=str(raw.get("reasoning") or ""),
        sentiment=sentiment,
        objections=_string_list(raw.get("objections")),
        follow_up_actions=_string_list(raw.get("follow_up_actions")),
    )
