from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")

DELAY_IMMEDIATE = "immediate"
DELAY_AFTER = "after"
DELAY_BEFORE_BOOKING = "before_booking"
DELAY_RULES = (DELAY_IMMEDIATE, DELAY_AFTER, DELAY_BEFORE_BOOKING)

# trigger_event values emitted by bookings and the meeting tracker
EVENT_CALL1_BOOKED = "call1_booked"
EVENT_CALL2_BOOKED = "call2_booked"
EVENT_ONBOARDING_BOOKED = "onboarding_booked"
EVENT_MEETING_NO_SHOW = "meeting_no_show"


def interpolate(text: str, variables: Mapping[str, Any]) -> str:
    """Replace {{key}} with variables[key]. Unknown keys are left untouched."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        value = variables.get(key)
        if value is None:
            return match.group(0)
        return str(value)

    return _PLACEHOLDER_RE.sub(_replace, text)


def placeholders(text: str) -> set[str]:
    return set(_PLACEHOLDER_RE.findall(text))


DEFAULT_TEMPLATES: list[dict[str, Any]] = [
    {
        "slug": "enquiry_received",
        "name": "Enquiry received",
        "subject": "Thanks for your enquiry, {{first_name}}",
        "body": (
            "Hi {{first_name}},\n\nThanks for getting in touch about your {{project_type}} project. "
            "{{owner_name}} will call you shortly to book a short discovery call. "
            "If you would rather pick a time yourself, use {{booking_link}}.\n\nSpeak soon"
        ),
        "channels": ["email"],
        "trigger_stage": "new_enquiry",
        "delay_rule": DELAY_IMMEDIATE,
        "sort_order": 10,
    },
    {
        "slug": "call1_confirmed",
        "name": "Discovery call confirmed",
        "subject": "Your discovery call is booked for {{date}}",
        "body": (
            "Hi {{first_name}},\n\nYour discovery call with {{owner_name}} is booked for {{date}} at {{time}}.\n"
            "Join here: {{meet_link}}\n\nSee you then"
        ),
        "channels": ["email", "sms"],
        "trigger_stage": "call1_scheduled",
        "delay_rule": DELAY_IMMEDIATE,
        "sort_order": 20,
    },
    {
        "slug": "call1_reminder",
        "name": "Discovery call reminder (24h)",
        "subject": "Reminder: discovery call tomorrow at {{time}}",
        "body": "Hi {{first_name}}, a reminder that your call with {{owner_name}} is tomorrow at {{time}}. Link: {{meet_link}}",
        "channels": ["email"],
        "trigger_event": EVENT_CALL1_BOOKED,
        "delay_rule": DELAY_BEFORE_BOOKING,
        "delay_minutes": 24 * 60,
        "sort_order": 30,
    },
    {
        "slug": "call1_reminder_2h",
        "name": "Discovery call reminder (2h)",
        "subject": None,
        "body": "Hi {{first_name}}, your call with {{owner_name}} starts at {{time}}. Join: {{meet_link}}",
        "channels": ["sms"],
        "trigger_event": EVENT_CALL1_BOOKED,
        "delay_rule": DELAY_BEFORE_BOOKING,
        "delay_minutes": 120,
        "sort_order": 31,
    },
    {
        "slug": "call2_invite",
        "name": "Design call invite",
        "subject": "Next step: your design call",
        "body": (
            "Hi {{first_name}},\n\nGreat speaking with you. The next step is a design call where we walk "
            "through options and pricing. Choose a time here: {{booking_link}}"
        ),
        "channels": ["email"],
        "trigger_stage": "qualified",
        "delay_rule": DELAY_IMMEDIATE,
        "sort_order": 40,
    },
    {
        "slug": "call2_confirmed",
        "name": "Design call confirmed",
        "subject": "Your design call is booked for {{date}}",
        "body": "Hi {{first_name}}, your design call with {{owner_name}} is booked for {{date}} at {{time}}. Link: {{meet_link}}",
        "channels": ["email", "sms"],
        "trigger_stage": "call2_scheduled",
        "delay_rule": DELAY_IMMEDIATE,
        "sort_order": 50,
    },
    {
        "slug": "call2_reminder",
        "name": "Design call reminder (24h)",
        "subject": "Reminder: design call tomorrow at {{time}}",
        "body": "Hi {{first_name}}, a reminder that your design call is tomorrow at {{time}}. Link: {{meet_link}}",
        "channels": ["email"],
        "trigger_event": EVENT_CALL2_BOOKED,
        "delay_rule": DELAY_BEFORE_BOOKING,
        "delay_minutes": 24 * 60,
        "sort_order": 51,
    },
    {
        "slug": "deposit_request",
        "name": "Deposit request",
        "subject": "Your deposit invoice",
        "body": (
            "Hi {{first_name}},\n\nThank you for going ahead. To reserve your slot please pay the deposit of "
            "{{amount}} here: {{payment_link}}"
        ),
        "channels": ["email"],
        "trigger_stage": "awaiting_deposit",
        "delay_rule": DELAY_IMMEDIATE,
        "sort_order": 60,
    },
    {
        "slug": "onboarding_invite",
        "name": "Onboarding invite",
        "subject": "Deposit received, let's book your onboarding",
        "body": "Hi {{first_name}}, we have received your deposit. Book your onboarding session here: {{booking_link}}",
        "channels": ["email", "sms"],
        "trigger_stage": "deposit_paid",
        "delay_rule": DELAY_IMMEDIATE,
        "sort_order": 70,
    },
    {
        "slug": "onboarding_confirmed",
        "name": "Onboarding confirmed",
        "subject": "Onboarding booked for {{date}}",
        "body": "Hi {{first_name}}, your onboarding session is booked for {{date}} at {{time}}.",
        "channels": ["email"],
        "trigger_stage": "onboarding_scheduled",
        "delay_rule": DELAY_IMMEDIATE,
        "sort_order": 80,
    },
    {
        "slug": "onboarding_reminder",
        "name": "Onboarding reminder (24h)",
        "subject": "Reminder: onboarding tomorrow",
        "body": "Hi {{first_name}}, a reminder that your onboarding session is tomorrow at {{time}}.",
        "channels": ["email"],
        "trigger_event": EVENT_ONBOARDING_BOOKED,
        "delay_rule": DELAY_BEFORE_BOOKING,
        "delay_minutes": 24 * 60,
        "sort_order": 81,
    },
    {
        "slug": "no_show_follow_up",
        "name": "Missed call follow-up",
        "subject": "Sorry we missed you",
        "body": "Hi {{first_name}}, we missed you at your {{meeting_name}} today. Pick a new time that suits you: {{booking_link}}",
        "channels": ["email", "sms"],
        "trigger_event": EVENT_MEETING_NO_SHOW,
        "delay_rule": DELAY_IMMEDIATE,
        "sort_order": 90,
    },
    {
        "slug": "review_request",
        "name": "Review request",
        "subject": "How did we do?",
        "body": "Hi {{first_name}}, your project is complete. We would love to hear how it went: {{review_link}}",
        "channels": ["email"],
        "trigger_stage": "completed",
        "delay_rule": DELAY_AFTER,
        "delay_minutes": 3 * 24 * 60,
        "sort_order": 100,
    },
]
