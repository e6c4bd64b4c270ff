from __future__ import annotations

import uuid
from collections import deque
from typing import Any

from salesflow.context import get_correlation_id, get_sweep_name
from salesflow.core.clock import utcnow
from salesflow.core.events import event_bus

# recent envelopes for inspection; older entries fall off
PUBLISHED_EVENTS_LIMIT = 1000
published_events: deque[dict[str, Any]] = deque(maxlen=PUBLISHED_EVENTS_LIMIT)


def build_envelope(event_type: str, payload: dict[str, Any], *, actor_user_id: str | None = None) -> dict[str, Any]:
    return {
        "event_id": str(uuid.uuid4()),
        "event_type": event_type,
        "occurred_at": utcnow().isoformat(),
        "actor_user_id": actor_user_id,
        "version": 1,
        "payload": payload,
    }


def publish(envelope: dict[str, Any]) -> None:
    if envelope.get("correlation_id") is None:
        envelope["correlation_id"] = get_correlation_id()

    existing_meta = envelope.get("meta")
    meta: dict[str, Any] = existing_meta.copy() if isinstance(existing_meta, dict) else {}
    sweep = get_sweep_name()
    if sweep is not None and "sweep" not in meta:
        meta["sweep"] = sweep
    if meta:
        envelope["meta"] = meta

    published_events.append(envelope)
    event_type = envelope.get("event_type")
    if isinstance(event_type, str) and event_type:
        event_bus.publish(event_type, envelope)
