from __future__ import annotations

import re

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest
from starlette.requests import Request


http_requests_total = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

http_request_duration_seconds = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "path"],
)

stage_transitions_total = Counter(
    "pipeline_stage_transitions_total",
    "Stage transitions by target stage and outcome",
    ["to_stage", "outcome"],
)

messages_dispatched_total = Counter(
    "messaging_messages_dispatched_total",
    "Dispatched messages by channel and terminal status",
    ["channel", "status"],
)

meetings_tracked_total = Counter(
    "meetings_tracked_total",
    "Meetings processed by the tracker by outcome",
    ["outcome"],
)

ai_suggestions_total = Counter(
    "meetings_ai_suggestions_total",
    "AI suggestions by disposition",
    ["disposition"],
)

sweep_runs_total = Counter(
    "sweep_runs_total",
    "Sweep runs by sweep and status",
    ["sweep", "status"],
)

sweep_duration_seconds = Histogram(
    "sweep_duration_seconds",
    "Sweep duration in seconds",
    ["sweep"],
)

payments_reconciled_total = Counter(
    "payments_reconciled_total",
    "Payment provider events by result",
    ["result"],
)


_UUID_RE = re.compile(
    r"\b[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[1-5][0-9a-fA-F]{3}-[89abAB][0-9a-fA-F]{3}-[0-9a-fA-F]{12}\b"
)
_INT_RE = re.compile(r"/\d+\b")
_PATH_PARAM_RE = re.compile(r"\{[^{}]+\}")


def _normalize_route_template(path: str) -> str:
    return _PATH_PARAM_RE.sub("{id}", path)


def _sanitize_path(path: str) -> str:
    without_uuids = _UUID_RE.sub("{id}", path)
    return _INT_RE.sub("/{id}", without_uuids)


def resolve_http_path_label(request: Request) -> str:
    route = request.scope.get("route")
    if route is not None:
        path_format = getattr(route, "path_format", None)
        if isinstance(path_format, str) and path_format:
            return _normalize_route_template(path_format)
        route_path = getattr(route, "path", None)
        if isinstance(route_path, str) and route_path:
            return _normalize_route_template(route_path)
    return _sanitize_path(request.url.path)


def observe_http_request(method: str, path: str, status: int, duration: float) -> None:
    status_str = str(status)
    http_requests_total.labels(method=method, path=path, status=status_str).inc()
    http_request_duration_seconds.labels(method=method, path=path).observe(duration)


def observe_stage_transition(to_stage: str, outcome: str) -> None:
    stage_transitions_total.labels(to_stage=to_stage, outcome=outcome).inc()


def observe_message_dispatch(channel: str, status: str) -> None:
    messages_dispatched_total.labels(channel=channel, status=status).inc()


def observe_meeting_tracked(outcome: str) -> None:
    meetings_tracked_total.labels(outcome=outcome).inc()


def observe_ai_suggestion(disposition: str) -> None:
    ai_suggestions_total.labels(disposition=disposition).inc()


def observe_sweep(sweep: str, status: str, duration: float) -> None:
    sweep_runs_total.labels(sweep=sweep, status=status).inc()
    sweep_duration_seconds.labels(sweep=sweep).observe(duration)


def observe_payment_reconciled(result: str) -> None:
    payments_reconciled_total.labels(result=result).inc()


def generate_metrics_payload() -> bytes:
    return generate_latest()


def metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
