from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Protocol

import httplib2
from google.auth.credentials import Credentials
from google.auth.exceptions import GoogleAuthError
from google.oauth2 import credentials as oauth2_credentials
from google.oauth2 import service_account
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from opentelemetry import trace

from salesflow.context import get_correlation_id
from salesflow.core.clock import as_utc
from salesflow.core.config import Settings
from salesflow.errors import ExternalFailure


tracer = trace.get_tracer("salesflow.meetings.calendar")

CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
CALENDAR_TIMEZONE = "Europe/London"


@dataclass(frozen=True)
class CalendarAttendee:
    email: str
    response_status: str = "needsAction"
    is_self: bool = False


@dataclass(frozen=True)
class CalendarEvent:
    event_id: str
    status: str = "confirmed"
    start: datetime | None = None
    created: datetime | None = None
    updated: datetime | None = None
    attendees: tuple[CalendarAttendee, ...] = ()
    meet_link: str | None = None
    html_link: str | None = None


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return as_utc(self.start) < as_utc(end) and as_utc(start) < as_utc(self.end)


@dataclass(frozen=True)
class EventDraft:
    summary: str
    start: datetime
    duration_minutes: int
    description: str | None = None
    attendee_email: str | None = None
    location: str | None = None
    add_meet_link: bool = True
    extra: dict[str, Any] = field(default_factory=dict)


class CalendarClient(Protocol):
    def create_event(self, draft: EventDraft) -> CalendarEvent: ...

    def update_event(self, event_id: str, *, start: datetime, duration_minutes: int) -> CalendarEvent: ...

    def delete_event(self, event_id: str) -> None: ...

    def get_event(self, event_id: str) -> CalendarEvent | None: ...

    def query_free_busy(self, time_min: datetime, time_max: datetime) -> list[BusyInterval]: ...


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    text = str(value)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return as_utc(datetime.fromisoformat(text))
    except ValueError:
        return None


def event_from_payload(payload: dict[str, Any]) -> CalendarEvent:
    attendees = tuple(
        CalendarAttendee(
            email=str(item.get("email") or ""),
            response_status=str(item.get("responseStatus") or "needsAction"),
            is_self=bool(item.get("self") or item.get("organizer")),
        )
        for item in payload.get("attendees") or []
    )
    meet_link = payload.get("hangoutLink")
    for entry_point in (payload.get("conferenceData") or {}).get("entryPoints") or []:
        if entry_point.get("entryPointType") == "video":
            meet_link = entry_point.get("uri")
            break
    return CalendarEvent(
        event_id=str(payload.get("id") or ""),
        status=str(payload.get("status") or "confirmed"),
        start=_parse_timestamp((payload.get("start") or {}).get("dateTime")),
        created=_parse_timestamp(payload.get("created")),
        updated=_parse_timestamp(payload.get("updated")),
        attendees=attendees,
        meet_link=meet_link,
        html_link=payload.get("htmlLink"),
    )


class GoogleCalendarClient:
    """Calendar v3 through googleapiclient. The credentials object refreshes its own access token."""

    def __init__(self, credentials: Credentials, calendar_id: str, timeout: float, *, service: Any = None) -> None:
        self.credentials = credentials
        self.calendar_id = calendar_id
        self.timeout = timeout
        self._service = service

    @property
    def service(self) -> Any:
        if self._service is None:
            http = AuthorizedHttp(self.credentials, http=httplib2.Http(timeout=self.timeout))
            self._service = build("calendar", "v3", http=http, cache_discovery=False)
        return self._service

    def _execute(self, operation: str, request_factory: Callable[[Any], Any]) -> dict[str, Any]:
        with tracer.start_as_current_span(f"calendar.{operation}") as span:
            span.set_attribute("correlation_id", get_correlation_id() or "")
            try:
                response = request_factory(self.service).execute()
            except HttpError as exc:
                span.set_attribute("status_code", exc.resp.status)
                raise
            except GoogleAuthError as exc:
                raise ExternalFailure("calendar credentials were rejected", details={"operation": operation}) from exc
            except (httplib2.HttpLib2Error, OSError) as exc:
                raise ExternalFailure(f"calendar provider unreachable: {exc}", details={"operation": operation}) from exc
            span.set_attribute("status_code", 200)
            return response or {}

    def create_event(self, draft: EventDraft) -> CalendarEvent:
        start = as_utc(draft.start)
        end = start + timedelta(minutes=draft.duration_minutes)
        body: dict[str, Any] = {
            "summary": draft.summary,
            "description": draft.description,
            "start": {"dateTime": start.isoformat(), "timeZone": CALENDAR_TIMEZONE},
            "end": {"dateTime": end.isoformat(), "timeZone": CALENDAR_TIMEZONE},
            "reminders": {"useDefault": False, "overrides": [{"method": "popup", "minutes": 30}, {"method": "email", "minutes": 60}]},
        }
        if draft.attendee_email:
            body["attendees"] = [{"email": draft.attendee_email}]
        if draft.location:
            body["location"] = draft.location
        if draft.add_meet_link:
            body["conferenceData"] = {
                "createRequest": {"requestId": uuid.uuid4().hex, "conferenceSolutionKey": {"type": "hangoutsMeet"}}
            }
        body.update(draft.extra)

        try:
            created = self._execute(
                "insert",
                lambda service: service.events().insert(
                    calendarId=self.calendar_id,
                    body=body,
                    sendUpdates="all" if draft.attendee_email else "none",
                    conferenceDataVersion=1 if draft.add_meet_link else 0,
                ),
            )
        except HttpError as exc:
            raise ExternalFailure("calendar rejected event", details={"status_code": exc.resp.status}) from exc
        return event_from_payload(created)

    def update_event(self, event_id: str, *, start: datetime, duration_minutes: int) -> CalendarEvent:
        start = as_utc(start)
        end = start + timedelta(minutes=duration_minutes)
        body = {
            "start": {"dateTime": start.isoformat(), "timeZone": CALENDAR_TIMEZONE},
            "end": {"dateTime": end.isoformat(), "timeZone": CALENDAR_TIMEZONE},
        }
        try:
            updated = self._execute(
                "patch",
                lambda service: service.events().patch(calendarId=self.calendar_id, eventId=event_id, body=body, sendUpdates="all"),
            )
        except HttpError as exc:
            raise ExternalFailure("calendar rejected event update", details={"status_code": exc.resp.status}) from exc
        return event_from_payload(updated)

    def delete_event(self, event_id: str) -> None:
        try:
            self._execute(
                "delete",
                lambda service: service.events().delete(calendarId=self.calendar_id, eventId=event_id, sendUpdates="all"),
            )
        except HttpError as exc:
            # already gone
            if exc.resp.status == 410:
                return
            raise ExternalFailure("calendar rejected event deletion", details={"status_code": exc.resp.status}) from exc

    def get_event(self, event_id: str) -> CalendarEvent | None:
        try:
            payload = self._execute("get", lambda service: service.events().get(calendarId=self.calendar_id, eventId=event_id))
        except HttpError as exc:
            if exc.resp.status == 404:
                return None
            raise ExternalFailure("calendar event lookup failed", details={"status_code": exc.resp.status}) from exc
        return event_from_payload(payload)

    def query_free_busy(self, time_min: datetime, time_max: datetime) -> list[BusyInterval]:
        body = {
            "timeMin": as_utc(time_min).isoformat(),
            "timeMax": as_utc(time_max).isoformat(),
            "timeZone": CALENDAR_TIMEZONE,
            "items": [{"id": self.calendar_id}],
        }
        try:
            result = self._execute("freebusy", lambda service: service.freebusy().query(body=body))
        except HttpError as exc:
            raise ExternalFailure("calendar free/busy query failed", details={"status_code": exc.resp.status}) from exc
        busy = ((result.get("calendars") or {}).get(self.calendar_id) or {}).get("busy") or []
        intervals: list[BusyInterval] = []
        for item in busy:
            start = _parse_timestamp(item.get("start"))
            end = _parse_timestamp(item.get("end"))
            if start is not None and end is not None:
                intervals.append(BusyInterval(start=start, end=end))
        return intervals


class NullCalendarClient:
    """Used when no calendar is connected: nothing is busy and no events exist."""

    def create_event(self, draft: EventDraft) -> CalendarEvent:
        raise ExternalFailure("calendar is not connected")

    def update_event(self, event_id: str, *, start: datetime, duration_minutes: int) -> CalendarEvent:
        raise ExternalFailure("calendar is not connected")

    def delete_event(self, event_id: str) -> None:
        raise ExternalFailure("calendar is not connected")

    def get_event(self, event_id: str) -> CalendarEvent | None:
        return None

    def query_free_busy(self, time_min: datetime, time_max: datetime) -> list[BusyInterval]:
        return []


def build_calendar_credentials(settings: Settings) -> Credentials | None:
    """Service account file first, then a stored OAuth refresh token. None when neither is configured."""
    if settings.google_service_account_file:
        return service_account.Credentials.from_service_account_file(
            settings.google_service_account_file, scopes=CALENDAR_SCOPES
        )
    if settings.google_refresh_token and settings.google_client_id and settings.google_client_secret:
        return oauth2_credentials.Credentials(
            token=None,
            refresh_token=settings.google_refresh_token,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            token_uri=GOOGLE_TOKEN_URI,
            scopes=CALENDAR_SCOPES,
        )
    return None


def build_calendar_client(settings: Settings) -> CalendarClient:
    credentials = build_calendar_credentials(settings)
    if credentials is None:
        return NullCalendarClient()
    return GoogleCalendarClient(credentials, settings.google_calendar_id, settings.external_timeout_seconds)
