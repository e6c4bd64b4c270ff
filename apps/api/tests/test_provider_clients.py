from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

import httplib2
import pytest
from google.auth.exceptions import RefreshError
from google.oauth2 import credentials as oauth2_credentials
from googleapiclient.errors import HttpError
from twilio.base.exceptions import TwilioRestException

from salesflow.core.config import Settings
from salesflow.errors import ExternalFailure
from salesflow.meetings.calendar import (
    EventDraft,
    GoogleCalendarClient,
    NullCalendarClient,
    build_calendar_client,
    build_calendar_credentials,
)
from salesflow.messaging.channels import LoggingSender, TwilioSender, UnconfiguredSender, build_channel_senders


class FakeRequest:
    def __init__(self, result: Any = None, error: Exception | None = None) -> None:
        self.result = result
        self.error = error

    def execute(self) -> Any:
        if self.error is not None:
            raise self.error
        return self.result


class FakeCalendarService:
    """Stands in for the discovery-built service; events() and freebusy() share one recorder."""

    def __init__(self, **responses: FakeRequest) -> None:
        self.responses = responses
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def events(self) -> FakeCalendarService:
        return self

    def freebusy(self) -> FakeCalendarService:
        return self

    def _record(self, name: str, kwargs: dict[str, Any]) -> FakeRequest:
        self.calls.append((name, kwargs))
        return self.responses[name]

    def insert(self, **kwargs: Any) -> FakeRequest:
        return self._record("insert", kwargs)

    def get(self, **kwargs: Any) -> FakeRequest:
        return self._record("get", kwargs)

    def patch(self, **kwargs: Any) -> FakeRequest:
        return self._record("patch", kwargs)

    def delete(self, **kwargs: Any) -> FakeRequest:
        return self._record("delete", kwargs)

    def query(self, **kwargs: Any) -> FakeRequest:
        return self._record("query", kwargs)


def _http_error(status: int) -> HttpError:
    return HttpError(httplib2.Response({"status": str(status)}), b"{}")


def _client(service: FakeCalendarService) -> GoogleCalendarClient:
    credentials = oauth2_credentials.Credentials(token="token", refresh_token="refresh", client_id="id", client_secret="secret")
    return GoogleCalendarClient(credentials, "sales@example.com", 5.0, service=service)


def test_create_event_requests_meet_link_and_invites_attendee() -> None:
    service = FakeCalendarService(
        insert=FakeRequest(
            {
                "id": "evt-9",
                "status": "confirmed",
                "start": {"dateTime": "2026-11-02T10:00:00Z"},
                "htmlLink": "https://calendar.example.com/evt-9",
                "conferenceData": {"entryPoints": [{"entryPointType": "video", "uri": "https://meet.example.com/abc"}]},
            }
        )
    )
    draft = EventDraft(
        summary="Discovery call",
        start=datetime(2026, 11, 2, 10, 0, tzinfo=timezone.utc),
        duration_minutes=30,
        attendee_email="jordan@example.com",
    )

    event = _client(service).create_event(draft)

    assert event.event_id == "evt-9"
    assert event.meet_link == "https://meet.example.com/abc"
    name, kwargs = service.calls[0]
    assert name == "insert"
    assert kwargs["calendarId"] == "sales@example.com"
    assert kwargs["sendUpdates"] == "all"
    assert kwargs["conferenceDataVersion"] == 1
    assert kwargs["body"]["attendees"] == [{"email": "jordan@example.com"}]
    assert kwargs["body"]["end"]["dateTime"] == "2026-11-02T10:30:00+00:00"


def test_missing_event_is_none_and_other_errors_are_external_failures() -> None:
    assert _client(FakeCalendarService(get=FakeRequest(error=_http_error(404)))).get_event("evt-1") is None

    with pytest.raises(ExternalFailure) as excinfo:
        _client(FakeCalendarService(get=FakeRequest(error=_http_error(500)))).get_event("evt-1")
    assert excinfo.value.details == {"status_code": 500}


def test_deleting_an_event_that_is_already_gone_succeeds() -> None:
    _client(FakeCalendarService(delete=FakeRequest(error=_http_error(410)))).delete_event("evt-1")

    with pytest.raises(ExternalFailure):
        _client(FakeCalendarService(delete=FakeRequest(error=_http_error(403)))).delete_event("evt-1")


def test_rejected_refresh_token_is_an_external_failure() -> None:
    service = FakeCalendarService(query=FakeRequest(error=RefreshError("invalid_grant")))

    with pytest.raises(ExternalFailure) as excinfo:
        _client(service).query_free_busy(datetime(2026, 11, 2, tzinfo=timezone.utc), datetime(2026, 11, 3, tzinfo=timezone.utc))
    assert excinfo.value.message == "calendar credentials were rejected"


def test_free_busy_parses_intervals_for_the_configured_calendar() -> None:
    service = FakeCalendarService(
        query=FakeRequest(
            {
                "calendars": {
                    "sales@example.com": {
                        "busy": [
                            {"start": "2026-11-02T09:00:00Z", "end": "2026-11-02T10:00:00Z"},
                            {"start": "garbage", "end": "2026-11-02T12:00:00Z"},
                        ]
                    }
                }
            }
        )
    )

    intervals = _client(service).query_free_busy(
        datetime(2026, 11, 2, tzinfo=timezone.utc), datetime(2026, 11, 3, tzinfo=timezone.utc)
    )

    assert len(intervals) == 1
    assert intervals[0].start == datetime(2026, 11, 2, 9, 0, tzinfo=timezone.utc)
    assert service.calls[0][1]["body"]["items"] == [{"id": "sales@example.com"}]


def test_refresh_token_settings_build_self_refreshing_credentials() -> None:
    settings = Settings(google_client_id="client-id", google_client_secret="client-secret", google_refresh_token="refresh-1")

    credentials = build_calendar_credentials(settings)

    assert isinstance(credentials, oauth2_credentials.Credentials)
    assert credentials.refresh_token == "refresh-1"
    assert credentials.token is None
    assert isinstance(build_calendar_client(settings), GoogleCalendarClient)


def test_calendar_without_credentials_is_disconnected() -> None:
    settings = Settings(google_client_id="", google_client_secret="", google_refresh_token="", google_service_account_file="")

    assert build_calendar_credentials(settings) is None
    assert isinstance(build_calendar_client(settings), NullCalendarClient)


class FakeMessage:
    sid = "SM123"


class FakeMessages:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error
        self.created: list[dict[str, str]] = []

    def create(self, **kwargs: str) -> FakeMessage:
        if self.error is not None:
            raise self.error
        self.created.append(kwargs)
        return FakeMessage()


class FakeTwilio:
    def __init__(self, error: Exception | None = None) -> None:
        self.messages = FakeMessages(error)


def test_whatsapp_sender_prefixes_both_numbers() -> None:
    twilio = FakeTwilio()

    result = TwilioSender(twilio, "+447700900000", whatsapp=True).send("+447700900123", None, "See you soon")

    assert result.success is True
    assert result.external_id == "SM123"
    assert twilio.messages.created == [
        {"body": "See you soon", "from_": "whatsapp:+447700900000", "to": "whatsapp:+447700900123"}
    ]


def test_rejected_sms_reports_status_without_raising() -> None:
    twilio = FakeTwilio(error=TwilioRestException(400, "/Messages.json", msg="invalid number"))

    result = TwilioSender(twilio, "+447700900000").send("not-a-number", None, "Hello")

    assert result.success is False
    assert result.error == "sms rejected (400): invalid number"


def test_unconfigured_channels_fall_back_by_environment() -> None:
    local = build_channel_senders(Settings(app_env="local", twilio_account_sid="", twilio_auth_token="", resend_api_key=""))
    production = build_channel_senders(Settings(app_env="production", twilio_account_sid="", twilio_auth_token="", resend_api_key=""))

    assert isinstance(local["sms"], LoggingSender)
    assert isinstance(production["whatsapp"], UnconfiguredSender)

    configured = build_channel_senders(
        Settings(twilio_account_sid="AC123", twilio_auth_token="secret", twilio_sms_from="+447700900000", twilio_whatsapp_from="")
    )
    assert isinstance(configured["sms"], TwilioSender)
    assert configured["sms"].client.username == "AC123"
