"""Tests for the Google Calendar client (all HTTP through httpx.MockTransport)."""

from __future__ import annotations

import json
import time
from datetime import UTC, date, datetime
from urllib.parse import parse_qs

import httpx
import pytest

from calguard.calendar import (
    GOOGLE_CALENDAR_API_BASE_URL,
    GOOGLE_OAUTH_TOKEN_URL,
    CalendarError,
    CalendarEventCreate,
    CalendarEventUpdate,
    CalendarRequestError,
    CalendarTokenRefreshError,
    GoogleCalendarClient,
    build_event_body,
    build_event_patch_body,
    google_event_to_calendar_event,
    redact_credential_values,
)
from calguard.google_credentials import ClientCredentials, TokenSet

pytestmark = pytest.mark.unit

CREDENTIALS = ClientCredentials(client_id="client-id", client_secret="client-secret")
EVENTS_URL = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary/events"

def _fresh_tokens(**overrides: object) -> TokenSet:
    values: dict[str, object] = {
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "expiry_date": int((time.time() + 3600) * 1000),
    }
    values.update(overrides)
    return TokenSet(**values)


def _event_payload(event_id: str = "evt-1", **overrides: object) -> dict:
    payload: dict = {
        "id": event_id,
        "summary": "Planning",
        "status": "confirmed",
        "start": {"dateTime": "2026-03-02T10:00:00+09:00", "timeZone": "Asia/Tokyo"},
        "end": {"dateTime": "2026-03-02T11:00:00+09:00", "timeZone": "Asia/Tokyo"},
        "attendees": [
            {"email": "me@example.com", "self": True, "responseStatus": "accepted"},
            {"email": "alice@example.com", "displayName": "Alice"},
        ],
        "organizer": {"email": "me@example.com"},
        "htmlLink": "https://calendar.google.com/event?eid=1",
    }
    payload.update(overrides)
    return payload


def _without_query(url: httpx.URL) -> str:
    path = url.raw_path.decode("ascii").split("?", 1)[0]
    return f"{url.scheme}://{url.host}{path}"


class _Recorder:
    """Routes requests to per-(method, url) handlers and records every call."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], list[httpx.Response]] = {}

    def add(self, method: str, url: str, *responses: httpx.Response) -> None:
        self.routes.setdefault((method, url), []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        key = (request.method, _without_query(request.url))
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(599, json={"error": {"message": f"unrouted {key}"}})
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def calls_to(self, url: str) -> list[httpx.Request]:
        return [r for r in self.requests if _without_query(r.url) == url]


@pytest.fixture
def recorder():
    return _Recorder()


@pytest.fixture
async def make_client(recorder):
    clients: list[httpx.AsyncClient] = []

    def _make(tokens: TokenSet | None = None) -> GoogleCalendarClient:
        http = httpx.AsyncClient(transport=httpx.MockTransport(recorder))
        clients.append(http)
        return GoogleCalendarClient(CREDENTIALS, tokens or _fresh_tokens(), http_client=http)

    yield _make
    for http in clients:
        await http.aclose()


def _token_response(access_token: str = "access-2", **extra: object) -> httpx.Response:
    return httpx.Response(
        200, json={"access_token": access_token, "expires_in": 3600, "token_type": "Bearer", **extra}
    )


# ---------------------------------------------------------------------------
# Event parsing
# ---------------------------------------------------------------------------


class TestEventParsing:
    def test_timed_event(self):
        event = google_event_to_calendar_event(_event_payload())
        assert event is not None
        assert event.event_id == "evt-1"
        assert event.all_day is False
        assert event.timezone == "Asia/Tokyo"
        assert event.start_at == datetime(2026, 3, 2, 1, 0, tzinfo=UTC)
        assert event.attendee_emails == ["me@example.com", "alice@example.com"]
        assert event.attendees[0].self_ is True
        assert event.attendees[1].display_name == "Alice"
        assert event.organizer == "me@example.com"

    def test_all_day_event(self):
        event = google_event_to_calendar_event(
            _event_payload(start={"date": "2026-03-02"}, end={"date": "2026-03-03"})
        )
        assert event is not None
        assert event.all_day is True
        assert event.start_text() == "2026-03-02"
        assert event.end_text() == "2026-03-03"

    def test_cancelled_event_skipped(self):
        assert google_event_to_calendar_event(_event_payload(status="cancelled")) is None

    def test_missing_summary_gets_placeholder(self):
        payload = _event_payload()
        del payload["summary"]
        event = google_event_to_calendar_event(payload)
        assert event is not None
        assert event.summary == "(untitled)"

    def test_attendees_without_email_dropped(self):
        event = google_event_to_calendar_event(
            _event_payload(attendees=[{"displayName": "Room"}, {"email": "bob@example.com"}])
        )
        assert event is not None
        assert event.attendee_emails == ["bob@example.com"]

    def test_missing_boundaries_raise(self):
        with pytest.raises(ValueError):
            google_event_to_calendar_event(_event_payload(start=None))


# ---------------------------------------------------------------------------
# Payload builders
# ---------------------------------------------------------------------------


class TestEventBodies:
    def test_timed_body_with_timezone(self):
        body = build_event_body(
            CalendarEventCreate(
                summary="Sync",
                start_at=datetime(2026, 3, 2, 10, 0),
                end_at=datetime(2026, 3, 2, 10, 30),
                timezone="Asia/Tokyo",
                attendees=["alice@example.com"],
                location="Room 4",
            )
        )
        assert body["start"] == {"dateTime": "2026-03-02T10:00:00+09:00", "timeZone": "Asia/Tokyo"}
        assert body["end"]["dateTime"] == "2026-03-02T10:30:00+09:00"
        assert body["attendees"] == [{"email": "alice@example.com"}]
        assert body["location"] == "Room 4"
        assert "description" not in body

    def test_timed_body_without_timezone_is_utc(self):
        body = build_event_body(
            CalendarEventCreate(
                summary="Sync",
                start_at=datetime(2026, 3, 2, 1, 0, tzinfo=UTC),
                end_at=datetime(2026, 3, 2, 2, 0, tzinfo=UTC),
            )
        )
        assert body["start"] == {"dateTime": "2026-03-02T01:00:00Z"}

    def test_all_day_body(self):
        body = build_event_body(
            CalendarEventCreate(summary="Off", start_at=date(2026, 3, 2), end_at=date(2026, 3, 3))
        )
        assert body["start"] == {"date": "2026-03-02"}
        assert body["end"] == {"date": "2026-03-03"}

    def test_patch_body_only_has_set_fields(self):
        body = build_event_patch_body(CalendarEventUpdate(summary="Renamed"))
        assert body == {"summary": "Renamed"}

    def test_patch_body_clears_attendees_with_empty_list(self):
        body = build_event_patch_body(CalendarEventUpdate(attendees=[]))
        assert body == {"attendees": []}

    def test_patch_body_keeps_all_day_dates(self):
        body = build_event_patch_body(
            CalendarEventUpdate(start_at=date(2026, 1, 7), end_at=date(2026, 1, 8))
        )
        assert body["start"] == {"date": "2026-01-07", "dateTime": None}
        assert body["end"] == {"date": "2026-01-08", "dateTime": None}

    def test_patch_body_timed_clears_date(self):
        body = build_event_patch_body(
            CalendarEventUpdate(start_at=datetime(2026, 1, 7, 9, 0, tzinfo=UTC))
        )
        assert body["start"] == {"date": None, "dateTime": "2026-01-07T09:00:00Z"}

    def test_update_mixed_boundaries_rejected(self):
        with pytest.raises(ValueError, match="both be dates"):
            CalendarEventUpdate(start_at=date(2026, 1, 7), end_at=datetime(2026, 1, 8, 10, 0))

    def test_update_reversed_range_rejected(self):
        with pytest.raises(ValueError, match="end_at"):
            CalendarEventUpdate(start_at=date(2026, 1, 8), end_at=date(2026, 1, 7))

    def test_update_single_boundary_allowed(self):
        assert CalendarEventUpdate(end_at=date(2026, 1, 8)).start_at is None

    def test_end_before_start_rejected(self):
        with pytest.raises(ValueError, match="end_at"):
            CalendarEventCreate(
                summary="x",
                start_at=datetime(2026, 3, 2, 11, 0),
                end_at=datetime(2026, 3, 2, 10, 0),
            )

    def test_mixed_date_and_datetime_rejected(self):
        with pytest.raises(ValueError, match="both be dates"):
            CalendarEventCreate(
                summary="x", start_at=date(2026, 3, 2), end_at=datetime(2026, 3, 2, 10, 0)
            )

    def test_unknown_timezone_rejected(self):
        with pytest.raises(ValueError, match="unknown time zone"):
            CalendarEventUpdate(timezone="Mars/Olympus_Mons")


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


class TestListEvents:
    async def test_sends_bearer_and_query(self, recorder, make_client):
        recorder.add(
            "GET",
            EVENTS_URL,
            httpx.Response(
                200,
                json={
                    "items": [
                        _event_payload("a"),
                        _event_payload("b", status="cancelled"),
                        _event_payload("c"),
                    ]
                },
            ),
        )
        client = make_client()

        events = await client.list_events(
            time_min=datetime(2026, 3, 1, tzinfo=UTC), max_results=5
        )

        assert [e.event_id for e in events] == ["a", "c"]
        request = recorder.requests[0]
        assert request.headers["Authorization"] == "Bearer access-1"
        params = parse_qs(request.url.query.decode())
        assert params["singleEvents"] == ["true"]
        assert params["orderBy"] == ["startTime"]
        assert params["maxResults"] == ["5"]
        assert params["timeMin"] == ["2026-03-01T00:00:00Z"]
        assert "timeMax" not in params

    async def test_calendar_id_is_path_escaped(self, recorder, make_client):
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/team%40group.calendar.google.com/events"
        recorder.add("GET", url, httpx.Response(200, json={"items": []}))
        client = make_client()
        assert await client.list_events(calendar_id="team@group.calendar.google.com") == []
        assert len(recorder.requests) == 1

    async def test_error_status_raises_request_error(self, recorder, make_client):
        recorder.add(
            "GET",
            EVENTS_URL,
            httpx.Response(403, json={"error": {"message": "Rate   limit\nexceeded"}}),
        )
        client = make_client()
        with pytest.raises(CalendarRequestError) as exc_info:
            await client.list_events()
        assert exc_info.value.status_code == 403
        assert exc_info.value.message == "Rate limit exceeded"

    async def test_invalid_max_results(self, make_client):
        with pytest.raises(ValueError):
            await make_client().list_events(max_results=0)


class TestTokenRefresh:
    async def test_expired_token_refreshed_before_request(self, recorder, make_client):
        recorder.add("POST", GOOGLE_OAUTH_TOKEN_URL, _token_response("access-2"))
        recorder.add("GET", EVENTS_URL, httpx.Response(200, json={"items": []}))
        client = make_client(_fresh_tokens(expiry_date=1))

        await client.list_events()

        assert [r.method for r in recorder.requests] == ["POST", "GET"]
        form = parse_qs(recorder.requests[0].content.decode())
        assert form["grant_type"] == ["refresh_token"]
        assert form["refresh_token"] == ["refresh-1"]
        assert recorder.requests[1].headers["Authorization"] == "Bearer access-2"
        assert client.tokens.access_token == "access-2"
        # Refresh token is kept when Google does not rotate it.
        assert client.tokens.refresh_token == "refresh-1"
        assert not client.tokens.is_expired()

    async def test_rotated_refresh_token_is_adopted(self, recorder, make_client):
        recorder.add(
            "POST", GOOGLE_OAUTH_TOKEN_URL, _token_response("access-2", refresh_token="refresh-2")
        )
        recorder.add("GET", EVENTS_URL, httpx.Response(200, json={"items": []}))
        client = make_client(_fresh_tokens(expiry_date=1))
        await client.list_events()
        assert client.tokens.refresh_token == "refresh-2"

    async def test_unauthorized_forces_one_refresh_and_retry(self, recorder, make_client):
        recorder.add(
            "GET",
            EVENTS_URL,
            httpx.Response(401, json={"error": {"message": "Invalid Credentials"}}),
            httpx.Response(200, json={"items": [_event_payload()]}),
        )
        recorder.add("POST", GOOGLE_OAUTH_TOKEN_URL, _token_response("access-2"))
        client = make_client()

        events = await client.list_events()

        assert len(events) == 1
        api_calls = recorder.calls_to(EVENTS_URL)
        assert [c.headers["Authorization"] for c in api_calls] == [
            "Bearer access-1",
            "Bearer access-2",
        ]
        assert len(recorder.calls_to(GOOGLE_OAUTH_TOKEN_URL)) == 1

    async def test_second_unauthorized_is_an_error(self, recorder, make_client):
        recorder.add("GET", EVENTS_URL, httpx.Response(401, json={"error": "unauthorized"}))
        recorder.add("POST", GOOGLE_OAUTH_TOKEN_URL, _token_response("access-2"))
        client = make_client()

        with pytest.raises(CalendarRequestError) as exc_info:
            await client.list_events()
        assert exc_info.value.status_code == 401
        assert len(recorder.calls_to(EVENTS_URL)) == 2

    async def test_expired_without_refresh_token(self, make_client):
        client = make_client(_fresh_tokens(expiry_date=1, refresh_token=None))
        with pytest.raises(CalendarTokenRefreshError, match="no refresh token"):
            await client.list_events()

    async def test_refresh_rejected(self, recorder, make_client):
        recorder.add(
            "POST",
            GOOGLE_OAUTH_TOKEN_URL,
            httpx.Response(400, json={"error": "invalid_grant"}),
        )
        client = make_client(_fresh_tokens(expiry_date=1))
        with pytest.raises(CalendarTokenRefreshError, match="invalid_grant"):
            await client.list_events()

    async def test_refresh_errors_are_calendar_errors(self):
        assert issubclass(CalendarTokenRefreshError, CalendarError)
        assert issubclass(CalendarRequestError, CalendarError)


class TestSingleEventOperations:
    async def test_get_event(self, recorder, make_client):
        recorder.add("GET", f"{EVENTS_URL}/evt-1", httpx.Response(200, json=_event_payload()))
        event = await make_client().get_event(event_id="evt-1")
        assert event is not None
        assert event.summary == "Planning"

    async def test_get_event_not_found(self, recorder, make_client):
        recorder.add("GET", f"{EVENTS_URL}/gone", httpx.Response(404, json={}))
        assert await make_client().get_event(event_id="gone") is None

    async def test_get_event_blank_id_rejected(self, make_client):
        with pytest.raises(ValueError):
            await make_client().get_event(event_id="  ")

    async def test_create_event_posts_body(self, recorder, make_client):
        recorder.add("POST", EVENTS_URL, httpx.Response(200, json=_event_payload("new")))
        created = await make_client().create_event(
            CalendarEventCreate(
                summary="Planning",
                start_at=datetime(2026, 3, 2, 10, 0),
                end_at=datetime(2026, 3, 2, 11, 0),
                timezone="Asia/Tokyo",
            )
        )
        assert created.event_id == "new"
        body = json.loads(recorder.requests[0].content)
        assert body["summary"] == "Planning"
        assert body["start"]["timeZone"] == "Asia/Tokyo"

    async def test_update_event_patches(self, recorder, make_client):
        recorder.add(
            "PATCH",
            f"{EVENTS_URL}/evt-1",
            httpx.Response(200, json=_event_payload(summary="Renamed")),
        )
        updated = await make_client().update_event(
            event_id="evt-1", patch=CalendarEventUpdate(summary="Renamed")
        )
        assert updated.summary == "Renamed"
        assert json.loads(recorder.requests[0].content) == {"summary": "Renamed"}

    async def test_delete_event(self, recorder, make_client):
        recorder.add("DELETE", f"{EVENTS_URL}/evt-1", httpx.Response(204))
        await make_client().delete_event(event_id="evt-1")
        assert recorder.requests[0].method == "DELETE"

    async def test_delete_missing_event_is_not_an_error(self, recorder, make_client):
        recorder.add("DELETE", f"{EVENTS_URL}/evt-1", httpx.Response(404))
        await make_client().delete_event(event_id="evt-1")

    async def test_delete_failure_raises(self, recorder, make_client):
        recorder.add(
            "DELETE",
            f"{EVENTS_URL}/evt-1",
            httpx.Response(500, text="backend unavailable"),
        )
        with pytest.raises(CalendarRequestError, match="backend unavailable"):
            await make_client().delete_event(event_id="evt-1")

    async def test_transport_error_wrapped(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
            client = GoogleCalendarClient(CREDENTIALS, _fresh_tokens(), http_client=http)
            with pytest.raises(CalendarError, match="timed out"):
                await client.get_event(event_id="evt-1")


class TestPrimaryEmail:
    async def test_resolved_once_and_cached(self, recorder, make_client):
        recorder.add(
            "GET",
            f"{GOOGLE_CALENDAR_API_BASE_URL}/calendars/primary",
            httpx.Response(200, json={"id": "me@example.com", "summary": "me@example.com"}),
        )
        client = make_client()
        assert await client.get_primary_email() == "me@example.com"
        assert await client.get_primary_email() == "me@example.com"
        assert len(recorder.requests) == 1


class TestClientLifecycle:
    async def test_owned_http_client_closed(self):
        client = GoogleCalendarClient(CREDENTIALS, _fresh_tokens())
        async with client:
            pass
        assert client._http_client.is_closed

    async def test_borrowed_http_client_left_open(self):
        async with httpx.AsyncClient() as http:
            client = GoogleCalendarClient(CREDENTIALS, _fresh_tokens(), http_client=http)
            await client.aclose()
            assert not http.is_closed


class TestRedaction:
    def test_masks_query_style_secrets(self):
        message = "failed: refresh_token=1//abc client_secret=xyz"
        redacted = redact_credential_values(message)
        assert "1//abc" not in redacted
        assert "xyz" not in redacted
        assert "refresh_token=[REDACTED]" in redacted

    def test_masks_json_style_secrets(self):
        redacted = redact_credential_values('{"access_token": "ya29.zzz", "scope": "s"}')
        assert "ya29.zzz" not in redacted
        assert '"scope": "s"' in redacted
