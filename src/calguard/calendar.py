"""Google Calendar client built on an authenticated token set.

This module defines:
- ``CalendarEvent`` / ``AttendeeInfo``: canonical event shapes parsed from
  Google payloads
- ``CalendarEventCreate`` / ``CalendarEventUpdate``: write payloads
- ``GoogleCalendarClient``: bearer-token requests against the Calendar v3 API
  with on-demand access-token refresh
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import UTC, date, datetime
from typing import Any
from urllib.parse import quote
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from calguard.google_credentials import ClientCredentials, TokenSet

logger = logging.getLogger(__name__)

GOOGLE_OAUTH_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_API_BASE_URL = "https://www.googleapis.com/calendar/v3"
DEFAULT_CALENDAR_ID = "primary"


class CalendarError(RuntimeError):
    """Base error raised by Google Calendar auth/request helpers."""


class CalendarTokenRefreshError(CalendarError):
    """Raised when refresh-token exchange fails."""


class CalendarRequestError(CalendarError):
    """Raised when a Google Calendar API request fails."""

    def __init__(self, *, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(f"Google Calendar API request failed ({status_code}): {message}")


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class AttendeeInfo(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    email: str
    display_name: str | None = None
    response_status: str | None = None
    organizer: bool = False
    self_: bool = Field(default=False, alias="self")


class CalendarEvent(BaseModel):
    """Canonical event shape returned by the client."""

    event_id: str
    summary: str
    start_at: datetime
    end_at: datetime
    all_day: bool = False
    timezone: str | None = None
    description: str | None = None
    location: str | None = None
    attendees: list[AttendeeInfo] = Field(default_factory=list)
    organizer: str | None = None
    status: str | None = None
    html_link: str | None = None

    @property
    def attendee_emails(self) -> list[str]:
        return [attendee.email for attendee in self.attendees]

    def start_text(self) -> str:
        return self.start_at.date().isoformat() if self.all_day else self.start_at.isoformat()

    def end_text(self) -> str:
        return self.end_at.date().isoformat() if self.all_day else self.end_at.isoformat()


def _validate_timezone_name(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip()
    if not normalized:
        return None
    try:
        ZoneInfo(normalized)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"unknown time zone {normalized!r}") from exc
    return normalized


def _check_boundaries(start_at: date | datetime, end_at: date | datetime) -> None:
    if isinstance(start_at, datetime) != isinstance(end_at, datetime):
        raise ValueError("start_at and end_at must both be dates or both be datetimes")
    try:
        reversed_range = end_at < start_at
    except TypeError as exc:
        raise ValueError("start_at and end_at must both include or both omit an offset") from exc
    if reversed_range:
        raise ValueError("end_at must not be earlier than start_at")


class CalendarEventCreate(BaseModel):
    """Payload for creating a calendar event."""

    summary: str = Field(min_length=1)
    start_at: date | datetime
    end_at: date | datetime
    timezone: str | None = None
    description: str | None = None
    location: str | None = None
    attendees: list[str] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str | None) -> str | None:
        return _validate_timezone_name(value)

    @model_validator(mode="after")
    def _validate_boundaries(self) -> CalendarEventCreate:
        _check_boundaries(self.start_at, self.end_at)
        return self


class CalendarEventUpdate(BaseModel):
    """Partial update; only fields that are set are sent."""

    summary: str | None = None
    start_at: date | datetime | None = None
    end_at: date | datetime | None = None
    timezone: str | None = None
    description: str | None = None
    location: str | None = None
    attendees: list[str] | None = None

    @field_validator("timezone")
    @classmethod
    def _validate_timezone(cls, value: str | None) -> str | None:
        return _validate_timezone_name(value)

    @model_validator(mode="after")
    def _validate_boundaries(self) -> CalendarEventUpdate:
        if self.start_at is not None and self.end_at is not None:
            _check_boundaries(self.start_at, self.end_at)
        return self

    def is_empty(self) -> bool:
        return not self.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Payload helpers
# ---------------------------------------------------------------------------


def _google_rfc3339(value: datetime) -> str:
    normalized = value if value.tzinfo is not None else value.replace(tzinfo=UTC)
    return normalized.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _parse_google_datetime(value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        parsed = datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"Google Calendar returned an invalid dateTime: {value}") from exc
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def _normalize_optional_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    normalized = value.strip()
    return normalized or None


def _parse_event_boundary(payload: dict[str, Any]) -> tuple[datetime, bool, str | None]:
    timezone = _normalize_optional_text(payload.get("timeZone"))

    date_time = payload.get("dateTime")
    if isinstance(date_time, str) and date_time.strip():
        return _parse_google_datetime(date_time), False, timezone

    date_value = payload.get("date")
    if isinstance(date_value, str) and date_value.strip():
        try:
            parsed = date.fromisoformat(date_value.strip())
        except ValueError as exc:
            raise ValueError(f"Google Calendar returned an invalid date value: {date_value}") from exc
        return datetime(parsed.year, parsed.month, parsed.day, tzinfo=UTC), True, timezone

    raise ValueError("Google Calendar event is missing start/end dateTime or date values")


def _extract_attendees(payload: Any) -> list[AttendeeInfo]:
    if not isinstance(payload, list):
        return []

    attendees: list[AttendeeInfo] = []
    for entry in payload:
        if not isinstance(entry, dict):
            continue
        email = _normalize_optional_text(entry.get("email"))
        if email is None:
            continue
        attendees.append(
            AttendeeInfo(
                email=email,
                display_name=_normalize_optional_text(entry.get("displayName")),
                response_status=_normalize_optional_text(entry.get("responseStatus")),
                organizer=entry.get("organizer") is True,
                self_=entry.get("self") is True,
            )
        )
    return attendees


def google_event_to_calendar_event(payload: dict[str, Any]) -> CalendarEvent | None:
    """Parse a Google event resource; cancelled events yield None."""
    status = _normalize_optional_text(payload.get("status"))
    if status is not None and status.lower() == "cancelled":
        return None

    event_id = _normalize_optional_text(payload.get("id"))
    if event_id is None:
        raise ValueError("Google Calendar event payload is missing a non-empty id")

    start_payload = payload.get("start")
    end_payload = payload.get("end")
    if not isinstance(start_payload, dict) or not isinstance(end_payload, dict):
        raise ValueError(f"Google Calendar event '{event_id}' is missing start/end payloads")

    start_at, all_day, start_timezone = _parse_event_boundary(start_payload)
    end_at, _, end_timezone = _parse_event_boundary(end_payload)

    organizer_payload = payload.get("organizer")
    organizer = (
        _normalize_optional_text(organizer_payload.get("email"))
        if isinstance(organizer_payload, dict)
        else None
    )

    return CalendarEvent(
        event_id=event_id,
        summary=_normalize_optional_text(payload.get("summary")) or "(untitled)",
        start_at=start_at,
        end_at=end_at,
        all_day=all_day,
        timezone=start_timezone or end_timezone,
        description=_normalize_optional_text(payload.get("description")),
        location=_normalize_optional_text(payload.get("location")),
        attendees=_extract_attendees(payload.get("attendees")),
        organizer=organizer,
        status=status,
        html_link=_normalize_optional_text(payload.get("htmlLink")),
    )


def _boundary_body(value: date | datetime, timezone: str | None) -> dict[str, str]:
    if not isinstance(value, datetime):
        return {"date": value.isoformat()}
    if timezone is None:
        return {"dateTime": _google_rfc3339(value)}
    tz = ZoneInfo(timezone)
    localized = value.replace(tzinfo=tz) if value.tzinfo is None else value.astimezone(tz)
    return {"dateTime": localized.isoformat(), "timeZone": timezone}


def _patch_boundary_body(value: date | datetime, timezone: str | None) -> dict[str, str | None]:
    # PATCH merges nested objects, so the other form is cleared explicitly
    # when an event switches between all-day and timed.
    body: dict[str, str | None] = {"date": None, "dateTime": None}
    body.update(_boundary_body(value, timezone))
    return body


def build_event_body(payload: CalendarEventCreate) -> dict[str, Any]:
    """Translate a create payload into a Google Calendar API event body."""
    body: dict[str, Any] = {
        "summary": payload.summary,
        "start": _boundary_body(payload.start_at, payload.timezone),
        "end": _boundary_body(payload.end_at, payload.timezone),
    }
    if payload.description is not None:
        body["description"] = payload.description
    if payload.location is not None:
        body["location"] = payload.location
    if payload.attendees:
        body["attendees"] = [{"email": email} for email in payload.attendees]
    return body


def build_event_patch_body(patch: CalendarEventUpdate) -> dict[str, Any]:
    """Translate an update into a partial body containing only the set fields."""
    body: dict[str, Any] = {}
    if patch.summary is not None:
        body["summary"] = patch.summary
    if patch.description is not None:
        body["description"] = patch.description
    if patch.location is not None:
        body["location"] = patch.location
    if patch.start_at is not None:
        body["start"] = _patch_boundary_body(patch.start_at, patch.timezone)
    if patch.end_at is not None:
        body["end"] = _patch_boundary_body(patch.end_at, patch.timezone)
    if patch.attendees is not None:
        body["attendees"] = [{"email": email} for email in patch.attendees]
    return body


def safe_google_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None

    if isinstance(payload, dict):
        error_payload = payload.get("error")
        if isinstance(error_payload, dict):
            message = error_payload.get("message")
            if isinstance(message, str) and message.strip():
                return " ".join(message.split())[:200]
        if isinstance(error_payload, str) and error_payload.strip():
            return " ".join(error_payload.split())[:200]

    raw_text = response.text.strip()
    if raw_text:
        return " ".join(raw_text.split())[:200]
    return "Request failed without an error payload"


def redact_credential_values(message: str) -> str:
    """Mask token/secret values that may appear in an error message."""
    redacted = re.sub(
        r"(?i)\b(client_secret|refresh_token|access_token|token)\s*=\s*([^\s,;]+)",
        r"\1=[REDACTED]",
        message,
    )
    redacted = re.sub(
        r"""(?i)(['"]?(?:client_secret|refresh_token|access_token|token)['"]?\s*:\s*)(['"]).*?\2""",
        r'\1"[REDACTED]"',
        redacted,
    )
    return redacted


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class GoogleCalendarClient:
    """Authenticated Google Calendar v3 client.

    The loaded token set is trusted as-is; the access token is refreshed only
    when its recorded expiry has passed or the API answers 401.  Refreshed
    tokens are kept in memory and not written back to the token store.
    """

    def __init__(
        self,
        credentials: ClientCredentials,
        tokens: TokenSet,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._credentials = credentials
        self._tokens = tokens
        self._owns_http_client = http_client is None
        self._http_client = http_client or httpx.AsyncClient(timeout=30.0)
        self._refresh_lock = asyncio.Lock()
        self._primary_email: str | None = None

    @property
    def tokens(self) -> TokenSet:
        return self._tokens

    async def aclose(self) -> None:
        if self._owns_http_client:
            await self._http_client.aclose()

    async def __aenter__(self) -> GoogleCalendarClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- auth ---------------------------------------------------------------

    async def get_access_token(self, *, force_refresh: bool = False) -> str:
        if not force_refresh and not self._tokens.is_expired():
            return self._tokens.access_token

        async with self._refresh_lock:
            if not force_refresh and not self._tokens.is_expired():
                return self._tokens.access_token
            await self._refresh_access_token()
            return self._tokens.access_token

    async def _refresh_access_token(self) -> None:
        refresh_token = self._tokens.refresh_token
        if not refresh_token:
            raise CalendarTokenRefreshError(
                "Access token expired and no refresh token is available; re-run authorization"
            )

        try:
            response = await self._http_client.post(
                GOOGLE_OAUTH_TOKEN_URL,
                data={
                    "client_id": self._credentials.client_id,
                    "client_secret": self._credentials.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                },
                headers={"Accept": "application/json"},
            )
        except httpx.HTTPError as exc:
            raise CalendarTokenRefreshError(
                f"Google OAuth token refresh request failed: {exc}"
            ) from exc

        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarTokenRefreshError(
                "Google OAuth token refresh failed "
                f"({response.status_code}): {safe_google_error_message(response)}"
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarTokenRefreshError("Google OAuth token endpoint returned invalid JSON") from exc

        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(access_token, str) or not access_token.strip():
            raise CalendarTokenRefreshError(
                "Google OAuth token response is missing a non-empty access_token"
            )

        refreshed = TokenSet.from_token_response(payload)
        self._tokens = self._tokens.model_copy(
            update={
                "access_token": refreshed.access_token,
                "expiry_date": refreshed.expiry_date,
                "scope": refreshed.scope or self._tokens.scope,
                "token_type": refreshed.token_type,
                # Google only returns a new refresh token on rotation.
                "refresh_token": refreshed.refresh_token or refresh_token,
            }
        )
        logger.debug("Refreshed Google access token")

    # -- transport ----------------------------------------------------------

    async def _request_once(
        self,
        *,
        method: str,
        url: str,
        params: dict[str, Any] | None,
        json_body: dict[str, Any] | None,
        force_refresh: bool,
    ) -> httpx.Response:
        access_token = await self.get_access_token(force_refresh=force_refresh)
        try:
            return await self._http_client.request(
                method,
                url,
                params=params,
                json=json_body,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as exc:
            raise CalendarError(f"Google Calendar request failed: {exc}") from exc

    async def _request_with_bearer(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> httpx.Response:
        normalized_path = path if path.startswith("/") else f"/{path}"
        url = f"{GOOGLE_CALENDAR_API_BASE_URL}{normalized_path}"

        response = await self._request_once(
            method=method, url=url, params=params, json_body=json_body, force_refresh=False
        )
        if response.status_code == 401:
            response = await self._request_once(
                method=method, url=url, params=params, json_body=json_body, force_refresh=True
            )
        return response

    async def _request_google_json(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response = await self._request_with_bearer(
            method, path, params=params, json_body=json_body
        )
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )
        if response.status_code == 204:
            return {}

        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarError(
                "Google Calendar API returned invalid JSON for a successful response"
            ) from exc
        if not isinstance(payload, dict):
            raise CalendarError("Google Calendar API returned an unexpected JSON payload shape")
        return payload

    @staticmethod
    def _event_path(calendar_id: str, event_id: str | None = None) -> str:
        path = f"/calendars/{quote(calendar_id, safe='')}/events"
        if event_id is None:
            return path
        normalized_event_id = event_id.strip()
        if not normalized_event_id:
            raise ValueError("event_id must be a non-empty string")
        return f"{path}/{quote(normalized_event_id, safe='')}"

    # -- operations ---------------------------------------------------------

    async def get_primary_email(self) -> str:
        """Return the authenticated user's address (the primary calendar id)."""
        if self._primary_email is None:
            payload = await self._request_google_json("GET", "/calendars/primary")
            calendar_id = _normalize_optional_text(payload.get("id"))
            if calendar_id is None:
                raise CalendarError("Primary calendar response is missing an id")
            self._primary_email = calendar_id
        return self._primary_email

    async def list_events(
        self,
        *,
        calendar_id: str = DEFAULT_CALENDAR_ID,
        time_min: datetime | None = None,
        time_max: datetime | None = None,
        max_results: int = 10,
    ) -> list[CalendarEvent]:
        if max_results < 1:
            raise ValueError("max_results must be at least 1")

        params: dict[str, Any] = {
            "singleEvents": True,
            "orderBy": "startTime",
            "maxResults": min(max_results, 2500),
        }
        if time_min is not None:
            params["timeMin"] = _google_rfc3339(time_min)
        if time_max is not None:
            params["timeMax"] = _google_rfc3339(time_max)

        payload = await self._request_google_json(
            "GET", self._event_path(calendar_id), params=params
        )
        items = payload.get("items", [])
        if not isinstance(items, list):
            raise CalendarError("Google Calendar list_events response has a non-array items field")

        events: list[CalendarEvent] = []
        for item in items:
            if not isinstance(item, dict):
                continue
            event = google_event_to_calendar_event(item)
            if event is not None:
                events.append(event)
        return events

    async def get_event(
        self,
        *,
        event_id: str,
        calendar_id: str = DEFAULT_CALENDAR_ID,
    ) -> CalendarEvent | None:
        response = await self._request_with_bearer("GET", self._event_path(calendar_id, event_id))
        if response.status_code == 404:
            return None
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )
        try:
            payload = response.json()
        except ValueError as exc:
            raise CalendarError("Google Calendar API returned invalid JSON for get_event") from exc
        if not isinstance(payload, dict):
            raise CalendarError("Google Calendar API returned an unexpected get_event payload")
        return google_event_to_calendar_event(payload)

    async def create_event(
        self,
        payload: CalendarEventCreate,
        *,
        calendar_id: str = DEFAULT_CALENDAR_ID,
    ) -> CalendarEvent:
        response_payload = await self._request_google_json(
            "POST", self._event_path(calendar_id), json_body=build_event_body(payload)
        )
        event = google_event_to_calendar_event(response_payload)
        if event is None:
            raise CalendarRequestError(
                status_code=200,
                message="Google Calendar returned a cancelled event after create",
            )
        return event

    async def update_event(
        self,
        *,
        event_id: str,
        patch: CalendarEventUpdate,
        calendar_id: str = DEFAULT_CALENDAR_ID,
    ) -> CalendarEvent:
        response_payload = await self._request_google_json(
            "PATCH",
            self._event_path(calendar_id, event_id),
            json_body=build_event_patch_body(patch),
        )
        event = google_event_to_calendar_event(response_payload)
        if event is None:
            raise CalendarRequestError(
                status_code=200,
                message="Google Calendar returned a cancelled event after update",
            )
        return event

    async def delete_event(
        self,
        *,
        event_id: str,
        calendar_id: str = DEFAULT_CALENDAR_ID,
    ) -> None:
        """Delete an event; a 404 means it is already gone and is not an error."""
        response = await self._request_with_bearer(
            "DELETE", self._event_path(calendar_id, event_id)
        )
        if response.status_code == 404:
            logger.debug("delete_event: event '%s' not found; treating as deleted", event_id)
            return
        if response.status_code < 200 or response.status_code >= 300:
            raise CalendarRequestError(
                status_code=response.status_code,
                message=safe_google_error_message(response),
            )
