"""MCP tool surface: calendar tools gated by the attendee permission policy.

Every tool consults the policy before touching the calendar.  A denied
decision is returned as the tool's text result and no calendar call is
made.  Update and delete fetch the target event first so the decision is
made against its current attendees; create is decided with an empty
attendee list because the event does not exist yet.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import UTC, date, datetime
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from fastmcp import FastMCP

from calguard import __version__
from calguard.calendar import (
    DEFAULT_CALENDAR_ID,
    CalendarError,
    CalendarEvent,
    CalendarEventCreate,
    CalendarEventUpdate,
    GoogleCalendarClient,
    redact_credential_values,
)
from calguard.formatting import format_table
from calguard.permissions import (
    OperationType,
    PermissionConfig,
    check_permission,
    deny_message,
)

logger = logging.getLogger(__name__)

SERVER_NAME = "google-calendar-mcp"
DEFAULT_TIMEZONE = "Asia/Tokyo"

_LIST_COLUMNS = ("id", "summary", "start", "end", "attendees")
_DETAIL_COLUMNS = (
    "id",
    "summary",
    "start",
    "end",
    "timezone",
    "location",
    "description",
    "organizer",
    "attendees",
    "link",
)


def _parse_datetime_arg(name: str, value: str) -> datetime:
    normalized = value.strip()
    if normalized.endswith("Z"):
        normalized = f"{normalized[:-1]}+00:00"
    try:
        return datetime.fromisoformat(normalized)
    except ValueError as exc:
        raise ValueError(f"{name} must be an ISO 8601 datetime, got {value!r}") from exc


def _parse_boundary_arg(name: str, value: str) -> date | datetime:
    """Parse ``YYYY-MM-DD`` as an all-day date, anything else as a datetime."""
    normalized = value.strip()
    if len(normalized) == 10:
        try:
            return date.fromisoformat(normalized)
        except ValueError:
            pass
    return _parse_datetime_arg(name, normalized)


def _event_row(event: CalendarEvent) -> dict[str, Any]:
    return {
        "id": event.event_id,
        "summary": event.summary,
        "start": event.start_text(),
        "end": event.end_text(),
        "timezone": event.timezone,
        "location": event.location,
        "description": event.description,
        "organizer": event.organizer,
        "attendees": ";".join(event.attendee_emails),
        "link": event.html_link,
    }


def _error_text(exc: Exception) -> str:
    return f"Error: {redact_credential_values(str(exc))}"


class CalendarTools:
    """Policy-gated calendar operations exposed as MCP tools."""

    def __init__(
        self,
        client: GoogleCalendarClient,
        permissions: PermissionConfig,
        *,
        self_email: str | None = None,
        calendar_id: str = DEFAULT_CALENDAR_ID,
        timezone: str = DEFAULT_TIMEZONE,
    ) -> None:
        self._client = client
        self._permissions = permissions
        self._self_email = self_email
        self._calendar_id = calendar_id
        self._timezone = timezone

    @property
    def permissions(self) -> PermissionConfig:
        return self._permissions

    async def resolve_self_email(self) -> str:
        """Return the authenticated user's address, asking Google once if unset."""
        if not self._self_email:
            self._self_email = await self._client.get_primary_email()
            logger.info("Resolved authenticated user as %s", self._self_email)
        return self._self_email

    async def denial_for(self, operation: OperationType, attendees: Iterable[str]) -> str | None:
        """Return the deny message for *operation*, or None when it is allowed."""
        self_email = await self.resolve_self_email()
        result = check_permission(self._permissions, operation, list(attendees), self_email)
        if result.allowed:
            return None
        logger.info(
            "Denied %s on event with %s attendees", operation.value, result.condition.value
        )
        return deny_message(operation, result.condition)

    def _resolve_calendar_id(self, calendar_id: str | None) -> str:
        if calendar_id is None or not calendar_id.strip():
            return self._calendar_id
        return calendar_id.strip()

    # -- tools --------------------------------------------------------------

    def get_current_time(self, time_zone: str | None = None) -> str:
        tz_name = time_zone or self._timezone
        try:
            tz = ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError):
            return f"Error: unknown time zone {tz_name!r}"
        now = datetime.now(tz)
        return f"Current time ({tz_name}): {now.strftime('%Y-%m-%d %H:%M:%S %Z')}"

    async def list_events(
        self,
        calendar_id: str | None = None,
        time_min: str | None = None,
        time_max: str | None = None,
        max_results: int = 10,
    ) -> str:
        resolved_calendar_id = self._resolve_calendar_id(calendar_id)
        try:
            denial = await self.denial_for(OperationType.READ, [])
            if denial is not None:
                return denial
            start = (
                _parse_datetime_arg("time_min", time_min)
                if time_min
                else datetime.now(UTC)
            )
            end = _parse_datetime_arg("time_max", time_max) if time_max else None
            events = await self._client.list_events(
                calendar_id=resolved_calendar_id,
                time_min=start,
                time_max=end,
                max_results=max_results,
            )
        except (CalendarError, ValueError) as exc:
            logger.warning("list_events failed (calendar_id=%s): %s", resolved_calendar_id, exc)
            return _error_text(exc)

        if not events:
            return "No events found."
        return format_table("events", _LIST_COLUMNS, [_event_row(event) for event in events])

    async def get_event(self, event_id: str, calendar_id: str | None = None) -> str:
        resolved_calendar_id = self._resolve_calendar_id(calendar_id)
        try:
            event = await self._client.get_event(
                event_id=event_id, calendar_id=resolved_calendar_id
            )
            if event is None:
                return f"Event {event_id} not found."
            denial = await self.denial_for(OperationType.READ, event.attendee_emails)
            if denial is not None:
                return denial
        except (CalendarError, ValueError) as exc:
            logger.warning("get_event failed (event_id=%s): %s", event_id, exc)
            return _error_text(exc)
        return format_table("event", _DETAIL_COLUMNS, [_event_row(event)])

    async def create_event(
        self,
        summary: str,
        start: str,
        end: str,
        description: str | None = None,
        location: str | None = None,
        attendees: list[str] | None = None,
        time_zone: str | None = None,
        calendar_id: str | None = None,
    ) -> str:
        resolved_calendar_id = self._resolve_calendar_id(calendar_id)
        try:
            denial = await self.denial_for(OperationType.CREATE, [])
            if denial is not None:
                return denial
            payload = CalendarEventCreate(
                summary=summary,
                start_at=_parse_boundary_arg("start", start),
                end_at=_parse_boundary_arg("end", end),
                timezone=time_zone,
                description=description,
                location=location,
                attendees=attendees or [],
            )
            event = await self._client.create_event(payload, calendar_id=resolved_calendar_id)
        except (CalendarError, ValueError) as exc:
            logger.warning("create_event failed (calendar_id=%s): %s", resolved_calendar_id, exc)
            return _error_text(exc)
        return "Created event.\n" + format_table("event", _DETAIL_COLUMNS, [_event_row(event)])

    async def update_event(
        self,
        event_id: str,
        summary: str | None = None,
        start: str | None = None,
        end: str | None = None,
        description: str | None = None,
        location: str | None = None,
        attendees: list[str] | None = None,
        time_zone: str | None = None,
        calendar_id: str | None = None,
    ) -> str:
        resolved_calendar_id = self._resolve_calendar_id(calendar_id)
        try:
            patch = CalendarEventUpdate(
                summary=summary,
                start_at=_parse_boundary_arg("start", start) if start else None,
                end_at=_parse_boundary_arg("end", end) if end else None,
                timezone=time_zone,
                description=description,
                location=location,
                attendees=attendees,
            )
            if patch.is_empty():
                return "Error: no fields to update"

            existing = await self._client.get_event(
                event_id=event_id, calendar_id=resolved_calendar_id
            )
            if existing is None:
                return f"Event {event_id} not found."
            denial = await self.denial_for(OperationType.UPDATE, existing.attendee_emails)
            if denial is None and attendees is not None:
                # A new attendee list is checked as well, so externals cannot be added.
                denial = await self.denial_for(OperationType.UPDATE, attendees)
            if denial is not None:
                return denial

            event = await self._client.update_event(
                event_id=event_id, patch=patch, calendar_id=resolved_calendar_id
            )
        except (CalendarError, ValueError) as exc:
            logger.warning("update_event failed (event_id=%s): %s", event_id, exc)
            return _error_text(exc)
        return "Updated event.\n" + format_table("event", _DETAIL_COLUMNS, [_event_row(event)])

    async def delete_event(self, event_id: str, calendar_id: str | None = None) -> str:
        resolved_calendar_id = self._resolve_calendar_id(calendar_id)
        try:
            existing = await self._client.get_event(
                event_id=event_id, calendar_id=resolved_calendar_id
            )
            if existing is None:
                return f"Event {event_id} not found."
            denial = await self.denial_for(OperationType.DELETE, existing.attendee_emails)
            if denial is not None:
                return denial
            await self._client.delete_event(event_id=event_id, calendar_id=resolved_calendar_id)
        except (CalendarError, ValueError) as exc:
            logger.warning("delete_event failed (event_id=%s): %s", event_id, exc)
            return _error_text(exc)
        return f"Deleted event {event_id}."

    # -- registration -------------------------------------------------------

    def register_tools(self, mcp: Any) -> None:
        tools = self

        @mcp.tool()
        async def get_current_time(time_zone: str | None = None) -> str:
            """Get the current date and time in an IANA time zone (e.g. Asia/Tokyo)."""
            return tools.get_current_time(time_zone)

        @mcp.tool()
        async def list_events(
            calendar_id: str | None = None,
            time_min: str | None = None,
            time_max: str | None = None,
            max_results: int = 10,
        ) -> str:
            """List upcoming calendar events.

            time_min / time_max are ISO 8601 datetimes; time_min defaults to now.
            """
            return await tools.list_events(calendar_id, time_min, time_max, max_results)

        @mcp.tool()
        async def get_event(event_id: str, calendar_id: str | None = None) -> str:
            """Get a single calendar event by id."""
            return await tools.get_event(event_id, calendar_id)

        @mcp.tool()
        async def create_event(
            summary: str,
            start: str,
            end: str,
            description: str | None = None,
            location: str | None = None,
            attendees: list[str] | None = None,
            time_zone: str | None = None,
            calendar_id: str | None = None,
        ) -> str:
            """Create a calendar event.

            start / end are ISO 8601 datetimes, or YYYY-MM-DD for an all-day event.
            """
            return await tools.create_event(
                summary,
                start,
                end,
                description=description,
                location=location,
                attendees=attendees,
                time_zone=time_zone,
                calendar_id=calendar_id,
            )

        @mcp.tool()
        async def update_event(
            event_id: str,
            summary: str | None = None,
            start: str | None = None,
            end: str | None = None,
            description: str | None = None,
            location: str | None = None,
            attendees: list[str] | None = None,
            time_zone: str | None = None,
            calendar_id: str | None = None,
        ) -> str:
            """Update fields of an existing calendar event; omitted fields are kept.

            start / end are ISO 8601 datetimes, or YYYY-MM-DD for an all-day event.
            """
            return await tools.update_event(
                event_id,
                summary=summary,
                start=start,
                end=end,
                description=description,
                location=location,
                attendees=attendees,
                time_zone=time_zone,
                calendar_id=calendar_id,
            )

        @mcp.tool()
        async def delete_event(event_id: str, calendar_id: str | None = None) -> str:
            """Delete a calendar event."""
            return await tools.delete_event(event_id, calendar_id)


def build_server(
    client: GoogleCalendarClient,
    permissions: PermissionConfig,
    *,
    self_email: str | None = None,
    calendar_id: str = DEFAULT_CALENDAR_ID,
    timezone: str = DEFAULT_TIMEZONE,
) -> FastMCP:
    """Create the FastMCP server with all calendar tools registered."""
    mcp = FastMCP(SERVER_NAME, version=__version__)
    CalendarTools(
        client,
        permissions,
        self_email=self_email,
        calendar_id=calendar_id,
        timezone=timezone,
    ).register_tools(mcp)
    return mcp
