from __future__ import annotations

import datetime as dt
from typing import Any

from pydantic import BaseModel

from assistant0.domain.tools import ToolDefinition
from assistant0.tools.base import (
    ToolDependencies,
    delegated_access_token,
    raise_for_google_status,
    send_request,
)


CALENDAR_EVENTS_URL = "https://www.googleapis.com/calendar/v3/calendars/primary/events"
MAX_EVENTS = 50


class CalendarEventsInput(BaseModel):
    date: dt.date


def _day_bounds(day: dt.date) -> tuple[str, str]:
    start = dt.datetime.combine(day, dt.time.min, tzinfo=dt.timezone.utc)
    end = dt.datetime.combine(day, dt.time.max, tzinfo=dt.timezone.utc)
    return start.isoformat(), end.isoformat()


def summarize_event(event: dict[str, Any]) -> dict[str, Any]:
    start = event.get("start") or {}
    end = event.get("end") or {}
    return {
        "id": event.get("id"),
        "summary": event.get("summary") or "No title",
        "description": event.get("description"),
        "startTime": start.get("dateTime") or start.get("date"),
        "endTime": end.get("dateTime") or end.get("date"),
        "location": event.get("location"),
        "attendees": [
            {
                "email": attendee.get("email"),
                "name": attendee.get("displayName"),
                "responseStatus": attendee.get("responseStatus"),
            }
            for attendee in event.get("attendees") or []
        ],
        "status": event.get("status"),
        "htmlLink": event.get("htmlLink"),
    }


def build_calendar_events_tool(deps: ToolDependencies) -> ToolDefinition:
    async def execute(arguments: dict[str, Any]) -> dict[str, Any]:
        params = CalendarEventsInput.model_validate(arguments)
        token = await delegated_access_token(deps)
        time_min, time_max = _day_bounds(params.date)
        response = await send_request(
            deps,
            "GET",
            CALENDAR_EVENTS_URL,
            integration="google.calendar",
            retry=True,
            params={
                "timeMin": time_min,
                "timeMax": time_max,
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": MAX_EVENTS,
            },
            headers={"Authorization": f"Bearer {token}"},
        )
        raise_for_google_status(deps, response, integration="google.calendar")
        events = response.json().get("items") or []
        return {
            "date": params.date.isoformat(),
            "eventsCount": len(events),
            "events": [summarize_event(event) for event in events],
        }

    return ToolDefinition(
        description="Get calendar events for a given date from the user's Google Calendar",
        input_schema=CalendarEventsInput,
        execute=execute,
    )
