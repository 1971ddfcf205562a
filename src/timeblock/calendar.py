from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Optional

from .errors import CalendarError
from .models import BusyInterval, User
from .timezone import as_utc

log = logging.getLogger("timeblock.calendar")

SCOPES = ["https://www.googleapis.com/auth/calendar"]
TASK_COLOR_ID = "9"  # blue, for time-blocked tasks
REMINDER_MINUTES = 10


class CalendarProvider:
    """External calendar the engine reads busy time from and books tasks into."""

    async def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        raise NotImplementedError

    async def create_event(
        self,
        *,
        summary: str,
        description: Optional[str],
        start: datetime,
        end: datetime,
        time_zone: str,
    ) -> str:
        raise NotImplementedError

    async def update_event(self, event_id: str, *, start: datetime, end: datetime) -> None:
        raise NotImplementedError

    async def delete_event(self, event_id: str) -> None:
        raise NotImplementedError


def _parse_event_time(field: dict[str, Any]) -> Optional[datetime]:
    value = field.get("dateTime")
    if not value:
        return None  # all-day event
    return as_utc(datetime.fromisoformat(value))


class GoogleCalendarProvider(CalendarProvider):
    def __init__(self, credentials: Any, calendar_id: str = "primary") -> None:
        # Lazy import to keep dependency optional at runtime
        from googleapiclient.discovery import build

        self.calendar_id = calendar_id
        self._service = build("calendar", "v3", credentials=credentials, cache_discovery=False)

    @classmethod
    def from_token_json(cls, token_json: str, calendar_id: str = "primary") -> GoogleCalendarProvider:
        from google.oauth2.credentials import Credentials

        info = json.loads(token_json)
        credentials = Credentials.from_authorized_user_info(info, SCOPES)
        return cls(credentials, calendar_id=calendar_id)

    async def _execute(self, request: Any, what: str) -> Any:
        try:
            return await asyncio.to_thread(request.execute)
        except Exception as exc:
            raise CalendarError(f"google calendar {what} failed: {exc}") from exc

    async def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        events = self._service.events()
        out: list[BusyInterval] = []
        page_token: Optional[str] = None
        while True:
            request = events.list(
                calendarId=self.calendar_id,
                timeMin=as_utc(start).isoformat(),
                timeMax=as_utc(end).isoformat(),
                singleEvents=True,
                orderBy="startTime",
                pageToken=page_token,
            )
            response = await self._execute(request, "list")
            for item in response.get("items", []):
                ev_start = _parse_event_time(item.get("start", {}))
                ev_end = _parse_event_time(item.get("end", {}))
                if ev_start is None or ev_end is None:
                    continue
                out.append(BusyInterval(start=ev_start, end=ev_end, event_id=item.get("id")))
            page_token = response.get("nextPageToken")
            if not page_token:
                return out

    async def create_event(
        self,
        *,
        summary: str,
        description: Optional[str],
        start: datetime,
        end: datetime,
        time_zone: str,
    ) -> str:
        body = {
            "summary": summary,
            "description": description,
            "start": {"dateTime": as_utc(start).isoformat(), "timeZone": time_zone},
            "end": {"dateTime": as_utc(end).isoformat(), "timeZone": time_zone},
            "colorId": TASK_COLOR_ID,
            "reminders": {
                "useDefault": False,
                "overrides": [{"method": "popup", "minutes": REMINDER_MINUTES}],
            },
        }
        request = self._service.events().insert(calendarId=self.calendar_id, body=body)
        created = await self._execute(request, "insert")
        return str(created.get("id") or "")

    async def update_event(self, event_id: str, *, start: datetime, end: datetime) -> None:
        events = self._service.events()
        existing = await self._execute(
            events.get(calendarId=self.calendar_id, eventId=event_id), "get"
        )
        existing["start"] = {
            "dateTime": as_utc(start).isoformat(),
            "timeZone": existing.get("start", {}).get("timeZone") or "UTC",
        }
        existing["end"] = {
            "dateTime": as_utc(end).isoformat(),
            "timeZone": existing.get("end", {}).get("timeZone") or "UTC",
        }
        await self._execute(
            events.update(calendarId=self.calendar_id, eventId=event_id, body=existing), "update"
        )

    async def delete_event(self, event_id: str) -> None:
        request = self._service.events().delete(calendarId=self.calendar_id, eventId=event_id)
        await self._execute(request, "delete")


def google_calendar_for_user(user: User) -> Optional[CalendarProvider]:
    """No linked account is a valid state: scheduling carries on without a calendar."""
    if not user.google_token_json:
        return None
    try:
        return GoogleCalendarProvider.from_token_json(user.google_token_json)
    except (ValueError, KeyError) as exc:
        log.warning("unusable google token for user %s: %s", user.user_id, exc)
        return None
