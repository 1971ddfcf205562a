from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest

from timeblock.calendar import CalendarProvider
from timeblock.config import Settings
from timeblock.errors import CalendarError
from timeblock.models import BusyInterval
from timeblock.storage import Storage

UTC = timezone.utc


def at(hour: int, minute: int = 0, *, day: int = 12) -> datetime:
    """Monday 2026-01-12 (and neighbours via `day`) in UTC."""
    return datetime(2026, 1, day, hour, minute, tzinfo=UTC)


class FakeCalendar(CalendarProvider):
    """In-memory calendar: created events show up as busy time, like a real one."""

    def __init__(
        self,
        busy: tuple[BusyInterval, ...] = (),
        *,
        fail_reads: bool = False,
        fail_writes: bool = False,
    ) -> None:
        self.busy = list(busy)
        self.fail_reads = fail_reads
        self.fail_writes = fail_writes
        self.events: dict[str, tuple[datetime, datetime]] = {}
        self.reads: list[tuple[datetime, datetime]] = []
        self.deleted: list[str] = []
        self._next_id = 1

    async def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        self.reads.append((start, end))
        if self.fail_reads:
            raise CalendarError("calendar unavailable")
        out = [b for b in self.busy if b.end > start and b.start < end]
        out.extend(
            BusyInterval(start=s, end=e, event_id=event_id)
            for event_id, (s, e) in self.events.items()
            if e > start and s < end
        )
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
        if self.fail_writes:
            raise CalendarError("calendar write failed")
        event_id = f"evt-{self._next_id}"
        self._next_id += 1
        self.events[event_id] = (start, end)
        return event_id

    async def update_event(self, event_id: str, *, start: datetime, end: datetime) -> None:
        if self.fail_writes:
            raise CalendarError("calendar write failed")
        self.events[event_id] = (start, end)

    async def delete_event(self, event_id: str) -> None:
        if self.fail_writes:
            raise CalendarError("calendar write failed")
        self.events.pop(event_id, None)
        self.deleted.append(event_id)


class FixedClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def storage(tmp_path) -> Storage:
    return Storage(tmp_path / "timeblock.sqlite3")


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(db_path=str(tmp_path / "timeblock.sqlite3"))
