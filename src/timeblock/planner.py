from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Collection, Optional, Sequence

from .calendar import CalendarProvider
from .errors import CalendarError
from .models import BusyInterval, EnergyLevel, FreeSlot, SchedulingProfile, Task
from .scoring import rank_slots
from .slots import build_busy_intervals, find_free_slots
from .timezone import add_days, at_local_hour, local_weekday, utc_now

log = logging.getLogger("timeblock.planner")

DEFAULT_MAX_DAYS_AHEAD = 7
# upper bound on how far past working hours a day may stretch
MAX_EXTENSION_HOURS_CAP = 4.0


@dataclass(frozen=True)
class SlotChoice:
    slot: FreeSlot
    score: float
    day_offset: int
    extended: bool = False

    @property
    def start(self) -> datetime:
        return self.slot.start

    @property
    def end(self) -> datetime:
        return self.slot.end


@dataclass(frozen=True)
class DayWindow:
    day_offset: int
    start: datetime
    end: datetime


def working_windows(
    *, profile: SchedulingProfile, now: datetime, max_days_ahead: int
) -> list[DayWindow]:
    """
    Working-hours windows for day offsets 0..max_days_ahead, as absolute instants.
    Today's window starts no earlier than now + buffer. Empty windows and
    non-working weekdays are dropped.
    """
    tz = profile.time_zone
    hours = profile.working_hours
    buffer = timedelta(minutes=profile.buffer_minutes)
    windows: list[DayWindow] = []
    for offset in range(0, max_days_ahead + 1):
        anchor = add_days(now, tz, offset)
        if hours.days is not None and local_weekday(anchor, tz) not in hours.days:
            continue
        start = at_local_hour(anchor, tz, hours.start)
        end = at_local_hour(anchor, tz, hours.end)
        if offset == 0 and now > start:
            start = now + buffer
        if start >= end:
            continue
        windows.append(DayWindow(day_offset=offset, start=start, end=end))
    return windows


class _SlotSearch:
    """Free-slot lookups for one walker run, sharing its busy inputs."""

    def __init__(
        self,
        *,
        duration_minutes: int,
        profile: SchedulingProfile,
        existing_tasks: Sequence[Task],
        calendar: Optional[CalendarProvider],
        ignore_event_ids: Collection[str],
        busy_slots: Sequence[BusyInterval],
    ) -> None:
        self.duration_minutes = duration_minutes
        self.profile = profile
        self.existing_tasks = existing_tasks
        self.calendar = calendar
        self.ignore_event_ids = ignore_event_ids
        self.busy_slots = busy_slots

    async def _calendar_busy(self, start: datetime, end: datetime) -> list[BusyInterval]:
        if self.calendar is None:
            return []
        try:
            return await self.calendar.list_busy_intervals(start, end)
        except CalendarError as exc:
            log.warning("calendar read failed, using task busy time only: %s", exc)
            return []

    async def free_slots(self, start: datetime, end: datetime) -> list[FreeSlot]:
        calendar_busy = await self._calendar_busy(start, end)
        busy = build_busy_intervals(
            window_start=start,
            window_end=end,
            calendar_busy=[*calendar_busy, *self.busy_slots],
            tasks=self.existing_tasks,
            buffer_minutes=self.profile.buffer_minutes,
            ignore_event_ids=self.ignore_event_ids,
        )
        return find_free_slots(
            window_start=start,
            window_end=end,
            duration_minutes=self.duration_minutes,
            busy=busy,
        )


async def find_optimal_slot(
    *,
    duration_minutes: int,
    priority: int,
    energy_requirement: EnergyLevel,
    profile: SchedulingProfile,
    existing_tasks: Sequence[Task] = (),
    calendar: Optional[CalendarProvider] = None,
    ignore_event_ids: Collection[str] = (),
    busy_slots: Sequence[BusyInterval] = (),
    max_days_ahead: int = DEFAULT_MAX_DAYS_AHEAD,
    now: Optional[datetime] = None,
) -> Optional[SlotChoice]:
    """
    Day-window walker.

    Looks at today's remaining working hours first, then each following day up to
    `max_days_ahead`. A day whose working hours hold no slot gets one more try in an
    extension window right after its end. The first day with any candidate wins: its
    best-scored slot is returned and later days are not looked at. None means there is
    no room in the horizon.
    """
    if duration_minutes <= 0:
        raise ValueError("duration_minutes must be positive")
    now = now or utc_now()
    search = _SlotSearch(
        duration_minutes=duration_minutes,
        profile=profile,
        existing_tasks=existing_tasks,
        calendar=calendar,
        ignore_event_ids=ignore_event_ids,
        busy_slots=busy_slots,
    )
    extension = timedelta(
        hours=max(0.0, min(float(profile.working_hours.max_extension), MAX_EXTENSION_HOURS_CAP))
    )

    for window in working_windows(profile=profile, now=now, max_days_ahead=max_days_ahead):
        candidates = await search.free_slots(window.start, window.end)
        extended = False
        if not candidates and extension > timedelta(0):
            candidates = await search.free_slots(window.end, window.end + extension)
            extended = bool(candidates)
        if not candidates:
            continue

        ranked = rank_slots(
            candidates,
            energy_map=profile.energy_map,
            time_zone=profile.time_zone,
            priority=priority,
            energy_requirement=energy_requirement,
            placed=existing_tasks,
            buffer_minutes=profile.buffer_minutes,
            now=now,
        )
        best = ranked[0]
        return SlotChoice(
            slot=best.slot, score=best.score, day_offset=window.day_offset, extended=extended
        )

    return None
