from __future__ import annotations

from datetime import datetime, timedelta
from typing import Collection, Iterable, Sequence

from .models import BusyInterval, FreeSlot, Task


def task_busy_intervals(tasks: Iterable[Task], buffer_minutes: int) -> list[BusyInterval]:
    """Scheduled tasks as busy time, padded by the buffer on both ends."""
    out: list[BusyInterval] = []
    for t in tasks:
        if t.scheduled_start is None or t.scheduled_end is None:
            continue
        base = BusyInterval(start=t.scheduled_start, end=t.scheduled_end, event_id=t.calendar_event_id)
        out.append(base.padded(buffer_minutes))
    return out


def build_busy_intervals(
    *,
    window_start: datetime,
    window_end: datetime,
    calendar_busy: Sequence[BusyInterval] = (),
    tasks: Sequence[Task] = (),
    buffer_minutes: int = 5,
    ignore_event_ids: Collection[str] = (),
) -> list[BusyInterval]:
    """
    One occupancy timeline for [window_start, window_end]:
    - calendar intervals, minus the ones whose event id is ignored
    - task intervals padded by `buffer_minutes`
    Sorted by start. Overlaps are left in place; the finder's cursor copes with them.
    """
    ignored = set(ignore_event_ids)
    intervals = [
        b for b in calendar_busy if not (b.event_id is not None and b.event_id in ignored)
    ]
    intervals.extend(task_busy_intervals(tasks, buffer_minutes))
    # intervals entirely outside the window cannot influence the result
    intervals = [b for b in intervals if b.end > window_start and b.start < window_end]
    return sorted(intervals, key=lambda b: b.start)


def find_free_slots(
    *,
    window_start: datetime,
    window_end: datetime,
    duration_minutes: int,
    busy: Sequence[BusyInterval],
) -> list[FreeSlot]:
    """
    Walk `busy` (sorted by start) with a single cursor and emit the earliest
    duration-sized slot of every gap that can hold one. Larger gaps are not split
    into further candidates.
    """
    need = timedelta(minutes=duration_minutes)
    slots: list[FreeSlot] = []
    cursor = window_start

    for interval in busy:
        if interval.end <= cursor:
            continue
        gap_end = min(interval.start, window_end)
        if gap_end - cursor >= need:
            slots.append(FreeSlot(start=cursor, end=cursor + need))
        cursor = max(cursor, interval.end)
        if cursor >= window_end:
            break

    if window_end - cursor >= need:
        slots.append(FreeSlot(start=cursor, end=cursor + need))
    return slots
