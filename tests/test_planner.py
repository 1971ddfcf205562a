from __future__ import annotations

import asyncio
from datetime import datetime

import pytest
from conftest import FakeCalendar, at

from timeblock.models import BusyInterval, EnergyLevel, SchedulingProfile, Task, WorkingHours
from timeblock.planner import find_optimal_slot, working_windows


def _profile(**overrides) -> SchedulingProfile:
    kwargs = dict(
        time_zone="UTC",
        buffer_minutes=5,
        working_hours=WorkingHours(start=9, end=18, max_extension=3),
        energy_map={"09:00-12:00": EnergyLevel.HIGH},
    )
    kwargs.update(overrides)
    return SchedulingProfile(**kwargs)


def _find(**kwargs):
    params = dict(
        duration_minutes=30,
        priority=3,
        energy_requirement=EnergyLevel.HIGH,
        profile=_profile(),
        now=at(7),
    )
    params.update(kwargs)
    return asyncio.run(find_optimal_slot(**params))


class AlwaysBusyCalendar(FakeCalendar):
    async def list_busy_intervals(self, start: datetime, end: datetime) -> list[BusyInterval]:
        self.reads.append((start, end))
        return [BusyInterval(start=start, end=end)]


def test_prefers_earliest_energy_matching_slot() -> None:
    existing = Task(
        id=1, user_id=1, title="standup", estimated_minutes=60, priority=3,
        scheduled_start=at(10), scheduled_end=at(11),
    )
    choice = _find(existing_tasks=[existing])
    assert choice is not None
    assert (choice.start, choice.end) == (at(9), at(9, 30))
    assert choice.day_offset == 0
    assert not choice.extended


def test_falls_back_to_extension_window() -> None:
    cal = FakeCalendar(busy=(BusyInterval(start=at(9), end=at(19)),))
    choice = _find(duration_minutes=60, calendar=cal, max_days_ahead=0)
    assert choice is not None
    assert (choice.start, choice.end) == (at(19), at(20))
    assert choice.extended


def test_extension_is_capped() -> None:
    profile = _profile(working_hours=WorkingHours(start=9, end=18, max_extension=10))
    busy = [BusyInterval(start=at(9), end=at(22))]
    assert _find(profile=profile, busy_slots=busy, max_days_ahead=0) is None


def test_no_slot_is_a_result_not_an_error() -> None:
    profile = _profile(working_hours=WorkingHours(start=9, end=18, max_extension=0))
    busy = [BusyInterval(start=at(9), end=at(18))]
    assert _find(profile=profile, busy_slots=busy, max_days_ahead=0) is None


def test_full_day_moves_to_next_day() -> None:
    profile = _profile(working_hours=WorkingHours(start=9, end=18, max_extension=0))
    busy = [BusyInterval(start=at(9), end=at(18))]
    choice = _find(profile=profile, busy_slots=busy)
    assert choice is not None
    assert choice.start == at(9, day=13)
    assert choice.day_offset == 1


def test_never_examines_more_than_horizon_days() -> None:
    cal = AlwaysBusyCalendar()
    assert _find(calendar=cal, max_days_ahead=3) is None
    assert len({start.date() for start, _ in cal.reads}) == 4
    # primary and extension window per day
    assert len(cal.reads) == 8


def test_today_starts_after_now_plus_buffer() -> None:
    choice = _find(now=at(10, 17))
    assert choice is not None
    assert choice.start == at(10, 22)


def test_after_hours_today_is_skipped() -> None:
    choice = _find(now=at(19))
    assert choice is not None
    assert choice.start == at(9, day=13)


def test_non_working_weekdays_are_skipped() -> None:
    profile = _profile(working_hours=WorkingHours(start=9, end=18, days=(1, 2, 3, 4, 5)))
    # 2026-01-11 is a Sunday
    choice = _find(profile=profile, now=at(7, day=11))
    assert choice is not None
    assert choice.start == at(9, day=12)
    assert choice.day_offset == 1


def test_calendar_read_failure_uses_task_busy_time_only() -> None:
    choice = _find(calendar=FakeCalendar(fail_reads=True))
    assert choice is not None
    assert choice.start == at(9)


def test_ignored_events_do_not_block() -> None:
    cal = FakeCalendar(busy=(BusyInterval(start=at(9), end=at(18), event_id="self"),))
    choice = _find(calendar=cal, ignore_event_ids={"self"})
    assert choice is not None
    assert choice.start == at(9)


def test_same_inputs_same_answer() -> None:
    existing = Task(
        id=1, user_id=1, title="review", estimated_minutes=60, priority=3,
        scheduled_start=at(9), scheduled_end=at(10),
    )
    first = _find(existing_tasks=[existing], priority=5)
    second = _find(existing_tasks=[existing], priority=5)
    assert first == second


def test_rejects_non_positive_duration() -> None:
    with pytest.raises(ValueError):
        _find(duration_minutes=0)


def test_working_windows_use_local_hours() -> None:
    windows = working_windows(
        profile=_profile(time_zone="Europe/Berlin"), now=at(6), max_days_ahead=1
    )
    assert [(w.start, w.end) for w in windows] == [
        (at(8), at(17)),
        (at(8, day=13), at(17, day=13)),
    ]
