from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Mapping, Sequence

from .models import EnergyLevel, FreeSlot, Task
from .timezone import zoned_parts

# Empirical weights.
ENERGY_MATCH_POINTS = 10.0
PARTIAL_ENERGY_POINTS = 5.0
MORNING_URGENT_POINTS = 5.0
ADJACENCY_POINTS = 3.0
RECENCY_HORIZON_HOURS = 10.0

URGENT_PRIORITY = 4
MORNING_CUTOFF_HOUR = 12


@dataclass(frozen=True)
class ScoredSlot:
    slot: FreeSlot
    score: float


def _range_hours(key: str) -> tuple[int, int]:
    start_str, end_str = key.split("-", 1)
    return int(start_str.split(":")[0]), int(end_str.split(":")[0])


def energy_for_hour(hour: int, energy_map: Mapping[str, EnergyLevel]) -> EnergyLevel:
    """First "HH:MM-HH:MM" range containing `hour` wins; unmapped hours are medium."""
    for key, level in energy_map.items():
        try:
            start, end = _range_hours(key)
        except ValueError:
            continue
        if start <= hour < end:
            return EnergyLevel(level)
    return EnergyLevel.MEDIUM


def is_adjacent(slot: FreeSlot, placed: Sequence[Task], buffer_minutes: int) -> bool:
    """Slot starts within the buffer after a placed task, or ends within it before one."""
    pad = timedelta(minutes=max(0, buffer_minutes))
    for t in placed:
        if t.scheduled_start is None or t.scheduled_end is None:
            continue
        if abs(slot.start - t.scheduled_end) < pad or abs(slot.end - t.scheduled_start) < pad:
            return True
    return False


def score_slot(
    slot: FreeSlot,
    *,
    energy_map: Mapping[str, EnergyLevel],
    time_zone: str,
    priority: int,
    energy_requirement: EnergyLevel,
    placed: Sequence[Task],
    buffer_minutes: int,
    now: datetime,
) -> float:
    score = 0.0
    hour = zoned_parts(slot.start, time_zone).hour

    slot_energy = energy_for_hour(hour, energy_map)
    if slot_energy == energy_requirement:
        score += ENERGY_MATCH_POINTS
    elif slot_energy == EnergyLevel.HIGH and energy_requirement == EnergyLevel.MEDIUM:
        score += PARTIAL_ENERGY_POINTS

    if priority >= URGENT_PRIORITY and hour < MORNING_CUTOFF_HOUR:
        score += MORNING_URGENT_POINTS

    if is_adjacent(slot, placed, buffer_minutes):
        score += ADJACENCY_POINTS

    if priority >= URGENT_PRIORITY:
        hours_from_now = (slot.start - now).total_seconds() / 3600
        score += max(0.0, RECENCY_HORIZON_HOURS - hours_from_now)

    return score


def rank_slots(slots: Sequence[FreeSlot], **kwargs) -> list[ScoredSlot]:
    """Highest score first; equal scores keep their input order."""
    scored = [ScoredSlot(slot=s, score=score_slot(s, **kwargs)) for s in slots]
    return sorted(scored, key=lambda s: s.score, reverse=True)
