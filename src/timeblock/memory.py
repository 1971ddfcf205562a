from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Iterable, Mapping, Optional

from .models import EnergyLevel, MemoryEntry, MemoryType, SchedulingProfile, WorkingHours

log = logging.getLogger("timeblock.memory")

DEFAULT_TIMEZONE = "UTC"
DEFAULT_BUFFER_MINUTES = 5


def _as_energy(value: Any) -> Optional[EnergyLevel]:
    level = value.get("level") if isinstance(value, Mapping) else value
    try:
        return EnergyLevel(str(level).lower())
    except ValueError:
        return None


def _working_hours(value: Any) -> WorkingHours:
    if not isinstance(value, Mapping):
        return WorkingHours()
    default = WorkingHours()
    extension = value.get("maxExtension", value.get("max_extension_hours", default.max_extension))
    days = value.get("days")
    try:
        return WorkingHours(
            start=max(0, min(24, int(value.get("start", default.start)))),
            end=max(0, min(24, int(value.get("end", default.end)))),
            max_extension=max(0.0, float(extension)),
            days=tuple(int(d) for d in days) if days else None,
        )
    except (TypeError, ValueError):
        log.warning("ignoring malformed working hours %r", value)
        return default


def _preference(prefs: Mapping[str, Any], key: str, nested: str) -> Any:
    """
    Preferences come in three shapes: a bare value under `key`, an object
    under `key` holding `nested`, or a `default` object holding `key`.
    """
    direct = prefs.get(key)
    if isinstance(direct, Mapping):
        direct = direct.get(nested)
    if direct is not None:
        return direct
    default = prefs.get("default")
    if isinstance(default, Mapping):
        return default.get(key)
    return None


def build_profile(
    entries: Iterable[MemoryEntry],
    *,
    time_zone: Optional[str] = None,
    default_buffer: int = DEFAULT_BUFFER_MINUTES,
) -> SchedulingProfile:
    """Fold a user's memory rows into the read-only view the scheduler works from."""
    working_hours = WorkingHours()
    energy_map: dict[str, EnergyLevel] = {}
    prefs: dict[str, Any] = {}
    category_minutes: dict[str, int] = {}
    category_energy: dict[str, EnergyLevel] = {}

    for entry in entries:
        if entry.memory_type == MemoryType.WORKING_HOURS:
            working_hours = _working_hours(entry.value)
        elif entry.memory_type == MemoryType.ENERGY_LEVELS:
            level = _as_energy(entry.value)
            if level is not None:
                energy_map[entry.key] = level
        elif entry.memory_type == MemoryType.PREFERENCES:
            prefs[entry.key] = entry.value
        elif entry.memory_type == MemoryType.TASK_DURATION:
            if isinstance(entry.value, Mapping) and entry.value.get("average_minutes"):
                category_minutes[entry.key] = int(entry.value["average_minutes"])
        elif entry.memory_type == MemoryType.TASK_ENERGY:
            raw = entry.value.get("energy_requirement") if isinstance(entry.value, Mapping) else None
            level = _as_energy(raw)
            if level is not None:
                category_energy[entry.key] = level

    zone = time_zone or _preference(prefs, "timezone", "timezone") or DEFAULT_TIMEZONE
    buffer = _preference(prefs, "buffer_between_tasks_minutes", "minutes")
    if not isinstance(buffer, (int, float)) or isinstance(buffer, bool):
        buffer = default_buffer

    return SchedulingProfile(
        time_zone=str(zone),
        buffer_minutes=max(0, int(buffer)),
        working_hours=working_hours,
        energy_map=energy_map,
        category_minutes=category_minutes,
        category_energy=category_energy,
    )


def remembered_timezone(entries: Iterable[MemoryEntry]) -> Optional[str]:
    prefs = {e.key: e.value for e in entries if e.memory_type == MemoryType.PREFERENCES}
    zone = _preference(prefs, "timezone", "timezone")
    return str(zone) if zone else None


def next_duration_average(
    previous: Optional[Mapping[str, Any]], actual_minutes: int, now: datetime
) -> dict[str, Any]:
    """Running average of actual durations for one category."""
    prev_avg = (previous or {}).get("average_minutes", actual_minutes)
    prev_count = (previous or {}).get("sample_count", 0)
    count = prev_count + 1
    return {
        "average_minutes": round((prev_avg * prev_count + actual_minutes) / count),
        "sample_count": count,
        "last_updated": now.isoformat(),
    }


def category_energy_value(category: str, energy: EnergyLevel) -> dict[str, Any]:
    return {"energy_requirement": str(energy), "task_category": category}
