from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from .models import EnergyLevel
from .timezone import ZonedParts, zoned_parts, zoned_to_utc

MAX_TITLE_LENGTH = 100
DEFAULT_CATEGORY = "general"


@dataclass(frozen=True)
class ParsedTask:
    title: str
    description: Optional[str] = None
    deadline: Optional[datetime] = None
    explicit_minutes: Optional[int] = None
    category: str = DEFAULT_CATEGORY
    energy_requirement: EnergyLevel = EnergyLevel.MEDIUM


_RE_MINUTES = re.compile(r"(?i)\b(\d+)\s*(m|min|mins|minutes?)\b")
_RE_HOURS = re.compile(r"(?i)\b(\d+)\s*(h|hr|hrs|hours?)\b")
_RE_DUE = re.compile(r"(?i)(?:^|\s)@(\d{1,2}):(\d{2})\b")
_RE_CATEGORY = re.compile(r"(?:^|\s)#([\w-]+)")

_DEADLINE_WORDS = ("due", "by", "tomorrow", "today", "tonight", "eod", "eow", "eom", "next", "at", "on")


def split_task_input(text: str) -> list[str]:
    """
    One submission may carry several tasks:
    - several lines (each line may further split on ';')
    - otherwise ';'-separated parts
    - otherwise ','-separated parts, unless a later part reads like a deadline
      ("..., due friday") in which case it is one task.
    """
    trimmed = text.strip()
    if not trimmed:
        return []

    lines = [p.strip() for p in re.split(r"\n+", trimmed) if p.strip()]
    if len(lines) > 1:
        return [s for line in lines for s in re.split(r"\s*;\s*", line) if s]

    parts = [p.strip() for p in re.split(r"\s*;\s*", trimmed) if p.strip()]
    if len(parts) > 1:
        return parts

    parts = [p.strip() for p in re.split(r"\s*,\s*", trimmed) if p.strip()]
    if len(parts) > 1:
        looks_single = any(p.lower().startswith(_DEADLINE_WORDS) for p in parts[1:])
        if not looks_single:
            return parts

    return [trimmed]


def parse_task_line(line: str, *, now: datetime, time_zone: str) -> Optional[ParsedTask]:
    """
    Deterministic fallback for when no assistant is available. Accepts lines like:
    - "Call with the team @10:30 30m"
    - "Quarterly report @17:00 2h #client_work"
    - "Inbox 20min"
    `@HH:MM` is a deadline today in the user's zone, `#word` a category.
    """
    raw = line.strip()
    if not raw:
        return None

    deadline: Optional[datetime] = None
    due_match = _RE_DUE.search(raw)
    if due_match:
        hh = int(due_match.group(1))
        mm = int(due_match.group(2))
        if 0 <= hh <= 23 and 0 <= mm <= 59:
            today = zoned_parts(now, time_zone)
            deadline = zoned_to_utc(
                ZonedParts(today.year, today.month, today.day, hh, mm), time_zone
            )
        raw = _RE_DUE.sub(" ", raw).strip()

    category = DEFAULT_CATEGORY
    cat_match = _RE_CATEGORY.search(raw)
    if cat_match:
        category = cat_match.group(1).lower()
        raw = _RE_CATEGORY.sub(" ", raw).strip()

    minutes = 0
    for m in _RE_MINUTES.finditer(raw):
        minutes += int(m.group(1))
    for h in _RE_HOURS.finditer(raw):
        minutes += int(h.group(1)) * 60

    title = _RE_MINUTES.sub(" ", raw)
    title = _RE_HOURS.sub(" ", title)
    title = re.sub(r"\s+", " ", title).strip(" -\t")

    if not title:
        return None

    return ParsedTask(
        title=title[:MAX_TITLE_LENGTH],
        deadline=deadline,
        explicit_minutes=minutes or None,
        category=category,
    )
