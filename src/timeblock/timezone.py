from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

log = logging.getLogger("timeblock.timezone")

UTC = timezone.utc


@dataclass(frozen=True)
class ZonedParts:
    year: int
    month: int
    day: int
    hour: int = 0
    minute: int = 0
    second: int = 0


def resolve_zone(name: str | None) -> ZoneInfo:
    """Unknown or empty zone names fall back to UTC."""
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        log.warning("unknown time zone %r, falling back to UTC", name)
        return ZoneInfo("UTC")


def is_valid_zone(name: str) -> bool:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        return False
    return True


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(dt: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)


def zoned_parts(instant: datetime, zone: str) -> ZonedParts:
    local = as_utc(instant).astimezone(resolve_zone(zone))
    return ZonedParts(
        year=local.year,
        month=local.month,
        day=local.day,
        hour=local.hour,
        minute=local.minute,
        second=local.second,
    )


def utc_offset(instant: datetime, zone: str) -> timedelta:
    return as_utc(instant).astimezone(resolve_zone(zone)).utcoffset() or timedelta(0)


def zoned_to_utc(parts: ZonedParts, zone: str) -> datetime:
    """
    Wall-clock fields in `zone` -> absolute instant.

    Single pass: the offset is looked up at the naive UTC reading of the fields,
    so results can be off by the DST delta inside the transition hour.
    """
    naive = datetime(
        parts.year, parts.month, parts.day, parts.hour, parts.minute, parts.second, tzinfo=UTC
    )
    return naive - utc_offset(naive, zone)


def start_of_day(instant: datetime, zone: str) -> datetime:
    parts = zoned_parts(instant, zone)
    return zoned_to_utc(replace(parts, hour=0, minute=0, second=0), zone)


def end_of_day(instant: datetime, zone: str) -> datetime:
    parts = zoned_parts(instant, zone)
    return zoned_to_utc(replace(parts, hour=23, minute=59, second=59), zone)


def add_days(instant: datetime, zone: str, days: int) -> datetime:
    # anchored at local noon so DST shifts never push us onto a neighbouring date
    parts = zoned_parts(instant, zone)
    noon = zoned_to_utc(replace(parts, hour=12, minute=0, second=0), zone)
    return noon + timedelta(days=days)


def at_local_hour(instant: datetime, zone: str, hour: int) -> datetime:
    """The instant at `hour`:00 local time on the local date of `instant`."""
    if hour >= 24:
        return at_local_hour(instant, zone, 23) + timedelta(hours=hour - 23)
    parts = zoned_parts(instant, zone)
    return zoned_to_utc(replace(parts, hour=hour, minute=0, second=0), zone)


def date_key(instant: datetime, zone: str) -> str:
    p = zoned_parts(instant, zone)
    return f"{p.year:04d}-{p.month:02d}-{p.day:02d}"


def local_weekday(instant: datetime, zone: str) -> int:
    """0=Sunday .. 6=Saturday."""
    return as_utc(instant).astimezone(resolve_zone(zone)).isoweekday() % 7
