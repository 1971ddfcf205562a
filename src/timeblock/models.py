from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any, Optional


MIN_TASK_MINUTES = 15
MAX_TASK_MINUTES = 480
MIN_PRIORITY = 1
MAX_PRIORITY = 5


class TaskStatus(StrEnum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class EnergyLevel(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class TriggerType(StrEnum):
    TASK_ADDED = "task_added"
    TASK_COMPLETED_EARLY = "task_completed_early"
    PRIORITY_CHANGED = "priority_changed"
    DEADLINE_CHANGED = "deadline_changed"
    TASK_DELETED = "task_deleted"


class ChangeAction(StrEnum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class NotificationType(StrEnum):
    SCHEDULE_UPDATED = "schedule_updated"
    TASK_BLOCKED = "task_blocked"
    CONFLICT_DETECTED = "conflict_detected"
    WORKING_HOURS_EXTENDED = "working_hours_extended"


class MemoryType(StrEnum):
    TASK_DURATION = "task_duration"
    ENERGY_LEVELS = "energy_levels"
    TASK_ENERGY = "task_energy"
    PREFERENCES = "preferences"
    WORKING_HOURS = "working_hours"


def clamp_priority(value: int) -> int:
    return max(MIN_PRIORITY, min(MAX_PRIORITY, int(value)))


def clamp_duration(minutes: int) -> int:
    return max(MIN_TASK_MINUTES, min(MAX_TASK_MINUTES, int(minutes)))


@dataclass(frozen=True)
class FreeSlot:
    """Half-open interval [start, end) in absolute (UTC) time."""

    start: datetime
    end: datetime

    @property
    def minutes(self) -> float:
        return (self.end - self.start).total_seconds() / 60

    def overlaps(self, other: FreeSlot | BusyInterval) -> bool:
        return self.start < other.end and other.start < self.end


@dataclass(frozen=True)
class BusyInterval:
    start: datetime
    end: datetime
    event_id: Optional[str] = None

    def padded(self, minutes: int) -> BusyInterval:
        pad = timedelta(minutes=max(0, minutes))
        return BusyInterval(start=self.start - pad, end=self.end + pad, event_id=self.event_id)


@dataclass(frozen=True)
class User:
    user_id: int
    timezone: str  # IANA TZ, e.g. "Europe/Berlin"
    google_token_json: Optional[str] = None


@dataclass(frozen=True)
class Task:
    id: int
    user_id: int
    title: str
    estimated_minutes: int
    priority: int
    status: TaskStatus = TaskStatus.SCHEDULED
    energy_requirement: EnergyLevel = EnergyLevel.MEDIUM
    category: str = "general"
    description: Optional[str] = None
    context: Optional[str] = None
    deadline: Optional[datetime] = None
    scheduled_start: Optional[datetime] = None
    scheduled_end: Optional[datetime] = None
    calendar_event_id: Optional[str] = None
    actual_minutes: Optional[int] = None
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        if (self.scheduled_start is None) != (self.scheduled_end is None):
            raise ValueError("scheduled_start and scheduled_end must be set together")
        if self.scheduled_start is not None and self.scheduled_start >= self.scheduled_end:
            raise ValueError("scheduled_start must be before scheduled_end")
        if not MIN_PRIORITY <= self.priority <= MAX_PRIORITY:
            raise ValueError(f"priority out of range: {self.priority}")

    @property
    def window(self) -> Optional[FreeSlot]:
        if self.scheduled_start is None or self.scheduled_end is None:
            return None
        return FreeSlot(start=self.scheduled_start, end=self.scheduled_end)

    @property
    def is_scheduled(self) -> bool:
        return self.scheduled_start is not None


@dataclass(frozen=True)
class ChangeEntry:
    task_id: int
    action: ChangeAction
    previous_start: Optional[datetime] = None
    previous_end: Optional[datetime] = None
    new_start: Optional[datetime] = None
    new_end: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        def iso(dt: Optional[datetime]) -> Optional[str]:
            return dt.isoformat() if dt else None

        return {
            "taskId": self.task_id,
            "action": str(self.action),
            "previousStart": iso(self.previous_start),
            "previousEnd": iso(self.previous_end),
            "newStart": iso(self.new_start),
            "newEnd": iso(self.new_end),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ChangeEntry:
        def dt(key: str) -> Optional[datetime]:
            value = data.get(key)
            return datetime.fromisoformat(value) if value else None

        return cls(
            task_id=int(data["taskId"]),
            action=ChangeAction(data["action"]),
            previous_start=dt("previousStart"),
            previous_end=dt("previousEnd"),
            new_start=dt("newStart"),
            new_end=dt("newEnd"),
        )


@dataclass(frozen=True)
class ScheduleChange:
    id: int
    user_id: int
    trigger_type: TriggerType
    trigger_task_id: Optional[int]
    changes: tuple[ChangeEntry, ...]
    reasoning: Optional[str]
    created_at: datetime


@dataclass(frozen=True)
class Notification:
    id: int
    user_id: int
    type: NotificationType
    title: str
    message: str
    related_task_id: Optional[int]
    is_read: bool
    created_at: datetime


@dataclass(frozen=True)
class MemoryEntry:
    memory_type: MemoryType
    key: str
    value: Any


@dataclass(frozen=True)
class WorkingHours:
    start: int = 9
    end: int = 18
    max_extension: float = 3
    days: Optional[tuple[int, ...]] = None  # 0=Sunday .. 6=Saturday


@dataclass(frozen=True)
class SchedulingProfile:
    """Everything the walker reads from a user's memory, resolved once per request."""

    time_zone: str = "UTC"
    buffer_minutes: int = 5
    working_hours: WorkingHours = field(default_factory=WorkingHours)
    energy_map: dict[str, EnergyLevel] = field(default_factory=dict)
    category_minutes: dict[str, int] = field(default_factory=dict)
    category_energy: dict[str, EnergyLevel] = field(default_factory=dict)
