from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Optional, Sequence

from .calendar import CalendarProvider
from .errors import CalendarError
from .models import (
    BusyInterval,
    ChangeAction,
    ChangeEntry,
    NotificationType,
    SchedulingProfile,
    ScheduleChange,
    Task,
    TaskStatus,
    TriggerType,
)
from .notifications import Notifier
from .planner import DEFAULT_MAX_DAYS_AHEAD, find_optimal_slot
from .storage import Storage
from .timezone import UTC, end_of_day, start_of_day

log = logging.getLogger("timeblock.rescheduler")

CASCADE_REASONING = "Heuristic reschedule based on availability and priorities"
_FAR_FUTURE = datetime.max.replace(tzinfo=UTC)


def cascade_key(task: Task) -> tuple:
    """Priority desc, then deadline asc (none last), then current start asc."""
    return (
        -task.priority,
        task.deadline or _FAR_FUTURE,
        task.scheduled_start or _FAR_FUTURE,
    )


def select_candidates(
    tasks: Sequence[Task],
    *,
    exclude_task_id: Optional[int],
    now: datetime,
    time_zone: str,
) -> list[Task]:
    """
    Still-scheduled tasks starting between now and the end of the user's local day,
    plus scheduled tasks that never got a window.
    """
    day_start = start_of_day(now, time_zone)
    day_end = end_of_day(now, time_zone)
    out = []
    for t in tasks:
        if t.status != TaskStatus.SCHEDULED or t.id == exclude_task_id:
            continue
        if t.scheduled_start is None:
            out.append(t)
            continue
        if t.scheduled_start >= now and day_start <= t.scheduled_start <= day_end:
            out.append(t)
    return sorted(out, key=cascade_key)


@dataclass(frozen=True)
class CascadeResult:
    planned: tuple[Task, ...]
    change: Optional[ScheduleChange] = None

    @property
    def changed(self) -> bool:
        return self.change is not None


class Rescheduler:
    """
    Re-places the rest of today's scheduled tasks after something freed or
    reshuffled time. Tasks are placed one at a time in priority order; each
    placement becomes busy time for the ones after it, so nothing placed in the
    same cascade can collide.
    """

    def __init__(
        self,
        storage: Storage,
        notifier: Notifier,
        *,
        max_days_ahead: int = DEFAULT_MAX_DAYS_AHEAD,
    ) -> None:
        self.storage = storage
        self.notifier = notifier
        self.max_days_ahead = max_days_ahead

    async def run(
        self,
        *,
        user_id: int,
        profile: SchedulingProfile,
        calendar: Optional[CalendarProvider],
        trigger: TriggerType,
        trigger_task_id: Optional[int],
        now: datetime,
    ) -> CascadeResult:
        active = self.storage.list_tasks(
            user_id, statuses=(TaskStatus.SCHEDULED, TaskStatus.IN_PROGRESS)
        )
        candidates = select_candidates(
            active, exclude_task_id=trigger_task_id, now=now, time_zone=profile.time_zone
        )
        if not candidates:
            return CascadeResult(planned=())

        candidate_ids = {t.id for t in candidates}
        # everything else keeps its place and blocks time
        frozen = [t for t in active if t.id not in candidate_ids]
        ignore_event_ids = {t.calendar_event_id for t in candidates if t.calendar_event_id}

        busy: list[BusyInterval] = []
        planned: list[Task] = []
        changes: list[ChangeEntry] = []

        for task in candidates:
            try:
                choice = await find_optimal_slot(
                    duration_minutes=task.estimated_minutes,
                    priority=task.priority,
                    energy_requirement=task.energy_requirement,
                    profile=profile,
                    existing_tasks=[*frozen, *planned],
                    calendar=calendar,
                    ignore_event_ids=ignore_event_ids,
                    busy_slots=busy,
                    max_days_ahead=self.max_days_ahead,
                    now=now,
                )
            except Exception:
                log.exception("rescheduling task %s failed, keeping its window", task.id)
                choice = None

            previous = task.window
            if choice is None:
                if previous is not None:
                    busy.append(BusyInterval(start=previous.start, end=previous.end))
                planned.append(task)
                continue

            busy.append(BusyInterval(start=choice.start, end=choice.end))
            if previous is not None and choice.start == previous.start and choice.end == previous.end:
                planned.append(task)
                continue

            moved = replace(task, scheduled_start=choice.start, scheduled_end=choice.end)
            if calendar is not None:
                moved = await self._sync_event(calendar, moved, profile.time_zone)
            self.storage.update_task(moved)
            changes.append(
                ChangeEntry(
                    task_id=task.id,
                    action=ChangeAction.UPDATED,
                    previous_start=previous.start if previous else None,
                    previous_end=previous.end if previous else None,
                    new_start=choice.start,
                    new_end=choice.end,
                )
            )
            planned.append(moved)

        if not changes:
            log.info("cascade for user %s (%s): nothing moved", user_id, trigger)
            return CascadeResult(planned=tuple(planned))

        change = self.storage.add_schedule_change(
            user_id=user_id,
            trigger_type=trigger,
            trigger_task_id=trigger_task_id,
            changes=changes,
            reasoning=CASCADE_REASONING,
        )
        self.notifier.notify(
            user_id,
            NotificationType.SCHEDULE_UPDATED,
            "Schedule Updated",
            "Your schedule has been updated based on your latest changes.",
        )
        log.info("cascade for user %s (%s): moved %d task(s)", user_id, trigger, len(changes))
        return CascadeResult(planned=tuple(planned), change=change)

    @staticmethod
    async def _sync_event(calendar: CalendarProvider, task: Task, time_zone: str) -> Task:
        """Move the task's event, or book one if it never had a slot."""
        try:
            if task.calendar_event_id:
                await calendar.update_event(
                    task.calendar_event_id, start=task.scheduled_start, end=task.scheduled_end
                )
                return task
            event_id = await calendar.create_event(
                summary=task.title,
                description=task.description,
                start=task.scheduled_start,
                end=task.scheduled_end,
                time_zone=time_zone,
            )
            return replace(task, calendar_event_id=event_id or None)
        except CalendarError:
            log.exception("failed to sync calendar event for task %s", task.id)
            return task
