from __future__ import annotations

import asyncio
import logging
import re
from collections import defaultdict
from dataclasses import replace
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional, Sequence

from .assistant import HeuristicAssistant, TaskAssistant
from .calendar import CalendarProvider, google_calendar_for_user
from .config import Settings
from .errors import CalendarError, InvalidTaskInput, NotificationNotFound, TaskNotFound
from .memory import (
    build_profile,
    category_energy_value,
    next_duration_average,
    remembered_timezone,
)
from .models import (
    ChangeAction,
    ChangeEntry,
    EnergyLevel,
    MemoryType,
    Notification,
    NotificationType,
    SchedulingProfile,
    Task,
    TaskStatus,
    TriggerType,
    User,
    clamp_duration,
    clamp_priority,
)
from .notifications import Notifier
from .parsing import split_task_input
from .planner import SlotChoice, find_optimal_slot
from .prioritizer import HeuristicPrioritizer, Prioritizer, PriorityRequest, calculate_priority
from .rescheduler import CascadeResult, Rescheduler
from .storage import Storage
from .timezone import (
    ZonedParts,
    add_days,
    end_of_day,
    is_valid_zone,
    resolve_zone,
    start_of_day,
    utc_now,
    zoned_to_utc,
)

log = logging.getLogger("timeblock")

# deadlines further in the past than this are treated as a parsing mistake and dropped
STALE_DEADLINE_GRACE = timedelta(seconds=60)
HISTORY_TITLES = 20

_RE_RANGE_KEY = re.compile(r"^([01]\d|2[0-4]):[0-5]\d-([01]\d|2[0-4]):[0-5]\d$")

_UNSET: Any = object()


class TaskService:
    """
    Entry point for request handlers. Every operation on one user's schedule runs
    under that user's lock, so two requests can never plan into the same gap.
    """

    def __init__(
        self,
        storage: Storage,
        settings: Settings,
        *,
        assistant: Optional[TaskAssistant] = None,
        prioritizer: Optional[Prioritizer] = None,
        calendar_factory: Callable[[User], Optional[CalendarProvider]] = google_calendar_for_user,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.storage = storage
        self.settings = settings
        self.assistant = assistant or HeuristicAssistant()
        self.prioritizer = prioritizer or HeuristicPrioritizer()
        self.calendar_factory = calendar_factory
        self.clock = clock
        self.notifier = Notifier(storage)
        self.rescheduler = Rescheduler(
            storage, self.notifier, max_days_ahead=settings.max_days_ahead
        )
        self._locks: defaultdict[int, asyncio.Lock] = defaultdict(asyncio.Lock)

    # users & memory

    def user_or_default(self, user_id: int) -> User:
        u = self.storage.get_user(user_id)
        if u:
            return u
        u = User(user_id=user_id, timezone=self.settings.default_timezone)
        self.storage.upsert_user(u)
        return u

    def profile_for(self, user: User, *, time_zone: Optional[str] = None) -> SchedulingProfile:
        memory = self.storage.list_memory(user.user_id)
        zone = time_zone or remembered_timezone(memory) or user.timezone
        return build_profile(memory, time_zone=zone, default_buffer=self.settings.buffer_minutes)

    def set_timezone(self, user_id: int, zone: str) -> None:
        if not is_valid_zone(zone):
            raise InvalidTaskInput(f"unknown time zone: {zone}")
        u = self.user_or_default(user_id)
        self.storage.upsert_user(replace(u, timezone=zone))
        self.storage.upsert_memory(user_id, MemoryType.PREFERENCES, "timezone", zone)

    def set_working_hours(
        self, user_id: int, start: int, end: int, max_extension: float = 3
    ) -> None:
        if not (0 <= start < end <= 24):
            raise InvalidTaskInput("working hours must satisfy 0 <= start < end <= 24")
        if max_extension < 0:
            raise InvalidTaskInput("max extension cannot be negative")
        self.user_or_default(user_id)
        self.storage.upsert_memory(
            user_id,
            MemoryType.WORKING_HOURS,
            "default",
            {"start": start, "end": end, "maxExtension": max_extension},
        )

    def set_energy_level(self, user_id: int, hour_range: str, level: str) -> None:
        if not _RE_RANGE_KEY.match(hour_range):
            raise InvalidTaskInput("hour range must look like 09:00-12:00")
        try:
            energy = EnergyLevel(level.lower())
        except ValueError as exc:
            raise InvalidTaskInput(f"unknown energy level: {level}") from exc
        self.user_or_default(user_id)
        self.storage.upsert_memory(
            user_id,
            MemoryType.ENERGY_LEVELS,
            hour_range,
            {"level": str(energy), "suitable_for": []},
        )

    def set_buffer(self, user_id: int, minutes: int) -> None:
        if minutes < 0:
            raise InvalidTaskInput("buffer cannot be negative")
        self.user_or_default(user_id)
        self.storage.upsert_memory(
            user_id, MemoryType.PREFERENCES, "buffer_between_tasks_minutes", minutes
        )

    # reads

    def get_task(self, user_id: int, task_id: int) -> Task:
        task = self.storage.get_task(user_id, task_id)
        if task is None:
            raise TaskNotFound(f"task {task_id} not found")
        return task

    def list_tasks(
        self,
        user_id: int,
        *,
        day: Optional[date] = None,
        status: Optional[TaskStatus] = None,
    ) -> list[Task]:
        start = end = None
        if day is not None:
            zone = self.profile_for(self.user_or_default(user_id)).time_zone
            start = zoned_to_utc(ZonedParts(day.year, day.month, day.day, 0, 0, 0), zone)
            end = zoned_to_utc(ZonedParts(day.year, day.month, day.day, 23, 59, 59), zone)
        statuses = (status,) if status else ()
        return self.storage.list_tasks(user_id, statuses=statuses, start=start, end=end)

    def list_notifications(self, user_id: int, *, unread_only: bool = False) -> list[Notification]:
        return self.storage.list_notifications(user_id, unread_only=unread_only)

    def mark_notification_read(self, user_id: int, notification_id: Optional[int] = None) -> None:
        if notification_id is None:
            self.storage.mark_all_notifications_read(user_id)
        elif not self.storage.mark_notification_read(user_id, notification_id):
            raise NotificationNotFound(f"notification {notification_id} not found")

    # intake

    async def create_tasks(
        self,
        user_id: int,
        text: str,
        *,
        deadline: Optional[datetime] = None,
        context: Optional[str] = None,
        time_zone: Optional[str] = None,
    ) -> list[Task]:
        """
        Turn one free-text submission into scheduled tasks. Tasks are placed one
        after another; each sees the slots taken by the ones before it.
        """
        if not isinstance(text, str) or not text.strip():
            raise InvalidTaskInput("task input is required")
        if time_zone and not is_valid_zone(time_zone):
            raise InvalidTaskInput(f"unknown time zone: {time_zone}")
        inputs = split_task_input(text)

        async with self._locks[user_id]:
            now = self.clock()
            user = self.user_or_default(user_id)
            memory = self.storage.list_memory(user_id)
            if time_zone and time_zone != remembered_timezone(memory):
                self.set_timezone(user_id, time_zone)
                user = self.user_or_default(user_id)
            profile = self.profile_for(user, time_zone=time_zone)
            zone = profile.time_zone
            calendar = self.calendar_factory(user)

            horizon_end = end_of_day(add_days(now, zone, self.settings.max_days_ahead), zone)
            existing = self.storage.list_tasks(
                user_id,
                statuses=(TaskStatus.SCHEDULED, TaskStatus.IN_PROGRESS),
                start=start_of_day(now, zone),
                end=horizon_end,
            )
            history = list(dict.fromkeys(t.title for t in existing))[:HISTORY_TITLES]

            planned: list[Task] = []
            entries: list[ChangeEntry] = []
            for raw in inputs:
                task = await self._create_one(
                    user_id=user_id,
                    raw=raw,
                    deadline=deadline,
                    context=context,
                    profile=profile,
                    calendar=calendar,
                    existing=existing,
                    planned=planned,
                    history=history,
                    now=now,
                )
                planned.append(task)
                entries.append(
                    ChangeEntry(
                        task_id=task.id,
                        action=ChangeAction.CREATED,
                        new_start=task.scheduled_start,
                        new_end=task.scheduled_end,
                    )
                )

            self.storage.add_schedule_change(
                user_id=user_id,
                trigger_type=TriggerType.TASK_ADDED,
                trigger_task_id=planned[0].id if planned else None,
                changes=entries,
                reasoning=(
                    "Batch scheduling for new tasks"
                    if len(planned) > 1
                    else "Initial scheduling for new task"
                ),
            )
            return planned

    async def _create_one(
        self,
        *,
        user_id: int,
        raw: str,
        deadline: Optional[datetime],
        context: Optional[str],
        profile: SchedulingProfile,
        calendar: Optional[CalendarProvider],
        existing: Sequence[Task],
        planned: Sequence[Task],
        history: Sequence[str],
        now: datetime,
    ) -> Task:
        zone = profile.time_zone
        parsed = await self.assistant.parse_task(raw, history=history, now=now, time_zone=zone)

        if parsed.explicit_minutes is not None:
            minutes = parsed.explicit_minutes
        else:
            minutes = await self.assistant.estimate_minutes(
                title=parsed.title,
                category=parsed.category,
                average_minutes=profile.category_minutes.get(parsed.category),
            )
        if minutes <= 0:
            raise InvalidTaskInput(f"non-positive duration for {parsed.title!r}")
        minutes = clamp_duration(minutes)

        task_deadline = deadline or parsed.deadline
        if task_deadline is not None and task_deadline < now - STALE_DEADLINE_GRACE:
            task_deadline = None

        baseline = calculate_priority(
            deadline=task_deadline, category=parsed.category, existing_tasks=existing, now=now
        )
        priority = await self.prioritizer.refine(
            request=PriorityRequest(
                title=parsed.title,
                description=parsed.description,
                category=parsed.category,
                deadline=task_deadline,
            ),
            baseline=baseline,
            other_tasks=[*existing, *planned],
        )

        choice = await find_optimal_slot(
            duration_minutes=minutes,
            priority=priority,
            energy_requirement=parsed.energy_requirement,
            profile=profile,
            existing_tasks=[*existing, *planned],
            calendar=calendar,
            max_days_ahead=self.settings.max_days_ahead,
            now=now,
        )

        description = context or parsed.description
        event_id: Optional[str] = None
        if choice is not None:
            if self.settings.business_context:
                description = await self.assistant.describe_task(
                    title=parsed.title,
                    parsed_description=parsed.description,
                    user_context=context,
                    business_context=self.settings.business_context,
                ) or description
            if calendar is not None:
                try:
                    event_id = await calendar.create_event(
                        summary=parsed.title,
                        description=description,
                        start=choice.start,
                        end=choice.end,
                        time_zone=zone,
                    ) or None
                except CalendarError:
                    log.exception("failed to create calendar event for %r", parsed.title)

        task = self.storage.add_task(
            Task(
                id=0,
                user_id=user_id,
                title=parsed.title,
                description=description,
                estimated_minutes=minutes,
                priority=clamp_priority(priority),
                deadline=task_deadline,
                scheduled_start=choice.start if choice else None,
                scheduled_end=choice.end if choice else None,
                status=TaskStatus.SCHEDULED,
                calendar_event_id=event_id,
                category=parsed.category,
                energy_requirement=parsed.energy_requirement,
                context=context,
                created_at=now,
            )
        )
        self._notify_placement(task, choice, zone)
        return task

    def _notify_placement(self, task: Task, choice: Optional[SlotChoice], zone: str) -> None:
        if choice is None:
            self.notifier.notify(
                task.user_id,
                NotificationType.CONFLICT_DETECTED,
                "Task Scheduled",
                f'"{task.title}" added but no time slot available',
                task.id,
            )
            return
        when = choice.start.astimezone(resolve_zone(zone)).strftime("%a %H:%M")
        self.notifier.notify(
            task.user_id,
            NotificationType.TASK_BLOCKED,
            "Task Scheduled",
            f'"{task.title}" scheduled for {when}',
            task.id,
        )
        if choice.extended:
            self.notifier.notify(
                task.user_id,
                NotificationType.WORKING_HOURS_EXTENDED,
                "Working Hours Extended",
                f'"{task.title}" only fit after your working hours ({when})',
                task.id,
            )

    # mutation

    async def update_task(
        self,
        user_id: int,
        task_id: int,
        *,
        status: Optional[str] = None,
        priority: Optional[int] = None,
        deadline: Any = _UNSET,
        scheduled_start: Optional[datetime] = None,
        scheduled_end: Optional[datetime] = None,
    ) -> Task:
        """
        Apply one edit. Completing a task early, or changing a priority or deadline,
        re-plans the rest of today.
        """
        new_status: Optional[TaskStatus] = None
        if status is not None:
            try:
                new_status = TaskStatus(status)
            except ValueError as exc:
                raise InvalidTaskInput(f"unknown status: {status}") from exc
        if (scheduled_start is None) != (scheduled_end is None):
            raise InvalidTaskInput("scheduled_start and scheduled_end go together")
        if scheduled_start is not None and scheduled_start >= scheduled_end:
            raise InvalidTaskInput("scheduled_start must be before scheduled_end")

        async with self._locks[user_id]:
            existing = self.get_task(user_id, task_id)
            now = self.clock()
            user = self.user_or_default(user_id)
            calendar = self.calendar_factory(user)
            updated = existing

            if priority is not None:
                updated = replace(updated, priority=clamp_priority(priority))
            if deadline is not _UNSET:
                updated = replace(updated, deadline=deadline)
            if scheduled_start is not None:
                updated = replace(updated, scheduled_start=scheduled_start, scheduled_end=scheduled_end)
                if calendar is not None and existing.calendar_event_id:
                    try:
                        await calendar.update_event(
                            existing.calendar_event_id, start=scheduled_start, end=scheduled_end
                        )
                    except CalendarError:
                        log.exception("failed to update calendar event for task %s", task_id)

            if new_status is not None:
                updated = replace(updated, status=new_status)
                if new_status == TaskStatus.COMPLETED:
                    actual = None
                    if existing.scheduled_start is not None:
                        actual = max(0, round((now - existing.scheduled_start).total_seconds() / 60))
                    updated = replace(updated, completed_at=now, actual_minutes=actual)
                if new_status in (TaskStatus.COMPLETED, TaskStatus.CANCELLED):
                    if calendar is not None and existing.calendar_event_id:
                        try:
                            await calendar.delete_event(existing.calendar_event_id)
                            updated = replace(updated, calendar_event_id=None)
                        except CalendarError:
                            log.exception("failed to delete calendar event for task %s", task_id)

            self.storage.update_task(updated)

            if new_status == TaskStatus.COMPLETED:
                await self._after_completion(user, updated, calendar, now)
            if priority is not None or deadline is not _UNSET:
                trigger = (
                    TriggerType.PRIORITY_CHANGED if priority is not None else TriggerType.DEADLINE_CHANGED
                )
                await self._cascade(user, calendar, trigger, task_id, now)

            return self.get_task(user_id, task_id)

    async def _after_completion(
        self, user: User, task: Task, calendar: Optional[CalendarProvider], now: datetime
    ) -> None:
        actual = task.actual_minutes
        if actual:
            previous = self.storage.get_memory(user.user_id, MemoryType.TASK_DURATION, task.category)
            self.storage.upsert_memory(
                user.user_id,
                MemoryType.TASK_DURATION,
                task.category,
                next_duration_average(previous, actual, now),
            )
        self.storage.upsert_memory(
            user.user_id,
            MemoryType.TASK_ENERGY,
            task.category,
            category_energy_value(task.category, task.energy_requirement),
        )

        if actual is None:
            return
        # finishing before the scheduled start frees the whole estimate
        time_saved = task.estimated_minutes - actual
        if time_saved >= self.settings.min_time_saved_minutes:
            log.info("task %s finished %d min early, re-planning", task.id, time_saved)
            await self._cascade(user, calendar, TriggerType.TASK_COMPLETED_EARLY, task.id, now)

    async def _cascade(
        self,
        user: User,
        calendar: Optional[CalendarProvider],
        trigger: TriggerType,
        trigger_task_id: int,
        now: datetime,
    ) -> CascadeResult:
        return await self.rescheduler.run(
            user_id=user.user_id,
            profile=self.profile_for(user),
            calendar=calendar,
            trigger=trigger,
            trigger_task_id=trigger_task_id,
            now=now,
        )

    async def delete_task(self, user_id: int, task_id: int) -> None:
        async with self._locks[user_id]:
            task = self.get_task(user_id, task_id)
            calendar = self.calendar_factory(self.user_or_default(user_id))
            if calendar is not None and task.calendar_event_id:
                try:
                    await calendar.delete_event(task.calendar_event_id)
                except CalendarError:
                    log.exception("failed to delete calendar event for task %s", task_id)
            self.storage.delete_task(user_id, task_id)
            self.storage.add_schedule_change(
                user_id=user_id,
                trigger_type=TriggerType.TASK_DELETED,
                trigger_task_id=None,
                changes=[
                    ChangeEntry(
                        task_id=task_id,
                        action=ChangeAction.DELETED,
                        previous_start=task.scheduled_start,
                        previous_end=task.scheduled_end,
                    )
                ],
                reasoning=None,
            )
