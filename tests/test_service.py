from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import date, timedelta

import pytest
from conftest import FakeCalendar, FixedClock, at

from timeblock.errors import InvalidTaskInput, NotificationNotFound, TaskNotFound
from timeblock.models import ChangeAction, MemoryType, NotificationType, TaskStatus, TriggerType
from timeblock.service import TaskService


def _service(storage, settings, cal=None, now=None):
    clock = FixedClock(now or at(7))
    svc = TaskService(storage, settings, calendar_factory=lambda user: cal, clock=clock)
    return svc, clock


def test_batch_tasks_do_not_collide(storage, settings) -> None:
    cal = FakeCalendar()
    svc, _ = _service(storage, settings, cal)
    tasks = asyncio.run(svc.create_tasks(1, "Inbox 30m\nReport 1h\nCall 30m"))

    assert [t.title for t in tasks] == ["Inbox", "Report", "Call"]
    assert [(t.scheduled_start, t.scheduled_end) for t in tasks] == [
        (at(9), at(9, 30)),
        (at(9, 35), at(10, 35)),
        (at(10, 40), at(11, 10)),
    ]
    assert all(t.calendar_event_id for t in tasks)
    assert len(cal.events) == 3

    changes = storage.list_schedule_changes(1)
    assert len(changes) == 1
    assert changes[0].trigger_type == TriggerType.TASK_ADDED
    assert changes[0].reasoning == "Batch scheduling for new tasks"
    assert [e.action for e in changes[0].changes] == [ChangeAction.CREATED] * 3
    assert {n.type for n in storage.list_notifications(1)} == {NotificationType.TASK_BLOCKED}


def test_new_tasks_avoid_already_scheduled_ones(storage, settings) -> None:
    svc, _ = _service(storage, settings)
    asyncio.run(svc.create_tasks(1, "Inbox 30m"))
    (second,) = asyncio.run(svc.create_tasks(1, "Report 30m"))
    assert second.scheduled_start == at(9, 35)
    assert storage.list_schedule_changes(1)[-1].reasoning == "Initial scheduling for new task"


def test_invalid_input_is_rejected_before_scheduling(storage, settings) -> None:
    svc, _ = _service(storage, settings)
    with pytest.raises(InvalidTaskInput):
        asyncio.run(svc.create_tasks(1, "   "))
    with pytest.raises(InvalidTaskInput):
        asyncio.run(svc.create_tasks(1, "Inbox", time_zone="Mars/Olympus"))
    assert storage.list_tasks(1) == []
    assert storage.list_schedule_changes(1) == []


def test_calendar_failures_do_not_block_persistence(storage, settings) -> None:
    svc, _ = _service(storage, settings, FakeCalendar(fail_reads=True, fail_writes=True))
    (task,) = asyncio.run(svc.create_tasks(1, "Inbox 30m"))
    assert task.scheduled_start == at(9)
    assert task.calendar_event_id is None
    assert storage.get_task(1, task.id) == task


def test_no_room_leaves_task_unscheduled(storage, settings) -> None:
    svc, _ = _service(storage, replace(settings, max_days_ahead=0))
    svc.set_working_hours(1, 9, 10, 0)
    (task,) = asyncio.run(svc.create_tasks(1, "Big project 2h"))
    assert task.scheduled_start is None
    assert task.status == TaskStatus.SCHEDULED
    assert [n.type for n in storage.list_notifications(1)] == [NotificationType.CONFLICT_DETECTED]


def test_extension_is_reported(storage, settings) -> None:
    svc, _ = _service(storage, replace(settings, max_days_ahead=0))
    svc.set_working_hours(1, 9, 10, 3)
    (task,) = asyncio.run(svc.create_tasks(1, "Big project 2h"))
    assert (task.scheduled_start, task.scheduled_end) == (at(10), at(12))
    types = {n.type for n in storage.list_notifications(1)}
    assert types == {NotificationType.TASK_BLOCKED, NotificationType.WORKING_HOURS_EXTENDED}


def test_time_zone_is_remembered(storage, settings) -> None:
    svc, _ = _service(storage, settings)
    (task,) = asyncio.run(svc.create_tasks(1, "Inbox 30m", time_zone="Europe/Berlin"))
    # 09:00 in Berlin
    assert task.scheduled_start == at(8)
    assert storage.get_user(1).timezone == "Europe/Berlin"
    assert svc.profile_for(storage.get_user(1)).time_zone == "Europe/Berlin"


def test_past_deadline_is_dropped(storage, settings) -> None:
    svc, _ = _service(storage, settings)
    (task,) = asyncio.run(svc.create_tasks(1, "Inbox 30m", deadline=at(5)))
    assert task.deadline is None
    assert task.priority == 3
    (urgent,) = asyncio.run(svc.create_tasks(1, "Report 30m", deadline=at(9)))
    assert urgent.deadline == at(9)
    assert urgent.priority == 5


def test_early_completion_replans_the_day(storage, settings) -> None:
    cal = FakeCalendar()
    svc, clock = _service(storage, settings, cal)
    first, second = asyncio.run(svc.create_tasks(1, "Write 1h\nInbox 30m"))
    assert second.scheduled_start == at(10, 5)

    clock.now = at(9, 30)
    done = asyncio.run(svc.update_task(1, first.id, status="completed"))
    assert done.status == TaskStatus.COMPLETED
    assert done.actual_minutes == 30
    assert done.completed_at == at(9, 30)
    assert done.calendar_event_id is None
    assert first.calendar_event_id in cal.deleted

    moved = storage.get_task(1, second.id)
    assert (moved.scheduled_start, moved.scheduled_end) == (at(9, 35), at(10, 5))
    assert cal.events[second.calendar_event_id] == (at(9, 35), at(10, 5))
    assert [c.trigger_type for c in storage.list_schedule_changes(1)] == [
        TriggerType.TASK_ADDED,
        TriggerType.TASK_COMPLETED_EARLY,
    ]
    assert storage.get_memory(1, MemoryType.TASK_DURATION, "general")["average_minutes"] == 30


def test_on_time_completion_does_not_replan(storage, settings) -> None:
    svc, clock = _service(storage, settings)
    first, second = asyncio.run(svc.create_tasks(1, "Write 1h\nInbox 30m"))
    clock.now = at(9, 58)
    asyncio.run(svc.update_task(1, first.id, status="completed"))
    assert storage.get_task(1, second.id).scheduled_start == at(10, 5)
    assert len(storage.list_schedule_changes(1)) == 1


def test_completing_before_start_frees_the_whole_slot(storage, settings) -> None:
    svc, clock = _service(storage, settings)
    write, inbox, call = asyncio.run(svc.create_tasks(1, "Write 1h\nInbox 30m\nCall 30m"))
    assert inbox.scheduled_start == at(10, 5)
    assert call.scheduled_start == at(10, 40)

    clock.now = at(9, 10)
    done = asyncio.run(svc.update_task(1, inbox.id, status="completed"))
    assert done.actual_minutes == 0

    moved = storage.get_task(1, call.id)
    assert (moved.scheduled_start, moved.scheduled_end) == (at(10, 5), at(10, 35))
    assert storage.get_task(1, write.id).scheduled_start == at(9)
    assert [c.trigger_type for c in storage.list_schedule_changes(1)] == [
        TriggerType.TASK_ADDED,
        TriggerType.TASK_COMPLETED_EARLY,
    ]
    # a zero-minute run says nothing about how long the work takes
    assert storage.get_memory(1, MemoryType.TASK_DURATION, "general") is None


def test_in_progress_tasks_block_new_tasks(storage, settings) -> None:
    svc, clock = _service(storage, settings)
    (deep,) = asyncio.run(svc.create_tasks(1, "Deep work 2h"))
    assert (deep.scheduled_start, deep.scheduled_end) == (at(9), at(11))
    asyncio.run(svc.update_task(1, deep.id, status="in_progress"))

    clock.now = at(9, 30)
    (inbox,) = asyncio.run(svc.create_tasks(1, "Inbox 30m"))
    assert inbox.scheduled_start == at(11, 5)


def test_freed_time_goes_to_tasks_that_found_no_room(storage, settings) -> None:
    svc, clock = _service(storage, replace(settings, max_days_ahead=0))
    svc.set_working_hours(1, 9, 12, 0)
    big, report = asyncio.run(svc.create_tasks(1, "Big 3h\nReport 1h"))
    assert big.scheduled_start == at(9)
    assert report.scheduled_start is None

    clock.now = at(9, 30)
    asyncio.run(svc.update_task(1, big.id, status="completed"))

    placed = storage.get_task(1, report.id)
    assert (placed.scheduled_start, placed.scheduled_end) == (at(9, 35), at(10, 35))
    entry = storage.list_schedule_changes(1)[-1].changes[0]
    assert entry.task_id == report.id
    assert entry.previous_start is None


def test_priority_change_never_moves_the_trigger_task(storage, settings) -> None:
    svc, _ = _service(storage, settings)
    first, second = asyncio.run(svc.create_tasks(1, "Write 1h\nInbox 1h"))
    updated = asyncio.run(svc.update_task(1, second.id, priority=9))
    assert updated.priority == 5
    assert updated.scheduled_start == second.scheduled_start
    assert storage.get_task(1, first.id).scheduled_start == at(9)


def test_update_validation(storage, settings) -> None:
    svc, _ = _service(storage, settings)
    (task,) = asyncio.run(svc.create_tasks(1, "Inbox 30m"))
    with pytest.raises(TaskNotFound):
        asyncio.run(svc.update_task(1, 999, status="completed"))
    with pytest.raises(InvalidTaskInput):
        asyncio.run(svc.update_task(1, task.id, status="paused"))
    with pytest.raises(InvalidTaskInput):
        asyncio.run(svc.update_task(1, task.id, scheduled_start=at(12)))
    with pytest.raises(InvalidTaskInput):
        asyncio.run(svc.update_task(1, task.id, scheduled_start=at(12), scheduled_end=at(11)))


def test_manual_reschedule_moves_calendar_event(storage, settings) -> None:
    cal = FakeCalendar()
    svc, _ = _service(storage, settings, cal)
    (task,) = asyncio.run(svc.create_tasks(1, "Inbox 30m"))
    out = asyncio.run(svc.update_task(1, task.id, scheduled_start=at(14), scheduled_end=at(14, 30)))
    assert out.scheduled_start == at(14)
    assert cal.events[task.calendar_event_id] == (at(14), at(14, 30))


def test_delete_is_logged(storage, settings) -> None:
    cal = FakeCalendar()
    svc, _ = _service(storage, settings, cal)
    (task,) = asyncio.run(svc.create_tasks(1, "Inbox 30m"))
    asyncio.run(svc.delete_task(1, task.id))

    with pytest.raises(TaskNotFound):
        svc.get_task(1, task.id)
    assert cal.deleted == [task.calendar_event_id]
    last = storage.list_schedule_changes(1)[-1]
    assert last.trigger_type == TriggerType.TASK_DELETED
    assert last.changes[0].action == ChangeAction.DELETED
    assert last.changes[0].previous_start == at(9)
    with pytest.raises(TaskNotFound):
        asyncio.run(svc.delete_task(1, task.id))


def test_list_tasks_by_local_day(storage, settings) -> None:
    svc, _ = _service(storage, settings)
    asyncio.run(svc.create_tasks(1, "Inbox 30m"))
    assert len(svc.list_tasks(1, day=date(2026, 1, 12))) == 1
    assert svc.list_tasks(1, day=date(2026, 1, 12) + timedelta(days=1)) == []
    assert svc.list_tasks(1, status=TaskStatus.COMPLETED) == []


def test_preferences_feed_the_planner(storage, settings) -> None:
    svc, _ = _service(storage, settings)
    svc.set_buffer(1, 15)
    svc.set_energy_level(1, "13:00-15:00", "HIGH")
    with pytest.raises(InvalidTaskInput):
        svc.set_energy_level(1, "morning", "high")
    with pytest.raises(InvalidTaskInput):
        svc.set_timezone(1, "Mars/Olympus")
    with pytest.raises(InvalidTaskInput):
        svc.set_working_hours(1, 18, 9)

    profile = svc.profile_for(svc.user_or_default(1))
    assert profile.buffer_minutes == 15
    assert profile.energy_map["13:00-15:00"] == "high"


def test_notifications_can_be_marked_read(storage, settings) -> None:
    svc, _ = _service(storage, settings)
    asyncio.run(svc.create_tasks(1, "Inbox 30m\nReport 30m"))
    unread = svc.list_notifications(1, unread_only=True)
    assert len(unread) == 2
    svc.mark_notification_read(1, unread[0].id)
    assert len(svc.list_notifications(1, unread_only=True)) == 1
    svc.mark_notification_read(1)
    assert svc.list_notifications(1, unread_only=True) == []
    with pytest.raises(NotificationNotFound):
        svc.mark_notification_read(1, 999)
