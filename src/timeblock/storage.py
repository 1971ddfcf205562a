from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from .models import (
    ChangeEntry,
    EnergyLevel,
    MemoryEntry,
    MemoryType,
    Notification,
    NotificationType,
    ScheduleChange,
    Task,
    TaskStatus,
    TriggerType,
    User,
)
from .timezone import as_utc, utc_now


def _to_iso_dt(dt: Optional[datetime]) -> Optional[str]:
    if dt is None:
        return None
    return as_utc(dt).isoformat()


def _from_iso_dt(s: Optional[str]) -> Optional[datetime]:
    if s is None:
        return None
    return as_utc(datetime.fromisoformat(s))


class Storage:
    def __init__(self, db_path: str | Path) -> None:
        self.db_path = str(db_path)
        self._init()

    @contextmanager
    def _conn(self) -> Iterable[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _init(self) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS users (
                  user_id INTEGER PRIMARY KEY,
                  timezone TEXT NOT NULL,
                  google_token_json TEXT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS user_memory (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id INTEGER NOT NULL,
                  memory_type TEXT NOT NULL,
                  key TEXT NOT NULL,
                  value TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE(user_id, memory_type, key),
                  FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tasks (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id INTEGER NOT NULL,
                  title TEXT NOT NULL,
                  description TEXT NULL,
                  estimated_minutes INTEGER NOT NULL,
                  actual_minutes INTEGER NULL,
                  priority INTEGER NOT NULL DEFAULT 3 CHECK (priority BETWEEN 1 AND 5),
                  deadline TEXT NULL,
                  scheduled_start TEXT NULL,
                  scheduled_end TEXT NULL,
                  status TEXT NOT NULL,
                  calendar_event_id TEXT NULL,
                  category TEXT NOT NULL,
                  energy_requirement TEXT NOT NULL,
                  context TEXT NULL,
                  created_at TEXT NOT NULL,
                  completed_at TEXT NULL,
                  FOREIGN KEY (user_id) REFERENCES users(user_id)
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schedule_changes (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id INTEGER NOT NULL,
                  trigger_type TEXT NOT NULL,
                  trigger_task_id INTEGER NULL,
                  changes_made TEXT NOT NULL,
                  reasoning TEXT NULL,
                  created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS notifications (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  user_id INTEGER NOT NULL,
                  type TEXT NOT NULL,
                  title TEXT NOT NULL,
                  message TEXT NOT NULL,
                  related_task_id INTEGER NULL,
                  is_read INTEGER NOT NULL DEFAULT 0,
                  created_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_tasks_user_status ON tasks(user_id, status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_tasks_scheduled_start ON tasks(scheduled_start)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, is_read)"
            )

    # users

    def upsert_user(self, user: User) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO users(user_id, timezone, google_token_json)
                VALUES(?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                  timezone=excluded.timezone,
                  google_token_json=excluded.google_token_json
                """,
                (user.user_id, user.timezone, user.google_token_json),
            )

    def get_user(self, user_id: int) -> Optional[User]:
        with self._conn() as conn:
            row = conn.execute("SELECT * FROM users WHERE user_id=?", (user_id,)).fetchone()
        if row is None:
            return None
        return User(
            user_id=int(row["user_id"]),
            timezone=str(row["timezone"]),
            google_token_json=row["google_token_json"],
        )

    # memory

    def upsert_memory(self, user_id: int, memory_type: MemoryType, key: str, value: Any) -> None:
        now = _to_iso_dt(utc_now())
        with self._conn() as conn:
            conn.execute(
                """
                INSERT INTO user_memory(user_id, memory_type, key, value, created_at, updated_at)
                VALUES(?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id, memory_type, key) DO UPDATE SET
                  value=excluded.value,
                  updated_at=excluded.updated_at
                """,
                (user_id, str(memory_type), key, json.dumps(value), now, now),
            )

    def get_memory(self, user_id: int, memory_type: MemoryType, key: str) -> Optional[Any]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT value FROM user_memory WHERE user_id=? AND memory_type=? AND key=?",
                (user_id, str(memory_type), key),
            ).fetchone()
        return json.loads(row["value"]) if row else None

    def list_memory(self, user_id: int) -> list[MemoryEntry]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM user_memory WHERE user_id=? ORDER BY id ASC", (user_id,)
            ).fetchall()
        out = []
        for r in rows:
            try:
                memory_type = MemoryType(str(r["memory_type"]))
            except ValueError:
                continue
            out.append(MemoryEntry(memory_type=memory_type, key=str(r["key"]), value=json.loads(r["value"])))
        return out

    # tasks

    def add_task(self, task: Task) -> Task:
        created_at = task.created_at or utc_now()
        with self._conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO tasks(
                  user_id, title, description, estimated_minutes, actual_minutes,
                  priority, deadline, scheduled_start, scheduled_end, status,
                  calendar_event_id, category, energy_requirement, context,
                  created_at, completed_at
                )
                VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task.user_id,
                    task.title,
                    task.description,
                    int(task.estimated_minutes),
                    task.actual_minutes,
                    int(task.priority),
                    _to_iso_dt(task.deadline),
                    _to_iso_dt(task.scheduled_start),
                    _to_iso_dt(task.scheduled_end),
                    str(task.status),
                    task.calendar_event_id,
                    task.category,
                    str(task.energy_requirement),
                    task.context,
                    _to_iso_dt(created_at),
                    _to_iso_dt(task.completed_at),
                ),
            )
            return replace(task, id=int(cur.lastrowid), created_at=as_utc(created_at))

    def update_task(self, task: Task) -> None:
        with self._conn() as conn:
            conn.execute(
                """
                UPDATE tasks SET
                  title=?, description=?, estimated_minutes=?, actual_minutes=?,
                  priority=?, deadline=?, scheduled_start=?, scheduled_end=?, status=?,
                  calendar_event_id=?, category=?, energy_requirement=?, context=?,
                  completed_at=?
                WHERE user_id=? AND id=?
                """,
                (
                    task.title,
                    task.description,
                    int(task.estimated_minutes),
                    task.actual_minutes,
                    int(task.priority),
                    _to_iso_dt(task.deadline),
                    _to_iso_dt(task.scheduled_start),
                    _to_iso_dt(task.scheduled_end),
                    str(task.status),
                    task.calendar_event_id,
                    task.category,
                    str(task.energy_requirement),
                    task.context,
                    _to_iso_dt(task.completed_at),
                    task.user_id,
                    task.id,
                ),
            )

    def get_task(self, user_id: int, task_id: int) -> Optional[Task]:
        with self._conn() as conn:
            row = conn.execute(
                "SELECT * FROM tasks WHERE user_id=? AND id=?", (user_id, task_id)
            ).fetchone()
        return self._row_to_task(row) if row else None

    def list_tasks(
        self,
        user_id: int,
        *,
        statuses: Sequence[TaskStatus] = (),
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> list[Task]:
        """Tasks ordered by scheduled start; `start`/`end` bound scheduled_start inclusively."""
        sql = "SELECT * FROM tasks WHERE user_id=?"
        params: list[Any] = [user_id]
        if statuses:
            sql += f" AND status IN ({','.join('?' for _ in statuses)})"
            params.extend(str(s) for s in statuses)
        if start is not None:
            sql += " AND scheduled_start >= ?"
            params.append(_to_iso_dt(start))
        if end is not None:
            sql += " AND scheduled_start <= ?"
            params.append(_to_iso_dt(end))
        sql += " ORDER BY scheduled_start IS NULL, scheduled_start ASC, id ASC"
        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [self._row_to_task(r) for r in rows]

    def delete_task(self, user_id: int, task_id: int) -> None:
        with self._conn() as conn:
            conn.execute("DELETE FROM tasks WHERE user_id=? AND id=?", (user_id, task_id))

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> Task:
        return Task(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            title=str(row["title"]),
            description=row["description"],
            estimated_minutes=int(row["estimated_minutes"]),
            actual_minutes=row["actual_minutes"],
            priority=int(row["priority"]),
            deadline=_from_iso_dt(row["deadline"]),
            scheduled_start=_from_iso_dt(row["scheduled_start"]),
            scheduled_end=_from_iso_dt(row["scheduled_end"]),
            status=TaskStatus(str(row["status"])),
            calendar_event_id=row["calendar_event_id"],
            category=str(row["category"]),
            energy_requirement=EnergyLevel(str(row["energy_requirement"])),
            context=row["context"],
            created_at=_from_iso_dt(row["created_at"]),
            completed_at=_from_iso_dt(row["completed_at"]),
        )

    # audit log

    def add_schedule_change(
        self,
        *,
        user_id: int,
        trigger_type: TriggerType,
        trigger_task_id: Optional[int],
        changes: Sequence[ChangeEntry],
        reasoning: Optional[str],
    ) -> ScheduleChange:
        created_at = utc_now()
        with self._conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO schedule_changes(
                  user_id, trigger_type, trigger_task_id, changes_made, reasoning, created_at
                )
                VALUES(?, ?, ?, ?, ?, ?)
                """,
                (
                    user_id,
                    str(trigger_type),
                    trigger_task_id,
                    json.dumps([c.to_dict() for c in changes]),
                    reasoning,
                    _to_iso_dt(created_at),
                ),
            )
            change_id = int(cur.lastrowid)
        return ScheduleChange(
            id=change_id,
            user_id=user_id,
            trigger_type=trigger_type,
            trigger_task_id=trigger_task_id,
            changes=tuple(changes),
            reasoning=reasoning,
            created_at=created_at,
        )

    def list_schedule_changes(self, user_id: int) -> list[ScheduleChange]:
        with self._conn() as conn:
            rows = conn.execute(
                "SELECT * FROM schedule_changes WHERE user_id=? ORDER BY id ASC", (user_id,)
            ).fetchall()
        return [
            ScheduleChange(
                id=int(r["id"]),
                user_id=int(r["user_id"]),
                trigger_type=TriggerType(str(r["trigger_type"])),
                trigger_task_id=r["trigger_task_id"],
                changes=tuple(ChangeEntry.from_dict(c) for c in json.loads(r["changes_made"])),
                reasoning=r["reasoning"],
                created_at=_from_iso_dt(r["created_at"]),
            )
            for r in rows
        ]

    # notifications

    def add_notification(
        self,
        *,
        user_id: int,
        type: NotificationType,
        title: str,
        message: str,
        related_task_id: Optional[int] = None,
    ) -> int:
        with self._conn() as conn:
            cur = conn.execute(
                """
                INSERT INTO notifications(user_id, type, title, message, related_task_id, is_read, created_at)
                VALUES(?, ?, ?, ?, ?, 0, ?)
                """,
                (user_id, str(type), title, message, related_task_id, _to_iso_dt(utc_now())),
            )
            return int(cur.lastrowid)

    def list_notifications(self, user_id: int, *, unread_only: bool = False) -> list[Notification]:
        sql = "SELECT * FROM notifications WHERE user_id=?"
        if unread_only:
            sql += " AND is_read=0"
        sql += " ORDER BY id DESC"
        with self._conn() as conn:
            rows = conn.execute(sql, (user_id,)).fetchall()
        return [
            Notification(
                id=int(r["id"]),
                user_id=int(r["user_id"]),
                type=NotificationType(str(r["type"])),
                title=str(r["title"]),
                message=str(r["message"]),
                related_task_id=r["related_task_id"],
                is_read=bool(r["is_read"]),
                created_at=_from_iso_dt(r["created_at"]),
            )
            for r in rows
        ]

    def mark_notification_read(self, user_id: int, notification_id: int) -> bool:
        with self._conn() as conn:
            cur = conn.execute(
                "UPDATE notifications SET is_read=1 WHERE user_id=? AND id=?",
                (user_id, notification_id),
            )
            return cur.rowcount > 0

    def mark_all_notifications_read(self, user_id: int) -> None:
        with self._conn() as conn:
            conn.execute("UPDATE notifications SET is_read=1 WHERE user_id=?", (user_id,))
