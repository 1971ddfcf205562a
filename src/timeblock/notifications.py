from __future__ import annotations

import logging
import sqlite3
from typing import Optional

from .models import NotificationType
from .storage import Storage

log = logging.getLogger("timeblock.notifications")


class Notifier:
    """Fire-and-forget: a notification that cannot be stored is logged and dropped."""

    def __init__(self, storage: Storage) -> None:
        self.storage = storage

    def notify(
        self,
        user_id: int,
        type: NotificationType,
        title: str,
        message: str,
        related_task_id: Optional[int] = None,
    ) -> None:
        try:
            self.storage.add_notification(
                user_id=user_id,
                type=type,
                title=title,
                message=message,
                related_task_id=related_task_id,
            )
        except sqlite3.Error:
            log.exception("failed to store %s notification for user %s", type, user_id)
