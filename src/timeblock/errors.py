from __future__ import annotations


class TimeblockError(Exception):
    pass


class InvalidTaskInput(TimeblockError, ValueError):
    """Rejected before any scheduling work starts."""


class TaskNotFound(TimeblockError, LookupError):
    pass


class CalendarError(TimeblockError):
    """Any failure talking to the calendar provider."""


class AssistantError(TimeblockError):
    """The AI assistant answered, but not with something we can use."""


class NotificationNotFound(TimeblockError, LookupError):
    pass
