from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from telegram import Update
from telegram.ext import (
    AIORateLimiter,
    Application,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .assistant import build_assistant
from .config import Settings
from .errors import InvalidTaskInput, TaskNotFound
from .models import Task, TaskStatus
from .prioritizer import build_prioritizer
from .service import TaskService
from .storage import Storage
from .timezone import as_utc, resolve_zone, utc_now

log = logging.getLogger("timeblock")


HELP = (
    "Send tasks as plain text, one per line (or separated by ';').\n"
    "Optional: `@HH:MM` deadline, `30m`/`2h` duration, `#category`.\n\n"
    "Commands:\n"
    "/tasks - today's tasks\n"
    "/begin <id> - mark as in progress\n"
    "/done <id> - mark as completed\n"
    "/priority <id> <1-5> - change priority\n"
    "/deadline <id> <ISO time|none> - change deadline\n"
    "/delete <id> - delete a task\n"
    "/timezone Europe/Berlin - set time zone\n"
    "/hours <start> <end> [max extension] - working hours\n"
    "/energy 09:00-12:00 high - energy level for a time range\n"
    "/buffer <minutes> - gap between tasks\n"
    "/notifications - unread notifications\n"
)


def _format_task(t: Task, tz_name: str) -> str:
    when = "unscheduled"
    if t.scheduled_start and t.scheduled_end:
        tz = resolve_zone(tz_name)
        when = (
            f"{t.scheduled_start.astimezone(tz).strftime('%a %H:%M')}-"
            f"{t.scheduled_end.astimezone(tz).strftime('%H:%M')}"
        )
    return f"{t.id}. [{t.status}] (p{t.priority}) {t.title} {when} ~{t.estimated_minutes}m"


def _parse_id(args: list[str]) -> Optional[int]:
    if not args or not args[0].isdigit():
        return None
    return int(args[0])


class BotApp:
    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.service = TaskService(
            Storage(settings.db_path),
            settings,
            assistant=build_assistant(settings.openai_api_key, settings.openai_model),
            prioritizer=build_prioritizer(settings.openai_api_key, settings.openai_model),
        )

    def _zone(self, user_id: int) -> str:
        u = self.service.user_or_default(user_id)
        return self.service.profile_for(u).time_zone

    async def cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.effective_user and update.message
        self.service.user_or_default(int(update.effective_user.id))
        await update.message.reply_text(
            "Hi! I block out time for your tasks.\n\n"
            "1) Set your time zone with /timezone Europe/Berlin\n"
            "2) Send me what you need to do\n\n" + HELP
        )

    async def cmd_help(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if update.message:
            await update.message.reply_text(HELP)

    async def cmd_timezone(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.effective_user and update.message
        if not context.args:
            await update.message.reply_text("Give an IANA time zone, e.g. /timezone Europe/Berlin")
            return
        tz_name = context.args[0].strip()
        try:
            self.service.set_timezone(int(update.effective_user.id), tz_name)
        except InvalidTaskInput:
            await update.message.reply_text("Unknown time zone. Examples: Europe/Berlin, America/New_York, UTC")
            return
        await update.message.reply_text(f"Time zone set: {tz_name}")

    async def cmd_hours(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.effective_user and update.message
        args = context.args or []
        try:
            start, end = int(args[0]), int(args[1])
            extension = float(args[2]) if len(args) > 2 else 3
            self.service.set_working_hours(int(update.effective_user.id), start, end, extension)
        except (IndexError, ValueError):
            await update.message.reply_text("Usage: /hours <start> <end> [max extension], e.g. /hours 9 18 2")
            return
        await update.message.reply_text(f"Working hours: {start}:00-{end}:00")

    async def cmd_energy(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.effective_user and update.message
        args = context.args or []
        if len(args) != 2:
            await update.message.reply_text("Usage: /energy 09:00-12:00 high")
            return
        try:
            self.service.set_energy_level(int(update.effective_user.id), args[0], args[1])
        except InvalidTaskInput as exc:
            await update.message.reply_text(str(exc))
            return
        await update.message.reply_text(f"Energy for {args[0]}: {args[1].lower()}")

    async def cmd_buffer(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.effective_user and update.message
        minutes = _parse_id(context.args or [])
        if minutes is None:
            await update.message.reply_text("Usage: /buffer <minutes>")
            return
        self.service.set_buffer(int(update.effective_user.id), minutes)
        await update.message.reply_text(f"Buffer between tasks: {minutes} min")

    async def cmd_tasks(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.effective_user and update.message
        user_id = int(update.effective_user.id)
        tz_name = self._zone(user_id)
        today = utc_now().astimezone(resolve_zone(tz_name)).date()
        tasks = self.service.list_tasks(user_id, day=today)
        if not tasks:
            await update.message.reply_text("Nothing scheduled today. Send me a task.")
            return
        await update.message.reply_text("\n".join(_format_task(t, tz_name) for t in tasks))

    async def _set_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE, status: TaskStatus) -> None:
        assert update.effective_user and update.message
        task_id = _parse_id(context.args or [])
        if task_id is None:
            await update.message.reply_text(f"Usage: /{'done' if status == TaskStatus.COMPLETED else 'begin'} <id>")
            return
        try:
            await self.service.update_task(int(update.effective_user.id), task_id, status=status)
        except TaskNotFound:
            await update.message.reply_text("No such task.")
            return
        await update.message.reply_text("Marked as done." if status == TaskStatus.COMPLETED else "Started.")

    async def cmd_done(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._set_status(update, context, TaskStatus.COMPLETED)

    async def cmd_begin(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        await self._set_status(update, context, TaskStatus.IN_PROGRESS)

    async def cmd_priority(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.effective_user and update.message
        args = context.args or []
        task_id = _parse_id(args)
        if task_id is None or len(args) < 2 or not args[1].isdigit():
            await update.message.reply_text("Usage: /priority <id> <1-5>")
            return
        try:
            t = await self.service.update_task(int(update.effective_user.id), task_id, priority=int(args[1]))
        except TaskNotFound:
            await update.message.reply_text("No such task.")
            return
        await update.message.reply_text(f"Priority of {t.title!r} is now {t.priority}.")

    async def cmd_deadline(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.effective_user and update.message
        user_id = int(update.effective_user.id)
        args = context.args or []
        task_id = _parse_id(args)
        if task_id is None or len(args) < 2:
            await update.message.reply_text("Usage: /deadline <id> <2026-01-31T17:00|none>")
            return
        deadline: Optional[datetime] = None
        if args[1].lower() != "none":
            try:
                parsed = datetime.fromisoformat(args[1])
            except ValueError:
                await update.message.reply_text("Could not read that time. Example: 2026-01-31T17:00")
                return
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=resolve_zone(self._zone(user_id)))
            deadline = as_utc(parsed)
        try:
            await self.service.update_task(user_id, task_id, deadline=deadline)
        except TaskNotFound:
            await update.message.reply_text("No such task.")
            return
        await update.message.reply_text("Deadline updated.")

    async def cmd_delete(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.effective_user and update.message
        task_id = _parse_id(context.args or [])
        if task_id is None:
            await update.message.reply_text("Usage: /delete <id>")
            return
        try:
            await self.service.delete_task(int(update.effective_user.id), task_id)
        except TaskNotFound:
            await update.message.reply_text("No such task.")
            return
        await update.message.reply_text("Deleted.")

    async def cmd_notifications(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.effective_user and update.message
        user_id = int(update.effective_user.id)
        items = self.service.list_notifications(user_id, unread_only=True)
        if not items:
            await update.message.reply_text("No new notifications.")
            return
        await update.message.reply_text("\n".join(f"- {n.title}: {n.message}" for n in items))
        self.service.mark_notification_read(user_id)

    async def on_text(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        assert update.effective_user and update.message
        user_id = int(update.effective_user.id)
        try:
            tasks = await self.service.create_tasks(user_id, update.message.text or "")
        except InvalidTaskInput:
            await update.message.reply_text("I did not find any tasks there. Try one per line.")
            return

        tz_name = self._zone(user_id)
        lines = ["Scheduled:"]
        lines.extend(_format_task(t, tz_name) for t in tasks)
        await update.message.reply_text("\n".join(lines))


def build_application(bot_app: BotApp) -> Application:
    token = bot_app.settings.telegram_token
    if not token:
        raise RuntimeError("TELEGRAM_TOKEN is required")

    app = (
        Application.builder()
        .token(token)
        .rate_limiter(AIORateLimiter())
        .build()
    )

    app.add_handler(CommandHandler("start", bot_app.cmd_start))
    app.add_handler(CommandHandler("help", bot_app.cmd_help))
    app.add_handler(CommandHandler("timezone", bot_app.cmd_timezone))
    app.add_handler(CommandHandler("hours", bot_app.cmd_hours))
    app.add_handler(CommandHandler("energy", bot_app.cmd_energy))
    app.add_handler(CommandHandler("buffer", bot_app.cmd_buffer))
    app.add_handler(CommandHandler("tasks", bot_app.cmd_tasks))
    app.add_handler(CommandHandler("begin", bot_app.cmd_begin))
    app.add_handler(CommandHandler("done", bot_app.cmd_done))
    app.add_handler(CommandHandler("priority", bot_app.cmd_priority))
    app.add_handler(CommandHandler("deadline", bot_app.cmd_deadline))
    app.add_handler(CommandHandler("delete", bot_app.cmd_delete))
    app.add_handler(CommandHandler("notifications", bot_app.cmd_notifications))
    app.add_handler(MessageHandler(filters.TEXT & ~filters.COMMAND, bot_app.on_text))
    return app


def main() -> None:
    logging.basicConfig(level=logging.INFO)
    bot_app = BotApp(Settings.from_env())
    app = build_application(bot_app)
    app.run_polling(allowed_updates=Update.ALL_TYPES)


if __name__ == "__main__":
    main()
