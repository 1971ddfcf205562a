from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Optional, Sequence

from .errors import AssistantError
from .models import EnergyLevel, clamp_duration
from .parsing import DEFAULT_CATEGORY, MAX_TITLE_LENGTH, ParsedTask, parse_task_line
from .timezone import as_utc, resolve_zone

log = logging.getLogger("timeblock.assistant")

DEFAULT_ESTIMATE_MINUTES = 60


class TaskAssistant:
    """Turns free text into task fields. Every method must return something usable."""

    async def parse_task(
        self, text: str, *, history: Sequence[str], now: datetime, time_zone: str
    ) -> ParsedTask:
        raise NotImplementedError

    async def estimate_minutes(
        self, *, title: str, category: str, average_minutes: Optional[int]
    ) -> int:
        raise NotImplementedError

    async def describe_task(
        self,
        *,
        title: str,
        parsed_description: Optional[str],
        user_context: Optional[str],
        business_context: str,
    ) -> str:
        raise NotImplementedError


class HeuristicAssistant(TaskAssistant):
    """Deterministic fallback when no AI key is configured."""

    async def parse_task(
        self, text: str, *, history: Sequence[str], now: datetime, time_zone: str
    ) -> ParsedTask:
        parsed = parse_task_line(text, now=now, time_zone=time_zone)
        if parsed is None:
            return ParsedTask(title=text.strip()[:MAX_TITLE_LENGTH] or "Untitled task")
        return parsed

    async def estimate_minutes(
        self, *, title: str, category: str, average_minutes: Optional[int]
    ) -> int:
        if average_minutes:
            return clamp_duration(average_minutes)
        return DEFAULT_ESTIMATE_MINUTES

    async def describe_task(
        self,
        *,
        title: str,
        parsed_description: Optional[str],
        user_context: Optional[str],
        business_context: str,
    ) -> str:
        return user_context or parsed_description or title


def _loads_object(text: str) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except ValueError as exc:
        raise AssistantError(f"not JSON: {text[:200]!r}") from exc
    if not isinstance(data, dict):
        raise AssistantError(f"expected a JSON object, got {type(data).__name__}")
    return data


def _parse_deadline(value: Any) -> Optional[datetime]:
    if not value or not isinstance(value, str):
        return None
    try:
        return as_utc(datetime.fromisoformat(value))
    except ValueError:
        return None


def parsed_task_from_json(data: dict[str, Any]) -> ParsedTask:
    title = data.get("title")
    if not isinstance(title, str) or not title.strip():
        raise AssistantError("missing title")
    explicit = data.get("explicitDuration")
    if isinstance(explicit, str) and explicit.strip().isdigit():
        explicit = int(explicit.strip())
    if not isinstance(explicit, (int, float)) or isinstance(explicit, bool) or explicit <= 0:
        explicit = None
    try:
        energy = EnergyLevel(str(data.get("energyRequirement", "medium")).lower())
    except ValueError:
        energy = EnergyLevel.MEDIUM
    category = data.get("suggestedCategory") or data.get("taskType") or DEFAULT_CATEGORY
    description = data.get("description")
    return ParsedTask(
        title=title.strip()[:MAX_TITLE_LENGTH],
        description=description if isinstance(description, str) and description else None,
        deadline=_parse_deadline(data.get("deadline")),
        explicit_minutes=int(explicit) if explicit is not None else None,
        category=str(category).strip().lower() or DEFAULT_CATEGORY,
        energy_requirement=energy,
    )


class OpenAIAssistant(TaskAssistant):
    """
    OpenAI-backed assistant. Any failure (network, quota, malformed JSON) is logged
    and answered by the heuristic fallback instead, so callers never see it.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o-mini",
        fallback: Optional[TaskAssistant] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.fallback = fallback or HeuristicAssistant()

    async def _complete_json(self, system: str, prompt: str, temperature: float) -> dict[str, Any]:
        # Lazy import to keep dependency optional at runtime
        from openai import AsyncOpenAI

        client = AsyncOpenAI(api_key=self.api_key)
        resp = await client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": system}, {"role": "user", "content": prompt}],
            temperature=temperature,
            response_format={"type": "json_object"},
        )
        return _loads_object(resp.choices[0].message.content or "")

    async def parse_task(
        self, text: str, *, history: Sequence[str], now: datetime, time_zone: str
    ) -> ParsedTask:
        local_now = as_utc(now).astimezone(resolve_zone(time_zone))
        system = (
            "You extract structured task data. Return ONLY a JSON object with keys: "
            '"title" (clean task title), "description" (extra context or null), '
            '"deadline" (ISO 8601 with offset if mentioned, e.g. "tomorrow" is next day 17:00, '
            '"EOD" is today 18:00; else null), "explicitDuration" (minutes if stated, else null), '
            '"taskType" (match the user history if possible, or one of: creative, admin, meetings, '
            'deep_work, communication, planning, client_work), "suggestedCategory", '
            '"energyRequirement" (high, medium or low).'
        )
        prompt = (
            f'Task input: "{text}"\n'
            f"User's common tasks: {json.dumps(list(history))}\n"
            f"User timezone: {time_zone}\n"
            f"Current local date/time: {local_now.strftime('%A, %d %B %Y %H:%M')}"
        )
        try:
            return parsed_task_from_json(await self._complete_json(system, prompt, 0.7))
        except Exception as exc:
            log.warning("AI parse failed, using heuristic parser: %s", exc)
            return await self.fallback.parse_task(text, history=history, now=now, time_zone=time_zone)

    async def estimate_minutes(
        self, *, title: str, category: str, average_minutes: Optional[int]
    ) -> int:
        system = (
            "You estimate how long a task takes. Return ONLY a JSON object: "
            '{"estimatedMinutes": <15-480>, "confidence": "high|medium|low", "reasoning": "..."}'
        )
        history = (
            f"User's average for {category!r} tasks: {average_minutes} minutes."
            if average_minutes
            else "No historical data available."
        )
        prompt = f'Task: "{title}"\nCategory: "{category}"\n{history}'
        try:
            data = await self._complete_json(system, prompt, 0.7)
            minutes = data.get("estimatedMinutes")
            if isinstance(minutes, bool) or not isinstance(minutes, (int, float)) or minutes <= 0:
                raise AssistantError(f"bad estimate {minutes!r}")
            return clamp_duration(round(minutes))
        except Exception as exc:
            log.warning("AI duration estimate failed, using heuristic: %s", exc)
            return await self.fallback.estimate_minutes(
                title=title, category=category, average_minutes=average_minutes
            )

    async def describe_task(
        self,
        *,
        title: str,
        parsed_description: Optional[str],
        user_context: Optional[str],
        business_context: str,
    ) -> str:
        system = (
            "You write concise, action-oriented calendar event descriptions for time blocks. "
            "Include only relevant sections among: Objective, Key steps, Assets/links, "
            "Metrics or KPI targets. Do not invent numbers or links that are not in context. "
            'Return ONLY a JSON object: {"description": "..."}'
        )
        prompt = (
            f'Task title: "{title}"\n'
            f'User-provided context: "{user_context or "None"}"\n'
            f'Parsed context: "{parsed_description or "None"}"\n'
            f"Business context (for grounding; do not repeat verbatim):\n{business_context}"
        )
        try:
            data = await self._complete_json(system, prompt, 0.4)
            description = data.get("description")
            if not isinstance(description, str) or not description.strip():
                raise AssistantError("empty description")
            return description.strip()
        except Exception as exc:
            log.warning("AI description failed, using fallback text: %s", exc)
            return await self.fallback.describe_task(
                title=title,
                parsed_description=parsed_description,
                user_context=user_context,
                business_context=business_context,
            )


def build_assistant(api_key: str, model: str) -> TaskAssistant:
    if api_key:
        return OpenAIAssistant(api_key=api_key, model=model)
    return HeuristicAssistant()
