from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Sequence

from .errors import AssistantError
from .models import Task, clamp_priority
from .timezone import utc_now

log = logging.getLogger("timeblock.prioritizer")

BASE_PRIORITY = 3
CLIENT_CATEGORIES = frozenset({"client_work"})

# (max hours until deadline, priority)
DEADLINE_BANDS = ((4, 5), (24, 4), (48, 3), (168, 2))
FAR_DEADLINE_PRIORITY = 1


@dataclass(frozen=True)
class PriorityRequest:
    title: str
    description: Optional[str]
    category: str
    deadline: Optional[datetime]


def calculate_priority(
    *,
    deadline: Optional[datetime],
    category: Optional[str],
    existing_tasks: Sequence[Task],
    now: Optional[datetime] = None,
) -> int:
    score = BASE_PRIORITY

    if deadline is not None:
        now = now or utc_now()
        hours_left = (deadline - now).total_seconds() / 3600
        score = FAR_DEADLINE_PRIORITY
        for limit, value in DEADLINE_BANDS:
            if hours_left <= limit:
                score = value
                break

    if category in CLIENT_CATEGORIES and not any(t.category == category for t in existing_tasks):
        score = min(5, score + 1)

    return clamp_priority(score)


class Prioritizer:
    async def refine(
        self, *, request: PriorityRequest, baseline: int, other_tasks: Sequence[Task]
    ) -> int:
        raise NotImplementedError


class HeuristicPrioritizer(Prioritizer):
    """Deterministic fallback when no AI key is configured: keeps the baseline."""

    async def refine(
        self, *, request: PriorityRequest, baseline: int, other_tasks: Sequence[Task]
    ) -> int:
        return clamp_priority(baseline)


class OpenAIPrioritizer(Prioritizer):
    def __init__(self, api_key: str, model: str = "gpt-4o-mini") -> None:
        self.api_key = api_key
        self.model = model

    async def refine(
        self, *, request: PriorityRequest, baseline: int, other_tasks: Sequence[Task]
    ) -> int:
        try:
            return await self._ask(request, other_tasks)
        except Exception as exc:
            log.warning("AI priority assessment failed, keeping heuristic %s: %s", baseline, exc)
            return clamp_priority(baseline)

    async def _ask(self, request: PriorityRequest, other_tasks: Sequence[Task]) -> int:
        # Lazy import to keep dependency optional at runtime
        from openai import AsyncOpenAI

        client = AsyncOpenAI(api_key=self.api_key)
        others = [
            {
                "title": t.title,
                "priority": t.priority,
                "deadline": t.deadline.isoformat() if t.deadline else None,
            }
            for t in other_tasks
        ]
        system = (
            "You assess task priority on a 1-5 scale: "
            "1 = low, can wait; 2 = normal, this week; 3 = medium, next 2 days; "
            "4 = high, must be done today; 5 = urgent, needs immediate attention. "
            "Client work is typically higher priority. "
            'Return ONLY a JSON object: {"priority": <1-5>, "reasoning": "<why>"}.'
        )
        deadline = request.deadline.isoformat() if request.deadline else "No deadline specified"
        user = (
            f'Task: "{request.title}"\n'
            f'Description: "{request.description or "None"}"\n'
            f'Category: "{request.category}"\n'
            f"Deadline: {deadline}\n"
            f"User's other tasks: {json.dumps(others)}"
        )
        resp = await client.chat.completions.create(
            model=self.model,
            messages=[{"role": "system", "content": system}, {"role": "user", "content": user}],
            temperature=0,
            response_format={"type": "json_object"},
        )
        return _parse_priority_json(resp.choices[0].message.content or "")


def _parse_priority_json(text: str) -> int:
    try:
        data = json.loads(text)
        value = data["priority"]
    except (ValueError, TypeError, KeyError) as exc:
        raise AssistantError(f"malformed priority answer: {text!r}") from exc
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise AssistantError(f"non-numeric priority: {value!r}")
    return clamp_priority(round(value))


def build_prioritizer(api_key: str, model: str) -> Prioritizer:
    if api_key:
        return OpenAIPrioritizer(api_key=api_key, model=model)
    return HeuristicPrioritizer()
