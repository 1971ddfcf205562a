from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

log = logging.getLogger("timeblock.config")

CONTEXT_FILES = ("context", "marketingcontext", "financecontext")


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        log.warning("%s=%r is not an integer, using %s", name, raw, default)
        return default


def load_business_context(
    base_dir: str | Path, files: Sequence[str] = CONTEXT_FILES
) -> Optional[str]:
    """Concatenate the business context files found in `base_dir`; None if there are none."""
    base = Path(base_dir)
    sections = []
    for name in files:
        path = base / name
        if not path.is_file():
            continue
        sections.append(f"=== {name.upper()} ===\n{path.read_text(encoding='utf-8').strip()}")
    if not sections:
        log.warning("no business context files in %s", base)
        return None
    return "\n\n".join(sections)


@dataclass(frozen=True)
class Settings:
    """Process configuration, loaded once at startup and passed to whoever needs it."""

    db_path: str = "timeblock.sqlite3"
    telegram_token: str = ""
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    default_timezone: str = "UTC"
    buffer_minutes: int = 5
    max_days_ahead: int = 7
    min_time_saved_minutes: int = 5
    business_context: Optional[str] = None

    @classmethod
    def from_env(cls) -> Settings:
        context_dir = _env("CONTEXT_DIR")
        return cls(
            db_path=_env("DB_PATH", "timeblock.sqlite3"),
            telegram_token=_env("TELEGRAM_TOKEN"),
            openai_api_key=_env("OPENAI_API_KEY"),
            openai_model=_env("OPENAI_MODEL", "gpt-4o-mini") or "gpt-4o-mini",
            default_timezone=_env("DEFAULT_TIMEZONE", "UTC") or "UTC",
            buffer_minutes=max(0, _env_int("BUFFER_MINUTES", 5)),
            max_days_ahead=max(0, _env_int("MAX_DAYS_AHEAD", 7)),
            min_time_saved_minutes=max(0, _env_int("MIN_TIME_SAVED_MINUTES", 5)),
            business_context=load_business_context(context_dir) if context_dir else None,
        )
