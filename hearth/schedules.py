"""Schedule text for stored tasks: parsing, normalizing, next-run times.

Supported forms: ``every 15m``, ``every 2h``, ``daily 09:30`` and
``weekly mon 08:00``. Times are UTC.
"""

from __future__ import annotations

import re
from datetime import UTC, datetime, timedelta
from typing import Any

from hearth.exceptions import ScheduleError

WEEKDAYS = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
_WEEKDAY_ALIASES = {
    "monday": "mon",
    "tues": "tue",
    "tuesday": "tue",
    "wednesday": "wed",
    "thur": "thu",
    "thurs": "thu",
    "thursday": "thu",
    "friday": "fri",
    "saturday": "sat",
    "sunday": "sun",
}
_INTERVAL_RE = re.compile(r"(\d+)\s*([mh])")
_HHMM_RE = re.compile(r"([01]?\d|2[0-3]):([0-5]\d)")


def now_utc() -> datetime:
    return datetime.now(UTC)


def _parse_hhmm(text: str) -> tuple[int, int]:
    match = _HHMM_RE.fullmatch(text.strip())
    if not match:
        raise ScheduleError(f"Expected time as HH:MM, got '{text}'")
    return int(match.group(1)), int(match.group(2))


def parse_schedule(text: str) -> dict[str, Any]:
    """Parse schedule text into a schedule dict.

    Raises:
        ScheduleError if the text is not a supported schedule
    """
    tokens = (text or "").strip().lower().split()
    if not tokens:
        raise ScheduleError("Schedule is empty")

    head, args = tokens[0], tokens[1:]
    if head == "every" and len(args) == 1:
        match = _INTERVAL_RE.fullmatch(args[0])
        if not match or int(match.group(1)) <= 0:
            raise ScheduleError("Use: every <N>m or every <N>h (example: every 15m)")
        return {
            "type": "interval",
            "unit": "minutes" if match.group(2) == "m" else "hours",
            "interval": int(match.group(1)),
        }

    if head == "daily" and len(args) == 1:
        hour, minute = _parse_hhmm(args[0])
        return {"type": "daily", "hour": hour, "minute": minute}

    if head == "weekly" and len(args) == 2:
        day = _WEEKDAY_ALIASES.get(args[0], args[0])
        if day not in WEEKDAYS:
            raise ScheduleError("Weekday must be one of mon..sun")
        hour, minute = _parse_hhmm(args[1])
        return {"type": "weekly", "day": day, "hour": hour, "minute": minute}

    raise ScheduleError("Unsupported schedule. Use: every <N>m|<N>h, daily HH:MM, weekly <day> HH:MM")


def schedule_to_text(schedule: dict[str, Any]) -> str:
    """Canonical text for a parsed schedule."""
    kind = schedule.get("type")
    if kind == "interval":
        suffix = "m" if schedule.get("unit") == "minutes" else "h"
        return f"every {int(schedule['interval'])}{suffix}"
    clock = f"{int(schedule.get('hour', 0)):02d}:{int(schedule.get('minute', 0)):02d}"
    if kind == "daily":
        return f"daily {clock}"
    if kind == "weekly":
        return f"weekly {schedule.get('day', 'mon')} {clock}"
    raise ScheduleError(f"Unknown schedule type: {kind}")


def compute_next_run(schedule: dict[str, Any], now: datetime | None = None) -> datetime:
    """Next UTC run time strictly after `now`."""
    current = (now or now_utc()).astimezone(UTC)
    kind = schedule.get("type")

    if kind == "interval":
        interval = max(1, int(schedule.get("interval", 1)))
        minutes = interval if schedule.get("unit") == "minutes" else interval * 60
        return current + timedelta(minutes=minutes)

    hour = int(schedule.get("hour", 0))
    minute = int(schedule.get("minute", 0))
    candidate = current.replace(hour=hour, minute=minute, second=0, microsecond=0)

    if kind == "daily":
        if candidate <= current:
            candidate += timedelta(days=1)
        return candidate

    if kind == "weekly":
        target = WEEKDAYS.index(schedule.get("day", "mon"))
        candidate += timedelta(days=(target - current.weekday()) % 7)
        if candidate <= current:
            candidate += timedelta(days=7)
        return candidate

    raise ScheduleError(f"Unknown schedule type: {kind}")
