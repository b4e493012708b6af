"""Next-run computation for task schedules.

Only a small family of 5-field expressions is accepted:

- ``* * * * *``        every minute
- ``0 * * * *``        every hour at :00
- ``M H * * *``        every day at H:M (``0 0 * * *`` is daily at midnight)
- ``0 0 * * D``        weekly at midnight, D is 0-7 or MON..SUN
- ``*/N * * * *``      every N minutes
- ``0 */N * * *``      every N hours

Anything else is rejected by :func:`validate` so that bad schedules are
caught when a task is saved, never when the worker ticks.
"""

import re
from datetime import datetime, timedelta
from typing import Optional

from croniter import croniter

WEEKDAY_NAMES = ("SUN", "MON", "TUE", "WED", "THU", "FRI", "SAT")

_STEP = re.compile(r"^\*/(\d+)$")


class CronError(ValueError):
    pass


def _int_in(value: str, low: int, high: int) -> bool:
    return value.isdigit() and low <= int(value) <= high


def _is_weekday(value: str) -> bool:
    return _int_in(value, 0, 7) or value.upper() in WEEKDAY_NAMES


def _step_in(value: str, low: int, high: int) -> bool:
    match = _STEP.match(value)
    return bool(match) and low <= int(match.group(1)) <= high


def validate(expression: str) -> str:
    """Return the normalized expression or raise :class:`CronError`."""
    if not isinstance(expression, str):
        raise CronError(f"Invalid cron expression: {expression!r}")
    parts = expression.split()
    if len(parts) != 5:
        raise CronError(f"Invalid cron format. Expected 5 parts, got {len(parts)}")
    minute, hour, day, month, weekday = parts
    if day != "*" or month != "*":
        raise CronError(f"Unsupported cron pattern: {expression}")

    supported = False
    if weekday == "*":
        if minute == "*" and hour == "*":
            supported = True
        elif minute == "0" and hour == "*":
            supported = True
        elif _int_in(minute, 0, 59) and _int_in(hour, 0, 23):
            supported = True
        elif _step_in(minute, 1, 59) and hour == "*":
            supported = True
        elif minute == "0" and _step_in(hour, 1, 23):
            supported = True
    elif minute == "0" and hour == "0" and _is_weekday(weekday):
        weekday = str(WEEKDAY_NAMES.index(weekday.upper()) if not weekday.isdigit() else int(weekday) % 7)
        supported = True

    if not supported:
        raise CronError(f"Unsupported cron pattern: {expression}")
    return " ".join((minute, hour, day, month, weekday))


def next_run(expression: str, now: datetime, active: bool = True) -> Optional[datetime]:
    if not active:
        return None
    normalized = validate(expression)
    candidate = croniter(normalized, now).get_next(datetime)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def is_due(next_run_at: Optional[datetime], now: datetime) -> bool:
    return next_run_at is not None and next_run_at <= now
