from __future__ import annotations

import logging
import re
from datetime import datetime, timedelta, tzinfo

from agent_scheduler.util import parse_iso

logger = logging.getLogger(__name__)

MINUTE_MS = 60 * 1000
SECOND_MS = 1000

RECURRING_FAMILY = frozenset({"recurring", "interval", "runloop"})

_RECURRING_RE = re.compile(r"^(daily|weekdays)@(\d{1,2}):(\d{2})$")


class SchedulerValidationError(ValueError):
    pass


def _positive_int(value: str) -> int | None:
    try:
        parsed = int(str(value).strip(), 10)
    except ValueError:
        return None
    if parsed <= 0:
        return None
    return parsed


def _parse_recurring(schedule: str) -> tuple[str, int, int] | None:
    match = _RECURRING_RE.match(schedule.strip())
    if match is None:
        return None
    kind, hour, minute = match.group(1), int(match.group(2)), int(match.group(3))
    if hour > 23 or minute > 59:
        return None
    return kind, hour, minute


def _to_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _wall_clock(now: int, tz: tzinfo | None) -> datetime:
    # Naive datetimes are local time; timestamp() converts them back correctly.
    if tz is None:
        return datetime.fromtimestamp(now / 1000)
    return datetime.fromtimestamp(now / 1000, tz=tz)


def _next_recurring(kind: str, hour: int, minute: int, now: int, tz: tzinfo | None) -> int:
    after = _wall_clock(now, tz)
    candidate = after.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if kind == "daily":
        if candidate <= after:
            candidate = (candidate + timedelta(days=1)).replace(hour=hour, minute=minute)
        return _to_ms(candidate)

    while candidate <= after or candidate.weekday() >= 5:
        candidate = (candidate + timedelta(days=1)).replace(hour=hour, minute=minute)
    return _to_ms(candidate)


def compute_next_run_time(
    task_type: str,
    schedule: str,
    *,
    now: int,
    next_run_time: int = 0,
    tz: tzinfo | None = None,
    task_id: str = "",
) -> int:
    """Return the epoch-ms of the next firing, or ``0`` when there is none.

    ``interval`` and ``runloop`` carry forward from a ``next_run_time`` that is
    still in the future; ``heartbeat`` always counts from ``now``. A ``0`` for a
    ``once`` task only means the moment has passed; for every other type it is a
    failure the caller has to handle.
    """
    schedule = schedule or ""

    if task_type == "once":
        run_at = parse_iso(schedule)
        if run_at is None:
            logger.error("Invalid datetime for task %s: %s", task_id, schedule)
            return 0
        if run_at.tzinfo is None and tz is not None:
            run_at = run_at.replace(tzinfo=tz)
        run_ms = _to_ms(run_at)
        return run_ms if run_ms > now else 0

    if task_type in ("interval", "heartbeat", "runloop"):
        amount = _positive_int(schedule)
        if amount is None:
            logger.error("Invalid %s for task %s: %s", task_type, task_id, schedule)
            return 0
        unit = SECOND_MS if task_type == "runloop" else MINUTE_MS
        base = now
        if task_type != "heartbeat" and next_run_time > now:
            base = next_run_time
        return base + amount * unit

    if task_type == "recurring":
        parsed = _parse_recurring(schedule)
        if parsed is None:
            logger.error("Unsupported recurring schedule format for task %s: %s", task_id, schedule)
            return 0
        return _next_recurring(*parsed, now=now, tz=tz)

    logger.error("Unknown task type for task %s: %s", task_id, task_type)
    return 0
