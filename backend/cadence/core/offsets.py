from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Optional

from loguru import logger

from .recurrence import Schedule, advance_one_cycle, ensure_utc

OFFSET_RE = re.compile(r"^(\d+)([hdw])$")

# Safety valve for month-length edge cases; not a correctness guarantee.
MAX_CYCLE_ATTEMPTS = 12

_UNITS = {
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
    "w": timedelta(weeks=1),
}


def parse_offset(expr: str | None) -> Optional[timedelta]:
    """"2h" / "1d" / "1w" -> timedelta, None when malformed."""
    if not expr:
        return None
    match = OFFSET_RE.match(expr.strip())
    if not match:
        return None
    return int(match.group(1)) * _UNITS[match.group(2)]


def resolve_reminder_time(
    next_occurrence: datetime,
    offset_expr: str,
    schedule: Schedule,
    now: datetime,
    tz: str | None = "UTC",
) -> Optional[datetime]:
    """
    Lead-time reminder instant for `next_occurrence`.

    When the lead time has already elapsed, move to the following occurrence
    of `schedule` and try again, giving up after MAX_CYCLE_ATTEMPTS.
    """
    offset = parse_offset(offset_expr)
    if offset is None:
        logger.warning("invalid reminder offset {!r}", offset_expr)
        return None

    now = ensure_utc(now)
    occurrence = ensure_utc(next_occurrence)
    fire_at = occurrence - offset

    attempts = 0
    while fire_at <= now and attempts < MAX_CYCLE_ATTEMPTS:
        attempts += 1
        following = advance_one_cycle(schedule, occurrence, tz)
        if following is None:
            logger.warning(
                "cannot advance {} schedule past {}, no lead-time reminder",
                schedule.frequency.value,
                occurrence.isoformat(),
            )
            return None
        occurrence = following
        fire_at = occurrence - offset

    if fire_at <= now:
        logger.warning(
            "no future reminder time after {} attempts (offset={}, last={})",
            attempts,
            offset_expr,
            fire_at.isoformat(),
        )
        return None

    return fire_at
