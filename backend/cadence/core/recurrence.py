from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil.relativedelta import relativedelta
from dateutil.rrule import rrulestr
from loguru import logger

# RRULE day codes, indexed like schedule days (0=Sunday)
WEEKDAY_CODES = ("SU", "MO", "TU", "WE", "TH", "FR", "SA")

# Alarm rule parts the scheduler can expand
RULE_PARTS = {"FREQ", "INTERVAL", "BYDAY", "BYMONTHDAY", "BYSETPOS", "COUNT"}
RULE_FREQUENCIES = {"DAILY", "WEEKLY", "MONTHLY"}

_RELATIVE_RE = re.compile(r"^-(\d+)\s*(min|mins|minute|minutes|hour|hours|h)$")


class Frequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    YEARLY = "YEARLY"


@dataclass(frozen=True)
class Schedule:
    """A recurring wall-clock schedule, evaluated in the owner's timezone."""

    frequency: Frequency
    time: Optional[str] = None  # "HH:MM"
    days: tuple[int, ...] = ()  # 0=Sunday .. 6=Saturday
    day: Optional[int] = None  # day of month, 1-31

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None, frequency: str | None = None) -> "Schedule":
        data = data or {}
        freq = Frequency((frequency or data.get("frequency") or "").upper())
        days = data.get("days") or ()
        return cls(
            frequency=freq,
            time=data.get("time") or None,
            days=tuple(int(d) for d in days),
            day=int(data["day"]) if data.get("day") is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"frequency": self.frequency.value}
        if self.time:
            out["time"] = self.time
        if self.frequency is Frequency.WEEKLY and self.days:
            out["days"] = sorted(set(self.days))
        if self.frequency is Frequency.MONTHLY and self.day is not None:
            out["day"] = self.day
        return out

    def with_time(self, value: str | None) -> "Schedule":
        return Schedule(frequency=self.frequency, time=value, days=self.days, day=self.day)


# ---------- Helpers ----------


def parse_clock(value: str | None) -> Optional[time]:
    """Parse "HH:MM" into a time; None when absent or malformed."""
    if not value:
        return None
    try:
        hour_str, minute_str = value.strip().split(":")
        hour = int(hour_str)
        minute = int(minute_str)
    except ValueError:
        return None
    if not (0 <= hour <= 23 and 0 <= minute <= 59):
        return None
    return time(hour=hour, minute=minute)


def format_clock(value: time) -> str:
    return f"{value.hour:02d}:{value.minute:02d}"


def resolve_timezone(name: str | None) -> ZoneInfo:
    if not name:
        return ZoneInfo("UTC")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("unknown timezone {!r}, falling back to UTC", name)
        return ZoneInfo("UTC")


def ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def sunday_index(d: date) -> int:
    # date.weekday() is Monday=0
    return (d.weekday() + 1) % 7


def _at(d: date, clock: time, zone: ZoneInfo) -> datetime:
    return datetime.combine(d, clock, tzinfo=zone)


# ---------- Next occurrence ----------


def next_occurrence(schedule: Schedule, now: datetime, tz: str | None = "UTC") -> Optional[datetime]:
    """
    Next firing instant of `schedule` strictly after `now`, as aware UTC.
    Returns None when the schedule lacks the fields its frequency needs.
    """
    now = ensure_utc(now)
    zone = resolve_timezone(tz)
    local_today = now.astimezone(zone).date()

    clock = parse_clock(schedule.time)
    if schedule.time and clock is None:
        logger.warning("malformed schedule time {!r}", schedule.time)
        return None

    freq = schedule.frequency
    candidate: Optional[datetime] = None

    if freq is Frequency.DAILY:
        if clock is None:
            return None
        candidate = _at(local_today, clock, zone)
        if candidate <= now:
            candidate = _at(local_today + timedelta(days=1), clock, zone)

    elif freq is Frequency.WEEKLY:
        days = {d for d in schedule.days if 0 <= d <= 6}
        if not days:
            return None
        clock = clock or time.min
        today_idx = sunday_index(local_today)
        for weekday in days:
            delta = (weekday - today_idx) % 7
            d = _at(local_today + timedelta(days=delta), clock, zone)
            if d <= now:
                d = _at(local_today + timedelta(days=delta + 7), clock, zone)
            if candidate is None or d < candidate:
                candidate = d

    elif freq is Frequency.MONTHLY:
        if schedule.day is None or not (1 <= schedule.day <= 31):
            return None
        clock = clock or time.min
        # relativedelta clamps day 31 to the last day of shorter months
        candidate = _at(local_today + relativedelta(day=schedule.day), clock, zone)
        if candidate <= now:
            candidate = _at(local_today + relativedelta(months=1, day=schedule.day), clock, zone)

    elif freq is Frequency.YEARLY:
        if clock is None:
            return None
        candidate = _at(date(local_today.year, 1, 1), clock, zone)
        if candidate <= now:
            candidate = _at(date(local_today.year + 1, 1, 1), clock, zone)

    if candidate is None:
        return None
    return candidate.astimezone(timezone.utc)


def advance_one_cycle(schedule: Schedule, occurrence: datetime, tz: str | None = "UTC") -> Optional[datetime]:
    """The occurrence after `occurrence`. YEARLY is not supported here."""
    if schedule.frequency is Frequency.YEARLY:
        return None
    return next_occurrence(schedule, occurrence, tz)


# ---------- Routine task reminder time ----------


def apply_reminder_time(routine_time: str, override: str | None) -> str:
    """
    Clock time for a routine task reminder.
    `override` is either an absolute "HH:MM" or a relative "-15min" / "-1hour"
    taken off the routine time, wrapping around midnight.
    """
    if not override:
        return routine_time

    value = override.strip().lower()
    if value.startswith("-"):
        base = parse_clock(routine_time)
        match = _RELATIVE_RE.match(value)
        if base is None or match is None:
            logger.warning("unsupported relative reminder time {!r}", override)
            return routine_time
        amount = int(match.group(1))
        minutes = amount if match.group(2).startswith("min") else amount * 60
        total = (base.hour * 60 + base.minute - minutes) % (24 * 60)
        return f"{total // 60:02d}:{total % 60:02d}"

    absolute = parse_clock(value)
    if absolute is None:
        logger.warning("unsupported reminder time {!r}", override)
        return routine_time
    return format_clock(absolute)


def is_valid_reminder_time(value: str) -> bool:
    value = value.strip().lower()
    if value.startswith("-"):
        return _RELATIVE_RE.match(value) is not None
    return parse_clock(value) is not None


# ---------- RFC 5545 recurrence rules ----------


def build_recurrence_rule(schedule: Schedule) -> Optional[str]:
    if schedule.frequency is Frequency.DAILY:
        return "FREQ=DAILY"
    if schedule.frequency is Frequency.WEEKLY:
        days = sorted({d for d in schedule.days if 0 <= d <= 6})
        if not days:
            return None
        return "FREQ=WEEKLY;BYDAY=" + ",".join(WEEKDAY_CODES[d] for d in days)
    if schedule.frequency is Frequency.MONTHLY:
        if schedule.day is None:
            return None
        if schedule.day <= 28:
            return f"FREQ=MONTHLY;BYMONTHDAY={schedule.day}"
        # Last of 28..day, so short months ring on their final day
        days = ",".join(str(d) for d in range(28, schedule.day + 1))
        return f"FREQ=MONTHLY;BYMONTHDAY={days};BYSETPOS=-1"
    return "FREQ=YEARLY"


def check_recurrence_rule(rule: str) -> str:
    """
    Normalise an alarm rule and reject anything the alarm scheduler cannot
    advance. Raises ValueError with a readable message.
    """
    rule = rule.strip().upper()
    if rule.startswith("RRULE:"):
        rule = rule[len("RRULE:"):]

    parts: dict[str, str] = {}
    for chunk in filter(None, rule.split(";")):
        key, sep, value = chunk.partition("=")
        if not sep:
            raise ValueError(f"malformed rule part {chunk!r}")
        parts[key] = value
    unsupported = set(parts) - RULE_PARTS
    if unsupported:
        raise ValueError(f"unsupported rule parts: {', '.join(sorted(unsupported))}")

    if parts.get("FREQ") not in RULE_FREQUENCIES:
        raise ValueError("FREQ must be DAILY, WEEKLY or MONTHLY")
    try:
        rrulestr(rule, dtstart=datetime(2000, 1, 1))
    except (KeyError, ValueError, TypeError) as exc:
        raise ValueError(f"invalid recurrence rule: {exc}") from exc
    return rule


def next_rule_occurrence(rule: str, anchor: datetime, now: datetime, tz: str | None = "UTC") -> Optional[datetime]:
    """
    Next ring of a recurring alarm strictly after `now`. The rule is expanded
    from the alarm's own instant in its local wall-clock time.
    """
    zone = resolve_timezone(tz)
    start = ensure_utc(anchor).astimezone(zone).replace(tzinfo=None, microsecond=0)
    local_now = ensure_utc(now).astimezone(zone).replace(tzinfo=None)
    try:
        recurrence = rrulestr(rule, dtstart=start)
    except (ValueError, TypeError):
        logger.warning("cannot expand recurrence rule {!r}", rule)
        return None

    following = recurrence.after(local_now)
    if following is None:
        return None
    return following.replace(tzinfo=zone).astimezone(timezone.utc)
