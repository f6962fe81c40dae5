from datetime import datetime, timedelta, timezone

from cadence.core.offsets import parse_offset, resolve_reminder_time
from cadence.core.recurrence import Frequency, Schedule, next_occurrence


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def test_parse_offset() -> None:
    assert parse_offset("2h") == timedelta(hours=2)
    assert parse_offset("1d") == timedelta(days=1)
    assert parse_offset("3w") == timedelta(weeks=3)
    assert parse_offset("90m") is None
    assert parse_offset("h") is None
    assert parse_offset("") is None
    assert parse_offset(None) is None


def test_weekly_routine_one_hour_before() -> None:
    schedule = Schedule(Frequency.WEEKLY, time="08:00", days=(1, 3, 5))
    now = utc(2025, 1, 7, 10, 0)
    occurrence = next_occurrence(schedule, now)
    assert occurrence == utc(2025, 1, 8, 8, 0)
    assert resolve_reminder_time(occurrence, "1h", schedule, now) == utc(2025, 1, 8, 7, 0)


def test_elapsed_lead_time_moves_to_next_cycle() -> None:
    schedule = Schedule(Frequency.DAILY, time="08:00")
    now = utc(2025, 1, 7, 7, 30)
    occurrence = next_occurrence(schedule, now)
    assert occurrence == utc(2025, 1, 7, 8, 0)
    assert resolve_reminder_time(occurrence, "1h", schedule, now) == utc(2025, 1, 8, 7, 0)


def test_monthly_week_ahead_rollover() -> None:
    schedule = Schedule(Frequency.MONTHLY, time="09:00", day=10)
    now = utc(2025, 1, 5, 12, 0)
    occurrence = next_occurrence(schedule, now)
    assert resolve_reminder_time(occurrence, "1w", schedule, now) == utc(2025, 2, 3, 9, 0)


def test_offset_longer_than_cycle_still_resolves() -> None:
    schedule = Schedule(Frequency.DAILY, time="08:00")
    now = utc(2025, 1, 7, 9, 0)
    fire_at = resolve_reminder_time(next_occurrence(schedule, now), "2d", schedule, now)
    assert fire_at is not None and fire_at > now


def test_yearly_elapsed_lead_time_is_unresolvable() -> None:
    schedule = Schedule(Frequency.YEARLY, time="08:00")
    now = utc(2025, 12, 31, 12, 0)
    assert resolve_reminder_time(next_occurrence(schedule, now), "1d", schedule, now) is None


def test_malformed_offset_returns_none() -> None:
    schedule = Schedule(Frequency.DAILY, time="08:00")
    now = utc(2025, 1, 7, 7, 0)
    assert resolve_reminder_time(utc(2025, 1, 7, 8, 0), "an hour", schedule, now) is None
