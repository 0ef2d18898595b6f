"""Business-day ("shift date") arithmetic. Every time range comes from :func:`shift_window`."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from shiftledger.config import Settings, settings as default_settings


@dataclass(frozen=True)
class ShiftWindow:
    shift_date: date
    starts_at: datetime
    ends_at: datetime

    @property
    def length(self) -> timedelta:
        return self.ends_at - self.starts_at

    def contains(self, instant: datetime) -> bool:
        return self.starts_at <= instant.astimezone(timezone.utc) < self.ends_at


def parse_shift_date(value: date | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value.strip())


def shift_window(shift_date: date | str, config: Settings | None = None) -> ShiftWindow:
    """Half-open ``[starts_at, ends_at)`` in UTC, the same length every day."""
    config = config or default_settings
    day = parse_shift_date(shift_date)
    local_start = datetime.combine(day, time(config.shift_start_hour, 0), tzinfo=ZoneInfo(config.shift_timezone))
    starts_at = local_start.astimezone(timezone.utc)
    ends_at = starts_at + timedelta(hours=config.shift_length_hours)
    return ShiftWindow(shift_date=day, starts_at=starts_at, ends_at=ends_at)


def business_date_for(instant: datetime, config: Settings | None = None) -> date:
    # before the local cutoff counts toward the previous shift; naive is UTC
    config = config or default_settings
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=timezone.utc)
    local_at = instant.astimezone(ZoneInfo(config.shift_timezone))
    end_hour = config.shift_start_hour + config.shift_length_hours
    business_date = local_at.date()
    if end_hour > 24 and local_at.time() < time(end_hour % 24, 0):
        business_date = business_date - timedelta(days=1)
    return business_date
