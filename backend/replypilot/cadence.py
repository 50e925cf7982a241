"""Time rules for notification cadence.

Everything here is pure: given the same inputs (including ``now``) the
functions return the same values, which is what bucket identity relies on.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

MIN_CUSTOM_INTERVAL_MINUTES = 5
DEFAULT_DIGEST_TIME = time(9, 0)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class InvalidCadence(ValueError):
    pass


@dataclass(frozen=True)
class Window:
    window_start: datetime
    window_end: datetime
    scheduled_for: datetime


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize datetimes to timezone-aware UTC instances (SQLite hands back naive values)."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_timezone(name: Optional[str]) -> ZoneInfo:
    try:
        return ZoneInfo(name or "UTC")
    except (ZoneInfoNotFoundError, ValueError):
        return ZoneInfo("UTC")


def parse_hhmm(value) -> Optional[time]:
    if value is None or value == "":
        return None
    if isinstance(value, time):
        return value.replace(second=0, microsecond=0)
    parts = str(value).strip().split(":")
    if len(parts) < 2:
        raise ValueError(f"Expected HH:MM, got {value!r}")
    hour, minute = int(parts[0]), int(parts[1])
    return time(hour, minute)


def compute_window(
    cadence_mode: str,
    cadence_interval_minutes: Optional[int],
    digest_time: Optional[time],
    now: datetime,
    tz: Optional[str] = None,
) -> Window:
    now = as_utc(now)
    mode = (cadence_mode or "").lower()

    if mode == "hourly":
        start = now.replace(minute=0, second=0, microsecond=0)
        end = start + timedelta(hours=1)
        return Window(start, end, end)

    if mode == "daily":
        zone = resolve_timezone(tz)
        local_now = now.astimezone(zone)
        at = parse_hhmm(digest_time) or DEFAULT_DIGEST_TIME
        candidate = datetime.combine(local_now.date(), at, tzinfo=zone)
        if candidate <= local_now:
            candidate = datetime.combine(local_now.date() + timedelta(days=1), at, tzinfo=zone)
        scheduled_for = candidate.astimezone(timezone.utc)
        return Window(scheduled_for - timedelta(hours=24), scheduled_for, scheduled_for)

    if mode == "custom":
        interval = validate_custom_interval(cadence_interval_minutes)
        step = timedelta(minutes=interval)
        # Ceiling onto the epoch grid; a now exactly on a grid point closes that window.
        steps, remainder = divmod(now - _EPOCH, step)
        end = _EPOCH + (steps + (1 if remainder else 0)) * step
        return Window(end - step, end, end)

    raise InvalidCadence(f"Cadence mode {cadence_mode!r} does not batch notifications")


def validate_custom_interval(minutes: Optional[int]) -> int:
    if minutes is None:
        raise InvalidCadence("Custom cadence requires cadence_interval_minutes")
    minutes = int(minutes)
    if minutes < MIN_CUSTOM_INTERVAL_MINUTES:
        raise InvalidCadence(f"Custom cadence interval must be at least {MIN_CUSTOM_INTERVAL_MINUTES} minutes")
    return minutes


def is_quiet_hours(
    quiet_start: Optional[time],
    quiet_end: Optional[time],
    now: datetime,
    tz: Optional[str] = None,
) -> bool:
    if quiet_start is None or quiet_end is None:
        return False
    start = parse_hhmm(quiet_start)
    end = parse_hhmm(quiet_end)
    if start == end:
        return False
    local = as_utc(now).astimezone(resolve_timezone(tz)).time().replace(tzinfo=None)
    if start < end:
        return start <= local < end
    # Window wraps past midnight, e.g. 22:00-06:00.
    return local >= start or local < end


def local_day_bounds(now: datetime, tz: Optional[str] = None) -> tuple[datetime, datetime]:
    zone = resolve_timezone(tz)
    local_now = as_utc(now).astimezone(zone)
    start = datetime.combine(local_now.date(), time(0, 0), tzinfo=zone)
    end = datetime.combine(local_now.date() + timedelta(days=1), time(0, 0), tzinfo=zone)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)
