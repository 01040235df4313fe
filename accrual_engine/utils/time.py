"""Time utilities (UTC now, operational calendar, elapsed formatting)."""
from __future__ import annotations
from datetime import date, datetime, time, timezone, timedelta
from zoneinfo import ZoneInfo

from accrual_engine import config


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything stored is UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def operational_zone() -> ZoneInfo:
    return ZoneInfo(config.OPERATIONAL_TIMEZONE)


def operational_date(moment: datetime) -> date:
    """Calendar date of ``moment`` in the operational timezone."""
    return ensure_utc(moment).astimezone(operational_zone()).date()


def operational_today(now: datetime | None = None) -> date:
    return operational_date(now or utc_now())


def start_of_operational_day(day: date) -> datetime:
    """UTC instant at which ``day`` begins in the operational timezone."""
    local = datetime.combine(day, time.min, tzinfo=operational_zone())
    return local.astimezone(timezone.utc)


def end_of_operational_day(day: date) -> datetime:
    """UTC instant at which the day after ``day`` begins (exclusive bound)."""
    return start_of_operational_day(day + timedelta(days=1))


def parse_iso_date(value: str) -> date:
    return date.fromisoformat(value)


def format_elapsed(start: datetime, end: datetime | None = None) -> str:
    end_ts = end or utc_now()
    delta: timedelta = end_ts - start
    ms = int(delta.total_seconds() * 1000)
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60_000:
        return f"{ms/1000:.2f}s"
    return f"{delta.total_seconds()/60:.2f}m"


__all__ = [
    "utc_now",
    "ensure_utc",
    "operational_zone",
    "operational_date",
    "operational_today",
    "start_of_operational_day",
    "end_of_operational_day",
    "parse_iso_date",
    "format_elapsed",
]
