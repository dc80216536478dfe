from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tickq.core.clock import coerce_utc
from tickq.db.models import CadenceType

if TYPE_CHECKING:
    from tickq.db.models import JobSchedule
    from tickq.schedules.types import ScheduleSnapshot

MIN_INTERVAL_MINUTES = 1
MAX_INTERVAL_MINUTES = 7 * 24 * 60
DEFAULT_TIMEZONE = "UTC"


class CadenceError(ValueError):
    pass


@dataclass(frozen=True)
class Cadence:
    """When a schedule fires. ``day_of_week`` counts from 0 = Sunday."""

    cadence_type: CadenceType
    interval_minutes: int | None = None
    day_of_week: int | None = None
    day_of_month: int | None = None
    hour: int | None = None
    minute: int | None = None
    timezone: str | None = None

    @classmethod
    def from_schedule(cls, schedule: JobSchedule | ScheduleSnapshot) -> Cadence:
        return cls(
            cadence_type=CadenceType(schedule.cadence_type),
            interval_minutes=schedule.interval_minutes,
            day_of_week=schedule.day_of_week,
            day_of_month=schedule.day_of_month,
            hour=schedule.hour,
            minute=schedule.minute,
            timezone=schedule.timezone,
        )

    @property
    def zone(self) -> ZoneInfo:
        return _load_zone(self.timezone)


def _load_zone(name: str | None) -> ZoneInfo:
    try:
        return ZoneInfo((name or DEFAULT_TIMEZONE).strip() or DEFAULT_TIMEZONE)
    except (ZoneInfoNotFoundError, ValueError):
        raise CadenceError(f"Unknown timezone: {name}") from None


def _check_range(name: str, value: int | None, low: int, high: int, *, required: bool) -> None:
    if value is None:
        if required:
            raise CadenceError(f"{name} is required")
        return
    if not low <= value <= high:
        raise CadenceError(f"{name} must be between {low} and {high}")


def validate_cadence(cadence: Cadence) -> Cadence:
    kind = cadence.cadence_type
    _check_range(
        "interval_minutes",
        cadence.interval_minutes,
        MIN_INTERVAL_MINUTES,
        MAX_INTERVAL_MINUTES,
        required=kind == CadenceType.INTERVAL,
    )
    _check_range("hour", cadence.hour, 0, 23, required=False)
    _check_range("minute", cadence.minute, 0, 59, required=False)
    _check_range("day_of_week", cadence.day_of_week, 0, 6, required=kind == CadenceType.WEEKLY)
    _check_range("day_of_month", cadence.day_of_month, 1, 31, required=kind == CadenceType.MONTHLY)
    _load_zone(cadence.timezone)
    return cadence


def _at_local(day: date, cadence: Cadence, zone: ZoneInfo) -> datetime:
    local = datetime.combine(day, time(cadence.hour or 0, cadence.minute or 0), tzinfo=zone)
    return local.astimezone(timezone.utc)


def _clamped_month_day(year: int, month: int, day_of_month: int) -> date:
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(day_of_month, last_day))


def compute_next_run_at(cadence: Cadence, from_: datetime) -> datetime:
    """First firing strictly after ``from_``, as an aware UTC datetime.

    Calendar cadences are evaluated as wall-clock times in the cadence's
    timezone. Monthly days past a month's end clamp to its last day.
    """
    validate_cadence(cadence)
    start = coerce_utc(from_)

    if cadence.cadence_type == CadenceType.INTERVAL:
        return start + timedelta(minutes=cadence.interval_minutes)

    zone = cadence.zone
    local_day = start.astimezone(zone).date()

    if cadence.cadence_type == CadenceType.DAILY:
        for offset in range(3):
            candidate = _at_local(local_day + timedelta(days=offset), cadence, zone)
            if candidate > start:
                return candidate

    elif cadence.cadence_type == CadenceType.WEEKLY:
        # date.weekday() counts from Monday.
        target_weekday = (cadence.day_of_week - 1) % 7
        days_ahead = (target_weekday - local_day.weekday()) % 7
        for offset in (days_ahead, days_ahead + 7):
            candidate = _at_local(local_day + timedelta(days=offset), cadence, zone)
            if candidate > start:
                return candidate

    elif cadence.cadence_type == CadenceType.MONTHLY:
        year, month = local_day.year, local_day.month
        for _ in range(3):
            candidate = _at_local(_clamped_month_day(year, month, cadence.day_of_month), cadence, zone)
            if candidate > start:
                return candidate
            year, month = (year + 1, 1) if month == 12 else (year, month + 1)

    raise CadenceError(f"Could not compute next run for cadence {cadence.cadence_type.value}")
