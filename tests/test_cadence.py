from __future__ import annotations

from datetime import datetime, timezone

import pytest

from tickq.db.models import CadenceType
from tickq.schedules.cadence import Cadence, CadenceError, compute_next_run_at, validate_cadence


def utc(*parts: int) -> datetime:
    return datetime(*parts, tzinfo=timezone.utc)


def test_daily_cadence_fires_next_day_when_from_is_the_slot() -> None:
    cadence = Cadence(CadenceType.DAILY, hour=9, minute=0)

    assert compute_next_run_at(cadence, utc(2024, 1, 10, 9, 0)) == utc(2024, 1, 11, 9, 0)
    assert compute_next_run_at(cadence, utc(2024, 1, 10, 8, 59)) == utc(2024, 1, 10, 9, 0)


def test_interval_cadence_adds_minutes() -> None:
    cadence = Cadence(CadenceType.INTERVAL, interval_minutes=30)

    assert compute_next_run_at(cadence, utc(2024, 1, 10, 9, 0)) == utc(2024, 1, 10, 9, 30)


def test_weekly_cadence_counts_days_from_sunday() -> None:
    # 2024-01-10 is a Wednesday.
    monday = Cadence(CadenceType.WEEKLY, day_of_week=1, hour=6, minute=15)
    sunday = Cadence(CadenceType.WEEKLY, day_of_week=0, hour=6, minute=15)
    wednesday = Cadence(CadenceType.WEEKLY, day_of_week=3, hour=9, minute=0)

    assert compute_next_run_at(monday, utc(2024, 1, 10, 9, 0)) == utc(2024, 1, 15, 6, 15)
    assert compute_next_run_at(sunday, utc(2024, 1, 10, 9, 0)) == utc(2024, 1, 14, 6, 15)
    assert compute_next_run_at(wednesday, utc(2024, 1, 10, 9, 0)) == utc(2024, 1, 17, 9, 0)
    assert compute_next_run_at(wednesday, utc(2024, 1, 10, 8, 0)) == utc(2024, 1, 10, 9, 0)


def test_monthly_cadence_clamps_to_month_end() -> None:
    cadence = Cadence(CadenceType.MONTHLY, day_of_month=31, hour=9, minute=0)

    assert compute_next_run_at(cadence, utc(2024, 2, 1, 0, 0)) == utc(2024, 2, 29, 9, 0)
    assert compute_next_run_at(cadence, utc(2024, 4, 30, 10, 0)) == utc(2024, 5, 31, 9, 0)
    assert compute_next_run_at(cadence, utc(2024, 12, 31, 9, 0)) == utc(2025, 1, 31, 9, 0)


def test_calendar_cadence_is_evaluated_in_schedule_timezone() -> None:
    cadence = Cadence(CadenceType.DAILY, hour=9, minute=0, timezone="America/New_York")

    # 12:00Z is 07:00 EST, so 09:00 local that day is 14:00Z.
    assert compute_next_run_at(cadence, utc(2024, 1, 10, 12, 0)) == utc(2024, 1, 10, 14, 0)
    # Summer time shifts the UTC instant by an hour.
    assert compute_next_run_at(cadence, utc(2024, 7, 10, 12, 0)) == utc(2024, 7, 10, 13, 0)


def test_compute_is_deterministic_and_returns_utc() -> None:
    cadence = Cadence(CadenceType.DAILY, hour=23, minute=45)
    naive = datetime(2024, 1, 10, 9, 0)

    first = compute_next_run_at(cadence, naive)
    second = compute_next_run_at(cadence, utc(2024, 1, 10, 9, 0))

    assert first == second == utc(2024, 1, 10, 23, 45)
    assert first.tzinfo == timezone.utc


@pytest.mark.parametrize(
    "cadence",
    [
        Cadence(CadenceType.INTERVAL),
        Cadence(CadenceType.INTERVAL, interval_minutes=0),
        Cadence(CadenceType.INTERVAL, interval_minutes=10081),
        Cadence(CadenceType.DAILY, hour=24, minute=0),
        Cadence(CadenceType.DAILY, hour=9, minute=60),
        Cadence(CadenceType.WEEKLY, hour=9, minute=0),
        Cadence(CadenceType.WEEKLY, day_of_week=7, hour=9, minute=0),
        Cadence(CadenceType.MONTHLY, day_of_month=0, hour=9, minute=0),
        Cadence(CadenceType.MONTHLY, day_of_month=32, hour=9, minute=0),
        Cadence(CadenceType.DAILY, hour=9, minute=0, timezone="Mars/Olympus_Mons"),
    ],
)
def test_invalid_cadences_are_rejected(cadence: Cadence) -> None:
    with pytest.raises(CadenceError):
        validate_cadence(cadence)


def test_cadence_error_is_a_value_error() -> None:
    with pytest.raises(ValueError):
        compute_next_run_at(Cadence(CadenceType.DAILY, hour=-1), utc(2024, 1, 10))
