from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta

import pytest

from snapnav.config import ScheduleConfig
from snapnav.errors import ScheduleConfigError
from snapnav.schedule import ScheduleOracle

MONDAY = datetime(2024, 1, 8, tzinfo=UTC)
THURSDAY = datetime(2024, 1, 11, tzinfo=UTC)
FRIDAY = datetime(2024, 1, 12, tzinfo=UTC)


def _at(day: datetime, hour: int, minute: int = 0) -> datetime:
    return day.replace(hour=hour, minute=minute)


def test_concrete_scenario_blackout_and_wrapped_window(utc_oracle: ScheduleOracle) -> None:
    during_session = _at(MONDAY, 10)
    assert utc_oracle.should_pause(during_session)
    assert not utc_oracle.should_collect(during_session)

    after_close = _at(MONDAY, 14)
    assert utc_oracle.should_collect(after_close)

    next_morning = _at(MONDAY + timedelta(days=1), 6)
    assert utc_oracle.should_collect(next_morning)


def test_gap_between_deadline_and_open_is_not_collectable(utc_oracle: ScheduleOracle) -> None:
    before_open = _at(MONDAY, 8)
    assert not utc_oracle.should_pause(before_open)
    assert not utc_oracle.is_within_collection_window(before_open)
    assert not utc_oracle.should_collect(before_open)


def test_blackout_boundaries_are_half_open(utc_oracle: ScheduleOracle) -> None:
    assert utc_oracle.is_within_blackout(_at(MONDAY, 9))
    assert utc_oracle.is_within_blackout(_at(MONDAY, 12, 59))
    assert not utc_oracle.is_within_blackout(_at(MONDAY, 13))
    assert not utc_oracle.is_within_blackout(_at(MONDAY, 8, 59))


def test_non_trading_day_is_always_collectable(utc_oracle: ScheduleOracle) -> None:
    for hour in range(24):
        now = _at(FRIDAY, hour)
        assert not utc_oracle.is_trading_day(now)
        assert not utc_oracle.is_within_blackout(now)
        assert utc_oracle.is_within_collection_window(now)
        assert utc_oracle.should_collect(now)


@pytest.mark.parametrize(
    "overrides",
    [
        {},
        {"analysis_deadline": "18:00"},
        {"timezone": "Asia/Tehran", "trading_days": frozenset({6, 0, 1, 2, 3})},
        {"market_open": "00:30", "market_close": "23:30", "analysis_deadline": "00:15"},
    ],
)
def test_should_collect_is_window_and_not_blackout(
    schedule_config: Callable[..., ScheduleConfig], overrides: dict[str, object]
) -> None:
    oracle = ScheduleOracle(schedule_config(**overrides))
    start = datetime(2024, 1, 7, tzinfo=UTC)
    for step in range(7 * 24 * 4):
        now = start + timedelta(minutes=15 * step)
        expected = oracle.is_within_collection_window(now) and not oracle.is_within_blackout(now)
        assert oracle.should_collect(now) == expected
        assert oracle.should_pause(now) == oracle.is_within_blackout(now)
        if not oracle.is_trading_day(now):
            assert oracle.is_within_collection_window(now)


def test_non_wrapping_window(schedule_config: Callable[..., ScheduleConfig]) -> None:
    oracle = ScheduleOracle(schedule_config(analysis_deadline="18:00"))
    assert oracle.should_collect(_at(MONDAY, 14))
    assert not oracle.should_collect(_at(MONDAY, 19))
    assert not oracle.should_collect(_at(MONDAY, 6))


def test_analysis_deadline(utc_oracle: ScheduleOracle) -> None:
    assert utc_oracle.is_past_analysis_deadline(_at(MONDAY, 8))
    assert not utc_oracle.is_past_analysis_deadline(_at(MONDAY, 10))
    assert not utc_oracle.is_past_analysis_deadline(_at(MONDAY, 6))

    assert not utc_oracle.should_run_analysis(_at(MONDAY, 6))
    assert utc_oracle.should_run_analysis(_at(MONDAY, 6), crawl_complete=True)
    assert utc_oracle.should_run_analysis(_at(MONDAY, 14))


def test_delay_until_market_time(utc_oracle: ScheduleOracle) -> None:
    assert utc_oracle.get_delay_until_market_time(_at(MONDAY, 12), "13:00") == 60
    assert utc_oracle.get_delay_until_market_time(_at(MONDAY, 14), "13:00") == 23 * 60
    assert utc_oracle.get_delay_until_market_time(_at(MONDAY, 13), "13:00") == 24 * 60


def test_delay_skips_to_next_trading_day(utc_oracle: ScheduleOracle) -> None:
    # Thursday after the target: Friday and Saturday are skipped, Sunday is next.
    delay = utc_oracle.get_delay_until_market_time(
        _at(THURSDAY, 14), "13:00", require_trading_day=True
    )
    assert delay == 3 * 24 * 60 - 60

    delay = utc_oracle.get_delay_until_market_time(
        _at(FRIDAY, 10), "13:00", require_trading_day=True
    )
    assert delay == 2 * 24 * 60 + 3 * 60


def test_projection_uses_market_timezone() -> None:
    oracle = ScheduleOracle(ScheduleConfig())
    late_utc = datetime(2024, 1, 8, 21, 0, tzinfo=UTC)

    clock = oracle.project(late_utc)
    assert oracle.trading_date(late_utc) == "2024-01-09"
    assert (clock.hour, clock.minute) == (0, 30)
    assert clock.weekday == 2
    assert oracle.format_market_clock(late_utc) == "00:30"


def test_naive_datetimes_are_treated_as_utc(utc_oracle: ScheduleOracle) -> None:
    assert utc_oracle.should_pause(datetime(2024, 1, 8, 10, 0))


def test_day_bounds_cover_one_local_day() -> None:
    oracle = ScheduleOracle(ScheduleConfig())
    start, end = oracle.day_bounds("2024-01-09")
    assert start == datetime(2024, 1, 8, 20, 30, tzinfo=UTC)
    assert end == datetime(2024, 1, 9, 20, 30, tzinfo=UTC)


def test_trading_date_of_handles_bad_input(utc_oracle: ScheduleOracle) -> None:
    assert utc_oracle.trading_date_of("2024-01-08T23:59:00Z") == "2024-01-08"
    assert utc_oracle.trading_date_of("not a date") is None
    assert utc_oracle.trading_date_of(None) is None


@pytest.mark.parametrize(
    "overrides",
    [
        {"market_open": "9am"},
        {"market_close": "25:00"},
        {"analysis_deadline": "07:60"},
        {"market_open": "13:00", "market_close": "09:00"},
        {"trading_days": frozenset({7})},
        {"trading_days": frozenset()},
        {"timezone": "Mars/Olympus_Mons"},
        {"retention_days": 0},
        {"poll_interval_ms": 0},
    ],
)
def test_invalid_calendar_is_fatal(
    schedule_config: Callable[..., ScheduleConfig], overrides: dict[str, object]
) -> None:
    with pytest.raises(ScheduleConfigError):
        ScheduleOracle(schedule_config(**overrides))


def test_describe_reports_windows(utc_oracle: ScheduleOracle) -> None:
    description = utc_oracle.describe()
    assert description["blackout"] == "09:00-13:00"
    assert description["collection_window"] == "13:00-07:00"
    assert description["trading_days"] == [0, 1, 2, 3, 4]
    assert description["retention_days"] == 7
