from __future__ import annotations

from collections.abc import Callable
from typing import Any

import pytest

from snapnav.config import ScheduleConfig
from snapnav.schedule import ScheduleOracle


@pytest.fixture
def schedule_config() -> Callable[..., ScheduleConfig]:
    """UTC calendar trading Sunday..Thursday with a 09:00-13:00 blackout."""

    def factory(**overrides: Any) -> ScheduleConfig:
        values: dict[str, Any] = {
            "timezone": "UTC",
            "trading_days": frozenset({0, 1, 2, 3, 4}),
            "market_open": "09:00",
            "market_close": "13:00",
            "analysis_deadline": "07:00",
            "retry_delay_ms": 0,
        }
        values.update(overrides)
        return ScheduleConfig(**values)

    return factory


@pytest.fixture
def utc_oracle(schedule_config: Callable[..., ScheduleConfig]) -> ScheduleOracle:
    return ScheduleOracle(schedule_config())


@pytest.fixture
def make_snapshot() -> Callable[..., dict[str, Any]]:
    def factory(symbol_id: str, date_time: str, /, **overrides: Any) -> dict[str, Any]:
        record: dict[str, Any] = {
            "id": symbol_id,
            "date_time": date_time,
            "symbol_name": f"{symbol_id} Industries",
            "symbol_abbreviation": symbol_id,
            "close": 1200,
            "last_trade": 1210,
            "open": 1180,
            "low": 1175,
            "high": 1230,
            "trades_count": 412,
            "trading_volume": 1_500_000,
            "trading_value": 1_800_000_000,
            "market_value": 95_000_000_000,
            "status": "open",
            "floating_shares": 22.5,
            "predicted_swing_percent": 3.5,
            "predicted_swing_probability": 0.6,
        }
        record.update(overrides)
        return record

    return factory
