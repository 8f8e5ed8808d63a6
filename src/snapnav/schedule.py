"""Market calendar arithmetic for collection gating.

Every check projects `now` into the configured market timezone once and compares
minute-of-day integers, so host locale and daylight-saving shifts never leak into the
window math. Weekday indexes use 0=Sunday .. 6=Saturday.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from typing import Any

from snapnav.config import ScheduleConfig, parse_market_time

MINUTES_PER_DAY = 24 * 60


@dataclass(frozen=True)
class MarketClock:
    """Calendar projection of an instant in the market timezone."""

    year: int
    month: int
    day: int
    hour: int
    minute: int
    weekday: int

    @property
    def minute_of_day(self) -> int:
        return self.hour * 60 + self.minute

    @property
    def trading_date(self) -> str:
        return f"{self.year:04d}-{self.month:02d}-{self.day:02d}"

    def as_date(self) -> date:
        return date(self.year, self.month, self.day)

    def clock_text(self) -> str:
        return f"{self.hour:02d}:{self.minute:02d}"


def ensure_aware(value: datetime) -> datetime:
    """Treat naive datetimes as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 timestamp or datetime into an aware datetime."""
    if isinstance(value, datetime):
        return ensure_aware(value)
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    return ensure_aware(parsed)


class ScheduleOracle:
    """Pure time-window checks against one validated market calendar."""

    def __init__(self, config: ScheduleConfig) -> None:
        self.config = config.validate()
        self._zone = config.zone()
        self._open = config.open_minutes
        self._close = config.close_minutes
        self._deadline = config.deadline_minutes

    def project(self, now: datetime) -> MarketClock:
        local = ensure_aware(now).astimezone(self._zone)
        return MarketClock(
            year=local.year,
            month=local.month,
            day=local.day,
            hour=local.hour,
            minute=local.minute,
            weekday=(local.weekday() + 1) % 7,
        )

    def trading_date(self, now: datetime) -> str:
        return self.project(now).trading_date

    def trading_date_of(self, timestamp: Any) -> str | None:
        """Project a record timestamp to its trading date, or None when unparseable."""
        parsed = parse_timestamp(timestamp)
        if parsed is None:
            return None
        return self.trading_date(parsed)

    def day_bounds(self, trading_date: str) -> tuple[datetime, datetime]:
        """Return the UTC instants that bound one trading date."""
        day = date.fromisoformat(trading_date)
        start = datetime.combine(day, time.min, tzinfo=self._zone)
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=self._zone)
        return start.astimezone(UTC), end.astimezone(UTC)

    def is_trading_day(self, now: datetime) -> bool:
        return self.project(now).weekday in self.config.trading_days

    def format_market_clock(self, now: datetime) -> str:
        return self.project(now).clock_text()

    def is_within_blackout(self, now: datetime) -> bool:
        clock = self.project(now)
        if clock.weekday not in self.config.trading_days:
            return False
        return self._open <= clock.minute_of_day < self._close

    def is_within_collection_window(self, now: datetime) -> bool:
        clock = self.project(now)
        if clock.weekday not in self.config.trading_days:
            return True
        minutes = clock.minute_of_day
        if self._close > self._deadline:
            # Window wraps midnight: close..23:59 then 00:00..deadline.
            return minutes >= self._close or minutes < self._deadline
        return self._close <= minutes < self._deadline

    def is_past_analysis_deadline(self, now: datetime) -> bool:
        minutes = self.project(now).minute_of_day
        return minutes >= self._deadline and not self.is_within_blackout(now)

    def should_collect(self, now: datetime) -> bool:
        return self.is_within_collection_window(now) and not self.is_within_blackout(now)

    def should_pause(self, now: datetime) -> bool:
        return self.is_within_blackout(now)

    def should_run_analysis(self, now: datetime, crawl_complete: bool = False) -> bool:
        if crawl_complete:
            return True
        return self.is_past_analysis_deadline(now)

    def get_delay_until_market_time(
        self,
        now: datetime,
        target: str,
        *,
        require_trading_day: bool = False,
    ) -> int:
        """Minutes until the next occurrence of `target` ("HH:mm") in market time.

        A target at or before the current minute rolls to the following day; with
        `require_trading_day` the candidate keeps advancing until it lands on a trading day.
        """
        clock = self.project(now)
        target_minutes = parse_market_time(target, field_name="target")
        day_offset = 1 if clock.minute_of_day >= target_minutes else 0
        if require_trading_day:
            for _ in range(7):
                if (clock.weekday + day_offset) % 7 in self.config.trading_days:
                    break
                day_offset += 1
        return day_offset * MINUTES_PER_DAY + target_minutes - clock.minute_of_day

    def describe(self) -> dict[str, Any]:
        return {
            "timezone": self.config.timezone,
            "trading_days": sorted(self.config.trading_days),
            "blackout": f"{self.config.market_open}-{self.config.market_close}",
            "collection_window": f"{self.config.market_close}-{self.config.analysis_deadline}",
            "retention_days": self.config.retention_days,
        }
