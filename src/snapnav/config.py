"""Environment and CLI runtime configuration."""

from __future__ import annotations

import json
import os
import re
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Self
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv

from snapnav.errors import ScheduleConfigError

DEFAULT_TIMEZONE = "Asia/Tehran"
DEFAULT_TRADING_DAYS = frozenset({6, 0, 1, 2, 3})
DEFAULT_URL_TEMPLATE = "https://www.tsetmc.com/InstInfo/{symbol}"
DEFAULT_LOG_RETENTION_DAYS = {"error": 30, "warning": 7, "info": 3}
LOG_LEVELS = ("error", "warning", "info")
ENGINES = ("retry", "queue")

_TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})$")


def parse_bool(value: str | None, default: bool) -> bool:
    """Parse truthy environment strings."""
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "y", "on"}


def parse_symbols(value: str | None, default: list[str] | None = None) -> list[str]:
    """Parse comma or whitespace separated instrument ids."""
    fallback = default or []
    if not value:
        return list(fallback)
    symbols = [item.strip() for item in re.split(r"[,\s]+", value) if item.strip()]
    return dedupe_symbols(symbols) or list(fallback)


def dedupe_symbols(symbols: list[str]) -> list[str]:
    """Remove duplicate symbols while preserving order."""
    deduped: list[str] = []
    seen: set[str] = set()
    for symbol in symbols:
        if symbol in seen:
            continue
        seen.add(symbol)
        deduped.append(symbol)
    return deduped


def read_symbols_file(path: str | Path) -> list[str]:
    """Read one id per line, ignoring blank lines and `#` comments."""
    symbols: list[str] = []
    with Path(path).open("r", encoding="utf-8") as handle:
        for line in handle:
            text = line.split("#", 1)[0].strip()
            if text:
                symbols.extend(parse_symbols(text))
    return dedupe_symbols(symbols)


def parse_market_time(value: str, *, field_name: str = "time") -> int:
    """Convert an "HH:mm" string into minutes after midnight."""
    match = _TIME_PATTERN.match(str(value).strip())
    if match is None:
        raise ScheduleConfigError(f"{field_name} must be formatted as HH:mm, got {value!r}")
    hour, minute = int(match.group(1)), int(match.group(2))
    if hour > 23 or minute > 59:
        raise ScheduleConfigError(f"{field_name} is out of range: {value!r}")
    return hour * 60 + minute


def parse_trading_days(value: str | None, default: frozenset[int]) -> frozenset[int]:
    """Parse comma-separated weekday indexes (0=Sunday .. 6=Saturday)."""
    if value is None or not value.strip():
        return default
    days: set[int] = set()
    for part in value.split(","):
        text = part.strip()
        if not text:
            continue
        try:
            days.add(int(text))
        except ValueError as exc:
            raise ScheduleConfigError(f"trading day must be an integer, got {text!r}") from exc
    return frozenset(days) if days else default


def parse_log_retention(value: str | None, overrides: dict[str, str | None]) -> dict[str, int]:
    """Merge a JSON retention map and per-level overrides over the defaults."""
    retention = dict(DEFAULT_LOG_RETENTION_DAYS)
    if value:
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError("LOG_RETENTION_DAYS must be a JSON object") from exc
        if not isinstance(parsed, dict):
            raise ValueError("LOG_RETENTION_DAYS must be a JSON object")
        for level in LOG_LEVELS:
            if parsed.get(level) is not None:
                retention[level] = int(parsed[level])
    for level, raw in overrides.items():
        if raw is not None and raw.strip():
            retention[level] = int(raw)
    return retention


@dataclass(frozen=True)
class ScheduleConfig:
    """Immutable market calendar and navigation limits."""

    timezone: str = DEFAULT_TIMEZONE
    trading_days: frozenset[int] = DEFAULT_TRADING_DAYS
    market_open: str = "09:00"
    market_close: str = "13:00"
    analysis_deadline: str = "07:00"
    retention_days: int = 7
    retry_limit: int = 2
    retry_delay_ms: int = 1000
    poll_interval_ms: int = 250
    wait_timeout_ms: int = 15000

    @property
    def open_minutes(self) -> int:
        return parse_market_time(self.market_open, field_name="market_open")

    @property
    def close_minutes(self) -> int:
        return parse_market_time(self.market_close, field_name="market_close")

    @property
    def deadline_minutes(self) -> int:
        return parse_market_time(self.analysis_deadline, field_name="analysis_deadline")

    def zone(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    def validate(self) -> Self:
        """Validate calendar fields; every failure is a ScheduleConfigError."""
        try:
            self.zone()
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ScheduleConfigError(f"unknown timezone {self.timezone!r}") from exc
        for field_name in ("market_open", "market_close", "analysis_deadline"):
            parse_market_time(getattr(self, field_name), field_name=field_name)
        if not self.trading_days:
            raise ScheduleConfigError("trading_days must not be empty")
        if any(day < 0 or day > 6 for day in self.trading_days):
            raise ScheduleConfigError("trading_days must be weekday indexes between 0 and 6")
        if self.open_minutes >= self.close_minutes:
            raise ScheduleConfigError("market_open must be earlier than market_close")
        if self.retention_days <= 0:
            raise ScheduleConfigError("retention_days must be positive")
        if self.retry_limit < 0:
            raise ScheduleConfigError("retry_limit cannot be negative")
        if self.retry_delay_ms < 0:
            raise ScheduleConfigError("retry_delay_ms cannot be negative")
        if self.poll_interval_ms <= 0:
            raise ScheduleConfigError("poll_interval_ms must be positive")
        if self.wait_timeout_ms <= 0:
            raise ScheduleConfigError("wait_timeout_ms must be positive")
        return self


@dataclass(frozen=True)
class Settings:
    """Immutable runtime settings."""

    timezone: str = DEFAULT_TIMEZONE
    trading_days: frozenset[int] = DEFAULT_TRADING_DAYS
    market_open: str = "09:00"
    market_close: str = "13:00"
    analysis_deadline: str = "07:00"
    retention_days: int = 7
    retry_limit: int = 2
    retry_delay_ms: int = 1000
    poll_interval_ms: int = 250
    wait_timeout_ms: int = 15000
    navigation_delay_ms: int = 500
    symbols: list[str] = field(default_factory=list)
    symbols_file: str = ""
    url_template: str = DEFAULT_URL_TEMPLATE
    ready_marker: str = "</html>"
    reuse_surface: bool = True
    engine: str = "retry"
    top_swing_count: int = 5
    log_retention_days: dict[str, int] = field(
        default_factory=lambda: dict(DEFAULT_LOG_RETENTION_DAYS)
    )
    interval_seconds: int = 300
    request_timeout_seconds: float = 10.0
    state_db_path: str = "state/snapnav_state.db"
    events_dir: str = "runs"
    log_level: str = "INFO"
    once: bool = False

    @classmethod
    def from_env(cls) -> Self:
        """Create settings from environment variables."""
        load_dotenv()
        try:
            raw = cls(
                timezone=str(os.getenv("MARKET_TIMEZONE", DEFAULT_TIMEZONE)).strip(),
                trading_days=parse_trading_days(
                    os.getenv("TRADING_DAYS"), default=DEFAULT_TRADING_DAYS
                ),
                market_open=str(os.getenv("MARKET_OPEN", "09:00")).strip(),
                market_close=str(os.getenv("MARKET_CLOSE", "13:00")).strip(),
                analysis_deadline=str(os.getenv("ANALYSIS_DEADLINE", "07:00")).strip(),
                retention_days=int(os.getenv("RETENTION_DAYS", "7")),
                retry_limit=int(os.getenv("NAVIGATION_RETRY_LIMIT", "2")),
                retry_delay_ms=int(os.getenv("NAVIGATION_RETRY_DELAY_MS", "1000")),
                poll_interval_ms=int(os.getenv("NAVIGATION_POLL_INTERVAL_MS", "250")),
                wait_timeout_ms=int(os.getenv("NAVIGATION_WAIT_TIMEOUT_MS", "15000")),
                navigation_delay_ms=int(os.getenv("NAVIGATION_DELAY_MS", "500")),
                symbols=parse_symbols(os.getenv("SYMBOLS")),
                symbols_file=str(os.getenv("SYMBOLS_FILE", "")).strip(),
                url_template=str(
                    os.getenv("SYMBOL_URL_TEMPLATE", DEFAULT_URL_TEMPLATE)
                ).strip(),
                ready_marker=str(os.getenv("NAVIGATION_READY_MARKER", "</html>")),
                reuse_surface=parse_bool(os.getenv("REUSE_SURFACE"), True),
                engine=str(os.getenv("CRAWL_ENGINE", "retry")).strip().lower(),
                top_swing_count=int(os.getenv("TOP_SWING_COUNT", "5")),
                log_retention_days=parse_log_retention(
                    os.getenv("LOG_RETENTION_DAYS"),
                    {
                        level: os.getenv(f"LOG_RETENTION_{level.upper()}")
                        for level in LOG_LEVELS
                    },
                ),
                interval_seconds=int(os.getenv("INTERVAL_SECONDS", "300")),
                request_timeout_seconds=float(os.getenv("REQUEST_TIMEOUT_SECONDS", "10")),
                state_db_path=str(
                    os.getenv("STATE_DB_PATH", "state/snapnav_state.db")
                ).strip(),
                events_dir=str(os.getenv("EVENTS_DIR", "runs")).strip(),
                log_level=str(os.getenv("LOG_LEVEL", "INFO")).strip().upper(),
            )
        except ScheduleConfigError:
            raise
        except ValueError as exc:
            raise ValueError(
                "One or more numeric environment variables are invalid. "
                "Check RETENTION_DAYS, NAVIGATION_* and INTERVAL_SECONDS in your .env file."
            ) from exc
        return raw.validate()

    def with_overrides(self, **kwargs: object) -> Self:
        """Return a new settings object with updated values."""
        updated = replace(self, **kwargs)
        return updated.validate()

    def schedule(self) -> ScheduleConfig:
        """Project the immutable calendar configuration."""
        return ScheduleConfig(
            timezone=self.timezone,
            trading_days=frozenset(self.trading_days),
            market_open=self.market_open,
            market_close=self.market_close,
            analysis_deadline=self.analysis_deadline,
            retention_days=self.retention_days,
            retry_limit=self.retry_limit,
            retry_delay_ms=self.retry_delay_ms,
            poll_interval_ms=self.poll_interval_ms,
            wait_timeout_ms=self.wait_timeout_ms,
        )

    def resolved_symbols(self) -> list[str]:
        """Combine SYMBOLS with the optional symbols file."""
        symbols = list(self.symbols)
        if self.symbols_file:
            symbols.extend(read_symbols_file(self.symbols_file))
        return dedupe_symbols(symbols)

    def validate(self) -> Self:
        """Validate settings fields."""
        self.schedule().validate()
        if self.navigation_delay_ms < 0:
            raise ValueError("navigation_delay_ms cannot be negative")
        if self.engine not in ENGINES:
            raise ValueError("engine must be one of retry, queue")
        if self.top_swing_count <= 0:
            raise ValueError("top_swing_count must be positive")
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        if self.request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        if not self.url_template:
            raise ValueError("url_template must not be empty")
        if any(days < 0 for days in self.log_retention_days.values()):
            raise ValueError("log retention days cannot be negative")
        return self
