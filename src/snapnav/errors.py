"""Custom exceptions for the snapshot navigation engine."""

from __future__ import annotations


class SnapnavError(Exception):
    """Base exception for all snapnav errors."""


class ScheduleConfigError(SnapnavError, ValueError):
    """Raised when calendar or time configuration is malformed."""


class VisitFailure(SnapnavError):
    """Raised when a single symbol's navigate/extract attempt fails or times out."""

    def __init__(self, symbol: str, reason: str) -> None:
        super().__init__(f"{symbol}: {reason}")
        self.symbol = symbol
        self.reason = reason


class AbortedCrawl(SnapnavError):
    """Raised when a crawl is stopped or the collection window closes mid-cycle."""

    def __init__(self, reason: str) -> None:
        super().__init__(f"crawl aborted: {reason}")
        self.reason = reason


class ValidationSkip(SnapnavError):
    """Raised when a candidate snapshot fails shape validation."""

    def __init__(self, symbol: str | None, errors: list[str]) -> None:
        super().__init__(f"invalid snapshot for {symbol or '<unknown>'}: {', '.join(errors)}")
        self.symbol = symbol
        self.errors = list(errors)


class SurfaceError(SnapnavError):
    """Raised when the execution surface port cannot create or navigate a surface."""
