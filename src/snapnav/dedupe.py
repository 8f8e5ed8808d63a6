"""Per trading-date snapshot existence checks."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Protocol

from snapnav.schedule import ScheduleOracle


class SnapshotSource(Protocol):
    """Anything that can list snapshots for an id within a UTC range."""

    def query(self, symbol_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        """Return candidate snapshots for an id."""


class SnapshotDeduper:
    """Answers whether (id, trading date) already has a snapshot in a source."""

    def __init__(self, source: SnapshotSource, oracle: ScheduleOracle) -> None:
        self.source = source
        self.oracle = oracle

    def already_captured(self, symbol_id: str, trading_date: str) -> bool:
        start, end = self.oracle.day_bounds(trading_date)
        for candidate in self.source.query(symbol_id, start, end):
            if candidate.get("id") != symbol_id:
                continue
            # The range is only a prefilter; the candidate's own timestamp decides.
            if self.oracle.trading_date_of(candidate.get("date_time")) == trading_date:
                return True
        return False
