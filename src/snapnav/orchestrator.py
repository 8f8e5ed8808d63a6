"""Stateful controller tying accepted snapshots to retention and analysis."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

from snapnav.analysis import AnalysisEngine
from snapnav.config import DEFAULT_LOG_RETENTION_DAYS
from snapnav.dedupe import SnapshotDeduper
from snapnav.domain.models import LogEntry, RankedResult, RecordResult
from snapnav.logging.logger import HumanLogger
from snapnav.retention import build_log_entry, prune_logs, prune_snapshots
from snapnav.schedule import ScheduleOracle, parse_timestamp
from snapnav.state.store import LogStore, SnapshotStore
from snapnav.validation import validate_snapshot


class SnapshotAccumulator:
    """In-memory snapshot list that doubles as a dedupe source."""

    def __init__(self) -> None:
        self.records: list[dict[str, Any]] = []

    def append(self, record: Mapping[str, Any]) -> None:
        self.records.append(dict(record))

    def replace(self, records: Iterable[Mapping[str, Any]]) -> None:
        self.records = [dict(record) for record in records]

    def query(self, symbol_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        matches: list[dict[str, Any]] = []
        for record in self.records:
            if record.get("id") != symbol_id:
                continue
            captured = parse_timestamp(record.get("date_time"))
            if captured is not None and start <= captured < end:
                matches.append(record)
        return matches

    def __len__(self) -> int:
        return len(self.records)


class NavigatorOrchestrator:
    """Owns the accumulator and the expected-symbol set for one crawl cycle.

    `record_snapshots` and `plan_symbols` mutate unsynchronised state; callers serialise
    them on one event loop.
    """

    def __init__(
        self,
        oracle: ScheduleOracle,
        analysis_engine: AnalysisEngine,
        *,
        validator: Callable[[Any], bool] = validate_snapshot,
        store: SnapshotStore | None = None,
        log_store: LogStore | None = None,
        retention_days: int | None = None,
        log_retention_days: Mapping[str, int] | None = None,
        logger: HumanLogger | None = None,
    ) -> None:
        self.oracle = oracle
        self.analysis_engine = analysis_engine
        self.validator = validator
        self.store = store
        self.log_store = log_store
        self.retention_days = retention_days or oracle.config.retention_days
        self.log_retention_days = dict(log_retention_days or DEFAULT_LOG_RETENTION_DAYS)
        self.logger = logger

        self.snapshots = SnapshotAccumulator()
        self.logs: list[LogEntry] = []
        self.expected_symbols: set[str] = set()
        self.crawl_complete = False
        self.analysis_result: RankedResult | None = None
        self.last_pruned_date: str | None = None
        self._deduper = SnapshotDeduper(self.snapshots, oracle)

    def plan_symbols(self, symbols: Iterable[str]) -> None:
        """Seed the expected set for a new cycle."""
        self.expected_symbols = {str(symbol) for symbol in symbols if symbol}
        self.crawl_complete = not self.expected_symbols

    def has_snapshot_for_day(self, symbol_id: str, trading_date: str) -> bool:
        return self._deduper.already_captured(symbol_id, trading_date)

    def record_snapshots(
        self, records: Iterable[Mapping[str, Any]], now: datetime
    ) -> RecordResult:
        """Accept valid, not-yet-seen snapshots and trigger analysis when due."""
        if self.oracle.should_pause(now):
            self.breadcrumb("info", "Skip collection during blackout window", now)
            return RecordResult()
        if not self.oracle.should_collect(now):
            return RecordResult()

        trading_date = self.oracle.trading_date(now)
        if trading_date != self.last_pruned_date:
            self._prune(trading_date, now)

        offered = 0
        accepted: list[str] = []
        for record in records:
            offered += 1
            try:
                if not self.validator(record):
                    continue
                record_date = self.oracle.trading_date_of(record.get("date_time"))
                if record_date is None:
                    continue
                symbol_id = str(record["id"])
                if self._deduper.already_captured(symbol_id, record_date):
                    continue
            except Exception as exc:
                if self.logger is not None:
                    self.logger.debug("record skipped", {"error": exc})
                continue
            self.snapshots.append(record)
            accepted.append(symbol_id)
            self.expected_symbols.discard(symbol_id)

        if not self.expected_symbols:
            self.crawl_complete = True
        if self.logger is not None:
            self.logger.snapshots_recorded(accepted, offered)

        if self.oracle.should_run_analysis(now, crawl_complete=self.crawl_complete):
            self._run_analysis(now)
        return RecordResult(accepted=accepted)

    def _prune(self, trading_date: str, now: datetime) -> None:
        before = len(self.snapshots)
        self.snapshots.replace(
            prune_snapshots(self.snapshots.records, self.oracle, now, self.retention_days)
        )
        log_count = len(self.logs)
        self.logs = prune_logs(self.logs, now)
        removed_snapshots = before - len(self.snapshots)
        removed_logs = log_count - len(self.logs)
        try:
            if self.store is not None:
                removed_snapshots += self.store.prune(now, self.retention_days)
            if self.log_store is not None:
                removed_logs += self.log_store.prune_logs(now)
        except Exception as exc:
            if self.logger is not None:
                self.logger.error(f"retention pruning failed: {exc}")
        self.last_pruned_date = trading_date
        if self.logger is not None:
            self.logger.pruned(trading_date, removed_snapshots, removed_logs)

    def _run_analysis(self, now: datetime) -> None:
        try:
            self.analysis_result = self.analysis_engine.run(list(self.snapshots.records), now)
        except Exception as exc:
            self.breadcrumb("error", "Analysis failed", now, {"error": str(exc)})
            if self.logger is not None:
                self.logger.error(f"analysis failed: {exc}")
            return
        if self.logger is not None:
            self.logger.analysis(self.analysis_result)

    def breadcrumb(
        self,
        level: str,
        message: str,
        now: datetime,
        context: Mapping[str, Any] | None = None,
    ) -> None:
        entry = build_log_entry(
            level,
            message,
            now,
            source="navigator",
            context=context,
            ttl_days=self.log_retention_days.get(level),
        )
        self.logs.append(entry)
        if self.logger is not None:
            self.logger.debug(message, context)
        if self.log_store is None:
            return
        try:
            self.log_store.save_log(entry)
        except Exception as exc:
            if self.logger is not None:
                self.logger.error(f"log persistence failed: {exc}")
