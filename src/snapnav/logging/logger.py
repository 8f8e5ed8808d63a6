"""Concise human-readable crawl logger."""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from snapnav.domain.models import CrawlProgress, RankedResult


class HumanLogger:
    """Console logger with fixed line types."""

    def __init__(self, level: str = "INFO") -> None:
        self._logger = logging.getLogger("snapnav")
        self._logger.setLevel(getattr(logging, level.upper(), logging.INFO))
        self._logger.propagate = False
        if not self._logger.handlers:
            formatter = logging.Formatter("%(asctime)s | %(message)s", "%Y-%m-%d %H:%M:%S")
            handler = logging.StreamHandler()
            handler.setFormatter(formatter)
            self._logger.addHandler(handler)

    def cycle_started(self, cycle_id: str, engine: str, symbols: Sequence[str]) -> None:
        self._logger.info(
            "cycle | %s | engine %s | symbols %d", cycle_id[:10], engine, len(symbols)
        )

    def visit(self, symbol: str, attempt: int = 1) -> None:
        if attempt > 1:
            self._logger.info("visit | %s | captured on attempt %d", symbol, attempt)
            return
        self._logger.info("visit | %s | captured", symbol)

    def visit_failed(self, symbol: str, reason: str, attempt: int = 1) -> None:
        self._logger.warning("visit | %s | failed (attempt %d) | %s", symbol, attempt, reason)

    def progress(self, progress: CrawlProgress) -> None:
        self._logger.debug(
            "progress | %s | %d/%d | remaining %d",
            progress.symbol,
            progress.completed,
            progress.total,
            progress.remaining,
        )

    def retry_pass(self, attempt: int, remaining: int) -> None:
        self._logger.info("retry | pass %d | remaining %d", attempt, remaining)

    def unresolved(self, symbols: Sequence[str]) -> None:
        if not symbols:
            return None
        preview = ", ".join(symbols[:10])
        suffix = f" (+{len(symbols) - 10} more)" if len(symbols) > 10 else ""
        self._logger.warning("unresolved | %d | %s%s", len(symbols), preview, suffix)

    def window_closed(self, market_clock: str, pending: int) -> None:
        self._logger.info(
            "paused | outside collection window at %s | pending %d", market_clock, pending
        )

    def snapshots_recorded(self, accepted: Sequence[str], offered: int) -> None:
        if offered and not accepted:
            self._logger.debug("record | 0/%d accepted", offered)
            return None
        self._logger.info("record | %d/%d accepted", len(accepted), offered)

    def pruned(self, trading_date: str, snapshots: int, logs: int) -> None:
        self._logger.info(
            "retention | %s | snapshots -%d | logs -%d", trading_date, snapshots, logs
        )

    def analysis(self, result: RankedResult) -> None:
        leaders = ", ".join(
            f"{row.get('id')} {self._as_percent(row.get('predicted_swing_probability'))}"
            for row in result.ranked[:5]
        )
        self._logger.info(
            "analysis | snapshots %d | ranked %d%s",
            result.snapshot_count,
            len(result.ranked),
            f" | {leaders}" if leaders else "",
        )

    def sleeping(self, minutes: float, reason: str) -> None:
        self._logger.info("sleep | %.1f min | %s", minutes, reason)

    def idle(self, completed: int, total: int) -> None:
        self._logger.info("idle | %d/%d visited", completed, total)

    def debug(self, message: str, context: Mapping[str, Any] | None = None) -> None:
        if context:
            details = " ".join(f"{key}={value}" for key, value in sorted(context.items()))
            self._logger.debug("debug | %s | %s", message, details)
            return None
        self._logger.debug("debug | %s", message)

    def error(self, message: str) -> None:
        self._logger.error("error | %s", message)

    @staticmethod
    def _as_percent(value: Any) -> str:
        if value is None:
            return "n/a"
        try:
            return f"{float(value) * 100:.1f}%"
        except (TypeError, ValueError):
            return "n/a"
