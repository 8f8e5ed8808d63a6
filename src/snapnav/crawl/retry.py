"""Bounded multi-pass retry over a sequential visit-all-once crawl."""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from typing import Any

from snapnav.crawl.queue import maybe_await, normalize_symbols
from snapnav.crawl.surface import VisitOperation
from snapnav.domain.models import RetryReport, SymbolDescriptor
from snapnav.errors import AbortedCrawl, VisitFailure
from snapnav.logging.logger import HumanLogger
from snapnav.schedule import ScheduleOracle

SnapshotHook = Callable[[dict[str, Any]], Awaitable[None] | None]


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class RetryCoordinator:
    """Drain symbols once, then retry the failures up to `retry_limit` more passes.

    The collection window is re-checked before every dequeue. When it closes, or the
    stop signal is set, the whole run aborts and the leftovers are reported as
    `remaining` for a later cycle.
    """

    def __init__(
        self,
        visit: VisitOperation,
        oracle: ScheduleOracle,
        *,
        retry_limit: int = 2,
        retry_delay_ms: int = 1000,
        logger: HumanLogger | None = None,
        clock: Callable[[], datetime] = _utc_now,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.visit = visit
        self.oracle = oracle
        self.retry_limit = retry_limit
        self.retry_delay_ms = retry_delay_ms
        self.logger = logger
        self.clock = clock
        self.sleep = sleep

    async def run(
        self,
        symbols: Iterable[str | SymbolDescriptor],
        on_snapshot: SnapshotHook | None = None,
        signal: asyncio.Event | None = None,
    ) -> RetryReport:
        attempts: dict[str, int] = {}
        captured: list[str] = []
        failures: list[SymbolDescriptor] = []

        queue = deque(normalize_symbols(symbols))
        reason = await self._drain(queue, 0, attempts, captured, failures, on_snapshot, signal)
        if reason is not None:
            return self._aborted(reason, queue, failures, captured, attempts)

        for retry_pass in range(1, self.retry_limit + 1):
            if not failures:
                break
            if self.logger is not None:
                self.logger.retry_pass(retry_pass, len(failures))
            queue = deque(failures)
            failures = []
            reason = await self._drain(
                queue, retry_pass, attempts, captured, failures, on_snapshot, signal
            )
            if reason is not None:
                return self._aborted(reason, queue, failures, captured, attempts)

        unresolved = [item.id for item in failures]
        if self.logger is not None:
            self.logger.unresolved(unresolved)
        return RetryReport(captured=captured, unresolved=unresolved, attempts=attempts)

    async def _drain(
        self,
        queue: deque[SymbolDescriptor],
        retry_pass: int,
        attempts: dict[str, int],
        captured: list[str],
        failures: list[SymbolDescriptor],
        on_snapshot: SnapshotHook | None,
        signal: asyncio.Event | None,
    ) -> str | None:
        while queue:
            if retry_pass and self.retry_delay_ms > 0:
                await self.sleep(self.retry_delay_ms / 1000.0)
            reason = self._abort_reason(signal, pending=len(queue) + len(failures))
            if reason is not None:
                return reason

            descriptor = queue.popleft()
            attempt = attempts.get(descriptor.id, 0) + 1
            attempts[descriptor.id] = attempt
            try:
                visit = await self.visit(descriptor, signal)
                if visit.snapshot is None:
                    raise VisitFailure(descriptor.id, "visit produced no snapshot")
                if on_snapshot is not None:
                    await maybe_await(on_snapshot(visit.snapshot))
            except AbortedCrawl as exc:
                queue.appendleft(descriptor)
                return exc.reason
            except Exception as exc:
                failures.append(descriptor)
                if self.logger is not None:
                    reason_text = exc.reason if isinstance(exc, VisitFailure) else str(exc)
                    self.logger.visit_failed(descriptor.id, reason_text, attempt)
                continue

            captured.append(descriptor.id)
            if self.logger is not None:
                self.logger.visit(descriptor.id, attempt)
        return None

    def _abort_reason(self, signal: asyncio.Event | None, pending: int) -> str | None:
        if signal is not None and signal.is_set():
            return "stopped"
        now = self.clock()
        if not self.oracle.should_collect(now):
            if self.logger is not None:
                self.logger.window_closed(self.oracle.format_market_clock(now), pending)
            return "window_closed"
        return None

    @staticmethod
    def _aborted(
        reason: str,
        queue: deque[SymbolDescriptor],
        failures: list[SymbolDescriptor],
        captured: list[str],
        attempts: dict[str, int],
    ) -> RetryReport:
        remaining = [item.id for item in queue]
        remaining.extend(item.id for item in failures if item.id not in remaining)
        return RetryReport(
            captured=captured,
            remaining=remaining,
            attempts=attempts,
            aborted=True,
            abort_reason=reason,
        )
