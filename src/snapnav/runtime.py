"""Runtime wiring and the collection loop."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from snapnav.analysis import SwingRankingEngine
from snapnav.config import Settings, dedupe_symbols
from snapnav.crawl.queue import CrawlQueue
from snapnav.crawl.retry import RetryCoordinator
from snapnav.crawl.surface import JsonPageExtractor, RequestsSurface, SurfaceVisitor
from snapnav.crawl.wake import PersistentWake
from snapnav.dedupe import SnapshotDeduper
from snapnav.domain.events import CrawlEvent
from snapnav.domain.models import CrawlProgress, ErrorContext, RankedResult, Visit
from snapnav.errors import AbortedCrawl, ValidationSkip, VisitFailure
from snapnav.logging.event_sink import JsonlEventSink, generate_plotly_report
from snapnav.logging.logger import HumanLogger
from snapnav.orchestrator import NavigatorOrchestrator
from snapnav.schedule import ScheduleOracle
from snapnav.state.sqlite_store import SqliteStateStore
from snapnav.state.store import QueueCheckpoint

QUEUE_NAME = "snapnav-crawl"


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass
class CrawlRuntime:
    """Collaborators shared by every cycle of one run."""

    settings: Settings
    oracle: ScheduleOracle
    store: SqliteStateStore
    orchestrator: NavigatorOrchestrator
    visitor: SurfaceVisitor
    event_sink: JsonlEventSink
    human_logger: HumanLogger
    run_id: str
    clock: Callable[[], datetime] = _utc_now
    persisted: SnapshotDeduper = field(init=False)

    def __post_init__(self) -> None:
        self.persisted = SnapshotDeduper(self.store, self.oracle)

    def emit(self, cycle_id: str, event_type: str, payload: Mapping[str, Any]) -> None:
        self.event_sink.emit(
            CrawlEvent(
                run_id=self.run_id,
                cycle_id=cycle_id,
                event_type=event_type,
                payload=dict(payload),
            )
        )


@dataclass
class CycleSummary:
    """What one crawl cycle produced."""

    cycle_id: str
    planned: list[str]
    accepted: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)
    aborted: bool = False
    abort_reason: str | None = None


class SnapshotHandler:
    """Dedupe against the store, record in the orchestrator, then persist.

    A snapshot refused after the window closed aborts the crawl so the symbol stays
    remaining; any other refusal counts as a failed visit.
    """

    def __init__(self, runtime: CrawlRuntime, summary: CycleSummary) -> None:
        self.runtime = runtime
        self.summary = summary

    async def __call__(self, snapshot: Mapping[str, Any]) -> None:
        runtime = self.runtime
        now = runtime.clock()
        symbol_id = str(snapshot.get("id") or "")
        trading_date = runtime.oracle.trading_date_of(snapshot.get("date_time"))
        if trading_date is not None and runtime.persisted.already_captured(symbol_id, trading_date):
            runtime.emit(self.summary.cycle_id, "snapshot_duplicate", {"symbol": symbol_id})
            return

        result = runtime.orchestrator.record_snapshots([snapshot], now)
        if symbol_id not in result.accepted:
            runtime.emit(self.summary.cycle_id, "snapshot_rejected", {"symbol": symbol_id})
            if not runtime.oracle.should_collect(now):
                self.summary.aborted = True
                self.summary.abort_reason = "window_closed"
                raise AbortedCrawl("window_closed")
            raise VisitFailure(symbol_id, "snapshot rejected")
        try:
            runtime.store.save(snapshot)
        except ValidationSkip as exc:
            runtime.human_logger.debug("store rejected snapshot", {"symbol": symbol_id})
            runtime.emit(
                self.summary.cycle_id,
                "snapshot_rejected",
                {"symbol": symbol_id, "errors": exc.errors},
            )
            raise VisitFailure(symbol_id, "; ".join(exc.errors)) from exc
        self.summary.accepted.append(symbol_id)
        runtime.emit(
            self.summary.cycle_id,
            "snapshot_accepted",
            {"symbol": symbol_id, "date_time": snapshot.get("date_time")},
        )


def build_runtime(settings: Settings, run_id: str, events_path: Path) -> CrawlRuntime:
    """Construct every collaborator explicitly for one run."""
    oracle = ScheduleOracle(settings.schedule())
    human_logger = HumanLogger(level=settings.log_level)
    store = SqliteStateStore(settings.state_db_path, oracle)
    orchestrator = NavigatorOrchestrator(
        oracle,
        SwingRankingEngine(top_count=settings.top_swing_count),
        store=store,
        log_store=store,
        retention_days=settings.retention_days,
        log_retention_days=settings.log_retention_days,
        logger=human_logger,
    )
    orchestrator.snapshots.replace(store.list_snapshots())
    orchestrator.logs = store.load_logs()
    visitor = SurfaceVisitor(
        surface=RequestsSurface(timeout=settings.request_timeout_seconds),
        extractor=JsonPageExtractor(),
        url_template=settings.url_template,
        ready_marker=settings.ready_marker,
        wait_timeout_ms=settings.wait_timeout_ms,
        poll_interval_ms=settings.poll_interval_ms,
        reuse_surface=settings.reuse_surface,
        logger=human_logger,
    )
    return CrawlRuntime(
        settings=settings,
        oracle=oracle,
        store=store,
        orchestrator=orchestrator,
        visitor=visitor,
        event_sink=JsonlEventSink(str(events_path)),
        human_logger=human_logger,
        run_id=run_id,
    )


def run(settings: Settings) -> int:
    """Run snapshot collection in once or continuous mode."""
    run_id = uuid4().hex
    run_directory = Path(settings.events_dir) / run_id
    run_directory.mkdir(parents=True, exist_ok=True)
    events_path = run_directory / "events.jsonl"
    report_path = run_directory / "report.html"

    runtime = build_runtime(settings, run_id, events_path)
    symbols = settings.resolved_symbols()
    runtime.emit(
        "run",
        "run_started",
        {"symbols": symbols, "engine": settings.engine, **runtime.oracle.describe()},
    )

    exit_code = 0
    try:
        asyncio.run(collect(runtime, symbols))
    except KeyboardInterrupt:
        exit_code = 0
    except Exception as exc:
        runtime.human_logger.error(str(exc))
        runtime.emit("run", "error", {"message": str(exc)})
        exit_code = 1
    finally:
        try:
            generate_plotly_report(str(events_path), str(report_path))
        finally:
            runtime.store.close()

    return exit_code


async def collect(runtime: CrawlRuntime, symbols: list[str]) -> None:
    """Run cycles while the window is open and sleep through the rest."""
    settings = runtime.settings
    try:
        while True:
            now = runtime.clock()
            if runtime.oracle.should_collect(now):
                await execute_cycle(runtime, symbols)
            else:
                runtime.human_logger.window_closed(
                    runtime.oracle.format_market_clock(now), len(symbols)
                )
            if settings.once:
                return
            seconds, reason = next_delay_seconds(settings, runtime.oracle, runtime.clock())
            runtime.human_logger.sleeping(seconds / 60.0, reason)
            await asyncio.sleep(seconds)
    finally:
        await runtime.visitor.close()


def next_delay_seconds(
    settings: Settings, oracle: ScheduleOracle, now: datetime
) -> tuple[float, str]:
    """Seconds to wait before the next cycle, with a reason for the log line.

    Outside the window the wait ends at the next trading-day close, or at the next
    market midnight when the following day is a holiday with unrestricted collection.
    """
    if oracle.should_collect(now):
        return float(settings.interval_seconds), "next cycle"
    minutes = oracle.get_delay_until_market_time(
        now, settings.market_close, require_trading_day=True
    )
    reason = f"collection resumes at {settings.market_close}"
    tomorrow = (oracle.project(now).weekday + 1) % 7
    if tomorrow not in oracle.config.trading_days:
        midnight = oracle.get_delay_until_market_time(now, "00:00")
        if midnight < minutes:
            minutes = midnight
            reason = "collection resumes at 00:00 on a non-trading day"
    return float(minutes * 60), reason


async def execute_cycle(runtime: CrawlRuntime, symbols: list[str]) -> CycleSummary:
    """Run one crawl cycle with the configured engine."""
    settings = runtime.settings
    oracle = runtime.oracle
    now = runtime.clock()
    today = oracle.trading_date(now)

    checkpoint = runtime.store.load_checkpoint(QUEUE_NAME) if settings.engine == "queue" else None
    candidates = dedupe_symbols((checkpoint.pending if checkpoint else []) + list(symbols))
    planned = [
        symbol for symbol in candidates if not runtime.persisted.already_captured(symbol, today)
    ]
    summary = CycleSummary(cycle_id=uuid4().hex, planned=planned)
    previous_result = runtime.orchestrator.analysis_result

    runtime.orchestrator.plan_symbols(planned)
    runtime.human_logger.cycle_started(summary.cycle_id, settings.engine, planned)
    runtime.emit(
        summary.cycle_id,
        "cycle_started",
        {"symbols": planned, "skipped": len(candidates) - len(planned), "trading_date": today},
    )

    handler = SnapshotHandler(runtime, summary)
    if not planned:
        # Nothing left to visit today; an empty batch still lets analysis trigger.
        runtime.orchestrator.record_snapshots([], now)
        if checkpoint is not None:
            runtime.store.clear_checkpoint(QUEUE_NAME)
    elif settings.engine == "queue":
        await run_queue_cycle(runtime, planned, handler, checkpoint)
    else:
        await run_retry_cycle(runtime, planned, handler)

    if summary.unresolved:
        runtime.human_logger.unresolved(summary.unresolved)
        runtime.orchestrator.breadcrumb(
            "warning",
            "Crawl completed with unresolved symbols",
            runtime.clock(),
            {"remaining": summary.unresolved},
        )
    runtime.emit(
        summary.cycle_id,
        "cycle_finished",
        {
            "accepted": len(summary.accepted),
            "planned": len(planned),
            "unresolved": summary.unresolved,
            "remaining": summary.remaining,
            "aborted": summary.aborted,
            "abort_reason": summary.abort_reason,
            "crawl_complete": runtime.orchestrator.crawl_complete,
        },
    )
    result = runtime.orchestrator.analysis_result
    if result is not None and result is not previous_result:
        runtime.emit(summary.cycle_id, "analysis", analysis_payload(result))
    return summary


async def run_retry_cycle(
    runtime: CrawlRuntime, planned: list[str], handler: SnapshotHandler
) -> None:
    settings = runtime.settings
    coordinator = RetryCoordinator(
        runtime.visitor,
        runtime.oracle,
        retry_limit=settings.retry_limit,
        retry_delay_ms=settings.retry_delay_ms,
        logger=runtime.human_logger,
        clock=runtime.clock,
    )
    report = await coordinator.run(planned, on_snapshot=handler)
    summary = handler.summary
    summary.unresolved = list(report.unresolved)
    summary.remaining = list(report.remaining)
    summary.aborted = report.aborted
    summary.abort_reason = report.abort_reason
    for symbol, attempts in sorted(report.attempts.items()):
        runtime.emit(summary.cycle_id, "visit", {"symbol": symbol, "attempt": attempts})


async def run_queue_cycle(
    runtime: CrawlRuntime,
    planned: list[str],
    handler: SnapshotHandler,
    checkpoint: QueueCheckpoint | None,
) -> None:
    settings = runtime.settings
    summary = handler.summary
    wake = PersistentWake(runtime.store, runtime.clock)
    failed: list[str] = []

    async def on_visit(visit: Visit) -> None:
        if visit.snapshot is None:
            raise VisitFailure(visit.symbol, "visit produced no snapshot")
        await handler(visit.snapshot)

    def on_error(exc: BaseException, context: ErrorContext) -> None:
        failed.append(context.symbol)
        runtime.human_logger.visit_failed(context.symbol, str(exc))
        runtime.emit(
            summary.cycle_id, "visit_failed", {"symbol": context.symbol, "message": str(exc)}
        )

    def on_progress(progress: CrawlProgress) -> None:
        runtime.emit(
            summary.cycle_id,
            "progress",
            {
                "symbol": progress.symbol,
                "completed": progress.completed,
                "remaining": progress.remaining,
                "total": progress.total,
            },
        )
        now = runtime.clock()
        if progress.remaining and not runtime.oracle.should_collect(now):
            runtime.human_logger.window_closed(
                runtime.oracle.format_market_clock(now), progress.remaining
            )
            summary.aborted = True
            summary.abort_reason = "window_closed"
            queue.stop()

    queue = CrawlQueue(
        runtime.visitor,
        on_visit=on_visit,
        on_error=on_error,
        on_progress=on_progress,
        delay_ms=settings.navigation_delay_ms,
        wake=wake,
        checkpoints=runtime.store,
        name=QUEUE_NAME,
        logger=runtime.human_logger,
        clock=runtime.clock,
    )
    stop_watch = asyncio.Event()
    watcher = asyncio.create_task(wake.watch(settings.poll_interval_ms / 1000.0, stop_watch))
    try:
        restore_from = checkpoint if checkpoint is not None and checkpoint.pending else None
        if restore_from is not None:
            restore_from = QueueCheckpoint(
                name=restore_from.name,
                pending=[symbol for symbol in restore_from.pending if symbol in planned],
                completed=restore_from.completed,
                total=restore_from.total,
                due_at=restore_from.due_at,
            )
        if restore_from is not None and await queue.restore(restore_from):
            idle = queue.when_idle()
            queued = set(queue.state().pending)
            queue.enqueue_symbols(symbol for symbol in planned if symbol not in queued)
        else:
            queue.replace_queue(planned)
            idle = queue.when_idle()
            await queue.start()
        await idle
    finally:
        if queue.running:
            queue.stop()
        stop_watch.set()
        await watcher

    summary.remaining = list(queue.state().pending)
    settled = set(summary.remaining) | set(summary.accepted)
    summary.unresolved = [symbol for symbol in dedupe_symbols(failed) if symbol not in settled]


def analysis_payload(result: RankedResult) -> dict[str, Any]:
    return {
        "generated_at": result.generated_at.isoformat(),
        "snapshot_count": result.snapshot_count,
        "ranked": result.ranked,
    }
