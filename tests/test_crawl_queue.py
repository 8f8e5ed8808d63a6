from __future__ import annotations

import asyncio
import sqlite3
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path

from snapnav.crawl.queue import CrawlQueue, normalize_symbols
from snapnav.crawl.wake import PersistentWake
from snapnav.domain.models import (
    CrawlProgress,
    ErrorContext,
    QueuePhase,
    SymbolDescriptor,
    Visit,
    WakeSource,
)
from snapnav.errors import AbortedCrawl, VisitFailure
from snapnav.logging.logger import HumanLogger
from snapnav.schedule import ScheduleOracle
from snapnav.state.sqlite_store import SqliteStateStore
from snapnav.state.store import QueueCheckpoint

NOW = datetime(2024, 1, 13, 10, 0, tzinfo=UTC)


class FakeVisitor:
    def __init__(self, failing: set[str] | None = None) -> None:
        self.failing = failing or set()
        self.visited: list[str] = []

    async def __call__(self, symbol: SymbolDescriptor, signal: asyncio.Event | None) -> Visit:
        self.visited.append(symbol.id)
        if symbol.id in self.failing:
            raise VisitFailure(symbol.id, "readiness timeout after 15000 ms")
        return Visit(
            symbol=symbol.id,
            url=f"https://www.tsetmc.com/InstInfo/{symbol.id}",
            surface_handle=7,
            snapshot={"id": symbol.id},
        )


class RecordingWake:
    def __init__(self) -> None:
        self.registered: dict[str, datetime] = {}
        self.cancelled: list[str] = []
        self.callbacks: list[Callable[[str], None]] = []

    def register(self, name: str, fire_at: datetime) -> None:
        self.registered[name] = fire_at

    def cancel(self, name: str) -> None:
        self.cancelled.append(name)
        self.registered.pop(name, None)

    def on_fire(self, callback: Callable[[str], None]) -> None:
        self.callbacks.append(callback)

    def fire(self, name: str) -> None:
        for callback in self.callbacks:
            callback(name)


def _progress_rows(progress: list[CrawlProgress]) -> list[tuple[str, int, int, int]]:
    return [(item.symbol, item.completed, item.remaining, item.total) for item in progress]


def test_normalize_symbols_strips_and_dedupes() -> None:
    normalized = normalize_symbols([" AAA ", "", "BBB", "AAA", SymbolDescriptor("CCC", "u")])
    assert [item.id for item in normalized] == ["AAA", "BBB", "CCC"]
    assert normalized[2].resolved_target == "u"


def test_visits_in_order_with_progress_deltas() -> None:
    visitor = FakeVisitor()
    progress: list[CrawlProgress] = []

    async def scenario() -> CrawlQueue:
        queue = CrawlQueue(visitor, on_progress=progress.append, delay_ms=0)
        queue.enqueue_symbols(["AAA", "BBB", "CCC"])
        idle = queue.when_idle()
        await queue.start()
        await idle
        return queue

    queue = asyncio.run(scenario())

    assert visitor.visited == ["AAA", "BBB", "CCC"]
    assert [(item.completed, item.remaining) for item in progress] == [(1, 2), (2, 1), (3, 0)]
    assert all(item.total == 3 for item in progress)
    assert queue.running is False
    assert queue.pending_count == 0
    assert queue.phase is QueuePhase.IDLE


def test_enqueue_mid_run_grows_total() -> None:
    visitor = FakeVisitor()
    progress: list[CrawlProgress] = []

    async def scenario() -> None:
        queue = CrawlQueue(visitor, on_progress=progress.append, delay_ms=0)
        queue.enqueue_symbols(["AAA", "BBB"])
        await queue.start()
        queue.enqueue_symbols(["CCC"])
        await queue.when_idle()

    asyncio.run(scenario())

    assert _progress_rows(progress) == [
        ("AAA", 1, 1, 2),
        ("BBB", 2, 1, 3),
        ("CCC", 3, 0, 3),
    ]


def test_stop_preserves_pending_and_resume_continues() -> None:
    visitor = FakeVisitor()

    async def scenario() -> tuple[int, bool, QueuePhase, list[str]]:
        queue = CrawlQueue(visitor, delay_ms=50)
        queue.enqueue_symbols(["AAA", "BBB", "CCC"])
        await queue.start()
        queue.stop()
        snapshot = (queue.pending_count, queue.running, queue.phase, list(visitor.visited))

        idle = queue.when_idle()
        await queue.resume()
        await idle
        assert queue.state().completed == 3
        return snapshot

    pending, running, phase, visited_before_stop = asyncio.run(scenario())

    assert pending >= 1
    assert running is False
    assert phase is QueuePhase.STOPPED
    assert visited_before_stop == ["AAA"]
    assert visitor.visited == ["AAA", "BBB", "CCC"]


def test_start_is_noop_when_running_or_empty() -> None:
    async def scenario() -> tuple[bool, bool]:
        queue = CrawlQueue(FakeVisitor(), delay_ms=100000)
        empty_start = await queue.start()
        queue.enqueue_symbols(["AAA", "BBB"])
        await queue.start()
        second_start = await queue.start()
        queue.stop()
        return empty_start, second_start

    assert asyncio.run(scenario()) == (False, False)


def test_when_idle_fans_out_to_every_waiter() -> None:
    async def scenario() -> tuple[bool, bool, bool]:
        queue = CrawlQueue(FakeVisitor(), delay_ms=0)
        already_idle = queue.when_idle().done()
        queue.enqueue_symbols(["AAA", "BBB"])
        first = queue.when_idle()
        second = queue.when_idle()
        await queue.start()
        await asyncio.wait_for(asyncio.gather(first, second), timeout=1)
        return already_idle, first.done(), second.done()

    assert asyncio.run(scenario()) == (True, True, True)


def test_callback_failures_route_to_error_hook() -> None:
    visitor = FakeVisitor(failing={"BBB"})
    errors: list[tuple[str, str | None]] = []
    progress: list[CrawlProgress] = []

    def on_visit(visit: Visit) -> None:
        raise NameError("alert is not defined")

    def on_error(exc: BaseException, context: ErrorContext) -> None:
        errors.append((type(exc).__name__, context.symbol))

    async def scenario() -> None:
        queue = CrawlQueue(
            visitor,
            on_visit=on_visit,
            on_error=on_error,
            on_progress=progress.append,
            delay_ms=0,
        )
        queue.enqueue_symbols(["AAA", "BBB", "CCC"])
        idle = queue.when_idle()
        await queue.start()
        await idle

    asyncio.run(scenario())

    assert visitor.visited == ["AAA", "BBB", "CCC"]
    assert errors == [("NameError", "AAA"), ("VisitFailure", "BBB"), ("NameError", "CCC")]
    assert [item.completed for item in progress] == [1, 2, 3]


def test_async_visit_hook_is_awaited() -> None:
    seen: list[str] = []

    async def on_visit(visit: Visit) -> None:
        await asyncio.sleep(0)
        seen.append(visit.symbol)

    async def scenario() -> None:
        queue = CrawlQueue(FakeVisitor(), on_visit=on_visit, delay_ms=0)
        queue.enqueue_symbols(["AAA", "BBB"])
        idle = queue.when_idle()
        await queue.start()
        await idle

    asyncio.run(scenario())
    assert seen == ["AAA", "BBB"]


def test_host_wake_resumes_before_timer() -> None:
    visitor = FakeVisitor()
    wake = RecordingWake()

    async def scenario() -> CrawlQueue:
        queue = CrawlQueue(visitor, delay_ms=100000, wake=wake, name="crawl")
        queue.enqueue_symbols(["AAA", "BBB"])
        idle = queue.when_idle()
        await queue.start()
        assert queue.phase is QueuePhase.SCHEDULED
        assert "crawl" in wake.registered
        wake.fire("crawl")
        await asyncio.wait_for(idle, timeout=1)
        return queue

    queue = asyncio.run(scenario())

    assert visitor.visited == ["AAA", "BBB"]
    assert queue.last_wake_source is WakeSource.HOST
    assert queue.phase is QueuePhase.IDLE


def test_timer_wins_and_cancels_host_wake() -> None:
    visitor = FakeVisitor()
    wake = RecordingWake()

    async def scenario() -> CrawlQueue:
        queue = CrawlQueue(visitor, delay_ms=0, wake=wake, name="crawl")
        queue.enqueue_symbols(["AAA", "BBB"])
        idle = queue.when_idle()
        await queue.start()
        await idle
        # A late host wake for an already consumed tick is ignored.
        wake.fire("crawl")
        await asyncio.sleep(0)
        return queue

    queue = asyncio.run(scenario())

    assert visitor.visited == ["AAA", "BBB"]
    assert queue.last_wake_source is WakeSource.TIMER
    assert "crawl" in wake.cancelled
    assert wake.registered == {}


def test_symbol_can_be_requeued_while_active() -> None:
    visitor = FakeVisitor()

    async def scenario() -> CrawlQueue:
        queue = CrawlQueue(visitor, delay_ms=0)

        def on_visit(visit: Visit) -> None:
            if visit.symbol == "AAA" and visitor.visited.count("AAA") == 1:
                queue.enqueue_symbols(["AAA"])

        queue._on_visit = on_visit
        queue.enqueue_symbols(["AAA", "BBB"])
        idle = queue.when_idle()
        await queue.start()
        await idle
        return queue

    queue = asyncio.run(scenario())

    assert visitor.visited == ["AAA", "BBB", "AAA"]
    assert queue.state().total == 3


def test_stop_signal_requeues_in_flight_symbol() -> None:
    async def scenario() -> CrawlQueue:
        queue = CrawlQueue(FakeVisitor(), delay_ms=0)

        async def aborting_visit(symbol: SymbolDescriptor, signal: asyncio.Event | None) -> Visit:
            queue.stop()
            assert signal is not None and signal.is_set()
            raise AbortedCrawl("stopped")

        queue._visit = aborting_visit
        queue.enqueue_symbols(["AAA", "BBB"])
        await queue.start()
        return queue

    queue = asyncio.run(scenario())

    assert queue.state().pending == ("AAA", "BBB")
    assert queue.state().completed == 0
    assert queue.running is False


def test_checkpoint_restores_after_restart_via_persistent_wake(
    tmp_path: Path, utc_oracle: ScheduleOracle
) -> None:
    store = SqliteStateStore(str(tmp_path / "state.db"), utc_oracle)
    first_visitor = FakeVisitor()

    async def before_suspend() -> None:
        queue = CrawlQueue(
            first_visitor,
            delay_ms=100000,
            wake=PersistentWake(store, clock=lambda: NOW),
            checkpoints=store,
            name="crawl",
            clock=lambda: NOW,
        )
        queue.enqueue_symbols(["AAA", "BBB", "CCC"])
        await queue.start()

    asyncio.run(before_suspend())

    checkpoint = store.load_checkpoint("crawl")
    assert checkpoint is not None
    assert checkpoint.pending == ["BBB", "CCC"]
    assert checkpoint.completed == 1
    assert "crawl" in store.list_wakes()

    second_visitor = FakeVisitor()
    progress: list[CrawlProgress] = []
    due_at = NOW + timedelta(seconds=100)

    async def after_resume() -> CrawlQueue:
        wake = PersistentWake(store, clock=lambda: NOW)
        queue = CrawlQueue(
            second_visitor,
            on_progress=progress.append,
            delay_ms=0,
            wake=wake,
            checkpoints=store,
            name="crawl",
            clock=lambda: NOW,
        )
        assert await queue.restore(checkpoint, now=NOW)
        idle = queue.when_idle()
        assert wake.fire_due(now=due_at + timedelta(seconds=1)) == ["crawl"]
        await asyncio.wait_for(idle, timeout=1)
        return queue

    queue = asyncio.run(after_resume())

    assert first_visitor.visited == ["AAA"]
    assert second_visitor.visited == ["BBB", "CCC"]
    assert _progress_rows(progress) == [("BBB", 2, 1, 3), ("CCC", 3, 0, 3)]
    assert queue.state().phase is QueuePhase.IDLE
    assert store.load_checkpoint("crawl") is None
    assert store.list_wakes() == {}
    store.close()


def test_restart_waits_for_stopped_visit_to_settle() -> None:
    gate_open = asyncio.Event()
    in_flight = 0
    peak = 0
    signals: list[asyncio.Event | None] = []
    visited: list[str] = []

    async def slow_visit(symbol: SymbolDescriptor, signal: asyncio.Event | None) -> Visit:
        nonlocal in_flight, peak
        in_flight += 1
        peak = max(peak, in_flight)
        signals.append(signal)
        try:
            if symbol.id == "AAA" and len(signals) == 1:
                await gate_open.wait()
                if signal is not None and signal.is_set():
                    raise AbortedCrawl("stopped")
            visited.append(symbol.id)
            return Visit(symbol=symbol.id, url="", surface_handle=1, snapshot={"id": symbol.id})
        finally:
            in_flight -= 1

    async def scenario() -> tuple[bool, bool, bool]:
        queue = CrawlQueue(slow_visit, delay_ms=0)
        queue.enqueue_symbols(["AAA", "BBB"])
        first_pass = asyncio.create_task(queue.start())
        while not signals:
            await asyncio.sleep(0)
        queue.stop()
        refused = await queue.start()
        first_signal_set = signals[0] is not None and signals[0].is_set()

        gate_open.set()
        await asyncio.wait_for(first_pass, timeout=1)
        assert queue.in_flight is False
        assert queue.state().pending == ("AAA", "BBB")

        idle = queue.when_idle()
        restarted = await queue.start()
        await asyncio.wait_for(idle, timeout=1)
        return refused, first_signal_set, restarted

    refused, first_signal_set, restarted = asyncio.run(scenario())

    assert refused is False
    assert first_signal_set is True
    assert restarted is True
    assert peak == 1
    assert visited == ["AAA", "BBB"]
    assert signals[1] is not signals[0]
    assert signals[1] is not None and not signals[1].is_set()


class FailingCheckpoints:
    def save_checkpoint(self, checkpoint: QueueCheckpoint) -> None:
        return None

    def clear_checkpoint(self, name: str) -> None:
        raise sqlite3.OperationalError("database is locked")


def test_failed_scheduled_tick_releases_idle_waiters() -> None:
    visitor = FakeVisitor()

    async def scenario() -> CrawlQueue:
        queue = CrawlQueue(
            visitor,
            delay_ms=0,
            checkpoints=FailingCheckpoints(),  # type: ignore[arg-type]
            logger=HumanLogger(level="CRITICAL"),
        )
        queue.enqueue_symbols(["AAA", "BBB"])
        idle = queue.when_idle()
        await queue.start()
        await asyncio.wait_for(idle, timeout=1)
        return queue

    queue = asyncio.run(scenario())

    assert visitor.visited == ["AAA", "BBB"]
    assert queue.running is False
    assert queue.phase is QueuePhase.STOPPED
