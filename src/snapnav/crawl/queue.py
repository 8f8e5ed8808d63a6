"""Single-flight, resumable FIFO crawl queue driving one execution surface."""

from __future__ import annotations

import asyncio
import inspect
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime, timedelta
from typing import Any

from snapnav.crawl.surface import VisitOperation
from snapnav.crawl.wake import WakePrimitive
from snapnav.domain.models import (
    CrawlProgress,
    CrawlState,
    ErrorContext,
    QueuePhase,
    SurfaceHandle,
    SymbolDescriptor,
    Visit,
    WakeSource,
)
from snapnav.errors import AbortedCrawl
from snapnav.logging.logger import HumanLogger
from snapnav.schedule import parse_timestamp
from snapnav.state.store import QueueCheckpoint, WakeStore

VisitHook = Callable[[Visit], Awaitable[None] | None]
ErrorHook = Callable[[BaseException, ErrorContext], Awaitable[None] | None]
ProgressHook = Callable[[CrawlProgress], Awaitable[None] | None]


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


def normalize_symbols(symbols: Iterable[str | SymbolDescriptor]) -> list[SymbolDescriptor]:
    """Strip, drop empties and dedupe by id while preserving first-seen order."""
    by_id: dict[str, SymbolDescriptor] = {}
    for symbol in symbols:
        if isinstance(symbol, SymbolDescriptor):
            descriptor = SymbolDescriptor(symbol.id.strip(), symbol.resolved_target)
        else:
            descriptor = SymbolDescriptor(str(symbol or "").strip())
        if descriptor.id and descriptor.id not in by_id:
            by_id[descriptor.id] = descriptor
    return list(by_id.values())


async def maybe_await(result: Any) -> None:
    if inspect.isawaitable(result):
        await result


class CrawlQueue:
    """Visits queued symbols one at a time with a delay between ticks.

    Each scheduled tick is armed on two triggers for the same due time: an in-process
    `loop.call_later` timer and a host wake registration. Whichever fires first runs the
    tick and cancels the other. The queue is not reentrant; drive it from one event loop.
    """

    def __init__(
        self,
        visit: VisitOperation,
        *,
        on_visit: VisitHook | None = None,
        on_error: ErrorHook | None = None,
        on_progress: ProgressHook | None = None,
        delay_ms: int = 500,
        wake: WakePrimitive | None = None,
        checkpoints: WakeStore | None = None,
        name: str = "crawl-queue",
        logger: HumanLogger | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self._visit = visit
        self._on_visit = on_visit
        self._on_error = on_error
        self._on_progress = on_progress
        self.delay_ms = delay_ms
        self.wake = wake
        self.checkpoints = checkpoints
        self.name = name
        self.logger = logger
        self.clock = clock

        self._pending: deque[SymbolDescriptor] = deque()
        self._active: SymbolDescriptor | None = None
        self._surface_handle: SurfaceHandle | None = None
        self._completed = 0
        self._total = 0
        self._running = False
        self._phase = QueuePhase.IDLE
        self._cancel = asyncio.Event()
        self._in_flight = False
        self._timer: asyncio.TimerHandle | None = None
        self._tick_task: asyncio.Task[None] | None = None
        self._token = 0
        self._due_at: datetime | None = None
        self._idle_waiters: list[asyncio.Future[None]] = []
        self.last_wake_source: WakeSource | None = None

        if wake is not None:
            wake.on_fire(self._on_host_wake)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> bool:
        """True while a visit, possibly from a stopped pass, has not settled."""
        return self._in_flight

    @property
    def phase(self) -> QueuePhase:
        return self._phase

    @property
    def due_at(self) -> datetime | None:
        return self._due_at

    def state(self) -> CrawlState:
        return CrawlState(
            pending=tuple(item.id for item in self._pending),
            active_symbol=self._active.id if self._active else None,
            surface_handle=self._surface_handle,
            completed=self._completed,
            total=self._total,
            running=self._running,
            phase=self._phase,
        )

    def enqueue_symbols(self, symbols: Iterable[str | SymbolDescriptor]) -> int:
        """Append ids; a running queue grows its total, an idle one resets it."""
        added = normalize_symbols(symbols)
        self._pending.extend(added)
        if self._running:
            self._total += len(added)
        else:
            self._total = len(self._pending)
        return len(added)

    def replace_queue(self, symbols: Iterable[str | SymbolDescriptor]) -> None:
        self._pending = deque(normalize_symbols(symbols))
        self._completed = 0
        self._total = len(self._pending)

    async def start(self) -> bool:
        """Begin a fresh pass; returns False when running, settling a visit or empty."""
        if self._running or self._in_flight or not self._pending:
            return False
        self._completed = 0
        self._total = len(self._pending)
        return await self._begin()

    async def resume(self) -> bool:
        """Continue a stopped pass without resetting its counters."""
        if self._running or self._in_flight or not self._pending:
            return False
        self._total = max(self._total, self._completed + len(self._pending))
        return await self._begin()

    async def restore(self, checkpoint: QueueCheckpoint, now: datetime | None = None) -> bool:
        """Rebuild a suspended pass and re-arm it for whatever delay is left."""
        if self._running or self._in_flight or not checkpoint.pending:
            return False
        self._pending = deque(normalize_symbols(checkpoint.pending))
        self._completed = checkpoint.completed
        self._total = max(checkpoint.total, self._completed + len(self._pending))
        self._running = True
        self._cancel = asyncio.Event()
        due_at = parse_timestamp(checkpoint.due_at)
        remaining_ms = 0
        if due_at is not None:
            delta = due_at - (now or self.clock())
            remaining_ms = max(0, int(delta.total_seconds() * 1000))
        if self.logger is not None:
            self.logger.debug(
                "queue restored",
                {"pending": len(self._pending), "completed": self._completed, "ms": remaining_ms},
            )
        self._arm(remaining_ms)
        return True

    def stop(self) -> None:
        """Halt scheduling; the in-flight visit sees the cancel signal on its next poll."""
        self._running = False
        self._active = None
        self._cancel.set()
        self._disarm()
        self._phase = QueuePhase.STOPPED
        self._save_checkpoint()
        self._notify_idle()

    def when_idle(self) -> asyncio.Future[None]:
        """Future resolved for every caller at the next idle or stop transition."""
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if not self._running and not self._pending:
            future.set_result(None)
            return future
        self._idle_waiters.append(future)
        return future

    async def _begin(self) -> bool:
        self._running = True
        # Each pass owns its signal so a stopped visit keeps seeing its cancellation.
        self._cancel = asyncio.Event()
        self._token += 1
        await self._tick()
        return True

    async def _tick(self) -> None:
        if not self._running:
            return
        self._timer = None
        self._due_at = None
        if not self._pending:
            self._finish()
            return

        descriptor = self._pending.popleft()
        self._active = descriptor
        self._phase = QueuePhase.PROCESSING
        self._in_flight = True
        try:
            visit = await self._visit(descriptor, self._cancel)
            self._surface_handle = visit.surface_handle
            if self._on_visit is not None:
                await maybe_await(self._on_visit(visit))
        except AbortedCrawl as exc:
            self._pending.appendleft(descriptor)
            self._active = None
            if self.logger is not None:
                self.logger.debug("queue aborted", {"symbol": descriptor.id, "reason": exc.reason})
            if self._running:
                self.stop()
            else:
                self._save_checkpoint()
            return
        except Exception as exc:
            await self._report_error(exc, descriptor)
        finally:
            self._in_flight = False

        self._active = None
        self._completed += 1
        remaining = len(self._pending)
        self._total = max(self._total, self._completed + remaining)
        await self._emit_progress(
            CrawlProgress(
                symbol=descriptor.id,
                completed=self._completed,
                remaining=remaining,
                total=self._total,
            )
        )

        if not self._running:
            self._save_checkpoint()
            return
        if not self._pending:
            self._finish()
            return
        self._arm(self.delay_ms)

    def _arm(self, delay_ms: int) -> None:
        loop = asyncio.get_running_loop()
        self._token += 1
        token = self._token
        self._phase = QueuePhase.SCHEDULED
        self._due_at = self.clock() + timedelta(milliseconds=delay_ms)
        self._timer = loop.call_later(delay_ms / 1000.0, self._wake_up, token, WakeSource.TIMER)
        if self.wake is not None:
            self.wake.register(self.name, self._due_at)
        self._save_checkpoint()

    def _disarm(self) -> None:
        self._token += 1
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self.wake is not None:
            self.wake.cancel(self.name)
        self._due_at = None

    def _on_host_wake(self, name: str) -> None:
        if name == self.name:
            self._wake_up(self._token, WakeSource.HOST)

    def _wake_up(self, token: int, source: WakeSource) -> None:
        if token != self._token or not self._running or self._phase != QueuePhase.SCHEDULED:
            return
        # Consume the token so the losing trigger becomes stale.
        self._token += 1
        self.last_wake_source = source
        if source is WakeSource.TIMER:
            if self.wake is not None:
                self.wake.cancel(self.name)
        elif self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._tick_task = asyncio.get_running_loop().create_task(self._tick())
        self._tick_task.add_done_callback(self._tick_done)

    def _tick_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is None:
            return
        if self.logger is not None:
            self.logger.error(f"queue tick failed: {exc}")
        self._running = False
        self._active = None
        self._phase = QueuePhase.STOPPED
        self._notify_idle()

    def _finish(self) -> None:
        self._running = False
        self._active = None
        self._phase = QueuePhase.IDLE
        self._due_at = None
        if self.checkpoints is not None:
            self.checkpoints.clear_checkpoint(self.name)
        if self.logger is not None:
            self.logger.idle(self._completed, self._total)
        self._notify_idle()

    def _notify_idle(self) -> None:
        waiters, self._idle_waiters = self._idle_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(None)

    def _save_checkpoint(self) -> None:
        if self.checkpoints is None:
            return
        self.checkpoints.save_checkpoint(
            QueueCheckpoint(
                name=self.name,
                pending=[item.id for item in self._pending],
                completed=self._completed,
                total=self._total,
                due_at=self._due_at.isoformat() if self._due_at else None,
            )
        )

    async def _report_error(self, exc: Exception, descriptor: SymbolDescriptor) -> None:
        context = ErrorContext(symbol=descriptor.id, surface_handle=self._surface_handle)
        if self._on_error is None:
            if self.logger is not None:
                self.logger.visit_failed(descriptor.id, str(exc))
            return
        try:
            await maybe_await(self._on_error(exc, context))
        except Exception as hook_exc:
            if self.logger is not None:
                self.logger.error(f"error hook failed for {descriptor.id}: {hook_exc}")

    async def _emit_progress(self, progress: CrawlProgress) -> None:
        if self.logger is not None:
            self.logger.progress(progress)
        if self._on_progress is None:
            return
        try:
            await maybe_await(self._on_progress(progress))
        except Exception as exc:
            if self.logger is not None:
                self.logger.error(f"progress hook failed for {progress.symbol}: {exc}")
