"""Host wake primitive backed by persisted due times."""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Protocol

from snapnav.schedule import ensure_aware
from snapnav.state.store import WakeStore

WakeCallback = Callable[[str], None]


class WakePrimitive(Protocol):
    """Named one-shot wake registrations that survive process suspension."""

    def register(self, name: str, fire_at: datetime) -> None:
        """Arm `name` to fire at `fire_at`, replacing any earlier registration."""

    def cancel(self, name: str) -> None:
        """Disarm `name`; unknown names are ignored."""

    def on_fire(self, callback: WakeCallback) -> None:
        """Subscribe to fired registrations."""


def _utc_now() -> datetime:
    return datetime.now(tz=UTC)


class PersistentWake:
    """Wake registrations stored in the state store and fired by `fire_due`.

    A restarted process calls `fire_due()` once on resume and then keeps `watch()` running,
    so a due time recorded before suspension is still honoured afterwards.
    """

    def __init__(self, store: WakeStore, clock: Callable[[], datetime] = _utc_now) -> None:
        self.store = store
        self.clock = clock
        self._callbacks: list[WakeCallback] = []

    def register(self, name: str, fire_at: datetime) -> None:
        self.store.save_wake(name, ensure_aware(fire_at))

    def cancel(self, name: str) -> None:
        self.store.delete_wake(name)

    def on_fire(self, callback: WakeCallback) -> None:
        self._callbacks.append(callback)

    def fire_due(self, now: datetime | None = None) -> list[str]:
        """Fire and clear every registration whose due time has passed."""
        current = ensure_aware(now or self.clock())
        due = sorted(
            (ensure_aware(fire_at), name)
            for name, fire_at in self.store.list_wakes().items()
            if ensure_aware(fire_at) <= current
        )
        fired: list[str] = []
        for _, name in due:
            self.store.delete_wake(name)
            fired.append(name)
            for callback in list(self._callbacks):
                callback(name)
        return fired

    async def watch(self, interval_seconds: float, stop: asyncio.Event) -> None:
        """Poll for due registrations until `stop` is set."""
        while not stop.is_set():
            self.fire_due()
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except TimeoutError:
                continue
