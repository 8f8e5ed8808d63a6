"""State store contracts used by the crawl engine."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

from snapnav.domain.models import LogEntry


@dataclass(frozen=True)
class QueueCheckpoint:
    """Persisted crawl queue position for resumption after suspension."""

    name: str
    pending: list[str] = field(default_factory=list)
    completed: int = 0
    total: int = 0
    due_at: str | None = None


class SnapshotStore(Protocol):
    """Persistence API for captured snapshots."""

    def save(self, record: Mapping[str, Any]) -> None:
        """Persist a snapshot; raises ValidationSkip on shape failure."""

    def query(self, symbol_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        """Return snapshots for an id captured within [start, end)."""

    def prune(self, now: datetime, retention_days: int) -> int:
        """Remove rows whose trading date precedes the retention window."""


class LogStore(Protocol):
    """Persistence API for breadcrumb log entries."""

    def save_log(self, entry: LogEntry) -> None:
        """Persist one log entry."""

    def load_logs(self) -> list[LogEntry]:
        """Return persisted log entries, oldest first."""

    def prune_logs(self, now: datetime) -> int:
        """Remove expired log entries."""


class WakeStore(Protocol):
    """Persistence API for host wake registrations and queue checkpoints."""

    def save_wake(self, name: str, fire_at: datetime) -> None:
        """Persist a due time."""

    def delete_wake(self, name: str) -> None:
        """Forget a due time."""

    def list_wakes(self) -> dict[str, datetime]:
        """Return every registered due time."""

    def save_checkpoint(self, checkpoint: QueueCheckpoint) -> None:
        """Persist the queue position."""

    def load_checkpoint(self, name: str) -> QueueCheckpoint | None:
        """Return the last persisted queue position."""

    def clear_checkpoint(self, name: str) -> None:
        """Forget the queue position."""
