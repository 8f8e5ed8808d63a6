"""Core crawl domain models."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

Snapshot = Mapping[str, Any]
SurfaceHandle = int | str


class QueuePhase(StrEnum):
    """Lifecycle phases of the crawl queue."""

    IDLE = "idle"
    PROCESSING = "processing"
    SCHEDULED = "scheduled"
    STOPPED = "stopped"


class WakeSource(StrEnum):
    """Which trigger resumed a scheduled tick."""

    TIMER = "timer"
    HOST = "host"


@dataclass(frozen=True)
class SymbolDescriptor:
    """Instrument identifier with an optional precomputed target URL."""

    id: str
    resolved_target: str | None = field(default=None, compare=False)


@dataclass(frozen=True)
class CrawlProgress:
    """Per-tick progress emitted by the crawl queue."""

    symbol: str
    completed: int
    remaining: int
    total: int


@dataclass(frozen=True)
class CrawlState:
    """Point-in-time view of the crawl queue."""

    pending: tuple[str, ...]
    active_symbol: str | None
    surface_handle: SurfaceHandle | None
    completed: int
    total: int
    running: bool
    phase: QueuePhase


@dataclass(frozen=True)
class ErrorContext:
    """Context handed to the queue's error hook."""

    symbol: str
    surface_handle: SurfaceHandle | None


@dataclass(frozen=True)
class Visit:
    """Result of one navigate, wait and extract attempt."""

    symbol: str
    url: str
    surface_handle: SurfaceHandle | None
    snapshot: dict[str, Any] | None = None


@dataclass(frozen=True)
class RecordResult:
    """Outcome of an orchestrator batch."""

    accepted: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class RetryReport:
    """Summary of a bounded multi-pass crawl."""

    captured: list[str] = field(default_factory=list)
    unresolved: list[str] = field(default_factory=list)
    remaining: list[str] = field(default_factory=list)
    attempts: dict[str, int] = field(default_factory=dict)
    aborted: bool = False
    abort_reason: str | None = None


@dataclass(frozen=True)
class RankedResult:
    """Analysis output for one trigger."""

    generated_at: datetime
    snapshot_count: int
    ranked: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class LogEntry:
    """Breadcrumb log row with an optional expiry."""

    level: str
    message: str
    source: str
    created_at: str
    expires_at: str | None = None
    context: dict[str, Any] = field(default_factory=dict)

    def to_record(self) -> dict[str, Any]:
        return {
            "level": self.level,
            "message": self.message,
            "source": self.source,
            "created_at": self.created_at,
            "expires_at": self.expires_at,
            "context": self.context,
        }
