"""Domain models and event types."""

from .events import CrawlEvent
from .models import (
    CrawlProgress,
    CrawlState,
    ErrorContext,
    LogEntry,
    QueuePhase,
    RankedResult,
    RecordResult,
    RetryReport,
    Snapshot,
    SurfaceHandle,
    SymbolDescriptor,
    Visit,
    WakeSource,
)

__all__ = [
    "CrawlEvent",
    "CrawlProgress",
    "CrawlState",
    "ErrorContext",
    "LogEntry",
    "QueuePhase",
    "RankedResult",
    "RecordResult",
    "RetryReport",
    "Snapshot",
    "SurfaceHandle",
    "SymbolDescriptor",
    "Visit",
    "WakeSource",
]
