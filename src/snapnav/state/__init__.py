"""State store interfaces and implementations."""

from .sqlite_store import SqliteStateStore
from .store import LogStore, QueueCheckpoint, SnapshotStore, WakeStore

__all__ = ["LogStore", "QueueCheckpoint", "SnapshotStore", "SqliteStateStore", "WakeStore"]
