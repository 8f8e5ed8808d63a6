"""SQLite state store for restart-safe snapshot collection."""

from __future__ import annotations

import json
import sqlite3
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from snapnav.domain.models import LogEntry
from snapnav.errors import ValidationSkip
from snapnav.retention import retention_cutoff
from snapnav.schedule import ScheduleOracle, ensure_aware, parse_timestamp
from snapnav.state.store import QueueCheckpoint
from snapnav.validation import snapshot_errors


class SqliteStateStore:
    """SQLite-backed snapshots, logs, wake registrations and queue checkpoints."""

    def __init__(self, db_path: str, oracle: ScheduleOracle) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.oracle = oracle
        self.connection = sqlite3.connect(path)
        self.connection.row_factory = sqlite3.Row
        self._initialize_schema()

    def save(self, record: Mapping[str, Any]) -> None:
        errors = snapshot_errors(record)
        if errors:
            raise ValidationSkip(record.get("id") if isinstance(record, Mapping) else None, errors)
        captured = parse_timestamp(record["date_time"])
        self.connection.execute(
            """
            INSERT OR REPLACE INTO snapshots(id, date_time, captured_at, trading_date, payload)
            VALUES(?, ?, ?, ?, ?)
            """,
            (
                str(record["id"]),
                str(record["date_time"]),
                self._utc_text(captured),
                self.oracle.trading_date(captured),
                json.dumps(dict(record), sort_keys=True, default=str),
            ),
        )
        self.connection.commit()

    def query(self, symbol_id: str, start: datetime, end: datetime) -> list[dict[str, Any]]:
        rows = self.connection.execute(
            """
            SELECT payload
            FROM snapshots
            WHERE id = ?
              AND captured_at >= ?
              AND captured_at < ?
            ORDER BY captured_at ASC
            """,
            (symbol_id, self._utc_text(start), self._utc_text(end)),
        ).fetchall()
        return [json.loads(row["payload"]) for row in rows]

    def list_snapshots(self, trading_date: str | None = None) -> list[dict[str, Any]]:
        if trading_date is None:
            rows = self.connection.execute(
                "SELECT payload FROM snapshots ORDER BY captured_at ASC"
            ).fetchall()
        else:
            rows = self.connection.execute(
                """
                SELECT payload
                FROM snapshots
                WHERE trading_date = ?
                ORDER BY captured_at ASC
                """,
                (trading_date,),
            ).fetchall()
        return [json.loads(row["payload"]) for row in rows]

    def prune(self, now: datetime, retention_days: int) -> int:
        cutoff = retention_cutoff(self.oracle, now, retention_days)
        cursor = self.connection.execute(
            "DELETE FROM snapshots WHERE trading_date < ?",
            (cutoff,),
        )
        self.connection.commit()
        return cursor.rowcount

    def save_log(self, entry: LogEntry) -> None:
        self.connection.execute(
            """
            INSERT INTO logs(level, message, source, context, created_at, expires_at)
            VALUES(?, ?, ?, ?, ?, ?)
            """,
            (
                entry.level,
                entry.message,
                entry.source,
                json.dumps(entry.context, sort_keys=True, default=str),
                entry.created_at,
                self._optional_utc_text(entry.expires_at),
            ),
        )
        self.connection.commit()

    def load_logs(self) -> list[LogEntry]:
        rows = self.connection.execute(
            """
            SELECT level, message, source, context, created_at, expires_at
            FROM logs
            ORDER BY log_id ASC
            """
        ).fetchall()
        return [
            LogEntry(
                level=str(row["level"]),
                message=str(row["message"]),
                source=str(row["source"]),
                created_at=str(row["created_at"]),
                expires_at=str(row["expires_at"]) if row["expires_at"] else None,
                context=json.loads(row["context"]),
            )
            for row in rows
        ]

    def prune_logs(self, now: datetime) -> int:
        cursor = self.connection.execute(
            """
            DELETE FROM logs
            WHERE expires_at IS NOT NULL
              AND expires_at <= ?
            """,
            (self._utc_text(now),),
        )
        self.connection.commit()
        return cursor.rowcount

    def save_wake(self, name: str, fire_at: datetime) -> None:
        self.connection.execute(
            "INSERT OR REPLACE INTO wakes(name, fire_at) VALUES(?, ?)",
            (name, self._utc_text(fire_at)),
        )
        self.connection.commit()

    def delete_wake(self, name: str) -> None:
        self.connection.execute("DELETE FROM wakes WHERE name = ?", (name,))
        self.connection.commit()

    def list_wakes(self) -> dict[str, datetime]:
        rows = self.connection.execute("SELECT name, fire_at FROM wakes").fetchall()
        return {str(row["name"]): datetime.fromisoformat(row["fire_at"]) for row in rows}

    def save_checkpoint(self, checkpoint: QueueCheckpoint) -> None:
        self.connection.execute(
            """
            INSERT OR REPLACE INTO queue_checkpoints(name, pending, completed, total, due_at)
            VALUES(?, ?, ?, ?, ?)
            """,
            (
                checkpoint.name,
                json.dumps(checkpoint.pending),
                checkpoint.completed,
                checkpoint.total,
                checkpoint.due_at,
            ),
        )
        self.connection.commit()

    def load_checkpoint(self, name: str) -> QueueCheckpoint | None:
        row = self.connection.execute(
            """
            SELECT name, pending, completed, total, due_at
            FROM queue_checkpoints
            WHERE name = ?
            """,
            (name,),
        ).fetchone()
        if row is None:
            return None
        return QueueCheckpoint(
            name=str(row["name"]),
            pending=[str(item) for item in json.loads(row["pending"])],
            completed=int(row["completed"]),
            total=int(row["total"]),
            due_at=str(row["due_at"]) if row["due_at"] else None,
        )

    def clear_checkpoint(self, name: str) -> None:
        self.connection.execute("DELETE FROM queue_checkpoints WHERE name = ?", (name,))
        self.connection.commit()

    def close(self) -> None:
        self.connection.close()

    def _initialize_schema(self) -> None:
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS snapshots(
                id TEXT NOT NULL,
                date_time TEXT NOT NULL,
                captured_at TEXT NOT NULL,
                trading_date TEXT NOT NULL,
                payload TEXT NOT NULL,
                PRIMARY KEY (id, date_time)
            )
            """
        )
        self.connection.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_snapshots_trading_date
            ON snapshots(trading_date)
            """
        )
        self.connection.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_snapshots_id_captured
            ON snapshots(id, captured_at)
            """
        )
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS logs(
                log_id INTEGER PRIMARY KEY AUTOINCREMENT,
                level TEXT NOT NULL,
                message TEXT NOT NULL,
                source TEXT NOT NULL,
                context TEXT NOT NULL,
                created_at TEXT NOT NULL,
                expires_at TEXT
            )
            """
        )
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS wakes(
                name TEXT PRIMARY KEY,
                fire_at TEXT NOT NULL
            )
            """
        )
        self.connection.execute(
            """
            CREATE TABLE IF NOT EXISTS queue_checkpoints(
                name TEXT PRIMARY KEY,
                pending TEXT NOT NULL,
                completed INTEGER NOT NULL,
                total INTEGER NOT NULL,
                due_at TEXT
            )
            """
        )
        self.connection.commit()

    @staticmethod
    def _utc_text(value: datetime) -> str:
        return ensure_aware(value).astimezone(UTC).isoformat(timespec="microseconds")

    @classmethod
    def _optional_utc_text(cls, value: str | None) -> str | None:
        parsed = parse_timestamp(value)
        return cls._utc_text(parsed) if parsed is not None else None
