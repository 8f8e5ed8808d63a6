"""Retention windows for snapshots and breadcrumb logs."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from datetime import date, datetime, timedelta
from typing import Any

from snapnav.domain.models import LogEntry
from snapnav.schedule import ScheduleOracle, ensure_aware, parse_timestamp


def days_between(start: str, end: str) -> int:
    """Whole calendar days from one trading date to another."""
    return (date.fromisoformat(end) - date.fromisoformat(start)).days


def prune_snapshots(
    records: Iterable[Mapping[str, Any]],
    oracle: ScheduleOracle,
    now: datetime,
    retention_days: int,
) -> list[Mapping[str, Any]]:
    """Keep records whose trading date falls inside the retention window."""
    today = oracle.trading_date(now)
    kept: list[Mapping[str, Any]] = []
    for record in records:
        record_date = oracle.trading_date_of(record.get("date_time"))
        if record_date is None:
            continue
        if days_between(record_date, today) < retention_days:
            kept.append(record)
    return kept


def retention_cutoff(oracle: ScheduleOracle, now: datetime, retention_days: int) -> str:
    """Earliest trading date still retained."""
    today = date.fromisoformat(oracle.trading_date(now))
    return (today - timedelta(days=retention_days - 1)).isoformat()


def build_log_entry(
    level: str,
    message: str,
    now: datetime,
    *,
    source: str = "navigation",
    context: Mapping[str, Any] | None = None,
    ttl_days: int | None = None,
) -> LogEntry:
    created = ensure_aware(now)
    expires = (created + timedelta(days=ttl_days)).isoformat() if ttl_days else None
    return LogEntry(
        level=level,
        message=message,
        source=source,
        created_at=created.isoformat(),
        expires_at=expires,
        context=dict(context or {}),
    )


def prune_logs(entries: Iterable[LogEntry], now: datetime) -> list[LogEntry]:
    """Drop expired entries; entries without expiry never expire."""
    current = ensure_aware(now)
    kept: list[LogEntry] = []
    for entry in entries:
        expires = parse_timestamp(entry.expires_at)
        if expires is None or expires > current:
            kept.append(entry)
    return kept
