"""Snapshot record shape checks."""

from __future__ import annotations

import math
from collections.abc import Mapping
from typing import Any

from snapnav.schedule import parse_timestamp

SNAPSHOT_FIELDS: dict[str, str] = {
    "id": "string",
    "date_time": "string",
    "symbol_name": "string",
    "symbol_abbreviation": "string",
    "close": "number",
    "last_trade": "number",
    "open": "number",
    "low": "number",
    "high": "number",
    "trades_count": "number",
    "trading_volume": "number",
    "trading_value": "number",
    "market_value": "number",
    "status": "string",
    "floating_shares": "number",
    "predicted_swing_percent": "number",
    "predicted_swing_probability": "number",
}

OPTIONAL_SNAPSHOT_FIELDS = frozenset({"floating_shares", "predicted_swing_percent"})


def snapshot_errors(record: Any) -> list[str]:
    """Return every shape problem found in a candidate snapshot."""
    if not isinstance(record, Mapping):
        return ["record must be a mapping"]
    errors: list[str] = []
    missing = [key for key in SNAPSHOT_FIELDS if key not in record]
    if missing:
        errors.append(f"missing fields: {', '.join(missing)}")
    symbol_id = record.get("id")
    if not isinstance(symbol_id, str) or not symbol_id.strip():
        errors.append("id is required")
    if parse_timestamp(record.get("date_time")) is None:
        errors.append("date_time must be a valid timestamp")
    for key, kind in SNAPSHOT_FIELDS.items():
        if kind != "number" or record.get(key) is None:
            continue
        value = record[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"{key} must be numeric")
        elif isinstance(value, float) and not math.isfinite(value):
            errors.append(f"{key} must be finite")
    return errors


def validate_snapshot(record: Any) -> bool:
    return not snapshot_errors(record)


def missing_snapshot_fields(record: Any) -> list[str]:
    """Required fields that are absent or None."""
    if not isinstance(record, Mapping):
        return ["snapshot"]
    return [
        key
        for key in SNAPSHOT_FIELDS
        if key not in OPTIONAL_SNAPSHOT_FIELDS and record.get(key) is None
    ]


def has_complete_snapshot(record: Any) -> bool:
    return not missing_snapshot_fields(record)


def with_snapshot_defaults(record: Mapping[str, Any]) -> dict[str, Any]:
    """Fill every declared field so downstream code never sees missing keys."""
    base: dict[str, Any] = dict.fromkeys(SNAPSHOT_FIELDS)
    base.update(record)
    return base
