"""Analysis engine contract and the default swing ranking."""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from datetime import datetime
from typing import Any, Protocol

import pandas as pd

from snapnav.domain.models import RankedResult
from snapnav.schedule import ensure_aware

RANKED_COLUMNS = [
    "id",
    "symbol_name",
    "date_time",
    "close",
    "predicted_swing_probability",
    "predicted_swing_percent",
]


class AnalysisEngine(Protocol):
    """Downstream analysis triggered by the orchestrator."""

    def run(self, snapshots: Sequence[Mapping[str, Any]], now: datetime) -> RankedResult:
        """Rank the accumulated snapshots."""


class SwingRankingEngine:
    """Rank the latest snapshot per instrument by swing probability then magnitude."""

    def __init__(self, top_count: int | None = 5) -> None:
        self.top_count = top_count

    def run(self, snapshots: Sequence[Mapping[str, Any]], now: datetime) -> RankedResult:
        generated_at = ensure_aware(now)
        if not snapshots:
            return RankedResult(generated_at=generated_at, snapshot_count=0)

        frame = pd.DataFrame([dict(row) for row in snapshots])
        for column in RANKED_COLUMNS:
            if column not in frame.columns:
                frame[column] = None
        frame["_ts"] = pd.to_datetime(frame["date_time"], utc=True, errors="coerce")
        latest = frame.sort_values("_ts").groupby("id", sort=False).tail(1)

        probability = pd.to_numeric(latest["predicted_swing_probability"], errors="coerce")
        percent = pd.to_numeric(latest["predicted_swing_percent"], errors="coerce")
        latest = latest.assign(
            predicted_swing_probability=probability,
            predicted_swing_percent=percent,
            _percent_key=percent.fillna(0.0),
        )
        latest = latest.dropna(subset=["predicted_swing_probability"])
        ranked = latest.sort_values(
            ["predicted_swing_probability", "_percent_key"],
            ascending=[False, False],
            kind="mergesort",
        )
        if self.top_count is not None:
            ranked = ranked.head(self.top_count)

        rows: list[dict[str, Any]] = []
        for record in ranked[RANKED_COLUMNS].to_dict(orient="records"):
            rows.append({key: self._plain(value) for key, value in record.items()})
        return RankedResult(
            generated_at=generated_at,
            snapshot_count=len(snapshots),
            ranked=rows,
        )

    @staticmethod
    def _plain(value: Any) -> Any:
        if value is None:
            return None
        try:
            if pd.isna(value):
                return None
        except (TypeError, ValueError):
            return value
        if hasattr(value, "item"):
            return value.item()
        return value
