"""JSONL event sink and per-run Plotly report generator."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pandas as pd
import plotly.express as px

from snapnav.domain.events import CrawlEvent


class JsonlEventSink:
    """Append-only JSONL writer."""

    def __init__(self, path: str) -> None:
        output_path = Path(path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        self.path = output_path

    def emit(self, event: CrawlEvent) -> None:
        record = event.to_record()
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(record, sort_keys=True, default=str))
            handle.write("\n")


def load_events(path: str | Path) -> list[dict[str, Any]]:
    """Load JSONL records from disk."""
    records: list[dict[str, Any]] = []
    input_path = Path(path)
    if not input_path.exists():
        return records
    with input_path.open("r", encoding="utf-8") as handle:
        for line in handle:
            text = line.strip()
            if not text:
                continue
            records.append(json.loads(text))
    return records


def cycle_outcomes(events: list[dict[str, Any]]) -> pd.DataFrame:
    """One row per finished cycle: accepted, failed and remaining symbol counts."""
    failed_by_cycle: dict[str, set[str]] = {}
    for event in events:
        if event.get("event_type") == "visit_failed":
            symbol = str(event.get("payload", {}).get("symbol", ""))
            failed_by_cycle.setdefault(str(event.get("cycle_id", "")), set()).add(symbol)

    rows: list[dict[str, Any]] = []
    for event in events:
        if event.get("event_type") != "cycle_finished":
            continue
        payload = event.get("payload", {})
        cycle_id = str(event.get("cycle_id", ""))
        unresolved = set(payload.get("unresolved") or [])
        rows.append(
            {
                "cycle_id": cycle_id[:10],
                "accepted": int(payload.get("accepted", 0)),
                "failed": len(unresolved | failed_by_cycle.get(cycle_id, set())),
                "remaining": len(payload.get("remaining") or []),
            }
        )
    return pd.DataFrame(rows, columns=["cycle_id", "accepted", "failed", "remaining"])


def latest_ranking(events: list[dict[str, Any]]) -> pd.DataFrame:
    """Ranked rows of the most recent analysis event."""
    for event in reversed(events):
        if event.get("event_type") == "analysis":
            ranked = event.get("payload", {}).get("ranked") or []
            frame = pd.DataFrame(ranked)
            if not frame.empty and "id" in frame.columns:
                frame["id"] = frame["id"].astype(str)
            return frame
    return pd.DataFrame()


def generate_plotly_report(events_jsonl_path: str, output_html_path: str) -> None:
    """Render the crawl timeline, per-cycle outcomes, event counts and latest ranking."""
    events = load_events(events_jsonl_path)
    output = Path(output_html_path)
    output.parent.mkdir(parents=True, exist_ok=True)
    if not events:
        empty_df = pd.DataFrame({"event_type": ["none"], "count": [0]})
        figure = px.bar(empty_df, x="event_type", y="count", title="Crawl Event Summary")
        figure.write_html(str(output), include_plotlyjs="cdn")
        return

    rows: list[dict[str, Any]] = []
    for event in events:
        payload = event.get("payload", {})
        rows.append(
            {
                "ts": event.get("ts"),
                "event_type": event.get("event_type"),
                "cycle_id": str(event.get("cycle_id", ""))[:10],
                "symbol": payload.get("symbol", ""),
                "attempt": payload.get("attempt", 1),
            }
        )

    frame = pd.DataFrame(rows)
    frame["ts"] = pd.to_datetime(frame["ts"], utc=True, errors="coerce")
    summary = frame.groupby("event_type", dropna=False).size().reset_index(name="count")
    timeline = px.scatter(
        frame,
        x="ts",
        y="event_type",
        color="cycle_id",
        title="Crawl Events Timeline",
        hover_data=["symbol", "attempt"],
    )
    bars = px.bar(summary, x="event_type", y="count", title="Crawl Event Counts")
    html_parts = [
        "<html><head><meta charset='utf-8'><title>snapnav run report</title></head><body>",
        timeline.to_html(full_html=False, include_plotlyjs="cdn"),
        bars.to_html(full_html=False, include_plotlyjs=False),
    ]

    outcomes = cycle_outcomes(events)
    if not outcomes.empty:
        outcome_bars = px.bar(
            outcomes,
            x="cycle_id",
            y=["accepted", "failed", "remaining"],
            barmode="group",
            title="Cycle Outcomes",
        )
        html_parts.append(outcome_bars.to_html(full_html=False, include_plotlyjs=False))

    ranking = latest_ranking(events)
    if not ranking.empty and "predicted_swing_probability" in ranking.columns:
        ranking_bars = px.bar(
            ranking,
            x="id",
            y="predicted_swing_probability",
            hover_data=[
                column
                for column in ("symbol_name", "predicted_swing_percent")
                if column in ranking.columns
            ],
            title="Top Ranked Symbols",
        )
        html_parts.append(ranking_bars.to_html(full_html=False, include_plotlyjs=False))

    html_parts.append("</body></html>")
    output.write_text("".join(html_parts), encoding="utf-8")
