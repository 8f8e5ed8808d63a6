"""Logging helpers."""

from .event_sink import (
    JsonlEventSink,
    cycle_outcomes,
    generate_plotly_report,
    latest_ranking,
    load_events,
)
from .logger import HumanLogger

__all__ = [
    "HumanLogger",
    "JsonlEventSink",
    "cycle_outcomes",
    "generate_plotly_report",
    "latest_ranking",
    "load_events",
]
