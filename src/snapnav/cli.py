"""Command-line interface for the snapnav runtime."""

from __future__ import annotations

import argparse
import json
import sys

from snapnav.config import ENGINES, LOG_LEVELS, Settings, parse_symbols
from snapnav.runtime import run
from snapnav.schedule import ScheduleOracle


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser."""
    parser = argparse.ArgumentParser(
        description="Market-calendar gated instrument snapshot collector"
    )
    parser.add_argument("--symbols", type=str, help="Comma-separated instrument ids")
    parser.add_argument("--symbols-file", type=str, help="File with one instrument id per line")
    parser.add_argument("--engine", choices=list(ENGINES), help="Crawl engine")
    parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    parser.add_argument("--state-db", type=str, help="SQLite state database path")
    parser.add_argument("--events-dir", type=str, help="Run outputs directory")
    parser.add_argument(
        "--url-template", type=str, help="Symbol page URL, `{symbol}` marks the id"
    )
    parser.add_argument("--ready-marker", type=str, help="Text that marks a fully loaded page")
    parser.add_argument("--retry-limit", type=int, help="Extra passes over failed symbols")
    parser.add_argument(
        "--no-reuse-surface",
        action="store_true",
        help="Open a fresh surface for every symbol instead of retargeting one",
    )
    parser.add_argument(
        "--interval-seconds", type=int, help="Seconds between cycles inside the window"
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Console log level",
    )
    parser.add_argument(
        "--schedule",
        action="store_true",
        help="Print the resolved market schedule, then exit",
    )
    return parser


def apply_cli_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    """Apply CLI values onto environment-derived settings."""
    overrides: dict[str, object] = {}
    if args.symbols:
        overrides["symbols"] = parse_symbols(args.symbols, settings.symbols)
    if args.symbols_file:
        overrides["symbols_file"] = args.symbols_file
    if args.engine:
        overrides["engine"] = args.engine
    if args.once:
        overrides["once"] = True
    if args.state_db:
        overrides["state_db_path"] = args.state_db
    if args.events_dir:
        overrides["events_dir"] = args.events_dir
    if args.url_template:
        overrides["url_template"] = args.url_template
    if args.ready_marker is not None:
        overrides["ready_marker"] = args.ready_marker
    if args.retry_limit is not None:
        overrides["retry_limit"] = args.retry_limit
    if args.no_reuse_surface:
        overrides["reuse_surface"] = False
    if args.interval_seconds is not None:
        overrides["interval_seconds"] = args.interval_seconds
    if args.log_level:
        overrides["log_level"] = args.log_level
    return settings.with_overrides(**overrides)


def describe_schedule(settings: Settings) -> dict[str, object]:
    description = ScheduleOracle(settings.schedule()).describe()
    description["log_retention_days"] = {
        level: settings.log_retention_days.get(level) for level in LOG_LEVELS
    }
    return description


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint."""
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = apply_cli_overrides(Settings.from_env(), args)
        if args.schedule:
            print(json.dumps(describe_schedule(settings), indent=2))
            return 0
        if not settings.resolved_symbols():
            raise ValueError("No symbols configured. Set SYMBOLS, SYMBOLS_FILE or --symbols")
    except (ValueError, OSError) as exc:
        print(f"Configuration error: {exc}")
        return 2
    return run(settings)


if __name__ == "__main__":
    sys.exit(main())
