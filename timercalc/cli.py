#!/usr/bin/env python3
"""timercalc CLI entrypoint: run the periodic calculation until interrupted."""

from __future__ import annotations

import argparse
import sys
import threading
from typing import List, Optional

from timercalc.io.settings import SettingsError, load_settings
from timercalc.schedule.scheduler import Scheduler
from timercalc.store.store import Store
from timercalc.util.duration import parse_duration_to_ms, parse_duration_to_seconds
from timercalc.util.exit_codes import ExitCode
from timercalc.util.logging import configure_logging, get_logger
from timercalc.util.run_logger import RunLogger


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    if argv is None:
        argv = sys.argv[1:]

    p = argparse.ArgumentParser(
        description="Timer-triggered trimmed-mean and ideal gas calculations over a time-series store",
    )
    p.add_argument("--config", type=str, default=None, help="Settings JSON path (default $TIMERCALC_SETTINGS or appsettings.json)")
    p.add_argument("--db", type=str, default=None, help="Override the store path from the settings 'server' key")
    p.add_argument("--interval", type=str, default=None, help="Override timer_interval_ms (e.g., '500ms', '10s', '1m')")
    p.add_argument("--duration", type=str, default=None, help="Cancel automatically after this long (e.g., '30', '10m'); default runs until Ctrl-C")
    p.add_argument("--log-level", dest="log_level", type=str, default=None, help="DEBUG, INFO, WARNING or ERROR (default $TIMERCALC_LOG_LEVEL or INFO)")
    p.add_argument("--log-json", dest="log_json", type=str, default=None, help="Also write JSON-formatted logs to this path")
    p.add_argument("--jsonl", type=str, default=None, help="Mirror the run journal to this JSON-lines path")
    p.add_argument("--no-journal", dest="no_journal", action="store_true", help="Do not write the timercalc-run.log journal")

    args = p.parse_args(argv)

    try:
        args.interval_ms = parse_duration_to_ms(args.interval)
        args.duration_s = parse_duration_to_seconds(args.duration)
    except argparse.ArgumentTypeError as exc:
        p.error(str(exc))
    if args.interval_ms is not None and args.interval_ms <= 0:
        p.error("--interval must be positive")
    if args.duration_s is not None and args.duration_s <= 0:
        p.error("--duration must be positive")
    return args


def run(args: argparse.Namespace) -> int:
    """Run one scheduler until Ctrl-C or --duration, returning a process exit code."""
    configure_logging(level=args.log_level, json_file=args.log_json)
    logger = get_logger("timercalc.cli")

    try:
        settings = load_settings(args.config).with_overrides(server=args.db, timer_interval_ms=args.interval_ms)
    except SettingsError as exc:
        logger.error("%s", exc)
        return ExitCode.CONFIG_ERROR

    try:
        store = Store(settings.store_path, settings.database_name)
    except Exception as exc:
        logger.error("Cannot open store %s: %s", settings.store_path, exc)
        return ExitCode.STORE_ERROR

    run_logger = None
    if not args.no_journal:
        run_logger = RunLogger.from_db_path(settings.store_path, extra_targets=[args.jsonl] if args.jsonl else None)

    cancel = threading.Event()
    scheduler = Scheduler(settings, store, run_logger=run_logger, cancel_event=cancel)
    scheduler.start()
    try:
        if args.duration_s is not None:
            scheduler.wait(args.duration_s)
        else:
            logger.info("Press Ctrl-C to end...")
            while scheduler.wait(1.0) is None:
                pass
    except KeyboardInterrupt:
        pass
    finally:
        cancel.set()
        outcome = scheduler.wait()
        store.close()

    return ExitCode.SUCCESS if outcome else ExitCode.GENERAL_ERROR


def main(argv: Optional[List[str]] = None) -> int:
    return run(parse_args(argv))


if __name__ == "__main__":
    sys.exit(main())
