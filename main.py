#!/usr/bin/env python3
"""keytally - per-minute keystroke statistics for Linux desktops.

Usage:
    python main.py run
    python main.py stats
    python main.py keys --range last7Days
    python main.py export --range today --output keys.csv
"""

import argparse
import logging
import os
import signal
import sys
import threading
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from core.aggregator import KeypressAggregator
from core.models import KeypressStatistics
from core.stats_engine import StatisticsEngine
from core.storage import Storage, StorageError, StorageInitError
from core.time_ranges import TimeRangePreset
from utils.config import Config
from utils.keycodes import category_label

log = logging.getLogger('keytally')

DEFAULT_DB_PATH = Path.home() / '.local' / 'share' / 'keytally' / 'keytally.db'


def setup_logging(verbose: bool = False) -> None:
    """Log to a rotating file in the XDG state directory and to stderr."""
    xdg_state_home = os.environ.get('XDG_STATE_HOME', str(Path.home() / '.local' / 'state'))
    log_dir = Path(xdg_state_home) / 'keytally'
    log_dir.mkdir(parents=True, exist_ok=True)

    # 5MB max, keep 5 backups
    file_handler = RotatingFileHandler(
        log_dir / 'keytally.log',
        maxBytes=5*1024*1024,
        backupCount=5
    )

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            file_handler,
            logging.StreamHandler()
        ]
    )


class Application:
    """Wires storage, aggregation, statistics and the key event source."""

    def __init__(self, db_path: Path):
        """Initialize application components.

        Args:
            db_path: Path to SQLite database holding aggregates and settings
        """
        self.db_path = Path(db_path)
        self.storage = Storage(self.db_path)
        self.config = Config(self.db_path)
        self.settings = self.config.settings()
        self.aggregator = KeypressAggregator(
            self.storage,
            flush_grace_ms=self.settings.flush_grace_ms,
            min_flush_delay_ms=self.settings.min_flush_delay_ms,
        )
        self.stats_engine = StatisticsEngine(self.aggregator)
        self.event_handler = None
        self._stop_event = threading.Event()

    def get_current_layout(self) -> str:
        return self.settings.keyboard_layout

    def apply_retention(self) -> None:
        """Delete data older than the configured retention period."""
        retention_days = self.settings.data_retention_days
        if retention_days >= 0:
            log.info(f"Deleting data older than {retention_days} days...")
            try:
                self.aggregator.run_exclusive(lambda storage: storage.delete_old_data(retention_days))
            except StorageError as e:
                log.error(f"Retention cleanup failed, keeping existing data: {e}")
        else:
            log.info("Data retention disabled (keep forever)")

    def start(self) -> None:
        """Start aggregation and keyboard capture."""
        from core.evdev_handler import EvdevHandler

        log.info("Starting keytally...")
        self.aggregator.start()
        self.apply_retention()

        self.event_handler = EvdevHandler(self.on_key, self.get_current_layout)
        try:
            self.event_handler.start()
        except Exception:
            self.aggregator.stop()
            raise
        log.info("keytally started successfully!")

    def on_key(self, timestamp_ms: int, key_label: str) -> None:
        self.aggregator.record_keypress(key_label, timestamp_ms)

    def log_status(self) -> None:
        today = self.stats_engine.lifetime_or_range_total(TimeRangePreset.TODAY.interval())
        state = self.aggregator.get_state()
        log.info(
            f"Today: {today} keys, "
            f"{state['flushed_buckets']} buckets flushed, "
            f"{state['dropped_buckets']} dropped"
        )

    def run_until_stopped(self) -> None:
        """Log status periodically until request_stop() is called."""
        interval = self.settings.status_interval_sec
        while not self._stop_event.wait(interval):
            self.log_status()

    def request_stop(self) -> None:
        self._stop_event.set()

    def stop(self) -> None:
        """Stop capture and flush everything still in memory."""
        log.info("Stopping keytally...")
        if self.event_handler:
            self.event_handler.stop()
        self.aggregator.stop()
        self.storage.close()
        log.info("keytally stopped.")


def print_statistics(stats: KeypressStatistics) -> None:
    """Print a statistics snapshot in a readable layout."""
    print("=" * 50)
    print("Keystroke statistics")
    print("=" * 50)
    print(f"Today:              {stats.today_total}")
    print(f"Last 7 days:        {stats.last_7_days_total} (avg {stats.average_last_7_days:.1f}/day)")
    print(f"Last 30 days:       {stats.last_30_days_total} (avg {stats.average_last_30_days:.1f}/day)")
    print(f"This month:         {stats.this_month_total}")
    print(f"Last month:         {stats.last_month_total}")
    print(f"This year:          {stats.this_year_total}")
    print(f"Lifetime:           {stats.lifetime_total}")

    if stats.maximum_daily_record:
        print(f"Busiest day:        {stats.maximum_daily_record.day} ({stats.maximum_daily_record.count})")
    if stats.minimum_daily_record:
        print(f"Quietest day:       {stats.minimum_daily_record.day} ({stats.minimum_daily_record.count})")
    if stats.current_active_streak:
        print(f"Current streak:     {stats.current_active_streak.length_in_days} days")
    if stats.longest_active_streak:
        streak = stats.longest_active_streak
        print(f"Longest streak:     {streak.length_in_days} days (ended {streak.end_date})")
    if stats.most_active_hour:
        print(f"Most active hour:   {stats.most_active_hour.hour:02d}:00 ({stats.most_active_hour.count})")
    if stats.least_active_hour:
        print(f"Least active hour:  {stats.least_active_hour.hour:02d}:00 ({stats.least_active_hour.count})")

    print(f"Active minutes:     {stats.active_minutes_today}")
    print(f"Longest focus:      {stats.longest_focused_period_minutes} min")
    print(f"Longest idle:       {stats.longest_idle_period_today_minutes} min")

    print("\nTop keys today:")
    for freq in stats.top_keys_today:
        print(f"  {freq.key:<16} {freq.count}")
    print("\nTop keys all time:")
    for freq in stats.top_keys_all_time:
        print(f"  {freq.key:<16} {freq.count}")


def cmd_run(app: Application, args) -> int:
    signal.signal(signal.SIGINT, lambda s, f: app.request_stop())
    signal.signal(signal.SIGTERM, lambda s, f: app.request_stop())

    try:
        app.start()
    except (ImportError, RuntimeError) as e:
        log.error(f"Cannot capture keystrokes: {e}")
        return 1

    try:
        app.run_until_stopped()
    finally:
        app.stop()
    return 0


def cmd_stats(app: Application, args) -> int:
    stats = app.stats_engine.statistics_snapshot(
        max_key_results=app.settings.max_key_results,
        idle_threshold_minutes=app.settings.idle_threshold_minutes,
    )
    print_statistics(stats)
    return 0


def cmd_keys(app: Application, args) -> int:
    preset = TimeRangePreset(args.range)
    frequencies = app.stats_engine.key_frequencies(preset.interval())
    print(f"Key frequencies ({preset.title}):")
    if not frequencies:
        print("  No keypresses recorded")
        return 0
    for freq in frequencies:
        print(f"  {freq.key:<16} {freq.count:>8}  {category_label(freq.key)}")
    return 0


def cmd_export(app: Application, args) -> int:
    preset = TimeRangePreset(args.range)
    try:
        count = app.stats_engine.export_key_frequencies_csv(Path(args.output), preset.interval())
    except ValueError as e:
        print(f"Error: {e}")
        return 1
    except OSError as e:
        print(f"Error writing {args.output}: {e}")
        return 1
    print(f"Exported {count} keys to {args.output}")
    return 0


COMMANDS = {
    'run': cmd_run,
    'stats': cmd_stats,
    'keys': cmd_keys,
    'export': cmd_export,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Count keystrokes per minute and report typing statistics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s run
  %(prog)s stats
  %(prog)s keys --range last7Days
  %(prog)s export --range today --output keys.csv
        """,
    )
    parser.add_argument(
        "--db", type=Path, default=DEFAULT_DB_PATH, help=f"Database path (default: {DEFAULT_DB_PATH})"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Enable verbose logging"
    )

    presets = [preset.value for preset in TimeRangePreset]
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("run", help="Capture keystrokes until interrupted")
    subparsers.add_parser("stats", help="Print the statistics snapshot")

    keys_parser = subparsers.add_parser("keys", help="Print key frequencies")
    keys_parser.add_argument(
        "--range", choices=presets, default=TimeRangePreset.default().value, help="Time range"
    )

    export_parser = subparsers.add_parser("export", help="Export key frequencies to CSV")
    export_parser.add_argument(
        "--range", choices=presets, default=TimeRangePreset.default().value, help="Time range"
    )
    export_parser.add_argument("-o", "--output", required=True, help="CSV file to write")

    return parser


def main(argv: Optional[list] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)

    try:
        app = Application(args.db)
    except StorageInitError as e:
        log.error(str(e))
        return 1

    return COMMANDS[args.command](app, args)


if __name__ == '__main__':
    sys.exit(main())
