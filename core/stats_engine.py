"""Read-side statistics for keytally.

Every public call first flushes the aggregator's open bucket and then reads
storage on the aggregator's worker, so results include every keystroke
recorded before the call.
"""

import csv
import logging
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from core.aggregator import KeypressAggregator
from core.models import KeyFrequency, KeypressStatistics
from core.statistics import (
    compute_focus_metrics,
    compute_streaks,
    daily_extremes,
    resolve_hourly_extremes,
    sort_key_frequencies,
)
from core.storage import Storage
from core.time_ranges import (
    TimeRange,
    day_range,
    month_range,
    previous_month_range,
    trailing_days_range,
    year_range,
)
from utils.keycodes import category_label

log = logging.getLogger("keytally.stats_engine")

CSV_HEADER = ["Rank", "Key", "Count", "Percent", "Category"]


class StatisticsEngine:
    """Answers totals, key frequency and derived statistics queries."""

    def __init__(self, aggregator: KeypressAggregator,
                 clock: Callable[[], datetime] = datetime.now):
        """Initialize statistics engine.

        Args:
            aggregator: Aggregator owning the storage connection
            clock: Current local time provider
        """
        self.aggregator = aggregator
        self.clock = clock

    def flush_pending(self) -> None:
        """Persist any keystrokes still held in memory."""
        self.aggregator.flush_pending()

    def lifetime_or_range_total(self, time_range: Optional[TimeRange] = None) -> int:
        """Total keystrokes in a range, or over all history when no range is given."""
        if time_range is None:
            return self.aggregator.run_exclusive(lambda storage: storage.lifetime_total())
        return self.aggregator.run_exclusive(
            lambda storage: storage.sum_total_keys(time_range.start, time_range.end)
        )

    def key_frequencies(self, time_range: Optional[TimeRange] = None) -> list[KeyFrequency]:
        """Per-key counts in display order (letters first, then by label)."""
        frequencies = self.aggregator.run_exclusive(
            lambda storage: storage.key_frequencies(
                time_range.start if time_range else None,
                time_range.end if time_range else None,
            )
        )
        return sort_key_frequencies(frequencies)

    def statistics_snapshot(self, max_key_results: int = 10,
                            idle_threshold_minutes: int = 5) -> KeypressStatistics:
        """Compute the full statistics read-model.

        Args:
            max_key_results: Number of entries in each top-keys list
            idle_threshold_minutes: Largest gap still counted as focused typing

        Returns:
            KeypressStatistics recomputed from storage
        """
        now = self.clock()
        return self.aggregator.run_exclusive(
            lambda storage: self._build_snapshot(storage, now, max_key_results, idle_threshold_minutes)
        )

    def _build_snapshot(self, storage: Storage, now: datetime,
                        max_key_results: int, idle_threshold_minutes: int) -> KeypressStatistics:
        today = day_range(now.date())
        last_7 = trailing_days_range(now, 7)
        last_30 = trailing_days_range(now, 30)
        this_month = month_range(now)
        last_month = previous_month_range(now)
        this_year = year_range(now)

        last_7_total = storage.sum_total_keys(last_7.start, last_7.end)
        last_30_total = storage.sum_total_keys(last_30.start, last_30.end)

        day_entries = storage.daily_totals()
        current_streak, longest_streak = compute_streaks(day_entries, now.date())
        maximum_day, minimum_day = daily_extremes(day_entries)
        most_hour, least_hour = resolve_hourly_extremes(storage.hourly_totals())

        marks = storage.minute_activity_marks(int(today.start), int(today.end))
        focus = compute_focus_metrics(marks, today.start, now.timestamp(), idle_threshold_minutes)

        return KeypressStatistics(
            today_total=storage.sum_total_keys(today.start, today.end),
            last_7_days_total=last_7_total,
            last_30_days_total=last_30_total,
            this_month_total=storage.sum_total_keys(this_month.start, this_month.end),
            last_month_total=storage.sum_total_keys(last_month.start, last_month.end),
            this_year_total=storage.sum_total_keys(this_year.start, this_year.end),
            lifetime_total=storage.lifetime_total(),
            average_last_7_days=last_7_total / 7.0,
            average_last_30_days=last_30_total / 30.0,
            maximum_daily_record=maximum_day,
            minimum_daily_record=minimum_day,
            current_active_streak=current_streak,
            longest_active_streak=longest_streak,
            most_active_hour=most_hour,
            least_active_hour=least_hour,
            top_keys_today=storage.top_keys(max_key_results, today.start, today.end),
            top_keys_all_time=storage.top_keys(max_key_results),
            active_minutes_today=focus.active_minutes,
            longest_focused_period_minutes=focus.longest_focus_minutes,
            longest_idle_period_today_minutes=focus.longest_idle_minutes,
        )

    def export_key_frequencies_csv(self, csv_path: Path,
                                   time_range: Optional[TimeRange] = None) -> int:
        """Export key frequencies for a range to a CSV file.

        Args:
            csv_path: Path to save CSV file
            time_range: Range to export, or None for all history

        Returns:
            Number of rows exported

        Raises:
            ValueError: If the range contains no keypresses
        """
        frequencies = self.key_frequencies(time_range)
        if not frequencies:
            raise ValueError("No data to export")
        total = sum(f.count for f in frequencies)

        with open(csv_path, "w", encoding="utf-8", newline="") as f:
            writer = csv.writer(f)
            writer.writerow(CSV_HEADER)
            for rank, frequency in enumerate(frequencies, start=1):
                writer.writerow([
                    rank,
                    frequency.key,
                    frequency.count,
                    format_percent(frequency.count, total),
                    category_label(frequency.key),
                ])

        log.info(f"Exported {len(frequencies)} keys to {csv_path}")
        return len(frequencies)


def format_percent(count: int, total: int) -> str:
    """Share of total as a percentage with at most one decimal ('12.5%', '50%')."""
    if total <= 0:
        return "0%"
    value = round(count * 100.0 / total, 1)
    if value == int(value):
        return f"{int(value)}%"
    return f"{value}%"
