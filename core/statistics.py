"""Derived statistics computed from stored aggregates.

Everything here is a pure function over values already read from storage,
so streaks, focus periods and rankings can be tested without a database.
"""

from datetime import date, timedelta
from typing import Iterable, Optional, Sequence

from core.models import (
    DailyActivityRecord,
    FocusMetrics,
    HourlyActivityRecord,
    KeyFrequency,
    KeypressStreak,
)
from utils.keycodes import key_sort_key

ONE_DAY = timedelta(days=1)
MINUTE_SECONDS = 60


def compute_streaks(
    entries: Sequence[DailyActivityRecord], today: date
) -> tuple[Optional[KeypressStreak], Optional[KeypressStreak]]:
    """Find the current and the longest run of consecutive active days.

    The current streak exists only when today itself is active; an active
    yesterday with nothing yet today counts as a broken streak.

    Args:
        entries: Active days (count > 0), ascending by day
        today: Local calendar day of the reference time

    Returns:
        Tuple of (current streak or None, longest streak or None)
    """
    if not entries:
        return None, None

    longest_length = 0
    longest_end: Optional[date] = None
    run_length = 0
    previous: Optional[date] = None

    for entry in entries:
        if previous is not None and entry.day - previous == ONE_DAY:
            run_length += 1
        else:
            run_length = 1
        if run_length > longest_length:
            longest_length = run_length
            longest_end = entry.day
        previous = entry.day

    current = None
    if entries[-1].day == today:
        length = 0
        expected = today
        for entry in reversed(entries):
            if entry.day == expected:
                length += 1
                expected -= ONE_DAY
            elif entry.day < expected:
                break
        current = KeypressStreak(length_in_days=length, end_date=today)

    longest = KeypressStreak(length_in_days=longest_length, end_date=longest_end)
    return current, longest


def resolve_hourly_extremes(
    totals: dict[int, int],
) -> tuple[Optional[HourlyActivityRecord], Optional[HourlyActivityRecord]]:
    """Pick the busiest and quietest hour of day.

    Hours without data count as zero. Ties go to the lowest hour.
    Returns (None, None) when there is no history at all.
    """
    if not totals:
        return None, None
    filled = [(hour, totals.get(hour, 0)) for hour in range(24)]
    most = min(filled, key=lambda item: (-item[1], item[0]))
    least = min(filled, key=lambda item: (item[1], item[0]))
    return (
        HourlyActivityRecord(hour=most[0], count=most[1]),
        HourlyActivityRecord(hour=least[0], count=least[1]),
    )


def daily_extremes(
    entries: Iterable[DailyActivityRecord],
) -> tuple[Optional[DailyActivityRecord], Optional[DailyActivityRecord]]:
    """Busiest day and quietest non-zero day; ties go to the earliest day."""
    active = [entry for entry in entries if entry.count > 0]
    if not active:
        return None, None
    maximum = min(active, key=lambda e: (-e.count, e.day))
    minimum = min(active, key=lambda e: (e.count, e.day))
    return maximum, minimum


def compute_focus_metrics(
    marks: Sequence[int],
    day_start: float,
    now: float,
    idle_threshold_minutes: int = 5,
) -> FocusMetrics:
    """Summarize focus and idle time from one day's active minute marks.

    Args:
        marks: Distinct active bucket starts (epoch seconds), ascending
        day_start: Local midnight of the day (epoch seconds)
        now: Reference time (epoch seconds)
        idle_threshold_minutes: Largest gap still counted as the same focus block

    Returns:
        FocusMetrics with whole-minute values
    """
    if not marks:
        elapsed = int((now - day_start) // MINUTE_SECONDS)
        return FocusMetrics(active_minutes=0, longest_focus_minutes=0, longest_idle_minutes=max(elapsed, 0))

    idle_threshold = idle_threshold_minutes * MINUTE_SECONDS

    longest_focus = 1
    block_start = block_end = marks[0]
    for mark in marks[1:]:
        if mark - block_end <= idle_threshold:
            block_end = mark
        else:
            longest_focus = max(longest_focus, (block_end - block_start) // MINUTE_SECONDS + 1)
            block_start = block_end = mark
    longest_focus = max(longest_focus, (block_end - block_start) // MINUTE_SECONDS + 1)

    longest_idle = max(0, int((marks[0] - day_start) // MINUTE_SECONDS))
    for previous, mark in zip(marks, marks[1:]):
        gap = mark - previous - MINUTE_SECONDS
        if gap > 0:
            longest_idle = max(longest_idle, gap // MINUTE_SECONDS)
    after_last = now - (marks[-1] + MINUTE_SECONDS)
    if after_last > 0:
        longest_idle = max(longest_idle, int(after_last // MINUTE_SECONDS))

    return FocusMetrics(
        active_minutes=len(marks),
        longest_focus_minutes=int(longest_focus),
        longest_idle_minutes=int(longest_idle),
    )


def sort_key_frequencies(frequencies: Iterable[KeyFrequency]) -> list[KeyFrequency]:
    """Display order: letters first, then by normalized label, then raw label."""
    return sorted(frequencies, key=lambda f: key_sort_key(f.key))


def rank_key_frequencies(frequencies: Iterable[KeyFrequency], limit: Optional[int] = None) -> list[KeyFrequency]:
    """Order by count descending, breaking ties by display order."""
    ranked = sorted(frequencies, key=lambda f: (-f.count, *key_sort_key(f.key)))
    if limit is not None:
        return ranked[:limit]
    return ranked
