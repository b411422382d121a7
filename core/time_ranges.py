"""Calendar windows and selectable time-range presets."""

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class TimeRange:
    """Half-open interval [start, end) in Unix epoch seconds."""
    start: float
    end: float

    @classmethod
    def between(cls, start: datetime, end: datetime) -> "TimeRange":
        start_ts = start.timestamp()
        end_ts = end.timestamp()
        return cls(start=min(start_ts, end_ts), end=end_ts)

    def contains(self, timestamp: float) -> bool:
        return self.start <= timestamp < self.end


def start_of_day(day: date) -> datetime:
    """Local midnight of a calendar day."""
    return datetime.combine(day, time.min)


def day_range(day: date) -> TimeRange:
    """The whole local calendar day, DST-length aware."""
    return TimeRange.between(start_of_day(day), start_of_day(day + timedelta(days=1)))


def trailing_days_range(now: datetime, days: int) -> TimeRange:
    """Window ending at now that starts at midnight (days - 1) days before today."""
    first_day = now.date() - timedelta(days=days - 1)
    return TimeRange.between(start_of_day(first_day), now)


def month_range(now: datetime) -> TimeRange:
    """The calendar month containing now."""
    first = now.date().replace(day=1)
    return TimeRange.between(start_of_day(first), start_of_day(_next_month(first)))


def previous_month_range(now: datetime) -> TimeRange:
    """The calendar month before the one containing now."""
    first = now.date().replace(day=1)
    previous_first = (first - timedelta(days=1)).replace(day=1)
    return TimeRange.between(start_of_day(previous_first), start_of_day(first))


def year_range(now: datetime) -> TimeRange:
    """The calendar year containing now."""
    first = date(now.year, 1, 1)
    return TimeRange.between(start_of_day(first), start_of_day(date(now.year + 1, 1, 1)))


def _next_month(first: date) -> date:
    if first.month == 12:
        return date(first.year + 1, 1, 1)
    return date(first.year, first.month + 1, 1)


class TimeRangePreset(str, Enum):
    """Time ranges offered for totals and key frequency listings."""

    LAST_HOUR = "lastHour"
    TODAY = "today"
    LAST_7_DAYS = "last7Days"
    LAST_30_DAYS = "last30Days"
    LAST_90_DAYS = "last90Days"
    LAST_365_DAYS = "last365Days"

    @property
    def title(self) -> str:
        return _PRESET_TITLES[self]

    @property
    def storage_key(self) -> str:
        return self.value

    @classmethod
    def from_storage_key(cls, key: str) -> Optional["TimeRangePreset"]:
        try:
            return cls(key)
        except ValueError:
            return None

    @classmethod
    def default(cls) -> "TimeRangePreset":
        return cls.TODAY

    def interval(self, reference: Optional[datetime] = None) -> TimeRange:
        """Range ending at the reference time.

        Args:
            reference: End of the range (defaults to now, local time)

        Returns:
            TimeRange for this preset
        """
        end = reference or datetime.now()
        if self is TimeRangePreset.LAST_HOUR:
            start = end - timedelta(hours=1)
        elif self is TimeRangePreset.TODAY:
            start = start_of_day(end.date())
        else:
            start = datetime.combine(end.date() - timedelta(days=_PRESET_DAYS[self]), end.timetz())
        return TimeRange.between(start, end)


_PRESET_TITLES = {
    TimeRangePreset.LAST_HOUR: "Last Hour",
    TimeRangePreset.TODAY: "Today",
    TimeRangePreset.LAST_7_DAYS: "Last 7 Days",
    TimeRangePreset.LAST_30_DAYS: "Last 30 Days",
    TimeRangePreset.LAST_90_DAYS: "Last 90 Days",
    TimeRangePreset.LAST_365_DAYS: "Last 365 Days",
}

_PRESET_DAYS = {
    TimeRangePreset.LAST_7_DAYS: 7,
    TimeRangePreset.LAST_30_DAYS: 30,
    TimeRangePreset.LAST_90_DAYS: 90,
    TimeRangePreset.LAST_365_DAYS: 365,
}
