"""Pydantic models for keytally data structures."""

from datetime import date

from pydantic import BaseModel, ConfigDict, Field


class BucketCounters(BaseModel):
    """Numeric counters stored per one-minute bucket."""

    total_keys: int = Field(default=0, ge=0, description="Keystrokes in the bucket")
    backspace_count: int = Field(default=0, ge=0, description="Backspace presses")
    sum_interval_ms: int = Field(
        default=0, ge=0, description="Sum of gaps between consecutive keystrokes (ms)"
    )
    interval_samples: int = Field(
        default=0, ge=0, description="Number of gaps summed into sum_interval_ms"
    )

    model_config = ConfigDict(extra="ignore", frozen=True)


class PersistedBucket(BaseModel):
    """A flushed bucket ready to be written: counters plus per-key counts."""

    bucket_start: int = Field(..., description="Bucket start (Unix epoch seconds)")
    bucket_size_sec: int = Field(default=60, gt=0, description="Bucket width in seconds")
    counters: BucketCounters = Field(..., description="Bucket-level counters")
    key_counts: dict[str, int] = Field(
        default_factory=dict, description="Press count per key label"
    )

    model_config = ConfigDict(extra="ignore")


class KeyFrequency(BaseModel):
    """Press count for a single key over a period."""

    key: str = Field(..., description="Printable character or symbolic key name")
    count: int = Field(..., ge=0, description="Number of presses")

    model_config = ConfigDict(extra="ignore")


class DailyActivityRecord(BaseModel):
    """Key count for one calendar day."""

    day: date = Field(..., description="Local calendar day")
    count: int = Field(..., ge=0, description="Keypresses recorded during the day")

    model_config = ConfigDict(extra="ignore")


class HourlyActivityRecord(BaseModel):
    """Key count for one hour of day across all history."""

    hour: int = Field(..., ge=0, le=23, description="Hour of day (0-23)")
    count: int = Field(..., ge=0, description="Keypresses recorded during the hour")

    model_config = ConfigDict(extra="ignore")


class KeypressStreak(BaseModel):
    """Run of consecutive days with at least one keypress."""

    length_in_days: int = Field(..., ge=1, description="Consecutive active days")
    end_date: date = Field(..., description="Last day included in the streak")

    model_config = ConfigDict(extra="ignore")


class FocusMetrics(BaseModel):
    """Minute-level activity summary for a single day."""

    active_minutes: int = Field(default=0, ge=0, description="Distinct active minutes")
    longest_focus_minutes: int = Field(
        default=0, ge=0, description="Longest block with gaps within the idle threshold"
    )
    longest_idle_minutes: int = Field(
        default=0, ge=0, description="Longest stretch without any keypress"
    )

    model_config = ConfigDict(extra="ignore")


class KeypressStatistics(BaseModel):
    """Read-model with all derived statistics, recomputed on every request."""

    today_total: int = Field(default=0, description="Keypresses so far today")
    last_7_days_total: int = Field(default=0, description="Trailing 7 days including today")
    last_30_days_total: int = Field(default=0, description="Trailing 30 days including today")
    this_month_total: int = Field(default=0, description="Current calendar month")
    last_month_total: int = Field(default=0, description="Previous calendar month")
    this_year_total: int = Field(default=0, description="Current calendar year")
    lifetime_total: int = Field(default=0, description="All recorded keypresses")
    average_last_7_days: float = Field(default=0.0, description="last_7_days_total / 7")
    average_last_30_days: float = Field(default=0.0, description="last_30_days_total / 30")
    maximum_daily_record: DailyActivityRecord | None = Field(
        default=None, description="Busiest day"
    )
    minimum_daily_record: DailyActivityRecord | None = Field(
        default=None, description="Quietest day with non-zero activity"
    )
    current_active_streak: KeypressStreak | None = Field(
        default=None, description="Streak ending today, if any"
    )
    longest_active_streak: KeypressStreak | None = Field(
        default=None, description="Longest streak on record"
    )
    most_active_hour: HourlyActivityRecord | None = Field(
        default=None, description="Hour of day with the most keypresses"
    )
    least_active_hour: HourlyActivityRecord | None = Field(
        default=None, description="Hour of day with the fewest keypresses"
    )
    top_keys_today: list[KeyFrequency] = Field(
        default_factory=list, description="Ranked key frequencies for today"
    )
    top_keys_all_time: list[KeyFrequency] = Field(
        default_factory=list, description="Ranked key frequencies for all time"
    )
    active_minutes_today: int = Field(default=0, description="Distinct active minutes today")
    longest_focused_period_minutes: int = Field(
        default=0, description="Longest focus block today"
    )
    longest_idle_period_today_minutes: int = Field(
        default=0, description="Longest idle stretch today"
    )

    model_config = ConfigDict(extra="ignore")
