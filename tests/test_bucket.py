"""Tests for core.bucket module."""

import os
import time
from datetime import datetime, timezone

import pytest

from core.bucket import (
    BUCKET_SIZE_SECONDS,
    BucketAccumulator,
    bucket_start_for,
    merge_counters,
    merge_key_counts,
)
from core.models import BucketCounters


def to_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


class TestBucketStartFor:
    """Tests for bucket alignment."""

    def test_aligns_to_local_minute(self):
        """Test timestamp inside a minute maps to that minute's start."""
        dt = datetime(2024, 5, 15, 14, 30, 42, 500000)
        expected = int(datetime(2024, 5, 15, 14, 30).timestamp())
        assert bucket_start_for(to_ms(dt)) == expected

    def test_minute_boundary_belongs_to_new_bucket(self):
        """Test exact minute start opens the new bucket."""
        dt = datetime(2024, 5, 15, 14, 31, 0)
        assert bucket_start_for(to_ms(dt)) == int(dt.timestamp())

    def test_last_millisecond_belongs_to_old_bucket(self):
        """Test xx:59.999 stays in the same minute."""
        start = datetime(2024, 5, 15, 14, 30)
        last_ms = to_ms(start) + 59_999
        assert bucket_start_for(last_ms) == int(start.timestamp())

    def test_consecutive_minutes_differ_by_sixty(self):
        """Test neighboring buckets are one minute apart."""
        a = bucket_start_for(to_ms(datetime(2024, 5, 15, 14, 30, 10)))
        b = bucket_start_for(to_ms(datetime(2024, 5, 15, 14, 31, 10)))
        assert b - a == BUCKET_SIZE_SECONDS


@pytest.fixture
def local_zone():
    """Switch the process time zone to a POSIX TZ rule for one test."""
    if not hasattr(time, "tzset"):
        pytest.skip("time.tzset is not available on this platform")
    previous = os.environ.get("TZ")

    def _set(rule):
        os.environ["TZ"] = rule
        time.tzset()

    yield _set

    if previous is None:
        os.environ.pop("TZ", None)
    else:
        os.environ["TZ"] = previous
    time.tzset()


def utc_seconds(*args) -> int:
    return int(datetime(*args, tzinfo=timezone.utc).timestamp())


class TestBucketStartForZones:
    """Tests for alignment across time zones and DST transitions."""

    def test_fall_back_repeated_minute(self, local_zone):
        """Test both passes through a repeated local minute get their own bucket."""
        local_zone("EST5EDT,M3.2.0,M11.1.0")
        # 01:30 local happens at 05:30 UTC (EDT) and again at 06:30 UTC (EST)
        first = bucket_start_for(utc_seconds(2024, 11, 3, 5, 30, 45) * 1000)
        second = bucket_start_for(utc_seconds(2024, 11, 3, 6, 30, 45) * 1000)

        assert first == utc_seconds(2024, 11, 3, 5, 30)
        assert second == utc_seconds(2024, 11, 3, 6, 30)
        assert second - first == 3600

    def test_spring_forward_gap(self, local_zone):
        """Test the minutes on either side of the skipped hour are adjacent."""
        local_zone("EST5EDT,M3.2.0,M11.1.0")
        before = bucket_start_for(utc_seconds(2024, 3, 10, 6, 59, 30) * 1000)
        after = bucket_start_for(utc_seconds(2024, 3, 10, 7, 0, 10) * 1000)

        assert before == utc_seconds(2024, 3, 10, 6, 59)
        assert after - before == BUCKET_SIZE_SECONDS

    def test_half_hour_offset_zone(self, local_zone):
        """Test alignment in a zone offset by a non-whole hour."""
        local_zone("IST-5:30")
        ts = utc_seconds(2024, 5, 15, 9, 0, 42) * 1000 + 250

        start = bucket_start_for(ts)

        assert start == utc_seconds(2024, 5, 15, 9, 0)
        assert datetime.fromtimestamp(start).strftime("%H:%M:%S") == "14:30:00"


class TestBucketAccumulator:
    """Tests for BucketAccumulator."""

    def test_new_bucket_is_empty(self):
        """Test freshly opened bucket has no counts."""
        bucket = BucketAccumulator(start_time=1_700_000_040)
        assert bucket.is_empty()
        assert bucket.end_time == 1_700_000_100
        assert bucket.last_event_time_ms is None

    def test_first_keystroke_has_no_interval(self):
        """Test first keystroke counts but adds no interval sample."""
        bucket = BucketAccumulator(start_time=0)
        bucket.absorb(1000, 'a')

        assert bucket.total_keys == 1
        assert bucket.per_key_counts == {'a': 1}
        assert bucket.interval_samples == 0
        assert bucket.sum_interval_ms == 0
        assert bucket.last_event_time_ms == 1000

    def test_intervals_accumulate(self):
        """Test gaps between consecutive keystrokes are summed."""
        bucket = BucketAccumulator(start_time=0)
        bucket.absorb(1000, 'a')
        bucket.absorb(1150, 'b')
        bucket.absorb(1400, 'a')

        assert bucket.total_keys == 3
        assert bucket.per_key_counts == {'a': 2, 'b': 1}
        assert bucket.sum_interval_ms == 400
        assert bucket.interval_samples == 2

    def test_out_of_order_timestamp_clamped(self):
        """Test a timestamp earlier than the previous one adds a zero gap."""
        bucket = BucketAccumulator(start_time=0)
        bucket.absorb(5000, 'a')
        bucket.absorb(4000, 'b')

        assert bucket.sum_interval_ms == 0
        assert bucket.interval_samples == 1
        assert bucket.last_event_time_ms == 4000

    def test_backspace_counted_case_insensitively(self):
        """Test Backspace matches regardless of case."""
        bucket = BucketAccumulator(start_time=0)
        bucket.absorb(1000, 'Backspace')
        bucket.absorb(1100, 'BACKSPACE')
        bucket.absorb(1200, 'x')

        assert bucket.backspace_count == 2
        assert bucket.total_keys == 3

    def test_counts_sum_to_total(self):
        """Test per-key counts always sum to total_keys."""
        bucket = BucketAccumulator(start_time=0)
        for i, key in enumerate(['a', 'b', 'Space', 'a', 'Return', 'a']):
            bucket.absorb(1000 + i * 100, key)

        assert sum(bucket.per_key_counts.values()) == bucket.total_keys
        assert bucket.interval_samples == max(0, bucket.total_keys - 1)
        assert bucket.backspace_count <= bucket.total_keys

    def test_to_persisted_snapshot(self):
        """Test persisted snapshot copies counters and key counts."""
        bucket = BucketAccumulator(start_time=120)
        bucket.absorb(120_000, 'a')
        bucket.absorb(120_250, 'Backspace')

        persisted = bucket.to_persisted()
        assert persisted.bucket_start == 120
        assert persisted.bucket_size_sec == BUCKET_SIZE_SECONDS
        assert persisted.counters == BucketCounters(
            total_keys=2, backspace_count=1, sum_interval_ms=250, interval_samples=1
        )
        assert persisted.key_counts == {'a': 1, 'Backspace': 1}

        bucket.absorb(120_300, 'a')
        assert persisted.key_counts == {'a': 1, 'Backspace': 1}


class TestMergeCounters:
    """Tests for counter merge used on conflicting flushes."""

    @pytest.fixture
    def samples(self):
        return [
            BucketCounters(total_keys=3, backspace_count=1, sum_interval_ms=200, interval_samples=2),
            BucketCounters(total_keys=5, backspace_count=0, sum_interval_ms=900, interval_samples=4),
            BucketCounters(total_keys=1, backspace_count=1, sum_interval_ms=0, interval_samples=0),
        ]

    def test_merge_sums_fields(self, samples):
        """Test every counter is summed."""
        merged = merge_counters(samples[0], samples[1])
        assert merged == BucketCounters(
            total_keys=8, backspace_count=1, sum_interval_ms=1100, interval_samples=6
        )

    def test_merge_is_commutative(self, samples):
        """Test order of flushes does not matter."""
        a, b, _ = samples
        assert merge_counters(a, b) == merge_counters(b, a)

    def test_merge_is_associative(self, samples):
        """Test grouping of flushes does not matter."""
        a, b, c = samples
        assert merge_counters(merge_counters(a, b), c) == merge_counters(a, merge_counters(b, c))

    def test_zero_is_identity(self, samples):
        """Test merging with empty counters changes nothing."""
        assert merge_counters(samples[0], BucketCounters()) == samples[0]

    def test_merge_key_counts(self):
        """Test per-key counts are summed and new keys added."""
        merged = merge_key_counts({'a': 2, 'b': 1}, {'a': 3, 'c': 4})
        assert merged == {'a': 5, 'b': 1, 'c': 4}
