"""One-minute bucket accumulation and counter merging."""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Mapping, Optional

from core.models import BucketCounters, PersistedBucket
from core.validation import clamp_interval_ms
from utils.keycodes import is_backspace

log = logging.getLogger("keytally.bucket")

BUCKET_SIZE_SECONDS = 60


def bucket_start_for(timestamp_ms: int) -> int:
    """Get the start of the calendar minute containing a timestamp.

    Alignment follows local wall-clock minutes, so zones with sub-hour
    offsets and DST transitions are respected. Timestamps the platform
    cannot convert fall back to a fixed epoch-aligned 60 second window.

    Args:
        timestamp_ms: Event time in milliseconds since epoch

    Returns:
        Bucket start in Unix epoch seconds
    """
    seconds = timestamp_ms / 1000.0
    try:
        local = datetime.fromtimestamp(seconds)
        return int(local.replace(second=0, microsecond=0).timestamp())
    except (OverflowError, OSError, ValueError):
        log.debug(f"Falling back to epoch-aligned bucket for {timestamp_ms}")
        return int(seconds // BUCKET_SIZE_SECONDS) * BUCKET_SIZE_SECONDS


@dataclass
class BucketAccumulator:
    """In-memory state for the currently open one-minute bucket."""
    start_time: int
    per_key_counts: Dict[str, int] = field(default_factory=dict)
    total_keys: int = 0
    backspace_count: int = 0
    sum_interval_ms: int = 0
    interval_samples: int = 0
    last_event_time_ms: Optional[int] = None

    def absorb(self, timestamp_ms: int, key_label: str) -> None:
        """Count one keystroke into this bucket."""
        self.total_keys += 1
        self.per_key_counts[key_label] = self.per_key_counts.get(key_label, 0) + 1
        if is_backspace(key_label):
            self.backspace_count += 1

        if self.last_event_time_ms is not None:
            self.sum_interval_ms += clamp_interval_ms(self.last_event_time_ms, timestamp_ms)
            self.interval_samples += 1
        self.last_event_time_ms = timestamp_ms

    @property
    def end_time(self) -> int:
        return self.start_time + BUCKET_SIZE_SECONDS

    def is_empty(self) -> bool:
        return self.total_keys == 0

    def counters(self) -> BucketCounters:
        return BucketCounters(
            total_keys=self.total_keys,
            backspace_count=self.backspace_count,
            sum_interval_ms=self.sum_interval_ms,
            interval_samples=self.interval_samples,
        )

    def to_persisted(self) -> PersistedBucket:
        """Snapshot the accumulator as a row set for the store."""
        return PersistedBucket(
            bucket_start=self.start_time,
            bucket_size_sec=BUCKET_SIZE_SECONDS,
            counters=self.counters(),
            key_counts=dict(self.per_key_counts),
        )


def merge_counters(existing: BucketCounters, incoming: BucketCounters) -> BucketCounters:
    """Combine two flushes of the same bucket by summing every counter.

    This is the same rule the store applies on conflict; it is associative
    and commutative with the all-zero counters as identity.
    """
    return BucketCounters(
        total_keys=existing.total_keys + incoming.total_keys,
        backspace_count=existing.backspace_count + incoming.backspace_count,
        sum_interval_ms=existing.sum_interval_ms + incoming.sum_interval_ms,
        interval_samples=existing.interval_samples + incoming.interval_samples,
    )


def merge_key_counts(existing: Mapping[str, int], incoming: Mapping[str, int]) -> Dict[str, int]:
    """Sum per-key press counts of two flushes of the same bucket."""
    merged = dict(existing)
    for key, count in incoming.items():
        merged[key] = merged.get(key, 0) + count
    return merged
