"""Keystroke aggregation into one-minute buckets for keytally."""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass
from queue import Empty, Queue
from typing import Any, Callable, Optional, TypeVar

from core.bucket import BUCKET_SIZE_SECONDS, BucketAccumulator, bucket_start_for
from core.storage import Storage, StorageWriteError
from utils.keycodes import normalize_event_label

log = logging.getLogger("keytally.aggregator")

MIN_FLUSH_DELAY_MS = 100
STOP_JOIN_TIMEOUT_SEC = 5.0

T = TypeVar("T")


@dataclass
class _Append:
    timestamp_ms: int
    key_label: str


@dataclass
class _FlushTick:
    bucket_start: int


@dataclass
class _Exclusive:
    fn: Callable[[Storage], Any]
    future: Future


class _Stop:
    pass


class KeypressAggregator:
    """Accumulates keystrokes per minute and flushes them to storage.

    All bucket mutation and every storage access happens on one worker
    thread that drains a mailbox in arrival order. Producers enqueue and
    return immediately; flushes and queries wait for their turn, so they
    observe everything appended before them.
    """

    def __init__(self, storage: Storage,
                 flush_grace_ms: int = 250,
                 min_flush_delay_ms: int = MIN_FLUSH_DELAY_MS,
                 clock: Callable[[], float] = time.time):
        """Initialize aggregator.

        Args:
            storage: Storage the worker exclusively writes to and reads from
            flush_grace_ms: Delay after a bucket's end before its timer flush
            min_flush_delay_ms: Lower bound for any timer flush delay (>= 100ms)
            clock: Current time in epoch seconds, used for timer scheduling
        """
        self.storage = storage
        self.flush_grace_ms = max(0, flush_grace_ms)
        self.min_flush_delay_ms = max(MIN_FLUSH_DELAY_MS, min_flush_delay_ms)
        self.clock = clock
        self.running = False
        self.thread: Optional[threading.Thread] = None
        self.flushed_buckets = 0
        self.dropped_buckets = 0

        self._mailbox: Queue = Queue()
        # Orders the running check and the enqueue against stop()
        self._lock = threading.RLock()
        self._bucket: Optional[BucketAccumulator] = None
        self._scheduled_start: Optional[int] = None
        self._flush_timer: Optional[threading.Timer] = None

    def start(self) -> None:
        """Start the worker thread."""
        with self._lock:
            if self.running:
                return
            if self.thread is not None and self.thread.is_alive():
                log.warning("Previous worker is still shutting down, not starting another")
                return

            self.running = True
            self.thread = threading.Thread(target=self._run, name="keytally-aggregator", daemon=True)
            self.thread.start()
        log.info("Aggregator started")

    def stop(self) -> None:
        """Flush the open bucket and stop the worker thread."""
        with self._lock:
            if not self.running:
                return
            self.running = False
            self._mailbox.put(_Stop())
            worker = self.thread

        if worker:
            worker.join(timeout=STOP_JOIN_TIMEOUT_SEC)
            if worker.is_alive():
                log.warning(
                    f"Aggregator worker did not stop within {STOP_JOIN_TIMEOUT_SEC}s; "
                    f"it will finish the remaining mailbox on its own"
                )
            else:
                with self._lock:
                    if self.thread is worker:
                        self.thread = None
        if self._flush_timer:
            self._flush_timer.cancel()
            self._flush_timer = None
        log.info(
            f"Aggregator stopped ({self.flushed_buckets} buckets flushed, "
            f"{self.dropped_buckets} dropped)"
        )

    # ========== Producer side ==========

    def record_keypress(self, key_label: str, timestamp_ms: Optional[int] = None) -> None:
        """Queue one keystroke. Never blocks.

        Args:
            key_label: Display label of the key; empty labels become 'Unknown'
            timestamp_ms: Event time in milliseconds since epoch (defaults to now)
        """
        with self._lock:
            if not self.running:
                log.debug(f"Ignoring keystroke while stopped: {key_label!r}")
                return
            if timestamp_ms is None:
                timestamp_ms = int(self.clock() * 1000)
            self._mailbox.put(_Append(timestamp_ms, normalize_event_label(key_label)))

    def flush_pending(self) -> None:
        """Persist the open bucket, waiting until it is written."""
        self.run_exclusive(lambda storage: None)

    def run_exclusive(self, fn: Callable[[Storage], T]) -> T:
        """Flush the open bucket, then run fn(storage) on the worker thread.

        Blocks until fn has run and returns its result; exceptions raised
        by fn propagate to the caller.

        While the worker is stopped, fn runs on the caller's thread under
        the aggregator lock, so concurrent callers still take turns and
        start() waits until fn returns.
        """
        with self._lock:
            if not self.running:
                if self.thread is not None:
                    # A worker that outlived stop() still owns the storage
                    self.thread.join()
                    self.thread = None
                self._flush_current()
                return fn(self.storage)
            future: Future = Future()
            self._mailbox.put(_Exclusive(fn, future))
        return future.result()

    def get_state(self) -> dict:
        """Get current aggregator state.

        Returns:
            Dictionary with state information
        """
        bucket = self._bucket
        return {
            'running': self.running,
            'open_bucket_start': bucket.start_time if bucket else None,
            'open_bucket_keys': bucket.total_keys if bucket else 0,
            'queue_size': self._mailbox.qsize(),
            'flushed_buckets': self.flushed_buckets,
            'dropped_buckets': self.dropped_buckets,
        }

    # ========== Worker side ==========

    def _run(self) -> None:
        """Worker loop: process mailbox messages strictly in order."""
        while True:
            message = self._mailbox.get()
            if isinstance(message, _Stop):
                self._flush_current()
                self._drain_after_stop()
                return
            if isinstance(message, _Exclusive):
                self._run_exclusive_message(message)
                continue
            try:
                if isinstance(message, _Append):
                    self._append(message.timestamp_ms, message.key_label)
                elif isinstance(message, _FlushTick):
                    self._on_flush_tick(message.bucket_start)
            except Exception as e:
                log.error(f"Error processing {type(message).__name__}: {e}")

    def _drain_after_stop(self) -> None:
        """Answer exclusive operations still queued behind the stop message.

        Callers blocked on their future get a result; leftover appends and
        timer ticks are discarded.
        """
        while True:
            try:
                message = self._mailbox.get_nowait()
            except Empty:
                return
            if isinstance(message, _Exclusive):
                self._run_exclusive_message(message)
            elif isinstance(message, _Append):
                log.warning(f"Discarding keystroke queued after stop: {message.key_label!r}")

    def _run_exclusive_message(self, message: _Exclusive) -> None:
        if not message.future.set_running_or_notify_cancel():
            return
        try:
            self._flush_current()
            message.future.set_result(message.fn(self.storage))
        except Exception as e:
            message.future.set_exception(e)

    def _append(self, timestamp_ms: int, key_label: str) -> None:
        bucket_start = bucket_start_for(timestamp_ms)

        if self._bucket is not None and self._bucket.start_time != bucket_start:
            self._flush_current()
        if self._bucket is None:
            self._open_bucket(bucket_start, timestamp_ms)

        self._bucket.absorb(timestamp_ms, key_label)

    def _open_bucket(self, bucket_start: int, reference_ms: int) -> None:
        self._bucket = BucketAccumulator(start_time=bucket_start)
        self._schedule_flush(bucket_start, reference_ms)

    def _schedule_flush(self, bucket_start: int, reference_ms: int) -> None:
        """Arrange a flush shortly after the bucket ends, even if typing stops."""
        self._scheduled_start = bucket_start
        bucket_end = bucket_start + BUCKET_SIZE_SECONDS
        baseline = max(reference_ms / 1000.0, self.clock())
        delay = max(
            self.min_flush_delay_ms / 1000.0,
            bucket_end - baseline + self.flush_grace_ms / 1000.0,
        )
        timer = threading.Timer(delay, self._mailbox.put, args=(_FlushTick(bucket_start),))
        timer.daemon = True
        timer.start()
        self._flush_timer = timer

    def _on_flush_tick(self, bucket_start: int) -> None:
        # Stale ticks (bucket already flushed by a boundary crossing) do nothing
        if self._bucket is not None and self._bucket.start_time == bucket_start:
            log.debug(f"Timer flush for bucket {bucket_start}")
            self._flush_current()

    def _flush_current(self) -> None:
        """Detach the open bucket and persist it."""
        bucket = self._bucket
        if bucket is None:
            return
        self._bucket = None
        if self._scheduled_start == bucket.start_time:
            self._scheduled_start = None
        if bucket.is_empty():
            return

        try:
            self.storage.persist_bucket(bucket.to_persisted())
            self.flushed_buckets += 1
        except StorageWriteError as e:
            # The bucket is gone from memory; retrying could double count
            self.dropped_buckets += 1
            log.error(f"Dropped bucket {bucket.start_time} with {bucket.total_keys} keys: {e}")
