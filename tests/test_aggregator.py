"""Tests for core.aggregator module."""

import sqlite3
import threading
import time
from concurrent.futures import Future
from datetime import datetime

import pytest

from core.aggregator import KeypressAggregator, MIN_FLUSH_DELAY_MS, _Exclusive, _Stop
from core.bucket import bucket_start_for


def to_ms(dt: datetime, offset_ms: int = 0) -> int:
    return int(dt.timestamp() * 1000) + offset_ms


MINUTE = datetime(2024, 5, 15, 14, 30)
NEXT_MINUTE = datetime(2024, 5, 15, 14, 31)


class TestLifecycle:
    """Tests for start/stop behavior."""

    def test_start_stop(self, storage):
        """Test worker thread starts and stops."""
        agg = KeypressAggregator(storage)
        agg.start()
        assert agg.running is True
        assert agg.thread.is_alive()

        agg.stop()
        assert agg.running is False
        assert agg.thread is None

    def test_stop_flushes_open_bucket(self, storage):
        """Test stopping persists keystrokes still held in memory."""
        agg = KeypressAggregator(storage)
        agg.start()
        agg.record_keypress('a', to_ms(MINUTE, 1000))
        agg.record_keypress('b', to_ms(MINUTE, 2000))
        agg.stop()

        assert storage.lifetime_total() == 2

    def test_record_after_stop_ignored(self, storage):
        """Test ingesting while stopped is a no-op."""
        agg = KeypressAggregator(storage)
        agg.record_keypress('a', to_ms(MINUTE))
        agg.flush_pending()

        assert storage.lifetime_total() == 0
        assert agg.get_state()['open_bucket_start'] is None

    def test_min_flush_delay_floor(self, storage):
        """Test configured flush delay cannot go below the floor."""
        agg = KeypressAggregator(storage, min_flush_delay_ms=10, flush_grace_ms=-5)
        assert agg.min_flush_delay_ms == MIN_FLUSH_DELAY_MS
        assert agg.flush_grace_ms == 0


class TestFlushing:
    """Tests for the three flush triggers."""

    def test_flush_pending_persists_open_bucket(self, aggregator, storage):
        """Test explicit flush writes the open bucket before returning."""
        for i in range(5):
            aggregator.record_keypress('a', to_ms(MINUTE, i * 100))
        aggregator.flush_pending()

        row = storage.bucket_row(int(MINUTE.timestamp()))
        assert row.total_keys == 5
        assert row.interval_samples == 4
        assert row.sum_interval_ms == 400

    def test_flush_pending_without_data(self, aggregator, storage):
        """Test flushing with nothing recorded writes nothing."""
        aggregator.flush_pending()
        assert storage.bucket_count() == 0

    def test_boundary_crossing_flushes_previous_bucket(self, aggregator, storage):
        """Test a keystroke in a new minute flushes the old one."""
        aggregator.record_keypress('a', to_ms(MINUTE, 59_999))
        aggregator.record_keypress('b', to_ms(NEXT_MINUTE))
        aggregator.flush_pending()

        assert storage.bucket_row(int(MINUTE.timestamp())).total_keys == 1
        assert storage.bucket_row(int(NEXT_MINUTE.timestamp())).total_keys == 1
        assert storage.bucket_count() == 2

    def test_timer_flush_after_typing_stops(self, aggregator, storage):
        """Test the open bucket is flushed by the timer without further input."""
        # Bucket in the past: its end has passed, so the minimum delay applies
        aggregator.record_keypress('a', to_ms(MINUTE))

        deadline = time.time() + 3
        while time.time() < deadline and storage.lifetime_total() == 0:
            time.sleep(0.05)

        assert storage.lifetime_total() == 1
        assert aggregator.get_state()['open_bucket_start'] is None

    def test_double_flush_does_not_double_count(self, aggregator, storage):
        """Test flushing twice in a row writes counts once."""
        aggregator.record_keypress('a', to_ms(MINUTE))
        aggregator.flush_pending()
        aggregator.flush_pending()

        assert storage.lifetime_total() == 1

    def test_reopened_minute_merges(self, aggregator, storage):
        """Test a late keystroke for an already flushed minute merges into it."""
        aggregator.record_keypress('a', to_ms(MINUTE, 1000))
        aggregator.flush_pending()
        aggregator.record_keypress('a', to_ms(MINUTE, 2000))
        aggregator.flush_pending()

        assert storage.bucket_row(int(MINUTE.timestamp())).total_keys == 2
        assert storage.key_bucket_rows(int(MINUTE.timestamp())) == {'a': 2}


class TestWorkerState:
    """Tests driving the worker methods directly."""

    def test_stale_flush_tick_is_ignored(self, storage):
        """Test a tick for an already flushed bucket leaves the open one alone."""
        agg = KeypressAggregator(storage)
        agg._append(to_ms(MINUTE), 'a')
        agg._append(to_ms(NEXT_MINUTE), 'b')

        agg._on_flush_tick(int(MINUTE.timestamp()))

        assert agg._bucket is not None
        assert agg._bucket.start_time == int(NEXT_MINUTE.timestamp())
        assert storage.lifetime_total() == 1

    def test_matching_flush_tick_flushes(self, storage):
        """Test a tick for the open bucket flushes it."""
        agg = KeypressAggregator(storage)
        agg._append(to_ms(MINUTE), 'a')

        agg._on_flush_tick(int(MINUTE.timestamp()))

        assert agg._bucket is None
        assert storage.lifetime_total() == 1

    def test_schedule_uses_bucket_end_plus_grace(self, storage):
        """Test the timer fires grace after the bucket ends."""
        now = MINUTE.timestamp() + 30
        agg = KeypressAggregator(storage, flush_grace_ms=250, clock=lambda: now)
        agg._append(to_ms(MINUTE, 30_000), 'a')
        timer = agg._flush_timer
        timer.cancel()

        assert timer.interval == pytest.approx(30.25)


class TestErrors:
    """Tests for write failures and caller errors."""

    def test_write_failure_drops_bucket(self, aggregator, storage):
        """Test a failed flush is logged and counted, not raised."""
        conn = sqlite3.connect(storage.db_path)
        conn.execute("DROP TABLE key_buckets")
        conn.commit()
        conn.close()

        aggregator.record_keypress('a', to_ms(MINUTE))
        aggregator.flush_pending()

        assert aggregator.dropped_buckets == 1
        assert aggregator.flushed_buckets == 0
        assert storage.lifetime_total() == 0

        # Worker keeps running after the failure
        aggregator.record_keypress('b', to_ms(NEXT_MINUTE))
        aggregator.flush_pending()
        assert aggregator.dropped_buckets == 2

    def test_run_exclusive_propagates_exceptions(self, aggregator):
        """Test errors raised by the exclusive function reach the caller."""
        def fail(storage):
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            aggregator.run_exclusive(fail)

        assert aggregator.run_exclusive(lambda storage: 42) == 42

    def test_empty_label_becomes_unknown(self, aggregator, storage):
        """Test empty labels are stored as 'Unknown'."""
        aggregator.record_keypress('', to_ms(MINUTE))
        aggregator.flush_pending()

        assert storage.key_bucket_rows(int(MINUTE.timestamp())) == {'Unknown': 1}


class TestConcurrency:
    """Tests for many producers feeding one worker."""

    def test_concurrent_producers_lose_nothing(self, aggregator, storage):
        """Test keystrokes from several threads are all counted."""
        per_thread = 250
        base = to_ms(MINUTE)

        def produce(key):
            for i in range(per_thread):
                aggregator.record_keypress(key, base + i)

        threads = [threading.Thread(target=produce, args=(k,)) for k in 'abcd']
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        aggregator.flush_pending()

        assert storage.lifetime_total() == 4 * per_thread
        assert storage.key_bucket_rows(bucket_start_for(base)) == {
            'a': per_thread, 'b': per_thread, 'c': per_thread, 'd': per_thread
        }

    def test_query_sees_everything_recorded_before(self, aggregator):
        """Test an exclusive read observes all earlier appends."""
        for i in range(100):
            aggregator.record_keypress('x', to_ms(MINUTE, i))

        total = aggregator.run_exclusive(lambda storage: storage.lifetime_total())
        assert total == 100


@pytest.fixture
def slow_mailbox(monkeypatch):
    """Delay every enqueue so a concurrent stop() lands mid-call."""

    def _install(agg):
        entered = threading.Event()
        original_put = agg._mailbox.put

        def slow_put(item, *args, **kwargs):
            entered.set()
            time.sleep(0.3)
            original_put(item, *args, **kwargs)

        monkeypatch.setattr(agg._mailbox, "put", slow_put)
        return entered

    return _install


class TestShutdownRaces:
    """Tests for calls that overlap with stop()."""

    def test_flush_overlapping_stop_returns(self, storage, slow_mailbox):
        """Test a flush already enqueueing when stop() starts still completes."""
        agg = KeypressAggregator(storage)
        agg.start()
        agg.record_keypress('a', to_ms(MINUTE))
        entered = slow_mailbox(agg)

        flusher = threading.Thread(target=agg.flush_pending)
        flusher.start()
        assert entered.wait(1)
        agg.stop()
        flusher.join(timeout=2)

        assert not flusher.is_alive()
        assert storage.lifetime_total() == 1

    def test_keystroke_overlapping_stop_is_kept(self, storage, slow_mailbox):
        """Test a keystroke accepted before stop() is flushed by it."""
        agg = KeypressAggregator(storage)
        agg.start()
        entered = slow_mailbox(agg)

        producer = threading.Thread(
            target=agg.record_keypress, args=('a', to_ms(MINUTE))
        )
        producer.start()
        assert entered.wait(1)
        agg.stop()
        producer.join(timeout=2)

        assert storage.lifetime_total() == 1

    def test_exclusive_queued_behind_stop_is_answered(self, storage):
        """Test operations left in the mailbox after stop still get a result."""
        agg = KeypressAggregator(storage)
        future = Future()
        agg._mailbox.put(_Stop())
        agg._mailbox.put(_Exclusive(lambda s: s.lifetime_total(), future))
        agg._run()

        assert future.result(timeout=1) == 0

    def test_stopped_exclusive_calls_take_turns(self, storage):
        """Test inline operations on a stopped aggregator never overlap."""
        agg = KeypressAggregator(storage)
        active = 0
        peak = 0
        guard = threading.Lock()

        def op(s):
            nonlocal active, peak
            with guard:
                active += 1
                peak = max(peak, active)
            time.sleep(0.05)
            with guard:
                active -= 1

        threads = [threading.Thread(target=agg.run_exclusive, args=(op,)) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert peak == 1

    def test_stop_timeout_keeps_worker(self, storage, monkeypatch):
        """Test a worker that outlives stop() blocks a second start()."""
        monkeypatch.setattr("core.aggregator.STOP_JOIN_TIMEOUT_SEC", 0.1)
        agg = KeypressAggregator(storage)
        agg.start()
        busy = threading.Event()
        release = threading.Event()

        def hold(s):
            busy.set()
            release.wait(5)

        holder = threading.Thread(target=agg.run_exclusive, args=(hold,))
        holder.start()
        assert busy.wait(1)

        agg.stop()
        worker = agg.thread
        assert worker is not None and worker.is_alive()

        agg.start()
        assert agg.running is False
        assert agg.thread is worker

        release.set()
        holder.join(timeout=2)
        worker.join(timeout=2)
        assert not worker.is_alive()

        agg.start()
        assert agg.running is True
        agg.stop()
