"""Storage management for keytally - SQLite per-minute aggregate tables."""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta
from pathlib import Path
from typing import Iterator, Optional

from core.bucket import BUCKET_SIZE_SECONDS
from core.models import BucketCounters, DailyActivityRecord, KeyFrequency, PersistedBucket
from core.statistics import rank_key_frequencies
from core.validation import validate_limit

log = logging.getLogger("keytally.storage")

DEFAULT_USER_ID = 1

_LOCAL_DAY = "date(bucket_start, 'unixepoch', 'localtime')"
_LOCAL_HOUR = "CAST(strftime('%H', bucket_start, 'unixepoch', 'localtime') AS INTEGER)"


class Storage:
    """Durable store for per-minute keystroke aggregates.

    Writes merge into existing rows by summing counters, so flushing the
    same bucket twice never overwrites or loses counts. Reads never raise:
    a failing query is logged and reported as zero or empty.
    """

    def __init__(self, db_path: Path, user_id: int = DEFAULT_USER_ID):
        """Open the database and create the schema.

        Args:
            db_path: Path to SQLite database file
            user_id: Owner of every row written through this instance

        Raises:
            StorageInitError: If the file cannot be opened or the schema created
        """
        self.db_path = Path(db_path)
        self.user_id = user_id
        self._init_database()

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Open a connection in autocommit mode; transactions are explicit."""
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        try:
            yield conn
        finally:
            conn.close()

    def _init_database(self) -> None:
        """Create all database tables if they don't exist."""
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            with self._get_connection() as conn:
                conn.execute("PRAGMA journal_mode=WAL")
                self._create_key_buckets_table(conn)
                self._create_bucket_stats_table(conn)
        except (OSError, sqlite3.Error) as e:
            raise StorageInitError(f"Cannot initialize database at {self.db_path}: {e}") from e
        log.info(f"Database ready at {self.db_path}")

    def _create_key_buckets_table(self, conn: sqlite3.Connection) -> None:
        """Create key_buckets table."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS key_buckets (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                bucket_start INTEGER NOT NULL,
                bucket_size_sec INTEGER NOT NULL,
                key_code TEXT NOT NULL,
                press_count INTEGER NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_key_buckets_user_time "
            "ON key_buckets(user_id, bucket_start)"
        )
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_key_buckets_unique "
            "ON key_buckets(user_id, bucket_start, bucket_size_sec, key_code)"
        )

    def _create_bucket_stats_table(self, conn: sqlite3.Connection) -> None:
        """Create bucket_stats table."""
        conn.execute("""
            CREATE TABLE IF NOT EXISTS bucket_stats (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL,
                bucket_start INTEGER NOT NULL,
                bucket_size_sec INTEGER NOT NULL,
                total_keys INTEGER NOT NULL,
                backspace_count INTEGER NOT NULL,
                sum_interval_ms INTEGER NOT NULL,
                interval_samples INTEGER NOT NULL
            )
        """)
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_bucket_stats_user_time "
            "ON bucket_stats(user_id, bucket_start)"
        )
        conn.execute(
            "CREATE UNIQUE INDEX IF NOT EXISTS idx_bucket_stats_unique "
            "ON bucket_stats(user_id, bucket_start, bucket_size_sec)"
        )

    # ========== Writes ==========

    def persist_bucket(self, bucket: PersistedBucket) -> None:
        """Write one bucket_stats row and its key_buckets rows atomically.

        Existing rows for the same bucket are merged by summing counters.

        Args:
            bucket: Flushed bucket to write

        Raises:
            StorageWriteError: If the transaction failed and was rolled back
        """
        counters = bucket.counters
        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.execute(
                        """
                        INSERT INTO bucket_stats
                        (user_id, bucket_start, bucket_size_sec, total_keys,
                         backspace_count, sum_interval_ms, interval_samples)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        ON CONFLICT(user_id, bucket_start, bucket_size_sec)
                        DO UPDATE SET
                            total_keys = bucket_stats.total_keys + excluded.total_keys,
                            backspace_count = bucket_stats.backspace_count + excluded.backspace_count,
                            sum_interval_ms = bucket_stats.sum_interval_ms + excluded.sum_interval_ms,
                            interval_samples = bucket_stats.interval_samples + excluded.interval_samples
                    """,
                        (
                            self.user_id,
                            bucket.bucket_start,
                            bucket.bucket_size_sec,
                            counters.total_keys,
                            counters.backspace_count,
                            counters.sum_interval_ms,
                            counters.interval_samples,
                        ),
                    )
                    conn.executemany(
                        """
                        INSERT INTO key_buckets
                        (user_id, bucket_start, bucket_size_sec, key_code, press_count)
                        VALUES (?, ?, ?, ?, ?)
                        ON CONFLICT(user_id, bucket_start, bucket_size_sec, key_code)
                        DO UPDATE SET press_count = key_buckets.press_count + excluded.press_count
                    """,
                        [
                            (self.user_id, bucket.bucket_start, bucket.bucket_size_sec, key, count)
                            for key, count in bucket.key_counts.items()
                        ],
                    )
                except sqlite3.Error:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageWriteError(
                f"Failed to persist bucket {bucket.bucket_start}: {e}"
            ) from e
        log.debug(
            f"Persisted bucket {bucket.bucket_start}: {counters.total_keys} keys, "
            f"{len(bucket.key_counts)} distinct"
        )

    def delete_old_data(self, retention_days: int, now: Optional[datetime] = None) -> int:
        """Delete buckets that start before local midnight retention_days ago.

        Args:
            retention_days: Number of days to keep, or -1 to keep forever
            now: Reference time (defaults to the current local time)

        Returns:
            Number of bucket_stats rows removed

        Raises:
            StorageWriteError: If the transaction failed and was rolled back
        """
        if retention_days < 0:
            return 0
        now = now or datetime.now()
        cutoff_day = now.date() - timedelta(days=retention_days)
        cutoff = int(datetime.combine(cutoff_day, time.min).timestamp())
        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    cursor = conn.execute(
                        "DELETE FROM bucket_stats WHERE user_id = ? AND bucket_start < ?",
                        (self.user_id, cutoff),
                    )
                    removed = cursor.rowcount
                    conn.execute(
                        "DELETE FROM key_buckets WHERE user_id = ? AND bucket_start < ?",
                        (self.user_id, cutoff),
                    )
                except sqlite3.Error:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageWriteError(f"Failed to delete data older than {cutoff_day}: {e}") from e
        log.info(f"Deleted {removed} buckets older than {cutoff_day}")
        return removed

    def clear_database(self) -> None:
        """Clear all aggregate data for this user.

        Raises:
            StorageWriteError: If the transaction failed and was rolled back
        """
        try:
            with self._get_connection() as conn:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    conn.execute("DELETE FROM bucket_stats WHERE user_id = ?", (self.user_id,))
                    conn.execute("DELETE FROM key_buckets WHERE user_id = ?", (self.user_id,))
                except sqlite3.Error:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StorageWriteError(f"Failed to clear database: {e}") from e
        log.info("Cleared all keystroke data")

    def close(self) -> None:
        """Checkpoint the write-ahead log into the main database file."""
        try:
            with self._get_connection() as conn:
                conn.execute("PRAGMA wal_checkpoint(TRUNCATE)")
        except sqlite3.Error as e:
            log.warning(f"WAL checkpoint failed: {e}")

    # ========== Reads ==========

    def _query(self, name: str, sql: str, params: tuple, default):
        """Run a read query, turning database errors into a default result."""
        try:
            with self._get_connection() as conn:
                return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            log.error(f"Query {name} failed: {e}")
            return default

    def sum_total_keys(self, start: int, end: int) -> int:
        """Sum total_keys for buckets with start <= bucket_start < end.

        Args:
            start: Range start (Unix epoch seconds, inclusive)
            end: Range end (Unix epoch seconds, exclusive)
        """
        rows = self._query(
            "sum_total_keys",
            """
            SELECT IFNULL(SUM(total_keys), 0) FROM bucket_stats
            WHERE user_id = ? AND bucket_start >= ? AND bucket_start < ?
        """,
            (self.user_id, int(start), int(end)),
            None,
        )
        return rows[0][0] if rows else 0

    def lifetime_total(self) -> int:
        """Sum of total_keys over all buckets."""
        rows = self._query(
            "lifetime_total",
            "SELECT IFNULL(SUM(total_keys), 0) FROM bucket_stats WHERE user_id = ?",
            (self.user_id,),
            None,
        )
        return rows[0][0] if rows else 0

    def key_frequencies(self, start: Optional[int] = None, end: Optional[int] = None) -> list[KeyFrequency]:
        """Summed press counts per key, unordered.

        Args:
            start: Range start (epoch seconds, inclusive) or None for no bound
            end: Range end (epoch seconds, exclusive) or None for no bound
        """
        query = "SELECT key_code, SUM(press_count) FROM key_buckets WHERE user_id = ?"
        params: list = [self.user_id]
        if start is not None:
            query += " AND bucket_start >= ?"
            params.append(int(start))
        if end is not None:
            query += " AND bucket_start < ?"
            params.append(int(end))
        query += " GROUP BY key_code"

        rows = self._query("key_frequencies", query, tuple(params), [])
        return [KeyFrequency(key=key, count=count) for key, count in rows]

    def top_keys(
        self, limit: int, start: Optional[int] = None, end: Optional[int] = None
    ) -> list[KeyFrequency]:
        """Key counts ordered by count descending, at most limit entries.

        Ties are ordered by key display order so the ranking is stable.
        """
        return rank_key_frequencies(self.key_frequencies(start, end), validate_limit(limit))

    def daily_totals(self) -> list[DailyActivityRecord]:
        """One entry per local calendar day with at least one key, ascending."""
        rows = self._query(
            "daily_totals",
            f"""
            SELECT {_LOCAL_DAY} AS day, SUM(total_keys) AS count
            FROM bucket_stats
            WHERE user_id = ?
            GROUP BY day
            HAVING SUM(total_keys) > 0
            ORDER BY day ASC
        """,
            (self.user_id,),
            [],
        )
        return [DailyActivityRecord(day=date.fromisoformat(day), count=count) for day, count in rows]

    def hourly_totals(self) -> dict[int, int]:
        """Summed total_keys per local hour of day across all history."""
        rows = self._query(
            "hourly_totals",
            f"""
            SELECT {_LOCAL_HOUR} AS hour, SUM(total_keys)
            FROM bucket_stats
            WHERE user_id = ?
            GROUP BY hour
        """,
            (self.user_id,),
            [],
        )
        return {hour: count for hour, count in rows}

    def minute_activity_marks(self, day_start: int, day_end: int) -> list[int]:
        """Distinct active bucket starts within [day_start, day_end), ascending."""
        rows = self._query(
            "minute_activity_marks",
            """
            SELECT DISTINCT bucket_start FROM bucket_stats
            WHERE user_id = ? AND bucket_start >= ? AND bucket_start < ? AND total_keys > 0
            ORDER BY bucket_start ASC
        """,
            (self.user_id, int(day_start), int(day_end)),
            [],
        )
        return [row[0] for row in rows]

    def bucket_row(self, bucket_start: int) -> Optional[BucketCounters]:
        """Stored counters for a single bucket, if present."""
        rows = self._query(
            "bucket_row",
            """
            SELECT total_keys, backspace_count, sum_interval_ms, interval_samples
            FROM bucket_stats
            WHERE user_id = ? AND bucket_start = ? AND bucket_size_sec = ?
        """,
            (self.user_id, bucket_start, BUCKET_SIZE_SECONDS),
            [],
        )
        if not rows:
            return None
        total_keys, backspace_count, sum_interval_ms, interval_samples = rows[0]
        return BucketCounters(
            total_keys=total_keys,
            backspace_count=backspace_count,
            sum_interval_ms=sum_interval_ms,
            interval_samples=interval_samples,
        )

    def key_bucket_rows(self, bucket_start: int) -> dict[str, int]:
        """Stored per-key counts for a single bucket."""
        rows = self._query(
            "key_bucket_rows",
            """
            SELECT key_code, press_count FROM key_buckets
            WHERE user_id = ? AND bucket_start = ? AND bucket_size_sec = ?
        """,
            (self.user_id, bucket_start, BUCKET_SIZE_SECONDS),
            [],
        )
        return {key: count for key, count in rows}

    def bucket_count(self) -> int:
        """Number of stored bucket_stats rows."""
        rows = self._query(
            "bucket_count",
            "SELECT COUNT(*) FROM bucket_stats WHERE user_id = ?",
            (self.user_id,),
            None,
        )
        return rows[0][0] if rows else 0


class StorageError(Exception):
    """Base exception for storage errors."""

    pass


class StorageInitError(StorageError):
    """Exception raised when the database cannot be opened or created."""

    pass


class StorageWriteError(StorageError):
    """Exception raised when a bucket transaction fails to commit."""

    pass
