"""
Local SQLite Database

Stores raw samples, history aggregates, the alarm log and persisted
collector state (the history watermark).

Timestamps are written with `to_db_timestamp` so that string comparison in
SQL matches chronological order.
"""

import sqlite3
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Iterator

from ..common.exceptions import StorageError
from ..common.logging_setup import get_service_logger
from ..common.models import AggregateWindow, RawSample
from ..common.timestamp import from_db_timestamp, to_db_timestamp

logger = get_service_logger("storage.local_db")

DEFAULT_DB_PATH = Path("data/collector.db")

WATERMARK_KEY = "history_watermark"


class LocalDatabase:
    """
    SQLite database for collector data.

    Features:
    - Batched raw-sample inserts
    - Upsert of aggregate windows keyed by (device, point, window start)
    - Alarm log with ACTIVE/RESOLVED status
    - Key/value state table for the history watermark
    """

    # Chunk size for batch inserts (reduces lock duration)
    BATCH_CHUNK_SIZE = 1000

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path) if db_path else DEFAULT_DB_PATH
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()

    def _init_db(self) -> None:
        """Initialize database schema"""
        with self._get_connection() as conn:
            cursor = conn.cursor()

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS raw_samples (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    device_name TEXT,
                    point_name TEXT NOT NULL,
                    value REAL NOT NULL,
                    range_min REAL,
                    range_max REAL,
                    timestamp TEXT NOT NULL,
                    created_at TEXT DEFAULT (datetime('now'))
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS aggregate_windows (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    point_name TEXT NOT NULL,
                    window_start TEXT NOT NULL,
                    window_end TEXT NOT NULL,
                    mean_value REAL NOT NULL,
                    sample_count INTEGER DEFAULT 0,
                    updated_at TEXT DEFAULT (datetime('now')),
                    UNIQUE (device_id, point_name, window_start)
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS alarm_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    device_id TEXT NOT NULL,
                    device_name TEXT,
                    point_name TEXT NOT NULL,
                    alarm_type TEXT NOT NULL,
                    violated_value REAL,
                    threshold_value REAL,
                    alarm_time TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'ACTIVE',
                    resolved_at TEXT
                )
            """)

            cursor.execute("""
                CREATE TABLE IF NOT EXISTS collector_state (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL,
                    updated_at TEXT DEFAULT (datetime('now'))
                )
            """)

            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_raw_samples_timestamp
                ON raw_samples(timestamp)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_aggregate_windows_end
                ON aggregate_windows(window_end)
            """)
            cursor.execute("""
                CREATE INDEX IF NOT EXISTS idx_alarm_log_active
                ON alarm_log(device_id, point_name) WHERE status = 'ACTIVE'
            """)

            conn.commit()

        logger.info(f"Database initialized: {self.db_path}")

    @contextmanager
    def _get_connection(self) -> Iterator[sqlite3.Connection]:
        """Get database connection with context manager"""
        # timeout=10.0: fail fast on lock contention instead of blocking forever
        try:
            conn = sqlite3.connect(str(self.db_path), timeout=10.0)
            conn.row_factory = sqlite3.Row

            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("PRAGMA temp_store=MEMORY")
        except sqlite3.Error as e:
            raise StorageError(f"cannot open {self.db_path}: {e}", operation="connect") from e

        try:
            yield conn
        except sqlite3.Error as e:
            conn.rollback()
            raise StorageError(str(e)) from e
        finally:
            conn.close()

    # ------------------------------------------------------------------
    # Raw samples
    # ------------------------------------------------------------------

    def insert_samples_batch(self, samples: list[RawSample]) -> int:
        """
        Insert raw samples in chunked batches.

        Returns:
            Number of rows inserted

        Raises:
            StorageError: if a chunk cannot be written
        """
        if not samples:
            return 0

        total_inserted = 0
        for chunk_start in range(0, len(samples), self.BATCH_CHUNK_SIZE):
            chunk = samples[chunk_start:chunk_start + self.BATCH_CHUNK_SIZE]
            with self._get_connection() as conn:
                cursor = conn.cursor()
                cursor.executemany("""
                    INSERT INTO raw_samples (
                        device_id, device_name, point_name, value,
                        range_min, range_max, timestamp
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """, [
                    (
                        s.device_id,
                        s.device_name,
                        s.point_name,
                        s.value,
                        s.range_min,
                        s.range_max,
                        to_db_timestamp(s.timestamp),
                    )
                    for s in chunk
                ])
                conn.commit()
                total_inserted += cursor.rowcount

        return total_inserted

    def latest_sample_timestamp(self) -> datetime | None:
        """Timestamp of the newest raw sample, or None if the table is empty"""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT MAX(timestamp) AS ts FROM raw_samples"
            ).fetchone()
        if row is None or row["ts"] is None:
            return None
        return from_db_timestamp(row["ts"])

    def delete_samples_older_than(self, cutoff: datetime) -> int:
        """Delete raw samples with timestamp < cutoff. Returns rows deleted."""
        with self._get_connection() as conn:
            cursor = conn.execute(
                "DELETE FROM raw_samples WHERE timestamp < ?",
                (to_db_timestamp(cutoff),),
            )
            conn.commit()
            return cursor.rowcount

    def get_samples(
        self,
        device_id: str | None = None,
        point_name: str | None = None,
    ) -> list[RawSample]:
        """Raw samples in timestamp order, optionally filtered"""
        query = "SELECT * FROM raw_samples WHERE 1=1"
        params: list = []
        if device_id is not None:
            query += " AND device_id = ?"
            params.append(device_id)
        if point_name is not None:
            query += " AND point_name = ?"
            params.append(point_name)
        query += " ORDER BY timestamp ASC, id ASC"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            RawSample(
                device_id=r["device_id"],
                device_name=r["device_name"],
                point_name=r["point_name"],
                value=r["value"],
                timestamp=from_db_timestamp(r["timestamp"]),
                range_min=r["range_min"],
                range_max=r["range_max"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    # Aggregates and watermark
    # ------------------------------------------------------------------

    def window_means(self, window_start: datetime, window_end: datetime) -> list[AggregateWindow]:
        """Mean value per (device, point) over samples in [start, end)"""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT device_id, point_name,
                       AVG(value) AS mean_value,
                       COUNT(*) AS sample_count
                FROM raw_samples
                WHERE timestamp >= ? AND timestamp < ?
                GROUP BY device_id, point_name
                ORDER BY device_id, point_name
            """, (to_db_timestamp(window_start), to_db_timestamp(window_end))).fetchall()

        return [
            AggregateWindow(
                device_id=r["device_id"],
                point_name=r["point_name"],
                window_start=window_start,
                window_end=window_end,
                mean_value=r["mean_value"],
                sample_count=r["sample_count"],
            )
            for r in rows
        ]

    @staticmethod
    def _upsert_window_rows(conn: sqlite3.Connection, windows: list[AggregateWindow]) -> None:
        conn.executemany("""
            INSERT INTO aggregate_windows (
                device_id, point_name, window_start, window_end,
                mean_value, sample_count
            ) VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (device_id, point_name, window_start) DO UPDATE SET
                mean_value = excluded.mean_value,
                window_end = excluded.window_end,
                sample_count = excluded.sample_count,
                updated_at = datetime('now')
        """, [
            (
                w.device_id,
                w.point_name,
                to_db_timestamp(w.window_start),
                to_db_timestamp(w.window_end),
                w.mean_value,
                w.sample_count,
            )
            for w in windows
        ])

    @staticmethod
    def _set_state_row(conn: sqlite3.Connection, key: str, value: str) -> None:
        conn.execute("""
            INSERT INTO collector_state (key, value) VALUES (?, ?)
            ON CONFLICT (key) DO UPDATE SET
                value = excluded.value,
                updated_at = datetime('now')
        """, (key, value))

    def upsert_window(
        self,
        device_id: str,
        point_name: str,
        window_start: datetime,
        window_end: datetime,
        mean_value: float,
        sample_count: int = 0,
    ) -> None:
        """Insert or overwrite one aggregate row"""
        with self._get_connection() as conn:
            self._upsert_window_rows(conn, [AggregateWindow(
                device_id=device_id,
                point_name=point_name,
                window_start=window_start,
                window_end=window_end,
                mean_value=mean_value,
                sample_count=sample_count,
            )])
            conn.commit()

    def commit_window(self, windows: list[AggregateWindow], watermark: datetime) -> None:
        """
        Upsert every aggregate of one window and advance the watermark.

        Both writes share one transaction: either the rows and the new
        watermark are stored, or neither is.
        """
        with self._get_connection() as conn:
            if windows:
                self._upsert_window_rows(conn, windows)
            self._set_state_row(conn, WATERMARK_KEY, to_db_timestamp(watermark))
            conn.commit()

    def get_aggregates(
        self,
        device_id: str | None = None,
        point_name: str | None = None,
    ) -> list[AggregateWindow]:
        query = "SELECT * FROM aggregate_windows WHERE 1=1"
        params: list = []
        if device_id is not None:
            query += " AND device_id = ?"
            params.append(device_id)
        if point_name is not None:
            query += " AND point_name = ?"
            params.append(point_name)
        query += " ORDER BY window_start ASC, device_id, point_name"

        with self._get_connection() as conn:
            rows = conn.execute(query, params).fetchall()

        return [
            AggregateWindow(
                device_id=r["device_id"],
                point_name=r["point_name"],
                window_start=from_db_timestamp(r["window_start"]),
                window_end=from_db_timestamp(r["window_end"]),
                mean_value=r["mean_value"],
                sample_count=r["sample_count"],
            )
            for r in rows
        ]

    def latest_window_end(self) -> datetime | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT MAX(window_end) AS ts FROM aggregate_windows"
            ).fetchone()
        if row is None or row["ts"] is None:
            return None
        return from_db_timestamp(row["ts"])

    def get_state(self, key: str) -> str | None:
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT value FROM collector_state WHERE key = ?", (key,)
            ).fetchone()
        return row["value"] if row else None

    def set_state(self, key: str, value: str) -> None:
        with self._get_connection() as conn:
            self._set_state_row(conn, key, value)
            conn.commit()

    def get_watermark(self) -> datetime | None:
        value = self.get_state(WATERMARK_KEY)
        return from_db_timestamp(value) if value else None

    def set_watermark(self, watermark: datetime) -> None:
        self.set_state(WATERMARK_KEY, to_db_timestamp(watermark))

    # ------------------------------------------------------------------
    # Alarm log
    # ------------------------------------------------------------------

    def insert_alarm(
        self,
        device_id: str,
        device_name: str | None,
        point_name: str,
        alarm_type: str,
        violated_value: float,
        threshold_value: float,
        alarm_time: datetime,
    ) -> int:
        """Insert an ACTIVE alarm row"""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                INSERT INTO alarm_log (
                    device_id, device_name, point_name, alarm_type,
                    violated_value, threshold_value, alarm_time, status
                ) VALUES (?, ?, ?, ?, ?, ?, ?, 'ACTIVE')
            """, (
                device_id,
                device_name,
                point_name,
                alarm_type,
                violated_value,
                threshold_value,
                to_db_timestamp(alarm_time),
            ))
            conn.commit()
            return cursor.lastrowid

    def resolve_alarm(self, device_id: str, point_name: str, resolved_at: datetime) -> int:
        """Mark every ACTIVE alarm of a point as RESOLVED. Returns rows updated."""
        with self._get_connection() as conn:
            cursor = conn.execute("""
                UPDATE alarm_log
                SET status = 'RESOLVED', resolved_at = ?
                WHERE device_id = ? AND point_name = ? AND status = 'ACTIVE'
            """, (to_db_timestamp(resolved_at), device_id, point_name))
            conn.commit()
            return cursor.rowcount

    def get_active_alarms(self) -> list[dict]:
        """Latest ACTIVE alarm per (device, point)"""
        with self._get_connection() as conn:
            rows = conn.execute("""
                SELECT * FROM alarm_log
                WHERE status = 'ACTIVE'
                ORDER BY alarm_time ASC, id ASC
            """).fetchall()

        latest: dict[tuple[str, str], dict] = {}
        for r in rows:
            record = dict(r)
            record["alarm_time"] = from_db_timestamp(record["alarm_time"])
            latest[(record["device_id"], record["point_name"])] = record
        return list(latest.values())

    def get_alarm_log(self, limit: int = 100) -> list[dict]:
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM alarm_log ORDER BY alarm_time DESC, id DESC LIMIT ?",
                (limit,),
            ).fetchall()
        return [dict(r) for r in rows]

    def get_stats(self) -> dict:
        """Get database statistics"""
        with self._get_connection() as conn:
            raw_count = conn.execute("SELECT COUNT(*) FROM raw_samples").fetchone()[0]
            aggregate_count = conn.execute(
                "SELECT COUNT(*) FROM aggregate_windows"
            ).fetchone()[0]
            active_alarms = conn.execute(
                "SELECT COUNT(*) FROM alarm_log WHERE status = 'ACTIVE'"
            ).fetchone()[0]

        return {
            "raw_samples": raw_count,
            "aggregate_windows": aggregate_count,
            "active_alarms": active_alarms,
            "db_path": str(self.db_path),
        }
