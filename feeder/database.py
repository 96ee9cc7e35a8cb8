"""
Database module for cln-feeder

Handles SQLite persistence for:
- Per-channel (fee, revenue) samples, one per epoch
- Fee change audit log

The samples table is an insert-only log keyed by (channel_id, observed_at).
Rows are never updated or deleted; a second write for the same key fails.
"""

import sqlite3
import os
import time
import threading
from typing import Dict, List, Optional, Any

from .config import MEMORY_DB_PATH
from .trend import Sample


class StoreError(Exception):
    """Raised when a sample cannot be written to or read from the store."""


class Database:
    """
    SQLite database manager for the fee controller.

    Provides persistence for:
    - Channel samples (fee ppm, revenue msat, observation time)
    - Fee change audit log

    A single connection is shared between the controller thread and the
    RPC command handlers; access is serialized with a lock.
    """

    def __init__(self, db_path: str, plugin):
        """
        Initialize the database connection.

        Args:
            db_path: Path to SQLite database file, or ':memory:'
            plugin: Reference to the pyln Plugin for logging
        """
        if db_path == MEMORY_DB_PATH:
            self.db_path = db_path
        else:
            self.db_path = os.path.expanduser(db_path)
        self.plugin = plugin
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.RLock()
        self._closed = False

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._closed:
            raise StoreError("Database is closed")
        if self._conn is None:
            if self.db_path != MEMORY_DB_PATH:
                # Ensure directory exists
                directory = os.path.dirname(self.db_path)
                if directory:
                    os.makedirs(directory, exist_ok=True)

            self._conn = sqlite3.connect(
                self.db_path,
                check_same_thread=False,
                isolation_level=None  # Autocommit mode
            )
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def initialize(self):
        """Create database tables if they don't exist."""
        with self._lock:
            conn = self._get_connection()

            # One row per channel per epoch; the key rejects duplicate timestamps
            conn.execute("""
                CREATE TABLE IF NOT EXISTS samples (
                    channel_id TEXT NOT NULL,
                    observed_at INTEGER NOT NULL,
                    fee_ppm INTEGER NOT NULL,
                    revenue_msat INTEGER NOT NULL,
                    PRIMARY KEY (channel_id, observed_at)
                )
            """)

            # Fee changes audit log
            conn.execute("""
                CREATE TABLE IF NOT EXISTS fee_changes (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    channel_id TEXT NOT NULL,
                    old_fee_ppm INTEGER NOT NULL,
                    new_fee_ppm INTEGER NOT NULL,
                    action TEXT NOT NULL,
                    reason TEXT,
                    dry_run INTEGER NOT NULL DEFAULT 0,
                    timestamp INTEGER NOT NULL
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_fee_changes_channel ON fee_changes(channel_id, timestamp)")

        self.plugin.log(f"Database initialized successfully ({self.db_path})")

    # =========================================================================
    # Sample Methods
    # =========================================================================

    def append_sample(self, channel_id: str, fee: int, revenue: int, observed_at: int):
        """
        Insert one immutable sample.

        Raises:
            StoreError: if (channel_id, observed_at) already exists or the
                write fails for any other reason
        """
        try:
            with self._lock:
                conn = self._get_connection()
                conn.execute("""
                    INSERT INTO samples (channel_id, observed_at, fee_ppm, revenue_msat)
                    VALUES (?, ?, ?, ?)
                """, (channel_id, int(observed_at), int(fee), int(revenue)))
        except sqlite3.IntegrityError as e:
            raise StoreError(
                f"Sample for {channel_id} at {observed_at} already stored"
            ) from e
        except sqlite3.Error as e:
            raise StoreError(f"Could not store sample for {channel_id}: {e}") from e

    def get_recent_samples(self, channel_id: str, limit: int) -> List[Sample]:
        """
        Get the newest samples for a channel, most-recent-first.

        Raises:
            StoreError: if the read fails
        """
        if limit <= 0:
            return []
        try:
            with self._lock:
                conn = self._get_connection()
                rows = conn.execute("""
                    SELECT channel_id, observed_at, fee_ppm, revenue_msat
                    FROM samples
                    WHERE channel_id = ?
                    ORDER BY observed_at DESC
                    LIMIT ?
                """, (channel_id, limit)).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Could not read samples for {channel_id}: {e}") from e

        return [
            Sample(
                channel_id=row["channel_id"],
                fee=row["fee_ppm"],
                revenue=row["revenue_msat"],
                observed_at=row["observed_at"],
            )
            for row in rows
        ]

    def get_last_sample(self, channel_id: str) -> Optional[Sample]:
        """Get the newest sample for a channel, or None if it has no history."""
        samples = self.get_recent_samples(channel_id, 1)
        return samples[0] if samples else None

    def get_sample_count(self, channel_id: Optional[str] = None) -> int:
        """Count stored samples, optionally for one channel."""
        try:
            with self._lock:
                conn = self._get_connection()
                if channel_id:
                    row = conn.execute(
                        "SELECT COUNT(*) as cnt FROM samples WHERE channel_id = ?",
                        (channel_id,)
                    ).fetchone()
                else:
                    row = conn.execute("SELECT COUNT(*) as cnt FROM samples").fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Could not count samples: {e}") from e
        return row["cnt"]

    def get_tracked_channels(self) -> List[Dict[str, Any]]:
        """Get every channel with history, with its sample count and last observation."""
        try:
            with self._lock:
                conn = self._get_connection()
                rows = conn.execute("""
                    SELECT channel_id, COUNT(*) as samples, MAX(observed_at) as last_observed_at
                    FROM samples
                    GROUP BY channel_id
                    ORDER BY channel_id
                """).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Could not list tracked channels: {e}") from e
        return [dict(row) for row in rows]

    # =========================================================================
    # Fee Change Methods
    # =========================================================================

    def record_fee_change(self, channel_id: str, old_fee_ppm: int, new_fee_ppm: int,
                          action: str, reason: str, dry_run: bool = False):
        """
        Record a fee change for audit purposes.

        Raises:
            StoreError: if the write fails
        """
        now = int(time.time())
        try:
            with self._lock:
                conn = self._get_connection()
                conn.execute("""
                    INSERT INTO fee_changes
                    (channel_id, old_fee_ppm, new_fee_ppm, action, reason, dry_run, timestamp)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                """, (channel_id, old_fee_ppm, new_fee_ppm, action, reason, 1 if dry_run else 0, now))
        except sqlite3.Error as e:
            raise StoreError(f"Could not record fee change for {channel_id}: {e}") from e

    def get_recent_fee_changes(self, limit: int = 10, channel_id: Optional[str] = None) -> List[Dict[str, Any]]:
        """Get recent fee changes, optionally filtered by channel."""
        try:
            with self._lock:
                conn = self._get_connection()

                if channel_id:
                    rows = conn.execute("""
                        SELECT * FROM fee_changes
                        WHERE channel_id = ?
                        ORDER BY timestamp DESC, id DESC
                        LIMIT ?
                    """, (channel_id, limit)).fetchall()
                else:
                    rows = conn.execute("""
                        SELECT * FROM fee_changes
                        ORDER BY timestamp DESC, id DESC
                        LIMIT ?
                    """, (limit,)).fetchall()
        except sqlite3.Error as e:
            raise StoreError(f"Could not read fee changes: {e}") from e

        return [dict(row) for row in rows]

    def close(self):
        """Close the database connection. Later calls raise StoreError."""
        with self._lock:
            self._closed = True
            if self._conn:
                self._conn.close()
                self._conn = None
