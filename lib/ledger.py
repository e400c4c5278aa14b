"""
Last-run ledger for Backup Autopilot using SQLite.

Records, for every (job, unit) pair, when the unit was last backed up
successfully. The scheduler reads it to decide which units are due; the
orchestrator writes to it after every successful engine invocation.
"""

import sqlite3
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

# Elapsed time reported for a unit that never ran
NEVER_RUN_ELAPSED = sys.maxsize


class StateError(Exception):
    """Raised when the ledger cannot be read from or written to disk."""


def utc_now() -> datetime:
    """Default ledger clock."""
    return datetime.now(timezone.utc)


class LastRunLedger:
    """
    Durable (job, unit) -> last success timestamp mapping.

    The whole ledger is loaded into memory when the instance is created.
    Every record_success() is written through to SQLite in its own committed
    transaction before the in-memory copy changes, so a crash mid-write
    leaves the previous durable state intact.

    Passing db_path=None gives a purely in-memory ledger, which is what the
    tests inject into the scheduler and orchestrator.

    Example:
        >>> ledger = LastRunLedger(Path("~/.local/state/backup-autopilot/lastrun.db"))
        >>> ledger.elapsed_seconds("docs", "Photos") > 86400
        True
        >>> ledger.record_success("docs", "Photos")
        >>> ledger.elapsed_seconds("docs", "Photos")
        0
    """

    def __init__(
        self,
        db_path: Optional[Path],
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize the ledger and load existing entries.

        Args:
            db_path: Path to SQLite database file, or None for in-memory only
            clock: Callable returning the current time (defaults to UTC now)

        Raises:
            StateError: If the database cannot be created or read
        """
        self.db_path = db_path
        self._clock = clock or utc_now
        self._lock = threading.Lock()
        self._data: Dict[Tuple[str, str], datetime] = {}

        if self.db_path is not None:
            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)
                self._init_database()
                self._load()
            except (OSError, sqlite3.Error) as e:
                raise StateError(
                    f"Failed to open last-run ledger {self.db_path}: {e}"
                ) from e

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(str(self.db_path))

    def _init_database(self) -> None:
        """Create database schema if it doesn't exist."""
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS lastrun (
                        job TEXT NOT NULL,
                        unit TEXT NOT NULL,
                        last_success TEXT NOT NULL,
                        PRIMARY KEY (job, unit)
                    )
                """)
                conn.commit()
            finally:
                conn.close()

    def _load(self) -> None:
        """Read every entry into memory."""
        with self._lock:
            conn = self._connect()
            try:
                cursor = conn.execute("SELECT job, unit, last_success FROM lastrun")
                self._data = {
                    (job, unit): datetime.fromisoformat(stamp)
                    for job, unit, stamp in cursor.fetchall()
                }
            finally:
                conn.close()

    def _persist(self, job: str, unit: str, stamp: datetime) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT OR REPLACE INTO lastrun (job, unit, last_success)
                    VALUES (?, ?, ?)
                    """,
                    (job, unit, stamp.isoformat()),
                )
        finally:
            conn.close()

    def last_run(self, job: str, unit: str) -> Optional[datetime]:
        """
        Get the time of the last recorded success.

        Returns:
            The timestamp, or None if the unit never completed
        """
        with self._lock:
            return self._data.get((job, unit))

    def elapsed_seconds(self, job: str, unit: str) -> int:
        """
        Seconds since the last recorded success of (job, unit).

        A unit that never ran reports NEVER_RUN_ELAPSED so it is always due.
        """
        last = self.last_run(job, unit)
        if last is None:
            return NEVER_RUN_ELAPSED
        return int((self._clock() - last).total_seconds())

    def record_success(self, job: str, unit: str) -> None:
        """
        Mark (job, unit) as completed now and persist synchronously.

        Raises:
            StateError: If the database write fails
        """
        stamp = self._clock()
        with self._lock:
            if self.db_path is not None:
                try:
                    self._persist(job, unit, stamp)
                except sqlite3.Error as e:
                    raise StateError(
                        f"Failed to record success of {job}/{unit}: {e}"
                    ) from e
            self._data[(job, unit)] = stamp

    def entries(self, job: Optional[str] = None) -> List[Tuple[str, str, datetime]]:
        """
        List ledger entries, optionally for a single job.

        Returns:
            Sorted list of (job, unit, last_success) tuples
        """
        with self._lock:
            items = [
                (entry_job, unit, stamp)
                for (entry_job, unit), stamp in self._data.items()
                if job is None or entry_job == job
            ]
        return sorted(items)
