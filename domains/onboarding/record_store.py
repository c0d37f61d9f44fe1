"""SQLite record store for onboarding reminders.

Holds the onboarding records the scheduler polls and the per-record history
of reminders already sent. The history table is the ``reminders_sent`` set:
a row exists if and only if the reminder for that threshold was accepted by
the sender.

Store methods are ``async`` so the scheduler can treat this store and the
Supabase store the same way; the SQLite work itself is short and runs inline.
"""

import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional

from logger import logger
from . import config
from .errors import StoreUnavailableError
from .evaluator import OnboardingRecord


def _to_epoch(value: datetime) -> float:
    if value.tzinfo is None:
        raise ValueError("created_at must be timezone-aware")
    return value.timestamp()


def _from_epoch(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SqliteRecordStore:
    """Onboarding records and reminder history in a local SQLite file."""

    def __init__(self, db_path: Optional[str] = None, threshold_ids: Iterable[str] = ()):
        """Open (and create if needed) the store.

        Args:
            db_path: SQLite file path (default ``config.RECORD_STORE_DB``)
            threshold_ids: Configured threshold ids. Records that already have
                every one of them in their history are not returned as active.
        """
        self.db_path = db_path or config.RECORD_STORE_DB
        self.threshold_ids = frozenset(threshold_ids)
        self._connection: Optional[sqlite3.Connection] = None

    def _get_connection(self) -> sqlite3.Connection:
        """Get or create the database connection with WAL mode."""
        if self._connection is not None:
            return self._connection

        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=10.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA busy_timeout=5000")
        conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema(conn)

        self._connection = conn
        logger.info(f"Record store initialized: {self.db_path}")
        return conn

    @staticmethod
    def _init_schema(conn: sqlite3.Connection) -> None:
        """Create tables if they don't exist."""
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS onboarding_records (
                id TEXT PRIMARY KEY,
                destination TEXT,
                name TEXT,
                created_at REAL,
                credit_report_completed INTEGER NOT NULL DEFAULT 0,
                documents_signed INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_records_progress
                ON onboarding_records(credit_report_completed, documents_signed);

            CREATE TABLE IF NOT EXISTS reminders_sent (
                record_id TEXT NOT NULL REFERENCES onboarding_records(id) ON DELETE CASCADE,
                threshold_id TEXT NOT NULL,
                sent_at REAL NOT NULL,
                PRIMARY KEY (record_id, threshold_id)
            );
        """)
        conn.commit()

    @contextmanager
    def _transaction(self):
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    # ------------------------------------------------------------------
    # Scheduler interface
    # ------------------------------------------------------------------

    async def fetch_active_records(self) -> list[OnboardingRecord]:
        """Return records still onboarding that have reminders left to send.

        Raises:
            StoreUnavailableError: the database could not be read
        """
        try:
            conn = self._get_connection()
            rows = conn.execute(
                """
                SELECT r.*, GROUP_CONCAT(s.threshold_id) AS sent
                FROM onboarding_records r
                LEFT JOIN reminders_sent s ON s.record_id = r.id
                WHERE NOT (r.credit_report_completed = 1 AND r.documents_signed = 1)
                GROUP BY r.id
                ORDER BY r.created_at ASC
                """
            ).fetchall()
        except (sqlite3.Error, OSError) as e:
            raise StoreUnavailableError(f"Record store read failed: {e}") from e

        records = [self._row_to_record(row) for row in rows]
        if self.threshold_ids:
            records = [r for r in records if not self.threshold_ids <= r.reminders_sent]
        return records

    async def mark_reminder_sent(self, record_id: str, threshold_id: str) -> bool:
        """Record that ``threshold_id`` was sent for ``record_id``.

        Idempotent: marking an already-marked threshold succeeds without
        changing the original ``sent_at``.

        Returns:
            True once the row is committed
        """
        try:
            with self._transaction() as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO reminders_sent (record_id, threshold_id, sent_at)
                    VALUES (?, ?, ?)
                    """,
                    (record_id, threshold_id, time.time())
                )
            logger.debug(f"Record {record_id}: reminder {threshold_id} marked sent")
            return True
        except sqlite3.Error as e:
            logger.error(f"Failed to mark reminder {threshold_id} for record {record_id}: {e}")
            return False

    # ------------------------------------------------------------------
    # Onboarding flow side (record creation and progress)
    # ------------------------------------------------------------------

    def add_record(
        self,
        record_id: str,
        destination: Optional[str],
        created_at: Optional[datetime] = None,
        name: Optional[str] = None,
        credit_report_completed: bool = False,
        documents_signed: bool = False,
    ) -> None:
        """Insert a new onboarding record (``created_at`` defaults to now)."""
        created = created_at or datetime.now(timezone.utc)
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO onboarding_records
                (id, destination, name, created_at, credit_report_completed, documents_signed)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (record_id, destination, name, _to_epoch(created),
                 int(credit_report_completed), int(documents_signed))
            )
        logger.debug(f"Record {record_id} added")

    def update_progress(
        self,
        record_id: str,
        credit_report_completed: Optional[bool] = None,
        documents_signed: Optional[bool] = None,
    ) -> None:
        """Set completion flags. Flags only move false → true; a False is ignored."""
        with self._transaction() as conn:
            if credit_report_completed:
                conn.execute(
                    "UPDATE onboarding_records SET credit_report_completed = 1 WHERE id = ?",
                    (record_id,)
                )
            if documents_signed:
                conn.execute(
                    "UPDATE onboarding_records SET documents_signed = 1 WHERE id = ?",
                    (record_id,)
                )

    def get_record(self, record_id: str) -> Optional[OnboardingRecord]:
        """Get a single record with its reminder history, or None."""
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT r.*, GROUP_CONCAT(s.threshold_id) AS sent
            FROM onboarding_records r
            LEFT JOIN reminders_sent s ON s.record_id = r.id
            WHERE r.id = ?
            GROUP BY r.id
            """,
            (record_id,)
        ).fetchone()
        return self._row_to_record(row) if row else None

    def reminder_history(self, record_id: str) -> list[tuple[str, datetime]]:
        """(threshold_id, sent_at) pairs for a record, oldest first."""
        conn = self._get_connection()
        rows = conn.execute(
            """
            SELECT threshold_id, sent_at FROM reminders_sent
            WHERE record_id = ?
            ORDER BY sent_at ASC, rowid ASC
            """,
            (record_id,)
        ).fetchall()
        return [(row["threshold_id"], _from_epoch(row["sent_at"])) for row in rows]

    def get_stats(self) -> dict:
        """Counts for monitoring.

        Returns:
            Dict with total, completed and in-progress record counts plus
            reminders sent per threshold id
        """
        conn = self._get_connection()
        totals = conn.execute(
            """
            SELECT COUNT(*) AS total,
                   COALESCE(SUM(credit_report_completed = 1 AND documents_signed = 1), 0) AS completed
            FROM onboarding_records
            """
        ).fetchone()
        per_threshold = conn.execute(
            "SELECT threshold_id, COUNT(*) AS count FROM reminders_sent GROUP BY threshold_id"
        ).fetchall()

        return {
            "total_records": totals["total"],
            "completed_records": totals["completed"],
            "in_progress_records": totals["total"] - totals["completed"],
            "reminders_sent": {row["threshold_id"]: row["count"] for row in per_threshold},
        }

    def close(self) -> None:
        """Close the database connection."""
        if self._connection:
            self._connection.close()
            self._connection = None
            logger.debug("Record store connection closed")

    @staticmethod
    def _row_to_record(row: sqlite3.Row) -> OnboardingRecord:
        sent = row["sent"]
        return OnboardingRecord(
            id=row["id"],
            created_at=_from_epoch(row["created_at"]),
            credit_report_completed=bool(row["credit_report_completed"]),
            documents_signed=bool(row["documents_signed"]),
            destination=row["destination"],
            reminders_sent=frozenset(sent.split(",")) if sent else frozenset(),
            name=row["name"],
        )
