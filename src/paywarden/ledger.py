"""
Spending ledger for completed, policy-approved payments.

Uses a SQLite log so concurrent writers (threads or processes) serialize
through BEGIN IMMEDIATE transactions. Records are append-only; lifetime
totals per recipient live in their own table so pruning old records never
resets a lifetime cap.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .config import normalize_address
from .errors import StoreError
from .money import format_units
from .storage import ensure_private_dir, ensure_private_file, paywarden_home

logger = logging.getLogger(__name__)

DAY_SECONDS = 24 * 60 * 60
WEEK_SECONDS = 7 * DAY_SECONDS
MONTH_SECONDS = 30 * DAY_SECONDS
RETENTION_SECONDS = 31 * DAY_SECONDS


@dataclass(frozen=True)
class SpendingRecord:
    """A single completed payment."""

    timestamp: int
    recipient: str
    amount: int
    execution_id: str

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "recipient": self.recipient,
            "amount": str(self.amount),
            "amount_display": format_units(self.amount),
            "execution_id": self.execution_id,
        }


@dataclass(frozen=True)
class WindowTotals:
    """Amounts spent inside each rolling window, in smallest units."""

    daily: int = 0
    weekly: int = 0
    monthly: int = 0
    total: int = 0


class SpendingLedger:
    """Append-only store of SpendingRecords with rolling-window sums."""

    def __init__(self, db_path: Optional[Path] = None):
        self.db_path = db_path or paywarden_home() / "spending.sqlite3"
        ensure_private_dir(self.db_path.parent)
        self._init_db()
        ensure_private_file(self.db_path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=30.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=FULL")
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS spending_records (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp INTEGER NOT NULL,
                    recipient TEXT NOT NULL,
                    amount INTEGER NOT NULL,
                    execution_id TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_spending_recipient_ts
                ON spending_records (recipient, timestamp)
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS recipient_totals (
                    recipient TEXT PRIMARY KEY,
                    total_amount INTEGER NOT NULL DEFAULT 0,
                    payment_count INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS ledger_meta (
                    key TEXT PRIMARY KEY,
                    value TEXT NOT NULL
                )
                """
            )

    def _row_to_record(self, row: sqlite3.Row) -> SpendingRecord:
        return SpendingRecord(
            timestamp=row["timestamp"],
            recipient=row["recipient"],
            amount=row["amount"],
            execution_id=row["execution_id"],
        )

    def record(
        self,
        recipient: str,
        amount: int,
        execution_id: str,
        timestamp: Optional[int] = None,
    ) -> SpendingRecord:
        """Append one completed payment."""
        if amount <= 0:
            raise ValueError("Recorded amount must be positive")
        if not execution_id:
            raise ValueError("Execution identifier is required")

        record = SpendingRecord(
            timestamp=int(timestamp if timestamp is not None else time.time()),
            recipient=normalize_address(recipient),
            amount=int(amount),
            execution_id=execution_id,
        )
        try:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                conn.execute(
                    """
                    INSERT INTO spending_records (timestamp, recipient, amount, execution_id)
                    VALUES (?, ?, ?, ?)
                    """,
                    (record.timestamp, record.recipient, record.amount, record.execution_id),
                )
                conn.execute(
                    """
                    INSERT INTO recipient_totals (recipient, total_amount, payment_count)
                    VALUES (?, ?, 1)
                    ON CONFLICT(recipient) DO UPDATE SET
                        total_amount = total_amount + excluded.total_amount,
                        payment_count = payment_count + 1
                    """,
                    (record.recipient, record.amount),
                )
                conn.execute("COMMIT")
        except sqlite3.Error as e:
            raise StoreError(f"Failed to record spending: {e}") from e
        return record

    def window_totals(self, now: Optional[float] = None, recipient: Optional[str] = None) -> WindowTotals:
        """Sum spending inside the 24h/7d/30d windows ending at ``now``, plus all time."""
        now_ts = now if now is not None else time.time()
        day_ago = now_ts - DAY_SECONDS
        week_ago = now_ts - WEEK_SECONDS
        month_ago = now_ts - MONTH_SECONDS

        query = """
            SELECT
                COALESCE(SUM(CASE WHEN timestamp > ? THEN amount END), 0) AS daily,
                COALESCE(SUM(CASE WHEN timestamp > ? THEN amount END), 0) AS weekly,
                COALESCE(SUM(CASE WHEN timestamp > ? THEN amount END), 0) AS monthly,
                COALESCE(SUM(amount), 0) AS retained
            FROM spending_records
        """
        params: list = [day_ago, week_ago, month_ago]
        if recipient is not None:
            query += " WHERE recipient = ?"
            params.append(normalize_address(recipient))

        try:
            with self._connect() as conn:
                row = conn.execute(query, params).fetchone()
                if recipient is not None:
                    totals_row = conn.execute(
                        "SELECT total_amount FROM recipient_totals WHERE recipient = ?",
                        (normalize_address(recipient),),
                    ).fetchone()
                else:
                    totals_row = conn.execute(
                        "SELECT COALESCE(SUM(total_amount), 0) AS total_amount FROM recipient_totals"
                    ).fetchone()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to read spending history: {e}") from e

        lifetime = totals_row["total_amount"] if totals_row is not None else 0
        return WindowTotals(
            daily=row["daily"],
            weekly=row["weekly"],
            monthly=row["monthly"],
            total=max(lifetime, row["retained"]),
        )

    def summary(self, recipient: Optional[str] = None, now: Optional[float] = None) -> dict:
        totals = self.window_totals(now=now, recipient=recipient)
        with self._connect() as conn:
            if recipient is not None:
                row = conn.execute(
                    "SELECT payment_count FROM recipient_totals WHERE recipient = ?",
                    (normalize_address(recipient),),
                ).fetchone()
                count = row["payment_count"] if row else 0
            else:
                row = conn.execute(
                    "SELECT COALESCE(SUM(payment_count), 0) AS payment_count FROM recipient_totals"
                ).fetchone()
                count = row["payment_count"]
        return {
            "recipient": normalize_address(recipient) if recipient else None,
            "daily": totals.daily,
            "weekly": totals.weekly,
            "monthly": totals.monthly,
            "total": totals.total,
            "count": count,
        }

    def history(self, limit: int = 50, recipient: Optional[str] = None) -> list[SpendingRecord]:
        """Most recent records first."""
        query = "SELECT * FROM spending_records"
        params: list = []
        if recipient is not None:
            query += " WHERE recipient = ?"
            params.append(normalize_address(recipient))
        query += " ORDER BY timestamp DESC, id DESC LIMIT ?"
        params.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_record(r) for r in rows]

    def prune(self, max_age_seconds: int = RETENTION_SECONDS, now: Optional[float] = None) -> int:
        """Delete records older than ``max_age_seconds``; returns the number removed."""
        now_ts = now if now is not None else time.time()
        cutoff = now_ts - max_age_seconds
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            cursor = conn.execute(
                "DELETE FROM spending_records WHERE timestamp <= ?",
                (cutoff,),
            )
            conn.execute(
                """
                INSERT INTO ledger_meta (key, value) VALUES ('last_pruned', ?)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value
                """,
                (str(int(now_ts)),),
            )
            conn.execute("COMMIT")
        removed = cursor.rowcount
        if removed:
            logger.info("Pruned %d spending records older than %ds", removed, max_age_seconds)
        return removed

    @property
    def last_pruned(self) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT value FROM ledger_meta WHERE key = 'last_pruned'"
            ).fetchone()
        return int(row["value"]) if row else None

    def clear(self) -> None:
        """Drop every record and lifetime total."""
        with self._connect() as conn:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute("DELETE FROM spending_records")
            conn.execute("DELETE FROM recipient_totals")
            conn.execute("COMMIT")


class PruneScheduler:
    """Background thread that ages out old spending records on a fixed interval."""

    def __init__(
        self,
        ledger: SpendingLedger,
        interval_seconds: float = DAY_SECONDS,
        max_age_seconds: int = RETENTION_SECONDS,
    ):
        self.ledger = ledger
        self.interval_seconds = interval_seconds
        self.max_age_seconds = max_age_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self) -> int:
        return self.ledger.prune(max_age_seconds=self.max_age_seconds)

    def _loop(self) -> None:
        while True:
            try:
                self.run_once()
            except (StoreError, sqlite3.Error):
                logger.exception("Scheduled spending prune failed")
            if self._stop.wait(self.interval_seconds):
                return

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="paywarden-prune", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *args):
        self.stop()
