"""
SQLite implementation of the storage protocols.

Window counters and ledger entries are updated with single
``INSERT ... ON CONFLICT DO UPDATE`` statements so concurrent requests never
lose an increment. Timestamps are stored as integer microseconds since the
UNIX epoch (UTC).
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional

from .base import StorageUnavailableError
from .db import DEFAULT_DB_PATH, get_connection
from .models import CostLedgerEntry, UsageRecord, WindowEntry

logger = logging.getLogger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

_WINDOW_COLUMNS = "subject, action, count, window_start, expires_at"
_LEDGER_COLUMNS = "subject, action_class, tier, cost_used, period_start"
_USAGE_COLUMNS = (
    "subject, endpoint, method, timestamp, response_time_ms, status_code, "
    "request_size, response_size, cached, model, tokens, cost, image_size, "
    "user_agent, ip_address"
)


def _to_micros(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // timedelta(microseconds=1)


def _from_micros(value: int) -> datetime:
    return _EPOCH + timedelta(microseconds=value)


def _row_to_window(row) -> WindowEntry:
    return WindowEntry(
        subject=row[0],
        action=row[1],
        count=row[2],
        window_start=_from_micros(row[3]),
        expires_at=_from_micros(row[4]),
    )


def _row_to_ledger(row) -> CostLedgerEntry:
    return CostLedgerEntry(
        subject=row[0],
        action_class=row[1],
        tier=row[2],
        cost_used=row[3],
        period_start=_from_micros(row[4]),
    )


def _row_to_usage(row) -> UsageRecord:
    return UsageRecord(
        subject=row[0],
        endpoint=row[1],
        method=row[2],
        timestamp=_from_micros(row[3]),
        response_time_ms=row[4],
        status_code=row[5],
        request_size=row[6],
        response_size=row[7],
        cached=bool(row[8]),
        model=row[9],
        tokens=row[10],
        cost=row[11],
        image_size=row[12],
        user_agent=row[13],
        ip_address=row[14],
    )


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the rate_window, cost_ledger and usage_record tables if missing.

    ``usage_record`` is an append-only ledger: rows are never updated.

    Args:
        db_path: Path to SQLite database file

    Raises:
        StorageUnavailableError: If the database cannot be written
    """
    try:
        conn = get_connection(db_path)
    except sqlite3.Error as e:
        raise StorageUnavailableError(f"Cannot open database {db_path}: {e}") from e
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS rate_window (
                subject TEXT NOT NULL,
                action TEXT NOT NULL,
                count INTEGER NOT NULL,
                window_start INTEGER NOT NULL,
                expires_at INTEGER NOT NULL,
                PRIMARY KEY (subject, action)
            );
            CREATE INDEX IF NOT EXISTS idx_rate_window_expires
                ON rate_window (expires_at);

            CREATE TABLE IF NOT EXISTS cost_ledger (
                subject TEXT NOT NULL,
                action_class TEXT NOT NULL,
                tier TEXT NOT NULL,
                cost_used REAL NOT NULL,
                period_start INTEGER NOT NULL,
                PRIMARY KEY (subject, action_class, period_start)
            );

            CREATE TABLE IF NOT EXISTS usage_record (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                subject TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                method TEXT NOT NULL,
                timestamp INTEGER NOT NULL,
                response_time_ms REAL NOT NULL,
                status_code INTEGER NOT NULL,
                request_size INTEGER NOT NULL DEFAULT 0,
                response_size INTEGER NOT NULL DEFAULT 0,
                cached INTEGER NOT NULL DEFAULT 0,
                model TEXT,
                tokens INTEGER,
                cost REAL,
                image_size TEXT,
                user_agent TEXT,
                ip_address TEXT
            );
            CREATE INDEX IF NOT EXISTS idx_usage_record_timestamp
                ON usage_record (timestamp);
        """)
        conn.commit()
    except sqlite3.Error as e:
        raise StorageUnavailableError(f"Cannot initialize schema in {db_path}: {e}") from e
    finally:
        conn.close()


class SQLiteStore:
    """Governance store and usage archive backed by a SQLite file.

    Opens a short-lived connection per operation, which keeps the store safe
    to share between request threads.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0):
        """Initialize the store with a database path.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait for a locked database
        """
        self.db_path = db_path
        self.timeout = timeout

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        """Yield a connection, committing on success and translating SQLite errors."""
        try:
            conn = get_connection(self.db_path, timeout=self.timeout)
        except sqlite3.Error as e:
            logger.error("Cannot open database %s: %s", self.db_path, e)
            raise StorageUnavailableError(f"Cannot open database {self.db_path}: {e}") from e
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            logger.error("Storage operation failed on %s: %s", self.db_path, e)
            raise StorageUnavailableError(f"Storage operation failed: {e}") from e
        finally:
            conn.close()

    # Windows

    def get_window(self, subject: str, action: str) -> Optional[WindowEntry]:
        with self._session() as conn:
            row = conn.execute(
                f"SELECT {_WINDOW_COLUMNS} FROM rate_window WHERE subject = ? AND action = ?",
                (subject, action),
            ).fetchone()
        return _row_to_window(row) if row else None

    def upsert_window(
        self,
        subject: str,
        action: str,
        now: datetime,
        window_length: timedelta,
        retention: timedelta,
    ) -> WindowEntry:
        params = {
            "subject": subject,
            "action": action,
            "now": _to_micros(now),
            "expires_at": _to_micros(now + max(retention, window_length)),
            "open_after": _to_micros(now - window_length),
        }
        with self._session() as conn:
            # SET expressions all see the pre-update row.
            conn.execute(
                """
                INSERT INTO rate_window (subject, action, count, window_start, expires_at)
                VALUES (:subject, :action, 1, :now, :expires_at)
                ON CONFLICT (subject, action) DO UPDATE SET
                    count = CASE WHEN window_start > :open_after
                                 THEN count + 1 ELSE 1 END,
                    window_start = CASE WHEN window_start > :open_after
                                        THEN window_start ELSE excluded.window_start END,
                    expires_at = CASE WHEN window_start > :open_after
                                      THEN expires_at ELSE excluded.expires_at END
                """,
                params,
            )
            row = conn.execute(
                f"SELECT {_WINDOW_COLUMNS} FROM rate_window WHERE subject = ? AND action = ?",
                (subject, action),
            ).fetchone()
        return _row_to_window(row)

    def delete_window(self, subject: str, action: str) -> None:
        with self._session() as conn:
            conn.execute(
                "DELETE FROM rate_window WHERE subject = ? AND action = ?",
                (subject, action),
            )

    def purge_expired_windows(self, now: datetime) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                "DELETE FROM rate_window WHERE expires_at <= ?", (_to_micros(now),)
            )
            return cursor.rowcount

    # Ledger

    def get_ledger(
        self, subject: str, action_class: str, period_start: datetime
    ) -> Optional[CostLedgerEntry]:
        with self._session() as conn:
            row = conn.execute(
                f"""
                SELECT {_LEDGER_COLUMNS} FROM cost_ledger
                WHERE subject = ? AND action_class = ? AND period_start = ?
                """,
                (subject, action_class, _to_micros(period_start)),
            ).fetchone()
        return _row_to_ledger(row) if row else None

    def upsert_ledger(
        self,
        subject: str,
        action_class: str,
        tier: str,
        period_start: datetime,
        cost: float,
    ) -> CostLedgerEntry:
        key = (subject, action_class, _to_micros(period_start))
        with self._session() as conn:
            conn.execute(
                """
                INSERT INTO cost_ledger (subject, action_class, tier, cost_used, period_start)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (subject, action_class, period_start) DO UPDATE SET
                    cost_used = cost_used + excluded.cost_used,
                    tier = excluded.tier
                """,
                (subject, action_class, tier, float(cost), key[2]),
            )
            row = conn.execute(
                f"""
                SELECT {_LEDGER_COLUMNS} FROM cost_ledger
                WHERE subject = ? AND action_class = ? AND period_start = ?
                """,
                key,
            ).fetchone()
        return _row_to_ledger(row)

    def purge_ledger(self, before: datetime) -> int:
        with self._session() as conn:
            cursor = conn.execute(
                "DELETE FROM cost_ledger WHERE period_start < ?", (_to_micros(before),)
            )
            return cursor.rowcount

    def list_ledger(self, subject: str) -> List[CostLedgerEntry]:
        """All ledger entries for a subject, newest period first."""
        with self._session() as conn:
            rows = conn.execute(
                f"""
                SELECT {_LEDGER_COLUMNS} FROM cost_ledger
                WHERE subject = ? ORDER BY period_start DESC, action_class
                """,
                (subject,),
            ).fetchall()
        return [_row_to_ledger(row) for row in rows]

    # Usage archive

    def append_usage(self, record: UsageRecord) -> None:
        """Append a single usage record to the archive."""
        self.append_usage_batch([record])

    def append_usage_batch(self, records: List[UsageRecord]) -> None:
        """Append records in one transaction; all or none are written."""
        if not records:
            return
        with self._session() as conn:
            conn.executemany(
                f"""
                INSERT INTO usage_record ({_USAGE_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        r.subject,
                        r.endpoint,
                        r.method,
                        _to_micros(r.timestamp),
                        r.response_time_ms,
                        r.status_code,
                        r.request_size,
                        r.response_size,
                        int(r.cached),
                        r.model,
                        r.tokens,
                        r.cost,
                        r.image_size,
                        r.user_agent,
                        r.ip_address,
                    )
                    for r in records
                ],
            )

    def fetch_usage(self, start: datetime, end: datetime) -> List[UsageRecord]:
        with self._session() as conn:
            rows = conn.execute(
                f"""
                SELECT {_USAGE_COLUMNS} FROM usage_record
                WHERE timestamp >= ? AND timestamp <= ?
                ORDER BY timestamp ASC, id ASC
                """,
                (_to_micros(start), _to_micros(end)),
            ).fetchall()
        return [_row_to_usage(row) for row in rows]


# Global store instance
_default_store: Optional[SQLiteStore] = None


def get_store(db_path: str = DEFAULT_DB_PATH) -> SQLiteStore:
    """Get a store instance.

    Returns a process-wide SQLiteStore for the default path and a fresh one
    for any other path.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of SQLiteStore
    """
    global _default_store
    if db_path != DEFAULT_DB_PATH:
        return SQLiteStore(db_path)
    if _default_store is None:
        _default_store = SQLiteStore(db_path)
    return _default_store
