"""
Database connection management.

Provides SQLite connections for counter, ledger and usage persistence.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "usage_governor.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite connection.

    Concurrent writers wait up to ``timeout`` seconds for the database lock
    instead of failing immediately.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a locked database

    Returns:
        SQLite connection
    """
    path = Path(db_path)
    return sqlite3.connect(str(path), timeout=timeout)
