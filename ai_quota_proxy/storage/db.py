"""
Database connection management.

Provides the SQLite connection backing the usage ledger, workspace limits
and rate-limit windows.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "ai_quota_proxy.db"

# Seconds a writer waits on a locked database before failing
BUSY_TIMEOUT_SECONDS = 10.0


def get_connection(db_path: str = DEFAULT_DB_PATH) -> sqlite3.Connection:
    """Create and return a SQLite connection with name-addressable rows.

    Args:
        db_path: Path to SQLite database file

    Returns:
        SQLite connection whose rows are ``sqlite3.Row`` objects
    """
    path = Path(db_path)
    conn = sqlite3.connect(str(path), timeout=BUSY_TIMEOUT_SECONDS)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
