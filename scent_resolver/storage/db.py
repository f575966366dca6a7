"""
Database connection management.

Short-lived SQLite connections for the usage ledger and feedback log.
"""

import sqlite3
from pathlib import Path

DEFAULT_DB_PATH = "scent_resolver.db"


def get_connection(db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0) -> sqlite3.Connection:
    """Create and return a SQLite database connection.

    Rows are returned as ``sqlite3.Row`` so repositories can read columns
    by name. ``timeout`` bounds how long a writer waits on a locked database.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait for a competing write lock

    Returns:
        SQLite connection with foreign key constraints enabled
    """
    path = Path(db_path)
    if path.parent and not path.parent.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path), timeout=timeout)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn
