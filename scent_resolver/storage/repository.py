"""
Repository pattern for data access.

Append-only usage ledger and fixed-window request counters backed by SQLite.
"""

import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from .db import DEFAULT_DB_PATH, get_connection
from .feedback_repository import FEEDBACK_SCHEMA
from .models import UsageRecord

USAGE_SCHEMA = """
    CREATE TABLE IF NOT EXISTS usage_record (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp TEXT NOT NULL,
        user_id TEXT,
        provider TEXT NOT NULL,
        model TEXT NOT NULL,
        operation TEXT NOT NULL,
        input_tokens INTEGER NOT NULL,
        output_tokens INTEGER NOT NULL,
        cost_estimate REAL NOT NULL,
        response_time_ms INTEGER,
        confidence REAL,
        master_match REAL
    )
"""

USAGE_INDEX = """
    CREATE INDEX IF NOT EXISTS idx_usage_record_user_time
    ON usage_record (user_id, timestamp)
"""

RATE_WINDOW_SCHEMA = """
    CREATE TABLE IF NOT EXISTS rate_window (
        user_id TEXT NOT NULL,
        window_start INTEGER NOT NULL,
        request_count INTEGER NOT NULL,
        PRIMARY KEY (user_id, window_start)
    )
"""

_USAGE_COLUMNS = """
    timestamp, user_id, provider, model, operation, input_tokens,
    output_tokens, cost_estimate, response_time_ms, confidence, master_match
"""


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the ledger, rate window and feedback tables if they don't exist.

    ``usage_record`` and ``feedback_event`` are append-only ledgers.
    No UPDATE or DELETE operations should ever be performed on them.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        for statement in (USAGE_SCHEMA, USAGE_INDEX, RATE_WINDOW_SCHEMA, FEEDBACK_SCHEMA):
            conn.execute(statement)
        conn.commit()
    finally:
        conn.close()


def _record_params(record: UsageRecord) -> tuple:
    return (
        record.timestamp.isoformat(),
        record.user_id,
        record.provider,
        record.model,
        record.operation,
        record.input_tokens,
        record.output_tokens,
        record.cost_estimate,
        record.response_time_ms,
        record.confidence,
        record.master_match,
    )


def _row_to_record(row: sqlite3.Row) -> UsageRecord:
    return UsageRecord(
        timestamp=datetime.fromisoformat(row["timestamp"]),
        user_id=row["user_id"],
        provider=row["provider"],
        model=row["model"],
        operation=row["operation"],
        input_tokens=row["input_tokens"],
        output_tokens=row["output_tokens"],
        cost_estimate=row["cost_estimate"],
        response_time_ms=row["response_time_ms"],
        confidence=row["confidence"],
        master_match=row["master_match"],
    )


class UsageRepository:
    """Repository for the append-only usage ledger and request counters.

    Every method opens its own short-lived connection, so one instance can
    be shared by concurrent requests.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path

    def initialize(self) -> None:
        initialize_schema(self.db_path)

    def insert(self, record: UsageRecord) -> None:
        """Insert a single usage record into the append-only ledger."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO usage_record ({_USAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _record_params(record),
            )
            conn.commit()
        finally:
            conn.close()

    def insert_many(self, records: List[UsageRecord]) -> None:
        """Insert multiple usage records atomically.

        All records are inserted in a single transaction to ensure consistency.
        """
        if not records:
            return

        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.executemany(
                f"INSERT INTO usage_record ({_USAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                [_record_params(record) for record in records],
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def get_records(
        self,
        user_id: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        provider: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[UsageRecord]:
        """Get usage records with optional filtering.

        Args:
            user_id: Optional filter for a specific user
            since: Inclusive lower bound on timestamp
            until: Exclusive upper bound on timestamp
            provider: Optional filter for a specific provider
            limit: Maximum number of records to return

        Returns:
            List of usage records ordered by timestamp (newest first)
        """
        query = f"SELECT {_USAGE_COLUMNS} FROM usage_record"
        conditions, params = self._filters(user_id, since, until)
        if provider:
            conditions.append("provider = ?")
            params.append(provider)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY timestamp DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)

        conn = get_connection(self.db_path)
        try:
            return [_row_to_record(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def total_cost(
        self,
        user_id: Optional[str],
        since: datetime,
        until: Optional[datetime] = None
    ) -> float:
        """Sum of cost estimates in the period."""
        conditions, params = self._filters(user_id, since, until)
        query = "SELECT COALESCE(SUM(cost_estimate), 0) FROM usage_record WHERE " + " AND ".join(conditions)

        conn = get_connection(self.db_path)
        try:
            return float(conn.execute(query, params).fetchone()[0])
        finally:
            conn.close()

    def summarize(
        self,
        user_id: Optional[str],
        since: datetime,
        until: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Usage totals grouped by provider and operation.

        Returns:
            One dictionary per (provider, operation) with requests, tokens,
            cost and average response time, most expensive first
        """
        conditions, params = self._filters(user_id, since, until)
        query = f"""
            SELECT
                provider,
                operation,
                COUNT(*) AS requests,
                SUM(input_tokens) AS input_tokens,
                SUM(output_tokens) AS output_tokens,
                SUM(cost_estimate) AS total_cost,
                AVG(response_time_ms) AS avg_response_time_ms
            FROM usage_record
            WHERE {" AND ".join(conditions)}
            GROUP BY provider, operation
            ORDER BY total_cost DESC
        """

        conn = get_connection(self.db_path)
        try:
            return [
                {
                    "provider": row["provider"],
                    "operation": row["operation"],
                    "requests": row["requests"],
                    "input_tokens": row["input_tokens"] or 0,
                    "output_tokens": row["output_tokens"] or 0,
                    "total_cost": float(row["total_cost"] or 0),
                    "avg_response_time_ms": float(row["avg_response_time_ms"] or 0),
                }
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()

    def increment_window(self, user_id: str, window_start: int) -> int:
        """Atomically count one request in a fixed window.

        The upsert and read-back run inside a ``BEGIN IMMEDIATE`` transaction,
        so two concurrent requests from the same user never observe the
        same count.

        Args:
            user_id: User whose window is incremented
            window_start: Epoch second at which the window starts

        Returns:
            Request count in the window including this request
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            conn.execute(
                """
                INSERT INTO rate_window (user_id, window_start, request_count)
                VALUES (?, ?, 1)
                ON CONFLICT (user_id, window_start)
                DO UPDATE SET request_count = request_count + 1
                """,
                (user_id, window_start),
            )
            count = conn.execute(
                "SELECT request_count FROM rate_window WHERE user_id = ? AND window_start = ?",
                (user_id, window_start),
            ).fetchone()[0]
            conn.execute(
                "DELETE FROM rate_window WHERE user_id = ? AND window_start < ?",
                (user_id, window_start),
            )
            conn.commit()
            return int(count)
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def window_count(self, user_id: str, window_start: int) -> int:
        """Requests counted so far in a window, without counting a new one."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT request_count FROM rate_window WHERE user_id = ? AND window_start = ?",
                (user_id, window_start),
            ).fetchone()
            return int(row[0]) if row else 0
        finally:
            conn.close()

    @staticmethod
    def _filters(
        user_id: Optional[str],
        since: Optional[datetime],
        until: Optional[datetime]
    ) -> tuple:
        conditions: List[str] = []
        params: List[Any] = []
        if user_id is not None:
            conditions.append("user_id = ?")
            params.append(user_id)
        if since is not None:
            conditions.append("timestamp >= ?")
            params.append(since.isoformat())
        if until is not None:
            conditions.append("timestamp < ?")
            params.append(until.isoformat())
        if not conditions:
            conditions.append("1 = 1")
        return conditions, params
