"""
Feedback log persistence.

Append-only store of user reactions to suggestions, queried for few-shot exemplars.
"""

import json
import sqlite3
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from ..core.types import Exemplar
from .db import DEFAULT_DB_PATH, get_connection
from .models import FeedbackEvent, OperationType, UserAction

FEEDBACK_SCHEMA = """
    CREATE TABLE IF NOT EXISTS feedback_event (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        created_at TEXT NOT NULL,
        session_id TEXT NOT NULL,
        user_id TEXT,
        operation_type TEXT NOT NULL,
        query TEXT NOT NULL,
        user_action TEXT NOT NULL,
        offered_suggestions TEXT NOT NULL,
        chosen_suggestion TEXT,
        final_input TEXT,
        relevance_score REAL,
        was_helpful INTEGER,
        provider TEXT,
        model TEXT,
        request_params TEXT NOT NULL,
        context_data TEXT NOT NULL,
        user_notes TEXT
    )
"""

_FEEDBACK_COLUMNS = """
    created_at, session_id, user_id, operation_type, query, user_action,
    offered_suggestions, chosen_suggestion, final_input, relevance_score,
    was_helpful, provider, model, request_params, context_data, user_notes
"""


def _dump(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value, ensure_ascii=False)


def _row_to_event(row: sqlite3.Row) -> FeedbackEvent:
    helpful = row["was_helpful"]
    return FeedbackEvent(
        created_at=datetime.fromisoformat(row["created_at"]),
        session_id=row["session_id"],
        user_id=row["user_id"],
        operation_type=OperationType(row["operation_type"]),
        query=row["query"],
        user_action=UserAction(row["user_action"]),
        offered_suggestions=json.loads(row["offered_suggestions"]),
        chosen_suggestion=json.loads(row["chosen_suggestion"]) if row["chosen_suggestion"] else None,
        final_input=row["final_input"],
        relevance_score=row["relevance_score"],
        was_helpful=None if helpful is None else bool(helpful),
        provider=row["provider"],
        model=row["model"],
        request_params=json.loads(row["request_params"]),
        context_data=json.loads(row["context_data"]),
        user_notes=row["user_notes"],
    )


class FeedbackRepository:
    """SQLite-backed append-only feedback log."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        self.db_path = db_path

    def initialize(self) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute(FEEDBACK_SCHEMA)
            conn.commit()
        finally:
            conn.close()

    def record(self, event: FeedbackEvent) -> None:
        """Append one event. Duplicate submissions are stored as-is."""
        conn = get_connection(self.db_path)
        try:
            conn.execute(
                f"INSERT INTO feedback_event ({_FEEDBACK_COLUMNS}) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    event.created_at.isoformat(),
                    event.session_id,
                    event.user_id,
                    event.operation_type.value,
                    event.query,
                    event.user_action.value,
                    _dump(event.offered_suggestions),
                    _dump(event.chosen_suggestion),
                    event.final_input,
                    event.relevance_score,
                    None if event.was_helpful is None else int(event.was_helpful),
                    event.provider,
                    event.model,
                    _dump(event.request_params),
                    _dump(event.context_data),
                    event.user_notes,
                ),
            )
            conn.commit()
        finally:
            conn.close()

    def get_successful_patterns(
        self,
        query: str,
        operation_type: OperationType,
        limit: int = 5
    ) -> List[FeedbackEvent]:
        """Past helpful selections whose query contains ``query``.

        Returns:
            Events ordered by relevance (highest first), then most recent first
        """
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"""
                SELECT {_FEEDBACK_COLUMNS} FROM feedback_event
                WHERE operation_type = ?
                  AND user_action = ?
                  AND was_helpful = 1
                  AND query LIKE ? ESCAPE '\\'
                ORDER BY relevance_score DESC, created_at DESC, id DESC
                LIMIT ?
                """,
                (operation_type.value, UserAction.SELECTED.value, f"%{_escape_like(query)}%", limit),
            ).fetchall()
            return [_row_to_event(row) for row in rows]
        finally:
            conn.close()

    def get_few_shot_examples(
        self,
        operation_type: OperationType,
        limit: int = 3,
        min_relevance: float = 0.8
    ) -> List[Exemplar]:
        """Random sample of helpful, high-relevance selections.

        Sampling at random keeps prompts from drifting toward whatever was
        selected most recently.
        """
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(
                f"""
                SELECT {_FEEDBACK_COLUMNS} FROM feedback_event
                WHERE operation_type = ?
                  AND user_action = ?
                  AND was_helpful = 1
                  AND relevance_score >= ?
                ORDER BY RANDOM()
                LIMIT ?
                """,
                (operation_type.value, UserAction.SELECTED.value, min_relevance, limit),
            ).fetchall()
        finally:
            conn.close()

        examples = []
        for row in rows:
            event = _row_to_event(row)
            if event.selected_text:
                examples.append(Exemplar(
                    query=event.query,
                    selected_text=event.selected_text,
                    relevance_score=float(event.relevance_score or 0.0),
                ))
        return examples

    def summarize(
        self,
        operation_type: Optional[OperationType] = None,
        days: int = 30
    ) -> Dict[str, Any]:
        """Counts per user action and the helpful rate over recent feedback."""
        cutoff = (datetime.now() - timedelta(days=days)).isoformat()
        query = """
            SELECT user_action, COUNT(*) AS total, SUM(CASE WHEN was_helpful = 1 THEN 1 ELSE 0 END) AS helpful
            FROM feedback_event
            WHERE created_at >= ?
        """
        params: List[Any] = [cutoff]
        if operation_type is not None:
            query += " AND operation_type = ?"
            params.append(operation_type.value)
        query += " GROUP BY user_action"

        conn = get_connection(self.db_path)
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()

        actions = {action.value: 0 for action in UserAction}
        helpful = 0
        for row in rows:
            actions[row["user_action"]] = row["total"]
            helpful += row["helpful"] or 0
        total = sum(actions.values())
        return {
            "total": total,
            "actions": actions,
            "helpful_rate": round(helpful / total, 4) if total else 0.0,
        }


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
