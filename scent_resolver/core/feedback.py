"""
Feedback service.

Turns user reactions to suggestions into feedback events and serves exemplars mined from them.
"""

import uuid
from dataclasses import fields
from typing import Any, Dict, List, Optional, Sequence

from ..storage.feedback_repository import FeedbackRepository
from ..storage.models import FeedbackEvent, OperationType, UserAction
from .types import Exemplar


def new_session_id() -> str:
    return str(uuid.uuid4())


class FeedbackService:
    """Records selections, rejections and modifications.

    Args:
        store: Append-only feedback store
    """

    def __init__(self, store: FeedbackRepository):
        self.store = store

    def _record(self, **values: Any) -> FeedbackEvent:
        unknown = set(values) - {f.name for f in fields(FeedbackEvent)}
        if unknown:
            raise ValueError(f"unknown feedback fields: {sorted(unknown)}")
        values["session_id"] = values.get("session_id") or new_session_id()
        values["operation_type"] = OperationType(values["operation_type"])
        values["offered_suggestions"] = list(values.get("offered_suggestions") or [])
        values["request_params"] = dict(values.get("request_params") or {})
        values["context_data"] = dict(values.get("context_data") or {})
        event = FeedbackEvent(**values)
        self.store.record(event)
        return event

    def record_selection(
        self,
        query: str,
        operation_type: str,
        chosen: Dict[str, Any],
        offered: Sequence[Dict[str, Any]] = (),
        relevance_score: Optional[float] = None,
        final_input: Optional[str] = None,
        **context: Any
    ) -> FeedbackEvent:
        """The user picked one of the offered suggestions."""
        return self._record(
            query=query,
            operation_type=operation_type,
            user_action=UserAction.SELECTED,
            offered_suggestions=offered,
            chosen_suggestion=chosen,
            final_input=final_input,
            relevance_score=relevance_score,
            was_helpful=True,
            **context,
        )

    def record_rejection(
        self,
        query: str,
        operation_type: str,
        offered: Sequence[Dict[str, Any]] = (),
        final_input: Optional[str] = None,
        **context: Any
    ) -> FeedbackEvent:
        """The user dismissed every suggestion."""
        return self._record(
            query=query,
            operation_type=operation_type,
            user_action=UserAction.REJECTED,
            offered_suggestions=offered,
            final_input=final_input,
            was_helpful=False,
            **context,
        )

    def record_modification(
        self,
        query: str,
        operation_type: str,
        original: Dict[str, Any],
        final_input: str,
        offered: Sequence[Dict[str, Any]] = (),
        was_helpful: Optional[bool] = None,
        relevance_score: Optional[float] = None,
        **context: Any
    ) -> FeedbackEvent:
        """The user took a suggestion and edited it before saving."""
        return self._record(
            query=query,
            operation_type=operation_type,
            user_action=UserAction.MODIFIED,
            offered_suggestions=offered,
            chosen_suggestion=original,
            final_input=final_input,
            relevance_score=relevance_score,
            was_helpful=was_helpful,
            **context,
        )

    def successful_patterns(self, query: str, operation_type: OperationType, limit: int = 5) -> List[FeedbackEvent]:
        return self.store.get_successful_patterns(query, operation_type, limit)

    def few_shot_examples(self, operation_type: OperationType, limit: int = 3) -> List[Exemplar]:
        return self.store.get_few_shot_examples(operation_type, limit)
