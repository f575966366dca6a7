"""
Data models for storage layer.

Append-only records persisted by the ledger and the feedback log.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one provider call for cost tracking.

    Append-only events that create an auditable ledger of AI costs.
    Once written, these records must never be modified.
    """
    timestamp: datetime
    provider: str
    model: str
    operation: str
    input_tokens: int
    output_tokens: int
    cost_estimate: float
    user_id: Optional[str] = None
    response_time_ms: Optional[int] = None
    confidence: Optional[float] = None
    master_match: Optional[float] = None

    def __post_init__(self):
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("token counts must be >= 0")
        if self.cost_estimate < 0:
            raise ValueError("cost_estimate must be >= 0")

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class UserAction(Enum):
    """How the user reacted to a suggestion."""
    SELECTED = "selected"
    REJECTED = "rejected"
    MODIFIED = "modified"


class OperationType(Enum):
    """Operations whose suggestions collect feedback."""
    COMPLETION = "completion"
    NORMALIZATION = "normalization"


@dataclass(frozen=True)
class FeedbackEvent:
    """One user interaction with offered suggestions.

    Created at the moment of the user action and never updated; the log
    of these events is the source for few-shot exemplar mining.
    """
    session_id: str
    operation_type: OperationType
    query: str
    user_action: UserAction
    offered_suggestions: List[Dict[str, Any]] = field(default_factory=list)
    chosen_suggestion: Optional[Dict[str, Any]] = None
    final_input: Optional[str] = None
    relevance_score: Optional[float] = None
    was_helpful: Optional[bool] = None
    user_id: Optional[str] = None
    provider: Optional[str] = None
    model: Optional[str] = None
    request_params: Dict[str, Any] = field(default_factory=dict)
    context_data: Dict[str, Any] = field(default_factory=dict)
    user_notes: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        if not self.session_id:
            raise ValueError("session_id is required")
        if not self.query:
            raise ValueError("query is required")
        if self.relevance_score is not None:
            if isinstance(self.relevance_score, bool) or not isinstance(self.relevance_score, (int, float)):
                raise ValueError("relevance_score must be a number")
            if not 0.0 <= self.relevance_score <= 1.0:
                raise ValueError("relevance_score must be between 0 and 1")

    @property
    def selected_text(self) -> Optional[str]:
        """Text the user ended up with: the chosen suggestion, else the final input."""
        if self.chosen_suggestion:
            for key in ("display_text", "text"):
                if self.chosen_suggestion.get(key):
                    return str(self.chosen_suggestion[key])
        return self.final_input
