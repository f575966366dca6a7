"""
Demo data seeding.

Fills a ledger database with two weeks of sample usage and a few feedback events.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

from ..core.feedback import FeedbackService
from ..storage.db import DEFAULT_DB_PATH
from ..storage.feedback_repository import FeedbackRepository
from ..storage.models import OperationType, UsageRecord
from ..storage.repository import UsageRepository, initialize_schema

DEMO_USER = "demo-user"

# (provider, model, operation, input_tokens, output_tokens, cost, response_time_ms, confidence)
_USAGE_PATTERN = [
    ("openai", "gpt-4o-mini", "completion", 420, 180, 0.000171, 640, 0.88),
    ("openai", "gpt-4o-mini", "normalization", 610, 240, 0.000236, 910, 0.92),
    ("anthropic", "claude-3-5-haiku-20241022", "completion", 450, 200, 0.00116, 1180, 0.84),
    ("gemini", "gemini-2.5-flash", "notes", 380, 300, 0.000119, 720, 0.71),
]

_SELECTIONS = [
    ("ソヴァ", {"text": "ソヴァージュ", "text_en": "Sauvage", "brand_name": "ディオール", "brand_name_en": "Dior"}, 0.95),
    ("ブルードゥ", {"text": "ブルー ドゥ シャネル", "text_en": "Bleu de Chanel", "brand_name": "シャネル", "brand_name_en": "CHANEL"}, 0.9),
    ("ブラックオピ", {"text": "ブラック オピウム", "text_en": "Black Opium", "brand_name": "イヴ・サンローラン", "brand_name_en": "Yves Saint Laurent"}, 0.85),
]


def seed_demo_data(
    db_path: str = DEFAULT_DB_PATH,
    user_id: str = DEMO_USER,
    now: Optional[datetime] = None
) -> Dict[str, int]:
    """Insert demo usage and feedback rows.

    Returns:
        Number of usage records and feedback events written
    """
    now = now or datetime.now()
    initialize_schema(db_path)

    records = []
    for day in range(14):
        for slot, (provider, model, operation, tokens_in, tokens_out, cost, latency, confidence) in enumerate(_USAGE_PATTERN):
            records.append(UsageRecord(
                timestamp=now - timedelta(days=day, hours=slot * 3),
                user_id=user_id,
                provider=provider,
                model=model,
                operation=operation,
                input_tokens=tokens_in,
                output_tokens=tokens_out,
                cost_estimate=cost,
                response_time_ms=latency,
                confidence=confidence,
            ))
    UsageRepository(db_path).insert_many(records)

    feedback = FeedbackService(FeedbackRepository(db_path))
    for query, chosen, relevance in _SELECTIONS:
        feedback.record_selection(
            query,
            OperationType.COMPLETION.value,
            chosen,
            offered=[chosen],
            relevance_score=relevance,
            user_id=user_id,
            provider="openai",
        )
    feedback.record_rejection("xyz", OperationType.COMPLETION.value, user_id=user_id)

    return {"usage_records": len(records), "feedback_events": len(_SELECTIONS) + 1}
