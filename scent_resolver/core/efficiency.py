"""
Quality and efficiency scoring.

Weighted combination of confidence, master-data match, latency and provider reliability.
"""

from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..config.loader import EfficiencySettings
from ..storage.models import UsageRecord


@dataclass(frozen=True)
class EfficiencyFactors:
    """Individual factor scores, each in [0, 1]."""
    confidence: float
    data_match: float
    latency: float
    provider: float

    def weighted(self, settings: EfficiencySettings) -> float:
        """Combined score in [0, 1]."""
        return (
            self.confidence * settings.confidence_weight
            + self.data_match * settings.data_match_weight
            + self.latency * settings.latency_weight
            + self.provider * settings.provider_weight
        )


def latency_factor(response_time_ms: Optional[float], settings: EfficiencySettings) -> float:
    if response_time_ms is None:
        return 0.0
    return max(0.0, 1.0 - float(response_time_ms) / settings.latency_ceiling_ms)


def quality_score(
    confidence: float,
    master_match: float,
    response_time_ms: Optional[float],
    provider: str,
    settings: EfficiencySettings
) -> float:
    """Score a single result.

    Args:
        confidence: Provider-reported confidence in [0, 1]
        master_match: Master-data match strength in [0, 1]
        response_time_ms: Observed provider latency
        provider: Provider name used for the reliability lookup
        settings: Weights and reliability table

    Returns:
        Weighted score in [0, 1], rounded to 4 places
    """
    factors = EfficiencyFactors(
        confidence=confidence,
        data_match=master_match,
        latency=latency_factor(response_time_ms, settings),
        provider=settings.reliability_of(provider),
    )
    return round(factors.weighted(settings), 4)


def _mean(values: List[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def score_records(records: Iterable[UsageRecord], settings: EfficiencySettings) -> EfficiencyFactors:
    """Average factor scores over a set of usage records.

    Records without a confidence or match value are left out of that
    factor's average rather than counted as zero.
    """
    records = list(records)
    latencies = [r.response_time_ms for r in records if r.response_time_ms is not None]
    return EfficiencyFactors(
        confidence=_mean([r.confidence for r in records if r.confidence is not None]),
        data_match=_mean([r.master_match for r in records if r.master_match is not None]),
        latency=latency_factor(_mean(latencies), settings) if latencies else 0.0,
        provider=_mean([settings.reliability_of(r.provider) for r in records]),
    )


def percentile(values: List[float], pct: float) -> float:
    """Exact percentile using linear interpolation.

    Uses the same method as numpy.percentile with interpolation='linear'.

    Raises:
        ValueError: If values is empty or pct is outside 0..100
    """
    if not values:
        raise ValueError("Values list cannot be empty")
    if pct < 0 or pct > 100:
        raise ValueError("Percentile must be between 0 and 100")

    sorted_values = sorted(values)
    position = (pct / 100.0) * (len(sorted_values) - 1)
    lower_index = int(position)
    upper_index = min(lower_index + 1, len(sorted_values) - 1)
    fraction = position - lower_index
    lower = sorted_values[lower_index]
    return lower + fraction * (sorted_values[upper_index] - lower)
