"""
Cost and limit ledger.

Records provider usage per user and answers limit checks and usage reports from the ledger.
"""

import calendar
import logging
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config.loader import EfficiencySettings, LimitSettings
from ..errors import InvalidArgument
from ..storage.models import UsageRecord
from ..storage.repository import UsageRepository
from .efficiency import percentile, score_records

logger = logging.getLogger(__name__)

WEEKDAYS = ("monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday")
NIGHT_HOURS = frozenset([22, 23, 0, 1, 2, 3, 4, 5])

HIGH_COST_PER_REQUEST = 0.05
LOW_COST_PER_REQUEST = 0.01
SLOW_RESPONSE_MS = 2000
NIGHT_SHARE_THRESHOLD = 0.3
WEEKEND_SHARE_THRESHOLD = 0.4


@dataclass(frozen=True)
class MonthlyPrediction:
    month: str
    current_cost: float
    daily_average: float
    days_elapsed: int
    days_remaining: int
    predicted_cost: float
    monthly_limit: float
    projected_overage: float

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class UsagePatterns:
    hourly: Dict[int, int]
    weekly: Dict[str, int]
    peak_hour: Optional[int]
    peak_day: Optional[str]
    cost_p50: float
    cost_p90: float
    insights: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class EfficiencyReport:
    month: str
    total_cost: float
    total_requests: int
    cost_per_request: float
    avg_response_time_ms: float
    confidence_score: float
    data_match_score: float
    latency_score: float
    provider_score: float
    efficiency_score: float
    most_efficient_provider: Optional[str]
    insights: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def month_bounds(month: str) -> Tuple[datetime, datetime]:
    """Start (inclusive) and end (exclusive) of a ``YYYY-MM`` month.

    Raises:
        InvalidArgument: If the month is not in ``YYYY-MM`` form
    """
    try:
        start = datetime.strptime(month, "%Y-%m")
    except (TypeError, ValueError):
        raise InvalidArgument(f"month must be YYYY-MM, got {month!r}")
    if start.month == 12:
        return start, start.replace(year=start.year + 1, month=1)
    return start, start.replace(month=start.month + 1)


class CostLedger:
    """Usage bookkeeping and limit checks for one ledger store.

    Args:
        repository: Usage ledger storage
        limits: Per-user ceilings
        efficiency: Weights for efficiency analysis
        clock: Source of the current local time
    """

    def __init__(
        self,
        repository: UsageRepository,
        limits: Optional[LimitSettings] = None,
        efficiency: Optional[EfficiencySettings] = None,
        clock: Callable[[], datetime] = datetime.now
    ):
        self.repository = repository
        self.limits = limits or LimitSettings()
        self.efficiency = efficiency or EfficiencySettings()
        self.clock = clock

    def record_usage(
        self,
        user_id: Optional[str],
        provider: str,
        model: str,
        operation: str,
        input_tokens: int,
        output_tokens: int,
        cost: float,
        response_time_ms: Optional[int] = None,
        confidence: Optional[float] = None,
        master_match: Optional[float] = None
    ) -> Optional[UsageRecord]:
        """Append a usage record.

        Cost tracking must never break the user-facing operation, so any
        failure is logged and swallowed.

        Returns:
            The stored record, or None if it could not be written
        """
        try:
            record = UsageRecord(
                timestamp=self.clock(),
                user_id=user_id,
                provider=provider,
                model=model,
                operation=operation,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_estimate=cost,
                response_time_ms=response_time_ms,
                confidence=confidence,
                master_match=master_match,
            )
            self.repository.insert(record)
            return record
        except Exception:
            logger.exception(
                "Failed to record usage for user=%s provider=%s operation=%s",
                user_id, provider, operation,
            )
            return None

    def _day_start(self) -> datetime:
        return self.clock().replace(hour=0, minute=0, second=0, microsecond=0)

    def _month_start(self) -> datetime:
        return self._day_start().replace(day=1)

    def daily_cost(self, user_id: str) -> float:
        return self.repository.total_cost(user_id, self._day_start())

    def monthly_cost(self, user_id: str) -> float:
        return self.repository.total_cost(user_id, self._month_start())

    def window_start(self) -> int:
        """Epoch second at which the current fixed rate window began."""
        window = self.limits.window_seconds
        return int(self.clock().timestamp()) // window * window

    def window_requests(self, user_id: str) -> int:
        return self.repository.window_count(user_id, self.window_start())

    def check_daily_limit(self, user_id: str) -> bool:
        """True while today's spend is below the daily ceiling."""
        return self.daily_cost(user_id) < self.limits.daily_cost

    def check_monthly_limit(self, user_id: str) -> bool:
        """True while this month's spend is below the monthly ceiling."""
        return self.monthly_cost(user_id) < self.limits.monthly_cost

    def check_rate_limit(self, user_id: str) -> bool:
        """Count this request in the current window and compare to the ceiling.

        The increment and compare are one atomic step, so a rejected call
        still occupies its slot until the window rolls over.
        """
        count = self.repository.increment_window(user_id, self.window_start())
        return count <= self.limits.requests_per_window

    def get_monthly_usage(self, user_id: str, month: Optional[str] = None) -> Dict[str, Any]:
        """Totals for a month with a provider/operation breakdown."""
        month = month or self.clock().strftime("%Y-%m")
        start, end = month_bounds(month)
        breakdown = self.repository.summarize(user_id, start, end)
        return {
            "month": month,
            "total_cost": round(sum(row["total_cost"] for row in breakdown), 6),
            "total_requests": sum(row["requests"] for row in breakdown),
            "total_tokens": sum(row["input_tokens"] + row["output_tokens"] for row in breakdown),
            "breakdown": breakdown,
        }

    def predict_monthly_cost(self, user_id: str) -> MonthlyPrediction:
        """Project month-end spend from the average cost per elapsed day."""
        now = self.clock()
        days_in_month = calendar.monthrange(now.year, now.month)[1]
        days_elapsed = now.day
        days_remaining = days_in_month - days_elapsed

        current = self.monthly_cost(user_id)
        daily_average = current / days_elapsed
        predicted = current + daily_average * days_remaining

        return MonthlyPrediction(
            month=now.strftime("%Y-%m"),
            current_cost=round(current, 6),
            daily_average=round(daily_average, 6),
            days_elapsed=days_elapsed,
            days_remaining=days_remaining,
            predicted_cost=round(predicted, 6),
            monthly_limit=self.limits.monthly_cost,
            projected_overage=round(max(0.0, predicted - self.limits.monthly_cost), 6),
        )

    def analyze_usage_patterns(self, user_id: str) -> UsagePatterns:
        """Hourly (7 days) and weekday (4 weeks) request distributions."""
        now = self.clock()
        recent = self.repository.get_records(user_id, since=now - timedelta(days=28))
        last_week = [r for r in recent if r.timestamp >= now - timedelta(days=7)]

        hourly = Counter(r.timestamp.hour for r in last_week)
        weekly = Counter(WEEKDAYS[r.timestamp.weekday()] for r in recent)
        costs = [r.cost_estimate for r in recent]

        insights = []
        if last_week:
            night_share = sum(hourly[h] for h in NIGHT_HOURS) / len(last_week)
            if night_share > NIGHT_SHARE_THRESHOLD:
                insights.append(f"{night_share:.0%} of requests happen at night (22:00-06:00)")
        if recent:
            weekend_share = (weekly["saturday"] + weekly["sunday"]) / len(recent)
            if weekend_share > WEEKEND_SHARE_THRESHOLD:
                insights.append(f"{weekend_share:.0%} of requests happen on weekends")

        return UsagePatterns(
            hourly={hour: hourly.get(hour, 0) for hour in range(24)},
            weekly={day: weekly.get(day, 0) for day in WEEKDAYS},
            peak_hour=hourly.most_common(1)[0][0] if hourly else None,
            peak_day=weekly.most_common(1)[0][0] if weekly else None,
            cost_p50=round(percentile(costs, 50), 6) if costs else 0.0,
            cost_p90=round(percentile(costs, 90), 6) if costs else 0.0,
            insights=insights,
        )

    def analyze_cost_efficiency(self, user_id: str, month: Optional[str] = None) -> EfficiencyReport:
        """Weighted efficiency score for a month of usage.

        The score combines average confidence, master-data match rate,
        latency and provider reliability using ``EfficiencySettings``.
        """
        month = month or self.clock().strftime("%Y-%m")
        start, end = month_bounds(month)
        records = self.repository.get_records(user_id, since=start, until=end)

        total_cost = sum(r.cost_estimate for r in records)
        total_requests = len(records)
        latencies = [r.response_time_ms for r in records if r.response_time_ms is not None]
        cost_per_request = total_cost / total_requests if total_requests else 0.0
        avg_response_time = sum(latencies) / len(latencies) if latencies else 0.0

        factors = score_records(records, self.efficiency)

        insights = []
        if not records:
            insights.append("No usage recorded for this month")
        elif cost_per_request > HIGH_COST_PER_REQUEST:
            insights.append("Cost per request is high; consider a cheaper model")
        elif cost_per_request < LOW_COST_PER_REQUEST:
            insights.append("Cost per request is excellent")
        if avg_response_time > SLOW_RESPONSE_MS:
            insights.append("Average response time exceeds 2 seconds")

        return EfficiencyReport(
            month=month,
            total_cost=round(total_cost, 6),
            total_requests=total_requests,
            cost_per_request=round(cost_per_request, 6),
            avg_response_time_ms=round(avg_response_time, 1),
            confidence_score=round(factors.confidence, 4),
            data_match_score=round(factors.data_match, 4),
            latency_score=round(factors.latency, 4),
            provider_score=round(factors.provider, 4),
            efficiency_score=round(factors.weighted(self.efficiency) * 100, 1) if records else 0.0,
            most_efficient_provider=self._most_efficient_provider(records),
            insights=insights,
        )

    @staticmethod
    def _most_efficient_provider(records: List[UsageRecord]) -> Optional[str]:
        totals: Dict[str, List[float]] = {}
        for record in records:
            totals.setdefault(record.provider, []).append(record.cost_estimate)
        if not totals:
            return None
        return min(totals, key=lambda provider: sum(totals[provider]) / len(totals[provider]))
