"""
Per-user limit enforcement.

Checks spending and request ceilings before any provider call is made.

Enforcement Order:
1. Daily cost - the most specific spending limit
2. Monthly cost - overall budget for the calendar month
3. Request rate - fixed-window request count
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Tuple

from ..errors import DailyLimitExceeded, MonthlyLimitExceeded, RateLimitExceeded
from .ledger import CostLedger

logger = logging.getLogger(__name__)

ALERT_INTERVAL_SECONDS = 3600


def enforce_limits(ledger: CostLedger, user_id: str) -> None:
    """Enforce limits in order, stopping at the first failure.

    The rate check consumes a request slot, so it only runs for requests
    that passed both spending checks.

    Raises:
        DailyLimitExceeded: If today's spend reached the daily ceiling
        MonthlyLimitExceeded: If this month's spend reached the monthly ceiling
        RateLimitExceeded: If the request window is full
    """
    if not ledger.check_daily_limit(user_id):
        raise DailyLimitExceeded(
            f"Daily AI usage limit exceeded (${ledger.limits.daily_cost:.2f})"
        )
    if not ledger.check_monthly_limit(user_id):
        raise MonthlyLimitExceeded(
            f"Monthly AI usage limit exceeded (${ledger.limits.monthly_cost:.2f})"
        )
    if not ledger.check_rate_limit(user_id):
        raise RateLimitExceeded(
            f"Rate limit exceeded ({ledger.limits.requests_per_window} requests "
            f"per {ledger.limits.window_seconds}s)"
        )


class LimitLevel(Enum):
    """Usage level relative to a limit, in order of severity."""
    OK = "ok"
    WARNING = "warning"
    CRITICAL = "critical"
    EXCEEDED = "exceeded"


@dataclass(frozen=True)
class LimitUsage:
    """Consumption of a single limit."""
    name: str
    used: float
    limit: float
    percentage: float
    level: LimitLevel


class LimitMonitor:
    """Reports how close a user is to each limit.

    Warning and critical levels are logged at most once per hour for each
    user and limit.
    """

    def __init__(self, ledger: CostLedger, clock: Callable[[], float] = time.monotonic):
        self.ledger = ledger
        self._clock = clock
        self._alerted: Dict[Tuple[str, str, LimitLevel], float] = {}

    def _level(self, ratio: float) -> LimitLevel:
        limits = self.ledger.limits
        if ratio >= 1.0:
            return LimitLevel.EXCEEDED
        if ratio >= limits.critical_threshold:
            return LimitLevel.CRITICAL
        if ratio >= limits.warning_threshold:
            return LimitLevel.WARNING
        return LimitLevel.OK

    def status(self, user_id: str) -> List[LimitUsage]:
        """Current usage of the daily, monthly and request-window limits."""
        limits = self.ledger.limits
        readings = [
            ("daily_cost", self.ledger.daily_cost(user_id), limits.daily_cost),
            ("monthly_cost", self.ledger.monthly_cost(user_id), limits.monthly_cost),
            ("requests", float(self.ledger.window_requests(user_id)), float(limits.requests_per_window)),
        ]
        usage = []
        for name, used, limit in readings:
            ratio = used / limit
            entry = LimitUsage(
                name=name,
                used=round(used, 6),
                limit=limit,
                percentage=round(ratio * 100, 1),
                level=self._level(ratio),
            )
            self._alert(user_id, entry)
            usage.append(entry)
        return usage

    def _alert(self, user_id: str, usage: LimitUsage) -> None:
        if usage.level is LimitLevel.OK:
            return
        key = (user_id, usage.name, usage.level)
        now = self._clock()
        last = self._alerted.get(key)
        if last is not None and now - last < ALERT_INTERVAL_SECONDS:
            return
        self._alerted[key] = now
        logger.warning(
            "User %s at %.1f%% of %s limit (%s)",
            user_id, usage.percentage, usage.name, usage.level.value,
        )
