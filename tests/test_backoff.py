"""
Unit tests for rate-limit retries.

Tests delay schedule, retry_after handling and cancellation.
"""

import asyncio

import pytest

from scent_resolver.core.backoff import BackoffPolicy, retry_rate_limited
from scent_resolver.errors import RateLimited, UpstreamError


class FlakyOperation:
    """Raises the queued errors, then returns "ok"."""

    def __init__(self, *errors):
        self.errors = list(errors)
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "ok"


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay):
        self.delays.append(delay)


class TestBackoffPolicy:
    """Test delay schedule."""

    def test_delays_are_capped(self):
        policy = BackoffPolicy(max_attempts=5, base_delay=2.0, max_delay=8.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [2.0, 4.0, 8.0, 8.0]

    def test_at_least_one_attempt(self):
        with pytest.raises(ValueError, match="max_attempts must be >= 1"):
            BackoffPolicy(max_attempts=0)


class TestRetryRateLimited:
    """Test retry loop."""

    @pytest.mark.asyncio
    async def test_succeeds_after_two_rate_limits(self):
        """429, 429, then success sleeps 2s and 4s."""
        operation = FlakyOperation(RateLimited("openai"), RateLimited("openai"))
        sleep = RecordingSleep()

        result = await retry_rate_limited(operation, BackoffPolicy(), sleep=sleep)

        assert result == "ok"
        assert operation.calls == 3
        assert sleep.delays == [2.0, 4.0]
        assert sum(sleep.delays) == 6.0

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        operation = FlakyOperation(*[RateLimited("anthropic") for _ in range(3)])
        sleep = RecordingSleep()

        with pytest.raises(RateLimited):
            await retry_rate_limited(operation, BackoffPolicy(max_attempts=3), sleep=sleep)
        assert operation.calls == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_retry_after_is_honoured_up_to_cap(self):
        operation = FlakyOperation(RateLimited("gemini", retry_after=5.0), RateLimited("gemini", retry_after=60.0))
        sleep = RecordingSleep()

        await retry_rate_limited(operation, BackoffPolicy(), sleep=sleep)
        assert sleep.delays == [5.0, 8.0]

    @pytest.mark.asyncio
    async def test_other_errors_are_not_retried(self):
        operation = FlakyOperation(UpstreamError("openai", 500))
        sleep = RecordingSleep()

        with pytest.raises(UpstreamError):
            await retry_rate_limited(operation, BackoffPolicy(), sleep=sleep)
        assert operation.calls == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_cancellation_interrupts_sleep(self):
        operation = FlakyOperation(*[RateLimited("openai") for _ in range(3)])
        policy = BackoffPolicy(max_attempts=3, base_delay=30.0, max_delay=30.0)

        task = asyncio.create_task(retry_rate_limited(operation, policy))
        await asyncio.sleep(0.01)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert operation.calls == 1
