"""Tests for retry with exponential backoff."""
from __future__ import annotations

import pytest

from velo_settlement.retry import RetryConfig, RetryExhausted, retry_async


class Flaky:
    def __init__(self, failures, exc=ConnectionError):
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc("transient")
        return "ok"


FAST = RetryConfig(max_retries=3, base_delay=0.0, jitter=0.0)


class TestRetryConfig:
    def test_exponential_delay_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0, jitter=0.0)
        assert [config.calculate_delay(i) for i in range(4)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_bounds(self):
        config = RetryConfig(base_delay=1.0, jitter=0.5)
        for _ in range(20):
            assert 0.5 <= config.calculate_delay(0) <= 1.5

    def test_non_retryable_takes_precedence(self):
        config = RetryConfig(retryable_exceptions=(Exception,), non_retryable_exceptions=(ValueError,))
        assert not config.should_retry(ValueError())
        assert config.should_retry(ConnectionError())


class TestRetryAsync:
    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self):
        flaky = Flaky(2)
        assert await retry_async(flaky, config=FAST) == "ok"
        assert flaky.calls == 3

    @pytest.mark.asyncio
    async def test_exhausted(self):
        flaky = Flaky(10)
        with pytest.raises(RetryExhausted) as exc_info:
            await retry_async(flaky, config=FAST)
        assert flaky.calls == 4
        assert exc_info.value.stats.attempts == 4
        assert isinstance(exc_info.value.original_exception, ConnectionError)

    @pytest.mark.asyncio
    async def test_non_retryable_raised_immediately(self):
        flaky = Flaky(1, exc=ValueError)
        config = RetryConfig(max_retries=3, base_delay=0.0, non_retryable_exceptions=(ValueError,))
        with pytest.raises(ValueError):
            await retry_async(flaky, config=config)
        assert flaky.calls == 1

