"""Tests for retry with backoff."""

import pytest

from roster.exceptions import FatalExternalError, TransientExternalError
from roster.resilience import RetryConfig, call_with_retry


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class TestRetryConfig:
    """Tests for RetryConfig.calculate_delay."""

    def test_exponential_and_capped(self):
        config = RetryConfig(base_delay=1.0, max_delay=5.0)
        assert [config.calculate_delay(a) for a in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_in_range(self):
        config = RetryConfig(base_delay=2.0, jitter=True)
        for _ in range(20):
            assert 1.0 <= config.calculate_delay(0) <= 3.0


class TestCallWithRetry:
    """Tests for call_with_retry."""

    @pytest.mark.asyncio
    async def test_transient_then_success(self):
        sleep = RecordingSleep()
        attempts = []

        async def flaky():
            attempts.append(1)
            if len(attempts) < 3:
                raise TransientExternalError("HTTP 429", 429)
            return "ok"

        result = await call_with_retry(flaky, RetryConfig(base_delay=1.0), "flaky", sleep=sleep)

        assert result == "ok"
        assert len(attempts) == 3
        assert sleep.delays == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_fatal_error_is_not_retried(self):
        sleep = RecordingSleep()
        attempts = []

        async def unauthorized():
            attempts.append(1)
            raise FatalExternalError("HTTP 401", 401)

        with pytest.raises(FatalExternalError):
            await call_with_retry(unauthorized, RetryConfig(), "auth", sleep=sleep)
        assert len(attempts) == 1
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_exhausted_reraises_last_error(self):
        sleep = RecordingSleep()

        async def always_down():
            raise TransientExternalError("HTTP 503", 503)

        with pytest.raises(TransientExternalError) as exc_info:
            await call_with_retry(always_down, RetryConfig(max_retries=2), "down", sleep=sleep)
        assert exc_info.value.status == 503
        assert len(sleep.delays) == 2

