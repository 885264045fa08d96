"""Tests for the token bucket."""

from unittest.mock import AsyncMock, patch

import pytest

from roster.clients.rate_limit import TokenBucket


class FakeClock:
    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestTokenBucket:
    """Tests for TokenBucket.acquire."""

    def test_rate_must_be_positive(self):
        with pytest.raises(ValueError):
            TokenBucket(rate=0)

    @pytest.mark.asyncio
    async def test_burst_then_wait(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=2.0, clock=clock)

        with patch("roster.clients.rate_limit.asyncio.sleep", new=AsyncMock()) as sleep:
            await bucket.acquire()
            await bucket.acquire()
            sleep.assert_not_awaited()

            await bucket.acquire()
            sleep.assert_awaited_once()
            assert sleep.await_args.args[0] == pytest.approx(0.5)

    @pytest.mark.asyncio
    async def test_refills_over_time(self):
        clock = FakeClock()
        bucket = TokenBucket(rate=1.0, capacity=1.0, clock=clock)

        with patch("roster.clients.rate_limit.asyncio.sleep", new=AsyncMock()) as sleep:
            await bucket.acquire()
            clock.now += 1.0
            await bucket.acquire()
            sleep.assert_not_awaited()
