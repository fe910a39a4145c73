"""
Tests for the windowed rate limiter.

All tests use short windows; nothing touches the network.
"""

import asyncio

import pytest

from polyengine.trading.rate_limiter import RateLimiter, RateLimiterSet


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def limiter():
    """Limiter allowing two tasks per 0.2s window."""
    return RateLimiter(requests_per_window=2, window_seconds=0.2, name="test")


# =============================================================================
# Tests
# =============================================================================


class TestRateLimiter:
    """Tests for RateLimiter."""

    def test_invalid_arguments(self):
        with pytest.raises(ValueError):
            RateLimiter(0, 1.0)
        with pytest.raises(ValueError):
            RateLimiter(1, 0)

    @pytest.mark.asyncio
    async def test_returns_task_result(self, limiter):
        async def _task():
            return 42

        assert await limiter.submit(_task) == 42

    @pytest.mark.asyncio
    async def test_batches_wait_for_window(self, limiter):
        loop = asyncio.get_running_loop()
        starts = []

        def _make(i):
            async def _task():
                starts.append(loop.time())
                return i

            return _task

        results = await asyncio.gather(*(limiter.submit(_make(i)) for i in range(5)))

        assert results == [0, 1, 2, 3, 4]
        assert limiter.started_count == 5
        # Third task belongs to the second window, fifth to the third
        assert starts[2] - starts[0] >= 0.19
        assert starts[4] - starts[0] >= 0.38
        assert starts[1] - starts[0] < 0.1

    @pytest.mark.asyncio
    async def test_failure_is_isolated(self, limiter):
        async def _ok():
            return "ok"

        async def _boom():
            raise ValueError("boom")

        results = await asyncio.gather(
            limiter.submit(_ok),
            limiter.submit(_boom),
            limiter.submit(_ok),
            return_exceptions=True,
        )

        assert results[0] == "ok"
        assert isinstance(results[1], ValueError)
        assert results[2] == "ok"

    @pytest.mark.asyncio
    async def test_exception_propagates_to_caller(self, limiter):
        async def _boom():
            raise RuntimeError("failed")

        with pytest.raises(RuntimeError, match="failed"):
            await limiter.submit(_boom)

    @pytest.mark.asyncio
    async def test_pending_drains(self, limiter):
        async def _task():
            return None

        await asyncio.gather(*(limiter.submit(_task) for _ in range(3)))
        assert limiter.pending == 0


class TestRateLimiterSet:
    """Tests for RateLimiterSet."""

    def test_defaults_are_independent_instances(self):
        first = RateLimiterSet.polymarket_defaults()
        second = RateLimiterSet.polymarket_defaults()

        assert first.market is not second.market
        assert first.market.name == "market"
        assert first.orders.requests_per_window > first.market.requests_per_window
