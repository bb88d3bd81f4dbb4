"""Tests for the per-provider CircuitBreaker."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from src.notifications.circuit_breaker import CircuitBreaker, CircuitState
from src.notifications.errors import (
    CircuitOpenError,
    ProviderClientError,
    ProviderServerError,
)


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def breaker(clock):
    return CircuitBreaker(
        name="email",
        failure_threshold=5,
        recovery_timeout=60.0,
        success_threshold=2,
        ignored_exceptions=(ProviderClientError,),
        clock=clock,
    )


async def _fail_times(breaker, n):
    failing = AsyncMock(side_effect=ProviderServerError("503"))
    for _ in range(n):
        with pytest.raises(ProviderServerError):
            await breaker.call(failing)


class TestClosed:
    @pytest.mark.asyncio
    async def test_passes_calls_through(self, breaker):
        fn = AsyncMock(return_value="msg-1")
        assert await breaker.call(fn, "a", key="b") == "msg-1"
        fn.assert_awaited_once_with("a", key="b")
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_success_resets_failure_count(self, breaker):
        await _fail_times(breaker, 4)
        await breaker.call(AsyncMock(return_value="ok"))
        assert breaker.consecutive_failures == 0
        await _fail_times(breaker, 4)
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_client_errors_do_not_count(self, breaker):
        rejecting = AsyncMock(side_effect=ProviderClientError("400"))
        for _ in range(10):
            with pytest.raises(ProviderClientError):
                await breaker.call(rejecting)
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0


class TestOpen:
    @pytest.mark.asyncio
    async def test_opens_after_threshold(self, breaker):
        await _fail_times(breaker, 5)
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_rejects_without_calling_provider(self, breaker):
        await _fail_times(breaker, 5)
        provider = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError):
            await breaker.call(provider)
        provider.assert_not_called()


class TestHalfOpen:
    @pytest.mark.asyncio
    async def test_recovery_after_timeout_needs_two_successes(self, breaker, clock):
        await _fail_times(breaker, 5)
        clock.now += 61

        await breaker.call(AsyncMock(return_value="ok"))
        assert breaker.state == CircuitState.HALF_OPEN

        await breaker.call(AsyncMock(return_value="ok"))
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_trial_failure_reopens(self, breaker, clock):
        await _fail_times(breaker, 5)
        clock.now += 61
        await _fail_times(breaker, 1)
        assert breaker.state == CircuitState.OPEN

        with pytest.raises(CircuitOpenError):
            await breaker.call(AsyncMock())

    @pytest.mark.asyncio
    async def test_single_trial_in_flight(self, breaker, clock):
        await _fail_times(breaker, 5)
        clock.now += 61

        release = asyncio.Event()

        async def slow_trial():
            await release.wait()
            return "ok"

        trial = asyncio.create_task(breaker.call(slow_trial))
        await asyncio.sleep(0)

        second = AsyncMock(return_value="ok")
        with pytest.raises(CircuitOpenError):
            await breaker.call(second)
        second.assert_not_called()

        release.set()
        assert await trial == "ok"

    @pytest.mark.asyncio
    async def test_ignored_error_during_trial_frees_slot(self, breaker, clock):
        await _fail_times(breaker, 5)
        clock.now += 61
        with pytest.raises(ProviderClientError):
            await breaker.call(AsyncMock(side_effect=ProviderClientError("bad address")))
        assert await breaker.call(AsyncMock(return_value="ok")) == "ok"


class TestInspection:
    @pytest.mark.asyncio
    async def test_snapshot_and_reset(self, breaker):
        await _fail_times(breaker, 5)
        snap = breaker.snapshot()
        assert snap["name"] == "email"
        assert snap["state"] == "open"
        assert snap["consecutive_failures"] == 5

        breaker.reset()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.consecutive_failures == 0
