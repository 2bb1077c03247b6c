"""Tests for the circuit breaker state machine."""

from __future__ import annotations

import asyncio

import pytest

from llm_dispatch.domain.events import CircuitStateChangedEvent
from llm_dispatch.domain.exceptions import CircuitOpenError, OperationCancelledError
from llm_dispatch.shared.providers import (
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
    CircuitState,
)


async def _ok() -> str:
    return "ok"


async def _boom() -> str:
    raise RuntimeError("boom")


async def _trip(breaker: CircuitBreaker, failures: int) -> None:
    for _ in range(failures):
        with pytest.raises(RuntimeError):
            await breaker.execute(_boom)


@pytest.fixture
def fast_options() -> CircuitBreakerOptions:
    return CircuitBreakerOptions(
        failure_threshold=5,
        minimum_throughput=10,
        open_duration_s=0.05,
        success_threshold=2,
    )


class TestCircuitBreakerOptions:
    def test_defaults(self) -> None:
        opts = CircuitBreakerOptions()
        assert opts.failure_threshold == 5
        assert opts.minimum_throughput == 10
        assert opts.failure_rate_threshold == 0.5
        assert opts.open_duration_s == 30.0
        assert opts.success_threshold == 2
        assert opts.trial_calls == 2

    def test_rejects_invalid_values(self) -> None:
        with pytest.raises(ValueError):
            CircuitBreakerOptions(failure_threshold=0)
        with pytest.raises(ValueError):
            CircuitBreakerOptions(failure_rate_threshold=1.5)


class TestCircuitBreaker:
    @pytest.mark.asyncio
    async def test_starts_closed_and_passes_results(self) -> None:
        cb = CircuitBreaker("test")
        assert cb.state == CircuitState.CLOSED
        assert await cb.execute(_ok) == "ok"

    @pytest.mark.asyncio
    async def test_no_trip_before_window_fills(self, fast_options: CircuitBreakerOptions) -> None:
        cb = CircuitBreaker("test", fast_options)
        await _trip(cb, 9)
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_opens_once_window_full_of_failures(
        self, fast_options: CircuitBreakerOptions
    ) -> None:
        cb = CircuitBreaker("test", fast_options)
        await _trip(cb, 10)
        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_opens_on_failure_count_in_mixed_window(self) -> None:
        cb = CircuitBreaker(
            "test",
            CircuitBreakerOptions(failure_threshold=5, minimum_throughput=10, failure_rate_threshold=1.0),
        )
        for _ in range(5):
            await cb.execute(_ok)
        await _trip(cb, 5)
        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_open_rejects_without_invoking(self, fast_options: CircuitBreakerOptions) -> None:
        cb = CircuitBreaker("test", CircuitBreakerOptions(open_duration_s=60))
        await _trip(cb, 10)
        calls = 0

        async def counted() -> str:
            nonlocal calls
            calls += 1
            return "ok"

        with pytest.raises(CircuitOpenError) as exc_info:
            await cb.execute(counted)
        assert calls == 0
        assert exc_info.value.retry_after_s is not None
        assert cb.get_statistics().rejected_calls == 1

    @pytest.mark.asyncio
    async def test_half_open_after_duration_then_closes(
        self, fast_options: CircuitBreakerOptions
    ) -> None:
        cb = CircuitBreaker("test", fast_options)
        await _trip(cb, 10)
        await asyncio.sleep(0.08)
        assert cb.state == CircuitState.HALF_OPEN

        await cb.execute(_ok)
        assert cb.state == CircuitState.HALF_OPEN
        await cb.execute(_ok)
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_half_open_failure_reopens(self, fast_options: CircuitBreakerOptions) -> None:
        cb = CircuitBreaker("test", fast_options)
        await _trip(cb, 10)
        await asyncio.sleep(0.08)
        with pytest.raises(RuntimeError):
            await cb.execute(_boom)
        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_half_open_limits_trial_calls(self) -> None:
        cb = CircuitBreaker(
            "test", CircuitBreakerOptions(minimum_throughput=1, open_duration_s=0.01, success_threshold=1)
        )
        await _trip(cb, 1)
        await asyncio.sleep(0.03)

        release = asyncio.Event()

        async def slow() -> str:
            await release.wait()
            return "ok"

        trial = asyncio.create_task(cb.execute(slow))
        await asyncio.sleep(0)
        with pytest.raises(CircuitOpenError):
            await cb.execute(_ok)
        release.set()
        assert await trial == "ok"
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_call_admitted_while_closed_does_not_settle_half_open(self) -> None:
        cb = CircuitBreaker(
            "test",
            CircuitBreakerOptions(
                failure_threshold=1,
                minimum_throughput=1,
                open_duration_s=0.01,
                success_threshold=1,
            ),
        )
        release = asyncio.Event()

        async def slow(fail: bool) -> str:
            await release.wait()
            if fail:
                raise RuntimeError("late")
            return "ok"

        late_success = asyncio.create_task(cb.execute(lambda: slow(False)))
        late_failure = asyncio.create_task(cb.execute(lambda: slow(True)))
        await asyncio.sleep(0)
        await _trip(cb, 1)
        await asyncio.sleep(0.03)
        assert cb.state == CircuitState.HALF_OPEN

        release.set()
        assert await late_success == "ok"
        with pytest.raises(RuntimeError):
            await late_failure
        assert cb.state == CircuitState.HALF_OPEN
        stats = cb.get_statistics()
        assert stats.successful_calls == 1
        assert stats.failed_calls == 2

        await cb.execute(_ok)
        assert cb.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_cancellation_is_not_a_failure(self) -> None:
        cb = CircuitBreaker("test", CircuitBreakerOptions(minimum_throughput=1))

        async def cancelled() -> str:
            raise OperationCancelledError()

        with pytest.raises(OperationCancelledError):
            await cb.execute(cancelled)
        stats = cb.get_statistics()
        assert stats.failed_calls == 0
        assert stats.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_reset_closes_and_keeps_totals(self, fast_options: CircuitBreakerOptions) -> None:
        cb = CircuitBreaker("test", CircuitBreakerOptions(open_duration_s=60))
        await _trip(cb, 10)
        cb.reset()
        assert cb.state == CircuitState.CLOSED
        assert await cb.execute(_ok) == "ok"
        stats = cb.get_statistics()
        assert stats.failed_calls == 10
        assert stats.successful_calls == 1
        assert stats.last_closed_at is not None

    def test_manual_recording(self) -> None:
        cb = CircuitBreaker("test", CircuitBreakerOptions(minimum_throughput=2, failure_threshold=2))
        cb.record_failure("first")
        cb.record_failure("second")
        assert cb.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_listeners_receive_transitions(self, fast_options: CircuitBreakerOptions) -> None:
        events: list[CircuitStateChangedEvent] = []
        cb = CircuitBreaker("test", fast_options)
        cb.subscribe(events.append)
        await _trip(cb, 10)
        assert [e.new_state for e in events] == ["open"]
        assert events[0].previous_state == "closed"
        assert events[0].breaker == "test"

    @pytest.mark.asyncio
    async def test_failing_listener_does_not_break_breaker(
        self, fast_options: CircuitBreakerOptions
    ) -> None:
        def broken(event: CircuitStateChangedEvent) -> None:
            raise ValueError("listener bug")

        cb = CircuitBreaker("test", fast_options)
        cb.subscribe(broken)
        await _trip(cb, 10)
        assert cb.state == CircuitState.OPEN


class TestCircuitBreakerRegistry:
    def test_one_breaker_per_name(self) -> None:
        registry = CircuitBreakerRegistry()
        assert registry.get("a") is registry.get("a")
        assert registry.get("a") is not registry.get("b")

    def test_listeners_reach_late_breakers(self) -> None:
        events: list[CircuitStateChangedEvent] = []
        registry = CircuitBreakerRegistry(CircuitBreakerOptions(minimum_throughput=1))
        registry.subscribe(events.append)
        registry.get("late").record_failure()
        assert [e.breaker for e in events] == ["late"]

    def test_reset_unknown_name(self) -> None:
        assert CircuitBreakerRegistry().reset("missing") is False

    def test_all_statistics(self) -> None:
        registry = CircuitBreakerRegistry()
        registry.get("a")
        registry.get("b")
        assert sorted(s.name for s in registry.all_statistics()) == ["a", "b"]
