"""Tests for the provider gateway: selection, retry, breaker and failover together."""

from __future__ import annotations

import pytest

from llm_dispatch.domain.exceptions import (
    AllProvidersFailedError,
    BudgetExceededError,
    NoProviderAvailableError,
    OperationCancelledError,
    ProviderNotFoundError,
    TransientProviderError,
)
from llm_dispatch.shared.cancellation import CancellationToken
from llm_dispatch.shared.providers import (
    BudgetManager,
    Capability,
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
    CircuitState,
    CostTracker,
    HealthState,
    ProviderGateway,
    ProviderHealthMonitor,
    ProviderRegistry,
    ProviderRequest,
    RetryOptions,
    SelectionContext,
    SelectionStrategy,
)

from fakes import RecordingInvoker


def _gateway(
    registry: ProviderRegistry,
    monitor: ProviderHealthMonitor,
    invoker: RecordingInvoker,
    **kwargs: object,
) -> ProviderGateway:
    return ProviderGateway(
        registry,
        monitor,
        invoker,
        retry_options=RetryOptions(max_retry_attempts=1, initial_delay_s=0.0),
        **kwargs,  # type: ignore[arg-type]
    )


REQUEST = ProviderRequest(prompt="hello")


class TestProviderGateway:
    @pytest.mark.asyncio
    async def test_uses_highest_priority_provider(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        invoker = RecordingInvoker()
        response = await _gateway(registry, monitor, invoker).invoke(REQUEST)
        assert response.text == "alpha ok"
        assert response.provider_name == "alpha"
        assert invoker.calls == ["alpha"]
        assert monitor.get_health_status("alpha").total_successes == 1

    @pytest.mark.asyncio
    async def test_retries_transient_failure_on_same_provider(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        invoker = RecordingInvoker({"alpha": [TransientProviderError("alpha", "busy")]})
        response = await _gateway(registry, monitor, invoker).invoke(REQUEST)
        assert response.provider_name == "alpha"
        assert invoker.calls == ["alpha", "alpha"]
        status = monitor.get_health_status("alpha")
        assert status.total_failures == 1
        assert status.total_successes == 1

    @pytest.mark.asyncio
    async def test_fails_over_when_retries_exhausted(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        invoker = RecordingInvoker({"alpha": [TimeoutError("t1"), TimeoutError("t2")]})
        response = await _gateway(registry, monitor, invoker).invoke(REQUEST)
        assert response.provider_name == "beta"
        assert invoker.calls == ["alpha", "alpha", "beta"]

    @pytest.mark.asyncio
    async def test_non_transient_error_propagates(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        invoker = RecordingInvoker({"alpha": [ValueError("bad prompt")]})
        with pytest.raises(ValueError, match="bad prompt"):
            await _gateway(registry, monitor, invoker).invoke(REQUEST)
        assert invoker.calls == ["alpha"]

    @pytest.mark.asyncio
    async def test_all_providers_failed(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        invoker = RecordingInvoker(
            {name: [ConnectionError("down")] * 2 for name in ("alpha", "beta", "gamma")}
        )
        with pytest.raises(AllProvidersFailedError) as exc_info:
            await _gateway(registry, monitor, invoker).invoke(REQUEST)
        assert set(exc_info.value.errors) == {"alpha", "beta", "gamma"}

    @pytest.mark.asyncio
    async def test_chain_is_bounded_by_max_failovers(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        invoker = RecordingInvoker(
            {name: [ConnectionError("down")] * 2 for name in ("alpha", "beta", "gamma")}
        )
        with pytest.raises(AllProvidersFailedError) as exc_info:
            await _gateway(registry, monitor, invoker, max_failovers=2).invoke(REQUEST)
        assert set(exc_info.value.errors) == {"alpha", "beta"}
        assert "gamma" not in invoker.calls

    @pytest.mark.asyncio
    async def test_open_circuit_is_skipped_without_invoking(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        breakers = CircuitBreakerRegistry(
            CircuitBreakerOptions(minimum_throughput=1, failure_threshold=1, open_duration_s=60)
        )
        breakers.get("alpha").record_failure("tripped by test")
        invoker = RecordingInvoker()
        gateway = _gateway(registry, monitor, invoker, breakers=breakers)

        response = await gateway.invoke(REQUEST)
        assert response.provider_name == "beta"
        assert invoker.calls == ["beta"]
        assert gateway.circuit_state("alpha") == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_no_provider_available(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        ctx = SelectionContext(required_capabilities=frozenset({Capability.IMAGES}))
        with pytest.raises(NoProviderAvailableError):
            await _gateway(registry, monitor, RecordingInvoker()).invoke(REQUEST, context=ctx)

    @pytest.mark.asyncio
    async def test_strategy_override(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        invoker = RecordingInvoker()
        response = await _gateway(registry, monitor, invoker).invoke(
            REQUEST, strategy=SelectionStrategy.LEAST_COST
        )
        assert response.provider_name == "beta"

    @pytest.mark.asyncio
    async def test_cancelled_before_first_call(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        token = CancellationToken()
        token.cancel()
        invoker = RecordingInvoker()
        with pytest.raises(OperationCancelledError):
            await _gateway(registry, monitor, invoker).invoke(REQUEST, cancellation=token)
        assert invoker.calls == []

    @pytest.mark.asyncio
    async def test_reset_provider_clears_breaker_and_health(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        breakers = CircuitBreakerRegistry(
            CircuitBreakerOptions(minimum_throughput=1, failure_threshold=1, open_duration_s=60)
        )
        gateway = _gateway(registry, monitor, RecordingInvoker(), breakers=breakers)
        breakers.get("alpha").record_failure()
        for _ in range(3):
            monitor.record_failure("alpha", "down")

        gateway.reset_provider("alpha")
        assert gateway.circuit_state("alpha") == CircuitState.CLOSED
        assert gateway.get_health("alpha").state == HealthState.UNKNOWN

    def test_unknown_provider(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        gateway = _gateway(registry, monitor, RecordingInvoker())
        with pytest.raises(ProviderNotFoundError):
            gateway.get_health("nobody")
        with pytest.raises(ProviderNotFoundError):
            gateway.reset_provider("nobody")

    def test_get_all_health_covers_registry(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        gateway = _gateway(registry, monitor, RecordingInvoker())
        assert [h.provider_name for h in gateway.get_all_health()] == ["alpha", "beta", "gamma"]


class TestGatewayCosts:
    @pytest.mark.asyncio
    async def test_successful_call_is_costed_from_pricing(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        gateway = _gateway(registry, monitor, RecordingInvoker(tokens=(1000, 500)))
        await gateway.invoke(REQUEST)
        usage = gateway.costs.usage("alpha")
        assert usage.input_tokens == 1000
        assert usage.output_tokens == 500
        assert usage.requests == 1
        assert usage.cost == pytest.approx(0.01 + 0.015)

    @pytest.mark.asyncio
    async def test_failed_attempts_are_not_costed(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        invoker = RecordingInvoker(
            {"alpha": [TimeoutError("t1"), TimeoutError("t2")]}, tokens=(1000, 1000)
        )
        gateway = _gateway(registry, monitor, invoker)
        await gateway.invoke(REQUEST)
        assert gateway.costs.usage("alpha").requests == 0
        assert gateway.costs.cost_by_provider() == {"beta": pytest.approx(0.003)}

    @pytest.mark.asyncio
    async def test_over_budget_provider_is_skipped_when_enforced(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        budgets = BudgetManager(CostTracker())
        budgets.set_budget("alpha", 0.03)
        invoker = RecordingInvoker(tokens=(1000, 1000))
        gateway = _gateway(registry, monitor, invoker, budgets=budgets, enforce_budgets=True)

        await gateway.invoke(REQUEST)
        assert budgets.is_budget_exceeded("alpha")
        response = await gateway.invoke(REQUEST)
        assert response.provider_name == "beta"
        assert invoker.calls == ["alpha", "beta"]

    @pytest.mark.asyncio
    async def test_budgets_only_observed_when_not_enforced(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        budgets = BudgetManager(CostTracker())
        budgets.set_budget("alpha", 0.04)
        invoker = RecordingInvoker(tokens=(1000, 1000))
        gateway = _gateway(registry, monitor, invoker, budgets=budgets)

        await gateway.invoke(REQUEST)
        await gateway.invoke(REQUEST)
        assert invoker.calls == ["alpha", "alpha"]
        assert budgets.utilization("alpha") == pytest.approx(200.0)

    @pytest.mark.asyncio
    async def test_global_budget_stops_dispatch(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        budgets = BudgetManager(CostTracker())
        budgets.set_global_budget(0.03)
        invoker = RecordingInvoker(tokens=(1000, 1000))
        gateway = _gateway(registry, monitor, invoker, budgets=budgets, enforce_budgets=True)

        await gateway.invoke(REQUEST)
        with pytest.raises(BudgetExceededError) as exc_info:
            await gateway.invoke(REQUEST)
        assert exc_info.value.code == "BUDGET_EXCEEDED"
        assert invoker.calls == ["alpha"]

    @pytest.mark.asyncio
    async def test_alert_fires_once_when_threshold_crossed(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        budgets = BudgetManager(CostTracker())
        budgets.set_budget("alpha", 0.1)
        budgets.add_alert("alpha", 50)
        received = []
        budgets.subscribe(received.append)
        gateway = _gateway(
            registry, monitor, RecordingInvoker(tokens=(1000, 1000)), budgets=budgets
        )

        await gateway.invoke(REQUEST)
        assert received == []
        await gateway.invoke(REQUEST)
        await gateway.invoke(REQUEST)
        assert len(received) == 1
        assert received[0].budget == "alpha"
        assert received[0].threshold_pct == 50

    def test_rejects_budgets_over_a_different_tracker(
        self, registry: ProviderRegistry, monitor: ProviderHealthMonitor
    ) -> None:
        with pytest.raises(ValueError):
            _gateway(
                registry,
                monitor,
                RecordingInvoker(),
                costs=CostTracker(),
                budgets=BudgetManager(CostTracker()),
            )
