"""Dependency injection container — wires adapters to ports.

One :class:`DispatchRuntime` is built per application and kept on
``app.state``; FastAPI's ``Depends()`` hands its components to the routes.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog
from fastapi import Request

from llm_dispatch.adapters.outbound.llm import (
    EchoProviderInvoker,
    GatewayLLMAdapter,
    HttpProviderInvoker,
)
from llm_dispatch.application.agents import LLMAgent
from llm_dispatch.application.coordinator import MultiAgentCoordinator
from llm_dispatch.application.orchestrator import TaskOrchestrator
from llm_dispatch.config import ProviderBackend, Settings
from llm_dispatch.ports.outbound import ProviderInvoker
from llm_dispatch.shared.providers import (
    BudgetManager,
    CircuitBreakerRegistry,
    CostTracker,
    ProviderGateway,
    ProviderHealthMonitor,
    ProviderHealthProber,
    ProviderRegistry,
    ProviderSelector,
)

logger = structlog.get_logger(__name__)


@dataclass
class DispatchRuntime:
    """Everything one application instance owns."""

    settings: Settings
    registry: ProviderRegistry
    monitor: ProviderHealthMonitor
    selector: ProviderSelector
    breakers: CircuitBreakerRegistry
    invoker: ProviderInvoker
    gateway: ProviderGateway
    costs: CostTracker
    budgets: BudgetManager
    prober: ProviderHealthProber
    llm: GatewayLLMAdapter
    orchestrator: TaskOrchestrator
    coordinator: MultiAgentCoordinator

    def start_background_tasks(self) -> None:
        """Start periodic health probing when an interval is configured."""
        interval = self.settings.health_probe_interval_seconds
        if interval > 0:
            self.prober.start_monitoring(interval)

    async def close(self) -> None:
        await self.prober.stop_monitoring()
        await self.invoker.close()


def build_invoker(settings: Settings) -> ProviderInvoker:
    """Factory that selects the invoker based on PROVIDER_BACKEND."""
    if settings.provider_backend == ProviderBackend.HTTP:
        return HttpProviderInvoker(timeout=settings.provider_timeout_seconds)
    return EchoProviderInvoker()


def build_runtime(settings: Settings, invoker: ProviderInvoker | None = None) -> DispatchRuntime:
    registry = ProviderRegistry()
    for provider in settings.provider_settings():
        registry.register(provider.to_descriptor(), handle=provider.api_key or None)

    monitor = ProviderHealthMonitor(
        window_seconds=settings.health_window_seconds,
        min_samples=settings.health_min_samples,
        unhealthy_success_rate=settings.health_unhealthy_success_rate,
        degraded_success_rate=settings.health_degraded_success_rate,
        degraded_response_time_s=settings.health_degraded_response_time_seconds,
    )
    selector = ProviderSelector(registry, monitor)
    breakers = CircuitBreakerRegistry(settings.circuit_breaker_options())
    invoker = invoker or build_invoker(settings)

    costs = CostTracker()
    budgets = BudgetManager(costs)
    for budget in settings.budget_settings():
        budgets.set_budget(budget.name, budget.limit, budget.period)
        for threshold in settings.budget_alert_thresholds:
            budgets.add_alert(budget.name, threshold)

    gateway = ProviderGateway(
        registry,
        monitor,
        invoker,
        selector=selector,
        breakers=breakers,
        retry_options=settings.retry_options(),
        default_strategy=settings.default_selection_strategy,
        max_failovers=settings.max_failovers,
        attempt_timeout_s=settings.provider_timeout_seconds,
        costs=costs,
        budgets=budgets,
        enforce_budgets=settings.budget_enforcement,
    )
    llm = GatewayLLMAdapter(gateway)
    prober = ProviderHealthProber(
        registry,
        monitor,
        invoker,
        prompt=settings.health_probe_prompt,
        timeout_s=settings.health_probe_timeout_seconds,
    )

    orchestrator = TaskOrchestrator(
        llm, strict_dependency_order=settings.task_strict_dependency_order
    )
    coordinator = MultiAgentCoordinator(
        llm,
        strategy=settings.coordination_strategy,
        max_debate_rounds=settings.debate_max_rounds,
        consensus_threshold=settings.debate_consensus_threshold,
    )
    for agent in settings.agents:
        coordinator.register_agent(LLMAgent(agent.name, llm, description=agent.description))

    logger.info(
        "runtime_built",
        providers=registry.names(),
        backend=settings.provider_backend.value,
        agents=[a.name for a in coordinator.agents],
    )
    return DispatchRuntime(
        settings=settings,
        registry=registry,
        monitor=monitor,
        selector=selector,
        breakers=breakers,
        invoker=invoker,
        gateway=gateway,
        costs=costs,
        budgets=budgets,
        prober=prober,
        llm=llm,
        orchestrator=orchestrator,
        coordinator=coordinator,
    )


# ── FastAPI dependencies ─────────────────────────────────────
def get_runtime(request: Request) -> DispatchRuntime:
    return request.app.state.runtime


def get_gateway(request: Request) -> ProviderGateway:
    return get_runtime(request).gateway


def get_budgets(request: Request) -> BudgetManager:
    return get_runtime(request).budgets


def get_prober(request: Request) -> ProviderHealthProber:
    return get_runtime(request).prober


def get_orchestrator(request: Request) -> TaskOrchestrator:
    return get_runtime(request).orchestrator


def get_coordinator(request: Request) -> MultiAgentCoordinator:
    return get_runtime(request).coordinator
