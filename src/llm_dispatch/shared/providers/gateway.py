"""Provider gateway — the main entry-point for provider calls.

Composes ProviderSelector, CircuitBreaker, RetryPolicy and the health
monitor into a single resilience layer.  Callers hand in a request; the
gateway builds a fallback chain, runs each candidate behind its circuit
breaker (outermost) and retry policy (inner), records every attempt into
the health monitor and fails over to the next candidate when a provider
is unavailable.  Successful calls are costed from the token counts the
provider reports; with budget enforcement on, providers over budget are
skipped.
"""

from __future__ import annotations

import asyncio
import threading
import time
from typing import TYPE_CHECKING

import structlog

from llm_dispatch.domain.exceptions import (
    AllProvidersFailedError,
    BudgetExceededError,
    CircuitOpenError,
    NoProviderAvailableError,
    OperationCancelledError,
    ProviderNotFoundError,
    RetriesExhaustedError,
)
from llm_dispatch.shared.cancellation import CancellationToken
from llm_dispatch.shared.observability.metrics import (
    PROVIDER_FAILOVERS,
    PROVIDER_LATENCY,
    PROVIDER_REQUESTS,
)
from llm_dispatch.shared.providers.circuit_breaker import (
    CircuitBreakerRegistry,
    CircuitState,
)
from llm_dispatch.shared.providers.cost import GLOBAL_BUDGET, BudgetManager, CostTracker, TokenUsage
from llm_dispatch.shared.providers.health import ProviderHealthMonitor
from llm_dispatch.shared.providers.registry import ProviderRegistry
from llm_dispatch.shared.providers.retry import RetryOptions, RetryPolicy, is_transient_error
from llm_dispatch.shared.providers.selector import ProviderSelector
from llm_dispatch.shared.providers.types import (
    HealthStatus,
    ProviderRequest,
    ProviderResponse,
    SelectionContext,
    SelectionResult,
    SelectionStrategy,
)

if TYPE_CHECKING:
    from llm_dispatch.ports.outbound import ProviderInvoker

logger = structlog.get_logger(__name__)


class ProviderGateway:
    """Resilient, health-aware dispatch of requests to providers.

    Usage::

        gateway = ProviderGateway(registry, monitor, invoker)
        response = await gateway.invoke(
            ProviderRequest(prompt="..."),
            strategy=SelectionStrategy.LEAST_COST,
            context=SelectionContext(required_capabilities=frozenset({Capability.CHAT})),
        )
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        monitor: ProviderHealthMonitor,
        invoker: ProviderInvoker,
        *,
        selector: ProviderSelector | None = None,
        breakers: CircuitBreakerRegistry | None = None,
        retry_options: RetryOptions | None = None,
        default_strategy: SelectionStrategy = SelectionStrategy.PRIORITY,
        max_failovers: int = 3,
        attempt_timeout_s: float | None = None,
        costs: CostTracker | None = None,
        budgets: BudgetManager | None = None,
        enforce_budgets: bool = False,
    ) -> None:
        if max_failovers < 1:
            raise ValueError("max_failovers must be at least 1")
        self._registry = registry
        self._monitor = monitor
        self._invoker = invoker
        self._selector = selector or ProviderSelector(registry, monitor)
        self._breakers = breakers or CircuitBreakerRegistry()
        self._retry_options = retry_options or RetryOptions()
        self._default_strategy = default_strategy
        self._max_failovers = max_failovers
        self._attempt_timeout = attempt_timeout_s
        if budgets is not None and costs is not None and budgets.tracker is not costs:
            raise ValueError("budgets must be kept over the same cost tracker")
        self._costs = costs or (budgets.tracker if budgets else CostTracker())
        self._budgets = budgets or BudgetManager(self._costs)
        self._enforce_budgets = enforce_budgets

        self._policies: dict[str, RetryPolicy] = {}
        self._policy_lock = threading.Lock()

    @property
    def registry(self) -> ProviderRegistry:
        return self._registry

    @property
    def monitor(self) -> ProviderHealthMonitor:
        return self._monitor

    @property
    def selector(self) -> ProviderSelector:
        return self._selector

    @property
    def breakers(self) -> CircuitBreakerRegistry:
        return self._breakers

    @property
    def costs(self) -> CostTracker:
        return self._costs

    @property
    def budgets(self) -> BudgetManager:
        return self._budgets

    # ── Main entry-point ─────────────────────────────────────
    async def invoke(
        self,
        request: ProviderRequest,
        *,
        strategy: SelectionStrategy | None = None,
        context: SelectionContext | None = None,
        cancellation: CancellationToken | None = None,
    ) -> ProviderResponse:
        """Send ``request`` to the best provider, failing over along the chain.

        Raises:
            NoProviderAvailableError: the selector found no qualifying provider.
            AllProvidersFailedError: every provider in the chain was unavailable.
            BudgetExceededError: budgets are enforced and the global budget is spent.
            OperationCancelledError: ``cancellation`` tripped.
            Exception: a non-transient provider failure, unchanged.
        """
        token = cancellation or CancellationToken.none()
        strategy = strategy or self._default_strategy
        if self._enforce_budgets:
            status = self._budgets.status(GLOBAL_BUDGET)
            if status is not None and status.exceeded:
                raise BudgetExceededError(GLOBAL_BUDGET, status.spent, status.limit)

        chain = self._selector.select_providers(strategy, self._max_failovers, context)
        if not chain[0].success:
            raise NoProviderAvailableError(chain[0].failure_reason or "no provider selected")

        errors: dict[str, str] = {}
        for selection in chain:
            token.raise_if_cancelled()
            name = selection.provider_name or ""
            if self._enforce_budgets and self._budgets.is_budget_exceeded(name):
                errors[name] = "budget exceeded"
                logger.info("provider_skipped_budget_exceeded", provider=name)
                continue
            breaker = self._breakers.get(name)
            policy = self._policy(name)

            async def attempt(selection: SelectionResult = selection) -> ProviderResponse:
                return await self._attempt(selection, request, token)

            try:
                response = await breaker.execute(
                    lambda: policy.execute(attempt, cancellation=token)
                )
            except OperationCancelledError:
                raise
            except CircuitOpenError as exc:
                errors[name] = exc.message
                logger.info("provider_skipped_circuit_open", provider=name)
                continue
            except RetriesExhaustedError as exc:
                errors[name] = exc.message
                continue
            except Exception as exc:
                if not is_transient_error(exc):
                    raise
                errors[name] = f"{type(exc).__name__}: {exc}"
                continue

            if errors:
                PROVIDER_FAILOVERS.inc()
                logger.info(
                    "provider_failover_success",
                    provider=name,
                    failed_providers=list(errors),
                )
            return response

        raise AllProvidersFailedError(errors)

    # ── Single attempt (health recorded exactly once) ────────
    async def _attempt(
        self,
        selection: SelectionResult,
        request: ProviderRequest,
        token: CancellationToken,
    ) -> ProviderResponse:
        name = selection.provider_name or ""
        descriptor = selection.descriptor
        if descriptor is None:
            raise ProviderNotFoundError(name)
        log = logger.bind(provider=name)

        start = time.monotonic()
        try:
            call = self._invoker.invoke(descriptor, selection.handle, request, token)
            if self._attempt_timeout is not None:
                response = await asyncio.wait_for(call, timeout=self._attempt_timeout)
            else:
                response = await call
        except OperationCancelledError:
            raise
        except Exception as exc:
            elapsed = time.monotonic() - start
            error_msg = f"{type(exc).__name__}: {exc}"
            self._monitor.record_failure(name, error_msg, elapsed)
            PROVIDER_REQUESTS.labels(provider=name, outcome="failure").inc()
            log.warning(
                "provider_request_failed",
                error=error_msg,
                latency_ms=round(elapsed * 1000, 1),
            )
            raise

        elapsed = time.monotonic() - start
        self._monitor.record_success(name, elapsed)
        PROVIDER_REQUESTS.labels(provider=name, outcome="success").inc()
        PROVIDER_LATENCY.labels(provider=name).observe(elapsed)
        usage = TokenUsage(
            input_tokens=response.input_tokens,
            output_tokens=response.output_tokens,
            cost=descriptor.pricing.estimate(response.input_tokens, response.output_tokens),
            requests=1,
        )
        self._costs.record_usage(name, usage)
        self._budgets.check_alerts()
        log.info(
            "provider_request_success",
            latency_ms=round(elapsed * 1000, 1),
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost=round(usage.cost, 6),
        )

        response.provider_name = response.provider_name or name
        response.latency_ms = response.latency_ms or round(elapsed * 1000, 1)
        return response

    def _policy(self, name: str) -> RetryPolicy:
        with self._policy_lock:
            policy = self._policies.get(name)
            if policy is None:
                policy = RetryPolicy(self._retry_options, name=f"provider:{name}")
                self._policies[name] = policy
            return policy

    # ── Health observation ───────────────────────────────────
    def get_health(self, provider_name: str) -> HealthStatus:
        if provider_name not in self._registry:
            raise ProviderNotFoundError(provider_name)
        return self._monitor.get_health_status(provider_name)

    def get_all_health(self) -> list[HealthStatus]:
        return [self._monitor.get_health_status(n) for n in self._registry.names()]

    def circuit_state(self, provider_name: str) -> CircuitState:
        return self._breakers.get(provider_name).state

    def reset_provider(self, provider_name: str) -> None:
        """Admin reset — clears the circuit breaker and health window of a provider."""
        if provider_name not in self._registry:
            raise ProviderNotFoundError(provider_name)
        self._breakers.reset(provider_name)
        self._monitor.reset(provider_name)
        logger.info("provider_admin_reset", provider=provider_name)
