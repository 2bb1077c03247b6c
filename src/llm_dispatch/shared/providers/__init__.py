"""Multi-provider selection and resilience.

Provides registration, health tracking, strategy-based selection,
circuit breaking, retries and failover for any language-model provider.
"""

from llm_dispatch.shared.providers.types import (
    Candidate,
    CandidateRanker,
    Capability,
    HealthState,
    HealthStatus,
    ProviderDescriptor,
    ProviderPricing,
    ProviderRequest,
    ProviderResponse,
    SelectionContext,
    SelectionResult,
    SelectionStrategy,
)
from llm_dispatch.shared.providers.registry import ProviderRegistry
from llm_dispatch.shared.providers.health import ProviderHealthMonitor
from llm_dispatch.shared.providers.selector import ProviderSelector
from llm_dispatch.shared.providers.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerOptions,
    CircuitBreakerRegistry,
    CircuitBreakerStatistics,
    CircuitState,
)
from llm_dispatch.shared.providers.retry import BackoffStrategy, RetryOptions, RetryPolicy
from llm_dispatch.shared.providers.cost import (
    GLOBAL_BUDGET,
    Budget,
    BudgetAlert,
    BudgetManager,
    BudgetPeriod,
    BudgetStatus,
    CostTracker,
    TokenUsage,
)
from llm_dispatch.shared.providers.gateway import ProviderGateway
from llm_dispatch.shared.providers.probing import HealthCheckResult, ProviderHealthProber

__all__ = [
    "GLOBAL_BUDGET",
    "BackoffStrategy",
    "Budget",
    "BudgetAlert",
    "BudgetManager",
    "BudgetPeriod",
    "BudgetStatus",
    "Candidate",
    "CandidateRanker",
    "Capability",
    "CircuitBreaker",
    "CircuitBreakerOptions",
    "CircuitBreakerRegistry",
    "CircuitBreakerStatistics",
    "CircuitState",
    "CostTracker",
    "HealthCheckResult",
    "HealthState",
    "HealthStatus",
    "ProviderDescriptor",
    "ProviderGateway",
    "ProviderHealthMonitor",
    "ProviderHealthProber",
    "ProviderPricing",
    "ProviderRegistry",
    "ProviderRequest",
    "ProviderResponse",
    "ProviderSelector",
    "RetryOptions",
    "RetryPolicy",
    "SelectionContext",
    "SelectionResult",
    "SelectionStrategy",
    "TokenUsage",
]
