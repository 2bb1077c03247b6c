"""Core types for provider registration, health and selection."""

from __future__ import annotations

import enum
from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


class Capability(str, enum.Enum):
    """Feature a provider may support."""

    CHAT = "chat"
    STREAMING = "streaming"
    EMBEDDINGS = "embeddings"
    IMAGES = "images"
    TOOLS = "tools"
    VISION = "vision"
    TEXT_TO_SPEECH = "text_to_speech"


class HealthState(str, enum.Enum):
    """Recent success-rate / latency classification of a provider."""

    UNKNOWN = "unknown"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class SelectionStrategy(str, enum.Enum):
    """How the selector picks among qualifying candidates."""

    PRIORITY = "priority"
    LEAST_COST = "least_cost"
    FASTEST_RESPONSE = "fastest_response"
    ROUND_ROBIN = "round_robin"
    RANDOM = "random"
    SPECIFIC = "specific"
    CUSTOM = "custom"


# ── Registration ─────────────────────────────────────────────
@dataclass(frozen=True)
class ProviderPricing:
    """Cost per 1K tokens, in an arbitrary but consistent currency unit."""

    input_cost_per_1k: float = 0.0
    output_cost_per_1k: float = 0.0

    @property
    def average_cost_per_1k(self) -> float:
        return (self.input_cost_per_1k + self.output_cost_per_1k) / 2

    @property
    def total_cost_per_1k(self) -> float:
        return self.input_cost_per_1k + self.output_cost_per_1k

    def estimate(self, input_tokens: int, output_tokens: int) -> float:
        return (
            input_tokens / 1000 * self.input_cost_per_1k
            + output_tokens / 1000 * self.output_cost_per_1k
        )


@dataclass(frozen=True)
class ProviderDescriptor:
    """Static metadata for a single provider.

    Descriptors are never mutated after registration; updates replace the
    registry entry with a new descriptor.

    Attributes:
        name:          Unique key (e.g. "anthropic", "openai").
        capabilities:  Features the provider supports.
        pricing:       Input/output cost per 1K tokens.
        priority:      Lower = preferred (used by the PRIORITY strategy).
        enabled:       Disabled providers are never selected.
        display_name:  Human-readable name for dashboards.
        metadata:      Arbitrary extra config (model name, base URL, etc.).
    """

    name: str
    capabilities: frozenset[Capability] = frozenset({Capability.CHAT})
    pricing: ProviderPricing = field(default_factory=ProviderPricing)
    priority: int = 100
    enabled: bool = True
    display_name: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)

    def supports(self, *capabilities: Capability) -> bool:
        return all(c in self.capabilities for c in capabilities)


# ── Health ───────────────────────────────────────────────────
@dataclass(frozen=True)
class HealthStatus:
    """Read-only snapshot of a provider's current health."""

    provider_name: str
    state: HealthState = HealthState.UNKNOWN
    success_rate: float = 1.0
    response_time_s: float | None = None
    sample_count: int = 0
    total_requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    consecutive_failures: int = 0
    last_error: str | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None

    @property
    def is_healthy(self) -> bool:
        return self.state in (HealthState.HEALTHY, HealthState.UNKNOWN)


# ── Selection ────────────────────────────────────────────────
@dataclass(frozen=True)
class Candidate:
    """A provider that survived filtering, as seen by a ranking strategy."""

    descriptor: ProviderDescriptor
    handle: Any
    health: HealthStatus

    @property
    def name(self) -> str:
        return self.descriptor.name


class CandidateRanker(ABC):
    """Caller-supplied ranking used by the CUSTOM strategy."""

    @abstractmethod
    def rank(self, candidates: Sequence[Candidate]) -> str | None:
        """Return the name of the chosen candidate, or ``None`` for no pick."""
        ...


@dataclass(frozen=True)
class SelectionContext:
    """Per-call selection constraints. Immutable within one request."""

    required_capabilities: frozenset[Capability] = frozenset()
    max_cost_per_1k: float | None = None
    max_response_time_s: float | None = None
    min_success_rate: float | None = None
    excluded_providers: frozenset[str] = frozenset()
    specific_provider: str | None = None
    ranker: CandidateRanker | None = None

    def excluding(self, *names: str) -> SelectionContext:
        return SelectionContext(
            required_capabilities=self.required_capabilities,
            max_cost_per_1k=self.max_cost_per_1k,
            max_response_time_s=self.max_response_time_s,
            min_success_rate=self.min_success_rate,
            excluded_providers=self.excluded_providers | frozenset(names),
            specific_provider=self.specific_provider,
            ranker=self.ranker,
        )


@dataclass(frozen=True)
class SelectionResult:
    """Outcome of a selection: a chosen candidate or a failure reason."""

    success: bool
    provider_name: str | None = None
    handle: Any = None
    descriptor: ProviderDescriptor | None = None
    health: HealthStatus | None = None
    failure_reason: str | None = None

    @classmethod
    def chosen(cls, candidate: Candidate) -> SelectionResult:
        return cls(
            success=True,
            provider_name=candidate.name,
            handle=candidate.handle,
            descriptor=candidate.descriptor,
            health=candidate.health,
        )

    @classmethod
    def failed(cls, reason: str) -> SelectionResult:
        return cls(success=False, failure_reason=reason)


# ── Invocation ───────────────────────────────────────────────
@dataclass(frozen=True)
class ProviderRequest:
    """What is sent to a provider; its translation to a wire call is the invoker's job."""

    prompt: str
    system_prompt: str | None = None
    temperature: float = 0.7
    max_tokens: int = 2048
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderResponse:
    text: str
    provider_name: str = ""
    latency_ms: float = 0.0
    input_tokens: int = 0
    output_tokens: int = 0
    raw: dict[str, Any] = field(default_factory=dict)
