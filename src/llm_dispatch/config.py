"""LLM Dispatch — Application Configuration."""

from __future__ import annotations

import enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from llm_dispatch.domain.enums import CoordinationStrategy
from llm_dispatch.shared.providers.circuit_breaker import CircuitBreakerOptions
from llm_dispatch.shared.providers.cost import GLOBAL_BUDGET, BudgetPeriod
from llm_dispatch.shared.providers.retry import BackoffStrategy, RetryOptions
from llm_dispatch.shared.providers.types import (
    Capability,
    ProviderDescriptor,
    ProviderPricing,
    SelectionStrategy,
)


class Environment(str, enum.Enum):
    DEVELOPMENT = "development"
    STAGING = "staging"
    PRODUCTION = "production"


class ProviderBackend(str, enum.Enum):
    """How provider calls are performed."""

    ECHO = "echo"  # offline, answers locally
    HTTP = "http"  # hosted APIs via httpx


class ProviderSettings(BaseModel):
    """One configured provider (``PROVIDERS`` is a JSON list of these)."""

    name: str
    api: str = "openai"
    model: str = ""
    base_url: str = ""
    api_key: str = ""
    priority: int = 100
    enabled: bool = True
    capabilities: list[Capability] = Field(default_factory=lambda: [Capability.CHAT])
    input_cost_per_1k: float = Field(default=0.0, ge=0)
    output_cost_per_1k: float = Field(default=0.0, ge=0)

    def to_descriptor(self) -> ProviderDescriptor:
        metadata: dict[str, Any] = {"api": self.api}
        if self.model:
            metadata["model"] = self.model
        if self.base_url:
            metadata["base_url"] = self.base_url
        return ProviderDescriptor(
            name=self.name,
            capabilities=frozenset(self.capabilities),
            pricing=ProviderPricing(self.input_cost_per_1k, self.output_cost_per_1k),
            priority=self.priority,
            enabled=self.enabled,
            display_name=self.model or self.name,
            metadata=metadata,
        )


class BudgetSettings(BaseModel):
    """One spending limit (``BUDGETS`` is a JSON list of these).

    ``name`` is a provider name, or ``__global__`` for all providers together.
    """

    name: str
    limit: float = Field(gt=0)
    period: BudgetPeriod = BudgetPeriod.TOTAL


class AgentSettings(BaseModel):
    """One coordination agent (``AGENTS`` is a JSON list of these)."""

    name: str
    description: str = ""


# Used when PROVIDERS is empty and a plain API key is set
_DEFAULT_HOSTED_PROVIDERS: dict[str, dict[str, Any]] = {
    "anthropic": {
        "model": "claude-sonnet-4-20250514",
        "capabilities": [Capability.CHAT, Capability.STREAMING, Capability.TOOLS, Capability.VISION],
        "input_cost_per_1k": 0.003,
        "output_cost_per_1k": 0.015,
    },
    "openai": {
        "model": "gpt-4o",
        "capabilities": [
            Capability.CHAT,
            Capability.STREAMING,
            Capability.TOOLS,
            Capability.VISION,
            Capability.EMBEDDINGS,
        ],
        "input_cost_per_1k": 0.0025,
        "output_cost_per_1k": 0.01,
    },
    "google": {
        "model": "gemini-2.0-flash",
        "capabilities": [Capability.CHAT, Capability.STREAMING, Capability.VISION],
        "input_cost_per_1k": 0.0001,
        "output_cost_per_1k": 0.0004,
    },
}


class Settings(BaseSettings):
    """Centralised, validated configuration loaded from environment / .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Application ──────────────────────────────────────────
    app_name: str = "llm-dispatch"
    app_env: Environment = Environment.DEVELOPMENT
    app_debug: bool = False
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    log_level: str = "INFO"
    cors_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    # ── Providers ────────────────────────────────────────────
    provider_backend: ProviderBackend = ProviderBackend.ECHO
    providers: list[ProviderSettings] = Field(default_factory=list)
    anthropic_api_key: str = ""
    openai_api_key: str = ""
    google_api_key: str = ""
    llm_provider_priority: str = "google,anthropic,openai"
    provider_timeout_seconds: float = Field(default=60.0, gt=0)

    # ── Health monitor ───────────────────────────────────────
    health_window_seconds: float = Field(default=300.0, gt=0)
    health_min_samples: int = Field(default=3, ge=1)
    health_unhealthy_success_rate: float = Field(default=0.5, ge=0, le=1)
    health_degraded_success_rate: float = Field(default=0.8, ge=0, le=1)
    health_degraded_response_time_seconds: float = Field(default=5.0, gt=0)
    # Active probing; 0 disables the background loop
    health_probe_interval_seconds: float = Field(default=0.0, ge=0)
    health_probe_timeout_seconds: float = Field(default=10.0, gt=0)
    health_probe_prompt: str = "Hi"

    # ── Selection ────────────────────────────────────────────
    default_selection_strategy: SelectionStrategy = SelectionStrategy.PRIORITY
    max_failovers: int = Field(default=3, ge=1)

    # Circuit breaker
    circuit_breaker_failure_threshold: int = Field(default=5, ge=1)
    circuit_breaker_minimum_throughput: int = Field(default=10, ge=1)
    circuit_breaker_failure_rate_threshold: float = Field(default=0.5, gt=0, le=1)
    circuit_breaker_open_duration_seconds: float = Field(default=30.0, ge=0)
    circuit_breaker_success_threshold: int = Field(default=2, ge=1)

    # Retry
    retry_max_attempts: int = Field(default=3, ge=0)
    retry_initial_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=30.0, ge=0)
    retry_backoff_strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    retry_use_jitter: bool = True

    # Cost budgets
    budgets: list[BudgetSettings] = Field(default_factory=list)
    global_budget_limit: float | None = Field(default=None, gt=0)
    global_budget_period: BudgetPeriod = BudgetPeriod.TOTAL
    budget_alert_thresholds: list[float] = Field(default_factory=lambda: [80.0, 100.0])
    budget_enforcement: bool = False

    # ── Orchestration ────────────────────────────────────────
    task_strict_dependency_order: bool = True
    coordination_strategy: CoordinationStrategy = CoordinationStrategy.SEQUENTIAL
    debate_max_rounds: int = Field(default=3, ge=1)
    debate_consensus_threshold: float = Field(default=0.7, ge=0, le=1)
    agents: list[AgentSettings] = Field(
        default_factory=lambda: [
            AgentSettings(name="analyst", description="You analyse the task and propose an answer."),
            AgentSettings(name="critic", description="You look for flaws and improve the answer."),
        ]
    )

    # ── Observability ────────────────────────────────────────
    prometheus_enabled: bool = True

    # ── Derived helpers ──────────────────────────────────────
    @property
    def is_production(self) -> bool:
        return self.app_env == Environment.PRODUCTION

    def circuit_breaker_options(self) -> CircuitBreakerOptions:
        return CircuitBreakerOptions(
            failure_threshold=self.circuit_breaker_failure_threshold,
            minimum_throughput=self.circuit_breaker_minimum_throughput,
            failure_rate_threshold=self.circuit_breaker_failure_rate_threshold,
            open_duration_s=self.circuit_breaker_open_duration_seconds,
            success_threshold=self.circuit_breaker_success_threshold,
        )

    def retry_options(self) -> RetryOptions:
        return RetryOptions(
            max_retry_attempts=self.retry_max_attempts,
            initial_delay_s=self.retry_initial_delay_seconds,
            max_delay_s=self.retry_max_delay_seconds,
            strategy=self.retry_backoff_strategy,
            use_jitter=self.retry_use_jitter,
        )

    def budget_settings(self) -> list[BudgetSettings]:
        """Configured budgets, with ``GLOBAL_BUDGET_LIMIT`` folded in."""
        budgets = list(self.budgets)
        if self.global_budget_limit is not None and all(
            b.name != GLOBAL_BUDGET for b in budgets
        ):
            budgets.append(
                BudgetSettings(
                    name=GLOBAL_BUDGET,
                    limit=self.global_budget_limit,
                    period=self.global_budget_period,
                )
            )
        return budgets

    def provider_settings(self) -> list[ProviderSettings]:
        """Explicit ``providers`` if given, else one entry per configured API key.

        With the ECHO backend and nothing configured, a single local
        ``echo`` provider is returned so the service is usable out of the box.
        """
        if self.providers:
            return list(self.providers)

        priority = {
            name.strip().lower(): idx
            for idx, name in enumerate(self.llm_provider_priority.split(","), start=1)
            if name.strip()
        }
        keys = {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "google": self.google_api_key,
        }
        configured = [
            ProviderSettings(
                name=name,
                api=name,
                api_key=key,
                priority=priority.get(name, 100),
                **_DEFAULT_HOSTED_PROVIDERS[name],
            )
            for name, key in keys.items()
            if key.strip()
        ]
        if not configured and self.provider_backend == ProviderBackend.ECHO:
            configured.append(
                ProviderSettings(
                    name="echo",
                    api="echo",
                    priority=1,
                    capabilities=[Capability.CHAT, Capability.STREAMING],
                )
            )
        return configured

    @field_validator("log_level")
    @classmethod
    def _upper_log_level(cls, v: str) -> str:
        return v.upper()

    @model_validator(mode="after")
    def _check_consistency(self) -> Settings:
        if self.health_degraded_success_rate < self.health_unhealthy_success_rate:
            raise ValueError(
                "health_degraded_success_rate must not be below health_unhealthy_success_rate"
            )
        if self.retry_max_delay_seconds < self.retry_initial_delay_seconds:
            raise ValueError("retry_max_delay_seconds must not be below retry_initial_delay_seconds")
        names = [p.name.lower() for p in self.providers]
        if len(names) != len(set(names)):
            raise ValueError("provider names must be unique")
        budget_names = [b.name for b in self.budgets]
        if len(budget_names) != len(set(budget_names)):
            raise ValueError("budget names must be unique")
        if any(t <= 0 for t in self.budget_alert_thresholds):
            raise ValueError("budget_alert_thresholds must be positive percentages")
        return self


def get_settings(**overrides: Any) -> Settings:
    """Factory that allows test-time overrides."""
    return Settings(**overrides)
