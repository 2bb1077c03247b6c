"""Data Transfer Objects — Pydantic models for API boundaries.

DTOs handle serialisation, validation, and documentation.  They live in the
application layer because they are *not* domain objects — they adapt between
the external world and the domain.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from llm_dispatch.domain.entities import (
    AgentResponse,
    CoordinationResult,
    StepResult,
    TaskDefinition,
    TaskExecutionResult,
    TaskStep,
)
from llm_dispatch.domain.enums import CoordinationStrategy, TaskStepType
from llm_dispatch.shared.providers import (
    BudgetAlert,
    BudgetStatus,
    CircuitBreakerStatistics,
    HealthCheckResult,
    HealthStatus,
    TokenUsage,
)


def _seconds(result: Any) -> float | None:
    return result.duration.total_seconds() if result.duration is not None else None


# ═══════════════════════════════════════════════════════════════
#  Common
# ═══════════════════════════════════════════════════════════════
class ErrorResponse(BaseModel):
    code: str
    message: str


class HealthResponse(BaseModel):
    status: str = "ok"
    version: str = "0.1.0"
    environment: str = "development"
    providers: dict[str, str] = Field(default_factory=dict)


# ═══════════════════════════════════════════════════════════════
#  Providers & circuits
# ═══════════════════════════════════════════════════════════════
class ProviderHealthResponse(BaseModel):
    provider_name: str
    state: str
    circuit_state: str
    success_rate: float
    response_time_s: float | None = None
    sample_count: int
    total_requests: int
    total_successes: int
    total_failures: int
    consecutive_failures: int
    last_error: str | None = None
    last_success_at: datetime | None = None
    last_failure_at: datetime | None = None

    @classmethod
    def from_status(cls, status: HealthStatus, circuit_state: str) -> ProviderHealthResponse:
        return cls(
            provider_name=status.provider_name,
            state=status.state.value,
            circuit_state=circuit_state,
            success_rate=status.success_rate,
            response_time_s=status.response_time_s,
            sample_count=status.sample_count,
            total_requests=status.total_requests,
            total_successes=status.total_successes,
            total_failures=status.total_failures,
            consecutive_failures=status.consecutive_failures,
            last_error=status.last_error,
            last_success_at=status.last_success_at,
            last_failure_at=status.last_failure_at,
        )


class ProviderResetResponse(BaseModel):
    status: str = "reset"
    provider_name: str


class CircuitStatisticsResponse(BaseModel):
    name: str
    state: str
    successful_calls: int
    failed_calls: int
    rejected_calls: int
    failure_rate: float
    last_opened_at: datetime | None = None
    last_closed_at: datetime | None = None

    @classmethod
    def from_statistics(cls, stats: CircuitBreakerStatistics) -> CircuitStatisticsResponse:
        return cls(
            name=stats.name,
            state=stats.state.value,
            successful_calls=stats.successful_calls,
            failed_calls=stats.failed_calls,
            rejected_calls=stats.rejected_calls,
            failure_rate=stats.failure_rate,
            last_opened_at=stats.last_opened_at,
            last_closed_at=stats.last_closed_at,
        )


class HealthCheckResponse(BaseModel):
    provider_name: str
    is_healthy: bool
    state: str
    response_time_s: float
    error: str | None = None

    @classmethod
    def from_result(cls, result: HealthCheckResult) -> HealthCheckResponse:
        return cls(
            provider_name=result.provider_name,
            is_healthy=result.is_healthy,
            state=result.state.value,
            response_time_s=result.response_time_s,
            error=result.error,
        )


# ═══════════════════════════════════════════════════════════════
#  Costs & budgets
# ═══════════════════════════════════════════════════════════════
class ProviderUsageResponse(BaseModel):
    provider_name: str
    input_tokens: int
    output_tokens: int
    cost: float
    requests: int

    @classmethod
    def from_usage(cls, provider_name: str, usage: TokenUsage) -> ProviderUsageResponse:
        return cls(
            provider_name=provider_name,
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            cost=usage.cost,
            requests=usage.requests,
        )


class BudgetStatusResponse(BaseModel):
    name: str
    limit: float
    period: str
    spent: float
    utilization_pct: float
    exceeded: bool
    started_at: datetime

    @classmethod
    def from_status(cls, status: BudgetStatus) -> BudgetStatusResponse:
        return cls(
            name=status.name,
            limit=status.limit,
            period=status.period.value,
            spent=status.spent,
            utilization_pct=round(status.utilization_pct, 2),
            exceeded=status.exceeded,
            started_at=status.started_at,
        )


class BudgetAlertResponse(BaseModel):
    budget: str
    threshold_pct: float
    message: str
    triggered_at: datetime | None = None

    @classmethod
    def from_alert(cls, alert: BudgetAlert) -> BudgetAlertResponse:
        return cls(
            budget=alert.budget,
            threshold_pct=alert.threshold_pct,
            message=alert.message,
            triggered_at=alert.triggered_at,
        )


class CostReportResponse(BaseModel):
    total_cost: float
    providers: list[ProviderUsageResponse] = Field(default_factory=list)
    budgets: list[BudgetStatusResponse] = Field(default_factory=list)
    triggered_alerts: list[BudgetAlertResponse] = Field(default_factory=list)


# ═══════════════════════════════════════════════════════════════
#  Tasks
# ═══════════════════════════════════════════════════════════════
class TaskStepRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str | None = Field(None, min_length=1, max_length=100)
    name: str = Field("", max_length=200)
    order: int = 0
    prompt: str = ""
    type: TaskStepType = TaskStepType.LLM_QUERY
    depends_on: list[str] = Field(default_factory=list)
    parameters: dict[str, Any] = Field(default_factory=dict)
    requires_human_approval: bool = False


class TaskRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    id: str | None = Field(None, min_length=1, max_length=100)
    name: str = Field("", max_length=200)
    description: str = ""
    steps: list[TaskStepRequest] = Field(..., min_length=1)
    parameters: dict[str, Any] = Field(default_factory=dict)

    def to_definition(self) -> TaskDefinition:
        steps = []
        for s in self.steps:
            kwargs: dict[str, Any] = {"id": s.id} if s.id else {}
            steps.append(
                TaskStep(
                    name=s.name,
                    order=s.order,
                    prompt=s.prompt,
                    type=s.type,
                    depends_on=tuple(s.depends_on),
                    parameters=dict(s.parameters),
                    requires_human_approval=s.requires_human_approval,
                    **kwargs,
                )
            )
        kwargs = {"id": self.id} if self.id else {}
        return TaskDefinition(
            name=self.name,
            description=self.description,
            steps=steps,
            parameters=dict(self.parameters),
            **kwargs,
        )


class StepResultResponse(BaseModel):
    step_id: str
    step_name: str
    step_type: str
    status: str
    result: str | None = None
    error: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_s: float | None = None

    @classmethod
    def from_result(cls, step: StepResult) -> StepResultResponse:
        return cls(
            step_id=step.step_id,
            step_name=step.step_name,
            step_type=step.step_type.value,
            status=step.status.value,
            result=step.result,
            error=step.error,
            started_at=step.started_at,
            completed_at=step.completed_at,
            duration_s=_seconds(step),
        )


class TaskStatusResponse(BaseModel):
    task_id: str
    task_name: str
    status: str
    steps: list[StepResultResponse]
    final_result: str | None = None
    errors: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_s: float | None = None

    @classmethod
    def from_result(cls, result: TaskExecutionResult) -> TaskStatusResponse:
        return cls(
            task_id=result.task_id,
            task_name=result.task_name,
            status=result.status.value,
            steps=[StepResultResponse.from_result(s) for s in result.step_results.values()],
            final_result=result.final_result,
            errors=list(result.errors),
            started_at=result.started_at,
            completed_at=result.completed_at,
            duration_s=_seconds(result),
        )


class CancelResponse(BaseModel):
    task_id: str
    cancelled: bool


# ═══════════════════════════════════════════════════════════════
#  Coordination
# ═══════════════════════════════════════════════════════════════
class CoordinationRequest(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    task: str = Field(..., min_length=1, max_length=20000)
    context: dict[str, Any] = Field(default_factory=dict)
    strategy: CoordinationStrategy | None = None


class AgentOutput(BaseModel):
    agent_name: str
    instruction: str
    success: bool
    result: str | None = None
    error: str | None = None
    duration_s: float | None = None

    @classmethod
    def from_response(cls, response: AgentResponse) -> AgentOutput:
        return cls(
            agent_name=response.agent_name,
            instruction=response.instruction,
            success=response.success,
            result=response.result,
            error=response.error,
            duration_s=_seconds(response),
        )


class CoordinationResponse(BaseModel):
    task: str
    strategy: str
    success: bool
    final_answer: str | None = None
    error: str | None = None
    rounds: int = 0
    agents: list[AgentOutput]
    duration_s: float | None = None

    @classmethod
    def from_result(cls, result: CoordinationResult) -> CoordinationResponse:
        return cls(
            task=result.task,
            strategy=result.strategy.value,
            success=result.success,
            final_answer=result.final_answer,
            error=result.error,
            rounds=result.rounds,
            agents=[AgentOutput.from_response(r) for r in result.agent_responses],
            duration_s=_seconds(result),
        )
