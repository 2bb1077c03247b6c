"""Health, Providers, Circuits, Costs, Tasks, Coordination — REST routers."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import ORJSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from llm_dispatch.application.coordinator import MultiAgentCoordinator
from llm_dispatch.application.dtos import (
    BudgetAlertResponse,
    BudgetStatusResponse,
    CancelResponse,
    CircuitStatisticsResponse,
    CoordinationRequest,
    CoordinationResponse,
    CostReportResponse,
    ErrorResponse,
    HealthCheckResponse,
    HealthResponse,
    ProviderHealthResponse,
    ProviderResetResponse,
    ProviderUsageResponse,
    TaskRequest,
    TaskStatusResponse,
)
from llm_dispatch.application.orchestrator import TaskOrchestrator
from llm_dispatch.dependencies import (
    DispatchRuntime,
    get_budgets,
    get_coordinator,
    get_gateway,
    get_orchestrator,
    get_prober,
    get_runtime,
)
from llm_dispatch.domain.exceptions import TaskNotFoundError
from llm_dispatch.shared.providers import BudgetManager, ProviderGateway, ProviderHealthProber


# ═══════════════════════════════════════════════════════════════
#  Health
# ═══════════════════════════════════════════════════════════════
health_router = APIRouter(tags=["Health"])


@health_router.get("/health", response_model=HealthResponse)
async def health_check(runtime: DispatchRuntime = Depends(get_runtime)) -> ORJSONResponse:
    statuses = runtime.gateway.get_all_health()
    overall = "ok" if any(s.is_healthy for s in statuses) else "degraded"
    body = HealthResponse(
        status=overall,
        environment=runtime.settings.app_env.value,
        providers={s.provider_name: s.state.value for s in statuses},
    )
    return ORJSONResponse(
        content=body.model_dump(),
        status_code=200 if overall == "ok" else 503,
    )


@health_router.get("/metrics")
async def prometheus_metrics() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


# ═══════════════════════════════════════════════════════════════
#  Providers & circuits
# ═══════════════════════════════════════════════════════════════
providers_router = APIRouter(prefix="/providers", tags=["Provider Health"])


@providers_router.get("/health", response_model=list[ProviderHealthResponse])
async def provider_health(
    gateway: ProviderGateway = Depends(get_gateway),
) -> list[ProviderHealthResponse]:
    """Health snapshots for all registered providers."""
    return [
        ProviderHealthResponse.from_status(h, gateway.circuit_state(h.provider_name).value)
        for h in gateway.get_all_health()
    ]


@providers_router.post(
    "/{provider_name}/reset",
    response_model=ProviderResetResponse,
    responses={404: {"model": ErrorResponse}},
)
async def reset_provider(
    provider_name: str,
    gateway: ProviderGateway = Depends(get_gateway),
) -> ProviderResetResponse:
    """Admin: reset circuit breaker and health window for a provider."""
    gateway.reset_provider(provider_name)
    return ProviderResetResponse(provider_name=provider_name)


@providers_router.post(
    "/{provider_name}/health-check",
    response_model=HealthCheckResponse,
    responses={404: {"model": ErrorResponse}},
)
async def check_provider_health(
    provider_name: str,
    prober: ProviderHealthProber = Depends(get_prober),
) -> HealthCheckResponse:
    """Admin: send one health probe to a provider now and record the outcome."""
    result = await prober.check_health(provider_name)
    return HealthCheckResponse.from_result(result)


circuits_router = APIRouter(prefix="/circuits", tags=["Circuit Breakers"])


@circuits_router.get("", response_model=list[CircuitStatisticsResponse])
async def list_circuits(
    gateway: ProviderGateway = Depends(get_gateway),
) -> list[CircuitStatisticsResponse]:
    return [
        CircuitStatisticsResponse.from_statistics(s) for s in gateway.breakers.all_statistics()
    ]


# ═══════════════════════════════════════════════════════════════
#  Costs
# ═══════════════════════════════════════════════════════════════
costs_router = APIRouter(prefix="/costs", tags=["Costs"])


@costs_router.get("", response_model=CostReportResponse)
async def cost_report(
    budgets: BudgetManager = Depends(get_budgets),
) -> CostReportResponse:
    """Spend per provider, budget utilisation and the alerts fired so far."""
    tracker = budgets.tracker
    return CostReportResponse(
        total_cost=tracker.total_cost(),
        providers=[
            ProviderUsageResponse.from_usage(name, usage)
            for name, usage in sorted(tracker.usage_by_provider().items())
        ],
        budgets=[BudgetStatusResponse.from_status(s) for s in budgets.all_statuses()],
        triggered_alerts=[BudgetAlertResponse.from_alert(a) for a in budgets.triggered_alerts()],
    )


# ═══════════════════════════════════════════════════════════════
#  Tasks
# ═══════════════════════════════════════════════════════════════
tasks_router = APIRouter(prefix="/tasks", tags=["Tasks"])


@tasks_router.post(
    "",
    response_model=TaskStatusResponse,
    responses={422: {"model": ErrorResponse}},
)
async def run_task(
    body: TaskRequest,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> TaskStatusResponse:
    """Run a task definition to completion (or until it halts)."""
    result = await orchestrator.execute_task(body.to_definition())
    return TaskStatusResponse.from_result(result)


@tasks_router.get(
    "/{task_id}",
    response_model=TaskStatusResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_task(
    task_id: str,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> TaskStatusResponse:
    result = orchestrator.get_task_status(task_id)
    if result is None:
        raise TaskNotFoundError(task_id)
    return TaskStatusResponse.from_result(result)


@tasks_router.post(
    "/{task_id}/cancel",
    response_model=CancelResponse,
    responses={404: {"model": ErrorResponse}},
)
async def cancel_task(
    task_id: str,
    orchestrator: TaskOrchestrator = Depends(get_orchestrator),
) -> CancelResponse:
    if orchestrator.get_task_status(task_id) is None:
        raise TaskNotFoundError(task_id)
    return CancelResponse(task_id=task_id, cancelled=orchestrator.cancel_task(task_id))


# ═══════════════════════════════════════════════════════════════
#  Coordination
# ═══════════════════════════════════════════════════════════════
coordination_router = APIRouter(prefix="/coordination", tags=["Coordination"])


@coordination_router.post("", response_model=CoordinationResponse)
async def coordinate(
    body: CoordinationRequest,
    coordinator: MultiAgentCoordinator = Depends(get_coordinator),
) -> CoordinationResponse:
    """Run a task across the configured agents."""
    result = await coordinator.execute(body.task, body.context, strategy=body.strategy)
    return CoordinationResponse.from_result(result)
