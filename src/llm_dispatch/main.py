"""HTTP entry-point: the admin and dispatch API around one ``DispatchRuntime``."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from fastapi import APIRouter, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse

from llm_dispatch.adapters.inbound.rest.routers import (
    circuits_router,
    coordination_router,
    costs_router,
    health_router,
    providers_router,
    tasks_router,
)
from llm_dispatch.config import Settings, get_settings
from llm_dispatch.dependencies import DispatchRuntime, build_runtime
from llm_dispatch.shared.errors import register_exception_handlers
from llm_dispatch.shared.middleware import MetricsMiddleware, RequestContextMiddleware
from llm_dispatch.shared.observability import configure_logging

logger = structlog.get_logger(__name__)

API_PREFIX = "/api/v1"

ROUTERS: tuple[APIRouter, ...] = (
    health_router,
    providers_router,
    circuits_router,
    costs_router,
    tasks_router,
    coordination_router,
)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Configure logging, start health probing; stop probing and release the invoker on exit."""
    settings: Settings = app.state.settings
    runtime: DispatchRuntime = app.state.runtime
    configure_logging(log_level=settings.log_level, json_logs=settings.is_production)

    providers = [d.name for d in runtime.registry.by_priority()]
    logger.info(
        "dispatch_service_starting",
        env=settings.app_env.value,
        backend=settings.provider_backend.value,
        providers=providers,
        strategy=settings.default_selection_strategy.value,
        agents=[a.name for a in runtime.coordinator.agents],
    )
    if not providers:
        logger.warning("dispatch_service_without_providers", backend=settings.provider_backend.value)
    runtime.start_background_tasks()

    yield

    await runtime.close()
    logger.info("dispatch_service_stopped")


def create_app(settings: Settings | None = None, runtime: DispatchRuntime | None = None) -> FastAPI:
    """Build the FastAPI app.

    A prebuilt *runtime* may be passed in (tests inject one with a scripted
    invoker); otherwise one is wired from *settings*.
    """
    settings = settings or get_settings()

    app = FastAPI(
        title=settings.app_name,
        description=(
            "Provider selection, failover and orchestration for LLM workloads. "
            "Exposes provider health, circuit breaker state, task runs and "
            "multi-agent coordination."
        ),
        version="0.1.0",
        debug=settings.app_debug,
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runtime = runtime or build_runtime(settings)

    # Last added runs outermost
    allow_all_origins = "*" in settings.cors_origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[] if allow_all_origins else settings.cors_origins,
        allow_origin_regex=".*" if allow_all_origins else None,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    if settings.prometheus_enabled:
        app.add_middleware(MetricsMiddleware)
    app.add_middleware(RequestContextMiddleware)

    register_exception_handlers(app)
    for router in ROUTERS:
        app.include_router(router, prefix=API_PREFIX)

    return app


app = create_app()
