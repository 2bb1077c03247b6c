"""Global exception handlers — map domain errors to HTTP responses."""

from __future__ import annotations

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse

from llm_dispatch.domain.exceptions import (
    AllProvidersFailedError,
    CircuitOpenError,
    DomainError,
    NoProviderAvailableError,
    ProviderNotFoundError,
    RetriesExhaustedError,
    TaskDefinitionError,
    TaskNotFoundError,
)

logger = structlog.get_logger(__name__)


def _error(status_code: int, exc: DomainError) -> ORJSONResponse:
    return ORJSONResponse(
        status_code=status_code,
        content={"code": exc.code, "message": exc.message},
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register all domain→HTTP exception mappings."""

    @app.exception_handler(TaskNotFoundError)
    async def handle_task_not_found(request: Request, exc: TaskNotFoundError) -> ORJSONResponse:
        return _error(404, exc)

    @app.exception_handler(ProviderNotFoundError)
    async def handle_provider_not_found(
        request: Request, exc: ProviderNotFoundError
    ) -> ORJSONResponse:
        return _error(404, exc)

    @app.exception_handler(TaskDefinitionError)
    async def handle_task_definition(
        request: Request, exc: TaskDefinitionError
    ) -> ORJSONResponse:
        return _error(422, exc)

    @app.exception_handler(NoProviderAvailableError)
    async def handle_no_provider(
        request: Request, exc: NoProviderAvailableError
    ) -> ORJSONResponse:
        logger.warning("no_provider_available_http", message=exc.message)
        return _error(503, exc)

    @app.exception_handler(CircuitOpenError)
    async def handle_circuit_open(request: Request, exc: CircuitOpenError) -> ORJSONResponse:
        response = _error(503, exc)
        if exc.retry_after_s is not None:
            response.headers["Retry-After"] = str(max(int(exc.retry_after_s), 1))
        return response

    @app.exception_handler(RetriesExhaustedError)
    async def handle_retries_exhausted(
        request: Request, exc: RetriesExhaustedError
    ) -> ORJSONResponse:
        logger.error("retries_exhausted_http", message=exc.message)
        return _error(502, exc)

    @app.exception_handler(AllProvidersFailedError)
    async def handle_all_failed(
        request: Request, exc: AllProvidersFailedError
    ) -> ORJSONResponse:
        logger.error("all_providers_failed_http", message=exc.message, errors=exc.errors)
        return _error(502, exc)

    @app.exception_handler(DomainError)
    async def handle_domain(request: Request, exc: DomainError) -> ORJSONResponse:
        return _error(400, exc)

    @app.exception_handler(Exception)
    async def handle_unexpected(request: Request, exc: Exception) -> ORJSONResponse:
        logger.exception("unhandled_exception", error=str(exc))
        return ORJSONResponse(
            status_code=500,
            content={
                "code": "INTERNAL_ERROR",
                "message": "An unexpected error occurred",
            },
        )
