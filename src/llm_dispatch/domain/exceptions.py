"""Domain-specific exception hierarchy.

All exceptions inherit from ``DomainError`` so callers can catch the entire
family in one clause while still discriminating on subclass.
"""

from __future__ import annotations


class DomainError(Exception):
    """Base class for all domain-layer errors."""

    def __init__(self, message: str, *, code: str = "DOMAIN_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(message)


# ── Task definitions ─────────────────────────────────────────
class TaskError(DomainError):
    """Base for task-related errors."""


class TaskDefinitionError(TaskError):
    """Malformed task definition, rejected before any step runs."""

    def __init__(self, task_id: str, message: str) -> None:
        self.task_id = task_id
        super().__init__(
            f"Task {task_id!r} is invalid: {message}",
            code="INVALID_TASK_DEFINITION",
        )


class InvalidTaskTransitionError(TaskError):
    def __init__(self, current: str, target: str) -> None:
        super().__init__(
            f"Cannot transition task from {current!r} to {target!r}",
            code="INVALID_TASK_TRANSITION",
        )


class TaskNotFoundError(TaskError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id!r} not found", code="TASK_NOT_FOUND")


# ── Providers ────────────────────────────────────────────────
class ProviderNotFoundError(DomainError):
    def __init__(self, name: str) -> None:
        super().__init__(f"Provider {name!r} is not registered", code="PROVIDER_NOT_FOUND")


class NoProviderAvailableError(DomainError):
    """No provider satisfies the selection constraints."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason, code="NO_PROVIDER_AVAILABLE")


class TransientProviderError(DomainError):
    """A provider call failed in a way that is worth retrying."""

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] {message}", code="TRANSIENT_PROVIDER_ERROR")


class AllProvidersFailedError(DomainError):
    """Every provider of the fallback chain failed."""

    def __init__(self, errors: dict[str, str]) -> None:
        self.errors = errors
        providers = ", ".join(errors.keys())
        super().__init__(f"All providers failed: {providers}", code="ALL_PROVIDERS_FAILED")


class BudgetExceededError(DomainError):
    """A budget is spent and budget enforcement is on."""

    def __init__(self, budget: str, spent: float, limit: float) -> None:
        self.budget = budget
        self.spent = spent
        self.limit = limit
        super().__init__(
            f"Budget {budget!r} exceeded: spent {spent:.4f} of {limit:.4f}",
            code="BUDGET_EXCEEDED",
        )


# ── Resilience ───────────────────────────────────────────────
class CircuitOpenError(DomainError):
    """Raised instead of calling an operation guarded by an open circuit."""

    def __init__(self, name: str, retry_after_s: float | None = None) -> None:
        self.name = name
        self.retry_after_s = retry_after_s
        super().__init__(f"Circuit {name!r} is open", code="CIRCUIT_OPEN")


class RetriesExhaustedError(DomainError):
    """All attempts of a retry policy failed; wraps the last failure."""

    def __init__(self, name: str, attempts: int, last_error: BaseException) -> None:
        self.name = name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{name}: retries exhausted after {attempts} attempts: "
            f"{type(last_error).__name__}: {last_error}",
            code="RETRIES_EXHAUSTED",
        )


class OperationCancelledError(DomainError):
    def __init__(self, message: str = "Operation was cancelled") -> None:
        super().__init__(message, code="OPERATION_CANCELLED")
