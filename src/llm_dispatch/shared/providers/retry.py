"""Retry policy — bounded, backed-off re-attempts around an async callable.

Built on tenacity's ``AsyncRetrying``; this module contributes the delay
strategies, the transient-failure predicate and cancellation-aware sleeps.
"""

from __future__ import annotations

import asyncio
import enum
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

import httpx
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    RetryError,
    retry_if_exception,
    stop_after_attempt,
)

from llm_dispatch.domain.exceptions import (
    DomainError,
    RetriesExhaustedError,
    TransientProviderError,
)
from llm_dispatch.shared.cancellation import CancellationToken
from llm_dispatch.shared.observability.metrics import RETRY_ATTEMPTS

logger = structlog.get_logger(__name__)

T = TypeVar("T")

JITTER_RATIO = 0.3

_TRANSIENT_TYPES: tuple[type[BaseException], ...] = (
    TimeoutError,
    asyncio.TimeoutError,
    ConnectionError,
    httpx.TimeoutException,
    httpx.TransportError,
    TransientProviderError,
)


class BackoffStrategy(str, enum.Enum):
    FIXED = "fixed"
    LINEAR = "linear"
    EXPONENTIAL = "exponential"


def is_transient_error(exc: BaseException | None) -> bool:
    """Default retry predicate: timeouts and transport-level failures only.

    Follows explicit ``raise ... from`` chains so wrapped transport errors
    still qualify.  Domain errors other than ``TransientProviderError``
    (circuit open, validation, ...) never do.
    """
    seen: set[int] = set()
    while exc is not None and id(exc) not in seen:
        seen.add(id(exc))
        if isinstance(exc, _TRANSIENT_TYPES):
            return True
        if isinstance(exc, httpx.HTTPStatusError):
            status = exc.response.status_code
            return status == 429 or status >= 500
        if isinstance(exc, DomainError):
            return False
        exc = exc.__cause__
    return False


@dataclass(frozen=True)
class RetryOptions:
    """Tuning for a retry policy.

    ``max_retry_attempts`` counts re-attempts, so an operation runs at most
    ``max_retry_attempts + 1`` times.
    """

    max_retry_attempts: int = 3
    initial_delay_s: float = 1.0
    max_delay_s: float = 30.0
    strategy: BackoffStrategy = BackoffStrategy.EXPONENTIAL
    use_jitter: bool = True
    should_retry: Callable[[BaseException], bool] | None = None

    def __post_init__(self) -> None:
        if self.max_retry_attempts < 0:
            raise ValueError("max_retry_attempts must not be negative")
        if self.initial_delay_s < 0 or self.max_delay_s < 0:
            raise ValueError("delays must not be negative")


class RetryPolicy:
    """Retries an async operation while the predicate accepts its failure."""

    def __init__(
        self,
        options: RetryOptions | None = None,
        *,
        name: str = "retry",
        rng: random.Random | None = None,
    ) -> None:
        self._options = options or RetryOptions()
        self._name = name
        self._rng = rng or random.Random()
        self._should_retry = self._options.should_retry or is_transient_error

    @property
    def options(self) -> RetryOptions:
        return self._options

    def compute_delay(self, attempt_number: int) -> float:
        """Delay in seconds after the ``attempt_number``-th failed attempt (1-based)."""
        opts = self._options
        n = max(attempt_number, 1)
        if opts.strategy == BackoffStrategy.FIXED:
            delay = opts.initial_delay_s
        elif opts.strategy == BackoffStrategy.LINEAR:
            delay = opts.initial_delay_s * n
        else:
            delay = opts.initial_delay_s * 2 ** (n - 1)
            if opts.use_jitter:
                delay *= 1 + self._rng.random() * JITTER_RATIO
        return min(delay, opts.max_delay_s)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        cancellation: CancellationToken | None = None,
    ) -> T:
        """Run ``operation``, retrying transient failures.

        Raises:
            RetriesExhaustedError: every attempt failed with a retryable error;
                chained from the last failure.
            OperationCancelledError: the token tripped before an attempt or
                during a delay.
            Exception: the first non-retryable failure, unchanged.
        """
        token = cancellation or CancellationToken.none()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._options.max_retry_attempts + 1),
            wait=self._wait,
            retry=retry_if_exception(self._should_retry),
            sleep=token.sleep,
            before_sleep=self._before_sleep,
        )
        try:
            async for attempt in retrying:
                token.raise_if_cancelled()
                with attempt:
                    return await operation()
        except RetryError as exc:
            last = exc.last_attempt.exception()
            attempts = exc.last_attempt.attempt_number
            logger.warning(
                "retries_exhausted",
                policy=self._name,
                attempts=attempts,
                error=f"{type(last).__name__}: {last}",
            )
            raise RetriesExhaustedError(self._name, attempts, last) from last
        raise AssertionError("unreachable")  # pragma: no cover

    # ── tenacity hooks ───────────────────────────────────────
    def _wait(self, retry_state: RetryCallState) -> float:
        return self.compute_delay(retry_state.attempt_number)

    def _before_sleep(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        RETRY_ATTEMPTS.labels(policy=self._name).inc()
        logger.warning(
            "retry_scheduled",
            policy=self._name,
            attempt=retry_state.attempt_number,
            delay_s=round(retry_state.next_action.sleep, 3) if retry_state.next_action else None,
            error=f"{type(exc).__name__}: {exc}" if exc else None,
        )
