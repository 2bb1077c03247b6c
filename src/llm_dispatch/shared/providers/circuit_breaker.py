"""Circuit breaker — prevents cascading failures by isolating failing dependencies.

State machine:
    CLOSED    → (failures over the throughput window cross a threshold) → OPEN
    OPEN      → (open duration elapses)                                 → HALF_OPEN
    HALF_OPEN → (success_threshold trial successes)                     → CLOSED
    HALF_OPEN → (any trial failure)                                     → OPEN
"""

from __future__ import annotations

import enum
import threading
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TypeVar

import structlog

from llm_dispatch.domain.events import CircuitStateChangedEvent
from llm_dispatch.domain.exceptions import CircuitOpenError, OperationCancelledError
from llm_dispatch.shared.observability.metrics import CIRCUIT_REJECTIONS, CIRCUIT_TRANSITIONS

logger = structlog.get_logger(__name__)

T = TypeVar("T")

StateListener = Callable[[CircuitStateChangedEvent], None]


class CircuitState(str, enum.Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerOptions:
    """Tuning for a circuit breaker.

    Attributes:
        failure_threshold:      Failures within the window that trip the circuit.
        minimum_throughput:     Size of the outcome window; nothing trips before it fills.
        failure_rate_threshold: Failure ratio within the window that trips the circuit.
        open_duration_s:        Seconds to stay OPEN before allowing trial calls.
        success_threshold:      Trial successes needed to close from HALF_OPEN.
        half_open_max_calls:    Concurrent trial calls admitted in HALF_OPEN
                                (defaults to ``success_threshold``).
    """

    failure_threshold: int = 5
    minimum_throughput: int = 10
    failure_rate_threshold: float = 0.5
    open_duration_s: float = 30.0
    success_threshold: int = 2
    half_open_max_calls: int | None = None

    def __post_init__(self) -> None:
        if self.failure_threshold < 1:
            raise ValueError("failure_threshold must be at least 1")
        if self.minimum_throughput < 1:
            raise ValueError("minimum_throughput must be at least 1")
        if not 0.0 < self.failure_rate_threshold <= 1.0:
            raise ValueError("failure_rate_threshold must be in (0, 1]")
        if self.success_threshold < 1:
            raise ValueError("success_threshold must be at least 1")

    @property
    def trial_calls(self) -> int:
        return self.half_open_max_calls or self.success_threshold


@dataclass(frozen=True)
class CircuitBreakerStatistics:
    name: str
    state: CircuitState
    successful_calls: int
    failed_calls: int
    rejected_calls: int
    failure_rate: float
    last_opened_at: datetime | None
    last_closed_at: datetime | None


class CircuitBreaker:
    """Guards one logical dependency with automatic half-open probing."""

    def __init__(self, name: str, options: CircuitBreakerOptions | None = None) -> None:
        self._name = name
        self._options = options or CircuitBreakerOptions()

        self._state = CircuitState.CLOSED
        self._window: deque[bool] = deque(maxlen=self._options.minimum_throughput)
        self._opened_at = 0.0
        self._trials_in_flight = 0
        self._trial_successes = 0
        self._generation = 0

        self._successful = 0
        self._failed = 0
        self._rejected = 0
        self._last_opened_at: datetime | None = None
        self._last_closed_at: datetime | None = None

        self._listeners: list[StateListener] = []
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return self._name

    @property
    def options(self) -> CircuitBreakerOptions:
        return self._options

    @property
    def state(self) -> CircuitState:
        with self._lock:
            event = self._maybe_transition_to_half_open()
            state = self._state
        self._publish(event)
        return state

    # ── Execution ────────────────────────────────────────────
    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run ``operation`` unless the circuit is open.

        Raises:
            CircuitOpenError: without invoking ``operation`` when OPEN, or
                when HALF_OPEN and every trial slot is taken.
        """
        trial_generation = self._acquire()
        try:
            result = await operation()
        except OperationCancelledError:
            self._release(trial_generation)
            raise
        except Exception as exc:
            self._record(False, trial_generation, reason=f"{type(exc).__name__}: {exc}")
            raise
        except BaseException:
            # asyncio cancellation says nothing about the dependency
            self._release(trial_generation)
            raise
        self._record(True, trial_generation)
        return result

    def record_success(self) -> None:
        """Record an outcome observed outside :meth:`execute`."""
        self._record(True, None)

    def record_failure(self, reason: str = "failure recorded") -> None:
        self._record(False, None, reason=reason)

    def reset(self) -> None:
        """Force the circuit CLOSED (admin override)."""
        with self._lock:
            event = None
            if self._state != CircuitState.CLOSED:
                event = self._transition(CircuitState.CLOSED, "manual reset")
            self._window.clear()
        logger.info("circuit_breaker_force_reset", breaker=self._name)
        self._publish(event)

    def get_statistics(self) -> CircuitBreakerStatistics:
        with self._lock:
            event = self._maybe_transition_to_half_open()
            total = self._successful + self._failed
            stats = CircuitBreakerStatistics(
                name=self._name,
                state=self._state,
                successful_calls=self._successful,
                failed_calls=self._failed,
                rejected_calls=self._rejected,
                failure_rate=round(self._failed / total, 4) if total else 0.0,
                last_opened_at=self._last_opened_at,
                last_closed_at=self._last_closed_at,
            )
        self._publish(event)
        return stats

    # ── Notifications ────────────────────────────────────────
    def subscribe(self, listener: StateListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def unsubscribe(self, listener: StateListener) -> None:
        with self._lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ── Internals ────────────────────────────────────────────
    def _acquire(self) -> int | None:
        """Admit a call; returns the half-open generation for trial calls."""
        with self._lock:
            event = self._maybe_transition_to_half_open()
            trial: int | None = None
            rejected = False
            retry_after: float | None = None

            if self._state == CircuitState.OPEN:
                rejected = True
                retry_after = max(
                    self._options.open_duration_s - (time.monotonic() - self._opened_at), 0.0
                )
            elif self._state == CircuitState.HALF_OPEN:
                if self._trials_in_flight >= self._options.trial_calls:
                    rejected = True
                else:
                    self._trials_in_flight += 1
                    trial = self._generation

            if rejected:
                self._rejected += 1

        self._publish(event)
        if rejected:
            CIRCUIT_REJECTIONS.labels(breaker=self._name).inc()
            logger.debug("circuit_breaker_rejected", breaker=self._name)
            raise CircuitOpenError(self._name, retry_after_s=retry_after)
        return trial

    def _release(self, trial_generation: int | None) -> None:
        with self._lock:
            if trial_generation is not None and trial_generation == self._generation:
                self._trials_in_flight = max(self._trials_in_flight - 1, 0)

    def _record(self, success: bool, trial_generation: int | None, reason: str = "") -> None:
        with self._lock:
            event = None
            is_trial = trial_generation is not None and trial_generation == self._generation
            if is_trial:
                self._trials_in_flight = max(self._trials_in_flight - 1, 0)

            if success:
                self._successful += 1
            else:
                self._failed += 1

            if self._state == CircuitState.CLOSED:
                self._window.append(not success)
                event = self._evaluate_window(reason)
            elif self._state == CircuitState.HALF_OPEN and is_trial:
                if not success:
                    event = self._transition(
                        CircuitState.OPEN, f"trial call failed: {reason}"
                    )
                else:
                    self._trial_successes += 1
                    if self._trial_successes >= self._options.success_threshold:
                        event = self._transition(
                            CircuitState.CLOSED,
                            f"{self._trial_successes} trial calls succeeded",
                        )
            # Calls admitted before the current OPEN or HALF_OPEN phase only count
            # towards the statistics
        self._publish(event)

    def _evaluate_window(self, reason: str) -> CircuitStateChangedEvent | None:
        """Caller must hold lock."""
        opts = self._options
        if len(self._window) < opts.minimum_throughput:
            return None
        failures = sum(self._window)
        rate = failures / len(self._window)
        if failures >= opts.failure_threshold or rate >= opts.failure_rate_threshold:
            return self._transition(
                CircuitState.OPEN,
                f"{failures}/{len(self._window)} recent calls failed (last: {reason})",
            )
        return None

    def _maybe_transition_to_half_open(self) -> CircuitStateChangedEvent | None:
        """Caller must hold lock."""
        if self._state != CircuitState.OPEN:
            return None
        elapsed = time.monotonic() - self._opened_at
        if elapsed < self._options.open_duration_s:
            return None
        return self._transition(
            CircuitState.HALF_OPEN, f"open for {elapsed:.1f}s, allowing trial calls"
        )

    def _transition(self, new_state: CircuitState, reason: str) -> CircuitStateChangedEvent:
        """Caller must hold lock."""
        previous = self._state
        self._state = new_state
        self._generation += 1
        self._trials_in_flight = 0
        self._trial_successes = 0
        now = datetime.now(timezone.utc)

        if new_state == CircuitState.OPEN:
            self._opened_at = time.monotonic()
            self._last_opened_at = now
        elif new_state == CircuitState.CLOSED:
            self._window.clear()
            self._last_closed_at = now

        return CircuitStateChangedEvent(
            occurred_at=now,
            breaker=self._name,
            previous_state=previous.value,
            new_state=new_state.value,
            reason=reason,
        )

    def _publish(self, event: CircuitStateChangedEvent | None) -> None:
        """Deliver a transition outside the lock."""
        if event is None:
            return

        log = logger.warning if event.new_state == CircuitState.OPEN.value else logger.info
        log(
            f"circuit_breaker_{event.new_state}",
            breaker=self._name,
            previous_state=event.previous_state,
            reason=event.reason,
        )
        CIRCUIT_TRANSITIONS.labels(breaker=self._name, new_state=event.new_state).inc()

        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("circuit_breaker_listener_failed", breaker=self._name)


class CircuitBreakerRegistry:
    """Lazily creates one breaker per name, sharing options and listeners."""

    def __init__(self, options: CircuitBreakerOptions | None = None) -> None:
        self._options = options or CircuitBreakerOptions()
        self._breakers: dict[str, CircuitBreaker] = {}
        self._listeners: list[StateListener] = []
        self._lock = threading.Lock()

    def get(self, name: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is None:
                breaker = CircuitBreaker(name, self._options)
                for listener in self._listeners:
                    breaker.subscribe(listener)
                self._breakers[name] = breaker
            return breaker

    def subscribe(self, listener: StateListener) -> None:
        with self._lock:
            self._listeners.append(listener)
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.subscribe(listener)

    def reset(self, name: str) -> bool:
        with self._lock:
            breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()

    def all_statistics(self) -> list[CircuitBreakerStatistics]:
        with self._lock:
            breakers = list(self._breakers.values())
        return [b.get_statistics() for b in breakers]
