"""Sliding-window health monitor for all providers.

Maintains rolling success/failure counts and response times per provider
over a configurable time window, and classifies each provider as
UNKNOWN / HEALTHY / DEGRADED / UNHEALTHY from them.
"""

from __future__ import annotations

import threading
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone

import structlog

from llm_dispatch.shared.observability.metrics import PROVIDER_HEALTH_STATE
from llm_dispatch.shared.providers.types import HealthState, HealthStatus

logger = structlog.get_logger(__name__)

_STATE_GAUGE_VALUE = {
    HealthState.UNKNOWN: -1,
    HealthState.UNHEALTHY: 0,
    HealthState.DEGRADED: 1,
    HealthState.HEALTHY: 2,
}


@dataclass
class _Sample:
    timestamp: float
    success: bool
    elapsed_s: float


class _ProviderTracker:
    """Sliding-window counters for one provider (its own lock)."""

    def __init__(self, name: str, monitor: ProviderHealthMonitor) -> None:
        self.name = name
        self._monitor = monitor
        self._samples: deque[_Sample] = deque()
        self._lock = threading.Lock()

        # Cumulative counters (cleared only by reset)
        self._total_requests = 0
        self._total_successes = 0
        self._total_failures = 0
        self._consecutive_failures = 0
        self._last_error: str | None = None
        self._last_success_at: datetime | None = None
        self._last_failure_at: datetime | None = None
        self._state = HealthState.UNKNOWN

    # ── Recording ────────────────────────────────────────────
    def record(self, success: bool, elapsed_s: float, error: str | None) -> HealthState:
        now = datetime.now(timezone.utc)
        with self._lock:
            self._samples.append(_Sample(time.monotonic(), success, max(elapsed_s, 0.0)))
            self._total_requests += 1
            if success:
                self._total_successes += 1
                self._consecutive_failures = 0
                self._last_success_at = now
            else:
                self._total_failures += 1
                self._consecutive_failures += 1
                self._last_failure_at = now
                self._last_error = error
            self._evict()
            previous, self._state = self._state, self._classify()
            current = self._state

        if current != previous:
            logger.info(
                "provider_health_changed",
                provider=self.name,
                previous_state=previous.value,
                new_state=current.value,
            )
        PROVIDER_HEALTH_STATE.labels(provider=self.name).set(_STATE_GAUGE_VALUE[current])
        return current

    def reset(self) -> None:
        with self._lock:
            self._samples.clear()
            self._total_requests = 0
            self._total_successes = 0
            self._total_failures = 0
            self._consecutive_failures = 0
            self._last_error = None
            self._last_success_at = None
            self._last_failure_at = None
            self._state = HealthState.UNKNOWN
        PROVIDER_HEALTH_STATE.labels(provider=self.name).set(
            _STATE_GAUGE_VALUE[HealthState.UNKNOWN]
        )

    # ── Status derivation ────────────────────────────────────
    def snapshot(self) -> HealthStatus:
        """Produce a read-only health snapshot."""
        with self._lock:
            self._evict()
            self._state = self._classify()
            count = len(self._samples)
            return HealthStatus(
                provider_name=self.name,
                state=self._state,
                success_rate=round(self._success_rate(), 4),
                response_time_s=(
                    round(self._average_response_time(), 4) if count else None
                ),
                sample_count=count,
                total_requests=self._total_requests,
                total_successes=self._total_successes,
                total_failures=self._total_failures,
                consecutive_failures=self._consecutive_failures,
                last_error=self._last_error,
                last_success_at=self._last_success_at,
                last_failure_at=self._last_failure_at,
            )

    # ── Internals (caller holds lock) ────────────────────────
    def _classify(self) -> HealthState:
        m = self._monitor
        if len(self._samples) < m.min_samples:
            return HealthState.UNKNOWN
        rate = self._success_rate()
        if rate < m.unhealthy_success_rate:
            return HealthState.UNHEALTHY
        if (
            rate < m.degraded_success_rate
            or self._average_response_time() > m.degraded_response_time_s
        ):
            return HealthState.DEGRADED
        return HealthState.HEALTHY

    def _success_rate(self) -> float:
        if not self._samples:
            return 1.0
        return sum(1 for s in self._samples if s.success) / len(self._samples)

    def _average_response_time(self) -> float:
        if not self._samples:
            return 0.0
        return sum(s.elapsed_s for s in self._samples) / len(self._samples)

    def _evict(self) -> None:
        cutoff = time.monotonic() - self._monitor.window_seconds
        while self._samples and self._samples[0].timestamp < cutoff:
            self._samples.popleft()


class ProviderHealthMonitor:
    """Thread-safe health tracking for every provider ever seen.

    Each provider has its own lock; the tracker map lock is held only while
    looking up or creating a tracker, so unrelated providers never serialise
    on each other.
    """

    def __init__(
        self,
        *,
        window_seconds: float = 300.0,
        min_samples: int = 3,
        unhealthy_success_rate: float = 0.5,
        degraded_success_rate: float = 0.8,
        degraded_response_time_s: float = 5.0,
    ) -> None:
        if min_samples < 1:
            raise ValueError("min_samples must be at least 1")
        self.window_seconds = window_seconds
        self.min_samples = min_samples
        self.unhealthy_success_rate = unhealthy_success_rate
        self.degraded_success_rate = degraded_success_rate
        self.degraded_response_time_s = degraded_response_time_s

        self._trackers: dict[str, _ProviderTracker] = {}
        self._lock = threading.Lock()

    # ── Recording ────────────────────────────────────────────
    def record_outcome(
        self,
        provider_name: str,
        success: bool,
        elapsed_s: float,
        error: str | None = None,
    ) -> HealthState:
        """Record one completed or failed call and return the new state."""
        return self._tracker(provider_name).record(success, elapsed_s, error)

    def record_success(self, provider_name: str, elapsed_s: float) -> HealthState:
        return self.record_outcome(provider_name, True, elapsed_s)

    def record_failure(
        self, provider_name: str, error: str, elapsed_s: float = 0.0
    ) -> HealthState:
        return self.record_outcome(provider_name, False, elapsed_s, error)

    # ── Observation ──────────────────────────────────────────
    def get_health_status(self, provider_name: str) -> HealthStatus:
        """Current snapshot; never-seen providers are reported as UNKNOWN."""
        with self._lock:
            tracker = self._trackers.get(provider_name)
        if tracker is None:
            return HealthStatus(provider_name=provider_name)
        return tracker.snapshot()

    def get_all_health_statuses(self) -> dict[str, HealthStatus]:
        with self._lock:
            trackers = list(self._trackers.values())
        return {t.name: t.snapshot() for t in trackers}

    # ── Operator actions ─────────────────────────────────────
    def reset(self, provider_name: str) -> None:
        with self._lock:
            tracker = self._trackers.get(provider_name)
        if tracker is not None:
            tracker.reset()
            logger.info("provider_health_reset", provider=provider_name)

    def forget(self, provider_name: str) -> None:
        with self._lock:
            self._trackers.pop(provider_name, None)

    def _tracker(self, provider_name: str) -> _ProviderTracker:
        with self._lock:
            tracker = self._trackers.get(provider_name)
            if tracker is None:
                tracker = _ProviderTracker(provider_name, self)
                self._trackers[provider_name] = tracker
            return tracker
