"""Active health probing.

Passive health comes from real traffic through the gateway.  Providers
that see no traffic stay UNKNOWN, so the prober sends each enabled
provider a minimal request on an interval and records the outcome in the
same health monitor.  Probes bypass circuit breakers and retries.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from llm_dispatch.domain.exceptions import OperationCancelledError, ProviderNotFoundError
from llm_dispatch.shared.cancellation import CancellationToken
from llm_dispatch.shared.observability.metrics import HEALTH_PROBES
from llm_dispatch.shared.providers.health import ProviderHealthMonitor
from llm_dispatch.shared.providers.registry import ProviderRegistry
from llm_dispatch.shared.providers.types import HealthState, ProviderRequest

if TYPE_CHECKING:
    from llm_dispatch.ports.outbound import ProviderInvoker

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class HealthCheckResult:
    provider_name: str
    is_healthy: bool
    response_time_s: float
    state: HealthState = HealthState.UNKNOWN
    error: str | None = None


class ProviderHealthProber:
    """Sends probe requests and feeds their outcome to the health monitor."""

    def __init__(
        self,
        registry: ProviderRegistry,
        monitor: ProviderHealthMonitor,
        invoker: ProviderInvoker,
        *,
        prompt: str = "Hi",
        timeout_s: float = 10.0,
    ) -> None:
        self._registry = registry
        self._monitor = monitor
        self._invoker = invoker
        self._request = ProviderRequest(prompt=prompt, temperature=0.0, max_tokens=1)
        self._timeout = timeout_s
        self._task: asyncio.Task[None] | None = None
        self._token: CancellationToken | None = None

    @property
    def is_monitoring(self) -> bool:
        return self._task is not None and not self._task.done()

    async def check_health(
        self, provider_name: str, cancellation: CancellationToken | None = None
    ) -> HealthCheckResult:
        """Probe one provider and record the result.

        Raises:
            ProviderNotFoundError: ``provider_name`` is not registered.
            OperationCancelledError: ``cancellation`` tripped.
        """
        descriptor = self._registry.get(provider_name)
        if descriptor is None:
            raise ProviderNotFoundError(provider_name)
        token = cancellation or CancellationToken.none()
        handle = self._registry.get_handle(provider_name)

        start = time.monotonic()
        try:
            await asyncio.wait_for(
                self._invoker.invoke(descriptor, handle, self._request, token),
                timeout=self._timeout,
            )
        except OperationCancelledError:
            raise
        except Exception as exc:
            elapsed = time.monotonic() - start
            error = f"{type(exc).__name__}: {exc}"
            state = self._monitor.record_failure(provider_name, error, elapsed)
            HEALTH_PROBES.labels(provider=provider_name, outcome="failure").inc()
            logger.warning("provider_probe_failed", provider=provider_name, error=error)
            return HealthCheckResult(provider_name, False, elapsed, state, error)

        elapsed = time.monotonic() - start
        state = self._monitor.record_success(provider_name, elapsed)
        HEALTH_PROBES.labels(provider=provider_name, outcome="success").inc()
        logger.debug(
            "provider_probe_succeeded",
            provider=provider_name,
            latency_ms=round(elapsed * 1000, 1),
        )
        return HealthCheckResult(provider_name, True, elapsed, state)

    async def check_all(
        self, cancellation: CancellationToken | None = None
    ) -> list[HealthCheckResult]:
        """Probe every enabled provider, one after another."""
        token = cancellation or CancellationToken.none()
        results: list[HealthCheckResult] = []
        for entry in self._registry.enabled_entries():
            if token.is_cancelled:
                break
            results.append(await self.check_health(entry.descriptor.name, token))
        return results

    # ── Background loop ──────────────────────────────────────
    def start_monitoring(self, interval_s: float) -> None:
        """Probe all enabled providers every ``interval_s`` seconds.

        Restarts the loop if one is already running.  Needs a running event loop.
        """
        if interval_s <= 0:
            raise ValueError("probe interval must be positive")
        self._stop_nowait()
        self._token = CancellationToken()
        self._task = asyncio.get_running_loop().create_task(
            self._loop(interval_s, self._token), name="provider-health-probe"
        )
        logger.info("provider_probing_started", interval_s=interval_s)

    async def stop_monitoring(self) -> None:
        task = self._stop_nowait()
        if task is None:
            return
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("provider_probing_stopped")

    def _stop_nowait(self) -> asyncio.Task[None] | None:
        task, token = self._task, self._token
        self._task = self._token = None
        if token is not None:
            token.cancel("probing stopped")
        if task is not None and not task.done():
            task.cancel()
        return task

    async def _loop(self, interval_s: float, token: CancellationToken) -> None:
        while not token.is_cancelled:
            try:
                await self.check_all(token)
                await token.sleep(interval_s)
            except OperationCancelledError:
                return
