"""Provider selector — picks the best available provider for a request.

Filters registry entries by exclusion, health and the caller's
constraints, then applies the requested strategy to what is left.
"""

from __future__ import annotations

import random
import threading
from collections.abc import Callable

import structlog

from llm_dispatch.shared.observability.metrics import SELECTION_FAILURES
from llm_dispatch.shared.providers.health import ProviderHealthMonitor
from llm_dispatch.shared.providers.registry import ProviderRegistry
from llm_dispatch.shared.providers.types import (
    Candidate,
    HealthState,
    SelectionContext,
    SelectionResult,
    SelectionStrategy,
)

logger = structlog.get_logger(__name__)

NO_PROVIDERS = "No providers registered"
NO_QUALIFYING_PROVIDERS = "No providers available that meet the requirements"
NO_STRATEGY_PICK = "No provider selected by strategy"

_Ordering = Callable[[list[Candidate], SelectionContext, int], list[Candidate]]


class ProviderSelector:
    """Strategy-based selection over a registry and a health monitor.

    The round-robin counter and the random generator belong to the
    selector instance, so independent selectors never share state.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        monitor: ProviderHealthMonitor,
        *,
        rng: random.Random | None = None,
    ) -> None:
        self._registry = registry
        self._monitor = monitor
        self._rng = rng or random.Random()

        # Round-robin state
        self._rr_index = 0
        self._lock = threading.Lock()

        self._orderings: dict[SelectionStrategy, _Ordering] = {
            SelectionStrategy.PRIORITY: self._order_priority,
            SelectionStrategy.LEAST_COST: self._order_least_cost,
            SelectionStrategy.FASTEST_RESPONSE: self._order_fastest,
            SelectionStrategy.ROUND_ROBIN: self._order_round_robin,
            SelectionStrategy.RANDOM: self._order_random,
            SelectionStrategy.SPECIFIC: self._order_specific,
            SelectionStrategy.CUSTOM: self._order_custom,
        }

    # ── Public API ───────────────────────────────────────────
    def select_provider(
        self,
        strategy: SelectionStrategy,
        context: SelectionContext | None = None,
    ) -> SelectionResult:
        """Select a single provider, or explain why none qualifies."""
        results = self.select_providers(strategy, 1, context)
        return results[0]

    def select_providers(
        self,
        strategy: SelectionStrategy,
        count: int,
        context: SelectionContext | None = None,
    ) -> list[SelectionResult]:
        """Ordered fallback chain of up to ``count`` providers.

        On failure the list holds exactly one failed result carrying the
        reason, so callers can always inspect ``results[0]``.
        """
        if count < 1:
            raise ValueError("count must be at least 1")
        context = context or SelectionContext()

        entries = self._registry.enabled_entries()
        if not entries:
            return [self._fail(strategy, NO_PROVIDERS)]

        candidates = self._filter_candidates(
            [
                Candidate(e.descriptor, e.handle, self._monitor.get_health_status(e.descriptor.name))
                for e in entries
            ],
            context,
        )
        if not candidates:
            return [self._fail(strategy, NO_QUALIFYING_PROVIDERS, context)]

        ordered = self._orderings[strategy](candidates, context, count)
        if not ordered:
            return [self._fail(strategy, NO_STRATEGY_PICK, context)]

        chosen = [SelectionResult.chosen(c) for c in ordered[:count]]
        logger.debug(
            "provider_selected",
            strategy=strategy.value,
            provider=chosen[0].provider_name,
            chain=[r.provider_name for r in chosen],
        )
        return chosen

    # ── Filtering ────────────────────────────────────────────
    def _filter_candidates(
        self, candidates: list[Candidate], context: SelectionContext
    ) -> list[Candidate]:
        kept: list[Candidate] = []
        for candidate in candidates:
            name = candidate.name
            health = candidate.health

            if name in context.excluded_providers:
                continue

            # UNKNOWN gets the benefit of the doubt
            if health.state == HealthState.UNHEALTHY:
                logger.debug("provider_unhealthy", provider=name)
                continue

            if not candidate.descriptor.supports(*context.required_capabilities):
                continue

            if (
                context.max_cost_per_1k is not None
                and candidate.descriptor.pricing.average_cost_per_1k > context.max_cost_per_1k
            ):
                continue

            if (
                context.max_response_time_s is not None
                and health.response_time_s is not None
                and health.response_time_s > context.max_response_time_s
            ):
                continue

            if (
                context.min_success_rate is not None
                and health.sample_count > 0
                and health.success_rate < context.min_success_rate
            ):
                continue

            kept.append(candidate)
        return kept

    # ── Strategy implementations ─────────────────────────────
    def _order_priority(
        self, candidates: list[Candidate], context: SelectionContext, count: int
    ) -> list[Candidate]:
        # Stable sort: equal priorities keep registration order
        return sorted(candidates, key=lambda c: c.descriptor.priority)

    def _order_least_cost(
        self, candidates: list[Candidate], context: SelectionContext, count: int
    ) -> list[Candidate]:
        return sorted(candidates, key=lambda c: c.descriptor.pricing.total_cost_per_1k)

    def _order_fastest(
        self, candidates: list[Candidate], context: SelectionContext, count: int
    ) -> list[Candidate]:
        timed = [c for c in candidates if c.health.response_time_s is not None]
        untimed = [c for c in candidates if c.health.response_time_s is None]
        timed.sort(key=lambda c: c.health.response_time_s or 0.0)
        # Providers without a sample only follow the ranked ones in a chain
        return timed + sorted(untimed, key=lambda c: c.descriptor.priority)

    def _order_round_robin(
        self, candidates: list[Candidate], context: SelectionContext, count: int
    ) -> list[Candidate]:
        with self._lock:
            idx = self._rr_index % len(candidates)
            self._rr_index += 1
        return candidates[idx:] + candidates[:idx]

    def _order_random(
        self, candidates: list[Candidate], context: SelectionContext, count: int
    ) -> list[Candidate]:
        with self._lock:
            return self._rng.sample(candidates, k=len(candidates))

    def _order_specific(
        self, candidates: list[Candidate], context: SelectionContext, count: int
    ) -> list[Candidate]:
        wanted = (context.specific_provider or "").strip().casefold()
        if not wanted:
            return []
        return [c for c in candidates if c.name.casefold() == wanted][:1]

    def _order_custom(
        self, candidates: list[Candidate], context: SelectionContext, count: int
    ) -> list[Candidate]:
        if context.ranker is None:
            return []
        remaining = list(candidates)
        ordered: list[Candidate] = []
        while remaining and len(ordered) < count:
            name = context.ranker.rank(tuple(remaining))
            pick = next((c for c in remaining if c.name == name), None)
            if pick is None:
                break
            ordered.append(pick)
            remaining.remove(pick)
        return ordered

    def _fail(
        self,
        strategy: SelectionStrategy,
        reason: str,
        context: SelectionContext | None = None,
    ) -> SelectionResult:
        SELECTION_FAILURES.labels(strategy=strategy.value).inc()
        logger.warning(
            "provider_selection_failed",
            strategy=strategy.value,
            reason=reason,
            excluded=sorted(context.excluded_providers) if context else [],
            total_registered=len(self._registry),
        )
        return SelectionResult.failed(reason)
