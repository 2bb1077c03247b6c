"""Tests for strategy-based provider selection."""

from __future__ import annotations

import random
from collections import Counter
from collections.abc import Sequence

import pytest

from llm_dispatch.shared.providers import (
    Candidate,
    CandidateRanker,
    Capability,
    ProviderDescriptor,
    ProviderHealthMonitor,
    ProviderRegistry,
    ProviderSelector,
    SelectionContext,
    SelectionStrategy,
)
from llm_dispatch.shared.providers.selector import (
    NO_PROVIDERS,
    NO_QUALIFYING_PROVIDERS,
    NO_STRATEGY_PICK,
)


@pytest.fixture
def selector(registry: ProviderRegistry, monitor: ProviderHealthMonitor) -> ProviderSelector:
    return ProviderSelector(registry, monitor, rng=random.Random(7))


def _make_unhealthy(monitor: ProviderHealthMonitor, name: str) -> None:
    for _ in range(3):
        monitor.record_failure(name, "down")


class _CheapestWithTools(CandidateRanker):
    def rank(self, candidates: Sequence[Candidate]) -> str | None:
        tooled = [c for c in candidates if c.descriptor.supports(Capability.TOOLS)]
        return tooled[0].name if tooled else None


# ═══════════════════════════════════════════════════════════════
#  Filtering
# ═══════════════════════════════════════════════════════════════
class TestFiltering:
    def test_empty_registry(self, monitor: ProviderHealthMonitor) -> None:
        selector = ProviderSelector(ProviderRegistry(), monitor)
        result = selector.select_provider(SelectionStrategy.PRIORITY)
        assert not result.success
        assert result.failure_reason == NO_PROVIDERS

    def test_disabled_providers_are_ignored(
        self, registry: ProviderRegistry, selector: ProviderSelector
    ) -> None:
        registry.set_enabled("alpha", False)
        assert selector.select_provider(SelectionStrategy.PRIORITY).provider_name == "beta"

    def test_excluded_provider_never_chosen(self, selector: ProviderSelector) -> None:
        ctx = SelectionContext(excluded_providers=frozenset({"alpha"}))
        for strategy in (
            SelectionStrategy.PRIORITY,
            SelectionStrategy.LEAST_COST,
            SelectionStrategy.ROUND_ROBIN,
            SelectionStrategy.RANDOM,
        ):
            for _ in range(5):
                assert selector.select_provider(strategy, ctx).provider_name != "alpha"

    def test_unhealthy_provider_is_skipped(
        self, selector: ProviderSelector, monitor: ProviderHealthMonitor
    ) -> None:
        _make_unhealthy(monitor, "alpha")
        assert selector.select_provider(SelectionStrategy.PRIORITY).provider_name == "beta"

    def test_required_capabilities(self, selector: ProviderSelector) -> None:
        ctx = SelectionContext(required_capabilities=frozenset({Capability.VISION}))
        assert selector.select_provider(SelectionStrategy.PRIORITY, ctx).provider_name == "gamma"

    def test_max_cost_filter(self, selector: ProviderSelector) -> None:
        # alpha averages 0.02, gamma 0.005, beta 0.0015
        ctx = SelectionContext(max_cost_per_1k=0.01)
        chain = selector.select_providers(SelectionStrategy.PRIORITY, 3, ctx)
        assert [r.provider_name for r in chain] == ["beta", "gamma"]

    def test_max_response_time_ignores_unmeasured(
        self, selector: ProviderSelector, monitor: ProviderHealthMonitor
    ) -> None:
        monitor.record_success("alpha", 4.0)
        ctx = SelectionContext(max_response_time_s=1.0)
        assert selector.select_provider(SelectionStrategy.PRIORITY, ctx).provider_name == "beta"

    def test_min_success_rate(
        self, selector: ProviderSelector, monitor: ProviderHealthMonitor
    ) -> None:
        monitor.record_success("alpha", 0.1)
        monitor.record_failure("alpha", "err")
        ctx = SelectionContext(min_success_rate=0.9)
        assert selector.select_provider(SelectionStrategy.PRIORITY, ctx).provider_name == "beta"

    def test_nothing_qualifies(self, selector: ProviderSelector) -> None:
        ctx = SelectionContext(required_capabilities=frozenset({Capability.TEXT_TO_SPEECH}))
        result = selector.select_provider(SelectionStrategy.PRIORITY, ctx)
        assert not result.success
        assert result.failure_reason == NO_QUALIFYING_PROVIDERS

    def test_count_must_be_positive(self, selector: ProviderSelector) -> None:
        with pytest.raises(ValueError):
            selector.select_providers(SelectionStrategy.PRIORITY, 0)


# ═══════════════════════════════════════════════════════════════
#  Strategies
# ═══════════════════════════════════════════════════════════════
class TestStrategies:
    def test_priority_is_deterministic(self, selector: ProviderSelector) -> None:
        picks = {selector.select_provider(SelectionStrategy.PRIORITY).provider_name for _ in range(10)}
        assert picks == {"alpha"}

    def test_priority_ties_keep_registration_order(self, monitor: ProviderHealthMonitor) -> None:
        registry = ProviderRegistry()
        registry.register(ProviderDescriptor(name="first", priority=5))
        registry.register(ProviderDescriptor(name="second", priority=5))
        selector = ProviderSelector(registry, monitor)
        chain = selector.select_providers(SelectionStrategy.PRIORITY, 2)
        assert [r.provider_name for r in chain] == ["first", "second"]

    def test_least_cost(self, selector: ProviderSelector) -> None:
        chain = selector.select_providers(SelectionStrategy.LEAST_COST, 3)
        assert [r.provider_name for r in chain] == ["beta", "gamma", "alpha"]

    def test_fastest_response_puts_unmeasured_last(
        self, selector: ProviderSelector, monitor: ProviderHealthMonitor
    ) -> None:
        monitor.record_success("gamma", 0.2)
        monitor.record_success("beta", 0.9)
        chain = selector.select_providers(SelectionStrategy.FASTEST_RESPONSE, 3)
        assert [r.provider_name for r in chain] == ["gamma", "beta", "alpha"]

    def test_round_robin_is_fair(self, selector: ProviderSelector) -> None:
        picks = Counter(
            selector.select_provider(SelectionStrategy.ROUND_ROBIN).provider_name
            for _ in range(9)
        )
        assert picks == Counter({"alpha": 3, "beta": 3, "gamma": 3})

    def test_round_robin_rotates_in_order(self, selector: ProviderSelector) -> None:
        picks = [
            selector.select_provider(SelectionStrategy.ROUND_ROBIN).provider_name
            for _ in range(4)
        ]
        assert picks == ["alpha", "beta", "gamma", "alpha"]

    def test_random_chain_has_no_duplicates(self, selector: ProviderSelector) -> None:
        chain = selector.select_providers(SelectionStrategy.RANDOM, 3)
        names = [r.provider_name for r in chain]
        assert sorted(names) == ["alpha", "beta", "gamma"]

    def test_specific_is_case_insensitive(self, selector: ProviderSelector) -> None:
        ctx = SelectionContext(specific_provider="GaMmA")
        result = selector.select_provider(SelectionStrategy.SPECIFIC, ctx)
        assert result.provider_name == "gamma"
        assert result.handle == "key-gamma"

    def test_specific_without_name_fails(self, selector: ProviderSelector) -> None:
        result = selector.select_provider(SelectionStrategy.SPECIFIC)
        assert not result.success
        assert result.failure_reason == NO_STRATEGY_PICK

    def test_specific_provider_that_is_filtered_out(
        self, selector: ProviderSelector, monitor: ProviderHealthMonitor
    ) -> None:
        _make_unhealthy(monitor, "gamma")
        ctx = SelectionContext(specific_provider="gamma")
        assert not selector.select_provider(SelectionStrategy.SPECIFIC, ctx).success

    def test_custom_ranker(self, selector: ProviderSelector) -> None:
        ctx = SelectionContext(ranker=_CheapestWithTools())
        chain = selector.select_providers(SelectionStrategy.CUSTOM, 3, ctx)
        assert [r.provider_name for r in chain] == ["alpha"]

    def test_custom_without_ranker_fails(self, selector: ProviderSelector) -> None:
        result = selector.select_provider(SelectionStrategy.CUSTOM)
        assert result.failure_reason == NO_STRATEGY_PICK
