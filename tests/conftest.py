"""Shared test fixtures."""

from __future__ import annotations

import os
import sys

import pytest

# Add src (and the test helpers) to path so imports work
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "../src")))
sys.path.append(os.path.abspath(os.path.dirname(__file__)))

from llm_dispatch.shared.providers import (
    Capability,
    ProviderDescriptor,
    ProviderHealthMonitor,
    ProviderPricing,
    ProviderRegistry,
)


# ═══════════════════════════════════════════════════════════════
#  Fixtures
# ═══════════════════════════════════════════════════════════════
@pytest.fixture
def descriptors() -> list[ProviderDescriptor]:
    return [
        ProviderDescriptor(
            name="alpha",
            capabilities=frozenset({Capability.CHAT, Capability.TOOLS}),
            pricing=ProviderPricing(0.01, 0.03),
            priority=1,
        ),
        ProviderDescriptor(
            name="beta",
            capabilities=frozenset({Capability.CHAT}),
            pricing=ProviderPricing(0.001, 0.002),
            priority=2,
        ),
        ProviderDescriptor(
            name="gamma",
            capabilities=frozenset({Capability.CHAT, Capability.VISION}),
            pricing=ProviderPricing(0.005, 0.005),
            priority=3,
        ),
    ]


@pytest.fixture
def registry(descriptors: list[ProviderDescriptor]) -> ProviderRegistry:
    reg = ProviderRegistry()
    for d in descriptors:
        reg.register(d, handle=f"key-{d.name}")
    return reg


@pytest.fixture
def monitor() -> ProviderHealthMonitor:
    return ProviderHealthMonitor(min_samples=3)
