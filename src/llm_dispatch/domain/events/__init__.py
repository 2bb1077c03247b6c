"""Domain events — typed records of things that happened in the domain.

Events are pushed to subscribers *after* the state change is committed,
outside of any lock held by the emitting component.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class DomainEvent:
    """Base class for all domain events."""

    event_type: str = "DOMAIN_EVENT"
    occurred_at: datetime = field(default_factory=_utcnow)
    metadata: dict[str, Any] = field(default_factory=dict)


# ── Resilience events ────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class CircuitStateChangedEvent(DomainEvent):
    event_type: str = "CIRCUIT_STATE_CHANGED"
    breaker: str = ""
    previous_state: str = ""
    new_state: str = ""
    reason: str = ""


# ── Cost events ──────────────────────────────────────────────
@dataclass(frozen=True, slots=True)
class BudgetAlertTriggeredEvent(DomainEvent):
    event_type: str = "BUDGET_ALERT_TRIGGERED"
    budget: str = ""
    threshold_pct: float = 0.0
    utilization_pct: float = 0.0
    spent: float = 0.0
    limit: float = 0.0
    message: str = ""
