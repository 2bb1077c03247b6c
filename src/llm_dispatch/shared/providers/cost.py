"""Cost tracking and budgets.

``CostTracker`` accumulates token usage and estimated spend per provider.
``BudgetManager`` holds per-provider and global budgets over a period and
fires each alert threshold once per budget period.
"""

from __future__ import annotations

import enum
import threading
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone

import structlog

from llm_dispatch.domain.events import BudgetAlertTriggeredEvent
from llm_dispatch.shared.observability.metrics import BUDGET_ALERTS, PROVIDER_COST, PROVIDER_TOKENS

logger = structlog.get_logger(__name__)

GLOBAL_BUDGET = "__global__"

AlertListener = Callable[[BudgetAlertTriggeredEvent], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Usage ────────────────────────────────────────────────────
@dataclass(frozen=True)
class TokenUsage:
    """Accumulated usage; ``cost`` is in the providers' pricing unit."""

    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    requests: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cost=self.cost + other.cost,
            requests=self.requests + other.requests,
        )


class CostTracker:
    """Thread-safe per-provider usage ledger."""

    def __init__(self) -> None:
        self._usage: dict[str, TokenUsage] = {}
        self._lock = threading.Lock()

    def record_usage(self, provider_name: str, usage: TokenUsage) -> None:
        if not provider_name or not provider_name.strip():
            raise ValueError("provider name must not be empty")
        with self._lock:
            self._usage[provider_name] = self._usage.get(provider_name, TokenUsage()) + usage
        PROVIDER_COST.labels(provider=provider_name).inc(usage.cost)
        PROVIDER_TOKENS.labels(provider=provider_name, direction="input").inc(usage.input_tokens)
        PROVIDER_TOKENS.labels(provider=provider_name, direction="output").inc(usage.output_tokens)

    def total_cost(self, provider_name: str | None = None) -> float:
        """Spend of one provider, or of all providers when no name is given."""
        with self._lock:
            if provider_name is None:
                return sum(u.cost for u in self._usage.values())
            usage = self._usage.get(provider_name)
        return usage.cost if usage else 0.0

    def cost_by_provider(self) -> dict[str, float]:
        with self._lock:
            return {name: u.cost for name, u in self._usage.items()}

    def usage(self, provider_name: str) -> TokenUsage:
        with self._lock:
            return self._usage.get(provider_name, TokenUsage())

    def usage_by_provider(self) -> dict[str, TokenUsage]:
        with self._lock:
            return dict(self._usage)

    def total_usage(self) -> TokenUsage:
        with self._lock:
            usages = list(self._usage.values())
        total = TokenUsage()
        for usage in usages:
            total = total + usage
        return total

    def reset(self, provider_name: str | None = None) -> None:
        with self._lock:
            if provider_name is None:
                self._usage.clear()
            else:
                self._usage.pop(provider_name, None)


# ── Budgets ──────────────────────────────────────────────────
class BudgetPeriod(str, enum.Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    TOTAL = "total"


_PERIOD_LENGTH: dict[BudgetPeriod, timedelta] = {
    BudgetPeriod.DAILY: timedelta(days=1),
    BudgetPeriod.WEEKLY: timedelta(days=7),
    BudgetPeriod.MONTHLY: timedelta(days=30),
}


@dataclass(frozen=True)
class Budget:
    """Spending limit for one provider, or for all of them (``GLOBAL_BUDGET``).

    ``baseline`` is the tracked spend when the current period started;
    only spend above it counts against ``limit``.
    """

    name: str
    limit: float
    period: BudgetPeriod
    started_at: datetime
    baseline: float = 0.0


@dataclass
class BudgetAlert:
    budget: str
    threshold_pct: float
    message: str
    triggered_at: datetime | None = None

    @property
    def is_triggered(self) -> bool:
        return self.triggered_at is not None


@dataclass(frozen=True)
class BudgetStatus:
    name: str
    limit: float
    period: BudgetPeriod
    spent: float
    utilization_pct: float
    started_at: datetime

    @property
    def exceeded(self) -> bool:
        return self.spent >= self.limit


class BudgetManager:
    """Budgets and threshold alerts over a :class:`CostTracker`.

    Periodic budgets roll over lazily: the first read after a period ends
    starts a new period and re-arms that budget's alerts.
    """

    def __init__(self, tracker: CostTracker, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._tracker = tracker
        self._clock = clock
        self._budgets: dict[str, Budget] = {}
        self._alerts: list[BudgetAlert] = []
        self._listeners: list[AlertListener] = []
        self._lock = threading.Lock()

    @property
    def tracker(self) -> CostTracker:
        return self._tracker

    def set_budget(
        self, name: str, limit: float, period: BudgetPeriod = BudgetPeriod.TOTAL
    ) -> Budget:
        """Create or replace the budget ``name``; the new period starts now."""
        if limit <= 0:
            raise ValueError("budget limit must be positive")
        budget = Budget(
            name=name,
            limit=limit,
            period=period,
            started_at=self._clock(),
            baseline=self._spent_total(name),
        )
        with self._lock:
            self._budgets[name] = budget
        logger.info("budget_set", budget=name, limit=limit, period=period.value)
        return budget

    def set_global_budget(
        self, limit: float, period: BudgetPeriod = BudgetPeriod.TOTAL
    ) -> Budget:
        return self.set_budget(GLOBAL_BUDGET, limit, period)

    def remove_budget(self, name: str) -> bool:
        with self._lock:
            removed = self._budgets.pop(name, None) is not None
            self._alerts = [a for a in self._alerts if a.budget != name]
        return removed

    def get_budget(self, name: str) -> Budget | None:
        with self._lock:
            return self._current(name)

    def status(self, name: str) -> BudgetStatus | None:
        with self._lock:
            budget = self._current(name)
        if budget is None:
            return None
        spent = max(self._spent_total(name) - budget.baseline, 0.0)
        return BudgetStatus(
            name=name,
            limit=budget.limit,
            period=budget.period,
            spent=spent,
            utilization_pct=spent / budget.limit * 100.0,
            started_at=budget.started_at,
        )

    def all_statuses(self) -> list[BudgetStatus]:
        with self._lock:
            names = list(self._budgets)
        return [s for s in (self.status(n) for n in names) if s is not None]

    def is_budget_exceeded(self, name: str) -> bool:
        status = self.status(name)
        return status is not None and status.exceeded

    def utilization(self, name: str) -> float:
        """Percent of the budget spent this period (may exceed 100); 0 without a budget."""
        status = self.status(name)
        return status.utilization_pct if status else 0.0

    # ── Alerts ───────────────────────────────────────────────
    def add_alert(self, name: str, threshold_pct: float, message: str | None = None) -> BudgetAlert:
        if threshold_pct <= 0:
            raise ValueError("alert threshold must be positive")
        alert = BudgetAlert(
            budget=name,
            threshold_pct=threshold_pct,
            message=message or f"Budget threshold {threshold_pct:g}% reached for {name}",
        )
        with self._lock:
            self._alerts.append(alert)
        return alert

    def subscribe(self, listener: AlertListener) -> None:
        with self._lock:
            if listener not in self._listeners:
                self._listeners.append(listener)

    def check_alerts(self) -> list[BudgetAlertTriggeredEvent]:
        """Fire every armed alert whose threshold is reached; returns the new events."""
        with self._lock:
            for name in list(self._budgets):
                self._current(name)
            armed = [a for a in self._alerts if not a.is_triggered]
        events: list[BudgetAlertTriggeredEvent] = []
        for alert in armed:
            status = self.status(alert.budget)
            if status is None or status.utilization_pct < alert.threshold_pct:
                continue
            with self._lock:
                if alert.is_triggered:
                    continue
                alert.triggered_at = self._clock()
                listeners = list(self._listeners)
            event = BudgetAlertTriggeredEvent(
                budget=alert.budget,
                threshold_pct=alert.threshold_pct,
                utilization_pct=round(status.utilization_pct, 2),
                spent=status.spent,
                limit=status.limit,
                message=alert.message,
            )
            BUDGET_ALERTS.labels(budget=alert.budget).inc()
            logger.warning(
                "budget_alert_triggered",
                budget=alert.budget,
                threshold_pct=alert.threshold_pct,
                utilization_pct=event.utilization_pct,
                spent=round(status.spent, 6),
                limit=status.limit,
            )
            for listener in listeners:
                try:
                    listener(event)
                except Exception:
                    logger.exception("budget_alert_listener_failed", budget=alert.budget)
            events.append(event)
        return events

    def triggered_alerts(self) -> list[BudgetAlert]:
        with self._lock:
            return [a for a in self._alerts if a.is_triggered]

    def reset_alerts(self) -> None:
        with self._lock:
            for alert in self._alerts:
                alert.triggered_at = None

    # ── Internals ────────────────────────────────────────────
    def _spent_total(self, name: str) -> float:
        if name == GLOBAL_BUDGET:
            return self._tracker.total_cost()
        return self._tracker.total_cost(name)

    def _current(self, name: str) -> Budget | None:
        """Budget for ``name``, rolled into the current period. Caller holds lock."""
        budget = self._budgets.get(name)
        if budget is None:
            return None
        length = _PERIOD_LENGTH.get(budget.period)
        if length is None:
            return budget
        now = self._clock()
        if now < budget.started_at + length:
            return budget

        elapsed_periods = (now - budget.started_at) // length
        budget = replace(
            budget,
            started_at=budget.started_at + elapsed_periods * length,
            baseline=self._spent_total(name),
        )
        self._budgets[name] = budget
        for alert in self._alerts:
            if alert.budget == name:
                alert.triggered_at = None
        logger.info("budget_period_rolled_over", budget=name, period=budget.period.value)
        return budget
