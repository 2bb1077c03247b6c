"""Prometheus metrics for the dispatch service."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


# ── HTTP metrics ─────────────────────────────────────────────
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
)

HTTP_REQUEST_DURATION = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# ── Provider metrics ─────────────────────────────────────────
PROVIDER_REQUESTS = Counter(
    "llm_provider_requests_total",
    "Provider call attempts",
    ["provider", "outcome"],  # success / failure
)

PROVIDER_LATENCY = Histogram(
    "llm_provider_latency_seconds",
    "Provider call latency",
    ["provider"],
    buckets=(0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0),
)

PROVIDER_HEALTH_STATE = Gauge(
    "llm_provider_health_state",
    "Provider health (-1 unknown, 0 unhealthy, 1 degraded, 2 healthy)",
    ["provider"],
)

PROVIDER_FAILOVERS = Counter(
    "llm_provider_failovers_total",
    "Calls served by a provider other than the first choice",
)

SELECTION_FAILURES = Counter(
    "llm_provider_selection_failures_total",
    "Selections that produced no candidate",
    ["strategy"],
)

# ── Cost metrics ─────────────────────────────────────────────
PROVIDER_COST = Counter(
    "llm_provider_cost_total",
    "Estimated spend per provider, in pricing units",
    ["provider"],
)

PROVIDER_TOKENS = Counter(
    "llm_provider_tokens_total",
    "Tokens reported by providers",
    ["provider", "direction"],  # input / output
)

BUDGET_ALERTS = Counter(
    "llm_budget_alerts_total",
    "Budget alert thresholds crossed",
    ["budget"],
)

HEALTH_PROBES = Counter(
    "llm_provider_health_probes_total",
    "Active health probes",
    ["provider", "outcome"],
)

# ── Resilience metrics ───────────────────────────────────────
CIRCUIT_TRANSITIONS = Counter(
    "circuit_breaker_transitions_total",
    "Circuit breaker state changes",
    ["breaker", "new_state"],
)

CIRCUIT_REJECTIONS = Counter(
    "circuit_breaker_rejections_total",
    "Calls rejected by an open circuit",
    ["breaker"],
)

RETRY_ATTEMPTS = Counter(
    "retry_attempts_total",
    "Retries scheduled by a retry policy",
    ["policy"],
)

# ── Orchestration metrics ────────────────────────────────────
TASK_RUNS = Counter(
    "task_runs_total",
    "Task runs by final status",
    ["status"],
)

TASK_STEP_DURATION = Histogram(
    "task_step_duration_seconds",
    "Task step duration",
    ["step_type"],
    buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0),
)

COORDINATION_RUNS = Counter(
    "coordination_runs_total",
    "Multi-agent runs",
    ["strategy", "status"],
)

AGENT_INVOCATIONS = Counter(
    "agent_invocations_total",
    "Agent invocations",
    ["agent", "status"],
)
