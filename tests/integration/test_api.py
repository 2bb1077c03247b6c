"""Integration tests for API endpoints using FastAPI TestClient."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from llm_dispatch.config import ProviderSettings, get_settings
from llm_dispatch.dependencies import build_runtime
from llm_dispatch.main import create_app

from fakes import RecordingInvoker


@pytest.fixture
def settings():
    return get_settings(
        providers=[
            ProviderSettings(name="primary", api="echo", priority=1),
            ProviderSettings(name="backup", api="echo", priority=2),
        ],
        retry_max_attempts=0,
        retry_initial_delay_seconds=0.0,
    )


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest.fixture
def client(app):
    return TestClient(app)


def _task_body(task_id: str = "api-task") -> dict:
    return {
        "id": task_id,
        "name": "api",
        "steps": [
            {"id": "ask", "name": "ask", "order": 1, "prompt": "hello"},
            {
                "id": "check",
                "order": 2,
                "type": "validation",
                "depends_on": ["ask"],
            },
        ],
    }


class TestHealthEndpoints:
    def test_health_check(self, client):
        resp = client.get("/api/v1/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["providers"] == {"primary": "unknown", "backup": "unknown"}

    def test_health_degraded_without_providers(self):
        settings = get_settings(
            provider_backend="http", openai_api_key="", anthropic_api_key="", google_api_key=""
        )
        client = TestClient(create_app(settings))
        resp = client.get("/api/v1/health")
        assert resp.status_code == 503
        assert resp.json()["status"] == "degraded"

    def test_metrics_endpoint(self, client):
        client.get("/api/v1/health")
        resp = client.get("/api/v1/metrics")
        assert resp.status_code == 200
        assert b"http_requests_total" in resp.content

    def test_request_id_header(self, client):
        resp = client.get("/api/v1/health", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"
        assert float(resp.headers["X-Process-Time"]) >= 0

    def test_generated_request_id(self, client):
        resp = client.get("/api/v1/health")
        assert len(resp.headers["X-Request-ID"]) == 32

    def test_metrics_use_route_templates(self, client):
        client.get("/api/v1/tasks/some-task-id")
        body = client.get("/api/v1/metrics").text
        assert 'endpoint="/api/v1/tasks/{task_id}"' in body
        assert "some-task-id" not in body


class TestProviderEndpoints:
    def test_provider_health(self, client):
        resp = client.get("/api/v1/providers/health")
        assert resp.status_code == 200
        data = resp.json()
        assert [p["provider_name"] for p in data] == ["primary", "backup"]
        assert data[0]["circuit_state"] == "closed"
        assert data[0]["state"] == "unknown"

    def test_reset_provider(self, client):
        resp = client.post("/api/v1/providers/primary/reset")
        assert resp.status_code == 200
        assert resp.json() == {"status": "reset", "provider_name": "primary"}

    def test_reset_unknown_provider(self, client):
        resp = client.post("/api/v1/providers/nobody/reset")
        assert resp.status_code == 404
        assert resp.json()["code"] == "PROVIDER_NOT_FOUND"

    def test_circuits_listed_after_use(self, client):
        assert client.get("/api/v1/circuits").json() == []
        client.post("/api/v1/tasks", json=_task_body())
        circuits = client.get("/api/v1/circuits").json()
        assert [c["name"] for c in circuits] == ["primary"]
        assert circuits[0]["successful_calls"] == 1


class TestTaskEndpoints:
    def test_run_task(self, client):
        resp = client.post("/api/v1/tasks", json=_task_body())
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "completed"
        assert data["final_result"] == "Validation passed"
        assert data["steps"][0]["result"] == "[primary] hello"

    def test_get_task(self, client):
        client.post("/api/v1/tasks", json=_task_body("lookup"))
        resp = client.get("/api/v1/tasks/lookup")
        assert resp.status_code == 200
        assert resp.json()["task_id"] == "lookup"

    def test_get_unknown_task(self, client):
        resp = client.get("/api/v1/tasks/missing")
        assert resp.status_code == 404
        assert resp.json()["code"] == "TASK_NOT_FOUND"

    def test_cancel_finished_task(self, client):
        client.post("/api/v1/tasks", json=_task_body("done"))
        resp = client.post("/api/v1/tasks/done/cancel")
        assert resp.status_code == 200
        assert resp.json() == {"task_id": "done", "cancelled": False}

    def test_cancel_unknown_task(self, client):
        assert client.post("/api/v1/tasks/missing/cancel").status_code == 404

    def test_invalid_definition(self, client):
        body = _task_body()
        body["steps"][1]["depends_on"] = ["ghost"]
        resp = client.post("/api/v1/tasks", json=body)
        assert resp.status_code == 422
        assert resp.json()["code"] == "INVALID_TASK_DEFINITION"

    def test_failover_behind_the_api(self, settings):
        invoker = RecordingInvoker({"primary": [ConnectionError("down")]})
        runtime = build_runtime(settings, invoker=invoker)
        client = TestClient(create_app(settings, runtime=runtime))

        resp = client.post("/api/v1/tasks", json=_task_body())
        assert resp.json()["status"] == "completed"
        assert invoker.calls == ["primary", "backup"]

        health = {p["provider_name"]: p for p in client.get("/api/v1/providers/health").json()}
        assert health["primary"]["total_failures"] == 1
        assert health["backup"]["total_successes"] == 1

    def test_step_failure_is_reported_in_the_run(self, settings):
        invoker = RecordingInvoker({"primary": [ValueError("bug")]})
        runtime = build_runtime(settings, invoker=invoker)
        client = TestClient(create_app(settings, runtime=runtime))

        # Step failures are reported in the run, not as HTTP errors
        resp = client.post("/api/v1/tasks", json=_task_body())
        assert resp.status_code == 200
        assert resp.json()["status"] == "failed"
        assert resp.json()["errors"] == ["Step ask: ValueError: bug"]


class TestCoordinationEndpoint:
    def test_default_agents_sequential(self, client):
        resp = client.post("/api/v1/coordination", json={"task": "plan a trip"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["success"] is True
        assert data["strategy"] == "sequential"
        assert [a["agent_name"] for a in data["agents"]] == ["analyst", "critic"]

    def test_parallel_override(self, client):
        resp = client.post(
            "/api/v1/coordination", json={"task": "plan a trip", "strategy": "parallel"}
        )
        data = resp.json()
        assert data["strategy"] == "parallel"
        assert data["final_answer"].startswith("[primary] Aggregate these agent responses")

    def test_blank_task_rejected(self, client):
        assert client.post("/api/v1/coordination", json={"task": ""}).status_code == 422


class TestHealthCheckEndpoint:
    def test_health_check_records_outcome(self, settings):
        invoker = RecordingInvoker({"backup": [ConnectionError("down")]})
        runtime = build_runtime(settings, invoker=invoker)
        client = TestClient(create_app(settings, runtime=runtime))

        resp = client.post("/api/v1/providers/primary/health-check")
        assert resp.status_code == 200
        data = resp.json()
        assert data["provider_name"] == "primary"
        assert data["is_healthy"] is True
        assert data["error"] is None

        resp = client.post("/api/v1/providers/backup/health-check")
        assert resp.json()["is_healthy"] is False
        assert "down" in resp.json()["error"]

        health = {p["provider_name"]: p for p in client.get("/api/v1/providers/health").json()}
        assert health["primary"]["total_successes"] == 1
        assert health["backup"]["total_failures"] == 1
        # Health checks bypass the circuit breakers
        assert client.get("/api/v1/circuits").json() == []

    def test_health_check_unknown_provider(self, client):
        resp = client.post("/api/v1/providers/nobody/health-check")
        assert resp.status_code == 404
        assert resp.json()["code"] == "PROVIDER_NOT_FOUND"


@pytest.fixture
def priced_settings():
    return get_settings(
        providers=[
            ProviderSettings(
                name="primary",
                api="echo",
                priority=1,
                input_cost_per_1k=1.0,
                output_cost_per_1k=1.0,
            ),
        ],
        retry_max_attempts=0,
        retry_initial_delay_seconds=0.0,
        global_budget_limit=3.0,
        budget_alert_thresholds=[50.0],
    )


class TestCostEndpoint:
    def test_empty_report(self, client):
        resp = client.get("/api/v1/costs")
        assert resp.status_code == 200
        assert resp.json() == {
            "total_cost": 0.0,
            "providers": [],
            "budgets": [],
            "triggered_alerts": [],
        }

    def test_report_after_task(self, priced_settings):
        runtime = build_runtime(priced_settings, invoker=RecordingInvoker(tokens=(1000, 1000)))
        client = TestClient(create_app(priced_settings, runtime=runtime))
        client.post("/api/v1/tasks", json=_task_body())

        data = client.get("/api/v1/costs").json()
        assert data["total_cost"] == pytest.approx(2.0)
        assert data["providers"] == [
            {
                "provider_name": "primary",
                "input_tokens": 1000,
                "output_tokens": 1000,
                "cost": 2.0,
                "requests": 1,
            }
        ]
        budget = data["budgets"][0]
        assert budget["name"] == "__global__"
        assert budget["utilization_pct"] == pytest.approx(66.67)
        assert budget["exceeded"] is False
        assert [a["threshold_pct"] for a in data["triggered_alerts"]] == [50.0]

    def test_enforced_budget_fails_further_steps(self, priced_settings):
        settings = priced_settings.model_copy(update={"budget_enforcement": True})
        invoker = RecordingInvoker(tokens=(1000, 1000))
        runtime = build_runtime(settings, invoker=invoker)
        client = TestClient(create_app(settings, runtime=runtime))

        assert client.post("/api/v1/tasks", json=_task_body("one")).json()["status"] == "completed"
        assert client.post("/api/v1/tasks", json=_task_body("two")).json()["status"] == "completed"
        resp = client.post("/api/v1/tasks", json=_task_body("three"))
        assert resp.json()["status"] == "failed"
        assert "BudgetExceededError" in resp.json()["errors"][0]
        assert invoker.calls == ["primary", "primary"]
        assert client.get("/api/v1/costs").json()["budgets"][0]["exceeded"] is True
