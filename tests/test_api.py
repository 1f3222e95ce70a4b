"""
API 端点测试
"""
import time

import pytest
from fastapi.testclient import TestClient

from assistant_workflows.api import create_app
from assistant_workflows.config import Settings
from assistant_workflows.core import WorkflowEngine
from assistant_workflows.integrations import InMemoryNotificationService


USER = {"X-User-Id": "user-1"}


def workflow_payload(**overrides):
    data = {
        "name": "Greeting",
        "variables": {"greeting": "hello"},
        "steps": [
            {"id": "say", "type": "LLM_PROMPT", "config": {"prompt": "{{variables.greeting}} {{triggerPayload.name}}"}},
            {"id": "tell", "type": "NOTIFICATION", "config": {"title": "Hi", "content": "{{stepResults.say.content}}"}},
        ],
    }
    data.update(overrides)
    return data


def wait_for_terminal(client, execution_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        response = client.get(f"/api/v1/executions/{execution_id}")
        body = response.json()
        if body["status"] != "RUNNING" or time.monotonic() > deadline:
            return body
        time.sleep(0.02)


@pytest.fixture
def notifications():
    return InMemoryNotificationService()


@pytest.fixture
def client(notifications):
    """创建测试客户端（内存存储，调度器不启动）"""
    engine = WorkflowEngine(notification_service=notifications)
    app = create_app(Settings(scheduler_enabled=False), engine=engine)
    with TestClient(app) as client:
        yield client


@pytest.fixture
def workflow_id(client):
    response = client.post("/api/v1/workflows/", json=workflow_payload(), headers=USER)
    assert response.status_code == 201
    return response.json()["id"]


class TestWorkflowAPI:
    """工作流 API 测试类"""

    def test_create_workflow(self, client):
        response = client.post("/api/v1/workflows/", json=workflow_payload(), headers=USER)

        assert response.status_code == 201
        data = response.json()
        assert data["name"] == "Greeting"
        assert data["owner_id"] == "user-1"
        assert data["step_count"] == 2
        assert [s["id"] for s in data["steps"]] == ["say", "tell"]
        assert data["steps"][0]["name"] == "say"

    def test_invalid_workflow_returns_400(self, client):
        payload = workflow_payload(steps=[{"id": "check", "type": "CONDITIONAL", "config": {}}])
        response = client.post("/api/v1/workflows/", json=payload)

        assert response.status_code == 400
        detail = response.json()["detail"]
        assert detail["error"] == "validation_error"
        assert any("condition" in e for e in detail["details"])

    def test_unknown_step_type_rejected_by_schema(self, client):
        payload = workflow_payload(steps=[{"id": "x", "type": "SHELL"}])
        response = client.post("/api/v1/workflows/", json=payload)
        assert response.status_code == 422

    def test_list_workflows_by_owner(self, client, workflow_id):
        client.post("/api/v1/workflows/", json=workflow_payload(name="Other"), headers={"X-User-Id": "user-2"})

        response = client.get("/api/v1/workflows/", headers=USER)
        assert response.status_code == 200
        data = response.json()
        assert [w["id"] for w in data["items"]] == [workflow_id]
        assert (data["offset"], data["limit"]) == (0, 20)

    def test_get_missing_workflow(self, client):
        response = client.get("/api/v1/workflows/missing")
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "not_found"

    def test_execute_workflow(self, client, notifications, workflow_id):
        response = client.post(
            f"/api/v1/workflows/{workflow_id}/execute",
            json={"payload": {"name": "Ada"}}
        )

        assert response.status_code == 202
        started = response.json()
        assert started["trigger_id"] == "api"

        execution = wait_for_terminal(client, started["execution_id"])
        assert execution["status"] == "COMPLETED"
        assert execution["trigger_payload"] == {"name": "Ada"}
        assert execution["output"]["say"]["content"] == "hello Ada"
        assert [s["step_id"] for s in execution["steps"]] == ["say", "tell"]
        assert notifications.for_user("user-1")[0].content == "hello Ada"

        history = client.get(f"/api/v1/workflows/{workflow_id}/executions").json()
        assert [e["execution_id"] for e in history] == [started["execution_id"]]
        completed = client.get(f"/api/v1/workflows/{workflow_id}/executions", params={"status": "FAILED"})
        assert completed.json() == []

    def test_disabled_workflow_cannot_execute(self, client, workflow_id):
        response = client.post(f"/api/v1/workflows/{workflow_id}/disable")
        assert response.json()["is_enabled"] is False

        response = client.post(f"/api/v1/workflows/{workflow_id}/execute", json={})
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "disabled"

        client.post(f"/api/v1/workflows/{workflow_id}/enable")
        response = client.post(f"/api/v1/workflows/{workflow_id}/execute", json={})
        assert response.status_code == 202


class TestExecutionAPI:

    def test_cancel_running_execution(self, client):
        payload = workflow_payload(steps=[
            {"id": "wait", "type": "DELAY", "config": {"delayMs": 300}},
            {"id": "after", "type": "DELAY", "config": {"delayMs": 1}},
        ])
        workflow_id = client.post("/api/v1/workflows/", json=payload).json()["id"]
        execution_id = client.post(f"/api/v1/workflows/{workflow_id}/execute", json={}).json()["execution_id"]

        response = client.post(f"/api/v1/executions/{execution_id}/cancel")
        assert response.status_code == 200
        assert response.json()["status"] == "CANCELLED"

        time.sleep(0.4)
        execution = client.get(f"/api/v1/executions/{execution_id}").json()
        assert execution["status"] == "CANCELLED"
        assert "after" not in [s["step_id"] for s in execution["steps"]]

        again = client.post(f"/api/v1/executions/{execution_id}/cancel")
        assert again.status_code == 409
        assert again.json()["detail"]["error"] == "invalid_state"

    def test_missing_execution(self, client):
        response = client.get("/api/v1/executions/missing")
        assert response.status_code == 404


class TestTaskAPI:

    def create_task(self, client, **overrides):
        data = {"name": "hourly", "schedule": {"type": "RECURRING", "interval": 3_600_000}}
        data.update(overrides)
        return client.post("/api/v1/tasks/", json=data, headers=USER)

    def test_create_and_get_task(self, client):
        response = self.create_task(client)
        assert response.status_code == 201
        task = response.json()
        assert task["type"] == "RECURRING"
        assert task["owner_id"] == "user-1"
        assert task["next_run_at"] is not None

        fetched = client.get(f"/api/v1/tasks/{task['id']}").json()
        assert fetched["schedule"]["interval"] == 3_600_000

    def test_invalid_cron_returns_400(self, client):
        response = self.create_task(client, schedule={"type": "CRON", "cron": "not a cron"})
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "validation_error"

    def test_task_for_missing_workflow(self, client):
        response = self.create_task(client, workflow_id="missing")
        assert response.status_code == 404

    def test_trigger_pause_resume_cancel(self, client):
        task = self.create_task(client).json()

        run = client.post(f"/api/v1/tasks/{task['id']}/trigger")
        assert run.status_code == 200
        assert run.json()["status"] == "COMPLETED"

        after_trigger = client.get(f"/api/v1/tasks/{task['id']}").json()
        assert after_trigger["next_run_at"] == task["next_run_at"]
        assert after_trigger["run_count"] == 1

        assert client.post(f"/api/v1/tasks/{task['id']}/pause").json()["is_active"] is False
        paused = client.post(f"/api/v1/tasks/{task['id']}/trigger")
        assert paused.status_code == 409

        assert client.post(f"/api/v1/tasks/{task['id']}/resume").json()["is_active"] is True

        cancelled = client.delete(f"/api/v1/tasks/{task['id']}")
        assert cancelled.json()["is_active"] is False

        runs = client.get(f"/api/v1/tasks/{task['id']}/runs").json()
        assert len(runs) == 1

    def test_list_tasks_filters(self, client):
        self.create_task(client)
        self.create_task(client, name="daily", schedule={"type": "CRON", "cron": "0 8 * * *"})

        data = client.get("/api/v1/tasks/", params={"type": "CRON"}).json()
        assert [t["name"] for t in data["items"]] == ["daily"]
        assert len(client.get("/api/v1/tasks/", params={"is_active": True}).json()["items"]) == 2


class TestMonitoringAPI:

    def test_health(self, client):
        response = client.get("/api/v1/monitoring/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"] == {"database": True, "scheduler": False}

    def test_engine_and_scheduler_stats(self, client):
        engine = client.get("/api/v1/monitoring/engine").json()
        assert engine["running_executions"] == 0
        assert "LLM_PROMPT" in engine["step_types"]
        assert engine["tools"] == []

        scheduler = client.get("/api/v1/monitoring/scheduler").json()
        assert scheduler["running"] is False

    def test_scheduler_started_when_enabled(self):
        app = create_app(Settings(scheduler_enabled=True), engine=WorkflowEngine())
        with TestClient(app) as client:
            assert client.get("/api/v1/monitoring/scheduler").json()["running"] is True

    def test_request_id_header(self, client):
        response = client.get("/", headers={"X-Request-ID": "abc"})
        assert response.headers["X-Request-ID"] == "abc"
        assert "X-Process-Time" in response.headers
        assert response.json()["status"] == "running"

    def test_request_log_names_caller(self, client, caplog):
        with caplog.at_level("INFO", logger="assistant_workflows.api.middleware"):
            client.get("/api/v1/workflows/", headers={**USER, "X-Request-ID": "req-7"})

        completed = [r.getMessage() for r in caplog.records if r.getMessage().startswith("Request completed")]
        assert len(completed) == 1
        assert "[request_id=req-7] [user=user-1] [status=200]" in completed[0]
