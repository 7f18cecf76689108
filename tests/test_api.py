"""
API tests.

**Validates: HTTP status mapping of domain errors, token auth and the
requirements -> agent -> review flow over HTTP**
"""

import time

import pytest
from fastapi.testclient import TestClient

from taskpilot.api.app import create_app
from taskpilot.models.domain import AgentAction, GenerationStatus, ReviewAction, TaskStatus
from taskpilot.services.base import ServiceContext
from taskpilot.services.container import build_services


@pytest.fixture
def client(container):
    app = create_app(container, start_runner=False)
    with TestClient(app) as test_client:
        yield test_client


def _poll_requirements(client, project_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(f"/projects/{project_id}/requirements/status").json()
        if body and body["generation_status"] in GenerationStatus.TERMINAL:
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"requirements still in flight: {body}")
        time.sleep(0.02)


def test_health(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "ok"
    assert client.get("/health/ready").json()["components"] == {"database": "ok"}


def test_project_crud(client):
    created = client.post("/projects", json={"name": "web"})
    assert created.status_code == 201
    project_id = created.json()["id"]

    assert [p["name"] for p in client.get("/projects").json()] == ["web"]
    assert client.get(f"/projects/{project_id}").json()["name"] == "web"
    assert client.post("/projects", json={"name": ""}).status_code == 422

    assert client.delete(f"/projects/{project_id}").status_code == 204
    missing = client.get(f"/projects/{project_id}")
    assert missing.status_code == 404
    assert missing.json()["category"] == "storage"


def test_task_endpoints(client, project):
    resp = client.post(
        f"/projects/{project.id}/tasks",
        json={"title": "Checkout", "task_type": "architecture", "layer": "backend", "sequence": 2},
    )
    assert resp.status_code == 201
    task = resp.json()
    assert (task["status"], task["source"], task["stage_started_at"]) == ("todo", "manual", None)

    assert client.post(f"/projects/{project.id}/tasks", json={"title": "x", "task_type": "epic"}).status_code == 422
    assert client.post(f"/projects/{project.id}/tasks", json={"title": "   "}).status_code == 422
    assert client.post("/projects/999/tasks", json={"title": "Orphan"}).status_code == 404

    moved = client.post(f"/tasks/{task['id']}/status", json={"status": "inprogress"})
    assert moved.status_code == 200
    assert moved.json()["stage_started_at"] is not None

    stale = client.post(f"/tasks/{task['id']}/status", json={"status": "inreview", "expected_status": "todo"})
    assert stale.status_code == 409
    assert stale.json()["category"] == "conflict"

    listed = client.get(f"/projects/{project.id}/tasks", params={"status": "inprogress"}).json()
    assert [t["id"] for t in listed] == [task["id"]]
    assert client.get(f"/tasks/{task['id']}/depth").json() == {"task_id": task["id"], "depth": 0}


def test_timed_out_endpoint(client, db, project, clock):
    task = db.create_task(project.id, "Slow", status=TaskStatus.IN_PROGRESS)
    clock.advance(minutes=30)

    resp = client.get(f"/projects/{project.id}/tasks/timed-out")
    assert [t["id"] for t in resp.json()] == [task.id]
    assert client.get(f"/projects/{project.id}/tasks/timed-out", params={"threshold_seconds": 3600}).json() == []


def test_breakdown_endpoint(client, db, project):
    simple = db.create_task(project.id, "Simple", complexity_score=3)
    complex_task = db.create_task(project.id, "Payments", complexity_score=8, layer="backend")

    refused = client.post(f"/tasks/{simple.id}/breakdown", json={})
    assert refused.status_code == 422
    assert refused.json()["category"] == "validation"

    resp = client.post(f"/tasks/{complex_task.id}/breakdown", json={})
    assert resp.status_code == 201
    subtasks = resp.json()
    assert [s["parent_task_id"] for s in subtasks] == [complex_task.id] * 3
    assert client.get(f"/tasks/{complex_task.id}").json()["status"] == "cancelled"
    assert len(client.get(f"/tasks/{complex_task.id}/subtasks").json()) == 3

    client.put(f"/tasks/{subtasks[0]['id']}/complexity", json={"complexity_score": 9})
    too_deep = client.post(f"/tasks/{subtasks[0]['id']}/breakdown", json={})
    assert too_deep.status_code == 422
    assert too_deep.json()["category"] == "hierarchy"

    assert client.put(f"/tasks/{subtasks[0]['id']}/complexity", json={"complexity_score": 11}).status_code == 422


def test_requirements_flow(client, project):
    resp = client.post(f"/projects/{project.id}/requirements", json={"raw_requirements": "- Build login page"})
    assert resp.status_code == 202
    assert resp.json()["generation_status"] == GenerationStatus.PENDING

    final = _poll_requirements(client, project.id)
    assert final["generation_status"] == GenerationStatus.COMPLETED
    assert final["analysis_result"]["features"][0]["name"] == "Build login page"

    tasks = client.get(f"/projects/{project.id}/tasks").json()
    assert [t["sequence"] for t in tasks] == [0, 1, 2]
    assert {t["source"] for t in tasks} == {"ai_generated"}

    fetched = client.get(f"/projects/{project.id}/requirements/{final['id']}")
    assert fetched.status_code == 200
    assert client.get(f"/projects/999/requirements/{final['id']}").status_code == 404

    deleted = client.delete(f"/projects/{project.id}/requirements").json()
    assert deleted == {"project_id": project.id, "deleted": 1}
    assert client.get(f"/projects/{project.id}/requirements/status").json() is None


def test_requirements_conflict_and_validation(client, db, project):
    assert client.post(f"/projects/{project.id}/requirements", json={"raw_requirements": "  "}).status_code == 422

    db.create_requirements(project.id, "- already queued")
    resp = client.post(f"/projects/{project.id}/requirements", json={"raw_requirements": "- second"})
    assert resp.status_code == 409
    assert resp.json()["metadata"]["generation_status"] == GenerationStatus.PENDING


def test_agent_activity_endpoints(client, db, project):
    db.create_task(project.id, "Only task")

    assert client.post(f"/projects/{project.id}/agent-activity/enable").json()["enabled"] is True
    updated = client.put(f"/projects/{project.id}/agent-activity/settings", json={"interval_seconds": 15})
    assert updated.json()["interval_seconds"] == 15
    assert client.put(f"/projects/{project.id}/agent-activity/settings", json={"interval_seconds": 0}).status_code == 422

    tick = client.post(f"/projects/{project.id}/agent-activity/trigger").json()
    assert (tick["action"], tick["logged"]) == (AgentAction.SELECTED, True)

    logs = client.get(f"/projects/{project.id}/agent-activity/logs").json()
    assert [entry["action"] for entry in logs] == [AgentAction.SELECTED]

    status = client.get(f"/projects/{project.id}/agent-activity/status").json()
    assert status["last_selected_task_id"] == tick["task_id"]

    client.post(f"/projects/{project.id}/agent-activity/disable")
    quiet = client.post(f"/projects/{project.id}/agent-activity/trigger").json()
    assert quiet["logged"] is False
    assert client.post("/projects/999/agent-activity/trigger").status_code == 404


def test_review_endpoints(client, db, project):
    task = db.create_task(project.id, "Review me", status=TaskStatus.IN_REVIEW)

    workspace = client.post(f"/tasks/{task.id}/workspaces", json={"path": "/tmp/ws-api", "branch": "feature/api"})
    assert workspace.status_code == 201
    client.put(f"/projects/{project.id}/review-automation/settings", json={"enabled": True, "run_tests_enabled": False})

    outcome = client.post(f"/tasks/{task.id}/review").json()
    assert outcome["action"] == ReviewAction.MERGE_COMPLETED
    assert outcome["workspace_id"] == workspace.json()["id"]
    assert client.get(f"/tasks/{task.id}").json()["status"] == TaskStatus.DONE

    assert [e["action"] for e in client.get(f"/tasks/{task.id}/review-logs").json()] == [ReviewAction.MERGE_COMPLETED]
    assert client.get(f"/tasks/{task.id}/merge-conflicts").json()["merge_conflicts"] == 0
    assert client.get(f"/tasks/{task.id}/workspaces").json()[0]["archived"] is True

    status = client.get(f"/projects/{project.id}/review-automation/status").json()
    assert (status["last_action"], status["run_tests_enabled"]) == (ReviewAction.MERGE_COMPLETED, False)
    assert client.post(f"/projects/{project.id}/review-automation/trigger").json() == []


def test_api_token_required_when_configured(config, db, bus, test_runner, merger):
    context = ServiceContext(config=config.model_copy(update={"api_token": "s3cret"}))
    container = build_services(context, db, event_bus=bus, test_runner=test_runner, merger=merger)

    with TestClient(create_app(container, start_runner=False)) as client:
        assert client.get("/health").status_code == 200
        assert client.get("/projects").status_code == 401
        assert client.get("/projects", headers={"Authorization": "Bearer wrong"}).status_code == 401
        assert client.get("/projects", headers={"Authorization": "Bearer s3cret"}).status_code == 200
        assert client.get("/projects", headers={"X-TaskPilot-Token": "s3cret"}).status_code == 200


def test_end_to_end_requirements_to_merge(client, project):
    """Requirements become tasks, the agent starts the first one, review merges it."""
    client.post(f"/projects/{project.id}/requirements", json={"raw_requirements": "- Build login page"})
    assert _poll_requirements(client, project.id)["generation_status"] == GenerationStatus.COMPLETED

    client.post(f"/projects/{project.id}/agent-activity/enable")
    tick = client.post(f"/projects/{project.id}/agent-activity/trigger").json()
    first = client.get(f"/tasks/{tick['task_id']}").json()
    assert (first["title"], first["status"], first["sequence"]) == ("Design frontend architecture", TaskStatus.IN_PROGRESS, 0)
    assert first["source"] == "ai_generated"

    client.post(f"/tasks/{first['id']}/workspaces", json={"path": "/tmp/ws-e2e", "branch": "feature/login"})
    client.post(f"/tasks/{first['id']}/status", json={"status": "inreview", "expected_status": "inprogress"})
    client.post(f"/projects/{project.id}/review-automation/enable")

    outcomes = client.post(f"/projects/{project.id}/review-automation/trigger").json()
    assert [o["action"] for o in outcomes] == [ReviewAction.MERGE_COMPLETED]
    assert client.get(f"/tasks/{first['id']}").json()["status"] == TaskStatus.DONE

    next_tick = client.post(f"/projects/{project.id}/agent-activity/trigger").json()
    assert client.get(f"/tasks/{next_tick['task_id']}").json()["title"] == "Implement Build login page"
