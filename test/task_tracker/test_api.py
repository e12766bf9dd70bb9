"""
Integration tests for the FastAPI REST routes and the /ws/updates WebSocket.
"""

import pytest
from fastapi.testclient import TestClient

from conftest import ALICE, BOB
from task_tracker.api import create_app
from task_tracker.config import Settings


@pytest.fixture
def client(db_path):
    app = create_app(Settings(database_path=db_path, notification_limit=10))
    with TestClient(app) as test_client:
        yield test_client


def headers(user_id: str = ALICE):
    return {"X-User-Id": user_id}


def defaults(client, user_id: str = ALICE):
    categories = client.get("/api/categories", headers=headers(user_id)).json()["data"]
    priorities = client.get("/api/priorities", headers=headers(user_id)).json()["data"]
    return categories[0]["id"], priorities[0]["id"]


def create_task(client, user_id: str = ALICE, **overrides):
    category_id, priority_id = defaults(client, user_id)
    body = {
        "title": "Write report",
        "category_id": category_id,
        "priority_id": priority_id,
        "due_date": "2025-01-10T00:00:00Z",
    }
    body.update(overrides)
    response = client.post("/api/tasks", json=body, headers=headers(user_id))
    assert response.status_code == 201, response.text
    return response.json()["data"]


class TestHealthAndIdentity:

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database_connected"] is True
        assert body["active_websocket_connections"] == 0

    def test_missing_user_header(self, client):
        assert client.get("/api/tasks").status_code == 401

    def test_first_request_seeds_defaults(self, client):
        response = client.get("/api/categories", headers=headers())
        body = response.json()
        assert body["success"] is True
        assert body["count"] == 5
        assert [c["name"] for c in body["data"]][0] == "Work"


class TestTaskRoutes:

    def test_create_returns_resolved_task(self, client):
        task = create_task(client)
        assert task["category"]["name"] == "Work"
        assert task["priority"]["name"] == "Low"
        assert task["completed"] is False
        assert "category_id" not in task

    def test_create_validation_error(self, client):
        category_id, priority_id = defaults(client)
        response = client.post(
            "/api/tasks",
            json={"category_id": category_id, "priority_id": priority_id, "due_date": "2025-01-10"},
            headers=headers(),
        )
        assert response.status_code == 422
        body = response.json()
        assert body["success"] is False
        assert body["error"]["kind"] == "validation_error"
        assert "title" in body["error"]["message"]

    def test_create_with_unknown_category(self, client):
        _, priority_id = defaults(client)
        response = client.post(
            "/api/tasks",
            json={
                "title": "x",
                "category_id": "nope",
                "priority_id": priority_id,
                "due_date": "2025-01-10",
            },
            headers=headers(),
        )
        assert response.status_code == 422
        assert response.json()["error"]["details"] == {"field": "category_id"}

    def test_list_and_filter(self, client):
        create_task(client, title="One")
        create_task(client, title="Two", status="in-progress")
        create_task(client, BOB, title="Bob's")

        body = client.get("/api/tasks", headers=headers()).json()
        assert body["count"] == 2
        assert {task["title"] for task in body["data"]} == {"One", "Two"}

        filtered = client.get("/api/tasks", params={"status": "in-progress"}, headers=headers()).json()
        assert [task["title"] for task in filtered["data"]] == ["Two"]

    def test_complete_recurring_task_spawns_successor(self, client):
        task = create_task(
            client,
            recurrence={"frequency": "monthly", "interval": 1, "day_of_month": 15},
            subtasks=[{"title": "Outline"}],
        )

        response = client.put(f"/api/tasks/{task['id']}", json={"completed": True}, headers=headers())
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "completed"

        successors = client.get(f"/api/tasks/{task['id']}/successors", headers=headers()).json()
        assert successors["count"] == 1
        successor = successors["data"][0]
        assert successor["due_date"].startswith("2025-02-15")
        assert successor["parent_task_id"] == task["id"]
        assert successor["subtasks"][0]["completed"] is False

    def test_other_user_is_forbidden(self, client):
        task = create_task(client)
        defaults(client, BOB)

        response = client.get(f"/api/tasks/{task['id']}", headers=headers(BOB))
        assert response.status_code == 403
        assert response.json()["error"]["kind"] == "forbidden"

        response = client.put(f"/api/tasks/{task['id']}", json={"title": "Mine"}, headers=headers(BOB))
        assert response.status_code == 403

    def test_missing_task(self, client):
        response = client.get("/api/tasks/missing", headers=headers())
        assert response.status_code == 404
        assert response.json()["error"]["kind"] == "not_found"

    def test_contradictory_patch(self, client):
        task = create_task(client)
        response = client.put(
            f"/api/tasks/{task['id']}",
            json={"completed": True, "status": "pending"},
            headers=headers(),
        )
        assert response.status_code == 422

    def test_delete(self, client):
        task = create_task(client)
        assert client.delete(f"/api/tasks/{task['id']}", headers=headers()).status_code == 200
        assert client.get(f"/api/tasks/{task['id']}", headers=headers()).status_code == 404

    def test_subtask_routes(self, client):
        task = create_task(client)
        base = f"/api/tasks/{task['id']}/subtasks"

        added = client.post(base, json={"title": "Draft"}, headers=headers())
        assert added.status_code == 201
        subtask = added.json()["data"]["subtasks"][0]
        assert subtask["order"] == 0

        updated = client.put(f"{base}/{subtask['id']}", json={"completed": True}, headers=headers())
        assert updated.json()["data"]["subtasks"][0]["completed"] is True

        missing = client.put(f"{base}/missing", json={"completed": True}, headers=headers())
        assert missing.status_code == 404

        for _ in range(2):
            removed = client.delete(f"{base}/{subtask['id']}", headers=headers())
            assert removed.status_code == 200
            assert removed.json()["data"]["subtasks"] == []


class TestReferenceRoutes:

    def test_category_crud(self, client):
        created = client.post(
            "/api/categories", json={"name": "Garden", "color": "#00FF00"}, headers=headers()
        )
        assert created.status_code == 201
        category_id = created.json()["data"]["id"]

        renamed = client.put(f"/api/categories/{category_id}", json={"name": "Yard"}, headers=headers())
        assert renamed.json()["data"]["name"] == "Yard"
        assert renamed.json()["data"]["color"] == "#00FF00"

        assert client.put(
            f"/api/categories/{category_id}", json={"name": "Stolen"}, headers=headers(BOB)
        ).status_code == 403

        assert client.delete(f"/api/categories/{category_id}", headers=headers()).status_code == 200
        assert client.delete(f"/api/categories/{category_id}", headers=headers()).status_code == 404

    def test_priority_requires_level(self, client):
        response = client.post("/api/priorities", json={"name": "Urgent", "color": "#000"}, headers=headers())
        assert response.status_code == 422

    def test_tags_resolve_on_tasks(self, client):
        tag = client.post("/api/tags", json={"name": "q1"}, headers=headers()).json()["data"]
        task = create_task(client, tags=[tag["id"]])
        assert task["tags"] == [tag]


class TestNotificationRoutes:

    def test_notification_flow(self, client):
        create_task(client, title="First")
        create_task(client, title="Second")

        listed = client.get("/api/notifications", headers=headers()).json()
        assert listed["count"] == 2
        newest = listed["data"][0]
        assert newest["message"] == 'Task "Second" has been created'

        read = client.put(f"/api/notifications/{newest['id']}/read", headers=headers())
        assert read.json()["data"]["read"] is True

        unread = client.get("/api/notifications", params={"unread_only": True}, headers=headers()).json()
        assert unread["count"] == 1

        assert client.put(
            f"/api/notifications/{newest['id']}/read", headers=headers(BOB)
        ).status_code == 403

        cleared = client.delete("/api/notifications", headers=headers()).json()
        assert cleared["data"] == {"removed": 2}


class TestWebSocket:

    def test_join_and_receive_events(self, client):
        with client.websocket_connect("/ws/updates") as websocket:
            websocket.send_json({"type": "join", "user_id": ALICE})
            assert websocket.receive_json() == {"type": "joined", "user_id": ALICE}

            task = create_task(client)
            event = websocket.receive_json()
            assert event["type"] == "task:created"
            assert event["data"]["id"] == task["id"]

            client.delete(f"/api/tasks/{task['id']}", headers=headers())
            event = websocket.receive_json()
            assert event == {"type": "task:deleted", "timestamp": event["timestamp"], "data": {"id": task["id"]}}

    def test_control_messages(self, client):
        with client.websocket_connect("/ws/updates") as websocket:
            websocket.send_json({"type": "ping"})
            assert websocket.receive_json() == {"type": "pong"}

            websocket.send_json({"type": "join"})
            assert websocket.receive_json()["type"] == "error"

            websocket.send_text("not json")
            assert websocket.receive_json()["type"] == "error"

            websocket.send_json({"type": "join", "user_id": ALICE})
            websocket.receive_json()
            websocket.send_json({"type": "leave"})
            assert websocket.receive_json() == {"type": "left"}

            assert client.get("/healthz").json()["active_websocket_connections"] == 1
