"""HTTP surface tests: PM-tool ingestion, chat webhook, setup API, tracking."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from fieldrelay.core.config import Settings
from fieldrelay.core.errors import PersistenceError
from fieldrelay.core.gateway import create_app
from fieldrelay.core.models import TaskStatus


def _settings(data_dir: str, **overrides) -> Settings:
    values = dict(
        log_level="info",
        log_dir=data_dir,
        data_dir=data_dir,
        public_url="https://relay.example",
        host="127.0.0.1",
        port=8080,
        telegram_bot_token=None,
        telegram_webhook_secret=None,
        telegram_polling=False,
        ingest_rate_limit_calls=120,
        ingest_rate_limit_seconds=60,
        max_integrations_per_owner=10,
        clear_logs_on_launch=False,
    )
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def app(data_dir, transport):
    return create_app(settings=_settings(data_dir), transport=transport)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def connect(app):
    integrations = app.state.integrations
    integration = integrations.create(name="Crew", platform="clickup", owner_chat_id="900")
    integrations.add_worker(integration.integration_id, "111", external_id="u1", external_name="Ana")
    return integration


def test_health(client) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


class TestIngestion:
    def test_create_then_update(self, client, app, connect, transport):
        body = {"task_id": "9", "priority": {"id": 2}, "name": "Fix sink"}
        response = client.post(f"/integrations/{connect.connect_id}", json=body)
        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Task sent to worker"
        assert data["data"]["sentTo"] == "111"
        task_id = data["data"]["taskId"]
        assert app.state.tasks.get(task_id).priority == "high"

        body["name"] = "Fix kitchen sink"
        response = client.post(f"/integrations/{connect.connect_id}", json=body)
        assert response.status_code == 200
        assert response.json()["message"] == "Task updated"
        assert response.json()["data"] == {"taskId": task_id, "sentTo": "111", "status": "updated"}
        assert len(transport.sent) == 1

    def test_unknown_connect_id(self, client):
        response = client.post("/integrations/nope", json={"task_id": "1"})
        assert response.status_code == 404
        assert response.json()["success"] is False

    def test_inactive_integration(self, client, app, connect):
        connect.is_active = False
        app.state.integrations.save(connect)
        response = client.post(f"/integrations/{connect.connect_id}", json={"task_id": "1"})
        assert response.status_code == 404

    def test_unparseable_payload(self, client, connect):
        response = client.post(f"/integrations/{connect.connect_id}", json={"hello": "world"})
        assert response.status_code == 400
        assert response.json() == {"success": False, "error": "Could not parse task from webhook"}

    def test_invalid_json(self, client, connect):
        response = client.post(
            f"/integrations/{connect.connect_id}",
            content=b"{not json",
            headers={"content-type": "application/json"},
        )
        assert response.status_code == 400

    def test_rate_limited(self, data_dir, transport):
        app = create_app(settings=_settings(data_dir, ingest_rate_limit_calls=1), transport=transport)
        integration = app.state.integrations.create(name="Crew", platform="other", owner_chat_id="900")
        client = TestClient(app)
        url = f"/integrations/{integration.connect_id}"
        assert client.post(url, json={"id": "1", "title": "a"}).status_code == 200
        assert client.post(url, json={"id": "2", "title": "b"}).status_code == 429

    def test_verify_integration(self, client, connect):
        client.post(f"/integrations/{connect.connect_id}", json={"task_id": "9", "name": "Fix sink"})
        response = client.get(f"/integrations/{connect.connect_id}")
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["name"] == "Crew"
        assert data["platform"] == "clickup"
        assert data["workersCount"] == 1
        assert data["stats"]["tasks_sent"] == 1


class TestConversationWebhook:
    def test_update_is_processed(self, client, app, connect):
        created = client.post(f"/integrations/{connect.connect_id}", json={"task_id": "9", "name": "Fix sink"})
        task_id = created.json()["data"]["taskId"]
        response = client.post("/conversation", json={
            "update_id": 1, "message": {"message_id": 5, "chat": {"id": 111}, "text": "start"},
        })
        assert response.json() == {"ok": True}
        assert app.state.tasks.get(task_id).status is TaskStatus.STARTED

    def test_garbage_is_acknowledged(self, client):
        response = client.post("/conversation", content=b"garbage", headers={"content-type": "application/json"})
        assert response.status_code == 200
        assert response.json() == {"ok": True}

    def test_wrong_secret_is_dropped(self, data_dir, transport):
        app = create_app(settings=_settings(data_dir, telegram_webhook_secret="s3cret"), transport=transport)
        integration = app.state.integrations.create(name="Crew", platform="other", owner_chat_id="900")
        client = TestClient(app)
        created = client.post(f"/integrations/{integration.connect_id}", json={"id": "1", "title": "a"})
        task_id = created.json()["data"]["taskId"]
        update = {"update_id": 1, "message": {"message_id": 5, "chat": {"id": 900}, "text": "start"}}

        response = client.post("/conversation", json=update, headers={"X-Telegram-Bot-Api-Secret-Token": "wrong"})
        assert response.json() == {"ok": True}
        assert app.state.tasks.get(task_id).status is TaskStatus.SENT

        client.post("/conversation", json=update, headers={"X-Telegram-Bot-Api-Secret-Token": "s3cret"})
        assert app.state.tasks.get(task_id).status is TaskStatus.STARTED


class TestSetupApi:
    def test_requires_owner_header(self, client):
        assert client.get("/setup/integrations").status_code == 401

    def test_create_and_list(self, client):
        headers = {"X-Owner-Chat-Id": "900"}
        response = client.post("/setup/integrations", headers=headers, json={
            "name": "Crew", "platform": "asana", "workers": [{"chat_id": "111", "external_id": "u1"}],
        })
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["webhookUrl"] == f"https://relay.example/integrations/{data['connectId']}"
        assert data["workersCount"] == 1

        listed = client.get("/setup/integrations", headers=headers).json()["data"]["integrations"]
        assert [i["id"] for i in listed] == [data["id"]]
        assert client.get("/setup/integrations", headers={"X-Owner-Chat-Id": "1"}).json()["data"]["integrations"] == []

    def test_invalid_platform(self, client):
        response = client.post("/setup/integrations", headers={"X-Owner-Chat-Id": "900"},
                               json={"name": "Crew", "platform": "jira"})
        assert response.status_code == 400
        assert "Invalid platform" in response.json()["error"]

    def test_add_and_remove_worker(self, client, connect):
        headers = {"X-Owner-Chat-Id": "900"}
        url = f"/setup/integrations/{connect.integration_id}/workers"
        added = client.post(url, headers=headers, json={"chat_id": "222", "external_id": "u2"})
        assert added.json()["message"] == "Worker added"
        assert added.json()["data"]["workersCount"] == 2

        removed = client.delete(url, headers=headers, params={"chat_id": "222"})
        assert removed.json()["data"]["workersCount"] == 1

    def test_other_owner_cannot_edit(self, client, connect):
        url = f"/setup/integrations/{connect.integration_id}/workers"
        response = client.post(url, headers={"X-Owner-Chat-Id": "1"}, json={"chat_id": "222"})
        assert response.status_code == 404


class TestTrackingEndpoints:
    def _share_location(self, client, lat, lng):
        client.post("/conversation", json={"update_id": 2, "message": {
            "message_id": 6, "chat": {"id": 111}, "date": 1700000000,
            "location": {"latitude": lat, "longitude": lng},
        }})

    def test_tracking_and_location(self, client, connect):
        created = client.post(f"/integrations/{connect.connect_id}", json={"task_id": "9", "name": "Fix sink"})
        task_id = created.json()["data"]["taskId"]
        client.post("/conversation", json={"update_id": 1, "message": {"message_id": 5, "chat": {"id": 111}, "text": "start"}})
        self._share_location(client, 51.5, -0.12)

        tracking = client.get(f"/integrations/{connect.connect_id}/tracking").json()["data"]
        assert tracking["active_tracking_count"] == 1
        assert tracking["tasks"][0]["task_id"] == task_id
        assert tracking["tasks"][0]["worker"]["name"] == "Ana"

        by_external = client.get(f"/integrations/{connect.connect_id}/tasks/9/location", params={"history": "true"})
        assert by_external.status_code == 200
        detail = by_external.json()["data"]
        assert detail["has_location"] is True
        assert detail["current_location"]["lat"] == 51.5
        assert detail["history_count"] == 1

    def test_unknown_task(self, client, connect):
        response = client.get(f"/integrations/{connect.connect_id}/tasks/missing/location")
        assert response.status_code == 404


def _failing_write(items):
    raise PersistenceError("disk full")


class TestStoreFailures:
    def test_ingestion_reports_500(self, client, app, connect, monkeypatch):
        monkeypatch.setattr(app.state.tasks, "_write", _failing_write)
        response = client.post(f"/integrations/{connect.connect_id}", json={"task_id": "9", "name": "Fix sink"})
        assert response.status_code == 500
        assert response.json()["success"] is False

    def test_conversation_still_acknowledged(self, client, app, connect, monkeypatch):
        client.post(f"/integrations/{connect.connect_id}", json={"task_id": "9", "name": "Fix sink"})
        monkeypatch.setattr(app.state.tasks, "_write", _failing_write)
        response = client.post("/conversation", json={
            "update_id": 1, "message": {"message_id": 5, "chat": {"id": 111}, "text": "start"},
        })
        assert response.status_code == 200
        assert response.json() == {"ok": True}
