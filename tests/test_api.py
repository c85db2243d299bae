import pytest
from fastapi.testclient import TestClient

from remindsync.config import Settings
from remindsync.main import build_app


@pytest.fixture
def client(tmp_path):
    settings = Settings(database_url=f"sqlite+aiosqlite:///{tmp_path}/api.db")
    with TestClient(build_app(settings)) as client:
        yield client


def create_reminder(client, **overrides):
    body = {
        "title": "Stretch",
        "category": "Health",
        "frequency": {"type": "custom", "intervalValue": 30, "intervalUnit": "minutes"},
        "time": "09:00",
    }
    body.update(overrides)
    response = client.post("/reminders", json=body)
    assert response.status_code == 201, response.text
    return response.json()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["in_fallback_mode"] is False


def test_create_and_list(client):
    created = create_reminder(client)
    assert created["id"] is not None
    assert created["status"] == "active"
    assert created["next_occurrence"].startswith("In ")

    listed = client.get("/reminders").json()
    assert [r["id"] for r in listed] == [created["id"]]
    assert client.get(f"/reminders/{created['id']}").json()["title"] == "Stretch"


def test_invalid_reminder_is_rejected(client):
    body = {"title": "Stretch", "category": "Health", "frequency": {"type": "weekly", "selectedDays": []}, "time": "09:00"}
    response = client.post("/reminders", json=body)
    assert response.status_code == 422


def test_missing_reminder(client):
    assert client.get("/reminders/999").status_code == 404
    assert client.delete("/reminders/999").status_code == 404


def test_update_toggle_and_delete(client):
    created = create_reminder(client)
    record_id = created["id"]

    updated = client.patch(f"/reminders/{record_id}", json={"title": "Stretch legs"}).json()
    assert updated["title"] == "Stretch legs"

    paused = client.post(f"/reminders/{record_id}/toggle").json()
    assert paused["status"] == "paused"
    assert paused["next_occurrence"] == "Paused"

    assert client.delete(f"/reminders/{record_id}").json() == {"status": "deleted"}
    assert client.get("/reminders").json() == []


def test_snooze_and_complete(client):
    record_id = create_reminder(client)["id"]

    snoozed = client.post(f"/reminders/{record_id}/snooze", json={"minutes": 15}).json()
    assert snoozed["status"] == "snoozed"
    assert client.post(f"/reminders/{record_id}/snooze", json={"minutes": 0}).status_code == 422

    completed = client.post(f"/reminders/{record_id}/complete").json()
    assert completed["status"] == "active"
    assert completed["completion_count"] == 1

    done = client.post(f"/reminders/{record_id}/complete-manually").json()
    assert done["status"] == "completed"
    assert done["next_fire_at"] is None


def test_notification_action_accepts_legacy_payload(client):
    record_id = create_reminder(client)["id"]

    response = client.post(
        "/notifications/action", json={"payload": f"{record_id}|Stretch|Health", "action": "complete"}
    )
    assert response.status_code == 200
    assert response.json()["completion_count"] == 1

    response = client.post("/notifications/action", json={"payload": "not a payload"})
    assert response.status_code == 422


def test_sync_endpoints_without_remote(client):
    create_reminder(client)

    status = client.get("/sync/status").json()
    assert "dead_letter" in status

    result = client.post("/sync/drain").json()
    assert result["skipped_reason"] == "no remote store configured"
    assert client.get("/sync/dead-letter").json() == []
    assert client.post("/sync/dead-letter/1/requeue").status_code == 404


def test_background_permission_signal(client):
    state = client.post("/signals/background-permission", json={"permitted": False}).json()
    assert state["in_fallback_mode"] is True
    assert client.get("/health").json()["status"] == "degraded"

    client.post("/signals/background-permission", json={"permitted": True})
    assert client.post("/health/check").json() == {"in_fallback_mode": False}

    errors = client.get("/errors").json()
    assert any(e["code"] == "BACKGROUND_PERMISSION_DENIED" for e in errors)
