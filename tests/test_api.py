import pytest
from fastapi.testclient import TestClient

from solar_api.errors import DispatchFailed
from solar_api.main import app
from solar_api.security import create_access_token
from solar_api.settings import settings


@pytest.fixture
def client(coordinator):
    previous = app.state.coordinator
    app.state.coordinator = coordinator
    yield TestClient(app)
    app.state.coordinator = previous


@pytest.fixture
def test_headers():
    return {"Authorization": f"Bearer {settings.test_token}"}


def _bearer(store, auth_user):
    return {"Authorization": f"Bearer {create_access_token(store.get_user(auth_user.id))}"}


def test_root_and_health(client):
    assert client.get("/").json()["message"] == "Solar Controller API"
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["mqtt"] is False
    assert body["devices_online"] == 0


def test_missing_token_is_401(client):
    assert client.get("/api/devices").status_code == 401


def test_bad_token_is_403(client):
    resp = client.get("/api/devices", headers={"Authorization": "Bearer not-a-jwt"})
    assert resp.status_code == 403


def test_test_login_issues_usable_jwt(client):
    resp = client.post("/api/auth/test")
    assert resp.status_code == 200
    body = resp.json()
    assert body["user"]["email"] == "test@solar.com"

    me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
    assert me.status_code == 200
    assert me.json()["id"] == body["user"]["id"]


def test_web_temp_token_maps_to_web_user(client):
    resp = client.get("/api/auth/me", headers={"Authorization": "Bearer web-temp-token-abc"})
    assert resp.json()["email"] == "webuser@solar.com"


def test_claim_list_control_remove_flow(client, coordinator, pairing, publisher, test_headers):
    coordinator.ingest_telemetry("solar/dev42/status", b'{"relayState": false, "confirmationCode": "424242"}')

    resp = client.post("/api/devices", headers=test_headers,
                       json={"deviceId": "dev42", "confirmationCode": "424242", "name": "Shed"})
    assert resp.status_code == 200
    device = resp.json()
    assert device["is_owner"] is True
    assert device["status"]["online"] is True
    assert device["status"]["relayState"] is False
    assert "confirmationCode" not in device["status"]

    listed = client.get("/api/devices", headers=test_headers).json()
    assert [d["device_id"] for d in listed] == ["dev42"]

    resp = client.post("/api/devices/dev42/control", headers=test_headers,
                       json={"command": "relay", "state": True})
    assert resp.json() == {"success": True}
    publisher.publish_command.assert_called_once_with("dev42", "relay", True)

    listed = client.get("/api/devices", headers=test_headers).json()
    assert listed[0]["status"]["relayState"] is True

    assert client.delete("/api/devices/dev42", headers=test_headers).json() == {"success": True}
    assert client.get("/api/devices", headers=test_headers).json() == []


def test_invalid_claim_reports_kind(client, test_headers):
    resp = client.post("/api/devices", headers=test_headers,
                       json={"deviceId": "dev1", "confirmationCode": "000000"})
    assert resp.status_code == 400
    assert resp.json()["kind"] == "InvalidClaim"


def test_control_without_access_is_403(client, publisher, test_headers):
    resp = client.post("/api/devices/dev1/control", headers=test_headers,
                       json={"command": "relay", "state": True})
    assert resp.status_code == 403
    assert resp.json()["kind"] == "AccessDenied"
    publisher.publish_command.assert_not_called()


def test_dispatch_failure_is_500(client, pairing, publisher, test_headers):
    pairing.record("dev1", "1")
    client.post("/api/devices", headers=test_headers, json={"deviceId": "dev1", "confirmationCode": "1"})
    publisher.publish_command.side_effect = DispatchFailed("MQTT publish failed: rc=4")

    resp = client.post("/api/devices/dev1/control", headers=test_headers,
                       json={"command": "relay", "state": True})

    assert resp.status_code == 500
    assert resp.json()["kind"] == "DispatchFailed"


def test_share_flow(client, store, pairing, bob, test_headers):
    pairing.record("dev1", "1")
    client.post("/api/devices", headers=test_headers, json={"deviceId": "dev1", "confirmationCode": "1"})

    missing = client.post("/api/devices/dev1/share", headers=test_headers, json={"email": "x@example.com"})
    assert missing.status_code == 404
    assert missing.json()["kind"] == "TargetNotFound"

    ok = client.post("/api/devices/dev1/share", headers=test_headers, json={"email": bob.email})
    assert ok.json() == {"success": True}

    again = client.post("/api/devices/dev1/share", headers=test_headers, json={"email": bob.email})
    assert again.status_code == 400
    assert again.json()["kind"] == "AlreadyLinked"

    bob_devices = client.get("/api/devices", headers=_bearer(store, bob)).json()
    assert [(d["device_id"], d["is_owner"]) for d in bob_devices] == [("dev1", False)]


def test_history_and_users(client, coordinator, bob, test_headers):
    coordinator.ingest_telemetry("solar/dev1/status", b'{"uptime": 1, "confirmationCode": "9"}')
    client.post("/api/devices", headers=test_headers, json={"deviceId": "dev1", "confirmationCode": "9"})
    coordinator.ingest_telemetry("solar/dev1/status", b'{"uptime": 2}')

    history = client.get("/api/devices/dev1/history?limit=10", headers=test_headers).json()
    assert [h["uptime"] for h in history] == [2]

    users = client.get("/api/users", headers=test_headers).json()
    assert [u["email"] for u in users] == [bob.email]


def test_remove_unknown_device_is_404(client, test_headers):
    resp = client.delete("/api/devices/nope", headers=test_headers)
    assert resp.status_code == 404
    assert resp.json()["kind"] == "NotFound"
