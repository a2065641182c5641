import pytest
from cryptography.fernet import Fernet
from fastapi.testclient import TestClient

from eldes_monitor import routes
from eldes_monitor.crypto import SecretCipher
from eldes_monitor.database import ensure_schema_and_migrate
from eldes_monitor.exceptions import ControlError, DeviceNotFoundError, RateLimitError
from eldes_monitor.history import HistoryWriter
from eldes_monitor.normalize import DeviceStatus
from eldes_monitor.scheduler import SyncScheduler
from eldes_monitor.sync import DEMO_LOGIN, DEMO_SECRET, EldesCloudSync

DEVICE = {"imei": "111", "deviceName": "Home", "model": "ESIM364", "firmwareVersion": "02.11.00"}


@pytest.fixture
def sync(tmp_path, monkeypatch):
    monkeypatch.setattr(routes, 'API_KEYS', set())
    db_path = str(tmp_path / "routes.db")
    ensure_schema_and_migrate(db_path)
    # Unroutable upstream: these tests must never reach the network
    return EldesCloudSync(db_path, cipher=SecretCipher(Fernet.generate_key()), base_url="http://127.0.0.1:9/api")


@pytest.fixture
def client(sync):
    app = routes.create_app()
    routes.register_routes(app, lambda: sync)
    return TestClient(app)


def store_device(sync, credential_id, armed=True):
    writer = HistoryWriter(sync.db_path)
    device_db_id = writer.upsert_device(credential_id, DEVICE)
    writer.write_status(device_db_id, DeviceStatus(
        "111",
        [{"partitionId": 1, "partitionName": "House", "isArmed": armed, "isReady": True}],
        temperature=20.5,
        temperature_details=[{"sensorId": 1, "sensorName": "Hall", "temperature": 20.5,
                              "minTemperature": None, "maxTemperature": None}],
    ))


def test_status(client):
    response = client.get("/status")
    assert response.status_code == 200
    body = response.json()
    assert body["credentials"] == 0
    assert body["scheduler_running"] is False


def test_api_key_required_when_configured(client, monkeypatch):
    monkeypatch.setattr(routes, 'API_KEYS', {"k1"})
    assert client.get("/status").status_code == 401
    assert client.get("/status", headers={"Authorization": "Bearer wrong"}).status_code == 401
    assert client.get("/status", headers={"Authorization": "Bearer k1"}).status_code == 200


def test_credentials_crud(client):
    response = client.post("/credentials", json={"username": "a@example.com", "password": "pw",
                                                 "deviceName": "Cottage"})
    assert response.status_code == 200
    credential_id = response.json()["id"]

    listed = client.get("/credentials").json()["credentials"]
    assert listed == [{
        "id": credential_id,
        "username": "a@example.com",
        "device_name": "Cottage",
        "created_at": listed[0]["created_at"],
        "updated_at": listed[0]["updated_at"],
    }]

    assert client.delete("/credentials", params={"id": credential_id}).status_code == 200
    assert client.delete("/credentials", params={"id": credential_id}).status_code == 404
    assert client.get("/credentials").json()["credentials"] == []


def test_credentials_require_username_and_password(client):
    assert client.post("/credentials", json={"username": "a@example.com"}).status_code == 422
    assert client.post("/credentials", json={"username": "", "password": ""}).status_code == 400


def test_login_verify(client):
    response = client.post("/login/verify", json={"username": DEMO_LOGIN, "password": DEMO_SECRET})
    assert response.status_code == 200
    assert response.json() == {"valid": True}

    # Rejected locally before any upstream call
    assert client.post("/login/verify", json={"username": "no-email", "password": "x"}).status_code == 401


def test_devices_serve_stored_rows(client, sync):
    credential_id = sync.credentials.add(DEMO_LOGIN, DEMO_SECRET)
    store_device(sync, credential_id)

    body = client.get("/devices", params={"credential_id": credential_id}).json()
    assert [d["device_id"] for d in body["devices"]] == ["111"]
    assert body["devices"][0]["is_armed"] == 1
    assert body["devices"][0]["temperature"] == 20.5
    assert "sync" not in body

    refreshed = client.get("/devices", params={"credential_id": credential_id, "refresh": "true"}).json()
    assert refreshed["sync"]["skipped"] is True
    assert refreshed["devices"] == body["devices"]


def test_device_detail(client, sync):
    credential_id = sync.credentials.add(DEMO_LOGIN, DEMO_SECRET)
    store_device(sync, credential_id)

    detail = client.get("/devices/111", params={"period": "24h"}).json()
    assert detail["device"]["name"] == "Home"
    assert detail["partitions"] == [{"partitionId": 1, "partitionName": "House", "isArmed": True, "isReady": True}]
    assert detail["temperatureSensors"][0]["sensorName"] == "Hall"
    assert len(detail["temperatureHistory"]) == 1
    assert detail["periodCounts"]["all"] == 1

    assert client.get("/devices/111", params={"period": "5m"}).status_code == 400
    assert client.get("/devices/999").status_code == 404


def test_control_errors_map_to_http_status(client, sync, monkeypatch):
    credential_id = sync.credentials.add("a@example.com", "pw")
    store_device(sync, credential_id)

    assert client.post("/devices/999/control", json={"action": "arm"}).status_code == 404
    assert client.post("/devices/111/control", json={"action": "toggle"}).status_code == 400

    for error, expected in ((RateLimitError("attempts.limit"), 429),
                            (ControlError("Failed to arm partition: 200"), 502),
                            (DeviceNotFoundError("Device 111 not found"), 404)):
        async def failing(*args, error=error, **kwargs):
            raise error
        monkeypatch.setattr(sync, 'control_device', failing)
        assert client.post("/devices/111/control", json={"action": "arm"}).status_code == expected


def test_control_success(client, sync, monkeypatch):
    credential_id = sync.credentials.add("a@example.com", "pw")
    store_device(sync, credential_id, armed=False)
    calls = []

    async def control(credential_id, device_id, action, partition_id=None, partition_name=None):
        calls.append((credential_id, device_id, action, partition_id, partition_name))
        return {"success": True, "action": action}

    monkeypatch.setattr(sync, 'control_device', control)
    response = client.post("/devices/111/control", json={"action": "disarm", "partitionName": "House"})

    assert response.status_code == 200
    assert response.json() == {"success": True, "action": "disarm"}
    assert calls == [(credential_id, "111", "disarm", None, "House")]


def test_sync_now(client, sync):
    credential_id = sync.credentials.add(DEMO_LOGIN, DEMO_SECRET)

    results = client.post("/sync").json()["results"]
    assert len(results) == 1
    assert results[0]["credential_id"] == credential_id
    assert results[0]["skipped"] is True

    single = client.post("/sync", params={"credential_id": credential_id}).json()["results"]
    assert single[0]["skipped"] is True


def test_sync_start_is_idempotent(sync):
    scheduler = SyncScheduler(sync)
    app = routes.create_app()
    routes.register_routes(app, lambda: sync, lambda: scheduler)

    with TestClient(app) as client:
        first = client.post("/sync/start").json()
        second = client.post("/sync/start").json()
        assert client.get("/status").json()["scheduler_running"] is True
        client.portal.call(scheduler.stop)

    assert first["started"] is True
    assert second["started"] is False
    assert second["running"] is True


def test_sync_start_without_scheduler(client):
    assert client.post("/sync/start").status_code == 503
