"""
HTTP and websocket surface, exercised through the FastAPI test client
"""
import uuid

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from canteen.context import build_context
from canteen.core.config import Settings
from main import create_app
from conftest import FakeMailer


@pytest.fixture
def client(db, tmp_path):
    settings = Settings(
        STORAGE_ROOT=str(tmp_path / "remote"),
        STORAGE_BASE_URL="http://cdn.test",
        LOCAL_UPLOADS_ROOT=str(tmp_path / "uploads"),
        FRONTEND_BASE_URL="http://menu.test",
    )
    context = build_context(settings=settings, database=db, mailer=FakeMailer())
    with TestClient(create_app(context)) as test_client:
        yield test_client


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["database"]["is_connected"] is True
    assert body["storage"] == {"ready": True, "fallback_ready": True}
    assert body["scheduler"] == {"running": True, "using_defaults": False}
    assert body["pos_subscribers"] == 0


# ========== Settings ==========

def test_schedule_section_round_trip(client):
    assert client.get("/api/settings/schedule").json()["lowStockCheck"]["cron"] == "*/30 * * * *"

    response = client.put("/api/settings/schedule", json={"lowStockCheck": {"interval": 5}})

    assert response.status_code == 200
    assert response.json()["lowStockCheck"]["cron"] == "*/5 * * * *"


def test_mail_secret_is_never_returned(client):
    response = client.put("/api/settings/mail", json={"host": "smtp.canteen.test", "password": "hunter2"})

    assert response.status_code == 200
    assert response.json()["password"] == "********"
    assert "hunter2" not in client.get("/api/settings/mail").text


def test_invalid_schedule_is_422(client):
    response = client.put("/api/settings/schedule", json={"lowStockCheck": {"cron": "nope"}})

    assert response.status_code == 422
    assert response.json()["error"] == "SettingsValidationError"


def test_unknown_section_is_422(client):
    assert client.get("/api/settings/payments").status_code == 422


# ========== Notification jobs ==========

def test_list_and_run_jobs(client):
    listing = client.get("/api/notifications/jobs").json()

    assert listing["running"] is True
    assert {job["name"] for job in listing["jobs"]} == {
        "expiringStockCheck", "expiredStockCheck", "lowStockCheck", "dailyStockReport", "stockReport",
    }
    assert all(job["next_run_time"] for job in listing["jobs"])

    run = client.post("/api/notifications/jobs/expiredStockCheck/run")
    assert run.status_code == 200
    assert run.json()["result"]["job"] == "expiredStockCheck"

    assert client.post("/api/notifications/jobs/nightlyBackup/run").status_code == 404


# ========== QR codes ==========

def test_qr_lifecycle(client, make_theater):
    theater_id = make_theater(name="PVR Main")

    created = client.post("/api/qr-codes/screen", json={
        "theater_id": str(theater_id),
        "qr_name": "Screen - 1",
        "seat_class": "GOLD",
        "seats": ["A1", "A2"],
    })
    assert created.status_code == 201
    batch = created.json()
    assert len(batch["artifacts"]) == 2
    assert batch["failed"] == []

    listed = client.get("/api/qr-codes", params={"theaterId": str(theater_id)}).json()
    assert [item["seat"] for item in listed] == ["A1", "A2"]

    artifact_id = batch["artifacts"][0]["id"]
    assert client.delete(f"/api/qr-codes/{artifact_id}").status_code == 200
    assert client.delete(f"/api/qr-codes/{artifact_id}").status_code == 404


def test_screen_qr_rejects_blank_seat(client, make_theater):
    theater_id = make_theater(name="PVR Main")

    response = client.post("/api/qr-codes/screen", json={
        "theater_id": str(theater_id),
        "qr_name": "Screen - 1",
        "seat_class": "GOLD",
        "seats": ["A1", ""],
    })

    assert response.status_code == 422
    assert client.get("/api/qr-codes", params={"theaterId": str(theater_id)}).json() == []


def test_qr_for_unknown_theater_is_404(client):
    response = client.post("/api/qr-codes/single", json={
        "theater_id": str(uuid.uuid4()),
        "qr_name": "Counter",
        "seat_class": "Counter",
    })
    assert response.status_code == 404


# ========== POS stream ==========

def test_pos_stream_delivers_broadcast(client, make_theater):
    theater_id = make_theater(name="PVR Main")

    with client.websocket_connect(f"/api/pos-stream?theaterId={theater_id}") as ws:
        assert ws.receive_json() == {"type": "connected", "theaterId": str(theater_id)}
        assert client.get("/api/pos-stream/status").json()["total"] == 1

        sent = client.post("/api/pos-stream/broadcast-test", json={
            "theater_id": str(theater_id),
            "event": "created",
            "order_id": "O1",
        }).json()
        assert sent == {"delivered": 1, "orderId": "O1"}

        frame = ws.receive_json()
        assert frame["type"] == "pos_order"
        assert frame["event"] == "created"
        assert frame["orderId"] == "O1"

        ws.send_json({"type": "pong"})


def test_pos_stream_ignores_binary_frames(client, make_theater):
    theater_id = make_theater(name="PVR Main")

    with client.websocket_connect(f"/api/pos-stream?theaterId={theater_id}") as ws:
        assert ws.receive_json()["type"] == "connected"

        ws.send_bytes(b"\x00\x01\x02")
        ws.send_text("not json")
        ws.send_json({"type": "pong"})

        sent = client.post("/api/pos-stream/broadcast-test", json={
            "theater_id": str(theater_id),
            "event": "updated",
            "order_id": "O2",
        }).json()
        assert sent["delivered"] == 1
        assert ws.receive_json()["orderId"] == "O2"
        assert client.get("/api/pos-stream/status").json()["total"] == 1


def test_pos_stream_requires_theater_id(client):
    with client.websocket_connect("/api/pos-stream") as ws:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()
    assert exc_info.value.code == 1008


def test_pos_stream_rejects_unknown_theater(client):
    with client.websocket_connect(f"/api/pos-stream?theaterId={uuid.uuid4()}") as ws:
        with pytest.raises(WebSocketDisconnect) as exc_info:
            ws.receive_json()
    assert exc_info.value.code == 1008
