"""End-to-end tests through FastAPI's TestClient with an in-process broker."""
import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app import create_app
from backend import InMemoryRoomStore
from broker import InMemoryBrokerBridge, InMemoryExchange


@pytest.fixture
def exchange():
    return InMemoryExchange()


@pytest.fixture
def client(exchange):
    app = create_app(
        bridge=InMemoryBrokerBridge(exchange),
        room_store=InMemoryRoomStore(),
        heartbeat_interval=0,
    )
    with TestClient(app) as client:
        yield client


def test_create_and_validate_room(client):
    resp = client.post("/api/rooms")
    assert resp.status_code == 201
    room_id = resp.json()["roomId"]
    assert len(room_id) == 7

    resp = client.get(f"/api/rooms/{room_id}")
    assert resp.status_code == 200
    assert resp.json() == {"roomId": room_id, "exists": True}


def test_unknown_room_is_404(client):
    resp = client.get("/api/rooms/nope123")
    assert resp.status_code == 404


def test_health_reports_instance_state(client):
    resp = client.get("/health")
    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "UP"
    assert body["brokerConnected"] is True
    assert body["activeRoomsOnInstance"] == 0
    assert body["webSocketClients"] == 0
    assert body["instanceQueue"].startswith("chat_instance_queue_")


def test_missing_room_id_closes_with_policy_code(client):
    with client.websocket_connect("/ws") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 1008


def test_websocket_chat_scenario(client):
    with client.websocket_connect("/ws?roomId=abc1234&userId=alice") as alice:
        welcome = alice.receive_json()
        assert welcome["type"] == "info"
        assert welcome["text"] == "Welcome alice!"
        assert alice.receive_json()["text"] == "alice has joined the room."

        with client.websocket_connect("/ws?roomId=abc1234&userId=bob") as bob:
            assert bob.receive_json()["text"] == "Welcome bob!"
            assert bob.receive_json()["text"] == "bob has joined the room."
            joined = alice.receive_json()
            assert joined["type"] == "system"
            assert joined["text"] == "bob has joined the room."

            alice.send_json({"text": "hi"})
            for ws in (alice, bob):
                frame = ws.receive_json()
                assert frame["type"] == "chat"
                assert frame["sender"] == "alice"
                assert frame["text"] == "hi"

            alice.send_json({"text": ""})
            error = alice.receive_json()
            assert error["type"] == "error"

            bob.send_json({"text": "  bye  "})
            assert alice.receive_json()["text"] == "bye"
            assert bob.receive_json()["text"] == "bye"

        left = alice.receive_json()
        assert left["type"] == "system"
        assert left["text"] == "bob has left the room."

        health = client.get("/health").json()
        assert health["webSocketClients"] == 1
        assert health["activeRoomsOnInstance"] == 1

def test_idle_client_survives_heartbeat(exchange):
    app = create_app(
        bridge=InMemoryBrokerBridge(exchange),
        room_store=InMemoryRoomStore(),
        heartbeat_interval=0.05,
    )
    with TestClient(app) as client:
        with client.websocket_connect("/ws?roomId=abc1234&userId=alice") as alice:
            assert alice.receive_json()["type"] == "info"
            assert alice.receive_json()["type"] == "system"

            # several heartbeat intervals without a word from the client
            time.sleep(0.3)

            alice.send_json({"text": "still here"})
            frame = alice.receive_json()
            assert frame["type"] == "chat"
            assert frame["text"] == "still here"

            assert client.get("/health").json()["webSocketClients"] == 1
