"""
HTTP and WebSocket surface, run through FastAPI's TestClient.
"""
import json

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import main
from app.core.dependencies import get_backend


@pytest.fixture
def client(monkeypatch, engine, backend, fake_redis):
    monkeypatch.setattr("app.session.session_layer.init_redis", lambda **kwargs: None)
    monkeypatch.setattr(main, "engine", engine)
    main.app.dependency_overrides[get_backend] = lambda: backend
    with TestClient(main.app) as client:
        yield client
    main.app.dependency_overrides.clear()


@pytest.fixture
def login(fake_redis):
    def sign_in(user_id: str) -> str:
        token = f"token-{user_id}"
        fake_redis.store[f"session:{token}"] = json.dumps({"user_id": user_id, "email": "someone@example.edu"})
        return token

    return sign_in


def auth(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def receive_until(ws, predicate, limit: int = 20) -> dict:
    for _ in range(limit):
        payload = ws.receive_json()
        if predicate(payload):
            return payload
    raise AssertionError("expected payload never arrived")


def test_health(client):
    assert client.get("/health").json() == {"status": "ok"}


def test_requests_need_a_session(client):
    response = client.get("/api/v1/requests")
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "NOT_AUTHENTICATED"

    response = client.get("/api/v1/requests", headers=auth("unknown"))
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "SESSION_EXPIRED"


def test_request_lifecycle_over_rest(client, login, people):
    passenger = auth(login(people["passenger"]))
    driver = auth(login(people["driver"]))

    response = client.post("/api/v1/requests", json={"ride_id": people["ride"]}, headers=passenger)
    assert response.status_code == 201
    request_id = response.json()["id"]
    assert response.json()["status"] == "pending"

    again = client.post("/api/v1/requests", json={"ride_id": people["ride"]}, headers=passenger)
    assert again.status_code == 409
    assert again.json()["detail"]["code"] == "DUPLICATE_REQUEST"

    listing = client.get("/api/v1/requests", params={"role": "driver"}, headers=driver).json()
    assert [item["id"] for item in listing["items"]] == [request_id]
    assert listing["items"][0]["counterpart"]["full_name"] == "Pat Passenger"

    denied = client.post(f"/api/v1/requests/{request_id}/status", json={"status": "accepted"}, headers=passenger)
    assert denied.status_code == 403

    accepted = client.post(f"/api/v1/requests/{request_id}/status", json={"status": "accepted"}, headers=driver)
    assert accepted.json()["status"] == "accepted"

    cancelled = client.post(f"/api/v1/requests/{request_id}/status", json={"status": "cancelled"}, headers=passenger)
    assert cancelled.json()["status"] == "cancelled"

    hidden = client.post(f"/api/v1/requests/{request_id}/hide", headers=passenger)
    assert hidden.json()["hidden_by_passenger"] is True
    trips = client.get("/api/v1/requests", params={"role": "passenger"}, headers=passenger).json()
    assert trips["total"] == 0


def test_chat_over_rest(client, login, people, accepted):
    passenger = auth(login(people["passenger"]))
    driver = auth(login(people["driver"]))
    outsider = auth(login(people["outsider"]))

    response = client.post(f"/api/v1/chat/{accepted}/messages", json={"content": "at the north gate"}, headers=passenger)
    assert response.status_code == 201
    assert response.json()["receiver_id"] == people["driver"]

    blank = client.post(f"/api/v1/chat/{accepted}/messages", json={"content": "   "}, headers=passenger)
    assert blank.json()["detail"]["code"] == "EMPTY_CONTENT"

    assert client.get("/api/v1/chat/unread", headers=driver).json() == {"total": 1, "by_request": {accepted: 1}}
    assert client.get(f"/api/v1/chat/{accepted}/messages", headers=outsider).status_code == 403

    history = client.get(f"/api/v1/chat/{accepted}/messages", headers=driver).json()
    assert [m["content"] for m in history["items"]] == ["at the north gate"]
    assert client.get("/api/v1/chat/unread", headers=driver).json()["total"] == 0
    assert client.post(f"/api/v1/chat/{accepted}/read", headers=driver).json() == {"affected": 0}


def test_live_socket_rejects_unknown_token(client):
    with client.websocket_connect("/api/v1/live/ws?token=nope") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4001


def test_live_socket_streams_requests_and_chat(client, login, people):
    passenger = auth(login(people["passenger"]))
    token = login(people["driver"])

    with client.websocket_connect(f"/api/v1/live/ws?token={token}") as ws:
        assert ws.receive_json() == {"event": "unread", "total": 0, "by_request": {}, "live": True}

        ws.send_json({"action": "watch_requests", "role": "driver"})
        snapshot = receive_until(ws, lambda p: p["event"] == "requests")
        assert snapshot["items"] == []

        request_id = client.post("/api/v1/requests", json={"ride_id": people["ride"]}, headers=passenger).json()["id"]
        snapshot = receive_until(ws, lambda p: p["event"] == "requests" and p["items"])
        assert snapshot["buckets"]["pending"] == [request_id]

        ws.send_json({"action": "set_status", "role": "driver", "request_id": request_id, "status": "accepted"})
        snapshot = receive_until(
            ws, lambda p: p["event"] == "requests" and p["buckets"]["accepted"] == [request_id]
        )

        ws.send_json({"action": "open_chat", "request_id": request_id})
        chat = receive_until(ws, lambda p: p["event"] == "chat")
        assert chat["state"] == "ready"

        client.post(f"/api/v1/chat/{request_id}/messages", json={"content": "hi!"}, headers=passenger)
        chat = receive_until(ws, lambda p: p["event"] == "chat" and p["messages"])
        assert chat["messages"][0]["content"] == "hi!"

        ws.send_json({"action": "teleport"})
        error = receive_until(ws, lambda p: p["event"] == "error")
        assert error["code"] == "UNKNOWN_ACTION"

        ws.send_text("not json")
        error = receive_until(ws, lambda p: p["event"] == "error")
        assert error["code"] == "INVALID_JSON"


def test_live_socket_reports_rule_violations(client, login, people, accepted):
    token = login(people["outsider"])
    with client.websocket_connect(f"/api/v1/live/ws?token={token}") as ws:
        ws.receive_json()
        ws.send_json({"action": "open_chat", "request_id": accepted})
        error = receive_until(ws, lambda p: p["event"] == "error")
        assert error["code"] == "ACCESS_DENIED"
        assert error["action"] == "open_chat"


def test_missing_redis_client_counts_as_signed_out(client, login, people):
    from app.session import use_client

    token = login(people["driver"])
    use_client(None)

    response = client.get("/api/v1/requests", headers=auth(token))
    assert response.status_code == 401
    assert response.json()["detail"]["code"] == "SESSION_EXPIRED"

    with client.websocket_connect(f"/api/v1/live/ws?token={token}") as ws:
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
    assert exc.value.code == 4001
