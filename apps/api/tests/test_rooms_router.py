from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from meshroom.core.config import settings
from meshroom.main import app


def _receive_until_response(ws, request_id):
    """Collect pushes until the response for ``request_id`` arrives."""

    pushes = []
    while True:
        message = ws.receive_json()
        if message.get("id") == request_id:
            return message, pushes
        pushes.append(message)


def test_presence_written_over_socket_is_listed_and_removed_on_disconnect():
    with TestClient(app) as client:
        with client.websocket_connect("/api/rooms/Router Room/ws") as ws:
            ws.send_json(
                {
                    "id": "1",
                    "op": "set",
                    "collection": "participants",
                    "doc_id": "p1",
                    "data": {"id": "p1", "name": "Ann", "isMuted": True, "isVideoOff": False},
                }
            )
            response, _ = _receive_until_response(ws, "1")
            assert response == {"id": "1", "ok": True, "result": None}

            listing = client.get("/api/rooms/Router Room/participants")
            assert listing.status_code == 200
            body = listing.json()
            assert body["room"] == "Router_Room"
            assert [participant["id"] for participant in body["participants"]] == ["p1"]
            assert body["participants"][0]["isVideoOff"] is False

        after = client.get("/api/rooms/Router Room/participants")
        assert after.json()["participants"] == []


def test_subscription_receives_initial_and_change_snapshots():
    with TestClient(app) as client:
        with client.websocket_connect("/api/rooms/router-subs/ws") as ws:
            ws.send_json({"id": "1", "op": "subscribe", "collection": "signals", "subscription": "s1"})
            response, pushes = _receive_until_response(ws, "1")
            assert response["ok"] is True
            if not pushes:
                pushes.append(ws.receive_json())
            assert pushes[0]["event"] == "snapshot"
            assert pushes[0]["subscription"] == "s1"
            assert pushes[0]["snapshot"]["documents"] == []

            ws.send_json({"id": "2", "op": "add", "collection": "signals", "data": {"type": "offer", "to": "b"}})
            response, pushes = _receive_until_response(ws, "2")
            doc_id = response["result"]
            if not pushes:
                pushes.append(ws.receive_json())
            assert pushes[0]["snapshot"]["added"] == [[doc_id, {"type": "offer", "to": "b"}]]

            ws.send_json({"id": "3", "op": "unsubscribe", "subscription": "s1"})
            response, _ = _receive_until_response(ws, "3")
            assert response["ok"] is True


def test_invalid_requests_get_error_responses():
    with TestClient(app) as client:
        with client.websocket_connect("/api/rooms/router-errors/ws") as ws:
            ws.send_json({"id": "1", "op": "update", "collection": "participants", "doc_id": "ghost", "data": {"isMuted": False}})
            response, _ = _receive_until_response(ws, "1")
            assert response["ok"] is False
            assert "ghost" in response["error"]

            ws.send_json({"id": "2", "op": "explode", "collection": "participants"})
            response, _ = _receive_until_response(ws, "2")
            assert response == {"id": "2", "ok": False, "error": "Unknown op 'explode'"}

            ws.send_json({"id": "3", "op": "set", "collection": "participants", "doc_id": "p", "data": "nope"})
            response, _ = _receive_until_response(ws, "3")
            assert response["ok"] is False


def test_blank_room_is_rejected():
    with TestClient(app) as client:
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/api/rooms/%20/ws"):
                pass
        assert excinfo.value.code == 4400

        assert client.get("/api/rooms/%20/participants").status_code == 400


def test_rtc_config_lists_ice_servers():
    with TestClient(app) as client:
        response = client.get("/api/rtc/config")

    assert response.status_code == 200
    assert response.json() == {"ice_servers": list(settings.ice_servers)}
