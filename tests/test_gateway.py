"""Realtime gateway over TestClient websockets."""
import asyncio

import pytest
from starlette.websockets import WebSocketDisconnect

from app.services.chat_service import ChatService
from app.services.presence import PresenceRegistry
from app.ws.gateway import ConnectionState, RealtimeGateway, WebSocketConnection


@pytest.fixture
def friends(app_user, app_befriend):
    ada = app_user("Ada")
    grace = app_user("Grace", "Hopper")
    app_befriend(ada, grace)
    return ada, grace


def _connect(client, token_value):
    return client.websocket_connect(f"/ws?token={token_value}")


def _expect(ws, event):
    frame = ws.receive_json()
    assert frame["event"] == event, frame
    return frame["data"]


def test_connect_with_query_token(client, friends, token):
    ada, _ = friends
    with _connect(client, token(ada)) as ws:
        data = _expect(ws, "connected")
        assert data["user_id"] == ada.id
        assert client.get("/health").json()["connected_users"] == 1


def test_connect_with_authenticate_frame(client, friends, token):
    ada, _ = friends
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"event": "authenticate", "data": {"token": token(ada)}})
        assert _expect(ws, "connected")["user_id"] == ada.id


def test_bad_token_is_rejected_with_close_code(client, friends):
    with _connect(client, "garbage") as ws:
        data = _expect(ws, "connect_error")
        assert data["message"].startswith("Authentication error")
        with pytest.raises(WebSocketDisconnect) as excinfo:
            ws.receive_json()
        assert excinfo.value.code == 4401


def test_missing_credential_times_out(app, client):
    app.state.gateway.auth_timeout = 0.1
    with client.websocket_connect("/ws") as ws:
        assert _expect(ws, "connect_error")["message"] == "Authentication error: Authentication timed out"
        with pytest.raises(WebSocketDisconnect) as excinfo:
            ws.receive_json()
        assert excinfo.value.code == 4401


def test_realtime_conversation(client, friends, token):
    ada, grace = friends
    with _connect(client, token(ada)) as ws_ada:
        _expect(ws_ada, "connected")
        with _connect(client, token(grace)) as ws_grace:
            online = _expect(ws_ada, "user_online")
            assert online["user_id"] == grace.id
            assert online["name"] == "Grace Hopper"
            _expect(ws_grace, "connected")

            ws_ada.send_json({"event": "send_message", "data": {"receiver_id": grace.id, "content": "hey"}})
            incoming = _expect(ws_grace, "new_message")
            echoed = _expect(ws_ada, "message_sent")
            assert incoming["content"] == "hey"
            assert incoming["sender_id"] == ada.id
            assert echoed["id"] == incoming["id"]

            ws_grace.send_json({"event": "typing_start", "data": {"receiver_id": ada.id}})
            typing = _expect(ws_ada, "user_typing")
            assert typing == {"user_id": grace.id, "name": "Grace", "conversation_id": None}

            ws_grace.send_json({"event": "typing_stop", "data": {"receiver_id": ada.id}})
            assert _expect(ws_ada, "user_stop_typing")["user_id"] == grace.id

            ws_grace.send_json({"event": "mark_messages_read", "data": {"user_id": ada.id}})
            read = _expect(ws_ada, "messages_read")
            assert read["read_by"] == grace.id
            assert read["conversation_id"] == incoming["conversation_id"]

            ws_grace.send_json({"event": "update_status", "data": {"status": "away"}})
            assert _expect(ws_ada, "user_status_update") == {"user_id": grace.id, "status": "away"}

            ws_grace.close()
            offline = _expect(ws_ada, "user_offline")
            assert offline["user_id"] == grace.id
            assert offline["last_seen"]


def test_leaving_the_session_still_announces_offline(client, friends, token):
    ada, grace = friends
    with _connect(client, token(ada)) as ws_ada:
        _expect(ws_ada, "connected")
        with _connect(client, token(grace)) as ws_grace:
            _expect(ws_ada, "user_online")
            _expect(ws_grace, "connected")

        assert _expect(ws_ada, "user_offline")["user_id"] == grace.id
        assert client.get("/health").json()["connected_users"] == 1


def test_binary_frames_are_read_as_text(client, friends, token):
    ada, _ = friends
    with _connect(client, token(ada)) as ws:
        _expect(ws, "connected")

        ws.send_bytes(b'{"event": "dance", "data": {}}')
        assert _expect(ws, "message_error")["event"] == "dance"

        ws.send_bytes(b"\xff\xfe")
        undecodable = _expect(ws, "message_error")
        assert undecodable["event"] is None
        assert undecodable["code"] == "VALIDATION_ERROR"

        ws.send_json({"event": "join_conversation", "data": {}})
        assert _expect(ws, "message_error")["event"] == "join_conversation"


def test_http_send_reaches_open_socket(client, friends, token, auth_headers):
    ada, grace = friends
    with _connect(client, token(grace)) as ws_grace:
        _expect(ws_grace, "connected")
        response = client.post(
            "/api/messages/send",
            json={"receiver_id": ada.id, "content": "sent over http"},
            headers=auth_headers(grace),
        )
        assert response.status_code == 201
        assert _expect(ws_grace, "message_sent")["content"] == "sent over http"

        client.post(
            "/api/messages/send",
            json={"receiver_id": grace.id, "content": "reply"},
            headers=auth_headers(ada),
        )
        assert _expect(ws_grace, "new_message")["content"] == "reply"


def test_event_errors_keep_the_socket_open(client, friends, app_user, token):
    ada, _ = friends
    stranger = app_user("Linus", "Torvalds")
    with _connect(client, token(ada)) as ws:
        _expect(ws, "connected")

        ws.send_text("not json")
        assert _expect(ws, "message_error")["event"] is None

        ws.send_json({"event": "dance", "data": {}})
        unknown = _expect(ws, "message_error")
        assert unknown["event"] == "dance"
        assert unknown["code"] == "VALIDATION_ERROR"

        ws.send_json({"event": "send_message", "data": {"receiver_id": stranger.id, "content": "hi"}})
        forbidden = _expect(ws, "message_error")
        assert forbidden["code"] == "FORBIDDEN"
        assert forbidden["event"] == "send_message"

        ws.send_json({"event": "send_message", "data": {"receiver_id": stranger.id}})
        assert _expect(ws, "message_error")["code"] == "VALIDATION_ERROR"

        # Malformed typing events are dropped without a reply
        ws.send_json({"event": "typing_start", "data": {}})
        ws.send_json({"event": "join_conversation", "data": {}})
        assert _expect(ws, "message_error")["event"] == "join_conversation"

        ws.send_json({"event": "join_conversation", "data": {"conversation_id": "abc"}})
        ws.send_json({"event": "leave_conversation", "data": {"conversation_id": "abc"}})
        ws.send_json({"event": "dance"})
        assert _expect(ws, "message_error")["event"] == "dance"


def test_logout_closes_and_announces(client, friends, token):
    ada, grace = friends
    with _connect(client, token(ada)) as ws_ada:
        _expect(ws_ada, "connected")
        with _connect(client, token(grace)) as ws_grace:
            _expect(ws_ada, "user_online")
            _expect(ws_grace, "connected")

            ws_grace.send_json({"event": "logout"})
            with pytest.raises(WebSocketDisconnect) as excinfo:
                ws_grace.receive_json()
            assert excinfo.value.code == 1000
            assert _expect(ws_ada, "user_offline")["user_id"] == grace.id


class _DeadSocket:
    async def send_json(self, data):
        raise WebSocketDisconnect(code=1006)


def test_pruned_connection_still_persists_last_seen(db, open_session, make_user):
    ada = make_user("Ada")

    async def no_friends(user_id):
        return []

    async def scenario():
        presence = PresenceRegistry(no_friends)
        gateway = RealtimeGateway(open_session, presence, ChatService(open_session, presence))
        connection = WebSocketConnection(_DeadSocket())
        connection.user_id = ada.id
        connection.state = ConnectionState.ACTIVE
        await presence.register(ada.id, connection)

        assert await presence.emit_to_user(ada.id, "new_message", {}) == 0
        assert not presence.is_online(ada.id)
        await gateway._deactivate(connection)
        return presence.last_active(ada.id)

    last_seen = asyncio.run(scenario())
    db.refresh(ada)
    assert last_seen is not None
    assert ada.last_active_at == last_seen
