import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.main import create_app
from conftest import ALICE, BOB, auth, make_token


def test_message_is_pushed_to_recipient(client):
    with client.websocket_connect(f"/ws/new_message?token={make_token(BOB)}") as ws:
        assert ws.receive_json() == {"type": "connection_ack", "channel": "new_message"}

        resp = client.post("/api/messages", json={"recipient": "bob", "message": "live!"}, headers=auth(ALICE))
        assert resp.status_code == 200

        frame = ws.receive_json()
        assert frame["type"] == "data"
        assert frame["channel"] == "new_message"
        assert frame["payload"]["kind"] == "message"
        assert frame["payload"]["message"] == "live!"
        assert frame["payload"]["sender"]["username"] == "alice"
        assert frame["payload"]["recipient_id"] == BOB


def test_init_frame_handshake_and_keepalive(client):
    with client.websocket_connect("/ws/new_notification") as ws:
        ws.send_json({"type": "connection_init", "payload": {"authorization": f"Bearer {make_token(ALICE)}"}})
        assert ws.receive_json()["type"] == "connection_ack"

        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}

        client.post("/api/comments", json={"post_id": 1, "message": "hello"}, headers=auth(BOB))
        frame = ws.receive_json()
        assert frame["payload"]["kind"] == "comment"
        assert frame["payload"]["commenter"]["username"] == "bob"


def test_reaction_is_pushed_to_post_author(client):
    with client.websocket_connect(f"/ws/new_notification?token={make_token(ALICE)}") as ws:
        ws.receive_json()
        client.post("/api/posts/1/reaction", json={"reaction": "like"}, headers=auth(BOB))
        payload = ws.receive_json()["payload"]
        assert payload["kind"] == "reaction"
        assert payload["target"] == "post"
        assert payload["reactor"]["user_id"] == BOB


def test_bad_credential_gets_error_then_4401(client):
    with client.websocket_connect("/ws/new_message?token=forged") as ws:
        assert ws.receive_json() == {"type": "connection_error", "error": "authentication_failure"}
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
        assert exc.value.code == 4401


def test_malformed_init_frame_closes_4400(client):
    with client.websocket_connect("/ws/new_message") as ws:
        ws.send_json({"type": "subscribe"})
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
        assert exc.value.code == 4400


def test_unknown_channel_is_refused(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect(f"/ws/everything?token={make_token(ALICE)}"):
            pass
    assert exc.value.code == 4404


def test_binary_init_frame_closes_4400(client, app):
    with client.websocket_connect("/ws/new_message") as ws:
        ws.send_bytes(b"\x00\x01")
        with pytest.raises(WebSocketDisconnect) as exc:
            ws.receive_json()
        assert exc.value.code == 4400
    assert app.state.hub.online_users("new_message") == set()


def test_binary_frames_after_handshake_are_ignored(client):
    with client.websocket_connect(f"/ws/new_message?token={make_token(ALICE)}") as ws:
        assert ws.receive_json()["type"] == "connection_ack"
        ws.send_bytes(b"\x00\x01")
        ws.send_json({"type": "ping"})
        assert ws.receive_json() == {"type": "pong"}


def test_silent_client_times_out_4408(config):
    app = create_app(config.model_copy(update={"WS_HANDSHAKE_TIMEOUT": 0.2}))
    with TestClient(app) as client:
        with client.websocket_connect("/ws/new_message") as ws:
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_json()
            assert exc.value.code == 4408
        assert app.state.hub.online_users("new_message") == set()


def test_disconnect_before_init_registers_nothing(client, app):
    with client.websocket_connect("/ws/new_notification"):
        pass
    assert app.state.hub.online_users("new_notification") == set()

    # the channel still serves the next client
    with client.websocket_connect(f"/ws/new_notification?token={make_token(BOB)}") as ws:
        assert ws.receive_json()["type"] == "connection_ack"
        assert app.state.hub.online_users("new_notification") == {BOB}
