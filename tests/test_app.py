"""End-to-end tests for the FastAPI app: WebSocket protocol, session and tab APIs."""

from __future__ import annotations

import json
import logging

import jwt
import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from termbroker.config import AuthConfig, BrokerConfig, LedgerConfig, SessionConfig, WorkspaceConfig
from termbroker.gateway.app import create_app
from termbroker.gateway.connection import CLOSE_AUTH_FAILED

SECRET = "test-secret-that-is-long-enough-for-hs256"


def make_token(subject: str = "alice", secret: str = SECRET) -> str:
    return jwt.encode({"sub": subject}, secret, algorithm="HS256")


@pytest.fixture
def config(tmp_path) -> BrokerConfig:
    return BrokerConfig(
        auth=AuthConfig(jwt_secret=SECRET),
        session=SessionConfig(shell="/bin/sh", flush_interval=0, max_sessions=5),
        workspace=WorkspaceConfig(root=str(tmp_path / "workspaces"), default_dir=str(tmp_path)),
        ledger=LedgerConfig(db_path=":memory:"),
    )


@pytest.fixture
def client(config):
    with TestClient(create_app(config)) as c:
        yield c


def auth_headers(token: str | None = None) -> dict[str, str]:
    return {"Authorization": f"Bearer {token or make_token()}"}


def read_until(ws, needle: bytes, limit: int = 200) -> bytes:
    """Read frames until the binary output seen so far contains ``needle``."""
    seen = bytearray()
    for _ in range(limit):
        message = ws.receive()
        if message.get("bytes"):
            seen += message["bytes"]
            if needle in seen:
                return bytes(seen)
    raise AssertionError(f"{needle!r} not seen in output: {bytes(seen)!r}")


def read_json_until(ws, event_type: str, limit: int = 200) -> dict:
    """Skip output frames until a control event of ``event_type`` arrives."""
    for _ in range(limit):
        message = ws.receive()
        if message.get("text"):
            event = json.loads(message["text"])
            if event["type"] == event_type:
                return event
    raise AssertionError(f"no {event_type!r} event received")


class TestHealth:
    def test_health(self, client) -> None:
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "sessions": 0}


class TestLifespan:
    def test_lifecycle_events_are_logged(self, config, caplog) -> None:
        caplog.set_level(logging.INFO, logger="termbroker.wire")
        with TestClient(create_app(config)) as client:
            with client.websocket_connect(f"/terminal?token={make_token()}") as ws:
                ws.receive_json()
                ws.send_json({"type": "create-session", "workspaceRef": "proj-1"})
                session_id = ws.receive_json()["id"]
            client.delete(f"/api/sessions/{session_id}", headers=auth_headers())

        messages = [r.getMessage() for r in caplog.records if r.name == "termbroker.wire"]
        assert any("session-created" in m and session_id in m for m in messages)
        assert any("session-reaped" in m and "terminated" in m for m in messages)


class TestTerminalSocket:
    def test_token_in_query(self, client) -> None:
        with client.websocket_connect(f"/terminal?token={make_token()}") as ws:
            assert ws.receive_json() == {"type": "authenticated", "subject": "alice"}

    def test_token_in_header(self, client) -> None:
        with client.websocket_connect("/terminal", headers=auth_headers()) as ws:
            assert ws.receive_json()["type"] == "authenticated"

    def test_authenticate_message(self, client) -> None:
        with client.websocket_connect("/terminal") as ws:
            ws.send_json({"type": "authenticate", "token": make_token("bob"), "ref": "1"})
            assert ws.receive_json() == {"type": "authenticated", "subject": "bob", "ref": "1"}

    def test_bad_token_closes_with_auth_code(self, client) -> None:
        bad = make_token(secret="some-other-secret-of-sufficient-length")
        with client.websocket_connect(f"/terminal?token={bad}") as ws:
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["kind"] == "authentication"
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_text()
            assert exc.value.code == CLOSE_AUTH_FAILED

    def test_unauthenticated_message_closes(self, client) -> None:
        with client.websocket_connect("/terminal") as ws:
            ws.send_json({"type": "list-sessions"})
            assert ws.receive_json()["kind"] == "authentication"
            with pytest.raises(WebSocketDisconnect) as exc:
                ws.receive_text()
            assert exc.value.code == CLOSE_AUTH_FAILED

    def test_malformed_json_is_reported(self, client) -> None:
        with client.websocket_connect(f"/terminal?token={make_token()}") as ws:
            ws.receive_json()
            ws.send_text("{not json")
            error = ws.receive_json()
            assert error["type"] == "error"
            assert error["kind"] == "protocol"
            ws.send_json({"type": "list-sessions", "ref": "still-open"})
            assert ws.receive_json()["ref"] == "still-open"

    def test_session_survives_disconnect_and_replays(self, client) -> None:
        with client.websocket_connect(f"/terminal?token={make_token()}") as ws:
            assert ws.receive_json()["type"] == "authenticated"
            ws.send_json({"type": "create-session", "workspaceRef": "proj-1"})
            created = ws.receive_json()
            assert created["type"] == "session-created"
            session_id = created["id"]

            ws.send_json({"type": "input", "data": "echo $((40+2))\n"})
            read_until(ws, b"42")

        assert client.app.state.registry.is_alive(session_id)

        with client.websocket_connect(f"/terminal?token={make_token()}") as ws:
            assert ws.receive_json()["type"] == "authenticated"
            ws.send_json({"type": "attach-session", "id": session_id, "replay": True})
            replay = ws.receive()
            assert b"42" in replay["bytes"]
            attached = ws.receive_json()
            assert attached["type"] == "session-attached"
            assert attached["id"] == session_id

            ws.send_json({"type": "input", "data": "echo $((70+7))\n"})
            read_until(ws, b"77")

    def test_binary_frames_are_input(self, client) -> None:
        with client.websocket_connect(f"/terminal?token={make_token()}") as ws:
            ws.receive_json()
            ws.send_json({"type": "create-session"})
            assert ws.receive_json()["type"] == "session-created"
            ws.send_bytes(b"echo $((50+5))\n")
            read_until(ws, b"55")

    def test_attach_unknown_session(self, client) -> None:
        with client.websocket_connect(f"/terminal?token={make_token()}") as ws:
            ws.receive_json()
            ws.send_json({"type": "attach-session", "id": "missing", "ref": "a1"})
            assert ws.receive_json() == {
                "type": "error",
                "error": "Session not found: missing",
                "kind": "session_not_found",
                "ref": "a1",
            }

    def test_session_exit_is_reported(self, client) -> None:
        with client.websocket_connect(f"/terminal?token={make_token()}") as ws:
            ws.receive_json()
            ws.send_json({"type": "create-session"})
            session_id = ws.receive_json()["id"]
            ws.send_json({"type": "input", "data": "exit 4\n"})
            exited = read_json_until(ws, "session-exited")
            assert exited == {"type": "session-exited", "id": session_id, "exit_code": 4}

            ws.send_json({"type": "attach-session", "id": session_id, "ref": "again"})
            error = read_json_until(ws, "error")
            assert error["kind"] == "session_dead"


class TestTabsApi:
    def test_requires_auth(self, client) -> None:
        assert client.get("/api/terminal-tabs/proj-1").status_code == 401
        bad = auth_headers("not-a-jwt")
        assert client.get("/api/terminal-tabs/proj-1", headers=bad).status_code == 401

    def test_empty_project(self, client) -> None:
        response = client.get("/api/terminal-tabs/proj-1", headers=auth_headers())
        assert response.status_code == 200
        assert response.json() == []

    def test_tab_lifecycle(self, client, tmp_path) -> None:
        with client.websocket_connect(f"/terminal?token={make_token()}") as ws:
            ws.receive_json()
            ws.send_json({"type": "create-session", "workspaceRef": "proj-1"})
            session_id = ws.receive_json()["id"]

        headers = auth_headers()
        response = client.put(
            "/api/terminal-tabs/proj-1/tab-a",
            json={"name": "build", "session_id": session_id},
            headers=headers,
        )
        assert response.status_code == 200
        saved = response.json()
        assert saved["name"] == "build"
        assert saved["session_id"] == session_id
        assert saved["cwd"] == str((tmp_path / "workspaces" / "proj-1").resolve())

        client.put("/api/terminal-tabs/proj-1/tab-b", json={"name": "logs"}, headers=headers)

        tabs = client.get("/api/terminal-tabs/proj-1", headers=headers).json()
        assert [(t["tab_id"], t["alive"]) for t in tabs] == [("tab-a", True), ("tab-b", False)]

        response = client.delete("/api/terminal-tabs/proj-1/tab-a", headers=headers)
        assert response.json() == {"ok": True}
        assert client.app.state.registry.is_alive(session_id)
        assert client.delete("/api/terminal-tabs/proj-1/tab-a", headers=headers).status_code == 404

    def test_update_session(self, client) -> None:
        headers = auth_headers()
        client.put("/api/terminal-tabs/proj-1/tab-a", json={"name": "a"}, headers=headers)
        response = client.put(
            "/api/terminal-tabs/proj-1/tab-a/session",
            json={"session_id": "abc123"},
            headers=headers,
        )
        assert response.status_code == 200
        tabs = client.get("/api/terminal-tabs/proj-1", headers=headers).json()
        assert tabs[0]["session_id"] == "abc123"
        assert tabs[0]["alive"] is False

        missing = client.put(
            "/api/terminal-tabs/proj-1/nope/session", json={"session_id": "x"}, headers=headers
        )
        assert missing.status_code == 404

    def test_invalid_project_id(self, client) -> None:
        response = client.put(
            "/api/terminal-tabs/.hidden/tab-a", json={"name": "x"}, headers=auth_headers()
        )
        assert response.status_code == 400

    def test_save_does_not_create_workspace(self, client, tmp_path) -> None:
        response = client.put(
            "/api/terminal-tabs/fresh-proj/tab-a", json={"name": "x"}, headers=auth_headers()
        )
        assert response.status_code == 200
        workspace = tmp_path / "workspaces" / "fresh-proj"
        assert response.json()["cwd"] == str(workspace.resolve())
        assert not workspace.exists()


class TestSessionsApi:
    def create_session(self, client, project_id: str = "proj-1") -> str:
        with client.websocket_connect(f"/terminal?token={make_token()}") as ws:
            ws.receive_json()
            ws.send_json({"type": "create-session", "workspaceRef": project_id})
            return ws.receive_json()["id"]

    def test_requires_auth(self, client) -> None:
        assert client.get("/api/sessions").status_code == 401
        assert client.delete("/api/sessions/all").status_code == 401
        assert client.delete("/api/sessions/abc").status_code == 401

    def test_list(self, client) -> None:
        first = self.create_session(client, "proj-1")
        second = self.create_session(client, "proj-2")

        sessions = client.get("/api/sessions", headers=auth_headers()).json()
        assert {s["id"] for s in sessions} == {first, second}

        only = client.get("/api/sessions?project_id=proj-2", headers=auth_headers()).json()
        assert [s["id"] for s in only] == [second]
        assert only[0]["state"] == "running"

    def test_kill_one(self, client) -> None:
        session_id = self.create_session(client)
        headers = auth_headers()

        response = client.delete(f"/api/sessions/{session_id}", headers=headers)
        assert response.json() == {"ok": True}
        assert not client.app.state.registry.is_alive(session_id)
        assert client.get("/api/sessions", headers=headers).json() == []

        again = client.delete(f"/api/sessions/{session_id}", headers=headers)
        assert again.status_code == 404
        assert again.json() == {"detail": "Session not found"}

    def test_kill_all(self, client) -> None:
        for project_id in ("a", "b", "c"):
            self.create_session(client, project_id)
        headers = auth_headers()

        response = client.delete("/api/sessions/all", headers=headers)
        assert response.json() == {"ok": True, "killed": 3}
        assert client.get("/api/sessions", headers=headers).json() == []
        assert client.get("/health").json()["sessions"] == 0

        assert client.delete("/api/sessions/all", headers=headers).json() == {
            "ok": True,
            "killed": 0,
        }
