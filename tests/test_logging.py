import logging

from fastapi import FastAPI, WebSocket
from fastapi.testclient import TestClient

from portal.middleware.logging import _caller, add_logging_middleware
from portal.schemas.identity import Identity
from portal.services.auth import create_identity_token


def test_caller_is_read_from_the_bearer_token():
    token = create_identity_token(Identity(user_id="teacher-10a", role="Class Teacher"))

    assert _caller(f"Bearer {token}") == "teacher-10a/Class Teacher"


def test_caller_without_a_usable_token():
    assert _caller(None) == "anonymous"
    assert _caller("Basic dXNlcjpwYXNz") == "anonymous"
    assert _caller("Bearer not-a-token") == "invalid-token"


def test_websocket_lifetime_is_logged(caplog):
    app = FastAPI()
    add_logging_middleware(app)

    @app.websocket("/ws/echo")
    async def echo(websocket: WebSocket):
        await websocket.accept()
        await websocket.send_text(await websocket.receive_text())
        await websocket.close(code=1000)

    caplog.set_level(logging.INFO, logger="portal.realtime.connections")
    with TestClient(app) as client:
        with client.websocket_connect("/ws/echo") as websocket:
            websocket.send_text("ping")
            assert websocket.receive_text() == "ping"

    messages = [record.getMessage() for record in caplog.records if record.name == "portal.realtime.connections"]
    assert messages[0].startswith("WebSocket opened: /ws/echo")
    assert any(message.startswith("WebSocket closed: /ws/echo [code: 1000]") for message in messages)
