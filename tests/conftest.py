"""Shared fixtures for the openchatmobile test-suite."""

import json
import os

import pytest
from starlette.websockets import WebSocketState


class FakeWebSocket:
    """Stands in for a Starlette WebSocket on the server side."""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict] = []
        self.fail = fail
        self.close_code: int | None = None
        self.client_state = WebSocketState.CONNECTED
        self.application_state = WebSocketState.CONNECTED

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("socket is closed")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000) -> None:
        self.close_code = code
        self.client_state = WebSocketState.DISCONNECTED
        self.application_state = WebSocketState.DISCONNECTED

    def disconnect(self) -> None:
        self.client_state = WebSocketState.DISCONNECTED


def sse_body(*payloads) -> bytes:
    """Encode payloads as llama-server event-stream lines."""
    lines = []
    for p in payloads:
        data = p if isinstance(p, str) else json.dumps(p)
        lines.append(f"data: {data}\n\n")
    return "".join(lines).encode()


@pytest.fixture(autouse=True)
def isolated_env(tmp_path, monkeypatch):
    """Run every test in an empty directory with no OPENCHATMOBILE_* variables."""
    for key in list(os.environ):
        if key.startswith("OPENCHATMOBILE_"):
            monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    return tmp_path


@pytest.fixture
def fake_ws():
    return FakeWebSocket


@pytest.fixture
def make_sse():
    return sse_body
