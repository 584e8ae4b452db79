"""ChatStream — async WebSocket client for the token relay."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator

import websockets

from openchatmobile.protocol import (
    MSG_CHAT,
    MSG_DONE,
    MSG_ERROR,
    MSG_INFO,
    MSG_PING,
    MSG_STOP,
    MSG_TOKEN,
)

log = logging.getLogger(__name__)

RECONNECT_DELAY_S = 3.0
RECONNECT_MAX_DELAY_S = 15.0
MAX_RECONNECT_ATTEMPTS = 5


def backoff_delay(attempt: int) -> float:
    """Linear back-off, capped."""
    return min(RECONNECT_DELAY_S * attempt, RECONNECT_MAX_DELAY_S)


@dataclass
class StreamResult:
    """Accumulated result of the last generation."""
    text: str = ""
    tokens: int = 0
    reason: str = ""


class RelayError(RuntimeError):
    """The relay reported an ``error`` message."""


class ChatStream:
    """Persistent connection to the relay; one generation at a time.

    Usage::

        async with ChatStream("ws://localhost:3000/ws") as stream:
            async for token in stream.generate("User: hi\\nAssistant:"):
                print(token, end="", flush=True)
        print(stream.result)
    """

    def __init__(self, ws_url: str, max_attempts: int = MAX_RECONNECT_ATTEMPTS) -> None:
        self._ws_url = ws_url
        self._max_attempts = max_attempts
        self._ws = None
        self.client_id: str | None = None
        self.result: StreamResult = StreamResult()

    async def connect(self) -> None:
        attempt = 0
        while True:
            try:
                self._ws = await websockets.connect(self._ws_url)
                break
            except (OSError, websockets.WebSocketException) as exc:
                attempt += 1
                if attempt >= self._max_attempts:
                    raise
                delay = backoff_delay(attempt)
                log.info(
                    "connection to %s failed (%s); retry %d/%d in %.0fs",
                    self._ws_url, exc, attempt, self._max_attempts, delay,
                )
                await asyncio.sleep(delay)

    async def __aenter__(self) -> ChatStream:
        await self.connect()
        return self

    async def __aexit__(self, *exc) -> None:
        if self._ws is not None:
            await self._ws.close()

    async def stop(self) -> None:
        assert self._ws is not None
        await self._ws.send(json.dumps({"type": MSG_STOP}))

    async def generate(
        self,
        prompt: str,
        max_tokens: int = 200,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        """Send a chat request and yield tokens until the relay says done."""
        assert self._ws is not None
        self.result = StreamResult()
        await self._ws.send(json.dumps({
            "type": MSG_CHAT,
            "message": prompt,
            "maxTokens": max_tokens,
            "temperature": temperature,
        }))
        async for raw in self._ws:
            msg = json.loads(raw)
            mtype = msg.get("type")
            if mtype == MSG_TOKEN:
                token = msg["token"]
                self.result.text += token
                self.result.tokens += 1
                yield token
            elif mtype == MSG_DONE:
                self.result.reason = msg.get("reason", "")
                return
            elif mtype == MSG_ERROR:
                raise RelayError(msg.get("message", "unknown relay error"))
            elif mtype == MSG_INFO:
                self.client_id = msg.get("clientId", self.client_id)
            elif mtype == MSG_PING:
                continue
