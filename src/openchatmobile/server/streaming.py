"""Streaming token relay via WebSocket.

Each connection gets a :class:`RelaySession` holding at most one generation
task.  The receive loop stays responsive while tokens flow, so a ``stop``
message can cancel the generation in flight.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from pydantic import ValidationError
from starlette.websockets import WebSocket, WebSocketDisconnect

from openchatmobile.protocol import MSG_CHAT, MSG_DONE, MSG_ERROR, MSG_INFO, MSG_PONG, MSG_STOP
from openchatmobile.server.inference import CompletionClient
from openchatmobile.server.registry import SEND_ERRORS, Connection
from openchatmobile.server.schemas import ChatRequest

if TYPE_CHECKING:
    from openchatmobile.server.app import AppContext

log = logging.getLogger(__name__)


class RelaySession:
    """Relay state for one connection: idle, or streaming one generation."""

    def __init__(self, connection: Connection, completions: CompletionClient) -> None:
        self.connection = connection
        self._completions = completions
        self._task: asyncio.Task | None = None
        self._terminated = False

    @property
    def busy(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _send_error(self, message: str) -> None:
        await self.connection.send({"type": MSG_ERROR, "message": message})

    # ------------------------------------------------------------------
    async def handle(self, raw: str) -> None:
        """Dispatch one client message."""
        try:
            msg = json.loads(raw)
        except json.JSONDecodeError:
            await self._send_error("invalid JSON message")
            return
        if not isinstance(msg, dict):
            await self._send_error("message must be a JSON object")
            return

        mtype = msg.get("type")
        log.debug("message from %s: %s", self.connection.id, mtype)
        if mtype == MSG_CHAT:
            await self.start(msg)
        elif mtype == MSG_STOP:
            await self.stop()
        elif mtype == MSG_PONG:
            pass
        else:
            await self._send_error(f"unknown message type {mtype!r}")

    async def handle_invalid_frame(self) -> None:
        log.debug("undecodable frame from %s", self.connection.id)
        await self._send_error("binary frames must be UTF-8 encoded JSON")

    async def start(self, msg: dict) -> None:
        if self.busy:
            log.info("rejecting chat from %s: generation already in progress", self.connection.id)
            await self._send_error("generation already in progress")
            return
        try:
            req = ChatRequest.model_validate({**msg, "connection_id": self.connection.id})
        except ValidationError as exc:
            await self._send_error(f"invalid chat request: {exc.errors()[0]['msg']}")
            return
        self._terminated = False
        self._task = asyncio.create_task(self._relay(req))

    async def _relay(self, req: ChatRequest) -> None:
        conn_id = req.connection_id
        log.info(
            "generation started for %s (max_tokens=%d, temperature=%s)",
            conn_id, req.max_tokens, req.temperature,
        )
        tokens = 0
        events = self._completions.stream(req.build_prompt(), req.max_tokens, req.temperature)
        try:
            async for event in events:
                await self.connection.send(event.to_message())
                if event.terminal:
                    self._terminated = True
                    log.info("generation for %s ended: %s (%d tokens)", conn_id, event, tokens)
                    break
                tokens += 1
        except SEND_ERRORS as exc:
            log.warning("send to %s failed mid-generation: %r", conn_id, exc)
        finally:
            await events.aclose()

    async def stop(self) -> None:
        """Cancel the generation in flight; no token is sent after this returns."""
        task = self._task
        if task is None or task.done():
            log.debug("stop from %s with no generation in flight", self.connection.id)
            return
        task.cancel()
        await asyncio.wait([task])
        self._task = None
        if self._terminated:
            log.debug("stop from %s after generation already ended", self.connection.id)
            return
        log.info("generation for %s stopped by client", self.connection.id)
        await self.connection.send({"type": MSG_DONE, "reason": "stopped"})

    async def close(self) -> None:
        """Drop any generation without notifying the (gone) client."""
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait([task])
        self._task = None


def _frame_text(message: dict) -> str | None:
    """Text of a received frame; binary frames must hold UTF-8."""
    text = message.get("text")
    if text is not None:
        return text
    data = message.get("bytes")
    if data is None:
        return None
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError:
        return None


async def relay_connection(ws: WebSocket, ctx: AppContext) -> None:
    """Serve one browser connection until it disconnects."""
    await ws.accept()
    conn = ctx.registry.register(ws)
    session = RelaySession(conn, ctx.completions)
    try:
        await conn.send({
            "type": MSG_INFO,
            "message": "WebSocket connected successfully",
            "clientId": conn.id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })
        while True:
            message = await ws.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000))
            raw = _frame_text(message)
            if raw is None:
                await session.handle_invalid_frame()
                continue
            await session.handle(raw)
    except WebSocketDisconnect:
        pass
    except SEND_ERRORS as exc:
        log.warning("connection %s failed: %r", conn.id, exc)
    finally:
        await session.close()
        ctx.registry.unregister(conn.id)
