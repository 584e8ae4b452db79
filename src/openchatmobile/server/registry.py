"""Connection registry — live WebSocket connections keyed by opaque id.

Only the event loop touches the mapping (accept/close handlers and the
liveness task), so there is no lock around it.  Writes to a single socket
are serialised per connection.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any

from starlette.websockets import WebSocketDisconnect, WebSocketState

from openchatmobile.protocol import MSG_PING

log = logging.getLogger(__name__)

# errors a dead socket can raise on send
SEND_ERRORS = (WebSocketDisconnect, RuntimeError, OSError)


@dataclass(eq=False)
class Connection:
    id: str
    websocket: Any
    connected_at: float = field(default_factory=time.time)
    closed: bool = False
    _send_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @property
    def is_open(self) -> bool:
        if self.closed:
            return False
        ws = self.websocket
        return (
            ws.client_state == WebSocketState.CONNECTED
            and ws.application_state == WebSocketState.CONNECTED
        )

    async def send(self, message: dict) -> None:
        async with self._send_lock:
            await self.websocket.send_text(json.dumps(message))


class ConnectionRegistry:
    def __init__(self) -> None:
        self._connections: dict[str, Connection] = {}

    def __len__(self) -> int:
        return len(self._connections)

    def __contains__(self, conn_id: str) -> bool:
        return conn_id in self._connections

    def _new_id(self) -> str:
        while True:
            conn_id = uuid.uuid4().hex[:16]
            if conn_id not in self._connections:
                return conn_id

    # ------------------------------------------------------------------
    def register(self, websocket: Any) -> Connection:
        conn = Connection(id=self._new_id(), websocket=websocket)
        self._connections[conn.id] = conn
        log.info("client connected: %s (%d active)", conn.id, len(self._connections))
        return conn

    def unregister(self, conn_id: str) -> bool:
        conn = self._connections.pop(conn_id, None)
        if conn is None:
            return False
        conn.closed = True
        log.info("client disconnected: %s (%d active)", conn_id, len(self._connections))
        return True

    def get(self, conn_id: str) -> Connection | None:
        return self._connections.get(conn_id)

    def list(self) -> list[Connection]:
        return list(self._connections.values())

    # ------------------------------------------------------------------
    async def broadcast_liveness(self) -> int:
        """Ping every open connection; drop closed or failing ones."""
        payload = {"type": MSG_PING, "timestamp": int(time.time() * 1000)}
        sent = 0
        for conn in self.list():
            if not conn.is_open:
                log.debug("dropping closed connection %s", conn.id)
                self.unregister(conn.id)
                continue
            try:
                await conn.send(payload)
            except SEND_ERRORS as exc:
                log.warning("ping to %s failed: %r", conn.id, exc)
                self.unregister(conn.id)
                continue
            sent += 1
        return sent

    async def run_liveness(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            sent = await self.broadcast_liveness()
            log.debug("liveness ping sent to %d connection(s)", sent)

    async def close_all(self, code: int = 1001) -> None:
        for conn in self.list():
            log.info("closing connection %s", conn.id)
            self.unregister(conn.id)
            try:
                await conn.websocket.close(code=code)
            except SEND_ERRORS as exc:
                log.debug("close of %s failed: %r", conn.id, exc)
