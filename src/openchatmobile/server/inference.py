"""Client for llama-server's ``/completion`` endpoint.

Streaming responses are turned into an async iterator of :data:`StreamEvent`
values.  The iterator always finishes with exactly one :class:`Done` or
:class:`Error`, whatever the upstream does.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, Union

import httpx

from openchatmobile.protocol import (
    EP_COMPLETION,
    MSG_DONE,
    MSG_ERROR,
    MSG_TOKEN,
    SSE_DATA_PREFIX,
    SSE_DONE,
)

log = logging.getLogger(__name__)


class UpstreamError(RuntimeError):
    """The completion endpoint failed (refused, non-2xx, timed out)."""


@dataclass(frozen=True)
class Token:
    text: str

    terminal = False

    def to_message(self) -> dict:
        return {"type": MSG_TOKEN, "token": self.text}


@dataclass(frozen=True)
class Done:
    reason: str | None = None

    terminal = True

    def to_message(self) -> dict:
        msg: dict = {"type": MSG_DONE}
        if self.reason:
            msg["reason"] = self.reason
        return msg


@dataclass(frozen=True)
class Error:
    message: str

    terminal = True

    def to_message(self) -> dict:
        return {"type": MSG_ERROR, "message": self.message}


StreamEvent = Union[Token, Done, Error]


async def parse_event_stream(lines: AsyncIterable[str]) -> AsyncIterator[StreamEvent]:
    """Translate SSE lines from llama-server into stream events.

    Tokens come out in arrival order.  Malformed payloads are skipped.
    """
    async for line in lines:
        if not line.startswith(SSE_DATA_PREFIX):
            continue
        data = line[len(SSE_DATA_PREFIX):].strip()
        if not data:
            continue
        if data == SSE_DONE:
            yield Done()
            return
        try:
            payload = json.loads(data)
        except json.JSONDecodeError:
            log.debug("skipping malformed stream payload: %r", data)
            continue
        if not isinstance(payload, dict):
            log.debug("skipping non-object stream payload: %r", data)
            continue
        content = payload.get("content")
        if isinstance(content, str) and content:
            yield Token(content)
        if payload.get("stop") is True:
            yield Done()
            return
    yield Done()


class CompletionClient:
    """Async wrapper around one llama-server instance."""

    def __init__(
        self,
        base_url: str,
        *,
        stream_timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self._http = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(stream_timeout, connect=10.0),
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    @staticmethod
    def _payload(prompt: str, n_predict: int, temperature: float, stream: bool) -> dict:
        return {
            "prompt": prompt,
            "n_predict": n_predict,
            "temperature": temperature,
            "stream": stream,
        }

    async def complete(self, prompt: str, n_predict: int = 200, temperature: float = 0.7) -> dict:
        """Blocking (non-streamed) completion; returns llama-server's JSON body."""
        try:
            resp = await self._http.post(
                EP_COMPLETION, json=self._payload(prompt, n_predict, temperature, False),
            )
        except httpx.HTTPError as exc:
            raise UpstreamError(f"llama-server request failed: {exc!r}") from exc
        if resp.is_error:
            raise UpstreamError(f"llama-server responded with {resp.status_code}")
        try:
            body = resp.json()
        except ValueError as exc:
            raise UpstreamError("llama-server returned invalid JSON") from exc
        if not isinstance(body, dict):
            raise UpstreamError("llama-server returned an unexpected body")
        return body

    async def stream(
        self, prompt: str, n_predict: int = 200, temperature: float = 0.7,
    ) -> AsyncIterator[StreamEvent]:
        """Yield events for one streamed generation; never raises transport errors."""
        payload = self._payload(prompt, n_predict, temperature, True)
        try:
            async with self._http.stream("POST", EP_COMPLETION, json=payload) as resp:
                if resp.is_error:
                    yield Error(f"llama-server responded with {resp.status_code}")
                    return
                async for event in parse_event_stream(resp.aiter_lines()):
                    yield event
                    if event.terminal:
                        return
        except httpx.TimeoutException:
            log.warning("llama-server stream stalled for longer than the read timeout")
            yield Error("llama-server stream timed out")
        except httpx.HTTPError as exc:
            log.warning("llama-server stream failed: %r", exc)
            yield Error(f"llama-server request failed: {exc!r}")
