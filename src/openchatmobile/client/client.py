"""ChatClient — sync HTTP client SDK for the OpenChatMobile relay server."""

from __future__ import annotations

import httpx

from openchatmobile.protocol import EP_CHAT, EP_HEALTH, EP_MODELS, EP_UPLOAD

DEFAULT_URL = "http://127.0.0.1:3000"


class ChatClient:
    """Thin client for the relay's REST API.

    All calls are synchronous (httpx).  Streaming goes through
    :class:`~openchatmobile.client.stream.ChatStream` instead.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_URL,
        timeout: float = 300.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._base = base_url.rstrip("/")
        self._http = httpx.Client(base_url=self._base, timeout=timeout, transport=transport)

    @property
    def ws_url(self) -> str:
        """WebSocket relay URL matching this server."""
        scheme, _, rest = self._base.partition("://")
        return f"{'wss' if scheme == 'https' else 'ws'}://{rest}/ws"

    def close(self) -> None:
        self._http.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()

    # --- Server info --------------------------------------------------------

    def health(self) -> dict:
        return self._http.get(EP_HEALTH).raise_for_status().json()

    def list_models(self) -> list[dict]:
        return self._http.get(EP_MODELS).raise_for_status().json()["models"]

    # --- Chat ---------------------------------------------------------------

    def chat(self, message: str, max_tokens: int = 200, temperature: float = 0.7) -> dict:
        """Non-streamed completion; returns ``{"response", "tokens_used"}``."""
        return self._http.post(
            EP_CHAT,
            json={"message": message, "maxTokens": max_tokens, "temperature": temperature},
        ).raise_for_status().json()

    def upload(self, filename: str, data: bytes, content_type: str = "text/plain") -> dict:
        return self._http.post(
            EP_UPLOAD,
            content=data,
            headers={
                "content-type": "application/octet-stream",
                "x-filename": filename,
                "x-file-size": str(len(data)),
                "x-file-type": content_type,
            },
        ).raise_for_status().json()
