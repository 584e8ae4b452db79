"""Pydantic request bodies shared by the HTTP routes and the WebSocket relay."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant", "bot"]
    content: str


class ChatRequest(BaseModel):
    """One generation request.  Field aliases follow the browser's camelCase."""

    model_config = ConfigDict(populate_by_name=True)

    message: str = Field(min_length=1)
    max_tokens: int = Field(200, alias="maxTokens", gt=0)
    temperature: float = Field(0.7, ge=0.0)
    system_prompt: str | None = Field(None, alias="systemPrompt")
    history: list[HistoryMessage] = Field(default_factory=list)
    connection_id: str | None = Field(None, exclude=True)

    def build_prompt(self) -> str:
        """Prompt text sent to llama-server.

        Without history or system prompt the message is used verbatim (the
        browser already built the full prompt).
        """
        if not self.history and not (self.system_prompt and self.system_prompt.strip()):
            return self.message
        parts: list[str] = []
        if self.system_prompt and self.system_prompt.strip():
            parts.append(f"{self.system_prompt}\n\n")
        for msg in self.history:
            role = "User" if msg.role == "user" else "Assistant"
            parts.append(f"{role}: {msg.content}\n")
        parts.append(f"User: {self.message}\n")
        parts.append("Assistant:")
        return "".join(parts)
