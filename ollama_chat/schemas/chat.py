from typing import Literal

from pydantic import BaseModel, ConfigDict


class ChatMessage(BaseModel):
    """A message as sent upstream: role and content only."""

    role: Literal["system", "user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    model: str
    messages: list[ChatMessage]
    stream: bool = True
    options: dict | None = None


# Streaming updates


class StreamUpdate(BaseModel):
    """One decoded frame of a /api/chat response, normalised."""

    model_config = ConfigDict(frozen=True)

    content: str = ""
    reasoning: str = ""
    done: bool = False
    prompt_tokens: int | None = None
    eval_tokens: int | None = None


class ChatResult(BaseModel):
    content: str = ""
    reasoning: str = ""
    prompt_tokens: int = 0
    eval_tokens: int = 0
