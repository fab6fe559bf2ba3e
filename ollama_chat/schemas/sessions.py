import math
from datetime import datetime, timezone
from typing import Annotated, Literal

from pydantic import AfterValidator, BaseModel, ConfigDict, Field

from ollama_chat.schemas.models import DEFAULT_CONTEXT_LENGTH

DEFAULT_TITLE = "New Chat"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _assume_utc(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc) if value.tzinfo is None else value


# Naive timestamps (e.g. read back from SQLite) are taken to be UTC.
UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


def format_tokens(value: int) -> str:
    """Render a token count as ``8.5K`` above a thousand, plain below."""
    if value >= 1000:
        return f"{value / 1000:.1f}K"
    return str(value)


def format_percent(percent: float) -> str:
    text = f"{percent:.1f}"
    return text[:-2] if text.endswith(".0") else text


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: Literal["user", "assistant"]
    content: str
    reasoning: str | None = None
    reasoning_seconds: int | None = None  # set iff reasoning is set
    timestamp: UtcDatetime = Field(default_factory=_utcnow)


class UsageSnapshot(BaseModel):
    used: int = Field(default=0, ge=0)
    total: int = Field(default=DEFAULT_CONTEXT_LENGTH, gt=0)

    @property
    def percent(self) -> float:
        # Round half up to one decimal place of a percentage.
        return math.floor(self.used / self.total * 1000 + 0.5) / 10

    @property
    def display(self) -> str:
        return (
            f"{format_percent(self.percent)}% · "
            f"{format_tokens(self.used)} / {format_tokens(self.total)} context used"
        )


class ChatSession(BaseModel):
    id: str
    title: str = DEFAULT_TITLE
    model: str
    created_at: UtcDatetime = Field(default_factory=_utcnow)
    messages: list[Message] = []
    usage: UsageSnapshot = Field(default_factory=UsageSnapshot)


class SessionGroups(BaseModel):
    today: list[ChatSession] = []
    yesterday: list[ChatSession] = []
    older: list[ChatSession] = []


class TurnProgress(BaseModel):
    """Accumulated state of an in-flight turn, yielded once per stream update."""

    content: str = ""
    reasoning: str = ""
    reasoning_seconds: int | None = None
    done: bool = False
    message: Message | None = None  # the committed assistant message, final event only
    usage: UsageSnapshot | None = None
