import datetime
from pathlib import Path

from sqlalchemy import DateTime, Engine, ForeignKey, Integer, String, Text, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


# ── Chat sessions ────────────────────────────────────────────────────────────


class ChatSessionRow(Base):
    __tablename__ = "chat_sessions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    position: Mapped[int] = mapped_column(Integer, index=True)  # 0 = most recent
    title: Mapped[str] = mapped_column(String(500))
    model: Mapped[str] = mapped_column(String(255))
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True))
    context_used: Mapped[int] = mapped_column(Integer, default=0)
    context_total: Mapped[int] = mapped_column(Integer)


class ChatMessageRow(Base):
    __tablename__ = "chat_messages"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    session_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("chat_sessions.id", ondelete="CASCADE"), index=True
    )
    position: Mapped[int] = mapped_column(Integer)
    role: Mapped[str] = mapped_column(String(20))
    content: Mapped[str] = mapped_column(Text)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    reasoning_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    timestamp: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True))


def make_engine(url: str) -> Engine:
    """Create an engine, expanding ``~`` and creating parent dirs for SQLite files."""
    parsed = make_url(url)
    if parsed.get_backend_name() == "sqlite" and parsed.database and parsed.database != ":memory:":
        path = Path(parsed.database).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        parsed = parsed.set(database=str(path))
    return create_engine(parsed, echo=False)


def init_db(engine: Engine) -> None:
    """Create the session tables if they do not exist."""
    Base.metadata.create_all(engine)
