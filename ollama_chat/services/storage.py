from abc import ABC, abstractmethod
from collections import defaultdict
from pathlib import Path

from pydantic import TypeAdapter, ValidationError
from sqlalchemy import Engine, delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ollama_chat.config import Settings
from ollama_chat.core.database import ChatMessageRow, ChatSessionRow, init_db, make_engine
from ollama_chat.core.exceptions import PersistenceError
from ollama_chat.schemas.sessions import ChatSession, Message, UsageSnapshot

_sessions_adapter = TypeAdapter(list[ChatSession])


class SessionBackend(ABC):
    """Durable home for the whole session collection.

    ``save`` always receives every session, most recent first; there is no
    incremental write path.
    """

    @abstractmethod
    def load(self) -> list[ChatSession]:
        ...

    @abstractmethod
    def save(self, sessions: list[ChatSession]) -> None:
        ...


class MemoryBackend(SessionBackend):
    """Keeps the serialized collection in memory. Survives store re-creation, not the process."""

    def __init__(self, data: bytes | None = None):
        self.data = data
        self.writes = 0

    def load(self) -> list[ChatSession]:
        if self.data is None:
            return []
        try:
            return _sessions_adapter.validate_json(self.data)
        except ValidationError as e:
            raise PersistenceError("Stored sessions are corrupt.", details={"errors": e.error_count()})

    def save(self, sessions: list[ChatSession]) -> None:
        self.data = _sessions_adapter.dump_json(sessions)
        self.writes += 1


class JsonFileBackend(SessionBackend):
    """Writes the collection to one JSON file, replacing it atomically."""

    def __init__(self, path: str | Path):
        self.path = Path(path).expanduser()

    def load(self) -> list[ChatSession]:
        if not self.path.exists():
            return []
        try:
            raw = self.path.read_bytes()
        except OSError as e:
            raise PersistenceError(f"Cannot read {self.path}: {e}")
        if not raw.strip():
            return []
        try:
            return _sessions_adapter.validate_json(raw)
        except ValidationError as e:
            raise PersistenceError(
                f"Session file {self.path} is corrupt.", details={"errors": e.error_count()}
            )

    def save(self, sessions: list[ChatSession]) -> None:
        tmp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_bytes(_sessions_adapter.dump_json(sessions, indent=2))
            tmp_path.replace(self.path)
        except OSError as e:
            raise PersistenceError(f"Cannot write {self.path}: {e}")


class SqlBackend(SessionBackend):
    """Stores sessions and messages in two SQL tables, rewritten per save."""

    def __init__(self, url: str | None = None, engine: Engine | None = None):
        if engine is None and url is None:
            raise ValueError("SqlBackend needs a url or an engine.")
        try:
            self._engine = engine or make_engine(url)
            init_db(self._engine)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot open session database: {e}")

    def load(self) -> list[ChatSession]:
        try:
            with Session(self._engine) as db:
                session_rows = db.scalars(select(ChatSessionRow).order_by(ChatSessionRow.position)).all()
                message_rows = db.scalars(
                    select(ChatMessageRow).order_by(ChatMessageRow.session_id, ChatMessageRow.position)
                ).all()

                messages: dict[str, list[Message]] = defaultdict(list)
                for m in message_rows:
                    messages[m.session_id].append(Message(
                        role=m.role,
                        content=m.content,
                        reasoning=m.reasoning,
                        reasoning_seconds=m.reasoning_seconds,
                        timestamp=m.timestamp,
                    ))

                return [
                    ChatSession(
                        id=row.id,
                        title=row.title,
                        model=row.model,
                        created_at=row.created_at,
                        messages=messages[row.id],
                        usage=UsageSnapshot(used=row.context_used, total=row.context_total),
                    )
                    for row in session_rows
                ]
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot read session database: {e}")
        except ValidationError as e:
            raise PersistenceError("Session database holds invalid rows.", details={"errors": e.error_count()})

    def save(self, sessions: list[ChatSession]) -> None:
        try:
            with Session(self._engine) as db, db.begin():
                db.execute(delete(ChatMessageRow))
                db.execute(delete(ChatSessionRow))
                db.add_all([
                    ChatSessionRow(
                        id=s.id,
                        position=position,
                        title=s.title,
                        model=s.model,
                        created_at=s.created_at,
                        context_used=s.usage.used,
                        context_total=s.usage.total,
                    )
                    for position, s in enumerate(sessions)
                ])
                db.flush()
                db.add_all([
                    ChatMessageRow(
                        session_id=s.id,
                        position=position,
                        role=m.role,
                        content=m.content,
                        reasoning=m.reasoning,
                        reasoning_seconds=m.reasoning_seconds,
                        timestamp=m.timestamp,
                    )
                    for s in sessions
                    for position, m in enumerate(s.messages)
                ])
        except SQLAlchemyError as e:
            raise PersistenceError(f"Cannot write session database: {e}")

    def close(self) -> None:
        self._engine.dispose()


def create_backend(config: Settings) -> SessionBackend:
    """Build the backend named by ``chat_store_backend``."""
    kind = config.chat_store_backend.lower()
    if kind == "json":
        return JsonFileBackend(config.chat_store_path)
    if kind == "sqlite":
        return SqlBackend(config.chat_db_url)
    raise ValueError(f"Unsupported session backend: {config.chat_store_backend}")
