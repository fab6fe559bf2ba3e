import uuid
from datetime import datetime, timedelta

import structlog

from ollama_chat.config import settings
from ollama_chat.schemas.sessions import (
    DEFAULT_TITLE,
    ChatSession,
    Message,
    SessionGroups,
    UsageSnapshot,
)
from ollama_chat.services.storage import SessionBackend

logger = structlog.get_logger()

TITLE_MAX_CHARS = 40


def _derive_title(content: str) -> str:
    text = content.strip()
    if len(text) > TITLE_MAX_CHARS:
        return text[:TITLE_MAX_CHARS] + "..."
    return text


class SessionStore:
    """Owns every chat session and the pointer to the active one.

    Sessions are kept most-recently-created first. Every mutating call writes
    the full collection to the backend before returning; a failed write
    raises PersistenceError. Mutations naming an unknown session id are
    no-ops.
    """

    def __init__(self, backend: SessionBackend, default_context_length: int | None = None):
        self._backend = backend
        self._default_context_length = default_context_length or settings.ollama_default_context_length
        self._sessions: list[ChatSession] = backend.load()
        self._active_id: str | None = self._sessions[0].id if self._sessions else None
        logger.debug("sessions_loaded", count=len(self._sessions))

    def _save(self) -> None:
        self._backend.save(self._sessions)

    @property
    def active_id(self) -> str | None:
        return self._active_id

    def create(self, model: str) -> ChatSession:
        session = ChatSession(
            id=str(uuid.uuid4()),
            model=model,
            usage=UsageSnapshot(used=0, total=self._default_context_length),
        )
        self._sessions.insert(0, session)
        self._active_id = session.id
        self._save()
        logger.info("session_created", session_id=session.id, model=model)
        return session.model_copy(deep=True)

    def _find(self, session_id: str) -> ChatSession | None:
        return next((s for s in self._sessions if s.id == session_id), None)

    # Reads hand out deep copies; the stored sessions change only through the methods below.

    def get_all(self) -> list[ChatSession]:
        return [s.model_copy(deep=True) for s in self._sessions]

    def get_by_id(self, session_id: str) -> ChatSession | None:
        session = self._find(session_id)
        return session.model_copy(deep=True) if session is not None else None

    def get_active(self) -> ChatSession | None:
        if self._active_id is None:
            return None
        return self.get_by_id(self._active_id)

    def set_active(self, session_id: str) -> None:
        if self._find(session_id) is not None:
            self._active_id = session_id

    def rename(self, session_id: str, title: str) -> None:
        session = self._find(session_id)
        if session is None:
            return
        session.title = title.strip() or DEFAULT_TITLE
        self._save()

    def delete(self, session_id: str) -> None:
        remaining = [s for s in self._sessions if s.id != session_id]
        if len(remaining) == len(self._sessions):
            return
        self._sessions = remaining
        if self._active_id == session_id:
            self._active_id = remaining[0].id if remaining else None
        self._save()
        logger.info("session_deleted", session_id=session_id, active_id=self._active_id)

    def clear_all(self) -> None:
        self._sessions = []
        self._active_id = None
        self._save()
        logger.info("sessions_cleared")

    def append_message(self, session_id: str, message: Message) -> None:
        session = self._find(session_id)
        if session is None:
            return
        session.messages.append(message)
        # Title follows the opening user message
        if len(session.messages) == 1 and message.role == "user":
            session.title = _derive_title(message.content)
        self._save()

    def update_usage(self, session_id: str, used: int, total: int) -> None:
        session = self._find(session_id)
        if session is None:
            return
        session.usage = UsageSnapshot(used=used, total=total)
        self._save()

    def update_model(self, session_id: str, model: str) -> None:
        session = self._find(session_id)
        if session is None:
            return
        session.model = model
        self._save()

    def search(self, query: str) -> list[ChatSession]:
        """Case-insensitive substring match on titles and message contents."""
        q = query.strip().lower()
        if not q:
            return self.get_all()
        return [
            s.model_copy(deep=True) for s in self._sessions
            if q in s.title.lower() or any(q in m.content.lower() for m in s.messages)
        ]

    def group_by_recency(self, now: datetime | None = None) -> SessionGroups:
        """Partition sessions by creation time against local midnight boundaries."""
        now = (now or datetime.now()).astimezone()
        today = now.replace(hour=0, minute=0, second=0, microsecond=0)
        yesterday = today - timedelta(days=1)

        groups = SessionGroups()
        for s in self.get_all():
            if s.created_at >= today:
                groups.today.append(s)
            elif s.created_at >= yesterday:
                groups.yesterday.append(s)
            else:
                groups.older.append(s)
        return groups
