from ollama_chat.config import settings
from ollama_chat.schemas.sessions import UsageSnapshot


class ContextTracker:
    """In-memory index of context-window usage per session id.

    Mirrors the snapshot embedded in each ChatSession; the orchestrator keeps
    the two equal. Nothing here is persisted.
    """

    def __init__(self, default_context_length: int | None = None):
        self.default_context_length = default_context_length or settings.ollama_default_context_length
        self._snapshots: dict[str, UsageSnapshot] = {}

    def record_turn(self, session_id: str, prompt_tokens: int, eval_tokens: int, total: int) -> None:
        self._snapshots[session_id] = UsageSnapshot(used=prompt_tokens + eval_tokens, total=total)

    def set_capacity(self, session_id: str, total: int) -> None:
        existing = self._snapshots.get(session_id)
        used = existing.used if existing else 0
        self._snapshots[session_id] = UsageSnapshot(used=used, total=total)

    def restore(self, session_id: str, snapshot: UsageSnapshot) -> None:
        """Seed the index from a session's stored snapshot (e.g. after a restart)."""
        self._snapshots[session_id] = snapshot.model_copy()

    def usage(self, session_id: str) -> UsageSnapshot:
        snapshot = self._snapshots.get(session_id)
        if snapshot is None:
            return UsageSnapshot(used=0, total=self.default_context_length)
        return snapshot.model_copy()

    def display_string(self, session_id: str) -> str:
        return self.usage(session_id).display

    def reset(self, session_id: str) -> None:
        self._snapshots.pop(session_id, None)
