import asyncio
import math
import time
from collections.abc import AsyncIterator, Callable
from contextlib import aclosing

import structlog

from ollama_chat.core.exceptions import NotFoundError, TransportError
from ollama_chat.schemas.models import ModelInfo
from ollama_chat.schemas.sessions import ChatSession, Message, TurnProgress
from ollama_chat.services.context_tracker import ContextTracker
from ollama_chat.services.inference.base import InferenceBackend
from ollama_chat.services.inference.ollama_client import supports_reasoning
from ollama_chat.services.sessions import SessionStore

logger = structlog.get_logger()


class ChatOrchestrator:
    """Runs user turns against the server and keeps the store and tracker in step."""

    def __init__(
        self,
        client: InferenceBackend,
        store: SessionStore,
        tracker: ContextTracker,
        default_model: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.store = store
        self.tracker = tracker
        self.selected_model = default_model
        self.models: dict[str, ModelInfo] = {}
        self._capacities: dict[str, int] = {}
        self._clock = clock

    # ── Models ───────────────────────────────────────────────────────────────

    async def refresh_models(self) -> list[ModelInfo]:
        models = await self.client.list_models()
        self.models = {m.name: m for m in models}
        if self.selected_model is None and models:
            self.selected_model = models[0].name
        return models

    def _supports_reasoning(self, model: str) -> bool:
        info = self.models.get(model)
        if info is not None:
            return info.supports_reasoning
        return supports_reasoning(model)

    async def _capacity(self, model: str, fallback: int) -> int:
        """Context length for ``model``, fetched once and cached. Best-effort."""
        if model in self._capacities:
            return self._capacities[model]
        try:
            details = await self.client.get_model_info(model)
        except TransportError as e:
            logger.warning("model_capacity_unavailable", model=model, error=e.message)
            return fallback
        self._capacities[model] = details.context_length
        return details.context_length

    async def sync_capacity(self, session: ChatSession) -> None:
        """Refresh a session's capacity from the server in both tracker and store."""
        total = await self._capacity(session.model, session.usage.total)
        self.tracker.set_capacity(session.id, total)
        self.store.update_usage(session.id, session.usage.used, total)

    async def select_model(self, model: str) -> None:
        self.selected_model = model
        active = self.store.get_active()
        if active is None:
            return
        self.store.update_model(active.id, model)
        await self.sync_capacity(self.store.get_by_id(active.id))

    # ── Sessions ─────────────────────────────────────────────────────────────

    async def initialize(self) -> ChatSession:
        """Load models, seed the tracker from stored usage, and ensure an active session."""
        await self.refresh_models()
        for session in self.store.get_all():
            self.tracker.restore(session.id, session.usage)

        active = self.store.get_active()
        if active is None:
            active = self._create_session()
        else:
            self.selected_model = active.model
        await self.sync_capacity(active)
        return active

    def _create_session(self) -> ChatSession:
        if not self.selected_model:
            raise NotFoundError("No model selected.", details={"suggestion": "Pull a model with `ollama pull`."})
        session = self.store.create(self.selected_model)
        self.tracker.restore(session.id, session.usage)
        return session

    async def new_session(self) -> ChatSession:
        session = self._create_session()
        await self.sync_capacity(session)
        return session

    def set_active(self, session_id: str) -> None:
        self.store.set_active(session_id)
        active = self.store.get_active()
        if active is not None:
            self.selected_model = active.model

    def delete_session(self, session_id: str) -> None:
        self.store.delete(session_id)
        self.tracker.reset(session_id)
        active = self.store.get_active()
        if active is not None:
            self.selected_model = active.model

    # ── Turns ────────────────────────────────────────────────────────────────

    async def stream_turn(self, text: str, cancel: asyncio.Event | None = None) -> AsyncIterator[TurnProgress]:
        """Send one user turn and yield accumulated progress per stream update.

        The assistant message and usage are committed only once the stream
        has finished. A TransportError propagates with nothing committed
        beyond the user message; a cancelled turn ends quietly the same way.
        """
        text = text.strip()
        if not text:
            return

        session = self.store.get_active() or self._create_session()
        self.store.append_message(session.id, Message(role="user", content=text))
        session = self.store.get_by_id(session.id)

        content = ""
        reasoning = ""
        reasoning_seconds = 0
        prompt_tokens = eval_tokens = None
        start = self._clock()

        stream = self.client.chat_stream(
            session.model,
            session.messages,
            think=self._supports_reasoning(session.model),
            cancel=cancel,
        )
        async with aclosing(stream) as updates:
            async for update in updates:
                if update.reasoning:
                    reasoning += update.reasoning
                    reasoning_seconds = math.floor(self._clock() - start + 0.5)
                content += update.content
                if update.done and update.prompt_tokens is not None and update.eval_tokens is not None:
                    prompt_tokens, eval_tokens = update.prompt_tokens, update.eval_tokens
                yield TurnProgress(
                    content=content,
                    reasoning=reasoning,
                    reasoning_seconds=reasoning_seconds if reasoning else None,
                )

        if cancel is not None and cancel.is_set():
            logger.info("turn_cancelled", session_id=session.id)
            return

        total = session.usage.total
        if prompt_tokens is not None:
            total = await self._capacity(session.model, total)

        if self.store.get_by_id(session.id) is None:
            logger.warning("turn_discarded", session_id=session.id, reason="session deleted")
            return

        # No suspension point from here on: tracker and store change together.
        if prompt_tokens is not None:
            self.tracker.record_turn(session.id, prompt_tokens, eval_tokens, total)
            self.store.update_usage(session.id, prompt_tokens + eval_tokens, total)

        message = Message(
            role="assistant",
            content=content,
            reasoning=reasoning or None,
            reasoning_seconds=reasoning_seconds if reasoning else None,
        )
        self.store.append_message(session.id, message)
        logger.info(
            "turn_completed",
            session_id=session.id,
            model=session.model,
            content_chars=len(content),
            reasoning_chars=len(reasoning),
            used=self.tracker.usage(session.id).used,
        )
        yield TurnProgress(
            content=content,
            reasoning=reasoning,
            reasoning_seconds=message.reasoning_seconds,
            done=True,
            message=message,
            usage=self.tracker.usage(session.id),
        )

    async def send_turn(self, text: str, cancel: asyncio.Event | None = None) -> Message | None:
        """Run a turn to completion and return the committed assistant message."""
        message = None
        async for progress in self.stream_turn(text, cancel=cancel):
            if progress.message is not None:
                message = progress.message
        return message
