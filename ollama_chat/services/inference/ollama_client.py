import asyncio
import time
from collections.abc import AsyncIterator, Sequence
from typing import Any

import httpx
import structlog

from ollama_chat.config import settings
from ollama_chat.core.exceptions import BackendUnavailableError, RequestFailedError, TransportError
from ollama_chat.schemas.chat import ChatMessage, ChatRequest, ChatResult, StreamUpdate
from ollama_chat.schemas.models import ModelDetails, ModelInfo
from ollama_chat.services.inference.base import InferenceBackend
from ollama_chat.services.inference.frames import iter_frames

logger = structlog.get_logger()


# ── Model capability classification ──────────────────────────────────────────


def supports_reasoning(name: str, family: str | None = None, families: Sequence[str] | None = None) -> bool:
    """True when the model name or family matches a known reasoning-capable family."""
    families = settings.ollama_reasoning_families if families is None else families
    name_lower = name.lower()
    family_lower = (family or "").lower()
    return any(f in name_lower or (family_lower and f in family_lower) for f in families)


def _parse_context_length(model_info: dict, default: int) -> int:
    """Pick the context length out of an /api/show ``model_info`` block."""
    for key in ("llama.context_length", "context_length"):
        value = model_info.get(key)
        if isinstance(value, int) and value > 0:
            return value
    # Key varies by architecture (e.g. qwen2.context_length)
    for key, value in model_info.items():
        if key.endswith(".context_length") and isinstance(value, int) and value > 0:
            return value
    return default


def _as_int(value: Any) -> int | None:
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    return None


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _to_update(frame: Any) -> StreamUpdate:
    """Map one decoded /api/chat frame to a StreamUpdate, defaulting missing fields."""
    if not isinstance(frame, dict):
        return StreamUpdate()
    message = frame.get("message")
    if not isinstance(message, dict):
        message = {}
    return StreamUpdate(
        content=_as_str(message.get("content")),
        reasoning=_as_str(message.get("thinking")),
        done=frame.get("done") is True,
        prompt_tokens=_as_int(frame.get("prompt_eval_count")),
        eval_tokens=_as_int(frame.get("eval_count")),
    )


class OllamaClient(InferenceBackend):
    def __init__(
        self,
        base_url: str | None = None,
        http_client: httpx.AsyncClient | None = None,
        default_context_length: int | None = None,
    ):
        self.base_url = (base_url or settings.ollama_base_url).rstrip("/")
        self.default_context_length = default_context_length or settings.ollama_default_context_length
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=settings.ollama_http_connect_timeout,
                read=settings.ollama_http_read_timeout,
                write=5.0,
                pool=5.0,
            )
        )

    def _format_messages(self, messages: Sequence[Any]) -> list[ChatMessage]:
        """Strip everything but role and content before sending upstream."""
        return [ChatMessage(role=m.role, content=m.content) for m in messages]

    async def chat_stream(
        self,
        model: str,
        messages: Sequence[Any],
        think: bool = True,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamUpdate]:
        """Stream a chat turn from /api/chat, yielding one update per frame.

        Raises RequestFailedError before yielding anything if the server
        answers with a non-success status. Closing the generator early, or
        setting ``cancel``, closes the response.
        """
        url = f"{self.base_url}/api/chat"
        request = ChatRequest(
            model=model,
            messages=self._format_messages(messages),
            stream=True,
            options={"think": True} if think else None,
        )
        payload = request.model_dump(exclude_none=True)

        start_time = time.monotonic()
        prompt_tokens = eval_tokens = None
        frames = 0
        logger.debug("chat_stream_started", model=model, messages=len(request.messages), think=think)

        try:
            async with self._client.stream("POST", url, json=payload) as response:
                if not response.is_success:
                    await response.aread()
                    logger.warning("chat_stream_rejected", model=model, status=response.status_code)
                    raise RequestFailedError(
                        response.status_code,
                        details={"body": response.text[:500]} if response.text else None,
                    )
                async for frame in iter_frames(response.aiter_bytes(), cancel):
                    update = _to_update(frame)
                    frames += 1
                    if update.prompt_tokens is not None:
                        prompt_tokens = update.prompt_tokens
                    if update.eval_tokens is not None:
                        eval_tokens = update.eval_tokens
                    yield update
        except httpx.ConnectError as e:
            logger.error("chat_stream_failed", model=model, error=str(e))
            raise TransportError(f"Cannot connect to Ollama at {self.base_url}: {e}")
        except httpx.TimeoutException:
            logger.error("chat_stream_failed", model=model, error="timeout")
            raise TransportError("Ollama request timed out.")
        except httpx.TransportError as e:
            logger.error("chat_stream_failed", model=model, error=str(e))
            raise TransportError(f"Ollama stream broke off: {e}")

        logger.info(
            "chat_stream_completed",
            model=model,
            frames=frames,
            prompt_tokens=prompt_tokens,
            eval_tokens=eval_tokens,
            cancelled=cancel is not None and cancel.is_set(),
            duration_ms=round((time.monotonic() - start_time) * 1000, 2),
        )

    async def chat(self, model: str, messages: Sequence[Any], think: bool = True) -> ChatResult:
        """Collect a whole chat turn into one result."""
        result = ChatResult()
        async for update in self.chat_stream(model, messages, think=think):
            result.content += update.content
            result.reasoning += update.reasoning
            if update.prompt_tokens:
                result.prompt_tokens = update.prompt_tokens
            if update.eval_tokens:
                result.eval_tokens = update.eval_tokens
        return result

    async def list_models(self) -> list[ModelInfo]:
        """List installed models from /api/tags, marking those loaded per /api/ps."""
        try:
            tags_response, ps_response = await asyncio.gather(
                self._client.get(f"{self.base_url}/api/tags"),
                self._client.get(f"{self.base_url}/api/ps"),
            )
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise TransportError(f"Cannot reach Ollama at {self.base_url}: {e}")
        except httpx.HTTPError as e:
            raise TransportError(f"Ollama request failed: {e}")

        if not tags_response.is_success:
            raise RequestFailedError(tags_response.status_code)

        try:
            tags = tags_response.json().get("models") or []
        except ValueError as e:
            raise TransportError(f"Ollama returned invalid JSON from /api/tags: {e}")

        loaded: set[str] = set()
        # Loaded status is best-effort
        if ps_response.is_success:
            try:
                loaded = {m.get("model", m.get("name", "")) for m in ps_response.json().get("models") or []}
            except ValueError:
                logger.warning("model_status_unavailable", reason="invalid JSON from /api/ps")

        models = []
        for m in tags:
            name = m.get("name", "")
            family = (m.get("details") or {}).get("family")
            models.append(ModelInfo(
                name=name,
                loaded=name in loaded,
                context_length=self.default_context_length,
                supports_reasoning=supports_reasoning(name, family),
                family=family,
            ))
        return models

    async def get_model_info(self, model: str) -> ModelDetails:
        """Get context length and family for a model via /api/show."""
        try:
            response = await self._client.post(f"{self.base_url}/api/show", json={"model": model})
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            raise TransportError(f"Cannot reach Ollama at {self.base_url}: {e}")
        except httpx.HTTPError as e:
            raise TransportError(f"Ollama request failed: {e}")
        if not response.is_success:
            raise RequestFailedError(response.status_code, f"Could not inspect model '{model}'.")

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError(f"Ollama returned invalid JSON for model '{model}': {e}")
        return ModelDetails(
            context_length=_parse_context_length(data.get("model_info") or {}, self.default_context_length),
            family=(data.get("details") or {}).get("family") or "",
        )

    async def health_check(self) -> bool:
        """Check if Ollama is responsive (it answers 200 at the root)."""
        try:
            response = await self._client.get(f"{self.base_url}/")
            return response.status_code == 200
        except httpx.HTTPError:
            return False

    async def wait_until_ready(self, timeout: float | None = None, interval: float | None = None) -> None:
        """Poll the health check until it passes or ``timeout`` seconds elapse."""
        timeout = settings.ollama_ready_timeout if timeout is None else timeout
        interval = settings.ollama_ready_interval if interval is None else interval
        deadline = time.monotonic() + timeout
        while True:
            if await self.health_check():
                return
            if time.monotonic() >= deadline:
                raise BackendUnavailableError(f"Ollama at {self.base_url} did not become ready within {timeout}s.")
            await asyncio.sleep(interval)

    async def close(self):
        """Close the underlying HTTP client."""
        await self._client.aclose()
