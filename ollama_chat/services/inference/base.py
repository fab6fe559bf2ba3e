import asyncio
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator

from ollama_chat.schemas.chat import ChatMessage, ChatResult, StreamUpdate
from ollama_chat.schemas.models import ModelDetails, ModelInfo


class InferenceBackend(ABC):
    @abstractmethod
    def chat_stream(
        self,
        model: str,
        messages: list[ChatMessage],
        think: bool = True,
        cancel: asyncio.Event | None = None,
    ) -> AsyncIterator[StreamUpdate]:
        """Stream one chat turn as normalised updates, one per frame."""
        ...

    @abstractmethod
    async def chat(self, model: str, messages: list[ChatMessage], think: bool = True) -> ChatResult:
        """Run one chat turn to completion and return the aggregate."""
        ...

    @abstractmethod
    async def list_models(self) -> list[ModelInfo]:
        """List installed models and whether each is loaded."""
        ...

    @abstractmethod
    async def get_model_info(self, model: str) -> ModelDetails:
        """Get context length and family for a model."""
        ...

    @abstractmethod
    async def health_check(self) -> bool:
        """Check if the server is responsive."""
        ...
