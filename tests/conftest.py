import json

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport

from ollama_chat.services.context_tracker import ContextTracker
from ollama_chat.services.inference.ollama_client import OllamaClient
from ollama_chat.services.sessions import SessionStore
from ollama_chat.services.storage import MemoryBackend
from tests.mocks.fake_ollama import app as fake_ollama_app
from tests.mocks.fake_ollama import state as fake_ollama_state


class ChunkedStream(httpx.AsyncByteStream):
    """Response body that arrives in exactly the given chunks.

    An ``Exception`` instance in ``chunks`` is raised when reached.
    """

    def __init__(self, chunks):
        self.chunks = list(chunks)
        self.sent = 0
        self.closed = False

    async def __aiter__(self):
        for chunk in self.chunks:
            if isinstance(chunk, Exception):
                raise chunk
            self.sent += 1
            yield chunk

    async def aclose(self):
        self.closed = True


@pytest.fixture(autouse=True)
def reset_fake_ollama():
    fake_ollama_state.reset()
    yield
    fake_ollama_state.reset()


@pytest_asyncio.fixture
async def ollama_client():
    """OllamaClient wired to the fake Ollama app via in-process ASGITransport."""
    transport = ASGITransport(app=fake_ollama_app)
    http_client = httpx.AsyncClient(transport=transport, base_url="http://fake-ollama")
    client = OllamaClient(base_url="http://fake-ollama", http_client=http_client, default_context_length=4096)
    yield client
    await client.close()


@pytest.fixture
def chunked_client():
    """Factory for an OllamaClient whose /api/chat body arrives in given chunks.

    Returns ``(client, stream, requests)``; ``requests`` collects the JSON body
    of every request sent.
    """
    def _make(chunks, status_code: int = 200):
        stream = ChunkedStream(chunks)
        requests: list[dict] = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(json.loads(request.content) if request.content else {})
            return httpx.Response(status_code, stream=stream)

        http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        client = OllamaClient(base_url="http://mock-ollama", http_client=http_client, default_context_length=4096)
        return client, stream, requests

    return _make


@pytest.fixture
def memory_backend():
    return MemoryBackend()


@pytest.fixture
def store(memory_backend):
    return SessionStore(memory_backend, default_context_length=4096)


@pytest.fixture
def tracker():
    return ContextTracker(default_context_length=4096)
