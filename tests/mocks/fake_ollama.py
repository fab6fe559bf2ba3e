"""Standalone mock Ollama server for local development and testing.

Run standalone: uvicorn tests.mocks.fake_ollama:app --port 11434
"""

import json

from fastapi import FastAPI
from fastapi.responses import JSONResponse, PlainTextResponse, StreamingResponse
from pydantic import BaseModel

app = FastAPI(title="Fake Ollama")


def ndjson(*frames: dict) -> list[bytes]:
    """Encode frames as one newline-terminated JSON line each."""
    return [(json.dumps(f) + "\n").encode() for f in frames]


DEFAULT_CHAT_CHUNKS = ndjson(
    {"message": {"role": "assistant", "content": "Hel"}, "done": False},
    {"message": {"role": "assistant", "content": "lo"}, "done": False},
    {"message": {"role": "assistant", "content": ""}, "done": True, "prompt_eval_count": 10, "eval_count": 5},
)


class _State:
    """Per-test knobs; reset by the autouse fixture in conftest."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.chat_chunks: list[bytes] = list(DEFAULT_CHAT_CHUNKS)
        self.chat_status = 200
        self.chat_requests: list[dict] = []
        self.show_requests: list[str] = []


state = _State()


class _ChatMessage(BaseModel):
    role: str
    content: str


class _ChatRequest(BaseModel):
    model: str
    messages: list[_ChatMessage] = []
    stream: bool = True
    options: dict | None = None


@app.post("/api/chat")
async def chat(request: _ChatRequest):
    state.chat_requests.append(request.model_dump(exclude_none=True))
    if state.chat_status != 200:
        return JSONResponse(status_code=state.chat_status, content={"error": "model runner has unexpectedly stopped"})

    async def generate():
        for chunk in state.chat_chunks:
            yield chunk

    return StreamingResponse(generate(), media_type="application/x-ndjson")


@app.get("/api/tags")
async def tags():
    """Installed models."""
    return {
        "models": [
            {
                "name": "llama3.2:latest",
                "model": "llama3.2:latest",
                "size": 2019393189,
                "details": {"family": "llama", "parameter_size": "3.2B", "quantization_level": "Q4_K_M"},
            },
            {
                "name": "deepseek-r1:8b",
                "model": "deepseek-r1:8b",
                "size": 4920738407,
                "details": {"family": "qwen2", "parameter_size": "8.2B", "quantization_level": "Q4_K_M"},
            },
            {
                "name": "my-finetune:latest",
                "model": "my-finetune:latest",
                "size": 1000,
                "details": {"family": "Qwen3"},
            },
        ]
    }


@app.get("/api/ps")
async def ps():
    """Models currently loaded in memory."""
    return {"models": [{"name": "llama3.2:latest", "model": "llama3.2:latest", "size": 2019393189}]}


class _ShowRequest(BaseModel):
    model: str


_SHOW_DATA = {
    "llama3.2:latest": {
        "details": {"family": "llama"},
        "model_info": {"general.architecture": "llama", "llama.context_length": 131072},
    },
    "deepseek-r1:8b": {
        "details": {"family": "qwen2"},
        "model_info": {"general.architecture": "qwen2", "qwen2.context_length": 204800},
    },
    "my-finetune:latest": {
        "details": {},
        "model_info": {},
    },
}


@app.post("/api/show")
async def show(request: _ShowRequest):
    """Model details, including the context length."""
    state.show_requests.append(request.model)
    data = _SHOW_DATA.get(request.model)
    if data is None:
        return JSONResponse(status_code=404, content={"error": f"model '{request.model}' not found"})
    return data


@app.get("/")
async def root():
    return PlainTextResponse("Ollama is running")
