from pydantic import BaseModel

DEFAULT_CONTEXT_LENGTH = 4096


class ModelInfo(BaseModel):
    name: str
    loaded: bool = False
    context_length: int = DEFAULT_CONTEXT_LENGTH
    supports_reasoning: bool = False
    family: str | None = None


class ModelDetails(BaseModel):
    """Subset of the /api/show response the client cares about."""

    context_length: int = DEFAULT_CONTEXT_LENGTH
    family: str = ""
