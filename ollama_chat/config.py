from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ollama server
    ollama_base_url: str = "http://localhost:11434"
    ollama_default_context_length: int = 4096
    ollama_reasoning_families: list[str] = ["deepseek", "qwen", "qwq"]

    # HTTP client timeouts (seconds). A read timeout of None never expires.
    ollama_http_connect_timeout: float = 5.0
    ollama_http_read_timeout: float | None = None

    # Readiness polling
    ollama_ready_timeout: float = 30.0
    ollama_ready_interval: float = 0.5

    # Session persistence
    chat_store_backend: str = "json"  # "json" or "sqlite"
    chat_store_path: str = "~/.ollama-chat/sessions.json"
    chat_db_url: str = "sqlite:///~/.ollama-chat/sessions.db"

    # Chat defaults
    chat_default_model: str | None = None

    # Logging
    chat_log_level: str = "warning"

    model_config = {"env_prefix": "", "case_sensitive": False, "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
