class ChatError(Exception):
    """Base exception for ollama-chat errors."""

    def __init__(
        self,
        code: str,
        message: str,
        status: int = 500,
        details: dict | None = None,
    ):
        self.code = code
        self.message = message
        self.status = status
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        result = {
            "error": {
                "code": self.code,
                "message": self.message,
                "status": self.status,
            }
        }
        if self.details:
            result["error"]["details"] = self.details
        return result


class TransportError(ChatError):
    def __init__(
        self,
        message: str = "Could not reach the Ollama server.",
        details: dict | None = None,
        code: str = "transport_error",
        status: int = 502,
    ):
        super().__init__(code=code, message=message, status=status, details=details)


class RequestFailedError(TransportError):
    """The server answered a request with a non-success status."""

    def __init__(self, status: int, message: str | None = None, details: dict | None = None):
        super().__init__(
            message=message or f"Ollama API error: {status}",
            details=details,
            code="request_failed",
            status=status,
        )


class BackendUnavailableError(TransportError):
    def __init__(self, message: str = "Ollama server is unavailable.", details: dict | None = None):
        super().__init__(
            message=message,
            details=details or {"suggestion": "Start it with `ollama serve` and try again."},
            code="backend_unavailable",
            status=503,
        )


class NotFoundError(ChatError):
    def __init__(self, message: str = "Resource not found.", details: dict | None = None):
        super().__init__(code="not_found", message=message, status=404, details=details)


class PersistenceError(ChatError):
    def __init__(self, message: str = "Session storage failed.", details: dict | None = None):
        super().__init__(code="persistence_error", message=message, status=500, details=details)
