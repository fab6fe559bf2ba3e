from ollama_chat.core.exceptions import (
    BackendUnavailableError,
    ChatError,
    NotFoundError,
    PersistenceError,
    RequestFailedError,
    TransportError,
)


def test_chat_error_to_dict():
    err = ChatError(code="test_error", message="Something broke", status=500)
    d = err.to_dict()
    assert d["error"]["code"] == "test_error"
    assert d["error"]["message"] == "Something broke"
    assert d["error"]["status"] == 500
    assert "details" not in d["error"]


def test_chat_error_with_details():
    err = ChatError(code="x", message="y", status=400, details={"hint": "try again"})
    d = err.to_dict()
    assert d["error"]["details"]["hint"] == "try again"
    assert str(err) == "y"


def test_transport_error_defaults():
    err = TransportError()
    assert err.status == 502
    assert err.code == "transport_error"


def test_request_failed_error_carries_server_status():
    err = RequestFailedError(404)
    assert err.status == 404
    assert err.code == "request_failed"
    assert err.message == "Ollama API error: 404"
    assert isinstance(err, TransportError)


def test_backend_unavailable_error_defaults():
    err = BackendUnavailableError()
    assert err.status == 503
    assert "suggestion" in err.details
    assert isinstance(err, TransportError)


def test_not_found_error_defaults():
    assert NotFoundError().status == 404


def test_persistence_error_defaults():
    err = PersistenceError()
    assert err.status == 500
    assert err.code == "persistence_error"
    assert not isinstance(err, TransportError)
