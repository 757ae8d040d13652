from __future__ import annotations


class GenServeError(Exception):
    """Base class for errors raised by the request-lifecycle core."""


class ConfigurationError(GenServeError):
    """Required configuration is missing or malformed. Fatal at startup."""


class AdmissionError(GenServeError):
    """The request body is malformed or lacks a prompt."""


class EngineOverloaded(GenServeError):
    """The backpressure watermark would be exceeded by this request."""


class DuplicateRequestError(GenServeError):
    """A request with the same id is already in flight."""


class EngineFailure(GenServeError):
    def __init__(self, request_id: str, message: str) -> None:
        super().__init__(message)
        self.request_id = request_id
        self.message = message


class EngineInitializationError(GenServeError):
    """The engine could not be started; the replica must not serve traffic."""


class ClientDisconnected(GenServeError):
    def __init__(self, request_id: str) -> None:
        super().__init__(f"client disconnected during request {request_id}")
        self.request_id = request_id


class InvalidStateTransition(GenServeError):
    pass


class StreamOrderError(GenServeError):
    """Cumulative engine text shrank between two outputs of one request."""
