"""Typed failures raised by the engine.

Every error carries a stable ``code`` and the HTTP status the API layer
answers with, so a route never has to translate individual exception types.
"""


class EngineError(Exception):
    code = "engine_error"
    status_code = 500

    def __init__(self, message: str, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self) -> dict:
        body = {"detail": self.message, "code": self.code}
        if self.context:
            body["context"] = self.context
        return body


class NotFound(EngineError):
    code = "not_found"
    status_code = 404


class InvalidLevel(EngineError):
    code = "invalid_level"
    status_code = 422


class InvalidInput(EngineError):
    code = "invalid_input"
    status_code = 422


class SessionAlreadyActive(EngineError):
    code = "session_already_active"
    status_code = 409


class InsufficientContent(EngineError):
    code = "insufficient_content"
    status_code = 409


class StorageUnavailable(EngineError):
    """Transient storage failure; the caller may retry with backoff."""

    code = "storage_unavailable"
    status_code = 503
    retry_after = 1


class StorageConflict(EngineError):
    """Unique-constraint violation the upsert logic did not absorb."""

    code = "storage_conflict"
    status_code = 500
