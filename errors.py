"""Error taxonomy for memory-client.

Every error carries the HTTP status the API surfaces return for it.
"""

from __future__ import annotations


class MemoryClientError(Exception):
    """Base class for all memory-client errors."""

    http_status = 500
    kind = "Error"

    def __str__(self) -> str:
        message = super().__str__()
        return message or self.kind


class InvalidArgument(MemoryClientError):
    """Malformed or missing caller input. Never retried."""

    http_status = 400
    kind = "InvalidArgument"


class UnsupportedOperation(MemoryClientError):
    """Unknown tool name or request type."""

    http_status = 400
    kind = "UnsupportedOperation"


class NotFound(MemoryClientError):
    """Referenced entity is absent."""

    http_status = 404
    kind = "NotFound"


class BackendUnavailable(MemoryClientError):
    """Network or backend failure. Surfaced, not retried automatically."""

    http_status = 500
    kind = "BackendUnavailable"


class EmbeddingError(BackendUnavailable):
    """The embedding provider failed to produce a vector."""

    kind = "EmbeddingError"


class OperationCancelled(MemoryClientError):
    """The caller's cancellation signal was set before the call was issued."""

    http_status = 503
    kind = "OperationCancelled"
