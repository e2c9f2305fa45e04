"""
askbase - Error Taxonomy
==========================
Every failure the core can surface derives from ``AskbaseError``.

Each class carries three class-level attributes consumed by the HTTP
layer (``askbase.src.api.routes``):

``tag``
    Stable machine-readable identifier returned in error payloads.
``status_code``
    HTTP status the API boundary maps the error to.
``retryable``
    Whether a caller may retry the same request unchanged.
"""

from __future__ import annotations


class AskbaseError(Exception):
    """Base error for askbase."""

    tag: str = "internal_error"
    status_code: int = 500
    retryable: bool = False


class InvalidInput(AskbaseError):
    """Caller supplied an empty or malformed value."""

    tag = "invalid_input"
    status_code = 400


class ModelUnavailable(AskbaseError):
    """The embedding model has not loaded (or failed to load)."""

    tag = "model_unavailable"
    status_code = 503
    retryable = True


class EmbeddingError(AskbaseError):
    """Input could not be embedded (empty, oversized, backend failure, timeout)."""

    tag = "embedding_error"
    status_code = 503
    retryable = True


class DimensionMismatch(AskbaseError):
    """Query/stored vector width differs from the configured dimensionality."""

    tag = "dimension_mismatch"
    status_code = 500

    def __init__(self, expected: int, actual: int, where: str = "vector") -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(f"{where} has dimension {actual}, expected {expected}")


class StoreUnavailable(AskbaseError):
    """The vector store could not be reached or timed out."""

    tag = "store_unavailable"
    status_code = 503
    retryable = True


class HistoryWriteError(AskbaseError):
    """The interaction could not be recorded in query history."""

    tag = "history_write_error"
    status_code = 503
    retryable = True


class InvalidDocument(AskbaseError):
    """A single ingestion item was rejected; never aborts a batch."""

    tag = "invalid_document"
    status_code = 422
