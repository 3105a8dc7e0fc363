"""Exceptions raised by conv-memory.

Every failure the library surfaces is a subclass of ConvMemoryError so callers
can catch by category (parse, embedding, storage, search) or by exact kind.
"""


class ConvMemoryError(Exception):
    """Base exception for all conv-memory errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ParseError(ConvMemoryError):
    """Raised when a rollout stream cannot be normalised."""


class InvalidJsonError(ParseError):
    """Raised when a rollout line is not valid JSON."""

    def __init__(self, line_number: int, cause: Exception | None = None):
        details: dict = {"line_number": line_number}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Invalid JSON on line {line_number}", details)
        self.line_number = line_number


class MissingFieldError(ParseError):
    """Raised when a record lacks a field the normaliser needs."""

    def __init__(self, field: str):
        super().__init__(f"Missing field '{field}'", {"field": field})
        self.field = field


class TimestampError(ParseError):
    """Raised when a timestamp string is not valid RFC 3339."""

    def __init__(self, value: str, cause: Exception | None = None):
        details = {"value": value}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Invalid timestamp '{value}'", details)
        self.value = value


class EmbeddingError(ConvMemoryError):
    """Base exception for embedding backend failures."""


class EmbeddingUnavailableError(EmbeddingError):
    """Raised when the embedding backend cannot be loaded."""


class EmbeddingInferenceError(EmbeddingError):
    """Raised when the embedding backend fails on an input."""


class EmbeddingOutputMismatchError(EmbeddingError):
    """Raised when the number of vectors does not match the number of inputs."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding output missing: expected {expected} vectors, got {actual}",
            {"expected": expected, "actual": actual},
        )
        self.expected = expected
        self.actual = actual


class StorageError(ConvMemoryError):
    """Raised when a storage operation fails."""

    def __init__(self, operation: str, cause: Exception | None = None, details: dict | None = None):
        details = dict(details or {})
        details["operation"] = operation
        if cause:
            details["cause"] = str(cause)
        message = f"Storage operation failed: {operation}"
        if cause:
            message += f" ({cause})"
        super().__init__(message, details)
        self.operation = operation


class EmbeddingDimensionMismatchError(StorageError):
    """Raised when a conversation already holds vectors of another dimension."""

    def __init__(self, conversation_id: str, expected: int, actual: int):
        super().__init__(
            "insert_turn",
            details={"conversation_id": conversation_id, "expected": expected, "actual": actual},
        )
        self.message = (
            f"Embedding dimension mismatch for {conversation_id}: "
            f"stored {expected}, got {actual}"
        )
        self.args = (self.message,)
        self.conversation_id = conversation_id
        self.expected = expected
        self.actual = actual


class RolloutReadError(ConvMemoryError):
    """Raised when a rollout file or its metadata cannot be read."""

    def __init__(self, path: str, cause: Exception | None = None):
        details = {"path": path}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Cannot read rollout: {path}", details)
        self.path = path


class SearchError(ConvMemoryError):
    """Base exception for search failures."""


class InvalidFilterError(SearchError):
    """Raised when a metadata filter key is not a safe dotted path."""

    def __init__(self, key: str):
        super().__init__(f"Invalid metadata filter key '{key}'", {"key": key})
        self.key = key


class InvalidPrefetchError(SearchError):
    """Raised when an explicit candidate prefetch size is not positive."""

    def __init__(self, prefetch: int):
        super().__init__(f"Prefetch must be positive, got {prefetch}", {"prefetch": prefetch})
        self.prefetch = prefetch
