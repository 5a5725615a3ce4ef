"""Shared error taxonomy for the ticker state engine."""

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Failure categories carried by every failed ValidationResult."""

    VALIDATION = "validation"
    RATE_LIMIT = "rate_limit"
    NOT_FOUND = "not_found"
    RETRY_EXHAUSTED = "retry_exhausted"
    STORAGE = "storage"
    INTERNAL = "internal"

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.value


class TickerEngineError(RuntimeError):
    """Raised inside engine components; converted to a result at the store boundary."""

    kind = ErrorKind.INTERNAL

    def __init__(self, message: str, original: Optional[Exception] = None):
        super().__init__(message)
        self.original = original


class StorageIntegrityError(TickerEngineError):
    """Raised when a persisted blob cannot be decoded, verified or accepted."""

    kind = ErrorKind.STORAGE

    def __init__(self, key: str, message: str, original: Optional[Exception] = None):
        super().__init__(message, original)
        self.key = key
