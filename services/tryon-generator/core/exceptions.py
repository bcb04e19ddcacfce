from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    QUOTA_EXCEEDED = "quota_exceeded"
    GENERIC = "generic"


class TryOnError(Exception):
    """
    Base class for all application-specific exceptions.
    captures the original exception for debugging if needed.
    """

    def __init__(self, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.original_error = original_error


# --- Domain Exceptions (Logic Failures) ---


class ValidationException(TryOnError):
    """
    Raised when the request itself is unusable: a missing or unreadable
    person/garment image, or parameters outside their allowed ranges.
    Always raised before any generation work starts.
    """

    pass


class UploadTooLargeError(ValidationException):
    """
    Raised when uploaded images exceed the configured size cap.
    Maps to HTTP 413.
    """

    pass


class NormalizationError(TryOnError):
    """
    Raised when image bytes are in an unsupported format or cannot be
    decoded/re-encoded into the canonical encoding.
    """

    pass


class GenerationError(TryOnError):
    """
    Raised when the try-on model provider fails.

    ``kind`` is the structured classification. Gateways set it at their
    boundary when the provider tells them (HTTP 429, RESOURCE_EXHAUSTED);
    ``None`` means the classifier has to fall back to the message text.
    """

    def __init__(
        self,
        message: str,
        original_error: Optional[BaseException] = None,
        kind: Optional[ErrorKind] = None,
    ):
        super().__init__(message, original_error)
        self.kind = kind

    @property
    def is_quota_exceeded(self) -> bool:
        return self.kind == ErrorKind.QUOTA_EXCEEDED


class EmptyResultError(GenerationError):
    """
    Raised when the provider answered successfully but produced no images.
    Treated as a generic failure, never as an empty success.
    """

    def __init__(self, message: str = "no images generated"):
        super().__init__(message, kind=ErrorKind.GENERIC)


# --- Infrastructure Exceptions (System Failures) ---


class StorageError(TryOnError):
    """
    Raised when the request store cannot persist a request or result.
    """

    pass


class RequestNotFoundError(TryOnError):
    """
    Raised when a request ID is unknown to the store (or has expired).
    Maps to HTTP 404.
    """

    pass
