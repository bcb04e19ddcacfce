from core.exceptions import ErrorKind, GenerationError

# Last-resort markers for providers that only give us an error string
QUOTA_MARKERS = ("quota exceeded", "resourceexhausted")

QUOTA_MESSAGE = "service temporarily unavailable due to high demand"
GENERIC_MESSAGE = "try-on generation failed"


class ErrorClassifier:
    def classify(self, error: BaseException) -> ErrorKind:
        """
        Structured kind first (set by the gateway), message text second.
        """
        kind = getattr(error, "kind", None)
        if isinstance(kind, ErrorKind):
            return kind

        text = str(error).lower()
        if any(marker in text for marker in QUOTA_MARKERS):
            return ErrorKind.QUOTA_EXCEEDED
        return ErrorKind.GENERIC

    def to_generation_error(self, error: BaseException) -> GenerationError:
        """Wraps a gateway failure into a classified GenerationError."""
        kind = self.classify(error)
        prefix = QUOTA_MESSAGE if kind == ErrorKind.QUOTA_EXCEEDED else GENERIC_MESSAGE
        return GenerationError(f"{prefix}: {error}", original_error=error, kind=kind)
