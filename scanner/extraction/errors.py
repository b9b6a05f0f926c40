"""Error taxonomy for the analysis pipeline.

Every error carries a ``kind`` tag and a ``retryable`` flag. Retry policy is
a function of the tag (see :func:`is_rate_limited`), never of the message
text, so upstream wording changes cannot alter retry behavior.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Tag identifying the failure class of a :class:`ScannerError`."""

    RATE_LIMIT = "rate_limit"
    TIMEOUT = "timeout"
    PARSE = "parse"
    UPSTREAM = "upstream"
    EXHAUSTED = "exhausted"
    SINK = "sink"
    CONFIGURATION = "configuration"


class ScannerError(Exception):
    """Base class for all pipeline errors.

    Attributes:
        kind: Failure class
        retryable: Whether some retry loop may try again
        attempt: Attempt number the error occurred on, when known
    """

    kind: ErrorKind = ErrorKind.UPSTREAM
    retryable: bool = False

    def __init__(self, message: str, *, attempt: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.attempt = attempt


class RetryableError(ScannerError):
    """Transient failure; the same request may succeed later."""

    retryable = True


class FatalError(ScannerError):
    """Permanent failure; retrying the same request is pointless."""

    retryable = False


class RateLimitError(RetryableError):
    """Upstream signalled rate limiting (HTTP 429 or RESOURCE_EXHAUSTED)."""

    kind = ErrorKind.RATE_LIMIT

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        *,
        status_code: int | None = 429,
        attempt: int | None = None,
    ) -> None:
        super().__init__(message, attempt=attempt)
        self.status_code = status_code


class AnalysisTimeoutError(RetryableError):
    """A single upstream call exceeded its wall-clock limit."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout_seconds: float, *, attempt: int | None = None) -> None:
        super().__init__(
            f"Analysis request timed out after {timeout_seconds:g}s", attempt=attempt
        )
        self.timeout_seconds = timeout_seconds


class ResponseParseError(FatalError):
    """The AI output could not be coerced into a JSON object.

    Attributes:
        stage: Pipeline stage that failed (boundary, repair, parse)
    """

    kind = ErrorKind.PARSE

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"[{stage}] {message}")
        self.stage = stage


class UpstreamAPIError(FatalError):
    """Non-success response (or transport failure) from the analysis endpoint."""

    kind = ErrorKind.UPSTREAM

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        attempt: int | None = None,
    ) -> None:
        super().__init__(message, attempt=attempt)
        self.status_code = status_code


class RetriesExhaustedError(FatalError):
    """A retryable failure persisted through every allowed attempt."""

    kind = ErrorKind.EXHAUSTED

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"Request failed after {attempts} attempts: {last_error}", attempt=attempts
        )
        self.attempts = attempts
        self.last_error = last_error

    @property
    def last_kind(self) -> ErrorKind | None:
        """Kind of the error seen on the final attempt."""
        if isinstance(self.last_error, ScannerError):
            return self.last_error.kind
        return None


class SinkDeliveryError(FatalError):
    """A webhook POST failed at the network level on every attempt."""

    kind = ErrorKind.SINK

    def __init__(self, sink: str, attempts: int, message: str) -> None:
        super().__init__(f"Delivery to {sink} failed after {attempts} attempts: {message}")
        self.sink = sink
        self.attempts = attempts


class ConfigurationError(FatalError):
    """Required configuration (e.g. API key) is missing."""

    kind = ErrorKind.CONFIGURATION


def is_rate_limited(error: BaseException) -> bool:
    """Whether the request queue should back off and retry this error."""
    return isinstance(error, ScannerError) and error.kind is ErrorKind.RATE_LIMIT


def is_retryable(error: BaseException) -> bool:
    """Whether any retry loop may try again after this error."""
    return isinstance(error, ScannerError) and error.retryable
