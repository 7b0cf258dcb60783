"""Exception hierarchy for LLM Bridge provider errors.

Every failure an adapter can observe is mapped to exactly one of these typed
exceptions so callers can handle them without inspecting raw HTTP or provider
payloads.  The class says *where* the failure was detected (``kind``); the
``category`` attribute says *what* the provider reported (rate limiting,
authentication, ...).

Synchronous calls raise these errors.  Streaming calls never raise across the
stream boundary: the error is delivered as the ``error`` field of the final
chunk instead.
"""

from enum import Enum


class ErrorKind(str, Enum):
    """Where in the call pipeline the failure was detected."""

    INVALID_REQUEST = "invalid-request"
    TRANSPORT = "transport"
    HTTP_STATUS = "http-status"
    PROVIDER_API_ERROR = "provider-api-error"
    DECODE_ERROR = "decode-error"
    STREAM_CLOSED = "stream-closed"


class ErrorCategory(str, Enum):
    """Provider-agnostic meaning of a failure."""

    RATE_LIMITED = "rate-limited"
    INVALID_REQUEST = "invalid-request"
    AUTH = "auth"
    OVERLOADED = "overloaded"
    UNKNOWN = "unknown"


_RETRYABLE_CATEGORIES: frozenset[ErrorCategory] = frozenset(
    {ErrorCategory.RATE_LIMITED, ErrorCategory.OVERLOADED}
)


class ProviderError(Exception):
    """Base exception for all LLM provider errors.

    Attributes:
        message: Human-readable error description.
        kind: Pipeline stage that detected the failure.
        category: Canonical meaning of the failure.
        status_code: HTTP status code, when one was received.
        error_type: Error tag reported by the provider (e.g.
            ``"rate_limit_error"``), when the body could be parsed.
        provider: Provider name (e.g. ``"anthropic"``).  ``None`` when the
            provider could not be determined.
        body_excerpt: Bounded excerpt of the raw response body for diagnosis.
        original_error: The upstream exception that caused this error, if any.
    """

    kind: ErrorKind = ErrorKind.TRANSPORT

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        original_error: Exception | None = None,
        *,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        status_code: int | None = None,
        error_type: str | None = None,
        body_excerpt: str | None = None,
    ) -> None:
        self.message = message
        self.provider = provider
        self.original_error = original_error
        self.category = category
        self.status_code = status_code
        self.error_type = error_type
        self.body_excerpt = body_excerpt
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        """Whether a caller-side retry policy may safely re-issue the request."""
        return self.category in _RETRYABLE_CATEGORIES

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(kind={self.kind.value!r}, "
            f"category={self.category.value!r}, status_code={self.status_code!r}, "
            f"error_type={self.error_type!r}, message={self.message!r})"
        )


class InvalidRequestError(ProviderError):
    """Raised for requests rejected before any I/O because they are malformed."""

    kind = ErrorKind.INVALID_REQUEST

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message, provider=provider, category=ErrorCategory.INVALID_REQUEST)


class TransportError(ProviderError):
    """Raised for network, DNS or TLS failures before any response was received."""

    kind = ErrorKind.TRANSPORT

    @property
    def retryable(self) -> bool:
        return True


class TimeoutError(TransportError):  # noqa: A001
    """Raised when a request, or a read on an open stream, exceeds its timeout."""


class HttpStatusError(ProviderError):
    """Raised when the provider answers with a non-2xx status code."""

    kind = ErrorKind.HTTP_STATUS


class ProviderApiError(ProviderError):
    """Raised when a successfully received payload self-reports an error."""

    kind = ErrorKind.PROVIDER_API_ERROR


class DecodeError(ProviderError):
    """Raised when a body or stream frame is malformed or does not match the schema."""

    kind = ErrorKind.DECODE_ERROR


class StreamInterruptedError(ProviderError):
    """Raised when a stream ends before the provider signalled a clean end."""

    kind = ErrorKind.STREAM_CLOSED

    @property
    def retryable(self) -> bool:
        return True


class ConfigError(ValueError):
    """Raised at adapter construction when its configuration is unusable."""


class EndOfStream(Exception):  # noqa: N818
    """Clean end-of-stream signal raised by transports and codecs."""
