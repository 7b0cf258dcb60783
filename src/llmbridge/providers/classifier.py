"""Maps raw failure signals onto the canonical error taxonomy.

Three entry points cover every failure site:

* :func:`classify_http_error`: a non-2xx HTTP response (the transport's
  error-handler hook, used identically by the synchronous and streaming paths).
* :func:`classify_api_error`: a successfully received payload that itself
  reports an error (e.g. a 200 body of ``{"type": "error", ...}`` or an
  ``error`` event in the middle of a stream).
* :func:`classify_transport_error`: an ``httpx`` exception raised before any
  response arrived.

Provider error tags are translated through per-provider lookup tables.  The
tables are open: a tag that is not listed falls back to a status-code based
guess and finally to :attr:`ErrorCategory.UNKNOWN`, never to a failure.
"""

import json
from collections.abc import Mapping
from typing import Any

import httpx

from llmbridge.providers.errors import (
    ErrorCategory,
    HttpStatusError,
    ProviderApiError,
    ProviderError,
    TimeoutError,
    TransportError,
)

BODY_EXCERPT_LIMIT = 512

ANTHROPIC_ERROR_TYPES: dict[str, ErrorCategory] = {
    "rate_limit_error": ErrorCategory.RATE_LIMITED,
    "overloaded_error": ErrorCategory.OVERLOADED,
    "authentication_error": ErrorCategory.AUTH,
    "permission_error": ErrorCategory.AUTH,
    "invalid_request_error": ErrorCategory.INVALID_REQUEST,
    "not_found_error": ErrorCategory.INVALID_REQUEST,
    "request_too_large": ErrorCategory.INVALID_REQUEST,
    "api_error": ErrorCategory.UNKNOWN,
}

# Bedrock reports exception names; the event stream uses lower camel case.
BEDROCK_ERROR_TYPES: dict[str, ErrorCategory] = {
    "ThrottlingException": ErrorCategory.RATE_LIMITED,
    "throttlingException": ErrorCategory.RATE_LIMITED,
    "ServiceQuotaExceededException": ErrorCategory.RATE_LIMITED,
    "ServiceUnavailableException": ErrorCategory.OVERLOADED,
    "serviceUnavailableException": ErrorCategory.OVERLOADED,
    "ModelNotReadyException": ErrorCategory.OVERLOADED,
    "modelStreamErrorException": ErrorCategory.OVERLOADED,
    "AccessDeniedException": ErrorCategory.AUTH,
    "UnrecognizedClientException": ErrorCategory.AUTH,
    "ExpiredTokenException": ErrorCategory.AUTH,
    "ValidationException": ErrorCategory.INVALID_REQUEST,
    "validationException": ErrorCategory.INVALID_REQUEST,
    "ResourceNotFoundException": ErrorCategory.INVALID_REQUEST,
    "ModelErrorException": ErrorCategory.UNKNOWN,
    "InternalServerException": ErrorCategory.UNKNOWN,
    "internalServerException": ErrorCategory.UNKNOWN,
}

DEEPSEEK_ERROR_TYPES: dict[str, ErrorCategory] = {
    "rate_limit_reached_error": ErrorCategory.RATE_LIMITED,
    "rate_limit_exceeded": ErrorCategory.RATE_LIMITED,
    "insufficient_quota": ErrorCategory.RATE_LIMITED,
    "authentication_error": ErrorCategory.AUTH,
    "invalid_api_key": ErrorCategory.AUTH,
    "authentication_fails": ErrorCategory.AUTH,
    "invalid_request_error": ErrorCategory.INVALID_REQUEST,
    "context_length_exceeded": ErrorCategory.INVALID_REQUEST,
    "server_overloaded": ErrorCategory.OVERLOADED,
    "server_error": ErrorCategory.UNKNOWN,
}

_STATUS_CATEGORIES: dict[int, ErrorCategory] = {
    400: ErrorCategory.INVALID_REQUEST,
    401: ErrorCategory.AUTH,
    403: ErrorCategory.AUTH,
    404: ErrorCategory.INVALID_REQUEST,
    413: ErrorCategory.INVALID_REQUEST,
    422: ErrorCategory.INVALID_REQUEST,
    429: ErrorCategory.RATE_LIMITED,
    503: ErrorCategory.OVERLOADED,
    529: ErrorCategory.OVERLOADED,
}


def excerpt(body: bytes | str | None, limit: int = BODY_EXCERPT_LIMIT) -> str:
    """Return at most *limit* characters of *body*, decoded leniently."""
    if body is None:
        return ""
    text = body.decode("utf-8", errors="replace") if isinstance(body, bytes) else body
    if len(text) <= limit:
        return text
    return text[:limit] + "...(truncated)"


def category_for(
    error_type: str | None,
    status_code: int | None,
    error_types: Mapping[str, ErrorCategory],
) -> ErrorCategory:
    """Resolve a canonical category from a provider tag, then the status code."""
    if error_type and error_type in error_types:
        return error_types[error_type]
    if status_code is not None and status_code in _STATUS_CATEGORIES:
        return _STATUS_CATEGORIES[status_code]
    return ErrorCategory.UNKNOWN


def _extract_error(payload: Any) -> tuple[str | None, str | None]:
    """Pull ``(type, message)`` out of the common provider error envelopes.

    Handles ``{"error": {"type"|"code", "message"}}`` (Anthropic, DeepSeek and
    other OpenAI-style APIs), ``{"error": "text"}``, and the flat
    ``{"message": ..., "__type": ...}`` shape used by AWS.
    """
    if not isinstance(payload, dict):
        return None, None

    error = payload.get("error")
    if isinstance(error, dict):
        error_type = error.get("type") or error.get("code")
        message = error.get("message")
        return (str(error_type) if error_type else None), message
    if isinstance(error, str):
        return None, error

    aws_type = payload.get("__type") or payload.get("type")
    message = payload.get("message") or payload.get("Message")
    if aws_type and "#" in str(aws_type):
        aws_type = str(aws_type).rsplit("#", 1)[-1]
    return (str(aws_type) if aws_type else None), message


def classify_http_error(
    provider: str,
    status_code: int,
    body: bytes,
    error_types: Mapping[str, ErrorCategory],
    *,
    headers: Mapping[str, str] | None = None,
) -> ProviderError:
    """Classify a non-2xx response into an :class:`HttpStatusError`.

    Args:
        provider: Provider name recorded on the error.
        status_code: HTTP status of the response.
        body: Raw response body; may be empty or not JSON at all.
        error_types: The provider's lookup table of error tags.
        headers: Response headers.  ``x-amzn-errortype`` is consulted when the
            body carries no error tag.

    Returns:
        The error to raise.  Never raises itself.
    """
    body_text = excerpt(body)
    error_type: str | None = None
    message: str | None = None

    try:
        payload = json.loads(body) if body else None
    except (ValueError, UnicodeDecodeError):
        payload = None

    if payload is not None:
        error_type, message = _extract_error(payload)

    if not error_type and headers is not None:
        amzn_type = headers.get("x-amzn-errortype")
        if amzn_type:
            error_type = amzn_type.split(":", 1)[0]

    if error_type is None and message is None:
        return HttpStatusError(
            f"{provider} returned HTTP {status_code}: {body_text or '<empty body>'}",
            provider=provider,
            category=category_for(None, status_code, error_types),
            status_code=status_code,
            body_excerpt=body_text,
        )

    return HttpStatusError(
        f"{provider} returned HTTP {status_code} ({error_type or 'error'}): {message or body_text}",
        provider=provider,
        category=category_for(error_type, status_code, error_types),
        status_code=status_code,
        error_type=error_type,
        body_excerpt=body_text,
    )


def classify_api_error(
    provider: str,
    payload: Any,
    error_types: Mapping[str, ErrorCategory],
    *,
    status_code: int = 500,
) -> ProviderApiError:
    """Classify a decoded payload that self-reports an error."""
    error_type, message = _extract_error(payload)
    try:
        body_text = excerpt(json.dumps(payload, ensure_ascii=False, default=str))
    except (TypeError, ValueError):
        body_text = excerpt(repr(payload))
    return ProviderApiError(
        f"{provider} reported {error_type or 'an error'}: {message or body_text}",
        provider=provider,
        category=category_for(error_type, None, error_types),
        status_code=status_code,
        error_type=error_type,
        body_excerpt=body_text,
    )


def classify_transport_error(provider: str, exc: Exception) -> ProviderError:
    """Map an ``httpx`` exception raised before any response to the taxonomy."""
    if isinstance(exc, ProviderError):
        return exc
    if isinstance(exc, httpx.TimeoutException):
        return TimeoutError(
            f"Request to {provider} timed out: {exc!r}",
            provider=provider,
            original_error=exc,
        )
    return TransportError(
        f"{provider} is unreachable: {exc!r}",
        provider=provider,
        original_error=exc,
    )
