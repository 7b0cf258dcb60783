"""Opt-in, caller-side retry policy.

Adapters make exactly one attempt per call.  Callers that want retries wrap
the call here, which re-issues it only for errors whose ``retryable`` flag is
set (rate limiting, overload, transport failures) with exponential backoff.
"""

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from llmbridge.providers.base import ChatAdapter
from llmbridge.providers.errors import ProviderError
from llmbridge.providers.models import ChatCompletionRequest, ChatCompletionResponse

_log = structlog.get_logger(__name__)


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def _before_sleep(retry_state: RetryCallState) -> None:
    """Tenacity ``before_sleep`` hook that emits a structured warning."""
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    next_action = retry_state.next_action
    wait_seconds = next_action.sleep if next_action is not None else 0.0
    _log.warning(
        "llm_request_retry",
        attempt=retry_state.attempt_number,
        wait_seconds=round(wait_seconds, 2),
        error_type=type(exc).__name__ if exc else None,
        error=str(exc) if exc else None,
    )


async def complete_with_retry(
    adapter: ChatAdapter,
    request: ChatCompletionRequest,
    max_attempts: int = 3,
    min_wait: float = 2.0,
    max_wait: float = 30.0,
) -> ChatCompletionResponse:
    """Run :meth:`ChatAdapter.chat_completions` with exponential backoff.

    Permanent errors (authentication, invalid request, decode failures) are
    raised on the first attempt; the last transient error is re-raised once
    *max_attempts* is exhausted.
    """
    async for attempt in AsyncRetrying(
        stop=stop_after_attempt(max_attempts),
        retry=retry_if_exception(_is_retryable),
        wait=wait_exponential(multiplier=1, min=min_wait, max=max_wait),
        before_sleep=_before_sleep,
        reraise=True,
    ):
        with attempt:
            return await adapter.chat_completions(request)
    raise AssertionError("unreachable")  # pragma: no cover
