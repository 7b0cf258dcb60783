"""Integration tests against the real provider APIs.

These tests make *real* API calls and require credentials in the environment.
All tests are marked ``integration`` and are excluded from the default
``pytest`` run:

    # Run only integration tests
    pytest -m integration -v

    # Run with a single provider
    LLMBRIDGE_DEEPSEEK_API_KEY=sk-... pytest -m integration -v

Credentials use the same variables as :class:`llmbridge.config.Settings`.
"""

# Load .env before reading credentials so Settings sees them.
from pathlib import Path

from dotenv import load_dotenv

load_dotenv(Path(__file__).parent.parent.parent / ".env", override=True)

import pytest  # noqa: E402

from llmbridge.config import Settings  # noqa: E402
from llmbridge.providers import (  # noqa: E402
    ChatCompletionRequest,
    HttpStatusError,
    new_adapter,
)

pytestmark = pytest.mark.integration

_SETTINGS = Settings()

# (provider, model) pairs; each runs only when its credential is set.
_PROVIDERS = [
    ("anthropic", "claude-3-5-haiku-20241022"),
    ("anthropic-vertex", "claude-3-5-haiku-20241022"),
    ("anthropic-bedrock", "claude-3-5-haiku-20241022"),
    ("deepseek", "deepseek-chat"),
]

live_providers = pytest.mark.parametrize(
    ("provider", "model"),
    [
        pytest.param(
            provider,
            model,
            marks=pytest.mark.skipif(
                not _SETTINGS.credential_for(provider),
                reason=f"no credential for {provider}; skipping live test",
            ),
        )
        for provider, model in _PROVIDERS
    ],
)

_SHORT_PROMPT = [{"role": "user", "content": "Reply with exactly one word: hello"}]


def _request(model: str) -> ChatCompletionRequest:
    return ChatCompletionRequest(model=model, messages=_SHORT_PROMPT, max_tokens=16, temperature=0)


class TestLiveProviders:
    @live_providers
    async def test_chat_completions(self, provider: str, model: str) -> None:
        """A short prompt yields text, usage and sane timings."""
        async with new_adapter(provider, settings=_SETTINGS) as adapter:
            response = await adapter.chat_completions(_request(model))

        assert "hello" in response.content.lower()
        assert response.usage is not None and response.usage.completion_tokens > 0
        assert 0 <= response.conn_time <= response.total_time

    @live_providers
    async def test_chat_completions_stream(self, provider: str, model: str) -> None:
        """Streaming delivers content and exactly one clean terminal chunk."""
        async with new_adapter(provider, settings=_SETTINGS) as adapter:
            stream = await adapter.chat_completions_stream(_request(model))
            chunks = [chunk async for chunk in stream]

        terminals = [chunk for chunk in chunks if chunk.done]
        assert len(terminals) == 1 and chunks[-1].done
        assert chunks[-1].error is None
        assert "hello" in "".join(chunk.content for chunk in chunks).lower()
        totals = [chunk.total_time for chunk in chunks]
        assert totals == sorted(totals)

    @live_providers
    async def test_unknown_model_is_rejected(self, provider: str, model: str) -> None:
        """The provider's 4xx surfaces as an HttpStatusError before any stream exists."""
        async with new_adapter(provider, settings=_SETTINGS) as adapter:
            with pytest.raises(HttpStatusError) as exc_info:
                await adapter.chat_completions_stream(_request("no-such-model-0000"))

        assert 400 <= exc_info.value.status_code < 500
