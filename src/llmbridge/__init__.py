"""Unified chat-completion adapters over heterogeneous LLM provider APIs."""

from llmbridge.providers import (
    AdapterConfig,
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChunkStream,
    ProviderError,
    new_adapter,
)

__version__ = "0.1.0"

__all__ = [
    "AdapterConfig",
    "ChatCompletionChunk",
    "ChatCompletionRequest",
    "ChatCompletionResponse",
    "ChunkStream",
    "ProviderError",
    "new_adapter",
]
