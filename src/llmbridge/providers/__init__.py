"""LLM provider adapter layer.

Public surface area for the providers package.  Import from here rather than
from the individual submodules so internal structure can change freely.

Example::

    from llmbridge.providers import (
        AdapterConfig,
        ChatCompletionRequest,
        new_adapter,
    )

    adapter = new_adapter("anthropic", AdapterConfig(key="sk-ant-..."))
    request = ChatCompletionRequest(
        model="claude-3-5-sonnet-20241022",
        messages=[{"role": "user", "content": "Hello"}],
    )
    async with await adapter.chat_completions_stream(request) as stream:
        async for chunk in stream:
            if chunk.error:
                raise chunk.error
            print(chunk.content, end="")
"""

from llmbridge.config import AdapterConfig
from llmbridge.providers.errors import (
    ConfigError,
    DecodeError,
    EndOfStream,
    ErrorCategory,
    ErrorKind,
    HttpStatusError,
    InvalidRequestError,
    ProviderApiError,
    ProviderError,
    StreamInterruptedError,
    TimeoutError,
    TransportError,
)
from llmbridge.providers.models import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChunkChoice,
    Choice,
    Delta,
    Message,
    ToolCall,
    Usage,
)
from llmbridge.providers.base import ChatAdapter, Codec
from llmbridge.providers.streaming import ChunkStream
from llmbridge.providers.anthropic import (
    AnthropicAdapter,
    AnthropicCodec,
    BedrockAnthropicAdapter,
    BedrockAnthropicCodec,
    VertexAnthropicAdapter,
    VertexAnthropicCodec,
)
from llmbridge.providers.deepseek import DeepSeekAdapter, DeepSeekCodec
from llmbridge.providers.factory import ADAPTERS, new_adapter
from llmbridge.providers.retry import complete_with_retry

__all__ = [
    # Models
    "ChatCompletionRequest",
    "ChatCompletionResponse",
    "ChatCompletionChunk",
    "Message",
    "ToolCall",
    "Usage",
    "Choice",
    "ChunkChoice",
    "Delta",
    # Adapters
    "AdapterConfig",
    "ChatAdapter",
    "Codec",
    "ChunkStream",
    "AnthropicAdapter",
    "AnthropicCodec",
    "VertexAnthropicAdapter",
    "VertexAnthropicCodec",
    "BedrockAnthropicAdapter",
    "BedrockAnthropicCodec",
    "DeepSeekAdapter",
    "DeepSeekCodec",
    "ADAPTERS",
    "new_adapter",
    "complete_with_retry",
    # Errors
    "ProviderError",
    "ErrorKind",
    "ErrorCategory",
    "InvalidRequestError",
    "TransportError",
    "TimeoutError",
    "HttpStatusError",
    "ProviderApiError",
    "DecodeError",
    "StreamInterruptedError",
    "ConfigError",
    "EndOfStream",
]
