"""Static registry from provider key to adapter class."""

from llmbridge.config import AdapterConfig, Settings
from llmbridge.providers.anthropic import (
    AnthropicAdapter,
    BedrockAnthropicAdapter,
    VertexAnthropicAdapter,
)
from llmbridge.providers.base import ChatAdapter
from llmbridge.providers.deepseek import DeepSeekAdapter
from llmbridge.providers.errors import ConfigError
from llmbridge.transport import Transport

ADAPTERS: dict[str, type[ChatAdapter]] = {
    "anthropic": AnthropicAdapter,
    "anthropic-vertex": VertexAnthropicAdapter,
    "anthropic-bedrock": BedrockAnthropicAdapter,
    "deepseek": DeepSeekAdapter,
}


def new_adapter(
    provider: str,
    config: AdapterConfig | None = None,
    *,
    settings: Settings | None = None,
    transport: Transport | None = None,
) -> ChatAdapter:
    """Build the adapter registered under *provider*.

    When *config* is omitted it is loaded from *settings* (or the
    environment) with :meth:`AdapterConfig.from_settings`.

    Raises:
        ConfigError: *provider* is not registered or its credential is malformed.
    """
    try:
        adapter_class = ADAPTERS[provider]
    except KeyError:
        raise ConfigError(
            f"unknown provider '{provider}'; expected one of {sorted(ADAPTERS)}"
        ) from None
    if config is None:
        config = AdapterConfig.from_settings(provider, settings)
    return adapter_class(config, transport=transport)
