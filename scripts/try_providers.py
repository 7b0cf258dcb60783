# scripts/try_providers.py
import asyncio
from pathlib import Path

from dotenv import load_dotenv

# Resolve .env relative to the repo root so this script works from any cwd.
load_dotenv(Path(__file__).parent.parent / ".env", override=True)

from llmbridge.config import Settings  # noqa: E402
from llmbridge.observability import configure_logging, configure_tracing  # noqa: E402
from llmbridge.providers import ChatCompletionRequest, ProviderError, new_adapter  # noqa: E402

PROVIDERS_TO_TRY = [
    {"name": "Anthropic Claude Haiku", "provider": "anthropic", "model": "claude-3-5-haiku-20241022"},
    {"name": "Claude on Vertex AI", "provider": "anthropic-vertex", "model": "claude-3-5-haiku-20241022"},
    {"name": "Claude on Bedrock", "provider": "anthropic-bedrock", "model": "claude-3-5-haiku-20241022"},
    {"name": "DeepSeek Chat", "provider": "deepseek", "model": "deepseek-chat"},
]


async def try_provider(info: dict, settings: Settings):
    """Stream one short answer from a single provider"""

    if not settings.credential_for(info["provider"]):
        print(f"⏭️  Skipping {info['name']} (no credential)")
        return

    print(f"\n🧪 Trying {info['name']}...")

    request = ChatCompletionRequest(
        model=info["model"],
        messages=[{"role": "user", "content": "Say 'Hello from LLM Bridge!' in one sentence."}],
        temperature=0.7,
    )

    try:
        async with new_adapter(info["provider"], settings=settings) as adapter:
            stream = await adapter.chat_completions_stream(request)
            print("   Response: ", end="")
            async for chunk in stream:
                if chunk.content:
                    print(chunk.content, end="", flush=True)
                if chunk.usage:
                    print(f"\n   Tokens: {chunk.usage}", end="")
                if chunk.done:
                    if chunk.error:
                        raise chunk.error
                    print(f"\n   ⏱️  conn {chunk.conn_time} ms, total {chunk.total_time} ms")
        print(f"   ✅ {info['name']} working!")

    except ProviderError as e:
        print(f"\n   ❌ Error: {e!r}")


async def main():
    settings = Settings()
    configure_logging(settings.log_level, settings.log_format)
    configure_tracing(settings.otel_service_name, settings.otel_exporter_otlp_endpoint)

    print("=" * 60)
    print("Provider Smoke Test")
    print("=" * 60)

    for info in PROVIDERS_TO_TRY:
        await try_provider(info, settings)

    print("\n" + "=" * 60)
    print("Done!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
