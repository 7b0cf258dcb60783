"""Shared fixtures and fakes.

Adapters are exercised against ``httpx.MockTransport`` so every test runs the
real transport, codec and streaming code without touching the network.
"""

from __future__ import annotations

import asyncio
import base64
import json
import struct
import zlib
from collections.abc import AsyncIterator, Callable
from typing import Any

import httpx
import pytest

from opentelemetry.sdk.trace.export.in_memory_span_exporter import InMemorySpanExporter

from llmbridge.config import AdapterConfig
from llmbridge.observability import configure_tracing
from llmbridge.providers.base import ChatAdapter
from llmbridge.providers.models import ChatCompletionRequest
from llmbridge.transport import StreamHandle, Transport

Handler = Callable[[httpx.Request], Any]


def sse_event(data: Any, event: str | None = None) -> bytes:
    """Encode one Server-Sent Event; dicts are JSON-encoded."""
    payload = data if isinstance(data, str) else json.dumps(data)
    lines = []
    if event is not None:
        lines.append(f"event: {event}")
    lines.append(f"data: {payload}")
    return ("\n".join(lines) + "\n\n").encode()


def anthropic_events(*events: dict[str, Any]) -> bytes:
    """Encode Anthropic stream events, naming each SSE event after its type."""
    return b"".join(sse_event(event, event=event["type"]) for event in events)


def aws_event(payload: Any, **headers: str) -> bytes:
    """Encode one ``application/vnd.amazon.eventstream`` message.

    Header names use underscores for dashes and a leading ``_`` for ``:``,
    e.g. ``_event_type="chunk"`` becomes ``:event-type: chunk``.
    """
    body = payload if isinstance(payload, bytes) else json.dumps(payload).encode()
    encoded = b""
    for name, value in headers.items():
        raw_name = (":" + name[1:] if name.startswith("_") else name).replace("_", "-").encode()
        raw_value = value.encode()
        encoded += struct.pack("!B", len(raw_name)) + raw_name
        encoded += struct.pack("!BH", 7, len(raw_value)) + raw_value
    prelude = struct.pack("!II", 12 + len(encoded) + len(body) + 4, len(encoded))
    message = prelude + struct.pack("!I", zlib.crc32(prelude)) + encoded + body
    return message + struct.pack("!I", zlib.crc32(message))


def bedrock_chunk(event: dict[str, Any]) -> bytes:
    """Wrap an Anthropic stream event the way Bedrock streams it."""
    inner = base64.b64encode(json.dumps(event).encode()).decode()
    return aws_event(
        {"bytes": inner}, _message_type="event", _event_type="chunk", _content_type="application/json"
    )


async def trickle(*parts: bytes, then_hang: bool = False) -> AsyncIterator[bytes]:
    """Yield body parts one at a time, optionally never finishing."""
    for part in parts:
        yield part
        await asyncio.sleep(0)
    if then_hang:
        await asyncio.sleep(3600)


class RecordingTransport(Transport):
    """Transport that remembers every stream handle it opened."""

    def __init__(self, handler: Handler) -> None:
        super().__init__(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        self.handles: list[StreamHandle] = []
        self.requests: list[httpx.Request] = []

    async def open_stream(self, *args: Any, **kwargs: Any) -> StreamHandle:
        handle = await super().open_stream(*args, **kwargs)
        self.handles.append(handle)
        return handle


def make_adapter(
    adapter_class: type[ChatAdapter],
    handler: Handler,
    **config: Any,
) -> tuple[ChatAdapter, RecordingTransport]:
    requests: list[httpx.Request] = []

    async def recording_handler(request: httpx.Request) -> httpx.Response:
        await request.aread()
        requests.append(request)
        result = handler(request)
        if asyncio.iscoroutine(result):
            result = await result
        return result

    transport = RecordingTransport(recording_handler)
    transport.requests = requests
    config.setdefault("key", "test-key-0123456789")
    return adapter_class(AdapterConfig(**config), transport=transport), transport


@pytest.fixture
def chat_request() -> ChatCompletionRequest:
    return ChatCompletionRequest(
        model="claude-3-5-sonnet-20241022",
        messages=[{"role": "user", "content": "hi"}],
    )


@pytest.fixture(scope="session")
def _session_spans() -> InMemorySpanExporter:
    exporter = InMemorySpanExporter()
    configure_tracing("llm-bridge-tests", exporter=exporter)
    return exporter


@pytest.fixture
def spans(_session_spans: InMemorySpanExporter) -> InMemorySpanExporter:
    """Finished spans of the current test."""
    _session_spans.clear()
    return _session_spans
