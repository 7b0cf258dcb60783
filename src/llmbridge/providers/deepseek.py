"""DeepSeek chat completions (OpenAI-compatible schema).

The wire format is the OpenAI ``/chat/completions`` shape: roles are passed
through unchanged, content is plain text, and streaming uses SSE ``data:``
frames terminated by ``data: [DONE]``.  Usage counters only arrive in the last
content frame, and only when ``stream_options.include_usage`` is set.
"""

from typing import Any

from llmbridge.providers.base import ChatAdapter, Codec
from llmbridge.providers.classifier import DEEPSEEK_ERROR_TYPES
from llmbridge.providers.errors import EndOfStream
from llmbridge.providers.models import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    ChunkChoice,
    Choice,
    Delta,
    Frame,
    Message,
    ToolCall,
    Usage,
)

_DONE = b"[DONE]"


def _tool_calls(raw: list[dict[str, Any]] | None) -> tuple[ToolCall, ...] | None:
    if not raw:
        return None
    calls = []
    for i, call in enumerate(raw):
        function = call.get("function") or {}
        calls.append(
            ToolCall(
                id=call.get("id"),
                name=function.get("name"),
                arguments=function.get("arguments") or "",
                index=call.get("index", i),
            )
        )
    return tuple(calls)


def _usage(data: dict[str, Any] | None) -> Usage | None:
    if not data:
        return None
    return Usage(
        prompt_tokens=data.get("prompt_tokens") or 0,
        completion_tokens=data.get("completion_tokens") or 0,
    )


def _message(msg: Message) -> dict[str, Any]:
    wire: dict[str, Any] = {"role": msg.role, "content": msg.text}
    if msg.name is not None:
        wire["name"] = msg.name
    if msg.tool_call_id is not None:
        wire["tool_call_id"] = msg.tool_call_id
    if msg.tool_calls:
        wire["tool_calls"] = [
            {
                "id": call.id,
                "type": "function",
                "function": {"name": call.name, "arguments": call.arguments or "{}"},
            }
            for call in msg.tool_calls
        ]
    return wire


class DeepSeekCodec(Codec):
    """OpenAI-compatible codec for ``api.deepseek.com``."""

    provider = "deepseek"
    error_types = DEEPSEEK_ERROR_TYPES

    def encode(self, request: ChatCompletionRequest) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": request.model,
            "messages": [_message(msg) for msg in request.messages],
            "stream": request.stream,
        }
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.max_tokens is not None:
            body["max_tokens"] = request.max_tokens
        if request.stop:
            body["stop"] = list(request.stop)
        if request.tools:
            body["tools"] = [dict(tool) for tool in request.tools]
        if request.tool_choice is not None:
            body["tool_choice"] = request.tool_choice
        if request.user is not None:
            body["user"] = request.user
        if request.stream:
            body["stream_options"] = {"include_usage": True}
        return body

    def decode(self, body: bytes) -> ChatCompletionResponse:
        data = self.load_json(body)
        if not isinstance(data, dict):
            raise self.schema_error("response", body)
        if data.get("error"):
            raise self.api_error(data)

        try:
            choices = []
            for i, choice in enumerate(data["choices"]):
                message = choice["message"]
                choices.append(
                    Choice(
                        index=choice.get("index", i),
                        message=Message(
                            role=message.get("role", "assistant"),
                            content=message.get("content") or "",
                            tool_calls=_tool_calls(message.get("tool_calls")),
                            reasoning_content=message.get("reasoning_content"),
                        ),
                        finish_reason=choice.get("finish_reason"),
                    )
                )
            usage = _usage(data.get("usage"))
        except (KeyError, TypeError, AttributeError) as exc:
            raise self.schema_error("response", data, exc) from exc

        return ChatCompletionResponse(
            id=data.get("id"),
            model=data.get("model"),
            choices=tuple(choices),
            usage=usage,
        )

    def decode_chunk(self, frame: Frame) -> ChatCompletionChunk | None:
        if frame.data.strip() == _DONE:
            raise EndOfStream()

        data = self.load_json(frame.data, "stream frame")
        if not isinstance(data, dict):
            raise self.schema_error("stream frame", frame.data)
        if data.get("error"):
            raise self.api_error(data)

        try:
            choices = []
            for i, choice in enumerate(data.get("choices") or ()):
                delta = choice.get("delta") or {}
                choices.append(
                    ChunkChoice(
                        index=choice.get("index", i),
                        delta=Delta(
                            role=delta.get("role"),
                            content=delta.get("content") or "",
                            reasoning_content=delta.get("reasoning_content") or "",
                            tool_calls=_tool_calls(delta.get("tool_calls")),
                        ),
                        finish_reason=choice.get("finish_reason"),
                    )
                )
            usage = _usage(data.get("usage"))
        except (TypeError, AttributeError) as exc:
            raise self.schema_error("stream frame", data, exc) from exc

        if not choices and usage is None:
            return None
        return ChatCompletionChunk(
            id=data.get("id"),
            model=data.get("model"),
            choices=tuple(choices),
            usage=usage,
        )


class DeepSeekAdapter(ChatAdapter):
    """DeepSeek chat models through the direct DeepSeek API."""

    provider = "deepseek"
    codec_class = DeepSeekCodec
    default_base_url = "https://api.deepseek.com/v1"
    default_path = "/chat/completions"

    def build_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.config.key}"}
