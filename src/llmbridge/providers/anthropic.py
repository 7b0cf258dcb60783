"""Anthropic Messages API: direct, Vertex AI and Bedrock variants.

All three variants speak the same Messages schema; they differ in envelope:

===================  ===========================  ==============================
Variant              Body                          Transport
===================  ===========================  ==============================
Direct               ``model`` in body             ``x-api-key`` header, SSE
Vertex AI            ``anthropic_version`` =       Bearer token, model in path,
                     ``vertex-2023-10-16``         SSE
Bedrock              ``anthropic_version`` =       SigV4 signed, model in path,
                     ``bedrock-2023-05-31``        AWS event-stream frames
===================  ===========================  ==============================

Canonical to wire translation:

* ``system`` messages are lifted to the top-level ``system`` field.
* ``tool`` / ``function`` messages become ``tool_result`` blocks inside a user
  turn; assistant ``tool_calls`` become ``tool_use`` blocks.
* OpenAI-style ``image_url`` parts become ``image`` blocks.
* ``max_tokens`` is required by the API and defaults to
  :data:`DEFAULT_MAX_TOKENS`.
"""

import base64
import json
from typing import Any, ClassVar
from urllib.parse import quote

from botocore.auth import SigV4Auth
from botocore.awsrequest import AWSRequest
from botocore.credentials import Credentials

from llmbridge.config import AdapterConfig
from llmbridge.providers.base import ChatAdapter, Codec
from llmbridge.providers.classifier import ANTHROPIC_ERROR_TYPES, BEDROCK_ERROR_TYPES
from llmbridge.providers.errors import ConfigError, EndOfStream
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
from llmbridge.transport import Transport, aws_event_frames

ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_BETA = "prompt-caching-2024-07-31"
VERTEX_ANTHROPIC_VERSION = "vertex-2023-10-16"
BEDROCK_ANTHROPIC_VERSION = "bedrock-2023-05-31"
DEFAULT_MAX_TOKENS = 4096

# https://docs.aws.amazon.com/bedrock/latest/userguide/model-ids.html
AWS_MODEL_IDS: dict[str, str] = {
    "claude-2.0": "anthropic.claude-v2",
    "claude-2.1": "anthropic.claude-v2:1",
    "claude-instant-1.2": "anthropic.claude-instant-v1",
    "claude-3-sonnet-20240229": "anthropic.claude-3-sonnet-20240229-v1:0",
    "claude-3-haiku-20240307": "anthropic.claude-3-haiku-20240307-v1:0",
    "claude-3-opus-20240229": "anthropic.claude-3-opus-20240229-v1:0",
    "claude-3-5-sonnet-20240620": "anthropic.claude-3-5-sonnet-20240620-v1:0",
    "claude-3-5-sonnet-20241022": "anthropic.claude-3-5-sonnet-20241022-v2:0",
    "claude-3-5-haiku-20241022": "anthropic.claude-3-5-haiku-20241022-v1:0",
    "claude-3-7-sonnet-20250219": "anthropic.claude-3-7-sonnet-20250219-v1:0",
    "claude-sonnet-4-20250514": "anthropic.claude-sonnet-4-20250514-v1:0",
    "claude-opus-4-20250514": "anthropic.claude-opus-4-20250514-v1:0",
}

# https://cloud.google.com/vertex-ai/generative-ai/docs/partner-models/use-claude
VERTEX_MODEL_IDS: dict[str, str] = {
    "claude-3-sonnet-20240229": "claude-3-sonnet@20240229",
    "claude-3-haiku-20240307": "claude-3-haiku@20240307",
    "claude-3-opus-20240229": "claude-3-opus@20240229",
    "claude-3-5-sonnet-20240620": "claude-3-5-sonnet@20240620",
    "claude-3-5-sonnet-20241022": "claude-3-5-sonnet-v2@20241022",
    "claude-3-5-haiku-20241022": "claude-3-5-haiku@20241022",
    "claude-3-7-sonnet-20250219": "claude-3-7-sonnet@20250219",
    "claude-sonnet-4-20250514": "claude-sonnet-4@20250514",
    "claude-opus-4-20250514": "claude-opus-4@20250514",
}

_FINISH_REASONS: dict[str, str] = {
    "end_turn": "stop",
    "stop_sequence": "stop",
    "max_tokens": "length",
    "tool_use": "tool_calls",
    "pause_turn": "stop",
    "refusal": "content_filter",
}


def remap_model(model: str, table: dict[str, str]) -> str:
    """Translate *model* through *table*; unknown ids pass through unchanged."""
    return table.get(model, model)


def finish_reason(stop_reason: str | None) -> str | None:
    if stop_reason is None:
        return None
    return _FINISH_REASONS.get(stop_reason, stop_reason)


def _usage(data: dict[str, Any] | None) -> Usage | None:
    if not data:
        return None
    prompt = (
        (data.get("input_tokens") or 0)
        + (data.get("cache_creation_input_tokens") or 0)
        + (data.get("cache_read_input_tokens") or 0)
    )
    return Usage(prompt_tokens=prompt, completion_tokens=data.get("output_tokens") or 0)


# ---------------------------------------------------------------------------
# Request translation
# ---------------------------------------------------------------------------


def _image_block(part: dict[str, Any]) -> dict[str, Any]:
    image = part.get("image_url")
    url = image.get("url", "") if isinstance(image, dict) else str(image or "")
    if url.startswith("data:"):
        header, _, data = url.partition(",")
        media_type = header[len("data:") :].split(";", 1)[0] or "image/png"
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": media_type, "data": data},
        }
    return {"type": "image", "source": {"type": "url", "url": url}}


def _content(content: str | list[dict[str, Any]] | None) -> str | list[dict[str, Any]]:
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    blocks: list[dict[str, Any]] = []
    for part in content:
        part_type = part.get("type")
        if part_type == "text":
            blocks.append({"type": "text", "text": part.get("text", "")})
        elif part_type == "image_url":
            blocks.append(_image_block(part))
        else:
            blocks.append(dict(part))
    return blocks


def _as_blocks(content: str | list[dict[str, Any]]) -> list[dict[str, Any]]:
    if isinstance(content, str):
        return [{"type": "text", "text": content}] if content else []
    return content


def _tool(tool: dict[str, Any]) -> dict[str, Any]:
    if "input_schema" in tool:
        return dict(tool)
    function = tool.get("function", tool)
    converted: dict[str, Any] = {
        "name": function["name"],
        "input_schema": function.get("parameters") or {"type": "object", "properties": {}},
    }
    if function.get("description"):
        converted["description"] = function["description"]
    return converted


def _tool_choice(choice: str | dict[str, Any]) -> dict[str, Any]:
    if isinstance(choice, dict):
        if choice.get("type") == "function":
            return {"type": "tool", "name": choice["function"]["name"]}
        return dict(choice)
    if choice == "required":
        return {"type": "any"}
    return {"type": choice}


def _message(msg: Message) -> dict[str, Any]:
    if msg.role in ("tool", "function"):
        result: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": msg.tool_call_id or msg.name or "",
            "content": _content(msg.content),
        }
        return {"role": "user", "content": [result]}

    if msg.role == "assistant" and msg.tool_calls:
        blocks = _as_blocks(_content(msg.content))
        for call in msg.tool_calls:
            blocks.append(
                {
                    "type": "tool_use",
                    "id": call.id,
                    "name": call.name,
                    "input": json.loads(call.arguments) if call.arguments else {},
                }
            )
        return {"role": "assistant", "content": blocks}

    return {"role": msg.role, "content": _content(msg.content)}


def _messages(messages: tuple[Message, ...]) -> tuple[list[str], list[dict[str, Any]]]:
    system: list[str] = []
    converted: list[dict[str, Any]] = []
    for msg in messages:
        if msg.role == "system":
            system.append(msg.text)
            continue
        wire = _message(msg)
        previous = converted[-1] if converted else None
        # Consecutive tool results must share one user turn.
        if (
            previous is not None
            and wire["role"] == "user"
            and previous["role"] == "user"
            and isinstance(previous["content"], list)
            and previous["content"]
            and previous["content"][-1].get("type") == "tool_result"
        ):
            previous["content"].extend(_as_blocks(wire["content"]))
            continue
        converted.append(wire)
    return system, converted


# ---------------------------------------------------------------------------
# Codecs
# ---------------------------------------------------------------------------


class AnthropicCodec(Codec):
    """Messages API codec for ``api.anthropic.com``."""

    provider = "anthropic"
    error_types = ANTHROPIC_ERROR_TYPES

    def encode(self, request: ChatCompletionRequest) -> dict[str, Any]:
        system, messages = _messages(request.messages)
        body: dict[str, Any] = {
            "model": request.model,
            "messages": messages,
            "max_tokens": request.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system:
            body["system"] = "\n\n".join(system)
        if request.temperature is not None:
            body["temperature"] = request.temperature
        if request.top_p is not None:
            body["top_p"] = request.top_p
        if request.top_k is not None:
            body["top_k"] = request.top_k
        if request.stop:
            body["stop_sequences"] = list(request.stop)
        if request.tools:
            body["tools"] = [_tool(tool) for tool in request.tools]
        if request.tool_choice is not None:
            body["tool_choice"] = _tool_choice(request.tool_choice)
        if request.user is not None:
            body["metadata"] = {"user_id": request.user}
        if request.stream:
            body["stream"] = True
        return body

    def decode(self, body: bytes) -> ChatCompletionResponse:
        data = self.load_json(body)
        if not isinstance(data, dict):
            raise self.schema_error("response", body)
        if data.get("type") == "error" or data.get("error"):
            raise self.api_error(data)

        try:
            text: list[str] = []
            tool_calls: list[ToolCall] = []
            for block in data["content"]:
                block_type = block.get("type", "text")
                if block_type == "text":
                    text.append(block.get("text", ""))
                elif block_type == "tool_use":
                    tool_calls.append(
                        ToolCall(
                            id=block.get("id"),
                            name=block.get("name"),
                            arguments=json.dumps(block.get("input") or {}),
                            index=len(tool_calls),
                        )
                    )
            message = Message(
                role=data.get("role", "assistant"),
                content="".join(text),
                tool_calls=tuple(tool_calls) or None,
            )
            usage = _usage(data.get("usage"))
        except (KeyError, TypeError, AttributeError) as exc:
            raise self.schema_error("response", data, exc) from exc

        return ChatCompletionResponse(
            id=data.get("id"),
            model=data.get("model"),
            choices=(
                Choice(index=0, message=message, finish_reason=finish_reason(data.get("stop_reason"))),
            ),
            usage=usage,
        )

    def decode_chunk(self, frame: Frame) -> ChatCompletionChunk | None:
        data = self.load_json(frame.data, "stream frame")
        if not isinstance(data, dict):
            raise self.schema_error("stream frame", frame.data)
        try:
            return self._decode_event(data.get("type") or frame.event, data)
        except (KeyError, TypeError, AttributeError) as exc:
            raise self.schema_error("stream frame", data, exc) from exc

    def _decode_event(self, event: str | None, data: dict[str, Any]) -> ChatCompletionChunk | None:
        if event == "message_start":
            message = data["message"]
            return ChatCompletionChunk(
                id=message.get("id"),
                model=message.get("model"),
                choices=(ChunkChoice(index=0, delta=Delta(role="assistant")),),
                usage=_usage(message.get("usage")),
            )

        if event == "content_block_start":
            block = data["content_block"]
            if block.get("type") == "tool_use":
                call = ToolCall(id=block.get("id"), name=block.get("name"), index=data.get("index", 0))
                return ChatCompletionChunk(
                    choices=(ChunkChoice(index=0, delta=Delta(tool_calls=(call,))),)
                )
            if block.get("type") == "text" and block.get("text"):
                return ChatCompletionChunk(
                    choices=(ChunkChoice(index=0, delta=Delta(content=block["text"])),)
                )
            return None

        if event == "content_block_delta":
            delta = data["delta"]
            delta_type = delta.get("type")
            if delta_type == "text_delta":
                return ChatCompletionChunk(
                    choices=(ChunkChoice(index=0, delta=Delta(content=delta.get("text", ""))),)
                )
            if delta_type == "input_json_delta":
                call = ToolCall(
                    id=None,
                    name=None,
                    arguments=delta.get("partial_json", ""),
                    index=data.get("index", 0),
                )
                return ChatCompletionChunk(
                    choices=(ChunkChoice(index=0, delta=Delta(tool_calls=(call,))),)
                )
            if delta_type == "thinking_delta":
                return ChatCompletionChunk(
                    choices=(
                        ChunkChoice(
                            index=0, delta=Delta(reasoning_content=delta.get("thinking", ""))
                        ),
                    )
                )
            return None

        if event == "message_delta":
            delta = data.get("delta") or {}
            return ChatCompletionChunk(
                choices=(
                    ChunkChoice(
                        index=0,
                        delta=Delta(),
                        finish_reason=finish_reason(delta.get("stop_reason")),
                    ),
                ),
                usage=_usage(data.get("usage")),
            )

        if event == "message_stop":
            raise EndOfStream()

        if event == "error":
            raise self.api_error(data)

        # ping, content_block_stop and event types added after this codec.
        return None


class VertexAnthropicCodec(AnthropicCodec):
    """Messages API codec for Claude on Vertex AI (model travels in the URL)."""

    provider = "anthropic-vertex"

    def encode(self, request: ChatCompletionRequest) -> dict[str, Any]:
        body = super().encode(request)
        del body["model"]
        body["anthropic_version"] = VERTEX_ANTHROPIC_VERSION
        return body


class BedrockAnthropicCodec(AnthropicCodec):
    """Messages API codec for Claude on Amazon Bedrock.

    Stream frames are AWS event-stream ``chunk`` events whose JSON payload
    wraps the Anthropic event as ``{"bytes": "<base64>"}``.  Exception events
    carry the exception name in the ``:exception-type`` header.
    """

    provider = "anthropic-bedrock"
    error_types = {**BEDROCK_ERROR_TYPES, **ANTHROPIC_ERROR_TYPES}

    def encode(self, request: ChatCompletionRequest) -> dict[str, Any]:
        body = super().encode(request)
        del body["model"]
        body.pop("stream", None)
        body["anthropic_version"] = BEDROCK_ANTHROPIC_VERSION
        return body

    def decode_chunk(self, frame: Frame) -> ChatCompletionChunk | None:
        if frame.event not in (None, "chunk"):
            try:
                payload = json.loads(frame.data) if frame.data else {}
            except (ValueError, UnicodeDecodeError):
                payload = {"message": frame.data.decode("utf-8", errors="replace")}
            if not isinstance(payload, dict):
                payload = {"message": str(payload)}
            raise self.api_error({**payload, "__type": frame.event})

        envelope = self.load_json(frame.data, "stream frame")
        try:
            inner = base64.b64decode(envelope["bytes"], validate=True)
        except (KeyError, TypeError, ValueError) as exc:
            raise self.schema_error("stream frame", frame.data, exc) from exc

        data = self.load_json(inner, "stream event")
        if isinstance(data, dict) and data.get("type") == "message_stop":
            metrics = data.get("amazon-bedrock-invocationMetrics")
            if metrics:
                return ChatCompletionChunk(
                    usage=Usage(
                        prompt_tokens=metrics.get("inputTokenCount") or 0,
                        completion_tokens=metrics.get("outputTokenCount") or 0,
                    )
                )
        return super().decode_chunk(Frame(data=inner, event=None))


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


class AnthropicAdapter(ChatAdapter):
    """Claude through the direct Anthropic API."""

    provider = "anthropic"
    codec_class = AnthropicCodec
    default_base_url = "https://api.anthropic.com/v1"
    default_path = "/messages"

    def build_headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.config.key,
            "anthropic-version": ANTHROPIC_VERSION,
            "anthropic-beta": ANTHROPIC_BETA,
        }


class VertexAnthropicAdapter(ChatAdapter):
    """Claude on Google Cloud Vertex AI.

    The credential is ``"<project-id>|<access-token>"``; the region comes
    from :attr:`AdapterConfig.region` (default ``us-east5``).
    """

    provider = "anthropic-vertex"
    codec_class = VertexAnthropicCodec
    default_region: ClassVar[str] = "us-east5"
    default_base_url = "https://{region}-aiplatform.googleapis.com/v1"
    default_path = "/projects/{project}/locations/{region}/publishers/anthropic/models/{model}:{method}"

    def __init__(self, config: AdapterConfig, *, transport: Transport | None = None) -> None:
        project, sep, token = config.key.partition("|")
        if not sep or not project or not token:
            raise ConfigError("Vertex AI credential must be '<project-id>|<access-token>'")
        self.project = project
        self.token = token
        self.region = config.region or self.default_region
        super().__init__(config, transport=transport)

    def format_base_url(self, base_url: str) -> str:
        return base_url.format(region=self.region)

    def build_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.token}"}

    def url(self, model: str, stream: bool) -> str:
        path = self.path.format(
            project=self.project,
            region=self.region,
            model=remap_model(model, VERTEX_MODEL_IDS),
            method="streamRawPredict" if stream else "rawPredict",
        )
        return self.base_url + path


class BedrockAnthropicAdapter(ChatAdapter):
    """Claude on Amazon Bedrock.

    The credential is ``"<region>|<access-key-id>|<secret-access-key>"``.
    There is no static auth header: every request is signed with SigV4.
    """

    provider = "anthropic-bedrock"
    codec_class = BedrockAnthropicCodec
    default_base_url = "https://bedrock-runtime.{region}.amazonaws.com"
    default_path = "/model/{model}/{method}"
    frame_reader = staticmethod(aws_event_frames)

    def __init__(self, config: AdapterConfig, *, transport: Transport | None = None) -> None:
        parts = config.key.split("|")
        if len(parts) != 3 or not all(parts):
            raise ConfigError(
                "Bedrock credential must be '<region>|<access-key-id>|<secret-access-key>'"
            )
        self.region, access_key, secret_key = parts
        self._credentials = Credentials(access_key, secret_key)
        super().__init__(config, transport=transport)

    def format_base_url(self, base_url: str) -> str:
        return base_url.format(region=self.region)

    def url(self, model: str, stream: bool) -> str:
        path = self.path.format(
            model=quote(remap_model(model, AWS_MODEL_IDS), safe=""),
            method="invoke-with-response-stream" if stream else "invoke",
        )
        return self.base_url + path

    def request_headers(self, url: str, body: bytes) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **self._headers}
        if url.endswith("/invoke-with-response-stream"):
            headers["Accept"] = "application/vnd.amazon.eventstream"
            headers["X-Amzn-Bedrock-Accept"] = "application/json"
        else:
            headers["Accept"] = "application/json"

        aws_request = AWSRequest(method="POST", url=url, data=body, headers=headers)
        SigV4Auth(self._credentials, "bedrock", self.region).add_auth(aws_request)
        return dict(aws_request.headers.items())
