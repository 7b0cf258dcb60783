"""Request and response dataclasses for the LLM Bridge provider layer.

These types form the canonical contract between callers and every provider
adapter.  Provider wire shapes never escape a codec; callers only ever see the
types defined here.  All fields are immutable (``frozen=True``) and requests
are validated at construction time so callers get a fast, explicit error
rather than a provider-side 400.

Durations (``conn_time``, ``duration``, ``total_time``) are integer
milliseconds measured from the start of the call.
"""

from dataclasses import dataclass, field, replace
from typing import Any

from llmbridge.providers.errors import InvalidRequestError, ProviderError

_VALID_ROLES: frozenset[str] = frozenset({"system", "user", "assistant", "tool", "function"})


@dataclass(frozen=True)
class ToolCall:
    """A function call requested by the model.

    ``arguments`` is the raw JSON text of the arguments.  While streaming it
    holds only the fragment carried by the current chunk.
    """

    id: str | None
    name: str | None
    arguments: str = ""
    index: int = 0


@dataclass(frozen=True)
class Message:
    """One conversation turn.

    Args:
        role: One of system, user, assistant, tool, function.
        content: Plain text, or a list of structured content parts such as
            ``{"type": "text", "text": "..."}`` or
            ``{"type": "image_url", "image_url": {"url": "data:..."}}``.
        name: Optional participant or function name.
        tool_calls: Calls requested by an assistant turn.
        tool_call_id: For ``tool`` turns, the id of the call being answered.
    """

    role: str
    content: str | list[dict[str, Any]] | None = ""
    name: str | None = None
    tool_calls: tuple[ToolCall, ...] | None = None
    tool_call_id: str | None = None
    reasoning_content: str | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Message":
        """Build a message from an OpenAI-style dict."""
        tool_calls = None
        if data.get("tool_calls"):
            tool_calls = tuple(
                ToolCall(
                    id=call.get("id"),
                    name=call.get("function", {}).get("name"),
                    arguments=call.get("function", {}).get("arguments", ""),
                    index=i,
                )
                for i, call in enumerate(data["tool_calls"])
            )
        return cls(
            role=data.get("role", ""),
            content=data.get("content", ""),
            name=data.get("name"),
            tool_calls=tool_calls,
            tool_call_id=data.get("tool_call_id"),
        )

    @property
    def text(self) -> str:
        """Concatenated text of the message, ignoring non-text parts."""
        if self.content is None:
            return ""
        if isinstance(self.content, str):
            return self.content
        return "".join(
            part.get("text", "") for part in self.content if part.get("type") == "text"
        )


@dataclass(frozen=True)
class ChatCompletionRequest:
    """Parameters for a single chat completion call.

    Args:
        model: Model identifier as the caller knows it.  Cloud-hosted variants
            may remap it (see :func:`llmbridge.providers.anthropic.remap_model`).
        messages: Conversation history, in order.  Plain dicts are accepted and
            converted to :class:`Message`.
        temperature: Sampling temperature in ``[0.0, 2.0]``.
        top_p: Nucleus sampling mass in ``[0.0, 1.0]``.
        top_k: Top-k sampling (Anthropic only; ignored elsewhere).
        max_tokens: Maximum tokens to generate.  ``None`` defers to the
            provider (or codec) default.
        stop: Stop sequences.
        tools: OpenAI-style tool definitions.
        tool_choice: ``"auto"``, ``"none"``, ``"required"`` or an OpenAI-style
            named-function dict.
        stream: Whether the request is meant for the streaming endpoint.
        user: Opaque end-user identifier forwarded where supported.

    Raises:
        InvalidRequestError: If any field fails validation.
    """

    model: str
    messages: tuple[Message, ...]
    temperature: float | None = None
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = None
    stop: tuple[str, ...] | None = None
    tools: tuple[dict[str, Any], ...] | None = None
    tool_choice: str | dict[str, Any] | None = None
    stream: bool = False
    user: str | None = None

    def __post_init__(self) -> None:
        if not self.model or not self.model.strip():
            raise InvalidRequestError("model must be a non-empty string")

        if not self.messages:
            raise InvalidRequestError("messages must not be empty")

        messages = tuple(
            msg if isinstance(msg, Message) else Message.from_dict(msg) for msg in self.messages
        )
        for i, msg in enumerate(messages):
            if msg.role not in _VALID_ROLES:
                raise InvalidRequestError(
                    f"messages[{i}] has invalid role '{msg.role}'; "
                    f"must be one of {sorted(_VALID_ROLES)}"
                )
        object.__setattr__(self, "messages", messages)

        if self.temperature is not None and not 0.0 <= self.temperature <= 2.0:
            raise InvalidRequestError(f"temperature must be in [0.0, 2.0], got {self.temperature}")

        if self.top_p is not None and not 0.0 <= self.top_p <= 1.0:
            raise InvalidRequestError(f"top_p must be in [0.0, 1.0], got {self.top_p}")

        if self.max_tokens is not None and self.max_tokens <= 0:
            raise InvalidRequestError(
                f"max_tokens must be a positive integer, got {self.max_tokens}"
            )

        if isinstance(self.stop, str):
            object.__setattr__(self, "stop", (self.stop,))
        elif self.stop is not None:
            object.__setattr__(self, "stop", tuple(self.stop))

        if self.tools is not None:
            object.__setattr__(self, "tools", tuple(self.tools))


@dataclass(frozen=True)
class Usage:
    """Token counters reported by the provider."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def merge(self, other: "Usage | None") -> "Usage":
        """Combine partial counters, preferring non-zero values from *other*."""
        if other is None:
            return self
        return Usage(
            prompt_tokens=other.prompt_tokens or self.prompt_tokens,
            completion_tokens=other.completion_tokens or self.completion_tokens,
        )


@dataclass(frozen=True)
class Choice:
    """One output alternative of a non-streaming response."""

    index: int
    message: Message
    finish_reason: str | None = None


@dataclass(frozen=True)
class Delta:
    """Incremental content carried by a streaming chunk."""

    role: str | None = None
    content: str = ""
    reasoning_content: str = ""
    tool_calls: tuple[ToolCall, ...] | None = None


@dataclass(frozen=True)
class ChunkChoice:
    """One output alternative of a streaming chunk."""

    index: int
    delta: Delta
    finish_reason: str | None = None


@dataclass(frozen=True)
class ChatCompletionResponse:
    """Full response of a non-streaming call.

    Attributes:
        id: Provider-assigned response id.
        model: Model name as reported by the provider.
        choices: Output alternatives, in provider order.
        usage: Token counters.
        conn_time: Milliseconds from call start until the body was received.
        duration: Milliseconds spent decoding after the body was received.
        total_time: Milliseconds from call start until the response was built.
        error: Always ``None`` for responses returned to callers; failures are
            raised instead.
    """

    id: str | None
    model: str | None
    choices: tuple[Choice, ...] = ()
    usage: Usage | None = None
    conn_time: int = 0
    duration: int = 0
    total_time: int = 0
    error: ProviderError | None = None

    @property
    def content(self) -> str:
        """Text of the first choice, or ``""`` when there is none."""
        return self.choices[0].message.text if self.choices else ""

    @property
    def finish_reason(self) -> str | None:
        return self.choices[0].finish_reason if self.choices else None

    def with_timing(self, conn_time: int, duration: int, total_time: int) -> "ChatCompletionResponse":
        return replace(self, conn_time=conn_time, duration=duration, total_time=total_time)


@dataclass(frozen=True)
class ChatCompletionChunk:
    """A single unit of output from a streaming call.

    Content chunks carry ``done=False``.  Every stream ends with exactly one
    terminal chunk (``done=True``): ``error is None`` means the provider closed
    the stream cleanly, otherwise ``error`` holds the failure.

    Attributes:
        conn_time: Milliseconds from call start until the stream was open.
        duration: Milliseconds from stream open until this chunk.
        total_time: Milliseconds from call start until this chunk.  Never
            decreases along a stream.
    """

    id: str | None = None
    model: str | None = None
    choices: tuple[ChunkChoice, ...] = ()
    usage: Usage | None = None
    conn_time: int = 0
    duration: int = 0
    total_time: int = 0
    error: ProviderError | None = None
    done: bool = False

    @property
    def content(self) -> str:
        return "".join(choice.delta.content for choice in self.choices)

    @property
    def finish_reason(self) -> str | None:
        for choice in self.choices:
            if choice.finish_reason:
                return choice.finish_reason
        return None

    def with_timing(self, conn_time: int, duration: int, total_time: int) -> "ChatCompletionChunk":
        return replace(self, conn_time=conn_time, duration=duration, total_time=total_time)


@dataclass(frozen=True)
class Frame:
    """One raw event read from a provider stream.

    ``event`` is the SSE ``event:`` name, or the AWS event-stream
    ``:event-type`` / ``:exception-type`` header.  ``data`` is the raw payload.
    """

    data: bytes
    event: str | None = None
    headers: dict[str, Any] = field(default_factory=dict)
