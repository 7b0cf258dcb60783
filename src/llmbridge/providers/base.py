"""Codec contract and the adapter base class every provider builds on.

A :class:`Codec` translates between the canonical types and one provider's
wire format.  A :class:`ChatAdapter` binds one codec to one
:class:`~llmbridge.config.AdapterConfig` and exposes the two public calls:
:meth:`ChatAdapter.chat_completions` and
:meth:`ChatAdapter.chat_completions_stream`.

Adapters perform a single attempt per call.  Retrying is a caller decision
(see :mod:`llmbridge.providers.retry`).
"""

import asyncio
import json
from abc import ABC, abstractmethod
from collections.abc import Mapping
from dataclasses import replace
from types import MappingProxyType
from typing import Any, ClassVar

import httpx
import structlog
from opentelemetry import trace
from opentelemetry.trace import StatusCode

from llmbridge.config import AdapterConfig
from llmbridge.observability import CONNECT_SECONDS, REQUEST_SECONDS, mask_secret, record_error
from llmbridge.providers.classifier import (
    classify_api_error,
    classify_http_error,
    classify_transport_error,
    excerpt,
)
from llmbridge.providers.errors import (
    DecodeError,
    ErrorCategory,
    InvalidRequestError,
    ProviderError,
    TimeoutError,
)
from llmbridge.providers.models import (
    ChatCompletionChunk,
    ChatCompletionRequest,
    ChatCompletionResponse,
    Frame,
)
from llmbridge.providers.streaming import ChunkStream, now_ms, start_stream
from llmbridge.transport import FrameReader, Transport, sse_frames

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)


# ---------------------------------------------------------------------------
# Codec
# ---------------------------------------------------------------------------


class Codec(ABC):
    """Bidirectional translator between canonical types and one wire format.

    Every method is all-or-nothing: it either returns a complete result or
    raises, never a partially translated value.
    """

    provider: ClassVar[str]
    error_types: ClassVar[Mapping[str, ErrorCategory]] = MappingProxyType({})

    @abstractmethod
    def encode(self, request: ChatCompletionRequest) -> dict[str, Any]:
        """Build the provider request body for *request*."""

    @abstractmethod
    def decode(self, body: bytes) -> ChatCompletionResponse:
        """Decode a complete success body.

        Raises:
            DecodeError: The body is not valid JSON or misses required fields.
            ProviderApiError: The body reports an error despite a 2xx status.
        """

    @abstractmethod
    def decode_chunk(self, frame: Frame) -> ChatCompletionChunk | None:
        """Decode one stream frame.

        Returns ``None`` for frames that carry nothing for the caller
        (keep-alives, block boundaries).

        Raises:
            EndOfStream: The frame is the provider's clean end marker.
            DecodeError: The frame is malformed.
            ProviderApiError: The frame reports an error.
        """

    def encode_body(self, request: ChatCompletionRequest) -> bytes:
        try:
            return json.dumps(self.encode(request), ensure_ascii=False).encode("utf-8")
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidRequestError(
                f"request cannot be encoded for {self.provider}: {exc}", provider=self.provider
            ) from exc

    # -- helpers for subclasses ----------------------------------------------

    def load_json(self, data: bytes, what: str = "response") -> Any:
        try:
            return json.loads(data)
        except (ValueError, UnicodeDecodeError) as exc:
            raise DecodeError(
                f"{self.provider} {what} is not valid JSON: {exc}",
                provider=self.provider,
                original_error=exc,
                body_excerpt=excerpt(data),
            ) from exc

    def schema_error(self, what: str, data: Any, exc: Exception | None = None) -> DecodeError:
        raw = data if isinstance(data, bytes) else json.dumps(data, default=str)
        return DecodeError(
            f"{self.provider} {what} does not match the expected schema"
            + (f": {exc!r}" if exc is not None else ""),
            provider=self.provider,
            original_error=exc,
            body_excerpt=excerpt(raw),
        )

    def api_error(self, payload: Any) -> ProviderError:
        return classify_api_error(self.provider, payload, self.error_types)


# ---------------------------------------------------------------------------
# Adapter
# ---------------------------------------------------------------------------


class ChatAdapter:
    """Binds a codec to an endpoint, credential and header set.

    Subclasses set the class attributes and override :meth:`build_headers`,
    :meth:`url` or :meth:`request_headers` where the provider needs it.  An
    adapter holds no per-call state and may serve many concurrent calls.

    Args:
        config: Read-only configuration owned by this adapter.
        transport: Shared transport; built from *config* when omitted.
    """

    provider: ClassVar[str]
    codec_class: ClassVar[type[Codec]]
    default_base_url: ClassVar[str] = ""
    default_path: ClassVar[str] = ""
    frame_reader: ClassVar[FrameReader] = staticmethod(sse_frames)

    def __init__(self, config: AdapterConfig, *, transport: Transport | None = None) -> None:
        self.config = config
        self.base_url = self.format_base_url((config.base_url or self.default_base_url).rstrip("/"))
        self.path = config.path or self.default_path
        self.codec = self.build_codec()
        self._headers: Mapping[str, str] = MappingProxyType(
            {**self.build_headers(), **config.extra_headers}
        )
        self._transport = transport or Transport(timeout=config.timeout, proxy=config.proxy_url)
        _log.info(
            "adapter_created",
            provider=self.provider,
            model=config.model or None,
            base_url=self.base_url,
            key=mask_secret(config.key),
        )

    # -- construction hooks --------------------------------------------------

    def build_codec(self) -> Codec:
        return self.codec_class()

    def format_base_url(self, base_url: str) -> str:
        return base_url

    def build_headers(self) -> dict[str, str]:
        """Static headers sent with every request."""
        return {}

    def url(self, model: str, stream: bool) -> str:
        return self.base_url + self.path

    def request_headers(self, url: str, body: bytes) -> dict[str, str]:
        """Headers for one request; signed-request providers override this."""
        return {"Content-Type": "application/json", **self._headers}

    def error_handler(self, response: httpx.Response) -> ProviderError:
        return classify_http_error(
            self.provider,
            response.status_code,
            response.content,
            self.codec.error_types,
            headers=response.headers,
        )

    def deadline_error(self) -> TimeoutError:
        return TimeoutError(
            f"{self.provider} did not answer within {self.config.timeout}s",
            provider=self.provider,
        )

    # -- lifecycle -----------------------------------------------------------

    async def aclose(self) -> None:
        await self._transport.aclose()

    async def __aenter__(self) -> "ChatAdapter":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -- public API ----------------------------------------------------------

    def prepare(self, request: ChatCompletionRequest, stream: bool) -> ChatCompletionRequest:
        """Pin the bound model and the stream flag onto *request*."""
        model = self.config.model or request.model
        if request.model == model and request.stream == stream:
            return request
        return replace(request, model=model, stream=stream)

    async def chat_completions(self, request: ChatCompletionRequest) -> ChatCompletionResponse:
        """Run one non-streaming completion.

        Args:
            request: Canonical request; its ``stream`` flag is ignored.

        Returns:
            The decoded response with ``conn_time``, ``duration`` and
            ``total_time`` filled in.

        Raises:
            TransportError: The provider could not be reached (``TimeoutError``
                when the configured timeout elapsed).
            HttpStatusError: The provider answered with a non-2xx status.
            ProviderApiError: A 2xx body reported an error.
            DecodeError: The body could not be decoded.
        """
        started = now_ms()
        request = self.prepare(request, stream=False)
        log = _log.bind(provider=self.provider, model=request.model, stream=False)

        with _tracer.start_as_current_span("llm.chat_completions") as span:
            span.set_attribute("gen_ai.system", self.provider)
            span.set_attribute("gen_ai.request.model", request.model)
            if request.temperature is not None:
                span.set_attribute("gen_ai.request.temperature", request.temperature)
            if request.max_tokens is not None:
                span.set_attribute("gen_ai.request.max_tokens", request.max_tokens)

            log.info("chat_completions_start", messages=len(request.messages))
            try:
                body = self.codec.encode_body(request)
                url = self.url(request.model, stream=False)
                try:
                    async with asyncio.timeout(self.config.timeout):
                        raw = await self._transport.post(
                            url,
                            self.request_headers(url, body),
                            body,
                            error_handler=self.error_handler,
                        )
                except httpx.HTTPError as exc:
                    raise classify_transport_error(self.provider, exc) from exc
                except asyncio.TimeoutError as exc:
                    raise self.deadline_error() from exc
                received = now_ms()
                CONNECT_SECONDS.labels(provider=self.provider, mode="sync").observe(
                    (received - started) / 1000
                )

                response = self.codec.decode(raw)

            except ProviderError as exc:
                total = now_ms() - started
                record_error(self.provider, exc)
                span.record_exception(exc)
                span.set_status(StatusCode.ERROR, exc.message)
                log.error(
                    "chat_completions_error",
                    error_type=type(exc).__name__,
                    error_kind=exc.kind.value,
                    error_category=exc.category.value,
                    status_code=exc.status_code,
                    error=exc.message,
                    total_time_ms=total,
                )
                raise

            end = now_ms()
            response = response.with_timing(
                conn_time=received - started,
                duration=end - received,
                total_time=end - started,
            )
            REQUEST_SECONDS.labels(provider=self.provider, mode="sync").observe(
                response.total_time / 1000
            )
            if response.usage is not None:
                span.set_attribute("gen_ai.usage.input_tokens", response.usage.prompt_tokens)
                span.set_attribute("gen_ai.usage.output_tokens", response.usage.completion_tokens)
            if response.finish_reason:
                span.set_attribute("gen_ai.response.finish_reasons", response.finish_reason)

            log.info(
                "chat_completions_complete",
                conn_time_ms=response.conn_time,
                total_time_ms=response.total_time,
                prompt_tokens=response.usage.prompt_tokens if response.usage else None,
                completion_tokens=response.usage.completion_tokens if response.usage else None,
            )
            return response

    async def chat_completions_stream(self, request: ChatCompletionRequest) -> ChunkStream:
        """Open a streaming completion.

        Returns as soon as the provider accepted the request.  The returned
        :class:`~llmbridge.providers.streaming.ChunkStream` yields content
        chunks followed by exactly one terminal chunk (``done=True``) whose
        ``error`` is set when the stream failed.

        Raises:
            TransportError: The stream could not be opened.
            HttpStatusError: The provider rejected the request.
        """
        started = now_ms()
        request = self.prepare(request, stream=True)
        log = _log.bind(provider=self.provider, model=request.model, stream=True)

        with _tracer.start_as_current_span("llm.chat_stream_open") as span:
            span.set_attribute("gen_ai.system", self.provider)
            span.set_attribute("gen_ai.request.model", request.model)
            try:
                body = self.codec.encode_body(request)
                url = self.url(request.model, stream=True)
                try:
                    async with asyncio.timeout(self.config.timeout):
                        handle = await self._transport.open_stream(
                            url,
                            self.request_headers(url, body),
                            body,
                            provider=self.provider,
                            error_handler=self.error_handler,
                            frame_reader=self.frame_reader,
                            read_timeout=self.config.read_timeout,
                        )
                except httpx.HTTPError as exc:
                    raise classify_transport_error(self.provider, exc) from exc
                except asyncio.TimeoutError as exc:
                    raise self.deadline_error() from exc

            except ProviderError as exc:
                record_error(self.provider, exc)
                span.record_exception(exc)
                span.set_status(StatusCode.ERROR, exc.message)
                log.error(
                    "chat_stream_error",
                    error_type=type(exc).__name__,
                    error_kind=exc.kind.value,
                    error_category=exc.category.value,
                    status_code=exc.status_code,
                    error=exc.message,
                    total_time_ms=now_ms() - started,
                )
                raise

        connected = now_ms()
        CONNECT_SECONDS.labels(provider=self.provider, mode="stream").observe(
            (connected - started) / 1000
        )
        log.info("chat_stream_open", conn_time_ms=connected - started)

        return start_stream(
            handle,
            self.codec,
            provider=self.provider,
            model=request.model,
            started_at=started,
            connected_at=connected,
            queue_size=self.config.queue_size,
            publish_timeout=self.config.publish_timeout,
            timeout=self.config.stream_timeout,
        )
