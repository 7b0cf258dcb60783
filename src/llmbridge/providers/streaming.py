"""Generic streaming engine shared by every adapter.

:func:`start_stream` takes an open :class:`~llmbridge.transport.StreamHandle`
and the adapter's codec, starts exactly one producer task, and returns a
:class:`ChunkStream` immediately.  The producer reads frames, decodes them,
stamps timing, and publishes chunks onto a bounded queue in arrival order.

Every stream ends with exactly one terminal chunk (``done=True``) published
after all content chunks.  Its ``error`` is ``None`` on a clean end and holds
the :class:`~llmbridge.providers.errors.ProviderError` otherwise; no exception
ever escapes the producer.  The handle is released exactly once on every exit
path, including cancellation and a caller that stopped reading.
"""

import asyncio
import time
from typing import TYPE_CHECKING

import structlog
from opentelemetry import trace
from opentelemetry.trace import StatusCode

from llmbridge.observability import FIRST_CHUNK_SECONDS, REQUEST_SECONDS, record_error
from llmbridge.providers.errors import (
    DecodeError,
    EndOfStream,
    ProviderError,
    StreamInterruptedError,
    TimeoutError,
)
from llmbridge.providers.models import (
    ChatCompletionChunk,
    ChatCompletionResponse,
    Choice,
    Frame,
    Message,
    ToolCall,
    Usage,
)

if TYPE_CHECKING:
    from llmbridge.providers.base import Codec
    from llmbridge.transport import StreamHandle

_log = structlog.get_logger(__name__)
_tracer = trace.get_tracer(__name__)


def now_ms() -> int:
    """Monotonic clock in milliseconds."""
    return int(time.monotonic() * 1000)


class ChunkStream:
    """Caller side of a streaming call.

    Iterate it to receive chunks in arrival order; iteration stops right after
    the terminal chunk.  Use it as an async context manager (or call
    :meth:`aclose`) to abandon a stream early: the producer is cancelled and
    the connection released.

    Example::

        async with await adapter.chat_completions_stream(request) as stream:
            async for chunk in stream:
                if chunk.error:
                    raise chunk.error
                print(chunk.content, end="")
    """

    def __init__(self, queue: "asyncio.Queue[ChatCompletionChunk]", handle: "StreamHandle") -> None:
        self._queue = queue
        self._handle = handle
        self._released = False
        self._task: asyncio.Task[None] | None = None
        self._terminal: ChatCompletionChunk | None = None
        self._finished = False

    @property
    def task(self) -> "asyncio.Task[None] | None":
        return self._task

    @property
    def finished(self) -> bool:
        """``True`` once the terminal chunk has been handed to the caller."""
        return self._finished

    def __aiter__(self) -> "ChunkStream":
        return self

    async def __anext__(self) -> ChatCompletionChunk:
        if self._finished:
            raise StopAsyncIteration

        if self._queue.empty() and self._task is not None and self._task.done():
            # The producer ended without room to publish its terminal chunk.
            chunk = self._terminal or ChatCompletionChunk(
                done=True,
                error=StreamInterruptedError("stream ended without a terminal chunk"),
            )
        else:
            chunk = await self._queue.get()

        if chunk.done:
            self._finished = True
        return chunk

    async def recv(self) -> ChatCompletionChunk | None:
        """Return the next chunk, or ``None`` once the terminal chunk was read."""
        try:
            return await self.__anext__()
        except StopAsyncIteration:
            return None

    async def collect(self) -> ChatCompletionResponse:
        """Drain the stream and fold it into one response.

        Deltas are folded per choice index, so ``n > 1`` streams keep their
        alternatives apart.  Id and model come from the content chunks; the
        terminal chunk only contributes timing.

        Raises:
            ProviderError: The error carried by the terminal chunk, if any.
        """
        chunk_id: str | None = None
        model: str | None = None
        usage: Usage | None = None
        content: dict[int, list[str]] = {}
        finish_reasons: dict[int, str | None] = {}
        tool_calls: dict[int, dict[int, ToolCall]] = {}
        last: ChatCompletionChunk | None = None

        async for chunk in self:
            last = chunk
            if chunk.error is not None:
                raise chunk.error
            if chunk.done:
                break
            chunk_id = chunk.id or chunk_id
            model = chunk.model or model
            if chunk.usage is not None:
                usage = (usage or Usage()).merge(chunk.usage)
            for choice in chunk.choices:
                content.setdefault(choice.index, []).append(choice.delta.content)
                finish_reasons[choice.index] = choice.finish_reason or finish_reasons.get(choice.index)
                calls = tool_calls.setdefault(choice.index, {})
                for call in choice.delta.tool_calls or ():
                    previous = calls.get(call.index)
                    if previous is None:
                        calls[call.index] = call
                    else:
                        calls[call.index] = ToolCall(
                            id=previous.id or call.id,
                            name=previous.name or call.name,
                            arguments=previous.arguments + call.arguments,
                            index=call.index,
                        )

        choices = []
        for index in sorted(content) or [0]:
            calls = tool_calls.get(index, {})
            message = Message(
                role="assistant",
                content="".join(content.get(index, ())),
                tool_calls=tuple(calls[i] for i in sorted(calls)) or None,
            )
            choices.append(Choice(index=index, message=message, finish_reason=finish_reasons.get(index)))

        return ChatCompletionResponse(
            id=chunk_id,
            model=model,
            choices=tuple(choices),
            usage=usage,
            conn_time=last.conn_time if last else 0,
            duration=last.duration if last else 0,
            total_time=last.total_time if last else 0,
        )

    async def aclose(self) -> None:
        """Stop the producer and release the connection.  Idempotent."""
        task = self._task
        if task is not None and not task.done():
            task.cancel()
            await asyncio.wait({task})
        # A producer cancelled before its first step never reached its own release.
        await self._release(_log)

    async def _release(self, log: "structlog.typing.FilteringBoundLogger") -> None:
        if self._released:
            return
        self._released = True
        try:
            await self._handle.aclose()
        except Exception as exc:
            log.warning("chat_stream_close_failed", error=repr(exc))

    async def __aenter__(self) -> "ChunkStream":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()


class _Producer:
    """Background half of a :class:`ChunkStream`."""

    def __init__(
        self,
        stream: ChunkStream,
        handle: "StreamHandle",
        codec: "Codec",
        *,
        provider: str,
        model: str,
        started_at: int,
        connected_at: int,
        publish_timeout: float | None,
        timeout: float | None = None,
    ) -> None:
        self._stream = stream
        self._handle = handle
        self._codec = codec
        self._provider = provider
        self._model = model
        self._started_at = started_at
        self._conn_time = connected_at - started_at
        self._publish_timeout = publish_timeout
        self._timeout = timeout
        self._deadline = started_at + int(timeout * 1000) if timeout is not None else None
        self._last_total = self._conn_time
        self._log = _log.bind(provider=provider, model=model)

    def _stamp(self, chunk: ChatCompletionChunk) -> ChatCompletionChunk:
        total = max(now_ms() - self._started_at, self._last_total)
        self._last_total = total
        return chunk.with_timing(
            conn_time=self._conn_time,
            duration=total - self._conn_time,
            total_time=total,
        )

    async def _publish(self, chunk: ChatCompletionChunk) -> bool:
        """Put a content chunk, giving up after ``publish_timeout`` seconds."""
        try:
            async with asyncio.timeout(self._publish_timeout):
                await self._stream._queue.put(chunk)
        except asyncio.TimeoutError:
            return False
        return True

    async def _recv(self) -> Frame:
        if self._deadline is None:
            return await self._handle.recv()
        remaining = max(self._deadline - now_ms(), 0) / 1000
        try:
            async with asyncio.timeout(remaining):
                return await self._handle.recv()
        except asyncio.TimeoutError:
            raise TimeoutError(
                f"{self._provider} stream exceeded its {self._timeout}s deadline",
                provider=self._provider,
            ) from None

    def _publish_terminal(self, error: ProviderError | None) -> ChatCompletionChunk:
        terminal = self._stamp(ChatCompletionChunk(model=self._model, error=error, done=True))
        self._stream._terminal = terminal
        try:
            self._stream._queue.put_nowait(terminal)
        except asyncio.QueueFull:
            self._log.warning("chat_stream_terminal_deferred", reason="queue_full")
        return terminal

    async def run(self) -> None:
        error: ProviderError | None = None
        chunks = 0

        with _tracer.start_as_current_span("llm.chat_stream") as span:
            span.set_attribute("gen_ai.system", self._provider)
            span.set_attribute("gen_ai.request.model", self._model)
            usage: Usage | None = None
            try:
                while True:
                    try:
                        frame = await self._recv()
                        chunk = self._codec.decode_chunk(frame)
                    except EndOfStream:
                        break
                    if chunk is None:
                        continue

                    chunk = self._stamp(chunk)
                    if chunks == 0:
                        FIRST_CHUNK_SECONDS.labels(provider=self._provider).observe(
                            chunk.total_time / 1000
                        )
                    if chunk.usage is not None:
                        usage = (usage or Usage()).merge(chunk.usage)

                    if not await self._publish(chunk):
                        error = StreamInterruptedError(
                            f"caller stopped reading for {self._publish_timeout}s",
                            provider=self._provider,
                        )
                        break
                    chunks += 1

            except asyncio.CancelledError:
                error = StreamInterruptedError("stream cancelled", provider=self._provider)
                self._finish(span, error, chunks, usage)
                await self._release()
                raise

            except ProviderError as exc:
                error = exc

            except Exception as exc:
                error = DecodeError(
                    f"unexpected failure decoding {self._provider} stream: {exc!r}",
                    provider=self._provider,
                    original_error=exc,
                )

            self._finish(span, error, chunks, usage)
            await self._release()

    def _finish(
        self,
        span: trace.Span,
        error: ProviderError | None,
        chunks: int,
        usage: Usage | None,
    ) -> None:
        terminal = self._publish_terminal(error)
        REQUEST_SECONDS.labels(provider=self._provider, mode="stream").observe(
            terminal.total_time / 1000
        )
        if usage is not None:
            span.set_attribute("gen_ai.usage.input_tokens", usage.prompt_tokens)
            span.set_attribute("gen_ai.usage.output_tokens", usage.completion_tokens)

        timing = {
            "conn_time_ms": terminal.conn_time,
            "duration_ms": terminal.duration,
            "total_time_ms": terminal.total_time,
            "chunks": chunks,
        }
        if error is None:
            self._log.info("chat_stream_finished", **timing)
            return

        record_error(self._provider, error)
        span.record_exception(error)
        span.set_status(StatusCode.ERROR, error.message)
        self._log.error(
            "chat_stream_error",
            error_type=type(error).__name__,
            error_kind=error.kind.value,
            error_category=error.category.value,
            status_code=error.status_code,
            error=error.message,
            **timing,
        )

    async def _release(self) -> None:
        await self._stream._release(self._log)


def start_stream(
    handle: "StreamHandle",
    codec: "Codec",
    *,
    provider: str,
    model: str,
    started_at: int,
    connected_at: int,
    queue_size: int = 64,
    publish_timeout: float | None = 30.0,
    timeout: float | None = None,
) -> ChunkStream:
    """Start the producer for an open stream and return the caller's side.

    Args:
        handle: Open stream; ownership passes to the producer.
        codec: Decoder for the provider's frames.
        provider: Provider name used in logs, metrics and errors.
        model: Requested model name, copied onto the terminal chunk.
        started_at: :func:`now_ms` when the call began.
        connected_at: :func:`now_ms` when the stream opened.
        queue_size: Maximum number of undelivered chunks.
        publish_timeout: Seconds the producer waits for room in a full queue
            before treating the caller as gone.  ``None`` waits forever.
        timeout: Deadline in seconds for the whole call, counted from
            *started_at*.  ``None`` bounds the stream by read stalls only.
    """
    stream = ChunkStream(asyncio.Queue(maxsize=max(queue_size, 1)), handle)
    producer = _Producer(
        stream,
        handle,
        codec,
        provider=provider,
        model=model,
        started_at=started_at,
        connected_at=connected_at,
        publish_timeout=publish_timeout,
        timeout=timeout,
    )
    stream._task = asyncio.create_task(producer.run(), name=f"llmbridge-stream-{provider}")
    return stream
