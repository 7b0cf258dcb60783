"""Tests for the streaming producer and the caller-side ChunkStream."""

from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest

from llmbridge.providers.anthropic import AnthropicCodec
from llmbridge.providers.deepseek import DeepSeekCodec
from llmbridge.providers.errors import (
    DecodeError,
    EndOfStream,
    ErrorCategory,
    ProviderApiError,
    StreamInterruptedError,
    TimeoutError,
)
from llmbridge.providers.models import ChatCompletionChunk, Frame
from llmbridge.providers.streaming import ChunkStream, now_ms, start_stream


class FakeHandle:
    """Stand-in for a StreamHandle that replays a scripted list of frames.

    Exceptions in the script are raised from ``recv`` in place of a frame.
    With ``hang=True`` the handle blocks forever once the script runs out.
    """

    def __init__(self, script: list[Any], *, hang: bool = False) -> None:
        self._script = list(script)
        self._hang = hang
        self.close_count = 0

    async def recv(self) -> Frame:
        if self._script:
            item = self._script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        if self._hang:
            await asyncio.Event().wait()
        raise EndOfStream()

    async def aclose(self) -> None:
        self.close_count += 1


def event(data: dict[str, Any]) -> Frame:
    return Frame(data=json.dumps(data).encode(), event=data["type"])


def text(value: str) -> Frame:
    return event({"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": value}})


def tool_start(index: int, call_id: str, name: str) -> Frame:
    return event(
        {
            "type": "content_block_start",
            "index": index,
            "content_block": {"type": "tool_use", "id": call_id, "name": name, "input": {}},
        }
    )


def tool_args(index: int, fragment: str) -> Frame:
    return event(
        {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "input_json_delta", "partial_json": fragment},
        }
    )


STOP = event({"type": "message_stop"})


def open_stream(handle: FakeHandle, **kwargs: Any) -> ChunkStream:
    started = now_ms()
    return start_stream(
        handle,
        AnthropicCodec(),
        provider="anthropic",
        model="claude-3-5-sonnet-20241022",
        started_at=started,
        connected_at=started,
        **kwargs,
    )


async def drain(stream: ChunkStream) -> list[ChatCompletionChunk]:
    return [chunk async for chunk in stream]


class TestCleanStream:
    async def test_content_then_single_terminal(self) -> None:
        """Three content frames and a clean end give three chunks plus one terminal."""
        handle = FakeHandle([text("a"), text("b"), text("c"), STOP])
        chunks = await drain(open_stream(handle))

        assert [c.content for c in chunks[:-1]] == ["a", "b", "c"]
        assert all(not c.done for c in chunks[:-1])
        terminal = chunks[-1]
        assert terminal.done
        assert terminal.error is None
        assert terminal.model == "claude-3-5-sonnet-20241022"
        assert handle.close_count == 1

    async def test_end_of_body_without_marker_is_clean(self) -> None:
        chunks = await drain(open_stream(FakeHandle([text("a")])))
        assert [c.done for c in chunks] == [False, True]
        assert chunks[-1].error is None

    async def test_keep_alive_frames_produce_no_chunks(self) -> None:
        handle = FakeHandle(
            [event({"type": "ping"}), text("a"), event({"type": "content_block_stop", "index": 0}), STOP]
        )
        chunks = await drain(open_stream(handle))
        assert [c.content for c in chunks] == ["a", ""]

    async def test_total_time_never_decreases(self) -> None:
        chunks = await drain(open_stream(FakeHandle([text(str(i)) for i in range(20)])))

        totals = [c.total_time for c in chunks]
        assert totals == sorted(totals)
        for chunk in chunks:
            assert chunk.conn_time >= 0
            assert chunk.duration == chunk.total_time - chunk.conn_time

    async def test_iteration_stops_after_terminal(self) -> None:
        stream = open_stream(FakeHandle([text("a")]))
        await drain(stream)

        assert stream.finished
        with pytest.raises(StopAsyncIteration):
            await stream.__anext__()


class TestFailingStream:
    async def test_decode_error_mid_stream(self) -> None:
        handle = FakeHandle([text("a"), Frame(data=b"{broken", event="content_block_delta"), text("b")])
        chunks = await drain(open_stream(handle))

        assert [c.content for c in chunks if not c.done] == ["a"]
        assert isinstance(chunks[-1].error, DecodeError)
        assert handle.close_count == 1

    async def test_provider_error_event(self) -> None:
        handle = FakeHandle(
            [text("a"), event({"type": "error", "error": {"type": "overloaded_error", "message": "busy"}})]
        )
        chunks = await drain(open_stream(handle))

        error = chunks[-1].error
        assert isinstance(error, ProviderApiError)
        assert error.category is ErrorCategory.OVERLOADED

    async def test_interrupted_connection(self) -> None:
        handle = FakeHandle([text("a"), StreamInterruptedError("connection reset", provider="anthropic")])
        chunks = await drain(open_stream(handle))

        assert isinstance(chunks[-1].error, StreamInterruptedError)
        assert handle.close_count == 1

    async def test_read_stall(self) -> None:
        handle = FakeHandle([text("a"), TimeoutError("no data for 0.1s", provider="anthropic")])
        chunks = await drain(open_stream(handle))

        assert isinstance(chunks[-1].error, TimeoutError)
        assert chunks[-1].done

    async def test_unexpected_exception_becomes_decode_error(self) -> None:
        class ExplodingCodec(AnthropicCodec):
            def decode_chunk(self, frame: Frame) -> ChatCompletionChunk | None:
                raise RuntimeError("boom")

        handle = FakeHandle([text("a")])
        started = now_ms()
        stream = start_stream(
            handle,
            ExplodingCodec(),
            provider="anthropic",
            model="m",
            started_at=started,
            connected_at=started,
        )
        chunks = await drain(stream)

        assert len(chunks) == 1
        assert isinstance(chunks[0].error, DecodeError)
        assert isinstance(chunks[0].error.original_error, RuntimeError)

    async def test_collect_raises_terminal_error(self) -> None:
        handle = FakeHandle([text("a"), Frame(data=b"nope", event="content_block_delta")])
        with pytest.raises(DecodeError):
            await open_stream(handle).collect()


class TestCancellation:
    async def test_aclose_releases_handle_once(self) -> None:
        handle = FakeHandle([text("a")], hang=True)
        stream = open_stream(handle)

        first = await stream.__anext__()
        assert first.content == "a"

        async with asyncio.timeout(1.0):
            await stream.aclose()
        await stream.aclose()

        assert stream.task is not None and stream.task.cancelled()
        assert handle.close_count == 1
        terminal = await stream.__anext__()
        assert terminal.done
        assert isinstance(terminal.error, StreamInterruptedError)

    async def test_aclose_before_producer_starts(self) -> None:
        """Closing before the producer ran a single step still releases the handle."""
        handle = FakeHandle([text("a")], hang=True)
        stream = open_stream(handle)

        await stream.aclose()

        assert handle.close_count == 1
        terminal = await stream.__anext__()
        assert terminal.done
        assert isinstance(terminal.error, StreamInterruptedError)

    async def test_context_manager_exit_without_reading(self) -> None:
        handle = FakeHandle([], hang=True)
        async with open_stream(handle):
            pass
        assert handle.close_count == 1

    async def test_cancel_right_after_content_chunk(self) -> None:
        """aclose() returns promptly even when the producer is between publishes."""
        handle = FakeHandle([text(str(i)) for i in range(10)], hang=True)
        stream = open_stream(handle, queue_size=1)

        first = await stream.__anext__()
        async with asyncio.timeout(1.0):
            await stream.aclose()

        assert first.content == "0"
        assert stream.task is not None and stream.task.done()
        assert handle.close_count == 1

    async def test_context_manager_cancels_producer(self) -> None:
        handle = FakeHandle([], hang=True)
        async with open_stream(handle) as stream:
            await asyncio.sleep(0)
        assert stream.task is not None and stream.task.done()
        assert handle.close_count == 1

    async def test_caller_stops_reading(self) -> None:
        """A full queue past publish_timeout still yields a terminal error."""
        handle = FakeHandle([text(str(i)) for i in range(5)], hang=True)
        stream = open_stream(handle, queue_size=1, publish_timeout=0.05)

        assert stream.task is not None
        await asyncio.wait({stream.task})
        assert handle.close_count == 1

        chunks = await drain(stream)
        assert [c.content for c in chunks[:-1]] == ["0"]
        assert chunks[-1].done
        assert isinstance(chunks[-1].error, StreamInterruptedError)


class TestCollect:
    async def test_folds_text_tool_calls_and_usage(self) -> None:
        handle = FakeHandle(
            [
                event(
                    {
                        "type": "message_start",
                        "message": {"id": "msg_1", "model": "claude-x", "usage": {"input_tokens": 7}},
                    }
                ),
                text("Checking "),
                text("weather."),
                tool_start(1, "t1", "weather"),
                tool_args(1, '{"city": '),
                tool_args(1, '"Oslo"}'),
                event(
                    {
                        "type": "message_delta",
                        "delta": {"stop_reason": "tool_use"},
                        "usage": {"output_tokens": 11},
                    }
                ),
                STOP,
            ]
        )
        response = await open_stream(handle).collect()

        assert response.id == "msg_1"
        assert response.model == "claude-x"
        assert response.content == "Checking weather."
        assert response.finish_reason == "tool_calls"
        call = response.choices[0].message.tool_calls[0]
        assert call.id == "t1"
        assert json.loads(call.arguments) == {"city": "Oslo"}
        assert response.usage.prompt_tokens == 7
        assert response.usage.completion_tokens == 11
        assert response.total_time >= response.conn_time

    async def test_keeps_provider_reported_model(self) -> None:
        handle = FakeHandle(
            [
                event({"type": "message_start", "message": {"id": "msg_1", "model": "claude-reported"}}),
                text("hi"),
                STOP,
            ]
        )
        response = await open_stream(handle).collect()

        assert response.model == "claude-reported"

    async def test_folds_each_choice_separately(self) -> None:
        def frame(*choices: dict[str, Any]) -> Frame:
            return Frame(data=json.dumps({"id": "c1", "model": "deepseek-chat", "choices": list(choices)}).encode())

        handle = FakeHandle(
            [
                frame({"index": 0, "delta": {"content": "Hel"}}, {"index": 1, "delta": {"content": "Bon"}}),
                frame({"index": 1, "delta": {"content": "jour"}}),
                frame({"index": 0, "delta": {"content": "lo"}, "finish_reason": "stop"}),
                frame({"index": 1, "delta": {}, "finish_reason": "length"}),
                Frame(data=b"[DONE]"),
            ]
        )
        started = now_ms()
        stream = start_stream(
            handle,
            DeepSeekCodec(),
            provider="deepseek",
            model="deepseek-chat",
            started_at=started,
            connected_at=started,
        )
        response = await stream.collect()

        assert [c.index for c in response.choices] == [0, 1]
        assert [c.message.content for c in response.choices] == ["Hello", "Bonjour"]
        assert [c.finish_reason for c in response.choices] == ["stop", "length"]


class TestRecvAndRelease:
    async def test_recv_reads_one_chunk_at_a_time(self) -> None:
        stream = open_stream(FakeHandle([text("a"), STOP]))

        first = await stream.recv()
        terminal = await stream.recv()

        assert first is not None and first.content == "a"
        assert terminal is not None and terminal.done
        assert await stream.recv() is None

    async def test_release_failure_is_logged_not_raised(self, mocker) -> None:
        handle = FakeHandle([text("a")])
        aclose = mocker.patch.object(handle, "aclose", side_effect=RuntimeError("socket gone"))

        chunks = await drain(open_stream(handle))

        assert chunks[-1].done and chunks[-1].error is None
        aclose.assert_awaited_once()

    async def test_each_frame_decoded_once_in_order(self, mocker) -> None:
        codec = AnthropicCodec()
        spy = mocker.spy(codec, "decode_chunk")
        frames = [text("a"), text("b"), STOP]
        started = now_ms()
        stream = start_stream(
            FakeHandle(frames),
            codec,
            provider="anthropic",
            model="m",
            started_at=started,
            connected_at=started,
        )
        await drain(stream)

        assert [call.args[0] for call in spy.call_args_list] == frames


class TestDeadline:
    async def test_whole_stream_deadline(self) -> None:
        handle = FakeHandle([text("a")], hang=True)
        chunks = await drain(open_stream(handle, timeout=0.05))

        assert [c.content for c in chunks[:-1]] == ["a"]
        assert isinstance(chunks[-1].error, TimeoutError)
        assert "deadline" in chunks[-1].error.message
        assert handle.close_count == 1
