"""HTTP transport primitives shared by every adapter.

:class:`Transport` wraps one ``httpx.AsyncClient`` (connection pool, proxy and
TLS live there) and offers the two calls adapters need:

* :meth:`Transport.post`: one request, whole body returned as ``bytes``.
* :meth:`Transport.open_stream`: one request whose body is consumed
  incrementally through a :class:`StreamHandle`.

Both take an ``error_handler`` that turns a non-2xx response into the
:class:`~llmbridge.providers.errors.ProviderError` to raise, so a failed call
never reaches a success decoder.
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Mapping

import httpx
import structlog
from botocore.eventstream import EventStreamBuffer, ParserError

from llmbridge.providers.errors import (
    DecodeError,
    EndOfStream,
    ProviderError,
    StreamInterruptedError,
    TimeoutError,
)
from llmbridge.providers.models import Frame

_log = structlog.get_logger(__name__)

ErrorHandler = Callable[[httpx.Response], ProviderError]
FrameReader = Callable[[httpx.Response], AsyncIterator[Frame]]


# ---------------------------------------------------------------------------
# Frame readers
# ---------------------------------------------------------------------------


async def sse_frames(response: httpx.Response) -> AsyncIterator[Frame]:
    """Parse a ``text/event-stream`` body into frames.

    Lines are grouped until a blank line; ``event:`` names the frame and
    multiple ``data:`` lines are joined with ``\\n``.  Comment lines (leading
    ``:``) are keep-alives and are skipped.
    """
    event: str | None = None
    data_lines: list[str] = []

    async for line in response.aiter_lines():
        if not line:
            if data_lines:
                yield Frame(data="\n".join(data_lines).encode("utf-8"), event=event)
            event = None
            data_lines = []
            continue

        if line.startswith(":"):
            continue

        name, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if name == "event":
            event = value
        elif name == "data":
            data_lines.append(value)

    if data_lines:
        yield Frame(data="\n".join(data_lines).encode("utf-8"), event=event)


async def aws_event_frames(response: httpx.Response) -> AsyncIterator[Frame]:
    """Parse an ``application/vnd.amazon.eventstream`` body into frames.

    ``Frame.event`` is the ``:event-type`` header for events and the
    ``:exception-type`` (or ``:error-code``) header for exceptions.
    """
    buffer = EventStreamBuffer()
    async for data in response.aiter_bytes():
        buffer.add_data(data)
        try:
            for message in buffer:
                headers = dict(message.headers)
                if headers.get(":message-type") in ("exception", "error"):
                    event = headers.get(":exception-type") or headers.get(":error-code")
                else:
                    event = headers.get(":event-type")
                yield Frame(data=message.payload, event=event, headers=headers)
        except ParserError as exc:
            raise DecodeError(
                f"malformed event-stream message: {exc}",
                original_error=exc,
            ) from exc


# ---------------------------------------------------------------------------
# Stream handle
# ---------------------------------------------------------------------------


class StreamHandle:
    """An open streaming response.

    Owned by exactly one reader.  :meth:`recv` returns the next frame or raises
    :class:`EndOfStream` once the body ends cleanly; :meth:`aclose` releases
    the connection and may be called any number of times.

    Args:
        response: Response opened with ``stream=True`` and a 2xx status.
        frames: Frame iterator reading from *response*.
        provider: Provider name recorded on errors.
        read_timeout: Maximum seconds to wait for one frame.  ``None`` waits
            indefinitely (the client's own read timeout still applies).
    """

    def __init__(
        self,
        response: httpx.Response,
        frames: AsyncIterator[Frame],
        *,
        provider: str,
        read_timeout: float | None = None,
    ) -> None:
        self.response = response
        self._frames = frames
        self._provider = provider
        self._read_timeout = read_timeout
        self._closed = False
        self.close_count = 0

    @property
    def closed(self) -> bool:
        return self._closed

    async def recv(self) -> Frame:
        """Read the next frame.

        Raises:
            EndOfStream: The provider closed the body cleanly.
            TimeoutError: No frame arrived within ``read_timeout``.
            StreamInterruptedError: The connection broke mid-body.
            DecodeError: The framing itself was malformed.
        """
        if self._closed:
            raise StreamInterruptedError("stream is closed", provider=self._provider)
        try:
            async with asyncio.timeout(self._read_timeout):
                return await anext(self._frames)
        except StopAsyncIteration:
            raise EndOfStream() from None
        except asyncio.TimeoutError as exc:
            raise TimeoutError(
                f"no data from {self._provider} for {self._read_timeout}s",
                provider=self._provider,
                original_error=exc,
            ) from exc
        except httpx.TimeoutException as exc:
            raise TimeoutError(
                f"read from {self._provider} timed out: {exc!r}",
                provider=self._provider,
                original_error=exc,
            ) from exc
        except httpx.TransportError as exc:
            raise StreamInterruptedError(
                f"{self._provider} stream interrupted: {exc!r}",
                provider=self._provider,
                original_error=exc,
            ) from exc
        except DecodeError as exc:
            exc.provider = exc.provider or self._provider
            raise

    async def aclose(self) -> None:
        """Release the connection.  Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self.close_count += 1
        try:
            aclose = getattr(self._frames, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            await self.response.aclose()


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class Transport:
    """Blocking-post and streaming primitives over one ``httpx.AsyncClient``.

    Args:
        timeout: Total per-request timeout in seconds.
        proxy: Optional proxy URL (``http://``, ``https://`` or ``socks5://``).
        client: Pre-built client, mainly for tests (``httpx.MockTransport``).
            When given, *timeout* and *proxy* are not applied to it.
    """

    def __init__(
        self,
        timeout: float = 60.0,
        proxy: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            proxy=proxy,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def post(
        self,
        url: str,
        headers: Mapping[str, str],
        body: bytes,
        *,
        error_handler: ErrorHandler,
        timeout: float | None = None,
    ) -> bytes:
        """POST *body* and return the full response body.

        Raises:
            ProviderError: Whatever *error_handler* returns for a non-2xx status.
            httpx.HTTPError: Transport failures, left for the caller to classify.
        """
        response = await self._client.post(
            url,
            headers=dict(headers),
            content=body,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        if not response.is_success:
            raise error_handler(response)
        return response.content

    async def open_stream(
        self,
        url: str,
        headers: Mapping[str, str],
        body: bytes,
        *,
        provider: str,
        error_handler: ErrorHandler,
        frame_reader: FrameReader = sse_frames,
        read_timeout: float | None = None,
        timeout: float | None = None,
    ) -> StreamHandle:
        """POST *body* and return a handle over the streamed response.

        The status line and headers are awaited here; a non-2xx status is
        read in full, closed, and raised through *error_handler* before any
        handle exists.
        """
        request = self._client.build_request(
            "POST",
            url,
            headers=dict(headers),
            content=body,
            timeout=timeout if timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        response = await self._client.send(request, stream=True)
        if not response.is_success:
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise error_handler(response)

        _log.debug("stream_opened", provider=provider, url=url, status=response.status_code)
        return StreamHandle(
            response,
            frame_reader(response),
            provider=provider,
            read_timeout=read_timeout,
        )
