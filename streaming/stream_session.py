"""
stream_session.py — One SSE request lifecycle over a streamed HTTP body

  open()     — POST (JSON body, Accept: text/event-stream), status check
  messages() — async generator: bytes → lines → frames → Message, arrival order
  consume()  — drive messages() into on_message / on_error / on_complete
  start()    — open() + consume()

State: IDLE → CONNECTING → OPEN → {CLOSED | ABORTED | ERRORED}. Terminal states
are final; a session is single-use.

Cancellation: the caller's asyncio.Event is checked before and after every
read, and every pending read is raced against it, so an abort lands within
one read cycle. The response (and a session-owned client) is released
exactly once on every exit path.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from enum import Enum
from typing import Any, AsyncGenerator, AsyncIterator, Awaitable, Callable, Dict, Optional

import httpx

from reconnect import ReconnectionManager
from sse_decoder import ByteToLineDecoder, FrameAssembler
from sse_message import Message, MessageParser
from stream_config import (
    build_timeout,
    deep_merge,
    load_config,
    redact_headers,
    resolve_headers,
)
from stream_errors import AbortError, StreamError, TransportError

logger = logging.getLogger("agentj_stream.session")

EVENT_STREAM = "text/event-stream"


class StreamState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"
    ABORTED = "aborted"
    ERRORED = "errored"


TERMINAL_STATES = frozenset({StreamState.CLOSED, StreamState.ABORTED, StreamState.ERRORED})

OnMessage = Callable[[Message], Optional[Awaitable[None]]]
OnError = Callable[[BaseException], Optional[Awaitable[None]]]
OnComplete = Callable[[], Optional[Awaitable[None]]]


async def invoke_callback(callback: Optional[Callable[..., Any]], *args: Any) -> None:
    """Invoke a plain or coroutine callback."""
    if callback is None:
        return
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


async def report_error(error: BaseException, on_error: Optional[OnError]) -> None:
    if on_error is None:
        logger.error("Stream failed: %s", error)
        return
    await invoke_callback(on_error, error)


async def _next_chunk(reader: AsyncIterator[bytes]) -> Optional[bytes]:
    try:
        return await reader.__anext__()
    except StopAsyncIteration:
        return None


class StreamSession:
    """Single-use SSE session over one HTTP response.

    client:  shared httpx.AsyncClient (not closed by the session); when omitted
             the session builds its own from config and closes it on release.
    headers: extra request headers, e.g. an Authorization token from the caller.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.config = config if config is not None else load_config()
        self.parser = MessageParser()
        self.state = StreamState.IDLE
        self._client = client
        self._owns_client = client is None
        self._headers = headers or {}
        self._response: Optional[httpx.Response] = None
        self._signal: Optional[asyncio.Event] = None
        self._abort_waiter: Optional[asyncio.Future] = None
        self._released = False

    @property
    def response(self) -> Optional[httpx.Response]:
        return self._response

    def _set_state(self, state: StreamState) -> None:
        if self.state in TERMINAL_STATES:
            return
        logger.debug("Session state %s → %s", self.state.value, state.value)
        self.state = state

    def _check_abort(self) -> None:
        if self._signal is not None and self._signal.is_set():
            raise AbortError()

    async def _race(self, awaitable: Awaitable[Any]) -> Any:
        """Await `awaitable` unless the abort signal fires first."""
        if self._signal is None:
            return await awaitable

        task = asyncio.ensure_future(awaitable)
        if self._abort_waiter is None:
            self._abort_waiter = asyncio.ensure_future(self._signal.wait())
        await asyncio.wait({task, self._abort_waiter}, return_when=asyncio.FIRST_COMPLETED)
        if task.done():
            return task.result()

        task.cancel()
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is None:
            # Finished while being cancelled; don't leak a response
            result = task.result()
            if isinstance(result, httpx.Response):
                await result.aclose()
        raise AbortError()

    async def _release(self) -> None:
        """Close the response and any owned client. Idempotent."""
        if self._released:
            return
        self._released = True

        if self._abort_waiter is not None and not self._abort_waiter.done():
            self._abort_waiter.cancel()
        try:
            if self._response is not None:
                await self._response.aclose()
        finally:
            if self._owns_client and self._client is not None:
                await self._client.aclose()
        logger.debug("Session released (state=%s)", self.state.value)

    # --- Connection ---

    async def open(
        self,
        url: str,
        payload: Optional[Dict[str, Any]] = None,
        signal: Optional[asyncio.Event] = None,
        method: str = "POST",
    ) -> "StreamSession":
        """Issue the request and check the status. Returns self in OPEN state.

        Raises TransportError on a non-success status or network failure,
        AbortError if `signal` fires before the response arrives.
        """
        if self.state is not StreamState.IDLE:
            raise RuntimeError(f"StreamSession already used (state={self.state.value})")
        self._signal = signal
        self._set_state(StreamState.CONNECTING)

        try:
            self._check_abort()
            if self._client is None:
                self._client = httpx.AsyncClient(timeout=build_timeout(self.config))

            headers = resolve_headers(self.config, self._headers)
            headers["Accept"] = EVENT_STREAM
            headers.setdefault("Cache-Control", "no-cache")
            kwargs: Dict[str, Any] = {"headers": headers}
            if method.upper() != "GET":
                headers["Content-Type"] = "application/json"
                kwargs["json"] = payload if payload is not None else {}

            logger.info("Opening stream %s %s", method, url)
            logger.debug("Request headers: %s", redact_headers(headers))
            request = self._client.build_request(method, url, **kwargs)
            self._response = await self._race(self._client.send(request, stream=True))
            self._check_abort()

            response = self._response
            if not response.is_success:
                await response.aread()
                raise TransportError.from_status(response.status_code, response.text)

            content_type = response.headers.get("content-type", "")
            if EVENT_STREAM not in content_type:
                logger.warning("Unexpected content-type for stream %s: %r", url, content_type)

        except AbortError:
            logger.info("Stream aborted before open: %s", url)
            self._set_state(StreamState.ABORTED)
            await self._release()
            raise
        except asyncio.CancelledError:
            self._set_state(StreamState.ABORTED)
            await self._release()
            raise
        except httpx.HTTPError as e:
            self._set_state(StreamState.ERRORED)
            await self._release()
            raise TransportError(
                f"Connection failed: {e}",
                retryable=isinstance(e, httpx.TransportError),
            ) from e
        except BaseException:
            self._set_state(StreamState.ERRORED)
            await self._release()
            raise

        self._set_state(StreamState.OPEN)
        logger.debug("Stream open: %s (HTTP %d)", url, response.status_code)
        return self

    # --- Reading ---

    async def messages(self) -> AsyncGenerator[Message, None]:
        """Yield Messages in arrival order until end of body or abort.

        Not restartable. Closing the generator early releases the connection
        and leaves the session ABORTED. Transport faults raise TransportError.
        """
        if self.state is not StreamState.OPEN:
            raise RuntimeError(f"Session is not open (state={self.state.value})")

        decoder = ByteToLineDecoder()
        assembler = FrameAssembler()
        reader = self._response.aiter_bytes()

        try:
            while True:
                self._check_abort()
                chunk = await self._race(_next_chunk(reader))
                self._check_abort()
                if chunk is None:
                    break
                for line in decoder.feed(chunk):
                    frame = assembler.consume(line)
                    if frame is not None:
                        yield self.parser.parse(frame)
                        # A callback may have aborted; drop the rest of this chunk
                        self._check_abort()

            # End of body: nothing pending may be lost
            tail = decoder.flush()
            if tail:
                assembler.consume(tail)
            frame = assembler.finish()
            if frame is not None:
                yield self.parser.parse(frame)

            self._set_state(StreamState.CLOSED)
            logger.info("Stream closed (parse failures: %d)", self.parser.parse_failures)

        except AbortError:
            logger.info("Stream aborted by caller")
            self._set_state(StreamState.ABORTED)
        except asyncio.CancelledError:
            self._set_state(StreamState.ABORTED)
            raise
        except httpx.HTTPError as e:
            if self._signal is not None and self._signal.is_set():
                self._set_state(StreamState.ABORTED)
                return
            self._set_state(StreamState.ERRORED)
            raise TransportError(f"Stream read failed: {e}", retryable=True) from e
        except Exception:
            self._set_state(StreamState.ERRORED)
            raise
        finally:
            # Consumer stopped iterating early
            self._set_state(StreamState.ABORTED)
            try:
                await reader.aclose()
            finally:
                await self._release()

    async def consume(
        self,
        on_message: OnMessage,
        on_error: Optional[OnError] = None,
        on_complete: Optional[OnComplete] = None,
    ) -> None:
        """Deliver messages from an opened session to callbacks."""
        stream = self.messages()
        try:
            async for message in stream:
                await invoke_callback(on_message, message)
        except Exception as e:
            self._set_state(StreamState.ERRORED)
            await stream.aclose()
            await report_error(e, on_error)
            return
        await invoke_callback(on_complete)

    async def start(
        self,
        url: str,
        payload: Optional[Dict[str, Any]],
        on_message: OnMessage,
        on_error: Optional[OnError] = None,
        on_complete: Optional[OnComplete] = None,
        signal: Optional[asyncio.Event] = None,
    ) -> None:
        """Run one stream to completion. Returns when closed, aborted or errored.

        Abort is not a failure: it ends with on_complete(), never on_error().
        """
        if self.state is not StreamState.IDLE:
            raise RuntimeError(f"StreamSession already used (state={self.state.value})")
        try:
            await self.open(url, payload, signal)
        except AbortError:
            await invoke_callback(on_complete)
            return
        except StreamError as e:
            await report_error(e, on_error)
            return
        await self.consume(on_message, on_error, on_complete)


async def stream_sse(
    url: str,
    payload: Optional[Dict[str, Any]],
    on_message: OnMessage,
    on_error: Optional[OnError] = None,
    on_complete: Optional[OnComplete] = None,
    signal: Optional[asyncio.Event] = None,
    *,
    headers: Optional[Dict[str, str]] = None,
    client: Optional[httpx.AsyncClient] = None,
    config: Optional[Dict[str, Any]] = None,
    max_retries: int = 0,
) -> None:
    """POST `payload` to `url` and stream the response into callbacks.

    With max_retries > 0, opening the connection is retried per the config's
    retry policy and exhaustion reaches on_error as RetryExhausted.
    """
    config = config if config is not None else load_config()

    if max_retries <= 0:
        session = StreamSession(client=client, headers=headers, config=config)
        await session.start(url, payload, on_message, on_error, on_complete, signal)
        return

    manager = ReconnectionManager.from_config(
        deep_merge(config, {"retry": {"max_retries": max_retries}})
    )
    try:
        session = await manager.with_retry(
            lambda: StreamSession(client=client, headers=headers, config=config).open(
                url, payload, signal
            ),
            signal,
        )
    except StreamError as e:
        await report_error(e, on_error)
        return

    if session is None:
        # Aborted while connecting or waiting to retry
        await invoke_callback(on_complete)
        return
    await session.consume(on_message, on_error, on_complete)
