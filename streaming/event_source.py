"""GET-only SSE subscriptions over httpx-sse.

EventSourceAdapter.open() runs the connection in a background task and returns
an EventSourceHandle. Events from httpx_sse become Frames and go through the
shared MessageParser, so both transports decode payloads identically.

- Decoded messages → on_message
- Decode failures  → on_error(FrameParseError), connection stays up
- Bad status / content type / network failure → on_error(TransportError), once
- Abort signal → close() exactly once
No reconnection here; wrap with ReconnectionManager if needed.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

import httpx
from httpx_sse import SSEError, aconnect_sse

from sse_decoder import Frame
from sse_message import MessageParser
from stream_config import build_timeout, load_config, redact_headers, resolve_headers
from stream_errors import FrameParseError, TransportError
from stream_session import OnComplete, OnError, OnMessage, invoke_callback, report_error

logger = logging.getLogger("agentj_stream.event_source")


class EventSourceHandle:
    """Handle to a running subscription."""

    def __init__(self, url: str) -> None:
        self.url = url
        self._task: Optional[asyncio.Task] = None
        self._watcher: Optional[asyncio.Task] = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop the subscription. Idempotent."""
        if self._closed:
            return
        self._closed = True
        logger.info("Closing event source: %s", self.url)
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._stop_watcher()

    def _stop_watcher(self) -> None:
        watcher = self._watcher
        if watcher is not None and not watcher.done() and watcher is not asyncio.current_task():
            watcher.cancel()

    async def wait(self) -> None:
        """Wait until the connection has ended (closed, failed, or server-ended)."""
        if self._task is not None:
            await asyncio.wait({self._task})


class EventSourceAdapter:
    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        headers: Optional[Dict[str, str]] = None,
        config: Optional[Dict[str, Any]] = None,
    ):
        self.config = config if config is not None else load_config()
        self.parser = MessageParser()
        self._client = client
        self._headers = headers or {}

    def open(
        self,
        url: str,
        on_message: OnMessage,
        on_error: Optional[OnError] = None,
        on_open: Optional[OnComplete] = None,
        signal: Optional[asyncio.Event] = None,
    ) -> EventSourceHandle:
        """Subscribe to `url`. Must be called from a running event loop."""
        loop = asyncio.get_running_loop()
        handle = EventSourceHandle(url)

        if signal is not None and signal.is_set():
            handle.close()
            return handle

        handle._task = loop.create_task(
            self._run(url, handle, on_message, on_error, on_open)
        )
        if signal is not None:
            handle._watcher = loop.create_task(self._watch(signal, handle))
        return handle

    async def _watch(self, signal: asyncio.Event, handle: EventSourceHandle) -> None:
        await signal.wait()
        handle.close()

    async def _run(
        self,
        url: str,
        handle: EventSourceHandle,
        on_message: OnMessage,
        on_error: Optional[OnError],
        on_open: Optional[OnComplete],
    ) -> None:
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=build_timeout(self.config))
        headers = resolve_headers(self.config, self._headers)
        logger.info("Opening event source GET %s", url)
        logger.debug("Request headers: %s", redact_headers(headers))

        try:
            async with aconnect_sse(client, "GET", url, headers=headers) as event_source:
                response = event_source.response
                if not response.is_success:
                    await response.aread()
                    raise TransportError.from_status(response.status_code, response.text)

                await invoke_callback(on_open)
                async for sse in event_source.aiter_sse():
                    frame = Frame(event=sse.event or None, id=sse.id or None, data=sse.data)
                    message = self.parser.parse(frame)
                    if message.is_json:
                        await invoke_callback(on_message, message)
                    else:
                        await invoke_callback(
                            on_error,
                            FrameParseError(f"Malformed event data: {message.parse_error}", raw=message),
                        )
            logger.info("Event source ended by server: %s", url)
        except asyncio.CancelledError:
            logger.debug("Event source task cancelled: %s", url)
            raise
        except TransportError as e:
            await report_error(e, on_error)
        except SSEError as e:
            await report_error(TransportError(f"Not an event stream: {e}"), on_error)
        except httpx.HTTPError as e:
            await report_error(
                TransportError(f"Event source failed: {e}", retryable=isinstance(e, httpx.TransportError)),
                on_error,
            )
        except Exception as e:
            # Raised by a caller callback; the subscription cannot continue
            await report_error(e, on_error)
        finally:
            handle._closed = True
            handle._stop_watcher()
            if owns_client:
                await client.aclose()
