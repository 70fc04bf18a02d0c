"""
sse_decoder.py — Incremental Server-Sent Events decoder

Two stages, both driven one chunk at a time:
  ByteToLineDecoder — stateful UTF-8 decoding + LF line splitting across chunk boundaries
  FrameAssembler    — groups lines into frames on the blank-line terminator

Wire format:
  event: <name>         (optional, last value wins)
  id: <identifier>      (optional)
  data: <payload-chunk> (one or more, joined with \\n)
  <blank line>          (terminates and emits the frame)
"""

from __future__ import annotations

import codecs
import logging
from dataclasses import dataclass
from typing import AsyncGenerator, AsyncIterable, List, Optional

logger = logging.getLogger("agentj_stream.decoder")


@dataclass(frozen=True)
class Frame:
    """One assembled SSE frame."""
    event: Optional[str] = None
    id: Optional[str] = None
    data: str = ""


class ByteToLineDecoder:
    """Decode byte chunks into complete lines.

    Multi-byte characters split across chunks are held by the incremental
    decoder until complete. A trailing fragment with no LF is kept in the
    line buffer and prefixed onto the next feed().
    """

    def __init__(self, encoding: str = "utf-8"):
        self._decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
        self._buffer = ""

    def feed(self, chunk: bytes) -> List[str]:
        self._buffer += self._decoder.decode(chunk)
        if "\n" not in self._buffer:
            return []
        *lines, self._buffer = self._buffer.split("\n")
        return [_strip_cr(line) for line in lines]

    def flush(self) -> str:
        """Return the final unterminated line (or "") and reset."""
        tail = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        self._decoder.reset()
        return _strip_cr(tail)

    @property
    def pending(self) -> str:
        return self._buffer


def _strip_cr(line: str) -> str:
    # CRLF servers: the CR belongs to the terminator
    return line[:-1] if line.endswith("\r") else line


def _field_value(line: str, prefix: str) -> str:
    value = line[len(prefix):]
    if value.startswith(" "):
        value = value[1:]  # Strip single leading space
    return value


class FrameAssembler:
    """Accumulate lines into a pending frame; emit on blank line."""

    def __init__(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self._event: Optional[str] = None
        self._id: Optional[str] = None
        self._data_lines: List[str] = []

    @property
    def has_pending(self) -> bool:
        return bool(self._data_lines) or self._event is not None or self._id is not None

    def consume(self, line: str) -> Optional[Frame]:
        if not line.strip():
            # Repeated blank lines with nothing pending are a no-op
            return self._emit()

        if line.startswith("data:"):
            self._data_lines.append(_field_value(line, "data:"))
        elif line.startswith("event:"):
            self._event = _field_value(line, "event:")
        elif line.startswith("id:"):
            self._id = _field_value(line, "id:")
        else:
            # Comments, retry:, unknown fields
            logger.debug("Ignoring SSE line: %r", line[:80])
        return None

    def finish(self) -> Optional[Frame]:
        """Flush the pending frame at end of stream (no trailing blank line)."""
        return self._emit()

    def _emit(self) -> Optional[Frame]:
        if not self.has_pending:
            return None
        frame = Frame(event=self._event, id=self._id, data="\n".join(self._data_lines))
        self._reset()
        return frame


async def sse_decode(stream: AsyncIterable[bytes]) -> AsyncGenerator[Frame, None]:
    """Decode frames from an async byte stream (e.g. httpx response.aiter_bytes()).

    Yields frames in arrival order. A non-empty pending frame at end of stream
    is still yielded.
    """
    decoder = ByteToLineDecoder()
    assembler = FrameAssembler()

    async for chunk in stream:
        for line in decoder.feed(chunk):
            frame = assembler.consume(line)
            if frame is not None:
                yield frame

    # Stream ended without a final LF: the tail is a field line, never a terminator
    tail = decoder.flush()
    if tail:
        assembler.consume(tail)

    frame = assembler.finish()
    if frame is not None:
        yield frame
