"""Frame → Message parsing.

A Message is a tagged variant:
  kind="json" — value holds the decoded JSON
  kind="raw"  — text holds the undecodable data, parse_error says why

A malformed frame never raises; the stream keeps going.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

from sse_decoder import Frame

logger = logging.getLogger("agentj_stream.message")

JSON = "json"
RAW = "raw"


@dataclass(frozen=True)
class Message:
    kind: str
    value: Any = None
    text: str = ""
    parse_error: Optional[str] = None
    event: Optional[str] = None
    id: Optional[str] = None

    @property
    def is_json(self) -> bool:
        return self.kind == JSON

    @property
    def payload(self) -> Any:
        """Decoded value for JSON messages, raw text otherwise."""
        return self.value if self.kind == JSON else self.text


class MessageParser:
    """Decode frame data as JSON, falling back to the raw string."""

    def __init__(self) -> None:
        self.parse_failures = 0

    def parse(self, frame: Frame) -> Message:
        try:
            value = json.loads(frame.data)
        except (ValueError, TypeError, RecursionError) as e:
            self.parse_failures += 1
            logger.warning(
                "Malformed SSE frame (event=%s id=%s): %s; data=%r",
                frame.event, frame.id, e, frame.data[:200],
            )
            return Message(
                kind=RAW,
                text=frame.data,
                parse_error=str(e),
                event=frame.event,
                id=frame.id,
            )
        return Message(kind=JSON, value=value, event=frame.event, id=frame.id)
