"""Structured error taxonomy for the streaming client.

TransportError  — non-success status, bad content type, or network failure (fatal to a session)
FrameParseError — one frame's data was not valid JSON (recovered locally)
AbortError      — caller-triggered cancellation (never reported as a failure)
RetryExhausted  — ReconnectionManager used up all attempts
"""

from __future__ import annotations

from typing import Any, Dict, Optional

# Status codes worth another attempt; everything else fails fast.
RETRYABLE_STATUS = {408, 429, 500, 502, 503, 504}


class StreamError(Exception):
    """Base error with code, status_code, retryable flag."""

    code = "stream_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": str(self),
            "status_code": self.status_code,
            "retryable": self.retryable,
        }


class TransportError(StreamError):
    code = "transport_error"

    @classmethod
    def from_status(cls, status_code: int, body: str = "") -> "TransportError":
        text = body[:200] if body else "(empty body)"
        return cls(
            f"HTTP {status_code}: {text}",
            status_code=status_code,
            retryable=status_code in RETRYABLE_STATUS,
        )


class FrameParseError(StreamError):
    """Malformed JSON in one frame. Carries the raw Message that was produced."""

    code = "frame_parse_error"

    def __init__(self, message: str, raw: Any = None):
        super().__init__(message)
        self.raw = raw


class AbortError(StreamError):
    code = "aborted"

    def __init__(self, message: str = "Stream aborted by caller"):
        super().__init__(message)


class RetryExhausted(StreamError):
    code = "retry_exhausted"

    def __init__(self, attempts: int, last_error: Optional[BaseException] = None):
        super().__init__(f"All {attempts} connection attempts failed: {last_error}")
        self.attempts = attempts
        self.last_error = last_error

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["attempts"] = self.attempts
        return result
