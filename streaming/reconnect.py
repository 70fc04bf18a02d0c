"""Bounded retry around session/connection creation.

with_retry(factory, max_retries, delay, signal):
  - calls factory() up to max_retries times (sync or async factory)
  - waits `delay` between attempts; the wait ends early if `signal` is set
  - returns None when aborted (not an error)
  - raises RetryExhausted after the final failed attempt; every failure
    except AbortError counts as an attempt

Fixed delay by default. backoff="exponential" doubles the delay per attempt,
capped at max_delay, with optional ±jitter.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from stream_errors import AbortError, RetryExhausted

logger = logging.getLogger("agentj_stream.reconnect")

T = TypeVar("T")

Factory = Callable[[], Union[T, Awaitable[T]]]


@dataclass
class RetryState:
    attempt: int
    max_retries: int
    delay: float


async def _wait_or_abort(delay: float, signal: Optional[asyncio.Event]) -> bool:
    """Sleep for `delay`; return True if `signal` fired first."""
    if signal is None:
        await asyncio.sleep(delay)
        return False
    if signal.is_set():
        return True
    try:
        await asyncio.wait_for(signal.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return False
    return True


class ReconnectionManager:
    """Retry policy holder. One manager may serve many with_retry() calls."""

    def __init__(
        self,
        max_retries: int = 3,
        delay: float = 1.0,
        backoff: str = "fixed",
        max_delay: float = 30.0,
        jitter: float = 0.0,
    ):
        if max_retries < 1:
            raise ValueError(f"max_retries must be >= 1, got {max_retries}")
        if backoff not in ("fixed", "exponential"):
            raise ValueError(f"Unknown backoff: {backoff!r}")
        self.max_retries = max_retries
        self.delay = delay
        self.backoff = backoff
        self.max_delay = max_delay
        self.jitter = jitter

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "ReconnectionManager":
        retry = config["retry"]
        return cls(
            max_retries=retry["max_retries"],
            delay=retry["delay_ms"] / 1000.0,
            backoff=retry["backoff"],
            max_delay=retry["max_delay_ms"] / 1000.0,
            jitter=retry["jitter_percent"] / 100.0,
        )

    def next_delay(self, state: RetryState) -> float:
        """Delay before the attempt following `state.attempt` failed attempts."""
        if self.backoff == "exponential":
            delay = min(self.delay * (2 ** (state.attempt - 1)), self.max_delay)
        else:
            delay = self.delay
        if self.jitter:
            delay += delay * self.jitter * (random.random() * 2 - 1)
        return max(0.0, delay)

    async def with_retry(
        self,
        factory: Factory[T],
        signal: Optional[asyncio.Event] = None,
    ) -> Optional[T]:
        state = RetryState(attempt=0, max_retries=self.max_retries, delay=self.delay)
        last_error: Optional[BaseException] = None

        while state.attempt < state.max_retries:
            if state.attempt > 0:
                state.delay = self.next_delay(state)
                logger.warning(
                    "Retrying connection: attempt %d/%d in %.2fs (last error: %s)",
                    state.attempt + 1, state.max_retries, state.delay, last_error,
                )
                if await _wait_or_abort(state.delay, signal):
                    logger.info("Retry cancelled during delay")
                    return None

            if signal is not None and signal.is_set():
                return None

            state.attempt += 1
            try:
                result = factory()
                if inspect.isawaitable(result):
                    result = await result
                return result
            except AbortError:
                return None
            except Exception as e:
                last_error = e

        raise RetryExhausted(state.attempt, last_error) from last_error


async def with_retry(
    factory: Factory[T],
    max_retries: int,
    delay: float,
    signal: Optional[asyncio.Event] = None,
) -> Optional[T]:
    """Fixed-interval retry of `factory`. See ReconnectionManager for policy options."""
    return await ReconnectionManager(max_retries=max_retries, delay=delay).with_retry(
        factory, signal
    )
