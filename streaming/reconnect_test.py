"""Tests for bounded connection retry.

Validates:
- Success after transient failures, with one delay per retry
- RetryExhausted after the final attempt
- Abort before/while waiting returns None
- Any failure other than an abort is retried, including client errors
- Exponential backoff with cap
"""

import asyncio
import os
import sys

import httpx
import pytest

# Ensure streaming/ is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import reconnect
from reconnect import ReconnectionManager, RetryState, with_retry
from stream_config import load_config
from stream_errors import AbortError, RetryExhausted, TransportError


def run(coro):
    """Run async test in a fresh event loop."""
    return asyncio.run(coro)


class FlakyFactory:
    """Fails `failures` times with `error`, then returns `result`."""

    def __init__(self, failures, result="session", error=None):
        self.failures = failures
        self.result = result
        self.error = error or TransportError.from_status(503, "busy")
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.result


@pytest.fixture
def waits(monkeypatch):
    """Record retry delays instead of sleeping."""
    recorded = []

    async def fake_wait(delay, signal):
        recorded.append(delay)
        return False

    monkeypatch.setattr(reconnect, "_wait_or_abort", fake_wait)
    return recorded


class TestWithRetry:
    def test_fails_twice_then_succeeds(self, waits):
        factory = FlakyFactory(failures=2)
        result = run(with_retry(factory, max_retries=3, delay=0.5))
        assert result == "session"
        assert factory.calls == 3
        assert waits == [0.5, 0.5]

    def test_first_attempt_success_has_no_wait(self, waits):
        factory = FlakyFactory(failures=0)
        assert run(with_retry(factory, max_retries=3, delay=1.0)) == "session"
        assert waits == []

    def test_exhaustion_raises_retry_exhausted(self, waits):
        factory = FlakyFactory(failures=5)
        with pytest.raises(RetryExhausted) as excinfo:
            run(with_retry(factory, max_retries=3, delay=1.0))
        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.last_error, TransportError)
        assert excinfo.value.to_dict()["code"] == "retry_exhausted"
        assert factory.calls == 3
        assert len(waits) == 2

    def test_sync_factory(self, waits):
        calls = []

        def factory():
            calls.append(1)
            if len(calls) == 1:
                raise httpx.ConnectError("refused")
            return "ok"

        assert run(with_retry(factory, max_retries=2, delay=0.1)) == "ok"
        assert len(calls) == 2

    def test_generic_failure_retried_then_succeeds(self, waits):
        factory = FlakyFactory(failures=2, error=RuntimeError("connection failed"))
        assert run(with_retry(factory, max_retries=3, delay=0.0)) == "session"
        assert factory.calls == 3
        assert waits == [0.0, 0.0]

    def test_client_error_status_exhausts_attempts(self, waits):
        factory = FlakyFactory(failures=5, error=TransportError.from_status(401, "nope"))
        with pytest.raises(RetryExhausted) as excinfo:
            run(with_retry(factory, max_retries=3, delay=1.0))
        assert excinfo.value.attempts == 3
        assert excinfo.value.last_error.status_code == 401
        assert factory.calls == 3
        assert len(waits) == 2

    def test_abort_error_from_factory_returns_none(self, waits):
        factory = FlakyFactory(failures=1, error=AbortError())
        assert run(with_retry(factory, max_retries=3, delay=1.0)) is None


class TestCancellation:
    def test_signal_set_before_first_attempt(self):
        factory = FlakyFactory(failures=0)

        async def scenario():
            signal = asyncio.Event()
            signal.set()
            return await with_retry(factory, max_retries=3, delay=1.0, signal=signal)

        assert run(scenario()) is None
        assert factory.calls == 0

    def test_signal_during_delay_returns_promptly(self):
        factory = FlakyFactory(failures=10)

        async def scenario():
            signal = asyncio.Event()
            loop = asyncio.get_running_loop()
            loop.call_later(0.05, signal.set)
            started = loop.time()
            result = await with_retry(factory, max_retries=3, delay=30.0, signal=signal)
            return result, loop.time() - started

        result, elapsed = run(scenario())
        assert result is None
        assert elapsed < 5.0
        assert factory.calls == 1

    def test_real_delay_without_signal(self):
        factory = FlakyFactory(failures=1)
        assert run(with_retry(factory, max_retries=2, delay=0.01)) == "session"


class TestBackoffPolicy:
    def test_fixed(self):
        manager = ReconnectionManager(max_retries=5, delay=2.0)
        delays = [manager.next_delay(RetryState(attempt=n, max_retries=5, delay=2.0)) for n in (1, 2, 3)]
        assert delays == [2.0, 2.0, 2.0]

    def test_exponential_capped(self):
        manager = ReconnectionManager(max_retries=6, delay=1.0, backoff="exponential", max_delay=5.0)
        delays = [manager.next_delay(RetryState(attempt=n, max_retries=6, delay=1.0)) for n in (1, 2, 3, 4)]
        assert delays == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_bounds(self):
        manager = ReconnectionManager(max_retries=3, delay=1.0, jitter=0.25)
        for _ in range(50):
            delay = manager.next_delay(RetryState(attempt=1, max_retries=3, delay=1.0))
            assert 0.75 <= delay <= 1.25

    def test_from_config(self):
        config = load_config(
            overrides={"retry": {"max_retries": 4, "delay_ms": 250, "backoff": "exponential"}},
            environ={},
        )
        manager = ReconnectionManager.from_config(config)
        assert manager.max_retries == 4
        assert manager.delay == 0.25
        assert manager.backoff == "exponential"
        assert manager.max_delay == 30.0

    def test_invalid_policy(self):
        with pytest.raises(ValueError):
            ReconnectionManager(max_retries=0)
        with pytest.raises(ValueError):
            ReconnectionManager(backoff="linear")
