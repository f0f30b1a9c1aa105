#!/usr/bin/env python3
"""
Unit tests for the bounded backoff combinators
"""

import sys
import pytest
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent / "src"))

from xanthus.errors import OperationTimeoutError, ProviderError
from xanthus.retry import Backoff, poll_until, retry_call


class FakeClock:
    """Clock that only moves when something sleeps."""

    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds

    def __call__(self):
        return self.now


class TestBackoff:

    def test_requires_a_bound(self):
        with pytest.raises(ValueError):
            Backoff()

    def test_rejects_shrinking_factor(self):
        with pytest.raises(ValueError):
            Backoff(factor=0.5, max_attempts=3)

    def test_delays_grow_and_cap(self):
        policy = Backoff(initial=1, factor=2, max_delay=5, max_attempts=10)
        gen = policy.delays()
        assert [next(gen) for _ in range(5)] == [1, 2, 4, 5, 5]


class TestPollUntil:

    def test_returns_first_value(self):
        clock = FakeClock()
        values = iter([None, None, "ready"])
        result = poll_until(lambda: next(values), Backoff(initial=1, max_attempts=5),
                            sleep=clock.sleep, clock=clock)
        assert result == "ready"
        assert clock.sleeps == [1, 2]

    def test_attempt_bound(self):
        clock = FakeClock()
        calls = []

        def probe():
            calls.append(1)
            return None

        with pytest.raises(OperationTimeoutError):
            poll_until(probe, Backoff(initial=1, max_attempts=3), sleep=clock.sleep, clock=clock)
        assert len(calls) == 3

    def test_deadline_never_overshot(self):
        clock = FakeClock()
        with pytest.raises(OperationTimeoutError) as exc:
            poll_until(lambda: None, Backoff(initial=4, factor=2, max_delay=100, timeout=10),
                       describe="server running", sleep=clock.sleep, clock=clock)
        assert clock.now == 10
        assert "server running" in exc.value.message

    def test_probe_errors_propagate(self):
        def probe():
            raise ProviderError("bad", ProviderError.PERMANENT)

        with pytest.raises(ProviderError):
            poll_until(probe, Backoff(max_attempts=5), sleep=lambda s: None)


class TestRetryCall:

    def _transient(self):
        return ProviderError("flaky", ProviderError.TRANSIENT)

    def test_retries_then_succeeds(self):
        clock = FakeClock()
        outcomes = iter([self._transient(), self._transient(), "ok"])

        def fn():
            value = next(outcomes)
            if isinstance(value, Exception):
                raise value
            return value

        result = retry_call(fn, Backoff(initial=1, max_attempts=5),
                            retry_if=lambda e: e.retryable, sleep=clock.sleep, clock=clock)
        assert result == "ok"
        assert len(clock.sleeps) == 2

    def test_non_retryable_raises_immediately(self):
        calls = []

        def fn():
            calls.append(1)
            raise ProviderError("quota", ProviderError.QUOTA_EXCEEDED)

        with pytest.raises(ProviderError):
            retry_call(fn, Backoff(max_attempts=5), retry_if=lambda e: e.retryable,
                       sleep=lambda s: None)
        assert len(calls) == 1

    def test_last_error_after_exhaustion(self):
        calls = []

        def fn():
            calls.append(1)
            raise ProviderError(f"attempt {len(calls)}", ProviderError.TRANSIENT)

        with pytest.raises(ProviderError) as exc:
            retry_call(fn, Backoff(initial=0, max_attempts=3), retry_if=lambda e: e.retryable,
                       sleep=lambda s: None)
        assert len(calls) == 3
        assert exc.value.message == "attempt 3"
