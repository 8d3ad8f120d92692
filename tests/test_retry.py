"""
Tests for the retry policy.
"""

import asyncio

import pytest

from streamarchiver.errors import AuthError, ErrorClass, FetchError, StorageError
from streamarchiver.retry import RetryPolicy


class HalfRng:
    """Jitter source that always returns the middle of the range."""

    def uniform(self, a, b):
        return (a + b) / 2


class Recorder:
    def __init__(self):
        self.sleeps = []

    async def sleep(self, seconds):
        self.sleeps.append(seconds)


def scripted(*results):
    """Coroutine function returning/raising the given results in order."""
    results = list(results)
    calls = []

    async def op():
        calls.append(len(calls) + 1)
        result = results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    op.calls = calls
    return op


class TestRetryPolicy:
    """Test RetryPolicy.attempt()."""

    def test_delay_schedule(self):
        policy = RetryPolicy(max_attempts=5, base_delay=2.0, rng=HalfRng())

        assert policy.delay_for(1) == 0.0
        assert policy.delay_for(2) == 5.0
        assert policy.delay_for(3) == 9.0
        assert policy.delay_for(4) == 17.0

    def test_jitter_stays_within_base(self):
        policy = RetryPolicy(base_delay=2.0)
        for _ in range(50):
            delay = policy.delay_for(3)
            assert 8.0 <= delay <= 10.0

    @pytest.mark.asyncio
    async def test_first_try_success(self):
        recorder = Recorder()
        policy = RetryPolicy(sleep=recorder.sleep, rng=HalfRng())

        outcome = await policy.attempt(scripted("ok"))

        assert outcome.ok
        assert outcome.value == "ok"
        assert outcome.attempts == 1
        assert recorder.sleeps == []

    @pytest.mark.asyncio
    async def test_retries_transient_errors(self):
        recorder = Recorder()
        retries = []
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, sleep=recorder.sleep, rng=HalfRng())
        op = scripted(FetchError("HTTP Error 503"), FetchError("Connection reset"), "/data/v.mp4")

        outcome = await policy.attempt(op, on_retry=lambda n, d, e: retries.append((n, d, str(e))))

        assert outcome.ok
        assert outcome.value == "/data/v.mp4"
        assert outcome.attempts == 3
        assert recorder.sleeps == [2.5, 4.5]
        assert retries == [(2, 2.5, "HTTP Error 503"), (3, 4.5, "Connection reset")]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        recorder = Recorder()
        policy = RetryPolicy(max_attempts=3, base_delay=1.0, sleep=recorder.sleep, rng=HalfRng())
        op = scripted(*[FetchError("HTTP Error 502")] * 3)

        outcome = await policy.attempt(op)

        assert not outcome.ok
        assert outcome.attempts == 3
        assert outcome.error_class == ErrorClass.RETRYABLE
        assert len(op.calls) == 3

    @pytest.mark.asyncio
    async def test_auth_error_is_not_retried(self):
        recorder = Recorder()
        policy = RetryPolicy(max_attempts=5, sleep=recorder.sleep)
        op = scripted(AuthError("subscriber-only"), "unreachable")

        outcome = await policy.attempt(op)

        assert outcome.error_class == ErrorClass.AUTH
        assert outcome.attempts == 1
        assert recorder.sleeps == []

    @pytest.mark.asyncio
    async def test_storage_error_is_not_retried(self):
        policy = RetryPolicy(max_attempts=5, sleep=Recorder().sleep)

        outcome = await policy.attempt(scripted(StorageError("disk full")))

        assert outcome.error_class == ErrorClass.STORAGE
        assert outcome.attempts == 1

    @pytest.mark.asyncio
    async def test_fatal_after_transient(self):
        policy = RetryPolicy(max_attempts=5, sleep=Recorder().sleep, rng=HalfRng())
        op = scripted(FetchError("HTTP Error 503"), FetchError("HTTP Error 404: Not Found"))

        outcome = await policy.attempt(op)

        assert outcome.error_class == ErrorClass.FATAL
        assert outcome.attempts == 2

    @pytest.mark.asyncio
    async def test_cancellation_propagates(self):
        policy = RetryPolicy(max_attempts=5, sleep=Recorder().sleep)

        with pytest.raises(asyncio.CancelledError):
            await policy.attempt(scripted(asyncio.CancelledError()))
