"""
Resilience Tests - Failure Mode Testing
Retry/fallback primitives, polling waits and error attribution.
"""

import asyncio

import pytest

from core.error_handler import (
    AntiBotChallenge,
    ControlNotFound,
    DegradedConnection,
    ErrorStep,
    JobCancelled,
    NavigationFailure,
    NoResourceAvailable,
    describe_error,
)
from core.retry import Backoff, RetryAttempt, poll_until, with_retry


@pytest.mark.resilience
class TestWithRetry:
    """Bounded retries with per-attempt strategy and a fallback."""

    @pytest.mark.asyncio
    async def test_connection_retry(self):
        attempts = []

        async def flaky(attempt):
            attempts.append(attempt)
            if attempt < 3:
                raise ConnectionError("Connection refused")
            return "success"

        history = []
        result = await with_retry(flaky, attempts=5, backoff=Backoff.none(), history=history)

        assert result == "success"
        assert attempts == [1, 2, 3]
        assert [h.attempt_number for h in history] == [1, 2]
        assert all(isinstance(h, RetryAttempt) for h in history)

    @pytest.mark.asyncio
    async def test_fallback_receives_last_error(self):
        async def always_fails(attempt):
            raise ConnectionError(f"attempt {attempt}")

        async def fallback(error):
            return f"fallback after {error}"

        result = await with_retry(always_fails, attempts=2, backoff=Backoff.none(), fallback=fallback)
        assert result == "fallback after attempt 2"

    @pytest.mark.asyncio
    async def test_exhausted_without_fallback_raises_last_error(self):
        async def always_fails(attempt):
            raise TimeoutError(f"timeout {attempt}")

        with pytest.raises(TimeoutError, match="timeout 3"):
            await with_retry(always_fails, attempts=3, backoff=Backoff.none())

    @pytest.mark.asyncio
    async def test_non_retryable_taxonomy_error_stops_immediately(self):
        calls = []

        async def blocked(attempt):
            calls.append(attempt)
            raise AntiBotChallenge("blocked", "https://maps.example")

        with pytest.raises(AntiBotChallenge):
            await with_retry(blocked, attempts=3, backoff=Backoff.none())
        assert calls == [1]

    @pytest.mark.asyncio
    async def test_retry_on_filters_exception_types(self):
        calls = []

        async def bad_input(attempt):
            calls.append(attempt)
            raise ValueError("bad input")

        with pytest.raises(ValueError):
            await with_retry(bad_input, attempts=3, backoff=Backoff.none(), retry_on=(ConnectionError,))
        assert calls == [1]

    def test_exponential_backoff_is_capped(self):
        backoff = Backoff(base_delay_seconds=1.0, max_delay_seconds=5.0)
        assert [backoff.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]

    def test_jitter_stays_in_range(self):
        backoff = Backoff(base_delay_seconds=1.0, jitter_max_seconds=0.5)
        for _ in range(20):
            assert 1.0 <= backoff.delay_for(1) <= 1.5


@pytest.mark.resilience
class TestPollUntil:
    """Polling waits instead of fixed sleeps."""

    @pytest.mark.asyncio
    async def test_returns_first_truthy_value(self):
        values = iter([None, 0, "ready"])
        assert await poll_until(lambda: next(values), timeout=1.0, interval=0.001) == "ready"

    @pytest.mark.asyncio
    async def test_async_predicate_and_exceptions(self):
        calls = {"n": 0}

        async def predicate():
            calls["n"] += 1
            if calls["n"] == 1:
                raise RuntimeError("element detached")
            return calls["n"] >= 3

        assert await poll_until(predicate, timeout=1.0, interval=0.001) is True
        assert calls["n"] == 3

    @pytest.mark.asyncio
    async def test_timeout_returns_none(self):
        loop = asyncio.get_running_loop()
        start = loop.time()

        assert await poll_until(lambda: False, timeout=0.05, interval=0.01) is None
        assert loop.time() - start < 1.0

    @pytest.mark.asyncio
    async def test_evaluated_at_least_once(self):
        assert await poll_until(lambda: "now", timeout=0) == "now"


@pytest.mark.resilience
class TestErrorAttribution:
    """Failed jobs carry the failing step in their message."""

    def test_messages_name_the_step(self):
        assert describe_error(NoResourceAvailable("proxy")) == "[lease] No active proxy available"
        assert describe_error(ControlNotFound("submit button")) == "[discovery] Could not find submit button"
        assert describe_error(JobCancelled()).startswith("[lifecycle]")
        assert describe_error(ValueError("boom")) == "ValueError: boom"
        assert describe_error(TimeoutError()) == "TimeoutError"

    def test_challenge_is_a_navigation_failure_but_not_retryable(self):
        error = AntiBotChallenge("captcha", "https://maps.example/x")
        assert isinstance(error, NavigationFailure)
        assert not error.retryable
        assert error.step == ErrorStep.CLASSIFICATION
        assert NavigationFailure("timeout").retryable

    def test_degraded_connection_describes_cause(self):
        error = DegradedConnection("http://gw:7000", ConnectionError("refused"))
        assert "http://gw:7000" in str(error)
        assert "refused" in str(error)
        assert error.to_dict()["step"] == "session"
