"""Tests for call_with_retry — bounded backoff, retryable errors only."""

from __future__ import annotations

import pytest

from keelhaul.core.cancellation import CancellationToken
from keelhaul.core.errors import (
    AuthenticationError,
    Cancelled,
    CommandTimeout,
    NetworkError,
)
from keelhaul.core.retry import RetryBudget, call_with_retry
from keelhaul.models.config import RetryPolicy


class _Flaky:
    def __init__(self, errors: list[Exception], result: str = "done") -> None:
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class TestRetryPolicy:
    def test_delays_grow_exponentially(self):
        policy = RetryPolicy(base_delay_seconds=1.0, backoff_factor=2.0, max_delay_seconds=30.0)
        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_delay_capped(self):
        policy = RetryPolicy(base_delay_seconds=10.0, backoff_factor=3.0, max_delay_seconds=15.0)
        assert policy.delay_for(3) == 15.0

    def test_max_attempts_must_be_positive(self):
        with pytest.raises(ValueError):
            RetryPolicy(max_attempts=0)


class TestCallWithRetry:
    def test_first_attempt_succeeds(self, fast_retry):
        func = _Flaky([])
        result, retries = call_with_retry(func, fast_retry, sleep=lambda _: None)
        assert result == "done"
        assert retries == 0
        assert func.calls == 1

    def test_network_error_retried_then_succeeds(self, fast_retry):
        delays: list[float] = []
        func = _Flaky([NetworkError("connection reset")])
        result, retries = call_with_retry(func, fast_retry, sleep=delays.append)
        assert result == "done"
        assert retries == 1
        assert delays == [0.5]

    def test_timeout_is_retryable(self, fast_retry):
        func = _Flaky([CommandTimeout("slow"), CommandTimeout("slow")])
        _, retries = call_with_retry(func, fast_retry, sleep=lambda _: None)
        assert retries == 2

    def test_exhaustion_raises_last_error(self, fast_retry):
        delays: list[float] = []
        func = _Flaky([NetworkError("a"), NetworkError("b"), NetworkError("c")])
        with pytest.raises(NetworkError, match="c"):
            call_with_retry(func, fast_retry, sleep=delays.append)
        assert func.calls == 3
        assert delays == [0.5, 1.0]

    def test_non_retryable_error_not_retried(self, fast_retry):
        func = _Flaky([AuthenticationError("unauthorized")])
        with pytest.raises(AuthenticationError):
            call_with_retry(func, fast_retry, sleep=lambda _: None)
        assert func.calls == 1

    def test_cancel_before_first_attempt(self, fast_retry):
        token = CancellationToken()
        token.cancel("stop")
        func = _Flaky([])
        with pytest.raises(Cancelled):
            call_with_retry(func, fast_retry, cancel_token=token, sleep=lambda _: None)
        assert func.calls == 0

    def test_cancel_during_backoff(self, fast_retry):
        token = CancellationToken()
        func = _Flaky([NetworkError("reset")])
        with pytest.raises(Cancelled):
            call_with_retry(
                func, fast_retry, cancel_token=token, sleep=lambda _: token.cancel("ctrl-c")
            )
        assert func.calls == 1

    def test_token_wait_used_without_sleep_override(self):
        token = CancellationToken()
        func = _Flaky([NetworkError("reset")])
        policy = RetryPolicy(max_attempts=2, base_delay_seconds=0.0)
        result, retries = call_with_retry(func, policy, cancel_token=token)
        assert (result, retries) == ("done", 1)


class TestRetryBudget:
    def test_budget_shared_between_calls(self, fast_retry):
        budget = RetryBudget(fast_retry)
        delays: list[float] = []
        first = _Flaky([NetworkError("a"), NetworkError("b")])
        second = _Flaky([NetworkError("c")])

        call_with_retry(first, fast_retry, budget=budget, sleep=delays.append)
        assert budget.exhausted
        with pytest.raises(NetworkError, match="c"):
            call_with_retry(second, fast_retry, budget=budget, sleep=delays.append)

        assert second.calls == 1
        assert delays == [0.5, 1.0]
        assert (budget.attempts, budget.retries) == (4, 2)

    def test_backoff_continues_across_calls(self, fast_retry):
        budget = RetryBudget(fast_retry)
        delays: list[float] = []
        call_with_retry(_Flaky([NetworkError("a")]), fast_retry, budget=budget, sleep=delays.append)
        _, retries = call_with_retry(
            _Flaky([NetworkError("b")]), fast_retry, budget=budget, sleep=delays.append
        )
        assert retries == 1
        assert delays == [0.5, 1.0]

    def test_every_call_gets_a_first_attempt(self):
        policy = RetryPolicy(max_attempts=1)
        budget = RetryBudget(policy)
        for _ in range(3):
            assert call_with_retry(_Flaky([]), policy, budget=budget) == ("done", 0)
        assert budget.attempts == 3
        assert budget.max_retries == 0
